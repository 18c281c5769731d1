# PRD: Intel Module - NVD (National Vulnerability Database) Feed
# Reference: docs/ARCHITECTURE.md, Section: External Interfaces
#
# Source for the NIST NVD CVE API v2.0.
#   - Endpoint: {base}/rest/json/cves/2.0
#   - Pagination via startIndex + resultsPerPage (max 2000), max_pages per window
#   - Queries both the published and last-modified windows, merged by CVE id
#   - Request spacing: 5 req/s without API key, 50 req/s with key
#   - CVSS preference: v3.1 > v3.0 > v2

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .connector import FeedHttpClient, FeedSource
from .models import (
    TLP,
    FeedConfig,
    Indicator,
    IndicatorContext,
    IndicatorType,
    Reliability,
    Severity,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"

MAX_RESULTS_PER_PAGE = 2000
DEFAULT_DAYS_BACK = 7
# page cap per date window; each sync queries two windows
DEFAULT_MAX_PAGES = 10
DELAY_NO_KEY_SEC = 1.0 / 5
DELAY_WITH_KEY_SEC = 1.0 / 50
MAX_PRODUCT_TAGS = 5

# CWE -> MITRE ATT&CK technique (coarse mapping)
CWE_TO_MITRE = {
    "CWE-78": "T1059",
    "CWE-79": "T1055",
    "CWE-89": "T1190",
    "CWE-94": "T1055",
    "CWE-119": "T1055",
    "CWE-200": "T1083",
    "CWE-264": "T1068",
    "CWE-287": "T1110",
    "CWE-352": "T1068",
    "CWE-434": "T1105",
    "CWE-502": "T1055",
}

# CVSS attack vector -> kill chain phase
ATTACK_VECTOR_TO_KILL_CHAIN = {
    "NETWORK": "delivery",
    "ADJACENT_NETWORK": "lateral-movement",
    "LOCAL": "privilege-escalation",
    "PHYSICAL": "initial-access",
}


def _nvd_timestamp(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000+00:00")


def cvss_v2_severity(score: float) -> str:
    if score >= 9.0:
        return "CRITICAL"
    if score >= 7.0:
        return "HIGH"
    if score >= 4.0:
        return "MEDIUM"
    return "LOW"


def extract_cvss(metrics: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Pick the preferred CVSS metric (v3.1, then v3.0, then v2).

    Returns a flat dict with version, base_score, base_severity and
    attack_vector, or None when the CVE has no metrics.
    """
    if not metrics:
        return None

    for key, version in (("cvssMetricV31", "3.1"), ("cvssMetricV30", "3.0")):
        entries = metrics.get(key) or []
        if entries:
            data = entries[0].get("cvssData", {})
            return {
                "version": version,
                "base_score": float(data.get("baseScore", 0.0)),
                "base_severity": data.get("baseSeverity", ""),
                "attack_vector": data.get("attackVector", ""),
                "vector_string": data.get("vectorString", ""),
            }

    entries = metrics.get("cvssMetricV2") or []
    if entries:
        data = entries[0].get("cvssData", {})
        score = float(data.get("baseScore", 0.0))
        return {
            "version": "2.0",
            "base_score": score,
            "base_severity": entries[0].get("baseSeverity") or cvss_v2_severity(score),
            "attack_vector": data.get("accessVector", ""),
            "vector_string": data.get("vectorString", ""),
        }
    return None


def extract_weaknesses(weaknesses: Optional[List[Dict[str, Any]]]) -> List[str]:
    cwes: List[str] = []
    for weakness in weaknesses or []:
        for desc in weakness.get("description", []):
            value = desc.get("value", "")
            if desc.get("lang") == "en" and value.startswith("CWE-") and value not in cwes:
                cwes.append(value)
    return cwes


def extract_products(configurations: Optional[List[Dict[str, Any]]]) -> List[str]:
    """vendor:product pairs from vulnerable CPE matches."""
    products: List[str] = []
    for config in configurations or []:
        for node in config.get("nodes", []):
            for match in node.get("cpeMatch", []):
                if not match.get("vulnerable") or not match.get("criteria"):
                    continue
                parts = match["criteria"].split(":")
                if len(parts) >= 5 and parts[3] and parts[4]:
                    product = f"{parts[3]}:{parts[4]}"
                    if product not in products:
                        products.append(product)
    return products


def _english_description(cve: Dict[str, Any]) -> str:
    for desc in cve.get("descriptions", []):
        if desc.get("lang") == "en":
            return desc.get("value", "")
    return ""


class NvdSource(FeedSource):
    """NIST NVD CVE API 2.0 source.

    Options:
        days_back: window size when no previous sync exists (default 7)
        results_per_page: page size, capped at 2000
        max_pages: page cap per date window (default 10)
    """

    def __init__(self, config: FeedConfig, clock: Callable[[], datetime] = utcnow):
        super().__init__(config)
        self._clock = clock
        self._results_per_page = min(
            MAX_RESULTS_PER_PAGE,
            int(config.options.get("results_per_page", MAX_RESULTS_PER_PAGE)),
        )
        self._days_back = int(config.options.get("days_back", DEFAULT_DAYS_BACK))
        self._max_pages = max(1, int(config.options.get("max_pages", DEFAULT_MAX_PAGES)))

    @property
    def request_delay(self) -> float:
        return DELAY_WITH_KEY_SEC if self.config.api_key else DELAY_NO_KEY_SEC

    def request_budget(self) -> int:
        return 2 * self._max_pages

    def pacing_delay(self) -> float:
        return (self.request_budget() - 1) * self.request_delay

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.config.api_key:
            headers["apiKey"] = self.config.api_key
        return headers

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch_raw(self, http: FeedHttpClient, since: Optional[datetime] = None) -> Any:
        end = self._clock()
        start = since or (end - timedelta(days=self._days_back))

        published = self._fetch_window(http, start, end, "pub")
        http.sleep(self.request_delay)
        modified = self._fetch_window(http, start, end, "lastMod")

        merged: Dict[str, Dict[str, Any]] = {}
        for vuln in published + modified:
            cve_id = vuln.get("cve", {}).get("id")
            if cve_id and cve_id not in merged:
                merged[cve_id] = vuln
        return {"vulnerabilities": list(merged.values())}

    def _fetch_window(
        self,
        http: FeedHttpClient,
        start: datetime,
        end: datetime,
        prefix: str,
    ) -> List[Dict[str, Any]]:
        """Page through one date window (prefix ``pub`` or ``lastMod``)."""
        results: List[Dict[str, Any]] = []
        start_index = 0
        for page_number in range(1, self._max_pages + 1):
            params = {
                "resultsPerPage": str(self._results_per_page),
                "startIndex": str(start_index),
                f"{prefix}StartDate": _nvd_timestamp(start),
                f"{prefix}EndDate": _nvd_timestamp(end),
            }
            data = http.get_json(
                self.config.url or DEFAULT_URL,
                params=params,
                headers=self._build_headers(),
            )
            page = data.get("vulnerabilities") or []
            results.extend(page)
            total = int(data.get("totalResults", 0))
            start_index += self._results_per_page
            if not page or start_index >= total:
                break
            if page_number == self._max_pages:
                logger.warning(
                    "NVD %s window truncated at %d page(s): %d of %d CVEs fetched",
                    prefix, self._max_pages, len(results), total,
                )
                break
            http.sleep(self.request_delay)
        logger.debug("NVD %s window returned %d CVEs", prefix, len(results))
        return results

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def parse(self, raw: Any) -> List[Indicator]:
        indicators = []
        for vuln in (raw or {}).get("vulnerabilities") or []:
            cve = vuln.get("cve") or {}
            if not cve.get("id"):
                continue
            indicators.append(self._to_indicator(cve))
        return indicators

    @staticmethod
    def calculate_confidence(cve: Dict[str, Any], cvss: Optional[Dict[str, Any]]) -> int:
        confidence = 80
        if cvss:
            confidence += 10
            if cvss["version"] == "3.1":
                confidence += 5
        if len(_english_description(cve)) > 100:
            confidence += 5
        references = cve.get("references") or []
        if references:
            confidence += min(5, len(references))
        if cve.get("weaknesses"):
            confidence += 5
        if cve.get("configurations"):
            confidence += 5
        return min(95, confidence)

    @staticmethod
    def kill_chain_phase(cvss: Optional[Dict[str, Any]]) -> str:
        if not cvss:
            return "unknown"
        vector = (cvss.get("attack_vector") or "").upper()
        return ATTACK_VECTOR_TO_KILL_CHAIN.get(vector, "exploitation")

    @staticmethod
    def mitre_techniques(weaknesses: List[str]) -> List[str]:
        techniques: List[str] = []
        for cwe in weaknesses:
            technique = CWE_TO_MITRE.get(cwe)
            if technique and technique not in techniques:
                techniques.append(technique)
        return techniques

    def _to_indicator(self, cve: Dict[str, Any]) -> Indicator:
        cvss = extract_cvss(cve.get("metrics"))
        weaknesses = extract_weaknesses(cve.get("weaknesses"))
        products = extract_products(cve.get("configurations"))
        techniques = self.mitre_techniques(weaknesses)

        if cvss and cvss["base_severity"]:
            try:
                severity = Severity(cvss["base_severity"].lower())
            except ValueError:
                severity = Severity.from_cvss(cvss["base_score"])
        else:
            severity = Severity.MEDIUM

        tags = [
            "nvd",
            "cve",
            f"status:{cve.get('vulnStatus', 'unknown')}",
            f"cvss:{cvss['base_score'] if cvss else 'unknown'}",
        ]
        tags.extend(f"cwe:{w}" for w in weaknesses)
        tags.extend(f"product:{p}" for p in products[:MAX_PRODUCT_TAGS])
        if cvss and cvss["attack_vector"]:
            tags.append(f"attack-vector:{cvss['attack_vector'].lower()}")

        return Indicator(
            source=self.config.id,
            type=IndicatorType.CVE,
            value=cve["id"],
            confidence=self.calculate_confidence(cve, cvss),
            severity=severity,
            first_seen=parse_timestamp(cve.get("published")),
            last_seen=parse_timestamp(cve.get("lastModified")),
            tags=tags,
            context=IndicatorContext(
                attack_pattern=", ".join(weaknesses) or None,
                kill_chain_phase=self.kill_chain_phase(cvss),
                mitre_technique=techniques[0] if techniques else None,
                description=_english_description(cve) or None,
                cvss_score=cvss["base_score"] if cvss else None,
            ),
            source_reliability=Reliability.A,
            tlp=TLP.WHITE,
        )
