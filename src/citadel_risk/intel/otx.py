# PRD: Intel Module - AlienVault OTX Feed
# Reference: docs/ARCHITECTURE.md, Section: External Interfaces
#
# Source for AlienVault Open Threat Exchange subscribed pulses.
#   - GET {base}/api/v1/pulses/subscribed (X-OTX-API-KEY header)
#   - Pagination via the "next" URL in each page
#   - Incremental pulls via modified_since
#   - Each pulse carries nested indicators; unsupported indicator types
#     (CIDR, mutex, YARA, ...) are skipped

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

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
)

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://otx.alienvault.com"
PULSES_PATH = "/api/v1/pulses/subscribed"
DEFAULT_MAX_PAGES = 5
DEFAULT_PAGE_LIMIT = 50

OTX_TYPE_MAP = {
    "IPv4": IndicatorType.IP,
    "IPv6": IndicatorType.IP,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "URL": IndicatorType.URL,
    "URI": IndicatorType.URL,
    "FileHash-MD5": IndicatorType.HASH,
    "FileHash-SHA1": IndicatorType.HASH,
    "FileHash-SHA256": IndicatorType.HASH,
    "email": IndicatorType.EMAIL,
}


def map_tlp(value: Optional[str]) -> TLP:
    text = (value or "white").lower()
    if "red" in text:
        return TLP.RED
    if "amber" in text:
        return TLP.AMBER
    if "green" in text:
        return TLP.GREEN
    return TLP.WHITE


class OtxSource(FeedSource):
    """AlienVault OTX subscribed-pulse source.

    Options:
        max_pages: page cap per sync (default 5)
        limit: pulses per page (default 50)
    """

    def __init__(self, config: FeedConfig):
        super().__init__(config)
        self._base_url = (config.url or DEFAULT_URL).rstrip("/")
        self._max_pages = int(config.options.get("max_pages", DEFAULT_MAX_PAGES))
        self._limit = int(config.options.get("limit", DEFAULT_PAGE_LIMIT))

    def request_budget(self) -> int:
        return max(1, self._max_pages)

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.config.api_key:
            headers["X-OTX-API-KEY"] = self.config.api_key
        return headers

    def fetch_raw(self, http: FeedHttpClient, since: Optional[datetime] = None) -> Any:
        params: Optional[Dict[str, str]] = {"limit": str(self._limit)}
        if since is not None:
            params["modified_since"] = since.isoformat()

        pulses: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self._base_url}{PULSES_PATH}"
        page = 0
        while url and page < self._max_pages:
            # the "next" link already carries the query string
            data = http.get_json(url, params=params, headers=self._build_headers())
            pulses.extend(data.get("results") or [])
            url = data.get("next")
            params = None
            page += 1
        logger.debug("OTX returned %d pulses over %d page(s)", len(pulses), page)
        return {"results": pulses}

    def parse(self, raw: Any) -> List[Indicator]:
        indicators = []
        for pulse in (raw or {}).get("results") or []:
            for otx_indicator in pulse.get("indicators") or []:
                indicator = self._to_indicator(otx_indicator, pulse)
                if indicator is not None:
                    indicators.append(indicator)
        return indicators

    # ------------------------------------------------------------------
    # Scoring helpers
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_confidence(pulse: Dict[str, Any], indicator: Dict[str, Any]) -> int:
        confidence = 50
        if pulse.get("malware_families"):
            confidence += 15
        if pulse.get("attack_ids"):
            confidence += 15
        if pulse.get("adversary"):
            confidence += 10
        if indicator.get("is_active"):
            confidence += 10
        return min(100, confidence)

    @staticmethod
    def calculate_severity(confidence: float) -> Severity:
        if confidence >= 80:
            return Severity.HIGH
        if confidence >= 60:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def calculate_reliability(pulse: Dict[str, Any]) -> Reliability:
        if pulse.get("adversary") and pulse.get("malware_families"):
            return Reliability.B
        if len(pulse.get("tags") or []) >= 3:
            return Reliability.C
        return Reliability.D

    @staticmethod
    def _names(values: Optional[List[Any]]) -> List[str]:
        """OTX returns families/attack ids either as strings or as
        {"id"/"display_name": ...} objects."""
        names = []
        for value in values or []:
            if isinstance(value, dict):
                value = value.get("display_name") or value.get("id") or value.get("name")
            if value:
                names.append(str(value))
        return names

    def _to_indicator(
        self, otx_indicator: Dict[str, Any], pulse: Dict[str, Any]
    ) -> Optional[Indicator]:
        mapped = OTX_TYPE_MAP.get(otx_indicator.get("type", ""))
        value = (otx_indicator.get("indicator") or "").strip()
        if mapped is None or not value:
            return None
        if mapped in (IndicatorType.DOMAIN, IndicatorType.EMAIL, IndicatorType.HASH):
            value = value.lower()

        families = self._names(pulse.get("malware_families"))
        attack_ids = self._names(pulse.get("attack_ids"))
        confidence = self.calculate_confidence(pulse, otx_indicator)
        tags = list(pulse.get("tags") or []) + families + attack_ids

        return Indicator(
            source=self.config.id,
            type=mapped,
            value=value,
            confidence=confidence,
            severity=self.calculate_severity(confidence),
            first_seen=parse_timestamp(otx_indicator.get("created") or pulse.get("created")),
            last_seen=parse_timestamp(pulse.get("modified")),
            tags=tags,
            context=IndicatorContext(
                threat_actor=pulse.get("adversary") or None,
                campaign=pulse.get("name") or None,
                malware_family=families[0] if families else None,
                mitre_technique=attack_ids[0] if attack_ids else None,
                attack_pattern=", ".join(attack_ids) or None,
                description=pulse.get("description") or None,
            ),
            source_reliability=self.calculate_reliability(pulse),
            tlp=map_tlp(pulse.get("tlp")),
        )
