# PRD: Intel Module - CISA Known Exploited Vulnerabilities Feed
# Reference: docs/ARCHITECTURE.md, Section: External Interfaces
#
# Source for the CISA KEV catalog (single JSON document, no auth).
# Every entry is a CVE that is known to be exploited in the wild, so
# confidence starts high:
#   - base 85, +10 ransomware use "Known", +5 added within 30 days (cap 100)
#   - severity critical if ransomware-flagged or added within 7 days, else high
#   - reliability A, TLP WHITE

import logging
from datetime import datetime
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

DEFAULT_URL = (
    "https://www.cisa.gov/sites/default/files/feeds/"
    "known_exploited_vulnerabilities.json"
)

BASE_CONFIDENCE = 85
RANSOMWARE_BONUS = 10
RECENT_BONUS = 5
RECENT_DAYS = 30
CRITICAL_RECENT_DAYS = 7


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 86400.0


class CisaKevSource(FeedSource):
    """CISA KEV catalog source.

    Usage::

        config = FeedConfig(id="cisa-kev", type="cisa_kev", url=DEFAULT_URL)
        connector = FeedConnector(config, CisaKevSource(config))
    """

    def __init__(self, config: FeedConfig, clock: Callable[[], datetime] = utcnow):
        super().__init__(config)
        self._clock = clock

    def fetch_raw(self, http: FeedHttpClient, since: Optional[datetime] = None) -> Any:
        # The catalog is published as one document; no incremental query.
        return http.get_json(self.config.url or DEFAULT_URL)

    def parse(self, raw: Any) -> List[Indicator]:
        vulns = (raw or {}).get("vulnerabilities") or []
        now = self._clock()
        indicators = []
        for vuln in vulns:
            if not vuln.get("cveID"):
                continue
            indicators.append(self._to_indicator(vuln, now))
        logger.debug("Parsed %d KEV entries", len(indicators))
        return indicators

    # ------------------------------------------------------------------
    # Scoring helpers
    # ------------------------------------------------------------------

    @staticmethod
    def is_ransomware(vuln: Dict[str, Any]) -> bool:
        return vuln.get("knownRansomwareCampaignUse") == "Known"

    def calculate_confidence(self, vuln: Dict[str, Any], now: datetime) -> int:
        confidence = BASE_CONFIDENCE
        if self.is_ransomware(vuln):
            confidence += RANSOMWARE_BONUS
        added = parse_timestamp(vuln.get("dateAdded"))
        if added is not None and _days_between(now, added) <= RECENT_DAYS:
            confidence += RECENT_BONUS
        return min(100, confidence)

    def calculate_severity(self, vuln: Dict[str, Any], now: datetime) -> Severity:
        if self.is_ransomware(vuln):
            return Severity.CRITICAL
        added = parse_timestamp(vuln.get("dateAdded"))
        if added is not None and _days_between(now, added) <= CRITICAL_RECENT_DAYS:
            return Severity.CRITICAL
        return Severity.HIGH

    def generate_tags(self, vuln: Dict[str, Any], now: datetime) -> List[str]:
        tags = [
            "cisa-kev",
            "known-exploited",
            "vulnerability",
            (vuln.get("vendorProject") or "").lower(),
            (vuln.get("product") or "").lower(),
        ]
        if self.is_ransomware(vuln):
            tags.extend(["ransomware", "active-campaign"])

        added = parse_timestamp(vuln.get("dateAdded"))
        if added is not None:
            tags.append(f"kev-{added.year}")

        due = parse_timestamp(vuln.get("dueDate"))
        if due is not None:
            days_until_due = _days_between(due, now)
            if days_until_due <= 0:
                tags.append("overdue")
            elif days_until_due <= 7:
                tags.append("urgent")
            elif days_until_due <= 14:
                tags.append("high-priority")

        return [t for t in tags if t]

    def _to_indicator(self, vuln: Dict[str, Any], now: datetime) -> Indicator:
        added = parse_timestamp(vuln.get("dateAdded"))
        return Indicator(
            source=self.config.id,
            type=IndicatorType.CVE,
            value=vuln["cveID"].strip(),
            confidence=self.calculate_confidence(vuln, now),
            severity=self.calculate_severity(vuln, now),
            first_seen=added,
            last_seen=added,
            tags=self.generate_tags(vuln, now),
            context=IndicatorContext(
                attack_pattern="Known Exploitation",
                kill_chain_phase="exploitation",
                mitre_technique="T1190",
                description=vuln.get("shortDescription"),
                exploitation_status="active",
                ransomware=self.is_ransomware(vuln),
            ),
            source_reliability=Reliability.A,
            tlp=TLP.WHITE,
        )
