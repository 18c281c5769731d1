# PRD: Intel Module - Indicator Validation & Normalization
# Reference: docs/ARCHITECTURE.md, Section: Feed Connector
#
# Shared by every connector (composed, not inherited):
#   - value checks per declared type (IPv4/IPv6, domain, URL, hashes, email, CVE)
#   - confidence normalization onto the 0-100 scale
#   - first_seen / last_seen filling
#   - feed filter rules (types, confidence floor, severity floor, TLP)
# Invalid indicators are dropped and counted, never raised.

import ipaddress
import logging
import re
from datetime import datetime
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from .models import FilterRules, Indicator, IndicatorType, utcnow

logger = logging.getLogger(__name__)

_IPV4_RE = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)
_IPV6_RE = re.compile(r"^[0-9a-fA-F:.]+$")
_DOMAIN_RE = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
_HASH_RE = re.compile(r"^(?:[a-fA-F0-9]{32}|[a-fA-F0-9]{40}|[a-fA-F0-9]{64})$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CVE_RE = re.compile(r"^CVE-\d{4}-\d{4,}$", re.IGNORECASE)

MAX_DOMAIN_LENGTH = 253


def is_valid_ip(value: str) -> bool:
    if _IPV4_RE.match(value):
        return True
    if ":" not in value or not _IPV6_RE.match(value):
        return False
    try:
        ipaddress.IPv6Address(value)
    except ValueError:
        return False
    return True


def is_valid_domain(value: str) -> bool:
    return len(value) <= MAX_DOMAIN_LENGTH and bool(_DOMAIN_RE.match(value))


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def is_valid_hash(value: str) -> bool:
    """MD5, SHA-1 or SHA-256 hex digest."""
    return bool(_HASH_RE.match(value))


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_valid_cve(value: str) -> bool:
    return bool(_CVE_RE.match(value))


_VALIDATORS = {
    IndicatorType.IP: is_valid_ip,
    IndicatorType.DOMAIN: is_valid_domain,
    IndicatorType.URL: is_valid_url,
    IndicatorType.HASH: is_valid_hash,
    IndicatorType.EMAIL: is_valid_email,
    IndicatorType.CVE: is_valid_cve,
}


def normalize_confidence(value: Optional[float]) -> float:
    """Bring a confidence value onto the 0-100 scale.

    (0, 1] is read as a fraction, (1, 10] as a 0-10 score, anything
    larger as already 0-100. The result is clamped to [0, 100].
    """
    if value is None:
        return 50.0
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 50.0
    if 0 < conf <= 1:
        conf *= 100
    elif 1 < conf <= 10:
        conf *= 10
    return max(0.0, min(100.0, conf))


class IndicatorValidator:
    """Validates, normalizes and filters parsed indicators."""

    def is_valid(self, indicator: Indicator) -> bool:
        value = indicator.value or ""
        if not value:
            return False
        check = _VALIDATORS.get(indicator.type)
        if check is None:
            return True
        return check(value)

    def normalize(self, indicator: Indicator, now: Optional[datetime] = None) -> Indicator:
        """Normalize confidence and fill missing timestamps in place."""
        now = now or utcnow()
        indicator.confidence = normalize_confidence(indicator.confidence)
        if indicator.first_seen is None:
            indicator.first_seen = indicator.last_seen or now
        if indicator.last_seen is None:
            indicator.last_seen = now
        return indicator

    def passes_filters(self, indicator: Indicator, rules: Optional[FilterRules]) -> bool:
        if rules is None:
            return True
        if rules.allowed_types and indicator.type not in rules.allowed_types:
            return False
        if rules.min_confidence is not None and indicator.confidence < rules.min_confidence:
            return False
        if rules.min_severity is not None and indicator.severity.rank < rules.min_severity.rank:
            return False
        if rules.allowed_tlp and indicator.tlp not in rules.allowed_tlp:
            return False
        return True

    def process(
        self,
        indicators: List[Indicator],
        rules: Optional[FilterRules] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Indicator], int, int]:
        """Run the full validation chain over a parsed batch.

        Returns:
            (kept indicators, dropped count, filtered count)
        """
        kept: List[Indicator] = []
        dropped = 0
        filtered = 0
        for indicator in indicators:
            if not self.is_valid(indicator):
                dropped += 1
                logger.debug(
                    "Dropping invalid %s indicator %r from %s",
                    indicator.type.value, indicator.value, indicator.source,
                )
                continue
            self.normalize(indicator, now)
            if not self.passes_filters(indicator, rules):
                filtered += 1
                continue
            kept.append(indicator)
        return kept, dropped, filtered
