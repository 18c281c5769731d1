# PRD: Intel Module - Canonical Indicator Models
# Reference: docs/ARCHITECTURE.md, Section: Data Model
#
# Every feed connector emits the same canonical Indicator regardless of
# source format (CISA KEV JSON, NVD CVE records, OTX pulses, STIX 2.1).
#
#   Indicator        - one observable (ip, domain, url, hash, email, cve, ...)
#   IndicatorContext - typed campaign/actor/technique hints
#   FeedConfig       - per-connector settings (polling, retry, filters)
#   SyncResult       - outcome of one connector sync

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class IndicatorType(str, Enum):
    """Observable kinds understood by the pipeline."""

    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"
    EMAIL = "email"
    CVE = "cve"
    YARA = "yara"
    FILE_PATH = "file_path"


class Severity(str, Enum):
    """Indicator severity, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank 1-4 used for floors and averaging."""
        return _SEVERITY_RANK[self]

    @classmethod
    def from_cvss(cls, score: float) -> "Severity":
        """Map a CVSS base score (0.0-10.0) to a severity level."""
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        return cls.LOW


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class TLP(str, Enum):
    """Traffic Light Protocol sharing marking."""

    WHITE = "white"
    GREEN = "green"
    AMBER = "amber"
    RED = "red"


class Reliability(str, Enum):
    """Admiralty-style source reliability grade (A best, F unknown)."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"


class ConnectorHealth(str, Enum):
    """Rolling connector health derived from consecutive errors."""

    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    DISABLED = "disabled"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (or datetime) into an aware UTC datetime.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def stable_indicator_id(source: str, indicator_type: "IndicatorType", value: str) -> str:
    """Deterministic id for a (source, type, value) triple."""
    key = f"{source}|{IndicatorType(indicator_type).value}|{value}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


# ---------------------------------------------------------------------------
# Indicator
# ---------------------------------------------------------------------------


@dataclass
class IndicatorContext:
    """Campaign, actor and technique hints attached to an indicator.

    Numeric fields (``cvss_score``, ``epss_score``) are what custom rule
    conditions are evaluated against.
    """

    malware_family: Optional[str] = None
    threat_actor: Optional[str] = None
    campaign: Optional[str] = None
    kill_chain_phase: Optional[str] = None
    mitre_technique: Optional[str] = None
    attack_pattern: Optional[str] = None
    description: Optional[str] = None
    cvss_score: Optional[float] = None
    epss_score: Optional[float] = None
    exploitation_status: Optional[str] = None
    ransomware: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IndicatorContext":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Indicator:
    """A single canonical observable emitted by a feed connector.

    ``id`` is derived from (source, type, value) when left empty, so the
    same observable from the same feed always maps to the same id.
    ``confidence`` is on the 0-100 scale.
    """

    source: str
    type: IndicatorType
    value: str
    confidence: float = 50.0
    severity: Severity = Severity.MEDIUM
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    context: IndicatorContext = field(default_factory=IndicatorContext)
    source_reliability: Reliability = Reliability.F
    tlp: TLP = TLP.WHITE
    id: str = ""

    def __post_init__(self):
        self.type = IndicatorType(self.type)
        self.severity = Severity(self.severity)
        self.source_reliability = Reliability(self.source_reliability)
        self.tlp = TLP(self.tlp)
        if not self.id:
            self.id = stable_indicator_id(self.source, self.type, self.value)

    @property
    def confidence_fraction(self) -> float:
        """Confidence on the 0-1 scale used by risk records."""
        return round(self.confidence / 100.0, 4)

    @property
    def dedup_key(self) -> str:
        return f"{self.source}:{self.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "severity": self.severity.value,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "tags": list(self.tags),
            "context": self.context.to_dict(),
            "source_reliability": self.source_reliability.value,
            "tlp": self.tlp.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Indicator":
        return cls(
            id=data.get("id", ""),
            source=data["source"],
            type=IndicatorType(data["type"]),
            value=data["value"],
            confidence=float(data.get("confidence", 50.0)),
            severity=Severity(data.get("severity", "medium")),
            first_seen=parse_timestamp(data.get("first_seen")),
            last_seen=parse_timestamp(data.get("last_seen")),
            tags=list(data.get("tags") or []),
            context=IndicatorContext.from_dict(data.get("context")),
            source_reliability=Reliability(data.get("source_reliability", "F")),
            tlp=TLP(data.get("tlp", "white")),
        )


# ---------------------------------------------------------------------------
# Feed configuration
# ---------------------------------------------------------------------------


@dataclass
class FilterRules:
    """Post-validation filters applied by a connector."""

    allowed_types: Optional[List[IndicatorType]] = None
    min_confidence: Optional[float] = None
    min_severity: Optional[Severity] = None
    allowed_tlp: Optional[List[TLP]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterRules":
        data = data or {}
        types = data.get("allowed_types")
        tlps = data.get("allowed_tlp")
        min_sev = data.get("min_severity")
        return cls(
            allowed_types=[IndicatorType(t) for t in types] if types else None,
            min_confidence=data.get("min_confidence"),
            min_severity=Severity(min_sev) if min_sev else None,
            allowed_tlp=[TLP(str(t).lower()) for t in tlps] if tlps else None,
        )


@dataclass
class FeedConfig:
    """Settings for one feed connector.

    ``polling_interval``, ``timeout`` and ``retry_delay`` are in seconds.
    """

    id: str
    type: str
    url: str
    name: str = ""
    polling_interval: float = 3600.0
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    enabled: bool = True
    max_errors: int = 5
    api_key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    filter_rules: FilterRules = field(default_factory=FilterRules)
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.polling_interval <= 0:
            raise ValueError(
                f"polling_interval must be > 0 (got {self.polling_interval})"
            )
        if self.retry_attempts < 0:
            raise ValueError(
                f"retry_attempts must be >= 0 (got {self.retry_attempts})"
            )
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0 (got {self.timeout})")
        if not self.name:
            self.name = self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedConfig":
        return cls(
            id=data["id"],
            type=data["type"],
            url=data.get("url", ""),
            name=data.get("name", ""),
            polling_interval=float(data.get("polling_interval", 3600.0)),
            timeout=float(data.get("timeout", 30.0)),
            retry_attempts=int(data.get("retry_attempts", 3)),
            retry_delay=float(data.get("retry_delay", 1.0)),
            enabled=bool(data.get("enabled", True)),
            max_errors=int(data.get("max_errors", 5)),
            api_key=data.get("api_key"),
            headers=dict(data.get("headers") or {}),
            filter_rules=FilterRules.from_dict(data.get("filter_rules")),
            options=dict(data.get("options") or {}),
        )


# ---------------------------------------------------------------------------
# Sync outcome
# ---------------------------------------------------------------------------


class SyncResult:
    """Outcome of a single connector sync."""

    def __init__(self, connector_id: str):
        self.connector_id = connector_id
        self.indicators: List[Indicator] = []
        self.errors: List[str] = []
        self.dropped: int = 0
        self.filtered: int = 0
        self.started = utcnow()
        self.duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connector": self.connector_id,
            "success": self.success,
            "indicators_count": len(self.indicators),
            "dropped": self.dropped,
            "filtered": self.filtered,
            "errors": list(self.errors),
            "started": self.started.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
        }
