# PRD: Correlation Module - Cluster & Attribution Models
# Reference: docs/ARCHITECTURE.md, Section: Data Model

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..intel.models import Severity


class ClusterType(str, Enum):
    """Strategy that produced a cluster."""

    INFRASTRUCTURE = "infrastructure"
    TEMPORAL = "temporal"
    BEHAVIORAL = "behavioral"
    CAMPAIGN = "campaign"
    ATTRIBUTION = "attribution"


class EvidenceStrength(str, Enum):
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"

    @classmethod
    def from_confidence(cls, confidence: float) -> "EvidenceStrength":
        if confidence >= 0.7:
            return cls.STRONG
        if confidence >= 0.4:
            return cls.MODERATE
        return cls.WEAK


UNKNOWN_ACTOR = "Unknown"


@dataclass
class AlternativeAttribution:
    actor: str
    confidence: float
    campaign: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor": self.actor,
            "confidence": round(self.confidence, 4),
            "campaign": self.campaign,
        }


@dataclass
class ThreatAttribution:
    """Inferred actor/campaign for a cluster.

    ``alternatives`` holds the runner-up candidates, highest confidence
    first.
    """

    actor: str = UNKNOWN_ACTOR
    campaign: Optional[str] = None
    confidence: float = 0.0
    evidence: List[str] = field(default_factory=list)
    factors: Dict[str, float] = field(default_factory=dict)
    alternatives: List[AlternativeAttribution] = field(default_factory=list)
    attribution_id: str = field(default_factory=lambda: f"attr_{uuid4().hex[:12]}")

    @property
    def evidence_strength(self) -> EvidenceStrength:
        return EvidenceStrength.from_confidence(self.confidence)

    @property
    def attributed(self) -> bool:
        return self.actor != UNKNOWN_ACTOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribution_id": self.attribution_id,
            "actor": self.actor,
            "campaign": self.campaign,
            "confidence": round(self.confidence, 4),
            "evidence_strength": self.evidence_strength.value,
            "evidence": list(self.evidence),
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
            "alternative_attributions": [a.to_dict() for a in self.alternatives],
        }


@dataclass
class CorrelationCluster:
    """Indicators linked by one strategy within one correlation run."""

    cluster_type: ClusterType
    member_ids: List[str]
    run_id: str = ""
    label: str = ""
    correlation_strength: float = 0.0
    cluster_confidence: float = 0.0
    risk_level: Severity = Severity.MEDIUM
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    evidence: List[str] = field(default_factory=list)
    attribution: Optional[ThreatAttribution] = None
    cluster_id: str = field(default_factory=lambda: f"cluster_{uuid4().hex[:12]}")

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "run_id": self.run_id,
            "cluster_type": self.cluster_type.value,
            "label": self.label,
            "member_ids": list(self.member_ids),
            "size": self.size,
            "correlation_strength": round(self.correlation_strength, 4),
            "cluster_confidence": round(self.cluster_confidence, 4),
            "risk_level": self.risk_level.value,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "evidence": list(self.evidence),
            "attribution": self.attribution.to_dict() if self.attribution else None,
        }


@dataclass
class TemporalLink:
    """Pairwise temporal correlation between two indicators."""

    primary_id: str
    related_id: str
    gap_hours: float
    weight: float


@dataclass
class CorrelationRun:
    """Output of one correlation pass. Never mutated once stored."""

    run_id: str
    started: datetime
    indicator_count: int = 0
    clusters: List[CorrelationCluster] = field(default_factory=list)
    temporal_links: List[TemporalLink] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    finished: Optional[datetime] = None

    def clusters_of(self, cluster_type: ClusterType) -> List[CorrelationCluster]:
        return [c for c in self.clusters if c.cluster_type == cluster_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "indicator_count": self.indicator_count,
            "cluster_count": len(self.clusters),
            "clusters": [c.to_dict() for c in self.clusters],
            "temporal_links": len(self.temporal_links),
            "errors": list(self.errors),
        }
