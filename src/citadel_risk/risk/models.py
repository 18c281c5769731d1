# PRD: Risk Module - Dynamic Risk Records
# Reference: docs/ARCHITECTURE.md, Section: Data Model
#
#   DynamicState    - lifecycle Detected -> Draft -> Validated -> Active -> Retired
#   DynamicRisk     - a risk record driven by threat intelligence
#   TISourceRecord  - one feed sighting attributed to a risk
#   StateTransition - immutable audit row for a lifecycle change

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..intel.models import parse_timestamp


class DynamicState(str, Enum):
    """Risk lifecycle states. RETIRED is terminal."""

    DETECTED = "detected"
    DRAFT = "draft"
    VALIDATED = "validated"
    ACTIVE = "active"
    RETIRED = "retired"


def confidence_to_level(confidence: float) -> str:
    """Label for a 0-1 confidence: critical / high / medium / low."""
    if confidence >= 0.9:
        return "critical"
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"


@dataclass
class TISourceRecord:
    """A feed sighting attributed to a risk. Appended, never rewritten."""

    source: str
    confidence_score: float
    indicator_type: str
    indicator_value: str
    first_seen: Optional[datetime] = None
    recorded_at: Optional[datetime] = None

    @property
    def confidence(self) -> str:
        return confidence_to_level(self.confidence_score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "confidence": self.confidence,
            "confidence_score": self.confidence_score,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "indicator_type": self.indicator_type,
            "indicator_value": self.indicator_value,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TISourceRecord":
        return cls(
            source=data["source"],
            confidence_score=float(data.get("confidence_score", 0.0)),
            indicator_type=data.get("indicator_type", ""),
            indicator_value=data.get("indicator_value", ""),
            first_seen=parse_timestamp(data.get("first_seen")),
            recorded_at=parse_timestamp(data.get("recorded_at")),
        )


@dataclass
class FrameworkMapping:
    framework: str
    controls: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"framework": self.framework, "controls": list(self.controls)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrameworkMapping":
        return cls(framework=data["framework"], controls=list(data.get("controls") or []))


@dataclass(frozen=True)
class StateTransition:
    """One lifecycle change. ``from_state`` is None for creation."""

    risk_id: int
    from_state: Optional[DynamicState]
    to_state: DynamicState
    reason: str
    automated: bool
    actor: str
    timestamp: datetime
    confidence_change: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_id": self.risk_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "automated": self.automated,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "confidence_change": self.confidence_change,
        }


@dataclass
class DynamicRisk:
    """A risk record whose lifecycle is driven by threat intelligence.

    ``id`` is assigned by the store on insert. ``dedup_key`` is the
    ``source:indicator_value`` pair the risk was created from.
    ``confidence_score`` is on the 0-1 scale; probability and impact are
    1-5 estimates.
    """

    title: str
    dedup_key: str
    dynamic_state: Optional[DynamicState] = None
    confidence_score: float = 0.0
    description: str = ""
    category: str = "threat_intelligence"
    probability: int = 2
    impact: int = 2
    status: str = "active"
    priority: Optional[str] = None
    enrichment_summary: str = ""
    threat_intel_sources: List[TISourceRecord] = field(default_factory=list)
    framework_mappings: List[FrameworkMapping] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def risk_score(self) -> int:
        """Base score, probability x impact (1-25)."""
        return self.probability * self.impact

    @property
    def sources(self) -> List[str]:
        return [record.source for record in self.threat_intel_sources]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "dynamic_state": self.dynamic_state.value if self.dynamic_state else None,
            "confidence_score": self.confidence_score,
            "probability": self.probability,
            "impact": self.impact,
            "risk_score": self.risk_score,
            "status": self.status,
            "priority": self.priority,
            "enrichment_summary": self.enrichment_summary,
            "threat_intel_sources": [r.to_dict() for r in self.threat_intel_sources],
            "framework_mappings": [m.to_dict() for m in self.framework_mappings],
            "dedup_key": self.dedup_key,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
