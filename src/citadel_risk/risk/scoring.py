# PRD: Risk Module - Contextual Risk Scoring
# Reference: docs/ARCHITECTURE.md, Section: Contextual Risk Scoring
#
# final_score = min(100, base_score * mean(m_threat, m_vuln, m_impact, m_targeting))
#
#   m_threat    - industry targeting, geo threat, active campaigns,
#                 recent sector incidents                    (cap 3.0)
#   m_vuln      - security maturity gap, internet exposure,
#                 supply chain complexity                    (cap 2.5)
#   m_impact    - business criticality x organization size   (cap 2.0)
#   m_targeting - actors likely to target the organization   (cap 2.0)
#
# Scores are recomputed, never patched; each recorded calculation is
# appended to the per-risk history (persisted in the risk store) that
# drives trend and 30-day prediction.

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.audit_log import EventSeverity, EventType, log_audit_event
from ..intel.models import utcnow
from .models import DynamicRisk
from .store import RiskStore

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0
MIN_SCORE = 0.0
PREDICTION_DAYS = 30
HISTORY_WINDOW = 10
TREND_EPSILON = 0.5


class OrganizationSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    ENTERPRISE = "enterprise"


SIZE_MULTIPLIERS = {
    OrganizationSize.SMALL: 1.0,
    OrganizationSize.MEDIUM: 1.2,
    OrganizationSize.LARGE: 1.4,
    OrganizationSize.ENTERPRISE: 1.6,
}


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass
class OrganizationalContext:
    """Posture of the organization being scored.

    ``security_maturity``, ``business_criticality`` and
    ``geographic_threat_level`` are 0-1; ``internet_exposure`` and
    ``supply_chain_complexity`` are 1-10.
    """

    industry: str = "general"
    size: OrganizationSize = OrganizationSize.MEDIUM
    security_maturity: float = 0.5
    internet_exposure: float = 5.0
    supply_chain_complexity: float = 5.0
    business_criticality: float = 0.5
    geographic_threat_level: float = 0.5

    def __post_init__(self):
        self.size = OrganizationSize(self.size)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrganizationalContext":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ThreatLandscape:
    industry_targeting_frequency: float = 0.0
    active_campaigns: int = 0
    recent_sector_incidents: int = 0
    # actor name -> likelihood (0-1) that the actor targets this organization
    actor_targeting_likelihood: Dict[str, float] = field(default_factory=dict)


@dataclass
class IntelligenceQuality:
    data_freshness: float = 0.7
    source_reliability: float = 0.7
    analysis_confidence: float = 0.7

    @property
    def mean(self) -> float:
        return (self.data_freshness + self.source_reliability + self.analysis_confidence) / 3


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass
class ScoreMultipliers:
    threat_landscape: float = 1.0
    vulnerability: float = 1.0
    impact: float = 1.0
    targeting: float = 1.0

    @property
    def mean(self) -> float:
        return (self.threat_landscape + self.vulnerability + self.impact + self.targeting) / 4

    def to_dict(self) -> Dict[str, float]:
        return {
            "threat_landscape": round(self.threat_landscape, 4),
            "vulnerability": round(self.vulnerability, 4),
            "impact": round(self.impact, 4),
            "targeting": round(self.targeting, 4),
        }


@dataclass
class RiskTrend:
    direction: TrendDirection
    velocity: float
    predicted_30d: float
    confidence_interval: Tuple[float, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "velocity": round(self.velocity, 4),
            "predicted_30d": round(self.predicted_30d, 2),
            "confidence_interval": [round(v, 2) for v in self.confidence_interval],
        }


@dataclass
class ScoreFactor:
    """One line of a score explanation."""

    name: str
    value: float
    contribution: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": round(self.value, 4),
            "contribution": round(self.contribution, 4),
        }


@dataclass
class ContextualRiskScore:
    risk_id: Any
    base_score: float
    multipliers: ScoreMultipliers
    final_score: float
    confidence_level: str
    calculated_at: datetime
    trend: Optional[RiskTrend] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_id": self.risk_id,
            "base_score": self.base_score,
            "multipliers": self.multipliers.to_dict(),
            "final_score": round(self.final_score, 2),
            "confidence_level": self.confidence_level,
            "calculated_at": self.calculated_at.isoformat(),
            "trend": self.trend.to_dict() if self.trend else None,
        }


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------


def threat_landscape_multiplier(landscape: ThreatLandscape, org: OrganizationalContext) -> float:
    multiplier = (
        1.0
        + 0.5 * landscape.industry_targeting_frequency
        + 0.3 * org.geographic_threat_level
        + 0.2 * min(landscape.active_campaigns / 10.0, 1.0)
        + 0.3 * min(landscape.recent_sector_incidents / 20.0, 1.0)
    )
    return min(3.0, multiplier)


def vulnerability_multiplier(org: OrganizationalContext) -> float:
    multiplier = (
        1.0
        + 0.8 * (1.0 - org.security_maturity)
        + 0.3 * (org.internet_exposure / 10.0)
        + 0.2 * (org.supply_chain_complexity / 10.0)
    )
    return min(2.5, multiplier)


def impact_multiplier(org: OrganizationalContext) -> float:
    return min(2.0, (1.0 + 0.6 * org.business_criticality) * SIZE_MULTIPLIERS[org.size])


def targeting_multiplier(landscape: ThreatLandscape) -> float:
    multiplier = 1.0
    for likelihood in landscape.actor_targeting_likelihood.values():
        if likelihood > 0.7:
            multiplier += 0.3
        elif likelihood > 0.4:
            multiplier += 0.1
    return min(2.0, multiplier)


def confidence_level(quality: IntelligenceQuality) -> str:
    mean = quality.mean
    if mean > 0.8:
        return "high"
    if mean > 0.6:
        return "medium"
    return "low"


def _clamp(value: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def calculate_trend(history: Sequence[float], current: float) -> RiskTrend:
    """Trend of ``current`` against earlier scores, oldest first.

    Velocity is the mean successive difference of ``history``; the
    30-day prediction and its 95% interval are clamped to 0-100.
    """
    if history:
        difference = current - history[-1]
    else:
        difference = 0.0
    if difference > TREND_EPSILON:
        direction = TrendDirection.INCREASING
    elif difference < -TREND_EPSILON:
        direction = TrendDirection.DECREASING
    else:
        direction = TrendDirection.STABLE

    if len(history) >= 2:
        steps = [b - a for a, b in zip(history, history[1:])]
        velocity = sum(steps) / len(steps)
    else:
        velocity = 0.0

    predicted = _clamp(current + velocity * PREDICTION_DAYS)
    if history:
        mean = sum(history) / len(history)
        variance = sum((s - mean) ** 2 for s in history) / len(history)
    else:
        variance = 0.0
    margin = 1.96 * math.sqrt(variance)
    return RiskTrend(
        direction=direction,
        velocity=velocity,
        predicted_30d=predicted,
        confidence_interval=(_clamp(predicted - margin), _clamp(predicted + margin)),
    )


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class ContextualRiskScorer:
    """Scores risks against organizational posture and threat landscape.

    Keeps the last scores per risk (bounded) for trend analysis. With a
    ``store`` every recorded score is also persisted and the history of
    a risk not yet seen by this process is loaded from it.
    """

    def __init__(
        self,
        organization: Optional[OrganizationalContext] = None,
        landscape: Optional[ThreatLandscape] = None,
        history_window: int = HISTORY_WINDOW,
        clock: Callable[[], datetime] = utcnow,
        store: Optional[RiskStore] = None,
    ):
        self.organization = organization or OrganizationalContext()
        self.landscape = landscape or ThreatLandscape()
        self.history_window = history_window
        self.store = store
        self._clock = clock
        self._history: Dict[Any, List[float]] = {}
        self._lock = threading.Lock()

    def multipliers(
        self,
        organization: Optional[OrganizationalContext] = None,
        landscape: Optional[ThreatLandscape] = None,
    ) -> ScoreMultipliers:
        org = organization or self.organization
        land = landscape or self.landscape
        return ScoreMultipliers(
            threat_landscape=threat_landscape_multiplier(land, org),
            vulnerability=vulnerability_multiplier(org),
            impact=impact_multiplier(org),
            targeting=targeting_multiplier(land),
        )

    def score(
        self,
        risk_id: Any,
        base_score: float,
        quality: Optional[IntelligenceQuality] = None,
        multipliers: Optional[ScoreMultipliers] = None,
        organization: Optional[OrganizationalContext] = None,
        landscape: Optional[ThreatLandscape] = None,
        record: bool = True,
    ) -> ContextualRiskScore:
        """Compute a fresh score.

        ``multipliers`` overrides the values derived from organization
        and landscape. With ``record`` the score is appended to the
        history, persisted when a store is attached, and audited; without
        it nothing is written, which suits read-only views.
        """
        multipliers = multipliers or self.multipliers(organization, landscape)
        final = min(MAX_SCORE, base_score * multipliers.mean)

        with self._lock:
            scores = self._load_history(risk_id)
            history = list(scores)
            if record:
                scores.append(final)
                del scores[: -self.history_window]

        result = ContextualRiskScore(
            risk_id=risk_id,
            base_score=base_score,
            multipliers=multipliers,
            final_score=final,
            confidence_level=confidence_level(quality or IntelligenceQuality()),
            calculated_at=self._clock(),
            trend=calculate_trend(history, final) if history else None,
        )
        if not record:
            return result

        if self.store is not None:
            self.store.save_score(result)
        logger.debug("Risk %s scored %.2f (base %.1f)", risk_id, final, base_score)
        log_audit_event(
            EventType.SCORE_CALCULATED,
            EventSeverity.INFO,
            f"Risk {risk_id} scored {final:.2f}",
            details=result.to_dict(),
        )
        return result

    def score_risk(
        self,
        risk: DynamicRisk,
        quality: Optional[IntelligenceQuality] = None,
        record: bool = True,
    ) -> ContextualRiskScore:
        """Score a stored risk from its probability x impact."""
        if quality is None:
            quality = IntelligenceQuality(analysis_confidence=risk.confidence_score)
        return self.score(risk.id, float(risk.risk_score), quality=quality, record=record)

    def history(self, risk_id: Any) -> List[float]:
        with self._lock:
            return list(self._load_history(risk_id))

    def _load_history(self, risk_id: Any) -> List[float]:
        # caller holds self._lock
        scores = self._history.get(risk_id)
        if scores is None:
            scores = []
            if self.store is not None and isinstance(risk_id, int):
                stored = self.store.score_history(risk_id, limit=self.history_window)
                scores = [entry["final_score"] for entry in stored]
            self._history[risk_id] = scores
        return scores

    @staticmethod
    def explain(score: ContextualRiskScore) -> List[ScoreFactor]:
        """Factor breakdown. Each multiplier's contribution is its uplift
        over the base score; base plus contributions gives the uncapped
        final score."""
        m = score.multipliers
        factors = [ScoreFactor("base_score", score.base_score, score.base_score)]
        for name, value in (
            ("threat_landscape", m.threat_landscape),
            ("vulnerability", m.vulnerability),
            ("impact", m.impact),
            ("targeting", m.targeting),
        ):
            factors.append(ScoreFactor(name, value, score.base_score * (value - 1.0) / 4))
        return factors
