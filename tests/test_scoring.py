"""
Tests for contextual risk scoring.

Covers: the four multipliers and their caps, final score capping,
confidence levels, trend direction/velocity/prediction, bounded score
history, the factor breakdown, read-only previews and score persistence.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from citadel_risk.core import EventType
from citadel_risk.risk.models import DynamicRisk, DynamicState, StateTransition
from citadel_risk.risk.scoring import (
    ContextualRiskScore,
    ContextualRiskScorer,
    IntelligenceQuality,
    OrganizationalContext,
    OrganizationSize,
    ScoreMultipliers,
    ThreatLandscape,
    TrendDirection,
    calculate_trend,
    confidence_level,
    impact_multiplier,
    targeting_multiplier,
    threat_landscape_multiplier,
    vulnerability_multiplier,
)
from citadel_risk.risk.store import RiskStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

EXAMPLE = ScoreMultipliers(threat_landscape=1.4, vulnerability=1.2, impact=1.3, targeting=1.1)


@pytest.fixture
def scorer():
    return ContextualRiskScorer(clock=lambda: NOW)


# ===================================================================
# Multipliers
# ===================================================================

class TestMultipliers:
    def test_defaults(self):
        org = OrganizationalContext()
        land = ThreatLandscape()
        assert threat_landscape_multiplier(land, org) == pytest.approx(1.15)
        assert vulnerability_multiplier(org) == pytest.approx(1.65)
        assert impact_multiplier(org) == pytest.approx(1.56)
        assert targeting_multiplier(land) == 1.0

    def test_threat_landscape_saturates_inputs(self):
        org = OrganizationalContext(geographic_threat_level=1.0)
        land = ThreatLandscape(industry_targeting_frequency=1.0, active_campaigns=50,
                               recent_sector_incidents=100)
        assert threat_landscape_multiplier(land, org) == pytest.approx(2.3)

    def test_vulnerability_tracks_maturity(self):
        weak = OrganizationalContext(security_maturity=0.0, internet_exposure=10, supply_chain_complexity=10)
        strong = OrganizationalContext(security_maturity=1.0, internet_exposure=0, supply_chain_complexity=0)
        assert vulnerability_multiplier(weak) == pytest.approx(2.3)
        assert vulnerability_multiplier(strong) == pytest.approx(1.0)

    def test_impact_capped(self):
        org = OrganizationalContext(business_criticality=1.0, size=OrganizationSize.ENTERPRISE)
        assert impact_multiplier(org) == 2.0
        small = OrganizationalContext(business_criticality=0.0, size="small")
        assert impact_multiplier(small) == 1.0

    def test_targeting(self):
        land = ThreatLandscape(actor_targeting_likelihood={"APT-X": 0.9, "FIN7": 0.5, "noise": 0.2})
        assert targeting_multiplier(land) == pytest.approx(1.4)
        crowded = ThreatLandscape(actor_targeting_likelihood={f"actor-{n}": 0.95 for n in range(5)})
        assert targeting_multiplier(crowded) == 2.0

    def test_org_context_from_dict(self):
        org = OrganizationalContext.from_dict({"industry": "finance", "size": "large", "unknown": 1})
        assert org.industry == "finance"
        assert org.size is OrganizationSize.LARGE
        assert OrganizationalContext.from_dict(None) == OrganizationalContext()

    def test_confidence_level(self):
        assert confidence_level(IntelligenceQuality(0.9, 0.9, 0.9)) == "high"
        assert confidence_level(IntelligenceQuality()) == "medium"
        assert confidence_level(IntelligenceQuality(0.5, 0.5, 0.5)) == "low"


# ===================================================================
# Trend
# ===================================================================

class TestTrend:
    def test_stable_with_velocity_and_interval(self):
        trend = calculate_trend([10.0, 11.0, 12.0], 12.2)
        assert trend.direction is TrendDirection.STABLE
        assert trend.velocity == pytest.approx(1.0)
        assert trend.predicted_30d == pytest.approx(42.2)
        low, high = trend.confidence_interval
        assert low == pytest.approx(42.2 - 1.6003, abs=1e-3)
        assert high == pytest.approx(42.2 + 1.6003, abs=1e-3)

    def test_decreasing(self):
        trend = calculate_trend([50.0], 40.0)
        assert trend.direction is TrendDirection.DECREASING
        assert trend.velocity == 0.0
        assert trend.predicted_30d == 40.0
        assert trend.confidence_interval == (40.0, 40.0)

    def test_increasing_prediction_clamped(self):
        trend = calculate_trend([10.0, 20.0, 30.0], 40.0)
        assert trend.direction is TrendDirection.INCREASING
        assert trend.predicted_30d == 100.0
        assert trend.confidence_interval[1] == 100.0

    def test_negative_prediction_clamped(self):
        trend = calculate_trend([30.0, 20.0], 10.0)
        assert trend.predicted_30d == 0.0
        assert trend.confidence_interval[0] == 0.0


# ===================================================================
# Scorer
# ===================================================================

class TestScorer:
    def test_worked_example(self, scorer):
        result = scorer.score("risk-1", 15, multipliers=EXAMPLE)
        assert result.multipliers.mean == pytest.approx(1.25)
        assert result.final_score == pytest.approx(18.75)
        assert result.trend is None
        assert result.calculated_at == NOW

    def test_final_score_capped(self, scorer):
        result = scorer.score("risk-1", 25, multipliers=ScoreMultipliers(5.0, 5.0, 5.0, 5.0))
        assert result.final_score == 100.0

    def test_derived_multipliers(self):
        scorer = ContextualRiskScorer(OrganizationalContext(), ThreatLandscape())
        result = scorer.score("r", 10)
        expected_mean = (1.15 + 1.65 + 1.56 + 1.0) / 4
        assert result.final_score == pytest.approx(10 * expected_mean)

    def test_per_call_context_override(self, scorer):
        hardened = OrganizationalContext(security_maturity=1.0, internet_exposure=0,
                                         supply_chain_complexity=0)
        default = scorer.score("a", 10).final_score
        override = scorer.score("b", 10, organization=hardened).final_score
        assert override < default

    def test_trend_from_history(self, scorer):
        scorer.score("r", 10, multipliers=ScoreMultipliers())
        second = scorer.score("r", 20, multipliers=ScoreMultipliers())
        assert second.trend is not None
        assert second.trend.direction is TrendDirection.INCREASING
        assert scorer.history("r") == [10.0, 20.0]

    def test_history_bounded(self, scorer):
        for n in range(12):
            scorer.score("r", float(n), multipliers=ScoreMultipliers())
        assert scorer.history("r") == [float(n) for n in range(2, 12)]
        assert scorer.history("unknown") == []

    def test_score_risk_uses_probability_times_impact(self, scorer):
        risk = DynamicRisk(title="t", dedup_key="otx:x", probability=3, impact=5,
                           confidence_score=0.9, id=7)
        result = scorer.score_risk(risk)
        assert result.risk_id == 7
        assert result.base_score == 15.0
        assert result.confidence_level == "medium"

    def test_explain(self, scorer):
        result = scorer.score("r", 15, multipliers=EXAMPLE)
        factors = ContextualRiskScorer.explain(result)
        assert [f.name for f in factors] == [
            "base_score", "threat_landscape", "vulnerability", "impact", "targeting",
        ]
        assert [f.contribution for f in factors[1:]] == pytest.approx([1.5, 0.75, 1.125, 0.375])
        assert sum(f.contribution for f in factors) == pytest.approx(result.final_score)

    def test_to_dict(self, scorer):
        data = scorer.score("r", 15, multipliers=EXAMPLE).to_dict()
        assert data["final_score"] == 18.75
        assert data["multipliers"]["threat_landscape"] == 1.4
        assert data["trend"] is None


# ===================================================================
# Recording and persistence
# ===================================================================

@pytest.fixture
def store():
    s = RiskStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def risk_id(store):
    creation = StateTransition(
        risk_id=0, from_state=None, to_state=DynamicState.DETECTED, reason="created",
        automated=True, actor="system", timestamp=NOW,
    )
    return store.insert_risk(DynamicRisk(title="t", dedup_key="otx:x"), creation).id


class TestRecording:
    def test_preview_records_nothing(self, scorer):
        with patch("citadel_risk.risk.scoring.log_audit_event") as audit:
            preview = scorer.score("r", 10, multipliers=ScoreMultipliers(), record=False)
        assert preview.final_score == 10.0
        assert scorer.history("r") == []
        audit.assert_not_called()

    def test_preview_sees_existing_trend(self, scorer):
        scorer.score("r", 10, multipliers=ScoreMultipliers())
        preview = scorer.score("r", 20, multipliers=ScoreMultipliers(), record=False)
        assert preview.trend.direction is TrendDirection.INCREASING
        assert scorer.history("r") == [10.0]

    def test_recorded_score_is_audited(self, scorer):
        with patch("citadel_risk.risk.scoring.log_audit_event") as audit:
            scorer.score("r", 10, multipliers=ScoreMultipliers())
        audit.assert_called_once()
        assert audit.call_args[0][0] is EventType.SCORE_CALCULATED

    def test_scores_persisted_to_store(self, store, risk_id):
        scorer = ContextualRiskScorer(clock=lambda: NOW, store=store)
        scorer.score(risk_id, 10, multipliers=ScoreMultipliers())
        scorer.score(risk_id, 12, multipliers=ScoreMultipliers(), record=False)
        scorer.score(risk_id, 15, multipliers=ScoreMultipliers())
        assert [s["final_score"] for s in store.score_history(risk_id)] == [10.0, 15.0]

    def test_history_seeded_from_store(self, store, risk_id):
        ContextualRiskScorer(clock=lambda: NOW, store=store).score(risk_id, 10, multipliers=ScoreMultipliers())

        restarted = ContextualRiskScorer(clock=lambda: NOW, store=store)
        assert restarted.history(risk_id) == [10.0]
        result = restarted.score(risk_id, 20, multipliers=ScoreMultipliers())
        assert result.trend is not None
        assert result.trend.direction is TrendDirection.INCREASING
        assert [s["final_score"] for s in store.score_history(risk_id)] == [10.0, 20.0]

    def test_seeded_history_respects_window(self, store, risk_id):
        for n in range(5):
            store.save_score(ContextualRiskScore(
                risk_id=risk_id, base_score=float(n), multipliers=ScoreMultipliers(),
                final_score=float(n), confidence_level="low", calculated_at=NOW,
            ))
        scorer = ContextualRiskScorer(clock=lambda: NOW, store=store, history_window=3)
        assert scorer.history(risk_id) == [2.0, 3.0, 4.0]
