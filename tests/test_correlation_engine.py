"""
Tests for the correlation engine, attribution and cluster store.

Covers: infrastructure components, temporal windows and links,
behavioral and campaign grouping, actor attribution (including campaign
fallback and failure isolation), attribution regrouping, batch
windowing and the append-only run store.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from citadel_risk.correlation import (
    Attributor,
    AttributionFeatures,
    ClusterStore,
    ClusterType,
    CorrelationEngine,
    DuplicateRun,
    HeuristicScoringProvider,
)
from citadel_risk.correlation.engine import (
    behavior_signature,
    campaign_key,
    cluster_confidence,
    cluster_risk_level,
)
from citadel_risk.correlation.attribution import technique_similarity
from citadel_risk.correlation.models import UNKNOWN_ACTOR, EvidenceStrength
from citadel_risk.intel.models import IndicatorType, Severity

T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _at(hours):
    return T0 + timedelta(hours=hours)


# ===================================================================
# Fixtures & helpers
# ===================================================================

@pytest.fixture
def store():
    return ClusterStore()


@pytest.fixture
def engine(store):
    return CorrelationEngine(store=store, clock=lambda: T0)


@pytest.fixture
def apt_batch(make_indicator):
    """Two attributed IPs from one actor plus an unrelated, later domain."""
    a = make_indicator("203.0.113.10", first_seen=_at(0), threat_actor="APT-X",
                       campaign="Op-A", mitre_technique="T1566", kill_chain_phase="delivery")
    b = make_indicator("203.0.113.11", first_seen=_at(0.5), threat_actor="APT-X",
                       campaign="Op-A", mitre_technique="T1566", kill_chain_phase="delivery")
    c = make_indicator("evil-login.com", type=IndicatorType.DOMAIN, first_seen=_at(240),
                       severity=Severity.MEDIUM)
    return [a, b, c]


# ===================================================================
# Helpers
# ===================================================================

class TestHelpers:
    def test_cluster_confidence(self):
        assert cluster_confidence(0.75, 2) == pytest.approx(0.575)
        assert cluster_confidence(1.0, 10) == 0.95

    def test_risk_level(self, make_indicator):
        crit = make_indicator("10.0.0.1", severity=Severity.CRITICAL)
        high = make_indicator("10.0.0.2", severity=Severity.HIGH)
        low = make_indicator("10.0.0.3", severity=Severity.LOW)
        assert cluster_risk_level([crit, crit]) is Severity.CRITICAL
        assert cluster_risk_level([crit, high]) is Severity.CRITICAL
        assert cluster_risk_level([high, high]) is Severity.HIGH
        assert cluster_risk_level([high, low]) is Severity.MEDIUM
        assert cluster_risk_level([]) is Severity.MEDIUM

    def test_behavior_signature(self, make_indicator):
        assert behavior_signature(make_indicator(mitre_technique="T1059")) == "T1059-unknown"
        assert behavior_signature(make_indicator(kill_chain_phase="delivery")) == "unknown-delivery"
        assert behavior_signature(make_indicator()) is None

    def test_campaign_key_falls_back_to_actor(self, make_indicator):
        assert campaign_key(make_indicator(campaign="Op", threat_actor="X")) == "Op"
        assert campaign_key(make_indicator(threat_actor="X")) == "X"
        assert campaign_key(make_indicator()) is None


# ===================================================================
# Strategies
# ===================================================================

class TestInfrastructure:
    def test_connected_components(self, engine, make_indicator):
        # .1 and .1.2 are not directly similar but join through .0.2
        batch = [make_indicator(v) for v in ("10.0.0.1", "10.0.0.2", "10.0.1.2", "192.168.5.5")]
        run = engine.correlate(batch)
        infra = run.clusters_of(ClusterType.INFRASTRUCTURE)
        assert len(infra) == 1
        members = {batch[i].id for i in range(3)}
        assert set(infra[0].member_ids) == members
        assert batch[3].id not in infra[0].member_ids

    def test_domains_cluster_separately(self, engine, make_indicator):
        batch = [
            make_indicator("qwerty12.net", type=IndicatorType.DOMAIN),
            make_indicator("qwertyzz.net", type=IndicatorType.DOMAIN),
            make_indicator("10.0.0.1"),
        ]
        infra = engine.correlate(batch).clusters_of(ClusterType.INFRASTRUCTURE)
        assert len(infra) == 1
        assert infra[0].correlation_strength == pytest.approx(0.65)
        assert infra[0].label.startswith("domain:")

    def test_strength_and_confidence(self, engine, apt_batch):
        cluster = engine.correlate(apt_batch).clusters_of(ClusterType.INFRASTRUCTURE)[0]
        assert cluster.correlation_strength == pytest.approx(0.75)
        assert cluster.cluster_confidence == pytest.approx(0.575)
        assert cluster.risk_level is Severity.HIGH
        assert cluster.first_seen == _at(0)
        assert cluster.last_seen == _at(0.5)


class TestTemporal:
    def test_window_needs_three_members(self, engine, make_indicator):
        batch = [make_indicator(f"198.51.100.{n}", type=IndicatorType.HASH, first_seen=_at(h))
                 for n, h in ((1, 0), (2, 2), (3, 5), (4, 30))]
        temporal = engine.correlate(batch).clusters_of(ClusterType.TEMPORAL)
        assert len(temporal) == 1
        assert temporal[0].member_ids == [b.id for b in batch[:3]]
        # every pair 2-5h apart
        assert temporal[0].correlation_strength == pytest.approx(0.7)

    def test_two_close_indicators_do_not_cluster(self, engine, apt_batch):
        assert engine.correlate(apt_batch).clusters_of(ClusterType.TEMPORAL) == []

    def test_each_indicator_in_one_temporal_cluster(self, engine, make_indicator):
        batch = [make_indicator(f"198.51.100.{n}", first_seen=_at(n * 4)) for n in range(12)]
        temporal = engine.correlate(batch).clusters_of(ClusterType.TEMPORAL)
        seen = [m for c in temporal for m in c.member_ids]
        assert len(seen) == len(set(seen))
        assert len(temporal) == 2

    def test_links(self, engine, make_indicator):
        a = make_indicator("10.0.0.1", first_seen=_at(0))
        b = make_indicator("10.0.0.2", first_seen=_at(0.5))
        c = make_indicator("10.0.0.3", first_seen=_at(200))
        links = engine.temporal_links([c, a, b])
        assert len(links) == 1
        assert (links[0].primary_id, links[0].related_id) == (a.id, b.id)
        assert links[0].weight == 0.9
        assert links[0].gap_hours == pytest.approx(0.5)

    def test_no_link_beyond_a_week(self, engine, make_indicator):
        a = make_indicator("10.0.0.1", first_seen=_at(0))
        b = make_indicator("10.0.0.2", first_seen=_at(169))
        assert engine.temporal_links([a, b]) == []


class TestBehavioralAndCampaign:
    def test_behavioral_grouping(self, engine, apt_batch):
        behavioral = engine.correlate(apt_batch).clusters_of(ClusterType.BEHAVIORAL)
        assert len(behavioral) == 1
        assert behavioral[0].label == "T1566-delivery"
        assert behavioral[0].correlation_strength == pytest.approx(0.5)

    def test_behavioral_strength_uses_family_and_tags(self, engine, make_indicator):
        batch = [
            make_indicator("10.0.0.1", mitre_technique="T1059", malware_family="Emotet",
                           tags=["a", "b"]),
            make_indicator("172.16.0.1", mitre_technique="T1059", malware_family="Emotet",
                           tags=["a", "b"]),
        ]
        behavioral = engine.correlate(batch).clusters_of(ClusterType.BEHAVIORAL)[0]
        assert behavioral.correlation_strength == pytest.approx(1.0)

    def test_campaign_grouping(self, engine, apt_batch):
        campaign = engine.correlate(apt_batch).clusters_of(ClusterType.CAMPAIGN)
        assert len(campaign) == 1
        assert campaign[0].label == "Op-A"
        # same technique, no family
        assert campaign[0].correlation_strength == pytest.approx(0.75)

    def test_singletons_dropped(self, engine, make_indicator):
        batch = [make_indicator("10.0.0.1", campaign="Solo", mitre_technique="T1")]
        run = engine.correlate(batch)
        assert run.clusters == []


# ===================================================================
# Attribution
# ===================================================================

class TestAttribution:
    def test_actor_attribution(self, engine, apt_batch):
        run = engine.correlate(apt_batch)
        infra = run.clusters_of(ClusterType.INFRASTRUCTURE)[0]
        attribution = infra.attribution
        assert attribution.actor == "APT-X"
        assert attribution.campaign == "Op-A"
        # 0.4 * 1.0 + 0.35 * 1.0 + 0.25 * 0.9
        assert attribution.confidence == pytest.approx(0.975)
        assert attribution.evidence_strength is EvidenceStrength.STRONG
        assert attribution.factors == {
            "infrastructure": 1.0, "technique": 1.0, "timing": pytest.approx(0.9),
        }

    def test_attribution_cluster_regroups_per_actor(self, engine, apt_batch):
        run = engine.correlate(apt_batch)
        attributed = run.clusters_of(ClusterType.ATTRIBUTION)
        assert len(attributed) == 1
        cluster = attributed[0]
        assert cluster.label == "APT-X"
        assert set(cluster.member_ids) == {apt_batch[0].id, apt_batch[1].id}
        assert cluster.correlation_strength == pytest.approx(0.975)
        assert cluster.attribution.actor == "APT-X"
        assert len(cluster.evidence) == 3

    def test_campaign_fallback(self, engine, make_indicator):
        batch = [
            make_indicator("10.1.1.1", first_seen=_at(0), campaign="Op-B"),
            make_indicator("10.1.1.2", first_seen=_at(1), campaign="Op-B"),
        ]
        run = engine.correlate(batch)
        attribution = run.clusters_of(ClusterType.CAMPAIGN)[0].attribution
        assert attribution.actor == UNKNOWN_ACTOR
        assert attribution.campaign == "Op-B"
        # infrastructure 1.0, no techniques, timing 0.9
        assert attribution.confidence == pytest.approx(0.625)
        labels = [c.label for c in run.clusters_of(ClusterType.ATTRIBUTION)]
        assert labels == ["campaign:Op-B"]

    def test_unknown_without_declared_context(self, engine, make_indicator):
        batch = [make_indicator("10.0.0.1"), make_indicator("10.0.0.2")]
        run = engine.correlate(batch)
        attribution = run.clusters_of(ClusterType.INFRASTRUCTURE)[0].attribution
        assert attribution.actor == UNKNOWN_ACTOR
        assert not attribution.attributed
        assert attribution.confidence == 0.0
        assert run.clusters_of(ClusterType.ATTRIBUTION) == []

    def test_competing_actors_listed_as_alternatives(self, make_indicator):
        a = make_indicator("10.0.0.1", first_seen=_at(0), threat_actor="APT-X", mitre_technique="T1")
        b = make_indicator("10.0.0.2", first_seen=_at(0.2), threat_actor="APT-X", mitre_technique="T1")
        c = make_indicator("10.0.0.3", first_seen=_at(0.4), threat_actor="APT-Y", mitre_technique="T9")
        attribution = Attributor().attribute([a, b, c], [a, b, c])
        assert attribution.actor == "APT-X"
        assert [alt.actor for alt in attribution.alternatives] == ["APT-Y"]
        assert attribution.alternatives[0].confidence < attribution.confidence

    def test_technique_similarity_ignores_the_member_itself(self, make_indicator):
        lone = make_indicator("10.0.0.1", threat_actor="APT-X", mitre_technique="T1566")
        assert technique_similarity([lone], [lone]) == 0.0

        peer = make_indicator("10.9.9.9", threat_actor="APT-X", mitre_technique="T1566")
        assert technique_similarity([lone], [lone, peer]) == 1.0

        other = make_indicator("10.8.8.8", threat_actor="APT-X", mitre_technique="T1059")
        assert technique_similarity([lone], [lone, peer, other]) == pytest.approx(0.5)

    def test_self_only_profile_adds_no_technique_evidence(self, make_indicator):
        lone = make_indicator("10.0.0.1", threat_actor="APT-X", mitre_technique="T1566")
        features = Attributor().features([lone], [lone])
        assert features == AttributionFeatures(0.0, 0.0, 0.0)

    def test_failure_is_isolated(self, store, apt_batch):
        attributor = MagicMock(spec=Attributor)
        attributor.attribute.side_effect = RuntimeError("model offline")
        engine = CorrelationEngine(store=store, attributor=attributor)
        run = engine.correlate(apt_batch)
        assert run.clusters
        assert len(run.errors) == len(run.clusters)
        for cluster in run.clusters:
            assert cluster.cluster_confidence == 0.0
            assert not cluster.attribution.attributed
        assert run.clusters_of(ClusterType.ATTRIBUTION) == []

    def test_pluggable_provider(self, store, apt_batch):
        class Pessimist:
            def score(self, features):
                return 0.1

        engine = CorrelationEngine(store=store, attributor=Attributor(Pessimist()))
        run = engine.correlate(apt_batch)
        assert run.clusters_of(ClusterType.INFRASTRUCTURE)[0].attribution.confidence == 0.1
        assert run.clusters_of(ClusterType.ATTRIBUTION) == []

    def test_heuristic_provider_is_clamped(self):
        provider = HeuristicScoringProvider(infrastructure_weight=2.0)
        assert provider.score(AttributionFeatures(1.0, 1.0, 1.0)) == 1.0
        assert provider.score(AttributionFeatures()) == 0.0


# ===================================================================
# Run handling & store
# ===================================================================

class TestRuns:
    def test_clusters_carry_run_id(self, engine, apt_batch):
        run = engine.correlate(apt_batch, run_id="corr_1")
        assert run.run_id == "corr_1"
        assert all(c.run_id == "corr_1" for c in run.clusters)
        assert len(run.temporal_links) == 1

    def test_duplicates_collapsed(self, engine, apt_batch):
        run = engine.correlate(apt_batch + apt_batch)
        assert run.indicator_count == 3

    def test_window_filters_batch(self, engine, apt_batch):
        run = engine.correlate(apt_batch, window=(_at(0), _at(1)))
        assert run.indicator_count == 2

    def test_runs_are_append_only(self, engine, store, apt_batch):
        engine.correlate(apt_batch, run_id="r1")
        engine.correlate(apt_batch[:1], run_id="r2")
        assert store.run_ids() == ["r1", "r2"]
        assert len(store) == 2
        assert len(store.get_run("r1").clusters) == 4
        assert store.latest().run_id == "r2"
        with pytest.raises(DuplicateRun):
            engine.correlate(apt_batch, run_id="r1")

    def test_store_returns_copies(self, engine, store, apt_batch):
        engine.correlate(apt_batch, run_id="r1")
        fetched = store.get_run("r1")
        fetched.clusters.clear()
        assert len(store.get_run("r1").clusters) == 4
        assert len(store.clusters("r1", ClusterType.BEHAVIORAL)) == 1
        assert store.clusters("missing") == []

    def test_empty_store(self, store):
        assert store.latest() is None
        assert store.get_run("x") is None

    def test_to_dict(self, engine, apt_batch):
        data = engine.correlate(apt_batch, run_id="r1").to_dict()
        assert data["run_id"] == "r1"
        assert data["cluster_count"] == 4
        assert data["clusters"][0]["attribution"]["actor"] == "APT-X"
