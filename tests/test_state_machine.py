"""
Tests for the dynamic risk state machine.

Covers: the allowed edge set, creation, manual and automated
transitions, terminal Retired, audit history, auto-promotion rules,
the Detected sweep, and concurrent transitions on one risk.
"""

import threading
from datetime import datetime, timezone

import pytest

from citadel_risk.risk.models import DynamicRisk, DynamicState, TISourceRecord
from citadel_risk.risk.state_machine import (
    ALLOWED_TRANSITIONS,
    InvalidTransition,
    RiskNotFound,
    RiskStateMachine,
    is_valid_transition,
)
from citadel_risk.risk.store import RiskStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ===================================================================
# Fixtures & helpers
# ===================================================================

@pytest.fixture
def store():
    s = RiskStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def machine(store):
    return RiskStateMachine(store, clock=lambda: NOW)


def _risk(key="otx:10.0.0.1", confidence=0.5, source="otx"):
    return DynamicRisk(
        title="IOC Detection: Malicious Activity Campaign",
        dedup_key=key,
        confidence_score=confidence,
        threat_intel_sources=[TISourceRecord(source, confidence, "ip", "10.0.0.1")],
    )


# ===================================================================
# Edge set
# ===================================================================

class TestEdges:
    @pytest.mark.parametrize("from_state,to_state", [
        (None, DynamicState.DETECTED),
        (None, DynamicState.DRAFT),
        (DynamicState.DETECTED, DynamicState.DRAFT),
        (DynamicState.DETECTED, DynamicState.RETIRED),
        (DynamicState.DRAFT, DynamicState.VALIDATED),
        (DynamicState.DRAFT, DynamicState.RETIRED),
        (DynamicState.VALIDATED, DynamicState.ACTIVE),
        (DynamicState.VALIDATED, DynamicState.RETIRED),
        (DynamicState.ACTIVE, DynamicState.RETIRED),
    ])
    def test_allowed(self, from_state, to_state):
        assert is_valid_transition(from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        (None, DynamicState.ACTIVE),
        (DynamicState.DETECTED, DynamicState.ACTIVE),
        (DynamicState.DETECTED, DynamicState.VALIDATED),
        (DynamicState.DRAFT, DynamicState.DETECTED),
        (DynamicState.ACTIVE, DynamicState.DRAFT),
        (DynamicState.DRAFT, DynamicState.DRAFT),
    ])
    def test_rejected(self, from_state, to_state):
        assert not is_valid_transition(from_state, to_state)

    def test_retired_is_terminal(self):
        assert ALLOWED_TRANSITIONS[DynamicState.RETIRED] == frozenset()
        for state in DynamicState:
            assert not is_valid_transition(DynamicState.RETIRED, state)


# ===================================================================
# Transitions
# ===================================================================

class TestTransitions:
    def test_create(self, machine):
        risk = machine.create(_risk(), DynamicState.DETECTED, "Auto-created from TI source")
        assert risk.id is not None
        assert risk.dynamic_state is DynamicState.DETECTED
        history = machine.history(risk.id)
        assert history[0].from_state is None
        assert history[0].automated is True
        assert history[0].actor == "system"

    def test_create_in_invalid_state(self, machine):
        with pytest.raises(InvalidTransition):
            machine.create(_risk(), DynamicState.ACTIVE, "nope")

    def test_full_lifecycle(self, machine):
        risk = machine.create(_risk(), "draft", "Rule match")
        for state in (DynamicState.VALIDATED, DynamicState.ACTIVE, DynamicState.RETIRED):
            machine.transition(risk.id, state, f"to {state.value}", actor="alice")
        history = machine.history(risk.id)
        assert [t.to_state for t in history] == [
            DynamicState.DRAFT, DynamicState.VALIDATED, DynamicState.ACTIVE, DynamicState.RETIRED,
        ]
        assert [t.from_state for t in history[1:]] == [
            DynamicState.DRAFT, DynamicState.VALIDATED, DynamicState.ACTIVE,
        ]
        assert all(t.actor == "alice" and not t.automated for t in history[1:])

    def test_detected_to_active_rejected(self, machine, store):
        risk = machine.create(_risk(), DynamicState.DETECTED, "TI")
        with pytest.raises(InvalidTransition) as exc_info:
            machine.transition(risk.id, DynamicState.ACTIVE, "skip ahead")
        assert exc_info.value.from_state is DynamicState.DETECTED
        assert exc_info.value.to_state is DynamicState.ACTIVE
        assert store.get_risk(risk.id).dynamic_state is DynamicState.DETECTED
        assert len(machine.history(risk.id)) == 1

    def test_nothing_leaves_retired(self, machine):
        risk = machine.create(_risk(), DynamicState.DETECTED, "TI")
        machine.transition(risk.id, DynamicState.RETIRED, "false positive")
        for state in DynamicState:
            with pytest.raises(InvalidTransition):
                machine.transition(risk.id, state, "revive")

    def test_unknown_risk(self, machine):
        with pytest.raises(RiskNotFound):
            machine.transition(404, DynamicState.DRAFT, "x")
        with pytest.raises(RiskNotFound):
            machine.history(404)

    def test_transition_record(self, machine):
        risk = machine.create(_risk(), DynamicState.DETECTED, "TI")
        transition = machine.transition(risk.id, "draft", "triage", actor="bob")
        data = transition.to_dict()
        assert data["from_state"] == "detected"
        assert data["to_state"] == "draft"
        assert data["actor"] == "bob"
        assert data["timestamp"] == NOW.isoformat()

    def test_concurrent_transitions_apply_once(self, machine):
        risk = machine.create(_risk(), DynamicState.DETECTED, "TI")
        outcomes = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                machine.transition(risk.id, DynamicState.DRAFT, "race")
                outcomes.append("ok")
            except InvalidTransition:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 3
        assert len(machine.history(risk.id)) == 2


# ===================================================================
# Auto-promotion
# ===================================================================

class TestAutoPromotion:
    def test_high_confidence_promotes(self, machine):
        risk = machine.create(_risk(confidence=0.85), DynamicState.DETECTED, "TI")
        transition = machine.maybe_auto_promote(risk)
        assert transition is not None
        assert transition.to_state is DynamicState.DRAFT
        assert transition.automated

    def test_trusted_source_lower_bar(self, machine):
        trusted = machine.create(_risk("cisa-kev:CVE-1", 0.72, "cisa-kev"), DynamicState.DETECTED, "TI")
        untrusted = machine.create(_risk("otx:x", 0.72, "otx"), DynamicState.DETECTED, "TI")
        assert machine.should_promote(trusted)
        assert not machine.should_promote(untrusted)

    def test_only_detected_risks_promote(self, machine):
        risk = machine.create(_risk(confidence=0.99), DynamicState.DRAFT, "TI")
        assert not machine.should_promote(risk)
        assert machine.maybe_auto_promote(risk) is None

    def test_custom_thresholds(self, store):
        machine = RiskStateMachine(store, auto_promote_threshold=0.5, high_trust_sources=[])
        risk = machine.create(_risk(confidence=0.55), DynamicState.DETECTED, "TI")
        assert machine.should_promote(risk)

    def test_process_detected_sweep(self, machine, store):
        machine.create(_risk("a:1", 0.9), DynamicState.DETECTED, "TI")
        machine.create(_risk("b:2", 0.5), DynamicState.DETECTED, "TI")
        machine.create(_risk("c:3", 0.75, "nvd"), DynamicState.DETECTED, "TI")
        promoted = machine.process_detected()
        assert len(promoted) == 2
        counts = store.state_counts()
        assert counts["draft"] == 2
        assert counts["detected"] == 1

    def test_process_detected_respects_limit(self, machine, store):
        for n in range(3):
            machine.create(_risk(f"k:{n}", 0.9), DynamicState.DETECTED, "TI")
        assert len(machine.process_detected(limit=2)) == 2
        assert store.state_counts()["detected"] == 1
