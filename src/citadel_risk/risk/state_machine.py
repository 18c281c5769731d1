# PRD: Risk Module - Dynamic Risk State Machine
# Reference: docs/ARCHITECTURE.md, Section: Dynamic Risk Lifecycle
#
# Owns the risk lifecycle:
#
#   (new) -> Detected | Draft
#   Detected  -> Draft | Retired
#   Draft     -> Validated | Retired
#   Validated -> Active | Retired
#   Active    -> Retired
#   Retired   -> (terminal)
#
# Every transition is validated against the edge set, serialized per
# risk id, written with an optimistic state check and appended to the
# transition audit table. Invalid edges are rejected, never coerced.

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from ..core.audit_log import EventSeverity, EventType, log_audit_event
from ..core.errors import CitadelRiskError
from ..intel.models import utcnow
from .models import DynamicRisk, DynamicState, StateTransition
from .store import RiskStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[Optional[DynamicState], FrozenSet[DynamicState]] = {
    None: frozenset({DynamicState.DETECTED, DynamicState.DRAFT}),
    DynamicState.DETECTED: frozenset({DynamicState.DRAFT, DynamicState.RETIRED}),
    DynamicState.DRAFT: frozenset({DynamicState.VALIDATED, DynamicState.RETIRED}),
    DynamicState.VALIDATED: frozenset({DynamicState.ACTIVE, DynamicState.RETIRED}),
    DynamicState.ACTIVE: frozenset({DynamicState.RETIRED}),
    DynamicState.RETIRED: frozenset(),
}

AUTO_PROMOTE_THRESHOLD = 0.8
HIGH_TRUST_THRESHOLD = 0.7
HIGH_TRUST_SOURCES = frozenset({"cisa-kev", "nvd", "mandiant"})
DETECTED_BATCH_LIMIT = 50
SYSTEM_ACTOR = "system"


class InvalidTransition(CitadelRiskError):
    """The requested (from, to) pair is not an edge of the lifecycle."""

    def __init__(self, risk_id: Optional[int], from_state: Optional[DynamicState], to_state: DynamicState):
        self.risk_id = risk_id
        self.from_state = from_state
        self.to_state = to_state
        from_label = from_state.value if from_state else "none"
        super().__init__(
            f"Invalid state transition for risk {risk_id}: {from_label} -> {to_state.value}"
        )


class RiskNotFound(CitadelRiskError):
    def __init__(self, risk_id: int):
        self.risk_id = risk_id
        super().__init__(f"Risk {risk_id} not found")


def is_valid_transition(from_state: Optional[DynamicState], to_state: DynamicState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


class RiskStateMachine:
    """Validated, audited lifecycle transitions for dynamic risks.

    Usage::

        machine = RiskStateMachine(RiskStore("risks.db"))
        risk = machine.create(risk, DynamicState.DETECTED, "Auto-created from TI source")
        machine.transition(risk.id, DynamicState.DRAFT, "Analyst triage", actor="alice")
    """

    def __init__(
        self,
        store: RiskStore,
        auto_promote_threshold: float = AUTO_PROMOTE_THRESHOLD,
        high_trust_threshold: float = HIGH_TRUST_THRESHOLD,
        high_trust_sources: Iterable[str] = HIGH_TRUST_SOURCES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.auto_promote_threshold = auto_promote_threshold
        self.high_trust_threshold = high_trust_threshold
        self.high_trust_sources = frozenset(high_trust_sources)
        self._clock = clock
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, risk_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(risk_id)
            if lock is None:
                lock = self._locks[risk_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        risk: DynamicRisk,
        initial_state: Union[DynamicState, str],
        reason: str,
        automated: bool = True,
        actor: Optional[str] = None,
    ) -> DynamicRisk:
        """Persist a new risk in ``initial_state`` (Detected or Draft)."""
        initial_state = DynamicState(initial_state)
        if not is_valid_transition(None, initial_state):
            raise InvalidTransition(None, None, initial_state)

        risk.dynamic_state = initial_state
        transition = StateTransition(
            risk_id=0,
            from_state=None,
            to_state=initial_state,
            reason=reason,
            automated=automated,
            actor=actor or SYSTEM_ACTOR,
            timestamp=self._clock(),
            confidence_change=risk.confidence_score,
        )
        created = self.store.insert_risk(risk, transition)
        logger.info("Risk %s created in %s: %s", created.id, initial_state.value, created.title)
        return created

    def transition(
        self,
        risk_id: int,
        to_state: Union[DynamicState, str],
        reason: str,
        automated: bool = False,
        actor: Optional[str] = None,
    ) -> StateTransition:
        """Move a risk along one lifecycle edge.

        Raises:
            RiskNotFound: no risk with ``risk_id``.
            InvalidTransition: (current, to_state) is not an allowed edge.
        """
        to_state = DynamicState(to_state)
        with self._lock_for(risk_id):
            risk = self.store.get_risk(risk_id)
            if risk is None:
                raise RiskNotFound(risk_id)
            from_state = risk.dynamic_state
            if not is_valid_transition(from_state, to_state):
                raise InvalidTransition(risk_id, from_state, to_state)

            transition = StateTransition(
                risk_id=risk_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                automated=automated,
                actor=actor or SYSTEM_ACTOR,
                timestamp=self._clock(),
            )
            if not self.store.update_state(risk_id, from_state, transition):
                # another writer moved the risk after we read it
                current = self.store.get_risk(risk_id)
                raise InvalidTransition(
                    risk_id, current.dynamic_state if current else from_state, to_state
                )

        logger.info(
            "Risk %s transitioned %s -> %s (%s)",
            risk_id,
            from_state.value if from_state else "none",
            to_state.value,
            "automated" if automated else transition.actor,
        )
        log_audit_event(
            EventType.RISK_TRANSITION,
            EventSeverity.NOTICE,
            f"Risk {risk_id} {from_state.value if from_state else 'none'} -> {to_state.value}",
            details=transition.to_dict(),
            actor=transition.actor,
        )
        return transition

    def history(self, risk_id: int) -> List[StateTransition]:
        if self.store.get_risk(risk_id) is None:
            raise RiskNotFound(risk_id)
        return self.store.transitions(risk_id)

    # ------------------------------------------------------------------
    # Auto-promotion
    # ------------------------------------------------------------------

    def should_promote(self, risk: DynamicRisk) -> bool:
        """Detected risks qualify for Draft on high confidence, or on
        moderate confidence from a high-trust source."""
        if risk.dynamic_state != DynamicState.DETECTED:
            return False
        if risk.confidence_score >= self.auto_promote_threshold:
            return True
        trusted = any(source in self.high_trust_sources for source in risk.sources)
        return trusted and risk.confidence_score >= self.high_trust_threshold

    def maybe_auto_promote(self, risk: DynamicRisk) -> Optional[StateTransition]:
        if not self.should_promote(risk):
            return None
        return self.transition(
            risk.id,
            DynamicState.DRAFT,
            "Auto-promotion based on confidence and rules",
            automated=True,
        )

    def process_detected(self, limit: int = DETECTED_BATCH_LIMIT) -> List[StateTransition]:
        """Sweep up to ``limit`` Detected risks and promote eligible ones."""
        detected = self.store.list_risks(state=DynamicState.DETECTED, limit=limit)
        promoted = []
        for risk in detected:
            try:
                transition = self.maybe_auto_promote(risk)
            except InvalidTransition as exc:
                logger.warning("Skipping auto-promotion of risk %s: %s", risk.id, exc)
                continue
            if transition is not None:
                promoted.append(transition)
        logger.info("Processed %d detected risks, promoted %d", len(detected), len(promoted))
        return promoted
