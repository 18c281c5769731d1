# PRD: Risk Module - Threat Intelligence Ingestion Pipeline
# Reference: docs/ARCHITECTURE.md, Section: Ingestion Pipeline
#
# Turns feed output into dynamic risks:
#
#   registry.sync_all()  ->  indicators
#     (or one scheduled sync via ingest_sync_result())
#     -> RuleEngine.assess()           create / skip
#     -> dedup on (source, value)      merge into existing risk
#     -> RiskStateMachine.create()     Detected or Draft
#     -> auto-promotion check
#     -> processing log + audit event per decision
#   -> CorrelationEngine.correlate()   (optional, per run)
#     -> clusters above 0.6 confidence linked to the risks of their
#        members; confidence and priority raised, promotion rechecked
#   -> RiskStateMachine.process_detected()
#   -> ContextualRiskScorer            (optional) rescore touched risks
#
# A run is single-flight: a second run while one is in progress raises
# PipelineBusy instead of interleaving dedup reads and writes. Scheduled
# sync results wait for the running batch instead.

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from ..core.audit_log import EventSeverity, EventType, log_audit_event
from ..core.errors import CitadelRiskError
from ..correlation.engine import CorrelationEngine
from ..correlation.models import CorrelationCluster, CorrelationRun
from ..intel.models import Indicator, IndicatorType, Severity, SyncResult, utcnow
from ..intel.registry import ConnectorRegistry, SyncReport
from .models import (
    DynamicRisk,
    DynamicState,
    FrameworkMapping,
    StateTransition,
    TISourceRecord,
    confidence_to_level,
)
from .rules import PRIORITIES, RiskAssessment, RuleEngine
from .scoring import ContextualRiskScore, ContextualRiskScorer
from .state_machine import InvalidTransition, RiskStateMachine
from .store import RiskStore

logger = logging.getLogger(__name__)

CVE_NIST_CONTROLS = ["PR.IP-12", "DE.CM-8", "RS.MI-3"]
CVE_ATTACK_TECHNIQUES = ["T1190", "T1059"]
IOC_NIST_CONTROLS = ["PR.PT-1", "DE.CM-4", "RS.AN-1"]

# Clusters at or below this confidence are not linked to risks
CLUSTER_LINK_THRESHOLD = 0.6
CLUSTER_PRIORITY = {Severity.CRITICAL: "critical", Severity.HIGH: "high"}


class PipelineBusy(CitadelRiskError):
    """A pipeline run is already in progress."""


class ProcessingAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ProcessingDecision:
    """What the pipeline did with one indicator."""

    connector_id: str
    indicator_id: str
    indicator_value: str
    action: ProcessingAction
    reason: str
    risk_id: Optional[int] = None
    promoted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "indicator_id": self.indicator_id,
            "indicator_value": self.indicator_value,
            "action": self.action.value,
            "reason": self.reason,
            "risk_id": self.risk_id,
            "promoted": self.promoted,
        }


@dataclass
class PipelineReport:
    run_id: str
    started: datetime
    finished: Optional[datetime] = None
    sync: Optional[SyncReport] = None
    decisions: List[ProcessingDecision] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    promoted: List[StateTransition] = field(default_factory=list)
    correlation_run_id: Optional[str] = None
    # risk ids whose assessment a correlation cluster raised
    correlated: List[int] = field(default_factory=list)
    scores: List[ContextualRiskScore] = field(default_factory=list)

    def _count(self, action: ProcessingAction) -> int:
        return sum(1 for d in self.decisions if d.action == action)

    @property
    def created(self) -> int:
        return self._count(ProcessingAction.CREATED)

    @property
    def updated(self) -> int:
        return self._count(ProcessingAction.UPDATED)

    @property
    def skipped(self) -> int:
        return self._count(ProcessingAction.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "promoted": len(self.promoted),
            "errors": list(self.errors),
            "correlation_run_id": self.correlation_run_id,
            "correlated": len(self.correlated),
            "scored": len(self.scores),
            "sync": self.sync.to_dict() if self.sync else None,
        }


# ---------------------------------------------------------------------------
# Risk construction
# ---------------------------------------------------------------------------


def risk_title(indicator: Indicator) -> str:
    ctx = indicator.context
    if indicator.type == IndicatorType.CVE:
        summary = ctx.description.split(". ")[0][:120] if ctx.description else ""
        return f"{indicator.value} - {summary or 'Security Vulnerability'}"
    if ctx.campaign:
        return f"Campaign Activity: {ctx.campaign}"
    if ctx.mitre_technique and not ctx.malware_family:
        return f"TTP Alert: {ctx.attack_pattern or ctx.mitre_technique} Detected"
    return f"IOC Detection: {ctx.malware_family or 'Malicious Activity'} Campaign"


def risk_description(indicator: Indicator) -> str:
    details = indicator.context.description or "No additional details available."
    return f"Threat intelligence indicator detected from {indicator.source}. {details}"


def framework_mappings(indicator: Indicator) -> List[FrameworkMapping]:
    technique = indicator.context.mitre_technique
    if indicator.type == IndicatorType.CVE:
        mappings = [
            FrameworkMapping("NIST_CSF", list(CVE_NIST_CONTROLS)),
            FrameworkMapping("MITRE_ATT&CK", list(CVE_ATTACK_TECHNIQUES)),
        ]
    else:
        mappings = [FrameworkMapping("NIST_CSF", list(IOC_NIST_CONTROLS))]
    if technique:
        attack = next((m for m in mappings if m.framework == "MITRE_ATT&CK"), None)
        if attack is None:
            mappings.append(FrameworkMapping("MITRE_ATT&CK", [technique]))
        elif technique not in attack.controls:
            attack.controls.append(technique)
    return mappings


def enrichment_summary(indicator: Indicator, confidence: float) -> str:
    return (
        f"Threat intelligence from {indicator.source} indicates {indicator.type.value} "
        f"activity with {confidence_to_level(confidence)} confidence."
    )


def source_record(indicator: Indicator, confidence: float, now: datetime) -> TISourceRecord:
    return TISourceRecord(
        source=indicator.source,
        confidence_score=confidence,
        indicator_type=indicator.type.value,
        indicator_value=indicator.value,
        first_seen=indicator.first_seen or now,
        recorded_at=now,
    )


def build_risk(indicator: Indicator, assessment: RiskAssessment, now: datetime) -> DynamicRisk:
    return DynamicRisk(
        title=risk_title(indicator),
        dedup_key=indicator.dedup_key,
        description=risk_description(indicator),
        confidence_score=assessment.confidence,
        probability=assessment.estimated_probability,
        impact=assessment.estimated_impact,
        priority=assessment.priority,
        enrichment_summary=enrichment_summary(indicator, assessment.confidence),
        threat_intel_sources=[source_record(indicator, assessment.confidence, now)],
        framework_mappings=framework_mappings(indicator),
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class IngestionPipeline:
    """Drives feed syncs through the rule engine into the risk store.

    Usage::

        pipeline = IngestionPipeline(registry, machine, RuleEngine(rules))
        report = pipeline.run()
        print(report.created, report.updated, report.skipped)
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        state_machine: RiskStateMachine,
        rule_engine: Optional[RuleEngine] = None,
        correlation_engine: Optional[CorrelationEngine] = None,
        clock: Callable[[], datetime] = utcnow,
        scorer: Optional[ContextualRiskScorer] = None,
    ):
        self.registry = registry
        self.state_machine = state_machine
        self.rule_engine = rule_engine or RuleEngine()
        self.correlation_engine = correlation_engine
        self.scorer = scorer
        self._clock = clock
        self._run_lock = threading.Lock()

    @property
    def store(self) -> RiskStore:
        return self.state_machine.store

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @contextmanager
    def _single_flight(self, blocking: bool = False):
        if not self._run_lock.acquire(blocking=blocking):
            raise PipelineBusy("Ingestion pipeline run already in progress")
        try:
            yield
        finally:
            self._run_lock.release()

    def run(self, cancel_event: Optional[threading.Event] = None) -> PipelineReport:
        """Sync every connector and process everything they returned.

        Raises:
            PipelineBusy: another run is in progress.
        """
        with self._single_flight():
            report = PipelineReport(run_id=f"pipe_{uuid4().hex[:12]}", started=self._clock())
            report.sync = self.registry.sync_all(cancel_event=cancel_event)
            for result in report.sync.results:
                report.errors.extend(f"{result.connector_id}: {e}" for e in result.errors)
                self._process_batch(result.indicators, result.connector_id, report)
            return self._finish(report, report.sync.indicators)

    def ingest(self, indicators: Iterable[Indicator], connector_id: str = "manual") -> PipelineReport:
        """Process indicators obtained outside the registry."""
        with self._single_flight():
            report = PipelineReport(run_id=f"pipe_{uuid4().hex[:12]}", started=self._clock())
            batch = list(indicators)
            self._process_batch(batch, connector_id, report)
            return self._finish(report, batch)

    def ingest_sync_result(self, result: SyncResult) -> PipelineReport:
        """Process the output of one connector sync.

        Meant as the registry's ``on_sync`` hook so scheduled syncs feed
        the risk store. Waits for a run in progress rather than raising
        PipelineBusy, so no scheduled batch is dropped.
        """
        with self._single_flight(blocking=True):
            report = PipelineReport(run_id=f"pipe_{uuid4().hex[:12]}", started=self._clock())
            report.errors.extend(f"{result.connector_id}: {e}" for e in result.errors)
            self._process_batch(result.indicators, result.connector_id, report)
            return self._finish(report, result.indicators)

    def _process_batch(self, indicators: List[Indicator], connector_id: str, report: PipelineReport) -> None:
        self.store.save_indicators(indicators, run_id=report.run_id)
        for indicator in indicators:
            try:
                decision = self.process_indicator(indicator, connector_id, run_id=report.run_id)
            except (CitadelRiskError, sqlite3.Error) as exc:
                logger.error("Failed to process %s from %s: %s", indicator.value, connector_id, exc)
                report.errors.append(f"{connector_id}:{indicator.value}: {exc}")
                continue
            report.decisions.append(decision)

    def _finish(self, report: PipelineReport, indicators: List[Indicator]) -> PipelineReport:
        if self.correlation_engine is not None and indicators:
            correlation = self.correlation_engine.correlate(indicators, run_id=f"corr_{report.run_id}")
            report.correlation_run_id = correlation.run_id
            report.correlated = self.apply_correlation(correlation, indicators)
        report.promoted = self.state_machine.process_detected()
        if self.scorer is not None:
            touched = [d.risk_id for d in report.decisions if d.risk_id is not None]
            report.scores = self.rescore(dict.fromkeys(touched + report.correlated))
        report.finished = self._clock()
        logger.info(
            "Pipeline run %s: %d created, %d updated, %d skipped, %d correlated, %d errors",
            report.run_id,
            report.created,
            report.updated,
            report.skipped,
            len(report.correlated),
            len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Correlation feedback
    # ------------------------------------------------------------------

    def apply_correlation(self, run: CorrelationRun, indicators: Iterable[Indicator]) -> List[int]:
        """Link confident clusters to the risks of their member indicators.

        A newly linked cluster raises the risk's confidence to the
        cluster confidence (never lowers it), raises the priority for
        high and critical clusters and rechecks auto-promotion. Returns
        the ids of risks that changed, in link order.
        """
        by_id = {indicator.id: indicator for indicator in indicators}
        changed: List[int] = []
        for cluster in run.clusters:
            if cluster.cluster_confidence <= CLUSTER_LINK_THRESHOLD:
                continue
            for risk in self._cluster_risks(cluster, by_id):
                if not self.store.link_cluster(risk.id, cluster, linked_at=self._clock()):
                    continue
                self._apply_cluster(risk, cluster)
                if risk.id not in changed:
                    changed.append(risk.id)
        return changed

    def _cluster_risks(self, cluster: CorrelationCluster, by_id: Dict[str, Indicator]) -> List[DynamicRisk]:
        risks: Dict[int, DynamicRisk] = {}
        for member_id in cluster.member_ids:
            indicator = by_id.get(member_id)
            if indicator is None:
                continue
            risk = self.store.find_by_dedup_key(indicator.dedup_key)
            if risk is None or risk.dynamic_state == DynamicState.RETIRED:
                continue
            risks.setdefault(risk.id, risk)
        return list(risks.values())

    def _apply_cluster(self, risk: DynamicRisk, cluster: CorrelationCluster) -> None:
        confidence = cluster.cluster_confidence
        if confidence <= risk.confidence_score:
            confidence = None
        priority = CLUSTER_PRIORITY.get(cluster.risk_level)
        if priority and risk.priority in PRIORITIES and PRIORITIES.index(risk.priority) >= PRIORITIES.index(priority):
            priority = None

        note = f"Correlated in {cluster.cluster_type.value} cluster {cluster.label}"
        attribution = cluster.attribution
        if attribution is not None and attribution.attributed:
            note += f", attributed to {attribution.actor}"
        updated = self.store.raise_assessment(risk.id, confidence, priority, note=note + ".")
        log_audit_event(
            EventType.RISK_UPDATED,
            EventSeverity.INFO,
            f"Risk {risk.id} linked to {cluster.cluster_type.value} cluster {cluster.cluster_id}",
            details={
                "risk_id": risk.id,
                "cluster_id": cluster.cluster_id,
                "run_id": cluster.run_id,
                "confidence": confidence,
                "priority": priority,
            },
        )
        if updated is None or confidence is None:
            return
        try:
            self.state_machine.maybe_auto_promote(updated)
        except InvalidTransition as exc:
            logger.warning("Skipping auto-promotion of risk %s: %s", risk.id, exc)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def rescore(self, risk_ids: Optional[Iterable[int]] = None) -> List[ContextualRiskScore]:
        """Recalculate and record contextual scores.

        With no ``risk_ids`` every risk that is not retired is rescored.
        Returns nothing when the pipeline has no scorer.
        """
        if self.scorer is None:
            return []
        if risk_ids is None:
            risks = [r for r in self.store.list_risks() if r.dynamic_state != DynamicState.RETIRED]
        else:
            risks = [r for r in map(self.store.get_risk, risk_ids) if r is not None]
        return [self.scorer.score_risk(risk) for risk in risks]

    # ------------------------------------------------------------------
    # Per-indicator processing
    # ------------------------------------------------------------------

    def process_indicator(
        self,
        indicator: Indicator,
        connector_id: str,
        run_id: Optional[str] = None,
    ) -> ProcessingDecision:
        """Create, update or skip a risk for one indicator."""
        now = self._clock()
        assessment = self.rule_engine.assess(indicator)

        if not assessment.should_create:
            decision = ProcessingDecision(
                connector_id, indicator.id, indicator.value, ProcessingAction.SKIPPED, assessment.reasoning
            )
            return self._record(decision, indicator, run_id, now, EventType.RISK_SKIPPED, EventSeverity.INFO)

        existing = self.store.find_by_dedup_key(indicator.dedup_key)
        if existing is not None:
            raised = assessment.confidence > existing.confidence_score
            merged = self.store.merge_source(
                existing.id, source_record(indicator, assessment.confidence, now), assessment.confidence
            )
            reason = (
                f"Merged sighting; confidence {existing.confidence_score:.2f} -> {assessment.confidence:.2f}"
                if raised
                else "Merged sighting; confidence unchanged"
            )
            decision = ProcessingDecision(
                connector_id, indicator.id, indicator.value, ProcessingAction.UPDATED, reason, risk_id=existing.id
            )
            if merged is not None and self.state_machine.maybe_auto_promote(merged) is not None:
                decision.promoted = True
            return self._record(decision, indicator, run_id, now, EventType.RISK_UPDATED, EventSeverity.INFO)

        initial = DynamicState.DRAFT if assessment.auto_promote_to_draft else DynamicState.DETECTED
        risk = self.state_machine.create(
            build_risk(indicator, assessment, now), initial, "Auto-created from TI source"
        )
        decision = ProcessingDecision(
            connector_id,
            indicator.id,
            indicator.value,
            ProcessingAction.CREATED,
            assessment.reasoning,
            risk_id=risk.id,
        )
        if initial == DynamicState.DETECTED and self.state_machine.maybe_auto_promote(risk) is not None:
            decision.promoted = True
        return self._record(decision, indicator, run_id, now, EventType.RISK_CREATED, EventSeverity.NOTICE)

    def _record(
        self,
        decision: ProcessingDecision,
        indicator: Indicator,
        run_id: Optional[str],
        now: datetime,
        event_type: EventType,
        severity: EventSeverity,
    ) -> ProcessingDecision:
        self.store.log_decision(
            decision.connector_id,
            indicator,
            decision.action.value,
            risk_id=decision.risk_id,
            reason=decision.reason,
            run_id=run_id,
            timestamp=now,
        )
        log_audit_event(
            event_type,
            severity,
            f"Risk {decision.action.value} for {indicator.value} from {decision.connector_id}",
            details=decision.to_dict(),
        )
        logger.debug("%s %s: %s", decision.action.value, indicator.value, decision.reason)
        return decision

    def stats(self) -> Dict[str, int]:
        """Risk counts per dynamic state plus total."""
        return self.store.state_counts()
