# PRD: Main Entry Point - citadel-risk CLI
# Reference: docs/ARCHITECTURE.md, Section: Operations
#
# Operator commands over the risk core:
#   sync [--connector ID]      pull feeds (all or one)
#   ingest                     full pipeline run (sync, rules, risks, correlation)
#   risks [--state S]          list dynamic risks with their latest score
#   rescore [RISK_ID ...]      recalculate and record contextual scores
#   transition ID STATE ...    move a risk along its lifecycle
#   health                     connector health summary
#   correlate                  correlate the indicators of the last run
#   serve                      scheduled syncs feeding the pipeline, periodic rescoring

import argparse
import json
import logging
import sys
import threading
from typing import Any, Dict, List, Optional

from . import __version__
from .config import Settings, load_settings
from .core import EventSeverity, EventType, configure_audit_logger, get_audit_logger
from .correlation import ClusterStore, CorrelationEngine
from .intel import ConnectorRegistry, UnknownConnector, create_connectors
from .risk import (
    ContextualRiskScorer,
    DynamicState,
    IngestionPipeline,
    InvalidTransition,
    OrganizationalContext,
    PipelineBusy,
    RiskNotFound,
    RiskStateMachine,
    RiskStore,
    RuleEngine,
)

logger = logging.getLogger(__name__)


class Services:
    """Long-lived service objects wired from Settings."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.registry = ConnectorRegistry(max_workers=settings.max_workers)
        for connector in create_connectors(settings.feeds):
            self.registry.register(connector)
        self.store = RiskStore(settings.db_path)
        self.state_machine = RiskStateMachine(
            self.store,
            auto_promote_threshold=settings.auto_promote_threshold,
            high_trust_threshold=settings.high_trust_threshold,
            high_trust_sources=settings.high_trust_sources,
        )
        self.rule_engine = RuleEngine(
            settings.rules, default_create_threshold=settings.default_create_threshold
        )
        self.correlation = CorrelationEngine(store=ClusterStore())
        self.scorer = ContextualRiskScorer(
            OrganizationalContext.from_dict(settings.organization), store=self.store
        )
        self.pipeline = IngestionPipeline(
            self.registry,
            self.state_machine,
            self.rule_engine,
            correlation_engine=self.correlation,
            scorer=self.scorer,
        )
        self.stop_event = threading.Event()

    def close(self) -> None:
        self.registry.stop()
        self.store.close()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── Commands ────────────────────────────────────────────────────────────


def cmd_sync(services: Services, args: argparse.Namespace) -> int:
    if args.connector:
        result = services.registry.sync_one(args.connector)
        _print_json(result.to_dict())
        return 0 if result.success else 1
    report = services.registry.sync_all()
    _print_json(report.to_dict())
    return 0 if report.connectors_failed == 0 else 1


def cmd_ingest(services: Services, args: argparse.Namespace) -> int:
    report = services.pipeline.run()
    _print_json(report.to_dict())
    _print_json({"pipeline_stats": services.pipeline.stats()})
    return 0


def cmd_risks(services: Services, args: argparse.Namespace) -> int:
    state = DynamicState(args.state) if args.state else None
    risks = services.store.list_risks(state=state, limit=args.limit)
    if not risks:
        print("No risks found.")
        return 0
    for risk in risks:
        # listing is read-only: show the last recorded score, else a preview
        latest = services.store.latest_score(risk.id)
        if latest is not None:
            final = latest["final_score"]
        else:
            final = services.scorer.score_risk(risk, record=False).final_score
        print(
            f"{risk.id:>5}  {risk.dynamic_state.value:<10} "
            f"conf={risk.confidence_score:.2f} score={final:6.2f}  {risk.title}"
        )
    return 0


def cmd_rescore(services: Services, args: argparse.Namespace) -> int:
    for risk_id in args.risk_ids or []:
        if services.store.get_risk(risk_id) is None:
            raise RiskNotFound(risk_id)
    scores = services.pipeline.rescore(args.risk_ids or None)
    _print_json({"scored": len(scores), "scores": [s.to_dict() for s in scores]})
    return 0


def cmd_serve(services: Services, args: argparse.Namespace) -> int:
    interval = args.rescore_interval or services.settings.rescore_interval
    services.registry.on_sync = services.pipeline.ingest_sync_result
    services.registry.start()
    print(
        f"Serving {len(services.registry.connectors)} connectors, "
        f"rescoring every {interval:g}s. Ctrl-C to stop."
    )
    try:
        while True:
            scores = services.pipeline.rescore()
            logger.info("Periodic rescore recorded %d scores", len(scores))
            if services.stop_event.wait(interval):
                break
    finally:
        services.registry.stop()
    return 0


def cmd_transition(services: Services, args: argparse.Namespace) -> int:
    transition = services.state_machine.transition(
        args.risk_id,
        DynamicState(args.state),
        args.reason,
        automated=False,
        actor=args.actor,
    )
    _print_json(transition.to_dict())
    return 0


def cmd_health(services: Services, args: argparse.Namespace) -> int:
    _print_json(services.registry.health_summary())
    return 0


def cmd_correlate(services: Services, args: argparse.Namespace) -> int:
    run_id = services.store.last_run_id()
    indicators = services.store.load_indicators(run_id)
    if not indicators:
        print("No stored indicators; run 'ingest' first.")
        return 0
    run = services.correlation.correlate(indicators)
    summary: Dict[str, Any] = run.to_dict()
    summary["source_run_id"] = run_id
    _print_json(summary)
    return 0


COMMANDS = {
    "sync": cmd_sync,
    "ingest": cmd_ingest,
    "risks": cmd_risks,
    "rescore": cmd_rescore,
    "transition": cmd_transition,
    "health": cmd_health,
    "correlate": cmd_correlate,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="citadel-risk",
        description="Citadel Risk - threat intelligence driven risk lifecycle",
    )
    parser.add_argument("--config", help="JSON config file (default: $CITADEL_RISK_CONFIG)")
    parser.add_argument("--db", help="SQLite risk database (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"citadel-risk {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Sync threat feeds")
    sync.add_argument("--connector", help="Sync only this connector id")

    sub.add_parser("ingest", help="Run the full ingestion pipeline")

    risks = sub.add_parser("risks", help="List dynamic risks")
    risks.add_argument("--state", choices=[s.value for s in DynamicState])
    risks.add_argument("--limit", type=int, default=None)

    rescore = sub.add_parser("rescore", help="Recalculate and record contextual scores")
    rescore.add_argument("risk_ids", type=int, nargs="*", help="Default: every risk not retired")

    transition = sub.add_parser("transition", help="Transition a risk to a new state")
    transition.add_argument("risk_id", type=int)
    transition.add_argument("state", choices=[s.value for s in DynamicState])
    transition.add_argument("--reason", required=True)
    transition.add_argument("--actor", default=None)

    sub.add_parser("health", help="Show connector health")
    sub.add_parser("correlate", help="Correlate indicators from the last run")

    serve = sub.add_parser("serve", help="Run scheduled syncs into the pipeline")
    serve.add_argument("--rescore-interval", type=float, default=None,
                       help="Seconds between rescoring passes (overrides config)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``citadel-risk`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as exc:
        print(f"Error: cannot load config: {exc}", file=sys.stderr)
        return 2
    if args.db:
        settings.db_path = args.db

    configure_audit_logger(settings.audit_log_dir)
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="citadel-risk starting",
        details={"version": __version__, "command": args.command},
    )

    services = Services(settings)
    try:
        return COMMANDS[args.command](services, args)
    except (InvalidTransition, RiskNotFound, UnknownConnector, PipelineBusy) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
