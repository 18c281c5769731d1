# PRD: Core Module - Risk Audit Trail
# Reference: docs/ARCHITECTURE.md, Section: Auditability
#
# Append-only structured audit log for every decision the risk core
# makes: feed syncs, dropped indicators, risk creation/update/skip,
# state transitions, correlation runs and score calculations.
# The state-transition table in the risk store is the canonical record;
# this log is the forensic stream that operators tail or ship.

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Kinds of events written to the audit trail."""

    # Feed events
    FEED_SYNC = "feed.sync"
    FEED_CIRCUIT_OPEN = "feed.circuit_open"
    FEED_DROPPED = "feed.dropped"

    # Risk lifecycle
    RISK_CREATED = "risk.created"
    RISK_UPDATED = "risk.updated"
    RISK_SKIPPED = "risk.skipped"
    RISK_TRANSITION = "risk.transition"

    # Analysis
    CORRELATION_RUN = "correlation.run"
    SCORE_CALCULATED = "score.calculated"

    # System
    SYSTEM_START = "system.start"


class EventSeverity(str, Enum):
    """Severity of an audit event.

    - INFO: routine activity (syncs, skips)
    - NOTICE: state changed (risk created, transition applied)
    - WARNING: degraded operation (circuit opened, feed unavailable)
    """

    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"


class AuditLogger:
    """Append-only JSON audit logger backed by structlog.

    Each event gets an id and a UTC timestamp and is written as one JSON
    line to ``audit_YYYY-MM-DD.log`` in ``log_dir``.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self._file_handler = self._setup_file_handler()
        self.logger = structlog.get_logger("citadel_risk.audit")

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        self.log_file = self.log_dir / f"audit_{today}.log"

        handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))

        audit_logger = logging.getLogger("citadel_risk.audit")
        audit_logger.addHandler(handler)
        audit_logger.setLevel(logging.INFO)
        return handler

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> str:
        """Log an audit event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable description
            details: Additional structured details
            actor: Operator or subsystem responsible ("system" if None)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        self.logger.info(
            "audit_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            timestamp=datetime.utcnow().isoformat(),
            details=details or {},
            actor=actor or "system",
        )
        return event_id

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("citadel_risk.audit").removeHandler(self._file_handler)
        self._file_handler.close()


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(log_dir: Path) -> AuditLogger:
    """Replace the global audit logger with one writing to ``log_dir``."""
    global _audit_logger
    if _audit_logger is not None:
        _audit_logger.close()
    _audit_logger = AuditLogger(log_dir=log_dir)
    return _audit_logger


def log_audit_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs,
) -> str:
    """
    Convenience function for logging audit events.

    Usage:
        log_audit_event(
            EventType.RISK_TRANSITION,
            EventSeverity.NOTICE,
            "Risk 12 detected -> draft",
            details={"risk_id": 12},
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
