# PRD: Core Module - Shared Utilities
# Reference: docs/ARCHITECTURE.md
#
# Core module provides functionality shared by intel, correlation and risk:
# - Audit logging
# - SQLite connection helper
# - Exception hierarchy

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
    log_audit_event,
)
from .errors import CitadelRiskError

__all__ = [
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "configure_audit_logger",
    "get_audit_logger",
    "log_audit_event",
    "CitadelRiskError",
]
