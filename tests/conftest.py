"""
Shared pytest fixtures for the Citadel Risk test suite.

Autouse fixtures below isolate tests from the live application data:
  - Audit logger -> temp directory  (prevents test events in ./audit_logs)
"""

from datetime import datetime, timezone

import pytest

from citadel_risk.intel.models import Indicator, IndicatorContext, IndicatorType, Severity


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import citadel_risk.core.audit_log as audit_mod

    # Reset the singleton so the next call to get_audit_logger() creates
    # a fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_indicator():
    """Factory for canonical indicators with sensible defaults."""

    def _make(value="198.51.100.7", type=IndicatorType.IP, source="otx",
              confidence=80.0, severity=Severity.HIGH, first_seen=None,
              tags=None, **context):
        return Indicator(
            source=source,
            type=type,
            value=value,
            confidence=confidence,
            severity=severity,
            first_seen=first_seen,
            last_seen=first_seen,
            tags=list(tags or []),
            context=IndicatorContext(**context),
        )

    return _make
