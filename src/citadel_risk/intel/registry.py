# PRD: Intel Module - Connector Registry & Scheduler
# Reference: docs/ARCHITECTURE.md, Section: Connector Registry
#
# Holds named feed connectors and drives their synchronization:
#   - sync_all(): fan-out over a bounded ThreadPoolExecutor, one task per
#     connector, failures isolated per connector and aggregated
#   - sync_one(id): on-demand sync, UnknownConnector for bad ids
#   - per-task timeout so a slow feed never delays the report; a timed-out
#     task counts as a connector failure and its late result is discarded
#   - cancellation stops new submissions; in-flight tasks finish
#   - APScheduler interval job per enabled connector (polling_interval);
#     each result is handed to the on_sync hook (the ingestion pipeline)
#   - rolling health: healthy / warning / error / disabled

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.errors import CitadelRiskError
from .connector import FeedConnector, SyncToken
from .models import ConnectorHealth, Indicator, SyncResult, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
# Extra seconds granted to each task on top of its worst-case retry time
TASK_TIMEOUT_SLACK_SEC = 5.0


class UnknownConnector(CitadelRiskError):
    """No connector is registered under the requested id."""

    def __init__(self, connector_id: str):
        self.connector_id = connector_id
        super().__init__(f"Unknown connector: {connector_id}")


class SyncReport:
    """Summary of one sync_all() fan-out."""

    def __init__(self):
        self.started = utcnow()
        self.finished = None
        self.results: List[SyncResult] = []
        self.skipped: List[str] = []
        self.cancelled = False

    @property
    def connectors_succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def connectors_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def indicators(self) -> List[Indicator]:
        items: List[Indicator] = []
        for result in self.results:
            items.extend(result.indicators)
        return items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "connectors_succeeded": self.connectors_succeeded,
            "connectors_failed": self.connectors_failed,
            "total_indicators": len(self.indicators),
            "skipped": list(self.skipped),
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


class ConnectorRegistry:
    """Registry and scheduler for feed connectors.

    Usage::

        registry = ConnectorRegistry()
        registry.register(create_connector(cfg))
        report = registry.sync_all()
        registry.start()      # interval syncs per connector
        registry.stop()
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        on_sync: Optional[Callable[[SyncResult], None]] = None,
    ):
        self._max_workers = max_workers
        self.on_sync = on_sync
        self._connectors: Dict[str, FeedConnector] = {}
        self._lock = threading.RLock()
        self._scheduler: Optional[BackgroundScheduler] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, connector: FeedConnector) -> None:
        """Register (or replace) a connector under its config id."""
        with self._lock:
            self._connectors[connector.id] = connector
        if self.is_running:
            self._schedule(connector)

    def remove(self, connector_id: str) -> None:
        with self._lock:
            if connector_id not in self._connectors:
                raise UnknownConnector(connector_id)
            del self._connectors[connector_id]
        self._unschedule(connector_id)

    def get(self, connector_id: str) -> FeedConnector:
        with self._lock:
            try:
                return self._connectors[connector_id]
            except KeyError:
                raise UnknownConnector(connector_id) from None

    @property
    def connectors(self) -> List[FeedConnector]:
        with self._lock:
            return list(self._connectors.values())

    def enable(self, connector_id: str) -> None:
        connector = self.get(connector_id)
        connector.enable()
        if self.is_running:
            self._schedule(connector)

    def disable(self, connector_id: str) -> None:
        self.get(connector_id).disable()
        self._unschedule(connector_id)

    def reset(self, connector_id: str) -> None:
        """Close the circuit breaker of one connector."""
        self.get(connector_id).reset()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_one(self, connector_id: str) -> SyncResult:
        """Sync a single connector.

        Raises:
            UnknownConnector: no such connector. Every other failure is
            captured in the returned result's ``errors``.
        """
        connector = self.get(connector_id)
        result = self._run_single(connector)
        if self.on_sync:
            try:
                self.on_sync(result)
            except Exception as exc:
                logger.warning("on_sync callback failed: %s", exc)
        return result

    def sync_all(self, cancel_event: Optional[threading.Event] = None) -> SyncReport:
        """Sync every enabled connector in parallel.

        Args:
            cancel_event: when set, no further connector tasks are
                submitted. Tasks already running are allowed to finish.
        """
        report = SyncReport()
        futures: List[tuple] = []
        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="feed-sync")
        try:
            for connector in self.connectors:
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    report.skipped.append(connector.id)
                    continue
                if not connector.enabled:
                    report.skipped.append(connector.id)
                    continue
                deadline = time.monotonic() + self._task_timeout(connector)
                token = SyncToken()
                future = pool.submit(self._run_single, connector, token)
                futures.append((connector, token, future, deadline))

            for connector, token, future, deadline in futures:
                report.results.append(self._collect(connector, token, future, deadline))
        finally:
            # timed-out tasks keep running in the background
            pool.shutdown(wait=False)

        report.finished = utcnow()
        logger.info(
            "Sync complete: %d indicators, %d/%d connectors ok, %d skipped",
            len(report.indicators),
            report.connectors_succeeded,
            len(report.results),
            len(report.skipped),
        )
        return report

    def _collect(
        self,
        connector: FeedConnector,
        token: SyncToken,
        future: Future,
        deadline: float,
    ) -> SyncResult:
        timeout = max(0.0, deadline - time.monotonic())
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            message = f"sync timed out after {self._task_timeout(connector):.0f}s"
            if not connector.abandon(token, message):
                # finished between the timeout and the handshake
                return future.result()
            result = SyncResult(connector.id)
            result.errors.append(message)
            logger.warning("Connector %s timed out", connector.id)
            return result

    @staticmethod
    def _task_timeout(connector: FeedConnector) -> float:
        """Worst case for one sync: rate-limit wait, then every request
        the source may issue timing out on every attempt with full
        backoff, plus the source's own pacing sleeps."""
        retry = connector.http.retry
        backoff = sum(retry.delay_for(i) for i in range(retry.retries))
        per_request = connector.config.timeout * retry.total_attempts + backoff
        budget = max(1, connector.source.request_budget())
        return (
            connector.limiter.remaining()
            + per_request * budget
            + connector.source.pacing_delay()
            + TASK_TIMEOUT_SLACK_SEC
        )

    @staticmethod
    def _run_single(connector: FeedConnector, token: Optional[SyncToken] = None) -> SyncResult:
        """Run one connector, capturing any exception into the result."""
        try:
            return connector.sync(token)
        except Exception as exc:
            result = SyncResult(connector.id)
            result.errors.append(str(exc))
            logger.warning("Connector %s failed: %s", connector.id, exc)
            return result

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_summary(self) -> Dict[str, Any]:
        """Counts per health state plus per-connector stats."""
        summary: Dict[str, Any] = {health.value: 0 for health in ConnectorHealth}
        stats = []
        for connector in self.connectors:
            summary[connector.health.value] += 1
            stats.append(connector.get_stats())
        summary["total"] = len(stats)
        summary["connectors"] = stats
        return summary

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start interval syncs for every enabled connector."""
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.start()
        for connector in self.connectors:
            self._schedule(connector)
        logger.info("ConnectorRegistry scheduler started (%d connectors)", len(self.connectors))

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("ConnectorRegistry scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _schedule(self, connector: FeedConnector) -> None:
        if self._scheduler is None or not connector.enabled:
            return
        self._scheduler.add_job(
            self.sync_one,
            trigger=IntervalTrigger(seconds=connector.config.polling_interval),
            args=[connector.id],
            id=f"feed_sync_{connector.id}",
            name=f"Sync feed {connector.config.name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _unschedule(self, connector_id: str) -> None:
        if self._scheduler is None:
            return
        job = self._scheduler.get_job(f"feed_sync_{connector_id}")
        if job is not None:
            job.remove()
