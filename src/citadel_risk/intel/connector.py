# PRD: Intel Module - Feed Connector Contract
# Reference: docs/ARCHITECTURE.md, Section: Feed Connector
#
# A concrete feed implements only FeedSource.fetch_raw() and
# FeedSource.parse(). FeedConnector wraps a source with the shared
# machinery, composed rather than inherited:
#
#   - refuses to run while disabled
#   - RateLimiter: minimum polling_interval between syncs
#   - FeedHttpClient: httpx GET with retry + exponential backoff
#   - soft circuit breaker after max_errors consecutive failures
#   - IndicatorValidator: type checks, confidence normalization, filters
#   - SyncToken: a sync abandoned by its caller commits nothing
#
# Exhausted retries surface as FeedUnavailable scoped to the connector.

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..core.audit_log import EventSeverity, EventType, log_audit_event
from ..core.errors import CitadelRiskError
from .models import ConnectorHealth, FeedConfig, Indicator, SyncResult, utcnow
from .throttle import RateLimiter, RetryPolicy
from .validation import IndicatorValidator

logger = logging.getLogger(__name__)

# Consecutive-error thresholds for health reporting
WARNING_ERROR_COUNT = 1
ERROR_ERROR_COUNT = 3


class FeedError(CitadelRiskError):
    """Transient transport or parse failure inside one connector."""


class FeedUnavailable(CitadelRiskError):
    """A connector gave up after exhausting its retry attempts."""

    def __init__(self, connector_id: str, attempts: int, last_error: str):
        self.connector_id = connector_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Feed {connector_id} unavailable after {attempts} attempt(s): {last_error}"
        )


class ConnectorDisabled(CitadelRiskError):
    """Sync requested on a disabled connector."""


class CircuitOpen(CitadelRiskError):
    """Sync refused because the circuit breaker is open."""


class SyncAbandoned(CitadelRiskError):
    """The caller gave up on this sync before it finished; its result
    was not committed."""


class SyncToken:
    """Handshake between one running sync and the caller waiting on it.

    Exactly one side settles the outcome: the sync commits its success or
    failure, or the caller abandons it on timeout. Both flags are guarded
    by the connector lock.
    """

    __slots__ = ("committed", "abandoned")

    def __init__(self):
        self.committed = False
        self.abandoned = False


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class FeedHttpClient:
    """httpx GET wrapper with retry + exponential backoff.

    429 honours ``Retry-After``; 5xx and transport errors are retried;
    other 4xx fail fast.
    """

    def __init__(
        self,
        config: FeedConfig,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._config = config
        self.retry = retry or RetryPolicy(config.retry_attempts, config.retry_delay)
        self.sleep = sleep

    def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[Any] = None,
    ) -> httpx.Response:
        """Execute an HTTP GET request with retry + exponential backoff."""
        merged_headers = {"Accept": "application/json", **self._config.headers}
        if headers:
            merged_headers.update(headers)

        last_error = "no attempt made"
        total = self.retry.total_attempts

        for attempt in range(total):
            try:
                resp = httpx.get(
                    url,
                    params=params,
                    headers=merged_headers,
                    auth=auth,
                    timeout=self._config.timeout,
                    follow_redirects=True,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                wait = self.retry.delay_for(attempt)
            else:
                if resp.status_code < 400:
                    return resp

                last_error = f"HTTP {resp.status_code}"
                if resp.status_code == 429:
                    retry_after = resp.headers.get("Retry-After")
                    try:
                        wait = float(retry_after) if retry_after else self.retry.delay_for(attempt)
                    except ValueError:
                        wait = self.retry.delay_for(attempt)
                elif resp.status_code >= 500:
                    wait = self.retry.delay_for(attempt)
                else:
                    raise FeedUnavailable(self._config.id, attempt + 1, last_error)

            if attempt < total - 1:
                logger.warning(
                    "%s request failed (%s), retrying in %.1fs (attempt %d/%d)",
                    self._config.id, last_error, wait, attempt + 1, total,
                )
                self.sleep(wait)

        raise FeedUnavailable(self._config.id, total, last_error)

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[Any] = None,
    ) -> Any:
        resp = self.get(url, params=params, headers=headers, auth=auth)
        try:
            return resp.json()
        except ValueError as exc:
            raise FeedUnavailable(self._config.id, 1, f"invalid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Source contract
# ---------------------------------------------------------------------------


class FeedSource(ABC):
    """Feed-specific half of a connector: fetch raw payload, parse it."""

    def __init__(self, config: FeedConfig):
        self.config = config

    @abstractmethod
    def fetch_raw(self, http: FeedHttpClient, since: Optional[datetime] = None) -> Any:
        """Fetch the raw payload (decoded JSON) from the feed."""

    @abstractmethod
    def parse(self, raw: Any) -> List[Indicator]:
        """Turn a raw payload into canonical indicators (unvalidated)."""

    def request_budget(self) -> int:
        """Upper bound on HTTP requests one fetch_raw() may issue."""
        return 1

    def pacing_delay(self) -> float:
        """Total seconds the source itself sleeps between requests in one fetch."""
        return 0.0


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------


class FeedConnector:
    """A feed source wrapped with rate limiting, retry, circuit breaker
    and validation.

    Usage::

        connector = FeedConnector(config, CisaKevSource(config))
        result = connector.sync()
    """

    def __init__(
        self,
        config: FeedConfig,
        source: FeedSource,
        http: Optional[FeedHttpClient] = None,
        limiter: Optional[RateLimiter] = None,
        validator: Optional[IndicatorValidator] = None,
    ):
        self.config = config
        self.source = source
        self.http = http or FeedHttpClient(config)
        self.limiter = limiter or RateLimiter(config.polling_interval)
        self.validator = validator or IndicatorValidator()

        self._lock = threading.RLock()
        self._consecutive_errors = 0
        self._sync_count = 0
        self._total_indicators = 0
        self._total_dropped = 0
        self._last_sync: Optional[datetime] = None
        self._last_success: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def enable(self) -> None:
        self.config.enabled = True

    def disable(self) -> None:
        self.config.enabled = False

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._consecutive_errors

    @property
    def circuit_open(self) -> bool:
        with self._lock:
            return self._consecutive_errors >= self.config.max_errors

    @property
    def health(self) -> ConnectorHealth:
        if not self.config.enabled:
            return ConnectorHealth.DISABLED
        errors = self.consecutive_errors
        if errors >= ERROR_ERROR_COUNT or self.circuit_open:
            return ConnectorHealth.ERROR
        if errors >= WARNING_ERROR_COUNT:
            return ConnectorHealth.WARNING
        return ConnectorHealth.HEALTHY

    def reset(self) -> None:
        """Close the circuit breaker manually."""
        with self._lock:
            self._consecutive_errors = 0
            self._last_error = None
        logger.info("Connector %s circuit reset", self.id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, token: Optional[SyncToken] = None) -> SyncResult:
        """Fetch, parse, validate and return this feed's indicators.

        ``token`` lets a caller that stops waiting (see abandon()) keep a
        late result from being committed: the sync then leaves
        ``last_success`` where it was, so the next sync refetches the
        same window.

        Raises:
            ConnectorDisabled: connector is disabled.
            CircuitOpen: max_errors consecutive failures, not yet reset.
            FeedUnavailable: fetch or parse failed after retries.
            SyncAbandoned: the token was abandoned before completion.
        """
        if not self.config.enabled:
            raise ConnectorDisabled(f"Connector {self.id} is disabled")
        if self.circuit_open:
            raise CircuitOpen(
                f"Connector {self.id} circuit open after "
                f"{self.consecutive_errors} consecutive errors"
            )

        waited = self.limiter.acquire()
        if waited:
            logger.debug("Connector %s rate limited for %.2fs", self.id, waited)

        result = SyncResult(self.id)
        start = time.monotonic()
        with self._lock:
            since = self._last_success
            self._last_sync = utcnow()

        try:
            raw = self.source.fetch_raw(self.http, since=since)
            parsed = self.source.parse(raw)
        except FeedUnavailable as exc:
            self._record_failure(str(exc), token)
            raise
        except FeedError as exc:
            self._record_failure(str(exc), token)
            raise FeedUnavailable(self.id, 1, str(exc)) from exc
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            self._record_failure(f"parse failed: {exc}", token)
            raise FeedUnavailable(self.id, 1, f"parse failed: {exc}") from exc

        kept, dropped, filtered = self.validator.process(parsed, self.config.filter_rules)
        result.indicators = kept
        result.dropped = dropped
        result.filtered = filtered
        result.duration_ms = (time.monotonic() - start) * 1000
        if not self._record_success(result, token):
            logger.info(
                "Connector %s finished after its caller gave up; %d indicators discarded",
                self.id, len(kept),
            )
            raise SyncAbandoned(f"Connector {self.id} sync abandoned")
        return result

    def abandon(self, token: SyncToken, error: str) -> bool:
        """Give up on the sync holding ``token`` and count it as a failure.

        Returns False when the sync already committed its outcome, in
        which case its result stands.
        """
        with self._lock:
            if token.committed or token.abandoned:
                return False
            token.abandoned = True
        self._record_failure(error)
        return True

    def test_connection(self) -> bool:
        """Single raw fetch without rate limiting or stats."""
        try:
            self.source.fetch_raw(self.http)
        except CitadelRiskError as exc:
            logger.warning("Connector %s connection test failed: %s", self.id, exc)
            return False
        return True

    @staticmethod
    def _settle(token: Optional[SyncToken]) -> bool:
        # caller holds self._lock
        if token is None:
            return True
        if token.abandoned:
            return False
        token.committed = True
        return True

    def _record_success(self, result: SyncResult, token: Optional[SyncToken] = None) -> bool:
        with self._lock:
            if not self._settle(token):
                return False
            self._consecutive_errors = 0
            self._last_error = None
            self._sync_count += 1
            self._total_indicators += len(result.indicators)
            self._total_dropped += result.dropped
            self._last_success = self._last_sync

        logger.info(
            "Connector %s synced %d indicators (%d dropped, %d filtered) in %.0fms",
            self.id, len(result.indicators), result.dropped,
            result.filtered, result.duration_ms,
        )
        log_audit_event(
            EventType.FEED_SYNC,
            EventSeverity.INFO,
            f"Feed {self.id} synced",
            details=result.to_dict(),
        )
        if result.dropped:
            log_audit_event(
                EventType.FEED_DROPPED,
                EventSeverity.INFO,
                f"Feed {self.id} dropped {result.dropped} invalid indicators",
                details={"connector": self.id, "dropped": result.dropped},
            )
        return True

    def _record_failure(self, error: str, token: Optional[SyncToken] = None) -> None:
        with self._lock:
            if not self._settle(token):
                # already counted by abandon()
                return
            self._consecutive_errors += 1
            self._sync_count += 1
            self._last_error = error
            errors = self._consecutive_errors

        logger.warning("Connector %s sync failed (%d consecutive): %s", self.id, errors, error)
        if errors == self.config.max_errors:
            log_audit_event(
                EventType.FEED_CIRCUIT_OPEN,
                EventSeverity.WARNING,
                f"Feed {self.id} circuit opened after {errors} consecutive errors",
                details={"connector": self.id, "last_error": error},
            )

    def get_stats(self) -> Dict[str, Any]:
        """Return connector statistics."""
        with self._lock:
            return {
                "id": self.id,
                "name": self.config.name,
                "type": self.config.type,
                "enabled": self.config.enabled,
                "health": self.health.value,
                "sync_count": self._sync_count,
                "total_indicators": self._total_indicators,
                "total_dropped": self._total_dropped,
                "consecutive_errors": self._consecutive_errors,
                "last_sync": self._last_sync.isoformat() if self._last_sync else None,
                "last_success": self._last_success.isoformat() if self._last_success else None,
                "last_error": self._last_error,
            }
