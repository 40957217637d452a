import asyncio
import math
import random
import re
import threading
import time
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union
from loguru import logger
from ..persistence.base import CredentialStore
from .backends import PersistenceBackend, open_backend
from .cache import SelectionCache
from .errors import CredentialNotFoundError, PoolExhaustedError
from .scoring import availability_score, pick_rotation_target, rank
from .types import (
    AcquireResult, CredentialRecord, ErrorClassification, ErrorType, ExecuteOptions, PoolConfig,
    PoolStats, RateLimitInfo, UsageEvent, WindowKind, mask_all, mask_identifier
)

CONFIG = {
    'MAX_BACKOFF': 64 * 1000,
    'BASE_BACKOFF': 1000,
}

ERROR_PATTERNS = {
    'isQuotaError': re.compile(r'429|quota|exhausted|resource.?exhausted|too.?many.?requests|rate.?limit', re.IGNORECASE),
    'isDailyQuota': re.compile(r'per.?day|daily|\bRPD\b', re.IGNORECASE),
    'isCostQuota': re.compile(r'token|\bTPM\b|cost', re.IGNORECASE),
    'isAuthError': re.compile(r'403|permission.?denied|invalid.?api.?key|unauthorized|unauthenticated', re.IGNORECASE),
    'isTransient': re.compile(r'500|502|503|504|internal|unavailable|deadline|timeout|overloaded', re.IGNORECASE),
    'isBadRequest': re.compile(r'400|invalid.?argument|failed.?precondition|malformed|not.?found|404', re.IGNORECASE),
}


class RequestTimeoutError(Exception):
    def __init__(self, ms: int):
        super().__init__(f"Request timed out after {ms}ms")


def _now_ms() -> int:
    return int(time.time() * 1000)


class KeyPool:
    """
    Selects among rate-limited API keys and keeps per-key quota bookkeeping.

    Every public operation is synchronous and in-memory; the pool-wide lock
    keeps the cursor, the selection cache and window counters consistent
    across threads. Store I/O happens on the backend's background worker.
    """
    def __init__(
            self,
            initial_keys: Union[str, List[str]],
            store: Optional[CredentialStore] = None,
            config: Optional[PoolConfig] = None,
            clock: Optional[Callable[[], int]] = None
    ):
        self.config = config or PoolConfig()
        self.store = store
        self.clock = clock or _now_ms

        if isinstance(initial_keys, str):
            initial_keys = [initial_keys]
        parsed = []
        for k in initial_keys or []:
            parsed.extend(s.strip() for s in k.split(',') if s.strip())
        self.identifiers: List[str] = list(dict.fromkeys(parsed))
        self._order: Dict[str, int] = {k: i for i, k in enumerate(self.identifiers)}

        self.records: Dict[str, CredentialRecord] = {}
        self.cache = SelectionCache(ttl_ms=self.config.cacheTtlMs)
        self.backend: Optional[PersistenceBackend] = None
        self._lock = threading.RLock()
        self._callbacks = {}

        if not self.identifiers:
            logger.warning("KeyPool created without API keys; every acquire will fail")

    @property
    def mode(self) -> str:
        return self.backend.mode if self.backend else 'uninitialized'

    def on(self, event: str, callback: Callable):
        if event not in self._callbacks:
            self._callbacks[event] = []
        self._callbacks[event].append(callback)

    def _emit(self, event: str, *args, **kwargs):
        if event in self._callbacks:
            for cb in self._callbacks[event]:
                try:
                    cb(*args, **kwargs)
                except Exception as e:
                    logger.error(f"Error in event listener for {event}: {e}")

    def _ensure_initialized(self):
        if self.backend is not None:
            return
        with self._lock:
            if self.backend is not None:
                return

            backend, persisted = open_backend(self.store)
            persisted_by_id = {r.identifier: r for r in persisted}
            now = self.clock()

            for identifier in self.identifiers:
                record = persisted_by_id.get(identifier)
                if record is None:
                    record = CredentialRecord(identifier=identifier, windows=self.config.new_windows(now))
                self.records[identifier] = record
                backend.save(record.model_copy(deep=True))

            self.backend = backend
            if self.store is not None and backend.mode != 'durable':
                self._emit('fallbackMode')
            logger.info(f"KeyPool initialized with {len(self.records)} keys (mode: {backend.mode})")

    def _find(self, identifier: str) -> Optional[CredentialRecord]:
        return self.records.get(identifier)

    def _persist(self, record: CredentialRecord):
        self.backend.save(record.model_copy(deep=True))

    def _rebuild_cache(self, now: int):
        eligible = [r for r in self.records.values() if r.is_eligible(now)]
        self.cache.rebuild(rank(eligible, self._order, now), now)

    def _take_cached(self, now: int) -> Optional[CredentialRecord]:
        record = self.cache.peek()
        if record is not None and record.is_eligible(now):
            return record
        return None

    def _serve(self, record: CredentialRecord, now: int, method: str, advance: bool = True) -> AcquireResult:
        record.lastUsedAt = now
        if advance:
            self.cache.advance()
        self._persist(record)
        return AcquireResult(
            identifier=record.identifier,
            snapshot=record.model_copy(deep=True),
            score=availability_score(record, now),
            method=method,
            totalAvailable=len(self.cache)
        )

    def _exhausted(self, now: int) -> PoolExhaustedError:
        waits = [
            window.resetAt - now
            for r in self.records.values() if r.active
            for _, window in r.windows.items() if window.is_exhausted(now)
        ]
        retry_after = min(waits) if waits else None
        logger.error(f"[Pool Exhausted] No eligible keys among {len(self.records)}")
        self._emit('poolExhausted', retry_after)
        return PoolExhaustedError(retry_after)

    def acquire(self) -> AcquireResult:
        self._ensure_initialized()
        with self._lock:
            now = self.clock()
            method = 'cached-round-robin'
            record = self._take_cached(now) if self.cache.is_fresh(now) else None

            if record is None:
                self._rebuild_cache(now)
                record = self._take_cached(now)
                method = 'round-robin'

            if record is None:
                raise self._exhausted(now)

            return self._serve(record, now, method)

    def acquire_with_rotation(self) -> AcquireResult:
        self._ensure_initialized()
        with self._lock:
            now = self.clock()
            eligible = [r for r in self.records.values() if r.is_eligible(now)]
            ranked = rank(eligible, self._order, now)
            if not ranked:
                self.cache.invalidate()
                raise self._exhausted(now)

            target, weakest, weakest_score = pick_rotation_target(ranked, self.config.rotationThreshold, now)
            if target is not None:
                logger.warning(
                    f"[Proactive Rotation] ...{weakest.identifier[-4:]} (score {weakest_score:.2f}) -> "
                    f"...{target.identifier[-4:]}"
                )
                self._emit('proactiveRotation', target.identifier, weakest.identifier, weakest_score)
                return self._serve(target, now, 'proactive-rotation', advance=False)

            return self.acquire()

    def record_success(self, identifier: str, cost: int = 0, latency_ms: Optional[float] = None):
        self._ensure_initialized()
        cost = self._normalize_cost(identifier, cost)
        with self._lock:
            record = self._find(identifier)
            if record is None:
                logger.warning(f"[Unknown Key] ...{identifier[-4:]} - success report ignored")
                return

            now = self.clock()
            windows = record.windows
            windows.perMinuteRequests.consume(now, 1)
            windows.perDayRequests.consume(now, 1)
            windows.perMinuteCost.consume(now, cost)

            record.consecutiveErrors = 0
            record.lastError = None
            record.lastErrorAt = None
            record.successCount += 1
            record.totalRequests += 1
            record.record_latency(latency_ms)

            self._persist(record)
            self.backend.log_usage(UsageEvent(
                identifier=identifier, timestamp=now, cost=cost, success=True, latencyMs=latency_ms or 0
            ))

    @staticmethod
    def _normalize_cost(identifier: str, cost: Any) -> int:
        """Whole, non-negative units: fractions round up, anything else counts as 0."""
        try:
            units = math.ceil(cost or 0)
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"[Invalid Cost] ...{identifier[-4:]} - {cost!r} is not a number, counted as 0")
            return 0
        if units < 0:
            logger.warning(f"[Invalid Cost] ...{identifier[-4:]} - negative cost {cost!r} counted as 0")
            return 0
        return units

    def record_failure(self, identifier: str, error_kind: Any, latency_ms: Optional[float] = None):
        self._ensure_initialized()
        with self._lock:
            record = self._find(identifier)
            if record is None:
                logger.warning(f"[Unknown Key] ...{identifier[-4:]} - failure report ignored")
                return

            now = self.clock()
            error = getattr(error_kind, 'value', None) or str(error_kind)
            record.consecutiveErrors += 1
            record.lastError = error
            record.lastErrorAt = now
            record.failureCount += 1
            record.totalRequests += 1
            record.record_latency(latency_ms)
            self._check_deactivation(record)

            self._persist(record)
            self.backend.log_usage(UsageEvent(
                identifier=identifier, timestamp=now, success=False, error=error, latencyMs=latency_ms or 0
            ))

    def report_limit_hit(self, identifier: str, limit_kind: Union[WindowKind, str]):
        self._ensure_initialized()
        kind = WindowKind.parse(limit_kind)
        with self._lock:
            record = self._find(identifier)
            if record is None:
                logger.warning(f"[Unknown Key] ...{identifier[-4:]} - limit hit ignored")
                return

            now = self.clock()
            record.windows.get(kind).saturate(now)
            if self.config.limitHitsCountAsErrors:
                record.consecutiveErrors += 1
            record.lastError = f"{kind.value} rate limit exceeded"
            record.lastErrorAt = now
            self.cache.invalidate()
            self._check_deactivation(record)

            self._persist(record)
            self.backend.log_usage(UsageEvent(
                identifier=identifier, timestamp=now, success=False, error=record.lastError
            ))

        logger.warning(f"[Limit Hit] {kind.value} on ...{identifier[-4:]}")
        self._emit('limitHit', identifier, kind)

    def _check_deactivation(self, record: CredentialRecord):
        if record.active and record.consecutiveErrors >= self.config.maxConsecutiveErrors:
            record.active = False
            # Invalidate now so the next acquire can't serve it, whatever the store is doing.
            self.cache.invalidate()
            logger.error(f"[Key Deactivated] ...{record.identifier[-4:]} after {record.consecutiveErrors} consecutive errors")
            self._emit('keyDeactivated', record.identifier)

    def reactivate(self, identifier: str):
        self._ensure_initialized()
        with self._lock:
            record = self._find(identifier)
            if record is None:
                raise CredentialNotFoundError(identifier)

            record.active = True
            record.consecutiveErrors = 0
            record.lastError = None
            record.lastErrorAt = None
            self.cache.invalidate()
            self._persist(record)

        logger.info(f"[Key Reactivated] ...{identifier[-4:]}")
        self._emit('keyReactivated', identifier)

    def reset_all_limits(self):
        self._ensure_initialized()
        with self._lock:
            now = self.clock()
            for record in self.records.values():
                record.windows = self.config.new_windows(now)
                self._persist(record)
            self.cache.invalidate()

        logger.info(f"Rate limits reset for {len(self.records)} keys")
        self._emit('limitsReset')

    def invalidate_cache(self):
        with self._lock:
            self.cache.invalidate()

    def refresh_cache(self) -> int:
        self._ensure_initialized()
        with self._lock:
            self._rebuild_cache(self.clock())
            return len(self.cache)

    def snapshot_all(self, mask: bool = True) -> List[CredentialRecord]:
        self._ensure_initialized()
        with self._lock:
            now = self.clock()
            snapshots = []
            for record in self.records.values():
                for _, window in record.windows.items():
                    window.refresh(now)
                snapshots.append(record.model_copy(deep=True))
        return mask_all(snapshots) if mask else snapshots

    def get_rate_limit_info(self, identifier: str) -> List[RateLimitInfo]:
        self._ensure_initialized()
        with self._lock:
            record = self._find(identifier)
            if record is None:
                raise CredentialNotFoundError(identifier)

            now = self.clock()
            return [
                RateLimitInfo(
                    kind=kind,
                    current=window.current,
                    limit=window.limit,
                    resetAt=window.resetAt,
                    isLimited=window.is_exhausted(now)
                )
                for kind, window in record.windows.items()
            ]

    def get_stats(self) -> PoolStats:
        self._ensure_initialized()
        with self._lock:
            now = self.clock()
            active = [r for r in self.records.values() if r.active]
            return PoolStats(
                total=len(self.records),
                active=len(active),
                eligible=sum(1 for r in active if r.is_eligible(now)),
                deactivated=len(self.records) - len(active),
                mode=self.mode
            )

    def usage_report(self) -> List[Dict[str, Any]]:
        report = []
        for record in self.snapshot_all(mask=False):
            windows = record.windows
            report.append({
                'apiKey': mask_identifier(record.identifier),
                'isActive': record.active,
                'lastUsed': record.lastUsedAt,
                'rpmUsage': f"{windows.perMinuteRequests.current}/{windows.perMinuteRequests.limit}",
                'rpdUsage': f"{windows.perDayRequests.current}/{windows.perDayRequests.limit}",
                'costUsage': f"{windows.perMinuteCost.current}/{windows.perMinuteCost.limit}",
                'errorCount': record.consecutiveErrors,
                'lastError': record.lastError,
                'averageLatency': record.averageLatency,
            })
        return report

    def classify_error(self, error: Any) -> ErrorClassification:
        error_str = str(error)
        status = getattr(error, 'status_code', getattr(error, 'status', None))

        # Try to extract from httpx exception
        if hasattr(error, 'response') and error.response is not None:
            status = getattr(error.response, 'status_code', status)

        if isinstance(error, RequestTimeoutError) or 'timeout' in error_str.lower():
            return ErrorClassification(type=ErrorType.TIMEOUT, retryable=True)

        if status == 403 or ERROR_PATTERNS['isAuthError'].search(error_str):
            return ErrorClassification(type=ErrorType.AUTH, retryable=True)

        if status == 429 or ERROR_PATTERNS['isQuotaError'].search(error_str):
            kind = WindowKind.PER_MINUTE_REQUESTS
            if ERROR_PATTERNS['isDailyQuota'].search(error_str):
                kind = WindowKind.PER_DAY_REQUESTS
            elif ERROR_PATTERNS['isCostQuota'].search(error_str):
                kind = WindowKind.PER_MINUTE_COST
            return ErrorClassification(type=ErrorType.QUOTA, retryable=True, limitKind=kind)

        if status == 400 or ERROR_PATTERNS['isBadRequest'].search(error_str):
            return ErrorClassification(type=ErrorType.BAD_REQUEST, retryable=False)

        if status in [500, 502, 503, 504] or ERROR_PATTERNS['isTransient'].search(error_str):
            return ErrorClassification(type=ErrorType.TRANSIENT, retryable=True)

        return ErrorClassification(type=ErrorType.UNKNOWN, retryable=True)

    def calculate_backoff(self, attempt: int) -> float:
        exponential = CONFIG['BASE_BACKOFF'] * (2 ** attempt)
        capped = min(exponential, CONFIG['MAX_BACKOFF'])
        jitter = random.uniform(0, 1000)
        return capped + jitter

    async def execute(
            self,
            fn: Callable[[str], Coroutine[Any, Any, Any]],
            options: Optional[ExecuteOptions] = None,
            cost_fn: Optional[Callable[[Any], float]] = None
    ) -> Any:
        options = options or ExecuteOptions()
        last_error = None

        for attempt in range(options.maxRetries + 1):
            lease = self.acquire_with_rotation() if options.rotate else self.acquire()
            key = lease.identifier
            start = self.clock()

            try:
                if options.timeoutMs:
                    result = await asyncio.wait_for(fn(key), timeout=options.timeoutMs / 1000.0)
                else:
                    result = await fn(key)
            except Exception as e:
                last_error = e
                if isinstance(e, asyncio.TimeoutError):
                    e = RequestTimeoutError(options.timeoutMs)

                classification = self.classify_error(e)
                if classification.type == ErrorType.QUOTA:
                    self.report_limit_hit(key, classification.limitKind)
                else:
                    self.record_failure(key, classification.type, self.clock() - start)
                self._emit('executeFailed', key, e)

                if not classification.retryable or attempt >= options.maxRetries:
                    raise e

                delay = self.calculate_backoff(attempt)
                self._emit('retry', key, attempt + 1, delay)
                await asyncio.sleep(delay / 1000.0)
                continue

            self.record_success(key, cost_fn(result) if cost_fn else 0, self.clock() - start)
            self._emit('executeSuccess', key, self.clock() - start)
            return result

        raise last_error

    def flush(self):
        if self.backend is not None:
            self.backend.flush()

    def close(self):
        if self.backend is not None:
            self.backend.close()
