import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple
from loguru import logger

from .errors import KeyPoolError
from ..persistence.base import CredentialStore
from .types import CredentialRecord, UsageEvent


class PersistenceBackend(ABC):
    mode: str

    @abstractmethod
    def save(self, record: CredentialRecord):
        pass

    @abstractmethod
    def log_usage(self, event: UsageEvent):
        pass

    def flush(self):
        pass

    def close(self):
        pass


class InMemoryBackend(PersistenceBackend):
    mode = 'in-memory'

    def save(self, record: CredentialRecord):
        pass

    def log_usage(self, event: UsageEvent):
        pass


class DurableBackend(PersistenceBackend):
    """
    Mirrors pool state into a CredentialStore from a single background worker.

    Writes are fire-and-forget: callers never wait on them and failures are
    logged and dropped. Upserts are coalesced per identifier, so a hung store
    holds at most one pending snapshot per credential and the newest one is
    what gets written. Usage events are capped at ``max_pending_events``;
    events beyond the cap are dropped with a warning.
    """
    mode = 'durable'

    def __init__(self, store: CredentialStore, max_pending_events: int = 10_000):
        self.store = store
        self.max_pending_events = max_pending_events
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='keypool-persist')
        self._lock = threading.Lock()
        self._closed = False
        self._pending_records: Dict[str, CredentialRecord] = {}
        self._pending_events = 0
        self._dropped_events = 0

    def save(self, record: CredentialRecord):
        with self._lock:
            if self._closed:
                return
            queued = record.identifier in self._pending_records
            self._pending_records[record.identifier] = record
            if not queued:
                self._submit('upsert', record.identifier, self._write_latest, record.identifier)

    def log_usage(self, event: UsageEvent):
        with self._lock:
            if self._closed:
                return
            if self._pending_events >= self.max_pending_events:
                self._dropped_events += 1
                if self._dropped_events == 1 or self._dropped_events % 1000 == 0:
                    logger.warning(
                        f"[Persistence] Usage log backlog full ({self.max_pending_events}), "
                        f"dropped {self._dropped_events} event(s)"
                    )
                return
            self._pending_events += 1
            self._submit('usage log', event.identifier, self._append_event, event)

    def _write_latest(self, identifier: str):
        with self._lock:
            record = self._pending_records.pop(identifier)
        self.store.upsert(record)

    def _append_event(self, event: UsageEvent):
        try:
            self.store.append_usage_event(event)
        finally:
            with self._lock:
                self._pending_events -= 1

    def _submit(self, label: str, identifier: str, fn: Callable, *args: Any):
        # Caller holds self._lock, so close() cannot shut the executor down in between.
        future = self._executor.submit(fn, *args)
        future.add_done_callback(lambda f: self._log_failure(label, identifier, f))

    @staticmethod
    def _log_failure(label: str, identifier: str, future: Future):
        error = future.exception()
        if error is not None:
            logger.warning(f"[Persistence] Async {label} failed for ...{identifier[-4:]}: {error}")

    @property
    def pending_events(self) -> int:
        return self._pending_events

    def flush(self):
        with self._lock:
            if self._closed:
                return
            # One worker, FIFO: a no-op finishing means everything queued before it has run.
            marker = self._executor.submit(lambda: None)
        marker.result()

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)
        close_fn = getattr(self.store, 'close', None)
        if callable(close_fn):
            try:
                close_fn()
            except (KeyPoolError, OSError) as e:
                logger.warning(f"[Persistence] Failed to close store: {e}")


def open_backend(store: Optional[CredentialStore]) -> Tuple[PersistenceBackend, List[CredentialRecord]]:
    """
    Open ``store`` and load its records, or fall back to in-memory mode.

    Any failure here is logged and never raised: an unreachable or
    misconfigured store simply means the pool runs without persistence.
    """
    if store is None:
        return InMemoryBackend(), []

    try:
        open_fn = getattr(store, 'open', None)
        if callable(open_fn):
            open_fn()
        records = list(store.load_all())
    except Exception as e:
        logger.warning(f"[Persistence] Credential store unavailable, falling back to in-memory mode: {e}")
        return InMemoryBackend(), []

    return DurableBackend(store), records
