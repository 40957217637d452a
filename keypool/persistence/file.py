import os
import json
import tempfile
import threading
from typing import Any, Dict, List, Optional
from pydantic import ValidationError

from ..core.errors import PersistenceUnavailableError, PoolUninitializedError
from ..core.types import CredentialRecord, UsageEvent

class FileStore:
    """
    File-Based Credential Store

    Persists credential state to a JSON file on disk and appends usage
    events to a JSON-lines log next to it. Survives process restarts so
    windows and deactivations aren't forgotten when an app reboots.

    State writes go to a temp file first and are swapped in with
    ``os.replace`` so a crash never leaves a half-written state file.
    """
    def __init__(self, file_path: Optional[str] = None, usage_log_path: Optional[str] = None, clear_on_init: bool = False):
        self.file_path = file_path or os.path.join(tempfile.gettempdir(), 'keypool_state.json')
        self.usage_log_path = usage_log_path or os.path.splitext(self.file_path)[0] + '.usage.jsonl'
        self._state: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()
        if clear_on_init:
            self.clear()

    def open(self) -> None:
        try:
            directory = os.path.dirname(os.path.abspath(self.file_path))
            os.makedirs(directory, exist_ok=True)
            if os.path.exists(self.file_path):
                with open(self.file_path, 'r', encoding='utf-8') as f:
                    content = f.read()
                state = json.loads(content) if content.strip() else {}
                if not isinstance(state, dict):
                    raise PersistenceUnavailableError(f"Unexpected state format in {self.file_path}")
            else:
                state = {}
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceUnavailableError(f"Cannot open state file {self.file_path}: {e}") from e
        with self._lock:
            self._state = state

    def load_all(self) -> List[CredentialRecord]:
        if self._state is None:
            raise PoolUninitializedError()
        try:
            return [CredentialRecord.model_validate(data) for data in self._state.values()]
        except ValidationError as e:
            raise PersistenceUnavailableError(f"Corrupt credential state in {self.file_path}: {e}") from e

    def upsert(self, record: CredentialRecord) -> None:
        if self._state is None:
            raise PoolUninitializedError()
        with self._lock:
            self._state[record.identifier] = record.model_dump(mode='json')
            self._write_state()

    def append_usage_event(self, event: UsageEvent) -> None:
        try:
            with self._lock, open(self.usage_log_path, 'a', encoding='utf-8') as f:
                f.write(event.model_dump_json() + '\n')
        except OSError as e:
            raise PersistenceUnavailableError(f"Cannot append to {self.usage_log_path}: {e}") from e

    def _write_state(self) -> None:
        tmp_path = f"{self.file_path}.tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self._state, f)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            raise PersistenceUnavailableError(f"Cannot write state file {self.file_path}: {e}") from e

    def clear(self) -> None:
        for path in (self.file_path, self.usage_log_path):
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                raise PersistenceUnavailableError(f"Cannot remove {path}: {e}") from e
        self._state = None

    def close(self) -> None:
        self._state = None
