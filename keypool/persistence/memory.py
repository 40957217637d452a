from typing import Dict, List
from ..core.types import CredentialRecord, UsageEvent

class MemoryStore:
    """
    In-Memory Credential Store

    Keeps records and usage events for the process lifetime only.
    Useful for testing, serverless functions, or when persistence isn't needed.
    """
    def __init__(self):
        self._records: Dict[str, CredentialRecord] = {}
        self.usage_events: List[UsageEvent] = []

    def load_all(self) -> List[CredentialRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    def upsert(self, record: CredentialRecord) -> None:
        self._records[record.identifier] = record.model_copy(deep=True)

    def append_usage_event(self, event: UsageEvent) -> None:
        self.usage_events.append(event)

    def get(self, identifier: str) -> CredentialRecord:
        return self._records.get(identifier)

    def clear(self) -> None:
        self._records.clear()
        self.usage_events.clear()

    @property
    def size(self) -> int:
        return len(self._records)
