from typing import List, Protocol, runtime_checkable
from ..core.types import CredentialRecord, UsageEvent

@runtime_checkable
class CredentialStore(Protocol):
    def load_all(self) -> List[CredentialRecord]:
        ...

    def upsert(self, record: CredentialRecord) -> None:
        ...

    def append_usage_event(self, event: UsageEvent) -> None:
        ...
