from typing import List, Optional
from .types import CredentialRecord


class SelectionCache:
    """
    Short-lived, score-sorted view of the eligible credentials.

    Entries are the pool's own records, not copies, so eligibility can be
    re-checked against live window state on every read.
    """
    def __init__(self, ttl_ms: int = 5000):
        self.ttl_ms = ttl_ms
        self.entries: List[CredentialRecord] = []
        self.built_at = 0
        self.cursor = 0

    def is_fresh(self, now: int) -> bool:
        return bool(self.entries) and now - self.built_at < self.ttl_ms

    def rebuild(self, ranked: List[CredentialRecord], now: int):
        self.entries = list(ranked)
        self.built_at = now
        self.cursor = 0

    def peek(self) -> Optional[CredentialRecord]:
        if not self.entries:
            return None
        return self.entries[self.cursor % len(self.entries)]

    def advance(self):
        self.cursor += 1

    def invalidate(self):
        self.entries = []
        self.built_at = 0

    def __len__(self) -> int:
        return len(self.entries)
