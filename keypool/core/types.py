import os
from enum import Enum
from typing import ClassVar, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000


class WindowKind(str, Enum):
    PER_MINUTE_REQUESTS = 'perMinuteRequests'
    PER_DAY_REQUESTS = 'perDayRequests'
    PER_MINUTE_COST = 'perMinuteCost'

    @classmethod
    def parse(cls, value) -> 'WindowKind':
        if isinstance(value, cls):
            return value
        legacy = {'RPM': cls.PER_MINUTE_REQUESTS, 'RPD': cls.PER_DAY_REQUESTS, 'TPM': cls.PER_MINUTE_COST}
        name = str(value)
        if name.upper() in legacy:
            return legacy[name.upper()]
        return cls(name)


WINDOW_DURATIONS: Dict[WindowKind, int] = {
    WindowKind.PER_MINUTE_REQUESTS: MINUTE_MS,
    WindowKind.PER_DAY_REQUESTS: DAY_MS,
    WindowKind.PER_MINUTE_COST: MINUTE_MS,
}


class RateWindow(BaseModel):
    """
    Fixed-window quota counter.

    There is no background sweeper: every read or write goes through
    ``refresh`` first, which restarts the window once ``resetAt`` has passed.
    """
    current: int = Field(default=0, ge=0)
    limit: int = Field(gt=0)
    resetAt: int
    durationMs: int = Field(default=MINUTE_MS, gt=0)

    model_config = ConfigDict(validate_assignment=True)

    @classmethod
    def fresh(cls, limit: int, duration_ms: int, now: int) -> 'RateWindow':
        return cls(current=0, limit=limit, resetAt=now + duration_ms, durationMs=duration_ms)

    def refresh(self, now: int) -> None:
        if now >= self.resetAt:
            self.current = 0
            self.resetAt = now + self.durationMs

    def is_exhausted(self, now: int) -> bool:
        self.refresh(now)
        return self.current >= self.limit

    def consume(self, now: int, amount: int = 1) -> None:
        # Overshoot is allowed, the provider is the real enforcer.
        self.refresh(now)
        self.current += amount

    def saturate(self, now: int) -> None:
        self.refresh(now)
        self.current = self.limit

    def effective_current(self, now: int) -> int:
        return 0 if now >= self.resetAt else self.current

    def remaining_ratio(self, now: int) -> float:
        return max(0, self.limit - self.effective_current(now)) / self.limit


class CredentialWindows(BaseModel):
    perMinuteRequests: RateWindow
    perDayRequests: RateWindow
    perMinuteCost: RateWindow

    model_config = ConfigDict(validate_assignment=True)

    def get(self, kind: WindowKind) -> RateWindow:
        return getattr(self, WindowKind.parse(kind).value)

    def items(self):
        return [(kind, self.get(kind)) for kind in WindowKind]


class PoolConfig(BaseModel):
    perMinuteRequests: int = Field(default=30, gt=0)
    perDayRequests: int = Field(default=200, gt=0)
    perMinuteCost: int = Field(default=1_000_000, gt=0)
    cacheTtlMs: int = Field(default=5000, ge=0)
    rotationThreshold: float = Field(default=0.3, ge=0, le=1)
    maxConsecutiveErrors: int = Field(default=5, gt=0)
    limitHitsCountAsErrors: bool = Field(default=True)

    model_config = ConfigDict(validate_assignment=True)

    ENV_VARS: ClassVar[Dict[str, str]] = {
        'perMinuteRequests': 'KEYPOOL_RPM_LIMIT',
        'perDayRequests': 'KEYPOOL_RPD_LIMIT',
        'perMinuteCost': 'KEYPOOL_COST_LIMIT',
        'cacheTtlMs': 'KEYPOOL_CACHE_TTL_MS',
        'rotationThreshold': 'KEYPOOL_ROTATION_THRESHOLD',
        'maxConsecutiveErrors': 'KEYPOOL_MAX_CONSECUTIVE_ERRORS',
    }

    @classmethod
    def from_env(cls, **defaults) -> 'PoolConfig':
        values = dict(defaults)
        for field_name, env_name in cls.ENV_VARS.items():
            raw = os.environ.get(env_name, "").strip()
            if raw:
                values[field_name] = raw
        return cls(**values)

    def limit_for(self, kind: WindowKind) -> int:
        return getattr(self, WindowKind.parse(kind).value)

    def new_windows(self, now: int) -> CredentialWindows:
        return CredentialWindows(**{
            kind.value: RateWindow.fresh(self.limit_for(kind), WINDOW_DURATIONS[kind], now)
            for kind in WindowKind
        })


class CredentialRecord(BaseModel):
    identifier: str
    active: bool = Field(default=True)
    lastUsedAt: int = Field(default=0)
    windows: CredentialWindows
    consecutiveErrors: int = Field(default=0, ge=0)
    lastError: Optional[str] = Field(default=None)
    lastErrorAt: Optional[int] = Field(default=None)
    successCount: int = Field(default=0)
    failureCount: int = Field(default=0)
    totalRequests: int = Field(default=0)
    averageLatency: float = Field(default=0.0)
    totalLatency: float = Field(default=0.0)
    latencySamples: int = Field(default=0)

    model_config = ConfigDict(validate_assignment=True)

    def is_eligible(self, now: int) -> bool:
        if not self.active:
            return False
        # Evaluate every window so each one gets its lazy reset.
        exhausted = [window.is_exhausted(now) for _, window in self.windows.items()]
        return not any(exhausted)

    def record_latency(self, latency_ms: Optional[float]) -> None:
        if latency_ms is None:
            return
        self.totalLatency += latency_ms
        self.latencySamples += 1
        self.averageLatency = self.totalLatency / self.latencySamples


class UsageEvent(BaseModel):
    identifier: str
    timestamp: int
    cost: int = Field(default=0)
    success: bool
    error: Optional[str] = Field(default=None)
    latencyMs: float = Field(default=0)


class AcquireResult(BaseModel):
    identifier: str
    snapshot: CredentialRecord
    score: float
    method: str
    totalAvailable: int


class RateLimitInfo(BaseModel):
    kind: WindowKind
    current: int
    limit: int
    resetAt: int
    isLimited: bool


class PoolStats(BaseModel):
    total: int
    active: int
    eligible: int
    deactivated: int
    mode: str


class ExecuteOptions(BaseModel):
    timeoutMs: Optional[int] = Field(default=None)
    maxRetries: int = Field(default=0)
    rotate: bool = Field(default=False)


class ErrorType(str, Enum):
    QUOTA = 'QUOTA'
    TRANSIENT = 'TRANSIENT'
    AUTH = 'AUTH'
    BAD_REQUEST = 'BAD_REQUEST'
    TIMEOUT = 'TIMEOUT'
    UNKNOWN = 'UNKNOWN'


class ErrorClassification(BaseModel):
    type: ErrorType
    retryable: bool
    limitKind: Optional[WindowKind] = Field(default=None)


def mask_identifier(identifier: str) -> str:
    if len(identifier) <= 12:
        return f"...{identifier[-4:]}"
    return f"{identifier[:8]}...{identifier[-4:]}"


def mask_all(records: List[CredentialRecord]) -> List[CredentialRecord]:
    return [r.model_copy(update={'identifier': mask_identifier(r.identifier)}, deep=True) for r in records]
