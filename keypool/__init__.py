from .core.manager import KeyPool, RequestTimeoutError
from .core.errors import (
    KeyPoolError, PoolUninitializedError, PoolExhaustedError, CredentialNotFoundError, PersistenceUnavailableError
)
from .core.types import (
    RateWindow, CredentialRecord, PoolConfig, WindowKind, UsageEvent, AcquireResult, RateLimitInfo,
    PoolStats, ExecuteOptions, ErrorType, ErrorClassification, mask_identifier
)
from .persistence import CredentialStore, MemoryStore, FileStore

__all__ = [
    'KeyPool',
    'RequestTimeoutError',
    'KeyPoolError',
    'PoolUninitializedError',
    'PoolExhaustedError',
    'CredentialNotFoundError',
    'PersistenceUnavailableError',
    'RateWindow',
    'CredentialRecord',
    'PoolConfig',
    'WindowKind',
    'UsageEvent',
    'AcquireResult',
    'RateLimitInfo',
    'PoolStats',
    'ExecuteOptions',
    'ErrorType',
    'ErrorClassification',
    'mask_identifier',
    'CredentialStore',
    'MemoryStore',
    'FileStore'
]
