from typing import Optional


class KeyPoolError(Exception):
    pass


class PoolUninitializedError(KeyPoolError):
    def __init__(self):
        super().__init__("Credential store has not been opened")


class PoolExhaustedError(KeyPoolError):
    """
    Raised when no credential is eligible.

    Exhaustion heals itself once a window resets, so callers should treat
    it as a transient "retry later" condition.
    """
    retryable = True

    def __init__(self, retry_after_ms: Optional[int] = None):
        self.retry_after_ms = retry_after_ms
        message = "All API keys exhausted: no eligible keys available"
        if retry_after_ms is not None:
            message += f" (retry in {retry_after_ms}ms)"
        super().__init__(message)


class CredentialNotFoundError(KeyPoolError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"API key not found: ...{identifier[-4:]}")


class PersistenceUnavailableError(KeyPoolError):
    pass
