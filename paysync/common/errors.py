"""Error taxonomy shared by the gateway client, pipeline and reconciler.

Each error declares whether it is retryable. The gateway layer classifies
failures into these types and the retry executor enforces the split.
"""

import asyncio


class PaySyncError(Exception):
    """Base class for classified failures."""

    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.attempts: int | None = None
        self.elapsed: float | None = None


class ValidationError(PaySyncError):
    """Malformed payload, amount mismatch or other bad input."""


class AuthError(PaySyncError):
    """Rejected credentials or an invalid webhook signature."""


class ConfigError(PaySyncError):
    """Missing or inconsistent configuration."""


class ConflictError(PaySyncError):
    """A stale or duplicate transition lost a compare-and-swap."""


class OperationCancelledError(PaySyncError):
    """The caller cancelled an operation, possibly mid-backoff."""


class CircuitOpenError(PaySyncError):
    """Raised without calling the dependency while its circuit is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"circuit {name} is open, retry after {retry_after:.2f}s")
        self.name = name
        self.retry_after = retry_after


class RateLimitedError(PaySyncError):
    """The local sliding window (or the gateway) refused the call."""

    retryable = True

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for {name}, retry after {retry_after:.2f}s")
        self.name = name
        self.retry_after = retry_after


class GatewayTimeoutError(PaySyncError):
    retryable = True


class TransientGatewayError(PaySyncError):
    """Network failure or 5xx-equivalent answer from the gateway."""

    retryable = True


class PaymentNotFoundError(PaySyncError):
    """A webhook referenced a payment that is not (yet) stored locally."""

    retryable = True


def is_retryable(exc: BaseException) -> bool:
    """Default classifier used by retry policies."""

    if isinstance(exc, PaySyncError):
        return exc.retryable
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError))
