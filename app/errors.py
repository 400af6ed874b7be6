"""
Error taxonomy for the gateway.

Throttling errors are soft: callers serve stale data or report the
retry-after hint. Upstream errors are surfaced as provider errors after the
quota governor has classified them.
"""
from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""
    pass


class ThrottledError(GatewayError):
    """Raised when the quota governor refuses an upstream call."""

    def __init__(self, reason: str, retry_after_ms: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "reason": self.reason,
            "retryAfterMs": self.retry_after_ms,
        }


class QuotaExhausted(ThrottledError):
    """Token bucket, daily cap, or budget bucket is exhausted."""
    pass


class BackoffActive(ThrottledError):
    """Adaptive backoff window is in effect after upstream errors."""
    pass


class UpstreamError(GatewayError):
    """Raised when the upstream provider call fails."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        is_timeout: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.is_timeout = is_timeout

    def __repr__(self) -> str:
        return (
            f"UpstreamError({self.args[0]!r}, status_code={self.status_code}, "
            f"is_timeout={self.is_timeout})"
        )


class StorageWriteFailure(GatewayError):
    """A cache tier failed to persist a value. Logged, never propagated."""
    pass


class IntegrityRejection(GatewayError):
    """A terminal-looking payload failed its completeness check."""
    pass
