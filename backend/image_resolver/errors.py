"""
Image Resolver Errors

Failure taxonomy shared by the resolver and the relay.

- retryable: transport-level problems that a later attempt may not hit
- not retryable: deterministic rejections (bad reference, host not allowed)
"""

from typing import List, Optional


class ImageLoadError(Exception):
    """Base class for every image resolution failure."""

    retryable = False


class InvalidReference(ImageLoadError):
    """Reference is empty, malformed or uses an unsupported scheme."""


class DomainRejected(ImageLoadError):
    """Reference host is not on the allow-list."""


class NetworkFailure(ImageLoadError):
    """Transport-level fault while talking to the upstream."""

    retryable = True


class HttpStatusError(NetworkFailure):
    """Upstream answered with a non-success status."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code}: {reason}".rstrip(": "))


class FetchTimeout(ImageLoadError):
    """A single attempt exceeded its time bound and was cancelled."""

    retryable = True


class OpaqueBlocked(ImageLoadError):
    """Response body is not readable under cross-origin rules."""

    retryable = True


class EmptyPayload(ImageLoadError):
    """Upstream reported success but sent zero bytes."""

    retryable = True


class UndecodableImage(EmptyPayload):
    """Bytes arrived but could not be decoded as an image."""


class StrategiesExhausted(ImageLoadError):
    """Every fallback strategy failed within one attempt."""

    retryable = True

    def __init__(self, attempts: List):
        self.attempts = attempts
        names = ", ".join(f"{a.strategy}: {a.error}" for a in attempts)
        super().__init__(f"All strategies failed ({names})")


class RetryExhausted(ImageLoadError):
    """Terminal failure after the retry budget was spent."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class RelayUpstreamError(ImageLoadError):
    """Relay upstream responded with a non-success status."""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Failed to fetch image: {reason}")


class InternalFault(ImageLoadError):
    """Unexpected exception inside the relay."""
