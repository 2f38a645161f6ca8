from __future__ import annotations
from typing import Any, Optional

# Bodies echoed into exception messages are cut to this many characters.
BODY_PREVIEW_CHARS = 500


class SportsFeedError(Exception):
    """
    Base class for every error the engine surfaces to the host.

    `code` is a stable machine-readable tag the gateway maps to an HTTP
    status; `endpoint_id` is filled in whenever the failing call is known.
    """

    code = "ENGINE_ERROR"

    def __init__(self, message: str, endpoint_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.endpoint_id = endpoint_id

    def __str__(self) -> str:
        msg = super().__str__()
        if self.endpoint_id:
            return f"{self.code}:{self.endpoint_id}: {msg}"
        return f"{self.code}: {msg}"


class CatalogLoadError(SportsFeedError):
    """Descriptor source is malformed; the previous catalog stays in place."""

    code = "CATALOG_LOAD_FAILED"


class EndpointNotFound(SportsFeedError):
    code = "ENDPOINT_NOT_FOUND"


class ParameterValidationError(SportsFeedError):
    """A supplied parameter is missing or violates its declaration."""

    code = "INVALID_PARAMETER"

    def __init__(
        self, message: str, param: Optional[str] = None, endpoint_id: Optional[str] = None
    ) -> None:
        super().__init__(message, endpoint_id)
        self.param = param


class RateLimited(SportsFeedError):
    """Local or remote quota exhausted. The caller decides when to retry."""

    code = "RATE_LIMITED"

    def __init__(
        self, retry_after_s: int, message: str = "", endpoint_id: Optional[str] = None
    ) -> None:
        super().__init__(message or f"retry after {retry_after_s}s", endpoint_id)
        self.retry_after_s = retry_after_s


class QuotaWeightError(SportsFeedError, ValueError):
    """An endpoint's quota weight can never fit in the configured rate-limit buckets."""

    code = "QUOTA_WEIGHT_TOO_LARGE"


class TransportError(SportsFeedError):
    """Connection failure or timeout; retried before it reaches the caller."""

    code = "TRANSPORT_ERROR"


class RemoteError(SportsFeedError):
    """The API answered with a non-2xx status (other than 429) or an error envelope."""

    code = "REMOTE_ERROR"

    def __init__(
        self, status_code: int, body: Any, endpoint_id: Optional[str] = None
    ) -> None:
        self.status_code = status_code
        self.body = body
        preview = str(body)
        if len(preview) > BODY_PREVIEW_CHARS:
            preview = preview[:BODY_PREVIEW_CHARS] + "..."
        super().__init__(f"HTTP {status_code}: {preview}", endpoint_id)


class FlattenWarning(SportsFeedError):
    """One response element could not be flattened. Logged and skipped, never raised to the host."""

    code = "FLATTEN_WARNING"
