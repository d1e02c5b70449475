"""
Error types for the user cache.

Refresh-path errors (upstream and validation) are absorbed by the refresh
coordinator and recorded in the cache status. Lookup misses are not errors;
they are reported through LookupResult.
"""

from typing import Optional


class UserCacheError(Exception):
    """Base class for all user cache errors."""

    kind = "error"


class UpstreamError(UserCacheError):
    """The upstream directory API could not produce a complete roster."""

    kind = "upstream"


class UpstreamNetworkError(UpstreamError):
    """Connection failure or retryable server-side error."""

    kind = "network"


class UpstreamTimeoutError(UpstreamNetworkError):
    """A request or the whole refresh attempt ran out of time."""

    kind = "timeout"


class UpstreamRateLimitedError(UpstreamError):
    """Upstream kept rejecting requests for exceeding its rate limit."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamMalformedResponseError(UpstreamError):
    """Upstream answered with something that is not a valid listing."""

    kind = "malformed_response"


class UpstreamAuthError(UpstreamError):
    """The configured token was rejected or lacks the required scopes."""

    kind = "auth"


class SnapshotValidationError(UserCacheError):
    """A fetched roster failed consistency checks and was not published."""

    kind = "validation"
