"""
Error taxonomy for the sync engine.

The runner classifies adapter and broker failures by type:

* ``AuthRejected``          — refresh once out-of-band, then fail the job
* ``RateLimited``           — retry after exactly ``retry_after`` seconds
* ``TransientNetworkError`` — default backoff retry
* ``MalformedResponse``     — logged with context, never retried
* ``TokenRefreshFailed``    — user must reconnect, never retried
"""

from __future__ import annotations

from typing import Optional


class IntegrationError(Exception):
    """Base class for every sync-engine error."""


class OAuthExchangeError(IntegrationError):
    """The provider refused the authorization-code exchange."""


class InvalidOAuthState(IntegrationError):
    """OAuth ``state`` is malformed, forged, expired or for another provider."""


class TokenRefreshFailed(IntegrationError):
    """The provider rejected the refresh token (access was revoked)."""


class AuthRejected(IntegrationError):
    """The provider rejected an access token we believed to be valid."""


class RateLimited(IntegrationError):
    def __init__(self, retry_after: int = 60, message: Optional[str] = None):
        self.retry_after = max(int(retry_after), 0)
        super().__init__(message or f"rate limited, retry after {self.retry_after}s")


class TransientNetworkError(IntegrationError):
    """Timeouts, connection failures and provider 5xx responses."""


class MalformedResponse(IntegrationError):
    """The provider answered with something we cannot parse."""

    def __init__(self, message: str, excerpt: str = ""):
        self.excerpt = excerpt[:500]
        super().__init__(message)


class SignatureInvalid(IntegrationError):
    """Webhook signature verification failed."""


class JobClaimConflict(IntegrationError):
    """Another worker claimed the job first."""
