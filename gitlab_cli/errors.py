"""Error taxonomy shared by the auth, API and orchestration layers.

Transient API errors are retried by whoever issued the call; everything else
propagates to the caller untouched.
"""

from __future__ import annotations

from typing import Optional


class GitlabCliError(Exception):
    """Base class for every error this package raises on purpose."""


class ConfigError(GitlabCliError):
    """The settings file exists but could not be parsed."""


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(GitlabCliError):
    """Could not obtain a usable credential."""

    kind = "auth_error"


class NoCredential(AuthError):
    kind = "no_credential"


class AuthExpired(AuthError):
    """The device code expired before the user finished authorising."""

    kind = "auth_expired"


class AuthDenied(AuthError):
    """The token endpoint answered with a non-retryable error."""

    kind = "auth_denied"


class RefreshFailed(AuthError):
    """The refresh grant did not produce a new credential.

    ``rejected`` is True when the token endpoint refused the refresh token
    itself (a 4xx answer); network trouble and 5xx leave it False.
    """

    kind = "refresh_failed"

    def __init__(self, message: str, *, rejected: bool = False) -> None:
        super().__init__(message)
        self.rejected = rejected


class StorageError(AuthError):
    """The credential file is unreadable or corrupt."""

    kind = "storage_error"


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class ApiError(GitlabCliError):
    """A GitLab API call failed.

    ``transient`` is True for failures that are expected to succeed on retry
    (network errors, timeouts, 5xx, 429).
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status = status
        self.body = body

    @property
    def permanent(self) -> bool:
        return not self.transient

    def __repr__(self) -> str:
        kind = "transient" if self.transient else "permanent"
        return f"ApiError({kind}, status={self.status!r}, {str(self)!r})"
