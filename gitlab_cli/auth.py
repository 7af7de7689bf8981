"""OAuth2 device-authorization grant and token lifecycle.

:meth:`AuthFlow.ensure_valid_credential` is the single entry point used by
every command that talks to GitLab:

- a stored, unexpired credential is returned without touching the network;
- an expired credential with a refresh token gets exactly one refresh
  attempt, and the renewed credential is persisted;
- otherwise (or when the refresh fails) the device flow runs: the user is
  shown a verification URL and code, and the token endpoint is polled at the
  server-specified interval until the user approves, denies, or the device
  code expires.

Every path either returns a usable :class:`Credential` or raises an
:class:`AuthError`; the device code's ``expires_in`` bounds total waiting.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from gitlab_cli import transport
from gitlab_cli.errors import (
    ApiError,
    AuthDenied,
    AuthError,
    AuthExpired,
    NoCredential,
    RefreshFailed,
)
from gitlab_cli.token_store import Credential, TokenStore

logger = logging.getLogger(__name__)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_TOKEN_LIFETIME = 7200
SLOW_DOWN_STEP = 5

STATIC_TOKEN_EXPIRY = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DeviceAuthorization:
    """Response of the device-authorization endpoint."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = 5
    verification_uri_complete: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceAuthorization":
        return cls(
            device_code=str(data["device_code"]),
            user_code=str(data["user_code"]),
            verification_uri=str(data["verification_uri"]),
            expires_in=int(data.get("expires_in", 300)),
            interval=int(data.get("interval", 5)),
            verification_uri_complete=data.get("verification_uri_complete"),
        )


def _oauth_error(resp: transport.Response) -> tuple[str, str]:
    """Extract ``(error, error_description)`` from a token-endpoint failure."""
    try:
        data = resp.json()
    except ValueError:
        return f"http_{resp.status}", resp.body[:200]
    if not isinstance(data, dict):
        return f"http_{resp.status}", ""
    return str(data.get("error") or f"http_{resp.status}"), str(data.get("error_description") or "")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthFlow:
    """Produces a valid :class:`Credential`, logging in only when needed."""

    def __init__(
        self,
        host: str,
        client_id: str,
        scopes: str,
        store: TokenStore,
        *,
        static_token: str = "",
        request: transport.Transport = transport.request,
        notify: Optional[Callable[[DeviceAuthorization], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.host = host.rstrip("/")
        self.client_id = client_id
        self.scopes = scopes
        self.store = store
        self.static_token = static_token
        self._request = request
        self._notify = notify
        self._sleep = sleep
        self._clock = clock
        self._now = now

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def ensure_valid_credential(self, interactive: bool = True) -> Credential:
        """Return a usable credential or raise :class:`AuthError`.

        :class:`StorageError` from a corrupt credential file propagates; the
        file is never overwritten behind the user's back.  An expired
        credential that cannot be renewed (no refresh token, or the refresh
        token was rejected) is removed once the fallback fails as well.
        """
        stored = self.store.load()
        dead = False
        if stored is not None:
            if not stored.is_expired(self._now()):
                return stored
            dead = not stored.refreshable
            if stored.refreshable:
                logger.info("access token expired, refreshing")
                try:
                    renewed = self.refresh(stored)
                except RefreshFailed as exc:
                    logger.warning("token refresh failed: %s", exc)
                    dead = exc.rejected
                else:
                    self.store.save(renewed)
                    return renewed

        if self.static_token:
            return Credential(
                access_token=self.static_token,
                expires_at=STATIC_TOKEN_EXPIRY,
                host=self.host,
            )

        if not interactive:
            if dead:
                self._discard()
            raise NoCredential("not authenticated; run 'gitlab auth login'")
        try:
            return self.login()
        except (AuthDenied, AuthExpired):
            if dead:
                self._discard()
            raise

    def _discard(self) -> None:
        if self.store.clear():
            logger.info("removed unusable credential %s", self.store.path)

    def login(self) -> Credential:
        """Run the device flow unconditionally and persist the result."""
        authorization = self.request_device_code()
        if self._notify is not None:
            self._notify(authorization)
        credential = self.poll_for_token(authorization)
        self.store.save(credential)
        return credential

    def logout(self) -> bool:
        return self.store.clear()

    def status(self) -> dict[str, Any]:
        """Summary of the current authentication state (no network)."""
        stored = self.store.load()
        if stored is not None:
            client = stored.client_id or self.client_id
            return {
                "authenticated": True,
                "source": "oauth2",
                "host": stored.host or self.host,
                "client_id": f"{client[:8]}...",
                "expires_at": stored.expires_at.isoformat(),
                "expired": stored.is_expired(self._now()),
                "refreshable": stored.refreshable,
            }
        if self.static_token:
            return {"authenticated": True, "source": "token", "host": self.host}
        return {"authenticated": False, "source": None}

    # ------------------------------------------------------------------
    # Device authorization grant
    # ------------------------------------------------------------------

    def request_device_code(self) -> DeviceAuthorization:
        try:
            resp = self._request(
                "POST",
                f"{self.host}/oauth/authorize_device",
                form={"client_id": self.client_id, "scope": self.scopes},
            )
        except ApiError as exc:
            raise AuthError(f"could not reach {self.host}: {exc}") from exc
        if not resp.ok:
            error, description = _oauth_error(resp)
            raise AuthDenied(f"device authorization rejected: {error} {description}".strip())
        try:
            return DeviceAuthorization.from_dict(resp.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthDenied(f"malformed device authorization response: {exc}") from exc

    def poll_for_token(self, authorization: DeviceAuthorization) -> Credential:
        """Poll the token endpoint until the user approves or the code expires."""
        deadline = self._clock() + authorization.expires_in
        interval = max(authorization.interval, 1)
        form = {
            "client_id": self.client_id,
            "device_code": authorization.device_code,
            "grant_type": DEVICE_GRANT_TYPE,
        }
        while True:
            self._sleep(interval)
            if self._clock() >= deadline:
                raise AuthExpired("device code expired before authorization completed")
            try:
                resp = self._request("POST", f"{self.host}/oauth/token", form=form)
            except ApiError as exc:
                # Network hiccup: the deadline still bounds the loop.
                logger.debug("token poll failed: %s", exc)
                continue
            if resp.ok:
                return self._credential_from(resp, fallback_refresh=None)

            error, description = _oauth_error(resp)
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += SLOW_DOWN_STEP
                logger.debug("server asked to slow down; interval now %ss", interval)
                continue
            if error == "expired_token":
                raise AuthExpired("device code expired before authorization completed")
            raise AuthDenied(f"authorization failed: {error} {description}".strip())

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, credential: Credential) -> Credential:
        """Exchange *credential*'s refresh token for a new credential (one attempt).

        The request goes to the host that issued *credential*.
        """
        if not credential.refresh_token:
            raise RefreshFailed("credential has no refresh token", rejected=True)
        client_id = credential.client_id or self.client_id
        host = (credential.host or self.host).rstrip("/")
        try:
            resp = self._request(
                "POST",
                f"{host}/oauth/token",
                form={
                    "client_id": client_id,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except ApiError as exc:
            raise RefreshFailed(str(exc)) from exc
        if not resp.ok:
            error, description = _oauth_error(resp)
            raise RefreshFailed(f"{error} {description}".strip(), rejected=400 <= resp.status < 500)
        try:
            return self._credential_from(
                resp, fallback_refresh=credential.refresh_token, client_id=client_id, host=host
            )
        except AuthDenied as exc:
            raise RefreshFailed(str(exc)) from exc

    def _credential_from(
        self,
        resp: transport.Response,
        fallback_refresh: Optional[str],
        client_id: Optional[str] = None,
        host: Optional[str] = None,
    ) -> Credential:
        try:
            data = resp.json()
        except ValueError as exc:
            raise AuthDenied(f"malformed token response: {exc}") from exc
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthDenied("token response is missing access_token")
        try:
            lifetime = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME
        return Credential(
            access_token=str(token),
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=self._now() + timedelta(seconds=lifetime),
            client_id=client_id or self.client_id,
            host=host or self.host,
        )
