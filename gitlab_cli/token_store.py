"""On-disk storage for the OAuth2 credential.

The credential file is the one resource two concurrent invocations can
share, so every write goes to a temporary file in the same directory and is
moved into place with :func:`os.replace`.  Readers therefore see either the
old file or the complete new one, never a partial write.

Corrupt contents are reported as :class:`StorageError` and left on disk;
the user decides whether to log in again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from gitlab_cli.errors import StorageError

logger = logging.getLogger(__name__)

CREDENTIALS_FILENAME = "credentials.json"

# Tokens are treated as expired slightly early so a request started just
# before expiry does not fail mid-flight.
EXPIRY_SKEW = timedelta(seconds=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """OAuth2 access token plus what is needed to renew it.

    ``host`` is the GitLab instance that issued the token; API calls and
    refreshes go there.
    """

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    host: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return now >= self.expires_at - EXPIRY_SKEW

    @property
    def refreshable(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "client_id": self.client_id,
            "host": self.host,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Credential":
        """Build a credential from decoded JSON; raises ValueError on bad shape."""
        if not isinstance(data, dict):
            raise ValueError("credential must be a JSON object")
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise ValueError("missing access_token")
        raw_expiry = data.get("expires_at")
        if not isinstance(raw_expiry, str):
            raise ValueError("missing expires_at")
        expires_at = datetime.fromisoformat(raw_expiry)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        refresh = data.get("refresh_token")
        if refresh is not None and not isinstance(refresh, str):
            raise ValueError("refresh_token must be a string")
        client_id = data.get("client_id")
        if client_id is not None and not isinstance(client_id, str):
            raise ValueError("client_id must be a string")
        host = data.get("host")
        if host is not None and not isinstance(host, str):
            raise ValueError("host must be a string")
        return cls(
            access_token=token,
            expires_at=expires_at,
            refresh_token=refresh or None,
            client_id=client_id,
            host=host or None,
        )


class TokenStore:
    """Exclusive owner of the persisted :class:`Credential`."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @classmethod
    def in_directory(cls, directory: Path) -> "TokenStore":
        return cls(Path(directory) / CREDENTIALS_FILENAME)

    def load(self) -> Optional[Credential]:
        """Return the stored credential, or None when nothing is stored."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"cannot read {self.path}: {exc}") from exc
        try:
            return Credential.from_dict(json.loads(text))
        except (ValueError, TypeError) as exc:
            raise StorageError(
                f"credential file {self.path} is corrupt ({exc}); "
                "run 'gitlab auth login' to replace it"
            ) from exc

    def save(self, credential: Credential) -> None:
        """Atomically replace the stored credential."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(credential.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            if isinstance(exc, OSError):
                raise StorageError(f"cannot write {self.path}: {exc}") from exc
            raise
        logger.debug("saved credential to %s", self.path)

    def clear(self) -> bool:
        """Remove the stored credential; returns True if a file was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("removed credential %s", self.path)
        return True
