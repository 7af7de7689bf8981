"""Minimal urllib transport shared by the OAuth and REST clients.

HTTP error statuses come back as ordinary :class:`Response` objects so the
caller can inspect the body (the OAuth token endpoint reports
``authorization_pending`` as a 400).  Only failures that never produced a
response, or lost it half-way, are raised as transient :class:`ApiError`.
"""

from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from gitlab_cli import __version__
from gitlab_cli.errors import ApiError

USER_AGENT = f"gitlab-cli/{__version__}"
DEFAULT_TIMEOUT = 30.0


@dataclass
class Response:
    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body; an empty body decodes to an empty dict."""
        if not self.body:
            return {}
        return json.loads(self.body)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


# request(method, url, *, headers=, json_body=, form=, timeout=) -> Response
Transport = Callable[..., Response]


def request(
    method: str,
    url: str,
    *,
    headers: Optional[Mapping[str, str]] = None,
    json_body: Any = None,
    form: Optional[Mapping[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Response:
    """Send one HTTP request and return the response, whatever its status."""
    all_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if headers:
        all_headers.update(headers)
    data = None
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        all_headers["Content-Type"] = "application/json"
    elif form is not None:
        data = urllib.parse.urlencode(dict(form)).encode("utf-8")
        all_headers["Content-Type"] = "application/x-www-form-urlencoded"

    req = urllib.request.Request(url, method=method, headers=all_headers, data=data)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return Response(resp.status, body, dict(resp.headers.items()))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp is not None else ""
        resp_headers = dict(e.headers.items()) if e.headers is not None else {}
        return Response(int(e.code or 0), body, resp_headers)
    except (http.client.HTTPException, OSError) as e:
        # URLError, timeouts, resets and TLS failures are all OSErrors;
        # a connection dropped mid-body raises IncompleteRead.
        reason = getattr(e, "reason", e)
        raise ApiError(f"{method} {url} failed: {reason}", transient=True) from e
