"""Thin GitLab REST v4 client.

The orchestrator only needs :meth:`GitlabClient.get_pipeline_status` and
:meth:`GitlabClient.merge_merge_request`; the listing and log helpers are
plain read-through calls used directly by the CLI.

Failures surface as :class:`ApiError`: network errors, 5xx and 429 are
transient, every other non-2xx status is permanent.
"""

from __future__ import annotations

import enum
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from gitlab_cli import transport
from gitlab_cli.errors import ApiError

logger = logging.getLogger(__name__)

MAX_PAGES = 100


class PipelineState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    UNKNOWN = "unknown"

    @classmethod
    def from_gitlab(cls, status: Optional[str]) -> "PipelineState":
        """Map a GitLab pipeline status string onto the states we act on."""
        if not status:
            return cls.UNKNOWN
        status = status.lower()
        if status in _PENDING_ALIASES:
            return cls.PENDING
        try:
            return cls(status)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal_failure(self) -> bool:
        return self in (PipelineState.FAILED, PipelineState.CANCELED)


_PENDING_ALIASES = frozenset({"created", "waiting_for_resource", "preparing", "scheduled"})


# ---------------------------------------------------------------------------
# List filters
# ---------------------------------------------------------------------------


@dataclass
class MrListParams:
    state: str = "opened"
    author: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    updated_after: Optional[str] = None
    order_by: Optional[str] = None
    sort: Optional[str] = None
    per_page: int = 20
    page: int = 1

    def to_query(self) -> dict[str, str]:
        query = {"state": self.state, "per_page": str(self.per_page), "page": str(self.page)}
        optional = {
            "author_username": self.author,
            "created_after": self.created_after,
            "created_before": self.created_before,
            "updated_after": self.updated_after,
            "order_by": self.order_by,
            "sort": self.sort,
        }
        query.update({k: v for k, v in optional.items() if v})
        if self.labels:
            query["labels"] = ",".join(self.labels)
        return query


@dataclass
class IssueListParams:
    state: str = "opened"
    assignee: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    per_page: int = 20
    page: int = 1

    def to_query(self) -> dict[str, str]:
        query = {"state": self.state, "per_page": str(self.per_page), "page": str(self.page)}
        if self.assignee:
            query["assignee_username"] = self.assignee
        if self.created_after:
            query["created_after"] = self.created_after
        if self.created_before:
            query["created_before"] = self.created_before
        if self.labels:
            query["labels"] = ",".join(self.labels)
        return query


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _error_message(resp: transport.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.body[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def _project_path(project: str) -> str:
    return f"/projects/{urllib.parse.quote(str(project), safe='')}"


class GitlabClient:
    def __init__(
        self,
        host: str,
        token: str,
        *,
        request: transport.Transport = transport.request,
    ) -> None:
        self.base_url = f"{host.rstrip('/')}/api/v4"
        self._token = token
        self._request = request

    # -- low level ---------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        query: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> transport.Response:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        resp = self._request(
            method,
            url,
            headers={"Authorization": f"Bearer {self._token}"},
            json_body=body,
        )
        if not resp.ok:
            transient = resp.status >= 500 or resp.status == 429
            raise ApiError(
                f"{method} {path}: HTTP {resp.status}: {_error_message(resp)}",
                transient=transient,
                status=resp.status,
                body=resp.body,
            )
        return resp

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        return self._decode(method, path, self._send(method, path, **kwargs))

    @staticmethod
    def _decode(method: str, path: str, resp: transport.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path}: invalid JSON response", transient=False,
                           status=resp.status, body=resp.body) from exc

    def iter_pages(self, path: str, query: dict[str, str]) -> Iterator[Any]:
        """Yield items from every page, following ``X-Next-Page``."""
        query = dict(query)
        for _ in range(MAX_PAGES):
            resp = self._send("GET", path, query=query)
            items = self._decode("GET", path, resp)
            if not isinstance(items, list):
                raise ApiError(f"GET {path}: expected a list", transient=False, status=resp.status)
            yield from items
            next_page = (resp.header("X-Next-Page") or "").strip()
            if not next_page:
                return
            query["page"] = next_page

    # -- used by the orchestrator ----------------------------------------

    def get_pipeline_status(self, project: str, iid: int) -> PipelineState:
        """Current state of the merge request's head pipeline."""
        mr = self.get_merge_request(project, iid)
        head = mr.get("head_pipeline") if isinstance(mr, dict) else None
        if isinstance(head, dict) and head.get("status"):
            return PipelineState.from_gitlab(head["status"])

        pipelines = self._json("GET", f"{_project_path(project)}/merge_requests/{iid}/pipelines")
        if isinstance(pipelines, list) and pipelines and isinstance(pipelines[0], dict):
            return PipelineState.from_gitlab(pipelines[0].get("status"))
        return PipelineState.UNKNOWN

    def merge_merge_request(self, project: str, iid: int, keep_branch: bool = False) -> None:
        """Merge the MR; an MR that is already merged counts as success."""
        path = f"{_project_path(project)}/merge_requests/{iid}/merge"
        try:
            self._send("PUT", path, body={"should_remove_source_branch": not keep_branch})
        except ApiError as exc:
            if exc.transient:
                raise
            if self._already_merged(project, iid):
                logger.info("!%s was already merged", iid)
                return
            raise

    def _already_merged(self, project: str, iid: int) -> bool:
        try:
            mr = self.get_merge_request(project, iid)
        except ApiError as exc:
            logger.debug("could not re-read !%s after failed merge: %s", iid, exc)
            return False
        return isinstance(mr, dict) and mr.get("state") == "merged"

    # -- read-through helpers ----------------------------------------------

    def get_merge_request(self, project: str, iid: int) -> dict[str, Any]:
        return self._json("GET", f"{_project_path(project)}/merge_requests/{iid}")

    def list_merge_requests(self, project: str, params: MrListParams, all_pages: bool = False) -> list:
        path = f"{_project_path(project)}/merge_requests"
        if all_pages:
            return list(self.iter_pages(path, params.to_query()))
        return self._json("GET", path, query=params.to_query())

    def list_issues(self, project: str, params: IssueListParams, all_pages: bool = False) -> list:
        path = f"{_project_path(project)}/issues"
        if all_pages:
            return list(self.iter_pages(path, params.to_query()))
        return self._json("GET", path, query=params.to_query())

    def get_pipeline(self, project: str, pipeline_id: int) -> dict[str, Any]:
        return self._json("GET", f"{_project_path(project)}/pipelines/{pipeline_id}")

    def list_pipeline_jobs(self, project: str, pipeline_id: int) -> list:
        return self._json(
            "GET",
            f"{_project_path(project)}/pipelines/{pipeline_id}/jobs",
            query={"per_page": "100"},
        )

    def get_job_log(self, project: str, job_id: int) -> str:
        return self._send("GET", f"{_project_path(project)}/jobs/{job_id}/trace").body
