"""Tests for gitlab_cli/api.py -- the GitLab REST client."""

from __future__ import annotations

import json
import urllib.parse

import pytest

from gitlab_cli.api import GitlabClient, IssueListParams, MrListParams, PipelineState
from gitlab_cli.errors import ApiError
from gitlab_cli.transport import Response

HOST = "https://gitlab.example.com"
MR_PATH = "/api/v4/projects/group%2Fproject/merge_requests/7"


def reply(status: int, data=None, headers=None) -> Response:
    return Response(status, json.dumps(data) if data is not None else "", headers or {})


class FakeTransport:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict]] = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def paths(self) -> list[str]:
        return [urllib.parse.urlsplit(url).path for _, url, _ in self.calls]


def make_client(*responses) -> tuple[GitlabClient, FakeTransport]:
    transport = FakeTransport(*responses)
    return GitlabClient(HOST, "tok", request=transport), transport


class TestPipelineState:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("success", PipelineState.SUCCESS),
            ("running", PipelineState.RUNNING),
            ("created", PipelineState.PENDING),
            ("waiting_for_resource", PipelineState.PENDING),
            ("scheduled", PipelineState.PENDING),
            ("manual", PipelineState.UNKNOWN),
            ("bogus", PipelineState.UNKNOWN),
            (None, PipelineState.UNKNOWN),
        ],
    )
    def test_from_gitlab(self, raw, expected):
        assert PipelineState.from_gitlab(raw) is expected

    def test_terminal_failures(self):
        assert PipelineState.FAILED.is_terminal_failure
        assert PipelineState.CANCELED.is_terminal_failure
        assert not PipelineState.SKIPPED.is_terminal_failure


class TestGetPipelineStatus:
    def test_reads_head_pipeline(self):
        client, transport = make_client(reply(200, {"iid": 7, "head_pipeline": {"status": "running"}}))
        assert client.get_pipeline_status("group/project", 7) is PipelineState.RUNNING
        assert transport.paths() == [MR_PATH]
        assert transport.calls[0][2]["headers"]["Authorization"] == "Bearer tok"

    def test_falls_back_to_mr_pipelines(self):
        client, transport = make_client(
            reply(200, {"iid": 7, "head_pipeline": None}),
            reply(200, [{"id": 2, "status": "success"}, {"id": 1, "status": "failed"}]),
        )
        assert client.get_pipeline_status("group/project", 7) is PipelineState.SUCCESS
        assert transport.paths()[1] == f"{MR_PATH}/pipelines"

    def test_no_pipeline_is_unknown(self):
        client, _ = make_client(reply(200, {"iid": 7}), reply(200, []))
        assert client.get_pipeline_status("group/project", 7) is PipelineState.UNKNOWN

    def test_malformed_pipeline_entry_is_unknown(self):
        client, _ = make_client(reply(200, {"iid": 7}), reply(200, ["success"]))
        assert client.get_pipeline_status("group/project", 7) is PipelineState.UNKNOWN

    def test_pipeline_by_id(self):
        client, transport = make_client(reply(200, {"id": 9, "status": "running", "ref": "main"}))
        assert client.get_pipeline("group/project", 9)["status"] == "running"
        assert transport.paths() == ["/api/v4/projects/group%2Fproject/pipelines/9"]


class TestErrorClassification:
    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_transient_statuses(self, status):
        client, _ = make_client(reply(status, {"message": "busy"}))
        with pytest.raises(ApiError) as excinfo:
            client.get_pipeline_status("group/project", 7)
        assert excinfo.value.transient is True
        assert excinfo.value.status == status

    @pytest.mark.parametrize("status", [401, 403, 404])
    def test_permanent_statuses(self, status):
        client, _ = make_client(reply(status, {"message": "404 Not found"}))
        with pytest.raises(ApiError) as excinfo:
            client.get_pipeline_status("group/project", 7)
        assert excinfo.value.permanent is True

    def test_network_error_passes_through(self):
        client, _ = make_client(ApiError("connection reset", transient=True))
        with pytest.raises(ApiError) as excinfo:
            client.get_pipeline_status("group/project", 7)
        assert excinfo.value.transient is True


class TestMerge:
    def test_merge_removes_source_branch_by_default(self):
        client, transport = make_client(reply(200, {"state": "merged"}))
        client.merge_merge_request("group/project", 7)
        method, url, kwargs = transport.calls[0]
        assert method == "PUT"
        assert urllib.parse.urlsplit(url).path == f"{MR_PATH}/merge"
        assert kwargs["json_body"] == {"should_remove_source_branch": True}

    def test_keep_branch(self):
        client, transport = make_client(reply(200, {"state": "merged"}))
        client.merge_merge_request("group/project", 7, keep_branch=True)
        assert transport.calls[0][2]["json_body"] == {"should_remove_source_branch": False}

    def test_already_merged_is_success_twice(self):
        client, transport = make_client(
            reply(405, {"message": "405 Method Not Allowed"}),
            reply(200, {"iid": 7, "state": "merged"}),
            reply(405, {"message": "405 Method Not Allowed"}),
            reply(200, {"iid": 7, "state": "merged"}),
        )
        assert client.merge_merge_request("group/project", 7) is None
        assert client.merge_merge_request("group/project", 7) is None
        assert [c[0] for c in transport.calls] == ["PUT", "GET", "PUT", "GET"]

    def test_not_mergeable_open_mr_raises_permanent(self):
        client, _ = make_client(
            reply(405, {"message": "405 Method Not Allowed"}),
            reply(200, {"iid": 7, "state": "opened"}),
        )
        with pytest.raises(ApiError) as excinfo:
            client.merge_merge_request("group/project", 7)
        assert excinfo.value.status == 405
        assert excinfo.value.permanent

    def test_transient_merge_error_is_not_rechecked(self):
        client, transport = make_client(reply(502, {"message": "bad gateway"}))
        with pytest.raises(ApiError) as excinfo:
            client.merge_merge_request("group/project", 7)
        assert excinfo.value.transient
        assert len(transport.calls) == 1


class TestListing:
    def test_mr_list_query(self):
        client, transport = make_client(reply(200, [{"iid": 1}]))
        params = MrListParams(author="alice", labels=["bug", "ui"], created_after="2026-01-01", per_page=50)
        assert client.list_merge_requests("group/project", params) == [{"iid": 1}]
        query = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(transport.calls[0][1]).query))
        assert query == {
            "state": "opened",
            "per_page": "50",
            "page": "1",
            "author_username": "alice",
            "created_after": "2026-01-01",
            "labels": "bug,ui",
        }

    def test_all_pages_follows_next_page_header(self):
        client, transport = make_client(
            reply(200, [{"iid": 1}, {"iid": 2}], {"X-Next-Page": "2"}),
            reply(200, [{"iid": 3}], {"X-Next-Page": ""}),
        )
        issues = client.list_issues("group/project", IssueListParams(labels=["bug"]), all_pages=True)
        assert [i["iid"] for i in issues] == [1, 2, 3]
        second = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(transport.calls[1][1]).query))
        assert second["page"] == "2"
        assert second["labels"] == "bug"

    def test_job_log_is_plain_text(self):
        client, transport = make_client(Response(200, "line 1\nline 2\n"))
        assert client.get_job_log("group/project", 42) == "line 1\nline 2\n"
        assert transport.paths() == ["/api/v4/projects/group%2Fproject/jobs/42/trace"]

    def test_invalid_json_page_is_permanent_api_error(self):
        client, _ = make_client(Response(200, "<html>proxy error</html>"))
        with pytest.raises(ApiError) as excinfo:
            client.list_merge_requests("group/project", MrListParams(), all_pages=True)
        assert excinfo.value.permanent is True
