"""Command-line interface for gitlab-cli."""
from __future__ import annotations

import json
import logging
import webbrowser
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .api import GitlabClient, IssueListParams, MrListParams, PipelineState
from .auth import AuthFlow, DeviceAuthorization
from .config import AutoMergeSettings, CliConfig, config_dir, load_config, update_config
from .errors import AuthError, GitlabCliError
from .orchestrator import AutoMergeResult, MergeTarget, Outcome, PipelineWatcher, run_automerge
from .token_store import Credential, TokenStore

app = typer.Typer(
    name="gitlab",
    help="gitlab -- merge requests, issues, CI logs and unattended auto-merge.",
    add_completion=False,
)
auth_app = typer.Typer(help="Log in, log out, show authentication state.")
mr_app = typer.Typer(help="Merge requests.")
issue_app = typer.Typer(help="Issues.")
ci_app = typer.Typer(help="Pipelines, CI jobs and logs.")
app.add_typer(auth_app, name="auth")
app.add_typer(mr_app, name="mr")
app.add_typer(issue_app, name="issue")
app.add_typer(ci_app, name="ci")

console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(message: str, code: int = 1) -> typer.Exit:
    err_console.print(message, style="red", markup=False)
    return typer.Exit(code)


def _config() -> CliConfig:
    try:
        return load_config()
    except GitlabCliError as exc:
        raise _fail(f"Config error: {exc}")


def _show_device_code(authorization: DeviceAuthorization) -> None:
    err_console.print(
        f"Open [bold]{authorization.verification_uri}[/bold] and enter code "
        f"[bold cyan]{authorization.user_code}[/bold cyan]"
    )
    if authorization.verification_uri_complete:
        err_console.print(f"Or visit: {authorization.verification_uri_complete}")
    err_console.print("[dim]Waiting for authorization...[/dim]")


def _auth_flow(
    cfg: CliConfig,
    host: Optional[str] = None,
    client_id: Optional[str] = None,
    notify=_show_device_code,
) -> AuthFlow:
    return AuthFlow(
        host or cfg.gitlab.host,
        client_id or cfg.oauth.client_id,
        cfg.oauth.scopes,
        TokenStore.in_directory(config_dir()),
        static_token=cfg.gitlab.token,
        notify=notify,
    )


def _project(cfg: CliConfig, override: Optional[str]) -> str:
    project = override or cfg.gitlab.project
    if not project:
        raise _fail("No project specified. Use --project or set GITLAB_PROJECT.")
    return project


def _client_for(cfg: CliConfig, credential: Credential) -> GitlabClient:
    # A credential talks to the instance that issued it.
    return GitlabClient(credential.host or cfg.gitlab.host, credential.access_token)


def _client(cfg: CliConfig) -> GitlabClient:
    try:
        credential = _auth_flow(cfg).ensure_valid_credential()
    except AuthError as exc:
        raise _fail(f"Authentication failed: {exc}", Outcome.AUTH_ERROR.exit_code)
    return _client_for(cfg, credential)


def _settings(cfg: CliConfig, interval: Optional[float], timeout: Optional[float]) -> AutoMergeSettings:
    settings = cfg.automerge
    if interval is not None:
        settings.poll_interval = interval
    if timeout is not None:
        settings.max_duration = timeout
    return settings


def _report(result: AutoMergeResult, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        style = "green" if result.exit_code == 0 else "red"
        console.print(result.status_line(), style=style, markup=False, soft_wrap=True)
    if result.exit_code:
        raise typer.Exit(result.exit_code)


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


@app.command()
def version() -> None:
    """Print the gitlab-cli version."""
    console.print(f"gitlab-cli {__version__}")


@app.command("config")
def config_cmd(
    host: Optional[str] = typer.Option(None, "--host", help="GitLab host URL"),
    token: Optional[str] = typer.Option(None, "--token", help="Personal access token"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Default project path"),
) -> None:
    """Show the configuration, or save new defaults to config.toml."""
    updates = {k: v for k, v in (("host", host), ("token", token), ("project", project)) if v is not None}
    if not updates:
        cfg = _config()
        token_shown = f"{cfg.gitlab.token[:8]}..." if cfg.gitlab.token else "(not set)"
        console.print("Current configuration:")
        console.print(f"  host: {cfg.gitlab.host}", markup=False)
        console.print(f"  token: {token_shown}", markup=False)
        console.print(f"  project: {cfg.gitlab.project or '(not set)'}", markup=False)
        return
    try:
        path = update_config({"gitlab": updates})
    except GitlabCliError as exc:
        raise _fail(f"Config error: {exc}")
    console.print(f"Configuration saved to {path}", markup=False)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@auth_app.command("login")
def auth_login(
    host: Optional[str] = typer.Option(None, "--host", help="GitLab host URL"),
    client_id: Optional[str] = typer.Option(None, "--client-id", help="OAuth2 application client ID"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Do not open a browser"),
) -> None:
    """Authenticate with GitLab using the OAuth2 device flow."""
    cfg = _config()

    def notify(authorization: DeviceAuthorization) -> None:
        _show_device_code(authorization)
        if not no_browser:
            webbrowser.open(authorization.verification_uri_complete or authorization.verification_uri)

    flow = _auth_flow(cfg, host=host, client_id=client_id, notify=notify)
    try:
        credential = flow.login()
    except AuthError as exc:
        raise _fail(f"Login failed: {exc}", Outcome.AUTH_ERROR.exit_code)
    if host:
        try:
            update_config({"gitlab": {"host": host}})
        except GitlabCliError as exc:
            raise _fail(f"Logged in, but could not save the host: {exc}")
    console.print(f"[green]Authentication successful![/green] Token valid until {credential.expires_at:%Y-%m-%d %H:%M} UTC")


@auth_app.command("status")
def auth_status(
    as_json: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
) -> None:
    """Show authentication status."""
    cfg = _config()
    try:
        status = _auth_flow(cfg).status()
    except AuthError as exc:
        raise _fail(str(exc), Outcome.AUTH_ERROR.exit_code)
    if as_json:
        console.print_json(json.dumps(status))
        return
    if status["source"] == "oauth2":
        console.print("OAuth2 authenticated")
        console.print(f"  host: {status['host']}", markup=False)
        console.print(f"  client_id: {status['client_id']}")
        console.print(f"  expires_at: {status['expires_at']}")
        console.print(f"  expired: {status['expired']}")
    elif status["source"] == "token":
        console.print("Using static token (GITLAB_TOKEN)")
    else:
        console.print("Not authenticated")
        raise typer.Exit(1)


@auth_app.command("logout")
def auth_logout() -> None:
    """Remove the stored OAuth2 credential."""
    cfg = _config()
    if _auth_flow(cfg).logout():
        console.print("Logged out.")
    else:
        console.print("No stored credential.")


# ---------------------------------------------------------------------------
# Merge requests
# ---------------------------------------------------------------------------


@mr_app.command("automerge")
def mr_automerge(
    iid: int = typer.Argument(..., help="Merge request IID"),
    keep_branch: bool = typer.Option(False, "--keep-branch", help="Keep the source branch after merging"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    interval: Optional[float] = typer.Option(None, "--interval", min=0.1, help="Seconds between pipeline polls"),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0, help="Give up after this many seconds"),
    no_login: bool = typer.Option(False, "--no-login", help="Fail instead of starting a device login"),
    as_json: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
) -> None:
    """Wait for the MR's pipeline to succeed, then merge it."""
    cfg = _config()
    target = MergeTarget(_project(cfg, project), iid, keep_source_branch=keep_branch)
    settings = _settings(cfg, interval, timeout)

    with err_console.status(f"Waiting for pipeline of {target}...") as spinner:
        def on_poll(state: PipelineState) -> None:
            spinner.update(f"Pipeline of {target}: {state.value}")

        result = run_automerge(
            target,
            _auth_flow(cfg),
            lambda credential: _client_for(cfg, credential),
            settings,
            interactive=not no_login,
            on_poll=on_poll,
        )
    _report(result, as_json)


@mr_app.command("merge")
def mr_merge(
    iid: int = typer.Argument(..., help="Merge request IID"),
    keep_branch: bool = typer.Option(False, "--keep-branch", help="Keep the source branch after merging"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """Merge a merge request now, without waiting for its pipeline."""
    cfg = _config()
    project_path = _project(cfg, project)
    client = _client(cfg)
    try:
        client.merge_merge_request(project_path, iid, keep_branch=keep_branch)
    except GitlabCliError as exc:
        raise _fail(f"Merge failed: {exc}")
    suffix = "" if keep_branch else "; source branch removed"
    console.print(f"Merged {project_path}!{iid}{suffix}", style="green", markup=False)


@mr_app.command("list")
def mr_list(
    state: str = typer.Option("opened", "--state", help="opened | closed | merged | all"),
    author: Optional[str] = typer.Option(None, "--author", help="Filter by author username"),
    label: list[str] = typer.Option([], "--label", "-l", help="Filter by label (repeatable)"),
    created_after: Optional[str] = typer.Option(None, "--created-after"),
    created_before: Optional[str] = typer.Option(None, "--created-before"),
    updated_after: Optional[str] = typer.Option(None, "--updated-after"),
    order_by: Optional[str] = typer.Option(None, "--order-by", help="created_at | updated_at"),
    sort: Optional[str] = typer.Option(None, "--sort", help="asc | desc"),
    per_page: int = typer.Option(20, "--per-page"),
    page: int = typer.Option(1, "--page"),
    all_pages: bool = typer.Option(False, "--all", help="Follow pagination to the end"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """List merge requests."""
    cfg = _config()
    params = MrListParams(
        state=state,
        author=author,
        labels=label,
        created_after=created_after,
        created_before=created_before,
        updated_after=updated_after,
        order_by=order_by,
        sort=sort,
        per_page=per_page,
        page=page,
    )
    try:
        mrs = _client(cfg).list_merge_requests(_project(cfg, project), params, all_pages=all_pages)
    except GitlabCliError as exc:
        raise _fail(str(exc))
    if as_json:
        console.print_json(json.dumps(mrs))
        return
    if not mrs:
        console.print("No merge requests found.")
        return
    t = Table("IID", "Title", "Author", "State", "Updated")
    for mr in mrs:
        t.add_row(
            f"!{mr.get('iid')}",
            str(mr.get("title", "")),
            str((mr.get("author") or {}).get("username", "")),
            str(mr.get("state", "")),
            str(mr.get("updated_at", ""))[:10],
        )
    console.print(t)


@mr_app.command("show")
def mr_show(
    iid: int = typer.Argument(..., help="Merge request IID"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """Show a merge request."""
    cfg = _config()
    try:
        mr = _client(cfg).get_merge_request(_project(cfg, project), iid)
    except GitlabCliError as exc:
        raise _fail(str(exc))
    console.print_json(json.dumps(mr))


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


@issue_app.command("list")
def issue_list(
    state: str = typer.Option("opened", "--state"),
    assignee: Optional[str] = typer.Option(None, "--assignee"),
    label: list[str] = typer.Option([], "--label", "-l"),
    created_after: Optional[str] = typer.Option(None, "--created-after"),
    created_before: Optional[str] = typer.Option(None, "--created-before"),
    per_page: int = typer.Option(20, "--per-page"),
    page: int = typer.Option(1, "--page"),
    all_pages: bool = typer.Option(False, "--all"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """List issues."""
    cfg = _config()
    params = IssueListParams(
        state=state,
        assignee=assignee,
        labels=label,
        created_after=created_after,
        created_before=created_before,
        per_page=per_page,
        page=page,
    )
    try:
        issues = _client(cfg).list_issues(_project(cfg, project), params, all_pages=all_pages)
    except GitlabCliError as exc:
        raise _fail(str(exc))
    console.print_json(json.dumps(issues))


# ---------------------------------------------------------------------------
# CI
# ---------------------------------------------------------------------------


@ci_app.command("status")
def ci_status(
    mr: Optional[int] = typer.Option(None, "--mr", "-m", help="Merge request IID"),
    pipeline_id: Optional[int] = typer.Option(None, "--id", help="Pipeline ID"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """Show the state of a pipeline, by ID or by merge request."""
    if (mr is None) == (pipeline_id is None):
        raise _fail("Pass exactly one of --mr or --id.")
    cfg = _config()
    project_path = _project(cfg, project)
    client = _client(cfg)
    try:
        if mr is not None:
            state = client.get_pipeline_status(project_path, mr)
            line = f"{project_path}!{mr}: pipeline {state.value}"
        else:
            pipeline = client.get_pipeline(project_path, pipeline_id)
            line = f"Pipeline #{pipeline.get('id', pipeline_id)} - {pipeline.get('status', 'unknown')} ({pipeline.get('ref', '')})"
    except GitlabCliError as exc:
        raise _fail(str(exc))
    console.print(line, markup=False, soft_wrap=True)


@ci_app.command("wait")
def ci_wait(
    iid: int = typer.Argument(..., help="Merge request IID"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    interval: Optional[float] = typer.Option(None, "--interval", min=0.1, help="Seconds between pipeline polls"),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0, help="Give up after this many seconds"),
    as_json: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
) -> None:
    """Wait for the MR's pipeline to finish; exit 0 only if it passed."""
    cfg = _config()
    target = MergeTarget(_project(cfg, project), iid)
    settings = _settings(cfg, interval, timeout)
    client = _client(cfg)

    with err_console.status(f"Waiting for pipeline of {target}...") as spinner:
        def on_poll(state: PipelineState) -> None:
            spinner.update(f"Pipeline of {target}: {state.value}")

        result = PipelineWatcher(client, target, settings, on_poll=on_poll).run()
    _report(result, as_json)


@ci_app.command("jobs")
def ci_jobs(
    pipeline_id: int = typer.Argument(..., help="Pipeline ID"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """List the jobs of a pipeline."""
    cfg = _config()
    try:
        jobs = _client(cfg).list_pipeline_jobs(_project(cfg, project), pipeline_id)
    except GitlabCliError as exc:
        raise _fail(str(exc))
    t = Table("ID", "Stage", "Name", "Status")
    for job in jobs:
        t.add_row(str(job.get("id")), str(job.get("stage", "")), str(job.get("name", "")), str(job.get("status", "")))
    console.print(t)


@ci_app.command("logs")
def ci_logs(
    job_id: int = typer.Argument(..., help="Job ID"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
) -> None:
    """Print the log of a CI job."""
    cfg = _config()
    try:
        log = _client(cfg).get_job_log(_project(cfg, project), job_id)
    except GitlabCliError as exc:
        raise _fail(str(exc))
    console.print(log, markup=False, highlight=False, soft_wrap=True, end="")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()


if __name__ == "__main__":
    main()
