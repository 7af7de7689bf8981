"""Unattended auto-merge: wait for a merge request's pipeline, then merge it.

The run is an explicit state machine::

    POLLING --success--> MERGING --ok--> MERGED
       |                    |
       |                    +--permanent error / retries spent--> ERRORED
       +--failed/canceled--> FAILED
       +--permanent error--> ERRORED
       +--transient retries spent / wall clock exceeded--> TIMED_OUT

:class:`PipelineWatcher` replaces the MERGING step with a terminal PASSED.
Any state may end in CANCELED on KeyboardInterrupt or when the optional
cancel event is set.  Transient-error retry counters and the wall-clock
bound are tracked separately: the first ends polling as TIMED_OUT and
merging as ERRORED, the second only applies while polling.

Once the merge call has been issued its response is authoritative; the
pipeline is not re-checked afterwards.

Public API
----------
- ``MergeTarget``           -- project, MR IID, keep-source-branch flag
- ``Outcome``               -- terminal result, with ``exit_code``
- ``AutoMergeResult``       -- outcome plus counters and transition log
- ``AutoMergeOrchestrator`` -- drives one target to a terminal state
- ``PipelineWatcher``       -- same poll loop, stops at a passing pipeline
- ``run_automerge(...)``    -- credential acquisition + orchestration
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from gitlab_cli.api import PipelineState
from gitlab_cli.config import AutoMergeSettings
from gitlab_cli.errors import ApiError, AuthError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class State(str, enum.Enum):
    POLLING = "polling"
    MERGING = "merging"
    MERGED = "merged"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    CANCELED = "canceled"


TERMINAL_STATES = frozenset(
    {State.MERGED, State.PASSED, State.FAILED, State.TIMED_OUT, State.ERRORED,
     State.CANCELED}
)


class Outcome(str, enum.Enum):
    MERGED = "merged"
    PIPELINE_PASSED = "pipeline_passed"
    PIPELINE_FAILED = "pipeline_failed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    AUTH_ERROR = "auth_error"
    CANCELED = "canceled"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


EXIT_CODES: dict[Outcome, int] = {
    Outcome.MERGED: 0,
    Outcome.PIPELINE_PASSED: 0,
    Outcome.PIPELINE_FAILED: 10,
    Outcome.TIMED_OUT: 11,
    Outcome.ERRORED: 12,
    Outcome.AUTH_ERROR: 13,
    Outcome.CANCELED: 130,
}

_STATE_OUTCOMES: dict[State, Outcome] = {
    State.MERGED: Outcome.MERGED,
    State.PASSED: Outcome.PIPELINE_PASSED,
    State.FAILED: Outcome.PIPELINE_FAILED,
    State.TIMED_OUT: Outcome.TIMED_OUT,
    State.ERRORED: Outcome.ERRORED,
    State.CANCELED: Outcome.CANCELED,
}


@dataclass(frozen=True)
class MergeTarget:
    project: str
    iid: int
    keep_source_branch: bool = False

    def __str__(self) -> str:
        return f"{self.project}!{self.iid}"


@dataclass
class AutoMergeResult:
    """Terminal result of one auto-merge run."""

    outcome: Outcome
    target: MergeTarget
    message: str = ""
    polls: int = 0
    merge_attempts: int = 0
    last_state: Optional[PipelineState] = None
    elapsed: float = 0.0
    transitions: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def status_line(self) -> str:
        label = self.outcome.value.replace("_", " ").upper()
        return f"{label}: {self.target}: {self.message}" if self.message else f"{label}: {self.target}"

    def to_dict(self) -> dict[str, Any]:
        """Return a dictionary representation of this result."""
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "project": self.target.project,
            "iid": self.target.iid,
            "keep_source_branch": self.target.keep_source_branch,
            "message": self.message,
            "polls": self.polls,
            "merge_attempts": self.merge_attempts,
            "last_state": self.last_state.value if self.last_state else None,
            "elapsed": round(self.elapsed, 3),
            "transitions": list(self.transitions),
        }


class _Canceled(Exception):
    pass


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class AutoMergeOrchestrator:
    """Drive a single :class:`MergeTarget` to a terminal state.

    *client* needs ``get_pipeline_status(project, iid)`` and
    ``merge_merge_request(project, iid, keep_branch=...)``; see
    :class:`gitlab_cli.api.GitlabClient`.
    """

    def __init__(
        self,
        client: Any,
        target: MergeTarget,
        settings: Optional[AutoMergeSettings] = None,
        *,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[Callable[[PipelineState], None]] = None,
    ) -> None:
        self.client = client
        self.target = target
        self.settings = settings or AutoMergeSettings()
        self._sleep = sleep
        self._clock = clock
        self._cancel = cancel
        self._on_poll = on_poll

        self.polls = 0
        self.merge_attempts = 0
        self.last_state: Optional[PipelineState] = None
        self.transitions: list[str] = []
        self._poll_failures = 0
        self._message = ""
        self._started = 0.0

    def run(self) -> AutoMergeResult:
        self._started = self._clock()
        handlers = {State.POLLING: self._poll, State.MERGING: self._merge}
        state = State.POLLING
        try:
            while state not in TERMINAL_STATES:
                next_state = handlers[state]()
                if next_state is not state:
                    self._transition(state, next_state)
                state = next_state
        except (KeyboardInterrupt, _Canceled):
            if state is State.POLLING:
                self._message = "interrupted before completion; no merge issued"
            else:
                self._message = "interrupted while merging"
            self._transition(state, State.CANCELED)
            state = State.CANCELED

        return AutoMergeResult(
            outcome=_STATE_OUTCOMES[state],
            target=self.target,
            message=self._message,
            polls=self.polls,
            merge_attempts=self.merge_attempts,
            last_state=self.last_state,
            elapsed=self._elapsed(),
            transitions=list(self.transitions),
        )

    # -- transitions -------------------------------------------------------

    def _poll(self) -> State:
        if self._elapsed() >= self.settings.max_duration:
            self._message = f"pipeline still {self._last_label()} after {self.settings.max_duration:g}s"
            return State.TIMED_OUT
        self._check_cancel()

        try:
            pipeline = self.client.get_pipeline_status(self.target.project, self.target.iid)
        except ApiError as exc:
            if exc.permanent:
                self._message = f"cannot read pipeline status: {exc}"
                return State.ERRORED
            self._poll_failures += 1
            if self._poll_failures > self.settings.max_poll_retries:
                self._message = (
                    f"pipeline status unavailable after {self._poll_failures} attempts: {exc}"
                )
                return State.TIMED_OUT
            logger.debug("transient error polling %s (attempt %d): %s",
                         self.target, self._poll_failures, exc)
            self._wait(self.settings.backoff(self._poll_failures), bounded=True)
            return State.POLLING

        self.polls += 1
        self._poll_failures = 0
        self.last_state = pipeline
        if self._on_poll is not None:
            self._on_poll(pipeline)

        if pipeline is PipelineState.SUCCESS:
            return self._on_success()
        if pipeline.is_terminal_failure:
            self._message = f"pipeline {pipeline.value}"
            return State.FAILED
        logger.debug("pipeline for %s is %s", self.target, pipeline.value)
        self._wait(self.settings.poll_interval, bounded=True)
        return State.POLLING

    def _on_success(self) -> State:
        return State.MERGING

    def _merge(self) -> State:
        self._check_cancel()
        self.merge_attempts += 1
        try:
            self.client.merge_merge_request(
                self.target.project,
                self.target.iid,
                keep_branch=self.target.keep_source_branch,
            )
        except ApiError as exc:
            if exc.permanent:
                self._message = f"merge rejected: {exc}"
                return State.ERRORED
            if self.merge_attempts > self.settings.max_merge_retries:
                self._message = f"merge failed after {self.merge_attempts} attempts: {exc}"
                return State.ERRORED
            logger.debug("transient error merging %s (attempt %d): %s",
                         self.target, self.merge_attempts, exc)
            self._wait(self.settings.backoff(self.merge_attempts), bounded=False)
            return State.MERGING

        if self.target.keep_source_branch:
            self._message = "merged"
        else:
            self._message = "merged; source branch removed"
        return State.MERGED

    # -- helpers -----------------------------------------------------------

    def _transition(self, old: State, new: State) -> None:
        self.transitions.append(f"{old.value}->{new.value}")
        logger.info("%s: %s -> %s", self.target, old.value, new.value)

    def _elapsed(self) -> float:
        return self._clock() - self._started

    def _last_label(self) -> str:
        return self.last_state.value if self.last_state else "unknown"

    def _check_cancel(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise _Canceled()

    def _wait(self, seconds: float, bounded: bool) -> None:
        """Sleep, clipped to the remaining wall-clock budget when *bounded*."""
        if bounded:
            seconds = min(seconds, self.settings.max_duration - self._elapsed())
        if seconds > 0:
            if self._sleep is not None:
                self._sleep(seconds)
            elif self._cancel is not None:
                if self._cancel.wait(seconds):
                    raise _Canceled()
            else:
                time.sleep(seconds)
        self._check_cancel()


class PipelineWatcher(AutoMergeOrchestrator):
    """Poll like :class:`AutoMergeOrchestrator` but stop when the pipeline passes.

    Ends as ``PIPELINE_PASSED`` instead of merging; every other outcome is
    the same.
    """

    def _on_success(self) -> State:
        self._message = "pipeline succeeded"
        return State.PASSED


def run_automerge(
    target: MergeTarget,
    auth: Any,
    client_factory: Callable[[Any], Any],
    settings: Optional[AutoMergeSettings] = None,
    *,
    interactive: bool = True,
    **orchestrator_kwargs: Any,
) -> AutoMergeResult:
    """Obtain a credential via *auth*, then run the orchestrator.

    *auth* is an :class:`gitlab_cli.auth.AuthFlow`; *client_factory* turns
    the credential into an API client.  Auth failures end the run as
    ``Outcome.AUTH_ERROR`` without polling.
    """
    try:
        credential = auth.ensure_valid_credential(interactive=interactive)
    except AuthError as exc:
        return AutoMergeResult(outcome=Outcome.AUTH_ERROR, target=target, message=str(exc))
    except KeyboardInterrupt:
        return AutoMergeResult(outcome=Outcome.CANCELED, target=target,
                               message="interrupted during login")
    client = client_factory(credential)
    return AutoMergeOrchestrator(client, target, settings, **orchestrator_kwargs).run()
