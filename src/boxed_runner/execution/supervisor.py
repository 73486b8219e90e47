from __future__ import annotations

import contextlib
import logging
import shlex
import time

from ..errors import AdmissionRefused, EngineUnavailable, ResourceError
from .admission import AdmissionGate
from .config import SandboxSettings
from .deadline import Deadline
from .engine import IsolationRunner
from .materializer import attach_stdin, write_source
from .types import (
    ExecutionOutcome,
    ExecutionRequest,
    OutcomeKind,
    Step,
    StepKind,
    StepResult,
    SupervisorState,
)
from .workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

_TERMINAL_STATES = {
    OutcomeKind.SUCCESS: SupervisorState.COMPLETED,
    OutcomeKind.TIMEOUT: SupervisorState.TIMED_OUT,
    OutcomeKind.FAILURE: SupervisorState.FAILED,
    OutcomeKind.INFRA_ERROR: SupervisorState.FAILED,
}


def plan_steps(settings: SandboxSettings) -> list[Step]:
    """Return the steps to run for the configured step mode.

    Example:
        ```python
        steps = plan_steps(SandboxSettings(step_mode="split"))
        ```
    """
    compile_script = settings.render(settings.compile_command)
    run_script = settings.render(settings.run_command)
    if settings.step_mode == "split":
        return [
            Step(StepKind.COMPILE, compile_script, forwards_stdin=False),
            Step(StepKind.RUN, run_script, forwards_stdin=True),
        ]
    return [Step(StepKind.COMPILE_AND_RUN, f"{compile_script} && {run_script}", forwards_stdin=True)]


def classify_step(
    step: Step,
    result: StepResult,
    deadline: Deadline,
    settings: SandboxSettings,
) -> ExecutionOutcome | None:
    """Classify one step result; None means the step succeeded.

    Deadline expiry wins over everything else: a killed process also
    reports a non-zero exit that must not read as an ordinary failure.

    Example:
        ```python
        outcome = classify_step(step, result, deadline, settings)
        ```
    """
    if deadline.expired:
        return ExecutionOutcome.timeout(duration_seconds=deadline.elapsed())
    if result.output_exceeded:
        logger.warning("Output limit of %d KB exceeded at %s step", settings.max_output_kb, step.kind.value)
        return ExecutionOutcome.failure(
            f"Output limit of {settings.max_output_kb} KB exceeded",
            stage=step.kind,
            returncode=result.returncode,
            duration_seconds=deadline.elapsed(),
        )
    if result.returncode != 0:
        return ExecutionOutcome.failure(
            result.stderr,
            stage=step.kind,
            returncode=result.returncode,
            duration_seconds=deadline.elapsed(),
        )
    return None


class ExecutionSupervisor:
    """Own deadline, cancellation and classification for one request.

    Instances are single-use: ``IDLE -> RUNNING -> COMPLETED | TIMED_OUT |
    FAILED``.

    Example:
        ```python
        supervisor = ExecutionSupervisor(request, engine=DockerEngine(), settings=SandboxSettings(), workspaces=WorkspaceManager())
        outcome = supervisor.run()
        ```
    """

    def __init__(
        self,
        request: ExecutionRequest,
        *,
        engine: IsolationRunner,
        settings: SandboxSettings,
        workspaces: WorkspaceManager,
        gate: AdmissionGate | None = None,
    ) -> None:
        """Bind the request to its collaborators.

        Example:
            ```python
            supervisor = ExecutionSupervisor(request, engine=engine, settings=settings, workspaces=manager)
            ```
        """
        self._request = request
        self._engine = engine
        self._settings = settings
        self._workspaces = workspaces
        self._gate = gate
        self._state = SupervisorState.IDLE

    @property
    def state(self) -> SupervisorState:
        """Return the current lifecycle state.

        Example:
            ```python
            assert supervisor.state is SupervisorState.IDLE
            ```
        """
        return self._state

    def run(self) -> ExecutionOutcome:
        """Execute the request and return its classified outcome.

        Example:
            ```python
            outcome = supervisor.run()
            ```
        """
        if self._state is not SupervisorState.IDLE:
            raise RuntimeError("ExecutionSupervisor instances are single-use")
        self._state = SupervisorState.RUNNING
        started = time.monotonic()
        try:
            slot = (
                self._gate.slot(self._settings.admission_timeout_seconds)
                if self._gate is not None
                else contextlib.nullcontext()
            )
            with slot:
                outcome = self._execute(started)
        except AdmissionRefused as exc:
            outcome = self._infra_error(exc, started)
        except BaseException:
            self._state = SupervisorState.FAILED
            raise
        self._state = _TERMINAL_STATES[outcome.kind]
        self._log_outcome(outcome)
        return outcome

    def _execute(self, started: float) -> ExecutionOutcome:
        """Allocate the workspace, materialize source and run the steps.

        Example:
            ```python
            outcome = supervisor._execute(time.monotonic())
            ```
        """
        try:
            with self._workspaces.allocate() as workspace:
                write_source(workspace, self._request.source_code, self._settings.source_filename)
                return self._run_steps(workspace)
        except ResourceError as exc:
            return self._infra_error(exc, started)
        except EngineUnavailable as exc:
            return self._infra_error(exc, started, command=exc.command)

    def _run_steps(self, workspace: Workspace) -> ExecutionOutcome:
        """Run every planned step under one shared deadline.

        Example:
            ```python
            outcome = supervisor._run_steps(ws)
            ```
        """
        deadline = Deadline(self._settings.deadline_seconds)
        stdin = attach_stdin(self._request.stdin)
        logger.info(
            "Executing in %s (mode=%s, image=%s, deadline=%ss)",
            workspace.path,
            self._settings.step_mode,
            self._settings.image,
            self._settings.deadline_seconds,
        )
        last: StepResult | None = None
        for step in plan_steps(self._settings):
            if deadline.expired:
                return ExecutionOutcome.timeout(duration_seconds=deadline.elapsed())
            last = self._engine.run(
                workspace,
                step.script,
                settings=self._settings,
                stdin=stdin if step.forwards_stdin else None,
                deadline=deadline,
            )
            outcome = classify_step(step, last, deadline, self._settings)
            if outcome is not None:
                return outcome
        assert last is not None
        return ExecutionOutcome.success(last.stdout, duration_seconds=deadline.elapsed())

    def _infra_error(
        self,
        exc: Exception,
        started: float,
        *,
        command: list[str] | None = None,
    ) -> ExecutionOutcome:
        """Log full infrastructure detail and build the INFRA_ERROR outcome.

        Example:
            ```python
            outcome = supervisor._infra_error(ResourceError("disk full"), time.monotonic())
            ```
        """
        duration = time.monotonic() - started
        logger.error(
            "Sandbox infrastructure failure after %.2fs: %s: %s%s",
            duration,
            type(exc).__name__,
            exc,
            f" (command: {shlex.join(command)})" if command else "",
        )
        return ExecutionOutcome.infra_error(f"{type(exc).__name__}: {exc}", duration_seconds=duration)

    def _log_outcome(self, outcome: ExecutionOutcome) -> None:
        """Emit one log line per finished request.

        Example:
            ```python
            supervisor._log_outcome(outcome)
            ```
        """
        if outcome.kind is OutcomeKind.SUCCESS:
            logger.info("Execution succeeded in %.2fs", outcome.duration_seconds)
        elif outcome.kind is OutcomeKind.FAILURE:
            stage = outcome.stage.value if outcome.stage else "unknown"
            logger.info(
                "Execution failed at %s step (exit %s) in %.2fs",
                stage,
                outcome.returncode,
                outcome.duration_seconds,
            )
        elif outcome.kind is OutcomeKind.TIMEOUT:
            logger.warning("Execution timed out after %.2fs", outcome.duration_seconds)
