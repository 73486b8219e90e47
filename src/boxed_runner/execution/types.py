from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OutcomeKind(str, Enum):
    """Classification tag of one execution.

    Example:
        ```python
        assert OutcomeKind("timeout") is OutcomeKind.TIMEOUT
        ```
    """

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    INFRA_ERROR = "infra_error"


class StepKind(str, Enum):
    """Which part of the toolchain a step runs.

    Example:
        ```python
        kind = StepKind.COMPILE
        ```
    """

    COMPILE = "compile"
    RUN = "run"
    COMPILE_AND_RUN = "compile_and_run"


class SupervisorState(str, Enum):
    """Lifecycle of one Execution Supervisor.

    Example:
        ```python
        assert SupervisorState.IDLE.value == "idle"
        ```
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Source code and optional stdin submitted by a caller.

    Example:
        ```python
        req = ExecutionRequest(source_code="int main() { return 0; }", stdin="5\\n")
        ```
    """

    source_code: str
    stdin: str | None = None


@dataclass(frozen=True, slots=True)
class Step:
    """One shell script executed inside its own sandbox instance.

    Example:
        ```python
        step = Step(StepKind.RUN, "/usr/src/app/main.out", forwards_stdin=True)
        ```
    """

    kind: StepKind
    script: str
    forwards_stdin: bool


@dataclass(slots=True)
class StepResult:
    """Raw capture of one isolation runner invocation.

    Example:
        ```python
        res = StepResult(stdout="hi\\n", stderr="", returncode=0, duration_seconds=0.4)
        ```
    """

    stdout: str
    stderr: str
    returncode: int
    duration_seconds: float
    output_exceeded: bool = False
    killed: bool = False


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Classified result of one request.

    Only the payload matching ``kind`` is meaningful: ``stdout`` for
    SUCCESS, ``stderr`` for FAILURE, ``detail`` for INFRA_ERROR. ``detail``
    is for server-side logs and never reaches the caller.

    Example:
        ```python
        out = ExecutionOutcome.success("5\\n", duration_seconds=1.2)
        ```
    """

    kind: OutcomeKind
    stdout: str = ""
    stderr: str = ""
    detail: str | None = None
    stage: StepKind | None = None
    returncode: int | None = None
    duration_seconds: float = 0.0

    @classmethod
    def success(cls, stdout: str, *, duration_seconds: float = 0.0) -> "ExecutionOutcome":
        """Build a SUCCESS outcome carrying program stdout.

        Example:
            ```python
            out = ExecutionOutcome.success("ok\\n")
            ```
        """
        return cls(OutcomeKind.SUCCESS, stdout=stdout, returncode=0, duration_seconds=duration_seconds)

    @classmethod
    def failure(
        cls,
        stderr: str,
        *,
        stage: StepKind | None = None,
        returncode: int | None = None,
        duration_seconds: float = 0.0,
    ) -> "ExecutionOutcome":
        """Build a FAILURE outcome carrying diagnostic stderr.

        Example:
            ```python
            out = ExecutionOutcome.failure("main.cpp:1: error", stage=StepKind.COMPILE, returncode=1)
            ```
        """
        return cls(
            OutcomeKind.FAILURE,
            stderr=stderr,
            stage=stage,
            returncode=returncode,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def timeout(cls, *, duration_seconds: float = 0.0) -> "ExecutionOutcome":
        """Build a TIMEOUT outcome; partial output is never carried.

        Example:
            ```python
            out = ExecutionOutcome.timeout(duration_seconds=10.0)
            ```
        """
        return cls(OutcomeKind.TIMEOUT, returncode=124, duration_seconds=duration_seconds)

    @classmethod
    def infra_error(cls, detail: str, *, duration_seconds: float = 0.0) -> "ExecutionOutcome":
        """Build an INFRA_ERROR outcome with server-side detail.

        Example:
            ```python
            out = ExecutionOutcome.infra_error("Docker daemon unreachable")
            ```
        """
        return cls(OutcomeKind.INFRA_ERROR, detail=detail, returncode=125, duration_seconds=duration_seconds)

    @property
    def ok(self) -> bool:
        """Return True for SUCCESS outcomes.

        Example:
            ```python
            assert ExecutionOutcome.success("").ok
            ```
        """
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed sandbox container returned by DockerEngine.

    Example:
        ```python
        info = ContainerInfo("abc", "boxed-runner-1f2e", "gcc:latest", "running", "Up 2s")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str


@dataclass(frozen=True, slots=True)
class CleanupSummary:
    """Result summary from stale resource cleanup.

    Example:
        ```python
        summary = CleanupSummary(removed_containers=2, removed_workspaces=1)
        ```
    """

    removed_containers: int
    removed_workspaces: int
