import logging

from .errors import (
    AdmissionRefused,
    BoxedRunnerError,
    EngineUnavailable,
    ResourceError,
    ValidationError,
)
from .execution.config import SandboxSettings
from .execution.docker_engine import DockerEngine
from .execution.types import ExecutionOutcome, ExecutionRequest, OutcomeKind
from .reporter import ExecutionResult
from .runner import execute_payload, run_code

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AdmissionRefused",
    "BoxedRunnerError",
    "DockerEngine",
    "EngineUnavailable",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutionResult",
    "OutcomeKind",
    "ResourceError",
    "SandboxSettings",
    "ValidationError",
    "execute_payload",
    "run_code",
]
