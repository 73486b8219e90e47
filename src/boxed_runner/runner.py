from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from .errors import ValidationError
from .execution.admission import AdmissionGate, gate_for
from .execution.config import SandboxSettings
from .execution.engine import IsolationRunner
from .execution.supervisor import ExecutionSupervisor
from .execution.types import ExecutionOutcome, ExecutionRequest
from .execution.workspace import WorkspaceManager
from .reporter import ExecutionResult, parse_request, report, validation_error

logger = logging.getLogger(__name__)

_MANAGERS_LOCK = threading.Lock()
_MANAGERS: dict[tuple[str | None, str], WorkspaceManager] = {}


def _resolve_settings(settings: SandboxSettings | None, config_file: str | None) -> SandboxSettings:
    """Resolve the effective settings object for a run.

    Example:
        ```python
        settings = _resolve_settings(None, "/etc/boxed-runner.toml")
        ```
    """
    if settings is not None and config_file is not None:
        raise ValueError("Provide either 'settings' or 'config_file', not both")
    if config_file is not None:
        return SandboxSettings.from_file(config_file)
    return settings or SandboxSettings()


def workspaces_for(settings: SandboxSettings) -> WorkspaceManager:
    """Return the shared workspace manager for the settings' root and prefix.

    Example:
        ```python
        manager = workspaces_for(SandboxSettings())
        ```
    """
    key = (settings.workspace_root, settings.workspace_prefix)
    with _MANAGERS_LOCK:
        manager = _MANAGERS.get(key)
        if manager is None:
            manager = WorkspaceManager(root=settings.workspace_root, prefix=settings.workspace_prefix)
            _MANAGERS[key] = manager
        return manager


def run_code(
    code: str,
    engine: IsolationRunner,
    stdin: str | None = None,
    settings: SandboxSettings | None = None,
    config_file: str | None = None,
    workspaces: WorkspaceManager | None = None,
    gate: AdmissionGate | None = None,
) -> ExecutionOutcome:
    """Compile and run code in a sandbox and return the classified outcome.

    Example:
        ```python
        from boxed_runner import DockerEngine, run_code
        outcome = run_code('#include <iostream>\\nint main() { std::cout << 42; }', engine=DockerEngine())
        ```
    """
    resolved = _resolve_settings(settings, config_file)
    supervisor = ExecutionSupervisor(
        ExecutionRequest(source_code=code, stdin=stdin),
        engine=engine,
        settings=resolved,
        workspaces=workspaces or workspaces_for(resolved),
        gate=gate or gate_for(resolved.max_concurrent),
    )
    return supervisor.run()


def execute_payload(
    body: bytes | str | Mapping[str, Any],
    engine: IsolationRunner,
    settings: SandboxSettings | None = None,
    config_file: str | None = None,
    workspaces: WorkspaceManager | None = None,
    gate: AdmissionGate | None = None,
) -> ExecutionResult:
    """Handle one ``{code, stdin?}`` payload end to end.

    Returns 200 with ``{"result": stdout}``, 400 for malformed payloads,
    500 for failures and 504 on timeout.

    Example:
        ```python
        response = execute_payload(b'{"code": "int main() {}"}', engine=DockerEngine())
        ```
    """
    try:
        request = parse_request(body)
    except ValidationError as exc:
        logger.debug("Rejected payload: %s", exc)
        return validation_error(exc)
    outcome = run_code(
        request.source_code,
        engine=engine,
        stdin=request.stdin,
        settings=settings,
        config_file=config_file,
        workspaces=workspaces,
        gate=gate,
    )
    return report(outcome)
