from __future__ import annotations

from typing import Protocol

from .config import SandboxSettings
from .deadline import Deadline
from .types import StepResult
from .workspace import Workspace


class IsolationRunner(Protocol):
    def run(
        self,
        workspace: Workspace,
        script: str,
        *,
        settings: SandboxSettings,
        stdin: bytes | None,
        deadline: Deadline,
    ) -> StepResult:
        """Run one shell script in a sandbox bound to ``workspace``.

        Must raise ``EngineUnavailable`` when the sandbox itself cannot start,
        and must stop the sandbox before returning once ``deadline`` expires.

        Example:
            ```python
            result = engine.run(ws, "g++ main.cpp && ./a.out", settings=settings, stdin=None, deadline=Deadline(10))
            ```
        """
        ...
