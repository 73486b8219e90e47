from __future__ import annotations

import os
from pathlib import Path

from ..errors import ResourceError
from .workspace import Workspace

SOURCE_FILE_MODE = 0o600


def write_source(workspace: Workspace, code: str, filename: str) -> Path:
    """Write submitted code verbatim into the workspace.

    The file must not exist yet; it is created owner-read/write only.

    Example:
        ```python
        path = write_source(ws, "int main() { return 0; }", "main.cpp")
        ```
    """
    target = workspace.file(filename)
    data = code.encode("utf-8")
    try:
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SOURCE_FILE_MODE)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
    except OSError as exc:
        raise ResourceError(f"Failed to write {target}: {exc}") from exc
    return target


def attach_stdin(payload: str | None) -> bytes | None:
    """Encode the optional stdin payload for streaming into the sandbox.

    An empty payload attaches nothing, so the program sees a closed stdin.

    Example:
        ```python
        data = attach_stdin("5\\n")
        ```
    """
    if not payload:
        return None
    return payload.encode("utf-8")
