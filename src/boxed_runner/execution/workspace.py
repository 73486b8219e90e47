from __future__ import annotations

import contextlib
import logging
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..errors import ResourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Workspace:
    """Ephemeral directory exclusively owned by one request.

    Example:
        ```python
        ws = Workspace(Path("/tmp/boxed-runner-k2j3h4"))
        ```
    """

    path: Path

    def file(self, name: str) -> Path:
        """Return the path of a file directly inside the workspace.

        Example:
            ```python
            source = ws.file("main.cpp")
            ```
        """
        return self.path / name


class WorkspaceManager:
    """Create and destroy per-request workspaces under one root directory.

    Thread-safe; one instance is shared by concurrent requests.

    Example:
        ```python
        manager = WorkspaceManager(prefix="boxed-runner-")
        with manager.allocate() as ws:
            ...
        ```
    """

    def __init__(self, *, root: str | Path | None = None, prefix: str = "boxed-runner-") -> None:
        """Configure where workspaces are allocated.

        Example:
            ```python
            manager = WorkspaceManager(root="/var/lib/boxed-runner")
            ```
        """
        self._root = Path(root) if root is not None else Path(tempfile.gettempdir())
        self._prefix = prefix
        self._lock = threading.Lock()
        self._live: set[Path] = set()

    @property
    def root(self) -> Path:
        """Return the directory workspaces are created in.

        Example:
            ```python
            root = manager.root
            ```
        """
        return self._root

    def create(self) -> Workspace:
        """Allocate a fresh, unpredictably named directory with mode 0700.

        Example:
            ```python
            ws = manager.create()
            ```
        """
        try:
            path = Path(tempfile.mkdtemp(prefix=self._prefix, dir=self._root))
        except OSError as exc:
            raise ResourceError(f"Failed to create workspace under {self._root}: {exc}") from exc
        with self._lock:
            self._live.add(path)
        logger.debug("Created workspace %s", path)
        return Workspace(path)

    def destroy(self, workspace: Workspace) -> bool:
        """Remove the workspace tree; only the first successful call acts.

        A tree that cannot be removed stays tracked, so ``live_count`` keeps
        reporting it and a later call retries the removal.

        Example:
            ```python
            removed = manager.destroy(ws)
            ```
        """
        with self._lock:
            if workspace.path not in self._live:
                return False
            self._live.discard(workspace.path)
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Failed to remove workspace %s; still counted as live", workspace.path)
            with self._lock:
                self._live.add(workspace.path)
            return False
        logger.debug("Removed workspace %s", workspace.path)
        return True

    @contextlib.contextmanager
    def allocate(self) -> Iterator[Workspace]:
        """Yield a new workspace and destroy it on every exit path.

        Example:
            ```python
            with manager.allocate() as ws:
                write_source(ws, code, "main.cpp")
            ```
        """
        workspace = self.create()
        try:
            yield workspace
        finally:
            self.destroy(workspace)

    def live_count(self) -> int:
        """Return how many workspaces exist and are not yet destroyed.

        Example:
            ```python
            assert manager.live_count() == 0
            ```
        """
        with self._lock:
            return len(self._live)

    def sweep_stale(self, max_age_seconds: float) -> int:
        """Remove leftover prefixed directories older than ``max_age_seconds``.

        Workspaces still owned by this manager are never touched.

        Example:
            ```python
            removed = manager.sweep_stale(max_age_seconds=3600)
            ```
        """
        if not self._root.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        with self._lock:
            owned = set(self._live)
        removed = 0
        for candidate in self._root.glob(f"{self._prefix}*"):
            if candidate in owned or not candidate.is_dir() or candidate.is_symlink():
                continue
            try:
                if candidate.stat().st_mtime > cutoff:
                    continue
                shutil.rmtree(candidate)
            except FileNotFoundError:
                continue
            except OSError:
                logger.exception("Failed to sweep stale workspace %s", candidate)
                continue
            removed += 1
        if removed:
            logger.info("Swept %d stale workspace(s) from %s", removed, self._root)
        return removed
