import stat
from pathlib import Path

import pytest

from boxed_runner import ResourceError
from boxed_runner.execution.workspace import WorkspaceManager


def test_create_allocates_private_unique_directories(workspaces: WorkspaceManager) -> None:
    first = workspaces.create()
    second = workspaces.create()

    assert first.path != second.path
    assert first.path.parent == workspaces.root
    assert first.path.name.startswith("boxed-runner-")
    assert stat.S_IMODE(first.path.stat().st_mode) == 0o700
    assert workspaces.live_count() == 2


def test_destroy_removes_tree_exactly_once(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create()
    (ws.path / "nested").mkdir()
    (ws.path / "nested" / "main.out").write_bytes(b"\x7fELF")

    assert workspaces.destroy(ws) is True
    assert not ws.path.exists()
    assert workspaces.destroy(ws) is False
    assert workspaces.live_count() == 0


def test_allocate_destroys_on_exception(workspaces: WorkspaceManager) -> None:
    seen: list[Path] = []
    with pytest.raises(RuntimeError, match="boom"):
        with workspaces.allocate() as ws:
            seen.append(ws.path)
            raise RuntimeError("boom")

    assert not seen[0].exists()
    assert workspaces.live_count() == 0


def test_create_fails_with_resource_error_when_root_missing(tmp_path: Path) -> None:
    manager = WorkspaceManager(root=tmp_path / "does-not-exist")
    with pytest.raises(ResourceError, match="Failed to create workspace"):
        manager.create()


def test_sweep_stale_skips_live_and_foreign_directories(workspaces: WorkspaceManager) -> None:
    live = workspaces.create()
    leftover = workspaces.root / "boxed-runner-leftover"
    leftover.mkdir()
    foreign = workspaces.root / "someone-else"
    foreign.mkdir()

    removed = workspaces.sweep_stale(max_age_seconds=0)

    assert removed == 1
    assert not leftover.exists()
    assert foreign.exists()
    assert live.path.exists()


def test_sweep_stale_respects_age(workspaces: WorkspaceManager) -> None:
    leftover = workspaces.root / "boxed-runner-recent"
    leftover.mkdir()

    assert workspaces.sweep_stale(max_age_seconds=3600) == 0
    assert leftover.exists()


def test_failed_removal_stays_counted_and_can_be_retried(
    workspaces: WorkspaceManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    ws = workspaces.create()

    def _refuse(path) -> None:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("boxed_runner.execution.workspace.shutil.rmtree", _refuse)
    assert workspaces.destroy(ws) is False
    assert ws.path.exists()
    assert workspaces.live_count() == 1

    monkeypatch.undo()
    assert workspaces.destroy(ws) is True
    assert not ws.path.exists()
    assert workspaces.live_count() == 0
