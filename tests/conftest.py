from __future__ import annotations

import stat
from pathlib import Path

import pytest

from boxed_runner import DockerEngine, SandboxSettings
from boxed_runner.execution.workspace import WorkspaceManager

# Stand-in for the docker CLI: runs the trailing `sh -c SCRIPT` on the host
# inside the bind-mounted workspace, rewriting the container mount path.
# Every invocation is appended to docker-calls.log next to the script.
_FAKE_DOCKER = r"""#!/bin/sh
printf '%s\n' "$*" >> "$(dirname "$0")/docker-calls.log"
case "$1" in
  rm|info|ps|inspect) exit 0 ;;
esac
host=""
mount=""
script=""
cid=""
while [ "$#" -gt 0 ]; do
  case "$1" in
    -v) host="${2%%:*}"; mount="${2#*:}"; shift 2 ;;
    --cidfile) cid="$2"; shift 2 ;;
    -c) script="$2"; break ;;
    *) shift ;;
  esac
done
cd "$host" || exit 1
if [ -n "$cid" ]; then
  printf 'fake%s\n' "$$" > "$cid"
fi
script=$(printf '%s' "$script" | sed "s#$mount#$host#g")
exec sh -c "$script"
"""

_DOWN_DOCKER = r"""#!/bin/sh
echo "docker: Cannot connect to the Docker daemon at unix:///var/run/docker.sock. Is the docker daemon running?" >&2
exit 125
"""


def _write_executable(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_docker(tmp_path: Path) -> Path:
    return _write_executable(tmp_path / "fake-docker", _FAKE_DOCKER)


@pytest.fixture
def down_docker(tmp_path: Path) -> Path:
    return _write_executable(tmp_path / "down-docker", _DOWN_DOCKER)


@pytest.fixture
def engine(fake_docker: Path) -> DockerEngine:
    return DockerEngine(docker_binary=str(fake_docker))


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def settings(workspace_root: Path) -> SandboxSettings:
    """Shell-script toolchain: `sh -n` is the compile step, `sh` the run step."""
    return SandboxSettings(
        image="toolchain:test",
        deadline_seconds=5,
        source_filename="main.sh",
        compile_command="sh -n {mount_path}/{source_filename}",
        run_command="sh {mount_path}/{source_filename}",
        max_output_kb=64,
        max_concurrent=0,
        run_as_host_user=False,
        workspace_root=str(workspace_root),
    )


@pytest.fixture
def workspaces(workspace_root: Path) -> WorkspaceManager:
    return WorkspaceManager(root=workspace_root)


@pytest.fixture
def docker_calls(fake_docker: Path):
    """Return a reader for the argv lines the fake docker CLI has received."""
    log = fake_docker.parent / "docker-calls.log"

    def _read() -> list[str]:
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    return _read
