from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
import tempfile
import time
import uuid
from pathlib import Path
from typing import IO

from ..errors import EngineUnavailable, ResourceError
from .config import MANAGED_LABEL_VALUE, MANAGED_LABELS_BASE, SandboxSettings
from .deadline import Deadline
from .types import ContainerInfo, StepResult
from .workspace import Workspace

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05
_READ_CHUNK = 64 * 1024
_DRAIN_TIMEOUT_SECONDS = 5.0
# `docker run` exits 125 when the daemon, not the sandboxed program, failed.
_ENGINE_EXIT_CODE = 125
_LOCAL_HOST_SCHEMES = ("unix://", "npipe://")


class _CappedReader(threading.Thread):
    """Drain one pipe, keeping at most ``limit`` bytes.

    Bytes beyond the limit are read and dropped so the writer never blocks.

    Example:
        ```python
        reader = _CappedReader(process.stdout, limit=1024 * 1024)
        reader.start()
        ```
    """

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        """Prepare the reader; call ``start()`` to begin draining.

        Example:
            ```python
            reader = _CappedReader(process.stderr, limit=4096)
            ```
        """
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._buffer = bytearray()
        self.exceeded = False

    def run(self) -> None:
        """Read until EOF.

        Example:
            ```python
            reader.run()
            ```
        """
        with self._stream:
            while True:
                chunk = self._stream.read1(_READ_CHUNK)  # type: ignore[attr-defined]
                if not chunk:
                    return
                room = self._limit - len(self._buffer)
                if len(chunk) > room:
                    self.exceeded = True
                    chunk = chunk[: max(0, room)]
                self._buffer.extend(chunk)

    def text(self) -> str:
        """Return captured bytes decoded as UTF-8.

        Example:
            ```python
            out = reader.text()
            ```
        """
        return self._buffer.decode("utf-8", errors="replace")


def _feed_stdin(stream: IO[bytes], payload: bytes) -> None:
    """Stream the stdin payload into the sandbox and close the pipe.

    Example:
        ```python
        _feed_stdin(process.stdin, b"5\\n")
        ```
    """
    try:
        stream.write(payload)
        stream.close()
    except BrokenPipeError:
        # the program exited without consuming all of its input
        pass


def _looks_like_engine_failure(returncode: int, container_created: bool) -> bool:
    """Tell a daemon/engine error apart from the sandboxed program's exit.

    The program controls its own exit status and stderr, so only a 125 from
    a run whose container was never created counts as an engine failure.

    Example:
        ```python
        _looks_like_engine_failure(125, container_created=False)
        ```
    """
    return returncode == _ENGINE_EXIT_CODE and not container_created


def _container_created(cidfile: Path) -> bool:
    """Return True once the daemon has written the container id file.

    Example:
        ```python
        started = _container_created(Path("/tmp/bxr-cid-x/container.cid"))
        ```
    """
    try:
        return bool(cidfile.read_text(encoding="utf-8").strip())
    except OSError:
        return False


class DockerEngine:
    """Run untrusted code in ephemeral, network-disabled Docker containers.

    Each ``run`` starts exactly one ``docker run --rm`` instance whose only
    external mount is the request's workspace.

    Example:
        ```python
        engine = DockerEngine(docker_context="build-box")
        ```
    """

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        docker_host: str | None = None,
        docker_context: str | None = None,
    ) -> None:
        """Initialize Docker CLI targeting.

        Example:
            ```python
            engine = DockerEngine(docker_host="ssh://ubuntu@sandbox-host")
            ```
        """
        if not docker_binary.strip():
            raise ValueError("docker_binary must be non-empty")
        if docker_context and docker_host:
            raise ValueError("Use either docker_context or docker_host, not both")
        self._docker_binary = docker_binary
        self._docker_host = docker_host
        self._docker_context = docker_context

    def build_command(
        self,
        workspace: Workspace,
        script: str,
        *,
        settings: SandboxSettings,
        container_name: str,
        forward_stdin: bool,
        cidfile: Path | None = None,
    ) -> list[str]:
        """Build the ``docker run`` argv for one sandboxed script.

        Example:
            ```python
            cmd = engine.build_command(ws, "g++ main.cpp", settings=settings, container_name="boxed-runner-1", forward_stdin=False)
            ```
        """
        cmd = self._docker_cmd(["run", "--rm"])
        if forward_stdin:
            cmd.append("-i")
        cmd.extend(["--name", container_name])
        if cidfile is not None:
            cmd.extend(["--cidfile", str(cidfile)])
        for key, value in MANAGED_LABELS_BASE.items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.extend(
            [
                "--network",
                "none",
                "--cap-drop",
                "ALL",
                "--security-opt",
                "no-new-privileges",
            ]
        )
        if settings.pids_limit:
            cmd.extend(["--pids-limit", str(settings.pids_limit)])
        if settings.memory_limit_mb:
            cmd.extend(["--memory", f"{settings.memory_limit_mb}m"])
        if settings.run_as_host_user and hasattr(os, "getuid"):
            cmd.extend(["--user", f"{os.getuid()}:{os.getgid()}"])
        cmd.extend(
            [
                "-v",
                f"{workspace.path}:{settings.mount_path}",
                "-w",
                settings.mount_path,
                settings.image,
                "sh",
                "-c",
                script,
            ]
        )
        return cmd

    @property
    def mounts_local_paths(self) -> bool:
        """Return True when the daemon can see this host's workspace paths.

        ``run`` bind-mounts a local directory, so it needs the local daemon
        socket. Management commands work against any target.

        Example:
            ```python
            assert DockerEngine().mounts_local_paths
            ```
        """
        if not self._docker_host:
            return True
        return self._docker_host.startswith(_LOCAL_HOST_SCHEMES)

    def run(
        self,
        workspace: Workspace,
        script: str,
        *,
        settings: SandboxSettings,
        stdin: bytes | None,
        deadline: Deadline,
    ) -> StepResult:
        """Run one script in a fresh container, stopping it at the deadline.

        Example:
            ```python
            result = engine.run(ws, "./main.out", settings=settings, stdin=b"5\\n", deadline=Deadline(10))
            ```
        """
        if not self.mounts_local_paths:
            raise EngineUnavailable(
                f"Remote docker host is not a local daemon: {self._docker_host}; "
                "workspaces are bind-mounted from this host"
            )
        # Kept outside the workspace, which the sandboxed program can write to.
        try:
            cid_dir = Path(tempfile.mkdtemp(prefix="bxr-cid-"))
        except OSError as exc:
            raise ResourceError(f"Failed to create container id directory: {exc}") from exc
        try:
            return self._run_container(
                workspace,
                script,
                settings=settings,
                stdin=stdin,
                deadline=deadline,
                cidfile=cid_dir / "container.cid",
            )
        finally:
            shutil.rmtree(cid_dir, ignore_errors=True)

    def _run_container(
        self,
        workspace: Workspace,
        script: str,
        *,
        settings: SandboxSettings,
        stdin: bytes | None,
        deadline: Deadline,
        cidfile: Path,
    ) -> StepResult:
        """Start the container, pump its streams and enforce the deadline.

        Example:
            ```python
            result = engine._run_container(ws, "true", settings=settings, stdin=None, deadline=Deadline(5), cidfile=path)
            ```
        """
        container_name = f"boxed-runner-{uuid.uuid4().hex[:12]}"
        cmd = self.build_command(
            workspace,
            script,
            settings=settings,
            container_name=container_name,
            forward_stdin=stdin is not None,
            cidfile=cidfile,
        )
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._docker_env(),
                start_new_session=True,
            )
        except OSError as exc:
            raise EngineUnavailable(
                f"Failed to start sandbox engine '{self._docker_binary}': {exc}",
                command=cmd,
            ) from exc
        logger.debug("Started container %s for workspace %s", container_name, workspace.path)

        assert process.stdout is not None and process.stderr is not None
        stdout_reader = _CappedReader(process.stdout, settings.max_output_bytes)
        stderr_reader = _CappedReader(process.stderr, settings.max_output_bytes)
        stdout_reader.start()
        stderr_reader.start()
        feeder = None
        if stdin is not None and process.stdin is not None:
            feeder = threading.Thread(target=_feed_stdin, args=(process.stdin, stdin), daemon=True)
            feeder.start()

        killed = False
        try:
            while True:
                try:
                    process.wait(timeout=min(_POLL_SECONDS, deadline.remaining()))
                    break
                except subprocess.TimeoutExpired:
                    if deadline.expired or stdout_reader.exceeded or stderr_reader.exceeded:
                        self._cancel(process, container_name)
                        killed = True
                        break
        finally:
            if process.poll() is None:
                self._cancel(process, container_name)
                killed = True
            stdout_reader.join(_DRAIN_TIMEOUT_SECONDS)
            stderr_reader.join(_DRAIN_TIMEOUT_SECONDS)
            if feeder is not None:
                feeder.join(_DRAIN_TIMEOUT_SECONDS)

        result = StepResult(
            stdout=stdout_reader.text(),
            stderr=stderr_reader.text(),
            returncode=process.returncode,
            duration_seconds=time.monotonic() - started,
            output_exceeded=stdout_reader.exceeded or stderr_reader.exceeded,
            killed=killed,
        )
        if not killed and _looks_like_engine_failure(result.returncode, _container_created(cidfile)):
            raise EngineUnavailable(result.stderr.strip(), command=cmd)
        return result

    def is_available(self) -> tuple[bool, str | None]:
        """Check Docker CLI and daemon accessibility for the selected target.

        Example:
            ```python
            ok, reason = engine.is_available()
            ```
        """
        if shutil.which(self._docker_binary) is None:
            return False, f"Docker CLI was not found at '{self._docker_binary}'."
        probe = self._run_docker(["info"])
        if probe.returncode != 0:
            return False, "Docker is installed but the daemon is not running or not accessible."
        return True, None

    def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        """List sandbox containers started by boxed-runner.

        Example:
            ```python
            containers = engine.list_containers(all_states=True)
            ```
        """
        fmt = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.Status}}"
        cmd = ["ps", "--filter", f"label=boxed_runner.managed={MANAGED_LABEL_VALUE}", "--format", fmt]
        if all_states:
            cmd.insert(1, "-a")
        out = self._run_docker(cmd)
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {out.stderr.strip()}")
        items: list[ContainerInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            c_id, name, image, state, status = line.split("|", 4)
            items.append(ContainerInfo(c_id, name, image, state, status))
        return items

    def kill_container(self, container_id: str) -> None:
        """Force-remove one managed sandbox container.

        Example:
            ```python
            engine.kill_container("abc123")
            ```
        """
        self._ensure_managed_container(container_id)
        killed = self._run_docker(["rm", "-f", container_id])
        if killed.returncode != 0:
            raise RuntimeError(f"Failed to kill container: {killed.stderr.strip()}")

    def cleanup_stale(self) -> int:
        """Remove managed containers that are no longer running.

        Example:
            ```python
            removed = engine.cleanup_stale()
            ```
        """
        removed_containers = 0
        for container in self.list_containers(all_states=True):
            if container.state != "running":
                removed = self._run_docker(["rm", "-f", container.id])
                if removed.returncode == 0:
                    removed_containers += 1
        return removed_containers

    def _cancel(self, process: subprocess.Popen[bytes], container_name: str) -> None:
        """Kill the CLI process group, then force-remove its container.

        Killing the client alone leaves the container running in the daemon.

        Example:
            ```python
            engine._cancel(process, "boxed-runner-1f2e3d")
            ```
        """
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            process.kill()
        process.wait()
        try:
            removed = self._run_docker(["rm", "-f", container_name])
        except EngineUnavailable:
            logger.warning("Could not remove container %s: engine unavailable", container_name)
            return
        if removed.returncode != 0 and "No such container" not in removed.stderr:
            logger.warning("Could not remove container %s: %s", container_name, removed.stderr.strip())

    def _ensure_managed_container(self, container_id: str) -> None:
        """Ensure a container is labeled as boxed-runner managed.

        Example:
            ```python
            engine._ensure_managed_container("abc123")
            ```
        """
        check = self._run_docker(
            [
                "inspect",
                "-f",
                "{{ index .Config.Labels \"boxed_runner.managed\" }}",
                container_id,
            ]
        )
        if check.returncode != 0 or check.stdout.strip() != MANAGED_LABEL_VALUE:
            raise ValueError(
                f"Container '{container_id}' is not managed by boxed-runner and cannot be modified"
            )

    def _run_docker(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command against the configured target.

        Example:
            ```python
            completed = engine._run_docker(["ps"])
            ```
        """
        cmd = self._docker_cmd(args)
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                env=self._docker_env(),
            )
        except OSError as exc:
            raise EngineUnavailable(
                f"Failed to start sandbox engine '{self._docker_binary}': {exc}",
                command=cmd,
            ) from exc

    def _docker_cmd(self, args: list[str]) -> list[str]:
        """Build a Docker CLI command with optional context.

        Example:
            ```python
            cmd = engine._docker_cmd(["ps"])
            ```
        """
        cmd = [self._docker_binary]
        if self._docker_context:
            cmd.extend(["--context", self._docker_context])
        cmd.extend(args)
        return cmd

    def _docker_env(self) -> dict[str, str]:
        """Build environment variables for Docker CLI targeting.

        Example:
            ```python
            env = engine._docker_env()
            ```
        """
        env = dict(os.environ)
        if self._docker_host:
            env["DOCKER_HOST"] = self._docker_host
        return env
