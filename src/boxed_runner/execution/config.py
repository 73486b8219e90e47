from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

STEP_MODES = {"chained", "split"}
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS_BASE = {
    "boxed_runner.managed": MANAGED_LABEL_VALUE,
    "boxed_runner.engine": "docker",
    "boxed_runner.project": "boxed-runner",
}


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read settings TOML and return the ``[sandbox]`` table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/boxed-runner.toml"))
        ```
    """
    if not path.exists():
        return {
            "image": "gcc:latest",
            "deadline_seconds": 10,
            "source_filename": "main.cpp",
            "mount_path": "/usr/src/app",
            "compile_command": "g++ -Wall {mount_path}/{source_filename} -o {mount_path}/main.out",
            "run_command": "{mount_path}/main.out",
            "step_mode": "chained",
            "max_output_kb": 1024,
            "max_concurrent": 4,
            "admission_timeout_seconds": 5,
            "memory_limit_mb": 512,
            "pids_limit": 256,
            "run_as_host_user": True,
            "workspace_prefix": "boxed-runner-",
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("sandbox", raw)
    if not isinstance(table, dict):
        raise ValueError("Sandbox config must be a TOML table")
    return table


_DEFAULTS = _read_settings_toml(_default_settings_path())


@dataclass(frozen=True, slots=True)
class SandboxSettings:
    """Toolchain image, deadline and hardening limits for one engine setup.

    Commands may reference ``{mount_path}`` and ``{source_filename}``.
    ``max_concurrent = 0`` disables admission control.

    Example:
        ```python
        settings = SandboxSettings(deadline_seconds=2, image="gcc:13")
        ```
    """

    image: str = str(_DEFAULTS.get("image", "gcc:latest"))
    deadline_seconds: float = float(_DEFAULTS.get("deadline_seconds", 10))
    source_filename: str = str(_DEFAULTS.get("source_filename", "main.cpp"))
    mount_path: str = str(_DEFAULTS.get("mount_path", "/usr/src/app"))
    compile_command: str = str(_DEFAULTS.get("compile_command", ""))
    run_command: str = str(_DEFAULTS.get("run_command", ""))
    step_mode: str = str(_DEFAULTS.get("step_mode", "chained"))
    max_output_kb: int = int(_DEFAULTS.get("max_output_kb", 1024))
    max_concurrent: int = int(_DEFAULTS.get("max_concurrent", 4))
    admission_timeout_seconds: float = float(_DEFAULTS.get("admission_timeout_seconds", 5))
    memory_limit_mb: int = int(_DEFAULTS.get("memory_limit_mb", 512))
    pids_limit: int = int(_DEFAULTS.get("pids_limit", 256))
    run_as_host_user: bool = bool(_DEFAULTS.get("run_as_host_user", True))
    workspace_root: str | None = _DEFAULTS.get("workspace_root")
    workspace_prefix: str = str(_DEFAULTS.get("workspace_prefix", "boxed-runner-"))

    def __post_init__(self) -> None:
        """Validate settings after dataclass initialization.

        Example:
            ```python
            SandboxSettings(step_mode="split")
            ```
        """
        if not self.image.strip():
            raise ValueError("image must be a non-empty image reference")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        if self.step_mode not in STEP_MODES:
            raise ValueError("step_mode must be 'chained' or 'split'")
        if not self.source_filename or os.sep in self.source_filename or self.source_filename in {".", ".."}:
            raise ValueError("source_filename must be a plain file name")
        if not self.mount_path.startswith("/"):
            raise ValueError("mount_path must be an absolute container path")
        if not self.compile_command.strip() or not self.run_command.strip():
            raise ValueError("compile_command and run_command are required")
        if self.max_output_kb <= 0:
            raise ValueError("max_output_kb must be positive")
        if self.max_concurrent < 0:
            raise ValueError("max_concurrent must be >= 0 (0 disables the limit)")
        if self.admission_timeout_seconds < 0:
            raise ValueError("admission_timeout_seconds must be >= 0")
        if self.memory_limit_mb < 0 or self.pids_limit < 0:
            raise ValueError("memory_limit_mb and pids_limit must be >= 0 (0 disables the limit)")
        if not self.workspace_prefix:
            raise ValueError("workspace_prefix must be non-empty")

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxSettings":
        """Create settings from a TOML file, defaults filling missing keys.

        Example:
            ```python
            settings = SandboxSettings.from_file("/etc/boxed-runner.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Config file not found: {config_path}")
        return cls.from_mapping(_read_settings_toml(path))

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "SandboxSettings":
        """Create settings from a plain mapping, rejecting unknown keys.

        Example:
            ```python
            settings = SandboxSettings.from_mapping({"deadline_seconds": 3})
            ```
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            raise ValueError(f"Unknown sandbox settings: {', '.join(unknown)}")
        values: dict[str, Any] = {}
        for key, value in raw.items():
            if key in {"deadline_seconds", "admission_timeout_seconds"}:
                values[key] = float(value)
            elif key in {"max_output_kb", "max_concurrent", "memory_limit_mb", "pids_limit"}:
                values[key] = int(value)
            elif key == "run_as_host_user":
                if not isinstance(value, bool):
                    raise ValueError("'run_as_host_user' must be a boolean")
                values[key] = value
            elif key == "workspace_root":
                values[key] = None if value in (None, "") else str(value)
            else:
                values[key] = str(value)
        return cls(**values)

    @property
    def max_output_bytes(self) -> int:
        """Return the per-stream capture ceiling in bytes.

        Example:
            ```python
            limit = SandboxSettings(max_output_kb=64).max_output_bytes
            ```
        """
        return self.max_output_kb * 1024

    def render(self, command: str) -> str:
        """Fill ``{mount_path}`` and ``{source_filename}`` in a command template.

        Other braces are shell syntax and pass through untouched.

        Example:
            ```python
            script = settings.render(settings.run_command)
            ```
        """
        return command.replace("{mount_path}", self.mount_path).replace(
            "{source_filename}", self.source_filename
        )
