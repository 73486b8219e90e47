from __future__ import annotations

import argparse
import logging
import sys
from functools import partial
from dataclasses import fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from boxed_runner import DockerEngine, OutcomeKind, SandboxSettings, execute_payload, run_code
from boxed_runner.errors import EngineUnavailable
from boxed_runner.execution.types import CleanupSummary
from boxed_runner.runner import workspaces_for

_CONSOLE = Console(no_color=False)
_EXIT_CODES = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.FAILURE: 1,
    OutcomeKind.TIMEOUT: 124,
    OutcomeKind.INFRA_ERROR: 125,
}


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m bxr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit with status 2.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _to_jsonable(value: object) -> Any:
    """Convert CLI return values into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(CleanupSummary(removed_containers=1, removed_workspaces=0))
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    if hasattr(value, "__dict__"):
        return vars(value)
    return value


def configure_logging(verbose: bool) -> None:
    """Route library logs through Rich on stderr.

    Example:
        ```python
        configure_logging(verbose=True)
        ```
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for boxed-runner.

    Example:
        ```python
        args = build_parser().parse_args(["run", "main.cpp"])
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m bxr",
        description=(
            "boxed-runner CLI\n"
            "Compile and run untrusted code in network-disabled Docker sandboxes,\n"
            "and manage the sandbox containers and workspaces boxed-runner creates."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m bxr run main.cpp\n"
            "  python -m bxr run main.cpp --stdin '5\\n'\n"
            "  python -m bxr execute payload.json\n"
            "  python -m bxr check\n"
            "  python -m bxr list containers\n"
            "  python -m bxr cleanup\n\n"
            "Remote Examples (management commands only; run/execute need a local daemon):\n"
            "  python -m bxr --docker-context sandbox-host list containers\n"
            "  python -m bxr --docker-host ssh://ubuntu@server check"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--docker-context",
        help=(
            "Use an existing Docker context name.\n"
            "run/execute require the context to use a local daemon.\n"
            "Mutually exclusive with --docker-host."
        ),
    )
    parser.add_argument(
        "--docker-host",
        help=(
            "Connect directly with DOCKER_HOST.\n"
            "run/execute require a local socket (unix://, npipe://).\n"
            "Examples: ssh://user@server, tcp://host:2376"
        ),
    )
    parser.add_argument(
        "--docker-binary",
        default="docker",
        help="Docker CLI executable name or path (default: docker).",
    )
    parser.add_argument(
        "--config",
        help="TOML file with a [sandbox] table overriding the bundled defaults.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Compile and run one source file in a sandbox.",
        description=(
            "Compile and run SOURCE inside an ephemeral sandbox.\n"
            "Exit status: 0 success, 1 failure, 124 timeout, 125 infrastructure error."
        ),
        epilog=(
            "Examples:\n"
            "  python -m bxr run main.cpp\n"
            "  python -m bxr run main.cpp --stdin-file input.txt --deadline-seconds 3"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("source", help="Path to the source file to submit.")
    stdin_group = run_cmd.add_mutually_exclusive_group()
    stdin_group.add_argument("--stdin", help="Text streamed to the program's standard input.")
    stdin_group.add_argument("--stdin-file", help="File streamed to the program's standard input.")
    run_cmd.add_argument("--image", help="Override the toolchain image.")
    run_cmd.add_argument("--deadline-seconds", type=float, help="Override the compile+run deadline.")
    run_cmd.add_argument(
        "--split-steps",
        action="store_true",
        help="Run compile and run as separate sandboxed steps.",
    )

    execute_cmd = sub.add_parser(
        "execute",
        help="Handle one JSON {code, stdin} payload and print status and body.",
        description=(
            "Handle one JSON payload exactly like the /execute endpoint.\n"
            "Reads PAYLOAD, or stdin when PAYLOAD is '-' or omitted."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    execute_cmd.add_argument("payload", nargs="?", default="-")

    sub.add_parser(
        "check",
        help="Check that the Docker CLI and daemon are reachable.",
        description="Probe the configured Docker target with `docker info`.",
        formatter_class=_HELP_FORMATTER,
    )

    list_cmd = sub.add_parser(
        "list",
        help="List managed sandbox containers.",
        description="List containers labeled as created by boxed-runner.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "containers",
        help="List managed containers.",
        description="Show managed containers in running and exited states.",
        formatter_class=_HELP_FORMATTER,
    )

    kill_cmd = sub.add_parser(
        "kill",
        help="Force kill managed sandbox containers.",
        description="Kill commands operate only on managed containers.",
        epilog="Examples:\n  python -m bxr kill container abc123",
        formatter_class=_HELP_FORMATTER,
    )
    kill_cmd_sub = kill_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    kill_container = kill_cmd_sub.add_parser(
        "container",
        help="Force kill one managed container by id.",
        description="Force kill a managed container immediately.",
        formatter_class=_HELP_FORMATTER,
    )
    kill_container.add_argument("container_id")

    cleanup_cmd = sub.add_parser(
        "cleanup",
        help="Remove stale managed containers and leftover workspaces.",
        description=(
            "Delete exited managed containers and workspace directories\n"
            "left behind by crashed processes."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cleanup_cmd.add_argument(
        "--max-age-seconds",
        type=float,
        default=3600,
        help="Only sweep workspaces older than this (default: 3600).",
    )

    return parser


def build_engine(args: argparse.Namespace) -> DockerEngine:
    """Create a DockerEngine from global CLI connection flags.

    Example:
        ```python
        engine = build_engine(args)
        ```
    """
    return DockerEngine(
        docker_binary=args.docker_binary,
        docker_context=args.docker_context,
        docker_host=args.docker_host,
    )


def build_settings(args: argparse.Namespace) -> SandboxSettings:
    """Resolve settings from --config plus per-command overrides.

    Example:
        ```python
        settings = build_settings(build_parser().parse_args(["run", "main.cpp", "--split-steps"]))
        ```
    """
    settings = SandboxSettings.from_file(args.config) if args.config else SandboxSettings()
    overrides: dict[str, Any] = {}
    if getattr(args, "image", None):
        overrides["image"] = args.image
    if getattr(args, "deadline_seconds", None):
        overrides["deadline_seconds"] = args.deadline_seconds
    if getattr(args, "split_steps", False):
        overrides["step_mode"] = "split"
    return replace(settings, **overrides) if overrides else settings


def _print_containers(rows: list[dict[str, Any]]) -> None:
    """Render managed containers in a rich table.

    Example:
        ```python
        _print_containers([{"id": "abc", "name": "boxed-runner-1", "image": "gcc:latest", "state": "running", "status": "Up"}])
        ```
    """
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    for row in rows:
        table.add_row(row["id"], row["name"], row["image"], row["state"], row["status"])
    _CONSOLE.print(table)


def _run_command(args: argparse.Namespace, engine: DockerEngine, settings: SandboxSettings) -> int:
    """Run one source file and map its outcome to an exit status.

    Example:
        ```python
        code = _run_command(args, engine, settings)
        ```
    """
    source = Path(args.source)
    if not source.is_file():
        _CONSOLE.print(Panel.fit(f"Source file not found: {source}", style="bold red"))
        return 2
    stdin = args.stdin
    if args.stdin_file:
        stdin = Path(args.stdin_file).read_text(encoding="utf-8")
    outcome = run_code(
        source.read_text(encoding="utf-8"),
        engine=engine,
        stdin=stdin,
        settings=settings,
    )
    title = f"{outcome.kind.value} in {outcome.duration_seconds:.2f}s"
    if outcome.kind is OutcomeKind.SUCCESS:
        _CONSOLE.print(Panel(outcome.stdout, title=title, border_style="green"))
    elif outcome.kind is OutcomeKind.FAILURE:
        stage = outcome.stage.value if outcome.stage else "unknown"
        _CONSOLE.print(
            Panel(outcome.stderr, title=f"{title} ({stage} step, exit {outcome.returncode})", border_style="red")
        )
    elif outcome.kind is OutcomeKind.TIMEOUT:
        _CONSOLE.print(
            Panel.fit(f"Execution timed out after {settings.deadline_seconds}s", style="bold yellow")
        )
    else:
        _CONSOLE.print(Panel.fit(outcome.detail or "Infrastructure error", title=title, style="bold red"))
    return _EXIT_CODES[outcome.kind]


def _execute_command(args: argparse.Namespace, engine: DockerEngine, settings: SandboxSettings) -> int:
    """Handle one JSON payload and print the status line and body.

    Example:
        ```python
        code = _execute_command(args, engine, settings)
        ```
    """
    if args.payload == "-":
        body = sys.stdin.buffer.read()
    else:
        body = Path(args.payload).read_bytes()
    response = execute_payload(body, engine=engine, settings=settings)
    _CONSOLE.print(f"[bold]HTTP {int(response.status_code)}[/bold] ({response.content_type})")
    _CONSOLE.print(response.body, markup=False, highlight=False, end="")
    return 0 if response.status_code == 200 else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `bxr` CLI command handler.

    Example:
        ```python
        raise SystemExit(main(["check"]))
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    try:
        engine = build_engine(args)
        settings = build_settings(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        if args.command == "run":
            return _run_command(args, engine, settings)
        if args.command == "execute":
            return _execute_command(args, engine, settings)
        if args.command == "check":
            ok, reason = engine.is_available()
            if ok:
                _CONSOLE.print(Panel.fit("Docker is reachable.", style="bold green"))
                return 0
            _CONSOLE.print(Panel.fit(reason or "Docker is not reachable.", style="bold red"))
            return 1
        if args.command == "list" and args.resource == "containers":
            rows = [_to_jsonable(c) for c in engine.list_containers(all_states=True)]
            _print_containers(rows)
            return 0
        if args.command == "kill" and args.resource == "container":
            try:
                engine.kill_container(args.container_id)
            except ValueError as exc:
                _CONSOLE.print(Panel.fit(str(exc), style="bold red"))
                return 1
            _CONSOLE.print(Panel.fit(f"Killed container {args.container_id}", style="bold yellow"))
            return 0
        if args.command == "cleanup":
            summary = CleanupSummary(
                removed_containers=engine.cleanup_stale(),
                removed_workspaces=workspaces_for(settings).sweep_stale(args.max_age_seconds),
            )
            _CONSOLE.print(
                Panel.fit(Pretty(_to_jsonable(summary)), title="Cleanup Summary", border_style="green")
            )
            return 0
    except EngineUnavailable as exc:
        _CONSOLE.print(Panel.fit(f"Sandbox engine unavailable: {exc}", style="bold red"))
        return 125

    parser.error("Unhandled command")
