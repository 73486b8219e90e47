from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path

from boxed_runner import DockerEngine, OutcomeKind, SandboxSettings, execute_payload, run_code
from boxed_runner.execution.admission import AdmissionGate
from boxed_runner.execution.types import StepKind
from boxed_runner.execution.workspace import WorkspaceManager


def test_stdin_is_forwarded(engine: DockerEngine, settings: SandboxSettings, workspace_root: Path) -> None:
    outcome = run_code("read n\necho \"$n\"\n", engine=engine, stdin="5\n", settings=settings)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.stdout == "5\n"
    assert list(workspace_root.iterdir()) == []


def test_missing_stdin_reads_eof(engine: DockerEngine, settings: SandboxSettings) -> None:
    outcome = run_code("if read n; then echo got; else echo eof; fi\n", engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.stdout == "eof\n"


def test_syntax_error_never_reaches_run_step(
    tmp_path: Path, engine: DockerEngine, settings: SandboxSettings, workspace_root: Path
) -> None:
    marker = tmp_path / "ran"
    code = f"touch {marker}\nif then fi (\n"

    outcome = run_code(code, engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.FAILURE
    assert "syntax error" in outcome.stderr.lower()
    assert not marker.exists()
    assert list(workspace_root.iterdir()) == []


def test_split_mode_reports_compile_stage(engine: DockerEngine, settings: SandboxSettings) -> None:
    outcome = run_code("if then fi (\n", engine=engine, settings=replace(settings, step_mode="split"))

    assert outcome.kind is OutcomeKind.FAILURE
    assert outcome.stage is StepKind.COMPILE


def test_runtime_failure_carries_stderr(engine: DockerEngine, settings: SandboxSettings) -> None:
    outcome = run_code("echo partial\necho oops >&2\nexit 3\n", engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.FAILURE
    assert outcome.stderr == "oops\n"
    assert outcome.returncode == 3


def test_timeout_discards_partial_output(
    engine: DockerEngine, settings: SandboxSettings, workspace_root: Path
) -> None:
    outcome = run_code(
        "echo early\nsleep 5\necho late\n",
        engine=engine,
        settings=replace(settings, deadline_seconds=1),
    )

    assert outcome.kind is OutcomeKind.TIMEOUT
    assert outcome.stdout == ""
    assert outcome.duration_seconds < 4
    assert list(workspace_root.iterdir()) == []


def test_output_limit_is_a_failure(engine: DockerEngine, settings: SandboxSettings) -> None:
    outcome = run_code(
        "head -c 8192 /dev/zero | tr '\\0' x\n",
        engine=engine,
        settings=replace(settings, max_output_kb=1),
    )

    assert outcome.kind is OutcomeKind.FAILURE
    assert "Output limit" in outcome.stderr


def test_concurrent_requests_do_not_share_files(
    engine: DockerEngine, settings: SandboxSettings, workspaces: WorkspaceManager
) -> None:
    writer = "echo secret > marker.txt\nsleep 1\n"
    reader = "sleep 0.3\nls -A\n"

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(run_code, writer, engine, None, settings, None, workspaces)
        second = pool.submit(run_code, reader, engine, None, settings, None, workspaces)
        writer_outcome, reader_outcome = first.result(), second.result()

    assert writer_outcome.kind is OutcomeKind.SUCCESS
    assert reader_outcome.kind is OutcomeKind.SUCCESS
    assert reader_outcome.stdout.split() == ["main.sh"]
    assert workspaces.live_count() == 0


def test_identical_concurrent_requests_both_succeed(
    engine: DockerEngine, settings: SandboxSettings, workspaces: WorkspaceManager, workspace_root: Path
) -> None:
    code = "read n\nsleep 0.2\necho $((n * 2))\n"

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(run_code, code, engine, "21\n", settings, None, workspaces) for _ in range(4)]
        outcomes = [future.result() for future in futures]

    assert [o.kind for o in outcomes] == [OutcomeKind.SUCCESS] * 4
    assert {o.stdout for o in outcomes} == {"42\n"}
    assert list(workspace_root.iterdir()) == []


def test_bounded_admission_queues_requests(
    engine: DockerEngine, settings: SandboxSettings, workspaces: WorkspaceManager
) -> None:
    gate = AdmissionGate(1)
    queued = replace(settings, max_concurrent=1, admission_timeout_seconds=10)

    with ThreadPoolExecutor(max_workers=3) as pool:
        futures = [
            pool.submit(run_code, "sleep 0.2\necho ok\n", engine, None, queued, None, workspaces, gate)
            for _ in range(3)
        ]
        outcomes = [future.result() for future in futures]

    assert all(o.kind is OutcomeKind.SUCCESS for o in outcomes)
    assert gate.in_use == 0


def test_missing_engine_binary_is_infra_error(
    tmp_path: Path, settings: SandboxSettings, workspace_root: Path
) -> None:
    engine = DockerEngine(docker_binary=str(tmp_path / "no-such-docker"))

    outcome = run_code("echo hi\n", engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.INFRA_ERROR
    assert list(workspace_root.iterdir()) == []


def test_daemon_down_is_infra_error(down_docker: Path, settings: SandboxSettings) -> None:
    engine = DockerEngine(docker_binary=str(down_docker))

    outcome = run_code("echo hi\n", engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.INFRA_ERROR
    assert "EngineUnavailable" in (outcome.detail or "")


def test_config_file_drives_settings(
    tmp_path: Path, engine: DockerEngine, workspace_root: Path
) -> None:
    config = tmp_path / "sandbox.toml"
    config.write_text(
        "\n".join(
            [
                "[sandbox]",
                'source_filename = "prog.sh"',
                'compile_command = "sh -n {mount_path}/{source_filename}"',
                'run_command = "sh {mount_path}/{source_filename}"',
                "run_as_host_user = false",
                "max_concurrent = 0",
                f'workspace_root = "{workspace_root}"',
            ]
        ),
        encoding="utf-8",
    )

    outcome = run_code("echo from-config\n", engine=engine, config_file=str(config))

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.stdout == "from-config\n"


def test_execute_payload_status_codes(engine: DockerEngine, settings: SandboxSettings) -> None:
    ok = execute_payload(b'{"code": "read n\\necho $n", "stdin": "7\\n"}', engine=engine, settings=settings)
    assert ok.status_code == 200
    assert ok.json() == {"result": "7\n"}

    bad = execute_payload(b'{"stdin": "7"}', engine=engine, settings=settings)
    assert bad.status_code == 400

    failed = execute_payload({"code": "echo oops >&2\nexit 1"}, engine=engine, settings=settings)
    assert failed.status_code == 500
    assert failed.body == "Execution failed: oops\n"

    slow = execute_payload(
        {"code": "sleep 5"}, engine=engine, settings=replace(settings, deadline_seconds=0.5)
    )
    assert slow.status_code == 504
    assert slow.body == "Execution timed out"


def test_program_exiting_125_keeps_its_stderr(engine: DockerEngine, settings: SandboxSettings) -> None:
    outcome = run_code('echo "docker: my own diagnostic" >&2\nexit 125\n', engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.FAILURE
    assert outcome.stderr == "docker: my own diagnostic\n"
    assert outcome.returncode == 125


def test_remote_docker_host_is_infra_error(
    fake_docker: Path, settings: SandboxSettings, workspace_root: Path
) -> None:
    engine = DockerEngine(docker_binary=str(fake_docker), docker_host="ssh://ubuntu@sandbox-host")

    outcome = run_code("echo hi\n", engine=engine, settings=settings)

    assert outcome.kind is OutcomeKind.INFRA_ERROR
    assert "not a local daemon" in (outcome.detail or "")
    assert list(workspace_root.iterdir()) == []


def test_command_templates_may_contain_braces(engine: DockerEngine, settings: SandboxSettings) -> None:
    awk = replace(settings, run_command="sh {mount_path}/{source_filename} | awk '{print \"got \" $0}'")

    outcome = run_code("echo 5\n", engine=engine, settings=awk)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.stdout == "got 5\n"
