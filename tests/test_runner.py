from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from grove_mcp.agent.runner import (
    AgentProcess,
    AgentSpawnError,
    ShutdownState,
    build_agent_command,
    is_auth_failure,
    probe_agent,
    run_agent_command,
)


def write_script(tmp_path: Path, body: str, name: str = "claude") -> Path:
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_build_agent_command_places_prompt_after_separator() -> None:
    args = build_agent_command(Path("/usr/local/bin/claude"), "--dangerous", allowed_tools=("Read", "Grep"))

    assert args == [
        "/usr/local/bin/claude",
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--allowedTools",
        "Read,Grep",
        "--",
        "--dangerous",
    ]


@pytest.mark.parametrize(
    "text",
    [
        "Error: Not authenticated",
        "Please log in first",
        "please login",
        "Invalid API key provided",
        "run `claude login`",
        "Authentication failed",
        "authentication required",
    ],
)
def test_auth_failure_patterns(text: str) -> None:
    assert is_auth_failure(text)


def test_auth_failure_ignores_other_stderr() -> None:
    assert not is_auth_failure("warning: slow network")


def test_process_streams_stdout_and_stderr(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo out-line\necho err-line >&2\nexit 0\n")

    async def scenario():
        process = await AgentProcess.spawn([str(script)], cwd=tmp_path, env={"PATH": "/usr/bin:/bin"})
        chunks = [chunk async for chunk in process.iter_stdout()]
        errors = [line async for line in process.iter_stderr_lines()]
        return process, b"".join(chunks), errors, await process.wait()

    process, stdout, stderr, returncode = asyncio.run(scenario())

    assert stdout == b"out-line\n"
    assert stderr == ["err-line\n"]
    assert returncode == 0
    assert process.state is ShutdownState.EXITED


def test_stderr_lines_longer_than_a_read_chunk_are_split(tmp_path: Path) -> None:
    script = write_script(tmp_path, "head -c 200000 /dev/zero | tr '\\0' 'x' 1>&2\necho tail >&2\n")

    async def scenario():
        process = await AgentProcess.spawn([str(script)], cwd=tmp_path, env={"PATH": "/usr/bin:/bin"})
        errors = [line async for line in process.iter_stderr_lines()]
        await process.wait()
        return errors

    errors = asyncio.run(scenario())

    assert "".join(errors) == "x" * 200000 + "tail\n"
    assert len(errors) > 1
    assert all(len(line) <= 64 * 1024 * 2 for line in errors)


def test_process_stdin_is_closed(tmp_path: Path) -> None:
    script = write_script(tmp_path, "cat\necho done\n")

    async def scenario():
        process = await AgentProcess.spawn([str(script)], cwd=tmp_path, env={"PATH": "/usr/bin:/bin"})
        chunks = [chunk async for chunk in process.iter_stdout()]
        await asyncio.wait_for(process.wait(), timeout=5)
        return b"".join(chunks)

    assert asyncio.run(scenario()) == b"done\n"


def test_terminate_sends_sigterm(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exec sleep 30\n")

    async def scenario():
        process = await AgentProcess.spawn([str(script)], cwd=tmp_path, env={"PATH": "/usr/bin:/bin"})
        first, second = await asyncio.gather(process.terminate(2.0), process.terminate(2.0))
        again = await process.terminate(2.0)
        return process, first, second, again

    process, first, second, again = asyncio.run(scenario())

    assert first == second == again
    assert first != 0
    assert process.state is ShutdownState.SIGNALLED


def test_terminate_escalates_to_kill(tmp_path: Path) -> None:
    script = write_script(tmp_path, "trap '' TERM\nexec sleep 30\n")

    async def scenario():
        process = await AgentProcess.spawn([str(script)], cwd=tmp_path, env={"PATH": "/usr/bin:/bin"})
        await asyncio.sleep(0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        returncode = await process.terminate(0.3)
        return process, returncode, loop.time() - started

    process, returncode, elapsed = asyncio.run(scenario())

    assert process.state is ShutdownState.KILLED
    assert returncode == -9
    assert elapsed < 5


def test_spawn_failure_raises(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exit 0\n")

    async def scenario():
        await AgentProcess.spawn([str(script)], cwd=tmp_path / "missing", env={})

    with pytest.raises(AgentSpawnError):
        asyncio.run(scenario())


def test_run_agent_command_captures_output(tmp_path: Path) -> None:
    script = write_script(tmp_path, 'echo "$@"\necho warn >&2\nexit 2\n')

    result = asyncio.run(run_agent_command(script, "--version"))

    assert result.args == (str(script), "--version")
    assert result.stdout.strip() == "--version"
    assert result.stderr.strip() == "warn"
    assert not result.ok


def test_probe_agent_reports_version(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'claude 1.2.3'\n")

    metadata = asyncio.run(probe_agent([tmp_path / "missing", script]))

    assert metadata == {
        "available": True,
        "path": str(script),
        "version": "claude 1.2.3",
        "error": None,
    }


def test_probe_agent_without_binary(tmp_path: Path) -> None:
    metadata = asyncio.run(probe_agent([tmp_path / "missing"]))

    assert metadata["available"] is False
    assert metadata["path"] is None
    assert "No trusted agent executable" in metadata["error"]
