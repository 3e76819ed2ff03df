from __future__ import annotations

import os
import sys

import pytest

from agentweb.engine.tools.bash import (
    BashExecutor,
    BashTool,
    find_destructive_pattern,
    is_risky_command,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


@pytest.mark.parametrize("command", [
    "rm -rf /",
    "rm -rf / --no-preserve-root",
    "sudo rm -fr /*",
    "rm -rf ~",
    "rm --recursive /",
    "mkfs.ext4 /dev/sda1",
    "dd if=/dev/zero of=/dev/sda bs=1M",
    "cat image > /dev/nvme0n1",
    ":(){ :|:& };:",
    "chmod -R 777 /",
])
def test_destructive_patterns_are_detected(command) -> None:
    assert find_destructive_pattern(command) is not None


@pytest.mark.parametrize("command", [
    "rm -rf ./build",
    "rm -rf /tmp/scratch",
    "ls -la /",
    "dd if=in.img of=out.img",
    "chmod -R 755 ./dist",
])
def test_ordinary_commands_are_not_blocked(command) -> None:
    assert find_destructive_pattern(command) is None


def test_risky_commands() -> None:
    assert is_risky_command("sudo apt-get install curl")
    assert is_risky_command("git push --force origin main")
    assert is_risky_command("rm -r old")
    assert not is_risky_command("git status")


@pytest.mark.asyncio
async def test_destructive_command_is_refused_without_running(tmp_path) -> None:
    result = await BashTool().execute({"command": "rm -rf /"}, str(tmp_path))
    assert result.is_error
    assert result.content.startswith("Command refused")


@pytest.mark.asyncio
async def test_runs_in_working_dir(tmp_path) -> None:
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
    result = await BashTool().execute({"command": "ls && echo done"}, str(tmp_path))
    assert not result.is_error
    assert "marker.txt" in result.content
    assert "done" in result.content


@pytest.mark.asyncio
async def test_nonzero_exit_is_an_error_with_stderr(tmp_path) -> None:
    result = await BashTool().execute({"command": "echo oops >&2; exit 3"}, str(tmp_path))
    assert result.is_error
    assert "[stderr]\noops" in result.content
    assert "Command failed with exit code 3." in result.content


@pytest.mark.asyncio
async def test_timeout_terminates_the_process(tmp_path) -> None:
    executor = BashExecutor(kill_grace_seconds=0.5)
    tool = BashTool(executor)

    outcome = await executor.run("sleep 5", str(tmp_path), 100)
    assert outcome.timed_out
    assert outcome.duration_ms < 4000
    with pytest.raises(ProcessLookupError):
        os.kill(outcome.pid, 0)

    result = await tool.execute({"command": "sleep 5", "timeout": 100}, str(tmp_path))
    assert result.is_error
    assert "timed out after 100ms" in result.content


@pytest.mark.asyncio
async def test_output_cap_stops_the_process(tmp_path) -> None:
    executor = BashExecutor(stdout_cap=1024)
    outcome = await executor.run("yes", str(tmp_path), 10_000)
    assert outcome.stdout_truncated
    assert len(outcome.stdout) == 1024
    assert not outcome.timed_out

    result = await BashTool(executor).execute({"command": "yes"}, str(tmp_path))
    assert result.is_error
    assert "[stdout truncated at 1 KB; process stopped]" in result.content


@pytest.mark.asyncio
async def test_truncation_note_names_the_configured_cap(tmp_path) -> None:
    executor = BashExecutor(stderr_cap=500)
    result = await BashTool(executor).execute({"command": "yes >&2"}, str(tmp_path))

    assert result.is_error
    assert "[stderr truncated at 500 bytes; process stopped]" in result.content
    assert "stdout truncated" not in result.content
