"""Bash tool: run a shell command in the working directory.

The destructive-pattern screen below is an advisory filter, not a
sandbox. Output is capped per stream and the process group is stopped
on timeout (SIGTERM, then SIGKILL after a grace period).
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import signal
import time
from dataclasses import dataclass

from agentweb.engine.errors import ProcessSpawnFailure, ValidationError
from agentweb.engine.models import Capability, ToolResult
from agentweb.engine.tools.base import Tool, optional_int, require_str, resolve_path

logger = logging.getLogger(__name__)

STDOUT_CAP = 100 * 1024
STDERR_CAP = 50 * 1024
DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 600_000
KILL_GRACE_SECONDS = 1.0
READ_CHUNK = 4096

# Refused outright, whatever the permission mode.
DESTRUCTIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "recursive delete of the filesystem root",
        re.compile(
            r"\brm\s+(?:-[^\s]*\s+)*-[^\s]*[rR][^\s]*\s+(?:-[^\s]*\s+)*"
            r"(?:/|/\*|~|~/|\$HOME/?)(?:\s|;|&|\||$)"
        ),
    ),
    (
        "recursive delete of the filesystem root",
        re.compile(r"\brm\s+(?:-[^\s]*\s+)*--recursive\s+(?:-[^\s]*\s+)*(?:/|/\*)(?:\s|;|&|\||$)"),
    ),
    ("disk format", re.compile(r"\bmkfs(?:\.\w+)?\b")),
    (
        "raw disk write",
        re.compile(r"\bdd\b[^\n;|&]*\bof=/dev/(?:sd[a-z]|hd[a-z]|nvme\d|xvd[a-z]|vd[a-z]|mmcblk\d|disk\d)"),
    ),
    (
        "raw disk write",
        re.compile(r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme\d|xvd[a-z]|vd[a-z]|mmcblk\d|disk\d)"),
    ),
    ("fork bomb", re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
    (
        "recursive chmod of the filesystem root",
        re.compile(r"\bchmod\s+(?:-[^\s]*\s+)*-[^\s]*R[^\s]*\s+(?:-[^\s]*\s+)*\S+\s+/(?:\s|;|&|\||$)"),
    ),
]

# Commands that need explicit approval in the default permission mode.
RISKY_PATTERNS = [
    re.compile(p) for p in (
        r"\bsudo\b",
        r"\bchmod\b",
        r"\bchown\b",
        r"\bchgrp\b",
        r"\bapt(-get)?\s+(install|remove|upgrade)\b",
        r"\b(yum|dnf|zypper|brew)\s+install\b",
        r"\bpacman\s+-S\b",
        r"\bpip(?:3)?\s+install\b",
        r"\bpython(?:\d+(?:\.\d+)?)?\s+-m\s+pip\s+install\b",
        r"\bnpm\s+(install|i)\s+-g\b",
        r"\bdd\s+(if|of)=",
        r"\bfdisk\b",
        r"\bparted\b",
        r"\b(shutdown|reboot|poweroff|halt)\b",
        r"\bkillall\b",
        r"\bkill\s+-9\b",
        r"\brm\s+(?:-[^\s]*\s+)*-[^\s]*[rR]",
        r"\bgit\s+reset\s+--hard\b",
        r"\bgit\s+push\b[^\n]*(--force|\s-f\b)",
        r"\bgit\s+clean\s+-[^\n]*f",
        r"\bdocker\s+(volume\s+(rm|prune)|system\s+prune)\b",
        r"(curl|wget)[^\n|]*\|\s*(sh|bash|zsh)\b",
    )
]


def find_destructive_pattern(command: str) -> str | None:
    """Return a label for the first destructive pattern the command matches."""
    for label, pattern in DESTRUCTIVE_PATTERNS:
        if pattern.search(command):
            return label
    return None


def is_risky_command(command: str) -> bool:
    lowered = command.lower()
    return any(p.search(lowered) for p in RISKY_PATTERNS)


@dataclass
class BashOutcome:
    pid: int
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    stop_signal: str | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: int = 0
    stdout_cap: int = STDOUT_CAP
    stderr_cap: int = STDERR_CAP


class _CappedBuffer:
    def __init__(self, cap: int) -> None:
        self.cap = cap
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> bool:
        """Append up to the cap. Returns True once the cap is exceeded."""
        room = self.cap - len(self.data)
        if len(chunk) > room:
            self.data.extend(chunk[:max(room, 0)])
            self.truncated = True
        else:
            self.data.extend(chunk)
        return self.truncated

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def _shell_argv(command: str) -> list[str]:
    if os.name == "nt":
        return [os.environ.get("COMSPEC", "cmd.exe"), "/d", "/s", "/c", command]
    shell = "/bin/bash" if os.path.exists("/bin/bash") else (shutil.which("bash") or "/bin/sh")
    return [shell, "-c", command]


def _signal_process_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


class BashExecutor:
    """Runs one command per call; stateless apart from its limits."""

    def __init__(
        self,
        stdout_cap: int = STDOUT_CAP,
        stderr_cap: int = STDERR_CAP,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.stdout_cap = stdout_cap
        self.stderr_cap = stderr_cap
        self.kill_grace_seconds = kill_grace_seconds

    async def run(self, command: str, cwd: str, timeout_ms: int) -> BashOutcome:
        argv = _shell_argv(command)
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ),
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as exc:
            raise ProcessSpawnFailure(argv[0], str(exc)) from exc
        logger.info("Bash started pid=%s timeout_ms=%s cwd=%s command=%s",
                    proc.pid, timeout_ms, cwd, command[:180])

        overflow = asyncio.Event()
        out_buf = _CappedBuffer(self.stdout_cap)
        err_buf = _CappedBuffer(self.stderr_cap)
        readers = [
            asyncio.create_task(self._pump(proc.stdout, out_buf, overflow)),
            asyncio.create_task(self._pump(proc.stderr, err_buf, overflow)),
        ]
        exit_waiter = asyncio.create_task(proc.wait())
        overflow_waiter = asyncio.create_task(overflow.wait())

        timed_out = False
        stop_signal = None
        try:
            done, _ = await asyncio.wait(
                {exit_waiter, overflow_waiter},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exit_waiter not in done:
                timed_out = overflow_waiter not in done
                if timed_out:
                    logger.warning("Bash timed out pid=%s after %sms", proc.pid, timeout_ms)
                else:
                    logger.warning("Bash output cap exceeded pid=%s; stopping", proc.pid)
                stop_signal = await self._stop(proc)
            await exit_waiter
        finally:
            overflow_waiter.cancel()
            if not exit_waiter.done():
                # Cancelled from outside: do not leave the process group behind.
                await self._stop(proc)
            try:
                await asyncio.wait_for(asyncio.gather(*readers), timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                # A detached grandchild still holds the pipe open.
                for task in readers:
                    task.cancel()

        return BashOutcome(
            pid=proc.pid,
            exit_code=proc.returncode,
            stdout=out_buf.text(),
            stderr=err_buf.text(),
            timed_out=timed_out,
            stop_signal=stop_signal,
            stdout_truncated=out_buf.truncated,
            stderr_truncated=err_buf.truncated,
            duration_ms=int((time.monotonic() - started) * 1000),
            stdout_cap=self.stdout_cap,
            stderr_cap=self.stderr_cap,
        )

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, buf: _CappedBuffer, overflow: asyncio.Event) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            # Keep draining after the cap so the child never blocks on a full pipe.
            if not buf.truncated and buf.feed(chunk):
                overflow.set()

    async def _stop(self, proc: asyncio.subprocess.Process) -> str:
        """SIGTERM the process group, then SIGKILL if it outlives the grace period."""
        if not _signal_process_group(proc, signal.SIGTERM):
            try:
                proc.terminate()
            except ProcessLookupError:
                return "SIGTERM"
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            return "SIGTERM"
        except asyncio.TimeoutError:
            pass
        logger.error("Bash pid=%s ignored SIGTERM; escalating to SIGKILL", proc.pid)
        if not _signal_process_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM)):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
        return "SIGKILL"


def _format_cap(cap: int) -> str:
    if cap % 1024 == 0:
        return f"{cap // 1024} KB"
    return f"{cap} bytes"


def format_outcome(outcome: BashOutcome, timeout_ms: int) -> ToolResult:
    parts = []
    if outcome.stdout:
        parts.append(outcome.stdout.rstrip("\n"))
    if outcome.stderr:
        parts.append("[stderr]\n" + outcome.stderr.rstrip("\n"))
    if outcome.stdout_truncated:
        parts.append(f"[stdout truncated at {_format_cap(outcome.stdout_cap)}; process stopped]")
    if outcome.stderr_truncated:
        parts.append(f"[stderr truncated at {_format_cap(outcome.stderr_cap)}; process stopped]")
    if not parts:
        parts.append("(no output)")

    if outcome.timed_out:
        parts.append(
            f"Command timed out after {timeout_ms}ms and was terminated "
            f"({outcome.stop_signal})."
        )
        return ToolResult.error("\n".join(parts))
    if outcome.stdout_truncated or outcome.stderr_truncated:
        return ToolResult.error("\n".join(parts))
    if outcome.exit_code != 0:
        parts.append(f"Command failed with exit code {outcome.exit_code}.")
        return ToolResult.error("\n".join(parts))
    return ToolResult.ok("\n".join(parts))


class BashTool(Tool):
    name = "Bash"
    capability = Capability.BASH
    description = (
        "Run a shell command in the working directory. timeout is in "
        "milliseconds (default 30000)."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string"},
            "timeout": {"type": "integer", "description": "Timeout in milliseconds"},
        },
        "required": ["command"],
    }

    def __init__(self, executor: BashExecutor | None = None, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.executor = executor or BashExecutor()
        self.default_timeout_ms = default_timeout_ms

    async def execute(self, params, working_dir, *, session_id=None):
        command = require_str(params, "command").strip()
        if not command:
            raise ValidationError("'command' must not be empty")
        timeout_ms = optional_int(params, "timeout", self.default_timeout_ms, minimum=1, maximum=MAX_TIMEOUT_MS)

        label = find_destructive_pattern(command)
        if label:
            logger.warning("Bash refused (%s): %s", label, command[:180])
            return ToolResult.error(
                f"Command refused: it matches a blocked destructive pattern ({label})."
            )

        cwd = resolve_path(".", working_dir)
        outcome = await self.executor.run(command, str(cwd), timeout_ms)
        return format_outcome(outcome, timeout_ms)
