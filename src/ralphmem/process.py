"""Child process execution with deadlines and process-group cleanup."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
from anyio.abc import Process

from .model import TIMEOUT_EXIT_CODE, ExecResult
from .utils.command import join_command
from .utils.streams import drain_text

logger = logging.getLogger(__name__)

# Shell convention for "command not found".
NOT_FOUND_EXIT_CODE = 127

TERMINATE_GRACE_S = 2.0

# How long to keep reading output after the command itself has exited.
OUTPUT_GRACE_S = 0.5


async def _wait_for_process(proc: Process, timeout: float) -> bool:
    with anyio.move_on_after(timeout) as scope:
        await proc.wait()
    return scope.cancel_called


def _signal_process(proc: Process, sig: signal.Signals) -> None:
    if proc.returncode is not None:
        return
    if os.name == "posix" and proc.pid is not None:
        try:
            os.killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug("[process] failed to signal process group: %s", e)
    try:
        if sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        return


def _terminate_process(proc: Process) -> None:
    _signal_process(proc, signal.SIGTERM)


def _kill_process(proc: Process) -> None:
    _signal_process(proc, getattr(signal, "SIGKILL", signal.SIGTERM))


@asynccontextmanager
async def manage_subprocess(command: str | Sequence[str], **kwargs):
    """Ensure subprocesses receive SIGTERM, then SIGKILL after a 2s timeout."""
    if os.name == "posix":
        kwargs.setdefault("start_new_session", True)
    proc = await anyio.open_process(command, **kwargs)
    try:
        yield proc
    finally:
        with anyio.CancelScope(shield=True):
            if proc.returncode is None:
                _terminate_process(proc)
                timed_out = await _wait_for_process(proc, timeout=TERMINATE_GRACE_S)
                if timed_out:
                    _kill_process(proc)
                    await proc.wait()
            await proc.aclose()


def _kill_process_group(proc: Process) -> None:
    """SIGKILL whatever is left of the child's group, reaped leader or not."""
    if os.name != "posix" or proc.pid is None:
        _kill_process(proc)
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except OSError as e:
        logger.debug("[process] failed to kill process group: %s", e)


async def _collect_output(
    proc: Process,
    stdout_chunks: list[str],
    stderr_chunks: list[str],
    drained: anyio.Event,
) -> None:
    async with anyio.create_task_group() as tg:
        tg.start_soon(drain_text, proc.stdout, stdout_chunks, logger, "stdout")
        tg.start_soon(drain_text, proc.stderr, stderr_chunks, logger, "stderr")
    drained.set()


def _normalize_exit_code(returncode: int | None) -> int:
    if returncode is None:
        return TIMEOUT_EXIT_CODE
    if returncode < 0:
        # Killed by a signal; keep the timeout sentinel unambiguous.
        return 128 - returncode
    return returncode


async def execute_command(
    program: str,
    args: Sequence[str] = (),
    *,
    cwd: str | Path | None = None,
    timeout_ms: int | None = None,
    env: Mapping[str, str] | None = None,
) -> ExecResult:
    """Run ``program`` with ``args`` through the shell and capture its output.

    The command runs in its own process group. When ``timeout_ms`` elapses
    first the whole group is killed and the result carries
    ``TIMEOUT_EXIT_CODE`` along with whatever output was read so far.
    Once the command exits, output is read for at most ``OUTPUT_GRACE_S``
    more and then anything still running in the group is killed; the
    command's own exit code is reported. Spawn failures are reported as
    exit code 127 instead of raising.
    """
    command = join_command(program, list(args))
    if not command:
        return ExecResult(exit_code=NOT_FOUND_EXIT_CODE, stdout="", stderr="empty command")

    process_env = None
    if env:
        process_env = {**os.environ, **env}
    timeout_s = timeout_ms / 1000 if timeout_ms is not None else None

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []
    logger.debug("[process] running %s (cwd=%s, timeout_ms=%s)", command, cwd, timeout_ms)
    try:
        async with manage_subprocess(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=process_env,
        ) as proc:
            drained = anyio.Event()
            exit_code: int | None = None
            with anyio.move_on_after(timeout_s):
                async with anyio.create_task_group() as tg:
                    tg.start_soon(
                        _collect_output, proc, stdout_chunks, stderr_chunks, drained
                    )
                    await proc.wait()
                    exit_code = _normalize_exit_code(proc.returncode)
                    # Background children may keep the pipes open after the
                    # shell exits.
                    with anyio.move_on_after(OUTPUT_GRACE_S):
                        await drained.wait()
                    tg.cancel_scope.cancel()
            with anyio.CancelScope(shield=True):
                _kill_process_group(proc)
                if exit_code is None:
                    logger.debug(
                        "[process] timed out after %sms: %s", timeout_ms, command
                    )
                    await proc.wait()
                    return ExecResult(
                        exit_code=TIMEOUT_EXIT_CODE,
                        stdout="".join(stdout_chunks),
                        stderr="".join(stderr_chunks),
                    )
    except OSError as e:
        logger.debug("[process] failed to spawn %s: %s", command, e)
        return ExecResult(exit_code=NOT_FOUND_EXIT_CODE, stdout="", stderr=str(e))

    return ExecResult(
        exit_code=exit_code,
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
    )
