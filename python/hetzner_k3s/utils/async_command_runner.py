"""
hetzner_k3s/utils/async_command_runner.py

Asynchronous local command execution used for ssh, scp and kubectl.

Two entry points:
  - run_command: raises CommandError unless the return code is accepted,
    with optional retries via async_retry.
  - run_process: never raises for a non-zero exit; returns a ProcessResult so
    callers (the SSH transport) can classify the failure themselves.

A process whose awaiting coroutine is cancelled (e.g. by asyncio.wait_for) is
killed before the cancellation propagates.

Usage example:
    from hetzner_k3s.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["kubectl", "get", "nodes"], env={"KUBECONFIG": path})
    except CommandError as err:
        print(f"kubectl failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from hetzner_k3s.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when not captured.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


@dataclass(frozen=True)
class ProcessResult:
    return_code: int
    stdout: str
    stderr: str


async def _stream_output(
    proc: asyncio.subprocess.Process,
    input_data: Optional[str],
    on_stdout_line: Callable[[str], None],
) -> Tuple[bytes, bytes]:
    assert proc.stdout is not None and proc.stderr is not None
    if input_data and proc.stdin is not None:
        proc.stdin.write(input_data.encode())
        await proc.stdin.drain()
        proc.stdin.close()

    async def _read_lines() -> bytes:
        assert proc.stdout is not None
        chunks: List[bytes] = []
        async for raw in proc.stdout:
            chunks.append(raw)
            on_stdout_line(raw.decode(errors="replace").rstrip("\n"))
        return b"".join(chunks)

    stdout_bytes, stderr_bytes, _ = await asyncio.gather(
        _read_lines(), proc.stderr.read(), proc.wait()
    )
    return stdout_bytes, stderr_bytes


async def run_process(
    command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
    on_stdout_line: Optional[Callable[[str], None]] = None,
) -> ProcessResult:
    """
    Run `command` once and capture its output.

    Args:
        command: The command and arguments to execute.
        env: Extra environment variables layered over os.environ.
        input_data: If provided, written to stdin.
        on_stdout_line: Called with each stdout line as soon as it arrives.

    Returns:
        ProcessResult with the return code and decoded stdout/stderr. Stdout
        keeps its content but loses a single trailing newline.
    """
    proc_env = None
    if env:
        proc_env = os.environ.copy()
        proc_env.update(env)

    stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=stdin,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=proc_env,
    )
    try:
        if on_stdout_line is None:
            stdout_bytes, stderr_bytes = await proc.communicate(
                input=input_data.encode() if input_data else None
            )
        else:
            stdout_bytes, stderr_bytes = await _stream_output(proc, input_data, on_stdout_line)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    stdout_str = stdout_bytes.decode(errors="replace")
    if stdout_str.endswith("\n"):
        stdout_str = stdout_str[:-1]
    return ProcessResult(
        return_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_str,
        stderr=stderr_bytes.decode(errors="replace").strip(),
    )


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
) -> str:
    """
    Executes a local command, raising CommandError on an unexpected return code.

    When `sensitive=True`, the command, stdout and stderr are omitted from the
    error message (stderr is still attached to the exception).

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error message.
        env: Additional environment variables to add or override.
        input_data: If provided, passed to stdin.
        successful_return_codes: Return codes not treated as errors. Defaults to [0].
        retries: Total attempts. Defaults to 1 (no retry).
        retry_delay: Delay in seconds between attempts.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails on every attempt.
    """
    accepted = successful_return_codes or [0]

    @async_retry(retries=retries, delay=retry_delay, noisy=not sensitive)
    async def _inner_run_command() -> str:
        result = await run_process(command, env=env, input_data=input_data)
        if result.return_code not in accepted:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {result.stdout}"
                    f"\nStderr: {result.stderr}"
                )
            raise CommandError(
                f"Command failed with return code {result.return_code}.{detail}",
                result.return_code,
                result.stderr,
            )
        return result.stdout

    return await _inner_run_command()
