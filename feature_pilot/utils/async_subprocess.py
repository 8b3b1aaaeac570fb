"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts:
    - run_command: Execute a command and capture its output in one piece
    - stream_command: Execute a command and hand each stdout line to a
      callback as soon as it arrives

Example:
    >>> from feature_pilot.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)

Thread Safety:
    These functions are safe to call concurrently from multiple async tasks.
    Each call creates an independent subprocess with no shared state.
"""

import asyncio
import inspect
import subprocess
from collections.abc import Awaitable, Callable
from pathlib import Path

LineHandler = Callable[[str], Awaitable[None] | None]


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings.
        cwd: Working directory for command execution.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for completion. The process is
            killed before TimeoutError is raised.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        TimeoutError: If timeout is exceeded.
        FileNotFoundError: If the command executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0


async def stream_command(
    *args: str,
    on_line: LineHandler,
    cwd: Path | str | None = None,
    timeout: float | None = None,
) -> tuple[str, int]:
    """Run a command and deliver its stdout line by line while it runs.

    Standard error is collected and returned once the process exits.
    ``on_line`` may be a plain function or a coroutine function; it receives
    each line without its trailing newline.

    Args:
        *args: Command and arguments as separate strings.
        on_line: Callback invoked for every stdout line.
        cwd: Working directory for command execution.
        timeout: Maximum seconds for the whole run. The process is killed
            before TimeoutError is raised.

    Returns:
        Tuple of (stderr, return_code).

    Raises:
        TimeoutError: If timeout is exceeded.
        FileNotFoundError: If the command executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=16 * 1024 * 1024,
    )
    assert process.stdout is not None
    assert process.stderr is not None

    async def pump_stdout() -> None:
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            result = on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            if inspect.isawaitable(result):
                await result

    async def run() -> bytes:
        stderr_task = asyncio.create_task(process.stderr.read())
        await pump_stdout()
        await process.wait()
        return await stderr_task

    try:
        stderr_bytes = await asyncio.wait_for(run(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    return stderr_bytes.decode("utf-8", errors="replace"), process.returncode or 0
