"""
kubestrap/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic. Optionally,
allows passing a custom error_parser callback that can parse stderr for known
errors (e.g., a held dpkg lock on a freshly booted node) and return a short
user-friendly message.

Usage example:
    from kubestrap.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["terraform", "version"], retries=1)
        print(output)
    except CommandError as err:
        print(f"Command failed: {err} (rc={err.return_code})")
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Union

from kubestrap.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    cwd: Optional[str] = None,
    input_data: Optional[Union[str, bytes]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries
    and an optional error parser callback.

    If the command exits non-zero, we raise CommandError. If `error_parser` is
    given, we pass stderr to it, and if it returns a non-None string, we raise that
    as a short user-friendly message. Otherwise, we raise the usual "Command
    failed" message.

    When `sensitive=True`, we omit the command, stdout, and stderr from the final error
    message and from the exception's `stderr` attribute.

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error.
        cwd: Working directory for the command.
        input_data: If provided, passed to stdin (str is UTF-8 encoded).
        retries: Total number of attempts. Defaults to 3.
        retry_delay: Delay in seconds between attempts. Defaults to 1.0.
        error_parser: A callback that receives stderr. If it returns a non-None
            value, we raise a short CommandError with that message.

    Returns:
        str: The captured, stripped stdout of the command on success.

    Raises:
        CommandError: If the command cannot be started, or exits non-zero on
            every attempt.
    """
    stdin_bytes: Optional[bytes] = (
        input_data.encode("utf-8") if isinstance(input_data, str) else input_data
    )

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=(
                    asyncio.subprocess.PIPE
                    if stdin_bytes is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise CommandError(f"Failed to start '{command[0]}': {exc}") from exc

        stdout_bytes, stderr_bytes = await proc.communicate(input=stdin_bytes)
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode != 0:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode)

            if sensitive:
                raise CommandError(
                    f"Command failed with return code {proc.returncode}.",
                    proc.returncode,
                )

            detail = (
                f"\nCommand: {' '.join(command)}"
                f"\nStdout: {stdout_str}"
                f"\nStderr: {stderr_str}"
            )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
