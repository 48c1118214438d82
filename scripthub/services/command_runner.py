"""
Command Runner - async subprocess execution for every wrapped CLI.

All tools shell out through one CommandRunner so that timeouts, missing
binaries and output decoding are handled the same way everywhere. Commands
are argv lists executed directly, never through a shell.

Usage:
    runner = get_command_runner()
    result = await runner.run(["dig", "+short", "example.com"], timeout=5)
    if result.success:
        print(result.stdout)
"""

import asyncio
import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from scripthub.errors import CommandError, PrerequisiteError

logger = logging.getLogger("scripthub.runner")

DEFAULT_TIMEOUT = int(os.getenv("SCRIPTHUB_COMMAND_TIMEOUT", "60"))


@dataclass
class CommandResult:
    """Result of a command execution."""
    success: bool
    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        """stdout and stderr combined, the way a terminal shows them."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner:
    """Runs external commands with a timeout and captured output."""

    async def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Execute a command.

        Args:
            argv: Program and arguments
            timeout: Seconds before the process is killed
            input: Text written to stdin (stdin is /dev/null otherwise)
            env: Additional environment variables
            cwd: Working directory

        Returns:
            CommandResult; exit_code is -1 on timeout and 127 when the
            program does not exist
        """
        argv = [str(arg) for arg in argv]
        timeout = timeout or DEFAULT_TIMEOUT

        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        logger.debug(f"Running: {shlex.join(argv)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
            )
        except FileNotFoundError:
            return CommandResult(
                success=False,
                stdout="",
                stderr=f"Command not found: {argv[0]}",
                exit_code=127,
            )
        except PermissionError as e:
            return CommandResult(success=False, stdout="", stderr=str(e), exit_code=126)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                success=False,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                exit_code=-1,
            )

        return CommandResult(
            success=process.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            exit_code=process.returncode or 0,
        )

    async def check(self, argv: Sequence[str], **kwargs) -> CommandResult:
        """Run a command and raise CommandError when it fails."""
        result = await self.run(argv, **kwargs)
        if not result.success:
            raise CommandError(list(argv), result.exit_code, result.stderr)
        return result


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def require_commands(*names: str) -> None:
    """Raise PrerequisiteError naming every missing binary."""
    missing = [name for name in names if not command_exists(name)]
    if missing:
        raise PrerequisiteError(f"Required command(s) not found: {', '.join(missing)}")


def require_root(action: str) -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PrerequisiteError(f"{action} requires root privileges")


# Singleton runner
_command_runner: Optional[CommandRunner] = None


def get_command_runner() -> CommandRunner:
    """Get or create singleton CommandRunner."""
    global _command_runner
    if _command_runner is None:
        _command_runner = CommandRunner()
    return _command_runner
