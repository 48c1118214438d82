"""
ScriptHub errors.

Services raise these; only the CLI entry point turns them into exit codes.
"""

from typing import List, Optional


class ScriptHubError(Exception):
    """Base error for every failure the CLI reports and exits on."""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class PrerequisiteError(ScriptHubError):
    """A required binary, privilege or service is unavailable."""


class ValidationError(ScriptHubError):
    """Invalid flags or input data."""


class CommandError(ScriptHubError):
    """A wrapped command exited non-zero."""

    def __init__(self, argv: List[str], exit_code: int, stderr: str = ""):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {exit_code}"
        super().__init__(f"{argv[0]} failed: {detail}")
        self.argv = argv
        self.command_exit_code = exit_code
        self.stderr = stderr
