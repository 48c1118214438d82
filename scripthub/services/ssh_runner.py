"""
Mass SSH Runner - run the same commands on many hosts.

Every (host, command) pair is one task; ParallelExecutor bounds how many
ssh processes are alive at once. Output blocks are written as each task
finishes, so their order follows completion, not input.
"""

import getpass
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, TextIO, Tuple

from scripthub.errors import ValidationError
from scripthub.schemas.models import SSHRunSummary, SSHTaskResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.services.parallel_executor import ParallelExecutor
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.ssh")


@dataclass
class SSHRunOptions:
    hosts: List[str]
    commands: List[str]
    user: str = field(default_factory=getpass.getuser)
    identity: Optional[str] = None
    parallel: int = 5
    timeout: int = 10


def build_ssh_command(host: str, command: str, options: SSHRunOptions) -> List[str]:
    argv = [
        "ssh",
        "-o", f"ConnectTimeout={options.timeout}",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=no",
    ]
    if options.identity:
        argv.extend(["-i", options.identity])
    argv.extend([f"{options.user}@{host}", command])
    return argv


def format_block(result: SSHTaskResult) -> str:
    suffix = "" if result.success else " (FAILED)"
    header = f"=== Host: {result.host}, Command: {result.command}{suffix} ==="
    body = result.output
    return f"{header}\n{body}\n\n" if body else f"{header}\n\n"


def validate_options(options: SSHRunOptions) -> None:
    if not options.hosts:
        raise ValidationError("No hosts specified (use --host or --hosts)")
    if not options.commands:
        raise ValidationError("No commands specified (use --command or --file)")
    if options.parallel < 1:
        raise ValidationError("--parallel must be at least 1")
    if options.identity and not os.path.isfile(options.identity):
        raise ValidationError(f"Identity file not found: {options.identity}")


class SSHRunner:
    """Runs commands across hosts via the ssh client."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def run_one(self, task: Tuple[str, str], options: SSHRunOptions) -> SSHTaskResult:
        host, command = task
        # Command timeout covers connect plus a generous execution window
        result = await self.runner.run(
            build_ssh_command(host, command, options),
            timeout=max(options.timeout * 6, 60),
        )
        task_result = SSHTaskResult(
            host=host,
            command=command,
            exit_code=result.exit_code,
            output=result.output,
            success=result.success,
        )
        if task_result.success:
            log_success(logger, f"{host}: '{command}' completed")
        else:
            logger.error(f"{host}: '{command}' failed (exit code {result.exit_code})")
        return task_result

    async def run(self, options: SSHRunOptions, output: Optional[TextIO] = None) -> SSHRunSummary:
        """
        Execute every command on every host.

        Args:
            options: Hosts, commands and ssh settings
            output: Stream receiving one block per task as it finishes

        Returns:
            SSHRunSummary with per-task results
        """
        validate_options(options)
        require_commands("ssh")

        tasks = [(host, command) for host in options.hosts for command in options.commands]
        logger.info(
            f"Running {len(options.commands)} command(s) on {len(options.hosts)} host(s) "
            f"as {options.user}, {options.parallel} in parallel"
        )

        def write_block(_task, result: SSHTaskResult) -> None:
            if output is not None:
                output.write(format_block(result))
                output.flush()

        batch = await ParallelExecutor(options.parallel).run_batch(
            tasks,
            lambda task: self.run_one(task, options),
            label="ssh",
            on_complete=write_block,
        )

        summary = SSHRunSummary(total=len(tasks), results=batch.successful)
        for failure in batch.failed:
            host, command = failure.item
            logger.error(f"{host}: '{command}' could not be executed: {failure.error}")
            summary.results.append(
                SSHTaskResult(host=host, command=command, exit_code=-1, output=failure.error)
            )

        summary.completed = len(summary.results)
        summary.successful = sum(1 for r in summary.results if r.success)
        summary.failed = summary.completed - summary.successful
        return summary
