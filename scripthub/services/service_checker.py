"""
Service Status Checker - systemd/sysvinit status with optional recovery.
"""

import asyncio
import logging
from typing import List, Optional

from scripthub.errors import PrerequisiteError, ValidationError
from scripthub.schemas.models import CheckStatus, ServiceStatus
from scripthub.services.command_runner import CommandRunner, command_exists, get_command_runner
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.services")

ACTIONS = ("none", "start", "restart")
COLUMNS = ["name", "state", "running", "action", "attempts", "status"]


def detect_init_system() -> str:
    if command_exists("systemctl"):
        return "systemd"
    if command_exists("service"):
        return "sysvinit"
    raise PrerequisiteError("Neither systemctl nor service is available")


class ServiceChecker:
    def __init__(self, runner: Optional[CommandRunner] = None, init_system: Optional[str] = None):
        self.runner = runner or get_command_runner()
        self.init_system = init_system or detect_init_system()

    async def status(self, name: str) -> tuple:
        """(state, running) for one service."""
        if self.init_system == "systemd":
            result = await self.runner.run(["systemctl", "is-active", name], timeout=30)
            state = result.stdout.strip() or "unknown"
            return state, state == "active"
        result = await self.runner.run(["service", name, "status"], timeout=30)
        return ("running" if result.success else "stopped"), result.success

    async def apply(self, name: str, action: str) -> bool:
        if self.init_system == "systemd":
            argv = ["systemctl", action, name]
        else:
            argv = ["service", name, action]
        result = await self.runner.run(argv, timeout=120)
        if not result.success:
            logger.warning(f"{action} {name} failed: {result.stderr or result.exit_code}")
        return result.success

    async def check_service(self, name: str, action: str = "none", wait: float = 5, max_attempts: int = 3) -> ServiceStatus:
        state, running = await self.status(name)
        status = ServiceStatus(name=name, state=state, running=running, action=action)
        if running:
            logger.info(f"{name} is running")
            status.status = CheckStatus.OK
            return status

        logger.warning(f"{name} is not running (state: {state})")
        if action != "none":
            while status.attempts < max_attempts and not status.running:
                status.attempts += 1
                logger.info(f"Attempting to {action} {name} ({status.attempts}/{max_attempts})")
                await self.apply(name, action)
                await asyncio.sleep(wait)
                status.state, status.running = await self.status(name)
            if status.running:
                log_success(logger, f"{name} recovered after {status.attempts} attempt(s)")
            else:
                logger.error(f"{name} is still down after {status.attempts} attempt(s)")

        status.status = CheckStatus.OK if status.running else CheckStatus.CRITICAL
        return status

    async def check(self, services: List[str], action: str = "none", wait: float = 5, max_attempts: int = 3) -> List[ServiceStatus]:
        if not services:
            raise ValidationError("No services specified")
        if action not in ACTIONS:
            raise ValidationError(f"Unknown action '{action}' (use {', '.join(ACTIONS)})")
        if max_attempts < 1:
            raise ValidationError("--max-attempts must be at least 1")
        return [await self.check_service(name, action, wait, max_attempts) for name in services]
