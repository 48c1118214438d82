"""
Package Updater - list and apply system package updates with apt, dnf or yum.

Updates are always listed first (a simulated apt upgrade, or dnf/yum
check-update) so dry runs, confirmation prompts and security-only filtering
all work from the same package list.
"""

import logging
import platform
import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from scripthub.errors import CommandError, PrerequisiteError
from scripthub.schemas.models import PackageUpdate, UpdateResult
from scripthub.services.command_runner import CommandResult, CommandRunner, command_exists, get_command_runner
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.packages")

# (name, binary) in detection order
PACKAGE_MANAGERS = (("apt", "apt-get"), ("dnf", "dnf"), ("yum", "yum"))
REBOOT_REQUIRED_FILE = "/var/run/reboot-required"
UPGRADE_TIMEOUT = 3600

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
APT_DPKG_OPTIONS = ["-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold"]

# Inst libc6 [2.35-0ubuntu3.1] (2.35-0ubuntu3.4 Ubuntu:22.04/jammy-security [amd64])
_APT_INST_RE = re.compile(r"^Inst (\S+)(?: \[([^\]]+)\])? \((\S+)(?: ([^\[)]+))?")
# bash.x86_64    5.1.8-6.el9    baseos
_RPM_UPDATE_RE = re.compile(r"^(\S+)\.(\S+)\s+(\S+)\s+(\S+)$")


@dataclass
class UpdateOptions:
    dry_run: bool = False
    security_only: bool = False
    excludes: List[str] = field(default_factory=list)
    reboot: bool = False
    log_file: Optional[str] = None


def parse_apt_simulation(output: str) -> List[PackageUpdate]:
    updates = []
    for line in output.splitlines():
        match = _APT_INST_RE.match(line)
        if match:
            name, current, available, repository = match.groups()
            updates.append(PackageUpdate(
                name=name,
                current=current or "",
                available=available,
                repository=(repository or "").strip(),
            ))
    return updates


def parse_check_update(output: str) -> List[PackageUpdate]:
    """Package lines of `dnf/yum check-update`; the obsoletes section is ignored."""
    updates = []
    for line in output.splitlines():
        if line.startswith("Obsoleting Packages"):
            break
        match = _RPM_UPDATE_RE.match(line.strip())
        if match:
            name, _arch, available, repository = match.groups()
            updates.append(PackageUpdate(name=name, available=available, repository=repository))
    return updates


def is_security_update(update: PackageUpdate) -> bool:
    return "security" in update.repository.lower()


class PackageUpdater:
    def __init__(self, runner: Optional[CommandRunner] = None, manager: Optional[str] = None):
        self.runner = runner or get_command_runner()
        self.manager = manager
        self.log_file: Optional[Path] = None

    def detect(self) -> str:
        if self.manager:
            return self.manager
        for name, binary in PACKAGE_MANAGERS:
            if command_exists(binary):
                logger.info(f"Detected package manager: {name}")
                self.manager = name
                return name
        raise PrerequisiteError("Unsupported system: apt-get, dnf or yum is required")

    def _record(self, argv: Sequence[str], result: CommandResult) -> None:
        if self.log_file is None:
            return
        with self.log_file.open("a", encoding="utf-8") as handle:
            handle.write(f"[{datetime.now():%Y-%m-%d %H:%M:%S}] $ {shlex.join(argv)} (exit {result.exit_code})\n")
            if result.output:
                handle.write(result.output + "\n")

    async def _run(self, argv: List[str], timeout: int = 600, check: bool = True, **kwargs) -> CommandResult:
        result = await self.runner.run(argv, timeout=timeout, **kwargs)
        self._record(argv, result)
        if check and not result.success:
            raise CommandError(argv, result.exit_code, result.stderr)
        return result

    async def list_updates(self, options: UpdateOptions) -> List[PackageUpdate]:
        """Refresh metadata and return pending updates, minus excluded packages."""
        manager = self.detect()
        if manager == "apt":
            await self._run(["apt-get", "update"], env=APT_ENV)
            result = await self._run(["apt-get", "-s", "dist-upgrade"], env=APT_ENV)
            updates = parse_apt_simulation(result.stdout)
            if options.security_only:
                updates = [u for u in updates if is_security_update(u)]
        else:
            argv = [manager, "check-update", *(f"--exclude={pkg}" for pkg in options.excludes)]
            if options.security_only:
                argv.append("--security")
            result = await self._run(argv, check=False)
            # 100 means updates are available, 0 means none
            if result.exit_code not in (0, 100):
                raise CommandError(argv, result.exit_code, result.stderr)
            updates = parse_check_update(result.stdout)
        return [u for u in updates if u.name not in options.excludes]

    async def upgrade(self, options: UpdateOptions, updates: Sequence[PackageUpdate]) -> None:
        manager = self.detect()
        if manager != "apt":
            argv = [manager, "-y", *(f"--exclude={pkg}" for pkg in options.excludes)]
            argv.append("upgrade" if manager == "dnf" else "update")
            if options.security_only:
                argv.append("--security")
            await self._run(argv, timeout=UPGRADE_TIMEOUT)
            return

        if options.security_only:
            argv = ["apt-get", "-y", *APT_DPKG_OPTIONS, "install", "--only-upgrade", *(u.name for u in updates)]
        else:
            argv = ["apt-get", "-y", *APT_DPKG_OPTIONS, "dist-upgrade"]

        if options.excludes:
            await self._run(["apt-mark", "hold", *options.excludes])
        try:
            await self._run(argv, timeout=UPGRADE_TIMEOUT, env=APT_ENV)
        finally:
            if options.excludes:
                await self._run(["apt-mark", "unhold", *options.excludes], check=False)

    async def clean(self) -> None:
        manager = self.detect()
        if manager == "apt":
            steps = [["apt-get", "clean"], ["apt-get", "autoremove", "-y"]]
        else:
            steps = [[manager, "clean", "packages"], [manager, "-y", "autoremove"]]
        for argv in steps:
            result = await self._run(argv, check=False, env=APT_ENV if manager == "apt" else None)
            if not result.success:
                logger.warning(f"{shlex.join(argv)} failed: {result.stderr or result.exit_code}")

    async def reboot_required(self) -> bool:
        if self.detect() == "apt":
            return Path(REBOOT_REQUIRED_FILE).exists()

        if command_exists("needs-restarting"):
            # exit 1 means a reboot is needed
            result = await self._run(["needs-restarting", "-r"], check=False)
            return result.exit_code == 1

        result = await self._run(["rpm", "-q", "--last", "kernel"], check=False)
        if not result.success or not result.stdout:
            return False
        newest = result.stdout.splitlines()[0].split()[0]
        return platform.release() not in newest

    async def run(self, options: UpdateOptions, confirm: Optional[Callable[[str], bool]] = None) -> UpdateResult:
        """
        List updates, then apply them unless dry_run.

        confirm is asked once before upgrading; returning False stops
        without changing anything.
        """
        if options.log_file:
            self.log_file = Path(options.log_file)
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

        manager = self.detect()
        logger.info(f"Checking for updates on {platform.node()} ({platform.system()} {platform.release()})")
        updates = await self.list_updates(options)
        result = UpdateResult(package_manager=manager, available=updates)

        kind = "security update(s)" if options.security_only else "update(s)"
        if not updates:
            logger.info(f"No {kind} available")
            return result
        logger.info(f"{len(updates)} {kind} available")

        if options.dry_run:
            return result
        if confirm is not None and not confirm(f"Install {len(updates)} {kind}?"):
            logger.info("Update cancelled")
            return result

        await self.upgrade(options, updates)
        result.upgraded = True
        log_success(logger, f"Installed {len(updates)} {kind}")
        await self.clean()

        result.reboot_required = await self.reboot_required()
        if not result.reboot_required:
            logger.info("No reboot required")
        elif options.reboot:
            await self._run(["shutdown", "-r", "+1", "Rebooting after package updates"])
            result.reboot_scheduled = True
            logger.warning("Reboot scheduled in 1 minute (cancel with: shutdown -c)")
        else:
            logger.warning("System reboot is recommended")
        return result
