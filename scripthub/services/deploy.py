"""
Application Deployer - copy a static, Node.js, Python or PHP app into place.

A deploy is: optional backup of the destination, optional clean, copy,
dependency install for the app type, then a restart of the process manager
or service that runs it.
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from scripthub.errors import CommandError, ValidationError
from scripthub.schemas.models import DeployResult
from scripthub.services.command_runner import CommandRunner, command_exists, get_command_runner
from scripthub.services.service_checker import ServiceChecker
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.deploy")

APP_TYPES = ("static", "nodejs", "python", "php")
ENVIRONMENTS = ("dev", "staging", "prod")
BACKUP_TIMESTAMP = "%Y%m%d_%H%M%S"
INSTALL_TIMEOUT = 1800

WSGI_SERVICES = ("uwsgi.service", "gunicorn.service")
PHP_FPM_SERVICES = (
    "php-fpm.service",
    "php7.4-fpm.service",
    "php8.0-fpm.service",
    "php8.1-fpm.service",
    "php8.2-fpm.service",
    "php8.3-fpm.service",
)


def backup_path(destination: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime(BACKUP_TIMESTAMP)
    return destination.parent / f"backup_{destination.name}_{stamp}"


def clean_directory(path: Path) -> int:
    """Remove everything inside path, hidden entries included; returns the entry count."""
    removed = 0
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        removed += 1
    return removed


def read_package_json(app_dir: Path) -> dict:
    package = app_dir / "package.json"
    if not package.is_file():
        return {}
    try:
        return json.loads(package.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid package.json: {e}") from e


class AppDeployer:
    def __init__(
        self,
        source: str,
        destination: str,
        app_type: str,
        environment: str = "dev",
        verbose: bool = False,
        runner: Optional[CommandRunner] = None,
    ):
        if app_type not in APP_TYPES:
            raise ValidationError(f"Invalid application type: {app_type} (supported: {', '.join(APP_TYPES)})")
        if environment not in ENVIRONMENTS:
            raise ValidationError(f"Invalid environment: {environment} (supported: {', '.join(ENVIRONMENTS)})")
        self.source = Path(source)
        if not self.source.is_dir():
            raise ValidationError(f"Source directory does not exist: {source}")
        self.destination = Path(destination).resolve()
        self.app_type = app_type
        self.environment = environment
        self.verbose = verbose
        self.runner = runner or get_command_runner()
        self.result = DeployResult(app_type=app_type, environment=environment, destination=str(self.destination))

    @property
    def production(self) -> bool:
        return self.environment == "prod"

    def _step(self, message: str) -> None:
        self.result.steps.append(message)
        logger.info(message)

    async def _run_step(self, argv: List[str], message: str) -> None:
        self._step(message)
        result = await self.runner.run(argv, timeout=INSTALL_TIMEOUT, cwd=str(self.destination))
        if self.verbose and result.output:
            print(result.output)
        if not result.success:
            raise CommandError(argv, result.exit_code, result.stderr)

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def backup(self, now: Optional[datetime] = None) -> Optional[Path]:
        if not self.destination.exists():
            logger.warning("Destination does not exist, skipping backup")
            return None
        target = backup_path(self.destination, now)
        shutil.copytree(self.destination, target, symlinks=True)
        self.result.backup_path = str(target)
        log_success(logger, f"Backup created at: {target}")
        return target

    def clean(self) -> None:
        if not self.destination.exists():
            logger.warning("Destination does not exist, nothing to clean")
            return
        if not self.destination.is_dir():
            raise ValidationError(f"Destination is not a directory: {self.destination}")
        removed = clean_directory(self.destination)
        self._step(f"Cleaned destination ({removed} entries removed)")

    def copy(self) -> None:
        self.destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            self.source,
            self.destination,
            symlinks=True,
            ignore=shutil.ignore_patterns(".git"),
            dirs_exist_ok=True,
        )
        self._step(f"Copied {self.source} to {self.destination}")

    # ------------------------------------------------------------------
    # Restarts
    # ------------------------------------------------------------------

    async def _unit_exists(self, unit: str) -> bool:
        result = await self.runner.run(
            ["systemctl", "list-units", "--full", "--all", "--plain", "--no-legend", unit], timeout=30
        )
        return result.success and unit in result.stdout

    async def restart_first_unit(self, units) -> Optional[str]:
        """Restart the first installed unit of units; None when none restarted."""
        if not command_exists("systemctl"):
            logger.warning("systemctl not found, restart the application manually")
            return None
        services = ServiceChecker(self.runner, init_system="systemd")
        for unit in units:
            if not await self._unit_exists(unit):
                continue
            logger.info(f"Restarting {unit}")
            if await services.apply(unit, "restart"):
                log_success(logger, f"{unit} restarted")
                return unit
            logger.error(f"Failed to restart {unit}")
        logger.warning("No service was restarted, restart the application manually")
        return None

    async def restart_pm2(self, name: str) -> Optional[str]:
        if not command_exists("pm2"):
            logger.warning("PM2 not found, restart the application manually")
            return None
        described = await self.runner.run(["pm2", "describe", name], timeout=30)
        if described.success:
            argv = ["pm2", "restart", name]
        else:
            argv = ["pm2", "start", "npm", "--name", name, "--", "start"]
        result = await self.runner.run(argv, timeout=120, cwd=str(self.destination))
        if not result.success:
            raise CommandError(argv, result.exit_code, result.stderr)
        log_success(logger, f"PM2 app {name} restarted")
        return f"pm2:{name}"

    # ------------------------------------------------------------------
    # App types
    # ------------------------------------------------------------------

    async def deploy_nodejs(self, restart: bool) -> None:
        package = read_package_json(self.destination)
        if package:
            argv = ["npm", "install"]
            if self.production:
                argv.append("--production")
            if not self.verbose:
                argv.append("--silent")
            await self._run_step(argv, "Installing Node.js dependencies")
            if "build" in package.get("scripts", {}):
                await self._run_step(["npm", "run", "build"], "Building application")
        if restart:
            name = package.get("name") or self.destination.name
            self.result.restarted = await self.restart_pm2(name)

    async def deploy_python(self, restart: bool) -> None:
        if (self.destination / "requirements.txt").is_file():
            venv = self.destination / "venv"
            if not venv.is_dir():
                await self._run_step(["python3", "-m", "venv", str(venv)], "Creating virtual environment")
            argv = [str(venv / "bin" / "pip"), "install", "-r", "requirements.txt"]
            if not self.verbose:
                argv.insert(2, "-q")
            await self._run_step(argv, "Installing Python dependencies")
        if not restart:
            return
        if (self.destination / "wsgi.py").is_file() or (self.destination / "app.py").is_file():
            self.result.restarted = await self.restart_first_unit(WSGI_SERVICES)
        else:
            logger.warning("No WSGI application found, skipping service restart")

    async def deploy_php(self, restart: bool) -> None:
        if (self.destination / "composer.json").is_file():
            if command_exists("composer"):
                argv = ["composer", "install"]
                if self.production:
                    argv.append("--no-dev")
                if not self.verbose:
                    argv.append("--quiet")
                await self._run_step(argv, "Installing Composer dependencies")
            else:
                logger.warning("Composer not found, skipping dependency installation")
        if restart:
            self.result.restarted = await self.restart_first_unit(PHP_FPM_SERVICES)

    async def deploy(self, backup: bool = False, clean: bool = False, restart: bool = True) -> DeployResult:
        logger.info(f"Deploying {self.app_type} app ({self.environment}): {self.source} -> {self.destination}")
        if backup:
            self.backup()
        if clean:
            self.clean()
        self.copy()

        if self.app_type == "nodejs":
            await self.deploy_nodejs(restart)
        elif self.app_type == "python":
            await self.deploy_python(restart)
        elif self.app_type == "php":
            await self.deploy_php(restart)

        log_success(logger, "Deployment completed successfully")
        return self.result
