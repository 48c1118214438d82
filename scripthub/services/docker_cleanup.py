"""
Docker Cleanup - prune containers, images, volumes and networks.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from scripthub.errors import PrerequisiteError
from scripthub.schemas.models import CleanupStep
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands

logger = logging.getLogger("scripthub.docker")

_RECLAIMED_RE = re.compile(r"Total reclaimed space:\s*(.+)")


@dataclass
class DockerCleanupOptions:
    all_containers: bool = False
    images: bool = False
    all_images: bool = False
    volumes: bool = False
    networks: bool = False
    system: bool = False
    dry_run: bool = False


def parse_reclaimed(output: str) -> str:
    match = _RECLAIMED_RE.search(output)
    return match.group(1).strip() if match else "0B"


def plan_steps(options: DockerCleanupOptions) -> List[tuple]:
    """(name, prune argv, dry-run listing argv) for every selected step, in order."""
    steps = [(
        "containers",
        ["docker", "container", "prune", "-f"],
        ["docker", "ps", "-a", "--filter", "status=exited", "--format", "{{.ID}}\t{{.Image}}\t{{.Names}}\t{{.Status}}"],
    )]
    if options.all_containers:
        steps.append((
            "created containers",
            None,
            ["docker", "ps", "-aq", "--filter", "status=created"],
        ))
    if options.images or options.all_images:
        prune = ["docker", "image", "prune", "-f"]
        listing = ["docker", "images", "--filter", "dangling=true", "--format", "{{.ID}}\t{{.Repository}}:{{.Tag}}\t{{.Size}}"]
        if options.all_images:
            prune.append("-a")
            listing = ["docker", "images", "--format", "{{.ID}}\t{{.Repository}}:{{.Tag}}\t{{.Size}}"]
        steps.append(("images", prune, listing))
    if options.volumes:
        steps.append(("volumes", ["docker", "volume", "prune", "-f"], ["docker", "volume", "ls", "-qf", "dangling=true"]))
    if options.networks:
        steps.append(("networks", ["docker", "network", "prune", "-f"], ["docker", "network", "ls", "--filter", "type=custom", "--format", "{{.ID}}\t{{.Name}}"]))
    if options.system:
        prune = ["docker", "system", "prune", "-f"]
        if options.all_images:
            prune.append("-a")
        if options.volumes:
            prune.append("--volumes")
        steps.append(("system", prune, ["docker", "system", "df"]))
    return steps


class DockerCleaner:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def ensure_daemon(self) -> None:
        require_commands("docker")
        result = await self.runner.run(["docker", "info"], timeout=30)
        if not result.success:
            raise PrerequisiteError("Docker daemon is not running or not accessible")

    async def _remove_created(self, listing: List[str]) -> CleanupStep:
        step = CleanupStep(name="created containers")
        result = await self.runner.run(listing, timeout=60)
        ids = result.stdout.split()
        if not ids:
            step.detail = "nothing to remove"
            return step
        removal = await self.runner.run(["docker", "rm", *ids], timeout=300)
        step.success = removal.success
        step.detail = f"removed {len(ids)} container(s)" if removal.success else removal.stderr
        return step

    async def clean(self, options: DockerCleanupOptions, confirm: Optional[Callable[[str], bool]] = None) -> List[CleanupStep]:
        """
        Run the selected cleanup steps; a failing step does not stop the rest.

        confirm is asked once before anything is removed; returning False
        cancels the whole cleanup.
        """
        await self.ensure_daemon()
        steps = plan_steps(options)

        if options.dry_run:
            results = []
            for name, _prune, listing in steps:
                result = await self.runner.run(listing, timeout=60)
                candidates = [line for line in result.stdout.splitlines() if line.strip()]
                logger.info(f"[DRY RUN] {name}: {len(candidates)} item(s) would be affected")
                for line in candidates:
                    logger.info(f"[DRY RUN]   {line}")
                results.append(CleanupStep(name=name, detail="\n".join(candidates)))
            return results

        if confirm is not None:
            names = ", ".join(name for name, _, _ in steps)
            if not confirm(f"This will remove unused Docker resources ({names}). Continue?"):
                logger.info("Cleanup cancelled")
                return []

        results = []
        for name, prune, listing in steps:
            if prune is None:
                step = await self._remove_created(listing)
            else:
                logger.info(f"Pruning {name}")
                result = await self.runner.run(prune, timeout=1800)
                step = CleanupStep(name=name, success=result.success)
                if result.success:
                    step.reclaimed = parse_reclaimed(result.stdout)
                    step.detail = f"reclaimed {step.reclaimed}"
                else:
                    step.detail = result.stderr
            if step.success:
                logger.info(f"{name}: {step.detail}")
            else:
                logger.error(f"{name} cleanup failed: {step.detail}")
            results.append(step)
        return results
