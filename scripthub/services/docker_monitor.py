"""
Docker Monitor - containers, images, volumes, networks and usage at a glance.

Every listing is read with `--format '{{json .}}'` so rows arrive as dicts
and can be rendered as a table, CSV or JSON by the report writer.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from scripthub.errors import CommandError, ValidationError
from scripthub.schemas.models import DockerSection
from scripthub.services.docker_cleanup import DockerCleaner
from scripthub.services.helpers import report_writer

logger = logging.getLogger("scripthub.docker")

SECTIONS = ("system", "containers", "images", "volumes", "networks", "resources", "metrics")
FORMATS = ("table", "json", "csv")

JSON_FORMAT = "{{json .}}"

# docker field -> column name
CONTAINER_FIELDS = {"ID": "id", "Names": "name", "Image": "image", "Status": "status", "Ports": "ports"}
IMAGE_FIELDS = {"Repository": "repository", "Tag": "tag", "ID": "id", "Size": "size"}
VOLUME_FIELDS = {"Driver": "driver", "Name": "name"}
NETWORK_FIELDS = {"ID": "id", "Name": "name", "Driver": "driver", "Scope": "scope"}
DF_FIELDS = {"Type": "type", "TotalCount": "total", "Active": "active", "Size": "size", "Reclaimable": "reclaimable"}
STATS_FIELDS = {"Name": "name", "CPUPerc": "cpu", "MemUsage": "mem_usage", "MemPerc": "memory", "NetIO": "net_io", "BlockIO": "block_io", "PIDs": "pids"}
METRIC_COLUMNS = ["name", "cpu", "memory", "net_in", "net_out", "disk_read", "disk_write"]
INFO_FIELDS = {
    "ServerVersion": "server_version",
    "OperatingSystem": "operating_system",
    "Driver": "storage_driver",
    "NCPU": "cpus",
    "MemTotal": "memory_bytes",
    "Containers": "containers",
    "ContainersRunning": "running",
    "Images": "images",
}


def parse_json_lines(output: str) -> List[Dict[str, Any]]:
    rows = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rows.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning(f"Skipping unparseable docker output line: {line[:80]}")
    return rows


def select_fields(rows: Sequence[Dict[str, Any]], fields: Dict[str, str]) -> List[Dict[str, Any]]:
    return [{column: row.get(field, "") for field, column in fields.items()} for row in rows]


def split_pair(value: str) -> tuple:
    """'1.2kB / 3.4kB' -> ('1.2kB', '3.4kB')"""
    first, _, second = value.partition("/")
    return first.strip(), second.strip()


def metrics_rows(stats: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for row in stats:
        net_in, net_out = split_pair(row.get("NetIO", ""))
        disk_read, disk_write = split_pair(row.get("BlockIO", ""))
        rows.append({
            "name": row.get("Name", "").lstrip("/"),
            "cpu": row.get("CPUPerc", ""),
            "memory": row.get("MemPerc", ""),
            "net_in": net_in,
            "net_out": net_out,
            "disk_read": disk_read,
            "disk_write": disk_write,
        })
    return rows


def container_summary(rows: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    running = sum(1 for row in rows if row.get("State") == "running" or str(row.get("Status", "")).startswith("Up"))
    return {"running": running, "stopped": len(rows) - running, "total": len(rows)}


def image_summary(rows: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    dangling = sum(1 for row in rows if row.get("Repository") == "<none>" and row.get("Tag") == "<none>")
    return {"total": len(rows), "dangling": dangling}


class DockerMonitor:
    def __init__(self, cleaner: Optional[DockerCleaner] = None):
        self.cleaner = cleaner or DockerCleaner()
        self.runner = self.cleaner.runner

    async def _json_rows(self, argv: List[str]) -> List[Dict[str, Any]]:
        result = await self.runner.run(argv, timeout=60)
        if not result.success:
            raise CommandError(argv, result.exit_code, result.stderr)
        return parse_json_lines(result.stdout)

    async def _stats(self) -> List[Dict[str, Any]]:
        return await self._json_rows(["docker", "stats", "--no-stream", "--format", JSON_FORMAT])

    async def section(self, name: str, stats_cache: Optional[list] = None) -> DockerSection:
        if name == "containers":
            rows = await self._json_rows(["docker", "ps", "-a", "--format", JSON_FORMAT])
            return DockerSection(
                name=name, title="Container Information", columns=list(CONTAINER_FIELDS.values()),
                rows=select_fields(rows, CONTAINER_FIELDS), summary=container_summary(rows),
            )
        if name == "images":
            rows = await self._json_rows(["docker", "images", "--format", JSON_FORMAT])
            return DockerSection(
                name=name, title="Image Information", columns=list(IMAGE_FIELDS.values()),
                rows=select_fields(rows, IMAGE_FIELDS), summary=image_summary(rows),
            )
        if name == "volumes":
            rows = await self._json_rows(["docker", "volume", "ls", "--format", JSON_FORMAT])
            return DockerSection(
                name=name, title="Volume Information", columns=list(VOLUME_FIELDS.values()),
                rows=select_fields(rows, VOLUME_FIELDS), summary={"total": len(rows)},
            )
        if name == "networks":
            rows = await self._json_rows(["docker", "network", "ls", "--format", JSON_FORMAT])
            return DockerSection(
                name=name, title="Network Information", columns=list(NETWORK_FIELDS.values()),
                rows=select_fields(rows, NETWORK_FIELDS), summary={"total": len(rows)},
            )
        if name == "system":
            info = await self._json_rows(["docker", "info", "--format", JSON_FORMAT])
            df = await self._json_rows(["docker", "system", "df", "--format", JSON_FORMAT])
            details = info[0] if info else {}
            summary = {column: int(details[field]) for field, column in INFO_FIELDS.items() if isinstance(details.get(field), int)}
            rows = select_fields(df, DF_FIELDS)
            for field, column in INFO_FIELDS.items():
                if column not in summary and details.get(field):
                    logger.info(f"{column.replace('_', ' ').title()}: {details[field]}")
            return DockerSection(name=name, title="Docker System Information", columns=list(DF_FIELDS.values()), rows=rows, summary=summary)
        if name in ("resources", "metrics"):
            stats = stats_cache if stats_cache is not None else await self._stats()
            if name == "resources":
                return DockerSection(
                    name=name, title="Container Resource Usage", columns=list(STATS_FIELDS.values()),
                    rows=select_fields(stats, STATS_FIELDS), summary={"running": len(stats)},
                )
            if not stats:
                logger.warning("No running containers found")
            return DockerSection(name=name, title="Container Metrics", columns=METRIC_COLUMNS, rows=metrics_rows(stats), summary={"running": len(stats)})
        raise ValidationError(f"Unknown section '{name}' (use one of: {', '.join(SECTIONS)})")

    async def collect(self, sections: Sequence[str]) -> List[DockerSection]:
        """Gather the requested sections in display order."""
        await self.cleaner.ensure_daemon()
        wanted = [name for name in SECTIONS if name in sections]
        unknown = set(sections) - set(SECTIONS)
        if unknown:
            raise ValidationError(f"Unknown section(s): {', '.join(sorted(unknown))}")

        stats = await self._stats() if {"resources", "metrics"} & set(wanted) else None
        return [await self.section(name, stats) for name in wanted]

    async def logs(self, container: str, tail: int = 50) -> str:
        await self.cleaner.ensure_daemon()
        result = await self.runner.run(["docker", "ps", "-a", "--format", "{{.Names}}"], timeout=60)
        names = result.stdout.split()
        if container not in names:
            available = ", ".join(names) or "none"
            raise ValidationError(f"Container not found: {container} (available: {available})")
        logs = await self.runner.run(["docker", "logs", "--tail", str(tail), container], timeout=60)
        if not logs.success:
            raise CommandError(["docker", "logs"], logs.exit_code, logs.stderr)
        return logs.output


def render_sections(sections: Sequence[DockerSection], fmt: str = "table") -> str:
    if fmt not in FORMATS:
        raise ValidationError(f"Unknown format '{fmt}' (use one of: {', '.join(FORMATS)})")
    if fmt == "json":
        return json.dumps(
            {s.name: {"rows": s.rows, "summary": s.summary} for s in sections},
            indent=2,
            default=str,
        )

    blocks = []
    for s in sections:
        if fmt == "csv":
            blocks.append(report_writer.render(s.rows, "csv", s.columns))
            continue
        block = [f"=== {s.title} ===", ""]
        if s.rows:
            block.append(report_writer.render(s.rows, "text", s.columns))
        else:
            block.append("(none)")
        if s.summary:
            block.append("")
            block.extend(f"  {key.replace('_', ' ').title()}: {value}" for key, value in s.summary.items())
        blocks.append("\n".join(block))
    return "\n\n".join(blocks)
