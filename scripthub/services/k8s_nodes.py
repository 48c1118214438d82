"""
Kubernetes Node Status - summarize `kubectl get nodes -o json`.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

from scripthub.errors import PrerequisiteError, ValidationError
from scripthub.schemas.models import NodeInfo
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands

logger = logging.getLogger("scripthub.k8s")

ROLE_PREFIX = "node-role.kubernetes.io/"
PRESSURE_CONDITIONS = ("MemoryPressure", "DiskPressure", "PIDPressure", "NetworkUnavailable")
SORT_KEYS = ("name", "status", "cpu", "memory")
OUTPUTS = ("default", "wide", "json", "yaml")


def format_age(created: str, now: Optional[datetime] = None) -> str:
    if not created:
        return ""
    now = now or datetime.now(timezone.utc)
    stamp = datetime.strptime(created, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    seconds = max(0, int((now - stamp).total_seconds()))
    if seconds >= 86400:
        return f"{seconds // 86400}d"
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    return f"{seconds // 60}m"


def parse_node(item: Dict[str, Any], now: Optional[datetime] = None) -> NodeInfo:
    metadata = item.get("metadata", {})
    spec = item.get("spec", {})
    status = item.get("status", {})
    labels = metadata.get("labels", {}) or {}

    conditions = {c.get("type"): c.get("status") for c in status.get("conditions", [])}
    ready = conditions.get("Ready")
    state = "Ready" if ready == "True" else "NotReady" if ready == "False" else "Unknown"
    if spec.get("unschedulable"):
        state += ",SchedulingDisabled"

    roles = sorted(key[len(ROLE_PREFIX):] for key in labels if key.startswith(ROLE_PREFIX))
    addresses = {a.get("type"): a.get("address") for a in status.get("addresses", [])}
    node_info = status.get("nodeInfo", {})
    capacity = status.get("capacity", {})
    allocatable = status.get("allocatable", {})

    return NodeInfo(
        name=metadata.get("name", ""),
        status=state,
        roles=[r for r in roles if r] or ["worker"],
        version=node_info.get("kubeletVersion", ""),
        internal_ip=addresses.get("InternalIP", ""),
        os_image=node_info.get("osImage", ""),
        container_runtime=node_info.get("containerRuntimeVersion", ""),
        age=format_age(metadata.get("creationTimestamp", ""), now),
        cpu_capacity=str(capacity.get("cpu", "")),
        cpu_allocatable=str(allocatable.get("cpu", "")),
        memory_capacity=str(capacity.get("memory", "")),
        memory_allocatable=str(allocatable.get("memory", "")),
        pressures=[c for c in PRESSURE_CONDITIONS if conditions.get(c) == "True"],
        labels=labels,
    )


def parse_top(output: str) -> Dict[str, tuple]:
    """`kubectl top nodes --no-headers` -> name: (cpu%, mem%)."""
    usage = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 5:
            continue
        cpu, mem = fields[2].rstrip("%"), fields[4].rstrip("%")
        if cpu.isdigit() and mem.isdigit():
            usage[fields[0]] = (int(cpu), int(mem))
    return usage


def sort_nodes(nodes: List[NodeInfo], key: str = "name") -> List[NodeInfo]:
    if key not in SORT_KEYS:
        raise ValidationError(f"Unknown sort key '{key}' (use {', '.join(SORT_KEYS)})")
    if key == "status":
        return sorted(nodes, key=lambda n: (n.ready, n.name))
    if key == "cpu":
        return sorted(nodes, key=lambda n: (-(n.cpu_percent or 0), n.name))
    if key == "memory":
        return sorted(nodes, key=lambda n: (-(n.memory_percent or 0), n.name))
    return sorted(nodes, key=lambda n: n.name)


def _percent(value: Optional[int]) -> str:
    return f"{value}%" if value is not None else "-"


def render_table(nodes: List[NodeInfo], wide: bool = False) -> str:
    headers = ["NAME", "STATUS", "ROLES", "AGE", "VERSION", "CPU%", "MEMORY%"]
    if wide:
        headers += ["INTERNAL-IP", "OS-IMAGE", "CONTAINER-RUNTIME"]
    rows = []
    for node in nodes:
        row = [node.name, node.status, ",".join(node.roles), node.age, node.version, _percent(node.cpu_percent), _percent(node.memory_percent)]
        if wide:
            row += [node.internal_ip, node.os_image, node.container_runtime]
        rows.append(row)
    widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h) for i, h in enumerate(headers)]
    lines = ["   ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip()]
    lines.extend("   ".join(c.ljust(widths[i]) for i, c in enumerate(r)).rstrip() for r in rows)
    return "\n".join(lines)


def render_detailed(node: NodeInfo) -> str:
    lines = [
        f"Node: {node.name}",
        f"  Status:            {node.status}",
        f"  Roles:             {', '.join(node.roles)}",
        f"  Age:               {node.age}",
        f"  Kubelet version:   {node.version}",
        f"  Internal IP:       {node.internal_ip}",
        f"  OS image:          {node.os_image}",
        f"  Container runtime: {node.container_runtime}",
        f"  CPU:               {node.cpu_allocatable} allocatable / {node.cpu_capacity} capacity, usage {_percent(node.cpu_percent)}",
        f"  Memory:            {node.memory_allocatable} allocatable / {node.memory_capacity} capacity, usage {_percent(node.memory_percent)}",
        f"  Pressure:          {', '.join(node.pressures) or 'none'}",
    ]
    return "\n".join(lines)


def render_nodes(nodes: List[NodeInfo], output: str = "default", detailed: bool = False) -> str:
    if output not in OUTPUTS:
        raise ValidationError(f"Unknown output '{output}' (use {', '.join(OUTPUTS)})")
    if output == "json":
        return json.dumps([n.model_dump(mode="json") for n in nodes], indent=2)
    if output == "yaml":
        return yaml.safe_dump([n.model_dump(mode="json") for n in nodes], sort_keys=False)
    if detailed:
        return "\n\n".join(render_detailed(n) for n in nodes)
    ready = sum(1 for n in nodes if n.ready)
    summary = f"\nTotal nodes: {len(nodes)}  Ready: {ready}  Not ready: {len(nodes) - ready}"
    return render_table(nodes, wide=output == "wide") + summary


class NodeStatusReporter:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def ensure_cluster(self) -> None:
        require_commands("kubectl")
        result = await self.runner.run(["kubectl", "cluster-info"], timeout=30)
        if not result.success:
            raise PrerequisiteError("Cannot connect to the Kubernetes cluster (check kubectl context)")

    async def nodes(self, name: Optional[str] = None, label: Optional[str] = None, role: Optional[str] = None) -> List[NodeInfo]:
        argv = ["kubectl", "get", "nodes", "-o", "json"]
        if name:
            argv.insert(3, name)
        if label:
            argv.extend(["-l", label])
        result = await self.runner.check(argv, timeout=60)
        data = json.loads(result.stdout or "{}")
        items = data.get("items", [data] if data.get("kind") == "Node" else [])
        nodes = [parse_node(item) for item in items]
        if role:
            nodes = [n for n in nodes if role in n.roles]

        top = await self.runner.run(["kubectl", "top", "nodes", "--no-headers"], timeout=60)
        if top.success:
            usage = parse_top(top.stdout)
            for node in nodes:
                if node.name in usage:
                    node.cpu_percent, node.memory_percent = usage[node.name]
        else:
            logger.debug("Node metrics unavailable (metrics-server not installed?)")

        for node in nodes:
            if not node.ready:
                logger.warning(f"Node {node.name} is {node.status}")
            if node.pressures:
                logger.warning(f"Node {node.name} reports {', '.join(node.pressures)}")
        return nodes
