"""Container commands: docker-cleanup, docker-monitor, k8s-nodes."""

import argparse
import asyncio
import logging
import time

from scripthub.commands import confirm, positive_int
from scripthub.services import docker_monitor, k8s_nodes
from scripthub.services.docker_cleanup import DockerCleaner, DockerCleanupOptions
from scripthub.services.helpers import report_writer
from scripthub.shared.logging_utils import log_success, print_header

logger = logging.getLogger("scripthub.cli")


# ============================================================================
# docker-cleanup
# ============================================================================

def cmd_docker_cleanup(args: argparse.Namespace) -> int:
    options = DockerCleanupOptions(
        all_containers=args.all,
        images=args.images,
        all_images=args.all_images,
        volumes=args.volumes,
        networks=args.networks,
        system=args.system,
        dry_run=args.dry_run,
    )
    steps = asyncio.run(DockerCleaner().clean(options, confirm=None if args.force else confirm))
    failed = [s for s in steps if not s.success]
    if steps and not failed and not args.dry_run:
        log_success(logger, "Docker cleanup completed")
    return 1 if failed else 0


# ============================================================================
# docker-monitor
# ============================================================================

def _monitor_sections(args: argparse.Namespace) -> list:
    chosen = [name for name in docker_monitor.SECTIONS if getattr(args, name)]
    if args.all or not (chosen or args.logs):
        return list(docker_monitor.SECTIONS)
    return chosen


async def _monitor_once(args: argparse.Namespace, monitor: docker_monitor.DockerMonitor) -> str:
    blocks = []
    sections = _monitor_sections(args)
    if sections:
        blocks.append(docker_monitor.render_sections(await monitor.collect(sections), args.format))
    if args.logs:
        logs = await monitor.logs(args.logs, args.tail)
        blocks.append(f"=== Logs: {args.logs} (last {args.tail} lines) ===\n\n{logs}")
    return "\n\n".join(blocks)


def cmd_docker_monitor(args: argparse.Namespace) -> int:
    monitor = docker_monitor.DockerMonitor()

    if args.watch:
        try:
            while True:
                content = asyncio.run(_monitor_once(args, monitor))
                print("\033[2J\033[H", end="")
                print_header(f"Docker monitor (every {args.watch}s, Ctrl+C to stop)")
                print(content)
                time.sleep(args.watch)
        except KeyboardInterrupt:
            logger.info("Watch stopped")
            return 0

    report_writer.write_output(asyncio.run(_monitor_once(args, monitor)), args.output)
    if args.output:
        log_success(logger, f"Report written to {args.output}")
    return 0


# ============================================================================
# k8s-nodes
# ============================================================================

async def _collect_nodes(args: argparse.Namespace, reporter: k8s_nodes.NodeStatusReporter):
    await reporter.ensure_cluster()
    nodes = await reporter.nodes(args.node, args.label, args.role)
    return k8s_nodes.sort_nodes(nodes, args.sort)


def cmd_k8s_nodes(args: argparse.Namespace) -> int:
    reporter = k8s_nodes.NodeStatusReporter()

    if args.watch:
        try:
            while True:
                nodes = asyncio.run(_collect_nodes(args, reporter))
                print("\033[2J\033[H", end="")
                print_header(f"Kubernetes nodes (every {args.watch}s, Ctrl+C to stop)")
                print(k8s_nodes.render_nodes(nodes, args.output, args.detailed))
                time.sleep(args.watch)
        except KeyboardInterrupt:
            logger.info("Watch stopped")
            return 0

    nodes = asyncio.run(_collect_nodes(args, reporter))
    if not nodes:
        logger.warning("No nodes matched")
        return 0
    print(k8s_nodes.render_nodes(nodes, args.output, args.detailed))
    return 0 if all(n.ready for n in nodes) else 1


def register(subparsers: argparse._SubParsersAction) -> None:
    docker = subparsers.add_parser("docker-cleanup", help="Prune unused Docker containers, images, volumes and networks")
    docker.add_argument("-a", "--all", action="store_true", help="also remove created and exited containers")
    docker.add_argument("-f", "--force", action="store_true", help="do not ask for confirmation")
    docker.add_argument("-i", "--images", action="store_true", help="remove dangling images")
    docker.add_argument("-I", "--all-images", action="store_true", help="remove all unused images")
    docker.add_argument("-v", "--volumes", action="store_true")
    docker.add_argument("-n", "--networks", action="store_true")
    docker.add_argument("-s", "--system", action="store_true", help="run docker system prune")
    docker.add_argument("--dry-run", action="store_true", help="list what would be removed")
    docker.set_defaults(handler=cmd_docker_cleanup)

    monitor = subparsers.add_parser("docker-monitor", help="Show Docker containers, images, volumes, networks and usage")
    monitor.add_argument("-c", "--containers", action="store_true")
    monitor.add_argument("-i", "--images", action="store_true")
    monitor.add_argument("-v", "--volumes", action="store_true")
    monitor.add_argument("-n", "--networks", action="store_true")
    monitor.add_argument("-s", "--system", action="store_true", help="daemon info and disk usage")
    monitor.add_argument("-r", "--resources", action="store_true", help="per-container CPU and memory")
    monitor.add_argument("-m", "--metrics", action="store_true", help="per-container network and block I/O")
    monitor.add_argument("-a", "--all", action="store_true", help="every section (default when none is chosen)")
    monitor.add_argument("-l", "--logs", metavar="CONTAINER", help="show recent logs of a container")
    monitor.add_argument("-t", "--tail", type=positive_int, default=50, help="log lines to show (default: 50)")
    monitor.add_argument("-f", "--format", choices=docker_monitor.FORMATS, default="table")
    monitor.add_argument("-o", "--output", help="write the report to this file")
    monitor.add_argument("-w", "--watch", type=positive_int, nargs="?", const=5, metavar="SECONDS", help="refresh until interrupted (default: 5s)")
    monitor.set_defaults(handler=cmd_docker_monitor)

    k8s = subparsers.add_parser("k8s-nodes", help="Show Kubernetes node status and usage")
    k8s.add_argument("-n", "--node", help="only this node")
    k8s.add_argument("-l", "--label", metavar="KEY=VALUE", help="label selector")
    k8s.add_argument("-r", "--role", help="only nodes with this role")
    k8s.add_argument("-d", "--detailed", action="store_true")
    k8s.add_argument("-s", "--sort", choices=k8s_nodes.SORT_KEYS, default="name")
    k8s.add_argument("-o", "--output", choices=k8s_nodes.OUTPUTS, default="default")
    k8s.add_argument("-w", "--watch", type=positive_int, nargs="?", const=5, metavar="SECONDS", help="refresh until interrupted (default: 5s)")
    k8s.set_defaults(handler=cmd_k8s_nodes)
