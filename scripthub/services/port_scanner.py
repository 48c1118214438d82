"""
Port Scanner - TCP connect, UDP and SYN scanning with banner grabbing.

TCP connect scans use asyncio streams directly; UDP and SYN scans delegate
each port check to nmap. Checks fan out through ParallelExecutor, one per
host:port pair.
"""

import asyncio
import logging
import random
import re
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import PortResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands, require_root
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.targets import is_ipv4, load_lines, service_name
from scripthub.services.parallel_executor import ParallelExecutor

logger = logging.getLogger("scripthub.scanner")

SCAN_TYPES = ("tcp", "udp", "syn")
BANNER_LENGTH = 50
PROGRESS_EVERY = 10

# Request sent after connecting; None means just read what the server says
BANNER_REQUESTS: Dict[int, Optional[bytes]] = {
    21: b"QUIT\r\n",
    25: b"QUIT\r\n",
    587: b"QUIT\r\n",
    110: b"QUIT\r\n",
    22: None,
    3306: None,
    80: b"HEAD / HTTP/1.0\r\n\r\n",
    443: b"HEAD / HTTP/1.0\r\n\r\n",
    8080: b"HEAD / HTTP/1.0\r\n\r\n",
    143: b"a1 LOGOUT\r\n",
    5432: b"\x00\x00\x00\x08\x04\xd2\x16\x2f",
}
DEFAULT_REQUEST = b"\r\n"

_NMAP_PORT_RE = re.compile(r"^(\d+)/(tcp|udp)\s+(\S+)")


@dataclass
class ScanOptions:
    targets: List[str]
    ports: List[int]
    timeout: float = 1.0
    threads: int = 10
    scan_type: str = "tcp"
    banner: bool = False
    wait_ms: int = 0
    resolvers: List[str] = field(default_factory=list)
    no_resolve: bool = False
    quiet: bool = False


def clean_banner(raw: bytes) -> str:
    """First non-empty line, printable characters only, cut to 50 chars."""
    text = raw.decode("latin-1")
    for line in text.splitlines():
        printable = "".join(ch for ch in line if 32 <= ord(ch) < 127).strip()
        if printable:
            return printable[:BANNER_LENGTH]
    return ""


def parse_nmap_state(output: str, port: int) -> str:
    for line in output.splitlines():
        match = _NMAP_PORT_RE.match(line.strip())
        if match and int(match.group(1)) == port:
            return match.group(3)
    return "closed"


class PortScanner:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, target: str, options: ScanOptions) -> str:
        """Resolve a hostname to IPv4; unresolvable names keep the target string."""
        if options.no_resolve or is_ipv4(target):
            return target

        if options.resolvers:
            resolver = random.choice(options.resolvers)
            result = await self.runner.run(["dig", "+short", f"@{resolver}", target], timeout=options.timeout + 2)
            for line in result.stdout.splitlines():
                if is_ipv4(line.strip()):
                    return line.strip()

        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(target, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
        except socket.gaierror:
            logger.warning(f"Could not resolve {target}")
            return target
        return infos[0][4][0] if infos else target

    # ------------------------------------------------------------------
    # Port checks
    # ------------------------------------------------------------------

    async def check_tcp(self, ip: str, port: int, timeout: float) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        return True

    async def check_nmap(self, ip: str, port: int, scan_type: str, timeout: float) -> bool:
        flag = "-sU" if scan_type == "udp" else "-sS"
        argv = ["nmap", "-T4", "-Pn", flag, "-p", str(port), "--host-timeout", f"{int(max(timeout, 1))}s", ip]
        result = await self.runner.run(argv, timeout=timeout + 30)
        if not result.success:
            logger.debug(f"nmap failed for {ip}:{port}: {result.stderr}")
            return False
        return parse_nmap_state(result.stdout, port) == "open"

    async def grab_banner(self, ip: str, port: int, timeout: float) -> str:
        request = BANNER_REQUESTS.get(port, DEFAULT_REQUEST)
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return ""
        try:
            if request:
                writer.write(request)
                await writer.drain()
            data = await asyncio.wait_for(reader.read(1024), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            data = b""
        finally:
            writer.close()
        return clean_banner(data)

    async def check_port(self, host: str, ip: str, port: int, options: ScanOptions) -> PortResult:
        if options.scan_type == "tcp":
            is_open = await self.check_tcp(ip, port, options.timeout)
        else:
            is_open = await self.check_nmap(ip, port, options.scan_type, options.timeout)

        result = PortResult(
            host=host,
            ip=ip,
            port=port,
            status="open" if is_open else "closed",
            service=service_name(port),
        )
        if is_open and options.banner:
            result.banner = await self.grab_banner(ip, port, options.timeout)
        if is_open and not options.quiet:
            banner = f" - {result.banner}" if result.banner else ""
            logger.info(f"OPEN: {host}:{port} ({result.service}){banner}")

        if options.wait_ms:
            await asyncio.sleep(options.wait_ms / 1000)
        return result

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def scan(self, options: ScanOptions, progress: Optional[Callable[[int, int], None]] = None) -> List[PortResult]:
        """
        Scan every port on every target.

        Returns:
            One PortResult per host:port, in target then port order
        """
        if not options.targets:
            raise ValidationError("No targets specified")
        if options.scan_type not in SCAN_TYPES:
            raise ValidationError(f"Unknown scan type '{options.scan_type}'")
        if options.threads < 1:
            raise ValidationError("--threads must be at least 1")
        if options.scan_type != "tcp":
            require_commands("nmap")
        if options.scan_type == "syn":
            require_root("SYN scanning")

        hosts = [(target, await self.resolve(target, options)) for target in options.targets]
        pairs = [(host, ip, port) for host, ip in hosts for port in options.ports]
        total = len(pairs)

        if not options.quiet:
            logger.info(
                f"Scanning {len(hosts)} host(s), {len(options.ports)} port(s) "
                f"({options.scan_type}, {options.threads} concurrent)"
            )

        done = 0

        def on_complete(_pair, _result) -> None:
            nonlocal done
            done += 1
            if progress and (done % PROGRESS_EVERY == 0 or done == total):
                progress(done, total)

        start = time.time()
        batch = await ParallelExecutor(options.threads).run_batch(
            pairs,
            lambda pair: self.check_port(pair[0], pair[1], pair[2], options),
            label="port-scan",
            on_complete=on_complete,
        )
        elapsed = time.time() - start

        results = list(batch.successful)
        for failure in batch.failed:
            host, ip, port = failure.item
            logger.warning(f"Check of {host}:{port} failed: {failure.error}")
            results.append(PortResult(host=host, ip=ip, port=port, status="error", service=service_name(port)))

        order = {pair: index for index, pair in enumerate(pairs)}
        results.sort(key=lambda r: order.get((r.host, r.ip, r.port), total))

        if not options.quiet:
            rate = total / elapsed if elapsed > 0 else float(total)
            open_count = sum(1 for r in results if r.status == "open")
            logger.info(f"Scan completed in {elapsed:.2f}s ({rate:.1f} checks/s), {open_count} open port(s)")
        return results


# ============================================================================
# Output
# ============================================================================

COLUMNS = ["host", "ip", "port", "status", "service", "banner"]


def render_zenmap(results: List[PortResult], targets: List[str], scan_time: datetime) -> str:
    lines = [f"# PortScanner scan initiated {scan_time.strftime('%Y-%m-%d %H:%M:%S')} as: portscanner {' '.join(targets)}"]
    current = None
    for result in results:
        if result.status != "open":
            continue
        if result.host != current:
            current = result.host
            lines.append("")
            lines.append(f"Scan report for {result.host} ({result.ip})")
            lines.append("PORT      SERVICE         BANNER")
        port_col = f"{result.port}/open"
        lines.append(f"{port_col:<10}{result.service:<16}{result.banner}".rstrip())
    lines.append("")
    lines.append(f"# PortScanner done at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(lines)


def render_results(results: List[PortResult], fmt: str, targets: List[str], ports: List[int], scan_time: Optional[datetime] = None) -> str:
    """Serialize scan results; fmt is json, csv, xml, zenmap or text (open ports only)."""
    scan_time = scan_time or datetime.now()
    if fmt == "zenmap":
        return render_zenmap(results, targets, scan_time)

    meta_info = {
        "scan_time": scan_time.strftime("%Y-%m-%d %H:%M:%S"),
        "targets": ",".join(targets),
        "ports": ",".join(str(p) for p in ports),
    }
    if fmt == "json":
        return report_writer.render(results, "json", COLUMNS, meta={"scan_info": meta_info})
    if fmt == "xml":
        return report_writer.render(results, "xml", COLUMNS, meta=meta_info, xml_root="portscanner", xml_item="port")
    if fmt == "csv":
        return report_writer.render(results, "csv", COLUMNS)
    open_results = [r for r in results if r.status == "open"]
    return report_writer.render(open_results, "text", COLUMNS, title=f"Open ports ({len(open_results)})")


def load_resolvers(path: str) -> List[str]:
    resolvers = [line for line in load_lines(path) if is_ipv4(line)]
    if not resolvers:
        raise ValidationError(f"No valid resolver addresses in {path}")
    return resolvers
