"""
DNS Latency - query timing per (domain, nameserver) pair via dig.
"""

import asyncio
import logging
import re
import statistics
from typing import Dict, List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import DNSLatencyResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.services.parallel_executor import ParallelExecutor

logger = logging.getLogger("scripthub.dns")

RECORD_TYPES = ("A", "AAAA", "MX", "NS", "TXT", "SOA", "CNAME", "PTR")
SORT_FIELDS = {
    "name": "domain",
    "server": "nameserver",
    "min": "min_ms",
    "avg": "avg_ms",
    "max": "max_ms",
    "stdev": "stdev_ms",
}
SYSTEM_RESOLVER = "system"

PUBLIC_RESOLVERS: Dict[str, str] = {
    "8.8.8.8": "Google Public DNS",
    "8.8.4.4": "Google Public DNS",
    "1.1.1.1": "Cloudflare DNS",
    "1.0.0.1": "Cloudflare DNS",
    "9.9.9.9": "Quad9 DNS",
    "149.112.112.112": "Quad9 DNS",
    "208.67.222.222": "OpenDNS",
    "208.67.220.220": "OpenDNS",
    "64.6.64.6": "Verisign Public DNS",
    "64.6.65.6": "Verisign Public DNS",
}

CSV_HEADERS = [
    "Domain", "Nameserver", "Min (ms)", "Avg (ms)", "Max (ms)", "StDev",
    "Success Rate (%)", "Successful Queries", "Total Queries",
]
COLUMNS = ["domain", "nameserver", "min_ms", "avg_ms", "max_ms", "stdev_ms", "success_rate", "successful", "total"]

_QUERY_TIME_RE = re.compile(r";;\s*Query time:\s*(\d+)\s*msec")
_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9])?\.)*[A-Za-z0-9_-]{1,63}\.?$")


def is_valid_domain(domain: str) -> bool:
    return bool(_DOMAIN_RE.match(domain))


def parse_query_time(output: str) -> Optional[int]:
    match = _QUERY_TIME_RE.search(output)
    return int(match.group(1)) if match else None


def compute_stats(domain: str, nameserver: str, times: List[int], total: int) -> DNSLatencyResult:
    """Min/avg/max, sample standard deviation and success rate of one pair."""
    result = DNSLatencyResult(domain=domain, nameserver=nameserver, successful=len(times), total=total)
    if total:
        result.success_rate = round(len(times) * 100 / total, 1)
    if not times:
        return result
    result.min_ms = float(min(times))
    result.max_ms = float(max(times))
    result.avg_ms = round(statistics.mean(times), 1)
    result.stdev_ms = round(statistics.stdev(times), 1) if len(times) > 1 else 0.0
    return result


def sort_results(results: List[DNSLatencyResult], sort_by: str = "avg") -> List[DNSLatencyResult]:
    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"Unknown sort field '{sort_by}' (use {', '.join(SORT_FIELDS)})")
    attribute = SORT_FIELDS[sort_by]
    return sorted(results, key=lambda r: (getattr(r, attribute), r.domain, r.nameserver))


def nameserver_label(nameserver: str) -> str:
    provider = PUBLIC_RESOLVERS.get(nameserver)
    return f"{nameserver} ({provider})" if provider else nameserver


class DNSLatencyChecker:
    def __init__(self, runner: Optional[CommandRunner] = None, max_concurrent: int = 5):
        self.runner = runner or get_command_runner()
        self.max_concurrent = max_concurrent

    async def query(self, domain: str, nameserver: str, record_type: str, timeout: int) -> Optional[int]:
        """One dig query; returns the reported query time or None on failure."""
        argv = ["dig", "+tries=1", f"+time={timeout}", "+stats"]
        if nameserver != SYSTEM_RESOLVER:
            argv.append(f"@{nameserver}")
        argv.extend([domain, record_type])
        result = await self.runner.run(argv, timeout=timeout + 5)
        if not result.success:
            logger.debug(f"dig {domain} @{nameserver} failed: {result.stderr}")
            return None
        return parse_query_time(result.stdout)

    async def measure(
        self,
        domain: str,
        nameserver: str,
        record_type: str = "A",
        count: int = 3,
        timeout: int = 2,
        wait_ms: int = 100,
    ) -> DNSLatencyResult:
        times = []
        for attempt in range(count):
            elapsed = await self.query(domain, nameserver, record_type, timeout)
            if elapsed is not None:
                times.append(elapsed)
                logger.debug(f"{domain} @{nameserver}: {elapsed} ms")
            if wait_ms and attempt < count - 1:
                await asyncio.sleep(wait_ms / 1000)
        return compute_stats(domain, nameserver, times, count)

    async def check(
        self,
        domains: List[str],
        nameservers: Optional[List[str]] = None,
        record_type: str = "A",
        count: int = 3,
        timeout: int = 2,
        wait_ms: int = 100,
        sort_by: str = "avg",
    ) -> List[DNSLatencyResult]:
        """Measure every domain against every nameserver (system resolver when none)."""
        if not domains:
            raise ValidationError("No domains specified")
        record_type = record_type.upper()
        if record_type not in RECORD_TYPES:
            raise ValidationError(f"Unsupported record type '{record_type}'")
        if count < 1:
            raise ValidationError("--count must be at least 1")
        require_commands("dig")

        for domain in domains:
            if not is_valid_domain(domain):
                logger.warning(f"'{domain}' does not look like a valid domain name")

        servers = nameservers or [SYSTEM_RESOLVER]
        pairs = [(domain, server) for domain in domains for server in servers]
        logger.info(f"Testing {len(domains)} domain(s) against {len(servers)} nameserver(s), {count} queries each")

        batch = await ParallelExecutor(self.max_concurrent).run_batch(
            pairs,
            lambda pair: self.measure(pair[0], pair[1], record_type, count, timeout, wait_ms),
            label="dns-latency",
        )
        results = list(batch.successful)
        for failure in batch.failed:
            domain, server = failure.item
            logger.error(f"Measurement for {domain} @{server} failed: {failure.error}")
            results.append(compute_stats(domain, server, [], count))
        return sort_results(results, sort_by)
