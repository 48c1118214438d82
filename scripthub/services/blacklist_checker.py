"""
IP Blacklist Checker - DNSBL lookups for IPs and domains.

A listing is any A answer for <reversed-ip>.<zone>; the zone's TXT record,
when present, explains why.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from scripthub.errors import ValidationError
from scripthub.schemas.models import BlacklistResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.services.helpers.targets import is_ipv4, load_lines, reverse_ipv4
from scripthub.services.parallel_executor import ParallelExecutor

logger = logging.getLogger("scripthub.blacklist")

MAIL_BLACKLISTS: Dict[str, str] = {
    "zen.spamhaus.org": "Spamhaus ZEN",
    "bl.spamcop.net": "SpamCop",
    "dnsbl.sorbs.net": "SORBS",
    "cbl.abuseat.org": "Composite Blocking List",
    "b.barracudacentral.org": "Barracuda",
    "bl.emailbasura.org": "EmailBasura",
    "bl.spamcannibal.org": "SpamCannibal",
    "ubl.unsubscore.com": "Unsubscore",
    "dnsbl-1.uceprotect.net": "UCEPROTECT Level 1",
    "mail-abuse.blacklist.jippg.org": "JIPPG Mail Abuse",
}

SPAM_BLACKLISTS: Dict[str, str] = {
    "sbl.spamhaus.org": "Spamhaus SBL",
    "xbl.spamhaus.org": "Spamhaus XBL",
    "pbl.spamhaus.org": "Spamhaus PBL",
    "spam.dnsbl.sorbs.net": "SORBS Spam",
    "recent.spam.dnsbl.sorbs.net": "SORBS Recent Spam",
    "l2.apews.org": "APEWS Level 2",
    "bl.spamcop.net": "SpamCop",
    "dnsbl.spfbl.net": "SPFBL",
    "z.mailspike.net": "Mailspike Z",
    "hostkarma.junkemailfilter.com": "Hostkarma",
}

PROXY_BLACKLISTS: Dict[str, str] = {
    "tor.dan.me.uk": "TOR Nodes",
    "torexit.dan.me.uk": "TOR Exit Nodes",
    "exitnodes.tor.dnsbl.sectoor.de": "Sectoor TOR Exit Nodes",
    "dnsbl.tornevall.org": "Tornevall",
    "proxy.bl.gweep.ca": "Gweep Proxy",
    "cbl.abuseat.org": "Composite Blocking List",
    "dnsbl.webequipped.com": "WebEquipped",
    "socks.dnsbl.sorbs.net": "SORBS SOCKS Proxies",
    "misc.dnsbl.sorbs.net": "SORBS Misc Proxies",
}

CATEGORIES = {
    "mail": MAIL_BLACKLISTS,
    "spam": SPAM_BLACKLISTS,
    "proxy": PROXY_BLACKLISTS,
}


def select_blacklists(categories: List[str], custom_file: Optional[str] = None) -> Dict[str, str]:
    """Zones for the chosen categories, deduplicated; a custom file replaces them."""
    if custom_file:
        zones: Dict[str, str] = {}
        for line in load_lines(custom_file):
            zone, _, description = line.partition(":")
            zones[zone.strip()] = description.strip() or zone.strip()
        if not zones:
            raise ValidationError(f"No blacklists found in {custom_file}")
        return zones

    selected: Dict[str, str] = {}
    for category in categories or ["all"]:
        if category == "all":
            for zones in CATEGORIES.values():
                for zone, description in zones.items():
                    selected.setdefault(zone, description)
            continue
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown blacklist category '{category}'")
        for zone, description in CATEGORIES[category].items():
            selected.setdefault(zone, description)
    return selected


@dataclass
class TargetSummary:
    target: str
    ip: str
    checked: int
    listed: List[BlacklistResult]


class BlacklistChecker:
    def __init__(self, runner: Optional[CommandRunner] = None, timeout: int = 2, concurrent: int = 5):
        self.runner = runner or get_command_runner()
        self.timeout = timeout
        self.concurrent = concurrent

    async def _dig(self, name: str, record_type: str = "A") -> List[str]:
        argv = ["dig", f"+time={self.timeout}", "+tries=1", "+short", name]
        if record_type != "A":
            argv.append(record_type)
        result = await self.runner.run(argv, timeout=self.timeout + 3)
        if not result.success:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip() and not line.startswith(";")]

    async def resolve(self, target: str, no_resolve: bool = False) -> Optional[str]:
        """IPv4 literal as is; a domain resolves to its first IPv4 answer."""
        if is_ipv4(target):
            return target
        if no_resolve:
            logger.warning(f"Skipping {target}: not an IPv4 address and resolution is disabled")
            return None
        for answer in await self._dig(target):
            if is_ipv4(answer):
                logger.debug(f"Resolved {target} to {answer}")
                return answer
        logger.warning(f"Skipping {target}: could not resolve to an IPv4 address")
        return None

    async def lookup(self, target: str, ip: str, zone: str, description: str) -> BlacklistResult:
        query = f"{reverse_ipv4(ip)}.{zone}"
        answers = await self._dig(query)
        result = BlacklistResult(target=target, ip=ip, zone=zone, description=description)
        if answers:
            result.listed = True
            txt = await self._dig(query, "TXT")
            response = answers[0]
            if txt:
                response += " " + " ".join(t.strip('"') for t in txt)
            result.response = response
            logger.warning(f"{ip} is BLACKLISTED on {zone} ({description}): {response}")
        else:
            logger.debug(f"{ip} is clean on {zone}")
        return result

    async def check(
        self,
        targets: List[str],
        blacklists: Dict[str, str],
        no_resolve: bool = False,
    ) -> Tuple[List[BlacklistResult], List[TargetSummary]]:
        """
        Check every target against every zone.

        Returns:
            (all lookup results, one summary per checked target)
        """
        if not targets:
            raise ValidationError("No IP addresses or domains to check")
        require_commands("dig")

        resolved = []
        for target in dict.fromkeys(t.strip() for t in targets if t.strip()):
            ip = await self.resolve(target, no_resolve)
            if ip:
                resolved.append((target, ip))

        jobs = [(target, ip, zone, description) for target, ip in resolved for zone, description in blacklists.items()]
        logger.info(f"Checking {len(resolved)} address(es) against {len(blacklists)} blacklist(s)")

        batch = await ParallelExecutor(self.concurrent).run_batch(
            jobs,
            lambda job: self.lookup(*job),
            label="blacklist",
        )
        for failure in batch.failed:
            target, ip, zone, _ = failure.item
            logger.warning(f"Lookup of {ip} on {zone} failed: {failure.error}")

        results: List[BlacklistResult] = batch.successful
        summaries = []
        for target, ip in resolved:
            mine = [r for r in results if r.target == target]
            listed = [r for r in mine if r.listed]
            summaries.append(TargetSummary(target=target, ip=ip, checked=len(mine), listed=listed))
            if listed:
                logger.error(f"{target} ({ip}) is listed on {len(listed)} of {len(mine)} blacklists")
            else:
                logger.info(f"{target} ({ip}) is clean on all {len(mine)} blacklists")
        return results, summaries


def format_report(summaries: List[TargetSummary]) -> str:
    total_listed = [s for s in summaries if s.listed]
    zone_hits = Counter(r.zone for s in summaries for r in s.listed)

    lines = [
        "IP Blacklist Report",
        "=" * 40,
        f"Addresses checked:     {len(summaries)}",
        f"Addresses blacklisted: {len(total_listed)}",
        f"Addresses clean:       {len(summaries) - len(total_listed)}",
    ]
    if total_listed:
        lines.append("")
        lines.append("Blacklisted addresses:")
        for summary in total_listed:
            zones = ", ".join(r.zone for r in summary.listed)
            lines.append(f"  {summary.target} ({summary.ip}): {zones}")
    if zone_hits:
        lines.append("")
        lines.append("Most frequent blacklists:")
        for zone, hits in zone_hits.most_common(10):
            lines.append(f"  {zone}: {hits}")
    return "\n".join(lines)
