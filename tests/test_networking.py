"""Tests for port-scan, bandwidth, dns-latency, blacklist and firewall-report services."""

import asyncio
import json
import socket
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from scripthub.commands import networking
from scripthub.errors import ValidationError
from scripthub.schemas.models import FirewallRule, PortResult
from scripthub.services import bandwidth_monitor, blacklist_checker, dns_latency, firewall_report, port_scanner
from scripthub.services.bandwidth_monitor import BandwidthMonitor, compute_samples, resolve_interfaces
from scripthub.services.blacklist_checker import BlacklistChecker, select_blacklists
from scripthub.services.dns_latency import DNSLatencyChecker, compute_stats, parse_query_time, sort_results
from scripthub.services.firewall_report import FirewallReporter, parse_firewalld_zone, parse_iptables, parse_nft_ruleset, parse_ufw
from scripthub.services.port_scanner import PortScanner, ScanOptions, clean_banner, parse_nmap_state

from conftest import fail, ok


# ============================================================================
# port-scan
# ============================================================================

def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def banner_server():
    async def handle(reader, writer):
        writer.write(b"SSH-2.0-OpenSSH_9.6\r\n")
        await writer.drain()
        await reader.read(1024)
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield port
    server.close()
    await server.wait_closed()


class TestPortScanHelpers:
    def test_clean_banner(self):
        assert clean_banner(b"\r\n\x00\x01220 mail.example.com ESMTP Postfix\r\nmore") == "220 mail.example.com ESMTP Postfix"
        assert clean_banner(b"x" * 80) == "x" * 50
        assert clean_banner(b"\x00\x01") == ""

    def test_parse_nmap_state(self):
        output = "PORT   STATE         SERVICE\n53/udp open|filtered domain\n22/tcp open  ssh"
        assert parse_nmap_state(output, 22) == "open"
        assert parse_nmap_state(output, 53) == "open|filtered"
        assert parse_nmap_state(output, 80) == "closed"


class TestPortScanner:
    @pytest.mark.asyncio
    async def test_tcp_scan_open_and_closed(self, banner_server, runner):
        closed = _free_port()
        options = ScanOptions(targets=["127.0.0.1"], ports=[banner_server, closed], timeout=1.0, banner=True, quiet=True)
        results = await PortScanner(runner).scan(options)

        assert [r.port for r in results] == [banner_server, closed]
        assert results[0].status == "open"
        assert results[0].banner == "SSH-2.0-OpenSSH_9.6"
        assert results[1].status == "closed"
        runner.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_progress_reports_total(self, runner):
        seen = []
        options = ScanOptions(targets=["127.0.0.1"], ports=[_free_port()], timeout=0.5, quiet=True)
        await PortScanner(runner).scan(options, progress=lambda done, total: seen.append((done, total)))
        assert seen == [(1, 1)]

    @pytest.mark.asyncio
    async def test_udp_uses_nmap(self, runner):
        runner.run.return_value = ok("PORT   STATE SERVICE\n161/udp open  snmp")
        options = ScanOptions(targets=["10.0.0.1"], ports=[161], scan_type="udp", quiet=True)
        with patch.object(port_scanner, "require_commands"):
            results = await PortScanner(runner).scan(options)
        argv = runner.run.call_args.args[0]
        assert argv[:5] == ["nmap", "-T4", "-Pn", "-sU", "-p"]
        assert results[0].status == "open"

    @pytest.mark.asyncio
    async def test_resolver_file_used_for_names(self, runner):
        runner.run.return_value = ok("cname.example.com.\n93.184.216.34")
        options = ScanOptions(targets=["example.com"], ports=[80], resolvers=["9.9.9.9"])
        ip = await PortScanner(runner).resolve("example.com", options)
        assert ip == "93.184.216.34"
        assert runner.run.call_args.args[0] == ["dig", "+short", "@9.9.9.9", "example.com"]

    @pytest.mark.asyncio
    async def test_no_resolve_keeps_name(self, runner):
        options = ScanOptions(targets=["example.com"], ports=[80], no_resolve=True)
        assert await PortScanner(runner).resolve("example.com", options) == "example.com"

    @pytest.mark.asyncio
    async def test_invalid_scan_type(self, runner):
        with pytest.raises(ValidationError):
            await PortScanner(runner).scan(ScanOptions(targets=["h"], ports=[1], scan_type="xmas"))


class TestPortScanOutput:
    @pytest.fixture
    def results(self):
        return [
            PortResult(host="web", ip="10.0.0.1", port=22, status="open", service="ssh", banner="SSH-2.0"),
            PortResult(host="web", ip="10.0.0.1", port=23, status="closed", service="telnet"),
        ]

    def test_text_lists_open_only(self, results):
        out = port_scanner.render_results(results, "text", ["web"], [22, 23])
        assert "Open ports (1)" in out
        assert "telnet" not in out

    def test_json_has_scan_info(self, results):
        data = json.loads(port_scanner.render_results(results, "json", ["web"], [22, 23], datetime(2024, 1, 1)))
        assert data["scan_info"] == {"scan_time": "2024-01-01 00:00:00", "targets": "web", "ports": "22,23"}
        assert len(data["results"]) == 2

    def test_xml(self, results):
        out = port_scanner.render_results(results, "xml", ["web"], [22])
        assert out.count("  </port>") == 2
        assert "<portscanner>" in out

    def test_zenmap(self, results):
        out = port_scanner.render_results(results, "zenmap", ["web"], [22], datetime(2024, 1, 1))
        assert "Scan report for web (10.0.0.1)" in out
        assert "22/open" in out
        assert "23/open" not in out

    def test_load_resolvers(self, tmp_path):
        path = tmp_path / "resolvers.txt"
        path.write_text("1.1.1.1\nnot-an-ip\n8.8.8.8\n")
        assert port_scanner.load_resolvers(str(path)) == ["1.1.1.1", "8.8.8.8"]


class TestPortScanProgress:
    def test_quiet_has_no_progress(self):
        assert networking.scan_progress(quiet=True, verbose=True, tty=True) is None

    def test_terminal_draws_bar(self):
        with patch.object(networking, "progress_bar") as bar:
            networking.scan_progress(quiet=False, verbose=False, tty=True)(3, 9)
        bar.assert_called_once_with(3, 9, "ports")

    def test_without_terminal_logs_every_ten(self):
        with patch.object(networking, "logger") as log:
            callback = networking.scan_progress(quiet=False, verbose=False, tty=False)
            for done in range(1, 26):
                callback(done, 25)
        assert [c.args[0] for c in log.info.call_args_list] == [
            "Progress: 10/25 ports checked",
            "Progress: 20/25 ports checked",
            "Progress: 25/25 ports checked",
        ]

    def test_verbose_logs_every_port(self):
        with patch.object(networking, "logger") as log:
            callback = networking.scan_progress(quiet=False, verbose=True, tty=False)
            for done in range(1, 6):
                callback(done, 5)
        assert log.info.call_count == 5


# ============================================================================
# bandwidth
# ============================================================================

def _reader(readings):
    iterator = iter(readings)
    return lambda interfaces=None: next(iterator)


class TestBandwidth:
    def test_resolve_interfaces(self):
        assert resolve_interfaces(None, ["lo", "eth1", "eth0"]) == ["eth0", "eth1"]
        assert resolve_interfaces("eth1", ["lo", "eth1"]) == ["eth1"]
        with pytest.raises(ValidationError):
            resolve_interfaces("wlan0", ["lo", "eth0"])
        with pytest.raises(ValidationError):
            resolve_interfaces(None, ["lo"])

    def test_compute_samples(self):
        samples = compute_samples({"eth0": (1000, 0)}, {"eth0": (126_000, 500), "new0": (5, 5)}, 1.0)
        assert len(samples) == 1
        assert samples[0].rx_bps == 125_000
        assert samples[0].rx_mbps == 1.0
        assert samples[0].tx_bps == 500

    def test_counter_reset_is_zero(self):
        samples = compute_samples({"eth0": (5000, 5000)}, {"eth0": (10, 10)}, 1.0)
        assert samples[0].rx_bps == 0
        assert samples[0].tx_bps == 0

    @pytest.mark.asyncio
    async def test_run_tracks_totals_and_alerts(self, tmp_path):
        readings = [
            {"eth0": (0, 0)},
            {"eth0": (1_000_000, 1000)},
            {"eth0": (3_000_000, 2000)},
            {"eth0": (3_500_000, 2500)},
        ]
        log_file = tmp_path / "bw.csv"
        notifier = AsyncMock()
        monitor = BandwidthMonitor(
            ["eth0"], interval=0.01, stat="rx", alert_mbps=1.0,
            notifier=notifier, log_file=str(log_file), counter_reader=_reader(readings),
        )
        seen = []
        reports = await monitor.run(duration=0.035, on_sample=lambda sample, tracker: seen.append(sample))

        assert len(seen) == 3
        assert reports[0].samples == 3
        assert reports[0].total_rx_bytes == 3_500_000
        assert reports[0].total_tx_bytes == 2500
        assert monitor.alerts == 3
        assert notifier.send.await_count == 3
        lines = log_file.read_text().splitlines()
        assert lines[0] == bandwidth_monitor.CSV_HEADER
        assert len(lines) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rx,tx,expected", [(6.0, 6.0, []), (12.0, 6.0, ["Download"]), (12.0, 15.0, ["Download", "Upload"])])
    async def test_both_directions_checked_separately(self, rx, tx, expected):
        sample = compute_samples({"eth0": (0, 0)}, {"eth0": (int(rx * 125_000), int(tx * 125_000))}, 1.0)[0]
        notifier = AsyncMock()
        monitor = BandwidthMonitor(["eth0"], stat="both", alert_mbps=10, notifier=notifier)
        await monitor._check_alert(sample)

        assert monitor.alerts == len(expected)
        subjects = [c.args[0] for c in notifier.send.await_args_list]
        assert [s.split()[3] for s in subjects] == expected

    def test_format_report(self):
        report = bandwidth_monitor.BandwidthTracker("eth0", (0, 0)).report(10)
        out = bandwidth_monitor.format_report([report], show_peak=True)
        assert "Interface:        eth0" in out
        assert "Peak RX" in out

    def test_invalid_stat(self):
        with pytest.raises(ValidationError):
            BandwidthMonitor(["eth0"], stat="up")


# ============================================================================
# dns-latency
# ============================================================================

DIG_OUTPUT = """
;; ANSWER SECTION:
example.com.  300  IN  A  93.184.216.34

;; Query time: {ms} msec
;; SERVER: 8.8.8.8#53(8.8.8.8)
"""


class TestDNSLatency:
    def test_parse_query_time(self):
        assert parse_query_time(DIG_OUTPUT.format(ms=23)) == 23
        assert parse_query_time(";; connection timed out") is None

    def test_compute_stats(self):
        result = compute_stats("example.com", "8.8.8.8", [10, 20, 30], 4)
        assert result.min_ms == 10
        assert result.max_ms == 30
        assert result.avg_ms == 20
        assert result.stdev_ms == 10
        assert result.success_rate == 75.0

    def test_compute_stats_no_answers(self):
        result = compute_stats("example.com", "8.8.8.8", [], 3)
        assert result.successful == 0
        assert result.avg_ms == 0

    def test_sort(self):
        rows = [compute_stats("b.com", "s", [30], 1), compute_stats("a.com", "s", [10], 1)]
        assert [r.domain for r in sort_results(rows, "avg")] == ["a.com", "b.com"]
        with pytest.raises(ValidationError):
            sort_results(rows, "speed")

    @pytest.mark.asyncio
    async def test_check(self, runner):
        times = {"1.1.1.1": [5, 7], "8.8.8.8": [20, 30]}

        async def fake_run(argv, timeout=None):
            server = argv[4][1:]
            if server == "8.8.8.8" and times[server] == [30]:
                times[server].pop()
                return fail("timed out", exit_code=9)
            return ok(DIG_OUTPUT.format(ms=times[server].pop(0)))

        runner.run.side_effect = fake_run
        with patch.object(dns_latency, "require_commands"):
            results = await DNSLatencyChecker(runner).check(
                ["example.com"], ["8.8.8.8", "1.1.1.1"], count=2, wait_ms=0,
            )

        assert [r.nameserver for r in results] == ["1.1.1.1", "8.8.8.8"]
        assert results[0].avg_ms == 6
        assert results[1].successful == 1
        assert results[1].success_rate == 50.0
        assert runner.run.call_args_list[0].args[0][:4] == ["dig", "+tries=1", "+time=2", "+stats"]

    @pytest.mark.asyncio
    async def test_system_resolver_has_no_server_argument(self, runner):
        runner.run.return_value = ok(DIG_OUTPUT.format(ms=1))
        with patch.object(dns_latency, "require_commands"):
            await DNSLatencyChecker(runner).check(["example.com"], count=1, wait_ms=0)
        assert runner.run.call_args.args[0] == ["dig", "+tries=1", "+time=2", "+stats", "example.com", "A"]

    @pytest.mark.asyncio
    async def test_bad_record_type(self, runner):
        with pytest.raises(ValidationError):
            await DNSLatencyChecker(runner).check(["example.com"], record_type="XYZ")


# ============================================================================
# blacklist
# ============================================================================

class TestBlacklist:
    def test_select_dedupes(self):
        zones = select_blacklists(["mail", "proxy"])
        assert list(zones).count("cbl.abuseat.org") == 1
        assert "tor.dan.me.uk" in zones
        assert "sbl.spamhaus.org" not in zones

    def test_custom_file(self, tmp_path):
        path = tmp_path / "zones.txt"
        path.write_text("bl.example.org:Example BL\nother.example.org\n")
        assert select_blacklists(["all"], str(path)) == {"bl.example.org": "Example BL", "other.example.org": "other.example.org"}

    def test_unknown_category(self):
        with pytest.raises(ValidationError):
            select_blacklists(["malware"])

    @pytest.mark.asyncio
    async def test_check_lists_and_summarizes(self, runner):
        async def fake_run(argv, timeout=None):
            name = argv[4]
            if name == "mail.example.com":
                return ok("10.0.0.9")
            if name == "4.3.2.1.zen.spamhaus.org":
                return ok('"Listed by ZEN"') if argv[-1] == "TXT" else ok("127.0.0.2")
            return ok("")

        runner.run.side_effect = fake_run
        zones = {"zen.spamhaus.org": "Spamhaus ZEN", "bl.spamcop.net": "SpamCop"}
        with patch.object(blacklist_checker, "require_commands"):
            results, summaries = await BlacklistChecker(runner).check(["1.2.3.4", "mail.example.com"], zones)

        assert len(results) == 4
        listed = [r for r in results if r.listed]
        assert len(listed) == 1
        assert listed[0].response == "127.0.0.2 Listed by ZEN"
        assert [s.ip for s in summaries] == ["1.2.3.4", "10.0.0.9"]
        assert summaries[1].listed == []

        report = blacklist_checker.format_report(summaries)
        assert "Addresses blacklisted: 1" in report
        assert "1.2.3.4 (1.2.3.4): zen.spamhaus.org" in report

    @pytest.mark.asyncio
    async def test_duplicate_targets_checked_once(self, runner):
        runner.run.return_value = ok("")
        with patch.object(blacklist_checker, "require_commands"):
            results, summaries = await BlacklistChecker(runner).check(
                ["1.2.3.4", "5.6.7.8", "1.2.3.4", " 5.6.7.8 "], {"z.example": "Z"}
            )
        assert [s.target for s in summaries] == ["1.2.3.4", "5.6.7.8"]
        assert len(results) == 2
        assert all(s.checked == 1 for s in summaries)
        assert runner.run.call_count == 2

    @pytest.mark.asyncio
    async def test_no_resolve_skips_domains(self, runner):
        with patch.object(blacklist_checker, "require_commands"):
            results, summaries = await BlacklistChecker(runner).check(["mail.example.com"], {"z.example": "Z"}, no_resolve=True)
        assert results == []
        assert summaries == []
        runner.run.assert_not_called()


# ============================================================================
# firewall-report
# ============================================================================

IPTABLES_FILTER = """Chain INPUT (policy ACCEPT 0 packets, 0 bytes)
num   pkts bytes target     prot opt in     out     source               destination
1      100  6000 ACCEPT     tcp  --  eth0   *       0.0.0.0/0            0.0.0.0/0            tcp dpt:22
2        0     0 DROP       all  --  *      *       10.0.0.5             0.0.0.0/0

Chain DOCKER (1 references)
num   pkts bytes target     prot opt in     out     source               destination
1        0     0 ACCEPT     tcp  --  !docker0 docker0  0.0.0.0/0            172.17.0.2           tcp dpt:80
"""

NFT_RULESET = json.dumps({"nftables": [
    {"metainfo": {"version": "1.0.9"}},
    {"table": {"family": "inet", "name": "filter", "handle": 1}},
    {"rule": {"family": "inet", "table": "filter", "chain": "input", "handle": 4, "expr": [
        {"match": {"op": "==", "left": {"payload": {"protocol": "tcp", "field": "dport"}}, "right": 22}},
        {"accept": None},
    ]}},
    {"rule": {"family": "inet", "table": "filter", "chain": "input", "handle": 5, "expr": [
        {"match": {"op": "==", "left": {"meta": {"key": "iifname"}}, "right": "eth0"}},
        {"match": {"op": "==", "left": {"payload": {"protocol": "ip", "field": "saddr"}}, "right": {"prefix": {"addr": "10.0.0.0", "len": 8}}}},
        {"drop": None},
    ]}},
]})

UFW_STATUS = """Status: active

     To                         Action      From
     --                         ------      ----
[ 1] 22/tcp                     ALLOW IN    Anywhere
[ 2] 80,443/tcp                 ALLOW IN    192.168.1.0/24
[ 3] 22/tcp (v6)                ALLOW IN    Anywhere (v6)
"""

FIREWALLD_ZONE = """public (active)
  target: default
  interfaces: eth0
  sources:
  services: ssh dhcpv6-client
  ports: 8080/tcp
  rich rules:
\trule family="ipv4" source address="10.0.0.1" port port="22" protocol="tcp" reject
"""


class TestFirewallParsers:
    def test_iptables_hides_builtin_chains(self):
        rules = parse_iptables(IPTABLES_FILTER, "filter")
        assert len(rules) == 1
        assert rules[0].chain == "DOCKER"
        assert rules[0].interface == "!docker0,docker0"
        assert rules[0].port == "80"

    def test_iptables_show_defaults(self):
        rules = parse_iptables(IPTABLES_FILTER, "filter", show_defaults=True)
        assert [r.chain for r in rules] == ["INPUT", "INPUT", "DOCKER"]
        assert rules[0].interface == "eth0"
        assert rules[0].port == "22"
        assert rules[1].source == "10.0.0.5"
        assert rules[1].target == "DROP"

    def test_nft(self):
        rules = parse_nft_ruleset(NFT_RULESET)
        assert len(rules) == 2
        assert (rules[0].table, rules[0].chain, rules[0].number) == ("inet filter", "input", "4")
        assert (rules[0].protocol, rules[0].port, rules[0].target) == ("tcp", "22", "accept")
        assert (rules[1].interface, rules[1].source, rules[1].target) == ("eth0", "10.0.0.0/8", "drop")

    def test_nft_bad_json(self):
        with pytest.raises(ValidationError):
            parse_nft_ruleset("{not json")

    def test_ufw(self):
        rules = parse_ufw(UFW_STATUS)
        assert [r.port for r in rules] == ["22", "80,443", "22"]
        assert rules[1].source == "192.168.1.0/24"
        assert rules[2].protocol == "tcp"
        assert all(r.target == "ALLOW" and r.chain == "IN" for r in rules)

    def test_ufw_inactive(self):
        assert parse_ufw("Status: inactive") == []

    def test_firewalld(self):
        rules = parse_firewalld_zone("public", FIREWALLD_ZONE)
        assert [r.chain for r in rules] == ["services", "services", "ports", "rich"]
        assert rules[0].options == "service ssh"
        assert rules[2].port == "8080"
        rich = rules[3]
        assert (rich.source, rich.port, rich.protocol, rich.target) == ("10.0.0.1", "22", "tcp", "reject")
        assert all(r.interface == "eth0" for r in rules)

    def test_filter_rules(self):
        rules = [
            FirewallRule(firewall="ufw", interface="eth0", port="22"),
            FirewallRule(firewall="ufw", interface="eth1", port="80,443"),
        ]
        assert firewall_report.filter_rules(rules, interface="eth1") == [rules[1]]
        assert firewall_report.filter_rules(rules, port="443") == [rules[1]]

    def test_summary_and_diff(self, tmp_path):
        rules = parse_ufw(UFW_STATUS)
        summary = firewall_report.summarize(rules)
        assert "Total rules: 3" in summary
        previous = tmp_path / "prev.txt"
        previous.write_text("a\nb\n")
        assert "+c" in firewall_report.diff_reports(str(previous), "a\nc\n")
        assert firewall_report.diff_reports(str(previous), "a\nb").startswith("No differences")


class TestFirewallReporter:
    @pytest.mark.asyncio
    async def test_auto_picks_first_active(self, runner):
        async def fake_run(argv, timeout=None):
            if argv == ["iptables", "-L", "-n"]:
                return fail("not available")
            if argv == ["ufw", "status"]:
                return ok("Status: active")
            if argv == ["ufw", "status", "numbered"]:
                return ok(UFW_STATUS)
            return fail("no")

        runner.run.side_effect = fake_run
        with patch.object(firewall_report, "command_exists", return_value=True):
            rules = await FirewallReporter(runner).collect("auto")
        assert len(rules) == 3
        assert rules[0].firewall == "ufw"

    @pytest.mark.asyncio
    async def test_named_firewall_must_be_active(self, runner):
        runner.run.return_value = fail("no")
        with patch.object(firewall_report, "command_exists", return_value=True):
            with pytest.raises(ValidationError, match="not active"):
                await FirewallReporter(runner).collect("nftables")

    @pytest.mark.asyncio
    async def test_nothing_detected(self, runner):
        with patch.object(firewall_report, "command_exists", return_value=False):
            with pytest.raises(ValidationError, match="No active firewall"):
                await FirewallReporter(runner).collect("auto")
