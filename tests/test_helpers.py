"""Tests for units, targets and report_writer helpers."""

import json

import pytest

from scripthub.errors import ValidationError
from scripthub.schemas.models import CheckStatus, DiskUsage
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.targets import (
    COMMON_PORTS,
    MAX_EXPANDED_HOSTS,
    expand_targets,
    is_ipv4,
    load_lines,
    parse_ports,
    reverse_ipv4,
    service_name,
)
from scripthub.services.helpers.units import (
    bps_to_mbps,
    bytes_per_second,
    format_bytes,
    parse_percent,
    parse_size,
)


# ============================================================================
# units
# ============================================================================

class TestParseSize:
    @pytest.mark.parametrize("value,expected", [
        ("100", 100),
        ("10K", 10 * 1024),
        ("5M", 5 * 1024 ** 2),
        ("1G", 1024 ** 3),
        ("2mb", 2 * 1024 ** 2),
        (" 3 K ", 3 * 1024),
    ])
    def test_valid(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "10T", "-5M", "1.5G"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_size(value)


class TestFormatBytes:
    def test_small_values_are_bytes(self):
        assert format_bytes(0) == "0 bytes"
        assert format_bytes(1023) == "1023 bytes"

    def test_auto_unit(self):
        assert format_bytes(1024) == "1.00 KB"
        assert format_bytes(1536 * 1024) == "1.50 MB"
        assert format_bytes(3 * 1024 ** 3) == "3.00 GB"

    def test_fixed_unit(self):
        assert format_bytes(2048, "KB") == "2.00 KB"
        assert format_bytes(2048, "bytes") == "2048 bytes"

    def test_unknown_unit(self):
        with pytest.raises(ValidationError):
            format_bytes(10, "PB")


class TestRates:
    def test_bytes_per_second(self):
        assert bytes_per_second(1000, 3000, 2) == 1000.0

    def test_counter_wrap_gives_zero(self):
        assert bytes_per_second(5000, 100, 1) == 0.0

    def test_zero_interval(self):
        assert bytes_per_second(0, 100, 0) == 0.0

    def test_mbps(self):
        assert bps_to_mbps(125_000) == 1.0

    def test_parse_percent(self):
        assert parse_percent("85%") == 85
        assert parse_percent("-") is None
        assert parse_percent("") is None


# ============================================================================
# targets
# ============================================================================

class TestExpandTargets:
    def test_hostname_passes_through(self):
        assert expand_targets(["example.com"]) == ["example.com"]

    def test_last_octet_range(self):
        assert expand_targets(["10.0.0.1-3"]) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_full_range(self):
        assert expand_targets(["10.0.0.254-10.0.1.1"]) == ["10.0.0.254", "10.0.0.255", "10.0.1.0", "10.0.1.1"]

    def test_cidr_uses_host_addresses(self):
        assert expand_targets(["192.168.1.0/30"]) == ["192.168.1.1", "192.168.1.2"]

    def test_cidr_32_and_31(self):
        assert expand_targets(["192.168.1.7/32"]) == ["192.168.1.7"]
        assert expand_targets(["192.168.1.6/31"]) == ["192.168.1.6", "192.168.1.7"]

    def test_duplicates_dropped_order_kept(self):
        assert expand_targets(["b.example", "10.0.0.1-2", "10.0.0.2", "b.example"]) == [
            "b.example", "10.0.0.1", "10.0.0.2",
        ]

    def test_blank_entries_ignored(self):
        assert expand_targets(["", "  ", "host"]) == ["host"]

    def test_reversed_range_rejected(self):
        with pytest.raises(ValidationError):
            expand_targets(["10.0.0.9-10.0.0.1"])

    def test_bad_last_octet_range(self):
        with pytest.raises(ValidationError):
            expand_targets(["10.0.0.20-10"])

    def test_cidr_too_large(self):
        with pytest.raises(ValidationError, match=str(MAX_EXPANDED_HOSTS)):
            expand_targets(["10.0.0.0/8"])

    def test_invalid_cidr(self):
        with pytest.raises(ValidationError):
            expand_targets(["10.0.0.300/24"])


class TestParsePorts:
    def test_empty_gives_common_ports(self):
        assert parse_ports("") == COMMON_PORTS

    def test_list_and_ranges_sorted_unique(self):
        assert parse_ports("443,22,20-23") == [20, 21, 22, 23, 443]

    @pytest.mark.parametrize("spec", ["0", "70000", "a", "10-5", "1-x"])
    def test_invalid(self, spec):
        with pytest.raises(ValidationError):
            parse_ports(spec)

    def test_service_name(self):
        assert service_name(22) == "ssh"
        assert service_name(12345) == "unknown"


class TestAddressHelpers:
    def test_is_ipv4(self):
        assert is_ipv4("1.2.3.4")
        assert not is_ipv4("example.com")
        assert not is_ipv4("::1")

    def test_reverse(self):
        assert reverse_ipv4("1.2.3.4") == "4.3.2.1"

    def test_reverse_rejects_hostname(self):
        with pytest.raises(ValidationError):
            reverse_ipv4("example.com")


class TestLoadLines:
    def test_skips_blanks_and_comments(self, tmp_path):
        path = tmp_path / "hosts.txt"
        path.write_text("# servers\nweb1\n\n  db1  \n#old\n")
        assert load_lines(str(path)) == ["web1", "db1"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_lines(str(tmp_path / "nope.txt"))


# ============================================================================
# report_writer
# ============================================================================

@pytest.fixture
def disks():
    return [
        DiskUsage(filesystem="/dev/sda1", size_kb=1000, used_kb=950, avail_kb=50, percent=95, mount="/", status=CheckStatus.CRITICAL),
        DiskUsage(filesystem="/dev/sdb1", size_kb=1000, used_kb=100, avail_kb=900, percent=10, mount="/data disk", status=CheckStatus.OK),
    ]


class TestRender:
    def test_text_table(self, disks):
        out = report_writer.render(disks, "text", ["mount", "percent", "status"], title="Disks")
        lines = out.splitlines()
        assert lines[0] == "Disks"
        assert lines[2].split() == ["Mount", "Percent", "Status"]
        assert "CRITICAL" in lines[4]
        assert lines[5].startswith("/data disk")

    def test_table_alias(self, disks):
        assert report_writer.render(disks, "table", ["mount"]) == report_writer.render(disks, "text", ["mount"])

    def test_csv(self, disks):
        out = report_writer.render(disks, "csv", ["mount", "percent"], headers=["Mount", "Use%"])
        assert out.splitlines() == ["Mount,Use%", "/,95", "/data disk,10"]

    def test_csv_without_header(self, disks):
        out = report_writer.render(disks, "csv", ["mount"], show_header=False)
        assert out.splitlines() == ["/", "/data disk"]

    def test_json_selects_columns(self, disks):
        data = json.loads(report_writer.render(disks, "json", ["mount", "status"]))
        assert data == [{"mount": "/", "status": "CRITICAL"}, {"mount": "/data disk", "status": "OK"}]

    def test_json_with_meta(self, disks):
        data = json.loads(report_writer.render(disks[:1], "json", ["mount"], meta={"host": "h1"}))
        assert data["host"] == "h1"
        assert data["results"] == [{"mount": "/"}]

    def test_xml_escapes(self):
        out = report_writer.render([{"name": "a<b"}], "xml", xml_root="rules", xml_item="rule")
        assert "<rules>" in out
        assert "<rule>" in out
        assert "<name>a&lt;b</name>" in out

    def test_html(self, disks):
        out = report_writer.render(disks, "html", ["mount"], title="Disk <Report>")
        assert "<title>Disk &lt;Report&gt;</title>" in out
        assert "<td>/data disk</td>" in out

    def test_cells(self):
        out = report_writer.render([{"a": True, "b": None, "c": 1.23456, "d": ["x", "y"]}], "csv")
        assert out.splitlines()[1] == "true,,1.235,x;y"

    def test_unknown_format(self, disks):
        with pytest.raises(ValidationError):
            report_writer.render(disks, "yaml")

    def test_unsupported_record(self):
        with pytest.raises(TypeError):
            report_writer.render([object()], "csv")


class TestWriteOutput:
    def test_stdout(self, capsys):
        report_writer.write_output("hello")
        assert capsys.readouterr().out == "hello\n"

    def test_file_and_append(self, tmp_path):
        target = tmp_path / "sub" / "out.txt"
        report_writer.write_output("one", str(target))
        report_writer.write_output("two", str(target), append=True)
        assert target.read_text() == "one\ntwo\n"

    def test_overwrite(self, tmp_path):
        target = tmp_path / "out.txt"
        report_writer.write_output("one", str(target))
        report_writer.write_output("two", str(target))
        assert target.read_text() == "two\n"
