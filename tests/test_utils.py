"""Tests for csv-to-json and public-ip services."""

import json

import httpx
import pytest

from scripthub.errors import ScriptHubError, ValidationError
from scripthub.schemas.models import PublicIPResult
from scripthub.services.csv_to_json import ConversionOptions, clean_header, convert, convert_file, to_json
from scripthub.services.public_ip import (
    PublicIPResolver,
    apply_info,
    extract_ip,
    render_csv,
    render_json,
    render_template,
    valid_ip,
)


# ============================================================================
# csv-to-json
# ============================================================================

SAMPLE = """ "First Name",Age,Score,Active,Joined,Notes
Ada,36,9.5,true,2024-01-02,
Linus,,7,false,2023-12-31T10:00:00Z,kernel
"""


class TestCsvToJson:
    def test_clean_header(self):
        assert clean_header([' "First Name" ', "e-mail", "", "ok_1"]) == ["First_Name", "email", "field_3", "ok_1"]

    def test_strings_by_default(self):
        records = convert(SAMPLE, ConversionOptions())
        assert records[0] == {"First_Name": "Ada", "Age": "36", "Score": "9.5", "Active": "true", "Joined": "2024-01-02", "Notes": ""}

    def test_type_detection(self):
        records = convert(SAMPLE, ConversionOptions(types=True, date_fields=["Joined"]))
        assert records[0]["Age"] == 36
        assert records[0]["Score"] == 9.5
        assert records[0]["Active"] is True
        assert records[0]["Notes"] is None
        assert records[1]["Age"] is None
        assert records[1]["Active"] is False
        assert records[1]["Joined"] == "2023-12-31T10:00:00Z"

    def test_custom_literals(self):
        options = ConversionOptions(types=True, null_value="NULL", true_value="yes", false_value="no")
        assert convert("a,b,c\nyes,no,NULL\n", options) == [{"a": True, "b": False, "c": None}]

    def test_array_output(self):
        assert convert("a,b\n1,2\n", ConversionOptions(array=True)) == [["a", "b"], ["1", "2"]]

    def test_no_header_with_fields(self):
        options = ConversionOptions(header=False, fields=["host", "port"], types=True)
        assert convert("web1,22\nweb2,80\n", options) == [
            {"host": "web1", "port": 22},
            {"host": "web2", "port": 80},
        ]

    def test_no_header_generated_names(self):
        assert convert("x|y\n", ConversionOptions(header=False, delimiter="|")) == [{"field_1": "x", "field_2": "y"}]

    def test_short_rows_padded(self):
        assert convert("a,b,c\n1\n", ConversionOptions()) == [{"a": "1", "b": None, "c": None}]

    def test_long_rows(self):
        with pytest.raises(ValidationError, match="Line 2: 3 fields, expected 2"):
            convert("a,b\n1,2,3\n", ConversionOptions())
        assert convert("a,b\n1,2,3\n", ConversionOptions(ignore_errors=True)) == [{"a": "1", "b": "2"}]

    def test_blank_lines_skipped(self):
        assert convert("a\n\n1\n\n", ConversionOptions()) == [{"a": "1"}]

    def test_bad_delimiter(self):
        with pytest.raises(ValidationError):
            convert("a", ConversionOptions(delimiter="||"))

    def test_to_json(self):
        assert to_json([{"a": "é"}]) == '[{"a":"é"}]'
        assert to_json([1], pretty=True) == "[\n  1\n]"

    def test_convert_file(self, tmp_path):
        path = tmp_path / "data.csv"
        path.write_text("id,name\n1,web\n", encoding="utf-8")
        assert json.loads(convert_file(str(path), ConversionOptions(types=True))) == [{"id": 1, "name": "web"}]
        with pytest.raises(ValidationError):
            convert_file(str(tmp_path / "missing.csv"), ConversionOptions())


# ============================================================================
# public-ip
# ============================================================================

def _client(routes):
    def handler(request):
        body = routes.get(str(request.url).rstrip("/"))
        if body is None:
            return httpx.Response(503)
        if isinstance(body, dict):
            return httpx.Response(200, json=body)
        return httpx.Response(200, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestPublicIPHelpers:
    def test_extract_ip(self):
        assert extract_ip("ipify", "203.0.113.7\n") == "203.0.113.7"
        assert extract_ip("cloudflare", "fl=1\nip=203.0.113.8\nts=1") == "203.0.113.8"
        assert extract_ip("dyndns", "<html><body>Current IP Address: 203.0.113.9</body></html>") == "203.0.113.9"
        assert extract_ip("aws", "") == ""

    def test_valid_ip(self):
        assert valid_ip("203.0.113.7", 4)
        assert not valid_ip("203.0.113.7", 6)
        assert valid_ip("2001:db8::1", 6)
        assert not valid_ip("<html>", 4)

    def test_render_template(self):
        result = PublicIPResult(ipv4="203.0.113.7", service="ipify", isp="AS64500 Example")
        out = render_template("{ip} via {service} in {city} ({isp}) {unknown}", result, {"city": "Berlin"})
        assert out == "203.0.113.7 via ipify in Berlin (AS64500 Example) {unknown}"

    def test_render_csv_and_json(self):
        result = PublicIPResult(ipv4="203.0.113.7", service="aws")
        assert render_csv(result, with_info=False) == "ipv4,ipv6\n203.0.113.7,"
        apply_info(result, {"org": "AS64500 Example, Inc", "country": "DE", "city": "Berlin"})
        assert render_csv(result, with_info=True).splitlines()[1] == '203.0.113.7,,,Berlin,,DE,"AS64500 Example, Inc"'
        assert render_json(result, {"loc": "52.5,13.4"}) == {"ipv4": "203.0.113.7", "ipv6": "", "service": "aws", "loc": "52.5,13.4"}


class TestPublicIPResolver:
    @pytest.mark.asyncio
    async def test_falls_through_to_next_service(self):
        routes = {
            "https://api.ipify.org": "<html>rate limited</html>",
            "https://checkip.amazonaws.com": "203.0.113.7\n",
        }
        async with _client(routes) as client:
            result = await PublicIPResolver(client=client).lookup()
        assert result.ipv4 == "203.0.113.7"
        assert result.service == "aws"

    @pytest.mark.asyncio
    async def test_both_versions(self):
        routes = {
            "https://ipv4.icanhazip.com": "203.0.113.7",
            "https://ipv6.icanhazip.com": "2001:db8::7",
        }
        async with _client(routes) as client:
            result = await PublicIPResolver(client=client).lookup("icanhazip", "both")
        assert (result.ipv4, result.ipv6) == ("203.0.113.7", "2001:db8::7")
        assert result.ip == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_all_services_fail(self):
        async with _client({}) as client:
            with pytest.raises(ScriptHubError, match="Could not determine public IP"):
                await PublicIPResolver(client=client).lookup("seeip")

    @pytest.mark.asyncio
    async def test_additional_info(self):
        routes = {"https://ipinfo.io/203.0.113.7/json": {"city": "Berlin", "org": "AS64500 Example"}}
        async with _client(routes) as client:
            resolver = PublicIPResolver(client=client)
            assert (await resolver.additional_info("203.0.113.7"))["city"] == "Berlin"
            assert await resolver.additional_info("198.51.100.1") == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,version", [("nope", "ipv4"), ("all", "ipv5")])
    async def test_validation(self, method, version):
        with pytest.raises(ValidationError):
            await PublicIPResolver().lookup(method, version)
