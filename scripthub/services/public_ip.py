"""
Public IP - discover the host's public address from well-known echo services.
"""

import ipaddress
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from scripthub.errors import ScriptHubError, ValidationError
from scripthub.schemas.models import PublicIPResult

logger = logging.getLogger("scripthub.publicip")

# service -> (IPv4 endpoint, IPv6 endpoint)
SERVICES: Dict[str, Tuple[Optional[str], Optional[str]]] = {
    "ipify": ("https://api.ipify.org", "https://api6.ipify.org"),
    "aws": ("https://checkip.amazonaws.com", None),
    "cloudflare": ("https://1.1.1.1/cdn-cgi/trace", None),
    "ipecho": ("https://ipecho.net/plain", None),
    "icanhazip": ("https://ipv4.icanhazip.com", "https://ipv6.icanhazip.com"),
    "wtfismyip": ("https://wtfismyip.com/text", None),
    "ipinfo": ("https://ipinfo.io/ip", None),
    "ifconfig": ("https://ifconfig.me/ip", None),
    "dyndns": ("https://checkip.dyndns.org/", None),
    "seeip": ("https://api.seeip.org", None),
}
INFO_URL = "https://ipinfo.io/{ip}/json"
INFO_KEYS = ("hostname", "city", "region", "country", "loc", "postal", "org", "timezone")
VERSIONS = ("ipv4", "ipv6", "both")

_IPV4_IN_TEXT_RE = re.compile(r"(?:\d{1,3}\.){3}\d{1,3}")
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def extract_ip(service: str, body: str) -> str:
    """Pull the address out of a service's response body."""
    text = body.strip()
    if service == "cloudflare":
        for line in text.splitlines():
            if line.startswith("ip="):
                return line[3:].strip()
        return ""
    if service == "dyndns":
        match = _IPV4_IN_TEXT_RE.search(text)
        return match.group(0) if match else ""
    return text.splitlines()[0].strip() if text else ""


def valid_ip(value: str, version: int) -> bool:
    try:
        return ipaddress.ip_address(value).version == version
    except ValueError:
        return False


class PublicIPResolver:
    def __init__(self, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def _fetch(self, client: httpx.AsyncClient, service: str, url: str, version: int) -> Optional[str]:
        try:
            response = await client.get(url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"{service}: request to {url} failed: {e}")
            return None
        ip = extract_ip(service, response.text)
        if not valid_ip(ip, version):
            logger.debug(f"{service}: invalid IPv{version} answer '{ip[:60]}'")
            return None
        return ip

    async def query_service(self, client: httpx.AsyncClient, service: str, version: str) -> PublicIPResult:
        ipv4_url, ipv6_url = SERVICES[service]
        result = PublicIPResult(service=service)
        if version in ("ipv4", "both") and ipv4_url:
            result.ipv4 = await self._fetch(client, service, ipv4_url, 4)
        if version in ("ipv6", "both") and ipv6_url:
            result.ipv6 = await self._fetch(client, service, ipv6_url, 6)
        return result

    async def lookup(self, method: str = "all", version: str = "ipv4") -> PublicIPResult:
        """
        Ask the chosen service (or each in turn for "all") for the public IP.

        Raises:
            ScriptHubError: no service returned a valid address
        """
        if version not in VERSIONS:
            raise ValidationError(f"Unknown IP version '{version}'")
        if method != "all" and method not in SERVICES:
            raise ValidationError(f"Unknown method '{method}' (use all or one of: {', '.join(SERVICES)})")

        services = list(SERVICES) if method == "all" else [method]
        client = self._client or httpx.AsyncClient(follow_redirects=True, headers={"User-Agent": "curl/8"})
        try:
            for service in services:
                logger.debug(f"Trying {service}")
                result = await self.query_service(client, service, version)
                if result.ipv4 or result.ipv6:
                    logger.debug(f"{service} answered {result.ipv4 or ''} {result.ipv6 or ''}".strip())
                    return result
        finally:
            if self._client is None:
                await client.aclose()
        raise ScriptHubError(f"Could not determine public IP using: {', '.join(services)}")

    async def additional_info(self, ip: str) -> Dict[str, Any]:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.get(INFO_URL.format(ip=ip), timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to get additional info for {ip}: {e}")
            return {}
        finally:
            if self._client is None:
                await client.aclose()


def apply_info(result: PublicIPResult, info: Dict[str, Any]) -> None:
    result.isp = info.get("org", "")
    result.country = info.get("country", "")
    result.city = info.get("city", "")
    result.region = info.get("region", "")
    result.hostname = info.get("hostname", "")


def render_template(template: str, result: PublicIPResult, info: Dict[str, Any]) -> str:
    values = {key: str(info.get(key, "N/A")) for key in INFO_KEYS}
    values.update({
        "ip": result.ip,
        "ipv4": result.ipv4 or "",
        "ipv6": result.ipv6 or "",
        "isp": result.isp or "N/A",
        "service": result.service,
    })
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def render_csv(result: PublicIPResult, with_info: bool) -> str:
    if not with_info:
        return f"ipv4,ipv6\n{result.ipv4 or ''},{result.ipv6 or ''}"
    fields = [result.ipv4 or "", result.ipv6 or "", result.hostname, result.city, result.region, result.country, f'"{result.isp}"']
    return "ipv4,ipv6,hostname,city,region,country,org\n" + ",".join(fields)


def render_json(result: PublicIPResult, info: Dict[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"ipv4": result.ipv4 or "", "ipv6": result.ipv6 or "", "service": result.service}
    payload.update(info)
    return payload


def available_services() -> List[str]:
    return list(SERVICES)
