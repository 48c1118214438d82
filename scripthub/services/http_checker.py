"""
HTTP Response Checker - status, content and timing checks for URLs.

All URLs share one httpx.AsyncClient. Retries apply to transport errors
only; an unexpected status code is an answer, not a failure to retry.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from scripthub.errors import ValidationError
from scripthub.schemas.models import CheckStatus, HttpCheckResult

logger = logging.getLogger("scripthub.http")

COLUMNS = ["timestamp", "url", "status_code", "total_time", "pattern_match", "status"]


@dataclass
class HttpCheckOptions:
    method: str = "GET"
    data: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    auth: Optional[str] = None
    timeout: float = 10.0
    retries: int = 1
    expected: List[int] = field(default_factory=lambda: [200])
    pattern: Optional[str] = None
    insecure: bool = False
    max_time: Optional[float] = None
    retry_delay: float = 1.0


def parse_headers(values: List[str]) -> Dict[str, str]:
    headers = {}
    for value in values or []:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise ValidationError(f"Invalid header '{value}' (use 'Name: value')")
        headers[name.strip()] = content.strip()
    return headers


def parse_expected(value: str) -> List[int]:
    codes = []
    for part in str(value).split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 100 <= int(part) <= 599:
            raise ValidationError(f"Invalid status code '{part}'")
        codes.append(int(part))
    if not codes:
        raise ValidationError("At least one expected status code is required")
    return codes


def evaluate(status_code: int, elapsed: float, body: str, options: HttpCheckOptions) -> HttpCheckResult:
    """Apply the status, pattern and timing rules to one response."""
    result = HttpCheckResult(
        timestamp=datetime.now(),
        url="",
        status_code=status_code,
        total_time=round(elapsed, 3),
    )
    ok = status_code in options.expected
    if options.pattern:
        result.pattern_match = re.search(options.pattern, body) is not None
        ok = ok and result.pattern_match
    if options.max_time is not None and elapsed > options.max_time:
        ok = False
    result.status = CheckStatus.OK if ok else CheckStatus.FAIL
    return result


class HttpChecker:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def check_url(self, client: httpx.AsyncClient, url: str, options: HttpCheckOptions) -> HttpCheckResult:
        auth = None
        if options.auth:
            user, _, password = options.auth.partition(":")
            auth = httpx.BasicAuth(user, password)

        attempts = options.retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            try:
                response = await client.request(
                    options.method.upper(),
                    url,
                    content=options.data,
                    headers=options.headers,
                    auth=auth,
                    timeout=options.timeout,
                )
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.debug(f"{url}: attempt {attempt}/{attempts} failed: {last_error}")
                if attempt < attempts:
                    await asyncio.sleep(options.retry_delay)
                continue

            elapsed = time.perf_counter() - start
            result = evaluate(response.status_code, elapsed, response.text, options)
            result.url = url
            self._log(result, options)
            return result

        logger.error(f"{url}: connection failed after {attempts} attempt(s): {last_error}")
        return HttpCheckResult(timestamp=datetime.now(), url=url, status=CheckStatus.ERROR, error=last_error)

    def _log(self, result: HttpCheckResult, options: HttpCheckOptions) -> None:
        detail = f"{result.url}: HTTP {result.status_code} in {result.total_time:.3f}s"
        if result.status == CheckStatus.OK:
            logger.info(f"{detail} - OK")
            return
        reasons = []
        if result.status_code not in options.expected:
            reasons.append(f"expected {','.join(map(str, options.expected))}")
        if result.pattern_match is False:
            reasons.append("pattern not found")
        if options.max_time is not None and result.total_time > options.max_time:
            reasons.append(f"slower than {options.max_time}s")
        logger.warning(f"{detail} - FAIL ({'; '.join(reasons)})")

    async def check(self, urls: List[str], options: HttpCheckOptions) -> List[HttpCheckResult]:
        if not urls:
            raise ValidationError("No URLs specified")
        for url in urls:
            if not url.startswith(("http://", "https://")):
                raise ValidationError(f"Invalid URL '{url}' (must start with http:// or https://)")
        if options.pattern:
            try:
                re.compile(options.pattern)
            except re.error as e:
                raise ValidationError(f"Invalid pattern '{options.pattern}': {e}") from e

        client = self._client or httpx.AsyncClient(verify=not options.insecure, follow_redirects=False)
        try:
            return list(await asyncio.gather(*(self.check_url(client, url, options) for url in urls)))
        finally:
            if self._client is None:
                await client.aclose()
