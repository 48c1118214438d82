"""
SSL Certificate Expiry Checker - openssl-based inspection of remote and
local certificates.
"""

import logging
import math
import os
import re
from datetime import datetime, timezone
from typing import List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import CertificateInfo, CheckStatus
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.services.parallel_executor import ParallelExecutor

logger = logging.getLogger("scripthub.ssl")

COLUMNS = ["target", "port", "common_name", "issuer", "expiry", "days_left", "status"]

_PEM_RE = re.compile(r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL)
_CN_RE = re.compile(r"CN\s*=\s*([^,/\n]+)")


def extract_pem(output: str) -> Optional[str]:
    match = _PEM_RE.search(output)
    return match.group(0) + "\n" if match else None


def parse_x509_text(text: str) -> dict:
    """Pick subject, issuer, notAfter and DNS SANs from `openssl x509` output."""
    info = {"subject": "", "issuer": "", "not_after": "", "sans": []}
    lines = text.splitlines()
    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("subject="):
            info["subject"] = stripped[len("subject="):].strip()
        elif stripped.startswith("issuer="):
            info["issuer"] = stripped[len("issuer="):].strip()
        elif stripped.startswith("notAfter="):
            info["not_after"] = stripped[len("notAfter="):].strip()
        elif stripped.startswith("X509v3 Subject Alternative Name") and index + 1 < len(lines):
            info["sans"] = [
                part.strip()[len("DNS:"):]
                for part in lines[index + 1].split(",")
                if part.strip().startswith("DNS:")
            ]
    return info


def common_name(subject: str) -> str:
    match = _CN_RE.search(subject)
    return match.group(1).strip() if match else "Unknown"


def parse_not_after(value: str) -> datetime:
    """'Jun  1 12:00:00 2025 GMT' -> aware UTC datetime."""
    cleaned = " ".join(value.split())
    try:
        parsed = datetime.strptime(cleaned, "%b %d %H:%M:%S %Y %Z")
    except ValueError as e:
        raise ValidationError(f"Unrecognized certificate date '{value}'") from e
    return parsed.replace(tzinfo=timezone.utc)


def days_until(expiry: datetime, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return math.floor((expiry - now).total_seconds() / 86400)


def classify(days_left: int, warning: int, critical: int) -> CheckStatus:
    if days_left <= critical:
        return CheckStatus.CRITICAL
    if days_left <= warning:
        return CheckStatus.WARNING
    return CheckStatus.OK


class SSLExpiryChecker:
    def __init__(self, runner: Optional[CommandRunner] = None, timeout: int = 10):
        self.runner = runner or get_command_runner()
        self.timeout = timeout

    async def fetch_certificate(self, domain: str, port: int) -> str:
        argv = ["openssl", "s_client", "-servername", domain, "-connect", f"{domain}:{port}"]
        result = await self.runner.run(argv, timeout=self.timeout, input="")
        pem = extract_pem(result.stdout)
        if not pem:
            detail = result.stderr.splitlines()[-1] if result.stderr else "no certificate returned"
            raise ValidationError(f"Could not retrieve certificate from {domain}:{port}: {detail}")
        return pem

    async def inspect(self, pem: Optional[str] = None, path: Optional[str] = None) -> dict:
        argv = ["openssl", "x509", "-noout", "-subject", "-issuer", "-enddate", "-ext", "subjectAltName"]
        if path:
            argv.extend(["-in", path])
        result = await self.runner.run(argv, timeout=self.timeout, input=pem)
        if not result.success and "-ext" in argv:
            # openssl < 1.1.1 has no -ext; fall back to the full text dump
            argv = ["openssl", "x509", "-noout", "-subject", "-issuer", "-enddate", "-text"]
            if path:
                argv.extend(["-in", path])
            result = await self.runner.run(argv, timeout=self.timeout, input=pem)
        if not result.success:
            raise ValidationError(f"openssl could not parse the certificate: {result.stderr}")
        return parse_x509_text(result.stdout)

    async def check_target(self, target: str, port: Optional[int], is_file: bool, warning: int, critical: int) -> CertificateInfo:
        cert = CertificateInfo(target=target, port=None if is_file else port)
        try:
            if is_file:
                info = await self.inspect(path=target)
            else:
                info = await self.inspect(pem=await self.fetch_certificate(target, port))
            cert.subject = info["subject"]
            cert.issuer = info["issuer"]
            cert.sans = info["sans"]
            cert.common_name = common_name(info["subject"])
            cert.expiry = parse_not_after(info["not_after"])
        except ValidationError as e:
            cert.status = CheckStatus.ERROR
            cert.error = e.message
            logger.error(f"{target}: {e.message}")
            return cert

        cert.days_left = days_until(cert.expiry)
        cert.status = classify(cert.days_left, warning, critical)
        message = f"{target}: certificate for {cert.common_name} expires {cert.expiry:%Y-%m-%d} ({cert.days_left} days)"
        if cert.status == CheckStatus.OK:
            logger.info(message)
        elif cert.status == CheckStatus.WARNING:
            logger.warning(message)
        else:
            logger.error(message)
        return cert

    async def check(
        self,
        domains: List[str],
        files: List[str],
        port: int = 443,
        warning: int = 30,
        critical: int = 7,
    ) -> List[CertificateInfo]:
        if not domains and not files:
            raise ValidationError("No domains or certificate files specified")
        if critical > warning:
            raise ValidationError("--critical cannot be greater than --warning")
        if not 1 <= port <= 65535:
            raise ValidationError(f"Invalid port {port}")
        for path in files:
            if not os.path.isfile(path):
                raise ValidationError(f"Certificate file not found: {path}")
        require_commands("openssl")

        jobs = [(domain, False) for domain in domains] + [(path, True) for path in files]
        batch = await ParallelExecutor(5).run_batch(
            jobs,
            lambda job: self.check_target(job[0], port, job[1], warning, critical),
            label="ssl-expiry",
        )
        results = list(batch.successful)
        for failure in batch.failed:
            target, is_file = failure.item
            results.append(CertificateInfo(target=target, port=None if is_file else port, status=CheckStatus.ERROR, error=failure.error))
        return results


def alert_body(certs: List[CertificateInfo]) -> str:
    lines = []
    for cert in certs:
        if cert.status in (CheckStatus.WARNING, CheckStatus.CRITICAL):
            lines.append(f"[{cert.status.value}] {cert.target}: {cert.common_name} expires in {cert.days_left} days ({cert.expiry:%Y-%m-%d})")
        elif cert.status == CheckStatus.ERROR:
            lines.append(f"[ERROR] {cert.target}: {cert.error}")
    return "\n".join(lines)
