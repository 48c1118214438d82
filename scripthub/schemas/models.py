"""
ScriptHub result models.

Every tool returns one of these; the report writer serializes them through
model_dump() so field order here is column order in CSV/table output.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CheckStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    FAIL = "FAIL"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class ErrorType(str, Enum):
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    EXECUTION_ERROR = "execution_error"


# ============================================================================
# Batch execution
# ============================================================================

class TaskFailure(BaseModel):
    """One item of a batch that raised instead of returning."""
    item: Any
    error: str
    error_type: ErrorType = ErrorType.EXECUTION_ERROR
    recoverable: bool = False


class BatchResult(BaseModel):
    """Outcome of a ParallelExecutor batch. Successful results keep input order."""
    label: str = ""
    successful: List[Any] = Field(default_factory=list)
    failed: List[TaskFailure] = Field(default_factory=list)
    duration: float = 0.0


# ============================================================================
# Automation
# ============================================================================

class SSHTaskResult(BaseModel):
    host: str
    command: str
    exit_code: int
    output: str = ""
    success: bool = False


class SSHRunSummary(BaseModel):
    total: int = 0
    completed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[SSHTaskResult] = Field(default_factory=list)


class CleanupSummary(BaseModel):
    action: str
    dry_run: bool = False
    candidates: List[str] = Field(default_factory=list)
    processed: int = 0
    failed: int = 0
    bytes_affected: int = 0


class BackupResult(BaseModel):
    source: str
    path: str
    mode: str
    size_bytes: int = 0
    removed: List[str] = Field(default_factory=list)


class RotationResult(BaseModel):
    log_file: str
    rotated: bool = False
    backup_path: Optional[str] = None
    removed: List[str] = Field(default_factory=list)


class PackageUpdate(BaseModel):
    name: str
    current: str = ""
    available: str = ""
    repository: str = ""


class UpdateResult(BaseModel):
    package_manager: str
    available: List[PackageUpdate] = Field(default_factory=list)
    upgraded: bool = False
    reboot_required: bool = False
    reboot_scheduled: bool = False


class DeployResult(BaseModel):
    app_type: str
    environment: str
    destination: str
    backup_path: Optional[str] = None
    steps: List[str] = Field(default_factory=list)
    restarted: Optional[str] = None


# ============================================================================
# Networking
# ============================================================================

class PortResult(BaseModel):
    host: str
    ip: str
    port: int
    status: str
    service: str = "unknown"
    banner: str = ""


class InterfaceSample(BaseModel):
    timestamp: datetime
    interface: str
    rx_bytes: int
    tx_bytes: int
    rx_bps: float
    tx_bps: float
    rx_mbps: float
    tx_mbps: float


class BandwidthReport(BaseModel):
    interface: str
    duration: float = 0.0
    samples: int = 0
    total_rx_bytes: int = 0
    total_tx_bytes: int = 0
    avg_rx_mbps: float = 0.0
    avg_tx_mbps: float = 0.0
    peak_rx_mbps: float = 0.0
    peak_tx_mbps: float = 0.0


class DNSLatencyResult(BaseModel):
    domain: str
    nameserver: str
    min_ms: float = 0.0
    avg_ms: float = 0.0
    max_ms: float = 0.0
    stdev_ms: float = 0.0
    success_rate: float = 0.0
    successful: int = 0
    total: int = 0


class BlacklistResult(BaseModel):
    target: str
    ip: str
    zone: str
    description: str = ""
    listed: bool = False
    response: str = ""


class FirewallRule(BaseModel):
    firewall: str
    table: str = ""
    chain: str = ""
    number: str = ""
    protocol: str = ""
    source: str = ""
    destination: str = ""
    interface: str = ""
    port: str = ""
    target: str = ""
    options: str = ""


# ============================================================================
# Monitoring
# ============================================================================

class DiskUsage(BaseModel):
    filesystem: str
    size_kb: int
    used_kb: int
    avail_kb: int
    percent: int
    mount: str
    status: CheckStatus = CheckStatus.OK


class HttpCheckResult(BaseModel):
    timestamp: datetime
    url: str
    status_code: int = 0
    total_time: float = 0.0
    pattern_match: Optional[bool] = None
    status: CheckStatus = CheckStatus.UNKNOWN
    error: str = ""


class CertificateInfo(BaseModel):
    target: str
    port: Optional[int] = None
    common_name: str = "Unknown"
    subject: str = ""
    issuer: str = ""
    sans: List[str] = Field(default_factory=list)
    expiry: Optional[datetime] = None
    days_left: Optional[int] = None
    status: CheckStatus = CheckStatus.UNKNOWN
    error: str = ""


class ResourceSample(BaseModel):
    timestamp: datetime
    cpu_percent: float
    memory_percent: float
    memory_used: int
    memory_total: int
    swap_percent: float
    load_1m: float
    status: CheckStatus = CheckStatus.OK


class ServiceStatus(BaseModel):
    name: str
    state: str
    running: bool = False
    action: str = "none"
    attempts: int = 0
    status: CheckStatus = CheckStatus.UNKNOWN


# ============================================================================
# Security
# ============================================================================

class IntegrityChange(BaseModel):
    kind: str  # NEW | MODIFIED | MISSING
    path: str
    old_hash: str = ""
    new_hash: str = ""


class IntegrityReport(BaseModel):
    checked_at: datetime
    algorithm: str
    total: int = 0
    changes: List[IntegrityChange] = Field(default_factory=list)

    def count(self, kind: str) -> int:
        return sum(1 for change in self.changes if change.kind == kind)


class LoginOffender(BaseModel):
    ip: str
    count: int
    blocked: bool = False


class FailedLoginReport(BaseModel):
    log_file: str
    checked_at: datetime
    offenders: List[LoginOffender] = Field(default_factory=list)
    alerts: List[LoginOffender] = Field(default_factory=list)
    blocked: List[str] = Field(default_factory=list)


class PasswordAudit(BaseModel):
    """Password aging settings of one account compared with the policy."""
    user: str
    compliant: bool = True
    last_change: str = ""
    min_days: int = 0
    max_days: int = 99999
    warn_days: int = 7
    inactive_days: int = -1
    issues: List[str] = Field(default_factory=list)


# ============================================================================
# Containers / cloud / utilities
# ============================================================================

class CleanupStep(BaseModel):
    name: str
    success: bool = True
    reclaimed: str = ""
    detail: str = ""


class DockerSection(BaseModel):
    """One block of docker-monitor output: a listing plus summary counts."""
    name: str
    title: str
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)


class NodeInfo(BaseModel):
    name: str
    status: str
    roles: List[str] = Field(default_factory=list)
    version: str = ""
    internal_ip: str = ""
    os_image: str = ""
    container_runtime: str = ""
    age: str = ""
    cpu_capacity: str = ""
    cpu_allocatable: str = ""
    memory_capacity: str = ""
    memory_allocatable: str = ""
    cpu_percent: Optional[int] = None
    memory_percent: Optional[int] = None
    pressures: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status.split(",")[0] == "Ready"


class SnapshotInfo(BaseModel):
    name: str
    creation_timestamp: str = ""
    disk_size_gb: str = ""
    storage_bytes: str = ""


class SnapshotRotationResult(BaseModel):
    created: Optional[str] = None
    kept: List[str] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class PublicIPResult(BaseModel):
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    service: str = ""
    isp: str = ""
    country: str = ""
    city: str = ""
    region: str = ""
    hostname: str = ""

    @property
    def ip(self) -> str:
        return self.ipv4 or self.ipv6 or ""
