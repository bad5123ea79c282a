"""
Pydantic models for discovery runs, credentials, protocol capabilities and inventory.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from idrac_discovery import config
from idrac_discovery.utils import utc_now


class Protocol(str, Enum):
    REDFISH = "REDFISH"
    WSMAN = "WSMAN"
    RACADM = "RACADM"
    IPMI = "IPMI"
    SSH = "SSH"


# Lower value = more preferred
PROTOCOL_PRIORITY: Dict[Protocol, int] = {
    Protocol.REDFISH: 1,
    Protocol.WSMAN: 2,
    Protocol.RACADM: 3,
    Protocol.IPMI: 4,
    Protocol.SSH: 5,
}


class ProtocolStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class ErrorClass(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    UNSUPPORTED = "unsupported"
    CANCELLED = "cancelled"


class UpdateMode(str, Enum):
    SIMPLE_UPDATE = "SIMPLE_UPDATE"
    INSTALL_FROM_REPOSITORY = "INSTALL_FROM_REPOSITORY"
    MULTIPART_UPDATE = "MULTIPART_UPDATE"
    OS_DRIVER_UPDATE = "OS_DRIVER_UPDATE"
    CUSTOM_PROTOCOL = "CUSTOM_PROTOCOL"


class DellGeneration(str, Enum):
    G11 = "11G"
    G12 = "12G"
    G13 = "13G"
    G14 = "14G"
    G15 = "15G"
    G16 = "16G"
    UNKNOWN = "UNKNOWN"


class Readiness(str, Enum):
    READY = "ready"
    MAINTENANCE_REQUIRED = "maintenance_required"
    NOT_SUPPORTED = "not_supported"


class SkipReason(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"


class FailureStage(str, Enum):
    CREDENTIAL_RESOLUTION = "credential-resolution"
    PROBE = "probe"
    COMPLIANCE = "compliance"


class RunState(str, Enum):
    EXPANDING = "expanding"
    SCANNING = "scanning"
    AGGREGATING = "aggregating"
    DONE = "done"


class CredentialScheme(str, Enum):
    HTTP = "http"
    HTTPS = "https"


class CredentialSource(str, Enum):
    HOST_OVERRIDE = "host_override"
    ASSIGNMENT = "assignment"
    DEFAULT_PROFILE = "default_profile"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Address space
# ---------------------------------------------------------------------------

class AddressRange(BaseModel):
    """Inclusive IPv4 range."""
    start: str
    end: str


class IpScope(BaseModel):
    """Subnet registered for a datacenter."""
    subnet: str
    vlan: Optional[int] = None
    description: Optional[str] = None


class AddressSpaceSpec(BaseModel):
    """What a discovery run should scan: explicit ranges and/or datacenter scopes."""
    ranges: List[AddressRange] = []
    scopes: List[IpScope] = []
    datacenter_id: Optional[str] = None

    @classmethod
    def from_range(cls, start: str, end: str) -> "AddressSpaceSpec":
        return cls(ranges=[AddressRange(start=start, end=end)])

    @classmethod
    def from_scopes(cls, scopes: List[IpScope], datacenter_id: Optional[str] = None) -> "AddressSpaceSpec":
        return cls(scopes=list(scopes), datacenter_id=datacenter_id)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialProfile(BaseModel):
    """Named, reusable management-interface credential. Read-only to the engine."""
    id: str
    name: str
    username: str
    secret: str = Field(repr=False)
    port: int = 443
    protocol: CredentialScheme = CredentialScheme.HTTPS
    priority_order: int = 100
    is_default: bool = False


class CredentialAssignment(BaseModel):
    """Binds a profile to an IP scope (CIDR subnet or explicit start/end range)."""
    id: Optional[str] = None
    profile_id: str
    subnet: Optional[str] = None
    range_start: Optional[str] = None
    range_end: Optional[str] = None
    vlan: Optional[int] = None
    is_active: bool = True


class HostCredentialOverride(BaseModel):
    """Pins a profile to one address; tried before any scope assignment."""
    address: str
    profile_id: str


class CredentialCandidate(BaseModel):
    username: str
    secret: str = Field(repr=False)
    port: int = 443
    protocol_scheme: CredentialScheme = CredentialScheme.HTTPS
    profile_id: Optional[str] = None
    profile_name: Optional[str] = None
    source: CredentialSource = CredentialSource.MANUAL

    @property
    def label(self) -> str:
        return self.profile_name or self.source.value

    def identity_key(self) -> tuple:
        return (self.username, self.secret, self.port, self.protocol_scheme)


class CredentialPolicy(BaseModel):
    """Read-only credential data shared by every worker during a run."""
    profiles: List[CredentialProfile] = []
    assignments: List[CredentialAssignment] = []
    host_overrides: List[HostCredentialOverride] = []
    manual_fallback: Optional[CredentialCandidate] = None

    def is_empty(self) -> bool:
        return not self.profiles and self.manual_fallback is None


# ---------------------------------------------------------------------------
# Protocol capabilities and host results
# ---------------------------------------------------------------------------

class HostFacts(BaseModel):
    """Host identity/state facts a probe managed to read."""
    hostname: Optional[str] = None
    model: Optional[str] = None
    service_tag: Optional[str] = None
    manufacturer: Optional[str] = None
    bios_version: Optional[str] = None
    idrac_version: Optional[str] = None
    power_state: Optional[str] = None

    def merged_with(self, other: Optional["HostFacts"]) -> "HostFacts":
        """Fill fields missing here from other; values already present win."""
        if other is None:
            return self
        updates = {
            name: value for name, value in other.model_dump().items()
            if value is not None and getattr(self, name) is None
        }
        return self.model_copy(update=updates)


class ProtocolCapability(BaseModel):
    protocol: Protocol
    supported: bool = False
    manager_type: Optional[str] = None
    firmware_version: Optional[str] = None
    generation: DellGeneration = DellGeneration.UNKNOWN
    update_modes: List[UpdateMode] = []
    priority: int
    latency_ms: Optional[int] = None
    status: ProtocolStatus = ProtocolStatus.UNREACHABLE
    error_class: Optional[ErrorClass] = None
    details: Optional[str] = None
    checked_at: datetime = Field(default_factory=utc_now)
    stale: bool = False
    host_facts: Optional[HostFacts] = Field(default=None, exclude=True, repr=False)

    @property
    def is_healthy(self) -> bool:
        return self.supported and self.status == ProtocolStatus.HEALTHY

    @property
    def reached_authentication(self) -> bool:
        """True when the endpoint answered but rejected the credential."""
        return self.error_class == ErrorClass.AUTHENTICATION


def select_healthiest(protocols: List[ProtocolCapability]) -> Optional[ProtocolCapability]:
    """Lowest priority value among healthy, non-stale capabilities."""
    healthy = [p for p in protocols if p.is_healthy and not p.stale]
    if not healthy:
        return None
    return min(healthy, key=lambda p: (p.priority, p.protocol.value))


class ComplianceSnapshot(BaseModel):
    bios_outdated: bool = False
    idrac_outdated: bool = False
    available_update_count: int = 0
    readiness: Readiness = Readiness.NOT_SUPPORTED
    generation: DellGeneration = DellGeneration.UNKNOWN
    baseline_model: Optional[str] = None


class FirmwareBaseline(BaseModel):
    """Current firmware for a model line; model "*" matches every model."""
    model: str
    bios_version: Optional[str] = None
    idrac_version: Optional[str] = None
    supported: bool = True
    minimum_generation: Optional[DellGeneration] = None


class HostDiscoveryResult(BaseModel):
    address: str
    hostname: Optional[str] = None
    model: Optional[str] = None
    service_tag: Optional[str] = None
    manufacturer: Optional[str] = None
    bios_version: Optional[str] = None
    idrac_version: Optional[str] = None
    power_state: Optional[str] = None
    protocols: List[ProtocolCapability] = []
    healthiest_protocol: Optional[ProtocolCapability] = None
    compliance: Optional[ComplianceSnapshot] = None
    credential_profile_id: Optional[str] = None
    credential_source: Optional[CredentialSource] = None
    discovered_at: datetime = Field(default_factory=utc_now)

    @property
    def generation(self) -> DellGeneration:
        for capability in sorted(self.protocols, key=lambda p: p.priority):
            if capability.generation != DellGeneration.UNKNOWN:
                return capability.generation
        return DellGeneration.UNKNOWN


class SkippedHost(BaseModel):
    """Terminal per-host outcome that produced no inventory result."""
    address: str
    reason: SkipReason
    stage: FailureStage = FailureStage.PROBE
    detail: Optional[str] = None
    discovered_at: datetime = Field(default_factory=utc_now)


class HostFailureEvent(BaseModel):
    """Structured record handed to the operational-events collaborator."""
    address: str
    stage: FailureStage
    reason: str
    detail: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

class DiscoveryOptions(BaseModel):
    """Per-run knobs; defaults come from idrac_discovery.config."""
    concurrency: int = 16
    probe_timeout: float = 10.0
    protocols: List[Protocol] = list(PROTOCOL_PRIORITY)
    check_firmware: bool = True
    baselines: List[FirmwareBaseline] = []
    use_cache: bool = False

    @classmethod
    def from_config(cls, **overrides) -> "DiscoveryOptions":
        values = {
            "concurrency": config.DISCOVERY_MAX_WORKERS,
            "probe_timeout": config.PROBE_TIMEOUT_SECONDS,
        }
        values.update(overrides)
        return cls(**values)


class DiscoveryProgress(BaseModel):
    state: RunState = RunState.EXPANDING
    dispatched: int = 0
    completed: int = 0
    total: Optional[int] = None

    @property
    def percent(self) -> Optional[float]:
        if not self.total:
            return None
        return round(self.completed * 100.0 / self.total, 1)


class DiscoverySummary(BaseModel):
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    unreachable: int = 0
    auth_failed: int = 0
    no_credentials: int = 0
    cancelled: bool = False


class DiscoveryRun(BaseModel):
    requested: AddressSpaceSpec
    results: List[HostDiscoveryResult] = []
    skipped: List[SkippedHost] = []
    unreachable_count: int = 0
    state: RunState = RunState.EXPANDING
    cancelled: bool = False
    progress: DiscoveryProgress = Field(default_factory=DiscoveryProgress)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def summary(self) -> DiscoverySummary:
        """Counts per terminal outcome; healthy = has a healthy protocol."""
        healthy = sum(1 for r in self.results if r.healthiest_protocol is not None)
        reasons = [s.reason for s in self.skipped]
        return DiscoverySummary(
            total=len(self.results) + len(self.skipped),
            healthy=healthy,
            degraded=len(self.results) - healthy,
            unreachable=reasons.count(SkipReason.UNREACHABLE),
            auth_failed=reasons.count(SkipReason.AUTH_FAILED),
            no_credentials=reasons.count(SkipReason.NO_CREDENTIALS),
            cancelled=self.cancelled,
        )


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

class InventoryRecord(BaseModel):
    """Persisted per-address inventory row."""
    address: str
    hostname: Optional[str] = None
    model: Optional[str] = None
    service_tag: Optional[str] = None
    manufacturer: Optional[str] = None
    bios_version: Optional[str] = None
    idrac_version: Optional[str] = None
    power_state: Optional[str] = None
    protocols: List[ProtocolCapability] = []
    healthiest_protocol: Optional[Protocol] = None
    compliance: Optional[ComplianceSnapshot] = None
    credential_profile_id: Optional[str] = None
    discovered_at: datetime
    first_seen_at: datetime


class MergeSummary(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
