"""
Base class for out-of-band management protocol probes.

A probe answers one question for one (host, credential) pair: does this
protocol work, and what can it tell us about the host. probe() never raises;
every failure becomes an unreachable ProtocolCapability with an ErrorClass.
"""

import logging
import re
import threading
import time
from typing import Optional

from idrac_discovery.errors import ProbeError, classify_error
from idrac_discovery.models import (
    PROTOCOL_PRIORITY,
    CredentialCandidate,
    DellGeneration,
    ErrorClass,
    HostFacts,
    Protocol,
    ProtocolCapability,
    ProtocolStatus,
)

logger = logging.getLogger(__name__)

_PRODUCT_GENERATIONS = (
    ("idrac10", DellGeneration.G16),
    ("idrac9", DellGeneration.G14),
    ("idrac8", DellGeneration.G13),
    ("idrac7", DellGeneration.G12),
)


def generation_from_firmware(version: Optional[str]) -> DellGeneration:
    """
    Map an iDRAC firmware version to a server generation by its major number.

    2.x and older -> 11G, 3.x -> 12G, 4.x -> 13G, 5.x -> 14G, 6.x -> 15G, 7.x+ -> 16G
    """
    if not version:
        return DellGeneration.UNKNOWN
    match = re.match(r"\s*(\d+)", version)
    if not match:
        return DellGeneration.UNKNOWN
    major = int(match.group(1))
    if major <= 2:
        return DellGeneration.G11
    if major == 3:
        return DellGeneration.G12
    if major == 4:
        return DellGeneration.G13
    if major == 5:
        return DellGeneration.G14
    if major == 6:
        return DellGeneration.G15
    return DellGeneration.G16


def generation_from_product(product: Optional[str]) -> DellGeneration:
    """Map a product string such as 'Integrated Dell Remote Access Controller (iDRAC8)'."""
    if not product:
        return DellGeneration.UNKNOWN
    compact = product.lower().replace(" ", "")
    for marker, generation in _PRODUCT_GENERATIONS:
        if marker in compact:
            return generation
    return DellGeneration.UNKNOWN


class ProtocolProbe:
    """
    Base probe. Subclasses set `protocol` and implement _probe(), which
    returns a healthy (or degraded) capability or raises.
    """

    protocol: Protocol = None

    @property
    def priority(self) -> int:
        return PROTOCOL_PRIORITY[self.protocol]

    def probe(
        self,
        address: str,
        credential: CredentialCandidate,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProtocolCapability:
        if cancel_event is not None and cancel_event.is_set():
            return self.failed(ErrorClass.CANCELLED, "Discovery cancelled before probe started")

        start = time.monotonic()
        try:
            capability = self._probe(address, credential, timeout)
        except Exception as e:
            error_class = classify_error(e)
            latency_ms = int((time.monotonic() - start) * 1000)
            logger.debug(f"{self.protocol.value} probe of {address} as {credential.username} failed "
                         f"({error_class.value}): {e}")
            return self.failed(error_class, _describe(e), latency_ms=latency_ms)

        if capability.latency_ms is None:
            capability.latency_ms = int((time.monotonic() - start) * 1000)
        return capability

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        raise NotImplementedError

    def release(self, address: str) -> None:
        """Drop anything kept open for this host once discovery is done with it."""

    def healthy(self, **fields) -> ProtocolCapability:
        fields.setdefault("status", ProtocolStatus.HEALTHY)
        return ProtocolCapability(protocol=self.protocol, priority=self.priority, supported=True, **fields)

    def failed(self, error_class: ErrorClass, details: Optional[str] = None,
               latency_ms: Optional[int] = None) -> ProtocolCapability:
        return ProtocolCapability(
            protocol=self.protocol,
            priority=self.priority,
            supported=False,
            status=ProtocolStatus.UNREACHABLE,
            error_class=error_class,
            details=details,
            latency_ms=latency_ms,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.protocol.value}>"


def remaining_budget(deadline: float) -> float:
    """Seconds left before a probe deadline; raises a TIMEOUT ProbeError once it has passed."""
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise ProbeError("Probe time budget exhausted", ErrorClass.TIMEOUT)
    return remaining


def _describe(error: BaseException) -> str:
    if isinstance(error, ProbeError):
        return error.message
    text = str(error) or error.__class__.__name__
    return text[:500]


def parse_key_values(text: str, separator: str = "=") -> dict:
    """
    Parse 'Key = Value' lines as printed by racadm getsysinfo/getversion.

    Section headers and lines without the separator are skipped; the first
    occurrence of a key wins.
    """
    values = {}
    for line in (text or "").splitlines():
        if separator not in line:
            continue
        key, value = line.split(separator, 1)
        key = key.strip()
        value = value.strip()
        if key and key not in values:
            values[key] = value
    return values


def facts(**fields) -> Optional[HostFacts]:
    """HostFacts from the non-empty fields given, or None if nothing was learned."""
    cleaned = {k: v.strip() if isinstance(v, str) else v for k, v in fields.items()}
    cleaned = {k: v for k, v in cleaned.items() if v not in (None, "")}
    return HostFacts(**cleaned) if cleaned else None
