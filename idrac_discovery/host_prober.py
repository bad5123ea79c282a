"""
Per-host protocol probing.

For one address, tries each credential candidate in order; for a candidate,
every requested protocol is probed concurrently. The first candidate that
yields at least one supported protocol wins and its full capability set is
kept.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Union

import requests

from idrac_discovery.config import PROBE_GRACE_SECONDS, PROBE_TIMEOUT_SECONDS
from idrac_discovery.errors import ProbeError, classify_error
from idrac_discovery.models import (
    PROTOCOL_PRIORITY,
    CredentialCandidate,
    ErrorClass,
    FailureStage,
    HostDiscoveryResult,
    HostFacts,
    Protocol,
    ProtocolCapability,
    ProtocolStatus,
    SkippedHost,
    SkipReason,
    select_healthiest,
)
from idrac_discovery.protocols import ProtocolProbe, RedfishProbe, build_probes

logger = logging.getLogger(__name__)

# Wait slice between cancellation checks
CANCEL_POLL_SECONDS = 0.25

# Error classes showing the endpoint answered, so another credential may work
_ANSWERED = {ErrorClass.AUTHENTICATION, ErrorClass.PROTOCOL}


class HostProber:
    def __init__(
        self,
        probes: Optional[Dict[Protocol, ProtocolProbe]] = None,
        timeout: float = PROBE_TIMEOUT_SECONDS,
        grace: float = PROBE_GRACE_SECONDS,
        fetch_manager: bool = True,
    ):
        self.probes = probes if probes is not None else build_probes()
        self.timeout = timeout
        self.grace = grace
        self.fetch_manager = fetch_manager

    def discover(
        self,
        address: str,
        candidates: List[CredentialCandidate],
        protocols: Optional[List[Protocol]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Union[HostDiscoveryResult, SkippedHost]:
        """
        Probe one host.

        Returns:
            HostDiscoveryResult for the winning credential, or SkippedHost with
            reason no_credentials, auth_failed (some probe reached an
            authentication step) or unreachable.
        """
        if not candidates:
            return SkippedHost(address=address, reason=SkipReason.NO_CREDENTIALS,
                               stage=FailureStage.CREDENTIAL_RESOLUTION,
                               detail="No credential profile applies to this address")

        requested = self._requested(protocols)
        if not requested:
            return SkippedHost(address=address, reason=SkipReason.UNREACHABLE,
                               detail="No probes configured for the requested protocols")

        try:
            return self._try_candidates(address, candidates, requested, cancel_event)
        finally:
            for probe in self.probes.values():
                probe.release(address)

    def _try_candidates(
        self,
        address: str,
        candidates: List[CredentialCandidate],
        requested: List[Protocol],
        cancel_event: Optional[threading.Event],
    ) -> Union[HostDiscoveryResult, SkippedHost]:
        auth_reached = False
        last_errors = []
        # (port, scheme) pairs where nothing answered for an earlier candidate
        silent_endpoints = set()
        for candidate in candidates:
            endpoint = (candidate.port, candidate.protocol_scheme)
            if endpoint in silent_endpoints:
                logger.debug(f"{address}: skipping {candidate.label}, port {candidate.port} did not answer")
                continue

            capabilities = self.probe_all(address, candidate, requested, cancel_event)

            if any(c.supported for c in capabilities):
                return self._build_result(address, candidate, capabilities)

            if cancel_event is not None and cancel_event.is_set():
                return SkippedHost(address=address, reason=SkipReason.UNREACHABLE, detail="Discovery cancelled")

            auth_reached = auth_reached or any(c.reached_authentication for c in capabilities)
            last_errors = [f"{c.protocol.value}: {c.error_class.value if c.error_class else 'unknown'}"
                           for c in capabilities]

            if not any(c.error_class in _ANSWERED for c in capabilities):
                silent_endpoints.add(endpoint)
            logger.debug(f"{address}: credential {candidate.label} failed, trying next candidate")

        if auth_reached:
            return SkippedHost(address=address, reason=SkipReason.AUTH_FAILED,
                               detail=f"All {len(candidates)} credential candidate(s) were rejected")
        return SkippedHost(address=address, reason=SkipReason.UNREACHABLE, detail="; ".join(last_errors) or None)

    def _requested(self, protocols: Optional[List[Protocol]]) -> List[Protocol]:
        wanted = protocols or list(PROTOCOL_PRIORITY)
        return sorted({p for p in wanted if p in self.probes}, key=PROTOCOL_PRIORITY.get)

    def probe_all(
        self,
        address: str,
        candidate: CredentialCandidate,
        protocols: List[Protocol],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ProtocolCapability]:
        """
        Run every requested probe concurrently for one credential.

        Probes still running at timeout + grace are abandoned and reported as
        unreachable/timeout; on cancellation they are abandoned at once and
        reported as unreachable/cancelled. Exactly one capability per protocol
        is returned, sorted by priority.
        """
        results: Dict[Protocol, ProtocolCapability] = {}
        executor = ThreadPoolExecutor(max_workers=len(protocols), thread_name_prefix=f"probe-{address}")
        try:
            futures = {
                executor.submit(self.probes[p].probe, address, candidate, self.timeout, cancel_event): p
                for p in protocols
            }
            pending = set(futures)
            deadline = time.monotonic() + self.timeout + self.grace

            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(pending, timeout=min(CANCEL_POLL_SECONDS, remaining),
                                     return_when=FIRST_COMPLETED)
                for future in done:
                    protocol = futures[future]
                    try:
                        results[protocol] = future.result()
                    except Exception as e:
                        logger.exception(f"{protocol.value} probe of {address} raised unexpectedly")
                        results[protocol] = self.probes[protocol].failed(classify_error(e), str(e))

            cancelled = cancel_event is not None and cancel_event.is_set()
            for future in pending:
                probe = self.probes[futures[future]]
                if cancelled:
                    results[probe.protocol] = probe.failed(ErrorClass.CANCELLED, "Abandoned on cancellation")
                else:
                    results[probe.protocol] = probe.failed(
                        ErrorClass.TIMEOUT,
                        f"No answer within {self.timeout + self.grace:.1f}s",
                        latency_ms=int((self.timeout + self.grace) * 1000),
                    )
        finally:
            # Abandoned probes finish in the background; nothing waits on them
            executor.shutdown(wait=False, cancel_futures=True)

        return [results[p] for p in protocols]

    def _build_result(self, address: str, candidate: CredentialCandidate,
                      capabilities: List[ProtocolCapability]) -> HostDiscoveryResult:
        by_protocol = {c.protocol: c for c in capabilities}

        redfish = by_protocol.get(Protocol.REDFISH)
        if self.fetch_manager and redfish is not None and redfish.supported:
            self._apply_manager(address, candidate, redfish)

        host_facts = HostFacts()
        for capability in capabilities:
            host_facts = host_facts.merged_with(capability.host_facts)

        healthiest = select_healthiest(capabilities)
        result = HostDiscoveryResult(
            address=address,
            protocols=capabilities,
            healthiest_protocol=healthiest,
            credential_profile_id=candidate.profile_id,
            credential_source=candidate.source,
            **host_facts.model_dump(),
        )
        logger.info(
            f"{address}: {result.model or 'unknown model'} ({result.service_tag or 'no service tag'}) "
            f"best protocol {healthiest.protocol.value if healthiest else 'none'}"
        )
        return result

    def _apply_manager(self, address: str, candidate: CredentialCandidate,
                       redfish: ProtocolCapability) -> None:
        probe = self.probes.get(Protocol.REDFISH)
        if not isinstance(probe, RedfishProbe):
            return
        try:
            manager = probe.fetch_manager(address, candidate, self.timeout)
        except (ProbeError, requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"{address}: Redfish manager firmware unavailable, marking Redfish degraded: {e}")
            redfish.status = ProtocolStatus.DEGRADED
            redfish.details = f"Manager firmware unavailable: {e}"
            return

        redfish.firmware_version = manager['firmware_version']
        redfish.generation = manager['generation']
        redfish.manager_type = manager.get('manager_type') or manager.get('model')
        redfish.host_facts = (redfish.host_facts or HostFacts()).model_copy(
            update={'idrac_version': manager['firmware_version']}
        )
