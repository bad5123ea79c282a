"""RACADM probe (priority 3): remote `racadm -r <host> getsysinfo`."""

import logging
import subprocess
from typing import List

from idrac_discovery.config import RACADM_BIN
from idrac_discovery.errors import ProbeError
from idrac_discovery.models import (
    CredentialCandidate,
    ErrorClass,
    Protocol,
    ProtocolCapability,
    UpdateMode,
)
from idrac_discovery.protocols.base import ProtocolProbe, facts, generation_from_firmware, parse_key_values

logger = logging.getLogger(__name__)

AUTH_MARKERS = ("login failed", "invalid username", "invalid password", "authentication failed")
NETWORK_MARKERS = ("unable to connect", "connection refused", "no route to host", "could not connect")


def classify_racadm_failure(output: str) -> ErrorClass:
    """Classify a non-zero racadm exit by its error text."""
    text = (output or "").lower()
    if any(marker in text for marker in AUTH_MARKERS):
        return ErrorClass.AUTHENTICATION
    if any(marker in text for marker in NETWORK_MARKERS):
        return ErrorClass.NETWORK
    if "timed out" in text or "timeout" in text:
        return ErrorClass.TIMEOUT
    return ErrorClass.PROTOCOL


class RacadmProbe(ProtocolProbe):
    protocol = Protocol.RACADM

    def __init__(self, racadm_bin: str = RACADM_BIN):
        self.racadm_bin = racadm_bin

    def run(self, address: str, credential: CredentialCandidate, args: List[str], timeout: float) -> str:
        """
        Run a remote racadm command and return its stdout.

        The secret is passed on the command line as racadm requires; it is
        never logged.
        """
        command = [self.racadm_bin, '-r', address, '-u', credential.username, '-p', credential.secret,
                   '--nocertwarn'] + list(args)
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        output = f"{result.stdout}\n{result.stderr}"
        if result.returncode != 0 or "ERROR:" in result.stdout:
            message = (result.stderr or result.stdout).strip().splitlines()
            raise ProbeError(
                f"racadm {' '.join(args)} exited with {result.returncode}: {message[-1] if message else ''}",
                classify_racadm_failure(output),
            )
        return result.stdout

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        values = parse_key_values(self.run(address, credential, ['getsysinfo'], timeout))
        if not values:
            raise ProbeError("racadm getsysinfo returned no data", ErrorClass.PROTOCOL)

        firmware_version = values.get("Firmware Version")
        capability = self.healthy(
            firmware_version=firmware_version,
            generation=generation_from_firmware(firmware_version),
            manager_type=values.get("RAC Type") or values.get("Product"),
            update_modes=[UpdateMode.INSTALL_FROM_REPOSITORY],
        )
        capability.host_facts = facts(
            hostname=values.get("Host Name"),
            model=values.get("System Model"),
            service_tag=values.get("Service Tag"),
            bios_version=values.get("System BIOS Version"),
            idrac_version=firmware_version,
            power_state=(values.get("Power Status") or "").title() or None,
        )
        return capability
