"""
IPMI probe (priority 4).

Reachability comes from an RMCP/ASF presence ping on UDP 623 (DMTF ASF 2.0):
the BMC answers a Presence Ping (type 0x80) with a Presence Pong (type 0x40)
without any session. The authenticated check is `ipmitool -I lanplus chassis
status`; a BMC that ponged and then rejected the session is an
authentication failure rather than an unreachable host.
"""

import logging
import os
import random
import socket
import struct
import subprocess
import time

from idrac_discovery.config import IPMI_PORT, IPMITOOL_BIN
from idrac_discovery.errors import ProbeError
from idrac_discovery.models import (
    CredentialCandidate,
    ErrorClass,
    Protocol,
    ProtocolCapability,
    UpdateMode,
)
from idrac_discovery.protocols.base import ProtocolProbe, facts, parse_key_values, remaining_budget

logger = logging.getLogger(__name__)

RMCP_VERSION = 0x06
RMCP_SEQ_NO_ACK = 0xFF
RMCP_CLASS_ASF = 0x06
ASF_IANA = 4542  # 0x000011BE
ASF_PRESENCE_PING = 0x80
ASF_PRESENCE_PONG = 0x40
IPMI_SUPPORTED_BIT = 0x80

# RMCP header (4) + ASF header (8)
_HEADER = struct.Struct("!BBBBIBBBB")
# Pong data: IANA, OEM, supported entities, supported interactions, 6 reserved
_PONG_DATA = struct.Struct("!IIBB6x")

SESSION_FAILURE_MARKERS = (
    "unable to establish",
    "rakp",
    "unauthorized name",
    "invalid user name",
    "insufficient privilege",
    "authentication",
)


def build_presence_ping(tag: int) -> bytes:
    return _HEADER.pack(RMCP_VERSION, 0, RMCP_SEQ_NO_ACK, RMCP_CLASS_ASF,
                        ASF_IANA, ASF_PRESENCE_PING, tag & 0xFF, 0, 0)


def parse_presence_pong(packet: bytes, tag: int) -> bool:
    """
    Validate a Presence Pong answering our ping.

    Returns:
        True if the responder advertises IPMI support.

    Raises:
        ProbeError if the packet is not a matching pong.
    """
    if len(packet) < _HEADER.size:
        raise ProbeError("Short RMCP response", ErrorClass.PROTOCOL)
    version, _, _, msg_class, iana, msg_type, msg_tag, _, length = _HEADER.unpack_from(packet)
    if version != RMCP_VERSION or msg_class != RMCP_CLASS_ASF or iana != ASF_IANA:
        raise ProbeError("Response is not an RMCP/ASF message", ErrorClass.PROTOCOL)
    if msg_type != ASF_PRESENCE_PONG or msg_tag != (tag & 0xFF):
        raise ProbeError(f"Unexpected ASF message type 0x{msg_type:02x}", ErrorClass.PROTOCOL)
    if length < _PONG_DATA.size or len(packet) < _HEADER.size + _PONG_DATA.size:
        # Some BMCs send a bare pong; presence alone is enough
        return True
    _, _, entities, _ = _PONG_DATA.unpack_from(packet, _HEADER.size)
    return bool(entities & IPMI_SUPPORTED_BIT)


class IpmiProbe(ProtocolProbe):
    protocol = Protocol.IPMI

    def __init__(self, ipmitool_bin: str = IPMITOOL_BIN, port: int = IPMI_PORT):
        self.ipmitool_bin = ipmitool_bin
        self.port = port

    def presence_ping(self, address: str, timeout: float) -> bool:
        """Send one ASF Presence Ping; returns the pong's IPMI-supported flag."""
        tag = random.randint(0, 0xFE)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.settimeout(timeout)
            sock.sendto(build_presence_ping(tag), (address, self.port))
            deadline = time.monotonic() + timeout
            while True:
                packet, _ = sock.recvfrom(512)
                try:
                    return parse_presence_pong(packet, tag)
                except ProbeError:
                    # Stray datagram; keep waiting for our pong
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise
                    sock.settimeout(remaining)
        finally:
            sock.close()

    def chassis_status(self, address: str, credential: CredentialCandidate, timeout: float) -> str:
        # -E reads the password from IPMI_PASSWORD instead of argv
        command = [self.ipmitool_bin, '-I', 'lanplus', '-H', address, '-p', str(self.port),
                   '-U', credential.username, '-E', 'chassis', 'status']
        env = dict(os.environ, IPMI_PASSWORD=credential.secret)
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout, env=env)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            error_class = ErrorClass.PROTOCOL
            if any(marker in stderr.lower() for marker in SESSION_FAILURE_MARKERS):
                error_class = ErrorClass.AUTHENTICATION
            raise ProbeError(f"ipmitool chassis status failed: {stderr[:300]}", error_class)
        return result.stdout

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        deadline = time.monotonic() + timeout
        # Ping gets a slice of the budget so ipmitool still has time to run
        try:
            ipmi_supported = self.presence_ping(address, min(3.0, timeout / 3))
        except socket.timeout:
            raise ProbeError(f"No RMCP presence pong from {address}", ErrorClass.NETWORK)
        if not ipmi_supported:
            raise ProbeError("BMC does not advertise IPMI support", ErrorClass.UNSUPPORTED)

        status = parse_key_values(
            self.chassis_status(address, credential, remaining_budget(deadline)),
            separator=":",
        )
        capability = self.healthy(update_modes=[UpdateMode.CUSTOM_PROTOCOL])
        power = status.get("System Power")
        capability.host_facts = facts(power_state=power.title() if power else None)
        return capability
