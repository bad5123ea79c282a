"""SSH probe (priority 5): paramiko login to the iDRAC shell and `racadm getversion`."""

import logging
from typing import Tuple

import paramiko

from idrac_discovery.config import SSH_PORT
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

VERSION_COMMAND = 'racadm getversion'


class SshProbe(ProtocolProbe):
    protocol = Protocol.SSH

    def __init__(self, port: int = SSH_PORT):
        self.port = port

    def execute(self, address: str, credential: CredentialCandidate, command: str,
                timeout: float) -> Tuple[int, str, str]:
        """
        Connect, run one command and disconnect.

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=address,
                port=self.port,
                username=credential.username,
                password=credential.secret,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            exit_code = stdout.channel.recv_exit_status()
            return (exit_code,
                    stdout.read().decode('utf-8', errors='replace'),
                    stderr.read().decode('utf-8', errors='replace'))
        finally:
            client.close()

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        exit_code, stdout, stderr = self.execute(address, credential, VERSION_COMMAND, timeout)
        if exit_code != 0:
            raise ProbeError(f"'{VERSION_COMMAND}' exited with {exit_code}: {stderr.strip()[:300]}",
                             ErrorClass.PROTOCOL)

        versions = parse_key_values(stdout)
        firmware_version = versions.get("iDRAC Version")
        capability = self.healthy(
            firmware_version=firmware_version,
            generation=generation_from_firmware(firmware_version),
            update_modes=[UpdateMode.CUSTOM_PROTOCOL],
        )
        capability.host_facts = facts(
            bios_version=versions.get("Bios Version"),
            idrac_version=firmware_version,
        )
        return capability
