"""
Redfish probe (priority 1).

Authenticated GET of /redfish/v1/Systems, then the first system member for
host facts and /redfish/v1/UpdateService for the update modes this iDRAC
offers. iDRAC 7/8 firmware that fails the modern TLS handshake is retried
once through the legacy TLS session.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

import requests

from idrac_discovery.config import LEGACY_TLS_FALLBACK
from idrac_discovery.errors import ProbeError, classify_status_code
from idrac_discovery.models import (
    CredentialCandidate,
    CredentialScheme,
    ErrorClass,
    Protocol,
    ProtocolCapability,
    UpdateMode,
)
from idrac_discovery.protocols.base import ProtocolProbe, facts, generation_from_firmware, remaining_budget
from idrac_discovery.session_manager import SessionManager, get_session_manager
from idrac_discovery.utils import _safe_json_parse

logger = logging.getLogger(__name__)

SYSTEMS_PATH = "/redfish/v1/Systems"
MANAGERS_PATH = "/redfish/v1/Managers"
UPDATE_SERVICE_PATH = "/redfish/v1/UpdateService"


def base_url(address: str, credential: CredentialCandidate) -> str:
    scheme = credential.protocol_scheme.value
    default_port = 443 if credential.protocol_scheme == CredentialScheme.HTTPS else 80
    if credential.port and credential.port != default_port:
        return f"{scheme}://{address}:{credential.port}"
    return f"{scheme}://{address}"


def update_modes_from_service(update_service: Dict) -> List[UpdateMode]:
    """Derive supported update modes from an UpdateService resource."""
    modes = []
    actions = update_service.get("Actions") or {}
    oem_actions = actions.get("Oem") or {}

    if "#UpdateService.SimpleUpdate" in actions:
        modes.append(UpdateMode.SIMPLE_UPDATE)
    if any("InstallFromRepository" in name for name in oem_actions) or \
            any("InstallFromRepository" in name for name in actions):
        modes.append(UpdateMode.INSTALL_FROM_REPOSITORY)
    if update_service.get("MultipartHttpPushUri"):
        modes.append(UpdateMode.MULTIPART_UPDATE)
    return modes


class RedfishProbe(ProtocolProbe):
    protocol = Protocol.REDFISH

    def __init__(self, session_manager: Optional[SessionManager] = None,
                 legacy_tls_fallback: bool = LEGACY_TLS_FALLBACK):
        self.session_manager = session_manager or get_session_manager()
        self.legacy_tls_fallback = legacy_tls_fallback

    def release(self, address: str) -> None:
        self.session_manager.close_host(address)

    def _get(self, address: str, url: str, credential: CredentialCandidate, deadline: float,
             legacy_ssl: bool = False) -> Tuple[Dict, bool]:
        """
        GET a Redfish resource within whatever is left of the probe deadline.

        Returns:
            (payload, legacy_ssl) where legacy_ssl tells the caller which TLS
            mode worked so follow-up requests reuse it.
        """
        timeout = remaining_budget(deadline)
        try:
            response = self.session_manager.make_request(
                'GET', url, address,
                channel='redfish',
                legacy_ssl=legacy_ssl,
                auth=(credential.username, credential.secret),
                headers={'Accept': 'application/json'},
                timeout=(min(5.0, timeout), timeout),
            )
        except requests.exceptions.SSLError:
            if legacy_ssl or not self.legacy_tls_fallback or not url.startswith("https"):
                raise
            logger.debug(f"TLS handshake with {address} failed, retrying with legacy TLS")
            return self._get(address, url, credential, deadline, legacy_ssl=True)

        if not 200 <= response.status_code < 300:
            raise ProbeError(
                f"GET {url} returned HTTP {response.status_code}",
                classify_status_code(response.status_code),
                status_code=response.status_code,
            )
        payload = _safe_json_parse(response)
        if not isinstance(payload, dict) or "_parse_error" in payload:
            raise ProbeError(f"GET {url} did not return a JSON object", ErrorClass.PROTOCOL)
        return payload, legacy_ssl

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        root = base_url(address, credential)
        deadline = time.monotonic() + timeout
        systems, legacy = self._get(address, f"{root}{SYSTEMS_PATH}", credential, deadline)

        members = systems.get("Members") or []
        if not members or not members[0].get("@odata.id"):
            raise ProbeError("Systems collection has no members", ErrorClass.PROTOCOL)
        system, legacy = self._get(address, f"{root}{members[0]['@odata.id']}", credential, deadline, legacy)

        # Optional; skipped once the deadline has passed
        update_modes = []
        try:
            update_service, legacy = self._get(address, f"{root}{UPDATE_SERVICE_PATH}", credential, deadline, legacy)
            update_modes = update_modes_from_service(update_service)
        except (ProbeError, requests.exceptions.RequestException) as e:
            logger.debug(f"UpdateService unavailable on {address}: {e}")

        capability = self.healthy(
            update_modes=update_modes,
            details="legacy TLS" if legacy else None,
        )
        capability.host_facts = facts(
            hostname=system.get("HostName"),
            model=system.get("Model"),
            service_tag=system.get("SKU") or system.get("SerialNumber"),
            manufacturer=system.get("Manufacturer"),
            bios_version=system.get("BiosVersion"),
            power_state=system.get("PowerState"),
        )
        return capability

    def fetch_manager(self, address: str, credential: CredentialCandidate, timeout: float) -> Dict:
        """
        Read the first manager's firmware version and model.

        Returns:
            {'firmware_version', 'model', 'manager_type', 'generation'}

        Raises:
            ProbeError or requests exceptions on any failure.
        """
        root = base_url(address, credential)
        deadline = time.monotonic() + timeout
        managers, legacy = self._get(address, f"{root}{MANAGERS_PATH}", credential, deadline)

        members = managers.get("Members") or []
        if not members or not members[0].get("@odata.id"):
            raise ProbeError("Managers collection has no members", ErrorClass.PROTOCOL)
        manager, _ = self._get(address, f"{root}{members[0]['@odata.id']}", credential, deadline, legacy)

        firmware_version = manager.get("FirmwareVersion")
        if not firmware_version:
            raise ProbeError("Manager does not report FirmwareVersion", ErrorClass.PROTOCOL)
        return {
            'firmware_version': firmware_version,
            'model': manager.get("Model"),
            'manager_type': manager.get("ManagerType"),
            'generation': generation_from_firmware(firmware_version),
        }
