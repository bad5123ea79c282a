"""
WS-Management probe (priority 2).

SOAP over HTTPS to /wsman with Basic auth. Identify establishes that the
service answers and yields the product version; an Enumerate of
DCIM_SystemView fills in host facts. Identify alone leaves the capability
degraded.
"""

import logging
import re
import time
import uuid
import xml.etree.ElementTree as ET
from typing import Dict, Optional

import requests

from idrac_discovery.config import LEGACY_TLS_FALLBACK, WSMAN_PATH
from idrac_discovery.errors import ProbeError, classify_status_code
from idrac_discovery.models import (
    CredentialCandidate,
    DellGeneration,
    ErrorClass,
    Protocol,
    ProtocolCapability,
    ProtocolStatus,
    UpdateMode,
)
from idrac_discovery.protocols.base import (
    ProtocolProbe,
    facts,
    generation_from_firmware,
    generation_from_product,
    remaining_budget,
)
from idrac_discovery.protocols.redfish import base_url
from idrac_discovery.session_manager import SessionManager, get_session_manager

logger = logging.getLogger(__name__)

IDENTIFY_ACTION = "http://schemas.dmtf.org/wbem/wsman/identity/1/Identify"
ENUMERATE_ACTION = "http://schemas.xmlsoap.org/ws/2004/09/enumeration/Enumerate"
SYSTEM_VIEW_URI = "http://schemas.dell.com/wbem/wscim/1/cim-schema/2/DCIM_SystemView"

ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"
            xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing"
            xmlns:wsman="http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd"
            xmlns:wsen="http://schemas.xmlsoap.org/ws/2004/09/enumeration">
  <s:Header>
    <wsa:Action s:mustUnderstand="true">{action}</wsa:Action>
    <wsa:To s:mustUnderstand="true">{to}</wsa:To>
    <wsman:ResourceURI s:mustUnderstand="true">{resource_uri}</wsman:ResourceURI>
    <wsa:MessageID s:mustUnderstand="true">uuid:{message_id}</wsa:MessageID>
    <wsa:ReplyTo>
      <wsa:Address>http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous</wsa:Address>
    </wsa:ReplyTo>
  </s:Header>
  <s:Body>{body}</s:Body>
</s:Envelope>"""

IDENTIFY_ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"
            xmlns:wsmid="http://schemas.dmtf.org/wbem/wsman/identity/1/wsmanidentity.xsd">
  <s:Header/>
  <s:Body><wsmid:Identify/></s:Body>
</s:Envelope>"""

ENUMERATE_BODY = ("<wsen:Enumerate><wsman:OptimizeEnumeration/>"
                  "<wsman:MaxElements>1</wsman:MaxElements></wsen:Enumerate>")

# DCIM_SystemView.PowerState (CIM_AssociatedPowerManagementService values)
POWER_STATES = {"2": "On", "8": "Off", "13": "Off"}


def build_envelope(action: str, resource_uri: str, body: str, to: str) -> str:
    return ENVELOPE.format(action=action, resource_uri=resource_uri, body=body, to=to,
                           message_id=uuid.uuid4())


def parse_fields(xml_text) -> Dict[str, str]:
    """
    Flatten a SOAP response into {local element name: text}.

    Namespaces are dropped; the first non-empty value for a name wins.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ProbeError(f"Malformed WS-Man response: {e}", ErrorClass.PROTOCOL)

    fields = {}
    is_fault = False
    for element in root.iter():
        name = element.tag.rsplit('}', 1)[-1]
        if name == "Fault":
            is_fault = True
        text = (element.text or "").strip()
        if text and name not in fields:
            fields[name] = text

    if is_fault:
        raise ProbeError(f"WS-Man fault: {fields.get('Text') or fields.get('Value', 'unknown')}",
                         ErrorClass.PROTOCOL)
    return fields


def _version_in(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = re.search(r"\d+(?:\.\d+)+", text)
    return match.group(0) if match else None


class WsmanProbe(ProtocolProbe):
    protocol = Protocol.WSMAN

    def __init__(self, session_manager: Optional[SessionManager] = None,
                 legacy_tls_fallback: bool = LEGACY_TLS_FALLBACK):
        self.session_manager = session_manager or get_session_manager()
        self.legacy_tls_fallback = legacy_tls_fallback

    def release(self, address: str) -> None:
        self.session_manager.close_host(address)

    def _post(self, address: str, url: str, envelope: str, credential: CredentialCandidate,
              deadline: float, legacy_ssl: bool = False):
        timeout = remaining_budget(deadline)
        try:
            response = self.session_manager.make_request(
                'POST', url, address,
                channel='wsman',
                legacy_ssl=legacy_ssl,
                auth=(credential.username, credential.secret),
                data=envelope.encode('utf-8'),
                headers={'Content-Type': 'application/soap+xml;charset=UTF-8'},
                timeout=(min(5.0, timeout), timeout),
            )
        except requests.exceptions.SSLError:
            if legacy_ssl or not self.legacy_tls_fallback or not url.startswith("https"):
                raise
            logger.debug(f"WS-Man TLS handshake with {address} failed, retrying with legacy TLS")
            return self._post(address, url, envelope, credential, deadline, legacy_ssl=True)

        if not 200 <= response.status_code < 300:
            raise ProbeError(
                f"WS-Man request returned HTTP {response.status_code}",
                classify_status_code(response.status_code),
                status_code=response.status_code,
            )
        return parse_fields(response.content), legacy_ssl

    def _probe(self, address: str, credential: CredentialCandidate, timeout: float) -> ProtocolCapability:
        url = f"{base_url(address, credential)}{WSMAN_PATH}"
        deadline = time.monotonic() + timeout

        identity, legacy = self._post(address, url, IDENTIFY_ENVELOPE, credential, deadline)
        product = " ".join(filter(None, [identity.get("ProductVendor"), identity.get("ProductVersion")]))
        firmware_version = _version_in(identity.get("ProductVersion"))
        generation = generation_from_product(product)
        if generation == DellGeneration.UNKNOWN:
            generation = generation_from_firmware(firmware_version)

        capability = self.healthy(
            firmware_version=firmware_version,
            generation=generation,
            manager_type=identity.get("ProductVendor"),
            update_modes=[UpdateMode.SIMPLE_UPDATE, UpdateMode.INSTALL_FROM_REPOSITORY],
        )

        try:
            envelope = build_envelope(ENUMERATE_ACTION, SYSTEM_VIEW_URI, ENUMERATE_BODY, url)
            view, _ = self._post(address, url, envelope, credential, deadline, legacy)
        except (ProbeError, requests.exceptions.RequestException) as e:
            capability.status = ProtocolStatus.DEGRADED
            capability.details = f"DCIM_SystemView enumeration failed: {e}"
            return capability

        power = view.get("PowerState")
        capability.host_facts = facts(
            hostname=view.get("HostName"),
            model=view.get("Model"),
            service_tag=view.get("ServiceTag"),
            manufacturer=view.get("Manufacturer"),
            bios_version=view.get("BIOSVersionString"),
            idrac_version=view.get("LifecycleControllerVersion") or firmware_version,
            power_state=POWER_STATES.get(power, power),
        )
        if capability.host_facts is None or not capability.host_facts.service_tag:
            capability.status = ProtocolStatus.DEGRADED
            capability.details = "DCIM_SystemView returned partial data"
        return capability
