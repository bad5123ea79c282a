"""Out-of-band management protocol probes, one module per protocol."""

from typing import Dict, Iterable, List, Optional

from idrac_discovery.models import PROTOCOL_PRIORITY, Protocol
from idrac_discovery.protocols.base import ProtocolProbe, generation_from_firmware, generation_from_product
from idrac_discovery.protocols.ipmi import IpmiProbe
from idrac_discovery.protocols.racadm import RacadmProbe
from idrac_discovery.protocols.redfish import RedfishProbe
from idrac_discovery.protocols.ssh import SshProbe
from idrac_discovery.protocols.wsman import WsmanProbe
from idrac_discovery.session_manager import SessionManager

PROBE_CLASSES = {
    Protocol.REDFISH: RedfishProbe,
    Protocol.WSMAN: WsmanProbe,
    Protocol.RACADM: RacadmProbe,
    Protocol.IPMI: IpmiProbe,
    Protocol.SSH: SshProbe,
}


def build_probes(protocols: Optional[Iterable[Protocol]] = None,
                 session_manager: Optional[SessionManager] = None) -> Dict[Protocol, ProtocolProbe]:
    """Instantiate one probe per requested protocol, in priority order."""
    requested: List[Protocol] = sorted(set(protocols or PROTOCOL_PRIORITY), key=PROTOCOL_PRIORITY.get)
    probes = {}
    for protocol in requested:
        probe_class = PROBE_CLASSES[protocol]
        if probe_class in (RedfishProbe, WsmanProbe):
            probes[protocol] = probe_class(session_manager=session_manager)
        else:
            probes[protocol] = probe_class()
    return probes


__all__ = [
    "PROBE_CLASSES",
    "IpmiProbe",
    "ProtocolProbe",
    "RacadmProbe",
    "RedfishProbe",
    "SshProbe",
    "WsmanProbe",
    "build_probes",
    "generation_from_firmware",
    "generation_from_product",
]
