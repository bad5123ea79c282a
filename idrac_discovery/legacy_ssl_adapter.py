"""
Legacy TLS support for iDRAC 7/8 management endpoints.

Old iDRAC firmware only speaks TLSv1.0/1.1 with weak cipher suites that a
current OpenSSL rejects by default. Probes mount this adapter on a second
session and retry once when the modern handshake fails.

Usage:
    from idrac_discovery.legacy_ssl_adapter import create_legacy_session

    session = create_legacy_session()
    response = session.get('https://10.0.0.5/redfish/v1/Systems', auth=(user, password))
"""

import logging
import ssl

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

logger = logging.getLogger(__name__)

# ssl.OP_LEGACY_SERVER_CONNECT; not exported by every Python build
OP_LEGACY_SERVER_CONNECT = getattr(ssl, "OP_LEGACY_SERVER_CONNECT", 0x4)


class LegacySSLAdapter(HTTPAdapter):
    """
    HTTPAdapter with a permissive SSL context.

    Only mounted after a handshake failure; iDRAC 9 and newer keep the
    default context.
    """

    def __init__(self, *args, **kwargs):
        self.ssl_context = self._create_legacy_context()
        super().__init__(*args, **kwargs)

    def _create_legacy_context(self) -> ssl.SSLContext:
        ctx = create_urllib3_context()
        ctx.options |= OP_LEGACY_SERVER_CONNECT
        ctx.minimum_version = ssl.TLSVersion.TLSv1

        # iDRAC ships self-signed certificates
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

        try:
            ctx.set_ciphers('DEFAULT:@SECLEVEL=1')
        except ssl.SSLError:
            logger.debug("OpenSSL rejected SECLEVEL=1, keeping default cipher list")
        return ctx

    def init_poolmanager(self, *args, **kwargs):
        kwargs['ssl_context'] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs['ssl_context'] = self.ssl_context
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def create_legacy_session(verify_ssl: bool = False) -> requests.Session:
    """
    Create a requests.Session that can negotiate with iDRAC 7/8 firmware.

    Returns:
        Session with LegacySSLAdapter mounted for https://
    """
    session = requests.Session()
    session.mount('https://', LegacySSLAdapter())
    session.verify = verify_ssl
    return session
