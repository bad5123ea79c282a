"""
Session Manager - per-endpoint requests.Session cache used by HTTP probes.

Provides:
- One requests.Session per (address, channel, tls mode)
- Legacy TLS sessions for iDRAC 7/8
- Per-session request serialization (a Session is not thread-safe)

Probes of different protocols against the same host use different channels,
so Redfish and WS-Man never wait on each other.
"""

import logging
import threading
from typing import Dict, Optional

import requests
import urllib3

from idrac_discovery.config import VERIFY_SSL
from idrac_discovery.legacy_ssl_adapter import create_legacy_session

logger = logging.getLogger(__name__)


class SessionManager:
    """Thread-safe cache of requests.Session objects keyed by endpoint."""

    def __init__(self, verify_ssl: bool = VERIFY_SSL):
        self.sessions: Dict[str, requests.Session] = {}
        self.locks: Dict[str, threading.Lock] = {}
        self.lock_lock = threading.Lock()
        self.verify_ssl = verify_ssl

        if not verify_ssl:
            urllib3.disable_warnings()

    @staticmethod
    def _key(address: str, channel: str, legacy_ssl: bool) -> str:
        return f"{address}:{channel}:{'legacy' if legacy_ssl else 'modern'}"

    def _get_lock(self, key: str) -> threading.Lock:
        with self.lock_lock:
            if key not in self.locks:
                self.locks[key] = threading.Lock()
            return self.locks[key]

    def get_session(self, address: str, channel: str = "redfish", legacy_ssl: bool = False) -> requests.Session:
        """
        Get or create the session for an endpoint.

        Not serialized; use make_request() from worker threads.
        """
        key = self._key(address, channel, legacy_ssl)
        with self.lock_lock:
            session = self.sessions.get(key)
            if session is None:
                if legacy_ssl:
                    session = create_legacy_session(self.verify_ssl)
                else:
                    session = requests.Session()
                    session.verify = self.verify_ssl
                self.sessions[key] = session
            return session

    def make_request(
        self,
        method: str,
        url: str,
        address: str,
        channel: str = "redfish",
        legacy_ssl: bool = False,
        **kwargs
    ) -> requests.Response:
        """
        Make an HTTP request through the cached session for this endpoint.

        Args:
            method: HTTP method
            url: Full URL
            address: Host address the session belongs to
            channel: Protocol channel name (redfish, wsman)
            legacy_ssl: Use the legacy TLS session
            **kwargs: Passed to requests.Session.request()

        Returns:
            requests.Response
        """
        key = self._key(address, channel, legacy_ssl)
        with self._get_lock(key):
            session = self.get_session(address, channel, legacy_ssl)
            kwargs.setdefault('timeout', (5, 30))
            return session.request(method, url, **kwargs)

    def close_host(self, address: str) -> None:
        """Close every session that belongs to one host and forget its locks."""
        prefix = f"{address}:"
        with self.lock_lock:
            keys = [k for k in self.sessions if k.startswith(prefix)]
            sessions = [self.sessions.pop(k) for k in keys]
            for key in [k for k in self.locks if k.startswith(prefix)]:
                del self.locks[key]
        for session in sessions:
            session.close()

    def close_all_sessions(self) -> None:
        with self.lock_lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
            self.locks.clear()
        for session in sessions:
            session.close()
        logger.debug(f"Closed {len(sessions)} HTTP sessions")


_default_manager: Optional[SessionManager] = None
_default_lock = threading.Lock()


def get_session_manager() -> SessionManager:
    """Process-wide SessionManager shared by the HTTP probes."""
    global _default_manager
    with _default_lock:
        if _default_manager is None:
            _default_manager = SessionManager()
        return _default_manager
