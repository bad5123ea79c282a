"""
Discovery error types and transport error classification.

Only configuration errors ever leave the coordinator; everything that goes
wrong while talking to a single host is converted into data through
classify_error().
"""

import socket
import subprocess
from typing import Optional

import paramiko
import requests

from idrac_discovery.models import ErrorClass


class DiscoveryError(Exception):
    """Base exception for discovery operations"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class InvalidAddressSpaceError(DiscoveryError):
    """Raised when a range expression or IP scope cannot be expanded"""

    def __init__(self, message: str):
        super().__init__(message, error_code="INVALID_ADDRESS_SPACE")


class CredentialConfigError(DiscoveryError):
    """Raised when a run has no credential configuration at all"""

    def __init__(self, message: str = "No credential profiles, assignments or fallback credential configured"):
        super().__init__(message, error_code="NO_CREDENTIAL_CONFIG")


class ComplianceError(DiscoveryError):
    """Raised when firmware versions cannot be compared against a baseline"""

    def __init__(self, message: str):
        super().__init__(message, error_code="COMPLIANCE")


class ProbeError(DiscoveryError):
    """Raised inside protocol probes; always converted into a capability record"""

    def __init__(self, message: str, error_class: ErrorClass, status_code: Optional[int] = None):
        super().__init__(message, error_code=error_class.value)
        self.error_class = error_class
        self.status_code = status_code


def classify_status_code(status_code: int) -> ErrorClass:
    """Map an HTTP status code from a management endpoint to an error class."""
    if status_code in (401, 403):
        return ErrorClass.AUTHENTICATION
    if status_code in (408, 504):
        return ErrorClass.TIMEOUT
    return ErrorClass.PROTOCOL


def classify_error(error: BaseException) -> ErrorClass:
    """
    Classify a transport-level exception raised while probing a host.

    Order matters: requests wraps urllib3 and socket errors, and timeouts are
    subclasses of connection errors in several libraries.
    """
    if isinstance(error, ProbeError):
        return error.error_class

    if isinstance(error, (requests.exceptions.Timeout, socket.timeout, subprocess.TimeoutExpired)):
        return ErrorClass.TIMEOUT
    if isinstance(error, requests.exceptions.SSLError):
        return ErrorClass.PROTOCOL
    if isinstance(error, requests.exceptions.ConnectionError):
        return ErrorClass.NETWORK

    if isinstance(error, paramiko.AuthenticationException):
        return ErrorClass.AUTHENTICATION
    if isinstance(error, paramiko.SSHException):
        return ErrorClass.PROTOCOL

    if isinstance(error, FileNotFoundError):
        return ErrorClass.UNSUPPORTED
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorClass.NETWORK

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return ErrorClass.TIMEOUT
    if "unauthorized" in message or "401" in message or "403" in message:
        return ErrorClass.AUTHENTICATION
    if "refused" in message or "unreachable" in message:
        return ErrorClass.NETWORK
    return ErrorClass.PROTOCOL
