"""Job handlers for the discovery executor"""

from .base import BaseHandler
from .discovery import DiscoveryHandler

__all__ = ["BaseHandler", "DiscoveryHandler"]
