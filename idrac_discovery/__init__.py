"""iDRAC discovery and protocol-capability resolution engine."""

__version__ = "1.0.0"
