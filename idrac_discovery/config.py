import os

# Dell Server Manager URL
DSM_URL = os.getenv("DSM_URL", "http://127.0.0.1:54321")  # Defaults to local Supabase

# Supabase Service Role Key (for jobs, inventory and credential tables)
# This is a SECRET - do not commit to version control!
SERVICE_ROLE_KEY = os.getenv("SERVICE_ROLE_KEY", "")  # Set via env var

# iDRAC default credentials (manual fallback for discovery runs)
IDRAC_DEFAULT_USER = os.getenv("IDRAC_USER", "root")
IDRAC_DEFAULT_PASSWORD = os.getenv("IDRAC_PASSWORD", "calvin")

# Discovery worker pool
DISCOVERY_MAX_WORKERS = int(os.getenv("DISCOVERY_MAX_WORKERS", "16"))
DISCOVERY_QUEUE_FACTOR = int(os.getenv("DISCOVERY_QUEUE_FACTOR", "2"))  # queue slots per worker
MAX_ADDRESSES_PER_RUN = int(os.getenv("MAX_ADDRESSES_PER_RUN", "65536"))  # a /16

# Per-protocol probe time box (seconds)
PROBE_TIMEOUT_SECONDS = float(os.getenv("PROBE_TIMEOUT_SECONDS", "10"))
PROBE_GRACE_SECONDS = float(os.getenv("PROBE_GRACE_SECONDS", "1.0"))

# Protocol tooling
RACADM_BIN = os.getenv("RACADM_BIN", os.getenv("RACADM_PATH", "racadm"))
IPMITOOL_BIN = os.getenv("IPMITOOL_BIN", "ipmitool")
SSH_PORT = int(os.getenv("IDRAC_SSH_PORT", "22"))
IPMI_PORT = int(os.getenv("IDRAC_IPMI_PORT", "623"))
WSMAN_PATH = "/wsman"

# Retry Redfish/WS-Man with legacy TLS when the modern handshake fails (iDRAC 7/8)
LEGACY_TLS_FALLBACK = os.getenv("LEGACY_TLS_FALLBACK", "true").lower() == "true"

# Discovery result cache
DISCOVERY_CACHE_TTL_SECONDS = int(os.getenv("DISCOVERY_CACHE_TTL_SECONDS", "300"))  # 5 minutes

# Polling interval (seconds)
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "10"))  # Check for new discovery jobs every 10 seconds

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# SSL verification
VERIFY_SSL = False
