import logging
import sys
from datetime import datetime, timezone
from typing import Any

from idrac_discovery.config import LOG_LEVEL


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Return current UTC time as ISO format string with timezone info."""
    return utc_now().isoformat()


UNICODE_FALLBACKS = {
    "\u2713": "[OK]",   # check mark
    "\u2717": "[X]",    # ballot x
    "\u2026": "...",    # ellipsis
    "\u2013": "-",      # en dash
    "\u2014": "-",      # em dash
}


def _normalize_unicode(text: str) -> str:
    """Replace problematic Unicode characters with ASCII equivalents."""
    for bad, repl in UNICODE_FALLBACKS.items():
        text = text.replace(bad, repl)
    return text


def _safe_to_stdout(text: str) -> str:
    """Ensure text can be encoded to stdout without exceptions."""
    enc = getattr(sys.stdout, "encoding", None) or "utf-8"
    try:
        return text.encode(enc, errors="replace").decode(enc, errors="replace")
    except (LookupError, UnicodeError):
        return text.encode("ascii", errors="replace").decode("ascii", errors="replace")


def _safe_json_parse(response: Any):
    """Safely parse JSON response, returning the payload or an error dict on failure."""
    try:
        return response.json()
    except ValueError:
        full_text = response.text if hasattr(response, "text") else str(response.content)
        # Truncate for logging purposes only
        return {"_raw_response": full_text[:2000], "_parse_error": "Not valid JSON"}


class _AsciiSafeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return _safe_to_stdout(_normalize_unicode(super().format(record)))


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging the same way for the executor and ad-hoc runs."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_AsciiSafeFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), handlers=[handler])
