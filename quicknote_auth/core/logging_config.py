import logging
import re
from typing import Any

from quicknote_auth.core.config import LOG_LEVEL

# base32 TOTP secrets are 32+ chars of A-Z2-7
_SECRET_PATTERN = re.compile(r"\b[A-Z2-7]{32,}\b")
_SENSITIVE_FIELDS = ("secret", "token", "key", "password", "code")
MASK = "***MASKED***"


def mask_value(value: Any) -> Any:
    """Redact TOTP secrets and sensitive mapping fields from a log argument"""
    if isinstance(value, str):
        return _SECRET_PATTERN.sub(MASK, value)
    if isinstance(value, dict):
        return {
            k: (MASK if any(f in str(k).lower() for f in _SENSITIVE_FIELDS) else mask_value(v))
            for k, v in value.items()
        }
    return value


class SecretMaskingFilter(logging.Filter):
    """Scrubs secrets from records before any handler sees them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_value(record.msg)
        if isinstance(record.args, dict):
            record.args = mask_value(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(mask_value(a) for a in record.args)
        return True


def short_id(value: str) -> str:
    """Truncate an identifier for logging"""
    return f"{value[:8]}..." if value else "<none>"


def configure_logging(level: str = LOG_LEVEL) -> None:
    root = logging.getLogger()
    if not any(isinstance(f, SecretMaskingFilter) for h in root.handlers for f in h.filters):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        handler.addFilter(SecretMaskingFilter())
        root.addHandler(handler)
    root.setLevel(level)
