"""JSON structured logging with mandatory fields and fiscal-identifier redaction."""
import hmac
import json
import logging
import sys
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from hashlib import sha256
from typing import Optional

from backend.core.config import settings

# Request-scoped context; survives task switches inside one request
_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_seller_id: ContextVar[Optional[str]] = ContextVar("seller_id", default=None)

_RESERVED_ATTRS = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and fiscal-identifier redaction."""

    def __init__(self):
        super().__init__()
        # Access keys are exactly 44 digits, tax ids (CNPJ) 14 digits
        self.access_key_pattern = re.compile(r'(?<!\d)(\d{44})(?!\d)')
        self.cnpj_pattern = re.compile(r'(?<!\d)(\d{14})(?!\d)')
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')

    def _redact_pii(self, text: str) -> str:
        """Redact fiscal identifiers and e-mail addresses from text."""
        if not isinstance(text, str):
            return text

        text = self.access_key_pattern.sub(self._mask_access_key, text)
        text = self.cnpj_pattern.sub(self._mask_cnpj, text)
        text = self.email_pattern.sub(self._mask_email, text)
        return text

    def _mask_access_key(self, match) -> str:
        """Mask access key: keep state/period prefix and the check digits."""
        key = match.group(1)
        return key[:6] + "*" * 34 + key[-4:]

    def _mask_cnpj(self, match) -> str:
        """Mask CNPJ: show the first 4 digits only."""
        cnpj = match.group(1)
        return cnpj[:4] + "*" * 10

    def _mask_email(self, match) -> str:
        email = match.group(1)
        if "@" not in email:
            return email
        user, domain = email.split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def format(self, record):
        """Format log record as JSON with mandatory fields and redaction."""
        message = record.getMessage()

        log_entry = {
            'trace_id': _trace_id.get() or 'unknown',
            'seller_id': self._redact_pii(_seller_id.get() or 'unknown'),
            'level': record.levelname.lower(),
            'msg': self._redact_pii(message),
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

        if record.exc_info:
            log_entry['exc_info'] = self._redact_pii(self.formatException(record.exc_info))

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for the current context."""
    _trace_id.set(trace_id)


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_seller_id(seller_id: Optional[str]) -> None:
    """Set seller tax id for the current context."""
    _seller_id.set(seller_id)


def init_logging() -> None:
    """Initialize JSON logging with mandatory fields."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger(__name__)


def hash_actor_token(token: str) -> str:
    """Return an HMAC-SHA256 hash of an admin token using AUDIT_HMAC_KEY.

    The raw token must never be logged; the hash is stable for audit lines.
    """
    key = settings.AUDIT_HMAC_KEY.encode()
    return hmac.new(key, token.encode(), sha256).hexdigest()
