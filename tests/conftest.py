"""Session-wide egress guard: tests never reach a real tax authority.

Sockets and httpx clients may only be opened from test code and from the
authority dispatcher (which tests drive through ``httpx.MockTransport``).
Connections to the ledger database named by ``DATABASE_URL`` stay allowed.
"""

import inspect
import json
import os
import socket
import warnings
from pathlib import Path

import httpx
import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

ALLOWED_CALLERS = ("/tests/", "/agents/nfce/dispatcher.py")
REPORT = Path("artifacts") / "egress-violations.json"
VIOLATIONS: list[dict] = []

warnings.filterwarnings(
    "ignore",
    message="Please use `import python_multipart` instead.",
    category=PendingDeprecationWarning,
)


def _database_endpoint(url: str) -> tuple[str | None, int | None]:
    if not url:
        return None, None
    try:
        parsed = make_url(url)
    except ArgumentError:
        return None, None
    if parsed.host is None:
        # sqlite and other file-backed URLs
        return None, None
    return parsed.host, parsed.port or 5432


def _called_from_allowed_code() -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        if any(marker in filename for marker in ALLOWED_CALLERS):
            return True
    return False


def _blocked(fn: str, **details) -> RuntimeError:
    VIOLATIONS.append({"fn": fn, **details})
    return RuntimeError(f"Egress blocked: {fn} disallowed from this callsite")


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    db_host, db_port = _database_endpoint(os.environ.get("DATABASE_URL", ""))

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_client_init = httpx.Client.__init__
    real_async_client_init = httpx.AsyncClient.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if (db_host and host == db_host) or _called_from_allowed_code():
            return real_getaddrinfo(host, *args, **kwargs)
        raise _blocked("getaddrinfo", host=str(host))

    def guard_create_connection(address, *args, **kwargs):
        host, port = (address[0], address[1]) if isinstance(address, tuple) else (None, None)
        if (db_host and host == db_host and port == db_port) or _called_from_allowed_code():
            return real_create_connection(address, *args, **kwargs)
        raise _blocked("create_connection", address=str(address))

    def guard_client_init(self, *args, **kwargs):
        if not _called_from_allowed_code():
            raise _blocked("httpx.Client.__init__")
        return real_client_init(self, *args, **kwargs)

    def guard_async_client_init(self, *args, **kwargs):
        if not _called_from_allowed_code():
            raise _blocked("httpx.AsyncClient.__init__")
        return real_async_client_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_client_init  # type: ignore[assignment]
    httpx.AsyncClient.__init__ = guard_async_client_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_client_init  # type: ignore[assignment]
    httpx.AsyncClient.__init__ = real_async_client_init  # type: ignore[assignment]

    REPORT.parent.mkdir(parents=True, exist_ok=True)
    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))
