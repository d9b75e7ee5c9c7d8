"""Authority sessions: signer plus client TLS material for one credential."""

from __future__ import annotations

import os
import secrets
import ssl
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, runtime_checkable

from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    PrivateFormat,
    pkcs12,
)

from backend.core.observability.logging import logger

from .dto import Credential
from .errors import SessionConstructionError


@runtime_checkable
class Signer(Protocol):
    def sign(self, xml: str) -> str:
        ...

    def sign_event(self, xml: str, tag: str) -> str:
        ...


SignerFactory = Callable[[Credential], Signer]


@dataclass
class AuthoritySession:
    signer: Signer
    ssl_context: Optional[ssl.SSLContext]
    identity: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def load_client_context(certificate_path: str, password: str) -> ssl.SSLContext:
    """Build a client TLS context from a PKCS#12 bundle.

    The key is written to short-lived PEM files because ``load_cert_chain``
    only accepts paths. The key file is encrypted with a one-time password;
    both files are removed before returning.
    """

    try:
        data = Path(certificate_path).read_bytes()
    except OSError as exc:
        raise SessionConstructionError(f"certificate not readable: {exc}") from exc

    try:
        key, cert, extra = pkcs12.load_key_and_certificates(
            data, password.encode("utf-8") if password else None
        )
    except ValueError as exc:
        raise SessionConstructionError("certificate could not be decrypted") from exc
    if key is None or cert is None:
        raise SessionConstructionError("certificate bundle has no key or certificate")

    chain = cert.public_bytes(Encoding.PEM) + b"".join(
        c.public_bytes(Encoding.PEM) for c in (extra or [])
    )
    key_password = secrets.token_urlsafe(32)
    key_pem = key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, BestAvailableEncryption(key_password.encode("ascii"))
    )

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    fd_cert, cert_path = tempfile.mkstemp(suffix=".pem")
    fd_key, key_path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd_cert, "wb") as handle:
            handle.write(chain)
        with os.fdopen(fd_key, "wb") as handle:
            handle.write(key_pem)
        context.load_cert_chain(cert_path, key_path, password=key_password)
    except ssl.SSLError as exc:
        raise SessionConstructionError(f"client certificate rejected: {exc}") from exc
    finally:
        for path in (cert_path, key_path):
            try:
                os.unlink(path)
            except OSError:
                logger.warning("session_pem_cleanup_failed", extra={"path": path})
    return context


def build_session(credential: Credential, signer_factory: SignerFactory) -> AuthoritySession:
    """Expensive path: decrypt certificate material and create the signer."""
    credential.validate()
    context = load_client_context(credential.certificate_path, credential.certificate_password)
    try:
        signer = signer_factory(credential)
    except Exception as exc:
        raise SessionConstructionError(f"signer could not be created: {exc}") from exc
    return AuthoritySession(signer=signer, ssl_context=context, identity=credential.redacted())


def session_factory(signer_factory: SignerFactory) -> Callable[[Credential], AuthoritySession]:
    def _build(credential: Credential) -> AuthoritySession:
        return build_session(credential, signer_factory)

    return _build


__all__ = [
    "Signer",
    "SignerFactory",
    "AuthoritySession",
    "load_client_context",
    "build_session",
    "session_factory",
]
