"""Fehlertaxonomie für die NFC-e-Ausgabe."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .dto import OutcomeRecord


class NfceError(RuntimeError):
    pass


class ValidationError(NfceError):
    """Rejected locally before any network call."""


class UnsupportedJurisdictionError(NfceError):
    def __init__(self, jurisdiction: str, operation: str) -> None:
        super().__init__(f"jurisdiction {jurisdiction!r} not supported for {operation}")
        self.jurisdiction = jurisdiction
        self.operation = operation


class AllocationExhausted(NfceError):
    pass


class SessionConstructionError(NfceError):
    pass


class TransportError(NfceError):
    """Technical fault: the request never reliably reached the authority."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        raw_body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.raw_body = raw_body


class SoapFaultError(TransportError):
    pass


class AuthorityRejection(NfceError):
    def __init__(self, outcome: "OutcomeRecord") -> None:
        code = outcome.status_code or "?"
        super().__init__(f"authority rejected request ({code}): {outcome.reason or 'no reason given'}")
        self.outcome = outcome
        self.status_code = outcome.status_code
        self.reason = outcome.reason


class ParserError(NfceError):
    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class LedgerConflictError(NfceError):
    """Another ledger row already owns the ordinal, the code or the access key."""

    def __init__(self, message: str, outcome: Optional["OutcomeRecord"] = None) -> None:
        super().__init__(message)
        self.outcome = outcome


__all__ = [
    "NfceError",
    "ValidationError",
    "UnsupportedJurisdictionError",
    "AllocationExhausted",
    "SessionConstructionError",
    "TransportError",
    "SoapFaultError",
    "AuthorityRejection",
    "ParserError",
    "LedgerConflictError",
]
