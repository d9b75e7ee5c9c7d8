"""Entscheidet nach einem Fehler, ob eine vergebene Nummer wieder frei wird."""

from __future__ import annotations

from enum import Enum
from typing import Optional

import anyio
import httpx

from backend.core.observability.logging import logger

from .dto import Allocation, NumberingKey, OutcomeRecord, OutcomeStatus
from .errors import (
    AuthorityRejection,
    SessionConstructionError,
    TransportError,
    UnsupportedJurisdictionError,
    ValidationError,
)
from .ledger import LedgerStore
from .numbering import SequenceAllocator

TECHNICAL_MARKERS = (
    "econnreset",
    "etimedout",
    "timeout",
    "timed out",
    "certificate",
    "ssl",
    "tls",
    "soap",
    "network",
    "connection",
    "socket",
    "enotfound",
    "name resolution",
    "getaddrinfo",
    "econnrefused",
)


class FailureKind(str, Enum):
    TECHNICAL = "technical"
    PERMANENT = "permanent"


def classify_failure(error: BaseException) -> FailureKind:
    """Technical when the request never reliably reached the authority."""
    if isinstance(
        error,
        (TransportError, SessionConstructionError, httpx.TransportError, TimeoutError, ConnectionError),
    ):
        return FailureKind.TECHNICAL
    if isinstance(error, (ValidationError, AuthorityRejection, UnsupportedJurisdictionError)):
        return FailureKind.PERMANENT
    text = f"{type(error).__name__} {error}".lower()
    if any(marker in text for marker in TECHNICAL_MARKERS):
        return FailureKind.TECHNICAL
    return FailureKind.PERMANENT


def classify_outcome(outcome: OutcomeRecord) -> FailureKind:
    """A processing answer means the document was not taken; anything else was decided."""
    if outcome.status is OutcomeStatus.PROCESSING:
        return FailureKind.TECHNICAL
    return FailureKind.PERMANENT


class RecoveryCoordinator:
    def __init__(self, allocator: SequenceAllocator, ledger: LedgerStore) -> None:
        self._allocator = allocator
        self._ledger = ledger

    classify_failure = staticmethod(classify_failure)
    classify_outcome = staticmethod(classify_outcome)

    async def handle_failure(
        self,
        key: NumberingKey,
        allocation: Allocation,
        error: Optional[BaseException] = None,
        *,
        outcome: Optional[OutcomeRecord] = None,
    ) -> FailureKind:
        """Release or keep the numbering and write the audit row."""
        if outcome is not None:
            kind = classify_outcome(outcome)
            detail = f"{outcome.status_code}: {outcome.reason}"
        elif error is not None:
            kind = classify_failure(error)
            detail = f"{type(error).__name__}: {error}"
        else:
            raise ValueError("error or outcome is required")

        if kind is FailureKind.TECHNICAL:
            await self._allocator.release(key, allocation)

        await anyio.to_thread.run_sync(
            lambda: self._ledger.record_failure(
                key,
                allocation.ordinal,
                allocation.confirmation_code,
                kind=kind.value,
                error=detail,
            )
        )
        logger.warning(
            "numbering_failure_recorded",
            extra={
                **key.as_dict(),
                "ordinal": allocation.ordinal,
                "kind": kind.value,
                "released": kind is FailureKind.TECHNICAL,
            },
        )
        return kind


__all__ = [
    "TECHNICAL_MARKERS",
    "FailureKind",
    "classify_failure",
    "classify_outcome",
    "RecoveryCoordinator",
]
