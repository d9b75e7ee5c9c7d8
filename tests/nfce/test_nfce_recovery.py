"""Tests for agents.nfce.recovery."""

from __future__ import annotations

import httpx
import pytest

from agents.nfce import (
    AuthorityRejection,
    FailureKind,
    Operation,
    OutcomeRecord,
    OutcomeStatus,
    RecoveryCoordinator,
    SequenceAllocator,
    SessionConstructionError,
    SoapFaultError,
    TransportError,
    UnsupportedJurisdictionError,
    ValidationError,
    classify_failure,
)
from agents.nfce.ledger import STATUS_RESERVED
from agents.nfce.recovery import classify_outcome
from tests.nfce.helpers import T0


def _outcome(status: OutcomeStatus, code: str) -> OutcomeRecord:
    return OutcomeRecord(
        operation=Operation.AUTHORIZATION, status=status, success=False, status_code=code, reason="x"
    )


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportError("timeout after 30s"), FailureKind.TECHNICAL),
        (SoapFaultError("SOAP fault: Server"), FailureKind.TECHNICAL),
        (SessionConstructionError("signer could not be created: boom"), FailureKind.TECHNICAL),
        (httpx.ConnectError("connection refused"), FailureKind.TECHNICAL),
        (TimeoutError(), FailureKind.TECHNICAL),
        (ConnectionResetError(), FailureKind.TECHNICAL),
        (RuntimeError("read ECONNRESET"), FailureKind.TECHNICAL),
        (RuntimeError("SSL handshake failed"), FailureKind.TECHNICAL),
        (ValidationError("document is not well-formed XML"), FailureKind.PERMANENT),
        (UnsupportedJurisdictionError("MG", "authorization"), FailureKind.PERMANENT),
        (AuthorityRejection(_outcome(OutcomeStatus.ERROR, "225")), FailureKind.PERMANENT),
        (RuntimeError("Rejeicao: duplicidade de NF-e"), FailureKind.PERMANENT),
    ],
)
def test_classify_failure(error: BaseException, expected: FailureKind) -> None:
    assert classify_failure(error) is expected


def test_processing_outcome_is_technical() -> None:
    assert classify_outcome(_outcome(OutcomeStatus.PROCESSING, "656")) is FailureKind.TECHNICAL
    assert classify_outcome(_outcome(OutcomeStatus.ERROR, "225")) is FailureKind.PERMANENT
    assert classify_outcome(_outcome(OutcomeStatus.PARSER_ERROR, None)) is FailureKind.PERMANENT


@pytest.mark.anyio
async def test_technical_failure_releases_the_number(ledger, key) -> None:
    # Arrange
    allocator = SequenceAllocator(ledger, clock=lambda: T0)
    coordinator = RecoveryCoordinator(allocator, ledger)
    allocation = allocator.allocate_sync(key)

    # Act
    kind = await coordinator.handle_failure(key, allocation, TransportError("connection reset"))

    # Assert
    assert kind is FailureKind.TECHNICAL
    assert ledger.rows(key) == []
    failures = ledger.failures(key)
    assert [f["kind"] for f in failures] == ["technical"]
    assert failures[0]["ordinal"] == allocation.ordinal
    assert allocator.allocate_sync(key).ordinal == allocation.ordinal


@pytest.mark.anyio
async def test_permanent_failure_keeps_the_number_consumed(ledger, key) -> None:
    allocator = SequenceAllocator(ledger, clock=lambda: T0)
    coordinator = RecoveryCoordinator(allocator, ledger)
    allocation = allocator.allocate_sync(key)

    kind = await coordinator.handle_failure(
        key, allocation, outcome=_outcome(OutcomeStatus.ERROR, "539")
    )

    assert kind is FailureKind.PERMANENT
    assert [row["status"] for row in ledger.rows(key)] == [STATUS_RESERVED]
    assert ledger.failures(key)[0]["error"] == "539: x"
    assert allocator.allocate_sync(key).ordinal == allocation.ordinal + 1


@pytest.mark.anyio
async def test_handle_failure_requires_a_cause(ledger, key) -> None:
    allocator = SequenceAllocator(ledger, clock=lambda: T0)
    coordinator = RecoveryCoordinator(allocator, ledger)

    with pytest.raises(ValueError):
        await coordinator.handle_failure(key, allocator.allocate_sync(key))
