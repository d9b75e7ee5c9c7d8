"""Tests for agents.nfce.classifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agents.nfce import AuthorityRejection, Operation, OutcomeStatus, classify, unwrap_response
from tests.nfce.helpers import (
    NFE_NS,
    access_key_for,
    authorization_reply,
    batch_rejection_reply,
    cancellation_reply,
    query_reply,
    signed_document,
    status_reply,
)

ACCESS_KEY = access_key_for(1, "00000001")


def test_authorized_document() -> None:
    # Arrange
    raw = unwrap_response(authorization_reply(ACCESS_KEY))

    # Act
    outcome = classify(raw, operation=Operation.AUTHORIZATION)

    # Assert
    assert outcome.status is OutcomeStatus.AUTHORIZED
    assert outcome.success is True
    assert outcome.status_code == "100"
    assert outcome.access_key == ACCESS_KEY
    assert outcome.protocol == "135260000000001"
    assert outcome.authorized_at == datetime(2026, 10, 19, 10, 0, tzinfo=timezone(timedelta(hours=-3)))
    assert outcome.raise_for_status() is outcome


def test_classifier_accepts_the_full_envelope() -> None:
    outcome = classify(authorization_reply(ACCESS_KEY))

    assert outcome.status is OutcomeStatus.AUTHORIZED


def test_denied_document_is_not_success() -> None:
    outcome = classify(authorization_reply(ACCESS_KEY, c_stat="110", reason="Uso Denegado"))

    assert outcome.status is OutcomeStatus.DENIED
    assert outcome.success is False
    with pytest.raises(AuthorityRejection) as excinfo:
        outcome.raise_for_status()
    assert excinfo.value.status_code == "110"


def test_processing_is_retryable() -> None:
    outcome = classify(batch_rejection_reply("656", "Consumo Indevido"))

    assert outcome.status is OutcomeStatus.PROCESSING
    assert outcome.is_retryable is True
    assert outcome.to_dict()["retryable"] is True


def test_batch_rejection_falls_back_to_document_access_key() -> None:
    document = signed_document(9, "11112222")

    outcome = classify(
        batch_rejection_reply("225", "Rejeicao: Falha no Schema XML"),
        signed_document=document,
    )

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.status_code == "225"
    assert outcome.reason == "Rejeicao: Falha no Schema XML"
    assert outcome.access_key == access_key_for(9, "11112222")


@pytest.mark.parametrize(
    "c_stat, expected, success",
    [
        ("100", OutcomeStatus.AUTHORIZED, True),
        ("101", OutcomeStatus.CANCELED, True),
        ("110", OutcomeStatus.DENIED, True),
        ("217", OutcomeStatus.NOT_FOUND, False),
    ],
)
def test_query_statuses(c_stat: str, expected: OutcomeStatus, success: bool) -> None:
    outcome = classify(query_reply(ACCESS_KEY, c_stat=c_stat), ACCESS_KEY, Operation.QUERY)

    assert outcome.status is expected
    assert outcome.success is success
    assert outcome.protocol == "135260000000001"


def test_cancellation_confirmed() -> None:
    outcome = classify(cancellation_reply(ACCESS_KEY), ACCESS_KEY, Operation.CANCELLATION)

    assert outcome.status is OutcomeStatus.CANCELLATION_CONFIRMED
    assert outcome.success is True
    assert outcome.protocol == "135260000000099"
    assert outcome.authorized_at is not None


@pytest.mark.parametrize(
    "reason, expected",
    [
        ("Rejeicao: Data do evento nao pode ser menor que a data de emissao", OutcomeStatus.INVALID_DATE),
        ("Rejeicao: Protocolo de autorizacao difere do cadastrado", OutcomeStatus.INVALID_PROTOCOL),
        ("Rejeicao: Justificativa invalida", OutcomeStatus.INVALID_JUSTIFICATION),
        ("Rejeicao: Prazo de cancelamento superior ao previsto", OutcomeStatus.CANCELLATION_ERROR),
    ],
)
def test_cancellation_rejections_are_refined(reason: str, expected: OutcomeStatus) -> None:
    outcome = classify(
        cancellation_reply(ACCESS_KEY, c_stat="573", reason=reason), ACCESS_KEY, Operation.CANCELLATION
    )

    assert outcome.status is expected
    assert outcome.success is False


def test_status_service_available() -> None:
    outcome = classify(status_reply(), operation=Operation.STATUS)

    assert outcome.status is OutcomeStatus.SERVICE_AVAILABLE
    assert outcome.success is True
    assert outcome.access_key is None


def test_result_is_found_below_unknown_wrappers() -> None:
    raw = (
        f'<a xmlns="{NFE_NS}"><b><c><retConsStatServ><cStat>107</cStat>'
        "<xMotivo>Servico em Operacao</xMotivo></retConsStatServ></c></b></a>"
    )

    outcome = classify(raw, operation=Operation.STATUS)

    assert outcome.status is OutcomeStatus.SERVICE_AVAILABLE


@pytest.mark.parametrize(
    "raw",
    ["", "   ", "<html>Bad Gateway", "<root><deep><no><status/></no></deep></root>"],
)
def test_unparseable_responses_yield_parser_error(raw: str) -> None:
    outcome = classify(raw, ACCESS_KEY)

    assert outcome.status is OutcomeStatus.PARSER_ERROR
    assert outcome.success is False
    assert outcome.access_key == ACCESS_KEY
    assert outcome.raw_response == raw


def test_to_dict_omits_raw_response_by_default() -> None:
    outcome = classify(status_reply(), operation=Operation.STATUS)

    data = outcome.to_dict()

    assert "raw_response" not in data
    assert data["operation"] == "status"
    assert data["status"] == "service_available"
    assert "raw_response" in outcome.to_dict(include_raw=True)
