"""Normalisation of authority responses into ``OutcomeRecord``."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from lxml import etree

from backend.core.observability import metrics
from backend.core.observability.logging import logger

from .dto import Operation, OutcomeRecord, OutcomeStatus
from .envelope import SAFE_PARSER, access_key_from_document, localname, strip_prolog
from .errors import ParserError, ValidationError

MAX_SEARCH_DEPTH = 5

_GENERIC_STATUS: Dict[str, OutcomeStatus] = {
    "100": OutcomeStatus.AUTHORIZED,
    "101": OutcomeStatus.CANCELED,
    "110": OutcomeStatus.DENIED,
    "656": OutcomeStatus.PROCESSING,
    "217": OutcomeStatus.NOT_FOUND,
}

_OPERATION_STATUS: Dict[Operation, Dict[str, OutcomeStatus]] = {
    Operation.CANCELLATION: {"135": OutcomeStatus.CANCELLATION_CONFIRMED},
    Operation.STATUS: {"107": OutcomeStatus.SERVICE_AVAILABLE},
}

SUCCESS_CODES: Dict[Operation, FrozenSet[str]] = {
    Operation.AUTHORIZATION: frozenset({"100"}),
    Operation.QUERY: frozenset({"100", "101", "110"}),
    Operation.CANCELLATION: frozenset({"135"}),
    Operation.STATUS: frozenset({"107"}),
}

# (free-text marker, refined status) checked in order
_CANCELLATION_REASONS: Sequence[tuple[str, OutcomeStatus]] = (
    ("data do evento", OutcomeStatus.INVALID_DATE),
    ("protocolo", OutcomeStatus.INVALID_PROTOCOL),
    ("justificativa", OutcomeStatus.INVALID_JUSTIFICATION),
)

# Known nesting paths, most specific first; each is matched by local name.
# SOAP and result-message wrappers are skipped by _candidates.
_RESULT_PATHS: Sequence[Sequence[str]] = (
    ("retEnvEvento", "retEvento", "infEvento"),
    ("retEvento", "infEvento"),
    ("retEnviNFe", "protNFe", "infProt"),
    ("protNFe", "infProt"),
    ("retConsSitNFe",),
    ("retConsStatServ",),
    ("retEnviNFe",),
    ("retEnvEvento",),
)


def map_status(code: Optional[str], operation: Operation) -> OutcomeStatus:
    if code is None:
        return OutcomeStatus.ERROR
    specific = _OPERATION_STATUS.get(operation, {})
    if code in specific:
        return specific[code]
    return _GENERIC_STATUS.get(code, OutcomeStatus.ERROR)


def refine_cancellation(reason: Optional[str]) -> OutcomeStatus:
    text = (reason or "").lower()
    for marker, status in _CANCELLATION_REASONS:
        if marker in text:
            return status
    return OutcomeStatus.CANCELLATION_ERROR


def _child(element: etree._Element, name: str) -> Optional[etree._Element]:
    for child in element:
        if isinstance(child.tag, str) and localname(child) == name:
            return child
    return None


def _text(element: Optional[etree._Element], name: str) -> Optional[str]:
    if element is None:
        return None
    node = _child(element, name)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def _follow(start: etree._Element, path: Iterable[str]) -> Optional[etree._Element]:
    names = list(path)
    if not names or localname(start) != names[0]:
        return None
    node = start
    for name in names[1:]:
        node = _child(node, name)
        if node is None:
            return None
    return node


def _candidates(root: etree._Element) -> Iterable[etree._Element]:
    """Root itself plus the elements a SOAP or batch wrapper puts it under."""
    yield root
    for element in root.iter(etree.Element):
        if element is not root and localname(element).startswith(("ret", "prot")):
            yield element


def _search(element: etree._Element, depth: int) -> Optional[etree._Element]:
    if _child(element, "cStat") is not None:
        return element
    if depth >= MAX_SEARCH_DEPTH:
        return None
    for child in element:
        if isinstance(child.tag, str):
            found = _search(child, depth + 1)
            if found is not None:
                return found
    return None


def locate_result(root: etree._Element) -> etree._Element:
    for candidate in _candidates(root):
        for path in _RESULT_PATHS:
            node = _follow(candidate, path)
            if node is not None and _child(node, "cStat") is not None:
                return node
    found = _search(root, 0)
    if found is None:
        raise ParserError("no element carrying cStat within the search depth")
    return found


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse(raw_response: str) -> etree._Element:
    text = strip_prolog((raw_response or "").strip())
    if not text:
        raise ParserError("empty response", raw_response or "")
    try:
        return etree.fromstring(text.encode("utf-8"), SAFE_PARSER)
    except etree.XMLSyntaxError as exc:
        raise ParserError(f"response is not XML: {exc}", raw_response) from exc


def _document_access_key(signed_document: Optional[str]) -> Optional[str]:
    if not signed_document:
        return None
    try:
        return access_key_from_document(signed_document)
    except ValidationError:
        return None


def classify(
    raw_response: str,
    access_key: Optional[str] = None,
    operation: Operation = Operation.AUTHORIZATION,
    *,
    signed_document: Optional[str] = None,
) -> OutcomeRecord:
    """Map an authority response to an ``OutcomeRecord``; never raises."""
    operation = Operation(operation)
    try:
        root = _parse(raw_response)
        result = locate_result(root)
    except ParserError as exc:
        logger.warning(
            "authority_response_unparseable",
            extra={"operation": operation.value, "error": str(exc)},
        )
        metrics.increment_outcomes(operation.value, OutcomeStatus.PARSER_ERROR.value)
        return OutcomeRecord(
            operation=operation,
            status=OutcomeStatus.PARSER_ERROR,
            success=False,
            reason=str(exc),
            access_key=access_key or _document_access_key(signed_document),
            raw_response=raw_response or "",
        )

    code = _text(result, "cStat")
    reason = _text(result, "xMotivo")

    # protocol data may sit in a nested protNFe of a query/batch result
    protocol_info = result
    if _text(result, "nProt") is None:
        nested = _child(result, "protNFe")
        if nested is not None and _child(nested, "infProt") is not None:
            protocol_info = _child(nested, "infProt")

    status = map_status(code, operation)
    if operation is Operation.CANCELLATION and status is OutcomeStatus.ERROR:
        status = refine_cancellation(reason)

    record = OutcomeRecord(
        operation=operation,
        status=status,
        success=code in SUCCESS_CODES[operation],
        status_code=code,
        reason=reason,
        access_key=(
            _text(result, "chNFe")
            or _text(protocol_info, "chNFe")
            or access_key
            or _document_access_key(signed_document)
        ),
        protocol=_text(result, "nProt") or _text(protocol_info, "nProt"),
        authorized_at=_parse_timestamp(
            _text(result, "dhRecbto")
            or _text(protocol_info, "dhRecbto")
            or _text(result, "dhRegEvento")
        ),
        raw_response=raw_response,
    )
    metrics.increment_outcomes(operation.value, status.value)
    return record


__all__ = [
    "SUCCESS_CODES",
    "MAX_SEARCH_DEPTH",
    "classify",
    "map_status",
    "refine_cancellation",
    "locate_result",
]
