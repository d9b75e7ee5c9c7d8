"""Typed construction of authority payloads and SOAP envelopes (lxml).

Signed content is embedded as a parsed subtree; whitespace between tags is
collapsed by :func:`compact_xml` before embedding and never touched after.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from lxml import etree

from .dialects import DialectConfig
from .dto import Environment, Operation, validate_access_key
from .errors import ValidationError

NFE_NS = "http://www.portalfiscal.inf.br/nfe"
NFE_VERSION = "4.00"
EVENT_VERSION = "1.00"
CANCELLATION_EVENT_TYPE = "110111"
BRT = timezone(timedelta(hours=-3))

_PROLOG = re.compile(r"^\s*<\?xml[^>]*\?>\s*")
_BETWEEN_TAGS = re.compile(r">\s+<")

SAFE_PARSER = etree.XMLParser(
    resolve_entities=False, no_network=True, remove_blank_text=False, huge_tree=False
)


def strip_prolog(xml: str) -> str:
    return _PROLOG.sub("", xml or "", count=1)


def compact_xml(xml: str) -> str:
    """Collapse formatting whitespace between tags; text content is untouched."""
    return _BETWEEN_TAGS.sub("><", strip_prolog(xml)).strip()


def parse_fragment(xml: str) -> etree._Element:
    try:
        return etree.fromstring(compact_xml(xml).encode("utf-8"), SAFE_PARSER)
    except etree.XMLSyntaxError as exc:
        raise ValidationError(f"document is not well-formed XML: {exc}") from exc


def localname(element: etree._Element) -> str:
    return etree.QName(element).localname


def find_descendant(root: etree._Element, name: str) -> Optional[etree._Element]:
    for element in root.iter(etree.Element):
        if localname(element) == name:
            return element
    return None


def _nfe(tag: str) -> str:
    return f"{{{NFE_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: Optional[str] = None) -> etree._Element:
    child = etree.SubElement(parent, _nfe(tag))
    if text is not None:
        child.text = text
    return child


@dataclass(frozen=True, slots=True)
class DocumentNumbering:
    ordinal: int
    confirmation_code: str
    access_key: Optional[str]


def document_numbering(signed_document: str) -> DocumentNumbering:
    """Read nNF, cNF and the access key from a signed NFC-e."""
    root = parse_fragment(signed_document)
    number = find_descendant(root, "nNF")
    code = find_descendant(root, "cNF")
    if number is None or not (number.text or "").strip().isdigit():
        raise ValidationError("signed document has no numeric ide/nNF")
    if code is None or not (code.text or "").strip():
        raise ValidationError("signed document has no ide/cNF")
    return DocumentNumbering(
        ordinal=int(number.text.strip()),
        confirmation_code=code.text.strip(),
        access_key=access_key_from_document(root),
    )


def access_key_from_document(document: etree._Element | str) -> Optional[str]:
    root = parse_fragment(document) if isinstance(document, str) else document
    info = find_descendant(root, "infNFe")
    if info is None:
        return None
    identifier = info.get("Id") or ""
    digits = identifier[3:] if identifier.startswith("NFe") else identifier
    return digits if len(digits) == 44 and digits.isdigit() else None


def random_batch_id() -> str:
    return str(secrets.randbelow(999_999_999) + 1)


def event_batch_id(now: datetime) -> str:
    """15 digits: yymmddHHMMSS plus random padding."""
    stamp = now.astimezone(BRT).strftime("%y%m%d%H%M%S")
    return stamp + "".join(str(secrets.randbelow(10)) for _ in range(15 - len(stamp)))


def build_authorization_batch(signed_document: str, batch_id: Optional[str] = None) -> etree._Element:
    batch = etree.Element(_nfe("enviNFe"), nsmap={None: NFE_NS}, versao=NFE_VERSION)
    _sub(batch, "idLote", batch_id or random_batch_id())
    _sub(batch, "indSinc", "1")
    batch.append(parse_fragment(signed_document))
    return batch


def build_cancellation_event(
    *,
    access_key: str,
    protocol: str,
    justification: str,
    tax_id: str,
    environment: Environment,
    now: datetime,
) -> str:
    """Unsigned ``evento`` for type 110111; sign with tag hint ``infEvento``."""
    access_key = validate_access_key(access_key)
    event = etree.Element(_nfe("evento"), nsmap={None: NFE_NS}, versao=EVENT_VERSION)
    info = _sub(event, "infEvento")
    info.set("Id", f"ID{CANCELLATION_EVENT_TYPE}{access_key}01")
    _sub(info, "cOrgao", access_key[:2])
    _sub(info, "tpAmb", environment.tp_amb)
    _sub(info, "CNPJ", tax_id)
    _sub(info, "chNFe", access_key)
    _sub(info, "dhEvento", now.astimezone(BRT).replace(microsecond=0).isoformat())
    _sub(info, "tpEvento", CANCELLATION_EVENT_TYPE)
    _sub(info, "nSeqEvento", "1")
    _sub(info, "verEvento", EVENT_VERSION)
    detail = _sub(info, "detEvento")
    detail.set("versao", EVENT_VERSION)
    _sub(detail, "descEvento", "Cancelamento")
    _sub(detail, "nProt", protocol)
    _sub(detail, "xJust", justification)
    return etree.tostring(event, encoding="unicode")


def build_event_batch(signed_event: str, batch_id: str) -> etree._Element:
    batch = etree.Element(_nfe("envEvento"), nsmap={None: NFE_NS}, versao=EVENT_VERSION)
    _sub(batch, "idLote", batch_id)
    batch.append(parse_fragment(signed_event))
    return batch


def build_query(access_key: str, environment: Environment) -> etree._Element:
    query = etree.Element(_nfe("consSitNFe"), nsmap={None: NFE_NS}, versao=NFE_VERSION)
    _sub(query, "tpAmb", environment.tp_amb)
    _sub(query, "xServ", "CONSULTAR")
    _sub(query, "chNFe", validate_access_key(access_key))
    return query


def build_status_query(uf_code: str, environment: Environment) -> etree._Element:
    query = etree.Element(_nfe("consStatServ"), nsmap={None: NFE_NS}, versao=NFE_VERSION)
    _sub(query, "tpAmb", environment.tp_amb)
    _sub(query, "cUF", uf_code)
    _sub(query, "xServ", "STATUS")
    return query


def build_envelope(payload: etree._Element, dialect: DialectConfig, uf_code: str) -> bytes:
    """Wrap ``payload`` in the dialect's envelope and serialise it."""
    soap_ns = dialect.envelope_namespace
    envelope = etree.Element(
        f"{{{soap_ns}}}Envelope", nsmap={dialect.envelope_prefix: soap_ns}
    )
    if dialect.header_namespace and dialect.operation is Operation.AUTHORIZATION:
        header = etree.SubElement(envelope, f"{{{soap_ns}}}Header")
        cab = etree.SubElement(
            header,
            f"{{{dialect.header_namespace}}}nfeCabecMsg",
            nsmap={None: dialect.header_namespace},
        )
        etree.SubElement(cab, f"{{{dialect.header_namespace}}}cUF").text = uf_code
        etree.SubElement(cab, f"{{{dialect.header_namespace}}}versaoDados").text = NFE_VERSION
    body = etree.SubElement(envelope, f"{{{soap_ns}}}Body")
    message = etree.SubElement(
        body,
        f"{{{dialect.message_namespace}}}{dialect.message_tag}",
        nsmap={dialect.message_prefix: dialect.message_namespace},
    )
    message.append(payload)
    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")


__all__ = [
    "NFE_NS",
    "SAFE_PARSER",
    "DocumentNumbering",
    "strip_prolog",
    "compact_xml",
    "parse_fragment",
    "localname",
    "find_descendant",
    "document_numbering",
    "access_key_from_document",
    "random_batch_id",
    "event_batch_id",
    "build_authorization_batch",
    "build_cancellation_event",
    "build_event_batch",
    "build_query",
    "build_status_query",
    "build_envelope",
]
