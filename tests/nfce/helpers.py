"""Builders for signed documents and canned authority replies plus test doubles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

import httpx

from agents.nfce import AuthoritySession, Credential

TAX_ID = "12345678000199"
NFE_NS = "http://www.portalfiscal.inf.br/nfe"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
T0 = datetime(2026, 10, 19, 13, 0, 0, tzinfo=timezone.utc)


def access_key_for(ordinal: int, code: str, *, uf: str = "35", series: int = 1) -> str:
    return f"{uf}2610{TAX_ID}65{series:03d}{ordinal:09d}1{code}0"


class FakeSigner:
    """Signer stand-in; appends an empty ds:Signature element."""

    def __init__(self) -> None:
        self.signed: List[str] = []
        self.events: List[tuple[str, str]] = []

    def sign(self, xml: str) -> str:
        self.signed.append(xml)
        return xml

    def sign_event(self, xml: str, tag: str) -> str:
        self.events.append((xml, tag))
        closing = xml.rindex("</")
        return xml[:closing] + f'<Signature xmlns="{DSIG_NS}"/>' + xml[closing:]


class FakeSessionFactory:
    def __init__(self) -> None:
        self.calls: List[Credential] = []
        self.signer = FakeSigner()

    def __call__(self, credential: Credential) -> AuthoritySession:
        self.calls.append(credential)
        return AuthoritySession(
            signer=self.signer, ssl_context=None, identity=credential.redacted()
        )


class FakeAuthority:
    """Queue of canned authority replies served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.replies: List[object] = []

    def reply(self, body: str, status_code: int = 200) -> "FakeAuthority":
        self.replies.append(httpx.Response(status_code, text=body))
        return self

    def fail(self, error: Exception) -> "FakeAuthority":
        self.replies.append(error)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError(f"unexpected authority call to {request.url}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def soap_reply(inner: str, result_tag: str = "nfeResultMsg") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP12_NS}"><soap:Body>'
        f'<{result_tag} xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4">'
        f"{inner}</{result_tag}></soap:Body></soap:Envelope>"
    )


def authorization_reply(
    access_key: str, *, c_stat: str = "100", reason: str = "Autorizado o uso da NF-e"
) -> str:
    return soap_reply(
        f'<retEnviNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        "<cStat>104</cStat><xMotivo>Lote processado</xMotivo>"
        '<protNFe versao="4.00"><infProt><tpAmb>2</tpAmb>'
        f"<chNFe>{access_key}</chNFe><dhRecbto>2026-10-19T10:00:00-03:00</dhRecbto>"
        f"<nProt>135260000000001</nProt><cStat>{c_stat}</cStat><xMotivo>{reason}</xMotivo>"
        "</infProt></protNFe></retEnviNFe>"
    )


def batch_rejection_reply(c_stat: str, reason: str) -> str:
    return soap_reply(
        f'<retEnviNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>{reason}</xMotivo></retEnviNFe>"
    )


def cancellation_reply(access_key: str, *, c_stat: str = "135", reason: str = "Evento registrado") -> str:
    return soap_reply(
        f'<retEnvEvento xmlns="{NFE_NS}" versao="1.00"><idLote>1</idLote>'
        "<cStat>128</cStat><xMotivo>Lote de evento processado</xMotivo>"
        '<retEvento versao="1.00"><infEvento><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>{reason}</xMotivo><chNFe>{access_key}</chNFe>"
        "<dhRegEvento>2026-10-19T11:00:00-03:00</dhRegEvento><nProt>135260000000099</nProt>"
        "</infEvento></retEvento></retEnvEvento>"
    )


def query_reply(access_key: str, *, c_stat: str = "100") -> str:
    return soap_reply(
        f'<retConsSitNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>Autorizado o uso da NF-e</xMotivo><chNFe>{access_key}</chNFe>"
        '<protNFe versao="4.00"><infProt><chNFe>' + access_key + "</chNFe>"
        "<dhRecbto>2026-10-19T10:00:00-03:00</dhRecbto><nProt>135260000000001</nProt>"
        "<cStat>100</cStat></infProt></protNFe></retConsSitNFe>"
    )


def status_reply(c_stat: str = "107") -> str:
    return soap_reply(
        f'<retConsStatServ xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>Servico em Operacao</xMotivo><cUF>35</cUF>"
        "</retConsStatServ>"
    )


def signed_document(ordinal: int, code: str, *, uf: str = "35", series: int = 1) -> str:
    key = access_key_for(ordinal, code, uf=uf, series=series)
    return (
        f'<NFe xmlns="{NFE_NS}">\n'
        f'  <infNFe Id="NFe{key}" versao="4.00">\n'
        f"    <ide><cUF>{uf}</cUF><cNF>{code}</cNF><mod>65</mod><serie>{series}</serie>"
        f"<nNF>{ordinal}</nNF><tpAmb>2</tpAmb></ide>\n"
        f"    <emit><CNPJ>{TAX_ID}</CNPJ><xNome>Loja Teste</xNome></emit>\n"
        "  </infNFe>\n"
        f'  <Signature xmlns="{DSIG_NS}"><SignatureValue>c2lnbmF0dXJl dmFsdWU=</SignatureValue></Signature>\n'
        "</NFe>"
    )


