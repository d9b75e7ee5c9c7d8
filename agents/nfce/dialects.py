"""Per-jurisdiction SOAP dialects and authority endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .dto import Environment, Operation, resolve_jurisdiction
from .errors import UnsupportedJurisdictionError

SOAP11 = "soap11"
SOAP12 = "soap12"

SOAP_NAMESPACES: Mapping[str, str] = MappingProxyType(
    {
        SOAP11: "http://schemas.xmlsoap.org/soap/envelope/",
        SOAP12: "http://www.w3.org/2003/05/soap-envelope",
    }
)

WSDL_BASE = "http://www.portalfiscal.inf.br/nfe/wsdl"
WSDL_AUTHORIZATION = f"{WSDL_BASE}/NFeAutorizacao4"
WSDL_EVENT = f"{WSDL_BASE}/NFeRecepcaoEvento4"
WSDL_EVENT_LEGACY = f"{WSDL_BASE}/RecepcaoEvento4"
WSDL_QUERY = f"{WSDL_BASE}/NFeConsultaProtocolo4"
WSDL_STATUS = f"{WSDL_BASE}/NFeStatusServico4"

SOAP_ACTIONS: Mapping[Operation, str] = MappingProxyType(
    {
        Operation.AUTHORIZATION: f"{WSDL_AUTHORIZATION}/nfeAutorizacaoLote",
        Operation.CANCELLATION: f"{WSDL_EVENT}/nfeRecepcaoEvento",
        Operation.QUERY: f"{WSDL_QUERY}/nfeConsultaNF",
        Operation.STATUS: f"{WSDL_STATUS}/nfeStatusServicoNF",
    }
)


@dataclass(frozen=True, slots=True)
class DialectConfig:
    jurisdiction: str
    operation: Operation
    protocol: str
    envelope_prefix: str
    message_tag: str
    message_namespace: str
    message_prefix: Optional[str] = None
    header_namespace: Optional[str] = None

    @property
    def envelope_namespace(self) -> str:
        return SOAP_NAMESPACES[self.protocol]

    @property
    def soap_action(self) -> str:
        return SOAP_ACTIONS[self.operation]

    def headers(self, user_agent: str) -> Dict[str, str]:
        if self.protocol == SOAP12:
            headers = {
                "Content-Type": f'application/soap+xml; charset=utf-8; action="{self.soap_action}"',
                "SOAPAction": self.soap_action,
            }
        else:
            headers = {
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{self.soap_action}"',
            }
        headers.update({"User-Agent": user_agent, "Accept": "*/*", "Connection": "close"})
        return headers


def _dialect(
    uf: str,
    operation: Operation,
    protocol: str,
    namespace: str,
    *,
    prefix: Optional[str] = None,
    envelope_prefix: Optional[str] = None,
    header: bool = False,
) -> DialectConfig:
    return DialectConfig(
        jurisdiction=uf,
        operation=operation,
        protocol=protocol,
        envelope_prefix=envelope_prefix or ("soap12" if protocol == SOAP12 else "soap"),
        message_tag="nfeDadosMsg",
        message_namespace=namespace,
        message_prefix=prefix,
        header_namespace=namespace if header else None,
    )


_DIALECTS: Tuple[DialectConfig, ...] = (
    # SP: SOAP 1.2, default-namespaced message; events use the "soap" prefix
    _dialect("SP", Operation.AUTHORIZATION, SOAP12, WSDL_AUTHORIZATION, header=True),
    _dialect("SP", Operation.CANCELLATION, SOAP12, WSDL_EVENT, envelope_prefix="soap"),
    _dialect("SP", Operation.QUERY, SOAP12, WSDL_QUERY),
    _dialect("SP", Operation.STATUS, SOAP12, WSDL_STATUS),
    # PR: SOAP 1.1, message element bound to the "nfe" prefix
    _dialect("PR", Operation.AUTHORIZATION, SOAP11, WSDL_AUTHORIZATION, prefix="nfe", header=True),
    _dialect("PR", Operation.CANCELLATION, SOAP11, WSDL_EVENT_LEGACY, prefix="nfe"),
    _dialect("PR", Operation.QUERY, SOAP11, WSDL_QUERY, prefix="nfe"),
    _dialect("PR", Operation.STATUS, SOAP11, WSDL_STATUS, prefix="nfe"),
    # RS: SOAP 1.1, default-namespaced message
    _dialect("RS", Operation.AUTHORIZATION, SOAP11, WSDL_AUTHORIZATION, header=True),
    _dialect("RS", Operation.CANCELLATION, SOAP11, WSDL_EVENT_LEGACY),
    _dialect("RS", Operation.QUERY, SOAP11, WSDL_QUERY),
    _dialect("RS", Operation.STATUS, SOAP11, WSDL_STATUS),
)

_ENDPOINTS: Dict[Environment, Dict[str, Dict[Operation, str]]] = {
    Environment.HOMOLOGATION: {
        "SP": {
            Operation.AUTHORIZATION: "https://homologacao.nfce.fazenda.sp.gov.br/ws/NFeAutorizacao4.asmx",
            Operation.QUERY: "https://homologacao.nfce.fazenda.sp.gov.br/ws/NFeConsultaProtocolo4.asmx",
            Operation.STATUS: "https://homologacao.nfce.fazenda.sp.gov.br/ws/NFeStatusServico4.asmx",
            Operation.CANCELLATION: "https://homologacao.nfce.fazenda.sp.gov.br/ws/NFeRecepcaoEvento4.asmx",
        },
        "PR": {
            Operation.AUTHORIZATION: "https://homologacao.nfce.sefa.pr.gov.br/nfce/NFeAutorizacao4",
            Operation.QUERY: "https://homologacao.nfce.sefa.pr.gov.br/nfce/NFeConsultaProtocolo4",
            Operation.STATUS: "https://homologacao.nfce.sefa.pr.gov.br/nfce/NFeStatusServico4",
            Operation.CANCELLATION: "https://homologacao.nfce.sefa.pr.gov.br/nfce/NFeRecepcaoEvento4",
        },
        "RS": {
            Operation.AUTHORIZATION: "https://nfce-homologacao.sefazrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
            Operation.QUERY: "https://nfce-homologacao.sefazrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx",
            Operation.STATUS: "https://nfce-homologacao.sefazrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx",
            Operation.CANCELLATION: "https://nfce-homologacao.sefazrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx",
        },
    },
    Environment.PRODUCTION: {
        "SP": {
            Operation.AUTHORIZATION: "https://nfce.fazenda.sp.gov.br/ws/NFeAutorizacao4.asmx",
            Operation.QUERY: "https://nfce.fazenda.sp.gov.br/ws/NFeConsultaProtocolo4.asmx",
            Operation.STATUS: "https://nfce.fazenda.sp.gov.br/ws/NFeStatusServico4.asmx",
            Operation.CANCELLATION: "https://nfce.fazenda.sp.gov.br/ws/NFeRecepcaoEvento4.asmx",
        },
        "PR": {
            Operation.AUTHORIZATION: "https://nfce.sefa.pr.gov.br/nfce/NFeAutorizacao4",
            Operation.QUERY: "https://nfce.sefa.pr.gov.br/nfce/NFeConsultaProtocolo4",
            Operation.STATUS: "https://nfce.sefa.pr.gov.br/nfce/NFeStatusServico4",
            Operation.CANCELLATION: "https://nfce.sefa.pr.gov.br/nfce/NFeRecepcaoEvento4",
        },
        "RS": {
            Operation.AUTHORIZATION: "https://nfce.sefazrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
            Operation.QUERY: "https://nfce.sefazrs.rs.gov.br/ws/NfeConsulta/NfeConsulta4.asmx",
            Operation.STATUS: "https://nfce.sefazrs.rs.gov.br/ws/NfeStatusServico/NfeStatusServico4.asmx",
            Operation.CANCELLATION: "https://nfce.sefazrs.rs.gov.br/ws/recepcaoevento/recepcaoevento4.asmx",
        },
    },
}


class DialectRegistry:
    """Read-only lookup of dialects and endpoints; populated once at construction."""

    def __init__(
        self,
        dialects: Tuple[DialectConfig, ...] = _DIALECTS,
        endpoints: Mapping[Environment, Mapping[str, Mapping[Operation, str]]] = _ENDPOINTS,
    ) -> None:
        self._dialects = MappingProxyType(
            {(d.jurisdiction, d.operation): d for d in dialects}
        )
        self._endpoints = MappingProxyType(
            {
                (env, uf, op): url
                for env, by_uf in endpoints.items()
                for uf, by_op in by_uf.items()
                for op, url in by_op.items()
            }
        )

    def lookup(self, jurisdiction: str, operation: Operation | str) -> DialectConfig:
        op = Operation(operation)
        uf = resolve_jurisdiction(jurisdiction)
        try:
            return self._dialects[(uf, op)]
        except KeyError:
            raise UnsupportedJurisdictionError(jurisdiction, op.value) from None

    def endpoint(
        self, jurisdiction: str, environment: Environment | str, operation: Operation | str
    ) -> str:
        op = Operation(operation)
        env = Environment.parse(environment)
        uf = resolve_jurisdiction(jurisdiction)
        try:
            return self._endpoints[(env, uf, op)]
        except KeyError:
            raise UnsupportedJurisdictionError(jurisdiction, op.value) from None

    def jurisdictions(self) -> list[str]:
        return sorted({uf for uf, _ in self._dialects})


DEFAULT_REGISTRY = DialectRegistry()


__all__ = [
    "SOAP11",
    "SOAP12",
    "SOAP_NAMESPACES",
    "SOAP_ACTIONS",
    "DialectConfig",
    "DialectRegistry",
    "DEFAULT_REGISTRY",
]
