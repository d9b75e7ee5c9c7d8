from __future__ import annotations

import time
from typing import Optional

import httpx
from lxml import etree

from backend.core.config import settings
from backend.core.observability import metrics
from backend.core.observability.logging import logger

from .artifacts import ArtifactRecorder
from .dialects import DEFAULT_REGISTRY, DialectConfig, DialectRegistry
from .dto import Credential, Operation, jurisdiction_code
from .envelope import (
    SAFE_PARSER,
    build_authorization_batch,
    build_envelope,
    build_event_batch,
    build_query,
    build_status_query,
    localname,
)
from .errors import SoapFaultError, TransportError
from .sessions import AuthoritySession

FAULT_MARKERS = ("soap:fault", "soap12:fault", "faultstring", "<fault")


def _fault_text(body: str) -> Optional[str]:
    """Return the fault reason when ``body`` is a SOAP Fault, else None."""
    try:
        root = etree.fromstring(body.encode("utf-8"), SAFE_PARSER)
    except (etree.XMLSyntaxError, ValueError):
        lowered = body.lower()
        if any(marker in lowered for marker in FAULT_MARKERS):
            return body.strip()[:500]
        return None
    for element in root.iter(etree.Element):
        if localname(element) == "Fault":
            for name in ("faultstring", "Text", "Reason"):
                for child in element.iter(etree.Element):
                    if localname(child) == name and (child.text or "").strip():
                        return child.text.strip()
            return "SOAP Fault"
    return None


def unwrap_response(body: str) -> str:
    """Extract the authority result from its transport envelope.

    Handles results delivered as embedded elements and as escaped or CDATA
    text inside ``nfeResultMsg``. Falls back to the raw body.
    """
    try:
        root = etree.fromstring(body.encode("utf-8"), SAFE_PARSER)
    except (etree.XMLSyntaxError, ValueError):
        return body
    if localname(root) != "Envelope":
        return body

    soap_body = next(
        (el for el in root if isinstance(el.tag, str) and localname(el) == "Body"), None
    )
    if soap_body is None:
        return body

    for element in soap_body.iter(etree.Element):
        if localname(element).endswith("ResultMsg"):
            text = (element.text or "").strip()
            if text.startswith("<"):
                return text
            children = [c for c in element if isinstance(c.tag, str)]
            if children:
                return etree.tostring(children[0], encoding="unicode")
    for element in soap_body.iter(etree.Element):
        if localname(element).startswith("ret"):
            return etree.tostring(element, encoding="unicode")
    return body


class AuthorityDispatcher:
    """Send enveloped payloads to the authority over mutually authenticated TLS."""

    def __init__(
        self,
        registry: Optional[DialectRegistry] = None,
        *,
        timeout_s: Optional[float] = None,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        artifacts: Optional[ArtifactRecorder] = None,
    ) -> None:
        self._registry = registry or DEFAULT_REGISTRY
        self._timeout = timeout_s if timeout_s is not None else settings.AUTHORITY_TIMEOUT_S
        self._user_agent = user_agent or settings.AUTHORITY_USER_AGENT
        self._transport = transport
        self._artifacts = artifacts or ArtifactRecorder()

    @property
    def registry(self) -> DialectRegistry:
        return self._registry

    async def submit(
        self,
        signed_document: str,
        dialect: DialectConfig,
        credential: Credential,
        session: AuthoritySession,
        *,
        batch_id: Optional[str] = None,
    ) -> str:
        payload = build_authorization_batch(signed_document, batch_id)
        return await self._send(payload, dialect, credential, session)

    async def cancel(
        self,
        signed_event: str,
        credential: Credential,
        session: AuthoritySession,
        *,
        batch_id: str,
    ) -> str:
        dialect = self._registry.lookup(credential.jurisdiction, Operation.CANCELLATION)
        payload = build_event_batch(signed_event, batch_id)
        return await self._send(payload, dialect, credential, session)

    async def query(self, access_key: str, credential: Credential, session: AuthoritySession) -> str:
        dialect = self._registry.lookup(credential.jurisdiction, Operation.QUERY)
        payload = build_query(access_key, credential.environment)
        return await self._send(payload, dialect, credential, session)

    async def status(self, credential: Credential, session: AuthoritySession) -> str:
        dialect = self._registry.lookup(credential.jurisdiction, Operation.STATUS)
        payload = build_status_query(jurisdiction_code(credential.jurisdiction), credential.environment)
        return await self._send(payload, dialect, credential, session)

    async def _send(
        self,
        payload: etree._Element,
        dialect: DialectConfig,
        credential: Credential,
        session: AuthoritySession,
    ) -> str:
        url = self._registry.endpoint(credential.jurisdiction, credential.environment, dialect.operation)
        envelope = build_envelope(payload, dialect, jurisdiction_code(credential.jurisdiction))
        operation = dialect.operation.value
        self._artifacts.record(operation, "request", envelope)

        t0 = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                verify=session.ssl_context or True,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                response = await client.post(
                    url, content=envelope, headers=dialect.headers(self._user_agent)
                )
        except httpx.TimeoutException as exc:
            metrics.increment_authority_failures(operation, "timeout")
            logger.warning(
                "authority_request_timeout",
                extra={"operation": operation, "url": url, "timeout_s": self._timeout},
            )
            raise TransportError(f"timeout after {self._timeout}s calling {url}") from exc
        except httpx.HTTPError as exc:
            metrics.increment_authority_failures(operation, "network")
            logger.warning(
                "authority_request_failed",
                extra={"operation": operation, "url": url, "error": str(exc)},
            )
            raise TransportError(f"network error calling {url}: {exc}") from exc
        finally:
            metrics.record_authority_duration(operation, (time.perf_counter() - t0) * 1000.0)

        body = response.text
        self._artifacts.record(operation, "response", body)

        if not response.is_success:
            metrics.increment_authority_failures(operation, f"http_{response.status_code}")
            logger.warning(
                "authority_http_error",
                extra={"operation": operation, "status_code": response.status_code},
            )
            fault = _fault_text(body)
            error_cls = SoapFaultError if fault else TransportError
            raise error_cls(
                f"HTTP {response.status_code} from authority"
                + (f": {fault}" if fault else ""),
                status_code=response.status_code,
                raw_body=body,
            )

        fault = _fault_text(body)
        if fault:
            metrics.increment_authority_failures(operation, "soap_fault")
            logger.warning("authority_soap_fault", extra={"operation": operation, "fault": fault})
            raise SoapFaultError(f"SOAP fault: {fault}", status_code=response.status_code, raw_body=body)

        logger.info(
            "authority_request_completed",
            extra={"operation": operation, "status_code": response.status_code},
        )
        return unwrap_response(body)


__all__ = ["AuthorityDispatcher", "unwrap_response"]
