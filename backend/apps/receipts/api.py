"""Thin HTTP adapter over ``agents.nfce.ReceiptService``."""

from __future__ import annotations

import importlib
import time
from functools import lru_cache
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from agents.nfce import (
    AllocationExhausted,
    Credential,
    Environment,
    LedgerConflictError,
    LedgerStore,
    NfceError,
    NumberingKey,
    ReceiptService,
    SellerDirectory,
    SessionConstructionError,
    SignerFactory,
    TransportError,
    UnsupportedJurisdictionError,
    ValidationError,
)
from backend.core.config import settings
from backend.core.observability import bind_request_context
from backend.core.observability.logging import hash_actor_token, logger
from backend.core.observability.metrics import record_histogram

T = TypeVar("T")


async def _request_context(trace_header: str | None = Header(None, alias="X-Trace-ID")) -> str:
    return bind_request_context(trace_header)


router = APIRouter(prefix="/api/v1/nfce", dependencies=[Depends(_request_context)])


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_admin(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header"
        )
    token = authorization.split(" ", 1)[1].strip()
    allowed = [t.strip() for t in settings.ADMIN_TOKENS.split(",") if t.strip()]
    if not allowed or token not in allowed:
        _error(status.HTTP_403_FORBIDDEN, "forbidden", "Admin token required")
    return hash_actor_token(token)


def load_signer_factory(path: str) -> SignerFactory:
    """Resolve ``package.module:callable`` to the configured signer factory."""
    if not path or ":" not in path:
        raise RuntimeError("NFCE_SIGNER_FACTORY must be set to 'module:callable'")
    module_name, attr = path.split(":", 1)
    module = importlib.import_module(module_name)
    return getattr(module, attr)


_DIRECTORY = SellerDirectory()


def get_directory() -> SellerDirectory:
    return _DIRECTORY


@lru_cache(maxsize=1)
def get_service() -> ReceiptService:
    return ReceiptService(
        LedgerStore(), signer_factory=load_signer_factory(settings.NFCE_SIGNER_FACTORY)
    )


async def _guard(operation: str, call: Callable[[], Awaitable[T]]) -> T:
    start = time.perf_counter()
    try:
        return await call()
    except ValidationError as exc:
        _error(422, "validation_error", str(exc))
    except UnsupportedJurisdictionError as exc:
        _error(status.HTTP_400_BAD_REQUEST, "unsupported_jurisdiction", str(exc))
    except LedgerConflictError as exc:
        _error(status.HTTP_409_CONFLICT, "ledger_conflict", str(exc))
    except AllocationExhausted as exc:
        _error(status.HTTP_503_SERVICE_UNAVAILABLE, "allocation_exhausted", str(exc))
    except (TransportError, SessionConstructionError) as exc:
        _error(status.HTTP_502_BAD_GATEWAY, "authority_unavailable", str(exc))
    except NfceError as exc:
        _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "nfce_error", str(exc))
    finally:
        record_histogram(
            "nfce_api_duration_ms", (time.perf_counter() - start) * 1000.0, {"operation": operation}
        )


def _credential(directory: SellerDirectory, tax_id: str, environment: str) -> Credential:
    try:
        env = Environment.parse(environment)
    except ValidationError as exc:
        _error(422, "validation_error", str(exc))
    credential = directory.active_credential(tax_id, env)
    if credential is None:
        _error(status.HTTP_404_NOT_FOUND, "credential_not_found", "No active credential for seller")
    return credential


def _key(tax_id: str, jurisdiction: str, series: str, environment: str) -> NumberingKey:
    try:
        return NumberingKey(tax_id, jurisdiction, series, environment)
    except ValidationError as exc:
        _error(422, "validation_error", str(exc))


class NumberingRequest(BaseModel):
    tax_id: str
    jurisdiction: str
    series: str = "1"
    environment: str = "homologation"


class SubmitRequest(NumberingRequest):
    signed_xml: str


class SellerRequest(BaseModel):
    tax_id: str
    environment: str = "homologation"


class CancelRequest(SellerRequest):
    protocol: str
    justification: str = Field(..., description="15 to 255 characters")


@router.post("/numbering", response_model=dict[str, Any])
async def allocate_numbering(
    body: NumberingRequest,
    service: ReceiptService = Depends(get_service),
):
    key = _key(body.tax_id, body.jurisdiction, body.series, body.environment)
    allocation = await _guard("allocate", lambda: service.allocate_numbering(key))
    return {
        **key.as_dict(),
        "ordinal": allocation.ordinal,
        "confirmation_code": allocation.confirmation_code,
    }


@router.get("/numbering/stats", response_model=dict[str, Any])
async def numbering_stats(
    tax_id: str,
    jurisdiction: str,
    series: str = "1",
    environment: str = "homologation",
    service: ReceiptService = Depends(get_service),
):
    key = _key(tax_id, jurisdiction, series, environment)
    stats = await _guard("numbering_stats", lambda: service.numbering_stats(key))
    return stats.to_dict()


@router.post("/numbering/sweep", response_model=dict[str, Any])
async def sweep_reservations(
    service: ReceiptService = Depends(get_service),
    authorization: str | None = Header(None, alias="Authorization"),
):
    token_hash = _auth_admin(authorization)
    expired = await _guard("sweep", service.sweep_reservations)
    logger.info(
        "ops_nfce_sweep",
        extra={"actor_role": "admin", "actor_token_hash": token_hash, "expired": expired},
    )
    return {"abandoned": expired}


@router.post("/documents", response_model=dict[str, Any])
async def submit_document(
    body: SubmitRequest,
    service: ReceiptService = Depends(get_service),
    directory: SellerDirectory = Depends(get_directory),
):
    key = _key(body.tax_id, body.jurisdiction, body.series, body.environment)
    credential = _credential(directory, body.tax_id, body.environment)
    outcome = await _guard(
        "submit", lambda: service.submit_document(body.signed_xml, key, credential)
    )
    return outcome.to_dict()


@router.post("/documents/{access_key}/query", response_model=dict[str, Any])
async def query_document(
    access_key: str,
    body: SellerRequest,
    service: ReceiptService = Depends(get_service),
    directory: SellerDirectory = Depends(get_directory),
):
    credential = _credential(directory, body.tax_id, body.environment)
    outcome = await _guard("query", lambda: service.query_document(access_key, credential))
    return outcome.to_dict()


@router.post("/documents/{access_key}/cancel", response_model=dict[str, Any])
async def cancel_document(
    access_key: str,
    body: CancelRequest,
    service: ReceiptService = Depends(get_service),
    directory: SellerDirectory = Depends(get_directory),
):
    credential = _credential(directory, body.tax_id, body.environment)
    outcome = await _guard(
        "cancel",
        lambda: service.cancel_document(
            access_key, body.protocol, body.justification, credential
        ),
    )
    return outcome.to_dict()


@router.get("/status", response_model=dict[str, Any])
async def service_status(
    tax_id: str,
    environment: str = "homologation",
    service: ReceiptService = Depends(get_service),
    directory: SellerDirectory = Depends(get_directory),
):
    credential = _credential(directory, tax_id, environment)
    outcome = await _guard("status", lambda: service.check_service_status(credential))
    return outcome.to_dict()


@router.get("/cache/stats", response_model=dict[str, Any])
def cache_stats(
    service: ReceiptService = Depends(get_service),
    authorization: str | None = Header(None, alias="Authorization"),
):
    _auth_admin(authorization)
    return service.cache_stats()


@router.delete("/cache", response_model=dict[str, Any])
def clear_cache(
    service: ReceiptService = Depends(get_service),
    authorization: str | None = Header(None, alias="Authorization"),
):
    token_hash = _auth_admin(authorization)
    cleared = service.clear_cache()
    logger.info(
        "ops_nfce_cache_cleared",
        extra={"actor_role": "admin", "actor_token_hash": token_hash, "cleared": cleared},
    )
    return {"cleared": cleared}
