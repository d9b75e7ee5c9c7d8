"""Shared fixtures for the NFC-e tests: sqlite ledger, fake signer, mock authority."""

from __future__ import annotations

import os
import sys
from typing import Callable, List, Optional

import pytest

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from agents.nfce import (  # noqa: E402
    AuthorityDispatcher,
    Credential,
    LedgerStore,
    NumberingKey,
    ReceiptService,
    SequenceAllocator,
    SessionCache,
)
from agents.nfce.artifacts import ArtifactRecorder  # noqa: E402
from backend.core.observability.metrics import reset_metrics  # noqa: E402
from tests.nfce.helpers import T0, TAX_ID, FakeAuthority, FakeSessionFactory  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def ledger(tmp_path) -> LedgerStore:
    store = LedgerStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}", clock=lambda: T0)
    store.create_schema()
    return store


@pytest.fixture
def key() -> NumberingKey:
    return NumberingKey(TAX_ID, "SP", "1", "homologation")


@pytest.fixture
def credential() -> Credential:
    return Credential(
        tax_id=TAX_ID,
        jurisdiction="SP",
        environment="homologation",
        scope_id="000001",
        scope_token="csc-secret-token",
        certificate_path="/certs/loja.pfx",
        certificate_password="pfx-password",
    )


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def make_service(ledger, session_factory, authority) -> Callable[..., ReceiptService]:
    services: List[ReceiptService] = []

    def _build(mode: str = "reserve", cache: Optional[SessionCache] = None) -> ReceiptService:
        allocator = SequenceAllocator(ledger, mode=mode, sleep=lambda _s: None, clock=lambda: T0)
        if cache is None:
            cache = SessionCache(session_factory, start_sweeper=False)
        service = ReceiptService(
            ledger,
            session_cache=cache,
            allocator=allocator,
            dispatcher=AuthorityDispatcher(
                transport=authority.transport, artifacts=ArtifactRecorder(enabled=False)
            ),
            clock=lambda: T0,
        )
        services.append(service)
        return service

    yield _build
    for service in services:
        service.close()
