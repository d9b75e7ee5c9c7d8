"""Boundary operations of the NFC-e core.

``ReceiptService`` wires the allocator, the session cache, the dispatcher,
the classifier and the recovery coordinator behind one narrow interface that
HTTP adapters and CLIs call into.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, Optional

import anyio

from backend.core.observability.logging import logger, set_seller_id

from .classifier import classify
from .dialects import DEFAULT_REGISTRY, DialectRegistry
from .dispatcher import AuthorityDispatcher
from .dto import (
    Allocation,
    Credential,
    NumberingKey,
    NumberingStats,
    Operation,
    OutcomeRecord,
    OutcomeStatus,
    validate_access_key,
    validate_justification,
)
from .envelope import build_cancellation_event, document_numbering, event_batch_id
from .errors import LedgerConflictError, ValidationError
from .ledger import STATUS_AUTHORIZED, STATUS_DENIED, STATUS_REJECTED, LedgerStore
from .numbering import SequenceAllocator
from .recovery import FailureKind, RecoveryCoordinator
from .session_cache import SessionCache
from .sessions import AuthoritySession, SignerFactory, session_factory as build_session_factory


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptService:
    def __init__(
        self,
        ledger: LedgerStore,
        *,
        signer_factory: Optional[SignerFactory] = None,
        session_factory: Optional[Callable[[Credential], AuthoritySession]] = None,
        session_cache: Optional[SessionCache] = None,
        allocator: Optional[SequenceAllocator] = None,
        dispatcher: Optional[AuthorityDispatcher] = None,
        registry: Optional[DialectRegistry] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if session_cache is None:
            if session_factory is None:
                if signer_factory is None:
                    raise ValueError("signer_factory, session_factory or session_cache is required")
                session_factory = build_session_factory(signer_factory)
            session_cache = SessionCache(session_factory)
        self._ledger = ledger
        self._cache = session_cache
        self._allocator = allocator or SequenceAllocator(ledger)
        self._registry = registry or DEFAULT_REGISTRY
        self._dispatcher = dispatcher or AuthorityDispatcher(self._registry)
        self._recovery = RecoveryCoordinator(self._allocator, ledger)
        self._clock = clock or _default_clock

    @property
    def allocator(self) -> SequenceAllocator:
        return self._allocator

    @property
    def session_cache(self) -> SessionCache:
        return self._cache

    # -- numbering ----------------------------------------------------------

    async def allocate_numbering(self, key: NumberingKey) -> Allocation:
        set_seller_id(key.tax_id)
        return await self._allocator.allocate(key)

    async def numbering_stats(self, key: NumberingKey) -> NumberingStats:
        return await self._allocator.stats(key)

    async def sweep_reservations(self) -> int:
        return await self._allocator.sweep()

    # -- authority operations ---------------------------------------------------

    async def submit_document(
        self, signed_xml: str, key: NumberingKey, credential: Credential
    ) -> OutcomeRecord:
        """Submit a signed NFC-e and record its outcome in the ledger.

        ``nNF``/``cNF`` are read from the document itself; they must come from
        :meth:`allocate_numbering` for ``key``.
        """
        set_seller_id(key.tax_id)
        credential.validate()
        if credential.tax_id != key.tax_id or credential.environment is not key.environment:
            raise ValidationError("credential does not match the numbering key")
        dialect = self._registry.lookup(key.jurisdiction, Operation.AUTHORIZATION)
        numbering = document_numbering(signed_xml)
        allocation = Allocation(numbering.ordinal, numbering.confirmation_code)

        try:
            session = await self._cache.get_async(credential)
            raw = await self._dispatcher.submit(signed_xml, dialect, credential, session)
        except Exception as exc:
            await self._recover(key, allocation, error=exc)
            raise

        outcome = classify(
            raw, numbering.access_key, Operation.AUTHORIZATION, signed_document=signed_xml
        )
        await self._settle(key, allocation, outcome)
        logger.info(
            "nfce_submitted",
            extra={
                **key.as_dict(),
                "ordinal": allocation.ordinal,
                "status": outcome.status.value,
                "status_code": outcome.status_code,
            },
        )
        return outcome

    async def query_document(self, access_key: str, credential: Credential) -> OutcomeRecord:
        set_seller_id(credential.tax_id)
        access_key = validate_access_key(access_key)
        credential.validate()
        self._registry.lookup(credential.jurisdiction, Operation.QUERY)
        session = await self._cache.get_async(credential)
        raw = await self._dispatcher.query(access_key, credential, session)
        return classify(raw, access_key, Operation.QUERY)

    async def cancel_document(
        self,
        access_key: str,
        protocol: str,
        justification: str,
        credential: Credential,
    ) -> OutcomeRecord:
        set_seller_id(credential.tax_id)
        access_key = validate_access_key(access_key)
        if not protocol or not protocol.strip():
            raise ValidationError("protocol is required")
        justification = validate_justification(justification)
        credential.validate()
        self._registry.lookup(credential.jurisdiction, Operation.CANCELLATION)

        session = await self._cache.get_async(credential)
        now = self._clock()
        event = build_cancellation_event(
            access_key=access_key,
            protocol=protocol.strip(),
            justification=justification,
            tax_id=credential.tax_id,
            environment=credential.environment,
            now=now,
        )
        signed_event = await anyio.to_thread.run_sync(
            session.signer.sign_event, event, "infEvento"
        )
        raw = await self._dispatcher.cancel(
            signed_event, credential, session, batch_id=event_batch_id(now)
        )
        outcome = classify(raw, access_key, Operation.CANCELLATION)
        if outcome.status is OutcomeStatus.CANCELLATION_CONFIRMED:
            updated = await anyio.to_thread.run_sync(
                partial(
                    self._ledger.mark_canceled,
                    access_key,
                    protocol=outcome.protocol,
                    reason=justification,
                )
            )
            if not updated:
                logger.info("nfce_canceled_outside_ledger", extra={"access_key": access_key})
        return outcome

    async def check_service_status(self, credential: Credential) -> OutcomeRecord:
        credential.validate()
        self._registry.lookup(credential.jurisdiction, Operation.STATUS)
        session = await self._cache.get_async(credential)
        raw = await self._dispatcher.status(credential, session)
        return classify(raw, None, Operation.STATUS)

    # -- session cache ------------------------------------------------------------

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def clear_cache(self) -> int:
        return self._cache.clear()

    def evict_session(self, credential: Credential) -> bool:
        return self._cache.evict(credential)

    def close(self) -> None:
        self._cache.destroy()

    # -- internals --------------------------------------------------------------

    async def _settle(
        self, key: NumberingKey, allocation: Allocation, outcome: OutcomeRecord
    ) -> None:
        if outcome.status in (OutcomeStatus.AUTHORIZED, OutcomeStatus.DENIED):
            status = STATUS_AUTHORIZED if outcome.status is OutcomeStatus.AUTHORIZED else STATUS_DENIED
            try:
                await anyio.to_thread.run_sync(
                    partial(
                        self._ledger.record_outcome,
                        key,
                        allocation.ordinal,
                        allocation.confirmation_code,
                        status=status,
                        access_key=outcome.access_key,
                        protocol=outcome.protocol,
                        reason=outcome.reason,
                        authorized_at=outcome.authorized_at,
                    )
                )
            except LedgerConflictError as exc:
                logger.error(
                    "nfce_ledger_conflict",
                    extra={**key.as_dict(), "ordinal": allocation.ordinal, "status": status},
                )
                raise LedgerConflictError(str(exc), outcome=outcome) from exc
            return

        kind = await self._recover(key, allocation, outcome=outcome)
        if kind is not FailureKind.PERMANENT:
            return
        try:
            await anyio.to_thread.run_sync(
                partial(
                    self._ledger.record_outcome,
                    key,
                    allocation.ordinal,
                    allocation.confirmation_code,
                    status=STATUS_REJECTED,
                    reason=f"{outcome.status_code or outcome.status.value}: {outcome.reason}",
                )
            )
        except LedgerConflictError:
            # the ordinal belongs to a settled document; the failure row is the record
            logger.warning(
                "nfce_rejection_not_recorded",
                extra={
                    **key.as_dict(),
                    "ordinal": allocation.ordinal,
                    "status_code": outcome.status_code,
                },
            )

    async def _recover(
        self,
        key: NumberingKey,
        allocation: Allocation,
        *,
        error: Optional[BaseException] = None,
        outcome: Optional[OutcomeRecord] = None,
    ) -> Optional[FailureKind]:
        try:
            return await self._recovery.handle_failure(key, allocation, error, outcome=outcome)
        except Exception:
            # bookkeeping must not mask the submission failure itself
            logger.error(
                "numbering_recovery_failed",
                extra={**key.as_dict(), "ordinal": allocation.ordinal},
                exc_info=True,
            )
            if error is None:
                raise
            return None


__all__ = ["ReceiptService"]
