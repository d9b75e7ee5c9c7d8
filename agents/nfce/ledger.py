"""Relational ledger of issued NFC-e numbers (SQLAlchemy Core)."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Dict, Iterator, Optional

import sqlalchemy as sa
from sqlalchemy import MetaData, Table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from backend.core.config import settings
from backend.core.observability.logging import logger

from .dto import NumberingKey, NumberingStats
from .errors import LedgerConflictError

_METADATA = MetaData()

STATUS_RESERVED = "reserved"
STATUS_AUTHORIZED = "authorized"
STATUS_DENIED = "denied"
STATUS_REJECTED = "rejected"
STATUS_CANCELED = "canceled"
STATUS_ABANDONED = "abandoned"

TERMINAL_STATUSES = (STATUS_AUTHORIZED, STATUS_DENIED, STATUS_REJECTED, STATUS_CANCELED)
OUTCOME_STATUSES = (STATUS_AUTHORIZED, STATUS_DENIED, STATUS_REJECTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_ledger_table(metadata: MetaData) -> Table:
    """Return the nfce_ledger table definition for the given metadata."""
    return sa.Table(
        "nfce_ledger",
        metadata,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tax_id", sa.String(14), nullable=False),
        sa.Column("jurisdiction", sa.String(2), nullable=False),
        sa.Column("series", sa.String(3), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("confirmation_code", sa.String(8), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("access_key", sa.String(44), nullable=True),
        sa.Column("protocol", sa.String(32), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "tax_id", "jurisdiction", "series", "environment", "ordinal",
            name="uq_nfce_ledger_key_ordinal",
        ),
        sa.UniqueConstraint(
            "tax_id", "jurisdiction", "series", "environment", "confirmation_code",
            name="uq_nfce_ledger_key_code",
        ),
        sa.UniqueConstraint("access_key", name="uq_nfce_ledger_access_key"),
        sa.Index("ix_nfce_ledger_status_created_at", "status", "created_at"),
        extend_existing=True,
    )


def get_failures_table(metadata: MetaData) -> Table:
    """Return the nfce_numbering_failures audit table definition."""
    return sa.Table(
        "nfce_numbering_failures",
        metadata,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tax_id", sa.String(14), nullable=False),
        sa.Column("jurisdiction", sa.String(2), nullable=False),
        sa.Column("series", sa.String(3), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("confirmation_code", sa.String(8), nullable=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Index(
            "ix_nfce_numbering_failures_key", "tax_id", "jurisdiction", "series", "environment"
        ),
        extend_existing=True,
    )


_LEDGER = get_ledger_table(_METADATA)
_FAILURES = get_failures_table(_METADATA)


@lru_cache(maxsize=1)
def _get_engine() -> Engine:
    """Create (and cache) the SQLAlchemy engine used for the ledger."""
    return sa.create_engine(settings.database_url, future=True)


def _key_filter(table: Table, key: NumberingKey):
    return sa.and_(
        table.c.tax_id == key.tax_id,
        table.c.jurisdiction == key.jurisdiction,
        table.c.series == key.series,
        table.c.environment == key.environment.value,
    )


class LedgerStore:
    """Persistence for numbering rows; every method runs its own transaction
    unless it receives an explicit connection."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine or _get_engine()
        self._clock = clock or _utcnow

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "LedgerStore":
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        return cls(sa.create_engine(url, future=True, connect_args=connect_args), **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        _METADATA.create_all(self._engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self._engine.begin() as conn:
            yield conn

    # -- allocation primitives (caller supplies the transaction) -------------

    def max_ordinal(
        self,
        conn: Connection,
        key: NumberingKey,
        *,
        terminal_only: bool = False,
        lock: bool = True,
    ) -> int:
        """Highest ordinal recorded for ``key`` or 0.

        ``lock`` takes a row lock on the current maximum (``FOR UPDATE`` on
        backends that support it) for the rest of the transaction.
        """
        stmt = sa.select(_LEDGER.c.ordinal).where(_key_filter(_LEDGER, key))
        if terminal_only:
            stmt = stmt.where(_LEDGER.c.status.in_(TERMINAL_STATUSES))
        stmt = stmt.order_by(_LEDGER.c.ordinal.desc()).limit(1)
        if lock:
            stmt = stmt.with_for_update()
        value = conn.execute(stmt).scalar()
        return int(value or 0)

    def code_exists(self, conn: Connection, key: NumberingKey, code: str) -> bool:
        stmt = sa.select(sa.literal(1)).where(
            _key_filter(_LEDGER, key), _LEDGER.c.confirmation_code == code
        ).limit(1)
        return conn.execute(stmt).first() is not None

    def insert_reservation(
        self, conn: Connection, key: NumberingKey, ordinal: int, code: str
    ) -> None:
        now = self._clock()
        conn.execute(
            sa.insert(_LEDGER).values(
                **key.as_dict(),
                ordinal=ordinal,
                confirmation_code=code,
                status=STATUS_RESERVED,
                created_at=now,
                updated_at=now,
            )
        )

    # -- outcome bookkeeping --------------------------------------------------

    def record_outcome(
        self,
        key: NumberingKey,
        ordinal: int,
        code: str,
        *,
        status: str,
        access_key: Optional[str] = None,
        protocol: Optional[str] = None,
        reason: Optional[str] = None,
        authorized_at: Optional[datetime] = None,
    ) -> None:
        """Confirm an in-flight reservation, or append the row when none exists.

        Raises :class:`LedgerConflictError` when another row already owns the
        ordinal, the code or the access key; nothing is written in that case.
        """
        if status not in OUTCOME_STATUSES:
            raise ValueError(f"unsupported outcome status {status!r}")
        now = self._clock()
        values = dict(
            status=status,
            access_key=access_key,
            protocol=protocol,
            reason=reason,
            authorized_at=authorized_at,
            updated_at=now,
        )
        with self._engine.begin() as conn:
            result = conn.execute(
                sa.update(_LEDGER)
                .where(
                    _key_filter(_LEDGER, key),
                    _LEDGER.c.ordinal == ordinal,
                    _LEDGER.c.confirmation_code == code,
                    _LEDGER.c.status.in_((STATUS_RESERVED, STATUS_ABANDONED)),
                )
                .values(**values)
            )
            if result.rowcount == 0:
                try:
                    conn.execute(
                        sa.insert(_LEDGER).values(
                            **key.as_dict(),
                            ordinal=ordinal,
                            confirmation_code=code,
                            created_at=now,
                            **values,
                        )
                    )
                except IntegrityError as exc:
                    raise LedgerConflictError(
                        f"ordinal {ordinal} or code is already recorded for this key"
                    ) from exc

        logger.info(
            "nfce_ledger_outcome_recorded",
            extra={**key.as_dict(), "ordinal": ordinal, "status": status},
        )

    def release(self, key: NumberingKey, ordinal: int, code: Optional[str] = None) -> bool:
        """Delete an in-flight reservation so that its ordinal can be reused."""
        conditions = [
            _key_filter(_LEDGER, key),
            _LEDGER.c.ordinal == ordinal,
            _LEDGER.c.status == STATUS_RESERVED,
        ]
        if code is not None:
            conditions.append(_LEDGER.c.confirmation_code == code)
        with self._engine.begin() as conn:
            result = conn.execute(sa.delete(_LEDGER).where(*conditions))
        return result.rowcount > 0

    def mark_canceled(
        self, access_key: str, *, protocol: Optional[str] = None, reason: Optional[str] = None
    ) -> bool:
        values: Dict[str, object] = {"status": STATUS_CANCELED, "updated_at": self._clock()}
        if reason is not None:
            values["reason"] = reason
        if protocol is not None:
            values["protocol"] = protocol
        with self._engine.begin() as conn:
            result = conn.execute(
                sa.update(_LEDGER)
                .where(_LEDGER.c.access_key == access_key)
                .values(**values)
            )
        return result.rowcount > 0

    def record_failure(
        self,
        key: NumberingKey,
        ordinal: int,
        code: Optional[str],
        *,
        kind: str,
        error: str,
    ) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                sa.insert(_FAILURES).values(
                    **key.as_dict(),
                    ordinal=ordinal,
                    confirmation_code=code,
                    kind=kind,
                    error=error[:2000],
                    created_at=self._clock(),
                )
            )

    def expire_reservations(self, older_than: datetime) -> int:
        """Mark stale reservations abandoned; their ordinals stay consumed."""
        with self._engine.begin() as conn:
            result = conn.execute(
                sa.update(_LEDGER)
                .where(
                    _LEDGER.c.status == STATUS_RESERVED,
                    _LEDGER.c.created_at < older_than,
                )
                .values(status=STATUS_ABANDONED, updated_at=self._clock())
            )
        return result.rowcount

    # -- reads ------------------------------------------------------------------

    def find_by_access_key(self, access_key: str) -> Optional[Dict[str, object]]:
        with self._engine.connect() as conn:
            row = conn.execute(
                sa.select(_LEDGER).where(_LEDGER.c.access_key == access_key)
            ).mappings().first()
        return dict(row) if row else None

    def rows(self, key: NumberingKey) -> list[Dict[str, object]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                sa.select(_LEDGER).where(_key_filter(_LEDGER, key)).order_by(_LEDGER.c.ordinal)
            ).mappings()
            return [dict(row) for row in result]

    def failures(self, key: NumberingKey) -> list[Dict[str, object]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                sa.select(_FAILURES).where(_key_filter(_FAILURES, key)).order_by(_FAILURES.c.id)
            ).mappings()
            return [dict(row) for row in result]

    def stats(self, key: NumberingKey) -> NumberingStats:
        with self._engine.connect() as conn:
            counts = dict(
                conn.execute(
                    sa.select(_LEDGER.c.status, sa.func.count())
                    .where(_key_filter(_LEDGER, key))
                    .group_by(_LEDGER.c.status)
                ).all()
            )
            max_ordinal = self.max_ordinal(conn, key, lock=False)
            last_issued = conn.execute(
                sa.select(sa.func.max(_LEDGER.c.authorized_at)).where(
                    _key_filter(_LEDGER, key)
                )
            ).scalar()
        if last_issued is not None and last_issued.tzinfo is None:
            last_issued = last_issued.replace(tzinfo=timezone.utc)
        return NumberingStats(
            key=key,
            next_ordinal=max_ordinal + 1,
            authorized=counts.get(STATUS_AUTHORIZED, 0),
            denied=counts.get(STATUS_DENIED, 0),
            rejected=counts.get(STATUS_REJECTED, 0),
            canceled=counts.get(STATUS_CANCELED, 0),
            in_flight=counts.get(STATUS_RESERVED, 0),
            last_issued_at=last_issued,
        )


__all__ = [
    "LedgerStore",
    "get_ledger_table",
    "get_failures_table",
    "STATUS_RESERVED",
    "STATUS_AUTHORIZED",
    "STATUS_DENIED",
    "STATUS_REJECTED",
    "STATUS_CANCELED",
    "STATUS_ABANDONED",
    "TERMINAL_STATUSES",
]
