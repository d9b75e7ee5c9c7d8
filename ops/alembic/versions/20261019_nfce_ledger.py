"""Create NFC-e numbering ledger and failure audit tables

Revision ID: 20261019_nfce_ledger
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_nfce_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "nfce_ledger",
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
        sa.Column("authorized_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "tax_id", "jurisdiction", "series", "environment", "ordinal",
            name="uq_nfce_ledger_key_ordinal",
        ),
        sa.UniqueConstraint(
            "tax_id", "jurisdiction", "series", "environment", "confirmation_code",
            name="uq_nfce_ledger_key_code",
        ),
        sa.UniqueConstraint("access_key", name="uq_nfce_ledger_access_key"),
    )
    op.create_index(
        "ix_nfce_ledger_status_created_at",
        "nfce_ledger",
        ["status", "created_at"],
    )

    op.create_table(
        "nfce_numbering_failures",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tax_id", sa.String(14), nullable=False),
        sa.Column("jurisdiction", sa.String(2), nullable=False),
        sa.Column("series", sa.String(3), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("confirmation_code", sa.String(8), nullable=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_nfce_numbering_failures_key",
        "nfce_numbering_failures",
        ["tax_id", "jurisdiction", "series", "environment"],
    )


def downgrade() -> None:
    op.drop_index("ix_nfce_numbering_failures_key", table_name="nfce_numbering_failures")
    op.drop_table("nfce_numbering_failures")
    op.drop_index("ix_nfce_ledger_status_created_at", table_name="nfce_ledger")
    op.drop_table("nfce_ledger")
