"""Settlement core tables.

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_UUID = postgresql.UUID(as_uuid=True)

booking_outcome_enum = sa.Enum("active", "declined", "passed", name="booking_outcome_enum")
meeting_status_enum = sa.Enum("created", "completed", "canceled", name="meeting_status_enum")
settlement_status_enum = sa.Enum(
    "unavailable",
    "processing",
    "needs_refund",
    "refunding",
    "refunded",
    "completed",
    "capture_failed",
    name="settlement_status_enum",
)
wallet_status_enum = sa.Enum("active", "frozen", "closed", name="wallet_status_enum")
withdrawal_status_enum = sa.Enum("withdrawing", name="withdrawal_status_enum")
ledger_entry_kind_enum = sa.Enum("credit", "debit", name="ledger_entry_kind_enum")
notification_category_enum = sa.Enum("settlement", "refund", "withdrawal", name="notification_category_enum")
settlement_run_status_enum = sa.Enum("running", "completed", "failed", name="settlement_run_status_enum")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("stripe_account_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    op.create_table(
        "bookings",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("outcome", booking_outcome_enum, nullable=False, server_default="active"),
        sa.Column("meeting_status", meeting_status_enum, nullable=False, server_default="created"),
        sa.Column("settlement_status", settlement_status_enum, nullable=False, server_default="unavailable"),
        sa.Column("joined_by", sa.String(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("host", sa.String(), nullable=False),
        sa.Column("participant", sa.String(), nullable=False),
        sa.Column("ledger_ref", sa.String(), nullable=True),
        sa.Column("payment_capture_ref", sa.String(), nullable=True),
        sa.Column("topic", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bookings_settlement_status", "bookings", ["settlement_status"])
    op.create_index("ix_bookings_host", "bookings", ["host"])

    op.create_table(
        "wallets",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", wallet_status_enum, nullable=False, server_default="active"),
        sa.Column("withdrawal_status", withdrawal_status_enum, nullable=True),
        sa.Column("pending_transfer_ref", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("owner", "currency", name="uq_wallets_owner_currency"),
    )
    op.create_index("ix_wallets_owner", "wallets", ["owner"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("reference", sa.String(), nullable=False, unique=True),
        sa.Column("kind", ledger_entry_kind_enum, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("counterparty_to", sa.String(), nullable=False),
        sa.Column("counterparty_from", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("booking_id", _UUID, nullable=True),
        sa.Column("wallet_id", _UUID, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallets.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_ledger_entries_owner", "ledger_entries", ["owner"])
    op.create_index("ix_ledger_entries_wallet_id", "ledger_entries", ["wallet_id"])

    op.create_table(
        "notifications",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("category", notification_category_enum, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("sender", sa.String(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_notifications_recipient", "notifications", ["recipient"])

    op.create_table(
        "settlement_runs",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("stage", sa.String(64), nullable=False),
        sa.Column("triggered_by", sa.String(64), nullable=False),
        sa.Column("status", settlement_run_status_enum, nullable=False, server_default="running"),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_settlement_runs_stage", "settlement_runs", ["stage"])


def downgrade() -> None:
    op.drop_index("ix_settlement_runs_stage", table_name="settlement_runs")
    op.drop_table("settlement_runs")
    op.drop_index("ix_notifications_recipient", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_ledger_entries_wallet_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_owner", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_wallets_owner", table_name="wallets")
    op.drop_table("wallets")
    op.drop_index("ix_bookings_host", table_name="bookings")
    op.drop_index("ix_bookings_settlement_status", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")

    bind = op.get_bind()
    for enum_type in (
        settlement_run_status_enum,
        notification_category_enum,
        ledger_entry_kind_enum,
        withdrawal_status_enum,
        wallet_status_enum,
        settlement_status_enum,
        meeting_status_enum,
        booking_outcome_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
