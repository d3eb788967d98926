"""Initial schema: properties, units, tenants and the payment ledger.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def upgrade() -> None:
    # Create properties table
    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, comment="Property display name"),
        sa.Column("address", sa.String(length=300), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create units table
    op.create_table(
        "units",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("property_id", sa.Integer(), nullable=False),
        sa.Column(
            "unit_number",
            sa.String(length=50),
            nullable=False,
            comment="House/unit number used as payment account reference",
        ),
        sa.Column(
            "rent_amount", sa.Numeric(12, 2), nullable=False, comment="Contracted monthly rent"
        ),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="available"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("property_id", "unit_number", name="uq_unit_property_number"),
        sa.Index("idx_unit_number", "unit_number"),
        sa.Index("ix_units_property_id", "property_id"),
        sa.Index("ix_units_status", "status"),
    )

    # Create tenants table
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=30), nullable=False),
        sa.Column(
            "bank_account_number",
            sa.String(length=50),
            nullable=True,
            comment="Bank account number quoted on bank transfers",
        ),
        sa.Column("bank_name", sa.String(length=100), nullable=True),
        sa.Column(
            "unit_id",
            sa.Integer(),
            nullable=True,
            comment="Currently assigned unit (exclusive)",
        ),
        sa.Column("lease_start_date", sa.Date(), nullable=True),
        sa.Column("lease_end_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["unit_id"], ["units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("unit_id"),
        sa.Index("ix_tenants_bank_account_number", "bank_account_number"),
        sa.Index("ix_tenants_status", "status"),
    )

    # Create payments table (the ledger)
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=False),
        sa.Column(
            "period_month", sa.String(length=2), nullable=False, comment="2-digit month (01-12)"
        ),
        sa.Column("period_year", sa.Integer(), nullable=False, comment="4-digit year"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("expected_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("deficit", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("carried_forward", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("late_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("external_txn_id", sa.String(length=100), nullable=True),
        sa.Column("reference_number", sa.String(length=100), nullable=True),
        sa.Column("channel", sa.String(length=30), nullable=True),
        sa.Column("receipt_number", sa.String(length=30), nullable=True),
        sa.Column("received_from", sa.String(length=200), nullable=True),
        sa.Column("unit_number", sa.String(length=50), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_auto_generated", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["unit_id"], ["units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_txn_id"),
        sa.UniqueConstraint("receipt_number"),
        sa.Index("ix_payments_tenant_id", "tenant_id"),
        sa.Index("ix_payments_unit_id", "unit_id"),
        sa.Index("ix_payments_due_date", "due_date"),
        sa.Index("ix_payments_status", "status"),
        sa.Index("idx_payment_period", "tenant_id", "unit_id", "period_year", "period_month"),
        sa.Index("idx_payment_status_due", "status", "due_date"),
    )

    # At most one paid / one generated record per (tenant, unit, period)
    op.create_index(
        "uq_payment_paid_per_period",
        "payments",
        ["tenant_id", "unit_id", "period_year", "period_month"],
        unique=True,
        sqlite_where=sa.text("status = 'paid'"),
        postgresql_where=sa.text("status = 'paid'"),
    )
    op.create_index(
        "uq_payment_generated_per_period",
        "payments",
        ["tenant_id", "unit_id", "period_year", "period_month"],
        unique=True,
        sqlite_where=sa.text("is_auto_generated = 1"),
        postgresql_where=sa.text("is_auto_generated"),
    )

    # Create receipt_sequences table
    op.create_table(
        "receipt_sequences",
        sa.Column("year", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("year"),
    )

    # Create stk_push_sessions table
    op.create_table(
        "stk_push_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=30), nullable=False, server_default="initiated"),
        sa.Column(
            "checkout_request_id",
            sa.String(length=100),
            nullable=True,
            comment="Provider checkout-session id (callback correlation key)",
        ),
        sa.Column("merchant_request_id", sa.String(length=100), nullable=True),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("account_reference", sa.String(length=50), nullable=False),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.String(length=300), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_request_id"),
        sa.Index("ix_stk_push_sessions_payment_id", "payment_id"),
        sa.Index("ix_stk_push_sessions_state", "state"),
    )


def downgrade() -> None:
    op.drop_table("stk_push_sessions")
    op.drop_table("receipt_sequences")
    op.drop_index("uq_payment_generated_per_period", table_name="payments")
    op.drop_index("uq_payment_paid_per_period", table_name="payments")
    op.drop_table("payments")
    op.drop_table("tenants")
    op.drop_table("units")
    op.drop_table("properties")
