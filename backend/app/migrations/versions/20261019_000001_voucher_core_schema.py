"""voucher core schema

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "users",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            nullable=False,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("phone", sa.String(length=20), unique=True),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("name", sa.String(length=128)),
        sa.Column("role", sa.String(length=16), nullable=False, server_default=sa.text("'tenant'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("role IN ('admin', 'owner', 'tenant')", name="ck_users_role"),
        sa.CheckConstraint("status IN ('active', 'suspend', 'inactive')", name="ck_users_status"),
    )

    op.create_table(
        "houses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("number_house", sa.Integer(), nullable=False, unique=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_houses_user_id", "houses", ["user_id"])

    op.create_table(
        "vouchers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.DateTime(timezone=False), nullable=False),
        sa.Column("authorization_number", sa.String(length=255)),
        sa.Column("confirmation_code", sa.String(length=20), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("confirmation_status", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("url", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount > 0", name="ck_vouchers_amount_positive"),
    )
    op.create_index("idx_vouchers_date_amount", "vouchers", ["date", "amount"])

    op.create_table(
        "records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "vouchers_id",
            sa.Integer(),
            sa.ForeignKey("vouchers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_records_vouchers_id", "records", ["vouchers_id"])

    op.create_table(
        "transactions_status",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "vouchers_id",
            sa.Integer(),
            sa.ForeignKey("vouchers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("identified_house_number", sa.Integer()),
        sa.Column(
            "validation_status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "validation_status IN ('not-found', 'pending', 'confirmed', 'requires-manual', 'conflict')",
            name="ck_transactions_status_validation_status",
        ),
    )
    op.create_index("ix_transactions_status_vouchers_id", "transactions_status", ["vouchers_id"])

    op.create_table(
        "house_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("house_id", sa.Integer(), sa.ForeignKey("houses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("record_id", sa.Integer(), sa.ForeignKey("records.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_house_records_house_id", "house_records", ["house_id"])
    op.create_index("ix_house_records_record_id", "house_records", ["record_id"])


def downgrade() -> None:
    op.drop_index("ix_house_records_record_id", table_name="house_records")
    op.drop_index("ix_house_records_house_id", table_name="house_records")
    op.drop_table("house_records")
    op.drop_index("ix_transactions_status_vouchers_id", table_name="transactions_status")
    op.drop_table("transactions_status")
    op.drop_index("ix_records_vouchers_id", table_name="records")
    op.drop_table("records")
    op.drop_index("idx_vouchers_date_amount", table_name="vouchers")
    op.drop_table("vouchers")
    op.drop_index("idx_houses_user_id", table_name="houses")
    op.drop_table("houses")
    op.drop_table("users")
