"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("income", "fixed", "variable", name="categorykind"),
            nullable=False,
            server_default="variable",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_category_tenant_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("date", sa.Date()),
        sa.Column("period", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column(
            "currency",
            sa.Enum("USD", "BRL", "EUR", name="currencycode"),
            nullable=False,
            server_default="USD",
        ),
        sa.Column("source", sa.Text()),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "category_kind",
            sa.Enum("income", "fixed", "variable", name="categorykind"),
            nullable=False,
            server_default="variable",
        ),
        sa.Column(
            "recurrence_type",
            sa.Enum("one_time", "monthly", name="recurrencetype"),
            nullable=False,
            server_default="one_time",
        ),
        sa.Column("recurrence_group_id", sa.String(length=36)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_tenant_period", "transactions", ["tenant_id", "period"]
    )
    op.create_index("ix_transactions_tenant_date", "transactions", ["tenant_id", "date"])
    op.create_index(
        "ix_transactions_recurrence_group", "transactions", ["recurrence_group_id"]
    )

    op.create_table(
        "monthly_summaries",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.Date(), nullable=False),
        sa.Column("income_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("expense_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "period", name="pk_monthly_summaries"),
    )


def downgrade():
    op.drop_table("monthly_summaries")
    op.drop_index("ix_transactions_recurrence_group", table_name="transactions")
    op.drop_index("ix_transactions_tenant_date", table_name="transactions")
    op.drop_index("ix_transactions_tenant_period", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    sa.Enum(name="recurrencetype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="currencycode").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="categorykind").drop(op.get_bind(), checkfirst=True)
