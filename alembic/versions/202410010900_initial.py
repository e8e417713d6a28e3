"""initial schema

Revision ID: 202410010900
Revises:
Create Date: 2024-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202410010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "kind", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("occurrence_limit", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column("last_processed_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("interval > 0", name="ck_rule_interval_positive"),
        sa.CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        sa.CheckConstraint(
            "occurrence_limit IS NULL OR occurrence_limit > 0",
            name="ck_rule_occurrence_limit_positive",
        ),
    )
    op.create_index("ix_recurring_rules_active", "recurring_rules", ["is_active"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "kind", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("payment_method", sa.String(length=50)),
        sa.Column("location", sa.String(length=200)),
        sa.Column("is_fixed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "origin_rule_id", sa.String(length=32), sa.ForeignKey("recurring_rules.id")
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("occurrence_index", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "origin_rule_id", "occurrence_date", name="uq_txn_origin_occurrence"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_kind_date", "transactions", ["kind", "date"])
    op.create_index(
        "ix_transactions_kind_category_date",
        "transactions",
        ["kind", "category", "date"],
    )


def downgrade():
    op.drop_index("ix_transactions_kind_category_date", table_name="transactions")
    op.drop_index("ix_transactions_kind_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_rules_active", table_name="recurring_rules")
    op.drop_table("recurring_rules")
