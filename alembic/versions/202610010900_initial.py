"""initial schema: versioned ledger entities, history and conflicts

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


def _versioned_columns():
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), nullable=False, index=True),
        sa.Column("created_by", sa.String(length=36), nullable=False),
        sa.Column("last_edited_by", sa.String(length=36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


entity_type = sa.Enum(
    "account", "category", "payee", "transaction", "budget", name="entitytype"
)


def upgrade():
    op.create_table(
        "accounts",
        *_versioned_columns(),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "account_type",
            sa.Enum(
                "cash", "credit_card", "bank", "saving", "loans", name="accounttype"
            ),
            nullable=False,
        ),
        sa.Column("init_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("workspace_id", "name", name="uq_account_workspace_name"),
    )

    op.create_table(
        "categories",
        *_versioned_columns(),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "category_type",
            sa.Enum("income", "expense", name="categorytype"),
            nullable=False,
        ),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("workspace_id", "name", name="uq_category_workspace_name"),
    )

    op.create_table(
        "payees",
        *_versioned_columns(),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("workspace_id", "name", name="uq_payee_workspace_name"),
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("workspace_id", sa.String(length=36), nullable=False, index=True),
        sa.Column("created_by", sa.String(length=36), nullable=False),
        sa.Column("value_cents", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.String(length=36), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.String(length=36), sa.ForeignKey("categories.id")),
        sa.Column("payee_id", sa.String(length=36), sa.ForeignKey("payees.id")),
        sa.Column("note", sa.Text()),
        sa.Column(
            "interval_unit",
            sa.Enum("day", "week", "month", "year", name="intervalunit"),
            nullable=False,
        ),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("next_run_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("interval_count > 0", name="ck_recurring_interval_positive"),
        sa.CheckConstraint("value_cents >= 0", name="ck_recurring_value_positive"),
    )

    op.create_table(
        "transactions",
        *_versioned_columns(),
        sa.Column("value_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "account_id", sa.String(length=36), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.String(length=36), sa.ForeignKey("categories.id")),
        sa.Column("payee_id", sa.String(length=36), sa.ForeignKey("payees.id")),
        sa.Column("note", sa.Text()),
        sa.Column(
            "recurring_id",
            sa.String(length=36),
            sa.ForeignKey("recurring_transactions.id"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.UniqueConstraint(
            "recurring_id", "occurrence_date", name="uq_txn_recurring_occurrence"
        ),
        sa.CheckConstraint("value_cents >= 0", name="ck_transactions_value_positive"),
    )
    op.create_index(
        "ix_transactions_workspace_date", "transactions", ["workspace_id", "date"]
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )

    op.create_table(
        "budgets",
        *_versioned_columns(),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_spent_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("account_id", sa.String(length=36), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.String(length=36), sa.ForeignKey("categories.id")),
        sa.Column("payee_id", sa.String(length=36), sa.ForeignKey("payees.id")),
        sa.Column("last_reset_date", sa.Date(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint(
            "(CASE WHEN account_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN category_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN payee_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_budget_single_scope",
        ),
        sa.UniqueConstraint(
            "workspace_id",
            "account_id",
            "category_id",
            "payee_id",
            name="uq_budget_workspace_scope",
        ),
    )

    op.create_table(
        "budget_notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column(
            "budget_id",
            sa.String(length=36),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_budget_notification_user_budget",
        "budget_notifications",
        ["user_id", "budget_id"],
    )

    op.create_table(
        "entity_versions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("entity_type", entity_type, nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "operation",
            sa.Enum("update", "delete", name="snapshotoperation"),
            nullable=False,
        ),
        sa.Column("previous_data", sa.JSON(), nullable=False),
        sa.Column("new_data", sa.JSON()),
        sa.Column("changed_by", sa.String(length=36), nullable=False),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "entity_type", "entity_id", "version", name="uq_entity_version"
        ),
    )

    op.create_table(
        "entity_conflicts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("entity_type", entity_type, nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("current_version", sa.Integer(), nullable=False),
        sa.Column("incoming_version", sa.Integer(), nullable=False),
        sa.Column("current_data", sa.JSON(), nullable=False),
        sa.Column("incoming_data", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("open", "resolved", "dismissed", name="conflictstatus"),
            nullable=False,
        ),
        sa.Column("detected_by", sa.String(length=36)),
        sa.Column("detected_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_by", sa.String(length=36)),
        sa.Column("resolved_at", sa.DateTime()),
        sa.Column("resolved_version", sa.Integer()),
    )
    op.create_index(
        "ix_entity_conflict_workspace_status",
        "entity_conflicts",
        ["workspace_id", "status"],
    )
    op.create_index(
        "ix_entity_conflict_entity", "entity_conflicts", ["entity_type", "entity_id"]
    )


def downgrade():
    op.drop_index("ix_entity_conflict_entity", table_name="entity_conflicts")
    op.drop_index("ix_entity_conflict_workspace_status", table_name="entity_conflicts")
    op.drop_table("entity_conflicts")
    op.drop_table("entity_versions")
    op.drop_index(
        "ix_budget_notification_user_budget", table_name="budget_notifications"
    )
    op.drop_table("budget_notifications")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_workspace_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("recurring_transactions")
    op.drop_table("payees")
    op.drop_table("categories")
    op.drop_table("accounts")
