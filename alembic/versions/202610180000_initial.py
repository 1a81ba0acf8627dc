"""initial hivebudget schema

Revision ID: 202610180000
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180000"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("codename", sa.String(length=50), unique=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("required_coupon_count", sa.Integer()),
        sa.Column(
            "has_monthly_pricing", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("monthly_price_cents", sa.Integer()),
        sa.Column("monthly_price_anchor_cents", sa.Integer()),
        sa.Column(
            "has_yearly_pricing", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("yearly_price_cents", sa.Integer()),
        sa.Column("yearly_price_anchor_cents", sa.Integer()),
        sa.Column(
            "has_onetime_pricing", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("onetime_price_cents", sa.Integer()),
        sa.Column("quotas", sa.JSON()),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=120)),
        sa.Column("display_name", sa.String(length=120)),
        sa.Column(
            "role",
            sa.Enum("user", "beta", "lifetime", "admin", name="userrole"),
            nullable=False,
            server_default="user",
        ),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("plans.id")),
        sa.Column("stripe_subscription_id", sa.String(length=120)),
        sa.Column("trial_ends_at", sa.DateTime()),
        sa.Column("access_link_id", sa.Integer()),
        sa.Column("deletion_requested_at", sa.DateTime()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deletion_reason", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "code",
            sa.Enum(
                "essential",
                "lifestyle",
                "pleasures",
                "investments",
                "goals",
                name="groupcode",
            ),
            nullable=False,
            unique=True,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="BRL"),
        *_timestamps(),
    )

    op.create_table(
        "budget_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("owner", "partner", "child", "pet", name="membertype"),
            nullable=False,
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "monthly_pleasure_budget_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "user_id", name="uq_budget_member_user"),
    )
    op.create_index("ix_budget_members_user", "budget_members", ["user_id"])

    op.create_table(
        "financial_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "owner_member_id",
            sa.Integer(),
            sa.ForeignKey("budget_members.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit_card",
                "cash",
                "investment",
                "benefit",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "cleared_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("credit_limit_cents", sa.Integer()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        sa.Column(
            "payment_account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("monthly_deposit_cents", sa.Integer()),
        sa.Column("deposit_day", sa.Integer()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_financial_accounts_closing_day_range",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)",
            name="ck_financial_accounts_due_day_range",
        ),
    )
    op.create_index(
        "ix_financial_accounts_budget", "financial_accounts", ["budget_id"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column(
            "member_id",
            sa.Integer(),
            sa.ForeignKey("budget_members.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "behavior",
            sa.Enum("set_aside", "refill_up", name="categorybehavior"),
            nullable=False,
            server_default="refill_up",
        ),
        sa.Column(
            "planned_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("due_day", sa.Integer()),
        sa.Column("target_amount_cents", sa.Integer()),
        sa.Column("target_date", sa.Date()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_categories_budget_group", "categories", ["budget_id", "group_id"]
    )

    op.create_table(
        "recurring_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "monthly", "yearly", name="billfrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("due_day", sa.Integer()),
        sa.Column("due_month", sa.Integer()),
        sa.Column(
            "is_auto_debit", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_variable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_recurring_bills_amount_non_negative"
        ),
    )
    op.create_index(
        "ix_recurring_bills_budget_active",
        "recurring_bills",
        ["budget_id", "is_active"],
    )

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "member_id",
            sa.Integer(),
            sa.ForeignKey("budget_members.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "salary",
                "benefit",
                "freelance",
                "rental",
                "investment",
                "other",
                name="incometype",
            ),
            nullable=False,
            server_default="salary",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("monthly", "biweekly", "weekly", name="incomefrequency"),
            nullable=False,
            server_default="monthly",
        ),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column(
            "is_auto_confirm", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_income_sources_amount_non_negative"
        ),
    )
    op.create_index(
        "ix_income_sources_budget_active",
        "income_sources",
        ["budget_id", "is_active"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "to_account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "member_id",
            sa.Integer(),
            sa.ForeignKey("budget_members.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "income_source_id",
            sa.Integer(),
            sa.ForeignKey("income_sources.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "recurring_bill_id",
            sa.Integer(),
            sa.ForeignKey("recurring_bills.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "cleared", "reconciled", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column("notes", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "parent_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "source",
            sa.Enum(
                "web",
                "recurring",
                "scheduled",
                "manual",
                "quick",
                name="transactionsource",
            ),
            nullable=False,
            server_default="web",
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_budget_date", "transactions", ["budget_id", "date"]
    )
    op.create_index(
        "ix_transactions_parent", "transactions", ["parent_transaction_id"]
    )
    op.create_index(
        "ix_transactions_recurring_bill",
        "transactions",
        ["recurring_bill_id", "date"],
    )
    op.create_index(
        "ix_transactions_income_source",
        "transactions",
        ["income_source_id", "date"],
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=16), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.Date()),
        sa.Column(
            "is_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "goal_id",
            sa.Integer(),
            sa.ForeignKey("goals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "from_account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "goal_id", "year", "month", name="uq_goal_contribution_month"
        ),
    )

    op.create_table(
        "monthly_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "carried_over_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_allocation_budget_category_month",
        ),
        sa.CheckConstraint(
            "month BETWEEN 1 AND 12",
            name="ck_monthly_allocations_allocation_month_range",
        ),
    )

    op.create_table(
        "monthly_budget_status",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("planning", "active", "closed", name="monthstatus"),
            nullable=False,
            server_default="planning",
        ),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("closed_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "year", "month", name="uq_budget_status_month"
        ),
    )

    op.create_table(
        "monthly_income_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_source_id",
            sa.Integer(),
            sa.ForeignKey("income_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("planned_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id",
            "income_source_id",
            "year",
            "month",
            name="uq_income_allocation_source_month",
        ),
    )

    op.create_table(
        "invites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "invited_by_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
        ),
        sa.Column("email", sa.String(length=255)),
        sa.Column("name", sa.String(length=100)),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", "expired", "cancelled", name="invitestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("accepted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_invites_budget_status", "invites", ["budget_id", "status"])

    op.create_table(
        "access_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=20), nullable=False, unique=True),
        sa.Column(
            "type",
            sa.Enum("lifetime", "beta", name="accesslinktype"),
            nullable=False,
            server_default="lifetime",
        ),
        sa.Column(
            "plan_type",
            sa.Enum("solo", "duo", name="plantype"),
            nullable=False,
            server_default="solo",
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("used_at", sa.DateTime()),
        sa.Column(
            "created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")
        ),
        sa.Column("note", sa.Text()),
        sa.Column("expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "coupons",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("used_at", sa.DateTime()),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("resource", sa.String(length=60), nullable=False),
        sa.Column("resource_id", sa.String(length=64)),
        sa.Column("details", sa.JSON()),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.String(length=255)),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action", "created_at"])


def downgrade():
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("coupons")
    op.drop_table("access_links")
    op.drop_index("ix_invites_budget_status", table_name="invites")
    op.drop_table("invites")
    op.drop_table("monthly_income_allocations")
    op.drop_table("monthly_budget_status")
    op.drop_table("monthly_allocations")
    op.drop_table("goal_contributions")
    op.drop_table("goals")
    op.drop_index("ix_transactions_income_source", table_name="transactions")
    op.drop_index("ix_transactions_recurring_bill", table_name="transactions")
    op.drop_index("ix_transactions_parent", table_name="transactions")
    op.drop_index("ix_transactions_budget_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_income_sources_budget_active", table_name="income_sources")
    op.drop_table("income_sources")
    op.drop_index("ix_recurring_bills_budget_active", table_name="recurring_bills")
    op.drop_table("recurring_bills")
    op.drop_index("ix_categories_budget_group", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_financial_accounts_budget", table_name="financial_accounts")
    op.drop_table("financial_accounts")
    op.drop_index("ix_budget_members_user", table_name="budget_members")
    op.drop_table("budget_members")
    op.drop_table("budgets")
    op.drop_table("groups")
    op.drop_table("users")
    op.drop_table("plans")
