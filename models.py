from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class UserRole(str, Enum):
    user = "user"
    beta = "beta"
    lifetime = "lifetime"
    admin = "admin"


EXEMPT_ROLES = frozenset({UserRole.beta, UserRole.lifetime, UserRole.admin})


class GroupCode(str, Enum):
    essential = "essential"
    lifestyle = "lifestyle"
    pleasures = "pleasures"
    investments = "investments"
    goals = "goals"


class MemberType(str, Enum):
    owner = "owner"
    partner = "partner"
    child = "child"
    pet = "pet"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    investment = "investment"
    benefit = "benefit"


class CategoryBehavior(str, Enum):
    set_aside = "set_aside"
    refill_up = "refill_up"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    cleared = "cleared"
    reconciled = "reconciled"


SETTLED_STATUSES = (TransactionStatus.cleared, TransactionStatus.reconciled)


class TransactionSource(str, Enum):
    web = "web"
    recurring = "recurring"
    scheduled = "scheduled"
    manual = "manual"
    quick = "quick"


class BillFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class IncomeType(str, Enum):
    salary = "salary"
    benefit = "benefit"
    freelance = "freelance"
    rental = "rental"
    investment = "investment"
    other = "other"


class IncomeFrequency(str, Enum):
    monthly = "monthly"
    biweekly = "biweekly"
    weekly = "weekly"


class MonthStatus(str, Enum):
    planning = "planning"
    active = "active"
    closed = "closed"


class InviteStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"
    cancelled = "cancelled"


class AccessLinkType(str, Enum):
    lifetime = "lifetime"
    beta = "beta"


class PlanType(str, Enum):
    solo = "solo"
    duo = "duo"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Plan(Base, TimestampMixin):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    codename: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    required_coupon_count: Mapped[Optional[int]] = mapped_column(Integer)
    has_monthly_pricing: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    monthly_price_cents: Mapped[Optional[int]] = mapped_column(Integer)
    monthly_price_anchor_cents: Mapped[Optional[int]] = mapped_column(Integer)
    has_yearly_pricing: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    yearly_price_cents: Mapped[Optional[int]] = mapped_column(Integer)
    yearly_price_anchor_cents: Mapped[Optional[int]] = mapped_column(Integer)
    has_onetime_pricing: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    onetime_price_cents: Mapped[Optional[int]] = mapped_column(Integer)
    quotas: Mapped[Optional[dict]] = mapped_column(JSON)


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    display_name: Mapped[Optional[str]] = mapped_column(String(120))
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole, "userrole"), default=UserRole.user, nullable=False
    )
    plan_id: Mapped[Optional[int]] = mapped_column(ForeignKey("plans.id"))
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(120))
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    access_link_id: Mapped[Optional[int]] = mapped_column(Integer)
    deletion_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deletion_reason: Mapped[Optional[str]] = mapped_column(Text)
    onboarding_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    plan: Mapped[Optional[Plan]] = relationship("Plan")
    memberships: Mapped[list["BudgetMember"]] = relationship(
        "BudgetMember", back_populates="user"
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[GroupCode] = mapped_column(
        _enum(GroupCode, "groupcode"), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group"
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    currency: Mapped[str] = mapped_column(String(3), default="BRL", nullable=False)

    members: Mapped[list["BudgetMember"]] = relationship(
        "BudgetMember", back_populates="budget"
    )


class BudgetMember(Base, TimestampMixin):
    __tablename__ = "budget_members"
    __table_args__ = (
        UniqueConstraint("budget_id", "user_id", name="uq_budget_member_user"),
        Index("ix_budget_members_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[MemberType] = mapped_column(
        _enum(MemberType, "membertype"), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(9))
    monthly_pleasure_budget_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    budget: Mapped[Budget] = relationship("Budget", back_populates="members")
    user: Mapped[Optional[User]] = relationship("User", back_populates="memberships")


class FinancialAccount(Base, TimestampMixin):
    __tablename__ = "financial_accounts"
    __table_args__ = (
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="closing_day_range",
        ),
        CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)", name="due_day_range"
        ),
        Index("ix_financial_accounts_budget", "budget_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    owner_member_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_members.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        _enum(AccountType, "accounttype"), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cleared_balance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    payment_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    monthly_deposit_cents: Mapped[Optional[int]] = mapped_column(Integer)
    deposit_day: Mapped[Optional[int]] = mapped_column(Integer)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"
    __table_args__ = (Index("ix_categories_budget_group", "budget_id", "group_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    member_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_members.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    behavior: Mapped[CategoryBehavior] = mapped_column(
        _enum(CategoryBehavior, "categorybehavior"),
        default=CategoryBehavior.refill_up,
        nullable=False,
    )
    planned_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    target_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    group: Mapped[Group] = relationship("Group", back_populates="categories")


class RecurringBill(Base, TimestampMixin):
    __tablename__ = "recurring_bills"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="amount_non_negative"),
        Index("ix_recurring_bills_budget_active", "budget_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[BillFrequency] = mapped_column(
        _enum(BillFrequency, "billfrequency"),
        default=BillFrequency.monthly,
        nullable=False,
    )
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_auto_debit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_variable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    category: Mapped[Category] = relationship("Category")


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="amount_non_negative"),
        Index("ix_income_sources_budget_active", "budget_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_members.id", ondelete="SET NULL")
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[IncomeType] = mapped_column(
        _enum(IncomeType, "incometype"), default=IncomeType.salary, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[IncomeFrequency] = mapped_column(
        _enum(IncomeFrequency, "incomefrequency"),
        default=IncomeFrequency.monthly,
        nullable=False,
    )
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_auto_confirm: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    member: Mapped[Optional[BudgetMember]] = relationship("BudgetMember")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_budget_date", "budget_id", "date"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        Index("ix_transactions_recurring_bill", "recurring_bill_id", "date"),
        Index("ix_transactions_income_source", "income_source_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="CASCADE"), nullable=False
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    member_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_members.id", ondelete="SET NULL")
    )
    income_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("income_sources.id", ondelete="SET NULL")
    )
    recurring_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_bills.id", ondelete="SET NULL")
    )
    type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transactiontype"), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transactionstatus"),
        default=TransactionStatus.pending,
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    is_installment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE")
    )
    source: Mapped[TransactionSource] = mapped_column(
        _enum(TransactionSource, "transactionsource"),
        default=TransactionSource.web,
        nullable=False,
    )

    account: Mapped[FinancialAccount] = relationship(
        "FinancialAccount", foreign_keys=[account_id]
    )
    category: Mapped[Optional[Category]] = relationship("Category")
    income_source: Mapped[Optional[IncomeSource]] = relationship("IncomeSource")


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(16), default="🎯", nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class GoalContribution(Base, TimestampMixin):
    __tablename__ = "goal_contributions"
    __table_args__ = (
        UniqueConstraint("goal_id", "year", "month", name="uq_goal_contribution_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("goals.id", ondelete="CASCADE"), nullable=False
    )
    from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="SET NULL")
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)


class MonthlyAllocation(Base, TimestampMixin):
    __tablename__ = "monthly_allocations"
    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_allocation_budget_category_month",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="allocation_month_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    carried_over_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )


class MonthlyBudgetStatus(Base, TimestampMixin):
    __tablename__ = "monthly_budget_status"
    __table_args__ = (
        UniqueConstraint("budget_id", "year", "month", name="uq_budget_status_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[MonthStatus] = mapped_column(
        _enum(MonthStatus, "monthstatus"), default=MonthStatus.planning, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class MonthlyIncomeAllocation(Base, TimestampMixin):
    __tablename__ = "monthly_income_allocations"
    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "income_source_id",
            "year",
            "month",
            name="uq_income_allocation_source_month",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    income_source_id: Mapped[int] = mapped_column(
        ForeignKey("income_sources.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_cents: Mapped[int] = mapped_column(Integer, nullable=False)


class Invite(Base, TimestampMixin):
    __tablename__ = "invites"
    __table_args__ = (Index("ix_invites_budget_status", "budget_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    invited_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    email: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(100))
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[InviteStatus] = mapped_column(
        _enum(InviteStatus, "invitestatus"),
        default=InviteStatus.pending,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    budget: Mapped[Budget] = relationship("Budget")
    invited_by: Mapped[Optional[User]] = relationship("User")


class AccessLink(Base, TimestampMixin):
    __tablename__ = "access_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    type: Mapped[AccessLinkType] = mapped_column(
        _enum(AccessLinkType, "accesslinktype"),
        default=AccessLinkType.lifetime,
        nullable=False,
    )
    plan_type: Mapped[PlanType] = mapped_column(
        _enum(PlanType, "plantype"), default=PlanType.solo, nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped[Optional[User]] = relationship("User", foreign_keys=[user_id])


class Coupon(Base, TimestampMixin):
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AuditLog(Base, TimestampMixin):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_action", "action", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    resource: Mapped[str] = mapped_column(String(60), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64))
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
