import datetime as dt
from datetime import date, datetime
from typing import ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import (
    AccessLinkType,
    AccountType,
    BillFrequency,
    CategoryBehavior,
    GroupCode,
    IncomeFrequency,
    IncomeType,
    InviteStatus,
    MemberType,
    MonthStatus,
    PlanType,
    TransactionSource,
    TransactionStatus,
    TransactionType,
    UserRole,
)

MAX_CENTS = 1_000_000_000
MAX_ACCOUNT_CENTS = 1_000_000_000_000
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def validate_schedule_day(
    frequency: str, day: Optional[int], due_month: Optional[int] = None
) -> None:
    """Weekly schedules store a weekday (0 = Sunday), the others a day of month."""
    if frequency == "weekly":
        if day is not None and not 0 <= day <= 6:
            raise ValueError("Weekly schedules need a weekday between 0 and 6")
        return
    if day is not None and not 1 <= day <= 31:
        raise ValueError("Day of month must be between 1 and 31")
    if frequency == "yearly":
        if due_month is None:
            raise ValueError("Yearly bills require a due month")
        if not 1 <= due_month <= 12:
            raise ValueError("Due month must be between 1 and 12")


def to_wire_name(name: str) -> str:
    """Money columns keep a `_cents` suffix in Python; JSON keys drop it."""
    return to_camel(name.removesuffix("_cents"))


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_wire_name, populate_by_name=True, extra="forbid"
    )


class PatchModel(ApiModel):
    """Partial update. Only fields in `nullable` may be cleared with null."""

    nullable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_nulls(self):
        for name in sorted(self.model_fields_set):
            if getattr(self, name) is None and name not in self.nullable:
                raise ValueError(f"{to_wire_name(name)} cannot be null")
        return self


class OutModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_wire_name, populate_by_name=True, from_attributes=True
    )


class BudgetIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    currency: str = Field(default="BRL", min_length=3, max_length=3)


class BudgetUpdate(PatchModel):
    nullable = frozenset({"description"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class DependentIn(ApiModel):
    budget_id: int
    name: str = Field(..., min_length=1, max_length=100)
    type: MemberType
    color: Optional[str] = Field(default=None, max_length=9)
    monthly_pleasure_budget_cents: int = Field(default=0, ge=0, le=MAX_CENTS)

    @field_validator("type")
    @classmethod
    def _dependents_only(cls, value: MemberType) -> MemberType:
        if value not in (MemberType.child, MemberType.pet):
            raise ValueError("Can only add dependents (child or pet) through this endpoint")
        return value


class MemberUpdate(PatchModel):
    nullable = frozenset({"color"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    monthly_pleasure_budget_cents: Optional[int] = Field(
        default=None, ge=0, le=MAX_CENTS
    )


class AccountIn(ApiModel):
    budget_id: int
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)
    balance_cents: int = Field(default=0, ge=-MAX_ACCOUNT_CENTS, le=MAX_ACCOUNT_CENTS)
    owner_member_id: Optional[int] = None
    credit_limit_cents: Optional[int] = Field(default=None, ge=0, le=MAX_ACCOUNT_CENTS)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    payment_account_id: Optional[int] = None


class AccountUpdate(PatchModel):
    nullable = frozenset(
        {"color", "icon", "owner_member_id", "credit_limit_cents", "closing_day", "due_day"}
    )

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)
    balance_cents: Optional[int] = Field(
        default=None, ge=-MAX_ACCOUNT_CENTS, le=MAX_ACCOUNT_CENTS
    )
    cleared_balance_cents: Optional[int] = Field(
        default=None, ge=-MAX_ACCOUNT_CENTS, le=MAX_ACCOUNT_CENTS
    )
    owner_member_id: Optional[int] = None
    credit_limit_cents: Optional[int] = Field(default=None, ge=0, le=MAX_ACCOUNT_CENTS)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    is_archived: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class CategoryIn(ApiModel):
    budget_id: int
    group_id: int
    member_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    behavior: CategoryBehavior = CategoryBehavior.refill_up
    planned_amount_cents: int = Field(default=0, ge=0, le=MAX_CENTS)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    target_amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    target_date: Optional[date] = None


class CategoryUpdate(PatchModel):
    nullable = frozenset(
        {"icon", "color", "due_day", "target_amount_cents", "target_date"}
    )

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    behavior: Optional[CategoryBehavior] = None
    planned_amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    target_amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    target_date: Optional[date] = None
    is_archived: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class RecurringBillIn(ApiModel):
    budget_id: int
    category_id: int
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    frequency: BillFrequency = BillFrequency.monthly
    due_day: Optional[int] = None
    due_month: Optional[int] = None
    is_auto_debit: bool = False
    is_variable: bool = False

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringBillIn":
        validate_schedule_day(self.frequency.value, self.due_day, self.due_month)
        return self


class RecurringBillUpdate(PatchModel):
    nullable = frozenset({"account_id", "due_day", "due_month"})

    category_id: Optional[int] = None
    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    frequency: Optional[BillFrequency] = None
    due_day: Optional[int] = None
    due_month: Optional[int] = None
    is_auto_debit: Optional[bool] = None
    is_variable: Optional[bool] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class IncomeSourceIn(ApiModel):
    budget_id: int
    member_id: Optional[int] = None
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    type: IncomeType = IncomeType.salary
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    frequency: IncomeFrequency = IncomeFrequency.monthly
    day_of_month: Optional[int] = None
    is_auto_confirm: bool = False

    @model_validator(mode="after")
    def _check_schedule(self) -> "IncomeSourceIn":
        validate_schedule_day(self.frequency.value, self.day_of_month)
        return self


class IncomeSourceUpdate(PatchModel):
    nullable = frozenset({"member_id", "account_id", "day_of_month"})

    member_id: Optional[int] = None
    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[IncomeType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    frequency: Optional[IncomeFrequency] = None
    day_of_month: Optional[int] = None
    is_auto_confirm: Optional[bool] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class TransactionIn(ApiModel):
    budget_id: int
    account_id: int
    category_id: Optional[int] = None
    income_source_id: Optional[int] = None
    member_id: Optional[int] = None
    to_account_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    type: TransactionType
    status: Optional[TransactionStatus] = None
    amount_cents: int = Field(..., ge=-MAX_ACCOUNT_CENTS, le=MAX_ACCOUNT_CENTS)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)
    date: dt.date
    is_installment: bool = False
    total_installments: Optional[int] = Field(default=None, ge=2, le=72)


class TransactionUpdate(PatchModel):
    nullable = frozenset({"category_id", "member_id", "description", "notes"})

    category_id: Optional[int] = None
    member_id: Optional[int] = None
    amount_cents: Optional[int] = Field(
        default=None, ge=-MAX_ACCOUNT_CENTS, le=MAX_ACCOUNT_CENTS
    )
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)
    date: Optional[dt.date] = None
    status: Optional[TransactionStatus] = None


class QuickExpenseIn(ApiModel):
    budget_id: int
    amount: Union[int, str]
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    date: Optional[dt.date] = None


class ConfirmScheduledIn(ApiModel):
    budget_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0, le=MAX_ACCOUNT_CENTS)
    description: Optional[str] = Field(default=None, max_length=200)
    account_id: int
    category_id: Optional[int] = None
    income_source_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    date: dt.date

    @field_validator("type")
    @classmethod
    def _no_transfers(cls, value: TransactionType) -> TransactionType:
        if value == TransactionType.transfer:
            raise ValueError("Scheduled items are either income or expense")
        return value


class MonthIn(ApiModel):
    budget_id: int
    year: int = Field(..., ge=2020, le=2100)
    month: int = Field(..., ge=1, le=12)


class AllocationIn(ApiModel):
    budget_id: int
    category_id: int
    year: int = Field(..., ge=2020, le=2100)
    month: int = Field(..., ge=1, le=12)
    allocated_cents: int = Field(..., ge=0, le=MAX_CENTS)


class CopyAllocationsIn(ApiModel):
    budget_id: int
    from_year: int = Field(..., ge=2020, le=2100)
    from_month: int = Field(..., ge=1, le=12)
    to_year: int = Field(..., ge=2020, le=2100)
    to_month: int = Field(..., ge=1, le=12)
    overwrite: bool = False


class IncomeAllocationIn(ApiModel):
    budget_id: int
    income_source_id: int
    year: int = Field(..., ge=2020, le=2100)
    month: int = Field(..., ge=1, le=12)
    planned_cents: int = Field(..., ge=0, le=MAX_CENTS)


class GoalIn(ApiModel):
    budget_id: int
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    target_amount_cents: int = Field(..., ge=1, le=MAX_ACCOUNT_CENTS)
    initial_amount_cents: int = Field(default=0, ge=0, le=MAX_ACCOUNT_CENTS)
    target_date: Optional[date] = None


class GoalUpdate(PatchModel):
    nullable = frozenset({"account_id", "color", "target_date"})

    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    target_amount_cents: Optional[int] = Field(default=None, ge=1, le=MAX_ACCOUNT_CENTS)
    current_amount_cents: Optional[int] = Field(
        default=None, ge=0, le=MAX_ACCOUNT_CENTS
    )
    target_date: Optional[date] = None
    is_archived: Optional[bool] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class ContributionIn(ApiModel):
    amount_cents: int = Field(..., ge=1, le=MAX_ACCOUNT_CENTS)
    year: int = Field(..., ge=2020, le=2100)
    month: int = Field(..., ge=1, le=12)
    from_account_id: Optional[int] = None


class SessionIn(ApiModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    name: Optional[str] = Field(default=None, max_length=120)


class InviteIn(ApiModel):
    budget_id: int
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    name: Optional[str] = Field(default=None, max_length=100)


class AcceptInviteIn(ApiModel):
    token: str = Field(..., min_length=1, max_length=64)


class RedeemCodeIn(ApiModel):
    code: str = Field(..., min_length=1, max_length=64)


class AccessLinkIn(ApiModel):
    type: AccessLinkType = AccessLinkType.lifetime
    plan_type: PlanType = PlanType.solo
    note: Optional[str] = Field(default=None, max_length=500)
    expires_at: Optional[datetime] = None
    count: int = Field(default=1, ge=1, le=100)


class AccessLinkUpdate(PatchModel):
    nullable = frozenset({"note"})

    note: Optional[str] = Field(default=None, max_length=500)
    expired: Optional[bool] = None


class CouponGenerateIn(ApiModel):
    prefix: str = Field(..., min_length=1, max_length=20, pattern=r"^[A-Za-z0-9]+$")
    count: int = Field(..., ge=1, le=1000)


class PlanIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    codename: Optional[str] = Field(default=None, max_length=50)
    is_default: bool = False
    required_coupon_count: Optional[int] = Field(default=None, ge=0)
    has_monthly_pricing: bool = False
    monthly_price_cents: Optional[int] = Field(default=None, ge=0)
    monthly_price_anchor_cents: Optional[int] = Field(default=None, ge=0)
    has_yearly_pricing: bool = False
    yearly_price_cents: Optional[int] = Field(default=None, ge=0)
    yearly_price_anchor_cents: Optional[int] = Field(default=None, ge=0)
    has_onetime_pricing: bool = False
    onetime_price_cents: Optional[int] = Field(default=None, ge=0)
    quotas: Optional[dict] = None


class PlanUpdate(PatchModel):
    nullable = frozenset(
        {
            "codename",
            "required_coupon_count",
            "monthly_price_cents",
            "monthly_price_anchor_cents",
            "yearly_price_cents",
            "yearly_price_anchor_cents",
            "onetime_price_cents",
            "quotas",
        }
    )

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    codename: Optional[str] = Field(default=None, max_length=50)
    is_default: Optional[bool] = None
    required_coupon_count: Optional[int] = Field(default=None, ge=0)
    has_monthly_pricing: Optional[bool] = None
    monthly_price_cents: Optional[int] = Field(default=None, ge=0)
    monthly_price_anchor_cents: Optional[int] = Field(default=None, ge=0)
    has_yearly_pricing: Optional[bool] = None
    yearly_price_cents: Optional[int] = Field(default=None, ge=0)
    yearly_price_anchor_cents: Optional[int] = Field(default=None, ge=0)
    has_onetime_pricing: Optional[bool] = None
    onetime_price_cents: Optional[int] = Field(default=None, ge=0)
    quotas: Optional[dict] = None


class UserRoleIn(ApiModel):
    role: UserRole


class ProfileUpdate(PatchModel):
    nullable = frozenset({"name", "display_name"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    display_name: Optional[str] = Field(default=None, max_length=120)


class DeletionRequestIn(ApiModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


HousingChoice = Literal["rent", "mortgage", "owned", "free"]
TransportChoice = Literal["car", "motorcycle", "public", "apps", "bike", "walk"]
StarterAccount = Literal["checking", "credit_card", "vr", "va", "cash", "investment"]


class HouseholdIn(ApiModel):
    has_partner: bool = False
    partner_name: str = Field(default="", max_length=100)
    children: list[str] = Field(default_factory=list, max_length=20)
    other_adults: list[str] = Field(default_factory=list, max_length=20)
    pets: list[str] = Field(default_factory=list, max_length=20)


class OnboardingExpensesIn(ApiModel):
    essential: list[str] = Field(default_factory=list)
    lifestyle: list[str] = Field(default_factory=list)


class OnboardingIn(ApiModel):
    display_name: str = Field(..., min_length=1, max_length=120)
    household: HouseholdIn = Field(default_factory=HouseholdIn)
    housing: Optional[HousingChoice] = None
    transport: list[TransportChoice] = Field(default_factory=list)
    accounts: list[StarterAccount] = Field(default_factory=list)
    expenses: OnboardingExpensesIn = Field(default_factory=OnboardingExpensesIn)
    debts: list[str] = Field(default_factory=list)
    goals: list[str] = Field(default_factory=list)
    custom_goal: str = Field(default="", max_length=100)


class BudgetOut(OutModel):
    id: int
    name: str
    description: Optional[str]
    currency: str
    created_at: datetime


class MemberOut(OutModel):
    id: int
    budget_id: int
    user_id: Optional[int]
    name: str
    type: MemberType
    color: Optional[str]
    monthly_pleasure_budget_cents: int


class AccountOut(OutModel):
    id: int
    budget_id: int
    owner_member_id: Optional[int]
    name: str
    type: AccountType
    color: Optional[str]
    icon: Optional[str]
    balance_cents: int
    cleared_balance_cents: int
    credit_limit_cents: Optional[int]
    closing_day: Optional[int]
    due_day: Optional[int]
    payment_account_id: Optional[int]
    is_archived: bool
    display_order: int


class GroupOut(OutModel):
    id: int
    code: GroupCode
    name: str
    description: Optional[str]
    icon: Optional[str]
    display_order: int


class CategoryOut(OutModel):
    id: int
    budget_id: int
    group_id: int
    member_id: Optional[int]
    name: str
    icon: Optional[str]
    color: Optional[str]
    behavior: CategoryBehavior
    planned_amount_cents: int
    due_day: Optional[int]
    target_amount_cents: Optional[int]
    target_date: Optional[date]
    is_archived: bool
    display_order: int


class RecurringBillOut(OutModel):
    id: int
    budget_id: int
    category_id: int
    account_id: Optional[int]
    name: str
    amount_cents: int
    frequency: BillFrequency
    due_day: Optional[int]
    due_month: Optional[int]
    is_auto_debit: bool
    is_variable: bool
    is_active: bool
    display_order: int


class IncomeSourceOut(OutModel):
    id: int
    budget_id: int
    member_id: Optional[int]
    account_id: Optional[int]
    name: str
    type: IncomeType
    amount_cents: int
    frequency: IncomeFrequency
    day_of_month: Optional[int]
    is_auto_confirm: bool
    is_active: bool
    display_order: int


class TransactionOut(OutModel):
    id: int
    budget_id: int
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    member_id: Optional[int]
    income_source_id: Optional[int]
    recurring_bill_id: Optional[int]
    type: TransactionType
    status: TransactionStatus
    amount_cents: int
    description: Optional[str]
    notes: Optional[str]
    date: dt.date
    is_installment: bool
    installment_number: Optional[int]
    total_installments: Optional[int]
    parent_transaction_id: Optional[int]
    source: TransactionSource


class GoalOut(OutModel):
    id: int
    budget_id: int
    account_id: Optional[int]
    name: str
    icon: str
    color: Optional[str]
    target_amount_cents: int
    current_amount_cents: int
    target_date: Optional[date]
    is_completed: bool
    completed_at: Optional[datetime]
    is_archived: bool
    display_order: int


class ContributionOut(OutModel):
    id: int
    goal_id: int
    from_account_id: Optional[int]
    year: int
    month: int
    amount_cents: int
    created_at: datetime


class InviteOut(OutModel):
    id: int
    budget_id: int
    email: Optional[str]
    name: Optional[str]
    token: str
    status: InviteStatus
    expires_at: datetime
    accepted_at: Optional[datetime]
    created_at: datetime


class AccessLinkOut(OutModel):
    id: int
    code: str
    type: AccessLinkType
    plan_type: PlanType
    note: Optional[str]
    expired: bool
    used_at: Optional[datetime]
    expires_at: Optional[datetime]
    user_id: Optional[int]
    created_at: datetime


class CouponOut(OutModel):
    id: int
    code: str
    used_at: Optional[datetime]
    user_id: Optional[int]
    expired: bool
    created_at: datetime


class PlanOut(OutModel):
    id: int
    name: str
    codename: Optional[str]
    is_default: bool
    required_coupon_count: Optional[int]
    has_monthly_pricing: bool
    monthly_price_cents: Optional[int]
    monthly_price_anchor_cents: Optional[int]
    has_yearly_pricing: bool
    yearly_price_cents: Optional[int]
    yearly_price_anchor_cents: Optional[int]
    has_onetime_pricing: bool
    onetime_price_cents: Optional[int]
    quotas: Optional[dict]


class UserOut(OutModel):
    id: int
    email: str
    name: Optional[str]
    display_name: Optional[str]
    role: UserRole
    plan_id: Optional[int]
    trial_ends_at: Optional[datetime]
    deletion_requested_at: Optional[datetime]
    deleted_at: Optional[datetime]
    onboarding_completed_at: Optional[datetime]
    created_at: datetime


class MonthStatusOut(OutModel):
    year: int
    month: int
    status: MonthStatus
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
