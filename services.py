from __future__ import annotations

import logging
import math
import re
import secrets
import uuid
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from config import get_settings
from csv_utils import export_transactions, parse_amount
from models import (
    EXEMPT_ROLES,
    SETTLED_STATUSES,
    AccessLink,
    AccessLinkType,
    AccountType,
    AuditLog,
    Budget,
    BudgetMember,
    Category,
    CategoryBehavior,
    Coupon,
    FinancialAccount,
    Goal,
    GoalContribution,
    Group,
    GroupCode,
    IncomeFrequency,
    IncomeSource,
    Invite,
    InviteStatus,
    MemberType,
    MonthlyAllocation,
    MonthlyBudgetStatus,
    MonthlyIncomeAllocation,
    MonthStatus,
    Plan,
    PlanType,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
    utcnow,
)
from periods import (
    MONTH_LABELS_PT,
    add_months,
    local_now,
    local_today,
    month_period,
    months_between,
    previous_month,
)
from recurrence import (
    EnsureResult,
    PendingTransactionEngine,
    calculate_credit_card_transaction_date,
    calculate_installment_dates,
)
from schemas import (
    MAX_ACCOUNT_CENTS,
    AccessLinkIn,
    AccessLinkUpdate,
    AccountIn,
    AccountUpdate,
    AllocationIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    ConfirmScheduledIn,
    ContributionIn,
    CopyAllocationsIn,
    DependentIn,
    GoalIn,
    GoalUpdate,
    IncomeAllocationIn,
    IncomeSourceIn,
    IncomeSourceUpdate,
    InviteIn,
    MemberUpdate,
    MonthIn,
    OnboardingIn,
    PlanIn,
    PlanUpdate,
    ProfileUpdate,
    QuickExpenseIn,
    RecurringBillIn,
    RecurringBillUpdate,
    TransactionIn,
    TransactionUpdate,
    validate_schedule_day,
)

logger = logging.getLogger(__name__)

ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GENERATED_SOURCES = (TransactionSource.recurring, TransactionSource.scheduled)
INCOME_MULTIPLIERS = {
    IncomeFrequency.monthly: 1,
    IncomeFrequency.biweekly: 2,
    IncomeFrequency.weekly: 4,
}
DELETION_GRACE_DAYS = 30

DEFAULT_GROUPS = [
    (GroupCode.essential, "Essencial", "Gastos necessários para viver", "🏠", 1),
    (GroupCode.lifestyle, "Estilo de Vida", "Conforto e qualidade de vida", "✨", 2),
    (GroupCode.pleasures, "Prazeres", "Mesada de cada membro da família", "🎉", 3),
    (GroupCode.investments, "Investimentos", "Reserva e patrimônio", "📈", 4),
    (GroupCode.goals, "Metas", "Objetivos com prazo definido", "🎯", 5),
]

DEFAULT_CATEGORIES = [
    ("Moradia", GroupCode.essential, "🏠"),
    ("Contas de Casa", GroupCode.essential, "💡"),
    ("Mercado", GroupCode.essential, "🛒"),
    ("Transporte", GroupCode.essential, "🚗"),
    ("Saúde", GroupCode.essential, "💊"),
    ("Alimentação Fora", GroupCode.lifestyle, "🍽️"),
    ("Vestuário", GroupCode.lifestyle, "👕"),
    ("Streaming", GroupCode.lifestyle, "📺"),
    ("Academia", GroupCode.lifestyle, "🏋️"),
    ("Reserva de Emergência", GroupCode.investments, "🛟"),
    ("Poupança", GroupCode.investments, "🐷"),
    ("Viagem", GroupCode.goals, "✈️"),
]

PLAN_FEATURES = {
    PlanType.solo: [
        "1 orçamento familiar",
        "Contas e categorias ilimitadas",
        "Metas de economia",
        "Contas recorrentes e parcelamentos",
    ],
    PlanType.duo: [
        "Tudo do plano Solo",
        "Acesso para parceiro(a)",
        "Orçamento compartilhado em tempo real",
        "Mesada para dependentes",
    ],
}

HOUSING_CATEGORIES = {
    "rent": ("Aluguel", "🏠"),
    "mortgage": ("Financiamento Imóvel", "🏡"),
}
TRANSPORT_CATEGORIES = {
    "car": ("Carro (Combustível/Manutenção)", "🚗"),
    "motorcycle": ("Moto (Combustível/Manutenção)", "🏍️"),
    "public": ("Transporte Público", "🚌"),
    "apps": ("Apps de Transporte", "📱"),
    "bike": ("Bicicleta", "🚴"),
}
EXPENSE_CATEGORIES = {
    "utilities": ("Contas de Casa", "💡", GroupCode.essential),
    "groceries": ("Mercado", "🛒", GroupCode.essential),
    "health": ("Saúde", "💊", GroupCode.essential),
    "education": ("Educação", "📚", GroupCode.essential),
    "insurance": ("Seguros", "🛡️", GroupCode.essential),
    "childcare": ("Creche/Escola", "👶", GroupCode.essential),
    "petcare": ("Pet (Ração/Veterinário)", "🐾", GroupCode.essential),
    "dining": ("Alimentação Fora", "🍽️", GroupCode.lifestyle),
    "clothing": ("Vestuário", "👕", GroupCode.lifestyle),
    "streaming": ("Streaming", "📺", GroupCode.lifestyle),
    "gym": ("Academia", "🏋️", GroupCode.lifestyle),
    "beauty": ("Beleza/Cuidados", "💅", GroupCode.lifestyle),
    "hobbies": ("Hobbies", "🎨", GroupCode.lifestyle),
    "subscriptions": ("Assinaturas", "📦", GroupCode.lifestyle),
}
DEBT_CATEGORIES = {
    "credit_card_debt": ("Dívida Cartão de Crédito", "💳"),
    "personal_loan": ("Empréstimo Pessoal", "🏦"),
    "student_loan": ("Financiamento Estudantil", "🎓"),
    "car_loan": ("Financiamento Veículo", "🚗"),
    "overdraft": ("Cheque Especial", "⚠️"),
    "other_debt": ("Outras Dívidas", "📋"),
}
GOAL_CATEGORIES = {
    "emergency_fund": ("Reserva de Emergência", "🛟", GroupCode.investments),
    "travel": ("Viagem", "✈️", GroupCode.goals),
    "new_car": ("Carro Novo", "🚗", GroupCode.goals),
    "home": ("Casa Própria", "🏡", GroupCode.goals),
    "wedding": ("Casamento", "💒", GroupCode.goals),
    "retirement": ("Aposentadoria", "🏖️", GroupCode.goals),
    "education_fund": ("Fundo de Educação", "🎓", GroupCode.goals),
}
STARTER_ACCOUNTS = {
    "checking": ("Conta Corrente", AccountType.checking, "🏦"),
    "credit_card": ("Cartão de Crédito", AccountType.credit_card, "💳"),
    "vr": ("Vale Refeição", AccountType.benefit, "🍽️"),
    "va": ("Vale Alimentação", AccountType.benefit, "🛒"),
    "cash": ("Dinheiro", AccountType.cash, "💵"),
    "investment": ("Investimentos", AccountType.investment, "📈"),
}


class NotFoundError(ValueError):
    pass


class ForbiddenError(ValueError):
    pass


class ConflictError(ValueError):
    def __init__(self, message: str, payload: Optional[dict] = None) -> None:
        super().__init__(message)
        self.payload = payload or {}


class QuickCaptureAmbiguous(ValueError):
    pass


def capitalize_words(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split())


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def pleasure_category_name(member_name: str) -> str:
    return f"Prazeres - {member_name}"


def get_user_budget_ids(session: Session, user_id: int) -> list[int]:
    return list(
        session.scalars(
            select(BudgetMember.budget_id).where(BudgetMember.user_id == user_id)
        ).all()
    )


def authorize_budget_access(
    session: Session,
    user_id: int,
    budget_id: int,
    roles: Optional[Sequence[MemberType]] = None,
) -> BudgetMember:
    member = session.scalar(
        select(BudgetMember).where(
            BudgetMember.budget_id == budget_id, BudgetMember.user_id == user_id
        )
    )
    if member is None:
        raise NotFoundError("Budget not found or access denied")
    if roles and member.type not in roles:
        raise ForbiddenError("Insufficient permissions")
    return member


def load_budget_entity(session: Session, user_id: int, model, entity_id: int, label: str):
    entity = session.get(model, entity_id)
    if entity is None or entity.budget_id not in get_user_budget_ids(session, user_id):
        raise NotFoundError(f"{label} not found")
    return entity


def has_partner_access(session: Session, user: User) -> bool:
    """A partner rides on the owner's subscription or exempt role."""
    partner_budget_ids = select(BudgetMember.budget_id).where(
        BudgetMember.user_id == user.id, BudgetMember.type == MemberType.partner
    )
    owners = session.scalars(
        select(User)
        .join(BudgetMember, BudgetMember.user_id == User.id)
        .where(
            BudgetMember.type == MemberType.owner,
            BudgetMember.budget_id.in_(partner_budget_ids),
        )
    ).all()
    return any(
        owner.stripe_subscription_id or owner.role in EXEMPT_ROLES for owner in owners
    )


def ensure_default_groups(session: Session) -> dict[GroupCode, Group]:
    groups = {group.code: group for group in session.scalars(select(Group)).all()}
    for code, name, description, icon, order in DEFAULT_GROUPS:
        if code in groups:
            continue
        group = Group(
            code=code, name=name, description=description, icon=icon, display_order=order
        )
        session.add(group)
        groups[code] = group
    session.flush()
    return groups


def create_pleasure_category(
    session: Session, budget_id: int, member: BudgetMember, planned_cents: int = 0
) -> Category:
    group = ensure_default_groups(session)[GroupCode.pleasures]
    category = Category(
        budget_id=budget_id,
        group_id=group.id,
        member_id=member.id,
        name=pleasure_category_name(member.name),
        icon="🐾" if member.type == MemberType.pet else "🎮",
        planned_amount_cents=planned_cents,
        display_order=_count(
            session,
            select(func.count(Category.id)).where(
                Category.budget_id == budget_id, Category.group_id == group.id
            ),
        ),
    )
    session.add(category)
    return category


def _count(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


def _sum(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


def _moves_balance(txn: Transaction) -> bool:
    if txn.is_installment:
        return False
    if txn.source in GENERATED_SOURCES:
        return txn.status in SETTLED_STATUSES
    return True


def apply_balance_effect(session: Session, txn: Transaction, sign: int = 1) -> None:
    """Adds (sign=1) or reverses (sign=-1) the effect of a transaction on balances.

    Income adds its amount, expenses and transfers subtract the absolute
    amount from the source account and transfers credit the destination.
    Installments never move balances and generated rows only do once settled.
    """
    if not _moves_balance(txn):
        return
    account = session.get(FinancialAccount, txn.account_id)
    if account is not None:
        if txn.type == TransactionType.income:
            account.balance_cents += sign * txn.amount_cents
        else:
            account.balance_cents -= sign * abs(txn.amount_cents)
    if txn.type == TransactionType.transfer and txn.to_account_id:
        destination = session.get(FinancialAccount, txn.to_account_id)
        if destination is not None:
            destination.balance_cents += sign * abs(txn.amount_cents)


def ensure_pending_transactions_for_month(
    session: Session, budget_id: int, year: int, month: int
) -> EnsureResult:
    result = PendingTransactionEngine(session).ensure_month(budget_id, year, month)
    logger.info(
        "ensure_pending: budget=%s month=%04d-%02d created=%s",
        budget_id,
        year,
        month,
        result.created,
    )
    return result


def ensure_pending_for_active_months(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    budget_ids = session.scalars(
        select(MonthlyBudgetStatus.budget_id).where(
            MonthlyBudgetStatus.year == today.year,
            MonthlyBudgetStatus.month == today.month,
            MonthlyBudgetStatus.status == MonthStatus.active,
        )
    ).all()
    created = 0
    for budget_id in budget_ids:
        result = ensure_pending_transactions_for_month(
            session, budget_id, today.year, today.month
        )
        session.commit()
        created += result.created
    return created


def auto_clear_transactions(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    auto_debit_bills = select(RecurringBill.id).where(
        RecurringBill.is_active.is_(True), RecurringBill.is_auto_debit.is_(True)
    )
    auto_confirm_sources = select(IncomeSource.id).where(
        IncomeSource.is_active.is_(True), IncomeSource.is_auto_confirm.is_(True)
    )
    due = session.scalars(
        select(Transaction).where(
            Transaction.status == TransactionStatus.pending,
            Transaction.date <= today,
            or_(
                and_(
                    Transaction.type == TransactionType.expense,
                    Transaction.recurring_bill_id.in_(auto_debit_bills),
                ),
                and_(
                    Transaction.type == TransactionType.income,
                    Transaction.income_source_id.in_(auto_confirm_sources),
                ),
            ),
        )
    ).all()
    for txn in due:
        apply_balance_effect(session, txn, -1)
        txn.status = TransactionStatus.cleared
        apply_balance_effect(session, txn, 1)
    session.commit()
    return len(due)


def expire_stale_invites(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = session.execute(
        update(Invite)
        .where(Invite.status == InviteStatus.pending, Invite.expires_at < now)
        .values(status=InviteStatus.expired)
    )
    session.commit()
    return result.rowcount or 0


def calculate_goal_metrics(goal: Goal, today: Optional[date] = None) -> dict[str, int]:
    today = today or local_today()
    target = goal.target_amount_cents
    current = goal.current_amount_cents
    progress = min(round_half_up(current / target * 100), 100) if target > 0 else 0
    months_remaining = (
        max(0, months_between(today, goal.target_date)) if goal.target_date else 0
    )
    remaining = max(target - current, 0)
    if months_remaining > 0:
        monthly_target = -(-remaining // months_remaining)
    else:
        monthly_target = remaining
    return {
        "progress": progress,
        "monthsRemaining": months_remaining,
        "remaining": remaining,
        "monthlyTarget": monthly_target,
    }


def generate_access_code() -> str:
    return "-".join(
        "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(4))
        for _ in range(3)
    )


def normalize_access_code(code: str) -> str:
    clean = re.sub(r"[\s-]", "", code.upper())
    if len(clean) == 12:
        return f"{clean[:4]}-{clean[4:8]}-{clean[8:]}"
    return clean


class AuditLogService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def record(
        self,
        action: str,
        resource: str,
        resource_id: Optional[object] = None,
        details: Optional[dict] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        entry = AuditLog(
            user_id=self.user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:255] or None,
        )
        try:
            self.session.add(entry)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("audit_log_failed: action=%s resource=%s", action, resource)


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def ensure_user(self, email: str, name: Optional[str] = None) -> User:
        clean_email = email.strip().lower()
        if not clean_email:
            raise ValueError("Email cannot be empty")
        user = self.session.scalar(select(User).where(User.email == clean_email))
        if user:
            return user

        default_plan = self.session.scalar(
            select(Plan).where(Plan.is_default.is_(True)).limit(1)
        )
        user = User(
            email=clean_email,
            name=name.strip() if name and name.strip() else None,
            role=UserRole.user,
            plan_id=default_plan.id if default_plan else None,
            trial_ends_at=utcnow() + timedelta(days=get_settings().trial_days),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info("user_created: id=%s", user.id)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, data: ProfileUpdate) -> User:
        user = self.get(self.user_id)
        if data.name is not None:
            user.name = data.name.strip()
        if data.display_name is not None:
            user.display_name = data.display_name.strip() or None
        self.session.commit()
        self.session.refresh(user)
        return user

    def list_users(
        self, search: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> dict[str, object]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        stmt = select(User)
        count_stmt = select(func.count(User.id))
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            condition = or_(
                func.lower(User.email).like(pattern), func.lower(User.name).like(pattern)
            )
            stmt = stmt.where(condition)
            count_stmt = count_stmt.where(condition)
        total = _count(self.session, count_stmt)
        users = self.session.scalars(
            stmt.order_by(User.created_at.desc(), User.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()
        return {
            "items": users,
            "totalItems": total,
            "page": page,
            "limit": limit,
            "totalPages": max(1, -(-total // limit)),
        }

    def update_role(self, user_id: int, role: UserRole) -> User:
        user = self.get(user_id)
        user.role = role
        self.session.commit()
        self.session.refresh(user)
        logger.info("user_role_updated: id=%s role=%s", user.id, role.value)
        return user


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[tuple[Budget, MemberType]]:
        rows = self.session.execute(
            select(Budget, BudgetMember.type)
            .join(BudgetMember, BudgetMember.budget_id == Budget.id)
            .where(BudgetMember.user_id == self.user_id)
            .order_by(Budget.created_at, Budget.id)
        ).all()
        return [(budget, member_type) for budget, member_type in rows]

    def get(self, budget_id: int) -> Budget:
        authorize_budget_access(self.session, self.user_id, budget_id)
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found or access denied")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        user = UserService(self.session).get(self.user_id)
        name = capitalize_words(data.name)
        if not name:
            raise ValueError("Budget name cannot be empty")

        budget = Budget(
            name=name,
            description=data.description,
            currency=data.currency.upper(),
        )
        self.session.add(budget)
        self.session.flush()

        owner_name = user.display_name or user.name or user.email.split("@")[0]
        self.session.add(
            BudgetMember(
                budget_id=budget.id,
                user_id=user.id,
                name=capitalize_words(owner_name),
                type=MemberType.owner,
            )
        )

        groups = ensure_default_groups(self.session)
        order_in_group: dict[GroupCode, int] = defaultdict(int)
        for category_name, code, icon in DEFAULT_CATEGORIES:
            self.session.add(
                Category(
                    budget_id=budget.id,
                    group_id=groups[code].id,
                    name=category_name,
                    icon=icon,
                    display_order=order_in_group[code],
                )
            )
            order_in_group[code] += 1

        self.session.commit()
        self.session.refresh(budget)
        AuditLogService(self.session, self.user_id).record(
            "budget.create", "budget", budget.id, {"name": budget.name}
        )
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        authorize_budget_access(
            self.session, self.user_id, budget_id, roles=[MemberType.owner]
        )
        budget = self.get(budget_id)
        if data.name is not None:
            budget.name = capitalize_words(data.name)
        if data.description is not None:
            budget.description = data.description
        if data.currency is not None:
            budget.currency = data.currency.upper()
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        authorize_budget_access(
            self.session, self.user_id, budget_id, roles=[MemberType.owner]
        )
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found or access denied")

        goal_ids = select(Goal.id).where(Goal.budget_id == budget_id)
        self.session.execute(
            delete(GoalContribution).where(GoalContribution.goal_id.in_(goal_ids))
        )
        for model in (
            Goal,
            MonthlyIncomeAllocation,
            MonthlyAllocation,
            MonthlyBudgetStatus,
        ):
            self.session.execute(delete(model).where(model.budget_id == budget_id))
        self.session.execute(
            delete(Transaction).where(
                Transaction.budget_id == budget_id,
                Transaction.parent_transaction_id.is_not(None),
            )
        )
        for model in (
            Transaction,
            RecurringBill,
            IncomeSource,
            Category,
            Invite,
        ):
            self.session.execute(delete(model).where(model.budget_id == budget_id))
        self.session.execute(
            update(FinancialAccount)
            .where(FinancialAccount.budget_id == budget_id)
            .values(payment_account_id=None)
        )
        self.session.execute(
            delete(FinancialAccount).where(FinancialAccount.budget_id == budget_id)
        )
        self.session.execute(
            delete(BudgetMember).where(BudgetMember.budget_id == budget_id)
        )
        self.session.delete(budget)
        self.session.commit()
        AuditLogService(self.session, self.user_id).record(
            "budget.delete", "budget", budget_id
        )


class OnboardingService:
    """Builds a first budget from the answers of the setup questionnaire."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _selected_categories(
        self, data: OnboardingIn
    ) -> list[tuple[str, str, GroupCode, CategoryBehavior]]:
        refill, set_aside = CategoryBehavior.refill_up, CategoryBehavior.set_aside
        selected = []
        if data.housing in HOUSING_CATEGORIES:
            name, icon = HOUSING_CATEGORIES[data.housing]
            selected.append((name, icon, GroupCode.essential, refill))
        for choice in data.transport:
            if choice in TRANSPORT_CATEGORIES:
                name, icon = TRANSPORT_CATEGORIES[choice]
                selected.append((name, icon, GroupCode.essential, refill))
        for choice in [*data.expenses.essential, *data.expenses.lifestyle]:
            if choice in EXPENSE_CATEGORIES:
                name, icon, code = EXPENSE_CATEGORIES[choice]
                selected.append((name, icon, code, refill))
        for choice in data.debts:
            if choice in DEBT_CATEGORIES:
                name, icon = DEBT_CATEGORIES[choice]
                selected.append((name, icon, GroupCode.essential, refill))
        custom_goal = capitalize_words(data.custom_goal)
        for choice in data.goals:
            if choice == "other" and custom_goal:
                selected.append((custom_goal, "🎯", GroupCode.goals, set_aside))
            elif choice in GOAL_CATEGORIES:
                name, icon, code = GOAL_CATEGORIES[choice]
                selected.append((name, icon, code, set_aside))
        return selected

    def complete(self, data: OnboardingIn) -> Budget:
        user = UserService(self.session).get(self.user_id)
        if user.onboarding_completed_at is not None:
            raise ValueError("Onboarding already completed")
        display_name = capitalize_words(data.display_name)
        if not display_name:
            raise ValueError("Display name cannot be empty")

        user.display_name = display_name
        user.onboarding_completed_at = utcnow()
        budget = Budget(
            name=capitalize_words(f"Orçamento de {display_name}"),
            description="Orçamento criado durante o onboarding",
            currency="BRL",
        )
        self.session.add(budget)
        self.session.flush()

        household = data.household
        members = [
            BudgetMember(
                budget_id=budget.id,
                user_id=user.id,
                name=display_name,
                type=MemberType.owner,
            )
        ]
        extra = [(MemberType.child, n) for n in household.children]
        extra += [(MemberType.partner, n) for n in household.other_adults]
        extra += [(MemberType.pet, n) for n in household.pets]
        if household.has_partner:
            extra.insert(0, (MemberType.partner, household.partner_name))
        for member_type, raw_name in extra:
            name = capitalize_words(raw_name)
            if name:
                members.append(BudgetMember(budget_id=budget.id, name=name, type=member_type))
        self.session.add_all(members)
        self.session.flush()

        for order, choice in enumerate(data.accounts):
            name, account_type, icon = STARTER_ACCOUNTS[choice]
            self.session.add(
                FinancialAccount(
                    budget_id=budget.id,
                    name=name,
                    type=account_type,
                    icon=icon,
                    display_order=order,
                )
            )

        groups = ensure_default_groups(self.session)
        order_in_group: dict[GroupCode, int] = defaultdict(int)
        seen: set[str] = set()
        for name, icon, code, behavior in self._selected_categories(data):
            if name.lower() in seen:
                continue
            seen.add(name.lower())
            self.session.add(
                Category(
                    budget_id=budget.id,
                    group_id=groups[code].id,
                    name=name,
                    icon=icon,
                    behavior=behavior,
                    display_order=order_in_group[code],
                )
            )
            order_in_group[code] += 1
        for member in members:
            create_pleasure_category(self.session, budget.id, member)
            self.session.flush()

        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            "onboarding_completed: user=%s budget=%s members=%s",
            user.id,
            budget.id,
            len(members),
        )
        AuditLogService(self.session, self.user_id).record(
            "budget.create", "budget", budget.id, {"name": budget.name, "source": "onboarding"}
        )
        return budget


class MemberService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_members(self, budget_id: Optional[int] = None) -> list[BudgetMember]:
        if budget_id is not None:
            authorize_budget_access(self.session, self.user_id, budget_id)
            budget_ids = [budget_id]
        else:
            budget_ids = get_user_budget_ids(self.session, self.user_id)
        if not budget_ids:
            return []
        return self.session.scalars(
            select(BudgetMember)
            .where(BudgetMember.budget_id.in_(budget_ids))
            .order_by(BudgetMember.budget_id, BudgetMember.created_at, BudgetMember.id)
        ).all()

    def _pleasure_category(self, member: BudgetMember) -> Optional[Category]:
        return self.session.scalar(
            select(Category)
            .join(Group, Group.id == Category.group_id)
            .where(
                Category.budget_id == member.budget_id,
                Category.member_id == member.id,
                Group.code == GroupCode.pleasures,
            )
            .limit(1)
        )

    def _detach(self, member: BudgetMember) -> None:
        category = self._pleasure_category(member)
        if category:
            category.is_archived = True
            category.member_id = None
        for model, column in (
            (Transaction, Transaction.member_id),
            (IncomeSource, IncomeSource.member_id),
            (FinancialAccount, FinancialAccount.owner_member_id),
        ):
            self.session.execute(
                update(model).where(column == member.id).values({column.key: None})
            )

    def add_dependent(self, data: DependentIn) -> BudgetMember:
        authorize_budget_access(
            self.session,
            self.user_id,
            data.budget_id,
            roles=[MemberType.owner, MemberType.partner],
        )
        name = capitalize_words(data.name)
        if not name:
            raise ValueError("Member name cannot be empty")
        member = BudgetMember(
            budget_id=data.budget_id,
            user_id=None,
            name=name,
            type=data.type,
            color=data.color,
            monthly_pleasure_budget_cents=data.monthly_pleasure_budget_cents,
        )
        self.session.add(member)
        self.session.flush()
        create_pleasure_category(
            self.session, data.budget_id, member, data.monthly_pleasure_budget_cents
        )
        self.session.commit()
        self.session.refresh(member)
        return member

    def update(self, member_id: int, data: MemberUpdate) -> BudgetMember:
        member = load_budget_entity(
            self.session, self.user_id, BudgetMember, member_id, "Member"
        )
        authorize_budget_access(
            self.session,
            self.user_id,
            member.budget_id,
            roles=[MemberType.owner, MemberType.partner],
        )
        if member.type in (MemberType.owner, MemberType.partner):
            raise ForbiddenError("Owner and partner profiles cannot be edited here")

        category = self._pleasure_category(member)
        if data.name is not None:
            name = capitalize_words(data.name)
            if not name:
                raise ValueError("Member name cannot be empty")
            member.name = name
            if category:
                category.name = pleasure_category_name(name)
        if data.color is not None:
            member.color = data.color
        if data.monthly_pleasure_budget_cents is not None:
            member.monthly_pleasure_budget_cents = data.monthly_pleasure_budget_cents
            if category:
                category.planned_amount_cents = data.monthly_pleasure_budget_cents
        self.session.commit()
        self.session.refresh(member)
        return member

    def remove(self, member_id: int) -> None:
        member = load_budget_entity(
            self.session, self.user_id, BudgetMember, member_id, "Member"
        )
        authorize_budget_access(
            self.session, self.user_id, member.budget_id, roles=[MemberType.owner]
        )
        if member.type == MemberType.owner:
            raise ValueError("The budget owner cannot be removed")
        self._detach(member)
        self.session.delete(member)
        self.session.commit()

    def leave(self, budget_id: int) -> None:
        member = authorize_budget_access(self.session, self.user_id, budget_id)
        if member.type != MemberType.partner:
            raise ForbiddenError("Only partners can leave a budget")
        self._detach(member)
        self.session.delete(member)
        self.session.commit()


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_accounts(self, budget_id: Optional[int] = None) -> list[FinancialAccount]:
        if budget_id is not None:
            authorize_budget_access(self.session, self.user_id, budget_id)
            budget_ids = [budget_id]
        else:
            budget_ids = get_user_budget_ids(self.session, self.user_id)
        if not budget_ids:
            return []
        return self.session.scalars(
            select(FinancialAccount)
            .where(FinancialAccount.budget_id.in_(budget_ids))
            .order_by(FinancialAccount.display_order, FinancialAccount.id)
        ).all()

    def get(self, account_id: int) -> FinancialAccount:
        return load_budget_entity(
            self.session, self.user_id, FinancialAccount, account_id, "Account"
        )

    def _check_references(
        self,
        budget_id: int,
        owner_member_id: Optional[int],
        payment_account_id: Optional[int],
    ) -> None:
        if owner_member_id is not None:
            member = self.session.get(BudgetMember, owner_member_id)
            if not member or member.budget_id != budget_id:
                raise ValueError("Owner member does not belong to this budget")
        if payment_account_id is not None:
            payment = self.session.get(FinancialAccount, payment_account_id)
            if not payment or payment.budget_id != budget_id:
                raise ValueError("Payment account does not belong to this budget")

    def create(self, data: AccountIn) -> FinancialAccount:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        self._check_references(
            data.budget_id, data.owner_member_id, data.payment_account_id
        )
        name = capitalize_words(data.name)
        if not name:
            raise ValueError("Account name cannot be empty")
        display_order = _count(
            self.session,
            select(func.count(FinancialAccount.id)).where(
                FinancialAccount.budget_id == data.budget_id
            ),
        )
        account = FinancialAccount(
            budget_id=data.budget_id,
            owner_member_id=data.owner_member_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            balance_cents=data.balance_cents,
            cleared_balance_cents=data.balance_cents,
            credit_limit_cents=data.credit_limit_cents,
            closing_day=data.closing_day,
            due_day=data.due_day,
            payment_account_id=data.payment_account_id,
            display_order=display_order,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> FinancialAccount:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        self._check_references(
            account.budget_id, changes.get("owner_member_id"), None
        )
        if "name" in changes:
            name = capitalize_words(changes.pop("name") or "")
            if not name:
                raise ValueError("Account name cannot be empty")
            account.name = name
        for field, value in changes.items():
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.to_account_id == account.id)
            .values(to_account_id=None)
        )
        self.session.execute(
            delete(Transaction).where(
                Transaction.account_id == account.id,
                Transaction.parent_transaction_id.is_not(None),
            )
        )
        self.session.execute(
            delete(Transaction).where(Transaction.account_id == account.id)
        )
        self.session.execute(
            update(FinancialAccount)
            .where(FinancialAccount.payment_account_id == account.id)
            .values(payment_account_id=None)
        )
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_grouped(self, budget_id: int) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        groups = self.session.scalars(select(Group).order_by(Group.display_order)).all()
        categories = self.session.scalars(
            select(Category)
            .where(Category.budget_id == budget_id, Category.is_archived.is_(False))
            .order_by(Category.display_order, Category.id)
        ).all()
        by_group: dict[int, list[Category]] = defaultdict(list)
        for category in categories:
            by_group[category.group_id].append(category)
        return {
            "groups": [(group, by_group.get(group.id, [])) for group in groups],
            "flat_categories": categories,
        }

    def get(self, category_id: int) -> Category:
        return load_budget_entity(
            self.session, self.user_id, Category, category_id, "Category"
        )

    def create(self, data: CategoryIn) -> Category:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        group = self.session.get(Group, data.group_id)
        if not group:
            raise NotFoundError("Group not found")
        if data.member_id is not None:
            member = self.session.get(BudgetMember, data.member_id)
            if not member or member.budget_id != data.budget_id:
                raise ValueError("Member does not belong to this budget")
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")

        display_order = _count(
            self.session,
            select(func.count(Category.id)).where(
                Category.budget_id == data.budget_id, Category.group_id == group.id
            ),
        )
        category = Category(
            budget_id=data.budget_id,
            group_id=group.id,
            member_id=data.member_id,
            name=name,
            icon=data.icon,
            color=data.color,
            behavior=data.behavior,
            planned_amount_cents=data.planned_amount_cents,
            due_day=data.due_day,
            target_amount_cents=data.target_amount_cents,
            target_date=data.target_date,
            display_order=display_order,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if "name" in changes:
            name = (changes.pop("name") or "").strip()
            if not name:
                raise ValueError("Category name cannot be empty")
            category.name = name
        for field, value in changes.items():
            setattr(category, field, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.is_archived = True
        self.session.commit()


class RecurringBillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_bills(
        self, budget_id: int
    ) -> tuple[list[RecurringBill], dict[int, dict[str, int]]]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        bills = self.session.scalars(
            select(RecurringBill)
            .where(
                RecurringBill.budget_id == budget_id, RecurringBill.is_active.is_(True)
            )
            .order_by(RecurringBill.display_order, RecurringBill.id)
        ).all()
        totals: dict[int, dict[str, int]] = {}
        for bill in bills:
            entry = totals.setdefault(bill.category_id, {"count": 0, "total": 0})
            entry["count"] += 1
            entry["total"] += bill.amount_cents
        return bills, totals

    def get(self, bill_id: int) -> RecurringBill:
        return load_budget_entity(
            self.session, self.user_id, RecurringBill, bill_id, "Recurring bill"
        )

    def _check_references(
        self, budget_id: int, category_id: Optional[int], account_id: Optional[int]
    ) -> None:
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.budget_id != budget_id:
                raise NotFoundError("Category not found")
        if account_id is not None:
            account = self.session.get(FinancialAccount, account_id)
            if not account or account.budget_id != budget_id:
                raise NotFoundError("Account not found")

    def create(self, data: RecurringBillIn) -> RecurringBill:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        self._check_references(data.budget_id, data.category_id, data.account_id)
        display_order = _count(
            self.session,
            select(func.count(RecurringBill.id)).where(
                RecurringBill.budget_id == data.budget_id,
                RecurringBill.category_id == data.category_id,
            ),
        )
        bill = RecurringBill(
            budget_id=data.budget_id,
            category_id=data.category_id,
            account_id=data.account_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            due_day=data.due_day,
            due_month=data.due_month,
            is_auto_debit=data.is_auto_debit,
            is_variable=data.is_variable,
            display_order=display_order,
        )
        self.session.add(bill)
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def update(self, bill_id: int, data: RecurringBillUpdate) -> RecurringBill:
        bill = self.get(bill_id)
        changes = data.model_dump(exclude_unset=True)
        self._check_references(
            bill.budget_id, changes.get("category_id"), changes.get("account_id")
        )
        frequency = changes.get("frequency") or bill.frequency
        validate_schedule_day(
            frequency.value,
            changes.get("due_day", bill.due_day),
            changes.get("due_month", bill.due_month),
        )
        for field, value in changes.items():
            setattr(bill, field, value.strip() if field == "name" else value)
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def deactivate(self, bill_id: int) -> None:
        bill = self.get(bill_id)
        bill.is_active = False
        self.session.commit()


class IncomeSourceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_sources(self, budget_id: int) -> tuple[list[IncomeSource], int]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        sources = self.session.scalars(
            select(IncomeSource)
            .where(
                IncomeSource.budget_id == budget_id, IncomeSource.is_active.is_(True)
            )
            .order_by(IncomeSource.display_order, IncomeSource.id)
        ).all()
        total = sum(
            source.amount_cents * INCOME_MULTIPLIERS.get(source.frequency, 1)
            for source in sources
        )
        return sources, total

    def get(self, source_id: int) -> IncomeSource:
        return load_budget_entity(
            self.session, self.user_id, IncomeSource, source_id, "Income source"
        )

    def _check_references(
        self, budget_id: int, member_id: Optional[int], account_id: Optional[int]
    ) -> None:
        if member_id is not None:
            member = self.session.get(BudgetMember, member_id)
            if not member or member.budget_id != budget_id:
                raise ValueError("Member does not belong to this budget")
        if account_id is not None:
            account = self.session.get(FinancialAccount, account_id)
            if not account or account.budget_id != budget_id:
                raise NotFoundError("Account not found")

    def create(self, data: IncomeSourceIn) -> IncomeSource:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        self._check_references(data.budget_id, data.member_id, data.account_id)
        name = capitalize_words(data.name)
        if not name:
            raise ValueError("Income source name cannot be empty")
        display_order = _count(
            self.session,
            select(func.count(IncomeSource.id)).where(
                IncomeSource.budget_id == data.budget_id
            ),
        )
        source = IncomeSource(
            budget_id=data.budget_id,
            member_id=data.member_id,
            account_id=data.account_id,
            name=name,
            type=data.type,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            day_of_month=data.day_of_month,
            is_auto_confirm=data.is_auto_confirm,
            display_order=display_order,
        )
        self.session.add(source)
        self.session.commit()
        self.session.refresh(source)
        return source

    def update(self, source_id: int, data: IncomeSourceUpdate) -> IncomeSource:
        source = self.get(source_id)
        changes = data.model_dump(exclude_unset=True)
        self._check_references(
            source.budget_id, changes.get("member_id"), changes.get("account_id")
        )
        frequency = changes.get("frequency") or source.frequency
        validate_schedule_day(
            frequency.value, changes.get("day_of_month", source.day_of_month)
        )
        if "name" in changes:
            name = capitalize_words(changes.pop("name") or "")
            if not name:
                raise ValueError("Income source name cannot be empty")
            source.name = name
        for field, value in changes.items():
            setattr(source, field, value)
        self.session.commit()
        self.session.refresh(source)
        return source

    def deactivate(self, source_id: int) -> None:
        source = self.get(source_id)
        source.is_active = False
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _account(self, budget_id: int, account_id: int) -> FinancialAccount:
        account = self.session.get(FinancialAccount, account_id)
        if not account or account.budget_id != budget_id:
            raise NotFoundError("Account not found")
        return account

    def _check_category(self, budget_id: int, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.budget_id != budget_id:
            raise NotFoundError("Category not found")

    def _check_income_source(self, budget_id: int, source_id: Optional[int]) -> None:
        if source_id is None:
            return
        source = self.session.get(IncomeSource, source_id)
        if not source or source.budget_id != budget_id:
            raise NotFoundError("Income source not found")

    def _check_member(self, budget_id: int, member_id: Optional[int]) -> None:
        if member_id is None:
            return
        member = self.session.get(BudgetMember, member_id)
        if not member or member.budget_id != budget_id:
            raise NotFoundError("Member not found")

    def _check_recurring_bill(self, budget_id: int, bill_id: Optional[int]) -> None:
        if bill_id is None:
            return
        bill = self.session.get(RecurringBill, bill_id)
        if not bill or bill.budget_id != budget_id:
            raise NotFoundError("Recurring bill not found")

    def list_transactions(
        self,
        *,
        budget_id: Optional[int] = None,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        if budget_id is not None:
            authorize_budget_access(self.session, self.user_id, budget_id)
            budget_ids = [budget_id]
        else:
            budget_ids = get_user_budget_ids(self.session, self.user_id)
        if not budget_ids:
            return []

        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.category),
                joinedload(Transaction.income_source),
            )
            .where(Transaction.budget_id.in_(budget_ids))
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        if start_date is not None:
            stmt = stmt.where(Transaction.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(Transaction.date <= end_date)
        limit = min(max(limit, 1), 200)
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        return load_budget_entity(
            self.session, self.user_id, Transaction, transaction_id, "Transaction"
        )

    def create(self, data: TransactionIn) -> Transaction:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        account = self._account(data.budget_id, data.account_id)

        to_account_id = None
        if data.type == TransactionType.transfer:
            if not data.to_account_id:
                raise ValueError("Transfers require a destination account")
            destination = self._account(data.budget_id, data.to_account_id)
            if destination.id == account.id:
                raise ValueError("Cannot transfer to the same account")
            to_account_id = destination.id

        category_id = data.category_id if data.type == TransactionType.expense else None
        income_source_id = (
            data.income_source_id if data.type == TransactionType.income else None
        )
        self._check_category(data.budget_id, category_id)
        self._check_income_source(data.budget_id, income_source_id)
        self._check_member(data.budget_id, data.member_id)
        self._check_recurring_bill(data.budget_id, data.recurring_bill_id)

        fields = dict(
            budget_id=data.budget_id,
            account_id=account.id,
            to_account_id=to_account_id,
            category_id=category_id,
            income_source_id=income_source_id,
            member_id=data.member_id,
            recurring_bill_id=data.recurring_bill_id,
            type=data.type,
            status=data.status or TransactionStatus.pending,
            description=data.description,
            notes=data.notes,
            source=TransactionSource.web,
        )

        if data.is_installment:
            if data.type != TransactionType.expense:
                raise ValueError("Only expenses can be split into installments")
            if not data.total_installments:
                raise ValueError("Installments require between 2 and 72 parts")
            parent = self._create_installments(
                account, data.date, data.amount_cents, data.total_installments, fields
            )
            self.session.commit()
            self.session.refresh(parent)
            return parent

        txn_date = data.date
        if (
            data.type == TransactionType.expense
            and account.type == AccountType.credit_card
            and account.closing_day
        ):
            txn_date = calculate_credit_card_transaction_date(
                data.date, account.closing_day
            )
        txn = Transaction(amount_cents=data.amount_cents, date=txn_date, **fields)
        self.session.add(txn)
        self.session.flush()
        apply_balance_effect(self.session, txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _create_installments(
        self,
        account: FinancialAccount,
        purchase_date: date,
        amount_cents: int,
        total: int,
        fields: dict,
    ) -> Transaction:
        closing_day = (
            account.closing_day if account.type == AccountType.credit_card else None
        )
        dates = calculate_installment_dates(purchase_date, total, closing_day)
        part = round_half_up(amount_cents / total)

        parent: Optional[Transaction] = None
        for number, due in enumerate(dates, start=1):
            txn = Transaction(
                amount_cents=part,
                date=due,
                is_installment=True,
                installment_number=number,
                total_installments=total,
                parent_transaction_id=parent.id if parent else None,
                **fields,
            )
            self.session.add(txn)
            if parent is None:
                self.session.flush()
                parent = txn
        self.session.flush()
        return parent

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if "category_id" in changes and txn.type != TransactionType.expense:
            changes.pop("category_id")
        self._check_category(txn.budget_id, changes.get("category_id"))
        self._check_member(txn.budget_id, changes.get("member_id"))

        apply_balance_effect(self.session, txn, -1)
        for field, value in changes.items():
            setattr(txn, field, value)
        apply_balance_effect(self.session, txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        apply_balance_effect(self.session, txn, -1)
        self.session.execute(
            update(GoalContribution)
            .where(GoalContribution.transaction_id == txn.id)
            .values(transaction_id=None)
        )
        self.session.execute(
            delete(Transaction).where(Transaction.parent_transaction_id == txn.id)
        )
        self.session.delete(txn)
        self.session.commit()

    def _resolve_quick_category(
        self, budget_id: int, raw_name: Optional[str]
    ) -> Optional[int]:
        name = (raw_name or "").strip()
        if not name:
            return None
        input_lower = name.lower()
        categories = self.session.scalars(
            select(Category).where(
                Category.budget_id == budget_id, Category.is_archived.is_(False)
            )
        ).all()
        for category in categories:
            if category.name.strip().lower() == input_lower:
                return category.id

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            return None
        if len(best) > 1:
            options = ", ".join(sorted({c.name for c in best}))
            raise QuickCaptureAmbiguous(
                f"Category '{name}' is ambiguous; matches: {options}"
            )
        return best[0].id

    def quick_expense(self, data: QuickExpenseIn) -> Transaction:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        if isinstance(data.amount, int):
            amount_cents = data.amount
        else:
            amount_cents = parse_amount(data.amount)
        if amount_cents <= 0:
            raise ValueError("Amount must be positive")
        if amount_cents > MAX_ACCOUNT_CENTS:
            raise ValueError("Amount is too large")

        account = self.session.scalar(
            select(FinancialAccount)
            .where(
                FinancialAccount.budget_id == data.budget_id,
                FinancialAccount.is_archived.is_(False),
            )
            .order_by(FinancialAccount.display_order, FinancialAccount.id)
            .limit(1)
        )
        if not account:
            raise ValueError("Create an account before capturing expenses")

        category_id = self._resolve_quick_category(data.budget_id, data.category)
        txn = Transaction(
            budget_id=data.budget_id,
            account_id=account.id,
            category_id=category_id,
            type=TransactionType.expense,
            status=TransactionStatus.cleared,
            amount_cents=amount_cents,
            description=data.description.strip(),
            date=data.date or local_today(),
            source=TransactionSource.quick,
        )
        self.session.add(txn)
        self.session.flush()
        apply_balance_effect(self.session, txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def scheduled(self, budget_id: int, year: int, month: int) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        period = month_period(year, month)

        allocations = dict(
            self.session.execute(
                select(MonthlyAllocation.category_id, MonthlyAllocation.allocated_cents).where(
                    MonthlyAllocation.budget_id == budget_id,
                    MonthlyAllocation.year == year,
                    MonthlyAllocation.month == month,
                )
            ).all()
        )
        month_rows = self.session.execute(
            select(Transaction.type, Transaction.category_id, Transaction.income_source_id).where(
                Transaction.budget_id == budget_id,
                Transaction.date.between(period.start, period.end),
            )
        ).all()
        paid_categories = {
            row.category_id
            for row in month_rows
            if row.type == TransactionType.expense and row.category_id
        }
        paid_sources = {
            row.income_source_id
            for row in month_rows
            if row.type == TransactionType.income and row.income_source_id
        }

        items: list[dict[str, object]] = []
        categories = self.session.scalars(
            select(Category).where(
                Category.budget_id == budget_id,
                Category.is_archived.is_(False),
                Category.due_day.is_not(None),
            )
        ).all()
        for category in categories:
            amount = allocations.get(category.id, category.planned_amount_cents)
            if amount <= 0:
                continue
            items.append(
                {
                    "id": f"expense-{category.id}",
                    "type": TransactionType.expense.value,
                    "name": category.name,
                    "icon": category.icon,
                    "amount": amount,
                    "dueDay": category.due_day,
                    "categoryId": category.id,
                    "incomeSourceId": None,
                    "isPaid": category.id in paid_categories,
                }
            )

        sources = self.session.scalars(
            select(IncomeSource).where(
                IncomeSource.budget_id == budget_id,
                IncomeSource.is_active.is_(True),
                IncomeSource.day_of_month.is_not(None),
                IncomeSource.amount_cents > 0,
            )
        ).all()
        for source in sources:
            items.append(
                {
                    "id": f"income-{source.id}",
                    "type": TransactionType.income.value,
                    "name": source.name,
                    "icon": None,
                    "amount": source.amount_cents,
                    "dueDay": source.day_of_month,
                    "categoryId": None,
                    "incomeSourceId": source.id,
                    "isPaid": source.id in paid_sources,
                }
            )

        items.sort(key=lambda item: (item["dueDay"], item["name"]))
        totals = {"expenses": 0, "income": 0, "paidExpenses": 0, "paidIncome": 0}
        for item in items:
            key = "expenses" if item["type"] == TransactionType.expense.value else "income"
            totals[key] += item["amount"]
            if item["isPaid"]:
                paid_key = "paidExpenses" if key == "expenses" else "paidIncome"
                totals[paid_key] += item["amount"]
        return {"items": items, "totals": totals}

    def confirm_scheduled(self, data: ConfirmScheduledIn) -> tuple[Transaction, str]:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        account = self._account(data.budget_id, data.account_id)
        category_id = data.category_id if data.type == TransactionType.expense else None
        income_source_id = (
            data.income_source_id if data.type == TransactionType.income else None
        )
        self._check_category(data.budget_id, category_id)
        self._check_income_source(data.budget_id, income_source_id)
        self._check_recurring_bill(data.budget_id, data.recurring_bill_id)

        existing = None
        if income_source_id or data.recurring_bill_id:
            link = (
                Transaction.income_source_id == income_source_id
                if income_source_id
                else Transaction.recurring_bill_id == data.recurring_bill_id
            )
            existing = self.session.scalar(
                select(Transaction)
                .where(
                    Transaction.budget_id == data.budget_id,
                    Transaction.type == data.type,
                    Transaction.status == TransactionStatus.pending,
                    Transaction.date == data.date,
                    link,
                )
                .limit(1)
            )

        if existing:
            apply_balance_effect(self.session, existing, -1)
            existing.status = TransactionStatus.cleared
            existing.amount_cents = data.amount_cents
            existing.account_id = account.id
            if data.description:
                existing.description = data.description
            if category_id:
                existing.category_id = category_id
            apply_balance_effect(self.session, existing, 1)
            self.session.commit()
            self.session.refresh(existing)
            return existing, "updated"

        txn = Transaction(
            budget_id=data.budget_id,
            account_id=account.id,
            category_id=category_id,
            income_source_id=income_source_id,
            recurring_bill_id=data.recurring_bill_id,
            type=data.type,
            status=TransactionStatus.cleared,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            source=TransactionSource.manual,
        )
        self.session.add(txn)
        self.session.flush()
        apply_balance_effect(self.session, txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn, "created"

    def export_csv(self) -> str:
        budget_ids = get_user_budget_ids(self.session, self.user_id)
        if not budget_ids:
            return export_transactions([])
        transactions = self.session.scalars(
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.category),
                joinedload(Transaction.income_source),
            )
            .where(Transaction.budget_id.in_(budget_ids))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        ).all()
        return export_transactions(transactions)


class MonthService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _status_row(
        self, budget_id: int, year: int, month: int
    ) -> Optional[MonthlyBudgetStatus]:
        return self.session.scalar(
            select(MonthlyBudgetStatus).where(
                MonthlyBudgetStatus.budget_id == budget_id,
                MonthlyBudgetStatus.year == year,
                MonthlyBudgetStatus.month == month,
            )
        )

    def ensure_pending(self, budget_id: int, year: int, month: int) -> EnsureResult:
        authorize_budget_access(self.session, self.user_id, budget_id)
        month_period(year, month)
        result = ensure_pending_transactions_for_month(
            self.session, budget_id, year, month
        )
        self.session.commit()
        return result

    def status(self, budget_id: int, year: int, month: int) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        row = self._status_row(budget_id, year, month)
        return {
            "year": year,
            "month": month,
            "status": row.status if row else MonthStatus.planning,
            "started_at": row.started_at if row else None,
            "closed_at": row.closed_at if row else None,
        }

    def start(self, data: MonthIn) -> EnsureResult:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        row = self._status_row(data.budget_id, data.year, data.month)
        if row and row.status == MonthStatus.active:
            raise ValueError("Month already started")

        result = ensure_pending_transactions_for_month(
            self.session, data.budget_id, data.year, data.month
        )
        if row is None:
            row = MonthlyBudgetStatus(
                budget_id=data.budget_id, year=data.year, month=data.month
            )
            self.session.add(row)
        row.status = MonthStatus.active
        row.started_at = utcnow()
        row.closed_at = None
        self.session.commit()
        logger.info(
            "month_started: budget=%s month=%04d-%02d created=%s",
            data.budget_id,
            data.year,
            data.month,
            result.created,
        )
        return result

    def close(self, data: MonthIn) -> MonthlyBudgetStatus:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        row = self._status_row(data.budget_id, data.year, data.month)
        if not row or row.status != MonthStatus.active:
            raise ValueError("Only an active month can be closed")
        row.status = MonthStatus.closed
        row.closed_at = utcnow()
        self.session.commit()
        self.session.refresh(row)
        return row


class AllocationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _month_totals_by(
        self, column, budget_id: int, txn_type: TransactionType, year: int, month: int
    ) -> dict[int, int]:
        period = month_period(year, month)
        rows = self.session.execute(
            select(column, func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0))
            .where(
                Transaction.budget_id == budget_id,
                Transaction.type == txn_type,
                Transaction.date.between(period.start, period.end),
                column.is_not(None),
            )
            .group_by(column)
        ).all()
        return {key: int(total) for key, total in rows}

    def _month_total(
        self, budget_id: int, txn_type: TransactionType, year: int, month: int
    ) -> int:
        period = month_period(year, month)
        return _sum(
            self.session,
            select(func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)).where(
                Transaction.budget_id == budget_id,
                Transaction.type == txn_type,
                Transaction.date.between(period.start, period.end),
            ),
        )

    def month_view(self, budget_id: int, year: int, month: int) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        month_period(year, month)

        rows = self.session.execute(
            select(Category, Group)
            .join(Group, Group.id == Category.group_id)
            .where(Category.budget_id == budget_id, Category.is_archived.is_(False))
            .order_by(Group.display_order, Category.display_order, Category.id)
        ).all()
        allocations = {
            allocation.category_id: allocation
            for allocation in self.session.scalars(
                select(MonthlyAllocation).where(
                    MonthlyAllocation.budget_id == budget_id,
                    MonthlyAllocation.year == year,
                    MonthlyAllocation.month == month,
                )
            ).all()
        }
        spent_by_category = self._month_totals_by(
            Transaction.category_id, budget_id, TransactionType.expense, year, month
        )

        groups: dict[int, dict[str, object]] = {}
        total_allocated = 0
        total_available = 0
        for category, group in rows:
            allocation = allocations.get(category.id)
            allocated = (
                allocation.allocated_cents if allocation else category.planned_amount_cents
            )
            carried = allocation.carried_over_cents if allocation else 0
            spent = spent_by_category.get(category.id, 0)
            available = allocated + carried - spent

            entry = groups.setdefault(
                group.id,
                {
                    "id": group.id,
                    "code": group.code.value,
                    "name": group.name,
                    "icon": group.icon,
                    "categories": [],
                    "totals": {"allocated": 0, "spent": 0, "available": 0},
                },
            )
            entry["categories"].append(
                {
                    "id": category.id,
                    "name": category.name,
                    "icon": category.icon,
                    "color": category.color,
                    "behavior": category.behavior.value,
                    "memberId": category.member_id,
                    "allocated": allocated,
                    "carriedOver": carried,
                    "spent": spent,
                    "available": available,
                    "hasAllocation": allocation is not None,
                }
            )
            entry["totals"]["allocated"] += allocated + carried
            entry["totals"]["spent"] += spent
            entry["totals"]["available"] += available
            total_allocated += allocated + carried
            total_available += available

        income = self._income_by_member(budget_id, year, month)

        status_row = self.session.scalar(
            select(MonthlyBudgetStatus).where(
                MonthlyBudgetStatus.budget_id == budget_id,
                MonthlyBudgetStatus.year == year,
                MonthlyBudgetStatus.month == month,
            )
        )
        prev_year, prev_month = previous_month(year, month)
        has_previous = (
            _count(
                self.session,
                select(func.count(MonthlyAllocation.id)).where(
                    MonthlyAllocation.budget_id == budget_id,
                    MonthlyAllocation.year == prev_year,
                    MonthlyAllocation.month == prev_month,
                ),
            )
            > 0
        )

        return {
            "year": year,
            "month": month,
            "groups": list(groups.values()),
            "totals": {
                "allocated": total_allocated,
                "spent": self._month_total(
                    budget_id, TransactionType.expense, year, month
                ),
                "available": total_available,
            },
            "income": income,
            "monthStatus": (status_row.status if status_row else MonthStatus.planning).value,
            "monthStartedAt": (
                status_row.started_at.isoformat()
                if status_row and status_row.started_at
                else None
            ),
            "hasPreviousMonthData": has_previous,
        }

    def _income_by_member(self, budget_id: int, year: int, month: int) -> dict[str, object]:
        sources = self.session.scalars(
            select(IncomeSource)
            .options(joinedload(IncomeSource.member))
            .where(
                IncomeSource.budget_id == budget_id, IncomeSource.is_active.is_(True)
            )
            .order_by(IncomeSource.display_order, IncomeSource.id)
        ).all()
        overrides = dict(
            self.session.execute(
                select(
                    MonthlyIncomeAllocation.income_source_id,
                    MonthlyIncomeAllocation.planned_cents,
                ).where(
                    MonthlyIncomeAllocation.budget_id == budget_id,
                    MonthlyIncomeAllocation.year == year,
                    MonthlyIncomeAllocation.month == month,
                )
            ).all()
        )
        received_by_source = self._month_totals_by(
            Transaction.income_source_id, budget_id, TransactionType.income, year, month
        )

        members: dict[Optional[int], dict[str, object]] = {}
        total_planned = 0
        for source in sources:
            planned = overrides.get(source.id, source.amount_cents)
            received = received_by_source.get(source.id, 0)
            entry = members.setdefault(
                source.member_id,
                {
                    "memberId": source.member_id,
                    "memberName": source.member.name if source.member else None,
                    "sources": [],
                    "planned": 0,
                    "received": 0,
                },
            )
            entry["sources"].append(
                {
                    "id": source.id,
                    "name": source.name,
                    "type": source.type.value,
                    "planned": planned,
                    "defaultAmount": source.amount_cents,
                    "received": received,
                    "isOverridden": source.id in overrides,
                }
            )
            entry["planned"] += planned
            entry["received"] += received
            total_planned += planned

        return {
            "byMember": list(members.values()),
            "planned": total_planned,
            "received": self._month_total(budget_id, TransactionType.income, year, month),
        }

    def upsert(self, data: AllocationIn) -> tuple[MonthlyAllocation, bool]:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        category = self.session.get(Category, data.category_id)
        if not category or category.budget_id != data.budget_id:
            raise NotFoundError("Category not found")

        allocation = self.session.scalar(
            select(MonthlyAllocation).where(
                MonthlyAllocation.budget_id == data.budget_id,
                MonthlyAllocation.category_id == data.category_id,
                MonthlyAllocation.year == data.year,
                MonthlyAllocation.month == data.month,
            )
        )
        created = allocation is None
        if created:
            allocation = MonthlyAllocation(
                budget_id=data.budget_id,
                category_id=data.category_id,
                year=data.year,
                month=data.month,
                carried_over_cents=0,
            )
            self.session.add(allocation)
        allocation.allocated_cents = data.allocated_cents
        self.session.commit()
        self.session.refresh(allocation)
        return allocation, created

    def copy(self, data: CopyAllocationsIn) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        if (data.from_year, data.from_month) == (data.to_year, data.to_month):
            raise ValueError("Source and target months must differ")

        source_rows = self.session.scalars(
            select(MonthlyAllocation).where(
                MonthlyAllocation.budget_id == data.budget_id,
                MonthlyAllocation.year == data.from_year,
                MonthlyAllocation.month == data.from_month,
            )
        ).all()
        amounts = {row.category_id: row.allocated_cents for row in source_rows}
        source = "previous_month"
        if not amounts:
            defaults = self.session.scalars(
                select(Category).where(
                    Category.budget_id == data.budget_id,
                    Category.is_archived.is_(False),
                    Category.planned_amount_cents > 0,
                )
            ).all()
            amounts = {c.id: c.planned_amount_cents for c in defaults}
            source = "category_defaults"
        if not amounts:
            raise NotFoundError("No allocations or planned amounts to copy")

        existing = {
            row.category_id: row
            for row in self.session.scalars(
                select(MonthlyAllocation).where(
                    MonthlyAllocation.budget_id == data.budget_id,
                    MonthlyAllocation.year == data.to_year,
                    MonthlyAllocation.month == data.to_month,
                )
            ).all()
        }
        if existing and not data.overwrite:
            raise ConflictError(
                "Target month already has allocations",
                {"requiresOverwrite": True, "existingCount": len(existing)},
            )

        for category_id, allocated in amounts.items():
            row = existing.get(category_id)
            if row is None:
                row = MonthlyAllocation(
                    budget_id=data.budget_id,
                    category_id=category_id,
                    year=data.to_year,
                    month=data.to_month,
                )
                self.session.add(row)
            row.allocated_cents = allocated
            row.carried_over_cents = 0
        self.session.commit()
        return {"copiedCount": len(amounts), "source": source}

    def upsert_income(self, data: IncomeAllocationIn) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        source = self.session.get(IncomeSource, data.income_source_id)
        if not source or source.budget_id != data.budget_id:
            raise NotFoundError("Income source not found")

        override = self.session.scalar(
            select(MonthlyIncomeAllocation).where(
                MonthlyIncomeAllocation.budget_id == data.budget_id,
                MonthlyIncomeAllocation.income_source_id == source.id,
                MonthlyIncomeAllocation.year == data.year,
                MonthlyIncomeAllocation.month == data.month,
            )
        )
        if data.planned_cents == source.amount_cents:
            if override is None:
                return {"noChange": True, "planned": data.planned_cents}
            self.session.delete(override)
            self.session.commit()
            return {"deleted": True, "planned": data.planned_cents}

        created = override is None
        if created:
            override = MonthlyIncomeAllocation(
                budget_id=data.budget_id,
                income_source_id=source.id,
                year=data.year,
                month=data.month,
            )
            self.session.add(override)
        override.planned_cents = data.planned_cents
        self.session.commit()
        return {"created": created, "planned": data.planned_cents}


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_goals(self, budget_id: int, include_archived: bool = False) -> list[Goal]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        stmt = select(Goal).where(Goal.budget_id == budget_id)
        if not include_archived:
            stmt = stmt.where(Goal.is_archived.is_(False))
        return self.session.scalars(stmt.order_by(Goal.display_order, Goal.id)).all()

    def get(self, goal_id: int) -> Goal:
        return load_budget_entity(self.session, self.user_id, Goal, goal_id, "Goal")

    def _check_account(self, budget_id: int, account_id: Optional[int]) -> None:
        if account_id is None:
            return
        account = self.session.get(FinancialAccount, account_id)
        if not account or account.budget_id != budget_id:
            raise NotFoundError("Account not found")

    @staticmethod
    def _refresh_completion(goal: Goal) -> bool:
        if not goal.is_completed and goal.current_amount_cents >= goal.target_amount_cents:
            goal.is_completed = True
            goal.completed_at = utcnow()
            return True
        return False

    def create(self, data: GoalIn) -> Goal:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        self._check_account(data.budget_id, data.account_id)
        name = capitalize_words(data.name)
        if not name:
            raise ValueError("Goal name cannot be empty")
        display_order = _count(
            self.session,
            select(func.count(Goal.id)).where(Goal.budget_id == data.budget_id),
        )
        goal = Goal(
            budget_id=data.budget_id,
            account_id=data.account_id,
            name=name,
            icon=data.icon or "🎯",
            color=data.color,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=data.initial_amount_cents,
            target_date=data.target_date,
            display_order=display_order,
        )
        self._refresh_completion(goal)
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        changes = data.model_dump(exclude_unset=True)
        self._check_account(goal.budget_id, changes.get("account_id"))
        if "name" in changes:
            name = capitalize_words(changes.pop("name") or "")
            if not name:
                raise ValueError("Goal name cannot be empty")
            goal.name = name
        for field, value in changes.items():
            setattr(goal, field, value)
        self._refresh_completion(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def archive(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        goal.is_archived = True
        self.session.commit()

    def contribute(self, goal_id: int, data: ContributionIn) -> dict[str, object]:
        goal = self.get(goal_id)
        self._check_account(goal.budget_id, data.from_account_id)

        contribution = self.session.scalar(
            select(GoalContribution).where(
                GoalContribution.goal_id == goal.id,
                GoalContribution.year == data.year,
                GoalContribution.month == data.month,
            )
        )
        if contribution:
            difference = data.amount_cents - contribution.amount_cents
            contribution.amount_cents = data.amount_cents
            if data.from_account_id is not None:
                contribution.from_account_id = data.from_account_id
        else:
            difference = data.amount_cents
            contribution = GoalContribution(
                goal_id=goal.id,
                from_account_id=data.from_account_id,
                year=data.year,
                month=data.month,
                amount_cents=data.amount_cents,
            )
            self.session.add(contribution)

        goal.current_amount_cents = max(goal.current_amount_cents + difference, 0)
        just_completed = self._refresh_completion(goal)
        self.session.commit()
        self.session.refresh(goal)
        self.session.refresh(contribution)
        return {
            "goal": goal,
            "contribution": contribution,
            "justCompleted": just_completed,
        }

    def contributions(
        self, goal_id: int, year: Optional[int] = None
    ) -> list[GoalContribution]:
        goal = self.get(goal_id)
        stmt = select(GoalContribution).where(GoalContribution.goal_id == goal.id)
        if year is not None:
            stmt = stmt.where(GoalContribution.year == year)
        return self.session.scalars(
            stmt.order_by(
                GoalContribution.year.desc(),
                GoalContribution.month.desc(),
                GoalContribution.id.desc(),
            )
        ).all()


class InviteService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def invite_link(invite: Invite) -> str:
        return f"{get_settings().app_url}/invite/{invite.token}"

    def create(self, data: InviteIn) -> Invite:
        authorize_budget_access(self.session, self.user_id, data.budget_id)
        email = data.email.strip().lower()

        pending = self.session.scalar(
            select(Invite).where(
                Invite.budget_id == data.budget_id,
                func.lower(Invite.email) == email,
                Invite.status == InviteStatus.pending,
            )
        )
        if pending:
            raise ValueError("There is already a pending invite for this email")

        already_member = self.session.scalar(
            select(BudgetMember.id)
            .join(User, User.id == BudgetMember.user_id)
            .where(BudgetMember.budget_id == data.budget_id, User.email == email)
        )
        if already_member:
            raise ValueError("This user is already a member of the budget")

        invite = Invite(
            budget_id=data.budget_id,
            invited_by_user_id=self.user_id,
            email=email,
            name=data.name.strip() if data.name else None,
            token=uuid.uuid4().hex,
            status=InviteStatus.pending,
            expires_at=utcnow() + timedelta(days=get_settings().invite_expiry_days),
        )
        self.session.add(invite)
        self.session.commit()
        self.session.refresh(invite)
        AuditLogService(self.session, self.user_id).record(
            "budget.invite", "invite", invite.id, {"budgetId": data.budget_id}
        )
        return invite

    def list_pending(self, budget_id: int) -> list[Invite]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        return self.session.scalars(
            select(Invite)
            .where(Invite.budget_id == budget_id, Invite.status == InviteStatus.pending)
            .order_by(Invite.created_at.desc(), Invite.id.desc())
        ).all()

    def cancel(self, invite_id: int) -> None:
        invite = load_budget_entity(self.session, self.user_id, Invite, invite_id, "Invite")
        if invite.status != InviteStatus.pending:
            raise ValueError("Only pending invites can be cancelled")
        invite.status = InviteStatus.cancelled
        self.session.commit()

    def _by_token(self, token: str) -> Invite:
        invite = self.session.scalar(
            select(Invite)
            .options(joinedload(Invite.budget), joinedload(Invite.invited_by))
            .where(Invite.token == token)
        )
        if not invite:
            raise NotFoundError("Invite not found")
        return invite

    def _expire_if_due(self, invite: Invite) -> bool:
        if invite.status == InviteStatus.pending and invite.expires_at < utcnow():
            invite.status = InviteStatus.expired
            self.session.commit()
            return True
        return False

    def lookup(self, token: str) -> dict[str, object]:
        invite = self._by_token(token)
        self._expire_if_due(invite)
        inviter = invite.invited_by
        return {
            "budgetName": invite.budget.name,
            "inviterName": (inviter.display_name or inviter.name) if inviter else None,
            "email": invite.email,
            "name": invite.name,
            "status": invite.status.value,
            "expiresAt": invite.expires_at.isoformat(),
        }

    def accept(self, token: str) -> BudgetMember:
        user = UserService(self.session).get(self.user_id)
        invite = self._by_token(token)
        if invite.status != InviteStatus.pending:
            raise ValueError("Invite is no longer valid")
        if self._expire_if_due(invite):
            raise ValueError("Invite has expired")
        if invite.email and invite.email.lower() != user.email.lower():
            raise ForbiddenError("This invite was sent to a different email")

        existing = self.session.scalar(
            select(BudgetMember).where(
                BudgetMember.budget_id == invite.budget_id,
                BudgetMember.user_id == user.id,
            )
        )
        if existing:
            raise ValueError("You are already a member of this budget")

        raw_name = invite.name or user.display_name or user.name or user.email.split("@")[0]
        member = BudgetMember(
            budget_id=invite.budget_id,
            user_id=user.id,
            name=capitalize_words(raw_name),
            type=MemberType.partner,
        )
        self.session.add(member)
        self.session.flush()
        create_pleasure_category(self.session, invite.budget_id, member)

        invite.status = InviteStatus.accepted
        invite.accepted_at = utcnow()
        self.session.commit()
        self.session.refresh(member)
        logger.info("invite_accepted: invite=%s budget=%s", invite.id, invite.budget_id)
        return member


class AccessLinkService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _valid_link(self, code: str) -> AccessLink:
        normalized = normalize_access_code(code)
        link = self.session.scalar(select(AccessLink).where(AccessLink.code == normalized))
        if (
            not link
            or link.user_id is not None
            or link.used_at is not None
            or link.expired
            or (link.expires_at is not None and link.expires_at <= utcnow())
        ):
            raise NotFoundError("Access link not found or already used")
        return link

    def check(self, code: str) -> dict[str, object]:
        link = self._valid_link(code)
        return {"valid": True, "type": link.type.value, "planType": link.plan_type.value}

    def redeem(self, code: str) -> User:
        user = UserService(self.session).get(self.user_id)
        link = self._valid_link(code)

        plan = self.session.scalar(
            select(Plan).where(Plan.codename == link.plan_type.value)
        )
        user.role = (
            UserRole.lifetime if link.type == AccessLinkType.lifetime else UserRole.beta
        )
        if plan:
            user.plan_id = plan.id
        user.access_link_id = link.id
        user.trial_ends_at = None

        link.user_id = user.id
        link.used_at = utcnow()
        self.session.commit()
        self.session.refresh(user)
        logger.info("access_link_redeemed: link=%s user=%s", link.id, user.id)
        return user

    def list_with_stats(self) -> dict[str, object]:
        links = self.session.scalars(
            select(AccessLink).order_by(AccessLink.created_at.desc(), AccessLink.id.desc())
        ).all()
        now = utcnow()
        stats = {"total": len(links), "available": 0, "used": 0, "expired": 0}
        for link in links:
            if link.used_at is not None or link.user_id is not None:
                stats["used"] += 1
            elif link.expired or (link.expires_at is not None and link.expires_at <= now):
                stats["expired"] += 1
            else:
                stats["available"] += 1
        return {"links": links, "stats": stats}

    def create(self, data: AccessLinkIn) -> list[AccessLink]:
        existing = set(self.session.scalars(select(AccessLink.code)).all())
        links: list[AccessLink] = []
        while len(links) < data.count:
            code = generate_access_code()
            if code in existing:
                continue
            existing.add(code)
            links.append(
                AccessLink(
                    code=code,
                    type=data.type,
                    plan_type=data.plan_type,
                    note=data.note,
                    expires_at=data.expires_at,
                    created_by=self.user_id,
                )
            )
        self.session.add_all(links)
        self.session.commit()
        AuditLogService(self.session, self.user_id).record(
            "admin.access_link_create",
            "access_link",
            details={"count": len(links), "type": data.type.value},
        )
        return links

    def update(self, link_id: int, data: AccessLinkUpdate) -> AccessLink:
        link = self.session.get(AccessLink, link_id)
        if not link:
            raise NotFoundError("Access link not found")
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise ValueError("No valid fields to update")
        if changes.get("expired") and link.used_at is not None:
            raise ValueError("Cannot expire an access link that was already used")
        for field, value in changes.items():
            setattr(link, field, value)
        self.session.commit()
        self.session.refresh(link)
        return link

    def delete(self, link_id: int) -> None:
        link = self.session.get(AccessLink, link_id)
        if not link:
            raise NotFoundError("Access link not found")
        self.session.execute(
            update(User).where(User.access_link_id == link.id).values(access_link_id=None)
        )
        self.session.delete(link)
        self.session.commit()


class CouponService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def redeem(self, code: str) -> dict[str, object]:
        user = UserService(self.session).get(self.user_id)
        coupon = self.session.scalar(
            select(Coupon).where(Coupon.code == code.strip().upper())
        )
        if not coupon:
            raise NotFoundError("Coupon not found")
        if coupon.used_at is not None or coupon.user_id is not None:
            raise ValueError("Coupon already used")
        if coupon.expired:
            raise ValueError("Coupon expired")

        coupon.used_at = utcnow()
        coupon.user_id = user.id
        self.session.flush()

        coupon_count = _count(
            self.session, select(func.count(Coupon.id)).where(Coupon.user_id == user.id)
        )
        plan = self.session.scalar(
            select(Plan)
            .where(
                Plan.required_coupon_count.is_not(None),
                Plan.required_coupon_count <= coupon_count,
            )
            .order_by(Plan.required_coupon_count.desc())
            .limit(1)
        )
        if plan:
            user.plan_id = plan.id
        self.session.commit()
        return {"couponCount": coupon_count, "plan": plan}

    def list_coupons(
        self,
        page: int = 1,
        limit: int = 50,
        search: Optional[str] = None,
        status: str = "all",
    ) -> dict[str, object]:
        page = max(page, 1)
        limit = min(max(limit, 1), 200)
        conditions = []
        if search and search.strip():
            conditions.append(Coupon.code.like(f"%{search.strip().upper()}%"))
        if status == "used":
            conditions.append(Coupon.used_at.is_not(None))
        elif status == "unused":
            conditions.append(Coupon.used_at.is_(None))
            conditions.append(Coupon.expired.is_(False))
        elif status == "expired":
            conditions.append(Coupon.expired.is_(True))
        elif status != "all":
            raise ValueError("Status must be one of all, used, unused, expired")

        total = _count(self.session, select(func.count(Coupon.id)).where(*conditions))
        coupons = self.session.scalars(
            select(Coupon)
            .where(*conditions)
            .order_by(Coupon.created_at.desc(), Coupon.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()
        return {
            "items": coupons,
            "totalItems": total,
            "page": page,
            "limit": limit,
            "totalPages": max(1, -(-total // limit)),
        }

    def generate(self, prefix: str, count: int) -> list[Coupon]:
        prefix = prefix.strip().upper()
        existing = set(
            self.session.scalars(
                select(Coupon.code).where(Coupon.code.like(f"{prefix}-%"))
            ).all()
        )
        coupons: list[Coupon] = []
        while len(coupons) < count:
            suffix = "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(8))
            code = f"{prefix}-{suffix}"
            if code in existing:
                continue
            existing.add(code)
            coupons.append(Coupon(code=code))
        self.session.add_all(coupons)
        self.session.commit()
        AuditLogService(self.session, self.user_id).record(
            "admin.coupon_create", "coupon", details={"prefix": prefix, "count": count}
        )
        return coupons

    def expire(self, coupon_id: int) -> Coupon:
        coupon = self.session.get(Coupon, coupon_id)
        if not coupon:
            raise NotFoundError("Coupon not found")
        if coupon.used_at is not None:
            raise ValueError("Cannot expire a coupon that was already used")
        coupon.expired = True
        self.session.commit()
        self.session.refresh(coupon)
        return coupon

    def delete(self, coupon_id: int) -> None:
        coupon = self.session.get(Coupon, coupon_id)
        if not coupon:
            raise NotFoundError("Coupon not found")
        code = coupon.code
        self.session.delete(coupon)
        self.session.commit()
        AuditLogService(self.session, self.user_id).record(
            "admin.coupon_delete", "coupon", coupon_id, {"code": code}
        )


class PlanService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def public_plans(self) -> dict[str, object]:
        plans = self.session.scalars(
            select(Plan)
            .where(Plan.codename.in_([plan_type.value for plan_type in PlanType]))
            .order_by(Plan.id)
        ).all()
        return {
            "plans": [
                (plan, PLAN_FEATURES.get(PlanType(plan.codename), [])) for plan in plans
            ],
            "trial_days": get_settings().trial_days,
        }

    def list_all(self) -> list[Plan]:
        return self.session.scalars(select(Plan).order_by(Plan.id)).all()

    def _ensure_unique_codename(self, codename: Optional[str], plan_id: Optional[int] = None) -> None:
        if not codename:
            return
        stmt = select(Plan.id).where(Plan.codename == codename)
        if plan_id is not None:
            stmt = stmt.where(Plan.id != plan_id)
        if self.session.scalar(stmt):
            raise ValueError("Plan codename already exists")

    def _clear_other_defaults(self, plan_id: Optional[int]) -> None:
        stmt = update(Plan).where(Plan.is_default.is_(True)).values(is_default=False)
        if plan_id is not None:
            stmt = stmt.where(Plan.id != plan_id)
        self.session.execute(stmt)

    def create(self, data: PlanIn) -> Plan:
        self._ensure_unique_codename(data.codename)
        if data.is_default:
            self._clear_other_defaults(None)
        plan = Plan(**data.model_dump())
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        AuditLogService(self.session, self.user_id).record(
            "admin.plan_update", "plan", plan.id, {"created": True}
        )
        return plan

    def update(self, plan_id: int, data: PlanUpdate) -> Plan:
        plan = self.session.get(Plan, plan_id)
        if not plan:
            raise NotFoundError("Plan not found")
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No valid fields to update")
        self._ensure_unique_codename(changes.get("codename"), plan.id)
        if changes.get("is_default"):
            self._clear_other_defaults(plan.id)
        for field, value in changes.items():
            setattr(plan, field, value)
        self.session.commit()
        self.session.refresh(plan)
        AuditLogService(self.session, self.user_id).record(
            "admin.plan_update", "plan", plan.id, {"fields": sorted(changes)}
        )
        return plan


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def stats(self, budget_id: int, year: int, month: int) -> dict[str, object]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        period = month_period(year, month)

        rows = self.session.execute(
            select(
                Transaction.date,
                Transaction.type,
                Transaction.status,
                Transaction.amount_cents,
                Transaction.account_id,
            ).where(
                Transaction.budget_id == budget_id,
                Transaction.type != TransactionType.transfer,
                Transaction.date.between(period.start, period.end),
            )
        ).all()

        days = [
            {
                "day": day,
                "label": f"{day}/{month}",
                "income": 0,
                "expense": 0,
                "pendingIncome": 0,
                "pendingExpense": 0,
                "balance": 0,
                "pendingBalance": 0,
            }
            for day in range(1, period.days + 1)
        ]
        spent_by_account: dict[int, int] = defaultdict(int)
        for row in rows:
            entry = days[row.date.day - 1]
            amount = abs(row.amount_cents)
            settled = row.status in SETTLED_STATUSES
            if row.type == TransactionType.income:
                entry["income" if settled else "pendingIncome"] += amount
            else:
                entry["expense" if settled else "pendingExpense"] += amount
                spent_by_account[row.account_id] += amount

        balance = 0
        pending_balance = 0
        for entry in days:
            balance += entry["income"] - entry["expense"]
            pending_balance += (
                entry["income"]
                + entry["pendingIncome"]
                - entry["expense"]
                - entry["pendingExpense"]
            )
            entry["balance"] = balance
            entry["pendingBalance"] = pending_balance

        credit_cards = []
        for account in self.session.scalars(
            select(FinancialAccount)
            .where(
                FinancialAccount.budget_id == budget_id,
                FinancialAccount.type == AccountType.credit_card,
                FinancialAccount.is_archived.is_(False),
            )
            .order_by(FinancialAccount.display_order, FinancialAccount.id)
        ).all():
            spent = spent_by_account.get(account.id, 0)
            credit_cards.append(
                {
                    "id": account.id,
                    "name": account.name,
                    "color": account.color,
                    "creditLimit": account.credit_limit_cents,
                    "spent": spent,
                    "available": (
                        account.credit_limit_cents - spent
                        if account.credit_limit_cents is not None
                        else None
                    ),
                    "closingDay": account.closing_day,
                    "dueDay": account.due_day,
                }
            )

        return {
            "year": year,
            "month": month,
            "days": days,
            "comparison": self._comparison(budget_id, year, month),
            "creditCards": credit_cards,
        }

    def _comparison(self, budget_id: int, year: int, month: int) -> list[dict[str, object]]:
        first_year, first_month = add_months(year, month, -11)
        start = month_period(first_year, first_month).start
        end = month_period(year, month).end
        rows = self.session.execute(
            select(Transaction.date, Transaction.type, Transaction.amount_cents).where(
                Transaction.budget_id == budget_id,
                Transaction.type != TransactionType.transfer,
                Transaction.status.in_(SETTLED_STATUSES),
                Transaction.date.between(start, end),
            )
        ).all()
        totals: dict[tuple[int, int], dict[str, int]] = defaultdict(
            lambda: {"income": 0, "expense": 0}
        )
        for row in rows:
            key = "income" if row.type == TransactionType.income else "expense"
            totals[(row.date.year, row.date.month)][key] += abs(row.amount_cents)

        series = []
        for offset in range(12):
            y, m = add_months(first_year, first_month, offset)
            bucket = totals.get((y, m), {"income": 0, "expense": 0})
            series.append(
                {
                    "year": y,
                    "month": m,
                    "label": f"{MONTH_LABELS_PT[m - 1]}/{y % 100:02d}",
                    "income": bucket["income"],
                    "expense": bucket["expense"],
                }
            )
        return series

    def commitments(
        self, budget_id: int, days: int = 30, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        authorize_budget_access(self.session, self.user_id, budget_id)
        today = today or local_today()
        horizon = today + timedelta(days=days)

        categories = self.session.scalars(
            select(Category)
            .where(
                Category.budget_id == budget_id,
                Category.is_archived.is_(False),
                Category.target_date.is_not(None),
                Category.target_date.between(today, horizon),
            )
            .order_by(Category.target_date, Category.id)
        ).all()
        if not categories:
            return []

        allocations = dict(
            self.session.execute(
                select(MonthlyAllocation.category_id, MonthlyAllocation.allocated_cents).where(
                    MonthlyAllocation.budget_id == budget_id,
                    MonthlyAllocation.year == today.year,
                    MonthlyAllocation.month == today.month,
                )
            ).all()
        )
        period = month_period(today.year, today.month)
        spent = dict(
            self.session.execute(
                select(
                    Transaction.category_id,
                    func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0),
                )
                .where(
                    Transaction.budget_id == budget_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(period.start, period.end),
                    Transaction.category_id.in_([c.id for c in categories]),
                )
                .group_by(Transaction.category_id)
            ).all()
        )

        upcoming = []
        for category in categories:
            allocated = allocations.get(category.id, category.planned_amount_cents)
            category_spent = int(spent.get(category.id, 0))
            if allocated > 0 and category_spent >= allocated:
                continue
            upcoming.append(
                {
                    "categoryId": category.id,
                    "name": category.name,
                    "icon": category.icon,
                    "targetDate": category.target_date.isoformat(),
                    "targetAmount": category.target_amount_cents,
                    "allocated": allocated,
                    "spent": category_spent,
                    "daysUntil": (category.target_date - today).days,
                }
            )
        return upcoming


class AccountLifecycleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def trial_status(self, now: Optional[datetime] = None) -> dict[str, object]:
        user = UserService(self.session).get(self.user_id)
        now = now or utcnow()
        if user.trial_ends_at is None:
            return {
                "hasTrial": False,
                "isTrialing": False,
                "trialEndsAt": None,
                "daysRemaining": 0,
            }
        seconds_left = (user.trial_ends_at - now).total_seconds()
        return {
            "hasTrial": True,
            "isTrialing": seconds_left > 0,
            "trialEndsAt": user.trial_ends_at.isoformat(),
            "daysRemaining": max(0, math.ceil(seconds_left / 86400)),
        }

    def request_deletion(
        self, reason: Optional[str] = None, *, ip_address: Optional[str] = None
    ) -> User:
        user = UserService(self.session).get(self.user_id)
        now = utcnow()
        user.deletion_requested_at = now
        user.deleted_at = now + timedelta(days=DELETION_GRACE_DAYS)
        user.deletion_reason = reason.strip() if reason and reason.strip() else None
        self.session.commit()
        self.session.refresh(user)
        AuditLogService(self.session, self.user_id).record(
            "user.delete",
            "user",
            user.id,
            {"scheduledFor": user.deleted_at.isoformat()},
            ip_address=ip_address,
        )
        return user

    def cancel_deletion(self) -> User:
        user = UserService(self.session).get(self.user_id)
        if user.deletion_requested_at is None:
            raise ValueError("No deletion request to cancel")
        user.deletion_requested_at = None
        user.deleted_at = None
        user.deletion_reason = None
        self.session.commit()
        self.session.refresh(user)
        return user

    def export_data(self, *, ip_address: Optional[str] = None) -> dict[str, object]:
        user = UserService(self.session).get(self.user_id)
        budget_ids = get_user_budget_ids(self.session, user.id)

        def rows(model) -> list:
            if not budget_ids:
                return []
            return self.session.scalars(
                select(model).where(model.budget_id.in_(budget_ids)).order_by(model.id)
            ).all()

        memberships = self.session.scalars(
            select(BudgetMember).where(BudgetMember.user_id == user.id)
        ).all()
        budgets = (
            self.session.scalars(select(Budget).where(Budget.id.in_(budget_ids))).all()
            if budget_ids
            else []
        )
        data = {
            "exported_at": local_now(),
            "user": user,
            "memberships": memberships,
            "budgets": budgets,
            "accounts": rows(FinancialAccount),
            "categories": rows(Category),
            "transactions": rows(Transaction),
        }
        AuditLogService(self.session, self.user_id).record(
            "export.data", "user", user.id, {"budgets": len(budgets)}, ip_address=ip_address
        )
        return data
