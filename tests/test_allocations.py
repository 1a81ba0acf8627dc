from datetime import date

import pytest
from sqlalchemy import select

from models import Category, MonthStatus
from schemas import (
    AccountIn,
    AllocationIn,
    BudgetIn,
    CategoryUpdate,
    ContributionIn,
    CopyAllocationsIn,
    GoalIn,
    IncomeAllocationIn,
    IncomeSourceIn,
    MonthIn,
    RecurringBillIn,
    TransactionIn,
)
from services import (
    AccountService,
    AllocationService,
    BudgetService,
    CategoryService,
    ConflictError,
    GoalService,
    IncomeSourceService,
    MonthService,
    NotFoundError,
    RecurringBillService,
    TransactionService,
    calculate_goal_metrics,
    ensure_pending_for_active_months,
)


def _category(session, budget, name: str) -> Category:
    return session.scalar(
        select(Category).where(Category.budget_id == budget.id, Category.name == name)
    )


def _view_category(view, name):
    for group in view["groups"]:
        for category in group["categories"]:
            if category["name"] == name:
                return category
    raise AssertionError(f"{name} missing from month view")


def test_month_view_combines_allocations_and_spending(session, owner, budget, checking):
    mercado = _category(session, budget, "Mercado")
    allocations = AllocationService(session, owner.id)
    allocation, created = allocations.upsert(
        AllocationIn(
            budget_id=budget.id,
            category_id=mercado.id,
            year=2025,
            month=3,
            allocated_cents=80000,
        )
    )
    assert created is True
    TransactionService(session, owner.id).create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            category_id=mercado.id,
            type="expense",
            amount_cents=5000,
            date=date(2025, 3, 2),
        )
    )

    view = allocations.month_view(budget.id, 2025, 3)
    entry = _view_category(view, "Mercado")
    assert entry["allocated"] == 80000
    assert entry["spent"] == 5000
    assert entry["available"] == 75000
    assert entry["hasAllocation"] is True
    assert view["totals"] == {"allocated": 80000, "spent": 5000, "available": 75000}
    assert view["groups"][0]["code"] == "essential"
    assert view["monthStatus"] == "planning"
    assert view["hasPreviousMonthData"] is False

    again, created = allocations.upsert(
        AllocationIn(
            budget_id=budget.id,
            category_id=mercado.id,
            year=2025,
            month=3,
            allocated_cents=90000,
        )
    )
    assert created is False
    assert again.id == allocation.id
    assert again.allocated_cents == 90000


def test_month_view_falls_back_to_planned_amount(session, owner, budget):
    moradia = _category(session, budget, "Moradia")
    CategoryService(session, owner.id).update(
        moradia.id, CategoryUpdate(planned_amount_cents=150000)
    )
    entry = _view_category(
        AllocationService(session, owner.id).month_view(budget.id, 2025, 3), "Moradia"
    )
    assert entry["allocated"] == 150000
    assert entry["hasAllocation"] is False


def test_copy_allocations_from_previous_month(session, owner, budget):
    mercado = _category(session, budget, "Mercado")
    allocations = AllocationService(session, owner.id)
    allocations.upsert(
        AllocationIn(
            budget_id=budget.id,
            category_id=mercado.id,
            year=2025,
            month=3,
            allocated_cents=80000,
        )
    )
    request = dict(budget_id=budget.id, from_year=2025, from_month=3, to_year=2025, to_month=4)

    assert allocations.copy(CopyAllocationsIn(**request)) == {
        "copiedCount": 1,
        "source": "previous_month",
    }
    with pytest.raises(ConflictError) as excinfo:
        allocations.copy(CopyAllocationsIn(**request))
    assert excinfo.value.payload == {"requiresOverwrite": True, "existingCount": 1}

    assert allocations.copy(CopyAllocationsIn(overwrite=True, **request))["copiedCount"] == 1
    assert allocations.month_view(budget.id, 2025, 4)["hasPreviousMonthData"] is True


def test_copy_allocations_uses_category_defaults(session, owner, budget):
    moradia = _category(session, budget, "Moradia")
    CategoryService(session, owner.id).update(
        moradia.id, CategoryUpdate(planned_amount_cents=150000)
    )
    result = AllocationService(session, owner.id).copy(
        CopyAllocationsIn(
            budget_id=budget.id, from_year=2025, from_month=1, to_year=2025, to_month=2
        )
    )
    assert result == {"copiedCount": 1, "source": "category_defaults"}


def test_copy_allocations_rejects_same_month_and_empty_source(session, owner, budget):
    allocations = AllocationService(session, owner.id)
    with pytest.raises(ValueError, match="must differ"):
        allocations.copy(
            CopyAllocationsIn(
                budget_id=budget.id, from_year=2025, from_month=3, to_year=2025, to_month=3
            )
        )
    other = BudgetService(session, owner.id).create(BudgetIn(name="sítio"))
    with pytest.raises(NotFoundError):
        allocations.copy(
            CopyAllocationsIn(
                budget_id=other.id, from_year=2025, from_month=3, to_year=2025, to_month=4
            )
        )


def test_income_override_lifecycle(session, owner, budget):
    source = IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(budget_id=budget.id, name="salário", amount_cents=500000)
    )
    allocations = AllocationService(session, owner.id)
    request = dict(budget_id=budget.id, income_source_id=source.id, year=2025, month=3)

    assert allocations.upsert_income(
        IncomeAllocationIn(planned_cents=450000, **request)
    ) == {"created": True, "planned": 450000}

    income = allocations.month_view(budget.id, 2025, 3)["income"]
    assert income["planned"] == 450000
    assert income["byMember"][0]["sources"][0]["isOverridden"] is True
    assert income["byMember"][0]["sources"][0]["defaultAmount"] == 500000

    assert allocations.upsert_income(
        IncomeAllocationIn(planned_cents=500000, **request)
    ) == {"deleted": True, "planned": 500000}
    assert allocations.upsert_income(
        IncomeAllocationIn(planned_cents=500000, **request)
    ) == {"noChange": True, "planned": 500000}


def test_month_lifecycle(session, owner, budget, checking):
    months = MonthService(session, owner.id)
    request = MonthIn(budget_id=budget.id, year=2025, month=3)

    assert months.status(budget.id, 2025, 3)["status"] == MonthStatus.planning
    with pytest.raises(ValueError, match="active month"):
        months.close(request)

    result = months.start(request)
    assert result.created == 0
    assert months.status(budget.id, 2025, 3)["status"] == MonthStatus.active
    with pytest.raises(ValueError, match="already started"):
        months.start(request)

    closed = months.close(request)
    assert closed.status == MonthStatus.closed
    assert closed.closed_at is not None


def test_active_months_pick_up_new_bills(session, owner, budget, checking):
    MonthService(session, owner.id).start(MonthIn(budget_id=budget.id, year=2025, month=3))
    RecurringBillService(session, owner.id).create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=_category(session, budget, "Streaming").id,
            name="Netflix",
            amount_cents=5590,
            due_day=12,
        )
    )
    assert ensure_pending_for_active_months(session, today=date(2025, 3, 10)) == 1
    assert ensure_pending_for_active_months(session, today=date(2025, 3, 11)) == 0
    assert ensure_pending_for_active_months(session, today=date(2025, 4, 1)) == 0


def test_goal_metrics(session, owner, budget):
    goal = GoalService(session, owner.id).create(
        GoalIn(
            budget_id=budget.id,
            name="viagem japão",
            target_amount_cents=100000,
            initial_amount_cents=20000,
            target_date=date(2025, 12, 31),
        )
    )
    assert goal.name == "Viagem Japão"
    assert goal.icon == "🎯"
    assert calculate_goal_metrics(goal, today=date(2025, 3, 15)) == {
        "progress": 20,
        "monthsRemaining": 9,
        "remaining": 80000,
        "monthlyTarget": 8889,
    }
    assert calculate_goal_metrics(goal, today=date(2026, 2, 1))["monthlyTarget"] == 80000


def test_goal_contributions_upsert_per_month(session, owner, budget, checking):
    goals = GoalService(session, owner.id)
    goal = goals.create(
        GoalIn(budget_id=budget.id, name="reserva", target_amount_cents=100000)
    )

    first = goals.contribute(
        goal.id, ContributionIn(amount_cents=30000, year=2025, month=3)
    )
    assert first["goal"].current_amount_cents == 30000
    assert first["justCompleted"] is False

    goals.contribute(
        goal.id,
        ContributionIn(amount_cents=40000, year=2025, month=3, from_account_id=checking.id),
    )
    assert goal.current_amount_cents == 40000

    last = goals.contribute(
        goal.id, ContributionIn(amount_cents=60000, year=2025, month=4)
    )
    assert last["justCompleted"] is True
    assert last["goal"].is_completed is True
    assert last["goal"].completed_at is not None

    history = goals.contributions(goal.id)
    assert [(c.year, c.month, c.amount_cents) for c in history] == [
        (2025, 4, 60000),
        (2025, 3, 40000),
    ]
    assert history[1].from_account_id == checking.id
    assert [c.month for c in goals.contributions(goal.id, year=2024)] == []


def test_goals_are_scoped_to_budget_accounts(session, owner, budget):
    other = BudgetService(session, owner.id).create(BudgetIn(name="sítio"))
    foreign = AccountService(session, owner.id).create(
        AccountIn(budget_id=other.id, name="caixa", type="cash")
    )
    with pytest.raises(NotFoundError):
        GoalService(session, owner.id).create(
            GoalIn(
                budget_id=budget.id,
                account_id=foreign.id,
                name="carro",
                target_amount_cents=100000,
            )
        )
