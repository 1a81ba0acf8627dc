from datetime import date

import pytest
from sqlalchemy import select

from models import Category
from schemas import AccountIn, AllocationIn, CategoryUpdate, TransactionIn
from services import (
    AccountService,
    AllocationService,
    CategoryService,
    DashboardService,
    NotFoundError,
    TransactionService,
    UserService,
)


def _category(session, budget, name: str) -> Category:
    return session.scalar(
        select(Category).where(Category.budget_id == budget.id, Category.name == name)
    )


def _txn(session, owner, budget, account, kind, amount, when, **fields):
    return TransactionService(session, owner.id).create(
        TransactionIn(
            budget_id=budget.id,
            account_id=account.id,
            type=kind,
            amount_cents=amount,
            date=when,
            **fields,
        )
    )


def test_stats_accumulate_settled_and_pending_balances(session, owner, budget, checking):
    card = AccountService(session, owner.id).create(
        AccountIn(
            budget_id=budget.id,
            name="nubank",
            type="credit_card",
            credit_limit_cents=500000,
            closing_day=10,
        )
    )
    _txn(session, owner, budget, checking, "income", 300000, date(2025, 3, 1), status="cleared")
    _txn(session, owner, budget, checking, "expense", 5000, date(2025, 3, 2), status="cleared")
    _txn(session, owner, budget, checking, "expense", 2000, date(2025, 3, 2))
    _txn(session, owner, budget, card, "expense", 12000, date(2025, 3, 5))
    _txn(session, owner, budget, checking, "income", 100000, date(2025, 2, 15), status="cleared")

    stats = DashboardService(session, owner.id).stats(budget.id, 2025, 3)
    days = stats["days"]
    assert len(days) == 31
    assert days[0]["balance"] == 300000
    assert days[1]["label"] == "2/3"
    assert days[1]["expense"] == 5000
    assert days[1]["pendingExpense"] == 2000
    assert days[1]["balance"] == 295000
    assert days[1]["pendingBalance"] == 293000
    assert days[9]["pendingExpense"] == 12000
    assert days[-1]["balance"] == 295000
    assert days[-1]["pendingBalance"] == 281000

    comparison = stats["comparison"]
    assert [c["label"] for c in comparison[:2]] == ["Abr/24", "Mai/24"]
    assert comparison[-2] == {
        "year": 2025,
        "month": 2,
        "label": "Fev/25",
        "income": 100000,
        "expense": 0,
    }
    assert comparison[-1]["income"] == 300000
    assert comparison[-1]["expense"] == 5000

    [credit_card] = stats["creditCards"]
    assert credit_card["name"] == "Nubank"
    assert credit_card["creditLimit"] == 500000
    assert credit_card["spent"] == 12000
    assert credit_card["available"] == 488000


def test_stats_require_membership(session, owner, budget):
    stranger = UserService(session).ensure_user("carla@example.com")
    with pytest.raises(NotFoundError):
        DashboardService(session, stranger.id).stats(budget.id, 2025, 3)


def test_commitments_skip_paid_and_distant_targets(session, owner, budget, checking):
    categories = CategoryService(session, owner.id)
    moradia = _category(session, budget, "Moradia")
    saude = _category(session, budget, "Saúde")
    viagem = _category(session, budget, "Viagem")
    academia = _category(session, budget, "Academia")
    categories.update(
        moradia.id,
        CategoryUpdate(planned_amount_cents=150000, target_date=date(2025, 3, 15)),
    )
    categories.update(
        saude.id, CategoryUpdate(planned_amount_cents=500, target_date=date(2025, 3, 13))
    )
    categories.update(viagem.id, CategoryUpdate(target_date=date(2025, 3, 20)))
    categories.update(academia.id, CategoryUpdate(target_date=date(2025, 4, 30)))

    AllocationService(session, owner.id).upsert(
        AllocationIn(
            budget_id=budget.id,
            category_id=moradia.id,
            year=2025,
            month=3,
            allocated_cents=100000,
        )
    )
    _txn(
        session, owner, budget, checking, "expense", 100000, date(2025, 3, 3),
        category_id=moradia.id,
    )
    _txn(
        session, owner, budget, checking, "expense", 200, date(2025, 3, 4),
        category_id=saude.id,
    )

    upcoming = DashboardService(session, owner.id).commitments(
        budget.id, today=date(2025, 3, 10)
    )
    assert [c["name"] for c in upcoming] == ["Saúde", "Viagem"]
    assert upcoming[0]["allocated"] == 500
    assert upcoming[0]["spent"] == 200
    assert upcoming[0]["daysUntil"] == 3
    assert upcoming[1]["allocated"] == 0

    shorter = DashboardService(session, owner.id).commitments(
        budget.id, days=5, today=date(2025, 3, 10)
    )
    assert [c["name"] for c in shorter] == ["Saúde"]
