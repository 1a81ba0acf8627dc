from datetime import date

from sqlalchemy import select

from models import (
    Category,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from recurrence import (
    PendingTransactionEngine,
    calculate_credit_card_transaction_date,
    calculate_installment_dates,
    get_billing_cycle_dates,
    get_transaction_billing_month,
    sunday_based_weekday,
)
from schemas import IncomeSourceIn, RecurringBillIn
from services import IncomeSourceService, RecurringBillService


def _category(session, budget, name="Moradia") -> Category:
    return session.scalar(
        select(Category).where(Category.budget_id == budget.id, Category.name == name)
    )


def _generated(session, budget):
    return session.scalars(
        select(Transaction)
        .where(Transaction.budget_id == budget.id)
        .order_by(Transaction.date, Transaction.id)
    ).all()


def test_installment_dates_follow_purchase_day_without_closing_day():
    dates = calculate_installment_dates(date(2024, 1, 31), 3, None)
    assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]


def test_installment_dates_after_closing_day_start_next_month():
    dates = calculate_installment_dates(date(2025, 1, 15), 3, 10)
    assert dates == [date(2025, 2, 10), date(2025, 3, 10), date(2025, 4, 10)]


def test_installment_dates_before_closing_day_stay_in_month():
    dates = calculate_installment_dates(date(2025, 1, 5), 2, 10)
    assert dates == [date(2025, 1, 10), date(2025, 2, 10)]


def test_installment_dates_clamp_closing_day_to_short_months():
    dates = calculate_installment_dates(date(2025, 2, 10), 2, 31)
    assert dates == [date(2025, 2, 28), date(2025, 3, 31)]


def test_credit_card_transaction_date_moves_to_next_closing():
    assert calculate_credit_card_transaction_date(date(2025, 3, 20), 15) == date(
        2025, 4, 15
    )
    assert calculate_credit_card_transaction_date(date(2025, 3, 15), 15) == date(
        2025, 3, 15
    )


def test_billing_cycle_dates():
    assert get_billing_cycle_dates(10, 2025, 3) == (date(2025, 2, 11), date(2025, 3, 10))
    # closing on the 31st: February never reaches it, so the cycle starts on March 1st
    assert get_billing_cycle_dates(31, 2025, 3) == (date(2025, 3, 1), date(2025, 3, 31))


def test_transaction_billing_month():
    assert get_transaction_billing_month(date(2025, 3, 11), 10) == (2025, 4)
    assert get_transaction_billing_month(date(2025, 3, 10), 10) == (2025, 3)
    assert get_transaction_billing_month(date(2025, 12, 20), 15) == (2026, 1)
    assert get_transaction_billing_month(date(2025, 2, 28), 30) == (2025, 2)


def test_sunday_based_weekday():
    assert sunday_based_weekday(date(2024, 9, 1)) == 0
    assert sunday_based_weekday(date(2024, 9, 2)) == 1
    assert sunday_based_weekday(date(2024, 9, 7)) == 6


def test_engine_without_accounts_creates_nothing(session, owner, budget):
    result = PendingTransactionEngine(session).ensure_month(budget.id, 2025, 3)
    assert result.as_dict() == {
        "created": 0,
        "expenses": 0,
        "income": 0,
        "alreadyExisted": True,
    }


def test_engine_generates_bills_and_income_once(session, owner, budget, checking):
    moradia = _category(session, budget)
    bills = RecurringBillService(session, owner.id)
    bills.create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            name="Aluguel",
            amount_cents=150000,
            due_day=31,
        )
    )
    bills.create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            name="Feira",
            amount_cents=8000,
            frequency="weekly",
        )
    )
    bills.create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            name="IPVA",
            amount_cents=90000,
            frequency="yearly",
            due_day=5,
            due_month=3,
        )
    )
    IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(
            budget_id=budget.id,
            name="salário",
            amount_cents=500000,
            frequency="biweekly",
            day_of_month=20,
        )
    )

    engine = PendingTransactionEngine(session)
    result = engine.ensure_month(budget.id, 2025, 3)
    session.commit()

    # March 2025 has five Mondays, the biweekly pay day 34 clamps to the 31st
    assert result.expenses == 1 + 5 + 1
    assert result.income == 2
    assert result.created == 9
    assert result.already_existed is False

    rows = _generated(session, budget)
    assert all(row.status == TransactionStatus.pending for row in rows)
    rent = [row for row in rows if row.description == "Aluguel"]
    assert rent[0].date == date(2025, 3, 31)
    assert rent[0].source == TransactionSource.recurring
    weekly = [row.date.day for row in rows if row.description.startswith("Feira")]
    assert weekly == [3, 10, 17, 24, 31]
    assert "Feira (3/3)" in {row.description for row in rows}
    income = [row for row in rows if row.income_source_id]
    assert [row.date for row in income] == [date(2025, 3, 20), date(2025, 3, 31)]
    assert income[0].description == "Salário (dia 20)"
    assert income[0].source == TransactionSource.scheduled
    assert checking.balance_cents == 0

    again = engine.ensure_month(budget.id, 2025, 3)
    assert again.created == 0
    assert again.already_existed is True

    april = engine.ensure_month(budget.id, 2025, 4)
    assert april.expenses == 1 + 4
    assert all(
        row.description != "IPVA" or row.date.month == 3
        for row in _generated(session, budget)
    )


def test_engine_monthly_income_skips_when_month_has_one(session, owner, budget, checking):
    source = IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(
            budget_id=budget.id,
            name="Aluguel Recebido",
            type="rental",
            amount_cents=120000,
            day_of_month=31,
        )
    )
    session.add(
        Transaction(
            budget_id=budget.id,
            account_id=checking.id,
            income_source_id=source.id,
            type=TransactionType.income,
            status=TransactionStatus.cleared,
            amount_cents=120000,
            date=date(2025, 2, 3),
        )
    )
    session.commit()

    engine = PendingTransactionEngine(session)
    assert engine.ensure_month(budget.id, 2025, 2).created == 0

    march = engine.ensure_month(budget.id, 2025, 3)
    assert march.income == 1
    generated = session.scalar(
        select(Transaction).where(
            Transaction.income_source_id == source.id,
            Transaction.date == date(2025, 3, 31),
        )
    )
    assert generated.description == "Aluguel Recebido (agendado)"
