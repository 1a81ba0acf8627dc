from datetime import date

import pytest
from sqlalchemy import select

from csv_utils import EXPORT_HEADERS
from models import (
    Category,
    FinancialAccount,
    GroupCode,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from recurrence import PendingTransactionEngine
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    CategoryIn,
    CategoryUpdate,
    ConfirmScheduledIn,
    DependentIn,
    IncomeSourceIn,
    QuickExpenseIn,
    RecurringBillIn,
    TransactionIn,
    TransactionUpdate,
    validate_schedule_day,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    IncomeSourceService,
    MemberService,
    NotFoundError,
    QuickCaptureAmbiguous,
    RecurringBillService,
    TransactionService,
    UserService,
    auto_clear_transactions,
    ensure_default_groups,
)


def _balance(session, account: FinancialAccount) -> int:
    session.refresh(account)
    return account.balance_cents


def _category(session, budget, name: str) -> Category:
    return session.scalar(
        select(Category).where(Category.budget_id == budget.id, Category.name == name)
    )


def _card(session, owner, budget) -> FinancialAccount:
    return AccountService(session, owner.id).create(
        AccountIn(
            budget_id=budget.id,
            name="nubank",
            type="credit_card",
            credit_limit_cents=500000,
            closing_day=10,
            due_day=17,
        )
    )


def test_balances_follow_create_update_and_delete(session, owner, budget, checking):
    txns = TransactionService(session, owner.id)
    savings = AccountService(session, owner.id).create(
        AccountIn(budget_id=budget.id, name="poupança", type="savings")
    )
    mercado = _category(session, budget, "Mercado")

    txns.create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type="income",
            status="cleared",
            amount_cents=300000,
            date=date(2025, 3, 1),
        )
    )
    expense = txns.create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            category_id=mercado.id,
            type="expense",
            amount_cents=5000,
            date=date(2025, 3, 2),
        )
    )
    transfer = txns.create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            to_account_id=savings.id,
            category_id=mercado.id,
            type="transfer",
            amount_cents=10000,
            date=date(2025, 3, 3),
        )
    )
    assert expense.status == TransactionStatus.pending
    assert transfer.category_id is None
    assert _balance(session, checking) == 285000
    assert _balance(session, savings) == 10000

    txns.update(expense.id, TransactionUpdate(amount_cents=7000))
    assert _balance(session, checking) == 283000

    txns.delete(transfer.id)
    assert _balance(session, checking) == 293000
    assert _balance(session, savings) == 0


def test_transfer_requires_distinct_destination(session, owner, budget, checking):
    txns = TransactionService(session, owner.id)
    with pytest.raises(ValueError, match="destination"):
        txns.create(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type="transfer",
                amount_cents=100,
                date=date(2025, 3, 3),
            )
        )
    with pytest.raises(ValueError, match="same account"):
        txns.create(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                to_account_id=checking.id,
                type="transfer",
                amount_cents=100,
                date=date(2025, 3, 3),
            )
        )


def test_installments_split_amount_and_leave_balance(session, owner, budget):
    card = _card(session, owner, budget)
    txns = TransactionService(session, owner.id)

    parent = txns.create(
        TransactionIn(
            budget_id=budget.id,
            account_id=card.id,
            type="expense",
            amount_cents=10000,
            description="Geladeira",
            date=date(2025, 1, 15),
            is_installment=True,
            total_installments=3,
        )
    )
    parts = session.scalars(
        select(Transaction)
        .where(Transaction.total_installments == 3)
        .order_by(Transaction.installment_number)
    ).all()

    assert [p.amount_cents for p in parts] == [3333, 3333, 3333]
    assert [p.date for p in parts] == [
        date(2025, 2, 10),
        date(2025, 3, 10),
        date(2025, 4, 10),
    ]
    assert parts[0].id == parent.id
    assert parent.parent_transaction_id is None
    assert {p.parent_transaction_id for p in parts[1:]} == {parent.id}
    assert _balance(session, card) == 0

    txns.delete(parent.id)
    remaining = session.scalars(
        select(Transaction).where(Transaction.total_installments == 3)
    ).all()
    assert remaining == []


def test_installments_are_expense_only(session, owner, budget, checking):
    with pytest.raises(ValueError, match="Only expenses"):
        TransactionService(session, owner.id).create(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type="income",
                amount_cents=10000,
                date=date(2025, 1, 15),
                is_installment=True,
                total_installments=2,
            )
        )


def test_credit_card_expense_is_dated_on_closing_day(session, owner, budget):
    card = _card(session, owner, budget)
    txn = TransactionService(session, owner.id).create(
        TransactionIn(
            budget_id=budget.id,
            account_id=card.id,
            type="expense",
            amount_cents=5000,
            date=date(2025, 3, 20),
        )
    )
    assert txn.date == date(2025, 4, 10)
    assert _balance(session, card) == -5000


def test_transactions_are_scoped_to_members(session, owner, budget, checking):
    stranger = UserService(session).ensure_user("bruno@example.com")
    with pytest.raises(NotFoundError):
        TransactionService(session, stranger.id).create(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type="expense",
                amount_cents=5000,
                date=date(2025, 3, 20),
            )
        )
    assert TransactionService(session, stranger.id).list_transactions() == []


def test_list_filters_and_orders_newest_first(session, owner, budget, checking):
    txns = TransactionService(session, owner.id)
    for day in (1, 15, 28):
        txns.create(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type="expense",
                amount_cents=100 * day,
                date=date(2025, 3, day),
            )
        )
    items = txns.list_transactions(
        budget_id=budget.id, start_date=date(2025, 3, 10), end_date=date(2025, 3, 31)
    )
    assert [t.date.day for t in items] == [28, 15]
    assert items[0].account.name == "Conta Corrente"
    assert len(txns.list_transactions(budget_id=budget.id, limit=1, offset=1)) == 1


def test_quick_expense_resolves_category(session, owner, budget, checking):
    txns = TransactionService(session, owner.id)

    exact = txns.quick_expense(
        QuickExpenseIn(
            budget_id=budget.id, amount="50,90", description="feira", category="MERCADO"
        )
    )
    typo = txns.quick_expense(
        QuickExpenseIn(
            budget_id=budget.id, amount=1200, description="pão", category="mercdo"
        )
    )
    unknown = txns.quick_expense(
        QuickExpenseIn(budget_id=budget.id, amount="R$ 10", description="banca", category="xyz")
    )

    mercado = _category(session, budget, "Mercado")
    assert exact.amount_cents == 5090
    assert exact.category_id == mercado.id
    assert exact.status == TransactionStatus.cleared
    assert exact.source == TransactionSource.quick
    assert typo.category_id == mercado.id
    assert unknown.category_id is None
    assert _balance(session, checking) == -(5090 + 1200 + 1000)


def test_quick_expense_ambiguous_category(session, owner, budget, checking):
    group = ensure_default_groups(session)[GroupCode.lifestyle]
    categories = CategoryService(session, owner.id)
    for name in ("Gato", "Pato"):
        categories.create(CategoryIn(budget_id=budget.id, group_id=group.id, name=name))

    with pytest.raises(QuickCaptureAmbiguous, match="Gato, Pato"):
        TransactionService(session, owner.id).quick_expense(
            QuickExpenseIn(
                budget_id=budget.id, amount=500, description="ração", category="rato"
            )
        )


def test_quick_expense_needs_an_account(session, owner, budget):
    with pytest.raises(ValueError, match="Create an account"):
        TransactionService(session, owner.id).quick_expense(
            QuickExpenseIn(budget_id=budget.id, amount=500, description="café")
        )


def test_confirm_scheduled_updates_pending_or_creates(session, owner, budget, checking):
    moradia = _category(session, budget, "Moradia")
    bill = RecurringBillService(session, owner.id).create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            account_id=checking.id,
            name="Aluguel",
            amount_cents=150000,
            due_day=5,
        )
    )
    source = IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(budget_id=budget.id, name="freela", type="freelance", amount_cents=80000)
    )
    PendingTransactionEngine(session).ensure_month(budget.id, 2025, 3)
    session.commit()
    assert _balance(session, checking) == 0

    txns = TransactionService(session, owner.id)
    updated, action = txns.confirm_scheduled(
        ConfirmScheduledIn(
            budget_id=budget.id,
            type="expense",
            amount_cents=149000,
            account_id=checking.id,
            category_id=moradia.id,
            recurring_bill_id=bill.id,
            date=date(2025, 3, 5),
        )
    )
    assert action == "updated"
    assert updated.status == TransactionStatus.cleared
    assert updated.amount_cents == 149000
    assert _balance(session, checking) == -149000

    created, action = txns.confirm_scheduled(
        ConfirmScheduledIn(
            budget_id=budget.id,
            type="income",
            amount_cents=80000,
            account_id=checking.id,
            income_source_id=source.id,
            date=date(2025, 3, 12),
        )
    )
    assert action == "created"
    assert created.source == TransactionSource.manual
    assert _balance(session, checking) == -69000


def test_settling_generated_transaction_moves_balance(session, owner, budget, checking):
    moradia = _category(session, budget, "Moradia")
    RecurringBillService(session, owner.id).create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            name="Condomínio",
            amount_cents=60000,
            due_day=10,
        )
    )
    PendingTransactionEngine(session).ensure_month(budget.id, 2025, 3)
    session.commit()
    pending = session.scalar(select(Transaction).where(Transaction.budget_id == budget.id))

    TransactionService(session, owner.id).update(
        pending.id, TransactionUpdate(status="cleared")
    )
    assert _balance(session, checking) == -60000


def test_auto_clear_settles_due_auto_debits(session, owner, budget, checking):
    moradia = _category(session, budget, "Moradia")
    RecurringBillService(session, owner.id).create(
        RecurringBillIn(
            budget_id=budget.id,
            category_id=moradia.id,
            name="Luz",
            amount_cents=25000,
            due_day=5,
            is_auto_debit=True,
        )
    )
    IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(
            budget_id=budget.id,
            name="salário",
            amount_cents=500000,
            day_of_month=20,
            is_auto_confirm=True,
        )
    )
    PendingTransactionEngine(session).ensure_month(budget.id, 2025, 3)
    session.commit()

    assert auto_clear_transactions(session, today=date(2025, 3, 10)) == 1
    assert _balance(session, checking) == -25000
    statuses = {
        t.type: t.status
        for t in session.scalars(
            select(Transaction).where(Transaction.budget_id == budget.id)
        ).all()
    }
    assert statuses[TransactionType.expense] == TransactionStatus.cleared
    assert statuses[TransactionType.income] == TransactionStatus.pending

    assert auto_clear_transactions(session, today=date(2025, 3, 20)) == 1
    assert _balance(session, checking) == 475000


def test_scheduled_view_marks_paid_items(session, owner, budget, checking):
    moradia = _category(session, budget, "Moradia")
    CategoryService(session, owner.id).update(
        moradia.id, CategoryUpdate(due_day=5, planned_amount_cents=150000)
    )
    IncomeSourceService(session, owner.id).create(
        IncomeSourceIn(
            budget_id=budget.id, name="salário", amount_cents=500000, day_of_month=20
        )
    )
    txns = TransactionService(session, owner.id)
    txns.create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            category_id=moradia.id,
            type="expense",
            amount_cents=150000,
            date=date(2025, 3, 5),
        )
    )

    view = txns.scheduled(budget.id, 2025, 3)
    assert [item["name"] for item in view["items"]] == ["Moradia", "Salário"]
    assert view["items"][0]["isPaid"] is True
    assert view["items"][1]["isPaid"] is False
    assert view["totals"] == {
        "expenses": 150000,
        "income": 500000,
        "paidExpenses": 150000,
        "paidIncome": 0,
    }


def test_export_csv_is_safe_and_localized(session, owner, budget, checking):
    mercado = _category(session, budget, "Mercado")
    TransactionService(session, owner.id).create(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            category_id=mercado.id,
            type="expense",
            amount_cents=5000,
            description="=SUM(A1)",
            date=date(2025, 3, 5),
        )
    )

    content = TransactionService(session, owner.id).export_csv()
    lines = content.splitlines()
    assert lines[0] == ";".join(EXPORT_HEADERS)
    assert lines[1].startswith(
        "05/03/2025;Despesa;Pendente;50,00;\t=SUM(A1);Conta Corrente;Mercado;;;Nao;;"
    )


def test_references_must_belong_to_the_budget(session, owner, budget, checking):
    carla = UserService(session).ensure_user("carla@example.com")
    other = BudgetService(session, carla.id).create(BudgetIn(name="sítio"))
    pet = MemberService(session, carla.id).add_dependent(
        DependentIn(budget_id=other.id, name="rex", type="pet")
    )
    bill = RecurringBillService(session, carla.id).create(
        RecurringBillIn(
            budget_id=other.id,
            category_id=_category(session, other, "Contas de Casa").id,
            name="luz",
            amount_cents=20000,
            due_day=5,
        )
    )
    txns = TransactionService(session, owner.id)
    base = dict(
        budget_id=budget.id,
        account_id=checking.id,
        type="expense",
        amount_cents=1000,
        date=date(2025, 3, 5),
        status="cleared",
    )

    with pytest.raises(NotFoundError, match="Member"):
        txns.create(TransactionIn(member_id=pet.id, **base))
    with pytest.raises(NotFoundError, match="Recurring bill"):
        txns.create(TransactionIn(recurring_bill_id=bill.id, **base))

    txn = txns.create(TransactionIn(**base))
    with pytest.raises(NotFoundError, match="Member"):
        txns.update(txn.id, TransactionUpdate(member_id=pet.id))
    with pytest.raises(NotFoundError, match="Recurring bill"):
        txns.confirm_scheduled(
            ConfirmScheduledIn(
                budget_id=budget.id,
                type="expense",
                amount_cents=20000,
                account_id=checking.id,
                recurring_bill_id=bill.id,
                date=date(2025, 3, 5),
            )
        )
    session.refresh(txn)
    assert txn.member_id is None
    assert _balance(session, checking) == -1000


def test_quick_expense_rejects_non_finite_and_huge_amounts(session, owner, budget, checking):
    txns = TransactionService(session, owner.id)
    for raw in ("Infinity", "NaN", "1e30"):
        with pytest.raises(ValueError, match="Invalid amount"):
            txns.quick_expense(
                QuickExpenseIn(budget_id=budget.id, amount=raw, description="x")
            )
    with pytest.raises(ValueError, match="too large"):
        txns.quick_expense(
            QuickExpenseIn(budget_id=budget.id, amount="99999999999999", description="x")
        )
    assert _balance(session, checking) == 0


def test_partial_updates_reject_null_for_required_fields():
    with pytest.raises(ValueError, match="amount cannot be null"):
        TransactionUpdate(amount_cents=None)
    with pytest.raises(ValueError, match="type cannot be null"):
        AccountUpdate(type=None)
    with pytest.raises(ValueError, match="name cannot be null"):
        CategoryUpdate(name=None)

    assert TransactionUpdate(description=None).model_fields_set == {"description"}
    assert AccountUpdate(closing_day=None).closing_day is None


def test_bill_listing_totals_by_category(session, owner, budget):
    bills = RecurringBillService(session, owner.id)
    streaming = _category(session, budget, "Streaming")
    contas = _category(session, budget, "Contas de Casa")
    for category, name, amount in (
        (streaming, "netflix", 5590),
        (streaming, "spotify", 2190),
        (contas, "luz", 20000),
        (contas, "água", 9000),
    ):
        created = bills.create(
            RecurringBillIn(
                budget_id=budget.id,
                category_id=category.id,
                name=name,
                amount_cents=amount,
                due_day=10,
            )
        )
    bills.deactivate(created.id)

    listed, totals = bills.list_bills(budget.id)
    assert [b.name for b in listed] == ["netflix", "spotify", "luz"]
    assert totals == {
        streaming.id: {"count": 2, "total": 7780},
        contas.id: {"count": 1, "total": 20000},
    }


def test_income_listing_normalizes_to_monthly(session, owner, budget):
    sources = IncomeSourceService(session, owner.id)
    sources.create(
        IncomeSourceIn(budget_id=budget.id, name="salário", amount_cents=500000, day_of_month=5)
    )
    sources.create(
        IncomeSourceIn(
            budget_id=budget.id,
            name="freela",
            type="freelance",
            amount_cents=100000,
            frequency="biweekly",
            day_of_month=1,
        )
    )
    sources.create(
        IncomeSourceIn(
            budget_id=budget.id,
            name="feira",
            type="other",
            amount_cents=20000,
            frequency="weekly",
            day_of_month=6,
        )
    )
    bonus = sources.create(
        IncomeSourceIn(budget_id=budget.id, name="bônus", amount_cents=90000)
    )
    sources.deactivate(bonus.id)

    listed, total = sources.list_sources(budget.id)
    assert len(listed) == 3
    assert total == 500000 + 2 * 100000 + 4 * 20000


def test_schedule_day_validation():
    with pytest.raises(ValueError, match="due month"):
        RecurringBillIn(
            budget_id=1, category_id=1, name="ipva", amount_cents=100, frequency="yearly",
            due_day=10,
        )
    with pytest.raises(ValueError, match="weekday between 0 and 6"):
        RecurringBillIn(
            budget_id=1, category_id=1, name="diarista", amount_cents=100, frequency="weekly",
            due_day=7,
        )
    with pytest.raises(ValueError, match="between 1 and 31"):
        IncomeSourceIn(budget_id=1, name="salário", amount_cents=100, day_of_month=32)
    with pytest.raises(ValueError, match="Due month must be between 1 and 12"):
        validate_schedule_day("yearly", 10, 13)

    validate_schedule_day("weekly", 0)
    validate_schedule_day("yearly", 31, 12)
    bill = RecurringBillIn(
        budget_id=1, category_id=1, name="ipva", amount_cents=100, frequency="yearly",
        due_day=10, due_month=3,
    )
    assert bill.due_month == 3
