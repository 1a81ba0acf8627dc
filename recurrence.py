from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    BillFrequency,
    FinancialAccount,
    IncomeFrequency,
    IncomeSource,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from periods import add_months, days_in_month, month_period

DEFAULT_BILL_WEEKDAY = 1  # Monday
DEFAULT_INCOME_WEEKDAY = 5  # Friday
DEFAULT_BIWEEKLY_DAY = 15


def sunday_based_weekday(value: date) -> int:
    """Weekday with 0 = Sunday, the convention stored on bills and income sources."""
    return (value.weekday() + 1) % 7


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def weekday_dates(year: int, month: int, weekday: int) -> list[date]:
    return [
        date(year, month, day)
        for day in range(1, days_in_month(year, month) + 1)
        if sunday_based_weekday(date(year, month, day)) == weekday
    ]


def calculate_installment_dates(
    purchase_date: date, total_installments: int, closing_day: Optional[int]
) -> list[date]:
    if not closing_day:
        return [
            _clamped(*add_months(purchase_date.year, purchase_date.month, i), purchase_date.day)
            for i in range(total_installments)
        ]

    if purchase_date.day > closing_day:
        first_year, first_month = add_months(purchase_date.year, purchase_date.month, 1)
    else:
        first_year, first_month = purchase_date.year, purchase_date.month

    return [
        _clamped(*add_months(first_year, first_month, i), closing_day)
        for i in range(total_installments)
    ]


def calculate_credit_card_transaction_date(
    purchase_date: date, closing_day: Optional[int]
) -> date:
    return calculate_installment_dates(purchase_date, 1, closing_day)[0]


def get_billing_cycle_dates(closing_day: int, year: int, month: int) -> tuple[date, date]:
    end = _clamped(year, month, closing_day)
    prev_year, prev_month = add_months(year, month, -1)
    start_day = min(closing_day, days_in_month(prev_year, prev_month)) + 1
    if start_day > days_in_month(prev_year, prev_month):
        start = date(year, month, 1)
    else:
        start = date(prev_year, prev_month, start_day)
    return start, end


def get_transaction_billing_month(txn_date: date, closing_day: int) -> tuple[int, int]:
    effective = min(closing_day, days_in_month(txn_date.year, txn_date.month))
    if txn_date.day > effective:
        return add_months(txn_date.year, txn_date.month, 1)
    return txn_date.year, txn_date.month


@dataclass
class EnsureResult:
    created: int = 0
    expenses: int = 0
    income: int = 0
    already_existed: bool = True

    def as_dict(self) -> dict[str, object]:
        return {
            "created": self.created,
            "expenses": self.expenses,
            "income": self.income,
            "alreadyExisted": self.already_existed,
        }


class PendingTransactionEngine:
    """Lazily materializes the pending transactions a budget expects in a month.

    Recurring bills become pending expenses and income sources with a pay day
    become pending income. Existing rows for the same bill or source are
    detected so running the engine twice never duplicates anything.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_month(self, budget_id: int, year: int, month: int) -> EnsureResult:
        period = month_period(year, month)

        default_account = self.session.scalar(
            select(FinancialAccount)
            .where(FinancialAccount.budget_id == budget_id)
            .order_by(FinancialAccount.display_order, FinancialAccount.id)
            .limit(1)
        )
        if default_account is None:
            return EnsureResult()

        existing = self.session.execute(
            select(
                Transaction.recurring_bill_id,
                Transaction.income_source_id,
                Transaction.date,
            ).where(
                Transaction.budget_id == budget_id,
                Transaction.date.between(period.start, period.end),
            )
        ).all()
        bill_dates: dict[int, set[date]] = {}
        income_dates: dict[int, set[date]] = {}
        for row in existing:
            if row.recurring_bill_id:
                bill_dates.setdefault(row.recurring_bill_id, set()).add(row.date)
            if row.income_source_id:
                income_dates.setdefault(row.income_source_id, set()).add(row.date)

        bills = self.session.scalars(
            select(RecurringBill)
            .where(RecurringBill.budget_id == budget_id, RecurringBill.is_active.is_(True))
            .order_by(RecurringBill.display_order, RecurringBill.id)
        ).all()
        sources = self.session.scalars(
            select(IncomeSource)
            .where(
                IncomeSource.budget_id == budget_id,
                IncomeSource.is_active.is_(True),
                IncomeSource.day_of_month.is_not(None),
            )
            .order_by(IncomeSource.display_order, IncomeSource.id)
        ).all()

        pending: list[Transaction] = []
        expenses = 0
        for bill in bills:
            for occurrence, description in self._bill_occurrences(
                bill, year, month, bill_dates.get(bill.id, set())
            ):
                pending.append(
                    Transaction(
                        budget_id=budget_id,
                        account_id=bill.account_id or default_account.id,
                        category_id=bill.category_id,
                        recurring_bill_id=bill.id,
                        type=TransactionType.expense,
                        status=TransactionStatus.pending,
                        amount_cents=bill.amount_cents,
                        description=description,
                        date=occurrence,
                        source=TransactionSource.recurring,
                    )
                )
                expenses += 1

        income = 0
        for source in sources:
            for occurrence, description in self._income_occurrences(
                source, year, month, income_dates.get(source.id, set())
            ):
                pending.append(
                    Transaction(
                        budget_id=budget_id,
                        account_id=source.account_id or default_account.id,
                        income_source_id=source.id,
                        member_id=source.member_id,
                        type=TransactionType.income,
                        status=TransactionStatus.pending,
                        amount_cents=source.amount_cents,
                        description=description,
                        date=occurrence,
                        source=TransactionSource.scheduled,
                    )
                )
                income += 1

        if pending:
            self.session.add_all(pending)
            self.session.flush()

        return EnsureResult(
            created=len(pending),
            expenses=expenses,
            income=income,
            already_existed=not pending,
        )

    @staticmethod
    def _bill_occurrences(
        bill: RecurringBill, year: int, month: int, existing: set[date]
    ) -> list[tuple[date, str]]:
        if bill.amount_cents <= 0:
            return []

        if bill.frequency == BillFrequency.weekly:
            weekday = bill.due_day if bill.due_day is not None else DEFAULT_BILL_WEEKDAY
            return [
                (day, f"{bill.name} ({day.day}/{month})")
                for day in weekday_dates(year, month, weekday)
                if day not in existing
            ]

        if bill.frequency == BillFrequency.yearly and bill.due_month != month:
            return []
        if existing:
            return []
        return [(_clamped(year, month, bill.due_day or 1), bill.name)]

    @staticmethod
    def _income_occurrences(
        source: IncomeSource, year: int, month: int, existing: set[date]
    ) -> list[tuple[date, str]]:
        if source.amount_cents <= 0:
            return []

        frequency = source.frequency or IncomeFrequency.monthly
        if frequency == IncomeFrequency.weekly:
            weekday = (
                source.day_of_month
                if source.day_of_month is not None
                else DEFAULT_INCOME_WEEKDAY
            )
            return [
                (day, f"{source.name} ({day.day}/{month})")
                for day in weekday_dates(year, month, weekday)
                if day not in existing
            ]

        if frequency == IncomeFrequency.biweekly:
            base = source.day_of_month or DEFAULT_BIWEEKLY_DAY
            occurrences: list[tuple[date, str]] = []
            for day in (_clamped(year, month, base), _clamped(year, month, base + 14)):
                if day in existing or any(day == seen for seen, _ in occurrences):
                    continue
                occurrences.append((day, f"{source.name} (dia {day.day})"))
            return occurrences

        if existing:
            return []
        return [
            (_clamped(year, month, source.day_of_month), f"{source.name} (agendado)")
        ]
