import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import Transaction, TransactionStatus, TransactionType

EXPORT_HEADERS = [
    "Data",
    "Tipo",
    "Status",
    "Valor",
    "Descricao",
    "Conta",
    "Categoria",
    "Fonte de Renda",
    "Parcelamento",
    "Recorrente",
    "Notas",
    "Criado em",
]

TYPE_LABELS = {
    TransactionType.income: "Receita",
    TransactionType.expense: "Despesa",
    TransactionType.transfer: "Transferencia",
}

STATUS_LABELS = {
    TransactionStatus.pending: "Pendente",
    TransactionStatus.cleared: "Realizado",
    TransactionStatus.reconciled: "Conciliado",
}


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Parses "50,90", "1.234,56" or "R$ 12" into cents."""
    clean = value.strip().replace("R$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    if not re.fullmatch(r"[+-]?(\d+\.?\d*|\.\d+)", clean):
        raise ValueError("Invalid amount")
    try:
        cents = int((Decimal(clean) * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{abs(cents) // 100},{abs(cents) % 100:02d}"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output, delimiter=";")
    writer.writerow(EXPORT_HEADERS)
    for txn in transactions:
        installment = ""
        if txn.is_installment and txn.total_installments:
            installment = f"{txn.installment_number}/{txn.total_installments}"
        writer.writerow(
            [
                txn.date.strftime("%d/%m/%Y"),
                TYPE_LABELS[txn.type],
                STATUS_LABELS[txn.status],
                format_cents(txn.amount_cents),
                sanitize_csv_value(txn.description or ""),
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(
                    txn.income_source.name if txn.income_source else ""
                ),
                installment,
                "Sim" if txn.recurring_bill_id else "Nao",
                sanitize_csv_value(txn.notes or ""),
                txn.created_at.strftime("%d/%m/%Y %H:%M") if txn.created_at else "",
            ]
        )
    return output.getvalue()
