import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from models import Transaction, TransactionType
from schemas import CSVRow


EXPENSE_EXTRA_COLUMNS = ["payment_method", "location", "is_fixed"]
EXPORT_COLUMNS = ["id", "amount", "category", "description", "date", "created_at"]
DEFAULT_CATEGORY = "Other"


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
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def decimal_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def parse_amount(value: str) -> int:
    clean = (
        value.strip()
        .replace("₩", "")
        .replace("€", "")
        .replace("$", "")
        .replace(" ", "")
    )
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = decimal_to_cents(amount)
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _first(raw: dict[str, Optional[str]], *names: str) -> str:
    for name in names:
        value = raw.get(name)
        if value is not None and value.strip():
            return value.strip()
    return ""


def parse_csv(
    content: str, *, today: Optional[date] = None
) -> tuple[list[CSVRow], list[str]]:
    today = today or date.today()
    reader = csv.DictReader(StringIO(content.strip()))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        raw = {(key or "").strip().lower(): value for key, value in raw.items()}
        try:
            date_raw = _first(raw, "date")
            date_value = parse_date(date_raw) if date_raw else today
            amount_value = parse_amount(_first(raw, "amount", "value") or "0")
            category = _first(raw, "category", "source") or DEFAULT_CATEGORY
            description = _first(raw, "description", "memo") or None
            rows.append(
                CSVRow(
                    date=date_value,
                    amount_cents=amount_value,
                    category=category,
                    description=description,
                    payment_method=_first(raw, "payment_method", "paymentmethod") or None,
                    location=_first(raw, "location") or None,
                    is_fixed=parse_bool(_first(raw, "is_fixed", "isfixed")),
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(
    transactions: Sequence[Transaction], kind: TransactionType
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    header = list(EXPORT_COLUMNS)
    if kind == TransactionType.expense:
        header += EXPENSE_EXTRA_COLUMNS
    writer.writerow(header)
    for txn in transactions:
        row = [
            txn.id,
            f"{cents_to_amount(txn.amount_cents)}",
            sanitize_csv_value(txn.category or ""),
            sanitize_csv_value(txn.description or ""),
            txn.date.isoformat(),
            txn.created_at.isoformat() if txn.created_at else "",
        ]
        if kind == TransactionType.expense:
            row += [
                sanitize_csv_value(txn.payment_method or ""),
                sanitize_csv_value(txn.location or ""),
                "1" if txn.is_fixed else "0",
            ]
        writer.writerow(row)
    return output.getvalue()
