from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from csv_utils import cents_to_amount, decimal_to_cents, export_transactions, parse_csv
from models import RecurringRule, Transaction, TransactionType, new_id
from periods import Period
from recurrence import (
    MaterializationResult,
    MaterializationService,
    Occurrence,
    generate,
    local_today,
    validate_rule,
)
from schemas import CSVRow, RecurringRuleIn, TransactionIn, TransactionUpdate
from stores import LedgerStore, RecordNotFound, TransactionFilters


logger = logging.getLogger(__name__)

EXPENSE_ONLY_FIELDS = ("payment_method", "location", "is_fixed")


class TransactionService:
    def __init__(self, store: LedgerStore, kind: TransactionType) -> None:
        self.store = store
        self.kind = kind

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        filters.kind = self.kind
        return self.store.list_transactions(filters)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if txn.kind != self.kind:
            raise RecordNotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            id=new_id(),
            kind=self.kind,
            amount_cents=decimal_to_cents(data.amount),
            category=data.category,
            description=data.description,
            date=data.date,
            is_fixed=False,
        )
        if self.kind == TransactionType.expense:
            txn.payment_method = data.payment_method
            txn.location = data.location
            txn.is_fixed = data.is_fixed
        self.store.add_transaction(txn)
        logger.info(f"transaction_created: id={txn.id} kind={self.kind.value}")
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if "amount" in changes:
            amount = changes.pop("amount")
            if amount is not None:
                txn.amount_cents = decimal_to_cents(amount)
        for field, value in changes.items():
            if field in EXPENSE_ONLY_FIELDS and self.kind != TransactionType.expense:
                continue
            if value is None and field in ("category", "date", "is_fixed"):
                continue
            setattr(txn, field, value)
        txn.updated_at = datetime.utcnow()
        return self.store.save_transaction(txn)

    def delete(self, transaction_id: str) -> None:
        self.get(transaction_id)
        self.store.delete_transaction(transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id} kind={self.kind.value}")


class SummaryService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def balance(self) -> dict[str, object]:
        income = self.store.sum_amount(TransactionFilters(kind=TransactionType.income))
        expense = self.store.sum_amount(TransactionFilters(kind=TransactionType.expense))
        balance = income - expense
        if balance < 0:
            status, message = "negative", "Balance is negative. Consider cutting expenses."
        elif balance > 0:
            status, message = "positive", "Nice! Your balance is positive."
        else:
            status, message = "zero", "Balance is zero."
        return {
            "income_total": cents_to_amount(income),
            "expense_total": cents_to_amount(expense),
            "balance": cents_to_amount(balance),
            "is_negative": balance < 0,
            "is_positive": balance > 0,
            "status": status,
            "message": message,
        }


class StatsService:
    def __init__(self, store: LedgerStore, kind: TransactionType) -> None:
        self.store = store
        self.kind = kind

    def _filters(
        self, start_date: Optional[date], end_date: Optional[date]
    ) -> TransactionFilters:
        return TransactionFilters(kind=self.kind, start_date=start_date, end_date=end_date)

    def monthly(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[dict[str, object]]:
        rows = self.store.totals("month", self._filters(start_date, end_date))
        return [{"month": key, "total": cents_to_amount(total)} for key, total in rows]

    def by_category(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[dict[str, object]]:
        rows = self.store.totals("category", self._filters(start_date, end_date))
        return [{"category": key, "total": cents_to_amount(total)} for key, total in rows]

    def by_weekday(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[dict[str, object]]:
        rows = self.store.totals("weekday", self._filters(start_date, end_date))
        return [{"weekday": key, "total": cents_to_amount(total)} for key, total in rows]

    def period_summary(self, period: Period) -> dict[str, object]:
        total = self.store.sum_amount(self._filters(period.start, period.end))
        previous = period.previous()
        prev_total = self.store.sum_amount(self._filters(previous.start, previous.end))
        change = None
        if prev_total:
            change = round((total - prev_total) / abs(prev_total) * 100, 2)
        return {
            "start_date": period.start,
            "end_date": period.end,
            "total": cents_to_amount(total),
            "average_per_day": cents_to_amount(round(total / period.days)),
            "previous_start_date": previous.start,
            "previous_end_date": previous.end,
            "previous_total": cents_to_amount(prev_total),
            "change_percent": change,
        }


class CSVService:
    def __init__(self, store: LedgerStore, kind: TransactionType) -> None:
        self.store = store
        self.kind = kind

    def preview(
        self, content: str, *, today: Optional[date] = None
    ) -> tuple[list[CSVRow], list[str]]:
        return parse_csv(content, today=today)

    def commit(self, content: str, *, today: Optional[date] = None) -> int:
        rows, errors = self.preview(content, today=today)
        if errors:
            raise ValueError("; ".join(errors))
        records = []
        for row in rows:
            txn = Transaction(
                id=new_id(),
                kind=self.kind,
                amount_cents=row.amount_cents,
                category=row.category,
                description=row.description,
                date=row.date,
                is_fixed=False,
            )
            if self.kind == TransactionType.expense:
                txn.payment_method = row.payment_method
                txn.location = row.location
                txn.is_fixed = row.is_fixed
            records.append(txn)
        self.store.insert_batch(records)
        logger.info(f"csv_import: kind={self.kind.value} rows={len(records)}")
        return len(records)

    def export(self) -> str:
        transactions = self.store.list_transactions(TransactionFilters(kind=self.kind))
        return export_transactions(transactions, self.kind)


@dataclass
class GenerationResult:
    rule: RecurringRule
    occurrences: list[Occurrence]
    persisted: bool
    materialized: Optional[MaterializationResult] = None


class RecurringRuleService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def get(self, rule_id: str) -> RecurringRule:
        return self.store.load_rule(rule_id)

    def list(self, active_only: bool = False) -> list[RecurringRule]:
        return self.store.list_rules(active_only=active_only)

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        rule = RecurringRule(
            id=new_id(),
            kind=data.kind,
            amount_cents=decimal_to_cents(data.amount),
            category=data.category,
            description=data.description,
            start_date=data.start_date,
            frequency=data.frequency,
            interval=data.interval,
            occurrence_limit=data.occurrence_limit,
            end_date=data.end_date,
            last_processed_date=None,
            is_active=True,
        )
        validate_rule(rule)
        self.store.add_rule(rule)
        logger.info(
            f"recurring_rule_created: id={rule.id} frequency={rule.frequency.value} interval={rule.interval}"
        )
        return rule

    def set_active(self, rule_id: str, is_active: bool) -> RecurringRule:
        rule = self.store.load_rule(rule_id)
        rule.is_active = is_active
        self.store.save_rule(rule)
        return rule

    def generate(
        self,
        rule_id: str,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
        *,
        persist: bool = False,
        today: Optional[date] = None,
    ) -> GenerationResult:
        rule = self.store.load_rule(rule_id)
        horizon = today or local_today()
        if (
            window_end is None
            and rule.end_date is None
            and rule.start_date is not None
            and horizon < rule.start_date
        ):
            # Not started yet; nothing is due up to the horizon.
            validate_rule(rule)
            result = GenerationResult(rule=rule, occurrences=[], persisted=persist)
            if persist:
                result.materialized = MaterializationResult(0, rule.last_processed_date)
            return result
        sequence = generate(rule, window_start, window_end, horizon=horizon)
        occurrences = list(sequence)
        result = GenerationResult(rule=rule, occurrences=occurrences, persisted=persist)
        if persist:
            result.materialized = MaterializationService(self.store).materialize(
                rule, occurrences
            )
        return result

    def catch_up_all(self, today: Optional[date] = None) -> int:
        return MaterializationService(self.store).catch_up_all(today)
