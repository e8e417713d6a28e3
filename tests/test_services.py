from datetime import date
from decimal import Decimal

import pytest

from models import Frequency, TransactionType
from periods import Period, resolve_period
from recurrence import InvalidRuleError, InvalidWindowError
from schemas import RecurringRuleIn, TransactionIn, TransactionUpdate
from services import (
    CSVService,
    RecurringRuleService,
    StatsService,
    SummaryService,
    TransactionService,
)
from stores import JsonFileStore, RecordNotFound, TransactionFilters


def _income(store, amount: str, category: str, on: date):
    return TransactionService(store, TransactionType.income).create(
        TransactionIn(amount=Decimal(amount), category=category, date=on)
    )


def _expense(store, amount: str, category: str, on: date):
    return TransactionService(store, TransactionType.expense).create(
        TransactionIn(
            amount=Decimal(amount),
            category=category,
            date=on,
            payment_method="card",
            is_fixed=True,
        )
    )


def test_create_stores_cents_and_drops_expense_fields_for_income(tmp_path):
    store = JsonFileStore(tmp_path)
    txn = TransactionService(store, TransactionType.income).create(
        TransactionIn(
            amount=Decimal("12.34"),
            category="Gift",
            date=date(2024, 5, 1),
            payment_method="cash",
            is_fixed=True,
        )
    )
    loaded = store.get_transaction(txn.id)
    assert loaded.amount_cents == 1234
    assert loaded.payment_method is None
    assert loaded.is_fixed is False


def test_get_with_wrong_kind_is_not_found(tmp_path):
    store = JsonFileStore(tmp_path)
    txn = _income(store, "10", "Gift", date(2024, 5, 1))
    with pytest.raises(RecordNotFound):
        TransactionService(store, TransactionType.expense).get(txn.id)


def test_partial_update_keeps_untouched_fields(tmp_path):
    store = JsonFileStore(tmp_path)
    txn = _expense(store, "8.50", "Food", date(2024, 5, 2))
    service = TransactionService(store, TransactionType.expense)

    service.update(txn.id, TransactionUpdate(amount=Decimal("9.00"), location="Cafe"))

    loaded = service.get(txn.id)
    assert loaded.amount_cents == 900
    assert loaded.location == "Cafe"
    assert loaded.category == "Food"
    assert loaded.payment_method == "card"
    assert loaded.date == date(2024, 5, 2)


def test_summary_balance_flags(tmp_path):
    store = JsonFileStore(tmp_path)
    _income(store, "100", "Salary", date(2024, 1, 1))
    _expense(store, "150.50", "Rent", date(2024, 1, 2))

    summary = SummaryService(store).balance()

    assert summary["income_total"] == Decimal("100.00")
    assert summary["expense_total"] == Decimal("150.50")
    assert summary["balance"] == Decimal("-50.50")
    assert summary["is_negative"] is True
    assert summary["status"] == "negative"


def test_summary_of_empty_ledger_is_zero(tmp_path):
    summary = SummaryService(JsonFileStore(tmp_path)).balance()
    assert summary["balance"] == Decimal("0.00")
    assert summary["status"] == "zero"
    assert summary["is_positive"] is False


def test_period_summary_compares_with_previous_period(tmp_path):
    store = JsonFileStore(tmp_path)
    _income(store, "100", "Salary", date(2024, 1, 5))
    _income(store, "300", "Salary", date(2024, 2, 5))

    stats = StatsService(store, TransactionType.income)
    summary = stats.period_summary(Period(date(2024, 2, 1), date(2024, 2, 29)))

    assert summary["total"] == Decimal("300.00")
    assert summary["average_per_day"] == Decimal("10.34")
    assert summary["previous_start_date"] == date(2024, 1, 3)
    assert summary["previous_end_date"] == date(2024, 1, 31)
    assert summary["previous_total"] == Decimal("100.00")
    assert summary["change_percent"] == 200.0


def test_period_summary_without_previous_total_has_no_change(tmp_path):
    store = JsonFileStore(tmp_path)
    _income(store, "50", "Salary", date(2024, 2, 5))
    summary = StatsService(store, TransactionType.income).period_summary(
        Period(date(2024, 2, 1), date(2024, 2, 10))
    )
    assert summary["change_percent"] is None


def test_resolve_period_defaults_to_current_month():
    period = resolve_period(None, None, today=date(2024, 2, 14))
    assert period == Period(date(2024, 2, 1), date(2024, 2, 29))
    with pytest.raises(ValueError):
        resolve_period("2024-02-01", None)
    with pytest.raises(ValueError):
        resolve_period("2024-03-01", "2024-02-01")


def test_monthly_and_category_stats(tmp_path):
    store = JsonFileStore(tmp_path)
    _expense(store, "10", "Food", date(2024, 1, 5))
    _expense(store, "30", "Rent", date(2024, 1, 6))
    _expense(store, "5", "Food", date(2024, 2, 1))

    stats = StatsService(store, TransactionType.expense)
    assert stats.monthly() == [
        {"month": "2024-01", "total": Decimal("40.00")},
        {"month": "2024-02", "total": Decimal("5.00")},
    ]
    assert stats.by_category(date(2024, 1, 1), date(2024, 1, 31)) == [
        {"category": "Rent", "total": Decimal("30.00")},
        {"category": "Food", "total": Decimal("10.00")},
    ]


def test_csv_import_and_export(tmp_path):
    store = JsonFileStore(tmp_path)
    service = CSVService(store, TransactionType.expense)
    content = (
        "Date,Amount,Category,Description,Payment_Method,Location,Is_Fixed\n"
        "2024-03-01,12.50,Food,Lunch,card,Cafe,0\n"
        "05.03.2024,800,Rent,=cmd,transfer,,yes\n"
    )

    rows, errors = service.preview(content)
    assert errors == []
    assert [row.amount_cents for row in rows] == [1250, 80000]
    assert rows[1].date == date(2024, 3, 5)
    assert rows[1].is_fixed is True

    assert service.commit(content) == 2
    exported = service.export().splitlines()
    assert exported[0] == (
        "id,amount,category,description,date,created_at,payment_method,location,is_fixed"
    )
    assert len(exported) == 3
    assert "\t=cmd" in exported[1]


def test_csv_import_uses_column_aliases_and_defaults(tmp_path):
    service = CSVService(JsonFileStore(tmp_path), TransactionType.income)
    rows, errors = service.preview(
        "value,source,memo\n1000,,side gig\n", today=date(2024, 6, 1)
    )
    assert errors == []
    assert rows[0].category == "Other"
    assert rows[0].date == date(2024, 6, 1)
    assert rows[0].description == "side gig"


def test_csv_commit_refuses_rows_with_errors(tmp_path):
    store = JsonFileStore(tmp_path)
    service = CSVService(store, TransactionType.income)
    with pytest.raises(ValueError):
        service.commit("date,amount,category\n2024-01-01,abc,Salary\n")
    assert service.export().count("\n") == 1


def _rule_in(**overrides) -> RecurringRuleIn:
    values = dict(
        kind=TransactionType.income,
        amount=Decimal("1000"),
        category="Salary",
        start_date=date(2024, 1, 1),
        frequency=Frequency.weekly,
        interval=2,
        occurrence_limit=3,
    )
    values.update(overrides)
    return RecurringRuleIn(**values)


def test_recurring_generate_without_persist_is_read_only(tmp_path):
    store = JsonFileStore(tmp_path)
    service = RecurringRuleService(store)
    rule = service.create(_rule_in())

    result = service.generate(rule.id, date(2024, 1, 1), date(2024, 12, 31))

    assert [o.date for o in result.occurrences] == [
        date(2024, 1, 1),
        date(2024, 1, 15),
        date(2024, 1, 29),
    ]
    assert result.materialized is None
    assert store.list_transactions(TransactionFilters()) == []


def test_recurring_generate_with_persist_materializes_once(tmp_path):
    store = JsonFileStore(tmp_path)
    service = RecurringRuleService(store)
    rule = service.create(_rule_in())

    first = service.generate(rule.id, None, date(2024, 12, 31), persist=True)
    second = service.generate(rule.id, None, date(2024, 12, 31), persist=True)

    assert first.materialized.persisted_count == 3
    assert second.materialized.persisted_count == 0
    assert len(store.list_transactions(TransactionFilters())) == 3
    assert service.get(rule.id).last_processed_date == date(2024, 1, 29)


def test_recurring_generate_defaults_to_today_horizon(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    rule = service.create(_rule_in(occurrence_limit=None))
    result = service.generate(rule.id, today=date(2024, 1, 20))
    assert [o.date for o in result.occurrences] == [date(2024, 1, 1), date(2024, 1, 15)]


def test_recurring_create_rejects_end_before_start(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    with pytest.raises(InvalidRuleError):
        service.create(_rule_in(end_date=date(2023, 12, 1)))
    assert service.list() == []


def test_recurring_generate_rejects_reversed_window(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    rule = service.create(_rule_in())
    with pytest.raises(InvalidWindowError):
        service.generate(rule.id, date(2024, 2, 1), date(2024, 1, 1))


def test_deactivated_rule_generates_nothing(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    rule = service.create(_rule_in())
    service.set_active(rule.id, False)
    result = service.generate(rule.id, None, date(2024, 12, 31))
    assert result.occurrences == []
    assert service.list(active_only=True) == []


def test_recurring_generate_before_start_is_empty(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    rule = service.create(_rule_in(start_date=date(2024, 6, 1)))

    preview = service.generate(rule.id, today=date(2024, 3, 1))
    persisted = service.generate(rule.id, persist=True, today=date(2024, 3, 1))

    assert preview.occurrences == []
    assert persisted.materialized.persisted_count == 0
    assert service.get(rule.id).last_processed_date is None


def test_recurring_generate_explicit_end_before_start_is_rejected(tmp_path):
    service = RecurringRuleService(JsonFileStore(tmp_path))
    rule = service.create(_rule_in(start_date=date(2024, 6, 1)))
    with pytest.raises(InvalidWindowError):
        service.generate(rule.id, None, date(2024, 3, 1))
