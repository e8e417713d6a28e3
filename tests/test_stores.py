import json
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Frequency, RecurringRule, Transaction, TransactionType
from recurrence import PersistenceError
from stores import JsonFileStore, RecordNotFound, SqlStore, TransactionFilters


def make_sql_store() -> SqlStore:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SqlStore(SessionLocal())


def _txn(kind: TransactionType, amount_cents: int, category: str, on: date) -> Transaction:
    return Transaction(
        kind=kind,
        amount_cents=amount_cents,
        category=category,
        description=None,
        date=on,
        is_fixed=False,
    )


def _seed(store) -> None:
    # 2024-01-07 is a Sunday, 2024-01-08 a Monday.
    store.add_transaction(_txn(TransactionType.income, 300_000, "Salary", date(2024, 1, 8)))
    store.add_transaction(_txn(TransactionType.income, 20_000, "Bonus", date(2024, 1, 7)))
    store.add_transaction(_txn(TransactionType.income, 300_000, "Salary", date(2024, 2, 8)))
    store.add_transaction(_txn(TransactionType.expense, 4_500, "Food", date(2024, 1, 7)))


@pytest.fixture(params=["sql", "json"])
def store(request, tmp_path):
    if request.param == "sql":
        return make_sql_store()
    return JsonFileStore(tmp_path)


def test_totals_by_month(store):
    _seed(store)
    filters = TransactionFilters(kind=TransactionType.income)
    assert store.totals("month", filters) == [("2024-01", 320_000), ("2024-02", 300_000)]


def test_totals_by_category_descending(store):
    _seed(store)
    filters = TransactionFilters(kind=TransactionType.income)
    assert store.totals("category", filters) == [("Salary", 600_000), ("Bonus", 20_000)]


def test_totals_by_weekday_sunday_is_zero(store):
    _seed(store)
    filters = TransactionFilters(kind=TransactionType.income)
    assert store.totals("weekday", filters) == [(0, 20_000), (1, 300_000), (4, 300_000)]


def test_totals_respect_date_range(store):
    _seed(store)
    filters = TransactionFilters(
        kind=TransactionType.income,
        start_date=date(2024, 1, 8),
        end_date=date(2024, 1, 31),
    )
    assert store.totals("month", filters) == [("2024-01", 300_000)]
    assert store.sum_amount(filters) == 300_000


def test_unknown_grouping_is_rejected(store):
    with pytest.raises(ValueError):
        store.totals("year", TransactionFilters())


def test_list_filters_and_orders_newest_first(store):
    _seed(store)
    items = store.list_transactions(
        TransactionFilters(kind=TransactionType.income, category="Salary")
    )
    assert [txn.date for txn in items] == [date(2024, 2, 8), date(2024, 1, 8)]


def test_update_and_delete_round_trip(store):
    txn = store.add_transaction(
        _txn(TransactionType.expense, 1_200, "Coffee", date(2024, 3, 1))
    )
    loaded = store.get_transaction(txn.id)
    loaded.amount_cents = 1_500
    loaded.location = "Station"
    store.save_transaction(loaded)

    again = store.get_transaction(txn.id)
    assert again.amount_cents == 1_500
    assert again.location == "Station"

    store.delete_transaction(txn.id)
    with pytest.raises(RecordNotFound):
        store.get_transaction(txn.id)


def test_missing_rule_raises_not_found(store):
    with pytest.raises(RecordNotFound):
        store.load_rule("nope")


def test_rules_round_trip_and_active_filter(store):
    store.add_rule(
        RecurringRule(
            id="r1",
            kind=TransactionType.income,
            amount_cents=1_000,
            category="Allowance",
            start_date=date(2024, 1, 1),
            frequency=Frequency.weekly,
            interval=1,
            is_active=True,
        )
    )
    store.add_rule(
        RecurringRule(
            id="r2",
            kind=TransactionType.expense,
            amount_cents=2_000,
            category="Gym",
            start_date=date(2024, 1, 1),
            frequency=Frequency.monthly,
            interval=1,
            end_date=date(2024, 12, 31),
            is_active=False,
        )
    )
    rule = store.load_rule("r2")
    assert rule.frequency == Frequency.monthly
    assert rule.end_date == date(2024, 12, 31)
    assert rule.kind == TransactionType.expense
    assert [r.id for r in store.list_rules(active_only=True)] == ["r1"]
    assert {r.id for r in store.list_rules()} == {"r1", "r2"}


def test_json_store_writes_one_file_per_collection(tmp_path):
    store = JsonFileStore(tmp_path)
    _seed(store)
    income = json.loads((tmp_path / "income.json").read_text(encoding="utf-8"))
    expenses = json.loads((tmp_path / "expenses.json").read_text(encoding="utf-8"))
    assert len(income) == 3
    assert len(expenses) == 1
    assert expenses[0]["date"] == "2024-01-07"
    assert expenses[0]["kind"] == "expense"


def test_json_store_rejects_corrupt_file(tmp_path):
    (tmp_path / "income.json").write_text("{not json", encoding="utf-8")
    store = JsonFileStore(tmp_path)
    with pytest.raises(PersistenceError):
        store.list_transactions(TransactionFilters(kind=TransactionType.income))


def test_json_store_rejects_duplicate_occurrence(tmp_path):
    store = JsonFileStore(tmp_path)
    first = _txn(TransactionType.income, 1_000, "Allowance", date(2024, 1, 1))
    first.origin_rule_id = "r1"
    first.occurrence_date = date(2024, 1, 1)
    store.add_transaction(first)

    dup = _txn(TransactionType.income, 1_000, "Allowance", date(2024, 1, 1))
    dup.origin_rule_id = "r1"
    dup.occurrence_date = date(2024, 1, 1)
    with pytest.raises(PersistenceError):
        store.insert_batch([dup])
    assert len(store.list_transactions(TransactionFilters())) == 1
