"""Ledger stores: where transactions and recurring rules live.

Two interchangeable backends exist. :class:`SqlStore` wraps a SQLAlchemy
session over SQLite; :class:`JsonFileStore` keeps one flat JSON file per
collection (``income.json``, ``expenses.json``, ``recurring.json``). Both hand
out the ORM classes from :mod:`models`; the JSON store simply never attaches
them to a session.

Every mutating call runs inside ``atomic()``. Nested ``atomic()`` blocks join
the outermost one, so a caller can group a batch insert and a rule update into
a single commit.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import ContextManager, Iterable, Iterator, Optional, Protocol

from sqlalchemy import Date, DateTime, Enum as SAEnum, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import SessionLocal
from models import RecurringRule, Transaction, TransactionType, new_id
from recurrence import PersistenceError


logger = logging.getLogger(__name__)

GROUPINGS = ("month", "category", "weekday")


class RecordNotFound(ValueError):
    pass


@dataclass
class TransactionFilters:
    kind: Optional[TransactionType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None


class LedgerStore(Protocol):
    def atomic(self) -> ContextManager[None]: ...

    def list_transactions(self, filters: TransactionFilters) -> list[Transaction]: ...

    def get_transaction(self, transaction_id: str) -> Transaction: ...

    def add_transaction(self, txn: Transaction) -> Transaction: ...

    def save_transaction(self, txn: Transaction) -> Transaction: ...

    def delete_transaction(self, transaction_id: str) -> None: ...

    def insert_batch(self, records: Iterable[Transaction]) -> None: ...

    def totals(
        self, group_by: str, filters: TransactionFilters
    ) -> list[tuple[object, int]]: ...

    def sum_amount(self, filters: TransactionFilters) -> int: ...

    def load_rule(self, rule_id: str) -> RecurringRule: ...

    def list_rules(self, active_only: bool = False) -> list[RecurringRule]: ...

    def add_rule(self, rule: RecurringRule) -> RecurringRule: ...

    def save_rule(self, rule: RecurringRule) -> RecurringRule: ...


def weekday_number(value: date) -> int:
    """0 = Sunday .. 6 = Saturday, matching SQLite's ``strftime('%w')``."""
    return value.isoweekday() % 7


def order_totals(group_by: str, items: list[tuple[object, int]]) -> list[tuple[object, int]]:
    if group_by == "category":
        return sorted(items, key=lambda item: (-item[1], str(item[0])))
    return sorted(items, key=lambda item: item[0])


def _check_grouping(group_by: str) -> None:
    if group_by not in GROUPINGS:
        raise ValueError(f"group_by must be one of {', '.join(GROUPINGS)}")


class SqlStore:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._depth += 1
        try:
            if self._depth > 1:
                yield
                return
            try:
                yield
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise PersistenceError(str(exc)) from exc
            except Exception:
                self.session.rollback()
                raise
        finally:
            self._depth -= 1

    def _apply_filters(self, stmt, filters: TransactionFilters):
        if filters.kind:
            stmt = stmt.where(Transaction.kind == filters.kind)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        return stmt

    def list_transactions(self, filters: TransactionFilters) -> list[Transaction]:
        stmt = select(Transaction).order_by(
            Transaction.date.desc(), Transaction.created_at.desc()
        )
        stmt = self._apply_filters(stmt, filters)
        return list(self.session.scalars(stmt).all())

    def get_transaction(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise RecordNotFound("Transaction not found")
        return txn

    def add_transaction(self, txn: Transaction) -> Transaction:
        with self.atomic():
            self.session.add(txn)
            self.session.flush()
        return txn

    def save_transaction(self, txn: Transaction) -> Transaction:
        with self.atomic():
            self.session.add(txn)
            self.session.flush()
        return txn

    def delete_transaction(self, transaction_id: str) -> None:
        txn = self.get_transaction(transaction_id)
        with self.atomic():
            self.session.delete(txn)
            self.session.flush()

    def insert_batch(self, records: Iterable[Transaction]) -> None:
        with self.atomic():
            self.session.add_all(list(records))
            self.session.flush()

    def totals(
        self, group_by: str, filters: TransactionFilters
    ) -> list[tuple[object, int]]:
        _check_grouping(group_by)
        if group_by == "month":
            key = func.strftime("%Y-%m", Transaction.date)
        elif group_by == "weekday":
            key = func.strftime("%w", Transaction.date)
        else:
            key = Transaction.category
        stmt = select(
            key.label("key"), func.sum(Transaction.amount_cents).label("total")
        ).group_by(key)
        stmt = self._apply_filters(stmt, filters)
        items: list[tuple[object, int]] = []
        for row in self.session.execute(stmt):
            group = int(row.key) if group_by == "weekday" else row.key
            items.append((group, int(row.total or 0)))
        return order_totals(group_by, items)

    def sum_amount(self, filters: TransactionFilters) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        stmt = self._apply_filters(stmt, filters)
        return int(self.session.execute(stmt).scalar_one())

    def load_rule(self, rule_id: str) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id, populate_existing=True)
        if not rule:
            raise RecordNotFound("Rule not found")
        return rule

    def list_rules(self, active_only: bool = False) -> list[RecurringRule]:
        stmt = select(RecurringRule).order_by(RecurringRule.created_at.desc())
        if active_only:
            stmt = stmt.where(RecurringRule.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def add_rule(self, rule: RecurringRule) -> RecurringRule:
        with self.atomic():
            self.session.add(rule)
            self.session.flush()
        return rule

    def save_rule(self, rule: RecurringRule) -> RecurringRule:
        with self.atomic():
            self.session.add(rule)
            self.session.flush()
        return rule


TRANSACTION_FILES = {
    TransactionType.income: "income.json",
    TransactionType.expense: "expenses.json",
}
RULES_FILE = "recurring.json"
# Transaction files are written before the rules file so a watermark never
# points past records that did not reach disk.
WRITE_ORDER = (*TRANSACTION_FILES.values(), RULES_FILE)

_DEFAULTS = {
    Transaction: {"is_fixed": False},
    RecurringRule: {"interval": 1, "is_active": True},
}

_directory_locks: dict[Path, threading.RLock] = {}
_directory_locks_guard = threading.Lock()


def _directory_lock(path: Path) -> threading.RLock:
    with _directory_locks_guard:
        return _directory_locks.setdefault(path, threading.RLock())


def encode_row(obj) -> dict[str, object]:
    payload: dict[str, object] = {}
    for column in obj.__table__.columns:
        value = getattr(obj, column.key)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date):
            value = value.isoformat()
        payload[column.key] = value
    return payload


def decode_row(model, payload: dict[str, object]):
    values = dict(_DEFAULTS.get(model, {}))
    for column in model.__table__.columns:
        if column.key not in payload:
            continue
        value = payload[column.key]
        if value is not None:
            if isinstance(column.type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(column.type, Date):
                value = date.fromisoformat(value)
            elif isinstance(column.type, SAEnum):
                value = column.type.enum_class(value)
        values[column.key] = value
    return model(**values)


def _stamp(obj) -> None:
    now = datetime.utcnow()
    if not obj.id:
        obj.id = new_id()
    if obj.created_at is None:
        obj.created_at = now
    obj.updated_at = now


def _matches(txn: Transaction, filters: TransactionFilters) -> bool:
    if filters.kind and txn.kind != filters.kind:
        return False
    if filters.start_date and txn.date < filters.start_date:
        return False
    if filters.end_date and txn.date > filters.end_date:
        return False
    if filters.category and txn.category != filters.category:
        return False
    return True


class JsonFileStore:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir).resolve()
        self._lock = _directory_lock(self.data_dir)
        self._local = threading.local()

    @property
    def _pending(self) -> Optional[dict[str, list[dict[str, object]]]]:
        return getattr(self._local, "pending", None)

    @property
    def _dirty(self) -> set[str]:
        return self._local.dirty

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            if self._pending is not None:
                yield
                return
            self._local.pending = {}
            self._local.dirty = set()
            try:
                yield
                self._flush()
            finally:
                self._local.pending = None
                self._local.dirty = set()

    def _read(self, name: str) -> list[dict[str, object]]:
        path = self.data_dir / name
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc
        try:
            rows = json.loads(text or "[]")
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt JSON in {path}: {exc}") from exc
        if not isinstance(rows, list):
            raise PersistenceError(f"Expected a JSON array in {path}")
        return rows

    def _rows(self, name: str) -> list[dict[str, object]]:
        if self._pending is None:
            return self._read(name)
        if name not in self._pending:
            self._pending[name] = self._read(name)
        return self._pending[name]

    def _stage(self, name: str, rows: list[dict[str, object]]) -> str:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(rows, handle, indent=2, ensure_ascii=False)
        return tmp_name

    def _flush(self) -> None:
        staged: list[tuple[str, Path]] = []
        try:
            # Stage every file before replacing any, so a failed write
            # leaves all of them untouched.
            for name in WRITE_ORDER:
                if name in self._dirty:
                    tmp_name = self._stage(name, self._pending[name])
                    staged.append((tmp_name, self.data_dir / name))
            for tmp_name, path in staged:
                os.replace(tmp_name, path)
        except OSError as exc:
            for tmp_name, _path in staged:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
            raise PersistenceError(f"Cannot write ledger files: {exc}") from exc

    def _all_transactions(self, kind: Optional[TransactionType] = None) -> list[Transaction]:
        kinds = [kind] if kind else list(TRANSACTION_FILES)
        txns: list[Transaction] = []
        for each in kinds:
            txns.extend(
                decode_row(Transaction, row) for row in self._rows(TRANSACTION_FILES[each])
            )
        return txns

    def list_transactions(self, filters: TransactionFilters) -> list[Transaction]:
        txns = [
            txn for txn in self._all_transactions(filters.kind) if _matches(txn, filters)
        ]
        txns.sort(key=lambda txn: (txn.date, txn.created_at or datetime.min), reverse=True)
        return txns

    def get_transaction(self, transaction_id: str) -> Transaction:
        for txn in self._all_transactions():
            if txn.id == transaction_id:
                return txn
        raise RecordNotFound("Transaction not found")

    def _remove_transaction(self, transaction_id: str) -> bool:
        for name in TRANSACTION_FILES.values():
            rows = self._rows(name)
            kept = [row for row in rows if row.get("id") != transaction_id]
            if len(kept) != len(rows):
                rows[:] = kept
                self._dirty.add(name)
                return True
        return False

    def _append_transaction(self, txn: Transaction) -> None:
        name = TRANSACTION_FILES[TransactionType(txn.kind)]
        rows = self._rows(name)
        if txn.origin_rule_id is not None:
            occurrence = txn.occurrence_date.isoformat()
            for row in rows:
                if (
                    row.get("origin_rule_id") == txn.origin_rule_id
                    and row.get("occurrence_date") == occurrence
                ):
                    raise PersistenceError(
                        f"Occurrence {occurrence} of rule {txn.origin_rule_id} already stored"
                    )
        rows.append(encode_row(txn))
        self._dirty.add(name)

    def add_transaction(self, txn: Transaction) -> Transaction:
        with self.atomic():
            _stamp(txn)
            self._append_transaction(txn)
        return txn

    def save_transaction(self, txn: Transaction) -> Transaction:
        with self.atomic():
            if not self._remove_transaction(txn.id):
                raise RecordNotFound("Transaction not found")
            _stamp(txn)
            self._append_transaction(txn)
        return txn

    def delete_transaction(self, transaction_id: str) -> None:
        with self.atomic():
            if not self._remove_transaction(transaction_id):
                raise RecordNotFound("Transaction not found")

    def insert_batch(self, records: Iterable[Transaction]) -> None:
        with self.atomic():
            for txn in records:
                _stamp(txn)
                self._append_transaction(txn)

    def totals(
        self, group_by: str, filters: TransactionFilters
    ) -> list[tuple[object, int]]:
        _check_grouping(group_by)
        buckets: dict[object, int] = {}
        for txn in self.list_transactions(filters):
            if group_by == "month":
                key: object = txn.date.strftime("%Y-%m")
            elif group_by == "weekday":
                key = weekday_number(txn.date)
            else:
                key = txn.category
            buckets[key] = buckets.get(key, 0) + txn.amount_cents
        return order_totals(group_by, list(buckets.items()))

    def sum_amount(self, filters: TransactionFilters) -> int:
        return sum(txn.amount_cents for txn in self.list_transactions(filters))

    def load_rule(self, rule_id: str) -> RecurringRule:
        for row in self._rows(RULES_FILE):
            if row.get("id") == rule_id:
                return decode_row(RecurringRule, row)
        raise RecordNotFound("Rule not found")

    def list_rules(self, active_only: bool = False) -> list[RecurringRule]:
        rules = [decode_row(RecurringRule, row) for row in self._rows(RULES_FILE)]
        if active_only:
            rules = [rule for rule in rules if rule.is_active]
        rules.sort(key=lambda rule: rule.created_at or datetime.min, reverse=True)
        return rules

    def add_rule(self, rule: RecurringRule) -> RecurringRule:
        with self.atomic():
            _stamp(rule)
            self._rows(RULES_FILE).append(encode_row(rule))
            self._dirty.add(RULES_FILE)
        return rule

    def save_rule(self, rule: RecurringRule) -> RecurringRule:
        with self.atomic():
            rows = self._rows(RULES_FILE)
            for idx, row in enumerate(rows):
                if row.get("id") == rule.id:
                    _stamp(rule)
                    rows[idx] = encode_row(rule)
                    self._dirty.add(RULES_FILE)
                    return rule
            raise RecordNotFound("Rule not found")


@contextmanager
def store_scope(settings: Optional[Settings] = None) -> Iterator[LedgerStore]:
    settings = settings or get_settings()
    if settings.storage_backend == "json":
        yield JsonFileStore(settings.data_dir)
        return
    session = SessionLocal()
    try:
        yield SqlStore(session)
    finally:
        session.close()
