"""Occurrence generation and materialization for recurring rules.

A rule describes a cadence (``frequency`` x ``interval``) anchored at its
``start_date``. :func:`generate` turns it into the concrete dates that fall in a
window, and :class:`MaterializationService` stores those dates as transactions
exactly once, using ``last_processed_date`` as the watermark.

Month and year steps are always taken from ``start_date`` rather than from the
previous occurrence, and a day that does not exist in the target month is
clamped to that month's last day. A rule starting on Jan 31 therefore lands on
Feb 29 (or 28), Mar 31, Apr 30 and so on.
"""

import calendar
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency, RecurringRule, Transaction, TransactionType, new_id


logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]


class InvalidRuleError(ValueError):
    pass


class InvalidWindowError(ValueError):
    pass


class PersistenceError(RuntimeError):
    pass


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def as_date(value: DateLike) -> date:
    """Canonicalize a date, datetime or ISO ``YYYY-MM-DD`` string to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip())
    raise TypeError(f"Expected a date, got {type(value).__name__}")


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance(anchor: date, frequency: Frequency, units: int) -> date:
    """Return ``anchor`` moved forward by ``units`` steps of ``frequency``."""
    if frequency == Frequency.daily:
        return anchor + timedelta(days=units)
    if frequency == Frequency.weekly:
        return anchor + timedelta(weeks=units)
    if frequency == Frequency.monthly:
        return add_months(anchor, units)
    return add_months(anchor, 12 * units)


def _rule_date(value: Optional[DateLike], field: str) -> Optional[date]:
    if value is None:
        return None
    try:
        return as_date(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRuleError(f"{field} is not a valid date: {value!r}") from exc


def _window_date(value: DateLike, field: str) -> date:
    try:
        return as_date(value)
    except (TypeError, ValueError) as exc:
        raise InvalidWindowError(f"{field} is not a valid date: {value!r}") from exc


def validate_rule(rule: RecurringRule) -> None:
    try:
        Frequency(rule.frequency)
    except ValueError as exc:
        raise InvalidRuleError(f"Unsupported frequency: {rule.frequency!r}") from exc
    if (
        isinstance(rule.interval, bool)
        or not isinstance(rule.interval, int)
        or rule.interval < 1
    ):
        raise InvalidRuleError("interval must be an integer >= 1")
    if rule.amount_cents is None or rule.amount_cents <= 0:
        raise InvalidRuleError("amount must be positive")
    if rule.occurrence_limit is not None and (
        isinstance(rule.occurrence_limit, bool)
        or not isinstance(rule.occurrence_limit, int)
        or rule.occurrence_limit < 1
    ):
        raise InvalidRuleError("occurrence_limit must be >= 1 when set")
    start_date = _rule_date(rule.start_date, "start_date")
    if start_date is None:
        raise InvalidRuleError("start_date is required")
    end_date = _rule_date(rule.end_date, "end_date")
    if end_date is not None and end_date < start_date:
        raise InvalidRuleError("end_date must not precede start_date")


@dataclass(frozen=True)
class Occurrence:
    date: date
    sequence_index: int


class OccurrenceSequence:
    """Occurrences of one rule inside ``[window_start, window_end]``.

    Iterating walks the cadence from ``start_date`` every time, so the sequence
    can be consumed any number of times and always yields the same values.
    Cadence points before ``window_start`` still consume a ``sequence_index``,
    which keeps ``occurrence_limit`` honest for windows that start late.
    """

    def __init__(
        self,
        *,
        start_date: date,
        frequency: Frequency,
        interval: int,
        window_start: date,
        window_end: date,
        end_date: Optional[date] = None,
        occurrence_limit: Optional[int] = None,
        active: bool = True,
    ) -> None:
        self.start_date = start_date
        self.frequency = frequency
        self.interval = interval
        self.window_start = window_start
        self.window_end = window_end
        self.end_date = end_date
        self.occurrence_limit = occurrence_limit
        self.active = active

    def _in_bounds(self, cursor: date, index: int) -> bool:
        if cursor > self.window_end:
            return False
        if self.end_date is not None and cursor > self.end_date:
            return False
        if self.occurrence_limit is not None and index >= self.occurrence_limit:
            return False
        return True

    def __iter__(self) -> Iterator[Occurrence]:
        if not self.active:
            return
        index = 0
        units = 0
        cursor = self.start_date
        while self._in_bounds(cursor, index):
            index += 1
            if cursor >= self.window_start:
                yield Occurrence(date=cursor, sequence_index=index)
            units += self.interval
            try:
                cursor = advance(self.start_date, self.frequency, units)
            except (OverflowError, ValueError):
                # Past date.max; no later cadence point exists.
                return


def generate(
    rule: RecurringRule,
    window_start: Optional[DateLike] = None,
    window_end: Optional[DateLike] = None,
    *,
    horizon: Optional[DateLike] = None,
) -> OccurrenceSequence:
    validate_rule(rule)
    start_date = _rule_date(rule.start_date, "start_date")
    end_date = _rule_date(rule.end_date, "end_date")

    if window_start is None:
        lower = start_date
    else:
        lower = _window_date(window_start, "from")

    if window_end is not None:
        upper = _window_date(window_end, "to")
    elif end_date is not None:
        upper = end_date
    elif horizon is not None:
        upper = _window_date(horizon, "horizon")
    else:
        raise InvalidWindowError(
            "Window has no end: pass 'to', set an end date on the rule or supply a horizon"
        )

    if lower > upper:
        raise InvalidWindowError(f"Window start {lower} is after window end {upper}")

    if not rule.is_active:
        logger.debug(f"generate: rule_id={rule.id} inactive, nothing to emit")

    return OccurrenceSequence(
        start_date=start_date,
        frequency=Frequency(rule.frequency),
        interval=rule.interval,
        window_start=lower,
        window_end=upper,
        end_date=end_date,
        occurrence_limit=rule.occurrence_limit,
        active=bool(rule.is_active),
    )


@dataclass(frozen=True)
class MaterializationResult:
    persisted_count: int
    new_watermark: Optional[date]


class RuleLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_rule(self, rule_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(rule_id, threading.Lock())


rule_locks = RuleLocks()


def build_transaction(rule: RecurringRule, occurrence: Occurrence) -> Transaction:
    now = datetime.utcnow()
    return Transaction(
        id=new_id(),
        kind=rule.kind,
        amount_cents=rule.amount_cents,
        category=rule.category,
        description=rule.description,
        date=occurrence.date,
        is_fixed=rule.kind == TransactionType.expense,
        origin_rule_id=rule.id,
        occurrence_date=occurrence.date,
        occurrence_index=occurrence.sequence_index,
        created_at=now,
        updated_at=now,
    )


class MaterializationService:
    """Persists generated occurrences as transactions, at most once each.

    ``store`` is any ledger store from :mod:`stores`; it must provide
    ``load_rule``, ``save_rule``, ``insert_batch`` and an ``atomic()`` context
    manager that commits or discards everything done inside it.
    """

    def __init__(self, store, locks: RuleLocks = rule_locks) -> None:
        self.store = store
        self.locks = locks

    def materialize(
        self, rule: RecurringRule, occurrences: Iterable[Occurrence]
    ) -> MaterializationResult:
        with self.locks.for_rule(rule.id):
            stored = self.store.load_rule(rule.id)
            watermark = stored.last_processed_date
            pending: dict[date, Occurrence] = {}
            for occurrence in occurrences:
                if watermark is not None and occurrence.date <= watermark:
                    continue
                pending.setdefault(occurrence.date, occurrence)

            if not pending:
                logger.debug(
                    f"materialize: rule_id={rule.id} nothing new after watermark={watermark}"
                )
                return MaterializationResult(0, watermark)

            ordered = [pending[key] for key in sorted(pending)]
            records = [build_transaction(stored, occurrence) for occurrence in ordered]
            new_watermark = ordered[-1].date
            try:
                with self.store.atomic():
                    self.store.insert_batch(records)
                    stored.last_processed_date = new_watermark
                    self.store.save_rule(stored)
            except PersistenceError as exc:
                stored.last_processed_date = watermark
                logger.error(
                    f"materialize: rule_id={rule.id} batch of {len(records)} failed: {exc}"
                )
                raise

            rule.last_processed_date = new_watermark
            logger.info(
                f"materialize: rule_id={rule.id} persisted={len(records)} watermark={new_watermark}"
            )
            return MaterializationResult(len(records), new_watermark)

    def catch_up(
        self, rule: RecurringRule, today: Optional[date] = None
    ) -> MaterializationResult:
        today = today or local_today()
        watermark = rule.last_processed_date
        if watermark is not None and watermark >= today:
            return MaterializationResult(0, watermark)
        start_date = _rule_date(rule.start_date, "start_date")
        if start_date is not None and today < start_date:
            return MaterializationResult(0, watermark)
        window_start = watermark + timedelta(days=1) if watermark else None
        occurrences = generate(rule, window_start, today)
        return self.materialize(rule, occurrences)

    def catch_up_all(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        count = 0
        for rule in self.store.list_rules(active_only=True):
            try:
                result = self.catch_up(rule, today)
            except (InvalidRuleError, InvalidWindowError) as exc:
                logger.warning(f"catch_up: rule_id={rule.id} skipped: {exc}")
                continue
            count += result.persisted_count
        return count
