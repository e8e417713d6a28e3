from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def previous(self) -> "Period":
        """The period of equal length ending the day before this one starts."""
        prev_end = self.start - timedelta(days=1)
        return Period(prev_end - timedelta(days=self.days - 1), prev_end)


def current_month(today: date) -> Period:
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(first, next_month - date.resolution)


def resolve_period(
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not start and not end:
        return current_month(today)
    if not start or not end:
        raise ValueError("Both startDate and endDate are required")
    start_date = date.fromisoformat(start)
    end_date = date.fromisoformat(end)
    if start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period(start_date, end_date)
