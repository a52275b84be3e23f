from dataclasses import dataclass
from datetime import date
from typing import Optional

MIN_MONTH = 1
MAX_MONTH = 12


@dataclass(frozen=True)
class PeriodKey:
    """A budget window: one calendar month, or a whole year when ``month`` is None."""

    year: int
    month: Optional[int] = None

    @classmethod
    def for_date(cls, day: date) -> "PeriodKey":
        return cls(day.year, day.month)

    @property
    def is_yearly(self) -> bool:
        return self.month is None

    @property
    def start(self) -> date:
        return date(self.year, self.month or 1, 1)

    @property
    def end(self) -> date:
        if self.month is None or self.month == 12:
            return date(self.year + 1, 1, 1) - date.resolution
        return date(self.year, self.month + 1, 1) - date.resolution

    def __str__(self) -> str:
        if self.month is None:
            return f"{self.year:04d}"
        return f"{self.year:04d}-{self.month:02d}"


def is_valid_month(month: Optional[int]) -> bool:
    return month is None or MIN_MONTH <= month <= MAX_MONTH
