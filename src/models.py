import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping


@dataclass(frozen=True)
class CycleRecord:
    """A single menstrual cycle, newest-first order is the caller's job.

    cycle_length stays None until the next cycle's start date is known.
    """

    start_date: date
    cycle_length: int | None = None
    period_length: int | None = None
    symptoms: tuple[str, ...] = ()
    notes: str = ""
    cycle_id: int | None = None

    @property
    def is_complete(self) -> bool:
        return self.cycle_length is not None


@dataclass(frozen=True)
class FertileWindow:
    start: date
    end: date


@dataclass(frozen=True)
class PredictionResult:
    next_period_date: date
    ovulation_date: date
    fertile_window: FertileWindow
    avg_cycle_length: float
    cycles_used: int


@dataclass(frozen=True)
class CycleExtreme:
    length: int
    start_date: date


@dataclass(frozen=True)
class CycleStatistics:
    total_cycles: int
    avg_cycle_length: float
    avg_period_length: float | None
    cycle_variability: int
    regularity_score: int
    consistency_label: str
    longest_cycle: CycleExtreme
    shortest_cycle: CycleExtreme
    trend: str


@dataclass(frozen=True)
class Insight:
    kind: str
    title: str
    message: str


class TimeRange(Enum):
    THREE_MONTHS = 3
    SIX_MONTHS = 6
    ONE_YEAR = 12
    ALL = None

    @property
    def months(self) -> int | None:
        return self.value

    @classmethod
    def parse(cls, raw: str) -> "TimeRange":
        """Accept '3', '6', '12', 'all' and the long forms like '6months' or '1year'."""
        key = raw.strip().lower()
        aliases = {
            "3": cls.THREE_MONTHS, "3months": cls.THREE_MONTHS,
            "6": cls.SIX_MONTHS, "6months": cls.SIX_MONTHS,
            "12": cls.ONE_YEAR, "12months": cls.ONE_YEAR, "1year": cls.ONE_YEAR,
            "all": cls.ALL,
        }
        if key not in aliases:
            raise ValueError(f"Unknown time range: {raw!r}")
        return aliases[key]


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _parse_length(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        length = int(value)
    except (TypeError, ValueError):
        return None
    return length if length >= 0 else None


def _parse_symptoms(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(s) for s in value if s)
    return ()


def parse_cycle_record(row: Mapping[str, Any]) -> CycleRecord | None:
    """Build a CycleRecord from a loosely typed row, or None if start_date is unusable."""
    start = _parse_date(row.get("start_date"))
    if start is None:
        return None
    return CycleRecord(
        start_date=start,
        cycle_length=_parse_length(row.get("cycle_length")),
        period_length=_parse_length(row.get("period_length")),
        symptoms=_parse_symptoms(row.get("symptoms")),
        notes=row.get("notes") or "",
        cycle_id=row.get("id", row.get("cycle_id")),
    )
