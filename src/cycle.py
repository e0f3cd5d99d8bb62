"""Cycle forecasting and history statistics.

Every function here is pure: histories come in as lists of CycleRecord
ordered newest first, results go out as frozen dataclasses or None when
there isn't enough data to say anything.
"""

import dataclasses
from collections import Counter
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Sequence

from dateutil.relativedelta import relativedelta

from src.models import (
    CycleExtreme,
    CycleRecord,
    CycleStatistics,
    FertileWindow,
    Insight,
    PredictionResult,
    TimeRange,
    parse_cycle_record,
)

MIN_FORECAST_CYCLES = 3
DEFAULT_LUTEAL_PHASE_DAYS = 14
FERTILE_DAYS_BEFORE_OVULATION = 5
REGULARITY_PENALTY_PER_DAY = 5
TREND_RECENT_CYCLES = 3
TREND_THRESHOLD_DAYS = 2

NOT_ENOUGH_DATA = "Not enough data"


def _round_half_up(value: float, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP)


def _mean(values: Sequence[int]) -> float:
    return sum(values) / len(values)


def _valid_records(history: Sequence[CycleRecord | Mapping]) -> list[CycleRecord]:
    """Drop anything without a usable start_date; mappings are parsed first."""
    assert isinstance(history, (list, tuple)), "history must be a list of cycle records"
    records = []
    for item in history:
        if isinstance(item, Mapping):
            item = parse_cycle_record(item)
        if not isinstance(item, CycleRecord) or not isinstance(item.start_date, date):
            continue
        if isinstance(item.start_date, datetime):
            item = dataclasses.replace(item, start_date=item.start_date.date())
        records.append(item)
    return records


def _completed(records: Iterable[CycleRecord]) -> list[CycleRecord]:
    return [r for r in records if r.cycle_length is not None]


# ── Forecast ────────────────────────────────────────────────────────

def compute_forecast(
    history: Sequence[CycleRecord],
    luteal_phase_days: int = DEFAULT_LUTEAL_PHASE_DAYS,
    min_cycles: int = MIN_FORECAST_CYCLES,
) -> PredictionResult | None:
    """Predict next period, ovulation and fertile window from past cycles.

    The most recent record anchors the forecast even while it is still in
    progress; only completed cycles feed the average. Returns None with
    fewer than ``min_cycles`` completed cycles.

    The fertile window ends on the ovulation day itself.
    """
    records = _valid_records(history)
    completed = _completed(records)
    if len(completed) < min_cycles:
        return None

    avg_length = _mean([r.cycle_length for r in completed])
    anchor = records[0].start_date

    next_period = anchor + timedelta(days=int(_round_half_up(avg_length)))
    ovulation = next_period - timedelta(days=luteal_phase_days)
    fertile_start = ovulation - timedelta(days=FERTILE_DAYS_BEFORE_OVULATION)

    return PredictionResult(
        next_period_date=next_period,
        ovulation_date=ovulation,
        fertile_window=FertileWindow(start=fertile_start, end=ovulation),
        avg_cycle_length=float(_round_half_up(avg_length, 1)),
        cycles_used=len(completed),
    )


# ── Statistics ──────────────────────────────────────────────────────

def filter_by_time_range(
    history: Sequence[CycleRecord],
    time_range: TimeRange = TimeRange.ALL,
    today: date | None = None,
) -> list[CycleRecord]:
    """Keep valid records that started within the last N calendar months."""
    records = _valid_records(history)
    if time_range.months is None:
        return records
    today = today or date.today()
    if isinstance(today, datetime):
        today = today.date()
    cutoff = today - relativedelta(months=time_range.months)
    return [r for r in records if r.start_date >= cutoff]


def get_consistency_label(variability: int) -> str:
    if variability <= 7:
        return "Regular"
    elif variability <= 14:
        return "Somewhat Irregular"
    return "Irregular"


def get_regularity_score(variability: int) -> int:
    return max(0, min(100, 100 - variability * REGULARITY_PENALTY_PER_DAY))


def get_cycle_trend(history: Sequence[CycleRecord]) -> str:
    """Compare the last three cycles against the overall average.

    A difference of exactly +2 days is neither under the stable threshold
    nor strictly above it, so it reads as "Getting shorter".
    """
    lengths = [r.cycle_length for r in _completed(_valid_records(history))]
    if len(lengths) < TREND_RECENT_CYCLES:
        return NOT_ENOUGH_DATA

    difference = _mean(lengths[:TREND_RECENT_CYCLES]) - _mean(lengths)
    if abs(difference) < TREND_THRESHOLD_DAYS:
        return "Stable"
    if difference > TREND_THRESHOLD_DAYS:
        return "Getting longer"
    return "Getting shorter"


def compute_statistics(
    history: Sequence[CycleRecord],
    time_range: TimeRange = TimeRange.ALL,
    today: date | None = None,
) -> CycleStatistics | None:
    records = filter_by_time_range(history, time_range, today)
    completed = _completed(records)
    if not completed:
        return None

    lengths = [r.cycle_length for r in completed]
    period_lengths = [r.period_length for r in records if r.period_length is not None]
    variability = max(lengths) - min(lengths)

    # first occurrence wins on ties
    longest = max(completed, key=lambda r: r.cycle_length)
    shortest = min(completed, key=lambda r: r.cycle_length)

    return CycleStatistics(
        total_cycles=len(records),
        avg_cycle_length=float(_round_half_up(_mean(lengths), 1)),
        avg_period_length=float(_round_half_up(_mean(period_lengths), 1)) if period_lengths else None,
        cycle_variability=variability,
        regularity_score=get_regularity_score(variability),
        consistency_label=get_consistency_label(variability),
        longest_cycle=CycleExtreme(longest.cycle_length, longest.start_date),
        shortest_cycle=CycleExtreme(shortest.cycle_length, shortest.start_date),
        trend=get_cycle_trend(records),
    )


# ── Insights ────────────────────────────────────────────────────────

def cycle_insight(history: Sequence[CycleRecord]) -> Insight | None:
    lengths = [r.cycle_length for r in _completed(_valid_records(history))]
    if len(lengths) < MIN_FORECAST_CYCLES:
        return None

    variability = max(lengths) - min(lengths)
    if variability <= 3:
        return Insight(
            "regular",
            "Regular Cycle",
            "Your cycle is very regular. Great for prediction accuracy!",
        )
    if variability <= 7:
        return Insight(
            "slightly-irregular",
            "Slightly Irregular",
            f"Your cycle varies by {variability} days. Consider tracking additional symptoms.",
        )
    return Insight(
        "irregular",
        "Irregular Cycle",
        "Your cycle varies significantly. Consult with a healthcare provider if concerned.",
    )


def top_symptoms(logs: Iterable[Mapping], limit: int = 3) -> list[str]:
    """Most frequently logged symptoms; equal counts keep first-seen order."""
    counts = Counter()
    for log in logs:
        counts.update(log.get("symptoms") or [])
    return [symptom for symptom, _ in counts.most_common(limit)]


def fertility_status(prediction: PredictionResult | None, today: date | None = None) -> str:
    if prediction is None:
        return "unknown"
    today = today or date.today()
    window = prediction.fertile_window
    return "high" if window.start <= today <= window.end else "low"


FERTILITY_SCORES = {"high": 85, "low": 15, "unknown": 0}


def fertility_score(prediction: PredictionResult | None, today: date | None = None) -> int:
    return FERTILITY_SCORES[fertility_status(prediction, today)]


def days_until(target: date, today: date | None = None) -> int:
    today = today or date.today()
    return (target - today).days


def get_cycle_day(cycle_start: date, today: date) -> int:
    """Return the 1-based day of the cycle that started on cycle_start."""
    return max(1, (today - cycle_start).days + 1)
