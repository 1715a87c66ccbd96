"""
Repayment Normalization

Repayments arrive in several shapes: an explicit date, a legacy week label,
a date plus week index, or a frequency rule. They are all reduced here to
`NormalizedRepayment(week_index, amount)` before aggregation, so the rest of
the engine only ever sees one shape.
"""

import logging
import math
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta

from cashflow_planner.calculations.weeks import WEEK_DAYS, WeekSlot, parse_header_date

logger = logging.getLogger(__name__)

# Months between occurrences of a frequency rule
FREQUENCY_MONTHS = {"monthly": 1, "quarterly": 3}
ONE_OFF = "one-off"


@dataclass
class DateRepayment:
    """Repayment on a calendar date."""

    explicit_date: Union[date, str, None]
    amount: float


@dataclass
class WeekLabelRepayment:
    """Repayment against a week label as shown in the spreadsheet header."""

    week: str
    amount: float


@dataclass
class UnifiedRepayment:
    """Repayment carrying both a week index and the date it was picked from."""

    explicit_date: Union[date, str, None]
    week_index: Optional[int]
    amount: float


@dataclass
class FrequencyRepayment:
    """Recurring repayment: monthly, quarterly or one-off."""

    frequency: str
    amount: float
    start_week_index: int = 0


Repayment = Union[DateRepayment, WeekLabelRepayment, UnifiedRepayment, FrequencyRepayment]


@dataclass
class NormalizedRepayment:
    """Canonical repayment shape used by aggregation and valuation."""

    week_index: int
    amount: float


@dataclass
class RepaymentNormalization:
    """Normalized repayments plus the reasons any entries were dropped."""

    repayments: List[NormalizedRepayment] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def repayment_from_dict(data: Dict[str, Any]) -> Repayment:
    """
    Build a repayment from its tagged dictionary form.

    Raises:
        ValueError: If the `type` tag is unknown
    """
    kind = data.get("type")
    amount = data.get("amount", 0.0)
    if kind == "date":
        return DateRepayment(explicit_date=data.get("explicit_date"), amount=amount)
    if kind == "week":
        return WeekLabelRepayment(week=data.get("week") or "", amount=amount)
    if kind == "unified":
        return UnifiedRepayment(
            explicit_date=data.get("explicit_date"),
            week_index=data.get("week_index"),
            amount=amount,
        )
    if kind == "frequency":
        return FrequencyRepayment(
            frequency=data.get("frequency") or "",
            amount=amount,
            start_week_index=data.get("start_week_index") or 0,
        )
    raise ValueError(f"Unknown repayment type: {kind!r}")


def _coerce_amount(amount: Any) -> Optional[float]:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _coerce_date(value: Any, slots: Sequence[WeekSlot]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    parsed = parse_header_date(value, slots[0].date.year, allow_serial=False)
    return parsed.start if parsed else None


def week_index_for_date(slots: Sequence[WeekSlot], when: date) -> Optional[int]:
    """
    Index of the week slot containing a date.

    A slot covers its own date up to (not including) the next slot's date; the
    last slot covers 7 days. Dates outside the table return None.
    """
    if not slots or when < slots[0].date:
        return None
    if when >= slots[-1].date + timedelta(days=WEEK_DAYS):
        return None
    dates = [slot.date for slot in slots]
    return bisect_right(dates, when) - 1


def _week_index_for_label(slots: Sequence[WeekSlot], label: str) -> Optional[int]:
    wanted = label.strip().lower()
    if not wanted:
        return None
    for slot in slots:
        if slot.label.strip().lower() == wanted:
            return slot.index
    when = _coerce_date(label, slots)
    return week_index_for_date(slots, when) if when else None


def _frequency_indices(
    slots: Sequence[WeekSlot], frequency: str, start_week_index: int
) -> List[int]:
    """Week indices hit by a frequency rule, starting at `start_week_index`."""
    if frequency == ONE_OFF:
        return [start_week_index]

    step = FREQUENCY_MONTHS[frequency]
    dates = [slot.date for slot in slots]
    anchor = slots[start_week_index].date
    indices: List[int] = []
    occurrence = 0
    while True:
        target = anchor + relativedelta(months=step * occurrence)
        index = bisect_left(dates, target)
        if index >= len(slots):
            break
        if not indices or index > indices[-1]:
            indices.append(index)
        occurrence += 1
    return indices


def _normalize_one(
    repayment: Repayment, slots: Sequence[WeekSlot], amount: float
) -> Union[List[NormalizedRepayment], str]:
    """Normalized entries for one repayment, or the reason it was dropped."""
    last = len(slots) - 1

    if isinstance(repayment, DateRepayment):
        when = _coerce_date(repayment.explicit_date, slots)
        if when is None:
            return f"date {repayment.explicit_date!r} could not be read"
        index = week_index_for_date(slots, when)
        if index is None:
            return f"date {when.isoformat()} is outside the week range"
        return [NormalizedRepayment(index, amount)]

    if isinstance(repayment, WeekLabelRepayment):
        index = _week_index_for_label(slots, repayment.week)
        if index is None:
            return f"week label {repayment.week!r} does not match any column"
        return [NormalizedRepayment(index, amount)]

    if isinstance(repayment, UnifiedRepayment):
        index = repayment.week_index
        if index is not None and 0 <= index <= last:
            return [NormalizedRepayment(index, amount)]
        when = _coerce_date(repayment.explicit_date, slots)
        index = week_index_for_date(slots, when) if when else None
        if index is None:
            return (
                f"neither week index {repayment.week_index!r} nor date "
                f"{repayment.explicit_date!r} falls inside the week range"
            )
        return [NormalizedRepayment(index, amount)]

    if isinstance(repayment, FrequencyRepayment):
        frequency = repayment.frequency.strip().lower()
        if frequency != ONE_OFF and frequency not in FREQUENCY_MONTHS:
            return f"frequency {repayment.frequency!r} is not supported"
        start = repayment.start_week_index
        if not 0 <= start <= last:
            return f"start week {start} is outside the week range"
        return [
            NormalizedRepayment(index, amount)
            for index in _frequency_indices(slots, frequency, start)
        ]

    return f"unsupported repayment shape {type(repayment).__name__}"


def normalize_repayments(
    repayments: Sequence[Repayment], slots: Sequence[WeekSlot]
) -> RepaymentNormalization:
    """
    Map every repayment onto exactly one week slot.

    Entries with an unreadable date, an unknown label, a week outside the
    table or a non-positive amount are dropped with a warning. Frequency rules
    expand into one entry per occurrence.
    """
    result = RepaymentNormalization()

    for position, repayment in enumerate(repayments, start=1):
        amount = _coerce_amount(getattr(repayment, "amount", None))
        if amount is None:
            reason = f"amount {getattr(repayment, 'amount', None)!r} is not a positive number"
        elif not slots:
            reason = "there are no week columns to place it in"
        else:
            outcome = _normalize_one(repayment, slots, amount)
            if isinstance(outcome, list):
                result.repayments.extend(outcome)
                continue
            reason = outcome

        message = f"Repayment {position} dropped: {reason}"
        logger.warning(message)
        result.warnings.append(message)

    return result
