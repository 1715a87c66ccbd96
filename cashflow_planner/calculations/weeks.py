"""
Week Calendar Resolution

Turns free-text spreadsheet column headers ("1 Jan", "08/01/2025", "W26",
"1-7 Jan") into a calendar-anchored sequence of week slots.

Columns are always returned in their original spreadsheet order. A header that
cannot be read still produces a slot with a synthetic date, so repayment week
indices entered against the sheet keep pointing at the same columns.
"""

import logging
import math
import re
from calendar import month_abbr, month_name
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

WEEK_DAYS = 7

# A yearless header this far before the previous week belongs to the next year
YEAR_ROLLOVER_DAYS = 180

# Excel stores dates as days since 1899-12-30. Only accept serials that land
# between 1954 and 2119 so ordinary amounts are not mistaken for dates.
EXCEL_EPOCH = date(1899, 12, 30)
EXCEL_SERIAL_MIN = 20000
EXCEL_SERIAL_MAX = 80000

MONTHS: Dict[str, int] = {}
for _number in range(1, 13):
    MONTHS[month_name[_number].lower()] = _number
    MONTHS[month_abbr[_number].lower()] = _number
MONTHS["sept"] = 9

_ORDINAL = r"(?:st|nd|rd|th)?"

ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b")
# Yearless "06/01" or "13-01"; only a whole header, so "1-7 Jan" and dates
# with a year are left to their own patterns
NUMERIC_DAY_MONTH = re.compile(r"(\d{1,2})[/\-](\d{1,2})")
DAY_MONTH = re.compile(
    rf"\b(\d{{1,2}}){_ORDINAL}(?:\s*[-–]\s*(\d{{1,2}}){_ORDINAL})?"
    rf"\s+([A-Za-z]{{3,9}})\.?(?:,?\s+(\d{{4}}))?\b"
)
MONTH_DAY = re.compile(
    rf"\b([A-Za-z]{{3,9}})\.?\s+(\d{{1,2}}){_ORDINAL}"
    rf"(?:\s*[-–]\s*(\d{{1,2}}){_ORDINAL})?(?:,?\s+(\d{{4}}))?\b"
)
ISO_WEEK_TOKEN = re.compile(r"\b(\d{4})-?W(\d{1,2})\b", re.IGNORECASE)
WEEK_TOKEN = re.compile(
    r"\b(?:week|wk|w)\s*\.?\s*(\d{1,2})\b(?:\D{1,3}(\d{4})\b)?", re.IGNORECASE
)
SERIAL_TEXT = re.compile(r"\d{5}(?:\.\d+)?")


@dataclass
class ParsedHeader:
    """A header successfully read as a date."""

    start: date
    end: Optional[date] = None  # Last day, when the header names a range
    has_year: bool = True


@dataclass
class WeekSlot:
    """One spreadsheet column placed on the calendar."""

    index: int
    label: str
    date: date
    source_column: int
    synthetic: bool = False  # True when no date could be read from the header
    range_end: Optional[date] = None


@dataclass
class CalendarResolution:
    """Resolved week table plus advisory warnings."""

    slots: List[WeekSlot] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class HeaderMapping:
    """Location of the week-label row detected in a raw grid."""

    label_row: int
    first_column: int
    last_column: int


def weeks_in_iso_year(year: int) -> int:
    """Number of ISO weeks in a year (52 or 53)."""
    return date(year, 12, 28).isocalendar()[1]


def iso_week_start(year: int, week: int) -> date:
    """
    Return the Monday of an ISO-8601 week.

    Week 1 is the week containing the year's first Thursday, which is always
    the week containing 4 January.

    Raises:
        ValueError: If the week does not exist in that year
    """
    if week < 1 or week > weeks_in_iso_year(year):
        raise ValueError(f"Year {year} has no ISO week {week}")
    jan_4 = date(year, 1, 4)
    week_one_monday = jan_4 - timedelta(days=jan_4.weekday())
    return week_one_monday + timedelta(weeks=week - 1)


def label_text(value: Any) -> str:
    """Display text for a header cell."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _expand_year(text: str) -> int:
    year = int(text)
    return 2000 + year if len(text) == 2 else year


def _range_end(start: date, end_day: Optional[str]) -> Optional[date]:
    """End of a "1-7 Jan" style range; a smaller end day rolls into next month."""
    if not end_day:
        return None
    day = int(end_day)
    try:
        if day >= start.day:
            return start.replace(day=day)
        return (start.replace(day=1) + relativedelta(months=1)).replace(day=day)
    except ValueError:
        return None


def _from_excel_serial(value: float) -> Optional[ParsedHeader]:
    if not math.isfinite(value) or not EXCEL_SERIAL_MIN <= value <= EXCEL_SERIAL_MAX:
        return None
    return ParsedHeader(start=EXCEL_EPOCH + timedelta(days=int(value)))


def _parse_numeric_date(text: str, base_year: int) -> Optional[ParsedHeader]:
    for match in ISO_DATE.finditer(text):
        year, month, day = (int(part) for part in match.groups())
        try:
            return ParsedHeader(start=date(year, month, day))
        except ValueError:
            continue
    for match in NUMERIC_DATE.finditer(text):
        day, month, year = match.groups()
        try:
            return ParsedHeader(start=date(_expand_year(year), int(month), int(day)))
        except ValueError:
            continue
    return None


def _match_named(text: str, base_year: int, with_year: bool) -> Optional[ParsedHeader]:
    """Day/month-name headers, in either order, with or without a year."""
    candidates = []
    for match in DAY_MONTH.finditer(text):
        day, end_day, month_word, year = match.groups()
        candidates.append((match.start(), day, end_day, month_word, year))
    for match in MONTH_DAY.finditer(text):
        month_word, day, end_day, year = match.groups()
        candidates.append((match.start(), day, end_day, month_word, year))

    for _, day, end_day, month_word, year in sorted(candidates, key=lambda c: c[0]):
        month = MONTHS.get(month_word.lower())
        if month is None or bool(year) != with_year:
            continue
        try:
            start = date(int(year) if year else base_year, month, int(day))
        except ValueError:
            continue
        return ParsedHeader(start=start, end=_range_end(start, end_day), has_year=with_year)
    return None


def _parse_named_date_with_year(text: str, base_year: int) -> Optional[ParsedHeader]:
    return _match_named(text, base_year, with_year=True)


def _parse_day_month(text: str, base_year: int) -> Optional[ParsedHeader]:
    parsed = _match_named(text, base_year, with_year=False)
    if parsed is not None:
        return parsed
    match = NUMERIC_DAY_MONTH.fullmatch(text)
    if not match:
        return None
    day, month = (int(part) for part in match.groups())
    try:
        return ParsedHeader(start=date(base_year, month, day), has_year=False)
    except ValueError:
        return None


def _parse_week_token(text: str, base_year: int) -> Optional[ParsedHeader]:
    match = ISO_WEEK_TOKEN.search(text)
    if match:
        year, week, has_year = int(match.group(1)), int(match.group(2)), True
    else:
        match = WEEK_TOKEN.search(text)
        if not match:
            return None
        week = int(match.group(1))
        has_year = match.group(2) is not None
        year = int(match.group(2)) if has_year else base_year
    try:
        start = iso_week_start(year, week)
    except ValueError:
        return None
    return ParsedHeader(start=start, end=start + timedelta(days=WEEK_DAYS - 1), has_year=has_year)


# Tried in priority order; the first pattern that yields a valid date wins.
HEADER_PARSERS = (
    _parse_numeric_date,
    _parse_named_date_with_year,
    _parse_day_month,
    _parse_week_token,
)


def parse_header_date(
    value: Any, base_year: int, allow_serial: bool = True
) -> Optional[ParsedHeader]:
    """
    Read a single header cell as a date.

    Args:
        value: Header cell (text, date, datetime or Excel serial number)
        base_year: Year assumed for headers that carry none
        allow_serial: Whether bare numbers may be read as Excel date serials

    Returns:
        ParsedHeader, or None when no pattern matches
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ParsedHeader(start=value.date())
    if isinstance(value, date):
        return ParsedHeader(start=value)
    if isinstance(value, (int, float)):
        return _from_excel_serial(float(value)) if allow_serial else None

    text = str(value).strip()
    if not text:
        return None
    if SERIAL_TEXT.fullmatch(text):
        return _from_excel_serial(float(text)) if allow_serial else None

    for parser in HEADER_PARSERS:
        parsed = parser(text, base_year)
        if parsed is not None:
            return parsed
    return None


def _parse_after(value: Any, previous: date) -> Optional[ParsedHeader]:
    """
    Parse a header that carries no year, in the context of the previous week.

    The previous week's year is assumed. A result landing more than
    YEAR_ROLLOVER_DAYS before the previous week is read as the sheet running
    from December into January and moved to the following year.
    """
    parsed = parse_header_date(value, previous.year)
    if parsed is None or parsed.start > previous:
        return parsed
    if (previous - parsed.start).days > YEAR_ROLLOVER_DAYS:
        return parse_header_date(value, previous.year + 1) or parsed
    return parsed


def _duplicate_label_warnings(slots: List[WeekSlot]) -> List[str]:
    columns_by_label: Dict[str, List[int]] = {}
    for slot in slots:
        key = slot.label.strip().lower()
        if key:
            columns_by_label.setdefault(key, []).append(slot.source_column)

    warnings = []
    for slot in slots:
        columns = columns_by_label.get(slot.label.strip().lower(), [])
        if len(columns) > 1 and columns[0] == slot.source_column:
            listed = ", ".join(str(c) for c in columns)
            warnings.append(f"Label '{slot.label}' appears in several columns ({listed})")
    return warnings


def _overlap_warnings(slots: List[WeekSlot]) -> List[str]:
    warnings = []
    for previous, current in zip(slots, slots[1:]):
        if previous.synthetic or current.synthetic:
            continue
        if previous.range_end is None or current.range_end is None:
            continue
        if current.date <= previous.range_end:
            warnings.append(
                f"Week '{previous.label}' and week '{current.label}' overlap "
                f"({current.date.isoformat()} is inside the earlier range)"
            )
    return warnings


def resolve_week_slots(
    headers: Sequence[Any],
    base_year: int,
    source_columns: Optional[Sequence[int]] = None,
) -> CalendarResolution:
    """
    Build the canonical week table from a row of column headers.

    Each header is read with `parse_header_date`. Unreadable headers get the
    synthetic date `base_year-01-01 + 7 * index`. A slot whose date would not be
    strictly after its predecessor is moved to the predecessor plus 7 days, so
    dates always increase with the index.

    Args:
        headers: Header cells in spreadsheet order
        base_year: Year assumed for headers without one
        source_columns: Grid column of each header (defaults to 0..n-1)

    Returns:
        CalendarResolution with one slot per header and advisory warnings
    """
    if source_columns is not None and len(source_columns) != len(headers):
        raise ValueError("source_columns must have one entry per header")

    resolution = CalendarResolution()
    previous: Optional[WeekSlot] = None
    year_start = date(base_year, 1, 1)

    for index, header in enumerate(headers):
        label = label_text(header)
        column = source_columns[index] if source_columns is not None else index

        parsed = parse_header_date(header, base_year)
        if parsed is not None and not parsed.has_year and previous is not None:
            parsed = _parse_after(header, previous.date)

        if parsed is None:
            slot_date = year_start + timedelta(days=WEEK_DAYS * index)
            range_end = None
            synthetic = True
            shown = f"'{label}'" if label else f"in column {column}"
            resolution.warnings.append(
                f"No date found for header {shown}; using a synthetic date"
            )
            logger.debug(f"Header {label!r} unparseable, synthetic date {slot_date}")
        else:
            slot_date, range_end, synthetic = parsed.start, parsed.end, False

        if previous is not None and slot_date <= previous.date:
            shifted = previous.date + timedelta(days=WEEK_DAYS)
            if not synthetic:
                resolution.warnings.append(
                    f"Week '{label}' ({slot_date.isoformat()}) is not after "
                    f"'{previous.label}'; placed on {shifted.isoformat()}"
                )
            slot_date, range_end = shifted, None

        slot = WeekSlot(
            index=index,
            label=label,
            date=slot_date,
            source_column=column,
            synthetic=synthetic,
            range_end=range_end,
        )
        resolution.slots.append(slot)
        previous = slot

    resolution.warnings.extend(_duplicate_label_warnings(resolution.slots))
    resolution.warnings.extend(_overlap_warnings(resolution.slots))
    return resolution


def synthetic_week_date(slots: Sequence[WeekSlot], index: int, base_year: int) -> date:
    """
    Date of a week index, extending past the last slot in 7-day steps.

    Used for weeks appended after the spreadsheet ends.
    """
    if 0 <= index < len(slots):
        return slots[index].date
    if not slots:
        return date(base_year, 1, 1) + timedelta(days=WEEK_DAYS * index)
    last = slots[-1]
    return last.date + timedelta(days=WEEK_DAYS * (index - last.index))


def detect_week_header(
    grid: Sequence[Sequence[Any]],
    base_year: int,
    max_rows: int = 30,
    min_run: int = 3,
) -> Optional[HeaderMapping]:
    """
    Find the row and column span that holds week labels.

    Scans the first `max_rows` rows for the longest run of consecutive cells
    that read as dates or week tokens. Bare numbers are ignored so data rows
    are never taken for headers.

    Returns:
        HeaderMapping, or None when no row has at least `min_run` labels
    """
    best: Optional[HeaderMapping] = None
    best_length = 0

    for row_index, row in enumerate(grid[:max_rows]):
        run_start = None
        for column, value in enumerate(list(row) + [None]):
            readable = parse_header_date(value, base_year, allow_serial=False) is not None
            if readable and run_start is None:
                run_start = column
            elif not readable and run_start is not None:
                length = column - run_start
                if length >= min_run and length > best_length:
                    best = HeaderMapping(row_index, run_start, column - 1)
                    best_length = length
                run_start = None

    return best
