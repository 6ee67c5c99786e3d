"""
cell_parsers.py — Cell-level parsing for report spreadsheets
=============================================================
Two primitives every report parser builds on:

  • parse_number       — Brazilian-locale numbers ("R$ 1.234,56", "#N/A", "-")
  • parse_header_date  — header cells that name a day or a month
                         (native dates, "15-JAN", "JAN.24", "01/03/2024",
                          spreadsheet serials)

Neither function ever raises on bad input: an unusable cell is ``None``.
Zero is a real value and is always returned as ``0``/``0.0``, never ``None``.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# ══════════════════════════════════════════════════════════════════════════════
# Blank / text helpers
# ══════════════════════════════════════════════════════════════════════════════


def clean(v: Any) -> str:
    """Return stripped string; '' when None/NaN."""
    if v is None:
        return ""
    if isinstance(v, float) and (v != v):          # NaN fast-path
        return ""
    return str(v).strip()


def is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, float) and (v != v)) or clean(v) == ""


def is_blank_row(row) -> bool:
    """True for a missing row, an empty row, or a row of empty cells only."""
    return not row or all(is_blank(v) for v in row)


def _is_number(v: Any) -> bool:
    if isinstance(v, (bool, np.bool_)):
        return False
    return isinstance(v, (int, float, np.integer, np.floating))


# ══════════════════════════════════════════════════════════════════════════════
# Locale number parser
# ══════════════════════════════════════════════════════════════════════════════

class NumberStyle(str, Enum):
    """How a string with dots but no comma is read.

    THOUSANDS_DOTS    "1.234.567" -> 1234567, "1.5" -> 1.5
    LAST_DOT_DECIMAL  "1.234.567" -> 1234.567, "1.5" -> 1.5
    """
    THOUSANDS_DOTS = "thousands_dots"
    LAST_DOT_DECIMAL = "last_dot_decimal"


ERROR_TOKENS = frozenset(["#DIV/0!", "#N/A", "#VALOR!", "#REF!", "#NOME?", "#NULL!"])
# The monthly proposal report never listed #NULL! as an error marker.
LEGACY_ERROR_TOKENS = ERROR_TOKENS - {"#NULL!"}

MAX_ABS_VALUE = 1e12

_EMPTY_CASH = re.compile(r"^(R\$)?\s*-?\s*$")
_CURRENCY = re.compile(r"R\$\s?")
_LEADING_FLOAT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _leading_float(s: str) -> Optional[float]:
    """Read the longest numeric prefix of ``s`` ("12abc" -> 12.0)."""
    s = s.lstrip()
    if s.lower().startswith(("infinity", "+infinity", "-infinity")):
        return None
    m = _LEADING_FLOAT.match(s)
    if not m:
        return None
    return float(m.group(0))


def parse_number(
    value: Any,
    style: NumberStyle = NumberStyle.THOUSANDS_DOTS,
    max_abs: Optional[float] = MAX_ABS_VALUE,
    error_tokens=ERROR_TOKENS,
) -> Optional[float]:
    """Convert a raw cell to a number, or None when the cell holds no value."""
    if _is_number(value):
        f = float(value)
        if math.isnan(f) or math.isinf(f):
            return None
        return value.item() if isinstance(value, (np.integer, np.floating)) else value
    if value is None:
        return None

    s = str(value).strip()
    if s == "" or s == "-" or _EMPTY_CASH.match(s) or s.upper() in error_tokens:
        return None

    s = _CURRENCY.sub("", s).strip()

    if "," in s:
        cleaned = s.replace(".", "").replace(",", ".", 1)
    elif "." in s:
        if style == NumberStyle.LAST_DOT_DECIMAL:
            last = s.rfind(".")
            cleaned = s[:last].replace(".", "") + s[last:]
        elif s.count(".") > 1:
            cleaned = s.replace(".", "")
        else:
            cleaned = s
    else:
        cleaned = s

    number = _leading_float(cleaned)
    if number is None:
        logger.debug("Unparseable number: original=%r cleaned=%r", value, cleaned)
        return None
    if max_abs is not None and abs(number) > max_abs:
        logger.warning("Number %r exceeds magnitude guard, ignored", value)
        return None
    return number


def parse_number_legacy(value: Any) -> Optional[float]:
    """Number parsing as the monthly proposal report has always done it."""
    return parse_number(
        value,
        style=NumberStyle.LAST_DOT_DECIMAL,
        max_abs=None,
        error_tokens=LEGACY_ERROR_TOKENS,
    )


# ══════════════════════════════════════════════════════════════════════════════
# Header date parser
# ══════════════════════════════════════════════════════════════════════════════

MONTHS_PT = {
    "JAN": 1, "FEV": 2, "MAR": 3, "ABR": 4, "MAI": 5, "JUN": 6,
    "JUL": 7, "AGO": 8, "SET": 9, "OUT": 10, "NOV": 11, "DEZ": 12,
}

_YMD = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$")
_DMY = re.compile(r"^(\d{1,2})[-/\\](\d{1,2})[-/\\](\d{4})$")
_MONTH_YEAR = re.compile(r"^([A-ZÇ]+)[\s.]+(\d{2})$")
_DAY_MONTH = re.compile(r"^(\d{1,2})[-/]([A-ZÇ]+)$")

# Loose test used while scanning for the header row; it does not check the
# month table, it only recognises the shape of a date header.
_DATE_HEADER_SHAPE = re.compile(r"^(\d{1,2}[-/][A-ZÇ]+)|([A-ZÇ]+[\s.]+\d{2})$")

SERIAL_EPOCH = pd.Timestamp("1899-12-30")
DEFAULT_SERIAL_RANGE: Tuple[float, float] = (20000, 60000)


def looks_like_date_header(value: Any) -> bool:
    if is_blank(value):
        return False
    return bool(_DATE_HEADER_SHAPE.search(clean(value).upper()))


def serial_to_date(serial: float) -> Optional[date]:
    """Decode a spreadsheet serial number (1900 date system)."""
    try:
        ts = SERIAL_EPOCH + pd.to_timedelta(math.floor(float(serial)), unit="D")
    except (ValueError, OverflowError):
        return None
    return ts.date()


def _build_date(y: int, m: int, d: int) -> Optional[date]:
    try:
        return date(y, m, d)
    except ValueError:
        return None


def _roll_back(year: int, month: int, today: date) -> int:
    """A month later than today's month in today's year belongs to last year."""
    if year == today.year and month > today.month:
        return year - 1
    return year


def parse_header_date(
    value: Any,
    file_year: Optional[int] = None,
    today: Optional[date] = None,
    *,
    allow_native: bool = True,
    allow_ymd: bool = True,
    allow_month_names: bool = True,
    serial_range: Optional[Tuple[float, float]] = DEFAULT_SERIAL_RANGE,
    roll_back_future_months: bool = True,
    min_year: int = 1990,
) -> Optional[str]:
    """Parse a header cell into an ISO ``YYYY-MM-DD`` string, or None.

    Resolution order (first match wins):
      1. native date/datetime
      2. YYYY-M-D or D/M/YYYY text
      3. month abbreviation + two-digit year ("JAN.24" -> 2024-01-01)
      4. day + month abbreviation ("15-JAN"), year taken from ``file_year``
      5. spreadsheet serial number inside ``serial_range``

    For 4 and 5, when ``roll_back_future_months`` is set, a month after
    ``today``'s month in ``today``'s year is moved to the previous year.
    """
    today = today or date.today()
    parsed: Optional[date] = None

    if is_blank(value):
        return None

    if isinstance(value, (datetime, date, pd.Timestamp)):
        if not allow_native:
            return None
        if pd.isna(value):
            return None
        parsed = date(value.year, value.month, value.day)

    elif isinstance(value, str):
        s = value.strip().upper()
        m_ymd = _YMD.match(s) if allow_ymd else None
        m_dmy = _DMY.match(s)
        m_month_year = _MONTH_YEAR.match(s) if allow_month_names else None
        m_day_month = _DAY_MONTH.match(s) if allow_month_names else None

        if m_ymd or m_dmy:
            if m_ymd:
                y, mo, d = (int(g) for g in m_ymd.groups())
            else:
                d, mo, y = (int(g) for g in m_dmy.groups())
            if min_year < y < 2100 and 1 <= mo <= 12 and 1 <= d <= 31:
                parsed = _build_date(y, mo, d)
        elif m_month_year and m_month_year.group(1) in MONTHS_PT:
            parsed = date(2000 + int(m_month_year.group(2)), MONTHS_PT[m_month_year.group(1)], 1)
        elif m_day_month and m_day_month.group(2) in MONTHS_PT:
            mo = MONTHS_PT[m_day_month.group(2)]
            y = file_year if file_year is not None else today.year
            if roll_back_future_months:
                rolled = _roll_back(y, mo, today)
                if rolled != y:
                    logger.debug("Header %r: month %d after current month, using %d", s, mo, rolled)
                y = rolled
            parsed = _build_date(y, mo, int(m_day_month.group(1)))

    elif _is_number(value) and serial_range is not None:
        low, high = serial_range
        if low < float(value) < high:
            decoded = serial_to_date(value)
            if decoded is not None:
                y = decoded.year
                if roll_back_future_months:
                    y = _roll_back(y, decoded.month, today)
                parsed = _build_date(y, decoded.month, decoded.day)

    if parsed is None:
        logger.warning("Header cell %r could not be parsed as a date", value)
        return None
    return parsed.isoformat()
