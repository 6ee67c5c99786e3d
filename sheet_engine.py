"""
sheet_engine.py — Section tracking engine for block-structured report sheets
=============================================================================
Report exports are not tables: a sheet is a stack of blocks, each opened by a
label row ("DIGITADAS", "NORDESTE", "CARTA" ...) whose other cells carry the
dates of the block's columns, followed by data rows, and closed by a blank
row or a "GERAL"/"TOTAL" line.

This module walks such a sheet one row at a time.  The walk is a fold:

    classify_row(rules, context, row) -> (context', row_class, diagnostics)

``SectionRules`` says which labels open and close blocks for one report
layout; ``ParseContext`` is the immutable state carried between rows.
Nothing in here knows about output schemas: the caller passes an ``emit``
function to ``walk_sheet`` that turns data rows into records.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from cell_parsers import (
    clean,
    is_blank,
    is_blank_row,
    looks_like_date_header,
    parse_number,
    serial_to_date,
)

logger = logging.getLogger(__name__)

Row = Sequence[Any]
DateColumnMap = Dict[int, str]
DateParser = Callable[[Any, Optional[int]], Optional[str]]
NumberParser = Callable[[Any], Optional[float]]

LABEL_COLUMN = 0


# ══════════════════════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════════════════════

class IngestionError(Exception):
    """Base class for every failure that aborts an upload."""


class FormatRejected(IngestionError):
    """The upload is not a spreadsheet we can read."""


class UploadNotAllowed(IngestionError):
    """No uploader was identified, or the uploader is a guest."""


class StructuralError(IngestionError):
    """The sheet lacks a structure the report needs (header, dates, rows)."""


class ZeroYieldError(IngestionError):
    """Parsing finished cleanly but produced no records at all."""


class WritePhaseError(IngestionError):
    """One or more record batches were rejected by storage."""

    def __init__(self, failures: Dict[str, str], written: Optional[Dict[str, int]] = None):
        self.failures = dict(failures)
        self.written = dict(written or {})
        detail = " | ".join(f"{batch}: {msg}" for batch, msg in self.failures.items())
        super().__init__(f"Storage rejected batch(es): {detail}")


# ══════════════════════════════════════════════════════════════════════════════
# Diagnostics
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RowDiagnostic:
    sheet: str
    row_index: int
    level: str          # "info" | "warning"
    reason: str
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sheet": self.sheet,
            "row": self.row_index + 1,
            "level": self.level,
            "reason": self.reason,
            "label": self.label,
        }


def _diag(sheet: str, row_index: int, level: str, reason: str, label: str = "") -> RowDiagnostic:
    log = logger.warning if level == "warning" else logger.debug
    log("[%s] row %d (%r): %s", sheet, row_index + 1, label, reason)
    return RowDiagnostic(sheet, row_index, level, reason, label)


# ══════════════════════════════════════════════════════════════════════════════
# Context
# ══════════════════════════════════════════════════════════════════════════════

class SectionKind(str, Enum):
    CATEGORY = "category"
    REGION = "region"
    ITEM_TYPE = "item_type"


@dataclass(frozen=True)
class ParseContext:
    """State of one sheet walk.

    ``sheet_dates`` is the sheet-level date map found before the walk (if the
    layout has one); unlike ``date_columns`` it survives resets.
    """
    current_category: Optional[str] = None
    current_region: Optional[str] = None
    current_item_type: Optional[str] = None
    date_columns: DateColumnMap = field(default_factory=dict)
    file_year: Optional[int] = None
    expecting_header: bool = False
    stopped: bool = False
    sheet_dates: DateColumnMap = field(default_factory=dict)

    @property
    def active(self) -> Optional[str]:
        return self.current_category or self.current_region or self.current_item_type

    def reset(self) -> "ParseContext":
        return ParseContext(file_year=self.file_year, sheet_dates=self.sheet_dates)

    def open_section(
        self,
        kind: SectionKind,
        tag: str,
        date_columns: Optional[DateColumnMap] = None,
        expecting_header: bool = False,
    ) -> "ParseContext":
        base = self.reset()
        return replace(
            base,
            current_category=tag if kind == SectionKind.CATEGORY else None,
            current_region=tag if kind == SectionKind.REGION else None,
            current_item_type=tag if kind == SectionKind.ITEM_TYPE else None,
            date_columns=dict(date_columns or {}),
            expecting_header=expecting_header,
        )


# ══════════════════════════════════════════════════════════════════════════════
# Rules
# ══════════════════════════════════════════════════════════════════════════════

class DateHeader(str, Enum):
    SHEET = "sheet"          # one header for the whole sheet, found up front
    SAME_ROW = "same_row"    # block label row carries the dates
    NEXT_ROW = "next_row"    # dates are on the line after the block label


class BlankRow(str, Enum):
    RESET = "reset"
    STOP = "stop"


@dataclass(frozen=True)
class SectionRules:
    """Label vocabulary and block behaviour of one report layout."""
    name: str
    kind: SectionKind
    date_parser: DateParser
    openers: Dict[str, str] = field(default_factory=dict)
    prefix_openers: Tuple[Tuple[str, str], ...] = ()
    terminators: FrozenSet[str] = frozenset()
    terminates: Optional[FrozenSet[str]] = None       # None: any open section
    ignored_labels: FrozenSet[str] = frozenset()
    skip_labels: FrozenSet[str] = frozenset()
    skip_prefixes: Tuple[str, ...] = ()
    data_labels: Optional[FrozenSet[str]] = None      # other labels end the block
    date_header: DateHeader = DateHeader.SAME_ROW
    on_blank: BlankRow = BlankRow.RESET
    min_dates: int = 1
    skip_percent_columns: bool = True
    emit_on_opener: bool = False
    secondary_header_check: bool = False

    def match_opener(self, upper_label: str) -> Optional[str]:
        if upper_label in self.openers:
            return self.openers[upper_label]
        for prefix, tag in self.prefix_openers:
            if upper_label.startswith(prefix):
                return tag
        return None


class RowClass(str, Enum):
    BLANK = "blank"
    STOP = "stop"
    STOPPED = "stopped"
    HEADER = "header"
    REJECTED_HEADER = "rejected_header"
    OPENER = "opener"
    TERMINATOR = "terminator"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    ORPHAN = "orphan"
    UNKNOWN_LABEL = "unknown_label"
    DATA = "data"


# ══════════════════════════════════════════════════════════════════════════════
# Header / block locator
# ══════════════════════════════════════════════════════════════════════════════

def row_label(row: Row) -> str:
    if not row or len(row) <= LABEL_COLUMN:
        return ""
    return re.sub(r"[\r\n]+", " ", clean(row[LABEL_COLUMN]))


def parse_date_row(
    row: Row,
    date_parser: DateParser,
    file_year: Optional[int] = None,
    skip_percent: bool = True,
) -> DateColumnMap:
    """Map every date cell after the label column to its ISO date.

    A "%" cell right after a date column is its percentage companion and
    is skipped.
    """
    dates: DateColumnMap = {}
    col = LABEL_COLUMN + 1
    while col < len(row):
        cell = row[col]
        if not is_blank(cell):
            iso = date_parser(cell, file_year)
            if iso:
                dates[col] = iso
                if skip_percent and col + 1 < len(row) and clean(row[col + 1]) == "%":
                    col += 1
        col += 1
    return dates


@dataclass(frozen=True)
class HeaderInfo:
    row_index: int
    date_columns: DateColumnMap
    total_col: Optional[int]
    media_col: Optional[int]
    file_year: int
    summary_month: str


_YEAR = re.compile(r"(\d{4})")
_DMY_YEAR = re.compile(r"\d{1,2}/\d{1,2}/(\d{4})")
_MEDIA_LABELS = ("MEDIA", "MÉDIA")
_SKIP_HEADER_PARTS = ("MÊS", "#REF!")


def _row_text(row: Optional[Row]) -> str:
    if not row:
        return ""
    return " ".join(clean(v) for v in row if not is_blank(v)).upper()


def infer_file_year(rows: Sequence[Row], header_index: int, today: Optional[date] = None) -> int:
    """Year named in the title text one or two rows above the header."""
    today = today or date.today()
    title = _row_text(rows[header_index - 1]) if header_index > 0 else ""
    if not title and header_index > 1:
        title = _row_text(rows[header_index - 2])
    m = _YEAR.search(title)
    if m:
        return int(m.group(1))
    m = _DMY_YEAR.search(title)
    if m:
        return int(m.group(1))
    return today.year


def _count_date_like(row: Row) -> Tuple[int, bool, bool]:
    dates, has_total, has_media = 0, False, False
    for cell in row[LABEL_COLUMN + 1:]:
        if is_blank(cell):
            continue
        if hasattr(cell, "year") and hasattr(cell, "month"):
            dates += 1
        elif isinstance(cell, str):
            s = clean(cell).upper()
            if looks_like_date_header(s):
                dates += 1
            elif s == "TOTAL":
                has_total = True
            elif s in _MEDIA_LABELS:
                has_media = True
        elif isinstance(cell, (int, float)) and not isinstance(cell, bool) and 2000 < cell < 50000:
            if serial_to_date(cell) is not None:
                dates += 1
    return dates, has_total, has_media


def find_fixed_header(
    rows: Sequence[Row],
    date_parser: DateParser,
    today: Optional[date] = None,
    max_scan: int = 10,
) -> HeaderInfo:
    """Locate the single header row of a month report.

    The header is the first of the top ``max_scan`` rows that has at least
    two date-like cells and a TOTAL or MEDIA column.
    """
    header_index = None
    for idx in range(min(len(rows), max_scan)):
        row = rows[idx]
        if not row or len(row) <= 2:
            continue
        dates, has_total, has_media = _count_date_like(row)
        if dates >= 2 and (has_total or has_media):
            header_index = idx
            break
    if header_index is None:
        raise StructuralError("Linha de cabeçalho não encontrada.")

    file_year = infer_file_year(rows, header_index, today)
    logger.info("Header found at row %d, file year %d", header_index + 1, file_year)

    header = rows[header_index]
    date_columns: DateColumnMap = {}
    total_col = media_col = None
    for col in range(LABEL_COLUMN + 1, len(header)):
        cell = header[col]
        if is_blank(cell):
            continue
        text = clean(cell).upper()
        if text == "TOTAL":
            total_col = col
            continue
        if text in _MEDIA_LABELS:
            media_col = col
            continue
        if any(part in text for part in _SKIP_HEADER_PARTS):
            continue
        iso = date_parser(cell, file_year)
        if iso:
            date_columns[col] = iso

    if not date_columns:
        logger.warning("No date columns mapped in header row %d", header_index + 1)
    if total_col is None:
        logger.warning("TOTAL column not found")
    if media_col is None:
        logger.warning("MEDIA column not found")
    if not date_columns:
        raise StructuralError(
            "Não foi possível determinar o mês para os sumários (nenhuma data válida)."
        )

    first = min(date_columns.values())
    summary_month = first[:8] + "01"
    return HeaderInfo(header_index, date_columns, total_col, media_col, file_year, summary_month)


def find_section_header(
    rows: Sequence[Row],
    rules: SectionRules,
    file_year: Optional[int] = None,
    max_scan: int = 15,
) -> Optional[Tuple[int, DateColumnMap]]:
    """First block label row near the top of the sheet that carries dates."""
    for idx in range(min(len(rows), max_scan)):
        row = rows[idx]
        if not row or len(row) < 2:
            continue
        if rules.match_opener(row_label(row).upper()) is None:
            continue
        dates = parse_date_row(row, rules.date_parser, file_year, rules.skip_percent_columns)
        if len(dates) >= rules.min_dates:
            logger.info("[%s] Date header at row %d (%d dates)", rules.name, idx + 1, len(dates))
            return idx, dates
    return None


# ══════════════════════════════════════════════════════════════════════════════
# Row classifier
# ══════════════════════════════════════════════════════════════════════════════

def classify_row(
    rules: SectionRules,
    context: ParseContext,
    row: Row,
    row_index: int,
    sheet: str = "",
) -> Tuple[ParseContext, RowClass, List[RowDiagnostic]]:
    """Advance the block state machine by one row."""
    diags: List[RowDiagnostic] = []

    if context.stopped:
        return context, RowClass.STOPPED, diags

    if is_blank_row(row):
        if rules.on_blank == BlankRow.STOP:
            diags.append(_diag(sheet, row_index, "info", "blank row, end of data"))
            return replace(context, stopped=True), RowClass.STOP, diags
        if context.active or context.expecting_header:
            diags.append(_diag(sheet, row_index, "info", f"blank row closes {context.active}"))
        return context.reset(), RowClass.BLANK, diags

    label = row_label(row)
    upper = label.upper()

    if context.expecting_header:
        dates = parse_date_row(row, rules.date_parser, context.file_year, rules.skip_percent_columns)
        if len(dates) >= rules.min_dates:
            return replace(context, date_columns=dates, expecting_header=False), RowClass.HEADER, diags
        diags.append(_diag(
            sheet, row_index, "warning",
            f"date header for {context.active} rejected ({len(dates)} dates)", label,
        ))
        reset = context.reset()
        tag = rules.match_opener(upper)
        if tag is not None:
            reset = reset.open_section(rules.kind, tag, expecting_header=True)
        return reset, RowClass.REJECTED_HEADER, diags

    if not label:
        diags.append(_diag(sheet, row_index, "info", "empty label cell"))
        return context, RowClass.SKIPPED, diags

    if upper in rules.ignored_labels:
        return context, RowClass.IGNORED, diags

    tag = rules.match_opener(upper)
    if tag is not None:
        return _open_block(rules, context, row, row_index, sheet, label, tag, diags)

    if upper in rules.terminators:
        if context.active and (rules.terminates is None or context.active in rules.terminates):
            return context.reset(), RowClass.TERMINATOR, diags
        return context, RowClass.TERMINATOR, diags

    if not context.active:
        diags.append(_diag(sheet, row_index, "warning", "no active section", label))
        return context, RowClass.ORPHAN, diags

    if upper in rules.skip_labels or any(upper.startswith(p) for p in rules.skip_prefixes):
        diags.append(_diag(sheet, row_index, "info", "non-metric row", label))
        return context, RowClass.SKIPPED, diags

    if rules.data_labels is not None and label not in rules.data_labels:
        diags.append(_diag(sheet, row_index, "info", f"unknown label closes {context.active}", label))
        return context.reset(), RowClass.UNKNOWN_LABEL, diags

    if not context.date_columns:
        diags.append(_diag(sheet, row_index, "warning", "date map empty", label))
        return context, RowClass.SKIPPED, diags

    return context, RowClass.DATA, diags


def _open_block(rules, context, row, row_index, sheet, label, tag, diags):
    if rules.date_header == DateHeader.SHEET:
        opened = context.open_section(rules.kind, tag, context.date_columns or context.sheet_dates)
        if rules.secondary_header_check and len(row) > 1 and looks_like_date_header(row[1]):
            return opened, RowClass.HEADER, diags
        return opened, RowClass.OPENER, diags

    if rules.date_header == DateHeader.NEXT_ROW:
        if context.active and context.active != tag:
            diags.append(_diag(
                sheet, row_index, "warning",
                f"{tag} opened before {context.active} was closed", label,
            ))
        return context.open_section(rules.kind, tag, expecting_header=True), RowClass.OPENER, diags

    dates = parse_date_row(row, rules.date_parser, context.file_year, rules.skip_percent_columns)
    if len(dates) < rules.min_dates:
        if context.sheet_dates:
            dates = context.sheet_dates
        else:
            diags.append(_diag(sheet, row_index, "warning", f"block {tag} has no valid dates", label))
            return context.reset(), RowClass.REJECTED_HEADER, diags
    return context.open_section(rules.kind, tag, dates), RowClass.OPENER, diags


# ══════════════════════════════════════════════════════════════════════════════
# Record extraction
# ══════════════════════════════════════════════════════════════════════════════

def extract_row_values(
    row: Row,
    date_columns: DateColumnMap,
    number_parser: NumberParser = parse_number,
) -> Iterator[Tuple[int, str, float]]:
    """Yield (column, iso_date, value) for each mapped cell holding a number."""
    for col in sorted(date_columns):
        if col >= len(row):
            continue
        value = number_parser(row[col])
        if value is not None:
            yield col, date_columns[col], value


class DedupSet:
    """Keys already emitted during one file run."""

    def __init__(self):
        self._seen = set()

    def add(self, key: Tuple) -> bool:
        """Record ``key``; False when it was already there."""
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __len__(self):
        return len(self._seen)


Emit = Callable[[ParseContext, Row, int, str, RowClass], Tuple[List[Dict[str, Any]], List[RowDiagnostic]]]


def walk_sheet(
    rules: SectionRules,
    rows: Sequence[Row],
    emit: Emit,
    context: Optional[ParseContext] = None,
    sheet: str = "",
    start: int = 0,
) -> Tuple[List[Dict[str, Any]], List[RowDiagnostic], ParseContext]:
    """Fold ``classify_row`` over ``rows[start:]`` and collect emitted records."""
    context = context or ParseContext()
    records: List[Dict[str, Any]] = []
    diagnostics: List[RowDiagnostic] = []

    for row_index in range(start, len(rows)):
        row = rows[row_index]
        context, row_class, diags = classify_row(rules, context, row, row_index, sheet)
        diagnostics.extend(diags)
        if row_class in (RowClass.STOP, RowClass.STOPPED):
            break
        if row_class == RowClass.DATA or (row_class == RowClass.OPENER and rules.emit_on_opener):
            new_records, emit_diags = emit(context, row, row_index, row_label(row), row_class)
            records.extend(new_records)
            diagnostics.extend(emit_diags)

    logger.info("[%s] %s: %d records, %d diagnostics", rules.name, sheet, len(records), len(diagnostics))
    return records, diagnostics, context
