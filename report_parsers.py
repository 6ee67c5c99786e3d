"""
report_parsers.py — Report ingestion orchestrators
====================================================
Turns an uploaded workbook into named batches of metric records ready for
``db.upsert_records``.

Supported report types:
  • proposal          — monthly proposal report: categories × days, plus
                        TOTAL / MEDIA summary columns
  • logistics         — consolidated logistics: region blocks, date row on the
                        line after the region name, one row per state
  • logistics_daily   — two-sheet daily logistics report: category blocks
                        (sheet 1) and region/state blocks (sheet 2)
  • stock             — stock report: one sheet per product, item-type blocks
                        of Estoque / Embossing / Saldo rows

Every orchestrator returns a ``ParseResult``; structural problems raise an
``IngestionError`` subclass (see sheet_engine).  Cell-level problems never
raise; they are returned as ``RowDiagnostic`` entries.
"""

from __future__ import annotations

import base64
import binascii
import concurrent.futures
import io
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd

from cell_parsers import (
    clean,
    is_blank_row,
    parse_header_date,
    parse_number,
    parse_number_legacy,
)
from sheet_engine import (
    BlankRow,
    DateHeader,
    DedupSet,
    FormatRejected,
    IngestionError,
    ParseContext,
    RowClass,
    RowDiagnostic,
    SectionKind,
    SectionRules,
    StructuralError,
    UploadNotAllowed,
    WritePhaseError,
    ZeroYieldError,
    extract_row_values,
    find_fixed_header,
    find_section_header,
    walk_sheet,
)

logger = logging.getLogger(__name__)

Sheets = Dict[str, List[List[Any]]]


# ══════════════════════════════════════════════════════════════════════════════
# Result / user types
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ParseResult:
    report_type: str
    batches: Dict[str, List[Dict[str, Any]]]
    diagnostics: List[RowDiagnostic] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.batches.values())

    @property
    def warnings(self) -> List[RowDiagnostic]:
        return [d for d in self.diagnostics if d.level == "warning"]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable summary (records are not included)."""
        return {
            "report_type": self.report_type,
            "record_count": self.record_count,
            "batches": {name: len(records) for name, records in self.batches.items()},
            "metadata": self.metadata,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass(frozen=True)
class UploadUser:
    id: Optional[str]
    role: str = "user"


def check_user(user: Optional[UploadUser]) -> str:
    if user is None or not user.id:
        raise UploadNotAllowed("Usuário não identificado.")
    if (user.role or "").lower() == "guest":
        raise UploadNotAllowed("Convidados não podem enviar arquivos.")
    return user.id


# ══════════════════════════════════════════════════════════════════════════════
# Workbook loader: bytes, BytesIO, base64 string or path
# ══════════════════════════════════════════════════════════════════════════════

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
_SPREADSHEET_MIME = re.compile(r"spreadsheetml\.sheet|excel|ms-excel", re.IGNORECASE)
_GENERIC_MIME = ("", "application/octet-stream")


def check_format(filename: str, mimetype: Optional[str] = None) -> str:
    """Return the lower-case extension, or raise FormatRejected."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise FormatRejected(f"Formato de arquivo inválido ({ext or 'sem extensão'}). Use .xlsx ou .xls.")
    if mimetype and mimetype.lower() not in _GENERIC_MIME and not _SPREADSHEET_MIME.search(mimetype):
        raise FormatRejected(f"Tipo de arquivo inválido ({mimetype}). Use .xlsx ou .xls.")
    return ext


def _frame_rows(df: pd.DataFrame) -> List[List[Any]]:
    """DataFrame → list of rows; NaN/NaT become None, Timestamps become datetimes."""
    rows = df.astype(object).where(pd.notna(df), None).values.tolist()
    return [
        [v.to_pydatetime() if isinstance(v, pd.Timestamp) else v for v in row]
        for row in rows
    ]


def load_workbook(source: Union[str, bytes, io.BytesIO], filename: str = "") -> Sheets:
    """
    Load every sheet of a workbook into ``{sheet_name: rows}``, in sheet order.

    Rows keep raw cell values (no header applied).  ``.xls`` files are read
    with xlrd, everything else with openpyxl.
    """
    if isinstance(source, str) and not os.path.exists(source):
        try:
            source = base64.b64decode(source.split(",", 1)[-1], validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error("Bad base64 payload for '%s': %s", filename, e)
            raise FormatRejected(f"Arquivo não é uma planilha válida: {e}") from e
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    engine = "xlrd" if filename.lower().endswith(".xls") else "openpyxl"
    try:
        xl = pd.ExcelFile(source, engine=engine)
    except Exception as e:
        logger.error("Failed to load workbook '%s': %s", filename, e)
        raise FormatRejected(f"Não foi possível ler a planilha: {e}") from e

    sheets: Sheets = {}
    for name in xl.sheet_names:
        df = xl.parse(name, header=None, dtype=object)
        sheets[name] = _frame_rows(df)
        logger.debug("Loaded sheet '%s': %d rows", name, len(sheets[name]))
    if not sheets:
        raise StructuralError("A planilha não contém abas.")
    return sheets


def _sheet_at(sheets: Sheets, index: int) -> Tuple[Optional[str], List[List[Any]]]:
    names = list(sheets)
    if index >= len(names):
        return None, []
    return names[index], sheets[names[index]]


def _stamp(records: List[Dict[str, Any]], source_file_type: str, uploaded_by: Optional[str]) -> None:
    for rec in records:
        rec["source_file_type"] = source_file_type
        rec["uploaded_by"] = uploaded_by


# ══════════════════════════════════════════════════════════════════════════════
# Monthly proposal report
# ══════════════════════════════════════════════════════════════════════════════

PROPOSAL_CATEGORIES = ("NÃO DIGITADAS", "DIGITADAS", "ESTEIRA")
PROPOSAL_SPECIAL_PREFIXES = ("CONTAS ATIVAS", "FAIXA DE LIMITE")


def proposal_rules(today: Optional[date] = None) -> SectionRules:
    return SectionRules(
        name="proposal",
        kind=SectionKind.CATEGORY,
        date_parser=partial(_proposal_date, today=today),
        openers={c: c for c in PROPOSAL_CATEGORIES},
        ignored_labels=frozenset(["GERAL", "INTEGRADAS"]),
        date_header=DateHeader.SHEET,
        on_blank=BlankRow.STOP,
        emit_on_opener=True,
        secondary_header_check=True,
    )


def _proposal_date(value: Any, file_year: Optional[int], today: Optional[date] = None) -> Optional[str]:
    return parse_header_date(
        value, file_year, today,
        allow_month_names=True,
        serial_range=(2000, 60000),
        roll_back_future_months=True,
    )


def _proposal_category(current: str, label: str) -> str:
    upper = label.upper()
    for prefix in PROPOSAL_SPECIAL_PREFIXES:
        if upper.startswith(prefix):
            return prefix
    return current


def _cell_number(row, col: Optional[int]) -> Optional[float]:
    if col is None or col >= len(row):
        return None
    return parse_number_legacy(row[col])


def parse_proposal_report(
    sheets: Sheets,
    uploaded_by: Optional[str],
    today: Optional[date] = None,
) -> ParseResult:
    """Daily values per category/sub-category plus a TOTAL/MEDIA summary per month."""
    sheet_name, rows = _sheet_at(sheets, 0)
    if len(rows) < 3:
        raise StructuralError("Planilha vazia ou com formato inválido (menos de 3 linhas).")

    rules = proposal_rules(today)
    header = find_fixed_header(rows, rules.date_parser, today)
    summary_month = header.summary_month
    summary: List[Dict[str, Any]] = []

    def emit(ctx: ParseContext, row, row_index, label, row_class):
        category = _proposal_category(ctx.current_category, label)
        records: List[Dict[str, Any]] = []

        if row_class == RowClass.DATA:
            for _, iso, value in extract_row_values(row, ctx.date_columns, parse_number_legacy):
                records.append({
                    "metric_date": iso,
                    "metric_month": summary_month,
                    "category": category,
                    "sub_category": label,
                    "value": value,
                })

        if header.total_col is not None or header.media_col is not None:
            total = _cell_number(row, header.total_col)
            media = _cell_number(row, header.media_col)
            if total is not None or media is not None:
                summary.append({
                    "metric_month": summary_month,
                    "category": category,
                    "sub_category": label,
                    "total_value": total,
                    "average_value": media,
                })
        return records, []

    daily, diagnostics, _ = walk_sheet(
        rules, rows, emit,
        ParseContext(file_year=header.file_year, date_columns=header.date_columns,
                     sheet_dates=header.date_columns),
        sheet=sheet_name, start=header.row_index + 1,
    )

    _stamp(daily, "monthly", uploaded_by)
    _stamp(summary, "monthly", uploaded_by)

    logger.info("Proposal report: %d daily, %d summary records (%s)", len(daily), len(summary), summary_month)
    return ParseResult(
        "proposal",
        {"daily": daily, "summary": summary},
        diagnostics,
        {"sheet": sheet_name, "file_year": header.file_year, "summary_month": summary_month,
         "header_row": header.row_index + 1},
    )


# ══════════════════════════════════════════════════════════════════════════════
# Consolidated logistics report
# ══════════════════════════════════════════════════════════════════════════════

REGIONS = ("NORTE", "NORDESTE", "CENTRO OESTE", "SUDESTE", "SUL")

REGION_STATES: Dict[str, Tuple[str, ...]] = {
    "NORTE": ("ACRE", "AMAPA", "AMAZONAS", "PARÁ", "RONDONIA", "RORAIMA", "TOCANTINS"),
    "NORDESTE": ("ALAGOAS", "BAHIA", "CEARA", "MARANHÃO", "PARAIBA", "PERNAMBUCO",
                 "PIAUI", "RG NORTE", "SERGIPE"),
    "CENTRO OESTE": ("MATO GROSSO", "MATO GROSSO SUL", "DISTRITO FEDERAL", "GOIAS"),
    "SUDESTE": ("MINAS GERAIS", "SÃO PAULO", "RIO DE JANEIRO", "ESPÍRITO SANTO"),
    "SUL": ("PARANA", "SANTA CATARINA", "RG SUL"),
}


def _logistics_date(value: Any, file_year: Optional[int], today: Optional[date] = None) -> Optional[str]:
    return parse_header_date(
        value, file_year, today,
        allow_ymd=False,
        allow_month_names=False,
        roll_back_future_months=False,
        min_year=1900,
    )


def logistics_rules(today: Optional[date] = None) -> SectionRules:
    return SectionRules(
        name="logistics",
        kind=SectionKind.REGION,
        date_parser=partial(_logistics_date, today=today),
        openers={r: r for r in REGIONS},
        terminators=frozenset(["GERAL"]),
        date_header=DateHeader.NEXT_ROW,
    )


def parse_logistics_report(
    sheets: Sheets,
    uploaded_by: Optional[str],
    today: Optional[date] = None,
) -> ParseResult:
    """One value per (date, region, state) from region blocks."""
    sheet_name, rows = _sheet_at(sheets, 0)
    if len(rows) < 5:
        raise StructuralError("Planilha de logística vazia ou com poucas linhas.")

    def emit(ctx: ParseContext, row, row_index, label, row_class):
        return [
            {"metric_date": iso, "region": ctx.current_region, "state": label, "value": value}
            for _, iso, value in extract_row_values(row, ctx.date_columns, parse_number)
        ], []

    records, diagnostics, _ = walk_sheet(logistics_rules(today), rows, emit, sheet=sheet_name)
    _stamp(records, "logistics", uploaded_by)
    logger.info("Logistics report: %d records", len(records))
    return ParseResult("logistics", {"logistics": records}, diagnostics, {"sheet": sheet_name})


# ══════════════════════════════════════════════════════════════════════════════
# Daily logistics report (two sheets)
# ══════════════════════════════════════════════════════════════════════════════

DAILY_CATEGORY_PREFIXES = (
    ("ENTREGAS -", "ENTREGAS"),
    ("DEVOLUÇÃO -", "DEVOLUÇÃO - MOTIVOS"),
    ("ENTREGA /", "ENTREGA / REGIÃO"),
)
STATE_MAX_LEN = 50


def _daily_date(value: Any, file_year: Optional[int], today: Optional[date] = None) -> Optional[str]:
    return parse_header_date(
        value, file_year, today,
        allow_month_names=False,
        roll_back_future_months=False,
    )


def daily_category_rules(today: Optional[date] = None) -> SectionRules:
    return SectionRules(
        name="logistics_daily.categories",
        kind=SectionKind.CATEGORY,
        date_parser=partial(_daily_date, today=today),
        prefix_openers=DAILY_CATEGORY_PREFIXES,
        terminators=frozenset(["GERAL", "TOTAL"]),
        terminates=frozenset(["ENTREGA / REGIÃO"]),
    )


def daily_region_rules(today: Optional[date] = None) -> SectionRules:
    return SectionRules(
        name="logistics_daily.regions",
        kind=SectionKind.REGION,
        date_parser=partial(_daily_date, today=today),
        openers={r: r for r in REGIONS},
        terminators=frozenset(["GERAL", "TOTAL"]),
    )


def _walk_daily_sheet(rules, rows, sheet_name, emit):
    """Walk one sheet of the daily report; sheets without a date header yield nothing."""
    header = find_section_header(rows, rules)
    if header is None:
        logger.warning("[%s] No date header in sheet '%s', skipped", rules.name, sheet_name)
        return [], [RowDiagnostic(sheet_name or "", 0, "warning", "no date header found")]
    header_index, sheet_dates = header
    records, diagnostics, _ = walk_sheet(
        rules, rows, emit, ParseContext(sheet_dates=sheet_dates),
        sheet=sheet_name, start=header_index,
    )
    return records, diagnostics


def parse_logistics_daily_report(
    sheets: Sheets,
    uploaded_by: Optional[str],
    file_type: str = "daily",
    today: Optional[date] = None,
) -> ParseResult:
    """Category view (first sheet) and region/state view (second sheet)."""
    if file_type not in ("daily", "consolidated"):
        raise ValueError(f"file_type must be 'daily' or 'consolidated', got {file_type!r}")

    metric_key = "processed_daily" if file_type == "daily" else "processed_accumulated"
    state_source = f"logistics_state_{file_type}"
    seen = DedupSet()

    def emit_category(ctx: ParseContext, row, row_index, label, row_class):
        out = []
        for _, iso, value in extract_row_values(row, ctx.date_columns, parse_number):
            if seen.add(("category", iso, ctx.current_category, label)):
                out.append({"metric_date": iso, "category": ctx.current_category,
                            "sub_category": label, "value": value})
        return out, []

    def emit_state(ctx: ParseContext, row, row_index, label, row_class):
        diags = []
        state = label[:STATE_MAX_LEN]
        if state.upper() not in REGION_STATES.get(ctx.current_region, ()):
            diags.append(RowDiagnostic(
                state_sheet or "", row_index, "warning",
                f"state not listed under region {ctx.current_region}", label,
            ))
            logger.warning("State '%s' not listed under region %s, ignored", state, ctx.current_region)
            return [], diags
        out = []
        for _, iso, value in extract_row_values(row, ctx.date_columns, parse_number):
            if seen.add(("state", iso, state.upper(), metric_key)):
                out.append({"metric_date": iso, "region": ctx.current_region, "state": state,
                            "metric_key": metric_key, "value": value})
        return out, diags

    category_sheet, category_rows = _sheet_at(sheets, 0)
    state_sheet, state_rows = _sheet_at(sheets, 1)

    consolidated, diagnostics = _walk_daily_sheet(
        daily_category_rules(today), category_rows, category_sheet, emit_category,
    )
    states, state_diags = [], []
    if state_sheet is not None:
        states, state_diags = _walk_daily_sheet(
            daily_region_rules(today), state_rows, state_sheet, emit_state,
        )
    else:
        logger.warning("Daily report has no second sheet; state view skipped")

    _stamp(consolidated, file_type, uploaded_by)
    _stamp(states, state_source, uploaded_by)
    logger.info("Daily logistics (%s): %d category, %d state records",
                file_type, len(consolidated), len(states))
    return ParseResult(
        "logistics_daily",
        {"consolidated": consolidated, "state": states},
        diagnostics + state_diags,
        {"file_type": file_type, "sheets": [s for s in (category_sheet, state_sheet) if s]},
    )


# ══════════════════════════════════════════════════════════════════════════════
# Stock report
# ══════════════════════════════════════════════════════════════════════════════

STOCK_PRODUCT_CODES = ("click", "mt", "capital")
STOCK_ITEM_TYPES = ("PLÁSTICO", "CARTA", "ENVELOPE")
STOCK_METRIC_LABELS = {
    "Estoque Dia Ant.": "Estoque Dia Ant.",
    "Embossing D+2": "Embossing",
    "Embossing D-2": "Embossing",
    "Saldo": "Saldo",
}


def stock_rules(today: Optional[date] = None) -> SectionRules:
    return SectionRules(
        name="stock",
        kind=SectionKind.ITEM_TYPE,
        date_parser=partial(_daily_date, today=today),
        openers={t: t for t in STOCK_ITEM_TYPES},
        skip_labels=frozenset(["COMPRA PERDA"]),
        skip_prefixes=("OBSERVAÇÃO",),
        data_labels=frozenset(STOCK_METRIC_LABELS),
    )


def parse_stock_report(
    sheets: Sheets,
    uploaded_by: Optional[str],
    today: Optional[date] = None,
) -> ParseResult:
    """Stock metrics per product (one sheet each), item type and day."""
    rules = stock_rules(today)
    records: List[Dict[str, Any]] = []
    diagnostics: List[RowDiagnostic] = []
    parsed_sheets = []

    for index, product_code in enumerate(STOCK_PRODUCT_CODES):
        sheet_name, rows = _sheet_at(sheets, index)
        if sheet_name is None:
            break
        if not rows:
            logger.warning("Stock sheet '%s' (%s) is empty", sheet_name, product_code)
            continue

        def emit(ctx: ParseContext, row, row_index, label, row_class, product_code=product_code):
            metric_type = STOCK_METRIC_LABELS[label]
            return [
                {"metric_date": iso, "item_type": ctx.current_item_type,
                 "metric_type": metric_type, "product_code": product_code, "value": value}
                for _, iso, value in extract_row_values(row, ctx.date_columns, parse_number)
            ], []

        found, diags, _ = walk_sheet(rules, rows, emit, sheet=sheet_name)
        records.extend(found)
        diagnostics.extend(diags)
        parsed_sheets.append(sheet_name)

    _stamp(records, "stock", uploaded_by)
    logger.info("Stock report: %d records from %d sheet(s)", len(records), len(parsed_sheets))
    return ParseResult("stock", {"stock": records}, diagnostics, {"sheets": parsed_sheets})


# ══════════════════════════════════════════════════════════════════════════════
# Report-type detection
# ══════════════════════════════════════════════════════════════════════════════

_TYPE_SIGNALS: Dict[str, Tuple[str, ...]] = {
    "proposal": PROPOSAL_CATEGORIES + PROPOSAL_SPECIAL_PREFIXES + ("INTEGRADAS", "MEDIA", "MÉDIA"),
    "logistics": REGIONS,
    "logistics_daily": ("ENTREGAS -", "DEVOLUÇÃO -", "ENTREGA /"),
    "stock": STOCK_ITEM_TYPES + tuple(k.upper() for k in STOCK_METRIC_LABELS) + ("COMPRA PERDA",),
}


def detect_report_type(sheets: Sheets, max_scan: int = 60) -> Optional[str]:
    """Best guess at the report type from the label vocabulary of the sheets."""
    scores = {k: 0 for k in _TYPE_SIGNALS}
    for rows in sheets.values():
        for row in rows[:max_scan]:
            if is_blank_row(row):
                continue
            label = clean(row[0]).upper()
            if not label:
                continue
            for report_type, signals in _TYPE_SIGNALS.items():
                if any(label == s or label.startswith(s) for s in signals):
                    scores[report_type] += 1
    # a daily report also lists regions on its second sheet
    if scores["logistics_daily"]:
        scores["logistics_daily"] += scores["logistics"]
    best = max(scores, key=scores.get)
    logger.debug("Report type scores: %s", scores)
    return best if scores[best] > 0 else None


# ══════════════════════════════════════════════════════════════════════════════
# Public API
# ══════════════════════════════════════════════════════════════════════════════

ORCHESTRATORS: Dict[str, Callable[..., ParseResult]] = {
    "proposal": parse_proposal_report,
    "logistics": parse_logistics_report,
    "logistics_daily": parse_logistics_daily_report,
    "stock": parse_stock_report,
}

# batch name -> storage table
BATCH_TABLES: Dict[Tuple[str, str], str] = {
    ("proposal", "daily"): "daily_proposal_metrics",
    ("proposal", "summary"): "monthly_summary_metrics",
    ("logistics", "logistics"): "logistics_daily_metrics",
    ("logistics_daily", "consolidated"): "logistics_daily_consolidated",
    ("logistics_daily", "state"): "logistics_report_daily_state",
    ("stock", "stock"): "stock_daily_metrics",
}


def parse_report(
    report_type: Optional[str],
    source: Union[str, bytes, io.BytesIO],
    filename: str,
    user: Optional[UploadUser],
    today: Optional[date] = None,
    mimetype: Optional[str] = None,
    **options: Any,
) -> ParseResult:
    """
    Full ingestion pipeline for one uploaded file.

    user check → format check → load → (detect type) → parse → zero-yield check.
    ``report_type`` may be None or "auto" to detect it from the labels.
    Extra keyword options are passed to the orchestrator
    (``file_type`` for the daily logistics report).
    """
    uploaded_by = check_user(user)
    check_format(filename, mimetype)
    sheets = load_workbook(source, filename)

    if report_type in (None, "", "auto"):
        report_type = detect_report_type(sheets)
        if report_type is None:
            raise StructuralError("Tipo de relatório não reconhecido.")
        logger.info("Detected report type '%s' for '%s'", report_type, filename)
    if report_type not in ORCHESTRATORS:
        raise FormatRejected(f"Tipo de relatório desconhecido: {report_type}")
    if report_type != "logistics_daily":
        options.pop("file_type", None)

    try:
        result = ORCHESTRATORS[report_type](sheets, uploaded_by, today=today, **options)
    except (IngestionError, ValueError):
        raise
    except Exception:
        logger.exception("Parser crashed on file '%s' (%s)", filename, report_type)
        raise

    result.metadata.setdefault("source_file", filename)
    if result.record_count == 0:
        raise ZeroYieldError(
            f"Nenhum dado válido encontrado em '{filename}'. Verifique o formato da planilha."
        )
    return result


Writer = Callable[[str, List[Dict[str, Any]]], int]


def write_batches(result: ParseResult, writer: Writer, max_workers: int = 4) -> Dict[str, int]:
    """
    Write every non-empty batch with ``writer(table, records)`` in parallel.

    Batches are independent: a failed batch does not undo the others.
    Failures are raised together as WritePhaseError once all batches finish.
    """
    jobs = {
        name: (BATCH_TABLES.get((result.report_type, name), name), records)
        for name, records in result.batches.items() if records
    }
    written: Dict[str, int] = {}
    failures: Dict[str, str] = {}
    if not jobs:
        return written

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as executor:
        future_to_batch = {
            executor.submit(writer, table, records): name
            for name, (table, records) in jobs.items()
        }
        for future in concurrent.futures.as_completed(future_to_batch):
            name = future_to_batch[future]
            try:
                written[name] = future.result()
            except Exception as e:
                logger.error("Batch '%s' failed: %s", name, e)
                failures[name] = str(e)

    if failures:
        raise WritePhaseError(failures, written)
    logger.info("Wrote %s", written)
    return written
