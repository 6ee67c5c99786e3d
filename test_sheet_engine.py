import unittest
from datetime import date, datetime

from report_parsers import (
    daily_category_rules,
    daily_region_rules,
    logistics_rules,
    proposal_rules,
    stock_rules,
)
from sheet_engine import (
    DedupSet,
    ParseContext,
    RowClass,
    StructuralError,
    classify_row,
    extract_row_values,
    find_fixed_header,
    find_section_header,
    infer_file_year,
    parse_date_row,
    walk_sheet,
)

JUNE_2024 = date(2024, 6, 1)
MAR_1 = datetime(2024, 3, 1)
MAR_2 = datetime(2024, 3, 2)


def run(rules, rows, context=None):
    """Fold classify_row over rows; return the list of (context, row_class)."""
    context = context or ParseContext()
    steps = []
    for i, row in enumerate(rows):
        context, row_class, _ = classify_row(rules, context, row, i, "test")
        steps.append((context, row_class))
    return steps


class TestBlankRowIsolation(unittest.TestCase):
    def assertNoContext(self, ctx):
        self.assertIsNone(ctx.active)
        self.assertEqual(ctx.date_columns, {})
        self.assertFalse(ctx.expecting_header)

    def test_stock_carta_then_blank(self):
        steps = run(stock_rules(JUNE_2024), [
            ["CARTA", MAR_1, MAR_2],
            [None, None, None],
            ["Saldo", 10, 20],
            ["ENVELOPE", MAR_1],
            ["Saldo", 5],
        ])
        ctx, row_class = steps[0]
        self.assertEqual(row_class, RowClass.OPENER)
        self.assertEqual(ctx.current_item_type, "CARTA")
        self.assertEqual(ctx.date_columns, {1: "2024-03-01", 2: "2024-03-02"})

        self.assertEqual(steps[1][1], RowClass.BLANK)
        self.assertNoContext(steps[1][0])
        self.assertEqual(steps[2][1], RowClass.ORPHAN)

        ctx, row_class = steps[4]
        self.assertEqual(row_class, RowClass.DATA)
        self.assertEqual(ctx.current_item_type, "ENVELOPE")
        self.assertEqual(ctx.date_columns, {1: "2024-03-01"})

    def test_blank_resets_every_resetting_layout(self):
        cases = [
            (stock_rules(JUNE_2024), [["PLÁSTICO", MAR_1]]),
            (logistics_rules(JUNE_2024), [["SUL"], [None, "01/03/2024"]]),
            (logistics_rules(JUNE_2024), [["SUL"]]),
            (daily_region_rules(JUNE_2024), [["NORTE", MAR_1]]),
            (daily_category_rules(JUNE_2024), [["ENTREGAS - D-1", MAR_1]]),
        ]
        for rules, opening in cases:
            steps = run(rules, opening + [[], ["ACRE", 1]])
            self.assertNoContext(steps[-2][0])
            self.assertNotEqual(steps[-1][1], RowClass.DATA, rules.name)

    def test_blank_keeps_file_year_and_sheet_dates(self):
        ctx = ParseContext(file_year=2023, sheet_dates={1: "2023-01-01"})
        ctx = ctx.open_section(stock_rules().kind, "CARTA", {2: "2023-01-02"})
        after, _, _ = classify_row(stock_rules(), ctx, [None], 0)
        self.assertEqual(after.file_year, 2023)
        self.assertEqual(after.sheet_dates, {1: "2023-01-01"})
        self.assertEqual(after.date_columns, {})


class TestLogisticsBlocks(unittest.TestCase):
    def test_region_block_with_next_row_header(self):
        steps = run(logistics_rules(JUNE_2024), [
            ["NORDESTE", None, None, None],
            [None, "01/03/2024", "%", "02/03/2024"],
            ["BAHIA", 10, "%", 20],
            ["GERAL", 30, None, 40],
            ["SERGIPE", 1, None, 2],
        ])
        self.assertEqual([s[1] for s in steps], [
            RowClass.OPENER, RowClass.HEADER, RowClass.DATA, RowClass.TERMINATOR, RowClass.ORPHAN,
        ])
        self.assertTrue(steps[0][0].expecting_header)
        self.assertEqual(steps[1][0].date_columns, {1: "2024-03-01", 3: "2024-03-02"})
        self.assertEqual(steps[2][0].current_region, "NORDESTE")
        self.assertIsNone(steps[3][0].active)

    def test_rejected_header_on_region_row_reopens(self):
        steps = run(logistics_rules(JUNE_2024), [["SUL"], ["NORTE", "x"]])
        ctx, row_class = steps[1]
        self.assertEqual(row_class, RowClass.REJECTED_HEADER)
        self.assertEqual(ctx.current_region, "NORTE")
        self.assertTrue(ctx.expecting_header)

    def test_rejected_header_on_plain_row_resets(self):
        steps = run(logistics_rules(JUNE_2024), [["SUL"], ["nada", "x"]])
        self.assertIsNone(steps[1][0].active)
        self.assertFalse(steps[1][0].expecting_header)


class TestProposalRows(unittest.TestCase):
    def setUp(self):
        self.rules = proposal_rules(JUNE_2024)
        dates = {1: "2024-01-15", 2: "2024-01-16"}
        self.ctx = ParseContext(file_year=2024, date_columns=dates, sheet_dates=dates)

    def test_secondary_header_is_not_emitted(self):
        ctx, row_class, _ = classify_row(self.rules, self.ctx, ["DIGITADAS", "15-JAN"], 5)
        self.assertEqual(row_class, RowClass.HEADER)
        self.assertEqual(ctx.current_category, "DIGITADAS")

    def test_opener_keeps_sheet_dates(self):
        ctx, row_class, _ = classify_row(self.rules, self.ctx, ["ESTEIRA", 4], 5)
        self.assertEqual(row_class, RowClass.OPENER)
        self.assertEqual(ctx.date_columns, {1: "2024-01-15", 2: "2024-01-16"})

    def test_blank_stops_walk(self):
        steps = run(self.rules, [["DIGITADAS", 1], [None, None], ["Cartões", 1]], self.ctx)
        self.assertEqual([s[1] for s in steps], [RowClass.OPENER, RowClass.STOP, RowClass.STOPPED])

    def test_ignored_and_orphan_labels(self):
        _, row_class, _ = classify_row(self.rules, self.ctx, ["GERAL", 1], 3)
        self.assertEqual(row_class, RowClass.IGNORED)
        _, row_class, diags = classify_row(self.rules, self.ctx, ["Cartões", 1], 3, "Plan1")
        self.assertEqual(row_class, RowClass.ORPHAN)
        self.assertEqual(diags[0].level, "warning")
        self.assertEqual(diags[0].label, "Cartões")


class TestDailyCategoryRows(unittest.TestCase):
    def test_total_closes_only_region_category(self):
        rules = daily_category_rules(JUNE_2024)
        entregas = ParseContext().open_section(rules.kind, "ENTREGAS", {1: "2024-03-01"})
        ctx, row_class, _ = classify_row(rules, entregas, ["TOTAL", 5], 4)
        self.assertEqual(row_class, RowClass.TERMINATOR)
        self.assertEqual(ctx.current_category, "ENTREGAS")

        regiao = ParseContext().open_section(rules.kind, "ENTREGA / REGIÃO", {1: "2024-03-01"})
        ctx, _, _ = classify_row(rules, regiao, ["geral", 5], 4)
        self.assertIsNone(ctx.active)

    def test_prefix_opener_falls_back_to_sheet_dates(self):
        rules = daily_category_rules(JUNE_2024)
        ctx = ParseContext(sheet_dates={1: "2024-03-01"})
        ctx, row_class, _ = classify_row(rules, ctx, ["DEVOLUÇÃO - MOTIVOS", None], 9)
        self.assertEqual(row_class, RowClass.OPENER)
        self.assertEqual(ctx.current_category, "DEVOLUÇÃO - MOTIVOS")
        self.assertEqual(ctx.date_columns, {1: "2024-03-01"})


class TestStockRows(unittest.TestCase):
    def setUp(self):
        self.rules = stock_rules(JUNE_2024)
        self.ctx = ParseContext().open_section(self.rules.kind, "PLÁSTICO", {1: "2024-03-01"})

    def test_non_metric_rows_are_skipped(self):
        for label in ("COMPRA PERDA", "OBSERVAÇÃO: conferir"):
            ctx, row_class, diags = classify_row(self.rules, self.ctx, [label, 3], 2)
            self.assertEqual(row_class, RowClass.SKIPPED)
            self.assertEqual(ctx.current_item_type, "PLÁSTICO")
            self.assertTrue(diags)

    def test_unknown_label_closes_block(self):
        ctx, row_class, _ = classify_row(self.rules, self.ctx, ["Pedido", 3], 2)
        self.assertEqual(row_class, RowClass.UNKNOWN_LABEL)
        self.assertIsNone(ctx.active)

    def test_opener_without_dates_is_rejected(self):
        ctx, row_class, diags = classify_row(self.rules, ParseContext(), ["CARTA", "abc"], 0)
        self.assertEqual(row_class, RowClass.REJECTED_HEADER)
        self.assertIsNone(ctx.active)
        self.assertEqual(diags[0].level, "warning")


class TestHeaderLocators(unittest.TestCase):
    def test_find_fixed_header(self):
        rows = [
            ["Relatório de propostas 2023"],
            [None, "15-JAN", "16-JAN", "TOTAL", "MÉDIA", "MÊS"],
            ["DIGITADAS", 1, 2, 3, 1.5, None],
        ]
        header = find_fixed_header(rows, proposal_rules(JUNE_2024).date_parser, JUNE_2024)
        self.assertEqual(header.row_index, 1)
        self.assertEqual(header.file_year, 2023)
        self.assertEqual(header.date_columns, {1: "2023-01-15", 2: "2023-01-16"})
        self.assertEqual(header.total_col, 3)
        self.assertEqual(header.media_col, 4)
        self.assertEqual(header.summary_month, "2023-01-01")

    def test_find_fixed_header_missing(self):
        with self.assertRaises(StructuralError):
            find_fixed_header([["a", "b", "c"], ["d", "e", "f"]], proposal_rules().date_parser, JUNE_2024)

    def test_file_year_from_title(self):
        rows = [["Período 01/02/2022 a 28/02/2022"], [], ["hdr"]]
        self.assertEqual(infer_file_year(rows, 2, JUNE_2024), 2022)
        self.assertEqual(infer_file_year([["sem ano"], ["hdr"]], 1, JUNE_2024), 2024)
        self.assertEqual(infer_file_year([["Relatório 20240315"], ["hdr"]], 1, JUNE_2024), 2024)

    def test_find_section_header(self):
        rows = [["Relatório diário"], ["ENTREGAS - D-1", MAR_1, "%", MAR_2]]
        found = find_section_header(rows, daily_category_rules(JUNE_2024))
        self.assertEqual(found, (1, {1: "2024-03-01", 3: "2024-03-02"}))
        self.assertIsNone(find_section_header([["nada", MAR_1]], daily_category_rules(JUNE_2024)))

    def test_parse_date_row_skips_label_column(self):
        dates = parse_date_row([MAR_1, MAR_2], stock_rules().date_parser)
        self.assertEqual(dates, {1: "2024-03-02"})


class TestExtraction(unittest.TestCase):
    def test_extract_row_values(self):
        values = list(extract_row_values(
            ["x", "1,5", None, 0],
            {1: "2024-03-01", 2: "2024-03-02", 3: "2024-03-03", 9: "2024-03-09"},
        ))
        self.assertEqual(values, [(1, "2024-03-01", 1.5), (3, "2024-03-03", 0)])

    def test_dedup_set(self):
        seen = DedupSet()
        self.assertTrue(seen.add(("2024-03-01", "SP")))
        self.assertFalse(seen.add(("2024-03-01", "SP")))
        self.assertEqual(len(seen), 1)

    def test_walk_sheet_collects_emitted_records(self):
        rows = [["CARTA", MAR_1], ["Saldo", 7], ["Saldo", None], [], ["Saldo", 9]]

        def emit(ctx, row, row_index, label, row_class):
            return [{"row": row_index, "item": ctx.current_item_type}], []

        records, diagnostics, ctx = walk_sheet(stock_rules(JUNE_2024), rows, emit, sheet="click")
        self.assertEqual(records, [{"row": 1, "item": "CARTA"}, {"row": 2, "item": "CARTA"}])
        self.assertIsNone(ctx.active)
        self.assertTrue(any(d.row_index == 4 for d in diagnostics))


if __name__ == '__main__':
    unittest.main()
