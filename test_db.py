import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import psycopg2

import db


class DbTestCase(unittest.TestCase):
    def setUp(self):
        self.conn = MagicMock()
        self.cursor = self.conn.cursor.return_value
        self.pool = MagicMock()
        self.pool.getconn.return_value = self.conn
        patcher = patch.object(db, "db_pool", self.pool)
        patcher.start()
        self.addCleanup(patcher.stop)


class TestSchema(DbTestCase):
    def test_create_table_has_conflict_key(self):
        sql = db._create_table_sql("stock_daily_metrics")
        self.assertIn("CREATE TABLE IF NOT EXISTS stock_daily_metrics", sql)
        self.assertIn("UNIQUE (product_code, item_type, metric_date, metric_type)", sql)

    def test_init_db_creates_every_table(self):
        self.assertTrue(db.init_db())
        self.assertEqual(self.cursor.execute.call_count, len(db.METRIC_TABLES) + 1)
        self.conn.commit.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn)

    def test_init_db_without_connection(self):
        with patch.object(db, "get_db_connection", return_value=None):
            self.assertFalse(db.init_db())


class TestUpsert(DbTestCase):
    def test_dedupe_last_write_wins(self):
        records = [
            {"metric_date": "2024-03-01", "state": "SP", "metric_key": "k", "value": 1},
            {"metric_date": "2024-03-02", "state": "SP", "metric_key": "k", "value": 2},
            {"metric_date": "2024-03-01", "state": "SP", "metric_key": "k", "value": 3},
        ]
        rows = db.dedupe_records(records, ("metric_date", "state", "metric_key"))
        self.assertEqual([r["value"] for r in rows], [3, 2])

    @patch("psycopg2.extras.execute_values")
    def test_upsert_sends_on_conflict_query(self, execute_values):
        records = [
            {"metric_date": "2024-03-01", "region": "SUDESTE", "state": "SÃO PAULO",
             "metric_key": "processed_daily", "value": 8, "source_file_type": "logistics_state_daily",
             "uploaded_by": "u"},
        ] * 2
        self.assertEqual(db.upsert_records("logistics_report_daily_state", records), 1)

        _, query, values = execute_values.call_args[0][:3]
        self.assertIn("INSERT INTO logistics_report_daily_state", query)
        self.assertIn("ON CONFLICT (metric_date, state, metric_key) DO UPDATE SET", query)
        self.assertIn("value = EXCLUDED.value", query)
        self.assertNotIn("state = EXCLUDED.state", query)
        self.assertEqual(values, [("2024-03-01", "SUDESTE", "SÃO PAULO", "processed_daily", 8,
                                   "logistics_state_daily", "u")])
        self.conn.commit.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn)

    @patch("psycopg2.extras.execute_values", side_effect=psycopg2.Error("boom"))
    def test_upsert_error_rolls_back_and_raises(self, _):
        with self.assertRaises(psycopg2.Error):
            db.upsert_records("stock_daily_metrics", [{"metric_date": "2024-03-01", "value": 1}])
        self.conn.rollback.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn)

    def test_upsert_unknown_table(self):
        with self.assertRaises(ValueError):
            db.upsert_records("file_uploads", [{"a": 1}])

    def test_upsert_nothing(self):
        self.assertEqual(db.upsert_records("stock_daily_metrics", []), 0)
        self.pool.getconn.assert_not_called()

    def test_upsert_without_connection(self):
        with patch.object(db, "get_db_connection", return_value=None):
            with self.assertRaises(ConnectionError):
                db.upsert_records("stock_daily_metrics", [{"metric_date": "2024-03-01"}])

    def test_save_upload(self):
        self.assertTrue(db.save_upload("a.xlsx", "stock", b"abc", 3, "u"))
        params = self.cursor.execute.call_args[0][1]
        self.assertEqual(params[0], "a.xlsx")
        self.assertEqual(params[3], 3)


class TestReads(DbTestCase):
    def test_rows_are_json_ready(self):
        self.cursor.fetchall.return_value = [
            {"metric_date": date(2024, 3, 1), "metric_month": date(2024, 3, 1),
             "category": "ESTEIRA", "sub_category": "Análise", "value": Decimal("1.5")},
        ]
        rows = db.get_proposal_metrics("2024-03-01", "2024-03-31")
        self.assertEqual(rows[0]["metric_date"], "2024-03-01")
        self.assertEqual(rows[0]["value"], 1.5)
        self.assertEqual(self.cursor.execute.call_args[0][1], ("2024-03-01", "2024-03-31"))

    def test_logistics_filters(self):
        self.cursor.fetchall.return_value = []
        db.get_logistics_metrics(region="SUL")
        query, params = self.cursor.execute.call_args[0]
        self.assertIn("WHERE region = %s", query)
        self.assertEqual(params, ("SUL",))

    def test_read_error_returns_empty(self):
        self.cursor.execute.side_effect = psycopg2.Error("down")
        self.assertEqual(db.list_uploads(), [])

    def test_distinct_regions_states(self):
        rows = [
            {"region": "SUL", "state": "PARANA"},
            {"region": "NORTE", "state": "ACRE"},
            {"region": "SUL", "state": "RG SUL"},
        ]
        with patch.object(db, "_fetch_all", return_value=rows):
            result = db.get_distinct_regions_states()
        self.assertEqual(result["regions"], ["NORTE", "SUL"])
        self.assertEqual(result["statesByRegion"]["SUL"], ["PARANA", "RG SUL"])

    def test_latest_stock_metrics(self):
        responses = [
            [{"metric_date": "2024-03-02"}],
            [
                {"item_type": "PLÁSTICO", "metric_type": "Saldo", "value": 85.0},
                {"item_type": "CARTA", "metric_type": "Saldo", "value": 40.0},
                {"item_type": "CAIXA", "metric_type": "Saldo", "value": 1.0},
            ],
        ]
        with patch.object(db, "_fetch_all", side_effect=responses):
            result = db.get_latest_stock_metrics("2024-03-01", "2024-03-31")
        self.assertEqual(result["lastDate"], "2024-03-02")
        self.assertEqual(result["PLASTICO"], {"Saldo": 85.0})
        self.assertEqual(result["CARTA"], {"Saldo": 40.0})
        self.assertEqual(result["ENVELOPE"], {})

    def test_latest_stock_metrics_empty_period(self):
        with patch.object(db, "_fetch_all", return_value=[{"metric_date": None}]):
            result = db.get_latest_stock_metrics("2024-03-01", "2024-03-31")
        self.assertIsNone(result["lastDate"])

    def test_stock_series_filters_metric(self):
        self.cursor.fetchall.return_value = []
        db.get_stock_time_series("2024-03-01", "2024-03-31", product_code="mt")
        query, params = self.cursor.execute.call_args[0]
        self.assertIn("metric_type = %s AND product_code = %s", query)
        self.assertEqual(params, ("2024-03-01", "2024-03-31", "Saldo", "mt"))


if __name__ == '__main__':
    unittest.main()
