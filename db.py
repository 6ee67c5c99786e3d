"""
db.py — PostgreSQL storage for parsed report metrics
=====================================================
Connection pool, schema bootstrap, keyed upserts and the period reads the
dashboards use.  Every metric table has a natural key; writing the same file
twice updates rows in place instead of duplicating them.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2 import Error
from psycopg2.pool import ThreadedConnectionPool
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Global connection pool
db_pool = None


# table -> (columns, conflict key)
METRIC_TABLES: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "daily_proposal_metrics": (
        ("metric_date", "metric_month", "category", "sub_category", "value",
         "source_file_type", "uploaded_by"),
        ("metric_date", "category", "sub_category"),
    ),
    "monthly_summary_metrics": (
        ("metric_month", "category", "sub_category", "total_value", "average_value",
         "source_file_type", "uploaded_by"),
        ("metric_month", "category", "sub_category"),
    ),
    "logistics_daily_metrics": (
        ("metric_date", "region", "state", "value", "source_file_type", "uploaded_by"),
        ("metric_date", "region", "state"),
    ),
    "logistics_daily_consolidated": (
        ("metric_date", "category", "sub_category", "value", "source_file_type", "uploaded_by"),
        ("metric_date", "category", "sub_category"),
    ),
    "logistics_report_daily_state": (
        ("metric_date", "region", "state", "metric_key", "value", "source_file_type", "uploaded_by"),
        ("metric_date", "state", "metric_key"),
    ),
    "stock_daily_metrics": (
        ("metric_date", "item_type", "metric_type", "product_code", "value",
         "source_file_type", "uploaded_by"),
        ("product_code", "item_type", "metric_date", "metric_type"),
    ),
}

_COLUMN_TYPES = {
    "metric_date": "DATE NOT NULL",
    "metric_month": "DATE NOT NULL",
    "category": "VARCHAR(120) NOT NULL",
    "sub_category": "VARCHAR(255) NOT NULL",
    "region": "VARCHAR(40)",
    "state": "VARCHAR(50) NOT NULL",
    "metric_key": "VARCHAR(40) NOT NULL",
    "item_type": "VARCHAR(40) NOT NULL",
    "metric_type": "VARCHAR(40) NOT NULL",
    "product_code": "VARCHAR(20) NOT NULL",
    "value": "NUMERIC",
    "total_value": "NUMERIC",
    "average_value": "NUMERIC",
    "source_file_type": "VARCHAR(40)",
    "uploaded_by": "VARCHAR(64)",
}


# ──────────────────────────────────────────────────────────────
# Pool
# ──────────────────────────────────────────────────────────────

def init_connection_pool():
    """Initialize the database connection pool."""
    global db_pool
    if db_pool is None:
        try:
            url = os.getenv("DATABASE_URL")
            if not url:
                logger.error("DATABASE_URL not found in environment variables.")
                return None
            minconn = int(os.getenv("DB_POOL_MIN", "1"))
            maxconn = int(os.getenv("DB_POOL_MAX", "20"))
            db_pool = ThreadedConnectionPool(minconn, maxconn, url)
            logger.info("Database connection pool created (%d-%d connections).", minconn, maxconn)
        except Error as e:
            logger.error("Error creating connection pool: %s", e)
            db_pool = None
    return db_pool


def get_db_connection():
    """Get a connection from the pool."""
    if db_pool is None:
        init_connection_pool()
    try:
        if db_pool:
            return db_pool.getconn()
        return None
    except Error as e:
        logger.error("Error getting connection from pool: %s", e)
        return None


def return_db_connection(connection):
    """Return a connection to the pool."""
    if db_pool and connection:
        db_pool.putconn(connection)


# ──────────────────────────────────────────────────────────────
# Schema
# ──────────────────────────────────────────────────────────────

def _create_table_sql(table: str) -> str:
    columns, key = METRIC_TABLES[table]
    cols = ",\n    ".join(f"{c} {_COLUMN_TYPES[c]}" for c in columns)
    return (
        f"CREATE TABLE IF NOT EXISTS {table} (\n"
        f"    id SERIAL PRIMARY KEY,\n"
        f"    {cols},\n"
        f"    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,\n"
        f"    UNIQUE ({', '.join(key)})\n"
        f");"
    )


def init_db():
    """Create the upload log and metric tables if they don't exist."""
    connection = get_db_connection()
    if not connection:
        logger.error("Failed to connect to database during initialization.")
        return False
    try:
        cursor = connection.cursor()
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS report_uploads (
            id SERIAL PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            report_type VARCHAR(40) NOT NULL,
            upload_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            file_data BYTEA NOT NULL,
            file_size INT,
            record_count INT,
            uploaded_by VARCHAR(64)
        );
        """)
        for table in METRIC_TABLES:
            cursor.execute(_create_table_sql(table))
        connection.commit()
        logger.info("Database initialized (%d metric tables).", len(METRIC_TABLES))
        return True
    except Error as e:
        connection.rollback()
        logger.error("Error initializing database: %s", e)
        return False
    finally:
        return_db_connection(connection)


# ──────────────────────────────────────────────────────────────
# Writes
# ──────────────────────────────────────────────────────────────

def dedupe_records(records: Iterable[Dict[str, Any]], key: Tuple[str, ...]) -> List[Dict[str, Any]]:
    """Collapse records sharing ``key``; the last one wins, first position is kept."""
    latest: Dict[Tuple, Dict[str, Any]] = {}
    for rec in records:
        latest[tuple(rec.get(k) for k in key)] = rec
    return list(latest.values())


def upsert_records(table: str, records: List[Dict[str, Any]]) -> int:
    """
    Insert ``records`` into ``table``, updating rows whose key already exists.

    Returns the number of rows sent.  Raises on any database error so the
    caller can report the failed batch.
    """
    if table not in METRIC_TABLES:
        raise ValueError(f"Unknown metric table: {table}")
    columns, key = METRIC_TABLES[table]
    rows = dedupe_records(records, key)
    if not rows:
        return 0
    if len(rows) < len(records):
        logger.info("%s: %d duplicate key(s) collapsed", table, len(records) - len(rows))

    updates = [c for c in columns if c not in key]
    query = (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES %s "
        f"ON CONFLICT ({', '.join(key)}) DO UPDATE SET "
        + ", ".join(f"{c} = EXCLUDED.{c}" for c in updates)
        + ", updated_at = CURRENT_TIMESTAMP"
    )
    values = [tuple(rec.get(c) for c in columns) for rec in rows]

    connection = get_db_connection()
    if not connection:
        raise ConnectionError("Database connection unavailable.")
    try:
        cursor = connection.cursor()
        psycopg2.extras.execute_values(cursor, query, values, page_size=500)
        connection.commit()
        logger.info("Upserted %d row(s) into %s", len(values), table)
        return len(values)
    except Error as e:
        connection.rollback()
        logger.error("Error upserting into %s: %s", table, e)
        raise
    finally:
        return_db_connection(connection)


def save_upload(filename, report_type, file_bytes, record_count=None, uploaded_by=None):
    """Keep the raw uploaded file for audit."""
    connection = get_db_connection()
    if connection:
        try:
            cursor = connection.cursor()
            query = """
            INSERT INTO report_uploads
                (filename, report_type, file_data, file_size, record_count, uploaded_by, upload_date)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """
            cursor.execute(query, (filename, report_type, psycopg2.Binary(file_bytes), len(file_bytes),
                                   record_count, uploaded_by, datetime.now()))
            connection.commit()
            logger.info("Upload '%s' (%s) saved to database.", filename, report_type)
            return True
        except Error as e:
            connection.rollback()
            logger.error("Error saving upload to database: %s", e)
            return False
        finally:
            return_db_connection(connection)
    return False


# ──────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────

def _serialise(rows):
    for row in rows:
        for k, v in row.items():
            if hasattr(v, "isoformat"):
                row[k] = v.isoformat()
            elif v is not None and k in ("value", "total_value", "average_value"):
                row[k] = float(v)
    return rows


def _fetch_all(query: str, params: Tuple = ()) -> List[Dict[str, Any]]:
    connection = get_db_connection()
    if connection:
        try:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            cursor.execute(query, params)
            return _serialise([dict(r) for r in cursor.fetchall()])
        except Error as e:
            logger.error("Query failed: %s", e)
            return []
        finally:
            return_db_connection(connection)
    return []


def list_uploads():
    """Upload log, newest first (no file bodies)."""
    return _fetch_all(
        "SELECT id, filename, report_type, upload_date, file_size, record_count, uploaded_by "
        "FROM report_uploads ORDER BY upload_date DESC"
    )


def get_proposal_metrics(start_date, end_date):
    """Daily proposal metrics in [start_date, end_date], oldest first."""
    return _fetch_all(
        "SELECT metric_date, metric_month, category, sub_category, value "
        "FROM daily_proposal_metrics WHERE metric_date BETWEEN %s AND %s "
        "ORDER BY metric_date ASC",
        (start_date, end_date),
    )


def get_logistics_metrics(start_date=None, end_date=None, region=None, state=None):
    """Consolidated logistics rows, newest first, optionally filtered."""
    clauses, params = [], []
    if start_date:
        clauses.append("metric_date >= %s")
        params.append(start_date)
    if end_date:
        clauses.append("metric_date <= %s")
        params.append(end_date)
    if region:
        clauses.append("region = %s")
        params.append(region)
    if state:
        clauses.append("state = %s")
        params.append(state)
    where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
    return _fetch_all(
        "SELECT metric_date, region, state, value FROM logistics_daily_metrics "
        f"{where}ORDER BY metric_date DESC, region ASC, state ASC",
        tuple(params),
    )


def get_distinct_regions_states():
    """{"regions": [...], "statesByRegion": {region: [states]}} from logistics data."""
    rows = _fetch_all(
        "SELECT DISTINCT region, state FROM logistics_daily_metrics "
        "WHERE region IS NOT NULL ORDER BY region, state"
    )
    states_by_region: Dict[str, List[str]] = {}
    for row in rows:
        states = states_by_region.setdefault(row["region"], [])
        if row["state"] not in states:
            states.append(row["state"])
    return {"regions": sorted(states_by_region), "statesByRegion": states_by_region}


def _item_key(item_type: Optional[str]) -> Optional[str]:
    upper = (item_type or "").upper()
    if upper in ("PLÁSTICO", "PLASTICO"):
        return "PLASTICO"
    if upper in ("CARTA", "ENVELOPE"):
        return upper
    return None


def get_latest_stock_metrics(start_date, end_date, product_code=None):
    """Stock metrics of the most recent day with data in the period, keyed by item type."""
    result: Dict[str, Any] = {"PLASTICO": {}, "CARTA": {}, "ENVELOPE": {}, "lastDate": None}
    product_filter = " AND product_code = %s" if product_code else ""
    params: Tuple = (start_date, end_date) + ((product_code,) if product_code else ())
    latest = _fetch_all(
        "SELECT MAX(metric_date) AS metric_date FROM stock_daily_metrics "
        f"WHERE metric_date BETWEEN %s AND %s{product_filter}",
        params,
    )
    if not latest or not latest[0].get("metric_date"):
        logger.warning("No stock data between %s and %s", start_date, end_date)
        return result

    last_date = latest[0]["metric_date"]
    result["lastDate"] = last_date
    rows = _fetch_all(
        "SELECT item_type, metric_type, SUM(value) AS value FROM stock_daily_metrics "
        f"WHERE metric_date = %s{product_filter} GROUP BY item_type, metric_type",
        (last_date,) + ((product_code,) if product_code else ()),
    )
    for row in rows:
        key = _item_key(row["item_type"])
        if key is None:
            logger.warning("Unrecognized item_type: %r", row["item_type"])
            continue
        result[key][row["metric_type"]] = row["value"]
    return result


def get_stock_time_series(start_date, end_date, metric_type="Saldo", product_code=None):
    """One value per (day, item type) for ``metric_type``, oldest first."""
    product_filter = " AND product_code = %s" if product_code else ""
    return _fetch_all(
        "SELECT metric_date, item_type, SUM(value) AS value FROM stock_daily_metrics "
        f"WHERE metric_date BETWEEN %s AND %s AND metric_type = %s{product_filter} "
        "GROUP BY metric_date, item_type ORDER BY metric_date ASC",
        (start_date, end_date, metric_type) + ((product_code,) if product_code else ()),
    )
