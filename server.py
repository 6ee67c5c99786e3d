"""
Report Ingestion Server
=======================
Flask API backend for the metrics dashboards.
Handles report upload (parse → keyed upsert), the upload log, and the period
reads behind the proposal, logistics and stock dashboards.
Supports: monthly proposal, consolidated logistics, daily logistics, stock.

Usage:
    python server.py
    Then POST files to http://localhost:5000/api/upload/<report_type>
"""

import base64
import logging
import os
import uuid
from datetime import date
from functools import wraps

from dotenv import load_dotenv
from flask import Flask, request, jsonify, session
from flask_cors import CORS

import db
from report_parsers import ORCHESTRATORS, UploadUser, parse_report, write_batches
from sheet_engine import (
    FormatRejected,
    IngestionError,
    StructuralError,
    UploadNotAllowed,
    WritePhaseError,
    ZeroYieldError,
)

load_dotenv()

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# APP SETUP
# ─────────────────────────────────────────────────────────────

app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", "report-ingest-" + uuid.uuid4().hex[:8])
app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_MB", 50)) * 1024 * 1024

CORS(app)

ERROR_STATUS = {
    FormatRejected: 400,
    UploadNotAllowed: 403,
    StructuralError: 422,
    ZeroYieldError: 422,
    WritePhaseError: 502,
}


class BadRequestArgument(Exception):
    """A request parameter is missing or malformed."""


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get("authenticated"):
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)
    return decorated_function


def _current_user():
    return UploadUser(id=session.get("user_id"), role=session.get("role", "user"))


@app.errorhandler(IngestionError)
def handle_ingestion_error(e):
    status = ERROR_STATUS.get(type(e), 400)
    body = {"error": str(e), "kind": type(e).__name__}
    if isinstance(e, WritePhaseError):
        body["failures"] = e.failures
        body["written"] = e.written
    logger.warning("Upload rejected (%s): %s", type(e).__name__, e)
    return jsonify(body), status


# ─────────────────────────────────────────────────────────────
# AUTH
# ─────────────────────────────────────────────────────────────

@app.route("/api/login", methods=["POST"])
def login():
    """Password login; the session gets an uploader identity."""
    data = request.get_json(silent=True) or request.form
    password = data.get("password")
    expected_password = os.environ.get("APP_PASSWORD", "changeme")

    if password != expected_password:
        return jsonify({"error": "Invalid access code"}), 401

    session.clear()
    session["authenticated"] = True
    session["user_id"] = data.get("user_id") or uuid.uuid4().hex
    session["role"] = "user"
    return jsonify({"user_id": session["user_id"], "role": "user"})


@app.route("/api/login/guest", methods=["POST"])
def login_guest():
    """Read-only guest session: dashboards yes, uploads no."""
    session.clear()
    session["authenticated"] = True
    session["user_id"] = "guest-" + uuid.uuid4().hex[:8]
    session["role"] = "guest"
    return jsonify({"user_id": session["user_id"], "role": "guest"})


@app.route("/logout")
def logout():
    """Clear session and logout."""
    session.clear()
    return jsonify({"message": "Logged out"})


# ─────────────────────────────────────────────────────────────
# UPLOAD
# ─────────────────────────────────────────────────────────────

def _decode_data_url(fdata):
    """Strip a ``data:...;base64,`` header if present and decode."""
    if "," in fdata:
        _, fdata = fdata.split(",", 1)
    return base64.b64decode(fdata)


def _read_upload():
    """Return (filename, bytes, mimetype, options) from a JSON or multipart request."""
    if request.is_json:
        data = request.get_json() or {}
        entry = data["files"][0] if data.get("files") else data
        fname, fdata = entry.get("name"), entry.get("data")
        if not fname or not fdata:
            raise FormatRejected("No file provided")
        try:
            file_bytes = _decode_data_url(fdata)
        except (ValueError, TypeError) as e:
            raise FormatRejected(f"Malformed base64 payload: {e}") from e
        mimetype = None
        if fdata.startswith("data:") and ";" in fdata:
            mimetype = fdata[5:fdata.index(";")]
        return fname, file_bytes, mimetype, {"file_type": data.get("file_type")}

    f = request.files.get("file") or request.files.get("files")
    if f is None or not f.filename:
        raise FormatRejected("No file provided")
    return f.filename, f.read(), f.mimetype, {"file_type": request.form.get("file_type")}


@app.route("/api/upload/<report_type>", methods=["POST"])
@login_required
def upload_report(report_type):
    """Parse one report file and upsert its records.  ``report_type`` may be 'auto'."""
    if report_type != "auto" and report_type not in ORCHESTRATORS:
        return jsonify({"error": f"Unknown report type: {report_type}"}), 404

    user = _current_user()
    filename, file_bytes, mimetype, options = _read_upload()
    options = {k: v for k, v in options.items() if v}
    if options.get("file_type") not in (None, "daily", "consolidated"):
        raise BadRequestArgument(f"Invalid file_type: {options['file_type']}")

    logger.info("Upload '%s' (%s, %d bytes) by %s", filename, report_type, len(file_bytes), user.id)
    result = parse_report(report_type, file_bytes, filename, user, mimetype=mimetype, **options)
    written = write_batches(result, db.upsert_records)
    db.save_upload(filename, result.report_type, file_bytes, result.record_count, user.id)

    body = result.to_dict()
    body["written"] = written
    return jsonify(body)


@app.route("/api/uploads", methods=["GET"])
@login_required
def list_uploads():
    """Upload log, newest first."""
    return jsonify(db.list_uploads())


# ─────────────────────────────────────────────────────────────
# DASHBOARD READS
# ─────────────────────────────────────────────────────────────

def _date_arg(name, required=True):
    raw = request.args.get(name)
    if not raw:
        if required:
            raise BadRequestArgument(f"Missing query parameter '{name}'")
        return None
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError as e:
        raise BadRequestArgument(f"Invalid date for '{name}': {raw}") from e


def _period():
    return _date_arg("start"), _date_arg("end")


@app.errorhandler(BadRequestArgument)
def handle_bad_argument(e):
    return jsonify({"error": str(e)}), 400


@app.route("/api/metrics/proposals", methods=["GET"])
@login_required
def proposal_metrics():
    start, end = _period()
    return jsonify(db.get_proposal_metrics(start, end))


@app.route("/api/metrics/logistics", methods=["GET"])
@login_required
def logistics_metrics():
    return jsonify(db.get_logistics_metrics(
        _date_arg("start", required=False),
        _date_arg("end", required=False),
        region=request.args.get("region"),
        state=request.args.get("state"),
    ))


@app.route("/api/logistics/regions", methods=["GET"])
@login_required
def logistics_regions():
    return jsonify(db.get_distinct_regions_states())


@app.route("/api/stock/latest", methods=["GET"])
@login_required
def stock_latest():
    start, end = _period()
    return jsonify(db.get_latest_stock_metrics(start, end, request.args.get("product_code")))


@app.route("/api/stock/series", methods=["GET"])
@login_required
def stock_series():
    start, end = _period()
    return jsonify(db.get_stock_time_series(
        start, end,
        metric_type=request.args.get("metric_type", "Saldo"),
        product_code=request.args.get("product_code"),
    ))


# ─────────────────────────────────────────────────────────────
# RUN
# ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Initializing Database...")
    db.init_db()

    port = int(os.environ.get("PORT", 5000))
    logger.info("Report ingestion server on http://localhost:%d", port)

    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False)
