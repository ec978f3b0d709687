# quiz.py
# -----------------------------------------------------------------------------
# Quiz blueprint: form page (with expiry), random question set, submission
# endpoint and an admin CSV export of stored results.
# -----------------------------------------------------------------------------

import csv
import io
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Response, jsonify, render_template, request

from notify import dispatch_notice
from quiz_store import result_headers
from sampler import sample_questions
from submission import ErrorKind

EXPIRED_HTML = "<h2>This link has expired.</h2>"
PAGE_ERROR_HTML = "<h2>An error occurred while loading the form. Please try again later.</h2>"

_STATUS_CODES = {
    None: 200,
    ErrorKind.DUPLICATE: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.LOCK_TIMEOUT: 503,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.PERSISTENCE: 500,
}


def parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    """ISO-8601 instant; a trailing 'Z' is accepted. Naive values are taken as UTC."""
    raw = (raw or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path ("" mounts at "/").
    Required deps: load_questions, processor
    Optional deps: result_store, mail_sender, now, rng, QUIZ_TITLE, EXPIRES_AT,
                   SAMPLE_SIZE, ADMIN_TOKEN
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    # ---- Required deps -------------------------------------------------------
    load_questions: Callable = deps["load_questions"]
    processor = deps["processor"]

    # ---- Optional deps / config ---------------------------------------------
    result_store = deps.get("result_store")
    mail_sender = deps.get("mail_sender")
    now: Callable[[], datetime] = deps.get("now") or (lambda: datetime.now(timezone.utc))
    rng = deps.get("rng")
    QUIZ_TITLE   = deps.get("QUIZ_TITLE") or os.getenv("QUIZ_TITLE", "FDB Bank Quiz")
    EXPIRES_AT   = deps["EXPIRES_AT"] if "EXPIRES_AT" in deps else parse_expiry(os.getenv("QUIZ_EXPIRES_AT"))
    SAMPLE_SIZE  = int(deps.get("SAMPLE_SIZE") or os.getenv("QUIZ_SAMPLE_SIZE") or 10)
    ADMIN_TOKEN  = deps["ADMIN_TOKEN"] if "ADMIN_TOKEN" in deps else os.getenv("ADMIN_TOKEN", "")

    @bp.get("/")
    def quiz_form():
        try:
            current = now()
            print(f"[quiz] form accessed at {current.isoformat()}", flush=True)
            if EXPIRES_AT is not None and current > EXPIRES_AT:
                return EXPIRED_HTML
            return render_template("form.html", title=QUIZ_TITLE, base_path=base_path or "")
        except Exception as e:
            print(f"[quiz] form render failed: {e}", flush=True)
            return PAGE_ERROR_HTML

    @bp.get("/api/questions")
    def quiz_questions():
        try:
            return jsonify(sample_questions(load_questions(), limit=SAMPLE_SIZE, rng=rng))
        except Exception as e:
            print(f"[quiz] question sampling failed: {e}", flush=True)
            return jsonify([])

    @bp.post("/api/submit")
    def quiz_submit():
        data = request.get_json(force=True, silent=True) or {}
        outcome = processor.process(data)
        if outcome.notice is not None:
            dispatch_notice(outcome.notice, mail_sender)
        return jsonify(outcome.to_dict()), _STATUS_CODES.get(outcome.kind, 500)

    @bp.get("/api/results.csv")
    def quiz_results_csv():
        if not ADMIN_TOKEN or result_store is None:
            return jsonify({"ok": False, "error": "export disabled"}), 503
        supplied = request.headers.get("X-Admin-Token") or request.args.get("token") or ""
        if supplied != ADMIN_TOKEN:
            return jsonify({"ok": False, "error": "forbidden"}), 403
        result_store.ensure_headers()
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(result_headers())
        for record in result_store.all_records():
            writer.writerow(record.to_cells())
        return Response(
            buf.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=quiz_results.csv"},
        )

    return bp
