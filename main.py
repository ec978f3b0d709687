# main.py — quiz intake app: config, psycopg3 pool, stores, lock, blueprint wiring

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional

from flask import Flask

# Database (psycopg 3)
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from locks import PgAdvisoryLock, ThreadLock
from notify import SmtpMailSender
from quiz import create_quiz_blueprint, parse_expiry
from quiz_store import PostgresQuestionStore, PostgresResultStore, SheetsQuestionStore
from submission import SubmissionProcessor

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")

# =============================================================================
# Quiz configuration
# =============================================================================
QUIZ_TITLE = os.getenv("QUIZ_TITLE", "FDB Bank Quiz")
QUIZ_EMAIL_DOMAIN = (os.getenv("QUIZ_EMAIL_DOMAIN", "fdbbank.com") or "").strip().lstrip("@").lower()
QUIZ_EXPIRES_AT = parse_expiry(os.getenv("QUIZ_EXPIRES_AT"))
QUIZ_SAMPLE_SIZE = int(os.getenv("QUIZ_SAMPLE_SIZE") or 10)
QUIZ_POINTS_PER_CORRECT = int(os.getenv("QUIZ_POINTS_PER_CORRECT") or 2)
QUIZ_PASS_SCORE = int(os.getenv("QUIZ_PASS_SCORE") or 10)
QUIZ_LOCK_TIMEOUT_MS = int(os.getenv("QUIZ_LOCK_TIMEOUT_MS") or 10000)
QUIZ_LOCK_MODE = os.getenv("QUIZ_LOCK_MODE", "postgres").lower()

QUESTION_SOURCE = os.getenv("QUESTION_SOURCE", "postgres").lower()
SHEETS_SPREADSHEET_ID = os.getenv("SHEETS_SPREADSHEET_ID", "")
QUESTION_SHEET_NAME = os.getenv("QUESTION_SHEET_NAME", "Question Database")

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or 5432)
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_SESSION_KWARGS = {"connect_timeout": 10, "options": "-c search_path=public"}

def _url_kwargs(url: str) -> dict:
    # accepts SQLAlchemy-style driver suffixes such as postgresql+psycopg://
    scheme, sep, rest = (url or "").partition("://")
    if not sep or scheme.split("+", 1)[0] not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{scheme}'")
    p = urlparse("postgresql://" + rest)
    qs = parse_qs(p.query or "")
    dbname = (p.path or "").lstrip("/")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        **_SESSION_KWARGS,
    }
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port:
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST,
        "port": DB_PORT,
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        **_SESSION_KWARGS,
    }

def _connection_kwargs() -> dict:
    """DATABASE_URL when set and parseable, otherwise DB_* over TCP. FORCE_TCP skips the URL."""
    if DATABASE_URL and not FORCE_TCP:
        try:
            kwargs = _url_kwargs(DATABASE_URL)
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)
        else:
            print(f"[DB] DATABASE_URL -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}", flush=True)
            return kwargs
    kwargs = _tcp_kwargs()
    print(f"[DB] TCP -> {kwargs['host']}:{kwargs['port']}", flush=True)
    return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def get_pool() -> ConnectionPool:
    global _pg_pool
    if _pg_pool is None:
        conninfo = make_conninfo(**_connection_kwargs())
        # one slot is held by the submission lock for the whole critical section
        _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=max(2, DB_POOL_MAX),
                                  kwargs={"row_factory": dict_row})
    return _pg_pool

@contextmanager
def get_conn():
    with get_pool().connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Stores, lock, mail
# =============================================================================
def _question_store():
    if QUESTION_SOURCE == "sheets":
        return SheetsQuestionStore(SHEETS_SPREADSHEET_ID, QUESTION_SHEET_NAME)
    return PostgresQuestionStore(fetch_all)

def _submission_lock():
    if QUIZ_LOCK_MODE == "thread":
        return ThreadLock()
    return PgAdvisoryLock(get_pool)

question_store = _question_store()
result_store = PostgresResultStore(fetch_all, execute)
processor = SubmissionProcessor(
    question_store=question_store,
    result_store=result_store,
    lock=_submission_lock(),
    email_domain=QUIZ_EMAIL_DOMAIN,
    lock_timeout_ms=QUIZ_LOCK_TIMEOUT_MS,
    points_per_correct=QUIZ_POINTS_PER_CORRECT,
    pass_score=QUIZ_PASS_SCORE,
)
print(f"[quiz] questions from {QUESTION_SOURCE}, lock mode {QUIZ_LOCK_MODE}, domain @{QUIZ_EMAIL_DOMAIN}", flush=True)

# =============================================================================
# Routes
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

_quiz_deps: Dict[str, Any] = {
    "load_questions": question_store.read_all,
    "processor": processor,
    "result_store": result_store,
    "mail_sender": SmtpMailSender(),
    "QUIZ_TITLE": QUIZ_TITLE,
    "EXPIRES_AT": QUIZ_EXPIRES_AT,
    "SAMPLE_SIZE": QUIZ_SAMPLE_SIZE,
    "ADMIN_TOKEN": ADMIN_TOKEN,
}
app.register_blueprint(create_quiz_blueprint(BASE_PATH, _quiz_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
