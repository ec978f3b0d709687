"""Typed question/result records and the tabular stores that hold them."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from psycopg.errors import UndefinedTable

OPTION_LETTERS = ("A", "B", "C", "D", "E")
MAX_RESULT_QUESTIONS = 10
MIN_VALID_OPTIONS = 3


class ConfigurationError(RuntimeError):
    """A backing sheet/table is missing or the store is not configured."""


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class QuestionRow:
    text: str
    options: Tuple[str, str, str, str, str]
    correct: str

    @classmethod
    def from_cells(cls, cells: Sequence[Any]) -> "QuestionRow":
        """Spreadsheet layout: [0] id, [1] question, [2..6] options A..E, [7] correct letter."""
        padded = list(cells) + [""] * max(0, 8 - len(cells))
        return cls(
            text=_cell(padded[1]),
            options=tuple(_cell(c) for c in padded[2:7]),  # type: ignore[arg-type]
            correct=_cell(padded[7]),
        )

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> "QuestionRow":
        return cls(
            text=_cell(row.get("question")),
            options=tuple(_cell(row.get(f"option_{l.lower()}")) for l in OPTION_LETTERS),  # type: ignore[arg-type]
            correct=_cell(row.get("correct_option")),
        )

    @property
    def filled_options(self) -> List[str]:
        return [o for o in self.options if o]

    def is_valid(self) -> bool:
        return bool(self.text) and len(self.filled_options) >= MIN_VALID_OPTIONS


def iso_utc(value: datetime) -> str:
    """UTC instant as `2025-04-01T09:30:00.000Z`. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def result_headers(max_questions: int = MAX_RESULT_QUESTIONS) -> List[str]:
    headers = ["Timestamp", "Email"]
    for i in range(1, max_questions + 1):
        headers.extend([f"Q{i}", f"A{i}", "Status"])
    headers.extend(["Score", "Result"])
    return headers


@dataclass(frozen=True)
class ResultRecord:
    submitted_at: datetime
    email: str
    # (question, user answer, verdict) per answered question, in submission order
    answers: List[Tuple[str, str, str]] = field(default_factory=list)
    score: int = 0
    result: str = "Fail"

    def to_cells(self, max_questions: int = MAX_RESULT_QUESTIONS) -> List[Any]:
        cells: List[Any] = [iso_utc(self.submitted_at), self.email]
        for i in range(max_questions):
            if i < len(self.answers):
                cells.extend(self.answers[i])
            else:
                cells.extend(["", "", ""])
        cells.extend([self.score, self.result])
        return cells


# ---------------------------------------------------------------------------
# Question stores (read-only)
# ---------------------------------------------------------------------------
class PostgresQuestionStore:
    def __init__(self, fetch_all: Callable, table: str = "public.question_database"):
        self._fetch_all = fetch_all
        self._table = table

    def read_all(self) -> List[QuestionRow]:
        try:
            rows = self._fetch_all(f"""
                SELECT id, question, option_a, option_b, option_c, option_d, option_e, correct_option
                  FROM {self._table}
                 ORDER BY id;
            """, ())
        except UndefinedTable as e:
            raise ConfigurationError(f"question table {self._table} not found") from e
        return [QuestionRow.from_db_row(r) for r in (rows or [])]


class SheetsQuestionStore:
    """
    Reads the question tab of a Google spreadsheet through the Sheets v4 REST API.
    First row is the header and is dropped.
    """

    SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]

    def __init__(self, spreadsheet_id: str, sheet_name: str = "Question Database",
                 token_provider: Optional[Callable[[], str]] = None, timeout: float = 15.0):
        self._spreadsheet_id = spreadsheet_id
        self._sheet_name = sheet_name
        self._token_provider = token_provider or self._google_auth_token
        self._timeout = timeout

    def _google_auth_token(self) -> str:
        import google.auth  # type: ignore
        from google.auth.transport.requests import Request  # type: ignore
        creds, _ = google.auth.default(scopes=self.SCOPES)
        if not creds.valid:
            creds.refresh(Request())
        return creds.token

    def read_all(self) -> List[QuestionRow]:
        import requests
        if not self._spreadsheet_id:
            raise ConfigurationError("SHEETS_SPREADSHEET_ID is not set")
        rng = quote(f"'{self._sheet_name}'!A:H", safe="")
        url = f"https://sheets.googleapis.com/v4/spreadsheets/{self._spreadsheet_id}/values/{rng}"
        r = requests.get(
            url,
            headers={"Authorization": f"Bearer {self._token_provider()}"},
            timeout=self._timeout,
        )
        if r.status_code in (400, 404):
            raise ConfigurationError(f"sheet '{self._sheet_name}' not found")
        r.raise_for_status()
        values = (r.json() or {}).get("values") or []
        return [QuestionRow.from_cells(cells) for cells in values[1:]]


# ---------------------------------------------------------------------------
# Result store (append-only)
# ---------------------------------------------------------------------------
class PostgresResultStore:
    def __init__(self, fetch_all: Callable, execute: Callable, table: str = "public.quiz_results"):
        self._fetch_all = fetch_all
        self._execute = execute
        self._table = table
        self._ready = False

    def ensure_headers(self) -> None:
        if self._ready:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                id           BIGSERIAL PRIMARY KEY,
                submitted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                email        TEXT NOT NULL,
                answers      JSONB NOT NULL,
                score        INTEGER NOT NULL,
                result       TEXT NOT NULL
            );
        """, ())
        self._ready = True

    def email_column(self) -> List[Tuple[Any, str]]:
        rows = self._fetch_all(f"SELECT submitted_at, email FROM {self._table} ORDER BY id;", ())
        return [(r.get("submitted_at"), r.get("email") or "") for r in (rows or [])]

    def append(self, record: ResultRecord) -> None:
        self._execute(f"""
            INSERT INTO {self._table} (submitted_at, email, answers, score, result)
            VALUES (%s, %s, %s, %s, %s);
        """, (
            record.submitted_at,
            record.email,
            json.dumps([list(a) for a in record.answers], ensure_ascii=False),
            record.score,
            record.result,
        ))

    def all_records(self) -> List[ResultRecord]:
        rows = self._fetch_all(f"""
            SELECT submitted_at, email, answers, score, result
              FROM {self._table}
             ORDER BY id;
        """, ())
        out: List[ResultRecord] = []
        for r in rows or []:
            answers = r.get("answers") or []
            if isinstance(answers, str):
                answers = json.loads(answers)
            submitted_at = r.get("submitted_at") or datetime.now(timezone.utc)
            out.append(ResultRecord(
                submitted_at=submitted_at,
                email=r.get("email") or "",
                answers=[tuple(a) for a in answers],
                score=int(r.get("score") or 0),
                result=r.get("result") or "",
            ))
        return out


__all__ = [
    "ConfigurationError", "QuestionRow", "ResultRecord", "result_headers", "iso_utc",
    "PostgresQuestionStore", "SheetsQuestionStore", "PostgresResultStore",
    "MAX_RESULT_QUESTIONS", "OPTION_LETTERS",
]
