# submission.py — validate, dedup, grade and persist one quiz submission
#
# One pass per call:
#   acquire lock -> ensure result table -> validate email -> dedup -> grade all
#   answers -> append result -> release lock
# The lock is released on every exit path. Mail goes out afterwards, from the
# ResultNotice carried by a successful outcome.

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from grading import build_answer_key, grade_answer, score_answers
from locks import LockTimeout
from normalize import normalize_email, normalize_submitted_question, normalize_text
from quiz_store import MAX_RESULT_QUESTIONS, ConfigurationError, ResultRecord, iso_utc

GENERIC_ERROR = "An error occurred while processing your submission. Please try again."
LOCK_BUSY = "The quiz is busy right now. Please try again in a moment."
NOT_CONFIGURED = "The quiz is not available right now. Please contact the organizer."
SUCCESS_MESSAGE = "Your answers have been submitted successfully."


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    LOCK_TIMEOUT = "lock_timeout"
    PERSISTENCE = "persistence"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class ResultNotice:
    email: str
    score: int
    result: str


@dataclass(frozen=True)
class SubmissionOutcome:
    status: str
    message: str
    kind: Optional[ErrorKind] = None
    score: Optional[int] = None
    result: Optional[str] = None
    timestamp: Optional[str] = None
    notice: Optional[ResultNotice] = None

    @classmethod
    def error(cls, kind: ErrorKind, message: str) -> "SubmissionOutcome":
        return cls(status="error", message=message, kind=kind)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status, "message": self.message}
        if self.ok:
            out.update({"score": self.score, "result": self.result, "timestamp": self.timestamp})
        return out


# ---------------------------------------------------------------------------
# Validation / dedup
# ---------------------------------------------------------------------------
def email_pattern(domain: str) -> "re.Pattern[str]":
    return re.compile(r"[a-z0-9._%+-]+@" + re.escape(domain), re.IGNORECASE)


def validate_email(email: str, domain: str) -> Optional[str]:
    """Returns the rejection message, or None when the email is acceptable."""
    if not email:
        return "Email is required."
    if not email_pattern(domain).fullmatch(email):
        return f"Only @{domain} emails are allowed."
    return None


def find_missing_answers(answers: Iterable[Any]) -> List[int]:
    missing: List[int] = []
    for i, item in enumerate(answers, start=1):
        value = item.get("answer") if isinstance(item, dict) else None
        if not normalize_text(value):
            missing.append(i)
    return missing


def find_duplicate(email: str, existing: Iterable[Tuple[Any, Any]]) -> Optional[Any]:
    """Linear scan of (timestamp, email) pairs; the timestamp of the first match, else None."""
    for submitted_at, other in existing:
        if normalize_email(other) == email:
            return submitted_at if submitted_at is not None else ""
    return None


def format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%d %b %Y, %H:%M:%S UTC")
    return str(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------
class SubmissionProcessor:
    """
    deps:
      - question_store: .read_all() -> List[QuestionRow]
      - result_store:   .ensure_headers(), .email_column(), .append(ResultRecord)
      - lock:           .acquire(timeout_ms) (raises LockTimeout), .release()
    """

    def __init__(self, question_store, result_store, lock, email_domain: str,
                 lock_timeout_ms: int = 10000, points_per_correct: int = 2,
                 pass_score: int = 10, max_questions: int = MAX_RESULT_QUESTIONS,
                 clock: Callable[[], datetime] = _utcnow):
        self.question_store = question_store
        self.result_store = result_store
        self.lock = lock
        self.email_domain = email_domain
        self.lock_timeout_ms = lock_timeout_ms
        self.points_per_correct = points_per_correct
        self.pass_score = pass_score
        self.max_questions = max_questions
        self.clock = clock

    def process(self, data: Any) -> SubmissionOutcome:
        data = data if isinstance(data, dict) else {}
        try:
            try:
                self.lock.acquire(self.lock_timeout_ms)
            except LockTimeout as e:
                print(f"[submit] {e}", flush=True)
                return SubmissionOutcome.error(ErrorKind.LOCK_TIMEOUT, LOCK_BUSY)
            return self._process_locked(data)
        except ConfigurationError as e:
            print(f"[submit] configuration error: {e}", flush=True)
            return SubmissionOutcome.error(ErrorKind.CONFIGURATION, NOT_CONFIGURED)
        except Exception as e:
            print(f"[submit] failed: {type(e).__name__}: {e}", flush=True)
            return SubmissionOutcome.error(ErrorKind.PERSISTENCE, GENERIC_ERROR)
        finally:
            try:
                self.lock.release()
            except Exception as e:
                print(f"[submit] lock release failed: {e}", flush=True)

    def _process_locked(self, data: Dict[str, Any]) -> SubmissionOutcome:
        self.result_store.ensure_headers()

        email = normalize_email(data.get("email"))
        problem = validate_email(email, self.email_domain)
        if problem:
            return SubmissionOutcome.error(ErrorKind.VALIDATION, problem)

        print(f"[submit] processing submission for {email}", flush=True)

        previous = find_duplicate(email, self.result_store.email_column())
        if previous is not None:
            print(f"[submit] duplicate for {email}, first submitted {previous}", flush=True)
            return SubmissionOutcome(
                status="duplicate",
                kind=ErrorKind.DUPLICATE,
                message=f"You already submitted the quiz on {format_timestamp(previous)}.",
            )

        dataset = self.question_store.read_all()
        if not dataset:
            return SubmissionOutcome.error(ErrorKind.CONFIGURATION, "No questions found in the database.")

        answers = data.get("answers")
        answers = answers if isinstance(answers, list) else []
        if not answers:
            return SubmissionOutcome.error(ErrorKind.VALIDATION, "No answers were submitted.")
        if len(answers) > self.max_questions:
            return SubmissionOutcome.error(ErrorKind.VALIDATION, "Too many answers submitted.")

        missing = find_missing_answers(answers)
        if missing:
            return SubmissionOutcome.error(
                ErrorKind.VALIDATION,
                "Please answer all questions. Missing answers for questions: "
                + ", ".join(str(i) for i in missing),
            )

        answer_key = build_answer_key(dataset)
        graded = [
            grade_answer(
                normalize_submitted_question(item.get("question")),
                normalize_text(item.get("answer")),
                answer_key,
                dataset,
            )
            for item in answers
        ]
        score, result = score_answers(graded, self.points_per_correct, self.pass_score)

        record = ResultRecord(
            submitted_at=self.clock(),
            email=email,
            answers=[g.as_cells() for g in graded],
            score=score,
            result=result,
        )
        self.result_store.append(record)
        print(f"[submit] stored {email}: score={score} result={result}", flush=True)

        return SubmissionOutcome(
            status="success",
            message=SUCCESS_MESSAGE,
            score=score,
            result=result,
            timestamp=iso_utc(record.submitted_at),
            notice=ResultNotice(email=email, score=score, result=result),
        )


__all__ = [
    "ErrorKind", "ResultNotice", "SubmissionOutcome", "SubmissionProcessor",
    "validate_email", "find_missing_answers", "find_duplicate", "format_timestamp",
]
