# normalize.py — canonical text forms shared by grading, dedup and sampling
import re
import unicodedata
from typing import Any

_WS_RE = re.compile(r"\s+")
_ORDINAL_RE = re.compile(r"^\d+\.\s*")


def normalize_text(value: Any) -> str:
    """NFC-compose, collapse whitespace runs to one space, trim."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFC", str(value))
    return _WS_RE.sub(" ", text).strip()


def strip_ordinal(value: Any) -> str:
    if value is None:
        return ""
    return _ORDINAL_RE.sub("", str(value), count=1)


def normalize_submitted_question(value: Any) -> str:
    """
    Question text coming back from the form carries client-side numbering
    ("3. What is ...?"). Stored question text is never ordinal-stripped.
    """
    return normalize_text(strip_ordinal(value))


def normalize_email(value: Any) -> str:
    return ("" if value is None else str(value)).strip().lower()


__all__ = ["normalize_text", "strip_ordinal", "normalize_submitted_question", "normalize_email"]
