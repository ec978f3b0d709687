# sampler.py — random question subset for the quiz form
import random
from typing import Any, Dict, Iterable, List, Optional

from quiz_store import QuestionRow

NO_OPTIONS_PLACEHOLDER = "No options provided"


def sample_questions(dataset: Iterable[QuestionRow], limit: int = 10,
                     rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    """
    Keep rows with question text and at least three options, shuffle, take
    `limit`. Every call reshuffles; nothing is remembered between calls.
    """
    valid = [row for row in dataset if row.is_valid()]
    (rng or random).shuffle(valid)
    out: List[Dict[str, Any]] = []
    for row in valid[:max(0, limit)]:
        options = row.filled_options
        out.append({
            "question": row.text,
            "options": options if options else [NO_OPTIONS_PLACEHOLDER],
        })
    return out


__all__ = ["sample_questions", "NO_OPTIONS_PLACEHOLDER"]
