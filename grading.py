# grading.py — answer key, per-question verdicts and the score model
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from normalize import normalize_text
from quiz_store import QuestionRow

CORRECT = "Correct"
INCORRECT = "Incorrect"
PASS = "Pass"
FAIL = "Fail"


@dataclass(frozen=True)
class GradedAnswer:
    question: str
    user_answer: str
    verdict: str
    is_correct: bool

    def as_cells(self) -> Tuple[str, str, str]:
        return (self.question, self.user_answer, self.verdict)


def build_answer_key(dataset: Iterable[QuestionRow]) -> Dict[str, str]:
    """normalized question -> normalized correct letter; identical questions: last row wins."""
    key: Dict[str, str] = {}
    for row in dataset:
        question = normalize_text(row.text)
        correct = normalize_text(row.correct)
        if question and correct:
            key[question] = correct
    return key


def correct_option_for(question: str, dataset: Iterable[QuestionRow]) -> str:
    for row in dataset:
        if normalize_text(row.text) == question:
            return row.correct.strip()
    return ""


def grade_answer(question: str, user_answer: str,
                 answer_key: Dict[str, str], dataset: List[QuestionRow]) -> GradedAnswer:
    """
    `question` and `user_answer` arrive normalized. The correct option is read
    from the dataset row itself; the answer key only tells us whether the
    question is known at all.
    """
    correct = correct_option_for(question, dataset)
    if not correct and question in answer_key:
        correct = answer_key[question]
    is_correct = bool(correct) and user_answer.strip().lower() == correct.strip().lower()
    return GradedAnswer(
        question=question,
        user_answer=user_answer,
        verdict=CORRECT if is_correct else INCORRECT,
        is_correct=is_correct,
    )


def score_answers(graded: Iterable[GradedAnswer], points_per_correct: int = 2,
                  pass_score: int = 10) -> Tuple[int, str]:
    score = sum(points_per_correct for g in graded if g.is_correct)
    return score, (PASS if score >= pass_score else FAIL)


__all__ = [
    "GradedAnswer", "build_answer_key", "correct_option_for", "grade_answer",
    "score_answers", "CORRECT", "INCORRECT", "PASS", "FAIL",
]
