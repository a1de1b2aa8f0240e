# scoring.py
# Pure scoring for multiple-choice exams. The pass/fail threshold is applied by
# callers (results page, analytics) so it can differ per exam.

import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

from errors import InvalidExam
from models import Question

PASS_THRESHOLD = int(os.getenv("EXAM_PASS_SCORE") or 75)


def _is_correct(answers: Mapping[str, str], q: Question) -> bool:
    return answers.get(q.id) == q.correct_answer


def correct_count(answers: Mapping[str, str], questions: Sequence[Question]) -> int:
    return sum(1 for q in questions if _is_correct(answers, q))


def score(answers: Mapping[str, str], questions: Sequence[Question]) -> int:
    """
    Percentage of questions answered correctly, 0..100.
    Unanswered questions count as wrong. Halves round up (2/3 -> 67, 1/8 -> 13).
    """
    total = len(questions)
    if total == 0:
        raise InvalidExam("Cannot score an exam with no questions.", field="questions")
    right = correct_count(answers or {}, questions)
    # integer form of floor(100 * right / total + 0.5)
    return (200 * right + total) // (2 * total)


def effective_threshold(threshold: Optional[int] = None) -> int:
    return PASS_THRESHOLD if threshold is None else int(threshold)


def passed(score_percent: int, threshold: Optional[int] = None) -> bool:
    return int(score_percent) >= effective_threshold(threshold)


def verdict(score_percent: int, threshold: Optional[int] = None) -> str:
    return "Passed" if passed(score_percent, threshold) else "Failed"


def breakdown(answers: Mapping[str, str], questions: Sequence[Question]) -> List[Dict[str, Any]]:
    """Per-question rows for the results page, in the given question order."""
    rows: List[Dict[str, Any]] = []
    for i, q in enumerate(questions, start=1):
        given = answers.get(q.id)
        rows.append({
            "index": i,
            "questionId": q.id,
            "questionText": q.question_text,
            "options": list(q.options),
            "studentAnswer": given,
            "correctAnswer": q.correct_answer,
            "isCorrect": given == q.correct_answer,
            "subject": q.subject,
        })
    return rows
