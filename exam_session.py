"""
Exam session controller.

Steps one learner through an ordered question list under a time budget.
States: in_progress -> submitted (terminal). Only `submit()` has an external
effect: a single call to the result writer. The session itself is transient;
the web layer keeps it in a state store between requests via to_dict/from_dict
and re-binds the questions and writer on load. Each attempt carries an
`attempt_id` so the result store can refuse a second result for it.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import scoring
from errors import InvalidExam, NotFoundError, ValidationError
from models import Exam, ExamResult, Question

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
SUBMITTED = "submitted"

ResultWriter = Callable[[ExamResult], str]


def format_time(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def _main_subject(questions: Sequence[Question]) -> str:
    """Most frequent subject; ties go to the one met first."""
    counts = Counter(q.subject for q in questions if q.subject)
    return counts.most_common(1)[0][0] if counts else ""


class ExamSession:
    def __init__(
        self,
        exam_id: str,
        exam_title: str,
        user_id: str,
        questions: Sequence[Question],
        time_remaining: int,
        *,
        subject: str = "",
        pass_threshold: Optional[int] = None,
        current_question_index: int = 0,
        answers: Optional[Dict[str, str]] = None,
        started_at: Optional[datetime] = None,
        clock_at: Optional[float] = None,
        state: str = IN_PROGRESS,
        score: Optional[int] = None,
        result_id: Optional[str] = None,
        attempt_id: Optional[str] = None,
        result_writer: Optional[ResultWriter] = None,
    ):
        if not questions:
            raise InvalidExam("This exam has no questions.", field="questionIds")
        self.exam_id = exam_id
        self.exam_title = exam_title
        self.user_id = user_id
        self.questions: List[Question] = list(questions)
        self.time_remaining = max(0, int(time_remaining))
        self.subject = subject
        self.pass_threshold = pass_threshold
        self.current_question_index = min(max(0, int(current_question_index)), len(self.questions) - 1)
        self.answers: Dict[str, str] = dict(answers or {})
        self.started_at = started_at or datetime.now(timezone.utc)
        self.clock_at = clock_at if clock_at is not None else time.time()
        self.state = state
        self.score = score
        self.result_id = result_id
        self.attempt_id = attempt_id or uuid.uuid4().hex
        self._writer = result_writer
        self._ids = {q.id for q in self.questions}

    # ---------------------------------------------------------------- building
    @classmethod
    def start(
        cls,
        exam: Exam,
        questions: Sequence[Question],
        user_id: str,
        *,
        shuffle: bool = False,
        rng: Optional[random.Random] = None,
        result_writer: Optional[ResultWriter] = None,
        now: Optional[float] = None,
    ) -> "ExamSession":
        """New session for `exam`. Unresolvable question ids are skipped."""
        by_id = {q.id: q for q in questions}
        ordered = [by_id[qid] for qid in exam.question_ids if qid in by_id]
        missing = len(exam.question_ids) - len(ordered)
        if missing:
            logger.warning("exam %s: %d question(s) could not be loaded", exam.id, missing)
        if not ordered:
            raise InvalidExam("This exam has no questions.", field="questionIds")
        subject = _main_subject(ordered)
        if shuffle:
            (rng or random.Random()).shuffle(ordered)
        return cls(
            exam_id=exam.id,
            exam_title=exam.title,
            user_id=user_id,
            questions=ordered,
            time_remaining=exam.duration * 60,
            subject=subject,
            pass_threshold=exam.pass_threshold,
            clock_at=now,
            result_writer=result_writer,
        )

    # ------------------------------------------------------------- properties
    @property
    def is_submitted(self) -> bool:
        return self.state == SUBMITTED

    @property
    def last_index(self) -> int:
        return len(self.questions) - 1

    def current_question(self) -> Question:
        return self.questions[self.current_question_index]

    # ------------------------------------------------------------ transitions
    def _require_in_progress(self) -> None:
        if self.state != IN_PROGRESS:
            raise ValidationError("This exam has already been submitted.", field="state")

    def select_answer(self, question_id: str, option: str) -> None:
        self._require_in_progress()
        if question_id not in self._ids:
            raise ValidationError("Question is not part of this exam.", field="questionId")
        self.answers[question_id] = option

    def next(self) -> bool:
        self._require_in_progress()
        if self.current_question_index >= self.last_index:
            return False
        self.current_question_index += 1
        return True

    def previous(self) -> bool:
        self._require_in_progress()
        if self.current_question_index <= 0:
            return False
        self.current_question_index -= 1
        return True

    def tick(self) -> bool:
        """One second elapses. Reaching zero forces submission."""
        if self.state != IN_PROGRESS:
            return False
        self.time_remaining = max(0, self.time_remaining - 1)
        if self.time_remaining == 0:
            logger.info("exam %s: time expired for user %s, auto-submitting", self.exam_id, self.user_id)
            self.submit()
        return True

    def advance_clock(self, seconds: int) -> int:
        """Apply `seconds` ticks in order; stops early once submitted."""
        applied = 0
        for _ in range(max(0, int(seconds))):
            if not self.tick():
                break
            applied += 1
        return applied

    def sync_clock(self, now: Optional[float] = None) -> int:
        """Catch the countdown up to wall time since the last sync."""
        now = time.time() if now is None else now
        elapsed = int(now - self.clock_at)
        if elapsed <= 0:
            return 0
        self.clock_at += elapsed
        return self.advance_clock(elapsed)

    def submit(self) -> Optional[str]:
        """
        Idempotent. The first call scores the answers and writes one result;
        later calls return the recorded result id without writing. A failed
        write propagates and leaves the session submitted.
        """
        if self.state == SUBMITTED:
            return self.result_id
        self.state = SUBMITTED
        self.score = scoring.score(self.answers, self.questions)
        return self._write()

    def resubmit(self) -> Optional[str]:
        """Explicit retry of a result write that failed during submit()."""
        if self.state != SUBMITTED:
            return self.submit()
        if self.result_id is None:
            return self._write()
        return self.result_id

    def _write(self) -> str:
        if self._writer is None:
            raise RuntimeError("ExamSession has no result writer bound.")
        result = ExamResult(
            exam_id=self.exam_id,
            user_id=self.user_id,
            exam_title=self.exam_title,
            subject=self.subject,
            attempt_id=self.attempt_id,
            answers=dict(self.answers),
            score=int(self.score or 0),
            submitted_at=datetime.now(timezone.utc),
        )
        self.result_id = self._writer(result)
        logger.info("exam %s: result %s saved for user %s (score %s)",
                    self.exam_id, self.result_id, self.user_id, self.score)
        return self.result_id

    # ------------------------------------------------------------------- views
    def view(self) -> Dict[str, Any]:
        """What the exam page needs; never includes correct answers."""
        q = self.current_question()
        total = len(self.questions)
        out: Dict[str, Any] = {
            "examId": self.exam_id,
            "examTitle": self.exam_title,
            "state": self.state,
            "currentQuestionIndex": self.current_question_index,
            "questionCount": total,
            "question": q.to_dict(include_answer=False),
            "selected": self.answers.get(q.id),
            "answeredCount": len(self.answers),
            "progress": round((self.current_question_index + 1) / total * 100),
            "timeRemaining": self.time_remaining,
            "timeDisplay": format_time(self.time_remaining),
            "hasNext": self.current_question_index < self.last_index,
            "hasPrevious": self.current_question_index > 0,
        }
        if self.state == SUBMITTED:
            out["score"] = self.score
            out["resultId"] = self.result_id
            out["status"] = scoring.verdict(self.score or 0, self.pass_threshold)
        return out

    # ---------------------------------------------------------- serialization
    def to_dict(self) -> Dict[str, Any]:
        return {
            "exam_id": self.exam_id,
            "exam_title": self.exam_title,
            "user_id": self.user_id,
            "question_ids": [q.id for q in self.questions],
            "time_remaining": self.time_remaining,
            "subject": self.subject,
            "pass_threshold": self.pass_threshold,
            "current_question_index": self.current_question_index,
            "answers": dict(self.answers),
            "started_at": self.started_at.isoformat(),
            "clock_at": self.clock_at,
            "state": self.state,
            "score": self.score,
            "result_id": self.result_id,
            "attempt_id": self.attempt_id,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        questions: Sequence[Question],
        result_writer: Optional[ResultWriter] = None,
    ) -> "ExamSession":
        by_id = {q.id: q for q in questions}
        ids = [str(i) for i in data.get("question_ids") or []]
        missing = [qid for qid in ids if qid not in by_id]
        if missing:
            raise NotFoundError(f"{len(missing)} question(s) of this exam are no longer available.")
        started = data.get("started_at")
        return cls(
            exam_id=data["exam_id"],
            exam_title=data.get("exam_title") or "",
            user_id=data["user_id"],
            questions=[by_id[qid] for qid in ids],
            time_remaining=int(data.get("time_remaining") or 0),
            subject=data.get("subject") or "",
            pass_threshold=data.get("pass_threshold"),
            current_question_index=int(data.get("current_question_index") or 0),
            answers=data.get("answers") or {},
            started_at=datetime.fromisoformat(started) if started else None,
            clock_at=data.get("clock_at"),
            state=data.get("state") or IN_PROGRESS,
            score=data.get("score"),
            result_id=data.get("result_id"),
            attempt_id=data.get("attempt_id"),
            result_writer=result_writer,
        )
