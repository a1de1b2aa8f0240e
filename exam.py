# exam.py
# -----------------------------------------------------------------------------
# Student mock exams: list, start/resume, timed session actions, results page
# and on-demand AI explanations.
# - One in-progress session per (user, exam), kept in the state store and
#   updated under that key's lock; unchanged sessions are not written back
# - Countdown is caught up to wall time on every request; expiry auto-submits
# - Submit is idempotent; a failed result write can be retried with submit
# - JSON actions answer {ok: true, ...session view} or {ok: false, error}
# -----------------------------------------------------------------------------

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from flask import Blueprint, flash, jsonify, redirect, render_template, request, url_for

import scoring
from errors import DependencyError, LMSError, NotFoundError, ValidationError
from exam_session import ExamSession
from identity import current_caller
from models import Exam, Question
from state_store import exam_session_key

logger = logging.getLogger(__name__)


def ordered_questions(exam: Exam, questions: List[Question]) -> List[Question]:
    """Questions in the exam's declared order; ids that did not resolve are dropped."""
    by_id = {q.id: q for q in questions}
    return [by_id[qid] for qid in exam.question_ids if qid in by_id]


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/student.
    Required deps: stores, state, ai
    Optional deps: shuffle (bool), clock () -> float
    """
    url_prefix = (base_path.rstrip("/") if base_path else "") + "/student"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    stores = deps["stores"]
    state = deps["state"]
    ai = deps["ai"]
    clock: Callable[[], float] = deps.get("clock") or time.time

    # ---- Config --------------------------------------------------------------
    SHUFFLE_QUESTIONS = deps.get(
        "shuffle", os.getenv("EXAM_SHUFFLE_QUESTIONS", "1").lower() in ("1", "true", "yes")
    )

    # ------------------------------- helpers ----------------------------------
    def _json_error(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _to_dashboard(msg: str):
        flash(msg, "error")
        return redirect(url_for("dashboard"))

    def _key(user_id: str, exam_id: str) -> str:
        return exam_session_key(user_id, exam_id)

    def _session_from(data: Optional[Dict[str, Any]]) -> Optional[ExamSession]:
        if not data:
            return None
        questions = stores.questions.get_many(data.get("question_ids") or [])
        return ExamSession.from_dict(data, questions, result_writer=stores.results.create)

    def _save_if_changed(slot, before: Optional[Dict[str, Any]], sess: ExamSession) -> None:
        after = sess.to_dict()
        if after != before:
            slot.set(after)

    def _start_session(user_id: str, exam_id: str) -> ExamSession:
        exam = stores.exams.get(exam_id)
        if exam is None:
            raise NotFoundError("Exam not found.")
        questions = stores.questions.get_many(exam.question_ids)
        sess = ExamSession.start(
            exam, questions, user_id,
            shuffle=SHUFFLE_QUESTIONS,
            result_writer=stores.results.create,
            now=clock(),
        )
        logger.info("exam %s started by %s (%d questions)", exam_id, user_id, len(sess.questions))
        return sess

    def _with_session(exam_id: str, action: Callable[[ExamSession], Optional[Dict[str, Any]]]):
        """
        Under the session key's lock: load, catch the clock up, apply `action`,
        persist only if something changed, answer with the view. A failed action
        still persists what happened before it (e.g. a submitted session whose
        result write failed).
        """
        caller = current_caller()
        if caller is None:
            return _json_error("unauthorized", 401)
        failure: Optional[LMSError] = None
        extra: Dict[str, Any] = {}
        try:
            with state.locked(_key(caller.uid, exam_id)) as slot:
                sess = _session_from(slot.value)
                if sess is None:
                    return _json_error("No exam in progress.", 404)
                before = sess.to_dict()
                try:
                    sess.sync_clock(clock())
                    extra = action(sess) or {}
                except LMSError as e:
                    failure = e
                _save_if_changed(slot, before, sess)
        except LMSError as e:
            return _json_error(e.message, e.status)
        if failure is not None:
            return _json_error(failure.message, failure.status)
        if sess.is_submitted:
            extra = {**_submission(sess), **extra}
        return jsonify({"ok": True, **sess.view(), **extra})

    def _submission(sess: ExamSession) -> Dict[str, Any]:
        return {
            "resultId": sess.result_id,
            "score": sess.score,
            "status": scoring.verdict(sess.score or 0, sess.pass_threshold),
            "resultUrl": url_for(f"{name}.result_page", result_id=sess.result_id) if sess.result_id else None,
        }

    def _own_result(result_id: str):
        caller = current_caller()
        result = stores.results.get(result_id)
        if result is None or caller is None or (result.user_id != caller.uid and not caller.is_admin):
            raise NotFoundError("Exam result not found.")
        exam = stores.exams.get(result.exam_id)
        if exam is None:
            raise NotFoundError("The exam for this result no longer exists.")
        questions = ordered_questions(exam, stores.questions.get_many(exam.question_ids))
        return result, exam, questions

    # --------------------------------- routes ---------------------------------
    @bp.get("/mock-exams")
    def mock_exams():
        if current_caller() is None:
            return redirect(url_for("login"))
        try:
            exams = stores.exams.list()
        except DependencyError as e:
            return _to_dashboard(e.message)
        return render_template("mock_exams.html", exams=[e.to_dict() for e in exams])

    @bp.get("/mock-exams/<exam_id>")
    def exam_page(exam_id: str):
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        failure: Optional[LMSError] = None
        try:
            with state.locked(_key(caller.uid, exam_id)) as slot:
                sess = _session_from(slot.value)
                before = sess.to_dict() if sess is not None else None
                if sess is None or (sess.is_submitted and sess.result_id):
                    sess = _start_session(caller.uid, exam_id)
                    before = None
                try:
                    sess.sync_clock(clock())
                except LMSError as e:
                    failure = e
                _save_if_changed(slot, before, sess)
        except LMSError as e:
            return _to_dashboard(e.message)
        if failure is not None:
            return _to_dashboard(failure.message)
        if sess.is_submitted and sess.result_id:
            flash("Time is up. Your exam was submitted automatically.", "info")
            return redirect(url_for(f"{name}.result_page", result_id=sess.result_id))
        return render_template(
            "exam.html",
            view=sess.view(),
            session_url=url_for(f"{name}.session_state", exam_id=exam_id),
            answer_url=url_for(f"{name}.session_answer", exam_id=exam_id),
            next_url=url_for(f"{name}.session_next", exam_id=exam_id),
            previous_url=url_for(f"{name}.session_previous", exam_id=exam_id),
            submit_url=url_for(f"{name}.session_submit", exam_id=exam_id),
        )

    @bp.get("/mock-exams/<exam_id>/session")
    def session_state(exam_id: str):
        return _with_session(exam_id, lambda sess: None)

    @bp.post("/mock-exams/<exam_id>/answer")
    def session_answer(exam_id: str):
        body = request.get_json(silent=True) or {}

        def _answer(sess: ExamSession):
            qid = str(body.get("questionId") or sess.current_question().id)
            option = body.get("option")
            if not isinstance(option, str) or not option:
                raise ValidationError("An option must be selected.", field="option")
            sess.select_answer(qid, option)

        return _with_session(exam_id, _answer)

    @bp.post("/mock-exams/<exam_id>/next")
    def session_next(exam_id: str):
        return _with_session(exam_id, lambda sess: {"moved": sess.next()})

    @bp.post("/mock-exams/<exam_id>/previous")
    def session_previous(exam_id: str):
        return _with_session(exam_id, lambda sess: {"moved": sess.previous()})

    @bp.post("/mock-exams/<exam_id>/submit")
    def session_submit(exam_id: str):
        def _submit(sess: ExamSession):
            if sess.is_submitted and sess.result_id is None:
                sess.resubmit()
            else:
                sess.submit()

        return _with_session(exam_id, _submit)

    @bp.get("/results/<result_id>")
    def result_page(result_id: str):
        if current_caller() is None:
            return redirect(url_for("login"))
        try:
            result, exam, questions = _own_result(result_id)
        except LMSError as e:
            return _to_dashboard(e.message)
        rows = scoring.breakdown(result.answers, questions)
        return render_template(
            "results.html",
            result=result.to_dict(),
            exam=exam.to_dict(),
            rows=rows,
            correct=sum(1 for r in rows if r["isCorrect"]),
            total=len(rows),
            status=scoring.verdict(result.score, exam.pass_threshold),
            threshold=scoring.effective_threshold(exam.pass_threshold),
        )

    @bp.post("/results/<result_id>/explain/<question_id>")
    def explain(result_id: str, question_id: str):
        if current_caller() is None:
            return _json_error("unauthorized", 401)
        try:
            result, _exam, questions = _own_result(result_id)
            q = next((q for q in questions if q.id == question_id), None)
            if q is None:
                raise NotFoundError("Question not found in this exam.")
            out = ai.explain_answer(q.question_text, result.answers.get(q.id), q.correct_answer, q.subject)
        except LMSError as e:
            return _json_error(e.message, e.status)
        return jsonify({"ok": True, **out})

    return bp
