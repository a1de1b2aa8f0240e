# tutor.py
# AI tutor chat and personalized study plans for students.
# Chat history lives in the state store under tutor_history:<user_id> and is
# trimmed to the most recent TUTOR_HISTORY_LIMIT turns after every exchange.

import logging
import os
from typing import Any, Dict, List

from flask import Blueprint, jsonify, redirect, render_template, request, url_for

import scoring
from errors import LMSError, ValidationError
from identity import current_caller
from models import DEPARTMENTS
from state_store import tutor_history_key

logger = logging.getLogger(__name__)

TUTOR_HISTORY_LIMIT = int(os.getenv("TUTOR_HISTORY_LIMIT") or 20)
QUESTION_CHAR_LIMIT = 2000


def trim_history(history: List[Dict[str, str]], limit: int = TUTOR_HISTORY_LIMIT) -> List[Dict[str, str]]:
    if limit <= 0:
        return []
    return list(history[-limit:])


def create_tutor_blueprint(base_path: str, deps: Dict[str, Any], name: str = "tutor") -> Blueprint:
    """
    Mounted at <base_path>/student.
    deps:
      - stores (results, exams, tutor_settings)
      - state  (get/set/delete)
      - ai     (tutor_response, study_plan)
      - history_limit (optional int)
    """
    url_prefix = (base_path.rstrip("/") if base_path else "") + "/student"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    stores = deps["stores"]
    state = deps["state"]
    ai = deps["ai"]
    history_limit = int(deps.get("history_limit") or TUTOR_HISTORY_LIMIT)

    def _json_error(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    @bp.get("/ai-tutor")
    def tutor_page():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            history = state.get(tutor_history_key(caller.uid), []) or []
        except LMSError as e:
            return render_template("ai_tutor.html", history=[], departments=DEPARTMENTS, err=e.message)
        return render_template("ai_tutor.html", history=history, departments=DEPARTMENTS, err=None)

    @bp.post("/ai-tutor")
    def tutor_ask():
        caller = current_caller()
        if caller is None:
            return _json_error("unauthorized", 401)
        body = request.get_json(silent=True) or {}
        question = str(body.get("question") or "").strip()
        department = str(body.get("department") or "").strip()
        try:
            if not question:
                raise ValidationError("Please enter a question.", field="question")
            if len(question) > QUESTION_CHAR_LIMIT:
                raise ValidationError(f"Questions are limited to {QUESTION_CHAR_LIMIT} characters.",
                                      field="question")
            if department and department not in DEPARTMENTS:
                raise ValidationError("Unknown department.", field="department")

            key = tutor_history_key(caller.uid)
            history = state.get(key, []) or []
            setting = stores.tutor_settings.get(department) if department else None
            out = ai.tutor_response(
                question,
                history=history,
                custom_prompt=setting.custom_prompt if setting else "",
                knowledge_base=setting.knowledge_base if setting else "",
            )
            history = trim_history(
                history + [{"role": "user", "text": question}, {"role": "model", "text": out["response"]}],
                history_limit,
            )
            state.set(key, history)
        except LMSError as e:
            return _json_error(e.message, e.status)
        return jsonify({"ok": True, "response": out["response"], "history": history})

    @bp.delete("/ai-tutor")
    def tutor_clear():
        caller = current_caller()
        if caller is None:
            return _json_error("unauthorized", 401)
        try:
            state.delete(tutor_history_key(caller.uid))
        except LMSError as e:
            return _json_error(e.message, e.status)
        return jsonify({"ok": True})

    @bp.post("/study-plan")
    def study_plan():
        caller = current_caller()
        if caller is None:
            return _json_error("unauthorized", 401)
        try:
            results = stores.results.list_for_user(caller.uid)
            if not results:
                raise ValidationError("Complete at least one mock exam to get a study plan.")
            thresholds = stores.exams.thresholds()
            summary = [{
                "examTitle": r.exam_title,
                "subject": r.subject or "General",
                "score": r.score,
                "status": scoring.verdict(r.score, thresholds.get(r.exam_id)),
                "submittedAt": r.submitted_at.isoformat() if r.submitted_at else None,
            } for r in results]
            out = ai.study_plan(caller.uid, summary)
        except LMSError as e:
            return _json_error(e.message, e.status)
        logger.info("study plan generated for %s from %d results", caller.uid, len(results))
        return jsonify({"ok": True, **out})

    return bp
