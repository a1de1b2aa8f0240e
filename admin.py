from typing import Any, Callable, Dict

from flask import Blueprint, jsonify, request

import analytics
import authoring
from identity import current_caller, require_admin


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Admin console API (JSON), including:
      • Question bank and exam authoring (manual, from bank, from source)
      • Departments and subjects
      • Users and invitations
      • AI tutor customization
      • Analytics
    deps:
      - stores: stores.Stores
      - ai: ai.AIClient (or anything with the same methods)
    Every endpoint answers {success, message, ...}; failures carry the
    status of the error raised by the flow (400/401/403/404/502).
    """
    stores = deps["stores"]
    ai = deps["ai"]

    # Mount at /<BASE_PATH>/admin (e.g. /lms/admin) or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    def _respond(fn: Callable[..., Dict[str, Any]], *args, **kwargs):
        body, status = authoring.run_flow(fn, current_caller(), *args, **kwargs)
        return jsonify(body), status

    def _payload() -> Any:
        return request.get_json(silent=True)

    def _report(compute: Callable[[], Any]) -> Callable[..., Dict[str, Any]]:
        def flow(caller):
            require_admin(caller)
            return {"success": True, "message": "ok", "data": compute()}
        return flow

    # ---------- Identity ----------
    @bp.get("/whoami")
    def whoami():
        caller = current_caller()
        if caller is None:
            return jsonify({"success": False, "message": "Authentication required."}), 401
        return jsonify({
            "success": True,
            "message": "ok",
            "uid": caller.uid,
            "email": caller.email,
            "name": caller.name,
            "claims": caller.claims,
        })

    # ---------- Question bank ----------
    @bp.get("/questions")
    def questions_list():
        return _respond(authoring.list_questions, stores,
                        department=request.args.get("department") or None,
                        subject=request.args.get("subject") or None)

    @bp.post("/questions")
    def questions_add():
        return _respond(authoring.add_question, _payload(), stores)

    # ---------- Exams ----------
    @bp.get("/exams")
    def exams_list():
        return _respond(authoring.list_exams, stores)

    @bp.post("/exams")
    def exams_create():
        return _respond(authoring.create_exam, _payload(), stores)

    @bp.post("/exams/from-bank")
    def exams_from_bank():
        return _respond(authoring.create_exam_from_bank, _payload(), stores, ai)

    @bp.post("/exams/from-source")
    def exams_from_source():
        return _respond(authoring.create_exam_from_source, _payload(), stores, ai)

    # ---------- Departments & subjects ----------
    @bp.get("/departments")
    def departments_list():
        return _respond(authoring.list_departments, stores)

    @bp.post("/departments")
    def departments_add():
        return _respond(authoring.add_department, _payload(), stores)

    @bp.get("/subjects")
    def subjects_list():
        return _respond(authoring.list_subjects, stores,
                        department=request.args.get("department") or None)

    @bp.post("/subjects")
    def subjects_add():
        return _respond(authoring.add_subject, _payload(), stores)

    # ---------- Users ----------
    @bp.get("/users")
    def users_list():
        return _respond(authoring.list_users, stores)

    @bp.post("/users/invite")
    def users_invite():
        return _respond(authoring.invite_user, _payload(), stores)

    # ---------- AI tutor ----------
    @bp.post("/ai-customization")
    def ai_customization():
        return _respond(authoring.customize_tutor, _payload(), stores)

    # ---------- Analytics ----------
    @bp.get("/analytics/kpis")
    def analytics_kpis():
        return _respond(_report(lambda: analytics.kpis(stores)))

    @bp.get("/analytics/pass-fail")
    def analytics_pass_fail():
        return _respond(_report(lambda: analytics.pass_fail_by_month(stores)))

    @bp.get("/analytics/score-distribution")
    def analytics_score_distribution():
        return _respond(_report(lambda: analytics.score_distribution(stores)))

    @bp.get("/analytics/difficult-subjects")
    def analytics_difficult_subjects():
        return _respond(_report(lambda: analytics.difficult_subjects(stores)))

    return bp
