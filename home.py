# home.py
from typing import Any, Dict, List

from flask import redirect, render_template, url_for

import scoring
from errors import LMSError
from identity import current_caller


def register_home_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers student overview pages:
      - GET "/"                     -> endpoint 'index' (redirects to the dashboard)
      - GET "/student/dashboard"    -> endpoint 'dashboard'
      - GET "/student/leaderboard"  -> endpoint 'leaderboard'
      - GET "/student/my-progress"  -> endpoint 'my_progress'
    When base_path is set the student pages live under it and "/" stays at the root.
    """
    stores = deps["stores"]
    prefix = base_path.rstrip("/") if base_path else ""

    def _rule(rule: str) -> str:
        return f"{prefix}{rule}"

    def _with_verdicts(results, thresholds) -> List[Dict[str, Any]]:
        rows = []
        for r in results:
            d = r.to_dict()
            d["status"] = scoring.verdict(r.score, thresholds.get(r.exam_id))
            rows.append(d)
        return rows

    # ----- Routes -----
    def index():
        if current_caller() is None:
            return redirect(url_for("login"))
        return redirect(url_for("dashboard"))

    def dashboard():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            exams = stores.exams.list(limit=3)
            top = stores.results.leaderboard(limit=3)
            mine = stores.results.list_for_user(caller.uid)
        except LMSError as e:
            return render_template("dashboard.html", caller=caller, exams=[], leaders=[],
                                   recent=[], err=e.message)
        return render_template(
            "dashboard.html",
            caller=caller,
            exams=[e.to_dict() for e in exams],
            leaders=top,
            recent=[r.to_dict() for r in mine[:5]],
            err=None,
        )

    def leaderboard():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            rows = stores.results.leaderboard(limit=50)
        except LMSError as e:
            return render_template("leaderboard.html", rows=[], err=e.message)
        for row in rows:
            row["isMe"] = row["userId"] == caller.uid
        return render_template("leaderboard.html", rows=rows, err=None)

    def my_progress():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            results = stores.results.list_for_user(caller.uid)
            thresholds = stores.exams.thresholds()
        except LMSError as e:
            return render_template("my_progress.html", results=[], chart=[], average=0,
                                   passed=0, err=e.message)
        rows = _with_verdicts(results, thresholds)
        average = round(sum(r.score for r in results) / len(results)) if results else 0
        # oldest first for the chart
        chart = [{"label": r.exam_title, "score": r.score} for r in reversed(results)]
        return render_template(
            "my_progress.html",
            results=rows,
            chart=chart,
            average=average,
            passed=sum(1 for r in rows if r["status"] == "Passed"),
            err=None,
        )

    app.add_url_rule("/", view_func=index, methods=["GET"], endpoint="index")
    app.add_url_rule(_rule("/student/dashboard"), view_func=dashboard, methods=["GET"], endpoint="dashboard")
    app.add_url_rule(_rule("/student/leaderboard"), view_func=leaderboard, methods=["GET"], endpoint="leaderboard")
    app.add_url_rule(_rule("/student/my-progress"), view_func=my_progress, methods=["GET"], endpoint="my_progress")
