# settings.py
# Student account settings: the display name shown on the dashboard and the
# leaderboard. Sign-in goes through Google, so there is no password to manage.

import logging
from typing import Any, Dict

from flask import Blueprint, flash, redirect, render_template, request, url_for

from errors import LMSError
from identity import current_caller
from models import ProfileInput, parse_input

logger = logging.getLogger(__name__)


def create_settings_blueprint(base_path: str, deps: Dict[str, Any], name: str = "settings") -> Blueprint:
    """Mounted at <base_path>/student. deps: stores (users)."""
    url_prefix = (base_path.rstrip("/") if base_path else "") + "/student"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    stores = deps["stores"]

    def settings_view():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            user = stores.users.get_by_email(caller.email)
        except LMSError as e:
            return render_template("settings.html", full_name=caller.name, email=caller.email, err=e.message)
        full_name = user.full_name if user else caller.name
        return render_template("settings.html", full_name=full_name, email=caller.email, err=None)

    def update_profile():
        caller = current_caller()
        if caller is None:
            return redirect(url_for("login"))
        try:
            data = parse_input(ProfileInput, {"fullName": request.form.get("fullName") or ""})
            if stores.users.update_name(caller.uid, data.full_name) is None:
                flash("Your account could not be found.", "error")
                return redirect(url_for(f"{bp.name}.settings_view"))
        except LMSError as e:
            flash(e.message, "error")
            return redirect(url_for(f"{bp.name}.settings_view"))
        logger.info("display name updated for %s", caller.email)
        flash("Profile updated successfully.", "success")
        return redirect(url_for(f"{bp.name}.settings_view"))

    bp.add_url_rule("/settings", view_func=settings_view, methods=["GET"], endpoint="settings_view")
    bp.add_url_rule("/settings", view_func=update_profile, methods=["POST"], endpoint="update_profile")

    return bp
