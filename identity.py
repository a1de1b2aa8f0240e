# identity.py
# The authenticated caller and its claims. main.py resolves the caller once per
# request (session login, or an identity-aware proxy header when
# TRUST_PROXY_AUTH is set) and stores it on flask.g; flows receive it explicitly.

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from flask import g, request, session

from errors import AuthorizationError

logger = logging.getLogger(__name__)

_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}

# Identity-aware proxy headers are honored only behind a proxy that strips
# client-supplied copies.
TRUST_PROXY_AUTH = os.getenv("TRUST_PROXY_AUTH", "0").lower() in {"1", "true", "yes"}


@dataclass
class Caller:
    uid: str
    email: str
    name: str = ""
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return bool(self.claims.get("isAdmin"))


def claims_for(email: str, role: Optional[str]) -> Dict[str, bool]:
    is_admin = (role or "").lower() == "admin" or email.strip().lower() in ADMIN_EMAILS
    return {"isAdmin": is_admin, "isStudent": not is_admin}


def request_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    if e:
        return e
    if not TRUST_PROXY_AUTH:
        return None
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower() or None


def current_caller() -> Optional[Caller]:
    return getattr(g, "caller", None)


def require_caller(caller: Optional[Caller]) -> Caller:
    if caller is None:
        raise AuthorizationError("Authentication required.", status=401)
    return caller


def require_admin(caller: Optional[Caller]) -> Caller:
    caller = require_caller(caller)
    if not caller.is_admin:
        logger.warning("admin action refused for %s", caller.email)
        raise AuthorizationError("You must be an admin to perform this action.")
    return caller
