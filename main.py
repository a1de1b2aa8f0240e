# main.py: FlightPrep LMS entry point, BASE_PATH-aware (psycopg3 + pooling)
# Resolves the signed-in caller once per request and wires the student and
# admin blueprints to the PostgreSQL stores, the state store and the AI client.

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import click
from flask import Flask, abort, flash, g, jsonify, redirect, request, session, url_for

# Database (psycopg 3)
import psycopg
from psycopg import conninfo
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

import authoring
from admin import create_admin_blueprint
from ai import AIClient
from errors import DependencyError, LMSError
from exam import create_exam_blueprint
from home import register_home_routes
from identity import Caller, claims_for, request_email
from settings import create_settings_blueprint
from state_store import PgStateStore
from stores import build_stores, ensure_schema
from tutor import create_tutor_blueprint

# =============================================================================
# Logging
# =============================================================================
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("flightprep")


logger = configure_logging()

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,  # HTTPS in production
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
DEV_USER_EMAIL = (os.getenv("DEV_USER_EMAIL") or "student@example.com").strip().lower()

# =============================================================================
# OAuth (Google), supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
elif AUTH_REQUIRED:
    logger.warning("Google OAuth is not configured; only proxy-authenticated requests can sign in.")


def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth


def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p


def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/callback"):
        return base
    return base.rstrip("/") + "/auth/callback"

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_DB_DEFAULTS = {"connect_timeout": 10, "options": "-c search_path=public"}
_SA_SCHEMES = ("postgresql+psycopg", "postgres+psycopg", "postgresql+psycopg2", "postgres+psycopg2")


def _url_conninfo(url: str) -> str:
    """DATABASE_URL as a libpq conninfo; SQLAlchemy-style schemes are accepted."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError("DATABASE_URL is not a URL")
    if scheme in _SA_SCHEMES:
        scheme = "postgresql"
    if scheme not in ("postgresql", "postgres"):
        raise ValueError(f"unsupported scheme '{scheme}'")
    params = conninfo.conninfo_to_dict(f"{scheme}://{rest}")
    if not params.get("dbname"):
        raise ValueError("DATABASE_URL missing dbname")
    missing = {k: v for k, v in _DB_DEFAULTS.items() if k not in params}
    return conninfo.make_conninfo(f"{scheme}://{rest}", **missing)


def _fields_conninfo() -> str:
    if not (DB_NAME and DB_USER and DB_PASS):
        raise RuntimeError("DATABASE_URL or DB_NAME, DB_USER, DB_PASS must be set.")
    return conninfo.make_conninfo(
        host=DB_HOST or "127.0.0.1",
        port=int(DB_PORT or 5432),
        dbname=DB_NAME,
        user=DB_USER,
        password=DB_PASS,
        **_DB_DEFAULTS,
    )


def _conninfo() -> str:
    if DATABASE_URL:
        try:
            info = _url_conninfo(DATABASE_URL)
            logger.info("DB: using DATABASE_URL")
            return info
        except (ValueError, psycopg.ProgrammingError) as e:
            logger.warning("DB: ignoring DATABASE_URL: %s", e)
    info = _fields_conninfo()
    logger.info("DB: TCP -> %s:%s", DB_HOST or "127.0.0.1", DB_PORT or 5432)
    return info

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_conninfo(), min_size=1, max_size=DB_POOL_MAX, open=True)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()


def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


@contextmanager
def transaction():
    """One connection, one transaction: commits on success, rolls back on error."""
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

# =============================================================================
# Stores, state and AI
# =============================================================================
_db = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "transaction": transaction,
}
stores = build_stores(_db)
state = PgStateStore(fetch_one, execute, transaction)
ai_client = AIClient()

# =============================================================================
# Identity
# =============================================================================
def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    public_exact = {
        "/favicon.ico", _bp("/favicon.ico"),
        "/healthz", _bp("/healthz"),
        "/login", _bp("/login"),
        "/logout", _bp("/logout"),
        "/auth/callback", _bp("/auth/callback"),
    }
    return path in public_exact


def _is_api_path(path: str) -> bool:
    if path.startswith("/admin") or path.startswith(_bp("/admin")):
        return True
    return request.method != "GET" or request.accept_mimetypes.best == "application/json"


def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/")
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/auth"), "/login", "/auth"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return _bp("/")
    return urlunsplit(("", "", path, parts.query, "")) or _bp("/")


def _caller_for(email: str, name: Optional[str] = None) -> Caller:
    user = stores.users.ensure(email)
    return Caller(
        uid=user.id,
        email=user.email,
        name=name or user.full_name,
        claims=claims_for(user.email, user.role),
    )


@app.before_request
def attach_caller():
    g.caller = None
    path = request.path
    if _is_public_path(path):
        return
    email = request_email()
    if not email and not AUTH_REQUIRED:
        email = DEV_USER_EMAIL
    if email:
        try:
            g.caller = _caller_for(email, (session.get("user") or {}).get("name"))
        except DependencyError as e:
            if _is_api_path(path):
                return jsonify({"success": False, "ok": False, "message": e.message, "error": e.message}), e.status
            return (e.message, e.status)
        return
    if _is_api_path(path):
        # flows answer 401 themselves
        return
    full = request.full_path if request.query_string else request.path
    return redirect(f"{_bp('/login')}?next={quote(_sanitize_next(full), safe='/:?&=')}")


@app.context_processor
def inject_caller_and_base():
    return {
        "caller": getattr(g, "caller", None),
        "base_path": BASE_PATH,
        "bp": _bp,
    }


@app.errorhandler(LMSError)
def handle_lms_error(e: LMSError):
    return jsonify({"success": False, "ok": False, "message": e.message, "error": e.message}), e.status

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
    except (psycopg.Error, RuntimeError) as e:
        logger.exception("health check failed")
        return (f"error: {e}", 500)
    ok = bool(row and row.get("ok") == 1)
    return ("ok" if ok else "db-fail", 200 if ok else 500)


@app.get("/favicon.ico")
def favicon():
    return ("", 204)


@app.get("/login")
def login():
    if oauth is None and not AUTH_REQUIRED:
        return redirect(url_for("dashboard"))
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())


@app.get("/logout")
def logout():
    session.clear()
    flash("Signed out.", "success")
    return redirect(_bp("/login") if AUTH_REQUIRED else _bp("/"))


@app.get("/auth/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") or {}
    if not claims:
        claims = provider.google.userinfo(token=token) or {}

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "picture": claims.get("picture"),
        "sub": claims.get("sub"),
    }
    try:
        stores.users.ensure(email)
    except DependencyError:
        logger.exception("could not record user %s at sign-in", email)

    logger.info("signed in: %s", email)
    return redirect(_sanitize_next(session.pop("login_next", None)))


# --- Register the SAME routes under BASE_PATH aliases (e.g., /lms/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/callback", endpoint="auth_callback_bp",
                     view_func=auth_callback, methods=["GET"])

# =============================================================================
# Blueprints
# =============================================================================
_student_deps: Dict[str, Any] = {"stores": stores, "state": state, "ai": ai_client}

register_home_routes(app, BASE_PATH, {"stores": stores})
app.register_blueprint(create_exam_blueprint(BASE_PATH, _student_deps))
app.register_blueprint(create_tutor_blueprint(BASE_PATH, _student_deps))
app.register_blueprint(create_settings_blueprint(BASE_PATH, {"stores": stores}))
app.register_blueprint(create_admin_blueprint(BASE_PATH, {"stores": stores, "ai": ai_client}))

# =============================================================================
# CLI
# =============================================================================
@app.cli.command("init-db")
def init_db_command():
    """Create the tables if they do not exist."""
    ensure_schema(execute)
    click.echo("Database schema is ready.")


@app.cli.command("seed-admin")
@click.argument("email")
def seed_admin_command(email: str):
    """Create EMAIL as an administrator (or promote the existing user)."""
    try:
        out = authoring.seed_admin(email, stores)
    except LMSError as e:
        raise click.ClickException(e.message)
    click.echo(out["message"])

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
