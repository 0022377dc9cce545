# main.py: examen blanc API, BASE_PATH-aware (psycopg3 + pooling, Google OAuth)
# Exposes the candidate exam engine and the admin exam console as JSON blueprints.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit
from typing import Any, Dict, Optional

from flask import (
    Flask, abort, request, redirect, g, session, jsonify,
)

# Database (psycopg 3)
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from admin import ADMIN_EMAILS, create_admin_blueprint
from backend import ExamBackend
from exam import create_exam_blueprint
from exam_status import now_ms
from exam_storage import answer_store_factory

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# OAuth (Google): supports base or full callback in OAUTH_REDIRECT_BASE
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
else:
    print("[Auth] Google OAuth not configured; /login will answer 503.", flush=True)

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
    """
    Build the external callback URL:
    - If OAUTH_REDIRECT_BASE is a full callback, use it as-is.
    - Else treat it as a base and append '/auth/google/callback'.
    - If empty, derive from request.url_root + BASE_PATH.
    """
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/callback") or base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# Answer cache configuration
# =============================================================================
ANSWER_STORAGE = (os.getenv("ANSWER_STORAGE") or "postgres").strip().lower()
ANSWER_STORAGE_DIR = os.getenv("ANSWER_STORAGE_DIR") or os.path.join(os.getcwd(), "data", "answers")
ENSURE_SCHEMA = os.getenv("ENSURE_SCHEMA", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    SA_PREFIXES = (
        "postgresql+psycopg://",
        "postgres+psycopg://",
        "postgresql+psycopg2://",
        "postgres+psycopg2://",
    )
    for pref in SA_PREFIXES:
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = p.hostname
    if "host" in qs and qs["host"]:
        host = qs["host"][0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if "sslmode" in qs and qs["sslmode"]:
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)

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

exam_backend = ExamBackend(fetch_one, fetch_all, execute, execute_returning)

def _ensure_users_table():
    execute("""
        CREATE TABLE IF NOT EXISTS public.users (
            id          SERIAL PRIMARY KEY,
            email       TEXT UNIQUE NOT NULL,
            full_name   TEXT,
            role        TEXT NOT NULL DEFAULT 'candidate',
            created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

if ENSURE_SCHEMA:
    try:
        _ensure_users_table()
        exam_backend.ensure_schema()
    except Exception as e:
        print(f"[DB] schema setup skipped: {e}", flush=True)

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()

def ensure_user_row(email: str) -> Dict[str, Any]:
    row = fetch_one("SELECT id, email, full_name, role FROM users WHERE email = %s;", (email,))
    if row:
        return row
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'candidate')
        ON CONFLICT (email) DO UPDATE SET full_name = COALESCE(users.full_name, EXCLUDED.full_name)
        RETURNING id, email, full_name, role;
    """, (email, display))
    return rows[0]

def is_admin(email: Optional[str], role: Optional[str] = None) -> bool:
    if not email:
        return False
    if (role or "").strip().lower() == "admin":
        return True
    return email.strip().lower() in ADMIN_EMAILS

def current_user() -> Optional[Dict[str, Any]]:
    if not getattr(g, "user_email", None):
        return None
    return {"id": getattr(g, "user_id", None), "email": g.user_email,
            "is_admin": bool(getattr(g, "is_admin", False))}

# =============================================================================
# Routes (auth, health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/me")
def me():
    user = current_user()
    if not user:
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    return jsonify({"ok": True, "user": user})

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
    safe = urlunsplit(("", "", path, parts.query, ""))
    return safe or _bp("/")

@app.get("/login")
def login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/logout")
def logout():
    session.clear()
    return redirect(_bp("/"))

@app.get("/auth/callback")
@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()

    # Prefer ID token; fallback to userinfo
    claims = token.get("userinfo") if isinstance(token, dict) else None
    if not claims:
        try:
            meta = provider.google.load_server_metadata() or {}
        except Exception:
            meta = {}
        userinfo_url = meta.get("userinfo_endpoint") or "https://openidconnect.googleapis.com/v1/userinfo"
        claims = provider.google.get(userinfo_url).json()

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
        ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}")

    return redirect(_sanitize_next(session.pop("login_next", None)))

# --- Register the SAME routes under BASE_PATH aliases (e.g., /app/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/me", endpoint="me_bp", view_func=me, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/callback", endpoint="auth_callback_bp", view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_google_bp", view_func=auth_callback, methods=["GET"])

def _is_public_path(path: str) -> bool:
    public_exact = {
        "/healthz", _bp("/healthz"),
        "/login", _bp("/login"),
        "/logout", _bp("/logout"),
        "/auth/callback", _bp("/auth/callback"),
        "/auth/google/callback", _bp("/auth/google/callback"),
        "/admin/whoami", _bp("/admin/whoami"),
    }
    return path in public_exact

@app.before_request
def enforce_or_attach_identity():
    path = request.path
    if _is_public_path(path):
        return
    email = current_user_email()
    if email:
        g.user_email = email
        try:
            user = ensure_user_row(email)
            g.user_id = user["id"]
            g.is_admin = is_admin(email, user.get("role"))
        except Exception as e:
            print(f"[Auth] ensure_user_row failed for {email}: {e}")
            g.is_admin = is_admin(email)
        return
    if AUTH_REQUIRED:
        if request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        full = request.full_path if request.query_string else request.path
        return redirect(f"{_bp('/login')}?next={quote(_sanitize_next(full), safe='/:?&=')}")

# =============================================================================
# Blueprints
# =============================================================================
_answer_store_for = answer_store_factory(
    ANSWER_STORAGE, fetch_one=fetch_one, execute=execute, root=ANSWER_STORAGE_DIR,
)

app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "backend": exam_backend,
    "answer_store_for": _answer_store_for,
}))

# one pending-confirmation table for both mounts of the console
_admin_deps = {"backend": exam_backend, "pending": {}}
app.register_blueprint(create_admin_blueprint("", _admin_deps, name="admin"))
if BASE_PATH:
    app.register_blueprint(create_admin_blueprint(BASE_PATH, _admin_deps, name="admin_alias"))

# =============================================================================
# Scheduled jobs (run hourly from cron / Cloud Scheduler: `flask --app main close-expired`)
# =============================================================================
@app.cli.command("close-expired")
def close_expired_command():
    """Close in-progress attempts on exams whose window has ended."""
    summary = exam_backend.close_expired_participations(now_ms())
    print(f"[cron] close-expired: {summary['closed']} closed / {summary['processed']} processed", flush=True)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
