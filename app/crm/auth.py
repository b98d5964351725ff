from __future__ import annotations

import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.crm.audit import record_event
from app.crm.db import db_session
from app.crm.models import User
from app.crm.security import rotate_csrf_token

bp = Blueprint("auth", __name__)

_UNAUTHENTICATED_PREFIXES = ("/static/", "/health", "/healthz")


class _LoginThrottle:
    """
    Sliding-window limit on login attempts per client IP.
    In-process only; each gunicorn worker keeps its own window.
    """

    def __init__(self, limit: int, window: timedelta) -> None:
        self.limit = limit
        self.window = window
        self._attempts: dict[str, deque[datetime]] = defaultdict(deque)

    def blocked(self, ip: str) -> bool:
        cutoff = datetime.utcnow() - self.window
        attempts = self._attempts[ip]
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        return len(attempts) >= self.limit

    def hit(self, ip: str) -> None:
        self._attempts[ip].append(datetime.utcnow())

    def forget(self, ip: str) -> None:
        self._attempts.pop(ip, None)

    def clear(self) -> None:
        self._attempts.clear()


_throttle = _LoginThrottle(limit=5, window=timedelta(minutes=5))


def reset_login_attempts() -> None:
    _throttle.clear()


def _safe_next(nxt: str) -> str | None:
    # Local paths only; "//host" would be an open redirect.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Sets g.current_user from the signed session cookie and g.request_id for
    audit/log correlation. Inactive or vanished users are logged out.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(_UNAUTHENTICATED_PREFIXES):
        return

    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _throttle.blocked(ip):
        current_app.logger.warning("Login throttled (ip=%s request_id=%s)", ip, getattr(g, "request_id", None))
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    _throttle.hit(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    session["user_id"] = user.id
    rotate_csrf_token()
    _throttle.forget(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    current_app.logger.info("User logged in (user_id=%s request_id=%s)", user.id, getattr(g, "request_id", None))
    return redirect(_safe_next((request.form.get("next") or "").strip()) or url_for("dashboard.index"))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return redirect(url_for("routes.index"))
