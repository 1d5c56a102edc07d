from __future__ import annotations

import threading
import time
import uuid
from collections import defaultdict, deque

from flask import Blueprint, abort, current_app, g, jsonify, request, session
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.compliance.audit import record_event
from app.compliance.db import db_session
from app.compliance.models import User
from app.compliance.rbac import user_permission_keys
from app.compliance.security import SESSIONLESS_PREFIXES, rotate_csrf_token

bp = Blueprint("auth", __name__)


class LoginRateLimiter:
    """Sliding-window count of failed-or-pending login attempts per client ip (process local)."""

    def __init__(self) -> None:
        self._attempts: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, ip: str, window: float, now: float) -> deque[float]:
        hits = self._attempts[ip]
        while hits and hits[0] <= now - window:
            hits.popleft()
        return hits

    def blocked(self, ip: str, *, limit: int, window: float) -> bool:
        with self._lock:
            return len(self._prune(ip, window, time.monotonic())) >= limit

    def hit(self, ip: str) -> None:
        with self._lock:
            self._attempts[ip].append(time.monotonic())

    def forget(self, ip: str) -> None:
        with self._lock:
            self._attempts.pop(ip, None)

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()


login_limiter = LoginRateLimiter()


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "display_name": user.display_name,
        "tenant_id": user.tenant_id,
        "roles": user.role_keys,
        "permissions": sorted(user_permission_keys(user)),
    }


def load_current_user() -> None:
    """
    Resolve g.current_user from the signed session cookie and tag the request
    with a request id (X-Request-ID if the proxy sent one).
    """
    g.request_id = g.get("request_id") or request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(SESSIONLESS_PREFIXES):
        return

    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except (SQLAlchemyError, ValueError) as e:
        current_app.logger.error("Could not load session user %r (clearing session): %s", user_id, e)
        session.pop("user_id", None)
        return
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) or request.form
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    limit = int(current_app.config.get("LOGIN_RATE_LIMIT", 5))
    window = int(current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 300))
    if login_limiter.blocked(ip, limit=limit, window=window):
        current_app.logger.warning("Login rate limit hit (ip=%s)", ip)
        minutes = max(1, window // 60)
        return jsonify({"error": "rate_limited", "message": f"Too many login attempts. Please wait {minutes} minutes."}), 429
    login_limiter.hit(ip)

    s = db_session()
    user = s.scalars(select(User).where(User.email == email)).one_or_none()
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
        return jsonify({"error": "unauthenticated", "message": "Invalid credentials."}), 401

    session["user_id"] = user.id
    rotate_csrf_token()
    login_limiter.forget(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=user.id)
    s.commit()
    current_app.logger.info("User %s logged in (request_id=%s)", user.email, g.request_id)
    return jsonify({"user": user_to_dict(user)})


@bp.post("/logout")
def logout():
    user = g.get("current_user")
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=user.id)
        s.commit()
    session.clear()
    return jsonify({"ok": True})


@bp.get("/me")
def me():
    user = g.get("current_user")
    if user is None:
        abort(401)
    return jsonify({"user": user_to_dict(user)})
