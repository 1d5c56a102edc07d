import secrets

from flask import Flask, Request, jsonify, request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# Paths that never touch the session (health checks, static files).
SESSIONLESS_PREFIXES = ("/static/", "/health")


def ensure_csrf_token() -> str:
    """Return the session's CSRF token, minting one on first use."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = rotate_csrf_token()
    return token


def rotate_csrf_token() -> str:
    """Replace the CSRF token; called when the authenticated identity changes."""
    token = secrets.token_urlsafe(32)
    session[CSRF_SESSION_KEY] = token
    return token


def _submitted_token(req: Request) -> str | None:
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_SESSION_KEY)
    if not token and req.is_json:
        body = req.get_json(silent=True)
        if isinstance(body, dict):
            token = body.get(CSRF_SESSION_KEY)
    return str(token) if token else None


def validate_csrf(req: Request) -> bool:
    """True when the header, form field or JSON body carries the session token."""
    submitted = _submitted_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    return bool(submitted and expected and secrets.compare_digest(submitted, str(expected)))


def init_csrf(app: Flask, *, exempt_blueprints: tuple[str, ...] = ("auth",)) -> None:
    """
    Register the CSRF guard. Mutating requests outside `exempt_blueprints`
    get a JSON 400 unless they echo the session token.
    """

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(SESSIONLESS_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in MUTATING_METHODS or request.blueprint in exempt_blueprints:
            return None
        if not validate_csrf(request):
            app.logger.warning("CSRF check failed: %s %s", request.method, request.path)
            return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400
        return None
