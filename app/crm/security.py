import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def ensure_csrf_token() -> str:
    """Return the session's CSRF token, minting one on first use."""
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = rotate_csrf_token()
    return token


def rotate_csrf_token() -> str:
    """Issue a fresh token. Called on login so a pre-auth token cannot be replayed."""
    token = secrets.token_urlsafe(32)
    session[CSRF_SESSION_KEY] = token
    return token


def _submitted_token(req: Request) -> str | None:
    # Forms send a hidden field; the kanban board sends a header with its JSON body.
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_SESSION_KEY)
    if token or not req.is_json:
        return token
    body = req.get_json(silent=True)
    if isinstance(body, dict):
        return body.get(CSRF_SESSION_KEY)
    return None


def validate_csrf(req: Request) -> bool:
    submitted = _submitted_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    if not submitted or not expected:
        return False
    return secrets.compare_digest(str(submitted), str(expected))
