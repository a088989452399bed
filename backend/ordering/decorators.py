"""
Request identity decorators.

Identity is resolved upstream; this service only reads the forwarded
headers:
- g.user_id     from X-User-Id (authenticated customer)
- g.session_id  from X-Session-Id (anonymous customer)
- g.staff_id    from X-Staff-Id (branch staff / admin)
"""
from functools import wraps
from flask import request, jsonify, g


def _header(name: str) -> str | None:
    value = (request.headers.get(name) or "").strip()
    return value or None


def _load_identity() -> None:
    g.user_id = _header("X-User-Id")
    g.session_id = _header("X-Session-Id")
    g.staff_id = _header("X-Staff-Id")


def require_identity(f):
    """Require exactly one of X-User-Id / X-Session-Id."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        if bool(g.user_id) == bool(g.session_id):
            return jsonify({"error": "Exactly one of X-User-Id or X-Session-Id is required"}), 400
        return f(*args, **kwargs)

    return decorated_function


def optional_identity(f):
    """Load whatever identity headers are present; the route decides."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Require X-Staff-Id."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_identity()
        if not g.staff_id:
            return jsonify({"error": "Staff authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function
