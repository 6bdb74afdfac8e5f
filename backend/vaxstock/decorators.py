# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify

from .services.scope_service import ActorScope


def _header_int(name: str):
    value = request.headers.get(name)
    if value is None or not value.strip():
        return None
    return int(value)


def require_scope(f):
    """
    Build the caller's ActorScope and pass it to the view as scope=.

    The auth gateway in front of this service authenticates the user and
    sets:
    - X-Actor-Level: SUPERADMIN, NATIONAL, REGIONAL, DISTRICT or HEALTHCENTER
    - X-Actor-Id: id of the actor's entity (not sent for SUPERADMIN/NATIONAL)
    - X-Actor-User-Id: optional, recorded on transfers and events

    Returns 401 when the level header is missing and 400 when the headers
    do not describe a valid scope.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        level = request.headers.get("X-Actor-Level")
        if not level:
            return jsonify({"error": "Actor scope required"}), 401

        try:
            scope = ActorScope(
                level=level,
                entity_id=_header_int("X-Actor-Id"),
                user_id=_header_int("X-Actor-User-Id"),
            )
        except ValueError as e:
            return jsonify({"error": f"Invalid actor scope: {e}"}), 400

        kwargs["scope"] = scope
        return f(*args, **kwargs)

    return decorated_function
