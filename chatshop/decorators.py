"""
Custom route decorators for access control.

- internal_token_required: the caller (the chat webhook front end) must send
  the shared INTERNAL_API_TOKEN in the X-Internal-Token header.
"""

import hmac
from functools import wraps

from flask import abort, current_app, request


def internal_token_required(f):
    """Require the shared internal API token."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("INTERNAL_API_TOKEN")
        supplied = request.headers.get("X-Internal-Token", "")
        # No token configured means no caller can be trusted.
        if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
            abort(401)
        return f(*args, **kwargs)

    return decorated
