import hashlib
import hmac
from functools import wraps

from flask import current_app, jsonify, request


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header.removeprefix("Bearer ").strip()
    return token or None


def request_is_authorized() -> bool:
    expected = current_app.config.get("API_TOKEN")
    if not expected:
        return True
    token = _bearer_token()
    if not token:
        return False
    return hmac.compare_digest(_digest(token), _digest(expected))


def api_auth_required(func):
    @wraps(func)
    def wrapped(*args, **kwargs):
        if not request_is_authorized():
            return jsonify({"error": "authentication required"}), 401
        return func(*args, **kwargs)

    return wrapped
