# blueprints/api_helpers.py
import logging
from functools import wraps
from flask import jsonify, request, current_app, abort
from flask_login import current_user

from accrual.config import AccrualConfig
from accrual.ledger import (
    LedgerError, NotFoundError, ValidationError, InvariantViolation, TransientPersistenceError,
)
from accrual.notifications import get_notifier

logger = logging.getLogger(__name__)


def accrual_config() -> AccrualConfig:
    return AccrualConfig.from_mapping(current_app.config)


def notifier():
    return get_notifier()


def admin_required(f):
    """
    Restrict a route to admins.
    Unauthenticated callers get 401, authenticated non-admins 403.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"error": "User not authenticated"}), 401
        if current_user.role != "admin":
            abort(403)
        return f(*args, **kwargs)

    return decorated_function


def maintenance_guard():
    """before_app_request hook: user mutations answer 503 while in maintenance."""
    if not accrual_config().maintenance_mode:
        return None
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return None
    if request.path.startswith("/admin") or request.path == "/healthz":
        return None
    return jsonify({"error": "Service under maintenance, please try again later"}), 503


def error_response(exc: LedgerError):
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, TransientPersistenceError):
        status = 409
    elif isinstance(exc, (ValidationError, InvariantViolation)):
        status = 400
    else:
        status = 500
    if status == 500:
        logger.error(f"Ledger error: {exc}")
    return jsonify({"success": False, "error": str(exc)}), status


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def paging(default_limit=50, max_limit=200):
    limit = request.args.get("limit", default_limit, type=int)
    skip = request.args.get("skip", 0, type=int)
    return max(1, min(limit, max_limit)), max(0, skip)
