from __future__ import annotations

import logging
from typing import Tuple, Type

from flask import Flask, jsonify

from .core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BillingError,
    ConcurrentUpdateError,
    DomainError,
    NotFoundError,
    TransitionError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first: TransitionError is a BillingError.
_STATUS: Tuple[Tuple[Type[DomainError], int, str], ...] = (
    (ValidationError, 400, "validation_error"),
    (AuthenticationError, 401, "authentication_required"),
    (AuthorizationError, 403, "forbidden"),
    (NotFoundError, 404, "not_found"),
    (ConcurrentUpdateError, 409, "concurrent_update"),
    (TransitionError, 409, "invalid_transition"),
    (BillingError, 422, "billing_error"),
)


def _error_payload(code: str, message: str, details: object = None):
    return {"code": code, "message": message, "details": details}


def status_for(error: DomainError) -> Tuple[int, str]:
    for error_type, status, code in _STATUS:
        if isinstance(error, error_type):
            return status, code
    return 400, "domain_error"


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(DomainError)
    def domain_error_handler(error: DomainError):
        status, code = status_for(error)
        if status >= 409:
            logger.warning("%s: %s", type(error).__name__, error)
        return jsonify(_error_payload(code, str(error), {"type": type(error).__name__})), status
