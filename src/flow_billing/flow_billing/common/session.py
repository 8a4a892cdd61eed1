from __future__ import annotations

from flask import session

from ..core.context import BillingContext
from ..core.enums import Role
from ..core.exceptions import AuthenticationError


def current_context() -> BillingContext:
    """BillingContext for the signed-in user.

    Login lives outside this app; it stores ``user_id``, ``company_id`` and
    ``role`` in the session.
    """
    if "user_id" not in session or "company_id" not in session:
        raise AuthenticationError("Please sign in to continue")
    try:
        role = Role(session.get("role") or Role.STAFF.value)
    except ValueError:
        raise AuthenticationError("Session role is not recognised")
    return BillingContext(company_id=int(session["company_id"]), user_id=int(session["user_id"]), role=role)
