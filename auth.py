from dataclasses import dataclass, field
from functools import wraps
from http import HTTPStatus

from flask import jsonify
from flask_login import current_user

from errors import Unauthorized, result
from models import UserRole

STUDENT_PERMISSIONS = frozenset({"request_books"})
STAFF_PERMISSIONS = frozenset({"reject_requests", "verify_returns", "settle_fines", "view_requests"})
ADMIN_PERMISSIONS = STAFF_PERMISSIONS | {"approve_requests", "manage_books", "view_staff"}

ROLE_PERMISSIONS = {
    UserRole.STUDENT: STUDENT_PERMISSIONS,
    UserRole.STAFF: STAFF_PERMISSIONS,
    UserRole.ADMIN: ADMIN_PERMISSIONS,
    UserRole.SUPER_ADMIN: ADMIN_PERMISSIONS,
}


@dataclass(frozen=True)
class Session:
    user_id: int
    role: UserRole
    permissions: frozenset = field(default_factory=frozenset)

    @property
    def is_admin(self):
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)

    def require(self, permission):
        if permission not in self.permissions:
            raise Unauthorized("You do not have permission to perform this action.")
        return self


def session_for(user):
    return Session(user_id=user.id, role=user.role,
                   permissions=ROLE_PERMISSIONS.get(user.role, frozenset()))


def require_role(*roles):
    """View decorator: resolve the logged-in user to a Session and pass it in."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify(result(False, "Authentication required.", error=Unauthorized.code)), HTTPStatus.UNAUTHORIZED
            if roles and current_user.role not in roles:
                return jsonify(result(False, "You do not have access to this resource.",
                                      error=Unauthorized.code)), HTTPStatus.FORBIDDEN
            return func(session_for(current_user), *args, **kwargs)
        return wrapper
    return decorator
