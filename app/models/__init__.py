"""ORM model exports."""

from app.models.connection import Connection
from app.models.session import Session
from app.models.user import Password, Role, User, user_roles
from app.models.verification import Verification

__all__ = [
    "Connection",
    "Password",
    "Role",
    "Session",
    "User",
    "Verification",
    "user_roles",
]
