"""Service layer for business logic."""

from app.services.pending_store import PendingResultStore
from app.services.user_service import UserService

__all__ = [
    "PendingResultStore",
    "UserService",
]
