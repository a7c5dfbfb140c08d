"""Database models."""

from app.models.pending_result import NativeAuthPendingResult
from app.models.user import User

__all__ = [
    "NativeAuthPendingResult",
    "User",
]
