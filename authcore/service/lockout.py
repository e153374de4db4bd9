from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict

from authcore.config import Settings
from authcore.storage.models import User


class LockoutPolicy:
    """Consecutive failed-login tracking with a timed lock.

    The policy never writes anything itself. Each transition returns the field
    changes for the caller to persist, so the orchestrator can apply them with
    a compare-and-set against the values it read.
    """

    def __init__(self, threshold: int = 5, duration: timedelta = timedelta(hours=2)) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if duration <= timedelta(0):
            raise ValueError("lockout duration must be positive")
        self.threshold = threshold
        self.duration = duration

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )

    @staticmethod
    def is_locked(user: User, now: datetime) -> bool:
        return user.locked_until is not None and user.locked_until > now

    def register_failure(self, user: User, now: datetime) -> Dict[str, Any]:
        # An expired lock starts a fresh window with this failure as the first
        if user.locked_until is not None and user.locked_until <= now:
            return {"failed_login_count": 1, "locked_until": None}
        count = user.failed_login_count + 1
        changes: Dict[str, Any] = {"failed_login_count": count}
        if count >= self.threshold and not self.is_locked(user, now):
            changes["locked_until"] = now + self.duration
        return changes

    @staticmethod
    def register_success() -> Dict[str, Any]:
        return {"failed_login_count": 0, "locked_until": None}
