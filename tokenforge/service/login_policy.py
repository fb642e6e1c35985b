from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from tokenforge.config import Settings
from tokenforge.logging import get_logger
from tokenforge.service.audit import AuditRecorder
from tokenforge.service.clock import Clock, ensure_utc, system_clock
from tokenforge.service.context import AuthContext
from tokenforge.storage.models import AuditAction, User

logger = get_logger(__name__)


class LoginPolicyStore(Protocol):
    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(
        self, user_id: str, *, at: datetime, ip_addr: Optional[str]
    ) -> Optional[User]: ...

    def reset_login_failures(self, user_id: str, *, at: datetime) -> Optional[User]: ...


class LoginPolicy:
    """Failed-attempt counting and account lockout.

    ``Unlocked --fail--> Unlocked(count+1)``; the ``max_failed_logins``-th
    failure moves to ``Locked`` until ``now + lockout_duration``. Only a
    successful login clears the counter unless
    ``reset_failures_on_lock_expiry`` is enabled.
    """

    def __init__(
        self,
        store: LoginPolicyStore,
        audit: AuditRecorder,
        settings: Settings,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock or system_clock
        self.max_attempts = settings.max_failed_logins
        self.lockout = timedelta(seconds=settings.lockout_seconds)
        self.reset_on_expiry = settings.reset_failures_on_lock_expiry

    def check_locked(self, user: User) -> bool:
        if user.locked_until is None:
            return False
        return ensure_utc(user.locked_until) > self.clock.now()

    def expire_lock(self, user: User) -> User:
        """Apply the lock-expiry policy flag to a user whose lock has lapsed."""
        if (
            self.reset_on_expiry
            and user.locked_until is not None
            and not self.check_locked(user)
        ):
            refreshed = self.store.reset_login_failures(user.id, at=self.clock.now())
            return refreshed or user
        return user

    def record_failure(self, user: User, context: Optional[AuthContext] = None) -> User:
        now = self.clock.now()
        updated = self.store.record_failed_login(
            user.id, max_attempts=self.max_attempts, lockout_until=now + self.lockout
        )
        if updated is None:
            return user
        # Lock was applied by this increment
        if updated.locked_until is not None and ensure_utc(updated.locked_until) > now and (
            user.locked_until is None or ensure_utc(user.locked_until) <= now
        ):
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
            self.audit.record(
                AuditAction.ACCOUNT_LOCKED,
                user_id=user.id,
                context=context,
                success=False,
                detail={
                    "attempts": updated.failed_login_attempts,
                    "locked_until": updated.locked_until.isoformat(),
                },
            )
        return updated

    def record_success(self, user: User, context: Optional[AuthContext] = None) -> User:
        updated = self.store.record_successful_login(
            user.id,
            at=self.clock.now(),
            ip_addr=context.ip_addr if context else None,
        )
        return updated or user

    def unlock(self, user_id: str, context: Optional[AuthContext] = None) -> Optional[User]:
        updated = self.store.reset_login_failures(user_id, at=self.clock.now())
        if updated is not None:
            self.audit.record(
                AuditAction.ACCOUNT_UNLOCKED,
                user_id=user_id,
                context=context,
                detail={"by": context.user_id if context else None},
            )
        return updated
