from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from tokenforge.logging import get_logger
from tokenforge.service.clock import Clock, ensure_utc, system_clock
from tokenforge.service.context import ANONYMOUS, AuthContext
from tokenforge.service.errors import AccountInactive, SessionInvalid, SessionNotFound
from tokenforge.service.tokens import TokenPair, TokenService
from tokenforge.storage.models import Session, User

logger = get_logger(__name__)

REASON_ROTATED = "rotated"


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def revoke_session_if_active(
        self,
        refresh_token: str,
        *,
        reason: str,
        revoked_at: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[Session]: ...

    def revoke_user_sessions(
        self, user_id: str, *, reason: str, revoked_at: datetime
    ) -> int: ...

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]: ...


@dataclass
class RotationResult:
    old_session: Session
    new_session: Session
    user: User
    pair: TokenPair


class SessionLedger:
    """Authoritative refresh-session state with single-use rotation."""

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.clock = clock or system_clock

    def create(
        self,
        user_id: str,
        refresh_token: str,
        context: Optional[AuthContext] = None,
        *,
        expires_at: Optional[datetime] = None,
    ) -> Session:
        ctx = context or ANONYMOUS
        now = self.clock.now()
        session = Session(
            id=self.clock.new_id(),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=now,
            expires_at=expires_at or now + timedelta(seconds=self.tokens.refresh_ttl),
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
        )
        return self.store.create_session(session)

    def issue(self, user: User, context: Optional[AuthContext] = None) -> tuple[TokenPair, Session]:
        """Mint a pair and record its refresh session."""
        pair = self.tokens.issue_pair(user)
        session = self.create(user.id, pair.refresh_token, context)
        return pair, session

    def is_valid(self, session: Session) -> bool:
        return session.is_valid(self.clock.now())

    def rotate(
        self, refresh_token: str, context: Optional[AuthContext] = None
    ) -> RotationResult:
        now = self.clock.now()
        session = self.store.get_session_by_refresh_token(refresh_token)
        if session is None:
            raise SessionNotFound()
        if not session.is_valid(now):
            raise SessionInvalid()

        # The conditional update is the serialization point: exactly one
        # concurrent caller sees the row still active.
        old = self.store.revoke_session_if_active(
            refresh_token, reason=REASON_ROTATED, revoked_at=now
        )
        if old is None:
            logger.warning(
                "session_rotation_conflict", session_id=session.id, user_id=session.user_id
            )
            raise SessionInvalid()

        user = self.store.get_user(old.user_id)
        if user is None:
            raise SessionInvalid()
        if not user.is_active:
            raise AccountInactive()

        pair, new_session = self.issue(user, context)

        latest = self.store.get_user(user.id) or user
        if latest.sessions_revoked_at is not None and ensure_utc(
            latest.sessions_revoked_at
        ) > ensure_utc(old.created_at):
            # A mass revocation landed after our swap; it must win.
            self.store.revoke_session_if_active(
                new_session.refresh_token,
                reason="revoked_during_rotation",
                revoked_at=self.clock.now(),
            )
            logger.warning(
                "session_rotation_superseded_by_revoke_all",
                user_id=user.id,
                session_id=old.id,
            )
            raise SessionInvalid()

        logger.info(
            "session_rotated",
            user_id=user.id,
            old_session_id=old.id,
            new_session_id=new_session.id,
        )
        return RotationResult(old_session=old, new_session=new_session, user=latest, pair=pair)

    def revoke(
        self, refresh_token: str, reason: str, *, user_id: Optional[str] = None
    ) -> bool:
        """Idempotent: revoking an inactive or unknown session is a no-op."""
        revoked = self.store.revoke_session_if_active(
            refresh_token, reason=reason, revoked_at=self.clock.now(), user_id=user_id
        )
        if revoked:
            logger.info("session_revoked", session_id=revoked.id, reason=reason)
        return revoked is not None

    def revoke_all(self, user_id: str, reason: str) -> int:
        count = self.store.revoke_user_sessions(
            user_id, reason=reason, revoked_at=self.clock.now()
        )
        logger.info("sessions_revoked_all", user_id=user_id, count=count, reason=reason)
        return count

    def list_active(self, user_id: str) -> List[Session]:
        now = self.clock.now()
        return [
            s for s in self.store.list_user_sessions(user_id, active_only=True) if s.is_valid(now)
        ]
