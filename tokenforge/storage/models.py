from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    MFA_ENABLE = "MFA_ENABLE"
    MFA_DISABLE = "MFA_DISABLE"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    FAILED_LOGIN = "FAILED_LOGIN"


@dataclass
class User:
    id: str
    email: str
    username: str
    roles: List[str] = field(default_factory=lambda: ["user"])
    is_active: bool = True
    email_verified: bool = False
    mfa_enabled: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    # Set by mass revocation; rotations that started earlier must not survive it
    sessions_revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl_seconds: int,
        *,
        now: datetime | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> "Session":
        issued = now or _utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and self.revoked_at is None and now < self.expires_at


@dataclass
class SigningKeyPair:
    kid: str
    public_pem: str
    private_pem: str
    created_at: datetime
    expires_at: datetime
    algorithm: str = "RS256"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    user_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    detail: Dict | None = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
