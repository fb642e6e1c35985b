from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class AuthContext:
    """Caller metadata populated by the routing layer before each core call."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    access_token: Optional[str] = None

    def with_user(self, user_id: str, roles: Optional[List[str]] = None) -> "AuthContext":
        return AuthContext(
            ip_addr=self.ip_addr,
            user_agent=self.user_agent,
            user_id=user_id,
            roles=list(roles or self.roles),
            session_id=self.session_id,
            access_token=self.access_token,
        )


ANONYMOUS = AuthContext()
