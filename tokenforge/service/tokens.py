from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

import jwt

from tokenforge.config import Settings, parse_duration
from tokenforge.logging import get_logger
from tokenforge.service.clock import Clock, system_clock
from tokenforge.service.errors import ExpiredToken, InvalidToken, UnknownKey
from tokenforge.service.keys import ALGORITHM, SigningKeyManager
from tokenforge.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPayload:
    sub: str
    type: str
    iat: int
    exp: int
    kid: str
    jti: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class TokenService:
    """RS256 token minting and verification backed by the signing key manager."""

    def __init__(
        self,
        keys: SigningKeyManager,
        settings: Settings,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.keys = keys
        self.settings = settings
        self.clock = clock or system_clock
        self.issuer = settings.resolved_issuer
        self.access_ttl = parse_duration(settings.jwt_access_expiration)
        self.refresh_ttl = parse_duration(settings.jwt_refresh_expiration)

    parse_expiration = staticmethod(parse_duration)

    def _now_ts(self) -> int:
        return int(self.clock.now().timestamp())

    def _sign(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        key = self.keys.current_key()
        issued_at = self._now_ts()
        payload = {
            **claims,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
            "jti": self.clock.new_id(),
        }
        return jwt.encode(
            payload,
            self.keys.private_key_for(key),
            algorithm=ALGORITHM,
            headers={"kid": key.kid},
        )

    def issue_access_token(self, user: User) -> str:
        return self._sign(
            {
                "sub": user.id,
                "username": user.username,
                "email": user.email,
                "roles": list(user.roles),
                "type": ACCESS,
            },
            self.access_ttl,
        )

    def issue_refresh_token(self, user: User) -> str:
        return self._sign({"sub": user.id, "type": REFRESH}, self.refresh_ttl)

    def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=self.issue_refresh_token(user),
            expires_in=self.access_ttl,
        )

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> TokenPayload:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidToken() from exc
        kid = header.get("kid")
        if not kid or header.get("alg") != ALGORITHM:
            raise InvalidToken()

        key = self.keys.key_by_id(kid)
        if key is None:
            logger.warning("token_unknown_key", kid=kid)
            raise UnknownKey()

        try:
            # Expiry is checked against the injected clock below
            claims = jwt.decode(
                token,
                key.public_pem,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "iat", "exp", "type"],
                },
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidToken() from exc

        if self._now_ts() >= int(claims["exp"]):
            raise ExpiredToken()
        if expected_type and claims.get("type") != expected_type:
            raise InvalidToken()

        return TokenPayload(
            sub=str(claims["sub"]),
            type=str(claims["type"]),
            iat=int(claims["iat"]),
            exp=int(claims["exp"]),
            kid=kid,
            jti=claims.get("jti"),
            username=claims.get("username"),
            email=claims.get("email"),
            roles=list(claims.get("roles") or []),
        )

    def remaining_lifetime(self, payload: TokenPayload) -> int:
        return max(0, payload.exp - self._now_ts())
