from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenforge.config import Settings
from tokenforge.logging import get_logger
from tokenforge.service.audit import AuditRecorder
from tokenforge.service.clock import Clock, system_clock
from tokenforge.service.context import ANONYMOUS, AuthContext
from tokenforge.service.errors import (
    AccountInactive,
    AccountLocked,
    ConflictingIdentity,
    InvalidCredentials,
    InvalidToken,
    MfaInvalidCode,
    MfaRequired,
    NotFoundError,
    ServiceError,
)
from tokenforge.service.login_policy import LoginPolicy
from tokenforge.service.mfa import MfaService
from tokenforge.service.sessions import SessionLedger
from tokenforge.service.tokens import ACCESS, REFRESH, TokenPair, TokenService, extract_bearer
from tokenforge.storage.errors import ConstraintViolation
from tokenforge.storage.models import AuditAction, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def reset_key(token: str) -> str:
    return f"reset:{hashlib.sha256(token.encode()).hexdigest()}"


def verify_key(token: str) -> str:
    return f"verify:{hashlib.sha256(token.encode()).hexdigest()}"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_user_profile(
        self,
        user_id: str,
        *,
        at: datetime,
        email: Optional[str] = None,
        username: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]: ...

    def set_email_verified(self, user_id: str, verified: bool, *, at: datetime) -> Optional[User]: ...


class AuthCache(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(self, token: str) -> bool: ...


class AuthService:
    """Credential flows composed from the token, session, policy and MFA engines."""

    def __init__(
        self,
        store: AuthStore,
        cache: AuthCache,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionLedger,
        policy: LoginPolicy,
        mfa: MfaService,
        audit: AuditRecorder,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.policy = policy
        self.mfa = mfa
        self.audit = audit
        self.clock = clock or system_clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _find_user(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        return self.store.get_user_by_username(identifier) or self.store.get_user_by_email(
            identifier
        )

    # registration and login

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        context: Optional[AuthContext] = None,
    ) -> tuple[User, TokenPair]:
        ctx = context or ANONYMOUS
        try:
            user = self.store.create_user(email.strip(), username.strip())
        except ConstraintViolation as exc:
            field = (exc.detail or {}).get("field", "identity")
            logger.info("register_conflict", field=field)
            raise ConflictingIdentity(
                f"{field} already registered", detail={"field": field}
            ) from exc
        self.save_password(user.id, password)
        pair, _session = self.sessions.issue(user, ctx)
        self.audit.record(AuditAction.REGISTER, user_id=user.id, context=ctx)
        logger.info("user_registered", user_id=user.id)
        return user, pair

    async def login(
        self,
        identifier: str,
        password: str,
        context: Optional[AuthContext] = None,
        *,
        mfa_code: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """Password login with lockout and optional second factor.

        Unknown users and wrong passwords raise the same ``InvalidCredentials``
        so responses do not reveal which identifiers exist. A locked account
        is the one failure that discloses its state, including the expiry.
        """

        ctx = context or ANONYMOUS
        user = self._find_user(identifier)
        if user is None:
            self.audit.record(
                AuditAction.FAILED_LOGIN,
                context=ctx,
                success=False,
                detail={"reason": "user_not_found"},
            )
            raise InvalidCredentials()

        if self.policy.check_locked(user):
            self.audit.record(
                AuditAction.FAILED_LOGIN,
                user_id=user.id,
                context=ctx,
                success=False,
                detail={"reason": "account_locked"},
            )
            raise AccountLocked(user.locked_until)
        user = self.policy.expire_lock(user)

        if not self.verify_password(user.id, password):
            updated = self.policy.record_failure(user, ctx)
            self.audit.record(
                AuditAction.FAILED_LOGIN,
                user_id=user.id,
                context=ctx,
                success=False,
                detail={
                    "reason": "invalid_password",
                    "attempts": updated.failed_login_attempts,
                },
            )
            raise InvalidCredentials()

        if not user.is_active:
            raise AccountInactive()

        if user.mfa_enabled or await self.mfa.is_enabled(user.id):
            if not mfa_code:
                raise MfaRequired()
            if not await self.mfa.verify_login_code(user.id, mfa_code):
                self.policy.record_failure(user, ctx)
                self.audit.record(
                    AuditAction.FAILED_LOGIN,
                    user_id=user.id,
                    context=ctx,
                    success=False,
                    detail={"reason": "invalid_mfa_code"},
                )
                raise MfaInvalidCode()

        user = self.policy.record_success(user, ctx)
        pair, session = self.sessions.issue(user, ctx)
        self.audit.record(
            AuditAction.LOGIN, user_id=user.id, context=ctx, detail={"session_id": session.id}
        )
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return user, pair

    # tokens and sessions

    async def refresh(
        self, refresh_token: str, context: Optional[AuthContext] = None
    ) -> TokenPair:
        ctx = context or ANONYMOUS
        self.tokens.verify(refresh_token, expected_type=REFRESH)
        result = self.sessions.rotate(refresh_token, ctx)
        self.audit.record(
            AuditAction.TOKEN_REFRESH,
            user_id=result.user.id,
            context=ctx,
            detail={"session_id": result.new_session.id},
        )
        return result.pair

    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str],
        access_token: Optional[str] = None,
        context: Optional[AuthContext] = None,
    ) -> None:
        ctx = context or ANONYMOUS
        if refresh_token:
            self.sessions.revoke(refresh_token, "logout", user_id=user_id)
        if access_token:
            await self._blacklist_access_token(access_token)
        self.audit.record(AuditAction.LOGOUT, user_id=user_id, context=ctx)

    async def _blacklist_access_token(self, access_token: str) -> None:
        try:
            payload = self.tokens.verify(access_token, expected_type=ACCESS)
        except ServiceError as exc:
            # Already unusable; nothing to blacklist.
            logger.info("logout_access_token_unverifiable", error_code=exc.error_code)
            return
        await self.cache.blacklist_token(access_token, self.tokens.remaining_lifetime(payload))

    async def logout_all(self, user_id: str, context: Optional[AuthContext] = None) -> int:
        ctx = context or ANONYMOUS
        count = self.sessions.revoke_all(user_id, "logout_all")
        if ctx.access_token:
            await self._blacklist_access_token(ctx.access_token)
        self.audit.record(
            AuditAction.LOGOUT,
            user_id=user_id,
            context=ctx,
            detail={"all_sessions": True, "revoked": count},
        )
        return count

    def validate_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidToken("user not found")
        if not user.is_active:
            raise AccountInactive()
        return user

    async def is_blacklisted(self, access_token: str) -> bool:
        return await self.cache.is_blacklisted(access_token)

    async def authenticate(
        self,
        authorization: Optional[str],
        context: Optional[AuthContext] = None,
    ) -> AuthContext:
        ctx = context or ANONYMOUS
        token = extract_bearer(authorization)
        if not token:
            raise InvalidToken("missing bearer token")
        if await self.is_blacklisted(token):
            logger.info("access_token_blacklisted")
            raise InvalidToken("token revoked")
        payload = self.tokens.verify(token, expected_type=ACCESS)
        user = self.validate_user(payload.sub)
        authed = ctx.with_user(user.id, user.roles)
        authed.access_token = token
        return authed

    # password management

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        context: Optional[AuthContext] = None,
    ) -> int:
        ctx = context or ANONYMOUS
        if not self.verify_password(user_id, current_password):
            self.audit.record(
                AuditAction.PASSWORD_CHANGE,
                user_id=user_id,
                context=ctx,
                success=False,
                error_message="current password mismatch",
            )
            raise InvalidCredentials()
        self.save_password(user_id, new_password)
        revoked = self.sessions.revoke_all(user_id, "password_change")
        self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            user_id=user_id,
            context=ctx,
            detail={"revoked_sessions": revoked},
        )
        return revoked

    async def request_password_reset(
        self, email: str, context: Optional[AuthContext] = None
    ) -> Optional[str]:
        """Stage a single-use reset token for ``email``.

        Callers must answer identically whether or not a token came back.
        """

        user = self.store.get_user_by_email((email or "").strip())
        if user is None or not user.is_active:
            logger.info(
                "password_reset_unknown_email",
                email_hash=hashlib.sha256((email or "").lower().encode()).hexdigest(),
            )
            return None
        token = secrets.token_urlsafe(32)
        await self.cache.set_with_ttl(
            reset_key(token), user.id, self.settings.password_reset_seconds
        )
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(
        self,
        token: str,
        new_password: str,
        context: Optional[AuthContext] = None,
    ) -> User:
        ctx = context or ANONYMOUS
        key = reset_key(token)
        user_id = await self.cache.get(key)
        if not user_id:
            logger.warning("password_reset_invalid_token")
            raise InvalidToken("invalid or expired reset token")
        await self.cache.delete(key)
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidToken("invalid or expired reset token")
        self.save_password(user.id, new_password)
        revoked = self.sessions.revoke_all(user.id, "password_reset")
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            user_id=user.id,
            context=ctx,
            detail={"revoked_sessions": revoked},
        )
        return user

    # profile and email verification

    async def update_profile(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        context: Optional[AuthContext] = None,
    ) -> User:
        """Change the user's email address or username.

        A different address clears ``email_verified``; a change of letter case
        alone keeps it. Submitting the current values is a no-op and is not
        audited.
        """

        ctx = context or ANONYMOUS
        user = self.validate_user(user_id)
        changes: dict = {}
        if email is not None and email.strip() != user.email:
            changes["email"] = email.strip()
            if changes["email"].lower() != user.email.lower():
                changes["email_verified"] = False
        if username is not None and username.strip() != user.username:
            changes["username"] = username.strip()
        if not changes:
            return user
        try:
            updated = self.store.update_user_profile(user.id, at=self.clock.now(), **changes)
        except ConstraintViolation as exc:
            field = (exc.detail or {}).get("field", "identity")
            logger.info("profile_update_conflict", user_id=user.id, field=field)
            raise ConflictingIdentity(
                f"{field} already registered", detail={"field": field}
            ) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        fields = sorted(name for name in changes if name != "email_verified")
        self.audit.record(
            AuditAction.PROFILE_UPDATE,
            user_id=user.id,
            context=ctx,
            detail={"fields": fields},
        )
        logger.info("profile_updated", user_id=user.id, fields=fields)
        return updated

    async def request_email_verification(
        self, user_id: str, context: Optional[AuthContext] = None
    ) -> Optional[str]:
        """Stage a single-use token proving ownership of the current address.

        Returns None when the address is already verified. Delivering the
        token is the caller's job.
        """

        user = self.validate_user(user_id)
        if user.email_verified:
            logger.info("email_already_verified", user_id=user.id)
            return None
        token = secrets.token_urlsafe(32)
        # Bound to the address so a later email change voids the token
        await self.cache.set_with_ttl(
            verify_key(token),
            f"{user.id}:{user.email.lower()}",
            self.settings.email_verification_seconds,
        )
        logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(
        self, token: str, context: Optional[AuthContext] = None
    ) -> User:
        ctx = context or ANONYMOUS
        key = verify_key(token)
        staged = await self.cache.get(key)
        if not staged:
            logger.warning("email_verification_invalid_token")
            raise InvalidToken("invalid or expired verification token")
        await self.cache.delete(key)
        user_id, _, email = staged.partition(":")
        user = self.store.get_user(user_id)
        if user is None or user.email.lower() != email:
            logger.warning("email_verification_address_changed", user_id=user_id)
            raise InvalidToken("invalid or expired verification token")
        updated = self.store.set_email_verified(user.id, True, at=self.clock.now())
        if updated is None:
            raise InvalidToken("invalid or expired verification token")
        self.audit.record(AuditAction.EMAIL_VERIFIED, user_id=user.id, context=ctx)
        logger.info("email_verified", user_id=user.id)
        return updated

    def unlock_account(self, user_id: str, context: Optional[AuthContext] = None) -> User:
        user = self.policy.unlock(user_id, context)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user
