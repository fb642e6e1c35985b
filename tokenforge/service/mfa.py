from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Optional, Protocol

import pyotp
import qrcode

from tokenforge.config import Settings
from tokenforge.logging import get_logger
from tokenforge.service.audit import AuditRecorder
from tokenforge.service.clock import Clock, system_clock
from tokenforge.service.context import AuthContext
from tokenforge.service.sealing import InvalidToken, SecretSealer
from tokenforge.storage.models import AuditAction, User

logger = get_logger(__name__)


def pending_key(user_id: str) -> str:
    return f"mfa:pending:{user_id}"


def active_key(user_id: str) -> str:
    return f"mfa:active:{user_id}"


def attempts_key(user_id: str) -> str:
    return f"mfa:attempts:{user_id}"


class MfaCache(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def atomic_increment(self, key: str, ttl_seconds: int) -> int: ...


class MfaUserStore(Protocol):
    def set_mfa_enabled(self, user_id: str, enabled: bool, *, at: datetime) -> Optional[User]: ...


@dataclass
class MfaEnrollment:
    secret: str
    qr_code: str
    otp_uri: str


class MfaService:
    """TOTP secret lifecycle: None -> Pending -> Active -> None.

    Secrets live in the key-value store sealed with Fernet. A pending secret
    expires after ``mfa_pending_ttl`` and can no longer be activated.
    """

    def __init__(
        self,
        cache: MfaCache,
        store: MfaUserStore,
        audit: AuditRecorder,
        settings: Settings,
        *,
        clock: Clock | None = None,
        sealer: SecretSealer | None = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.audit = audit
        self.clock = clock or system_clock
        self.sealer = sealer or SecretSealer(settings.key_encryption_key)
        self.issuer = settings.mfa_issuer
        self.pending_ttl = settings.mfa_pending_seconds
        self.valid_window = settings.mfa_valid_window
        self.max_attempts = settings.mfa_max_attempts
        self.attempt_window = settings.mfa_attempt_window_seconds

    async def _read_sealed(self, key: str) -> Optional[str]:
        sealed = await self.cache.get(key)
        if not sealed:
            return None
        try:
            return self.sealer.unseal(sealed)
        except InvalidToken:
            logger.error("mfa_secret_unseal_failed", key=key.rsplit(":", 1)[0])
            return None

    def _matches(self, secret: str, code: str) -> bool:
        code = (code or "").strip()
        if not code.isdigit():
            return False
        totp = pyotp.TOTP(secret)
        return totp.verify(code, for_time=self.clock.now(), valid_window=self.valid_window)

    @staticmethod
    def _qr_data_url(otp_uri: str) -> str:
        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(otp_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{encoded}"

    async def generate_secret(self, user: User) -> MfaEnrollment:
        """Stage a fresh pending secret, replacing any earlier pending one."""
        secret = pyotp.random_base32()
        otp_uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=self.issuer
        )
        await self.cache.set_with_ttl(
            pending_key(user.id), self.sealer.seal(secret), self.pending_ttl
        )
        logger.info("mfa_secret_generated", user_id=user.id)
        return MfaEnrollment(secret=secret, qr_code=self._qr_data_url(otp_uri), otp_uri=otp_uri)

    async def confirm_and_activate(
        self,
        user_id: str,
        code: str,
        secret: str,
        context: Optional[AuthContext] = None,
    ) -> bool:
        pending = await self._read_sealed(pending_key(user_id))
        if pending is None or pending != secret:
            logger.warning("mfa_activation_no_pending", user_id=user_id)
            return False
        if not self._matches(secret, code):
            logger.warning("mfa_activation_bad_code", user_id=user_id)
            return False

        await self.cache.set(active_key(user_id), self.sealer.seal(secret))
        await self.cache.delete(pending_key(user_id))
        self.store.set_mfa_enabled(user_id, True, at=self.clock.now())
        self.audit.record(AuditAction.MFA_ENABLE, user_id=user_id, context=context)
        logger.info("mfa_enabled", user_id=user_id)
        return True

    async def verify_login_code(self, user_id: str, code: str) -> bool:
        secret = await self._read_sealed(active_key(user_id))
        if secret is None:
            return False
        if self.max_attempts > 0:
            recent = await self.cache.get(attempts_key(user_id))
            if recent is not None and int(recent) >= self.max_attempts:
                logger.warning("mfa_attempts_exceeded", user_id=user_id)
                return False
        if self._matches(secret, code):
            await self.cache.delete(attempts_key(user_id))
            return True
        if self.max_attempts > 0:
            count = await self.cache.atomic_increment(
                attempts_key(user_id), self.attempt_window
            )
            logger.warning("mfa_code_rejected", user_id=user_id, attempts=count)
        return False

    async def disable(self, user_id: str, context: Optional[AuthContext] = None) -> None:
        """Remove pending and active secrets. Safe to repeat."""
        await self.cache.delete(pending_key(user_id))
        await self.cache.delete(active_key(user_id))
        await self.cache.delete(attempts_key(user_id))
        self.store.set_mfa_enabled(user_id, False, at=self.clock.now())
        self.audit.record(AuditAction.MFA_DISABLE, user_id=user_id, context=context)
        logger.info("mfa_disabled", user_id=user_id)

    async def is_enabled(self, user_id: str) -> bool:
        return await self.cache.get(active_key(user_id)) is not None

    async def get_secret(self, user_id: str) -> Optional[str]:
        return await self._read_sealed(active_key(user_id))
