"""Signing key ownership, rotation and public-key publication.

The manager keeps its key set as an immutable tuple that is swapped in one
assignment, so verifiers never observe a half-built key. A new keypair is
published only after the store has accepted it.
"""

from __future__ import annotations

import asyncio
import base64
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tokenforge.config import Settings
from tokenforge.logging import get_logger
from tokenforge.service.clock import Clock, ensure_utc, system_clock
from tokenforge.service.errors import NoActiveKey
from tokenforge.service.sealing import InvalidToken, SecretSealer
from tokenforge.storage.models import SigningKeyPair

logger = get_logger(__name__)

ALGORITHM = "RS256"
KEY_RELOAD_MIN_SECONDS = 30


class KeyStore(Protocol):
    def save_signing_key(self, key: SigningKeyPair) -> None: ...

    def list_signing_keys(self) -> List[SigningKeyPair]: ...

    def delete_signing_key(self, kid: str) -> bool: ...


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class SigningKeyManager:
    def __init__(
        self,
        store: KeyStore,
        settings: Settings,
        *,
        clock: Clock | None = None,
        sealer: SecretSealer | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or system_clock
        self.sealer = sealer or SecretSealer(settings.key_encryption_key)
        self.rotation_interval = timedelta(seconds=settings.key_rotation_seconds)
        self.grace_period = timedelta(seconds=settings.key_grace_seconds)
        # Ordered oldest -> newest; replaced wholesale, never mutated in place.
        self._keys: Tuple[SigningKeyPair, ...] = ()
        self._private_keys: Dict[str, rsa.RSAPrivateKey] = {}
        self._rotation_lock = threading.Lock()
        # kids present in the store that this process cannot unseal
        self._unreadable: set[str] = set()
        self._last_sync: Optional[datetime] = None

    # lifecycle

    def load(self) -> None:
        """Load persisted keys, then run the rotation check once.

        A newest key that aged past the rotation interval while the process
        was down is replaced here rather than on the first worker tick.
        """

        added = self.sync_from_store()
        logger.info("signing_keys_loaded", count=added)
        self.check_rotation(sync=False)

    def _unseal(self, stored: SigningKeyPair) -> Optional[SigningKeyPair]:
        try:
            private_pem = self.sealer.unseal(stored.private_pem)
        except InvalidToken:
            logger.error("signing_key_unseal_failed", kid=stored.kid)
            return None
        return replace(
            stored,
            private_pem=private_pem,
            created_at=ensure_utc(stored.created_at),
            expires_at=ensure_utc(stored.expires_at),
        )

    def sync_from_store(self) -> int:
        """Merge keys persisted by other processes; returns how many were added."""
        persisted = self.store.list_signing_keys()
        now = self.clock.now()
        with self._rotation_lock:
            known = {k.kid for k in self._keys}
            fresh: list[SigningKeyPair] = []
            for stored in persisted:
                if stored.kid in known or stored.kid in self._unreadable:
                    continue
                key = self._unseal(stored)
                if key is None:
                    self._unreadable.add(stored.kid)
                    continue
                if key.is_expired(now):
                    continue
                self._private_keys[key.kid] = self._load_private_key(key.private_pem)
                fresh.append(key)
            self._last_sync = now
            if fresh:
                merged = sorted(self._keys + tuple(fresh), key=lambda k: k.created_at)
                self._keys = tuple(merged)
                logger.info("signing_keys_synced", added=len(fresh), key_count=len(self._keys))
            return len(fresh)

    # queries

    def _active_keys(self) -> List[SigningKeyPair]:
        now = self.clock.now()
        return [k for k in self._keys if not k.is_expired(now)]

    def current_key(self) -> SigningKeyPair:
        active = self._active_keys()
        if not active:
            raise NoActiveKey()
        return active[-1]

    def _find(self, kid: str) -> Optional[SigningKeyPair]:
        return next((k for k in self._keys if k.kid == kid), None)

    def key_by_id(self, kid: str) -> Optional[SigningKeyPair]:
        """Resolve ``kid`` to a non-expired key, never substituting another.

        An unseen kid triggers a store reload at most once per
        ``KEY_RELOAD_MIN_SECONDS``, which picks up keys minted by other
        processes without letting random kids hammer the store.
        """
        now = self.clock.now()
        key = self._find(kid)
        if key is None and (
            self._last_sync is None
            or (now - self._last_sync).total_seconds() >= KEY_RELOAD_MIN_SECONDS
        ):
            self.sync_from_store()
            key = self._find(kid)
        if key is None or key.is_expired(now):
            return None
        return key

    def private_key_for(self, key: SigningKeyPair) -> rsa.RSAPrivateKey:
        cached = self._private_keys.get(key.kid)
        if cached is None:
            cached = self._load_private_key(key.private_pem)
            self._private_keys[key.kid] = cached
        return cached

    def public_key_set(self) -> dict:
        keys = []
        for key in self._active_keys():
            public_key = serialization.load_pem_public_key(key.public_pem.encode())
            numbers = public_key.public_numbers()
            keys.append(
                {
                    "kid": key.kid,
                    "kty": "RSA",
                    "alg": key.algorithm,
                    "use": "sig",
                    "n": _b64url_uint(numbers.n),
                    "e": _b64url_uint(numbers.e),
                }
            )
        return {"keys": keys}

    # mutation

    def _generate(self) -> SigningKeyPair:
        private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=self.settings.rsa_key_size
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        created_at = self.clock.now()
        key = SigningKeyPair(
            kid=self.clock.new_id(),
            public_pem=public_pem,
            private_pem=private_pem,
            created_at=created_at,
            expires_at=created_at + self.rotation_interval + self.grace_period,
            algorithm=ALGORITHM,
        )
        self._private_keys[key.kid] = private_key
        return key

    @staticmethod
    def _load_private_key(private_pem: str) -> rsa.RSAPrivateKey:
        return serialization.load_pem_private_key(private_pem.encode(), password=None)

    def rotate(self) -> SigningKeyPair:
        """Generate, persist, then publish a new newest key.

        Older keys stay verifiable until their own expiry. A persistence
        failure propagates and leaves the published set unchanged.
        """
        with self._rotation_lock:
            key = self._generate()
            sealed = replace(key, private_pem=self.sealer.seal(key.private_pem))
            try:
                self.store.save_signing_key(sealed)
            except Exception as exc:
                self._private_keys.pop(key.kid, None)
                logger.error(
                    "signing_key_persist_failed",
                    kid=key.kid,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self._keys = self._keys + (key,)
            logger.info(
                "signing_key_rotated",
                kid=key.kid,
                expires_at=key.expires_at.isoformat(),
                key_count=len(self._keys),
            )
            return key

    def prune_expired(self) -> int:
        """Drop keys whose own expiry has passed, from memory and the store."""
        with self._rotation_lock:
            now = self.clock.now()
            expired = [k for k in self._keys if k.is_expired(now)]
            if not expired:
                return 0
            self._keys = tuple(k for k in self._keys if not k.is_expired(now))
            for key in expired:
                self._private_keys.pop(key.kid, None)
                try:
                    self.store.delete_signing_key(key.kid)
                except Exception as exc:
                    logger.warning(
                        "signing_key_delete_failed", kid=key.kid, error=str(exc)
                    )
            logger.info("signing_keys_pruned", count=len(expired))
            return len(expired)

    def check_rotation(self, *, sync: bool = True) -> bool:
        """The scheduled check: rotate when the newest key is old enough, then prune.

        Keys other processes persisted are merged first, so only one fresh key
        per interval is minted no matter how many workers share the store.
        """
        if sync:
            self.sync_from_store()
        active = self._active_keys()
        rotated = False
        if not active:
            logger.warning("signing_key_missing_rotating")
            self.rotate()
            rotated = True
        else:
            age = self.clock.now() - active[-1].created_at
            if age >= self.rotation_interval:
                logger.info(
                    "signing_key_rotation_due",
                    kid=active[-1].kid,
                    age_seconds=int(age.total_seconds()),
                )
                self.rotate()
                rotated = True
        self.prune_expired()
        return rotated


DEFAULT_MAX_BACKOFF_SECONDS = 6 * 60 * 60


class KeyRotationWorker:
    """Background task that runs ``SigningKeyManager.check_rotation`` on an interval.

    ``stop()`` signals the loop instead of cancelling it, so a rotation that is
    already underway finishes persisting before shutdown completes.
    """

    def __init__(
        self,
        manager: SigningKeyManager,
        *,
        interval_seconds: int,
        max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("key_rotation_worker_already_running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))
        logger.info("key_rotation_worker_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("key_rotation_worker_stopped")

    async def run_once(self) -> bool:
        return await asyncio.to_thread(self.manager.check_rotation)

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        consecutive_errors = 0
        delay: float = self.interval_seconds
        while self._running:
            if await self._wait(stop_event, delay):
                break
            try:
                await self.run_once()
                consecutive_errors = 0
                delay = self.interval_seconds
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "key_rotation_check_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Retry sooner than a full interval, backing off on repeats
                delay = min(
                    self.interval_seconds,
                    self.max_backoff_seconds,
                    60 * (2 ** (consecutive_errors - 1)),
                )
