from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tokenforge.logging import get_logger
from tokenforge.storage.errors import ConstraintViolation, StorageUnavailable
from tokenforge.storage.models import (
    AuditAction,
    AuditEvent,
    Session,
    SigningKeyPair,
    User,
)


def _copy_user(user: User) -> User:
    return replace(user, roles=list(user.roles))


def _copy_session(session: Session) -> Session:
    return replace(session)


class MemoryStore:
    """In-memory durable record store with JSON snapshots under ``fs_root``.

    Every read-modify-write runs under one ``RLock`` so the conditional
    updates (session compare-and-swap, failed-login increments) are atomic
    across request threads. Callers always receive copies.
    """

    def __init__(self, fs_root: str = "/tmp/tokenforge", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        # refresh token -> session id
        self._sessions_by_token: Dict[str, str] = {}
        self.audit_events: List[AuditEvent] = []
        self.signing_keys: Dict[str, SigningKeyPair] = {}
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users

    def create_user(
        self,
        email: str,
        username: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            lowered = email.lower()
            if any(existing.email.lower() == lowered for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                roles=list(roles or ["user"]),
                is_active=is_active,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return _copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email.lower() == lowered), None)
            return _copy_user(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return _copy_user(user) if user else None

    def _mutate_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            self._persist_state()
            return _copy_user(user)

    def set_user_active(self, user_id: str, active: bool, *, at: datetime) -> Optional[User]:
        return self._mutate_user(user_id, is_active=active, updated_at=at)

    def set_mfa_enabled(self, user_id: str, enabled: bool, *, at: datetime) -> Optional[User]:
        return self._mutate_user(user_id, mfa_enabled=enabled, updated_at=at)

    def set_email_verified(self, user_id: str, verified: bool, *, at: datetime) -> Optional[User]:
        return self._mutate_user(user_id, email_verified=verified, updated_at=at)

    def update_user_profile(
        self,
        user_id: str,
        *,
        at: datetime,
        email: Optional[str] = None,
        username: Optional[str] = None,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            if user_id not in self.users:
                return None
            others = [u for u in self.users.values() if u.id != user_id]
            if email is not None and any(u.email.lower() == email.lower() for u in others):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and any(u.username == username for u in others):
                raise ConstraintViolation("username already exists", {"field": "username"})
            changes: dict = {"updated_at": at}
            if email is not None:
                changes["email"] = email
            if username is not None:
                changes["username"] = username
            if email_verified is not None:
                changes["email_verified"] = email_verified
            return self._mutate_user(user_id, **changes)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
    ) -> Optional[User]:
        """Increment the failure counter and lock once it reaches ``max_attempts``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.locked_until = lockout_until
            self._persist_state()
            return _copy_user(user)

    def record_successful_login(
        self, user_id: str, *, at: datetime, ip_addr: Optional[str]
    ) -> Optional[User]:
        return self._mutate_user(
            user_id,
            failed_login_attempts=0,
            locked_until=None,
            last_login_at=at,
            last_login_ip=ip_addr,
            updated_at=at,
        )

    def reset_login_failures(self, user_id: str, *, at: datetime) -> Optional[User]:
        return self._mutate_user(
            user_id, failed_login_attempts=0, locked_until=None, updated_at=at
        )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.refresh_token in self._sessions_by_token:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            stored = _copy_session(session)
            self.sessions[stored.id] = stored
            self._sessions_by_token[stored.refresh_token] = stored.id
            self._persist_state()
            return _copy_session(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return _copy_session(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._sessions_by_token.get(refresh_token)
            if not session_id:
                return None
            return _copy_session(self.sessions[session_id])

    def revoke_session_if_active(
        self,
        refresh_token: str,
        *,
        reason: str,
        revoked_at: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[Session]:
        """Compare-and-swap: deactivate the session only if it is still active.

        Returns the revoked session, or ``None`` when another caller got there
        first (or the token is unknown / owned by someone else).
        """
        with self._data_lock:
            session_id = self._sessions_by_token.get(refresh_token)
            sess = self.sessions.get(session_id) if session_id else None
            if not sess or not sess.is_active or sess.revoked_at is not None:
                return None
            if user_id is not None and sess.user_id != user_id:
                return None
            sess.is_active = False
            sess.revoked_at = revoked_at
            sess.revoked_reason = reason
            self._persist_state()
            return _copy_session(sess)

    def revoke_user_sessions(
        self, user_id: str, *, reason: str, revoked_at: datetime
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active and sess.revoked_at is None:
                    sess.is_active = False
                    sess.revoked_at = revoked_at
                    sess.revoked_reason = reason
                    revoked += 1
            user = self.users.get(user_id)
            if user:
                user.sessions_revoked_at = revoked_at
            self._persist_state()
            return revoked

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            results = [
                _copy_session(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    # audit

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(replace(event, detail=dict(event.detail or {})))
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            matches = [
                replace(e)
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[:limit]

    # signing keys

    def save_signing_key(self, key: SigningKeyPair) -> None:
        with self._data_lock:
            self.signing_keys[key.kid] = replace(key)
            self._persist_state()

    def list_signing_keys(self) -> List[SigningKeyPair]:
        with self._data_lock:
            keys = [replace(k) for k in self.signing_keys.values()]
        return sorted(keys, key=lambda k: k.created_at)

    def delete_signing_key(self, kid: str) -> bool:
        with self._data_lock:
            removed = self.signing_keys.pop(kid, None)
            if removed:
                self._persist_state()
            return removed is not None

    # persistence

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
            "signing_keys": [
                self._serialize_signing_key(k) for k in self.signing_keys.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._sessions_by_token = {s.refresh_token: s.id for s in self.sessions.values()}
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.signing_keys = {
            k["kid"]: self._deserialize_signing_key(k) for k in data.get("signing_keys", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            signing_keys=len(self.signing_keys),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "mfa_enabled": user.mfa_enabled,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "sessions_revoked_at": self._serialize_datetime(user.sessions_revoked_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            roles=list(data.get("roles") or ["user"]),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            mfa_enabled=data.get("mfa_enabled", False),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            sessions_revoked_at=self._deserialize_datetime(data.get("sessions_revoked_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "action": event.action.value,
            "user_id": event.user_id,
            "ip_addr": event.ip_addr,
            "user_agent": event.user_agent,
            "success": event.success,
            "detail": event.detail,
            "error_message": event.error_message,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            action=AuditAction(data["action"]),
            user_id=data.get("user_id"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            success=data.get("success", True),
            detail=data.get("detail"),
            error_message=data.get("error_message"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_signing_key(self, key: SigningKeyPair) -> dict:
        return {
            "kid": key.kid,
            "public_pem": key.public_pem,
            "private_pem": key.private_pem,
            "created_at": self._serialize_datetime(key.created_at),
            "expires_at": self._serialize_datetime(key.expires_at),
            "algorithm": key.algorithm,
        }

    def _deserialize_signing_key(self, data: dict) -> SigningKeyPair:
        return SigningKeyPair(
            kid=data["kid"],
            public_pem=data["public_pem"],
            private_pem=data["private_pem"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            algorithm=data.get("algorithm", "RS256"),
        )
