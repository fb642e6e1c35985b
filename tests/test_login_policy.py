import pytest

from tokenforge.config import Settings
from tokenforge.service.context import AuthContext
from tokenforge.service.login_policy import LoginPolicy
from tokenforge.storage.models import AuditAction


@pytest.fixture
def user(store):
    return store.create_user("carol@x.com", "carol")


def test_fifth_failure_locks(policy, user, store, clock):
    for _ in range(4):
        user = policy.record_failure(user)
        assert not policy.check_locked(user)
    user = policy.record_failure(user)
    assert user.failed_login_attempts == 5
    assert policy.check_locked(user)
    assert (user.locked_until - clock.now()).total_seconds() == 30 * 60

    locked_events = store.list_audit_events(user_id=user.id, action=AuditAction.ACCOUNT_LOCKED)
    assert len(locked_events) == 1
    assert locked_events[0].detail["attempts"] == 5


def test_lock_expires_lazily(policy, user, clock):
    for _ in range(5):
        user = policy.record_failure(user)
    clock.advance(minutes=29, seconds=59)
    assert policy.check_locked(user)
    clock.advance(seconds=1)
    assert not policy.check_locked(user)
    # Expiry alone does not clear the counter
    assert policy.expire_lock(user).failed_login_attempts == 5


def test_success_resets_counter(policy, user, clock):
    for _ in range(3):
        user = policy.record_failure(user)

    user = policy.record_success(user, AuthContext(ip_addr="192.0.2.4"))
    assert user.failed_login_attempts == 0
    assert user.locked_until is None
    assert user.last_login_at == clock.now()
    assert user.last_login_ip == "192.0.2.4"


def test_reset_on_expiry_flag(store, audit, clock, tmp_path, user):
    settings = Settings(
        test_mode=True,
        shared_fs_root=str(tmp_path),
        key_encryption_key="x" * 40,
        reset_failures_on_lock_expiry=True,
    )
    policy = LoginPolicy(store, audit, settings, clock=clock)
    for _ in range(5):
        user = policy.record_failure(user)
    clock.advance(minutes=31)
    refreshed = policy.expire_lock(user)
    assert refreshed.failed_login_attempts == 0
    assert refreshed.locked_until is None


def test_unlock_records_audit(policy, user, store):
    for _ in range(5):
        user = policy.record_failure(user)
    unlocked = policy.unlock(user.id)
    assert unlocked.failed_login_attempts == 0
    assert not policy.check_locked(unlocked)
    assert store.list_audit_events(user_id=user.id, action=AuditAction.ACCOUNT_UNLOCKED)


def test_unlock_unknown_user(policy):
    assert policy.unlock("missing") is None
