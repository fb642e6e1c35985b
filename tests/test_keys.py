import pytest

from tokenforge.service.errors import NoActiveKey
from tokenforge.service.keys import KeyRotationWorker, SigningKeyManager


def test_load_generates_first_key(keys, store):
    current = keys.current_key()
    assert current.algorithm == "RS256"
    persisted = store.list_signing_keys()
    assert [k.kid for k in persisted] == [current.kid]
    # Private material is sealed at rest
    assert "PRIVATE KEY" not in persisted[0].private_pem


def test_reload_reuses_persisted_keys(keys, store, settings, clock, sealer):
    original = keys.current_key()
    reloaded = SigningKeyManager(store, settings, clock=clock, sealer=sealer)
    reloaded.load()
    assert reloaded.current_key().kid == original.kid
    assert reloaded.current_key().private_pem == original.private_pem


def test_rotation_keeps_previous_key_verifiable(keys, clock):
    first = keys.current_key()
    clock.advance(days=30)
    assert keys.check_rotation() is True
    second = keys.current_key()
    assert second.kid != first.kid
    assert keys.key_by_id(first.kid) is not None
    published = {k["kid"] for k in keys.public_key_set()["keys"]}
    assert published == {first.kid, second.kid}


def test_check_rotation_noop_before_interval(keys, clock):
    clock.advance(days=29, hours=23)
    assert keys.check_rotation() is False


def test_keys_in_grace_survive_two_rotations(keys, clock, store):
    first = keys.current_key()
    clock.advance(days=30)
    keys.check_rotation()
    # Force a second rotation inside the first key's grace period
    clock.advance(hours=1)
    keys.rotate()
    assert keys.key_by_id(first.kid) is not None
    assert len(keys.public_key_set()["keys"]) == 3

    clock.advance(hours=23)
    keys.check_rotation()
    assert keys.key_by_id(first.kid) is None
    assert first.kid not in {k.kid for k in store.list_signing_keys()}


def test_failed_persist_leaves_key_set_unchanged(keys, store, monkeypatch):
    before = keys.public_key_set()

    def boom(key):
        raise OSError("disk full")

    monkeypatch.setattr(store, "save_signing_key", boom)
    with pytest.raises(OSError):
        keys.rotate()
    assert keys.public_key_set() == before


def test_no_active_key_when_all_expired(keys, clock):
    clock.advance(days=31, hours=1)
    with pytest.raises(NoActiveKey):
        keys.current_key()


def test_unsealable_keys_are_skipped(keys, store, settings, clock):
    from tokenforge.service.sealing import SecretSealer

    other = SigningKeyManager(store, settings, clock=clock, sealer=SecretSealer("a-different-key"))
    other.load()
    # The stored key could not be opened, so a fresh one was generated
    assert other.current_key().kid != keys.current_key().kid


def test_jwks_shape(keys):
    jwk = keys.public_key_set()["keys"][0]
    assert jwk["kty"] == "RSA"
    assert jwk["use"] == "sig"
    assert jwk["alg"] == "RS256"
    assert jwk["e"] == "AQAB"
    assert "=" not in jwk["n"]
    assert "d" not in jwk


async def test_rotation_worker_runs_check_and_stops(keys, clock):
    worker = KeyRotationWorker(keys, interval_seconds=3600)
    clock.advance(days=30)
    assert await worker.run_once() is True

    await worker.start()
    assert worker.running
    await worker.stop()
    assert not worker.running


def _second_manager(store, settings, clock, sealer):
    manager = SigningKeyManager(store, settings, clock=clock, sealer=sealer)
    manager.load()
    return manager


def test_managers_sharing_a_store_converge(keys, store, settings, clock, sealer):
    other = _second_manager(store, settings, clock, sealer)
    assert other.current_key().kid == keys.current_key().kid

    clock.advance(days=30)
    assert keys.check_rotation() is True
    # The peer sees the freshly persisted key and does not mint its own
    assert other.check_rotation() is False
    assert other.current_key().kid == keys.current_key().kid
    published = {k["kid"] for k in other.public_key_set()["keys"]}
    assert keys.current_key().kid in published
    assert len(store.list_signing_keys()) == 2


def test_unseen_kid_reloads_from_store(keys, store, settings, clock, sealer):
    other = _second_manager(store, settings, clock, sealer)
    minted = keys.rotate()
    clock.advance(seconds=30)
    found = other.key_by_id(minted.kid)
    assert found is not None
    assert other.private_key_for(found) is not None


def test_unseen_kid_reload_is_rate_limited(keys, store, settings, clock, sealer, monkeypatch):
    other = _second_manager(store, settings, clock, sealer)
    calls = []
    original = store.list_signing_keys

    def counting():
        calls.append(1)
        return original()

    monkeypatch.setattr(store, "list_signing_keys", counting)
    clock.advance(seconds=30)
    assert other.key_by_id("made-up-1") is None
    assert other.key_by_id("made-up-2") is None
    assert len(calls) == 1


def test_restart_with_overdue_key_rotates_immediately(keys, store, settings, clock, sealer):
    old = keys.current_key()
    clock.advance(days=30, hours=12)
    restarted = _second_manager(store, settings, clock, sealer)
    assert restarted.current_key().kid != old.kid
    # Still usable well past the old key's expiry, before any worker tick
    clock.advance(hours=13)
    assert restarted.current_key().kid != old.kid


async def test_rotation_worker_stop_interrupts_wait(keys):
    worker = KeyRotationWorker(keys, interval_seconds=24 * 3600)
    await worker.start()
    await worker.start()
    await worker.stop()
    assert not worker.running
