import pytest

from tokenforge.config import Settings, get_settings, parse_duration, reset_settings_cache
from tokenforge.service.errors import InvalidConfiguration


@pytest.mark.parametrize(
    "value,seconds",
    [("15m", 900), ("7d", 604800), ("30s", 30), ("24h", 86400), ("30d", 2592000)],
)
def test_parse_duration_units(value, seconds):
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "15", "m15", "1w", "1.5h", "-5m", "15 minutes"])
def test_parse_duration_rejects_malformed(value):
    with pytest.raises(InvalidConfiguration):
        parse_duration(value)


def test_settings_reject_bad_expiration(tmp_path):
    with pytest.raises(InvalidConfiguration):
        Settings(
            test_mode=True,
            shared_fs_root=str(tmp_path),
            jwt_access_expiration="fifteen",
        )


def test_settings_require_key_encryption_key_for_postgres(tmp_path):
    with pytest.raises(InvalidConfiguration):
        Settings(test_mode=False, use_memory_store=False, shared_fs_root=str(tmp_path))


def test_local_key_encryption_key_is_generated_once(tmp_path):
    first = Settings(test_mode=True, shared_fs_root=str(tmp_path))
    second = Settings(test_mode=True, shared_fs_root=str(tmp_path))
    assert first.key_encryption_key
    assert len(first.key_encryption_key) >= 32
    assert first.key_encryption_key == second.key_encryption_key


def test_issuer_defaults_to_base_url_api(tmp_path):
    settings = Settings(
        test_mode=True, shared_fs_root=str(tmp_path), base_url="https://auth.example.com/"
    )
    assert settings.base_url == "https://auth.example.com"
    assert settings.resolved_issuer == "https://auth.example.com/api"


def test_duration_properties(settings):
    assert settings.access_token_ttl == 15 * 60
    assert settings.refresh_token_ttl == 7 * 86400
    assert settings.key_grace_seconds == 24 * 3600
    assert settings.lockout_seconds == 30 * 60
    assert settings.mfa_pending_seconds == 15 * 60


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("JWT_ACCESS_EXPIRATION", "5m")
    monkeypatch.setenv("MAX_FAILED_LOGINS", "3")
    reset_settings_cache()
    settings = get_settings()
    assert settings.access_token_ttl == 300
    assert settings.max_failed_logins == 3
    assert get_settings() is settings
    reset_settings_cache()


def test_max_failed_logins_must_be_positive(tmp_path):
    with pytest.raises(InvalidConfiguration):
        Settings(test_mode=True, shared_fs_root=str(tmp_path), max_failed_logins=0)
