import pytest
from pydantic import ValidationError

from tokengate.config import DEFAULT_PUBLIC_PATHS, Settings

LONG_SECRET = "config-test-secret-0123456789abcdef0123"


def test_defaults():
    settings = Settings(jwt_secret=LONG_SECRET)
    assert settings.access_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_minutes == 1440
    assert settings.token_single_session is True
    assert settings.public_paths == DEFAULT_PUBLIC_PATHS


def test_csv_values_are_split(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", LONG_SECRET)
    monkeypatch.setenv("PUBLIC_PATHS", " /healthz , /api/public/** ,")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example,https://b.example")

    settings = Settings.from_env()

    assert settings.public_paths == ["/healthz", "/api/public/**"]
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_env_overrides_ttls(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", LONG_SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_MINUTES", "120")
    monkeypatch.setenv("TOKEN_SINGLE_SESSION", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 120
    assert settings.token_single_session is False


def test_relative_public_path_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=LONG_SECRET, public_paths=["api/public/**"])


@pytest.mark.parametrize("access,refresh", [(0, 60), (120, 60), (-5, 60)])
def test_ttl_constraints(access, refresh):
    with pytest.raises(ValidationError):
        Settings(
            jwt_secret=LONG_SECRET,
            access_token_ttl_minutes=access,
            refresh_token_ttl_minutes=refresh,
        )


def test_equal_ttls_are_allowed():
    settings = Settings(
        jwt_secret=LONG_SECRET, access_token_ttl_minutes=30, refresh_token_ttl_minutes=30
    )
    assert settings.access_token_ttl_minutes == settings.refresh_token_ttl_minutes


def test_short_secret_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings()

    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.read_text() == first.jwt_secret
    assert second.jwt_secret == first.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert oct(secret_file.stat().st_mode & 0o777) == "0o600"
