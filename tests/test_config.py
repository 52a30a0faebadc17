import pytest
from pydantic import ValidationError

from tokenwarden.config import (
    DEV_FALLBACK_SIGNING_KEY,
    Environment,
    Settings,
    get_settings,
    reset_settings_cache,
)


class TestSigningKey:
    @pytest.mark.parametrize("environment", ["production", "service"])
    def test_deployed_environment_requires_key(self, environment):
        with pytest.raises(ValidationError, match=f"TOKEN_SIGNING_KEY is required in {environment}"):
            Settings(environment=environment)

    @pytest.mark.parametrize("environment", ["production", "service"])
    def test_deployed_environment_rejects_fallback_key(self, environment):
        with pytest.raises(ValidationError, match="development fallback key"):
            Settings(environment=environment, token_signing_key=DEV_FALLBACK_SIGNING_KEY)

    def test_service_accepts_real_key(self):
        settings = Settings(environment="service", token_signing_key="real-key")
        assert settings.token_signing_key == "real-key"

    def test_development_falls_back(self):
        settings = Settings(environment="development")
        assert settings.token_signing_key == DEV_FALLBACK_SIGNING_KEY

    def test_live_is_production(self):
        settings = Settings(environment=" LIVE ", token_signing_key="real-key")
        assert settings.environment is Environment.PRODUCTION


class TestParsing:
    def test_cors_origins_split(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example,,")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize(
        "field", ["default_token_ttl_seconds", "revocation_grace_seconds", "rate_limit_window_seconds"]
    )
    def test_durations_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_defaults(self):
        settings = Settings(token_signing_key="k")
        assert settings.default_token_ttl_seconds == 30 * 24 * 60 * 60
        assert settings.revocation_grace_seconds == 90 * 24 * 60 * 60
        assert settings.rate_limit_window_seconds == 3600
        assert settings.rate_limit_fail_open is False


class TestFromEnv:
    def test_reads_declared_env_names(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_TOKEN_EXPIRY", "120")
        monkeypatch.setenv("RATE_LIMIT_FAIL_OPEN", "true")
        monkeypatch.setenv("RATE_LIMIT_STANDARD", "5")

        settings = Settings.from_env()

        assert settings.default_token_ttl_seconds == 120
        assert settings.rate_limit_fail_open is True
        assert settings.rate_limit_standard == 5
        assert settings.environment is Environment.TEST

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("RATE_LIMIT_ADMIN", "9")
        reset_settings_cache()
        try:
            assert get_settings().rate_limit_admin == 9
        finally:
            reset_settings_cache()
