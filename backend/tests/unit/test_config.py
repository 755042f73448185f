"""
Unit tests for settings parsing and the billing policy config.
"""
import pydantic
import pytest

from billing_engine.core.config import BillingConfig, Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestSettings:

    def test_defaults(self):
        s = _settings()
        assert s.max_retries == 3
        assert s.retry_backoff_hours == [12, 36, 72]
        assert s.descriptor_base == "ECELONX Subscription"

    def test_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("RETRY_BACKOFF_HOURS", "6, 24")
        monkeypatch.setenv("NETWORK_TOKEN_UNSUPPORTED_BINS", "400000, 555555")
        monkeypatch.setenv("BACKEND_CORS_ORIGINS", "https://ops.example.com,https://admin.example.com")

        s = _settings()

        assert s.retry_backoff_hours == [6, 24]
        assert s.network_token_unsupported_bins == ["400000", "555555"]
        assert s.backend_cors_origins == ["https://ops.example.com", "https://admin.example.com"]

    @pytest.mark.parametrize("value", ["", "0,12", "12,-1"])
    def test_invalid_backoff(self, value):
        with pytest.raises(pydantic.ValidationError):
            _settings(retry_backoff_hours=value)

    def test_descriptor_base_over_limit(self):
        with pytest.raises(pydantic.ValidationError):
            _settings(descriptor_base="X" * 23)


class TestBillingConfig:

    def test_from_settings(self):
        s = _settings(
            max_retries=4,
            retry_backoff_hours="1,2,3",
            network_token_brands="Visa,MasterCard",
            descriptor_suffix_final_retry=" *Last",
        )

        config = BillingConfig.from_settings(s)

        assert config.max_retries == 4
        assert config.backoff_hours == (1, 2, 3)
        assert config.network_token_brands == ("visa", "mastercard")
        assert config.descriptor_suffixes["final_retry"] == " *Last"

    def test_is_immutable(self):
        config = BillingConfig()
        with pytest.raises(AttributeError):
            config.max_retries = 10
