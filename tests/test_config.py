"""
Tests for autoyield.core.config module.

Covers Settings, get_settings and the simulation flag.
"""

import pytest

from autoyield.core.config import Settings, get_settings, is_simulation_mode


class TestSettings:
    """Test Settings model."""

    def test_defaults(self):
        s = Settings()
        assert s.app_name == "AUTOYIELD"
        assert s.environment == "development"
        assert s.chain_id == 84532
        assert s.stable_asset_decimals == 6

    def test_decision_defaults(self):
        s = Settings()
        assert s.cost_model == "sponsored"
        assert s.min_rebalance_threshold == 0.005
        assert s.current_position_risk_discount == 0.85

    def test_rate_limit_defaults(self):
        s = Settings()
        assert s.rate_limit_max_per_day == 20
        assert s.rate_limit_max_amount_usd == 500.0
        assert s.rate_limit_window_seconds == 86400

    def test_is_debug(self):
        assert Settings(environment="staging").is_debug is True
        assert Settings(environment="production").is_debug is False

    def test_get_cors_origins_multiple(self):
        s = Settings(cors_origins="http://a.com, http://b.com ,http://c.com")
        assert s.get_cors_origins() == ["http://a.com", "http://b.com", "http://c.com"]

    def test_get_cors_origins_empty(self):
        assert Settings(cors_origins="").get_cors_origins() == []

    def test_morpho_vaults_empty(self):
        assert Settings().get_morpho_vaults() == []

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MIN_REBALANCE_THRESHOLD", "0.01")
        monkeypatch.setenv("COST_MODEL", "gas_inclusive")
        s = Settings()
        assert s.min_rebalance_threshold == 0.01
        assert s.cost_model == "gas_inclusive"

    def test_invalid_cost_model(self):
        with pytest.raises(ValueError):
            Settings(cost_model="free")


class TestProductionValidation:

    def test_requires_jwt_secret(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET")
        with pytest.raises(ValueError, match="JWT_SECRET must be explicitly set"):
            Settings(environment="production")

    def test_short_jwt_secret(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "short")
        with pytest.raises(ValueError, match="at least 32 characters"):
            Settings(environment="production")

    def test_requires_encryption_key(self, monkeypatch):
        monkeypatch.delenv("DATA_ENCRYPTION_KEY")
        with pytest.raises(ValueError, match="DATA_ENCRYPTION_KEY"):
            Settings(environment="production")

    def test_requires_cron_secret(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "tiny")
        with pytest.raises(ValueError, match="CRON_SECRET"):
            Settings(environment="production")

    def test_valid_production(self):
        assert Settings(environment="production").environment == "production"


class TestGetSettings:

    def test_cached(self):
        assert get_settings() is get_settings()

    def test_cache_clear(self):
        first = get_settings()
        get_settings.cache_clear()
        assert get_settings() is not first


class TestSimulationMode:

    def test_unset_falls_back_to_settings(self):
        assert is_simulation_mode() is False

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), (" YES ", True), ("on", True),
        ("false", False), ("0", False), ("", False),
    ])
    def test_env_values(self, monkeypatch, raw, expected):
        monkeypatch.setenv("AGENT_SIMULATION_MODE", raw)
        assert is_simulation_mode() is expected

    def test_read_fresh_every_call(self, monkeypatch):
        monkeypatch.setenv("AGENT_SIMULATION_MODE", "true")
        assert is_simulation_mode() is True
        monkeypatch.setenv("AGENT_SIMULATION_MODE", "false")
        assert is_simulation_mode() is False
