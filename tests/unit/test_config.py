"""Unit tests for configuration."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from llm_shield.config import EngineConfig, Settings, get_settings
from llm_shield.security.models import RiskLevel
from llm_shield.security.risk_analyzer import risk_level_for


class TestSettings:
    """Tests for Settings validation."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.risk_block_threshold == 76.0
        assert settings.risk_flag_threshold == 40.0
        assert settings.rate_limit_normal_max == 30
        assert settings.semantic_api_key is None

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RISK_BLOCK_THRESHOLD", "65")
        monkeypatch.setenv("SEMANTIC_API_KEY", "secret")
        settings = Settings(_env_file=None)
        assert settings.risk_block_threshold == 65
        assert settings.semantic_api_key is not None
        assert settings.semantic_api_key.get_secret_value() == "secret"

    @pytest.mark.parametrize("value", [-1, 101])
    def test_threshold_out_of_range(self, value: float) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, risk_block_threshold=value)

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_factor_out_of_range(self, value: float) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, semantic_weight=value)

    @pytest.mark.parametrize("field", ["semantic_timeout", "rate_limit_window_seconds"])
    def test_durations_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    @pytest.mark.parametrize(
        "field",
        [
            "cost_history_cap",
            "rate_limit_normal_max",
            "rate_limit_suspicious_max",
            "rate_limit_malicious_max",
            "cost_token_threshold",
            "cost_context_window_threshold",
        ],
    )
    @pytest.mark.parametrize("value", [0, -1])
    def test_counts_must_be_positive(self, field: str, value: int) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_negative_history_cap_from_env_fails_at_load(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("COST_HISTORY_CAP", "-1")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_cost_thresholds_ordered(self) -> None:
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None, cost_token_threshold=5000, cost_context_window_threshold=5000
            )

    def test_log_file_path(self) -> None:
        settings = Settings(_env_file=None, log_directory="/tmp/logs", log_file_prefix="shield")
        assert settings.log_file_path == "/tmp/logs/shield.log"

    def test_is_development(self) -> None:
        assert Settings(_env_file=None, environment="Development").is_development is True
        assert Settings(_env_file=None, environment="production").is_development is False

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()


class TestEngineConfig:
    """Tests for EngineConfig.from_settings."""

    def test_defaults_match_settings_defaults(self) -> None:
        assert EngineConfig.from_settings(Settings(_env_file=None)) == EngineConfig()

    def test_maps_settings(self) -> None:
        settings = Settings(
            _env_file=None,
            risk_block_threshold=60,
            educational_dampening_factor=0.5,
            rate_limit_window_seconds=30,
            rate_limit_malicious_max=1,
            cost_history_cap=10,
        )
        config = EngineConfig.from_settings(settings)
        assert config.scoring.block_threshold == 60
        assert config.scoring.pattern_dampening == 0.5
        assert config.scoring.structural_dampening == 0.5
        assert config.rate_limit.normal.window_seconds == 30
        assert config.rate_limit.malicious.max_requests == 1
        assert config.cost.history_cap == 10

    def test_critical_level_mirrors_block_threshold(self) -> None:
        config = EngineConfig.from_settings(Settings(_env_file=None, risk_block_threshold=60))
        assert config.scoring.thresholds.critical == 60
        assert risk_level_for(65, config.scoring.thresholds) == RiskLevel.CRITICAL
        assert risk_level_for(59, config.scoring.thresholds) == RiskLevel.HIGH

    def test_frozen(self) -> None:
        config = EngineConfig()
        with pytest.raises(AttributeError):
            config.scoring = None  # type: ignore[misc]
