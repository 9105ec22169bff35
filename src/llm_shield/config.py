"""Configuration management for LLM Shield.

Two layers:

- :class:`Settings`: process settings loaded from environment variables.
- :class:`EngineConfig`: the immutable tunables the scoring and mitigation
  engine runs with.  Built from :class:`Settings` at startup or constructed
  directly in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="llm_shield", description="Prefix for log file names")

    # Semantic signal (Cloud Natural Language)
    semantic_enabled: bool = Field(
        default=True, description="Blend the external semantic signal into risk scores"
    )
    semantic_api_key: SecretStr | None = Field(
        default=None, description="API key for the Natural Language service"
    )
    semantic_base_url: str = Field(
        default="https://language.googleapis.com/v1",
        description="Base URL of the Natural Language REST API",
    )
    semantic_timeout: float = Field(
        default=3.0, description="Timeout in seconds for one semantic analysis"
    )

    # Scoring
    risk_block_threshold: float = Field(
        default=76.0, description="Risk score at or above which a prompt is blocked (0-100)"
    )
    risk_flag_threshold: float = Field(
        default=40.0, description="Risk score at or above which an allowed prompt is flagged"
    )
    educational_dampening_factor: float = Field(
        default=0.15, description="Multiplier applied to pattern/structural score for "
        "educational prompts (0-1)"
    )
    semantic_weight: float = Field(
        default=0.3, description="Weight of the semantic contribution (0-1)"
    )

    # Rate limiting
    rate_limit_window_seconds: float = Field(
        default=60.0, description="Sliding window length shared by all tiers"
    )
    rate_limit_normal_max: int = Field(default=30, description="Normal tier requests/window")
    rate_limit_normal_block_seconds: float = Field(default=60.0)
    rate_limit_suspicious_max: int = Field(
        default=10, description="Suspicious tier requests/window"
    )
    rate_limit_suspicious_block_seconds: float = Field(default=300.0)
    rate_limit_malicious_max: int = Field(default=3, description="Malicious tier requests/window")
    rate_limit_malicious_block_seconds: float = Field(default=600.0)
    activity_retention_seconds: float = Field(
        default=3600.0, description="Inactive identities older than this are swept"
    )
    sweep_interval_seconds: float = Field(
        default=600.0, description="Seconds between background cleanup sweeps"
    )

    # Cost attack detection
    cost_token_threshold: int = Field(
        default=10000, description="Estimated tokens above which a request is token exhaustion"
    )
    cost_context_window_threshold: int = Field(
        default=8000, description="Estimated tokens above which a request is a context attack"
    )
    cost_history_cap: int = Field(default=100, description="Requests kept per identity")

    @field_validator("risk_block_threshold", "risk_flag_threshold")
    @classmethod
    def validate_score_0_100(cls, v: float) -> float:
        """Validate score thresholds are between 0 and 100."""
        if not 0 <= v <= 100:
            raise ValueError(f"Threshold must be between 0 and 100, got: {v}")
        return v

    @field_validator("educational_dampening_factor", "semantic_weight")
    @classmethod
    def validate_float_0_1(cls, v: float) -> float:
        """Validate float values are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator(
        "rate_limit_normal_max",
        "rate_limit_suspicious_max",
        "rate_limit_malicious_max",
        "cost_token_threshold",
        "cost_context_window_threshold",
        "cost_history_cap",
        "log_file_max_bytes",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counts and sizes are at least 1."""
        if v < 1:
            raise ValueError(f"Value must be a positive integer, got: {v}")
        return v

    @field_validator(
        "semantic_timeout",
        "rate_limit_window_seconds",
        "rate_limit_normal_block_seconds",
        "rate_limit_suspicious_block_seconds",
        "rate_limit_malicious_block_seconds",
        "activity_retention_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are strictly positive."""
        if v <= 0:
            raise ValueError(f"Duration must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_cost_thresholds(self) -> Self:
        """Context-window threshold must sit below the token-exhaustion threshold."""
        if self.cost_context_window_threshold >= self.cost_token_threshold:
            raise ValueError(
                "cost_context_window_threshold must be lower than cost_token_threshold"
            )
        return self

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskThresholds:
    """Score boundaries for the discrete risk levels."""

    medium: float = 26.0
    high: float = 51.0
    critical: float = 76.0


@dataclass(frozen=True)
class ScoringConfig:
    """Tunables for the hybrid score combiner."""

    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    block_threshold: float = 76.0
    flag_threshold: float = 40.0
    pattern_dampening: float = 0.15
    structural_dampening: float = 0.15
    semantic_weight: float = 0.3
    semantic_dampening: float = 0.3
    semantic_cap: float = 50.0
    high_severity: float = 76.0


@dataclass(frozen=True)
class TierLimit:
    """Quota and penalty for one rate-limit tier."""

    window_seconds: float
    max_requests: int
    block_duration_seconds: float


@dataclass(frozen=True)
class RateLimitConfig:
    """Tunables for the adaptive rate limiter."""

    normal: TierLimit = field(default_factory=lambda: TierLimit(60.0, 30, 60.0))
    suspicious: TierLimit = field(default_factory=lambda: TierLimit(60.0, 10, 300.0))
    malicious: TierLimit = field(default_factory=lambda: TierLimit(60.0, 3, 600.0))

    # Tier selection
    malicious_attack_rate: float = 0.5
    malicious_block_rate: float = 0.3
    suspicious_avg_risk: float = 40.0
    suspicious_current_risk: float = 60.0

    # Auto-escalation from recorded attacks
    user_auto_block_attacks: int = 5
    user_auto_block_blocks: int = 3
    ip_auto_block_attacks: int = 10

    # Memory hygiene
    retention_seconds: float = 3600.0
    sweep_interval_seconds: float = 600.0


@dataclass(frozen=True)
class CostConfig:
    """Tunables for the cost-attack detector."""

    token_threshold: int = 10000
    context_window_threshold: int = 8000
    token_exhaustion_points: float = 40.0
    context_window_points: float = 25.0

    loop_window_seconds: float = 60.0
    similarity_threshold: float = 0.8
    loop_min_count: int = 3
    loop_critical_count: int = 5
    loop_points: float = 35.0
    loop_block_seconds: float = 300.0

    rapid_fire_window_seconds: float = 10.0
    rapid_fire_max_requests: int = 10
    rapid_fire_points: float = 25.0

    block_score: float = 60.0
    history_cap: int = 100
    history_retention_seconds: float = 3600.0


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration for the whole engine."""

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cost: CostConfig = field(default_factory=CostConfig)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EngineConfig:
        """Build an engine configuration from process settings.

        Args:
            settings: Settings to read; defaults to :func:`get_settings`.

        Returns:
            A frozen :class:`EngineConfig`.
        """
        settings = settings or get_settings()
        window = settings.rate_limit_window_seconds
        return cls(
            scoring=ScoringConfig(
                thresholds=RiskThresholds(critical=settings.risk_block_threshold),
                block_threshold=settings.risk_block_threshold,
                flag_threshold=settings.risk_flag_threshold,
                pattern_dampening=settings.educational_dampening_factor,
                structural_dampening=settings.educational_dampening_factor,
                semantic_weight=settings.semantic_weight,
            ),
            rate_limit=RateLimitConfig(
                normal=TierLimit(
                    window,
                    settings.rate_limit_normal_max,
                    settings.rate_limit_normal_block_seconds,
                ),
                suspicious=TierLimit(
                    window,
                    settings.rate_limit_suspicious_max,
                    settings.rate_limit_suspicious_block_seconds,
                ),
                malicious=TierLimit(
                    window,
                    settings.rate_limit_malicious_max,
                    settings.rate_limit_malicious_block_seconds,
                ),
                retention_seconds=settings.activity_retention_seconds,
                sweep_interval_seconds=settings.sweep_interval_seconds,
            ),
            cost=CostConfig(
                token_threshold=settings.cost_token_threshold,
                context_window_threshold=settings.cost_context_window_threshold,
                history_cap=settings.cost_history_cap,
            ),
        )
