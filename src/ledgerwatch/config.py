"""
LedgerWatch configuration management using pydantic-settings.

Detection thresholds are tuning parameters, not derived constants, so every
one of them lives here grouped by the component that consumes it.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProfileSettings(BaseModel):
    """Behavioral profile construction."""

    lookback_months: int = Field(default=6, ge=1)
    top_n: int = Field(default=10, ge=1)

    # Profile used for users without history
    default_average: float = 100.0
    default_median: float = 50.0
    default_std_dev: float = 50.0


class RuleThresholds(BaseModel):
    """Thresholds for the built-in fraud rules."""

    large_amount_multiplier: float = 5.0
    large_amount_min_deviation: float = 3.0
    large_amount_bonus_per_sigma: float = 0.05
    large_amount_cap: float = 0.95

    velocity_hard_limit: int = 10
    velocity_soft_limit: int = 5
    velocity_max_gap_hours: float = 0.5
    velocity_bonus_per_txn: float = 0.02
    velocity_cap: float = 0.95

    geographic_multiplier: float = 2.0
    geographic_bonus_per_multiple: float = 0.05
    geographic_cap: float = 0.90

    off_hours_before: int = 4
    off_hours_multiplier: float = 1.5
    deep_night_before: int = 2
    deep_night_bonus: float = 0.10

    new_merchant_multiplier: float = 3.0

    card_testing_max_amount: float = 50.0
    card_testing_min_count: int = 3

    weekend_multiplier: float = 4.0

    rapid_max_gap_hours: float = 0.1
    rapid_min_count: int = 2

    micro_max_amount: float = 5.0
    micro_min_count: int = 5
    micro_average_fraction: float = 0.1

    extreme_min_deviation: float = 4.0
    extreme_bonus_per_sigma: float = 0.02
    extreme_cap: float = 0.98

    fraud_confidence_threshold: float = 0.5
    max_weight: float = 0.7
    mean_weight: float = 0.3


class ScorerWeights(BaseModel):
    """Indicator thresholds and weights for the statistical scorer."""

    strong_deviation: float = 2.0
    strong_deviation_weight: float = 0.30
    mild_deviation: float = 1.5
    mild_deviation_weight: float = 0.15
    unusual_hour_weight: float = 0.20
    new_merchant_multiplier: float = 2.0
    new_merchant_weight: float = 0.25
    new_location_multiplier: float = 1.5
    new_location_weight: float = 0.20
    velocity_limit: int = 5
    velocity_weight: float = 0.30
    weekend_multiplier: float = 3.0
    weekend_weight: float = 0.15


class CombinerSettings(BaseModel):
    """Decision combiner cutoffs."""

    statistical_anomaly_threshold: float = 0.7
    critical_cutoff: float = 0.9
    high_cutoff: float = 0.7
    medium_cutoff: float = 0.5
    large_purchase_amount: float = 1000.0
    type_deviation_limit: float = 2.0
    type_velocity_limit: int = 5
    limits_recommendation_count: int = 5

    @model_validator(mode="after")
    def validate_cutoffs(self) -> "CombinerSettings":
        """Severity cutoffs must be strictly descending."""
        if not (self.critical_cutoff > self.high_cutoff > self.medium_cutoff):
            raise ValueError("Severity cutoffs must be strictly descending")
        return self


class RiskWeights(BaseModel):
    """Risk aggregator coefficients."""

    transaction_weight: float = 0.30
    behavior_weight: float = 0.20
    account_weight: float = 0.20
    time_weight: float = 0.15
    location_weight: float = 0.15

    window_days: int = 7
    large_amount_multiplier: float = 2.0
    transaction_scale: float = 30.0
    behavior_base: float = 50.0
    behavior_per_merchant: float = 2.0
    account_per_account: float = 5.0
    account_count_cap: float = 25.0
    stale_account_days: int = 7
    stale_account_weight: float = 25.0
    day_start_hour: int = 6
    day_end_hour: int = 22

    @model_validator(mode="after")
    def validate_weights(self) -> "RiskWeights":
        """Component weights must sum to one."""
        total = (
            self.transaction_weight
            + self.behavior_weight
            + self.account_weight
            + self.time_weight
            + self.location_weight
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Risk weights must sum to 1.0, got {total}")
        return self


class PatternSettings(BaseModel):
    """Thresholds used by background pattern jobs."""

    pattern_window_days: int = 7
    daily_velocity_limit: float = 20.0
    large_amount_multiplier: float = 5.0
    large_amount_count: int = 3

    training_min_transactions: int = 50
    training_max_transactions: int = 1000

    account_window_hours: int = 24
    rapid_gap_seconds: float = 60.0
    rapid_count_limit: int = 5
    round_count_limit: int = 10
    round_ratio_limit: float = 0.8

    goal_high_time_progress: float = 75.0
    goal_high_amount_progress: float = 50.0
    goal_medium_time_progress: float = 50.0
    goal_medium_amount_progress: float = 25.0
    goal_deadline_days: int = 30
    goal_deadline_amount_progress: float = 80.0


class QueueSettings(BaseModel):
    """Job queue backend and delivery policy."""

    backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "ledgerwatch:jobs"
    default_attempts: int = Field(default=3, ge=1)
    default_backoff_ms: int = Field(default=2000, ge=0)
    dedup_bucket_seconds: int = Field(default=3600, ge=1)
    enqueue_timeout_seconds: float = 2.0
    poll_interval_seconds: float = 1.0
    active_lease_seconds: float = Field(default=300.0, gt=0)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Only memory and redis queues are supported."""
        if v not in ("memory", "redis"):
            raise ValueError(f"Unsupported queue backend: {v}")
        return v


class SchedulerSettings(BaseModel):
    """Cron cadences and sweep windows."""

    timezone: str = "America/Sao_Paulo"
    goals_cron: str = "0 */4 * * *"
    recent_transactions_cron: str = "0 */2 * * *"
    profiles_cron: str = "0 3 * * *"
    account_anomalies_cron: str = "*/30 9-18 * * mon-fri"
    weekly_digest_cron: str = "0 8 * * sun"
    cleanup_cron: str = "0 2 1 * *"

    recent_window_hours: int = 2
    active_user_days: int = 30
    account_activity_hours: int = 4
    profile_stagger_seconds: float = 60.0

    alert_retention_days: int = 90
    completed_job_retention_days: int = 7
    failed_job_retention_days: int = 1


class NotificationSettings(BaseModel):
    """Push notification transport."""

    fcm_server_key: Optional[str] = None
    fcm_url: str = "https://fcm.googleapis.com/fcm/send"
    timeout_seconds: float = 5.0
    time_to_live_seconds: int = 86400
    log_history_size: int = Field(default=100, ge=0)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGERWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async URL; in-memory stores are used when unset",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for any single collaborator read",
    )

    profile: ProfileSettings = Field(default_factory=ProfileSettings)
    rules: RuleThresholds = Field(default_factory=RuleThresholds)
    scorer: ScorerWeights = Field(default_factory=ScorerWeights)
    combiner: CombinerSettings = Field(default_factory=CombinerSettings)
    risk: RiskWeights = Field(default_factory=RiskWeights)
    patterns: PatternSettings = Field(default_factory=PatternSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the logging level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
