# adaptive_chat/config.py
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ===== Key-value store =====
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_PASSWORD: Optional[str] = None
    STORE_KEY_PREFIX: str = Field("adaptive_chat:")

    # ===== Context analysis =====
    CONTEXT_CACHE_TTL: float = 300.0          # 5 minutes
    CONTEXT_UPDATE_DEBOUNCE: float = 1.0      # seconds
    MAX_TOPICS: int = 5
    MAX_CONTEXT_HISTORY: int = 50

    # ===== Suggestions =====
    SUGGESTION_CACHE_TTL: float = 120.0       # 2 minutes
    FEEDBACK_HISTORY_LIMIT: int = 100
    BATCH_DELAY: float = 0.1                  # seconds between batch items

    # ===== Behavior tracking =====
    MAX_INTERACTIONS_PER_USER: int = 1000
    PATTERN_MINING_INTERVAL: int = 10
    MIN_INTERACTIONS_FOR_ANALYSIS: int = 5
    ANALYTICS_RETENTION_DAYS: int = 30
    RETENTION_SWEEP_INTERVAL: float = 3600.0  # 1 hour

    # ===== Sessions =====
    SESSION_TIMEOUT: float = 1800.0           # 30 minutes
    SESSION_SWEEP_INTERVAL: float = 300.0     # 5 minutes
    MAX_SESSION_HISTORY: int = 50

    @field_validator(
        'CONTEXT_CACHE_TTL', 'SUGGESTION_CACHE_TTL', 'SESSION_TIMEOUT',
        'RETENTION_SWEEP_INTERVAL', 'SESSION_SWEEP_INTERVAL'
    )
    @classmethod
    def validate_positive_interval(cls, v):
        if v <= 0:
            raise ValueError('TTLs and sweep intervals must be positive')
        return v

    @field_validator('CONTEXT_UPDATE_DEBOUNCE', 'BATCH_DELAY')
    @classmethod
    def validate_non_negative_delay(cls, v):
        if v < 0:
            raise ValueError('Delays cannot be negative')
        return v

    @field_validator(
        'MAX_TOPICS', 'MAX_CONTEXT_HISTORY', 'FEEDBACK_HISTORY_LIMIT',
        'MAX_INTERACTIONS_PER_USER', 'PATTERN_MINING_INTERVAL', 'MAX_SESSION_HISTORY'
    )
    @classmethod
    def validate_positive_limit(cls, v):
        if v < 1:
            raise ValueError('Limits must be at least 1')
        return v

    @field_validator('ANALYTICS_RETENTION_DAYS')
    @classmethod
    def validate_retention_days(cls, v):
        if v < 1:
            raise ValueError('Retention period must be at least one day')
        return v


settings = Settings()
