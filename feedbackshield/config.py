from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod"
    debug: bool = True

    # ==========================================================================
    # DATABASE
    # ==========================================================================
    database_url: str = "sqlite:///./feedbackshield.db"

    # ==========================================================================
    # OPENAI (legitimacy judgement provider)
    # ==========================================================================
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 800

    # ==========================================================================
    # CONTEXT ANALYZER
    # ==========================================================================
    context_timeout_seconds: float = 20.0  # Per attempt, includes queue wait
    context_max_retries: int = 2  # Extra attempts after the first one
    context_retry_base_delay: float = 0.5
    context_retry_max_delay: float = 8.0
    context_max_inflight: int = 4  # Concurrent external calls
    context_degraded_score: float = 0.0  # Score used when the provider is down

    # ==========================================================================
    # API SECURITY
    # ==========================================================================
    api_token: str = ""  # Required in production, optional in dev
    api_token_header: str = "X-API-Key"

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = "*"  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # SCORING
    # ==========================================================================
    analysis_version: str = "2024.1"
    score_ttl_hours: int = 24  # 0 = scores never expire
    fraud_threshold: float = 70.0

    # ==========================================================================
    # RETENTION (days)
    # ==========================================================================
    score_retention_days: int = 30
    pattern_retention_days: int = 90
    context_retention_days: int = 90

    # ==========================================================================
    # BEHAVIORAL DETECTION
    # ==========================================================================
    frequency_window_minutes: int = 30
    frequency_threshold: int = 5  # Calls allowed inside one window
    similarity_threshold: float = 0.85
    max_travel_speed_kmh: float = 500.0
    time_anomaly_min_history: int = 5
    time_anomaly_recent_hours: int = 24
    local_timezone: str = "Europe/Stockholm"  # Night and weekend windows are local time
    pattern_repeat_window_hours: int = 24  # Repeat detections merge into one pattern
    pattern_escalation_step: float = 2.0
    critical_pattern_threshold: float = 20.0

    # ==========================================================================
    # KEYWORDS
    # ==========================================================================
    keyword_decay_factor: float = 0.5  # Weight of every match after the first
    default_language: str = "sv"

    # ==========================================================================
    # TRANSACTION VERIFICATION
    # ==========================================================================
    transaction_unavailable_score: float = 5.0
    transaction_max_retries: int = 1

    # ==========================================================================
    # BULK RESCORING
    # ==========================================================================
    bulk_max_workers: int = 4

    # ==========================================================================
    # IDENTITY HASHING
    # ==========================================================================
    identity_hash_salt: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def cors_origins_list(self) -> list:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]


settings = Settings()
