from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./carmarket.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # CORS - seller frontend
    cors_origins: list[str] = ["http://localhost:3000"]

    # Vehicle history API (checkcardetails). "test" uses the test key and
    # only accepts registrations containing the letter A.
    api_environment: str = "test"
    history_api_live_key: str = ""
    history_api_test_key: str = ""
    history_api_base_url: str = "https://api.checkcardetails.co.uk"
    history_api_test_base_url: str = "https://api.checkcardetails.co.uk"
    history_api_timeout_seconds: float = 10.0
    history_api_max_attempts: int = 3

    # Government MOT history API, used when the provider MOT call fails
    mot_fallback_base_url: str = "https://history.mot.api.gov.uk/v1"
    mot_fallback_api_key: str = ""

    # Optimistic concurrency on listing updates
    update_max_attempts: int = 3
    update_backoff_seconds: float = 0.1

    # Housekeeping
    stale_history_days: int = 90
    pending_payment_ttl_hours: int = 24
    history_refresh_batch_size: int = 50

    # Redis / Celery
    redis_url: str = ""
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def history_test_mode(self) -> bool:
        return self.api_environment.lower() != "production"

    @property
    def active_history_api_key(self) -> str:
        if self.history_test_mode:
            return self.history_api_test_key
        return self.history_api_live_key

    @property
    def active_history_base_url(self) -> str:
        if self.history_test_mode:
            return self.history_api_test_base_url
        return self.history_api_base_url

    @property
    def effective_celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url or "memory://"

    @property
    def effective_celery_backend(self) -> str:
        return self.celery_result_backend or self.redis_url or "cache+memory://"

    def validate_production(self) -> None:
        """Raise if production is missing credentials or still in test mode."""
        if self.is_production and self.history_test_mode:
            raise ValueError("API_ENVIRONMENT must be 'production' when ENVIRONMENT is production")
        if self.is_production and not self.history_api_live_key:
            raise ValueError("HISTORY_API_LIVE_KEY must be set in production")
        if self.is_production and not self.mot_fallback_api_key:
            raise ValueError("MOT_FALLBACK_API_KEY must be set in production")
        if self.is_production and not self.redis_url:
            raise ValueError("REDIS_URL must be set in production")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
