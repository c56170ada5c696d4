# Logging adapter for application-wide logging
from prelay.adapters.logging_adapter import LoggingAdapter

from pydantic import HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings
from rich import print

from prelay.core.interfaces.logging import LoggingPort

# using pydantic_settings to manage environment variables
# and do automatic type casting in a central place
class RelaySettings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }
    PRELAY_LOG_LEVEL: str = "INFO"
    PRELAY_SERVER_HOST: str = "0.0.0.0"
    PRELAY_SERVER_PORT: int = 8000

    # Remote job API
    PRELAY_JOB_API_URL: HttpUrl = HttpUrl("https://api.replicate.com/v1")
    PRELAY_JOB_API_TOKEN: SecretStr = SecretStr("")
    PRELAY_JOB_API_TIMEOUT: float = 60.0  # seconds

    # Status polling
    PRELAY_POLL_INTERVAL: float = 1.0  # seconds
    PRELAY_POLL_FETCH_ATTEMPTS: int = 3
    # None keeps terminal statuses until the process exits
    PRELAY_COMPLETED_STATUS_TTL: float | None = 3600.0  # seconds
    PRELAY_MAX_COMPLETED_ENTRIES: int = 10_000

    # Push transport
    PRELAY_PUSH_STREAM_URL: str = "http://localhost:3000/events"
    PRELAY_KEEP_ALIVE_INTERVAL: float = 30.0  # seconds
    PRELAY_MAX_RECONNECT_ATTEMPTS: int = 5

    # Webhooks
    PRELAY_WEBHOOK_BASE_DELAY: float = 1.0  # seconds
    PRELAY_WEBHOOK_MAX_DELAY: float = 60.0  # seconds

    def print_settings(self, logger: LoggingPort):
        """Prints the settings for debugging purposes"""
        logger.info("Relay Settings:")
        print(self)

    @field_validator("PRELAY_PUSH_STREAM_URL", mode="before")
    def strip_trailing_slash(cls, value: str) -> str:
        """Stream URLs are used verbatim; drop a trailing slash."""
        return value.rstrip("/") if isinstance(value, str) else value


app_settings = RelaySettings()

logger = LoggingAdapter("prelay", app_settings.PRELAY_LOG_LEVEL)
