from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcfleet.core.exceptions import ConfigurationError

MIN_ENCRYPTION_KEY_LENGTH = 32


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database (owned by the persistence collaborator)
    DATABASE_URL: str = ""

    @model_validator(mode="after")
    def _normalise_db_url(self) -> "Settings":
        # Accept legacy postgres:// or plain postgresql:// and upgrade to the
        # SQLAlchemy 2.x async dialect string.
        for old, new in (
            ("postgres://", "postgresql+asyncpg://"),
            ("postgresql://", "postgresql+asyncpg://"),
        ):
            if self.DATABASE_URL.startswith(old):
                self.DATABASE_URL = self.DATABASE_URL.replace(old, new, 1)
                break
        return self

    # Encryption master secret for credentials and console secrets
    ENCRYPTION_KEY: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"

    # SSH timings (seconds)
    SSH_CONNECT_TIMEOUT: float = 15.0
    SSH_IDLE_TIMEOUT: float = 300.0
    SSH_HEALTH_CHECK_TIMEOUT: float = 5.0
    SSH_COMMAND_TIMEOUT: float = 30.0
    SSH_STATUS_TIMEOUT: float = 10.0
    SSH_LONG_COMMAND_TIMEOUT: float = 600.0

    # Remote file browsing
    DIRECTORY_CACHE_TTL: float = 30.0
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024

    # Background work
    RECONCILE_INTERVAL_SECONDS: float = 120.0
    SERVICE_GRACE_SECONDS: float = 5.0

    # Port ranges allocated per host
    GAME_PORT_START: int = 25565
    GAME_PORT_END: int = 25664
    CONSOLE_PORT_START: int = 25665
    CONSOLE_PORT_END: int = 25764

    # Remote layout: one directory per managed server below this root
    MINECRAFT_ROOT_TEMPLATE: str = "/home/{user}/minecraft"

    # Console (remote administration) protocol
    CONSOLE_TIMEOUT: float = 10.0

    def check_required(self) -> None:
        """Refuse to run without a connection string or with a weak master secret."""
        if not self.DATABASE_URL:
            raise ConfigurationError("DATABASE_URL is required")
        if not self.ENCRYPTION_KEY:
            raise ConfigurationError(
                "ENCRYPTION_KEY is required to encrypt SSH credentials and console secrets"
            )
        if len(self.ENCRYPTION_KEY) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )


settings = Settings()
