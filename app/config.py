from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres (durable message store). Unset means in-memory messages only.
    DATABASE_URL: str | None = None

    # Redis (presence + cache). Unset means in-process presence and cache.
    REDIS_URL: str | None = None
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # Auth collaborator
    JWT_SECRET: str | None = None
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str | None = None
    ALLOW_UNVERIFIED_SOCKET_IDENTITY: bool = True

    # Fernet key for message content. Unset means content is stored as given.
    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # PRESENCE / DELIVERY
    # =================================================================
    PRESENCE_TTL_SECONDS: int = 60
    HEARTBEAT_INTERVAL_SECONDS: int = 30
    PRESENCE_SWEEP_INTERVAL_SECONDS: int = 60
    DELIVERY_COALESCE_MS: int = 50

    MESSAGE_STORE_FALLBACK_ENABLED: bool = True

    # =================================================================
    # CACHE TTLs (seconds)
    # =================================================================
    CACHE_TTL_USER_PROFILE: int = 300
    CACHE_TTL_USER_MATCHES: int = 180
    CACHE_TTL_CONVERSATION: int = 600
    CONVERSATION_CACHE_ENABLED: bool = False

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config

    def delivery_coalesce_seconds(self) -> float:
        return max(0, self.DELIVERY_COALESCE_MS) / 1000.0


settings = Settings()
