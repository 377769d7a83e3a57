from typing import Optional
from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    host: str = Field(default="localhost", alias="POSTGRES_HOST")
    port: int = Field(default=5432, alias="POSTGRES_DB_PORT")
    db_name: str = Field(default="quizwave", alias="POSTGRES_DB_NAME")
    user: str = Field(default="postgres", alias="POSTGRES_DB_USER")
    password: str = Field(default="postgres", alias="POSTGRES_DB_PASSWORD")
    # Full URL override, e.g. sqlite+aiosqlite:///./quiz.db for local runs
    url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    @computed_field
    def connection_string(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"


class JWTSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    audience: str = Field(default="quizwave", alias="JWT_AUDIENCE")
    token_lifetime_seconds: int = Field(
        default=3600, alias="JWT_TOKEN_LIFETIME_SECONDS"
    )


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    name: str = Field(default="quizwave", alias="APP_NAME")
    version: str = Field(default="v1", alias="API_VERSION")
    port: int = Field(default=9000, alias="APP_PORT")
    mode: str = Field(default="prod", alias="MODE")
    jwt_secret: str = Field(alias="JWT_SECRET")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"], alias="CORS_ORIGINS"
    )

    @computed_field
    def is_production(self) -> bool:
        return self.mode != "dev"

    @computed_field
    def is_testing(self) -> bool:
        return self.mode == "test"


class QuizSessionSettings(BaseSettings):
    """Knobs for code allocation, storage retries and retention."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )
    retention_days: float = Field(default=2, alias="QUIZ_RETENTION_DAYS")
    cleanup_interval_hours: float = Field(
        default=24, alias="QUIZ_CLEANUP_INTERVAL_HOURS"
    )
    cleanup_enabled: bool = Field(default=True, alias="QUIZ_CLEANUP_ENABLED")
    pin_random_attempts: int = Field(default=10, alias="QUIZ_PIN_RANDOM_ATTEMPTS")
    pin_insert_retries: int = Field(default=5, alias="QUIZ_PIN_INSERT_RETRIES")
    storage_timeout_sec: float = Field(default=5.0, alias="QUIZ_STORAGE_TIMEOUT_SEC")
    storage_retries: int = Field(default=3, alias="QUIZ_STORAGE_RETRIES")
    retry_backoff_ms: int = Field(default=100, alias="QUIZ_RETRY_BACKOFF_MS")
    session_list_limit: int = Field(default=50, alias="QUIZ_SESSION_LIST_LIMIT")
    send_timeout_sec: float = Field(default=2.0, alias="QUIZ_SEND_TIMEOUT_SEC")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=lambda: AppSettings())
    postgres: PostgresSettings = Field(default_factory=lambda: PostgresSettings())
    jwt: JWTSettings = Field(default_factory=lambda: JWTSettings())
    quiz: QuizSessionSettings = Field(default_factory=lambda: QuizSessionSettings())


settings = Settings()
