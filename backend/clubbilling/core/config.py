"""
Application settings

All configuration is read from environment variables and the project-level
``.env`` file through pydantic-settings. Values are type checked at start-up
and every field has a default that is safe for local development and tests.

Resolution order:
1. environment variables
2. ``.env`` (one directory above ``backend/``)
3. defaults declared here
"""
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    Accept either a comma separated string or a JSON style list.

    Raises:
        ValueError: for any other input type
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


def parse_int_list(v: Any) -> list[int] | Any:
    """Let ``DUNNING_BACKOFF_DAYS=1,3,7`` be written without JSON brackets."""
    if isinstance(v, str) and not v.strip().startswith("["):
        return [int(i) for i in v.split(",") if i.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "Club Billing"
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "clubbilling"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis (lifecycle notification stream)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    # Publishing runs on the billing thread right after commit.
    REDIS_CONNECT_TIMEOUT_SECONDS: float = 0.5
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 0.5
    NOTIFICATION_COOLDOWN_SECONDS: float = 30.0
    NOTIFICATION_STREAM: str = "billing_lifecycle_events"

    # GoCardless
    GOCARDLESS_ACCESS_TOKEN: str | None = None
    GOCARDLESS_ENVIRONMENT: Literal["sandbox", "live"] = "sandbox"
    GOCARDLESS_WEBHOOK_SECRET: str | None = None
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_ATTEMPTS: int = 3
    PROVIDER_BACKOFF_SECONDS: float = 1.0

    # Billing
    DEFAULT_CURRENCY: str = "GBP"
    # Fallback only; the persisted dunning policy and default_config.json win.
    DUNNING_RETRY_LIMIT: int = 3
    DUNNING_BACKOFF_DAYS: Annotated[
        list[int] | str, BeforeValidator(parse_int_list)
    ] = [1, 3, 7]

    # Scheduler
    SCHEDULER_TIMEZONE: str = "UTC"
    BILLING_SWEEP_HOUR: int = 2
    MANDATE_SYNC_INTERVAL_MINUTES: int = 60
    DUNNING_SWEEP_HOURS: str = "*/4"
    SEASONAL_INVOICE_HOUR: int = 6
    WORKER_POOL_SIZE: int = 4
    WORKER_STALE_AFTER_MINUTES: int = 6 * 60

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        Refuse the ``changethis`` placeholder outside local development.

        Raises:
            ValueError: when a placeholder secret is used in staging/production
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("GOCARDLESS_ACCESS_TOKEN", self.GOCARDLESS_ACCESS_TOKEN)
        self._check_default_secret("GOCARDLESS_WEBHOOK_SECRET", self.GOCARDLESS_WEBHOOK_SECRET)

        return self


settings = Settings()  # type: ignore
