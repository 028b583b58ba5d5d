from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    # App/Env
    ENV: str = "dev"
    APP_NAME: str = "featureflags"
    PORT: int = 8080
    CORS_ORIGINS: str = "*"  # comma list

    # Storage: "sql" (durable) or "memory" (tests / local poking)
    STORE_BACKEND: str = "sql"

    # DB
    DATABASE_URL: str = "postgresql+asyncpg://featureflags:featureflags@db:5432/featureflags"
    # sync URL used only by alembic
    DATABASE_URL_SYNC: str = "postgresql+psycopg://featureflags:featureflags@db:5432/featureflags"
    DB_AUTO_CREATE: bool = False  # dev only; alembic owns the schema

    # DB session tuning (ms)
    DB_STATEMENT_TIMEOUT_MS: int = 30000
    DB_IDLE_TX_TIMEOUT_MS: int = 60000

    # Engine
    OPERATION_TIMEOUT_S: float = 10.0
    GRAPH_LOCK_KEY: int = 7270001
    DEFAULT_ACTOR: str = "anonymous"
    AUDIT_PAGE_LIMIT: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
