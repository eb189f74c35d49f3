from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Database
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    sql_echo: bool = Field(default=False, alias="SQL_ECHO")
    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    # Development mode flag for local-only conveniences (demo seeding, verbose CLI output)
    development_mode: bool = Field(default=False, alias="DEVELOPMENT_MODE")
    # Semantic version assigned to newly created TreeFlows
    default_flow_version: str = Field(default="1.0.0", alias="DEFAULT_FLOW_VERSION")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def sqlalchemy_database_url(self) -> str:
        """URL handed to ``create_engine``; a local SQLite file when DATABASE_URL is unset.

        Default: sqlite+pysqlite:///./treeflow.db
        """
        if self.database_url and self.database_url.strip():
            return self.database_url
        return "sqlite+pysqlite:///./treeflow.db"

    @property
    def is_sqlite(self) -> bool:
        return self.sqlalchemy_database_url.startswith("sqlite")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def is_development_mode() -> bool:
    """True only when DEVELOPMENT_MODE=true; gates demo seeding."""
    return get_settings().development_mode
