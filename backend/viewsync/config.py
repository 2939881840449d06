from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # PostgreSQL: sync metadata and the synced tables themselves
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "warehouse"
    postgres_user: str = "warehouse"
    postgres_password: str = ""

    # Schema that holds the synced tables ("" = unqualified)
    etl_schema: str = "etl"

    # SQL Server sources: each name NAME reads DB_NAME_SERVER, DB_NAME_DATABASE,
    # DB_NAME_USER, DB_NAME_PASSWORD and optionally DB_NAME_PORT
    source_databases: List[str] = []
    mssql_driver: str = "ODBC Driver 18 for SQL Server"
    mssql_connect_timeout: int = 15
    default_source_schema: str = "dbo"

    # Only these views may be synced, inspected or read back
    allowed_views: List[str] = []

    sync_batch_size: int = 5_000
    stale_sync_minutes: int = 60
    sync_log_limit: int = 50

    # Daily full sync of every allowed view on every registered source
    scheduled_sync_enabled: bool = False
    scheduled_sync_hour: int = 0
    scheduled_sync_minute: int = 0

    # CORS
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def etl_schema_name(self) -> str | None:
        return self.etl_schema or None


settings = Settings()
