import os
from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings(BaseModel):
    """Background job settings, read from the environment (or .env)"""

    use_cache: bool = True
    use_db: bool = True
    table_name: str = "e_background_job"
    check_and_create_table: bool = True
    cache_prefix: str = "BackJob-"
    user_agent: str = "backjob/1.0"

    # Seconds without an update before a read marks the job as failed
    error_timeout: int = 120

    # Retention in days, 0 disables the window
    backlog_days: int = 30
    all_backlog_days: int = 60

    secret_key: str = ""

    connect_timeout: float = 1.0
    linger_seconds: float = 1.0
    verify_tls: bool = True

    database_url: str = "sqlite:///./jobs.db"
    redis_url: str = "redis://localhost:6379/0"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            use_cache=_flag("BACKJOB_USE_CACHE", "true"),
            use_db=_flag("BACKJOB_USE_DB", "true"),
            table_name=os.getenv("BACKJOB_TABLE_NAME", "e_background_job"),
            check_and_create_table=_flag("BACKJOB_CREATE_TABLE", "true"),
            cache_prefix=os.getenv("BACKJOB_CACHE_PREFIX", "BackJob-"),
            user_agent=os.getenv("BACKJOB_USER_AGENT", "backjob/1.0"),
            error_timeout=int(os.getenv("BACKJOB_ERROR_TIMEOUT", "120")),
            backlog_days=int(os.getenv("BACKJOB_BACKLOG_DAYS", "30")),
            all_backlog_days=int(os.getenv("BACKJOB_ALL_BACKLOG_DAYS", "60")),
            secret_key=os.getenv("BACKJOB_SECRET_KEY", ""),
            connect_timeout=float(os.getenv("BACKJOB_CONNECT_TIMEOUT", "1.0")),
            linger_seconds=float(os.getenv("BACKJOB_LINGER_SECONDS", "1.0")),
            verify_tls=_flag("BACKJOB_VERIFY_TLS", "true"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./jobs.db"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        )


settings = Settings.from_env()
