import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_cookie: str,
        session_max_age_hours: int,
        log_level: str,
        max_report_buckets: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_cookie = session_cookie
        self.session_max_age_hours = session_max_age_hours
        self.log_level = log_level
        self.max_report_buckets = max_report_buckets


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MOVEMENTS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("MOVEMENTS_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "movements.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("MOVEMENTS_TIMEZONE", "UTC")
    session_secret = os.getenv(
        "MOVEMENTS_SESSION_SECRET",
        "3f9c1d7be0a24f6e8e51c2a7d96b04f1c8a5e3b27d6f490a1be8c3d5f7a2e916",
    )
    session_cookie = os.getenv("MOVEMENTS_SESSION_COOKIE", "movements_session")
    session_max_age_hours = int(os.getenv("MOVEMENTS_SESSION_MAX_AGE_HOURS", "168"))
    log_level = os.getenv("MOVEMENTS_LOG_LEVEL", "INFO").upper()
    max_report_buckets = int(os.getenv("MOVEMENTS_MAX_REPORT_BUCKETS", "2000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_cookie=session_cookie,
        session_max_age_hours=session_max_age_hours,
        log_level=log_level,
        max_report_buckets=max_report_buckets,
    )
