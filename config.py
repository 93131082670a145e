import os
from functools import lru_cache
from pathlib import Path

from errors import ConfigurationError


class Settings:
    def __init__(
        self,
        database_url: str,
        secret_key: str,
        session_max_age_hours: int,
        storage_dir: Path,
        public_base_url: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.secret_key = secret_key
        self.session_max_age_hours = session_max_age_hours
        self.storage_dir = storage_dir
        self.public_base_url = public_base_url
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f1c9a0d2b7e48a6c5d4e3f2a1b0c9d8e7f6a5b4c3d2e1f0a9b8c7d6e5f4a3b2",
    )
    if not database_url.strip():
        raise ConfigurationError("FINANCE_DATABASE_URL is empty")
    if not secret_key.strip():
        raise ConfigurationError("FINANCE_SECRET_KEY is empty")

    raw_max_age = os.getenv("FINANCE_SESSION_MAX_AGE_HOURS", "24")
    try:
        session_max_age_hours = int(raw_max_age)
    except ValueError as exc:
        raise ConfigurationError(
            f"FINANCE_SESSION_MAX_AGE_HOURS must be an integer, got {raw_max_age!r}"
        ) from exc

    storage_dir = Path(
        os.getenv("FINANCE_STORAGE_DIR", str(data_dir / "storage"))
    ).resolve()
    public_base_url = os.getenv("FINANCE_PUBLIC_BASE_URL", "/storage").rstrip("/")
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        session_max_age_hours=session_max_age_hours,
        storage_dir=storage_dir,
        public_base_url=public_base_url,
        log_level=log_level,
    )
