import os
from functools import lru_cache
from pathlib import Path


STORAGE_BACKENDS = ("sqlite", "json")


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        storage_backend: str,
        timezone: str,
        scheduler_enabled: bool,
        log_level: str,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.storage_backend = storage_backend
        self.timezone = timezone
        self.scheduler_enabled = scheduler_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYMAP_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "money-map.db"
    database_url = os.getenv("MONEYMAP_DATABASE_URL", f"sqlite:///{default_db}")
    storage_backend = os.getenv("MONEYMAP_STORAGE", "sqlite").strip().lower()
    if storage_backend not in STORAGE_BACKENDS:
        raise ValueError(
            f"MONEYMAP_STORAGE must be one of {', '.join(STORAGE_BACKENDS)}"
        )
    timezone = os.getenv("MONEYMAP_TIMEZONE", "UTC")
    scheduler_enabled = _env_flag("MONEYMAP_SCHEDULER_ENABLED", "true")
    log_level = os.getenv("MONEYMAP_LOG_LEVEL", "INFO").upper()
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        storage_backend=storage_backend,
        timezone=timezone,
        scheduler_enabled=scheduler_enabled,
        log_level=log_level,
    )
