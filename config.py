import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        version_history_limit: int,
        budget_thresholds: tuple[int, ...],
        scheduler_enabled: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.version_history_limit = version_history_limit
        self.budget_thresholds = budget_thresholds
        self.scheduler_enabled = scheduler_enabled
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_thresholds(raw: str) -> tuple[int, ...]:
    values = sorted({int(part) for part in raw.split(",") if part.strip()}, reverse=True)
    if not values or any(v <= 0 for v in values):
        raise ValueError(f"Invalid budget thresholds: {raw!r}")
    return tuple(values)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    version_history_limit = int(os.getenv("LEDGER_VERSION_HISTORY_LIMIT", "50"))
    budget_thresholds = _parse_thresholds(
        os.getenv("LEDGER_BUDGET_THRESHOLDS", "100,80,50")
    )
    scheduler_enabled = _parse_bool(os.getenv("LEDGER_SCHEDULER_ENABLED", "true"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        version_history_limit=version_history_limit,
        budget_thresholds=budget_thresholds,
        scheduler_enabled=scheduler_enabled,
        log_level=log_level,
    )
