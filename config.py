import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        horizon_months: int,
        default_user_id: str,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.horizon_months = horizon_months
        self.default_user_id = default_user_id
        self.busy_timeout_ms = busy_timeout_ms


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    horizon_months = int(os.getenv("BUDGET_HORIZON_MONTHS", "12"))
    if horizon_months < 0:
        raise ValueError("BUDGET_HORIZON_MONTHS must not be negative")
    default_user_id = os.getenv("BUDGET_DEFAULT_USER_ID", "local")
    busy_timeout_ms = int(os.getenv("BUDGET_DB_BUSY_TIMEOUT_MS", "5000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        horizon_months=horizon_months,
        default_user_id=default_user_id,
        busy_timeout_ms=busy_timeout_ms,
    )
