import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        cron_secret: Optional[str],
        scheduler_enabled: bool,
        scheduler_hour: int,
        scheduler_minute: int,
        run_budget_secs: Optional[float],
        max_periods_per_rule: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.cron_secret = cron_secret
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.run_budget_secs = run_budget_secs
        self.max_periods_per_rule = max_periods_per_rule
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "EXPENSES_CSRF_SECRET",
        "ebf511a733bdc213d6ccc715d338ad1c05bef4ad0ab32bb7eb60bb90f382380a",
    )
    cron_secret = os.getenv("EXPENSES_CRON_SECRET") or None
    budget_raw = os.getenv("EXPENSES_RUN_BUDGET_SECS")
    run_budget_secs = float(budget_raw) if budget_raw else None
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        cron_secret=cron_secret,
        scheduler_enabled=_env_flag("EXPENSES_SCHEDULER_ENABLED", True),
        scheduler_hour=int(os.getenv("EXPENSES_SCHEDULER_HOUR", "3")),
        scheduler_minute=int(os.getenv("EXPENSES_SCHEDULER_MINUTE", "15")),
        run_budget_secs=run_budget_secs,
        max_periods_per_rule=int(os.getenv("EXPENSES_MAX_PERIODS_PER_RULE", "1000")),
        log_level=os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper(),
    )
