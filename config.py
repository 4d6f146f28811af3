import os
from functools import lru_cache
from pathlib import Path


SOURCE_FUND_MODES = ("direct", "category")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        source_fund_mode: str,
        audit_interval_minutes: int,
        audit_auto_repair: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.source_fund_mode = source_fund_mode
        self.audit_interval_minutes = audit_interval_minutes
        self.audit_auto_repair = audit_auto_repair


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FUNDS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "funds.db"
    database_url = os.getenv("FUNDS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FUNDS_TIMEZONE", "America/Bogota")
    source_fund_mode = os.getenv("FUNDS_SOURCE_FUND_MODE", "direct").strip().lower()
    if source_fund_mode not in SOURCE_FUND_MODES:
        raise ValueError(
            f"FUNDS_SOURCE_FUND_MODE must be one of {', '.join(SOURCE_FUND_MODES)}"
        )
    audit_interval_minutes = int(os.getenv("FUNDS_AUDIT_INTERVAL_MINUTES", "60"))
    audit_auto_repair = _env_flag("FUNDS_AUDIT_AUTO_REPAIR")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        source_fund_mode=source_fund_mode,
        audit_interval_minutes=audit_interval_minutes,
        audit_auto_repair=audit_auto_repair,
    )
