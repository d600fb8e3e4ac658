import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        import_max_bytes: int,
        import_sample_limit: int,
        max_series_months: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.import_max_bytes = import_max_bytes
        self.import_sample_limit = import_sample_limit
        self.max_series_months = max_series_months


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    import_max_bytes = int(os.getenv("LEDGER_IMPORT_MAX_BYTES", str(5 * 1024 * 1024)))
    import_sample_limit = int(os.getenv("LEDGER_IMPORT_SAMPLE_LIMIT", "25"))
    max_series_months = int(os.getenv("LEDGER_MAX_SERIES_MONTHS", "600"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        import_max_bytes=import_max_bytes,
        import_sample_limit=import_sample_limit,
        max_series_months=max_series_months,
    )
