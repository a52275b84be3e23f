import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        token_max_age_hours: int,
        log_level: str,
        serialize_budget_writes: bool,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level
        self.serialize_budget_writes = serialize_budget_writes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDWISE_DATA_DIR", "./data")).resolve()
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
    default_db = data_dir / "spendwise.db"
    database_url = os.getenv("SPENDWISE_DATABASE_URL", f"sqlite:///{default_db}")
    token_secret = os.getenv(
        "SPENDWISE_TOKEN_SECRET",
        "5f0c2d9e8b1a4f7c6e3d2b1a0f9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e",
    )
    token_max_age_hours = int(os.getenv("SPENDWISE_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("SPENDWISE_LOG_LEVEL", "INFO").upper()
    serialize_budget_writes = _env_flag("SPENDWISE_SERIALIZE_BUDGET_WRITES", True)
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
        serialize_budget_writes=serialize_budget_writes,
    )
