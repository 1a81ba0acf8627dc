import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        app_url: str,
        super_admin_emails: frozenset[str],
        environment: str,
        enable_scheduler: bool,
        invite_expiry_days: int,
        trial_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.app_url = app_url
        self.super_admin_emails = super_admin_emails
        self.environment = environment
        self.enable_scheduler = enable_scheduler
        self.invite_expiry_days = invite_expiry_days
        self.trial_days = trial_days

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HIVEBUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_emails(raw: str) -> frozenset[str]:
    return frozenset(
        part.strip().lower() for part in raw.split(",") if part.strip()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "hivebudget.db"
    database_url = os.getenv("HIVEBUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HIVEBUDGET_TIMEZONE", "America/Sao_Paulo")
    secret_key = os.getenv(
        "HIVEBUDGET_SECRET_KEY",
        "5d0c1f0a9e7b4b3c8a2e6f1d7c9b0a4e3f2d1c0b9a8e7f6d5c4b3a2918f7e6d5",
    )
    token_max_age_hours = int(os.getenv("HIVEBUDGET_TOKEN_MAX_AGE_HOURS", "720"))
    app_url = os.getenv("HIVEBUDGET_APP_URL", "http://localhost:8000").rstrip("/")
    super_admin_emails = _parse_emails(os.getenv("HIVEBUDGET_SUPER_ADMIN_EMAILS", ""))
    environment = os.getenv("HIVEBUDGET_ENVIRONMENT", "development").lower()
    enable_scheduler = os.getenv("HIVEBUDGET_ENABLE_SCHEDULER", "1") not in {
        "0",
        "false",
        "no",
    }
    invite_expiry_days = int(os.getenv("HIVEBUDGET_INVITE_EXPIRY_DAYS", "7"))
    trial_days = int(os.getenv("HIVEBUDGET_TRIAL_DAYS", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        app_url=app_url,
        super_admin_emails=super_admin_emails,
        environment=environment,
        enable_scheduler=enable_scheduler,
        invite_expiry_days=invite_expiry_days,
        trial_days=trial_days,
    )
