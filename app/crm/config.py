import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    csrf_enabled: bool
    tasks_per_page: int
    leads_per_page: int

    admin_email: str
    admin_password: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")
    if value < 1:
        raise RuntimeError(f"{name} must be >= 1 (got {value}).")
    return value


def load_settings() -> Settings:
    env = _getenv("ENV", "development")
    csrf_raw = _getenv("CSRF_ENABLED")
    if csrf_raw:
        csrf_enabled = csrf_raw.lower() in ("1", "true", "yes", "on")
    else:
        csrf_enabled = env != "test"
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///crm.db"),
        csrf_enabled=csrf_enabled,
        tasks_per_page=_getenv_int("TASKS_PER_PAGE", 25),
        leads_per_page=_getenv_int("LEADS_PER_PAGE", 50),
        admin_email=_getenv("ADMIN_EMAIL", "admin@salescrm.local").lower(),
        admin_password=os.environ.get("ADMIN_PASSWORD") or "change-me",
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "CSRF_ENABLED": s.csrf_enabled,
        "TASKS_PER_PAGE": s.tasks_per_page,
        "LEADS_PER_PAGE": s.leads_per_page,
        "ADMIN_EMAIL": s.admin_email,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
