"""
Helpdesk Engine Configuration Settings
"""
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default value"""
    return os.getenv(key, default)


def get_env_int(key: str, default: int = 0) -> int:
    """Get environment variable as integer"""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get environment variable as float"""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean"""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


@dataclass
class StoreSettings:
    """Ticket store configuration settings"""

    # "memory" or "sql"
    backend: str = field(default_factory=lambda: get_env("STORE_BACKEND", "memory"))

    database_url: str = field(default_factory=lambda: get_env("DATABASE_URL", "sqlite+aiosqlite:///./helpdesk.db"))
    database_echo: bool = field(default_factory=lambda: get_env_bool("DATABASE_ECHO", False))
    database_pool_timeout: float = field(default_factory=lambda: get_env_float("DATABASE_POOL_TIMEOUT", 30.0))


@dataclass
class EngineSettings:
    """Lifecycle engine configuration settings"""

    transaction_attempts: int = field(default_factory=lambda: get_env_int("ENGINE_TRANSACTION_ATTEMPTS", 3))
    retry_backoff: float = field(default_factory=lambda: get_env_float("ENGINE_RETRY_BACKOFF", 0.05))

    # Resolution time measured from "created" or from the last "reopened"
    resolution_baseline: str = field(default_factory=lambda: get_env("ENGINE_RESOLUTION_BASELINE", "created"))


@dataclass
class AppSettings:
    """Application configuration settings"""

    app_name: str = field(default_factory=lambda: get_env("APP_NAME", "Helpdesk Engine"))
    app_version: str = field(default_factory=lambda: get_env("APP_VERSION", "0.1.0"))
    debug: bool = field(default_factory=lambda: get_env_bool("DEBUG", False))
    log_level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))


@dataclass
class Settings:
    """Main settings class that combines all configuration sections"""

    store: StoreSettings = field(default_factory=StoreSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    app: AppSettings = field(default_factory=AppSettings)


# Load .env file if it exists
load_dotenv()

# Global settings instance
settings = Settings()
