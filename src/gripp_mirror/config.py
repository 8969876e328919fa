"""Configuration management for Gripp Mirror."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "ApiSettings",
    "RateLimitSettings",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "ENTITY_ORDER",
]

logger = logging.getLogger(__name__)

APP_NAME = "Gripp Mirror"
APP_AUTHOR = "Bravoure"

# API endpoint
DEFAULT_API_URL = "https://api.gripp.com/public/api3.php"

# Environment overrides
ENV_API_KEY = "GRIPP_API_KEY"
ENV_API_URL = "GRIPP_API_URL"
ENV_DB_PATH = "GRIPP_MIRROR_DB"

# Rate limiting
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_MIN_INTERVAL = 0.5  # seconds between dispatches
DEFAULT_RETRY_AFTER = 1.0  # seconds, when the remote sends no Retry-After

# Sync settings
DEFAULT_SYNC_INTERVAL = 3600  # seconds
DEFAULT_PAGE_SIZE = 250  # maximum allowed by the API
MAX_PAGE_SIZE = 250
DEFAULT_MAX_PAGES = 100  # ~25,000 rows per entity

# Entities in foreign-key order: parents before children.
ENTITY_ORDER = ("projects", "employees", "hours", "invoices", "absences")


@dataclass
class ApiSettings:
    """Remote API connection settings."""

    url: str = DEFAULT_API_URL
    token: Optional[str] = None
    timeout: int = 30  # seconds per call
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0


@dataclass
class RateLimitSettings:
    """Process-wide throttling of outbound calls."""

    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    min_interval: float = DEFAULT_MIN_INTERVAL
    default_retry_after: float = DEFAULT_RETRY_AFTER


@dataclass
class SyncSettings:
    """Sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    page_attempts: int = 3
    page_retry_base_delay: float = 2.0
    incremental: bool = True
    full_refresh_entities: list[str] = field(default_factory=list)


@dataclass
class Config:
    """Main configuration object."""

    api: ApiSettings = field(default_factory=ApiSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    db_path: Optional[str] = None
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite mirror)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults.

        Environment variables win over the file so the API key never has
        to be written to disk.
        """
        config_file = path or cls.get_config_file()
        config = cls()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        config.apply_env()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        api_data = data.pop("api", {})
        rate_data = data.pop("rate_limit", {})
        sync_data = data.pop("sync", {})

        config = cls(
            api=ApiSettings(**api_data) if api_data else ApiSettings(),
            rate_limit=RateLimitSettings(**rate_data) if rate_data else RateLimitSettings(),
            sync=SyncSettings(**sync_data) if sync_data else SyncSettings(),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )
        config.sync.page_size = max(1, min(config.sync.page_size, MAX_PAGE_SIZE))
        return config

    def apply_env(self) -> None:
        """Apply environment variable overrides."""
        token = os.getenv(ENV_API_KEY)
        if token:
            self.api.token = token
        url = os.getenv(ENV_API_URL)
        if url:
            self.api.url = url
        db_path = os.getenv(ENV_DB_PATH)
        if db_path:
            self.db_path = db_path

    def get_db_path(self) -> Path:
        """Resolve the SQLite mirror location."""
        if self.db_path:
            return Path(self.db_path)
        return self.get_data_dir() / "mirror.db"

    def save(self) -> None:
        """Save config to file (without the API token)."""
        config_file = self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data["api"]["token"] = None
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "gripp-mirror.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
