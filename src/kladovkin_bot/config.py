import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

DEFAULT_SCRAPE_URL = "https://kladovkin.ru/"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# env var -> AppConfig field
ENV_OVERRIDES: Dict[str, str] = {
    "TELEGRAM_BOT_TOKEN": "bot_token",
    "ADMIN_CHAT_ID": "admin_chat_id",
    "SCRAPE_URL": "scrape_url",
    "HTTP_TIMEOUT": "http_timeout",
    "SCRAPE_INTERVAL": "scrape_interval",
    "NOTIFY_INTERVAL": "notify_interval",
    "NOTIFICATION_COOLDOWN": "notification_cooldown",
    "FAILURE_ALERT_THRESHOLD": "failure_alert_threshold",
    "LOG_LEVEL": "log_level",
}


class AppConfig(BaseModel):
    """Application configuration"""

    bot_token: str = Field(description="Telegram Bot Token")

    admin_chat_id: Optional[int] = Field(
        default=None,
        description="Admin chat ID for receiving alerts"
    )

    # Scraper
    scrape_url: str = Field(
        default=DEFAULT_SCRAPE_URL,
        description="Listing page with storage units"
    )
    http_timeout: float = Field(
        default=10.0,
        gt=0,
        description="HTTP timeout in seconds"
    )
    scrape_interval: int = Field(
        default=3600,
        gt=0,
        description="Scrape interval in seconds"
    )

    # Notifier
    notify_interval: int = Field(
        default=3600,
        gt=0,
        description="Notification cycle interval in seconds"
    )
    notification_cooldown: int = Field(
        default=24 * 3600,
        gt=0,
        description="Minimum seconds between two notifications to one user"
    )

    failure_alert_threshold: int = Field(
        default=5,
        gt=0,
        description="Consecutive task failures before alerting the admin"
    )

    log_level: str = Field(
        default="INFO",
        description="Log level: DEBUG, INFO, WARNING or ERROR"
    )

    @field_validator("bot_token")
    @classmethod
    def check_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("bot_token must not be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"invalid log level: {value}")
        return value

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)

    def masked_token(self) -> str:
        if len(self.bot_token) <= 15:
            return "********"
        return f"{self.bot_token[:10]}...{self.bot_token[-5:]}"


class ConfigManager:
    """Manages application configuration"""

    CONFIG_FILE = "config.json"
    DB_FILE = "data.db"
    LOG_DIR = "logs"

    def __init__(self, config_dir: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        # Default to current working directory
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()
        self.config_path = self.config_dir / self.CONFIG_FILE
        self.db_path = self.config_dir / self.DB_FILE
        self.log_dir = self.config_dir / self.LOG_DIR
        self.environ = os.environ if environ is None else environ

    def ensure_config_dir(self) -> None:
        """Ensure config directory exists"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_raw(self) -> dict:
        """Load raw configuration as dict, empty if the file is missing"""
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self.config_path} is not valid JSON: {e}") from e

    def _env_values(self) -> dict:
        values = {}
        for env_name, field_name in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value is not None and value != "":
                values[field_name] = value
        return values

    def load(self) -> AppConfig:
        """Load configuration from file, environment variables take precedence"""
        data = self.load_raw()
        data.update(self._env_values())
        if "bot_token" not in data:
            raise ConfigError(
                f"bot_token is not configured: set TELEGRAM_BOT_TOKEN or run 'kladovkin-bot init' ({self.config_path})"
            )
        try:
            return AppConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid configuration: {e}") from e

    def save(self, config: AppConfig) -> None:
        """Save configuration to file"""
        self.ensure_config_dir()
        with open(self.config_path, "w", encoding="utf-8") as f:
            # Only save non-None fields
            data = config.model_dump(exclude_none=True)
            json.dump(data, f, indent=2, ensure_ascii=False)

    def exists(self) -> bool:
        """Check if configuration file exists"""
        return self.config_path.exists()

    def get_db_path(self) -> Path:
        """Get database file path"""
        self.ensure_config_dir()
        return self.db_path
