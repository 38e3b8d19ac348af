"""
FeedRelay Configuration System
==============================

Configuration management with environment variables and Pydantic models.
Environment variables override Field defaults; nested sections use the
FEEDRELAY_<SECTION>__<FIELD> form.
"""

import json
import os
from pathlib import Path
from typing import List, Dict, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from ..database.models import FeedConfig
from ..utils.exceptions import ConfigurationError, ErrorCode


class LogLevel(str, Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ProcessingSettings(BaseModel):
    """Pipeline behaviour."""
    parallel_feeds: int = Field(default=5, ge=1, le=50, description="Concurrent feed fetches")
    max_items_per_run: Optional[int] = Field(default=None, ge=1, description="Stop accepting new items after this many per run")
    analysis_enabled: bool = Field(default=True, description="Run AI analysis on new items")
    publish_without_analysis: bool = Field(default=False, description="Publish items whose analysis failed or was disabled")
    pending_backlog_limit: int = Field(default=20, ge=0, le=500, description="Previously stored items to (re)analyze per run")
    backoff_enabled: bool = Field(default=True, description="Skip feeds while their failure backoff is active")
    max_analysis_failures: int = Field(default=3, ge=1, le=20, description="Failed analyses after which a backlog item is no longer retried")


class LimitsSettings(BaseModel):
    """Timeouts and backoff bounds."""
    request_timeout: int = Field(default=30, ge=1, le=300, description="Feed request timeout in seconds")
    base_backoff_seconds: int = Field(default=60, ge=1, description="First failure backoff")
    max_backoff_seconds: int = Field(default=900, ge=1, description="Backoff ceiling")


class CacheSettings(BaseModel):
    """Fetch cache configuration."""
    enabled: bool = Field(default=True, description="Use the fetch cache")
    directory: str = Field(default="data/cache", description="Cache directory")
    default_ttl: int = Field(default=300, ge=0, description="TTL applied when a feed sets none")


class DatabaseSettings(BaseModel):
    """Database configuration."""
    path: str = Field(default="data/feedrelay.db", description="SQLite database file path")
    pool_size: int = Field(default=5, ge=1, le=20, description="Connection pool size")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Global log level")
    file_path: Optional[str] = Field(default="logs/feedrelay.log", description="Log file path")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of log backup files")
    structured_logging: bool = Field(default=False, description="Use structured JSON logging")
    console_logging: bool = Field(default=True, description="Enable console logging")


class TelegramSettings(BaseModel):
    """Telegram delivery configuration."""
    bot_token: str = Field(..., description="Telegram bot token")
    targets: Dict[str, str] = Field(
        default_factory=dict,
        description="Publication targets: name -> chat id or @channel",
    )
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per (item, target) before giving up")
    message_delay_seconds: float = Field(default=0.5, ge=0.0, le=10.0, description="Delay between consecutive sends")
    claim_timeout_seconds: int = Field(default=300, ge=10, description="Age after which an in-flight send claim is considered stale")
    disable_web_page_preview: bool = Field(default=False)

    @field_validator('bot_token')
    @classmethod
    def validate_bot_token(cls, v):
        """Validate bot token format."""
        if not v or not isinstance(v, str):
            raise ValueError("Bot token is required")

        # Test tokens are accepted as-is
        if v.endswith('_test'):
            return v

        if not v.count(':') == 1 or len(v) < 20:
            raise ValueError("Invalid bot token format")

        return v


class AISettings(BaseModel):
    """AI analysis configuration."""
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API key")
    base_url: str = Field(default="https://openrouter.ai/api/v1", description="OpenAI-compatible endpoint")
    models: List[str] = Field(
        default=[
            "deepseek/deepseek-chat-v3.1:free",
            "meta-llama/llama-3.3-70b-instruct:free",
            "mistralai/mistral-7b-instruct:free",
        ],
        description="Fallback chain in priority order",
    )
    purpose: str = Field(default="summary", description="Analysis purpose recorded with each result")
    prompt_id: str = Field(default="default", description="System prompt identifier")
    prompts_dir: str = Field(default="prompts", description="Directory with <prompt_id>.txt files")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1500, ge=50, le=8000)
    request_timeout: int = Field(default=60, ge=1, le=600, description="Per-model request timeout in seconds")
    retry_delay_seconds: float = Field(default=1.0, ge=0.0, description="Delay before the first fallback attempt")
    max_retry_delay_seconds: float = Field(default=30.0, ge=0.0)
    max_concurrent_requests: int = Field(default=3, ge=1, le=20)

    @field_validator('models')
    @classmethod
    def validate_models(cls, v):
        """Drop blanks and duplicates while keeping priority order."""
        seen = set()
        ordered = []
        for model in v:
            model = model.strip()
            if model and model not in seen:
                seen.add(model)
                ordered.append(model)
        return ordered


class FeedRelaySettings(BaseSettings):
    """Main application settings."""

    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telegram: TelegramSettings
    ai: AISettings = Field(default_factory=AISettings)

    feeds: List[FeedConfig] = Field(default_factory=list, description="Feed sources in processing order")
    feeds_file: Optional[str] = Field(default=None, description="JSON file with a list of feed configs")

    app_name: str = Field(default="FeedRelay", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "env_prefix": "FEEDRELAY_",
        "extra": "ignore",
    }

    def get_feed_configs(self) -> List[FeedConfig]:
        """Feeds from settings followed by feeds_file entries, first id wins."""
        feeds = list(self.feeds)
        if self.feeds_file:
            feeds.extend(load_feed_configs(self.feeds_file))

        unique: Dict[int, FeedConfig] = {}
        for feed in feeds:
            unique.setdefault(feed.id, feed)
        return list(unique.values())

    def validate_configuration(self) -> None:
        """Validate complete configuration."""
        errors = []

        if self.processing.analysis_enabled:
            if not self.ai.models:
                errors.append("AI analysis enabled but no models configured")
            if not self.ai.openrouter_api_key:
                errors.append("AI analysis enabled but FEEDRELAY_AI__OPENROUTER_API_KEY is missing")

        if not self.telegram.targets:
            errors.append("No publication targets configured (FEEDRELAY_TELEGRAM__TARGETS)")

        try:
            feeds = self.get_feed_configs()
            if not feeds:
                errors.append("No feeds configured")
        except ConfigurationError as e:
            errors.append(str(e))

        for label, path in (("database path", self.database.path), ("cache directory", self.cache.directory)):
            try:
                target = Path(path)
                (target if label == "cache directory" else target.parent).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Invalid {label}: {e}")

        if self.logging.file_path:
            try:
                Path(self.logging.file_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Invalid log file path: {e}")

        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                error_code=ErrorCode.CONFIG_INVALID
            )

    def is_production_mode(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and os.getenv("ENV", "development").lower() == "production"

    def get_effective_log_level(self) -> str:
        """Get effective log level considering debug mode."""
        if self.debug:
            return "DEBUG"
        return self.logging.level.value


def load_feed_configs(path: str) -> List[FeedConfig]:
    """Read a JSON list of feed configs.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    feeds_path = Path(path)
    try:
        raw = json.loads(feeds_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(
            f"Feeds file not found: {path}",
            config_key="feeds_file",
            error_code=ErrorCode.CONFIG_MISSING,
        )
    except ValueError as e:
        raise ConfigurationError(
            f"Feeds file is not valid JSON: {e}",
            config_key="feeds_file",
            error_code=ErrorCode.CONFIG_PARSE_ERROR,
        )

    if isinstance(raw, dict):
        raw = raw.get("feeds", [])
    if not isinstance(raw, list):
        raise ConfigurationError(
            "Feeds file must contain a list of feeds",
            config_key="feeds_file",
            error_code=ErrorCode.CONFIG_PARSE_ERROR,
        )

    try:
        return [FeedConfig(**entry) for entry in raw]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid feed entry in {path}: {e}",
            config_key="feeds_file",
            error_code=ErrorCode.CONFIG_INVALID,
        )


def load_settings(validate: bool = True) -> FeedRelaySettings:
    """Load settings from environment variables and defaults.

    Returns:
        Loaded and validated settings

    Raises:
        ConfigurationError: If configuration is invalid
    """
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = FeedRelaySettings()

        if validate:
            settings.validate_configuration()

        return settings

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to initialize settings: {e}",
            error_code=ErrorCode.CONFIG_INVALID
        )


# Global settings instance
_settings: Optional[FeedRelaySettings] = None


def get_settings(reload: bool = False) -> FeedRelaySettings:
    """Get global settings instance (singleton pattern).

    The singleton is loaded without full validation so that tooling such as
    check-config can report problems instead of failing on import.
    """
    global _settings

    if _settings is None or reload:
        _settings = load_settings(validate=False)

    return _settings
