"""
Service configuration management.

Handles loading, saving, and validating the auto-print service configuration.
Configuration is a single JSON document loaded once at startup; secrets
(API key, SMTP credentials) only ever come from the environment.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import ClassVar, Optional, Dict, List, Any, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

PRINT_MODES = ("local", "email")
LAYOUTS = ("csv", "text")


class ConfigError(Exception):
    """Raised when the configuration cannot be used to run the service."""
    pass


def get_data_dir() -> Path:
    """Get the data directory for service files."""
    data_dir = os.environ.get('AUTOPRINT_DATA_DIR')
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".autoprint"


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get('AUTOPRINT_LOG_DIR'):
        return str(Path(os.environ['AUTOPRINT_LOG_DIR']).expanduser() / "autoprint.log")
    return str(get_data_dir() / "logs" / "autoprint.log")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class RetryConfig:
    """Job retry and backoff configuration."""
    max_attempts: int = 3
    base_delay_minutes: float = 5


@dataclass
class CacheConfig:
    """API response cache configuration."""
    fresh_ttl_seconds: int = 300
    stale_ttl_seconds: int = 3600
    max_entries: int = 1000
    # Attendee lists change close to event time, so they expire sooner
    attendees_fresh_ttl_seconds: int = 120
    attendees_stale_ttl_seconds: int = 1800
    cleanup_interval_minutes: int = 5


@dataclass
class BreakerConfig:
    """Circuit breaker configuration for the remote API."""
    threshold: int = 5
    success_threshold: int = 2
    timeout_ms: int = 60000


@dataclass
class ApiConfig:
    """Remote event API configuration."""
    base_url: str = None
    timeout_seconds: float = None
    page_size: int = 100
    page_delay_seconds: float = 1.0

    def __post_init__(self):
        if self.base_url is None:
            self.base_url = os.environ.get('AUTOPRINT_API_BASE_URL', 'https://api.helloclub.com')
        if self.timeout_seconds is None:
            self.timeout_seconds = float(os.environ.get('AUTOPRINT_API_TIMEOUT', 30))

    @property
    def api_key(self) -> Optional[str]:
        """API key is read from the environment only, never from the config file."""
        return os.environ.get('AUTOPRINT_API_KEY')


@dataclass
class DatabaseConfig:
    """Event store configuration."""
    path: str = None
    cleanup_days: int = 30
    busy_retries: int = 3
    busy_base_delay_ms: int = 100

    def __post_init__(self):
        if self.path is None:
            self.path = str(get_data_dir() / "events.db")


@dataclass
class MemoryConfig:
    """Memory monitor configuration."""
    interval_minutes: float = 5
    history_size: int = 10
    rss_warning_mb: float = 400
    leak_growth_mb: float = 50


@dataclass
class DeliveryConfig:
    """Document delivery configuration."""
    # Resolved from the environment and never written back to the config file
    ENV_FIELDS: ClassVar[Tuple[str, ...]] = ('smtp_host', 'smtp_port', 'smtp_user', 'email_from', 'printer_email')

    print_command: str = "lp {path}"
    print_timeout_seconds: int = 120
    smtp_host: str = field(default_factory=lambda: os.environ.get('SMTP_HOST', 'smtp.gmail.com'))
    smtp_port: int = field(default_factory=lambda: int(os.environ.get('SMTP_PORT', 587)))
    smtp_user: Optional[str] = field(default_factory=lambda: os.environ.get('SMTP_USER'))
    email_from: Optional[str] = field(
        default_factory=lambda: os.environ.get('EMAIL_FROM') or os.environ.get('SMTP_USER')
    )
    printer_email: Optional[str] = field(default_factory=lambda: os.environ.get('PRINTER_EMAIL'))
    smtp_timeout_seconds: int = 30

    @property
    def smtp_password(self) -> str:
        # App passwords are often pasted with spaces
        return (os.environ.get('SMTP_PASS') or '').replace(' ', '')


@dataclass
class WebhookConfig:
    """Outbound webhook notifications."""
    enabled: bool = False
    url: Optional[str] = None
    timeout_seconds: float = 10
    max_retries: int = 2
    retry_delay_seconds: float = 2


@dataclass
class StatisticsConfig:
    """Periodic statistics summary and report file."""
    interval_minutes: float = 60
    summary_days: int = 7
    report_days: int = 30
    file: str = None

    def __post_init__(self):
        if self.file is None:
            self.file = str(get_data_dir() / "statistics.json")


class ServiceConfig:
    """
    Service configuration manager.

    Loads and manages configuration from a JSON file, with support for
    validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. AUTOPRINT_CONFIG_PATH environment variable
    3. Default: <data_dir>/config.json
    """

    SECTIONS = {
        'retry': RetryConfig,
        'cache': CacheConfig,
        'breaker': BreakerConfig,
        'api': ApiConfig,
        'database': DatabaseConfig,
        'memory': MemoryConfig,
        'delivery': DeliveryConfig,
        'webhook': WebhookConfig,
        'statistics': StatisticsConfig,
        'logging': LoggingConfig,
    }

    def __init__(self, config_path: Optional[str] = None, **overrides):
        """
        Initialize service configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            **overrides: Top-level values applied after loading (mostly for tests)
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('AUTOPRINT_CONFIG_PATH'):
            self.config_path = Path(os.environ['AUTOPRINT_CONFIG_PATH']).expanduser()
        else:
            self.config_path = get_data_dir() / "config.json"

        self.fetch_window_hours: float = 24
        self.lead_offset_minutes: float = 5
        self.fetch_interval_hours: float = 1
        self.late_grace_minutes: float = 60
        self.allowed_categories: List[str] = []
        self.print_mode: str = "email"
        self.layout: str = "csv"
        self.output_dir: str = str(get_data_dir() / "output")
        self.workers: int = 5
        self.health_interval_seconds: int = 60

        self.retry = RetryConfig()
        self.cache = CacheConfig()
        self.breaker = BreakerConfig()
        self.api = ApiConfig()
        self.database = DatabaseConfig()
        self.memory = MemoryConfig()
        self.delivery = DeliveryConfig()
        self.webhook = WebhookConfig()
        self.statistics = StatisticsConfig()
        self.logging = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise ConfigError(f"Cannot read configuration {self.config_path}: {e}") from e

        self.apply(data)
        logger.info(f"Loaded configuration from {self.config_path}")

    def apply(self, data: Dict[str, Any]):
        """Apply a configuration dictionary on top of the current values."""
        for key, value in data.items():
            section_cls = self.SECTIONS.get(key)
            if section_cls is not None:
                try:
                    setattr(self, key, section_cls(**value))
                except TypeError as e:
                    raise ConfigError(f"Invalid '{key}' section: {e}") from e
            elif key in self.to_dict():
                setattr(self, key, value)
            else:
                logger.warning(f"Ignoring unknown configuration option: {key}")

    def to_dict(self) -> Dict[str, Any]:
        """Return the configuration as a JSON-serializable dictionary."""
        data = {
            'fetch_window_hours': self.fetch_window_hours,
            'lead_offset_minutes': self.lead_offset_minutes,
            'fetch_interval_hours': self.fetch_interval_hours,
            'late_grace_minutes': self.late_grace_minutes,
            'allowed_categories': list(self.allowed_categories),
            'print_mode': self.print_mode,
            'layout': self.layout,
            'output_dir': self.output_dir,
            'workers': self.workers,
            'health_interval_seconds': self.health_interval_seconds,
        }
        for name, section_cls in self.SECTIONS.items():
            section = asdict(getattr(self, name))
            for env_field in getattr(section_cls, 'ENV_FIELDS', ()):
                section.pop(env_field, None)
            data[name] = section
        return data

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for name in ('fetch_window_hours', 'lead_offset_minutes', 'fetch_interval_hours'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"'{name}' must be a positive number")

        if self.late_grace_minutes < 0:
            errors.append("'late_grace_minutes' cannot be negative")
        if self.print_mode not in PRINT_MODES:
            errors.append(f"'print_mode' must be one of {', '.join(PRINT_MODES)}")
        if self.layout not in LAYOUTS:
            errors.append(f"'layout' must be one of {', '.join(LAYOUTS)}")
        if self.workers < 1:
            errors.append("'workers' must be at least 1")

        if self.retry.max_attempts < 1:
            errors.append("'retry.max_attempts' must be at least 1")
        if self.retry.base_delay_minutes <= 0:
            errors.append("'retry.base_delay_minutes' must be positive")

        if self.cache.max_entries < 1:
            errors.append("'cache.max_entries' must be at least 1")
        if self.cache.fresh_ttl_seconds < 0:
            errors.append("'cache.fresh_ttl_seconds' cannot be negative")
        if self.cache.stale_ttl_seconds < self.cache.fresh_ttl_seconds:
            errors.append("'cache.stale_ttl_seconds' must be >= 'cache.fresh_ttl_seconds'")

        if self.breaker.threshold < 1:
            errors.append("'breaker.threshold' must be at least 1")
        if self.breaker.success_threshold < 1:
            errors.append("'breaker.success_threshold' must be at least 1")
        if self.breaker.timeout_ms <= 0:
            errors.append("'breaker.timeout_ms' must be positive")

        if self.api.timeout_seconds <= 0:
            errors.append("'api.timeout_seconds' must be positive")
        if not self.api.base_url:
            errors.append("'api.base_url' is required")
        if not self.api.api_key:
            errors.append("AUTOPRINT_API_KEY must be set")

        if self.print_mode == 'email' and not self.delivery.printer_email:
            errors.append("PRINTER_EMAIL must be set when 'print_mode' is 'email'")
        if self.print_mode == 'local' and '{path}' not in self.delivery.print_command:
            errors.append("'delivery.print_command' must contain a '{path}' placeholder")

        if self.webhook.enabled and not self.webhook.url:
            errors.append("'webhook.url' is required when webhooks are enabled")
        if self.webhook.max_retries < 0:
            errors.append("'webhook.max_retries' cannot be negative")
        if self.statistics.interval_minutes <= 0:
            errors.append("'statistics.interval_minutes' must be positive")

        return errors

    def require_valid(self):
        """Raise ConfigError if the configuration is not usable."""
        errors = self.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise ConfigError("Invalid configuration: " + "; ".join(errors))

    def __repr__(self):
        return f"ServiceConfig(path={self.config_path}, print_mode={self.print_mode})"
