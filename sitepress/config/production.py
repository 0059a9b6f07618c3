"""Production configuration management for the site export service.

- Environment-based configuration loading
- Hard numeric ceilings that callers cannot raise
- Extraction timeouts and settle budgets
- Job retention and artifact lifetime
- Monitoring and logging settings
"""

from __future__ import annotations

import os
import logging
import tempfile
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class DeploymentEnvironment(str, Enum):
    """Deployment environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels for production."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class SystemConfig:
    """System configuration for paths and basic settings."""
    log_root: str = "/tmp/logs"
    work_dir: str = field(default_factory=tempfile.gettempdir)
    service_port: int = 8080
    log_level: str = "INFO"


@dataclass
class ScalingConfig:
    """Worker pool width."""
    concurrency: int = 4
    max_concurrency: int = 8


@dataclass
class CrawlLimits:
    """Ceilings applied regardless of what the caller asks for."""
    hard_max_pages: int = 60
    default_max_pages: int = 25
    hard_max_depth: int = 5
    default_max_depth: int = 2
    max_list_urls: int = 30
    max_asset_bytes: int = 1_500_000
    max_url_candidates: int = 3000


@dataclass
class ExtractionConfig:
    """Navigation timeouts and settle budgets (milliseconds unless noted)."""
    goto_timeout_fast_ms: int = 20000
    goto_timeout_safe_ms: int = 35000
    crawl_goto_timeout_ms: int = 20000
    min_text_chars: int = 200
    network_idle_ms: int = 2500
    settle_ms: int = 600
    challenge_wait_seconds: int = 20
    scroll_steps: int = 12
    carousel_clicks: int = 8
    head_timeout_seconds: float = 12.0
    get_timeout_seconds: float = 25.0


@dataclass
class JobConfig:
    """Job retention and artifact lifetime."""
    retention_seconds: int = 20 * 60
    sweep_interval_seconds: int = 60
    free_after_download: bool = True


@dataclass
class MonitoringConfig:
    """Monitoring and observability configuration."""
    prometheus_enabled: bool = True
    log_structured: bool = False
    log_level: LogLevel = LogLevel.INFO


@dataclass
class BrowserConfig:
    """Browser automation configuration."""
    headless: bool = True
    viewport_width: int = 1365
    viewport_height: int = 900
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
    )
    launch_args: tuple = ("--no-sandbox", "--disable-dev-shm-usage")


class ProductionConfig:
    """Production configuration manager."""

    def __init__(self, environment: DeploymentEnvironment = DeploymentEnvironment.PRODUCTION):
        self.environment = environment
        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration based on environment and environment variables."""
        self.system = SystemConfig()
        self.scaling = ScalingConfig()
        self.limits = CrawlLimits()
        self.extraction = ExtractionConfig()
        self.jobs = JobConfig()
        self.monitoring = MonitoringConfig()
        self.browser = BrowserConfig()

        self._load_from_environment()
        self._validate_configuration()

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        # System settings
        self.system.log_root = os.getenv("LOG_ROOT", self.system.log_root)
        self.system.work_dir = os.getenv("WORK_DIR", self.system.work_dir)
        self.system.service_port = self._get_int_env("SERVICE_PORT", self.system.service_port)
        self.system.log_level = os.getenv("LOG_LEVEL", self.system.log_level).upper()

        # Worker pool width, clamped to the ceiling
        concurrency = self._get_int_env("CONCURRENCY", self.scaling.concurrency)
        self.scaling.concurrency = max(1, min(self.scaling.max_concurrency, concurrency))

        # Extraction settings have floors
        self.extraction.min_text_chars = max(
            200, self._get_int_env("MIN_TEXT_CHARS", self.extraction.min_text_chars)
        )
        self.extraction.goto_timeout_fast_ms = max(
            8000, self._get_int_env("GOTO_TIMEOUT_FAST", self.extraction.goto_timeout_fast_ms)
        )
        self.extraction.goto_timeout_safe_ms = max(
            12000, self._get_int_env("GOTO_TIMEOUT_SAFE", self.extraction.goto_timeout_safe_ms)
        )

        # Jobs
        self.jobs.free_after_download = self._get_bool_env("FREE_AFTER_DOWNLOAD", self.jobs.free_after_download)
        self.jobs.retention_seconds = self._get_int_env("JOB_RETENTION_SECONDS", self.jobs.retention_seconds)

        # Monitoring settings
        self.monitoring.prometheus_enabled = self._get_bool_env("PROMETHEUS_ENABLED", self.monitoring.prometheus_enabled)
        self.monitoring.log_structured = self._get_bool_env("LOG_STRUCTURED", self.monitoring.log_structured)
        try:
            self.monitoring.log_level = LogLevel(self.system.log_level)
        except ValueError:
            self.monitoring.log_level = LogLevel.INFO

        # Browser settings
        self.browser.headless = self._get_bool_env("BROWSER_HEADLESS", self.browser.headless)

    def _get_bool_env(self, key: str, default: bool) -> bool:
        """Get boolean value from environment."""
        value = os.getenv(key, "").lower()
        if value in ("true", "1", "yes", "on"):
            return True
        elif value in ("false", "0", "no", "off"):
            return False
        return default

    def _get_int_env(self, key: str, default: int) -> int:
        """Get integer value from environment."""
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def _validate_configuration(self) -> None:
        """Validate configuration values."""
        if self.system.service_port < 1 or self.system.service_port > 65535:
            raise ValueError("Service port must be between 1 and 65535")

        if self.jobs.retention_seconds < 1:
            raise ValueError("retention_seconds must be positive")

        if self.limits.default_max_pages > self.limits.hard_max_pages:
            raise ValueError("default_max_pages cannot exceed hard_max_pages")

        if self.limits.default_max_depth > self.limits.hard_max_depth:
            raise ValueError("default_max_depth cannot exceed hard_max_depth")

    def get_configuration_summary(self) -> Dict[str, Any]:
        """Get configuration summary for logging/debugging."""
        return {
            "environment": self.environment.value,
            "scaling": {
                "concurrency": self.scaling.concurrency,
                "max_concurrency": self.scaling.max_concurrency,
            },
            "limits": {
                "hard_max_pages": self.limits.hard_max_pages,
                "hard_max_depth": self.limits.hard_max_depth,
                "max_list_urls": self.limits.max_list_urls,
            },
            "extraction": {
                "min_text_chars": self.extraction.min_text_chars,
                "goto_timeout_fast_ms": self.extraction.goto_timeout_fast_ms,
                "goto_timeout_safe_ms": self.extraction.goto_timeout_safe_ms,
            },
            "jobs": {
                "retention_seconds": self.jobs.retention_seconds,
                "free_after_download": self.jobs.free_after_download,
            },
            "monitoring": {
                "prometheus_enabled": self.monitoring.prometheus_enabled,
                "log_level": self.monitoring.log_level.value,
            },
            "browser": {
                "headless": self.browser.headless,
            },
        }

    def setup_logging(self, handlers: List[logging.Handler]) -> logging.Logger:
        """Attach ``handlers`` to the service logger with the configured format and level."""
        logger = logging.getLogger("sitepress")
        logger.setLevel(getattr(logging, self.monitoring.log_level.value))

        for handler in logger.handlers[:]:
            logger.removeHandler(handler)

        if self.monitoring.log_structured:
            formatter = logging.Formatter(
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
                '"logger": "%(name)s", "message": "%(message)s", '
                '"environment": "' + self.environment.value + '"}'
            )
        else:
            formatter = logging.Formatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
            )

        for handler in handlers:
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger


# Global configuration instance
_config_instance: Optional[ProductionConfig] = None


def get_config(environment: Optional[DeploymentEnvironment] = None) -> ProductionConfig:
    """Get or create global configuration instance."""
    global _config_instance

    if _config_instance is None or (environment and environment != _config_instance.environment):
        if environment is None:
            env_str = os.getenv("DEPLOYMENT_ENVIRONMENT", "production").lower()
            try:
                environment = DeploymentEnvironment(env_str)
            except ValueError:
                environment = DeploymentEnvironment.PRODUCTION

        _config_instance = ProductionConfig(environment)

    return _config_instance


def reset_config() -> None:
    """Reset global configuration instance (useful for testing)."""
    global _config_instance
    _config_instance = None
