"""Configuration management for the site export service.

- Environment-based configuration system
- Hard ceilings and extraction budgets
"""

from .production import (
    ProductionConfig, DeploymentEnvironment, LogLevel,
    SystemConfig, ScalingConfig, CrawlLimits, ExtractionConfig,
    JobConfig, MonitoringConfig, BrowserConfig,
    get_config, reset_config
)

__all__ = [
    'ProductionConfig', 'DeploymentEnvironment', 'LogLevel',
    'SystemConfig', 'ScalingConfig', 'CrawlLimits', 'ExtractionConfig',
    'JobConfig', 'MonitoringConfig', 'BrowserConfig',
    'get_config', 'reset_config'
]
