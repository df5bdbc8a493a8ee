"""
Configuration management for the ARGOS application.
Loads configuration from YAML files and environment variables.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.backend.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class AppConfig:
    """Application configuration."""

    APP_NAME: str = "ARGOS"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "development"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8080


@dataclass
class HackRFConfig:
    """Sweep hardware and supervisor configuration."""

    HACKRF_SWEEP_COMMAND: str = "hackrf_sweep"
    HACKRF_INFO_COMMAND: str = "hackrf_info"
    HACKRF_SPAN_MHZ: float = 10.0
    HACKRF_BIN_WIDTH_HZ: int = 20000
    HACKRF_LNA_GAIN: int = 32
    HACKRF_VGA_GAIN: int = 20
    HACKRF_SAMPLE_RATE: float = 20e6
    HACKRF_PROBE_BEFORE_START: bool = True
    HACKRF_PROBE_TIMEOUT_S: float = 3.0
    HACKRF_STARTUP_DETECTION_S: float = 2.5
    HACKRF_HEALTH_TIMEOUT_S: float = 5.0
    HACKRF_HEALTH_BIN_WIDTH_HZ: int = 1000000
    HACKRF_STOP_GRACE_S: float = 2.0
    HACKRF_DATA_TIMEOUT_S: float = 120.0
    HACKRF_WATCHDOG_INTERVAL_S: float = 30.0
    HACKRF_MEMORY_WARNING_PERCENT: float = 90.0
    HACKRF_RESTART_BASE_DELAY_S: float = 1.0
    HACKRF_RESTART_MAX_DELAY_S: float = 30.0
    HACKRF_MAX_CRASHES: int = 5
    HACKRF_CRASH_WINDOW_S: float = 60.0
    HACKRF_SUBSCRIBER_QUEUE_SIZE: int = 256
    HACKRF_STRAY_PROCESS_NAMES: list[str] = field(
        default_factory=lambda: ["hackrf_sweep"]
    )

    def sweep_command(self) -> list[str]:
        """Sweep binary invocation as an argv prefix."""
        return shlex.split(self.HACKRF_SWEEP_COMMAND)

    def info_command(self) -> list[str]:
        """Device probe invocation as an argv prefix."""
        return shlex.split(self.HACKRF_INFO_COMMAND)


@dataclass
class SignalConfig:
    """Live signal aggregation configuration."""

    SIGNAL_TOLERANCE_MHZ: float = 1.0
    SIGNAL_MIN_POWER_DBM: float = -80.0
    SIGNAL_ACTIVE_WINDOW_S: float = 10.0


@dataclass
class DatabaseConfig:
    """Spatial signal store configuration."""

    DB_PATH: str = "data/argos.db"
    DB_ENABLE_WAL: bool = True
    DB_GRID_SCALE: int = 10000
    DB_RETENTION_S: float = 3600.0
    DB_CLEANUP_INTERVAL_S: float = 600.0
    DB_RECORD_FLUSH_INTERVAL_S: float = 1.0
    DB_RECORD_BATCH_SIZE: int = 500
    DB_RECORD_MIN_POWER_DBM: float = -80.0


@dataclass
class AnalyticsConfig:
    """Flight path analysis configuration."""

    ANALYTICS_CELL_SIZE_M: float = 50.0
    ANALYTICS_HOTSPOT_RADIUS_M: float = 100.0
    ANALYTICS_MIN_CLUSTER_SIZE: int = 3
    ANALYTICS_MAX_CLUSTER_CAPTURES: int = 2000
    ANALYTICS_CAPTURE_RADIUS_M: float = 50.0
    ANALYTICS_CAPTURE_WINDOW_S: float = 5.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE_PATH: str = "logs/argos.log"
    LOG_FILE_MAX_BYTES: int = 10485760
    LOG_FILE_BACKUP_COUNT: int = 5
    LOG_ENABLE_CONSOLE: bool = True
    LOG_ENABLE_FILE: bool = True
    LOG_ENABLE_JOURNAL: bool = False


@dataclass
class APIConfig:
    """API configuration."""

    API_CORS_ENABLED: bool = True
    API_CORS_ORIGINS: list[str] = field(default_factory=lambda: ["*"])
    API_METRICS_ENABLED: bool = True


@dataclass
class DevelopmentConfig:
    """Development settings."""

    DEV_HOT_RELOAD: bool = True
    DEV_DEBUG_MODE: bool = False
    DEV_MOCK_SDR: bool = False


@dataclass
class Config:
    """Main configuration container."""

    app: AppConfig = field(default_factory=AppConfig)
    hackrf: HackRFConfig = field(default_factory=HackRFConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APIConfig = field(default_factory=APIConfig)
    development: DevelopmentConfig = field(default_factory=DevelopmentConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "app": self.app.__dict__,
            "hackrf": self.hackrf.__dict__,
            "signal": self.signal.__dict__,
            "database": self.database.__dict__,
            "analytics": self.analytics.__dict__,
            "logging": self.logging.__dict__,
            "api": self.api.__dict__,
            "development": self.development.__dict__,
        }


# Flat key prefix -> Config attribute holding that section
SECTION_PREFIXES: dict[str, str] = {
    "APP_": "app",
    "HACKRF_": "hackrf",
    "SIGNAL_": "signal",
    "DB_": "database",
    "ANALYTICS_": "analytics",
    "LOG_": "logging",
    "API_": "api",
    "DEV_": "development",
}


class ConfigLoader:
    """Configuration loader that handles YAML files and environment variables."""

    ENV_PREFIX = "ARGOS_"

    def __init__(self, config_path: str | Path | None = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to configuration file. Defaults to profile-based selection.
        """
        if config_path is None:
            # Get project root (3 levels up from this file)
            project_root = Path(__file__).parent.parent.parent.parent

            profile = os.getenv("ARGOS_CONFIG_PROFILE", "default")
            if profile in ["development", "dev"]:
                config_file = "development.yaml"
            elif profile in ["production", "prod"]:
                config_file = "production.yaml"
            else:
                config_file = "default.yaml"

            self.config_path = project_root / "config" / config_file
            logger.info(f"Selected configuration profile: {profile} -> {config_file}")
        else:
            self.config_path = Path(config_path)
        self.config = Config()

    def load(self) -> Config:
        """
        Load configuration from file and environment variables.

        Environment variables override file configuration.

        Returns:
            Loaded configuration object
        """
        try:
            config_data = self._load_with_inheritance()
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse configuration {self.config_path}: {e}")
            raise ConfigurationError(str(e)) from e

        if config_data:
            if not isinstance(config_data, dict):
                raise ConfigurationError(
                    f"Configuration file {self.config_path} must contain a mapping"
                )
            self._apply_yaml_config(config_data)
            logger.info(f"Loaded configuration from {self.config_path}")
        else:
            logger.warning(
                f"Configuration file {self.config_path} not found, using defaults"
            )

        self._apply_env_overrides()
        self._validate_config()

        return self.config

    def _load_with_inheritance(self) -> dict[str, Any] | None:
        """
        Load configuration with inheritance from base configuration.

        Returns:
            Merged configuration dictionary or None if file not found
        """
        if not self.config_path.exists():
            return None

        with open(self.config_path) as f:
            config_data = yaml.safe_load(f) or {}

        # Profile files inherit default.yaml
        if self.config_path.name != "default.yaml":
            base_config_path = self.config_path.parent / "default.yaml"
            if base_config_path.exists():
                with open(base_config_path) as f:
                    base_config = yaml.safe_load(f) or {}
                logger.info(f"Inherited base configuration from {base_config_path}")
                return {**base_config, **config_data}

        return config_data

    def _section_for(self, key: str) -> Any | None:
        for prefix, section in SECTION_PREFIXES.items():
            if key.startswith(prefix):
                return getattr(self.config, section)
        return None

    def _apply_yaml_config(self, yaml_config: dict[str, Any]) -> None:
        """Apply configuration from YAML dictionary with proper type conversion."""
        for key, value in yaml_config.items():
            section = self._section_for(key)
            if section is None:
                logger.warning(f"Unknown configuration key: {key}")
                continue
            if isinstance(value, list):
                value = ",".join(str(v) for v in value)
            self._set_config_value(section, key, str(value))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(self.ENV_PREFIX):
                continue

            config_key = env_key[len(self.ENV_PREFIX) :]
            if config_key == "CONFIG_PROFILE":
                continue

            section = self._section_for(config_key)
            if section is not None:
                self._set_config_value(section, config_key, env_value)

    def _set_config_value(self, config_section: Any, key: str, value: str) -> None:
        """
        Set configuration value with appropriate type conversion.

        Args:
            config_section: Configuration section object
            key: Configuration key
            value: String value from file or environment
        """
        if not hasattr(config_section, key):
            logger.warning(f"Unknown configuration key: {key}")
            return

        current_value = getattr(config_section, key)

        converted_value: Any
        if isinstance(current_value, bool):
            converted_value = value.lower() in ("true", "1", "yes", "on")
        elif isinstance(current_value, int):
            try:
                converted_value = int(value)
            except ValueError:
                logger.error(f"Invalid integer value for {key}: {value}")
                return
        elif isinstance(current_value, float):
            try:
                converted_value = float(value)
            except ValueError:
                logger.error(f"Invalid float value for {key}: {value}")
                return
        elif isinstance(current_value, list):
            converted_value = [v.strip() for v in value.split(",") if v.strip()]
        else:
            converted_value = value

        setattr(config_section, key, converted_value)
        logger.debug(f"Set {key} = {converted_value}")

    def _validate_config(self) -> None:
        """Validate configuration after all loading is complete."""
        hackrf = self.config.hackrf
        if not hackrf.sweep_command():
            raise ConfigurationError("HACKRF_SWEEP_COMMAND must not be empty")
        if hackrf.HACKRF_BIN_WIDTH_HZ <= 0:
            raise ConfigurationError(
                f"HACKRF_BIN_WIDTH_HZ must be positive, got {hackrf.HACKRF_BIN_WIDTH_HZ}"
            )
        if hackrf.HACKRF_RESTART_BASE_DELAY_S > hackrf.HACKRF_RESTART_MAX_DELAY_S:
            raise ConfigurationError(
                "HACKRF_RESTART_BASE_DELAY_S must not exceed HACKRF_RESTART_MAX_DELAY_S"
            )
        if hackrf.HACKRF_MAX_CRASHES < 1:
            raise ConfigurationError("HACKRF_MAX_CRASHES must be at least 1")

        if self.config.signal.SIGNAL_TOLERANCE_MHZ <= 0:
            raise ConfigurationError(
                f"SIGNAL_TOLERANCE_MHZ must be positive, got "
                f"{self.config.signal.SIGNAL_TOLERANCE_MHZ}"
            )
        if self.config.database.DB_GRID_SCALE <= 0:
            raise ConfigurationError("DB_GRID_SCALE must be positive")
        if self.config.analytics.ANALYTICS_CELL_SIZE_M <= 0:
            raise ConfigurationError("ANALYTICS_CELL_SIZE_M must be positive")


# Global configuration instance
_config: Config | None = None


def get_config(config_path: str | Path | None = None) -> Config:
    """
    Get configuration instance (singleton pattern).

    Args:
        config_path: Optional path to configuration file

    Returns:
        Configuration object
    """
    global _config

    if _config is None:
        loader = ConfigLoader(config_path)
        _config = loader.load()

    return _config


def reload_config(config_path: str | Path | None = None) -> Config:
    """
    Reload configuration from file and environment.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Reloaded configuration object
    """
    global _config

    loader = ConfigLoader(config_path)
    _config = loader.load()

    return _config
