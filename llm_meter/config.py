"""
Configuration for llm-meter.

Load priority (highest to lowest):
1. Environment variables (LLM_METER_*)
2. Configuration file (llm_meter.yaml)
3. Defaults

build_options() turns a MeterConfig into the MeterOptions used by metered
clients, wiring up the control client the config describes.
"""
import dataclasses
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "llm_meter.yaml"
PACKAGE_LOGGER = "llm_meter"


@dataclass
class ControlConfig:
    """Control plane configuration"""
    api_key: Optional[str] = None
    server_url: str = "http://localhost:8000"
    fail_open: bool = True
    timeout_seconds: float = 2.0
    policy_file: Optional[str] = None


@dataclass
class TrackingConfig:
    """What to record per call"""
    track_tool_calls: bool = True
    track_call_relationships: bool = True
    capture_call_site: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "WARNING"
    file: Optional[str] = None


@dataclass
class MeterConfig:
    """Complete llm-meter configuration"""
    control: ControlConfig = field(default_factory=ControlConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeterConfig":
        """Create configuration from dictionary"""
        config = cls()
        try:
            if "control" in data:
                config.control = ControlConfig(**data["control"])
            if "tracking" in data:
                config.tracking = TrackingConfig(**data["tracking"])
            if "logging" in data:
                config.logging = LoggingConfig(**data["logging"])
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        return config


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


class ConfigManager:
    """
    Loads MeterConfig from defaults, file and environment.

    Args:
        config_file: Optional path to configuration file
    """

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        self.config_file = Path(config_file or DEFAULT_CONFIG_FILE)
        self._config = self._load_config()

    def _load_config(self) -> MeterConfig:
        config = MeterConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    file_data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(
                    f"Failed to load config file {self.config_file}: {e}"
                ) from e
            if file_data:
                if not isinstance(file_data, dict):
                    raise ConfigError(f"Config file {self.config_file} must be a mapping")
                config = MeterConfig.from_dict(file_data)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: MeterConfig) -> MeterConfig:
        """
        Apply environment variable overrides

        Args:
            config: Base configuration

        Returns:
            Configuration with environment overrides applied
        """
        if api_key := os.getenv("LLM_METER_API_KEY"):
            config.control.api_key = api_key
        if server_url := os.getenv("LLM_METER_SERVER_URL"):
            config.control.server_url = server_url
        if fail_open := os.getenv("LLM_METER_FAIL_OPEN"):
            config.control.fail_open = _parse_bool(fail_open)
        if timeout := os.getenv("LLM_METER_CONTROL_TIMEOUT"):
            try:
                config.control.timeout_seconds = float(timeout)
            except ValueError:
                raise ConfigError(
                    f"LLM_METER_CONTROL_TIMEOUT must be a number, got {timeout!r}"
                ) from None
        if policy_file := os.getenv("LLM_METER_POLICY_FILE"):
            config.control.policy_file = policy_file
        if log_level := os.getenv("LLM_METER_LOG_LEVEL"):
            config.logging.level = log_level
        return config

    def get(self, section: Optional[str] = None) -> Any:
        if section is None:
            return self._config
        return getattr(self._config, section, None)

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []

        if self._config.control.timeout_seconds <= 0:
            errors.append("Control timeout must be positive")
        policy_file = self._config.control.policy_file
        if policy_file and not Path(policy_file).exists():
            errors.append(f"Policy file not found: {policy_file}")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self._config.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")

        return len(errors) == 0, errors

    def reload(self) -> None:
        self._config = self._load_config()


_config_manager: Optional[ConfigManager] = None


def get_config() -> MeterConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.get()


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config_manager
    _config_manager = None


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Level name (defaults to the configured LLM_METER_LOG_LEVEL)
        log_file: Optional file to log to instead of stderr

    Returns:
        The "llm_meter" logger
    """
    if level is None or log_file is None:
        logging_config = get_config().logging
        level = level or logging_config.level
        log_file = log_file or logging_config.file

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level.upper())
    if not package_logger.handlers:
        handler: logging.Handler = (
            logging.FileHandler(log_file) if log_file else logging.StreamHandler()
        )
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        package_logger.addHandler(handler)
    return package_logger


def build_control_client(control: ControlConfig):
    """
    Create a ControlDecisionClient for the configured oracle.

    A remote oracle is used when an API key is set, a local evaluator when
    a policy file is set. Returns None when neither is configured.
    """
    from .control import ControlDecisionClient, LocalPolicyEvaluator, RemoteDecisionOracle

    if control.api_key:
        oracle = RemoteDecisionOracle(
            api_key=control.api_key,
            server_url=control.server_url,
            timeout=control.timeout_seconds,
        )
    elif control.policy_file:
        oracle = LocalPolicyEvaluator.from_file(control.policy_file)
    else:
        return None
    return ControlDecisionClient(
        oracle, fail_open=control.fail_open, timeout_s=control.timeout_seconds
    )


def build_options(
    config: Optional[MeterConfig] = None,
    emitters: Union[None, Any, Iterable[Any]] = None,
    **overrides: Any,
):
    """
    Build MeterOptions from configuration.

    When a control client is configured, calls get a pre-flight cost
    estimate and the interceptor reports every finished call to it.

    Args:
        config: Configuration (the global one when omitted)
        emitters: Metric sink or list of sinks
        **overrides: MeterOptions fields to set explicitly

    Returns:
        MeterOptions
    """
    from .interceptor.models import MeterOptions
    from .pricing import estimate_request_cost

    config = config or get_config()
    if emitters is None:
        sinks: List[Any] = []
    elif callable(emitters) or hasattr(emitters, "emit"):
        sinks = [emitters]
    else:
        sinks = list(emitters)

    control = build_control_client(config.control)

    options = MeterOptions(
        emitters=sinks,
        control=control,
        track_tool_calls=config.tracking.track_tool_calls,
        track_call_relationships=config.tracking.track_call_relationships,
        capture_call_site=config.tracking.capture_call_site,
        cost_estimator=estimate_request_cost if control is not None else None,
    )
    return dataclasses.replace(options, **overrides) if overrides else options
