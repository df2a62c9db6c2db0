"""
Configuration management for Agent Orchestrator.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from .logging import get_logger

logger = get_logger(__name__)


class SchedulerConfig(BaseModel):
    """Configuration for the scheduling loop and retry policy."""
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay_seconds: float = Field(default=0.0, ge=0.0, le=300.0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0.0, le=3600.0)
    tick_interval_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    default_timeout_ms: int = Field(default=300000, ge=1)
    agent_failure_threshold: int = Field(default=5, ge=1, le=100)
    agent_recovery_timeout_seconds: float = Field(default=60.0, ge=0.0, le=3600.0)


class CapacityConfig(BaseModel):
    """Configuration for capacity accounting."""
    duration_smoothing: float = Field(default=0.3, gt=0.0, le=1.0)


class LoadBalancerConfig(BaseModel):
    """Configuration for classification, recommendations and rebalancing."""
    high_water_percentage: float = Field(default=80.0, ge=0.0, le=100.0)
    low_water_percentage: float = Field(default=20.0, ge=0.0, le=100.0)
    window_size: int = Field(default=3, ge=1, le=100)
    interval_seconds: float = Field(default=30.0, gt=0.0, le=3600.0)
    auto_rebalance: bool = Field(default=True)
    auto_rebalance_queue_threshold: int = Field(default=10, ge=0)
    scale_down_min_processed: int = Field(default=10, ge=0)

    @model_validator(mode='after')
    def check_watermarks(self):
        if self.low_water_percentage >= self.high_water_percentage:
            raise ValueError("low_water_percentage must be below high_water_percentage")
        return self


class CollaborationConfig(BaseModel):
    """Configuration for multi-agent strategies."""
    default_quorum: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    consensus_threshold: float = Field(default=0.66, gt=0.0, le=1.0)
    max_consensus_rounds: int = Field(default=2, ge=1, le=10)
    agreement_policy: str = Field(default="majority")


class RegistryConfig(BaseModel):
    """Configuration for the agent registry."""
    health_check_interval_seconds: float = Field(default=30.0, gt=0.0, le=3600.0)


class PersistenceConfig(BaseModel):
    """Configuration for task snapshot persistence."""
    enabled: bool = Field(default=False)
    storage_path: str = Field(default="./data/orchestrator")


class SystemConfig(BaseModel):
    """Main system configuration."""
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)

    # Component configurations
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    load_balancer: LoadBalancerConfig = Field(default_factory=LoadBalancerConfig)
    collaboration: CollaborationConfig = Field(default_factory=CollaborationConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes")


def load_config_from_env() -> Dict[str, Any]:
    """
    Read configuration overrides from environment variables.

    Returns:
        Dict[str, Any]: Nested overrides containing only the variables that are set
    """
    config_data: Dict[str, Any] = {}

    # System settings
    if _env_flag("DEBUG") is not None:
        config_data["debug"] = _env_flag("DEBUG")

    if os.getenv("LOG_LEVEL"):
        config_data["log_level"] = os.getenv("LOG_LEVEL")

    if _env_flag("JSON_LOGGING") is not None:
        config_data["json_logging"] = _env_flag("JSON_LOGGING")

    if os.getenv("ORCH_API_PORT"):
        config_data["api_port"] = int(os.getenv("ORCH_API_PORT"))

    # Scheduler settings
    scheduler_config = {}
    if os.getenv("ORCH_MAX_RETRIES"):
        scheduler_config["max_retries"] = int(os.getenv("ORCH_MAX_RETRIES"))

    if os.getenv("ORCH_TICK_INTERVAL"):
        scheduler_config["tick_interval_seconds"] = float(os.getenv("ORCH_TICK_INTERVAL"))

    if os.getenv("ORCH_DEFAULT_TIMEOUT_MS"):
        scheduler_config["default_timeout_ms"] = int(os.getenv("ORCH_DEFAULT_TIMEOUT_MS"))

    if scheduler_config:
        config_data["scheduler"] = scheduler_config

    # Load balancer settings
    balancer_config = {}
    if os.getenv("ORCH_HIGH_WATER"):
        balancer_config["high_water_percentage"] = float(os.getenv("ORCH_HIGH_WATER"))

    if os.getenv("ORCH_LOW_WATER"):
        balancer_config["low_water_percentage"] = float(os.getenv("ORCH_LOW_WATER"))

    if os.getenv("ORCH_REBALANCE_WINDOW"):
        balancer_config["window_size"] = int(os.getenv("ORCH_REBALANCE_WINDOW"))

    if _env_flag("ORCH_AUTO_REBALANCE") is not None:
        balancer_config["auto_rebalance"] = _env_flag("ORCH_AUTO_REBALANCE")

    if balancer_config:
        config_data["load_balancer"] = balancer_config

    # Collaboration settings
    collaboration_config = {}
    if os.getenv("ORCH_CONSENSUS_THRESHOLD"):
        collaboration_config["consensus_threshold"] = float(os.getenv("ORCH_CONSENSUS_THRESHOLD"))

    if os.getenv("ORCH_AGREEMENT_POLICY"):
        collaboration_config["agreement_policy"] = os.getenv("ORCH_AGREEMENT_POLICY")

    if collaboration_config:
        config_data["collaboration"] = collaboration_config

    # Persistence settings
    if os.getenv("ORCH_PERSISTENCE_PATH"):
        config_data["persistence"] = {
            "enabled": True,
            "storage_path": os.getenv("ORCH_PERSISTENCE_PATH"),
        }

    return config_data


def load_config_from_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read configuration from a JSON file.

    Args:
        config_path: Path to configuration file

    Returns:
        Dict[str, Any]: Raw configuration data, empty if the file is missing or unreadable
    """
    if config_path is None:
        config_path = Path(os.getenv("ORCH_CONFIG_FILE", "orchestrator.json"))

    if not config_path.exists():
        return {}

    try:
        with open(config_path, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load config from {config_path}: {e}")
        return {}


def merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into base, section by section."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the process-wide default configuration.

    Defaults are overlaid with the config file, then with environment variables.

    Returns:
        SystemConfig: Global configuration
    """
    global _config
    if _config is None:
        data = merge_config(load_config_from_file(), load_config_from_env())
        _config = SystemConfig(**data)

    return _config


def set_config(config: Optional[SystemConfig]) -> None:
    """
    Set (or clear, with None) the process-wide default configuration.

    Args:
        config: Configuration to set as global
    """
    global _config
    _config = config
