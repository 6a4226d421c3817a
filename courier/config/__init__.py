"""Configuration module for courier."""

from courier.config.loader import load_config, get_config_path, save_config
from courier.config.schema import Config, RetryConfig

__all__ = ["Config", "RetryConfig", "load_config", "get_config_path", "save_config"]
