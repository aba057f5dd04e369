"""Configuration module for imibot."""

from imibot.config.loader import get_config_path, load_config
from imibot.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config"]
