"""
Configuration Loader
YAML file first, EVENTFLOW_* environment variables for whatever it leaves out
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from src.config.settings import EventFlowSettings

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "EVENTFLOW_CONFIG"


def load_yaml_config(file_path: str) -> Dict[str, Any]:
    """
    Read a YAML mapping of settings sections

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the document is not a mapping
        yaml.YAMLError: If the document cannot be parsed
    """
    path = Path(file_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.error(f"Cannot parse {file_path}: {e}")
        raise

    if document is None:
        logger.warning(f"Configuration file {file_path} is empty, using defaults")
        return {}
    if not isinstance(document, dict):
        raise ValueError(f"Configuration file must contain a mapping: {file_path}")
    return document


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge section dictionaries left to right; nested mappings merge key by key"""
    merged: Dict[str, Any] = {}
    for config in configs:
        _merge_into(merged, config or {})
    return merged


def _merge_into(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            target[key] = value


def load_config(config_path: Optional[str] = None, **overrides: Any) -> EventFlowSettings:
    """
    Build EventFlowSettings

    The YAML file is ``config_path`` or, if unset, the file named by
    EVENTFLOW_CONFIG. Keyword overrides (one dict per section) win over the
    file; sections that neither provides come from the environment.

    Raises:
        FileNotFoundError: If the configuration file does not exist
        ValidationError: If a value is out of bounds

    Examples:
        >>> load_config("config/eventflow.yaml")
        >>> load_config(database={"backend": "memory"}, channel={"backend": "memory"})
    """
    path = config_path or os.environ.get(CONFIG_PATH_ENV)
    file_config = load_yaml_config(path) if path else {}
    if path:
        logger.info(f"Loaded configuration from {path}")

    try:
        settings = EventFlowSettings(**merge_configs(file_config, overrides))
    except Exception as e:
        logger.error(f"Invalid configuration: {e}")
        raise

    logger.debug(f"Configuration ready for environment {settings.environment}")
    return settings
