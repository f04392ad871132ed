# telemetry_relay/config/loader.py
"""
Configuration Loading Logic.

This module handles the physical retrieval, parsing, and initial validation of
the relay configuration. It serves as the bridge between raw YAML files on the
disk and the strictly typed Pydantic models defined in `config_models.py`.

Responsibilities:
    1.  File I/O: Safely locating and reading the configuration file.
    2.  Parsing: Converting YAML text into Python dictionaries.
    3.  Validation: Instantiating the `RelayConfig` model to enforce types.
    4.  Error Handling: Capturing low-level I/O or parsing errors and logging
        them with context before raising.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from telemetry_relay.config.config_models import RelayConfig

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Path = Path('config/relay_config.yaml')


def load_config(config_path: Path | str | None = None) -> RelayConfig:
    """Load and validate relay configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file (relative or absolute).
            If None, defaults to 'config/relay_config.yaml' relative to the
            current working directory.

    Returns:
        Validated RelayConfig instance ready for use.

    Raises:
        FileNotFoundError: If config file does not exist at the specified path.
        yaml.YAMLError: If YAML file is malformed or cannot be parsed.
        ValueError: If configuration fails Pydantic validation, or the file
            does not contain a mapping.

    Example:
        >>> config = load_config('config/relay_config.yaml')
        >>> print(config.client.queue.max_items)
        500
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        logger.debug('No config path provided, using default: %s', config_path)
    else:
        config_path = Path(config_path)

    logger.info('Loading relay configuration from: %s', config_path)

    if not config_path.exists():
        error_message: str = f'Configuration file not found: {config_path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with Path.open(config_path, encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration root must be a mapping, got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    # pydantic's ValidationError subclasses ValueError
    try:
        validated_config = RelayConfig(**raw_config_data)
    except ValueError as error:
        error_message = f'Configuration validation failed: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info('Configuration loaded and validated successfully')
    return validated_config
