# telemetry_relay/common/logger.py
"""
Logging configuration for the telemetry_relay package.

Provides centralized logging setup so the client and server halves of the
relay share one log format and one handler configuration.
"""

import logging
import sys
from pathlib import Path

from telemetry_relay.config import LoggingConfig

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: str = 'telemetry_relay'

QUIET_LIBRARY_LOGGERS: tuple[str, ...] = ('httpx', 'httpcore')


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Set up logging for the telemetry_relay package.

    Configures the package-level logger so that every module logger created
    with logging.getLogger(__name__) inherits the same handlers and format.

    The function is idempotent: calling it again clears and rebuilds the
    handlers from the provided arguments.

    Args:
        logging_level: Console level to use when NO config object is provided.
            Defaults to logging.INFO.
        config: Optional validated logging configuration. If provided:
                - Console logging uses config.console_level
                - File logging is enabled if config.file_path is set
                - The 'logging_level' argument is ignored.

    Returns:
        The package-level logger ('telemetry_relay').

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> setup_logger(config=load_config().logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)

    # Close before clearing so reconfiguration does not leak file handles
    for existing_handler in package_logger.handlers:
        existing_handler.close()
    package_logger.handlers.clear()

    log_format: logging.Formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    # --- 1. Console Handler ---
    if logging_level is None:
        logging_level = logging.INFO
    if config:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # --- 2. File Handler (Config Only) ---
    file_level: int | None = config.get_file_level_int() if config else None

    if config and config.file_path and file_level is not None:
        log_file_path: Path = config.file_path
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler: logging.FileHandler = logging.FileHandler(
            filename=str(log_file_path),
            mode='a',
            encoding='utf-8',
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(file_level)
        package_logger.addHandler(file_handler)

        if console_level <= logging.INFO:
            print(f'Logging to file: {log_file_path}', file=sys.stderr)

    # --- 3. Package Logger Level ---
    # Must be the most verbose of the handler levels or DEBUG file output is lost.
    effective_level: int = console_level
    if file_level is not None and config and config.file_path:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    # --- 4. Library Loggers ---
    # httpx logs every request at INFO; the flush timer would flood the console
    for library_name in QUIET_LIBRARY_LOGGERS:
        logging.getLogger(library_name).setLevel(max(logging.WARNING, console_level))

    return package_logger
