# telemetry_relay/common/__init__.py

from telemetry_relay.common.logger import PACKAGE_LOGGER_NAME, setup_logger

__all__: list[str] = [
    'PACKAGE_LOGGER_NAME',
    'setup_logger',
]
