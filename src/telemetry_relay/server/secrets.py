# telemetry_relay/server/secrets.py
"""
Credential lookup by name.

The process environment is consulted first; an optional external store
(for example a cloud secret manager client wrapped in a callable) second.
Lookup never raises: a failing external store is logged and treated as
"no secret".
"""

import logging
import os
from collections.abc import Callable

__all__: list[str] = ['SecretFetcher', 'get_secret']

logger: logging.Logger = logging.getLogger(__name__)

type SecretFetcher = Callable[[str], str | None]


def get_secret(name: str, fallback: SecretFetcher | None = None) -> str | None:
    """
    Resolve a credential string.

    Args:
        name: Secret name, also used as the environment variable name.
        fallback: Optional external store lookup, called only when the
            environment does not define `name`.

    Returns:
        The secret value, or None if neither source provides a non-empty one.
    """
    value: str | None = os.environ.get(name)
    if value:
        return value

    if fallback is None:
        logger.debug('Secret %s not set in environment and no external store', name)
        return None

    try:
        value = fallback(name)
    except Exception:
        logger.exception('External secret store lookup failed for %s', name)
        return None

    if not value:
        logger.warning('Secret %s not found in environment or external store', name)
        return None

    return value
