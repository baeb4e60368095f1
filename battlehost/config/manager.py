import logging
from typing import Any, Mapping

from battlehost.config.config import ConfigurationSnapshot

utils_logger = logging.getLogger("battlehost.config.manager")

SENSITIVE_KEYS = ("password", "secret", "key", "token", "auth")
MASK = "***MASKED***"


def mask_sensitive_config(options: Mapping[str, Any]) -> dict:
    """
    Create a safe copy of the configuration for logging by masking sensitive data.

    Args:
        options: Configuration mapping (a snapshot's options or a plain dict)

    Returns:
        A plain dict with sensitive fields masked at every nesting level
    """
    def mask_recursive(obj):
        if isinstance(obj, Mapping):
            masked = {}
            for k, v in obj.items():
                if isinstance(k, str) and any(s in k.lower() for s in SENSITIVE_KEYS) \
                        and not isinstance(v, Mapping):
                    masked[k] = MASK
                else:
                    masked[k] = mask_recursive(v)
            return masked
        if isinstance(obj, (list, tuple)):
            return [mask_recursive(item) for item in obj]
        return obj

    return mask_recursive(options)


def log_snapshot(snapshot: ConfigurationSnapshot, level: int = logging.DEBUG) -> None:
    """Log a masked view of a snapshot."""
    if utils_logger.isEnabledFor(level):
        utils_logger.log(level, "Active configuration (%s): %s",
                         snapshot.source, mask_sensitive_config(snapshot.options))
