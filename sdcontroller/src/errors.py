from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


class CacheSyncError(RuntimeError):
    """Raised when the local caches never finished their initial listing."""


class KeyDerivationError(ValueError):
    """Raised when a queue key cannot be derived from an object."""


class LookupFailure(RuntimeError):
    """Raised by a cache when a keyed read cannot be served."""


def report_error(exc: BaseException, context: str) -> None:
    """Process-wide sink for errors that were given up on.

    Logs with traceback and counts the error; never raises so the calling
    loop keeps running.
    """
    from sdcontroller.src.metrics import METRICS

    METRICS.unhandled_errors_total.labels(context=context).inc()
    LOGGER.error("Unrecoverable error in %s: %s", context, exc, exc_info=exc)
