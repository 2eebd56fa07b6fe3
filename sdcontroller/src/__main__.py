from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from sdcontroller.src.config import load_config
from sdcontroller.src.dispatcher import load_dispatcher
from sdcontroller.src.engine import ReconciliationEngine
from sdcontroller.src.errors import CacheSyncError
from sdcontroller.src.health import start_health_server
from sdcontroller.src.kube import build_clients, load_kube_configuration
from sdcontroller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, start the engine, and wait for a stop signal.

    SIGTERM and SIGINT set the shared stop event. Shutdown does not drain the
    work queue; envelopes still waiting are dropped.
    """
    settings = load_config()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()

    engine = ReconciliationEngine(
        core_api=core_api,
        apps_api=apps_api,
        custom_api=custom_api,
        dispatcher=load_dispatcher(settings.dispatcher),
        config=settings,
    )
    health_server = start_health_server(
        ready=engine.ready,
        port=settings.health_port,
        cache_status=engine.cache_status,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        engine.run(stop_event=shutdown_event)
    except CacheSyncError:
        logger.error("Caches could not be synchronised; exiting")
        raise SystemExit(1) from None
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
