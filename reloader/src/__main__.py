from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence

from reloader.src.config import ConfigError, ReloaderConfig, load_config
from reloader.src.controller import build_reloader
from reloader.src.health import start_health_server
from reloader.src.kube import build_clients, load_kube_configuration
from reloader.src.metrics import METRICS

RUNTIME_VERSION = "0.3.0"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
VERBOSE_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(filename)s:%(lineno)d %(message)s"
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

    def __init__(self, report_caller: bool = False) -> None:
        super().__init__()
        self.report_caller = report_caller

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if self.report_caller:
            log_entry["caller"] = f"{record.filename}:{record.lineno}"
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


class TextFormatter(logging.Formatter):
    """Human-readable formatter with full timestamps and the same redaction as JSON output."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))


def setup_logging(settings: ReloaderConfig) -> None:
    """Configure the root logger; logs always go to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.json_log:
        handler.setFormatter(JSONFormatter(report_caller=settings.verbose))
    else:
        handler.setFormatter(
            TextFormatter(VERBOSE_TEXT_FORMAT if settings.verbose else TEXT_FORMAT)
        )
    logging.root.handlers = [handler]
    logging.root.setLevel(logging.DEBUG if settings.verbose else logging.INFO)
    # The client logs every request body at DEBUG, including Secret payloads.
    logging.getLogger("kubernetes").setLevel(logging.INFO)


def main(argv: Sequence[str] | None = None) -> None:
    """Controller entrypoint: parse configuration, configure logging, and run both watch loops."""
    settings = load_config(argv)
    setup_logging(settings)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(settings.kubeconfig)
    except ConfigError:
        logger.exception("Unable to load Kubernetes credentials")
        raise SystemExit(1) from None

    core_api, apps_api = build_clients()
    reloader = build_reloader(core_api=core_api, apps_api=apps_api, settings=settings)

    health_server = None
    if settings.health_port:
        health_server = start_health_server(ready=reloader.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    reloader.run_forever(shutdown_event=shutdown_event)

    if health_server is not None:
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
