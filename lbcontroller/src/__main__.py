from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from lbcontroller.src.cloudprovider import get_cloud_provider
from lbcontroller.src.config import ConfigError, ControllerConfig, load_config
from lbcontroller.src.controller import ControllerInitError, ServiceController
from lbcontroller.src.health import start_health_server
from lbcontroller.src.informer import start_informers
from lbcontroller.src.kube import build_clients, load_kube_configuration
from lbcontroller.src.metrics import METRICS
from lbcontroller.src.recorder import EventRecorder

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|access[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password|signature)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects; provider errors often echo credentials, so redact."""

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


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def build_controller(config: ControllerConfig) -> ServiceController:
    cloud = get_cloud_provider(config.cloud_provider)
    if cloud is None:
        raise ConfigError(f"cloud provider {config.cloud_provider!r} is not registered")

    load_kube_configuration()
    core_api, discovery_api = build_clients()
    recorder = EventRecorder(core_api)
    return ServiceController.from_config(config, cloud, core_api, discovery_api, recorder)


def main() -> None:
    """Controller entrypoint: configure logging, start informers and health server, run workers."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        controller = build_controller(config)
    except (ConfigError, ControllerInitError) as exc:
        LOGGER.error("Invalid controller configuration: %s", exc)
        raise SystemExit(2) from exc
    logging.root.setLevel(getattr(logging, config.log_level, logging.INFO))

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        informers=controller.informers,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    start_informers(list(controller.informers), shutdown_event)
    exit_code = 0
    try:
        controller.run(shutdown_event, workers=config.concurrent_service_syncs)
    except Exception:
        LOGGER.exception("Service controller failed")
        exit_code = 1
    finally:
        shutdown_event.set()
        for informer in controller.informers:
            informer.request_stop()
        health_server.shutdown()

    LOGGER.info("Controller stopped")
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
