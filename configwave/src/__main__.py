from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from configwave.src.config import ControllerConfig, load_config
from configwave.src.controller import WorkloadController, build_controller
from configwave.src.health import start_health_server
from configwave.src.kube import build_clients, load_kube_configuration
from configwave.src.metrics import METRICS

RUNTIME_VERSION = "0.3.0"
LOGGER = logging.getLogger("configwave")

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
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.root.level, logging.INFO))


def run_with_leader_election(
    config: ControllerConfig,
    controller: WorkloadController,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run *controller* only while this replica holds the leader lease."""
    from kubernetes.client import CoordinationV1Api

    from configwave.src.leader import LeaderElector

    elector = LeaderElector.from_config(config.leader_election, CoordinationV1Api())
    stop_timeout = config.leader_election.controller_stop_timeout_seconds

    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Refusing to start new watches while the previous controller "
                    "thread is still running"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=controller_stop)
                    unexpected_exit = not controller_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Controller exited without a stop signal; terminating process")
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Controller thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return

            controller_thread.join(timeout=stop_timeout)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    stop_timeout,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: configure logging, start leader election, and run the watches."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    controller = build_controller(config, core_api=core_api, apps_api=apps_api)

    leader_ready = threading.Event() if config.leader_election.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        run_with_leader_election(config, controller, leader_ready, shutdown_event)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
