from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from reboot_agent.src.config import env_int, load_settings
from reboot_agent.src.controller import build_watcher
from reboot_agent.src.health import start_health_server
from reboot_agent.src.kube import build_clients, load_kube_configuration
from reboot_agent.src.metrics import METRICS

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
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line; credentials in messages and tracebacks are masked."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> None:
    """Agent entrypoint: configure logging, wire the clients and run the pod watch."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    # Must cover a restart that is mid-backoff when the signal arrives.
    stop_timeout_seconds = env_int("SHUTDOWN_TIMEOUT_SECONDS", 60, minimum=1)
    load_kube_configuration()
    core_api, apps_api = build_clients()
    watcher = build_watcher(core_api=core_api, apps_api=apps_api, settings=settings)

    health_server = start_health_server(ready=watcher.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run_watcher() -> None:
        try:
            watcher.run_forever(shutdown_event=shutdown_event)
            if not shutdown_event.is_set():
                logging.getLogger(__name__).error(
                    "Pod watch exited without a stop signal; terminating process"
                )
        except Exception:
            logging.getLogger(__name__).exception("Pod watch thread crashed")
        finally:
            shutdown_event.set()

    watch_thread = threading.Thread(target=_run_watcher, name="pod-watch", daemon=True)
    watch_thread.start()

    shutdown_event.wait()
    watcher.request_stop()
    watch_thread.join(timeout=stop_timeout_seconds)
    if watch_thread.is_alive():
        logging.getLogger(__name__).error(
            "Pod watch did not stop within %ss; abandoning running restarts",
            stop_timeout_seconds,
        )
        watcher.close(wait=False)

    health_server.shutdown()
    logging.getLogger(__name__).info("Reboot agent stopped")


if __name__ == "__main__":
    main()
