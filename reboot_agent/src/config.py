from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

REBOOT_ANNOTATION = "reboot-agent.v1.sdlt.local/reboot"
REBOOT_IN_PROGRESS_ANNOTATION = "reboot-agent.v1.sdlt.local/reboot-in-progress"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


@dataclass(frozen=True)
class AgentSettings:
    """Immutable agent configuration, loaded once at startup and injected.

    Attributes:
        trigger_annotation: Pod annotation that requests a deployment restart.
        in_progress_annotation: Pod annotation reported but never acted on.
        restart_annotation: Pod template annotation stamped to roll pods.
        max_attempts: Replace attempts before a conflicting restart gives up.
        initial_backoff_seconds: Sleep after the first conflict.
        backoff_increment_seconds: Added to the sleep after every conflict.
        namespace: Namespace to watch; empty means every namespace.
        restart_workers: Size of the worker pool running restarts.
        health_port: Port for the health and metrics server.
    """

    trigger_annotation: str = REBOOT_ANNOTATION
    in_progress_annotation: str = REBOOT_IN_PROGRESS_ANNOTATION
    restart_annotation: str = RESTARTED_AT_ANNOTATION
    max_attempts: int = 3
    initial_backoff_seconds: int = 10
    backoff_increment_seconds: int = 5
    namespace: str = ""
    restart_workers: int = 4
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> AgentSettings:
    """Build :class:`AgentSettings` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE`` -- namespace to watch (empty: all namespaces).
        ``RESTART_MAX_ATTEMPTS`` -- attempts per restart (``3``).
        ``RESTART_INITIAL_BACKOFF_SECONDS`` -- first conflict sleep (``10``).
        ``RESTART_BACKOFF_INCREMENT_SECONDS`` -- sleep increment (``5``).
        ``RESTART_WORKERS`` -- concurrent restart workers (``4``).
        ``HEALTH_PORT`` -- health/metrics port (``8080``).

    The annotation keys are fixed and cannot be overridden.
    """
    values = env if env is not None else os.environ

    return AgentSettings(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        max_attempts=env_int("RESTART_MAX_ATTEMPTS", 3, minimum=1, env=values),
        initial_backoff_seconds=env_int(
            "RESTART_INITIAL_BACKOFF_SECONDS", 10, minimum=0, env=values
        ),
        backoff_increment_seconds=env_int(
            "RESTART_BACKOFF_INCREMENT_SECONDS", 5, minimum=0, env=values
        ),
        restart_workers=env_int("RESTART_WORKERS", 4, minimum=1, maximum=64, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
