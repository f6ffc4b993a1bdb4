from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from kubernetes.client import ApiException, AppsV1Api

from reboot_agent.src.config import AgentSettings
from reboot_agent.src.kube import (
    is_conflict,
    read_deployment,
    read_replica_set,
    replace_deployment,
    stamp_restart_annotation,
)
from reboot_agent.src.metrics import METRICS
from reboot_agent.src.models import PodSnapshot, owner_references_of

REPLICA_SET_KIND = "ReplicaSet"
DEPLOYMENT_KIND = "Deployment"


def utc_now_iso8601() -> str:
    """Return the current UTC time as ISO-8601 with a ``Z`` suffix.

    Microseconds are kept so two restarts issued within the same second still
    produce different template annotations.
    """
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class RestartState(Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    CONFLICT_RETRY = "conflict-retry"
    EXHAUSTED = "exhausted"
    ABANDONED = "abandoned"


@dataclass
class RestartAttempt:
    """Mutable state of one restart operation against one deployment.

    ``attempts`` counts replace attempts made so far and only grows;
    ``backoff_seconds`` is the sleep the next conflict would use and never
    shrinks.  ``backoff_history`` records every sleep actually taken.
    """

    deployment: str
    namespace: str
    backoff_seconds: float
    attempts: int = 0
    state: RestartState = RestartState.ATTEMPTING
    backoff_history: list[float] = field(default_factory=list)
    restarted_at: str | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.deployment}"


class DeploymentRestarter:
    """Resolves a pod's owning deployments and forces rolling restarts.

    A restart is a read-modify-replace of the deployment: the pod template
    gets a fresh ``restartedAt`` annotation and the whole object is written
    back with the ``resourceVersion`` it was read with.  When another writer
    got there first the API server answers ``409 Conflict``; the restart then
    sleeps, grows its backoff by a fixed increment and tries again from a
    fresh read, up to ``settings.max_attempts`` times.

    Any other API failure is not retried and propagates to the caller.

    Backoff sleeps wait on ``stop_event`` by default; once it is set a restart
    that is backing off gives up instead of trying again.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        settings: AgentSettings,
        logger: logging.Logger | None = None,
        sleep_fn: Callable[[float], object] | None = None,
        now_fn: Callable[[], str] = utc_now_iso8601,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.stop_event = stop_event or threading.Event()
        self.sleep_fn = sleep_fn or self.stop_event.wait
        self.now_fn = now_fn

    def resolve_deployments(self, pod: PodSnapshot) -> Iterator[str]:
        """Yield the names of deployments owning *pod*, in encounter order.

        Walks pod -> ReplicaSet -> Deployment.  Every match is yielded; a pod
        without a ReplicaSet owner costs no API calls at all.
        """
        for owner in pod.owner_references:
            if owner.kind != REPLICA_SET_KIND:
                continue
            replica_set = read_replica_set(self.apps_api, owner.name, pod.namespace)
            for rs_owner in owner_references_of(replica_set):
                if rs_owner.kind == DEPLOYMENT_KIND:
                    yield rs_owner.name

    def restart_for_pod(self, pod: PodSnapshot) -> list[RestartAttempt]:
        """Restart every deployment owning *pod*, one after another."""
        results: list[RestartAttempt] = []
        for deployment_name in self.resolve_deployments(pod):
            self.logger.info(
                "Restarting deployment %s/%s for pod %s",
                pod.namespace,
                deployment_name,
                pod.name,
            )
            results.append(self.restart_deployment(deployment_name, pod.namespace))

        if not results:
            self.logger.info(
                "Pod %s is not owned by a deployment; nothing to restart", pod.key
            )
        return results

    def restart_deployment(self, name: str, namespace: str) -> RestartAttempt:
        """Force a rolling restart of one deployment with conflict retry.

        Returns the final :class:`RestartAttempt` in state ``SUCCEEDED``,
        ``EXHAUSTED`` or, when ``stop_event`` was set during a backoff,
        ``ABANDONED``.  Non-conflict failures are counted and the original
        exception is re-raised.
        """
        attempt = RestartAttempt(
            deployment=name,
            namespace=namespace,
            backoff_seconds=float(self.settings.initial_backoff_seconds),
        )

        while True:
            attempt.state = RestartState.ATTEMPTING
            attempt.attempts += 1
            timestamp = self.now_fn()
            try:
                deployment = read_deployment(self.apps_api, name, namespace)
                stamp_restart_annotation(deployment, self.settings.restart_annotation, timestamp)
                replace_deployment(self.apps_api, name, namespace, deployment)
            except ApiException as exc:
                if not is_conflict(exc):
                    self._count_failure()
                    raise
                self._back_off(attempt, exc)
                if attempt.attempts >= self.settings.max_attempts:
                    attempt.state = RestartState.EXHAUSTED
                    METRICS.restarts_total.labels(result="exhausted").inc()
                    self.logger.warning(
                        "Max retries reached for deployment %s after %d attempts; "
                        "could not update the deployment",
                        attempt.key,
                        attempt.attempts,
                    )
                    return attempt
                if self.stop_event.is_set():
                    attempt.state = RestartState.ABANDONED
                    METRICS.restarts_total.labels(result="abandoned").inc()
                    self.logger.warning(
                        "Shutting down; abandoning restart of deployment %s after %d attempts",
                        attempt.key,
                        attempt.attempts,
                    )
                    return attempt
                continue
            except Exception:
                self._count_failure()
                raise

            attempt.state = RestartState.SUCCEEDED
            attempt.restarted_at = timestamp
            METRICS.restarts_total.labels(result="succeeded").inc()
            self.logger.info(
                "Deployment %s restarted (restartedAt=%s, attempt %d)",
                attempt.key,
                timestamp,
                attempt.attempts,
            )
            return attempt

    def _back_off(self, attempt: RestartAttempt, exc: ApiException) -> None:
        attempt.state = RestartState.CONFLICT_RETRY
        METRICS.conflict_retries_total.inc()
        delay = attempt.backoff_seconds
        self.logger.warning(
            "Conflict updating deployment %s, backing off %gs (attempt %d/%d): %s",
            attempt.key,
            delay,
            attempt.attempts,
            self.settings.max_attempts,
            exc.reason,
        )
        self.sleep_fn(delay)
        attempt.backoff_history.append(delay)
        attempt.backoff_seconds = delay + self.settings.backoff_increment_seconds

    @staticmethod
    def _count_failure() -> None:
        METRICS.restarts_total.labels(result="failed").inc()
