from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from reboot_agent.src.classifier import AnnotationVerdict, classify_annotations
from reboot_agent.src.config import AgentSettings
from reboot_agent.src.metrics import METRICS
from reboot_agent.src.models import PodEventType, PodSnapshot
from reboot_agent.src.restart import DeploymentRestarter, RestartAttempt


class PodRebootWatcher:
    """Watches pods and restarts the owning deployment of any pod marked for reboot.

    Pod events are read from a single watch stream and classified strictly in
    the order they arrive.  A ``MODIFIED`` event whose annotations carry the
    reboot marker is handed to a worker pool, so a restart that is backing
    off after a conflict never holds up the stream.

    Every dispatched restart is tracked until it finishes.  Failures inside a
    restart are logged and counted in the worker and never reach the watch
    loop.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        restarter: DeploymentRestarter,
        settings: AgentSettings,
        logger: logging.Logger | None = None,
        watch_timeout_seconds: int = 300,
    ) -> None:
        self.core_api = core_api
        self.restarter = restarter
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.watch_timeout_seconds = watch_timeout_seconds

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

        self._executor: ThreadPoolExecutor | None = None
        self._inflight: set[Future[list[RestartAttempt]]] = set()
        self._inflight_lock = threading.Lock()

    def handle_pod_event(
        self, event_type: str, pod: Any
    ) -> Future[list[RestartAttempt]] | None:
        """Process a single pod watch event.

        Returns the future of the dispatched restart when the event asked for
        one, otherwise ``None``.
        """
        kind = PodEventType.from_raw(event_type)
        METRICS.pod_events_total.labels(type=kind.value.lower()).inc()

        match kind:
            case PodEventType.ADDED:
                self.logger.info("Pod added: %s", PodSnapshot.from_pod(pod).key)
            case PodEventType.DELETED:
                self.logger.info("Pod deleted: %s", PodSnapshot.from_pod(pod).key)
            case PodEventType.MODIFIED:
                snapshot = PodSnapshot.from_pod(pod)
                self.logger.info("Pod modified: %s", snapshot.key)
                if snapshot.annotations:
                    return self._handle_annotations(snapshot)
            case _:
                self.logger.info("Unknown event type: %s", event_type)
        return None

    def _handle_annotations(
        self, pod: PodSnapshot
    ) -> Future[list[RestartAttempt]] | None:
        verdict = classify_annotations(pod.annotations, self.settings)
        if verdict is AnnotationVerdict.REBOOT_REQUESTED:
            METRICS.reboot_requests_total.inc()
            self.logger.info(
                "Reboot annotation found on pod %s; restarting owning deployment", pod.key
            )
            return self._dispatch_restart(pod)
        if verdict is AnnotationVerdict.REBOOT_IN_PROGRESS:
            self.logger.info("Reboot in progress annotation found on pod %s", pod.key)
        return None

    def _dispatch_restart(self, pod: PodSnapshot) -> Future[list[RestartAttempt]]:
        with self._inflight_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.restart_workers,
                    thread_name_prefix="reboot-restart",
                )
            future = self._executor.submit(self._run_restart, pod)
            self._inflight.add(future)
        METRICS.inflight_restarts.inc()
        future.add_done_callback(self._restart_finished)
        return future

    def _restart_finished(self, future: Future[list[RestartAttempt]]) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)
        METRICS.inflight_restarts.dec()

    def _run_restart(self, pod: PodSnapshot) -> list[RestartAttempt]:
        """Run one dispatched restart; the worker's error boundary."""
        try:
            return self.restarter.restart_for_pod(pod)
        except ApiException as exc:
            self.logger.exception(
                "Failed to restart deployment for pod %s (status=%s)", pod.key, exc.status
            )
        except Exception:
            self.logger.exception("Unexpected error restarting deployment for pod %s", pod.key)
        return []

    def wait_for_restarts(self, timeout: float | None = None) -> bool:
        """Block until every dispatched restart finished.  False on timeout."""
        with self._inflight_lock:
            pending = set(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, wait: bool = True) -> None:
        """Shut the restart pool down and cancel restarts that have not started.

        With *wait* the call blocks until running restarts finish.  Without it
        running restarts are told to give up at their next backoff and the
        call returns at once.  A later dispatch starts a fresh pool.
        """
        if not wait:
            self.restarter.stop_event.set()
        with self._inflight_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _watch_target(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.settings.namespace:
            return self.core_api.list_namespaced_pod, {"namespace": self.settings.namespace}
        return self.core_api.list_pod_for_all_namespaces, {}

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: watch pods until shutdown.

        The stream resumes from the last seen ``resourceVersion``.  On
        ``410 Gone`` the version is dropped and the watch restarts from the
        current state; the replayed ``ADDED`` events never trigger restarts.
        Other API or transport errors reconnect after an exponential backoff
        with jitter capped at 30 s.  ``401`` / ``403`` mean the service
        account lacks RBAC permissions and end the loop immediately.

        The restart worker pool is shut down when the loop exits: queued
        restarts are cancelled and running ones are waited for.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.restarter.stop_event.clear()

        list_fn, list_kwargs = self._watch_target()
        resource_version: str | None = None
        # Reset to 1 after every clean stream, doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        try:
            while not self._should_stop(stop):
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    self.logger.info(
                        "Starting pod watch in %s from resourceVersion %s",
                        self.settings.namespace or "all namespaces",
                        resource_version,
                    )
                    stream = watcher.stream(
                        list_fn,
                        resource_version=resource_version,
                        timeout_seconds=self.watch_timeout_seconds,
                        **list_kwargs,
                    )

                    for event in stream:
                        self.ready.set()
                        if self._should_stop(stop):
                            break

                        obj = event.get("object")
                        if obj is None:
                            continue

                        metadata = getattr(obj, "metadata", None)
                        if metadata is not None and getattr(metadata, "resource_version", None):
                            resource_version = metadata.resource_version

                        self.handle_pod_event(event_type=str(event.get("type", "")), pod=obj)

                    self.ready.set()
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, restarting watch")
                        resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check agent RBAC and service account permissions.",
                            exc.status,
                        )
                        METRICS.watch_errors_total.inc()
                        return

                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self.ready.clear()
            self.close()


def build_watcher(
    core_api: CoreV1Api, apps_api: AppsV1Api, settings: AgentSettings
) -> PodRebootWatcher:
    """Wire a :class:`PodRebootWatcher` and its restarter from *settings*."""
    restarter = DeploymentRestarter(apps_api=apps_api, settings=settings)
    return PodRebootWatcher(core_api=core_api, restarter=restarter, settings=settings)
