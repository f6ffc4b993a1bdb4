from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, V1Deployment, V1ReplicaSet
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

HTTP_CONFLICT = 409


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    In-cluster service account credentials are preferred; outside a pod the
    local kubeconfig is used instead.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 (pod watch) and AppsV1 (replica sets, deployments) clients."""
    return client.CoreV1Api(), client.AppsV1Api()


def is_conflict(exc: BaseException) -> bool:
    """True when *exc* is an optimistic-concurrency rejection (HTTP 409)."""
    return isinstance(exc, ApiException) and exc.status == HTTP_CONFLICT


def read_replica_set(apps_api: AppsV1Api, name: str, namespace: str) -> V1ReplicaSet:
    return apps_api.read_namespaced_replica_set(name=name, namespace=namespace)


def read_deployment(apps_api: AppsV1Api, name: str, namespace: str) -> V1Deployment:
    return apps_api.read_namespaced_deployment(name=name, namespace=namespace)


def replace_deployment(
    apps_api: AppsV1Api, name: str, namespace: str, deployment: V1Deployment
) -> V1Deployment:
    """Submit a full replace of *deployment*.

    The object carries the ``resourceVersion`` it was read with, so the API
    server rejects the write with 409 when someone else changed it meanwhile.
    """
    return apps_api.replace_namespaced_deployment(
        name=name,
        namespace=namespace,
        body=deployment,
    )


def stamp_restart_annotation(deployment: Any, annotation_key: str, timestamp: str) -> None:
    """Set the pod template annotation that makes the deployment roll its pods.

    This is the same mechanism ``kubectl rollout restart`` uses.  Missing
    template metadata or annotations are initialised; every other template
    annotation is left as it was.
    """
    template = deployment.spec.template
    if template.metadata is None:
        template.metadata = client.V1ObjectMeta()
    if template.metadata.annotations is None:
        template.metadata.annotations = {}
    template.metadata.annotations[annotation_key] = timestamp
