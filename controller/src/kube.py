from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from shared.src import metadata

LOGGER = logging.getLogger(__name__)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def read_pod_or_none(core_api: CoreV1Api, namespace: str, name: str) -> Any | None:
    """Live read of a pod; ``None`` when it no longer exists."""
    try:
        return core_api.read_namespaced_pod(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise


def read_secret_or_none(core_api: CoreV1Api, namespace: str, name: str) -> Any | None:
    """Live read of a secret; ``None`` when it does not exist."""
    try:
        return core_api.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise


def build_config_secret(
    pod: Any, secret_name: str, class_name: str, config_data: str
) -> client.V1Secret:
    """Build the Telegraf config secret for *pod*, owner-referenced to it.

    The owner reference is what lets a later reconcile tell this pod's
    secret apart from a same-named leftover of a previous pod.
    """
    pod_meta = pod.metadata
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        type="Opaque",
        metadata=client.V1ObjectMeta(
            name=secret_name,
            namespace=pod_meta.namespace,
            labels={
                metadata.SECRET_CLASS_NAME_LABEL: class_name,
                metadata.SECRET_POD_LABEL: pod_meta.name,
                metadata.SECRET_MANAGED_BY_LABEL: metadata.CONTROLLER_NAME,
                metadata.SECRET_CREATED_BY_LABEL: metadata.CONTROLLER_NAME,
            },
            owner_references=[
                client.V1OwnerReference(
                    api_version="v1",
                    kind="Pod",
                    name=pod_meta.name,
                    uid=pod_meta.uid,
                )
            ],
        ),
        string_data={metadata.CONFIG_SECRET_KEY: config_data},
    )


def record_pod_event(
    core_api: CoreV1Api,
    pod: Any,
    event_type: str,
    reason: str,
    message: str,
) -> None:
    """Attach a Kubernetes Event to *pod*.

    Events are informational, so a failure to record one is logged and
    otherwise ignored.
    """
    pod_meta = pod.metadata
    timestamp = utc_now_rfc3339()
    body = {
        "apiVersion": "v1",
        "kind": "Event",
        "metadata": {"generateName": f"{pod_meta.name}.", "namespace": pod_meta.namespace},
        "involvedObject": {
            "apiVersion": "v1",
            "kind": "Pod",
            "name": pod_meta.name,
            "namespace": pod_meta.namespace,
            "uid": pod_meta.uid,
        },
        "type": event_type,
        "reason": reason,
        "message": message,
        "source": {"component": metadata.CONTROLLER_NAME},
        "firstTimestamp": timestamp,
        "lastTimestamp": timestamp,
        "count": 1,
    }
    try:
        core_api.create_namespaced_event(namespace=pod_meta.namespace, body=body)
    except ApiException as exc:
        LOGGER.warning(
            "Failed to record %s event for pod %s/%s: %s",
            reason,
            pod_meta.namespace,
            pod_meta.name,
            exc.reason,
        )
