from __future__ import annotations

import enum
import logging
import os
import random
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from controller.src.classdata import ClassDataStore
from controller.src.kube import (
    build_config_secret,
    read_pod_or_none,
    read_secret_or_none,
    record_pod_event,
)
from controller.src.metrics import METRICS
from controller.src.telegraf import ConfigBuildError, TelegrafConfigBuilder
from controller.src.workqueue import WorkQueue
from shared.src import metadata
from shared.src.settings import env_bool, env_int

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


class SecretAction(enum.Enum):
    """What to do about a pod's config secret given its current state."""

    CREATE = "create"
    SKIP = "skip"
    REQUEUE = "requeue"


class ReconcileOutcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    SKIPPED = "skipped"
    REQUEUE = "requeue"
    NOT_INJECTED = "not_injected"
    POD_GONE = "pod_gone"
    MISSING_SECRET_NAME = "missing_secret_name"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single pod reconciliation.

    ``requeue`` is set when the pod must be looked at again later without
    it being an error, e.g. a same-named secret owned by someone else.
    """

    namespace: str
    pod_name: str
    outcome: ReconcileOutcome
    secret_name: str | None = None

    @property
    def requeue(self) -> bool:
        return self.outcome is ReconcileOutcome.REQUEUE


def pod_fingerprint(pod_meta: Any) -> tuple[Any, ...]:
    """Return the parts of a pod's metadata whose changes warrant a reconcile.

    Status-only updates leave generation, labels and annotations alone.
    """
    return (
        getattr(pod_meta, "generation", None),
        tuple(sorted((pod_meta.labels or {}).items())),
        tuple(sorted((pod_meta.annotations or {}).items())),
    )


def is_owned_by(obj: Any, owner_uid: str | None) -> bool:
    """Return True if *owner_uid* appears in *obj*'s owner references."""
    if not owner_uid:
        return False
    obj_meta = getattr(obj, "metadata", None)
    owner_refs: Iterable[Any] = getattr(obj_meta, "owner_references", None) or []
    return any(getattr(ref, "uid", None) == owner_uid for ref in owner_refs)


def decide_secret_action(pod_uid: str | None, secret: Any | None) -> SecretAction:
    """Decide between create, skip and requeue for a pod's target secret.

    A secret with the right name but without the pod as owner belongs to
    another (usually deleted) pod; it is neither overwritten nor treated
    as done.
    """
    if secret is None:
        return SecretAction.CREATE
    if is_owned_by(secret, pod_uid):
        return SecretAction.SKIP
    return SecretAction.REQUEUE


class PodReconciler:
    """Ensures every injected pod has exactly one Telegraf config secret.

    The admission webhook records the target secret name on the pod as a
    label.  This controller watches pods carrying the ``injected`` label,
    queues them by ``(namespace, name)`` and processes the queue with a
    bounded pool of worker threads.  Each reconcile performs live reads
    of the pod and the secret, then one of:

    ``skip``
        Secret exists and is owned by the pod.
    ``requeue``
        Secret exists but is owned by something else; retried with backoff.
    ``create``
        Secret missing; the configuration is fully rendered first, then the
        secret is created in a single API call.  ``409 Conflict`` means a
        concurrent actor created it and counts as success.

    Failures (unknown class, bad raw inputs, API errors) are recorded as
    pod events and retried with bounded exponential backoff.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config_builder: TelegrafConfigBuilder,
        namespace: str | None = None,
        workers: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.core_api = core_api
        self.config_builder = config_builder
        self.namespace = namespace or None
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.label_selector = metadata.SIDECAR_INJECTED_LABEL

        self.queue = WorkQueue()
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._fingerprints: dict[tuple[str, str], tuple[Any, ...]] = {}
        self._fingerprint_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        pod = read_pod_or_none(self.core_api, namespace, name)
        if pod is None:
            self.logger.debug("Pod %s/%s no longer exists; nothing to reconcile", namespace, name)
            return self._record(ReconcileResult(namespace, name, ReconcileOutcome.POD_GONE))

        labels = pod.metadata.labels or {}
        if metadata.SIDECAR_INJECTED_LABEL not in labels:
            self.logger.info(
                "Reconciliation skipped for %s/%s, pod doesn't have telegraf container",
                namespace,
                name,
            )
            return self._record(ReconcileResult(namespace, name, ReconcileOutcome.NOT_INJECTED))

        secret_name = labels.get(metadata.SIDECAR_SECRET_NAME_LABEL)
        if not secret_name:
            self.logger.warning(
                "Pod %s/%s is marked injected but has no %s label",
                namespace,
                name,
                metadata.SIDECAR_SECRET_NAME_LABEL,
            )
            return self._record(
                ReconcileResult(namespace, name, ReconcileOutcome.MISSING_SECRET_NAME)
            )

        secret = read_secret_or_none(self.core_api, namespace, secret_name)
        action = decide_secret_action(pod.metadata.uid, secret)
        if action is SecretAction.SKIP:
            self.logger.info(
                "Reconciliation skipped for %s/%s, telegraf config secret %s already exists",
                namespace,
                name,
                secret_name,
            )
            return self._record(
                ReconcileResult(namespace, name, ReconcileOutcome.SKIPPED, secret_name)
            )
        if action is SecretAction.REQUEUE:
            self.logger.info(
                "Secret %s/%s exists but is not owned by pod %s; requeueing",
                namespace,
                secret_name,
                name,
            )
            return self._record(
                ReconcileResult(namespace, name, ReconcileOutcome.REQUEUE, secret_name)
            )

        return self._record(self._create_secret(pod, secret_name))

    @staticmethod
    def _record(result: ReconcileResult) -> ReconcileResult:
        METRICS.reconcile_total.labels(result=result.outcome.value).inc()
        return result

    def _create_secret(self, pod: Any, secret_name: str) -> ReconcileResult:
        namespace = pod.metadata.namespace
        name = pod.metadata.name

        override_result = self.config_builder.apply_annotation_overrides(pod.metadata.annotations)
        if override_result.warnings:
            message = (
                "one or more warnings were generated when applying telegraf pod annotations: "
                f"[ {override_result.message} ]"
            )
            METRICS.annotation_warnings_total.inc(len(override_result.warnings))
            record_pod_event(
                self.core_api, pod, EVENT_WARNING, "InvalidAnnotationFormat", message
            )
            self.logger.info("Pod %s/%s: %s", namespace, name, message)

        try:
            config_data = self.config_builder.build_config_data(override_result.overrides)
        except ConfigBuildError as exc:
            METRICS.config_build_errors_total.labels(reason=type(exc).__name__).inc()
            record_pod_event(
                self.core_api,
                pod,
                EVENT_WARNING,
                "InvalidTelegrafConfiguration",
                f"error building telegraf config: {exc}",
            )
            self.logger.error("Error building telegraf config for %s/%s: %s", namespace, name, exc)
            raise

        secret = build_config_secret(
            pod,
            secret_name=secret_name,
            class_name=override_result.overrides.class_name,
            config_data=config_data,
        )
        try:
            self.core_api.create_namespaced_secret(namespace=namespace, body=secret)
        except ApiException as exc:
            if exc.status == 409:
                self.logger.info(
                    "Telegraf config secret %s/%s for pod %s already exists",
                    namespace,
                    secret_name,
                    name,
                )
                return ReconcileResult(
                    namespace, name, ReconcileOutcome.ALREADY_EXISTS, secret_name
                )
            record_pod_event(
                self.core_api,
                pod,
                EVENT_WARNING,
                "CreateSecretInClusterError",
                f"failed to create secret: {secret_name} in cluster: {exc.reason}",
            )
            self.logger.exception("Failed to create secret %s/%s", namespace, secret_name)
            raise

        METRICS.secrets_created_total.inc()
        record_pod_event(
            self.core_api,
            pod,
            EVENT_NORMAL,
            "TelegrafConfigCreateSuccessful",
            f"successfully created telegraf config secret: {secret_name}",
        )
        self.logger.info(
            "Created telegraf config secret %s/%s for pod %s", namespace, secret_name, name
        )
        return ReconcileResult(namespace, name, ReconcileOutcome.CREATED, secret_name)

    # ------------------------------------------------------------------
    # Queue and workers
    # ------------------------------------------------------------------

    def handle_pod_event(self, event_type: str, pod: Any) -> tuple[str, str] | None:
        """Queue a pod from a watch event; return its key, or ``None`` if ignored.

        ``MODIFIED`` events are only queued when the pod's generation, labels
        or annotations changed since the last event seen for it.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        pod_meta = getattr(pod, "metadata", None)
        if pod_meta is None:
            return None

        key = (pod_meta.namespace, pod_meta.name)
        if event_type == "DELETED" or metadata.SIDECAR_INJECTED_LABEL not in (
            pod_meta.labels or {}
        ):
            with self._fingerprint_lock:
                self._fingerprints.pop(key, None)
            return None
        if not pod_meta.name or not pod_meta.namespace:
            self.logger.warning("Skipping pod event with empty name or namespace")
            return None

        fingerprint = pod_fingerprint(pod_meta)
        with self._fingerprint_lock:
            previous = self._fingerprints.get(key)
            self._fingerprints[key] = fingerprint
        if event_type == "MODIFIED" and previous == fingerprint:
            return None

        self.queue.add(key)
        return key

    def _enqueue_listing(self, pods: Any) -> None:
        listed: set[tuple[str, str]] = set()
        for pod in getattr(pods, "items", None) or []:
            key = self.handle_pod_event("ADDED", pod)
            if key is not None:
                listed.add(key)
        # Pods deleted while the watch was down never get a DELETED event.
        with self._fingerprint_lock:
            for key in set(self._fingerprints) - listed:
                del self._fingerprints[key]

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Reconcile one queued key; return False if none became available."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        namespace, name = key
        try:
            result = self.reconcile(namespace, name)
        except Exception:
            METRICS.reconcile_errors_total.inc()
            delay = self.queue.add_rate_limited(key)
            self.logger.exception(
                "Reconcile of pod %s/%s failed; retrying in %.1fs", namespace, name, delay
            )
        else:
            if result.requeue:
                delay = self.queue.add_rate_limited(key)
                self.logger.info("Requeued pod %s/%s in %.1fs", namespace, name, delay)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker_loop(self) -> None:
        while True:
            processed = self.process_next_item(timeout=1.0)
            if not processed and self.queue.shutting_down:
                return

    def _start_workers(self) -> list[threading.Thread]:
        threads = []
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop, name=f"reconcile-worker-{index}", daemon=True
            )
            thread.start()
            threads.append(thread)
        return threads

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    def _list_pods(self, **kwargs: Any) -> Any:
        if self.namespace:
            return self.core_api.list_namespaced_pod(namespace=self.namespace, **kwargs)
        return self.core_api.list_pod_for_all_namespaces(**kwargs)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the reconcile workers and the list-then-watch loop until shutdown.

        1. Starts ``workers`` reconcile threads.
        2. Lists injected pods (retrying with jittered exponential backoff)
           and queues every one of them, then marks the controller ready.
        3. Watches from the list's ``resourceVersion``, queueing ``ADDED``
           and ``MODIFIED`` pods.
        4. On ``410 Gone`` re-lists and re-queues everything; reconciles
           are idempotent so this is safe.
        5. On other errors backs off with jitter (capped at 30 s).
        6. On shutdown, lets workers finish the keys already ready and exits.

        ``401`` / ``403`` responses terminate the loop immediately: they are
        RBAC or credential problems that retrying will not fix.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        worker_threads = self._start_workers()
        try:
            self._watch_pods(stop)
        finally:
            self.ready.clear()
            self.queue.shut_down()
            for thread in worker_threads:
                thread.join()

    def _watch_pods(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_pods(label_selector=self.label_selector)
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._enqueue_listing(initial)
                self.ready.set()
                self.logger.info("Starting pod watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial pod list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes pod list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial pod list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_pods,
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=30,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    obj_meta = getattr(obj, "metadata", None)
                    if obj_meta and obj_meta.resource_version:
                        resource_version = obj_meta.resource_version

                    self.handle_pod_event(event_type=str(event.get("type", "")), pod=obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing pods")
                    try:
                        fresh = self._list_pods(label_selector=self.label_selector)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._enqueue_listing(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list pods after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
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


def build_controller_from_env(core_api: CoreV1Api, class_data: ClassDataStore) -> PodReconciler:
    """Construct a :class:`PodReconciler` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``           — Namespace to watch; empty watches all (``""``).
        ``DEFAULT_CLASS``             — Class used when a pod names none (``default``).
        ``ENABLE_INTERNAL_PLUGIN``    — Add ``[[inputs.internal]]`` to every config (``false``).
        ``MAX_CONCURRENT_RECONCILES`` — Worker threads (``4``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()

    default_class = os.getenv("DEFAULT_CLASS", "default").strip()
    if not default_class:
        raise ValueError("DEFAULT_CLASS must be a non-empty string")
    if class_data.get(default_class) is None:
        logging.getLogger(__name__).warning(
            "Default class %r is not among the loaded classes; pods without a class "
            "annotation will fail to reconcile",
            default_class,
        )

    workers = env_int("MAX_CONCURRENT_RECONCILES", 4, minimum=1, maximum=64)

    builder = TelegrafConfigBuilder(
        class_data,
        default_class=default_class,
        enable_internal=env_bool("ENABLE_INTERNAL_PLUGIN"),
    )
    return PodReconciler(
        core_api=core_api,
        config_builder=builder,
        namespace=namespace,
        workers=workers,
    )
