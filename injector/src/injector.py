from __future__ import annotations

import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from injector.src.config import InjectorConfig
from injector.src.sidecar import ContainerConfig
from shared.src import metadata

LOGGER = logging.getLogger(__name__)

MAX_NAME_LENGTH = 63
RANDOM_SUFFIX_LENGTH = 5
# Truncation point for the deterministic part, leaving room for "-" plus the suffix.
MAX_BASE_NAME_LENGTH = MAX_NAME_LENGTH - RANDOM_SUFFIX_LENGTH - 1
# Same alphabet the API server uses for generateName: no vowels, no ambiguous digits.
_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"


def random_suffix(length: int = RANDOM_SUFFIX_LENGTH) -> str:
    return "".join(random.choices(_SUFFIX_ALPHABET, k=length))  # noqa: S311


@dataclass(frozen=True)
class InjectionDecision:
    """Outcome of evaluating one pod at admission time.

    ``patch`` is a single RFC 6902 document carrying the container, the
    config volume and both labels, so the API server applies them together.
    ``warnings`` lists advisory problems with the pod's annotations; they
    never prevent injection.
    """

    inject: bool
    container: dict[str, Any] | None = None
    volume: dict[str, Any] | None = None
    secret_name: str | None = None
    patch: list[dict[str, Any]] = field(default_factory=list)
    warnings: tuple[str, ...] = ()


def _escape_json_pointer(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _pod_metadata(pod: Mapping[str, Any]) -> Mapping[str, Any]:
    return pod.get("metadata") or {}


def _pod_spec(pod: Mapping[str, Any]) -> Mapping[str, Any]:
    return pod.get("spec") or {}


class SidecarInjector:
    """Decides whether a pod gets a Telegraf sidecar and builds the mutation.

    Pods are handled in their admission JSON form (plain dicts).  The
    injector is stateless apart from its configuration, so a single
    instance serves every admission request.
    """

    def __init__(
        self,
        config: InjectorConfig,
        suffix_fn: Callable[[], str] = random_suffix,
    ) -> None:
        self.config = config
        self.suffix_fn = suffix_fn

    def _target_containers(self, pod: Mapping[str, Any]) -> list[Mapping[str, Any]]:
        key = "initContainers" if self.config.native_sidecars else "containers"
        return list(_pod_spec(pod).get(key) or [])

    def has_telegraf_container(self, pod: Mapping[str, Any]) -> bool:
        return any(
            container.get("name") == metadata.CONTAINER_NAME
            for container in self._target_containers(pod)
        )

    def should_inject(self, pod: Mapping[str, Any]) -> bool:
        """Return True if *pod* opts in via an annotation and has no sidecar yet."""
        if self.has_telegraf_container(pod):
            return False
        annotations = _pod_metadata(pod).get("annotations") or {}
        return any(key.startswith(f"{metadata.PREFIX}/") for key in annotations)

    def generate_secret_name(self, pod: Mapping[str, Any]) -> str:
        """Return ``<prefix>-<pod name>-<random>`` bounded to 63 characters.

        Pods created through ``generateName`` have no name yet at admission,
        so the generate-name stem is used instead.  The random suffix keeps
        names unique when many pods share the same stem.
        """
        pod_meta = _pod_metadata(pod)
        pod_name = pod_meta.get("name") or pod_meta.get("generateName") or ""
        base = f"{self.config.secret_name_prefix}-{pod_name.removesuffix('-')}-"
        if len(base) > MAX_BASE_NAME_LENGTH:
            base = base[:MAX_BASE_NAME_LENGTH] + "-"
        return base + self.suffix_fn()

    def _build_patch(
        self,
        pod: Mapping[str, Any],
        container: dict[str, Any],
        volume: dict[str, Any],
        labels: dict[str, str],
    ) -> list[dict[str, Any]]:
        spec = _pod_spec(pod)
        container_key = "initContainers" if self.config.native_sidecars else "containers"
        patch: list[dict[str, Any]] = []

        if spec.get(container_key):
            patch.append({"op": "add", "path": f"/spec/{container_key}/-", "value": container})
        else:
            patch.append({"op": "add", "path": f"/spec/{container_key}", "value": [container]})

        if spec.get("volumes"):
            patch.append({"op": "add", "path": "/spec/volumes/-", "value": volume})
        else:
            patch.append({"op": "add", "path": "/spec/volumes", "value": [volume]})

        if _pod_metadata(pod).get("labels"):
            for key, value in labels.items():
                patch.append(
                    {
                        "op": "add",
                        "path": f"/metadata/labels/{_escape_json_pointer(key)}",
                        "value": value,
                    }
                )
        else:
            patch.append({"op": "add", "path": "/metadata/labels", "value": dict(labels)})
        return patch

    def inject(self, pod: Mapping[str, Any]) -> InjectionDecision:
        """Evaluate *pod* and return the mutation to apply, if any."""
        pod_meta = _pod_metadata(pod)
        pod_ref = pod_meta.get("name") or pod_meta.get("generateName") or "<unnamed>"

        if not self.should_inject(pod):
            LOGGER.debug("Skipping pod %s, sidecar injection not requested", pod_ref)
            return InjectionDecision(inject=False)

        container_config = ContainerConfig.from_config(self.config)
        warnings = container_config.apply_annotation_overrides(pod_meta.get("annotations"))
        container = container_config.build_container_spec(
            native_sidecar=self.config.native_sidecars
        )

        secret_name = self.generate_secret_name(pod)
        volume = {
            "name": metadata.CONFIG_VOLUME_NAME,
            "secret": {"secretName": secret_name},
        }
        labels = {
            metadata.SIDECAR_INJECTED_LABEL: "true",
            metadata.SIDECAR_SECRET_NAME_LABEL: secret_name,
        }

        LOGGER.info("Injecting telegraf sidecar into pod %s (secret=%s)", pod_ref, secret_name)
        return InjectionDecision(
            inject=True,
            container=container,
            volume=volume,
            secret_name=secret_name,
            patch=self._build_patch(pod, container, volume, labels),
            warnings=tuple(warnings),
        )
