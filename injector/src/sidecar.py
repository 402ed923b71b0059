from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from injector.src.config import InjectorConfig, is_valid_quantity
from shared.src import metadata

LOGGER = logging.getLogger(__name__)

TELEGRAF_COMMAND = (
    "telegraf",
    "--config",
    f"{metadata.CONFIG_MOUNT_PATH}/{metadata.CONFIG_SECRET_KEY}",
)


def _field_ref_env(name: str, field_path: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": field_path}}}


def _default_env() -> list[dict[str, Any]]:
    return [
        _field_ref_env("PODNAME", "metadata.name"),
        _field_ref_env("NODENAME", "spec.nodeName"),
        _field_ref_env("NAMESPACE", "metadata.namespace"),
    ]


@dataclass
class ContainerConfig:
    """Mutable per-pod sidecar container settings.

    Starts from the process defaults in :class:`InjectorConfig` and is
    adjusted by pod annotations in :meth:`apply_annotation_overrides`.
    Bad annotation values never raise: they are logged, reported in the
    returned warning list and the default is kept, so a typo in a pod
    template can never block admission.
    """

    image: str
    requests_cpu: str
    requests_memory: str
    limits_cpu: str
    limits_memory: str
    env: list[dict[str, Any]] = field(default_factory=_default_env)
    env_from: list[dict[str, Any]] = field(default_factory=list)
    extra_volume_mounts: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: InjectorConfig) -> ContainerConfig:
        return cls(
            image=config.image,
            requests_cpu=config.requests_cpu,
            requests_memory=config.requests_memory,
            limits_cpu=config.limits_cpu,
            limits_memory=config.limits_memory,
        )

    def _override_quantity(
        self,
        annotations: Mapping[str, str],
        annotation: str,
        attribute: str,
        warnings: list[str],
    ) -> None:
        override = annotations.get(annotation)
        if override is None:
            return
        if is_valid_quantity(override):
            setattr(self, attribute, override)
            return
        default = getattr(self, attribute)
        LOGGER.warning(
            "Invalid resource override %r for %s, using default value %r",
            override,
            annotation,
            default,
        )
        warnings.append(
            f"invalid resource quantity {override!r} for {annotation}, using default {default!r}"
        )

    def _key_selector_env(
        self,
        annotations: Mapping[str, str],
        prefix: str,
        selector_kind: str,
        warnings: list[str],
    ) -> None:
        for name, value in sorted(metadata.annotations_with_prefix(annotations, prefix).items()):
            object_name, separator, key = value.partition(".")
            if not separator or not object_name or not key:
                LOGGER.info(
                    "Ignoring %s for env var %s, invalid value: %r", selector_kind, name, value
                )
                warnings.append(
                    f"invalid {selector_kind} value {value!r} for env var {name}, "
                    "expected <name>.<key>"
                )
                continue
            self.env.append(
                {
                    "name": name,
                    "valueFrom": {selector_kind: {"name": object_name, "key": key}},
                }
            )

    def apply_annotation_overrides(self, annotations: Mapping[str, str] | None) -> list[str]:
        """Apply sidecar annotations and return the advisory warnings they produced."""
        annotations = annotations or {}
        warnings: list[str] = []

        image = annotations.get(metadata.SIDECAR_IMAGE_ANNOTATION)
        if image:
            self.image = image

        self._override_quantity(
            annotations, metadata.SIDECAR_REQUESTS_CPU_ANNOTATION, "requests_cpu", warnings
        )
        self._override_quantity(
            annotations, metadata.SIDECAR_REQUESTS_MEMORY_ANNOTATION, "requests_memory", warnings
        )
        self._override_quantity(
            annotations, metadata.SIDECAR_LIMITS_CPU_ANNOTATION, "limits_cpu", warnings
        )
        self._override_quantity(
            annotations, metadata.SIDECAR_LIMITS_MEMORY_ANNOTATION, "limits_memory", warnings
        )

        secret_env = annotations.get(metadata.SIDECAR_ENV_SECRET_ANNOTATION)
        if secret_env:
            self.env_from.append({"secretRef": {"name": secret_env, "optional": True}})

        configmap_env = annotations.get(metadata.SIDECAR_ENV_CONFIGMAP_ANNOTATION)
        if configmap_env:
            self.env_from.append({"configMapRef": {"name": configmap_env, "optional": True}})

        literals = metadata.annotations_with_prefix(
            annotations, metadata.SIDECAR_ENV_LITERAL_PREFIX
        )
        for name, value in sorted(literals.items()):
            self.env.append({"name": name, "value": value})

        field_refs = metadata.annotations_with_prefix(
            annotations, metadata.SIDECAR_ENV_FIELDREF_PREFIX
        )
        for name, value in sorted(field_refs.items()):
            self.env.append(_field_ref_env(name, value))

        self._key_selector_env(
            annotations, metadata.SIDECAR_ENV_CONFIGMAPKEYREF_PREFIX, "configMapKeyRef", warnings
        )
        self._key_selector_env(
            annotations, metadata.SIDECAR_ENV_SECRETKEYREF_PREFIX, "secretKeyRef", warnings
        )

        raw_mounts = annotations.get(metadata.SIDECAR_VOLUME_MOUNTS_ANNOTATION)
        if raw_mounts:
            self._apply_volume_mounts(raw_mounts, warnings)

        return warnings

    def _apply_volume_mounts(self, raw_mounts: str, warnings: list[str]) -> None:
        try:
            mounts = json.loads(raw_mounts)
        except json.JSONDecodeError as exc:
            mounts = None
            reason = str(exc)
        else:
            reason = "expected a JSON object of volume name to mount path"
        if not isinstance(mounts, dict) or not all(
            isinstance(k, str) and isinstance(v, str) and k and v for k, v in mounts.items()
        ):
            LOGGER.warning(
                "Ignoring invalid %s annotation: %s",
                metadata.SIDECAR_VOLUME_MOUNTS_ANNOTATION,
                reason,
            )
            warnings.append(
                f"invalid value for {metadata.SIDECAR_VOLUME_MOUNTS_ANNOTATION}: {reason}"
            )
            return
        for volume_name, mount_path in sorted(mounts.items()):
            self.extra_volume_mounts.append({"name": volume_name, "mountPath": mount_path})

    def _resources(self) -> dict[str, dict[str, str]]:
        requests = {
            name: value
            for name, value in (("cpu", self.requests_cpu), ("memory", self.requests_memory))
            if value
        }
        limits = {
            name: value
            for name, value in (("cpu", self.limits_cpu), ("memory", self.limits_memory))
            if value
        }
        resources: dict[str, dict[str, str]] = {}
        if requests:
            resources["requests"] = requests
        if limits:
            resources["limits"] = limits
        return resources

    def build_container_spec(self, native_sidecar: bool = False) -> dict[str, Any]:
        """Return the sidecar container in Kubernetes JSON form (camelCase keys)."""
        container: dict[str, Any] = {
            "name": metadata.CONTAINER_NAME,
            "image": self.image,
            "command": list(TELEGRAF_COMMAND),
            "resources": self._resources(),
            "env": [dict(item) for item in self.env],
            "volumeMounts": [
                {"name": metadata.CONFIG_VOLUME_NAME, "mountPath": metadata.CONFIG_MOUNT_PATH},
                *self.extra_volume_mounts,
            ],
        }
        if self.env_from:
            container["envFrom"] = [dict(item) for item in self.env_from]
        if native_sidecar:
            container["restartPolicy"] = "Always"
        return container
