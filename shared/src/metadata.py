from __future__ import annotations

from collections.abc import Mapping

PREFIX = "telegraf.influxdata.com"

CONTROLLER_NAME = "telegraf-sidecar-operator"
CONTAINER_NAME = "telegraf"
CONFIG_VOLUME_NAME = f"{CONTAINER_NAME}-config"
CONFIG_MOUNT_PATH = "/etc/telegraf"
CONFIG_SECRET_KEY = "telegraf.conf"

# Sidecar container overrides
SIDECAR_IMAGE_ANNOTATION = f"{PREFIX}/image"
SIDECAR_REQUESTS_CPU_ANNOTATION = f"{PREFIX}/requests-cpu"
SIDECAR_REQUESTS_MEMORY_ANNOTATION = f"{PREFIX}/requests-memory"
SIDECAR_LIMITS_CPU_ANNOTATION = f"{PREFIX}/limits-cpu"
SIDECAR_LIMITS_MEMORY_ANNOTATION = f"{PREFIX}/limits-memory"
SIDECAR_ENV_SECRET_ANNOTATION = f"{PREFIX}/secret-env"
SIDECAR_ENV_CONFIGMAP_ANNOTATION = f"{PREFIX}/configmap-env"
# JSON object of ``{"<volumeName>": "<mountPath>"}``.
SIDECAR_VOLUME_MOUNTS_ANNOTATION = f"{PREFIX}/volume-mounts"

SIDECAR_ENV_LITERAL_PREFIX = f"{PREFIX}/env-literal-"
SIDECAR_ENV_FIELDREF_PREFIX = f"{PREFIX}/env-fieldref-"
SIDECAR_ENV_SECRETKEYREF_PREFIX = f"{PREFIX}/env-secretkeyref-"
SIDECAR_ENV_CONFIGMAPKEYREF_PREFIX = f"{PREFIX}/env-configmapkeyref-"

# Telegraf configuration overrides
TELEGRAF_CLASS_ANNOTATION = f"{PREFIX}/class"
# Deprecated: use TELEGRAF_PORTS_ANNOTATION.
TELEGRAF_PORT_ANNOTATION = f"{PREFIX}/port"
TELEGRAF_PORTS_ANNOTATION = f"{PREFIX}/ports"
TELEGRAF_PATH_ANNOTATION = f"{PREFIX}/path"
TELEGRAF_SCHEME_ANNOTATION = f"{PREFIX}/scheme"
TELEGRAF_METRIC_VERSION_ANNOTATION = f"{PREFIX}/metric-version"
TELEGRAF_NAMEPASS_ANNOTATION = f"{PREFIX}/namepass"
TELEGRAF_INTERVAL_ANNOTATION = f"{PREFIX}/interval"
TELEGRAF_RAW_INPUT_ANNOTATION = f"{PREFIX}/inputs"
TELEGRAF_INTERNAL_ANNOTATION = f"{PREFIX}/internal"

TELEGRAF_GLOBAL_TAG_LITERAL_PREFIX = f"{PREFIX}/global-tag-literal-"

# Labels
SIDECAR_INJECTED_LABEL = f"{PREFIX}/injected"
SIDECAR_SECRET_NAME_LABEL = f"{PREFIX}/secret-name"
SECRET_CLASS_NAME_LABEL = f"{PREFIX}/class"
SECRET_POD_LABEL = f"{PREFIX}/pod"
SECRET_MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
SECRET_CREATED_BY_LABEL = "app.kubernetes.io/created-by"


def annotations_with_prefix(annotations: Mapping[str, str] | None, prefix: str) -> dict[str, str]:
    """Return every annotation starting with *prefix*, keyed by the remainder of the key."""
    return {
        key[len(prefix):]: value
        for key, value in (annotations or {}).items()
        if key.startswith(prefix)
    }
