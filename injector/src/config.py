from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from kubernetes.utils import parse_quantity

from shared.src.settings import parse_bool

DEFAULT_SECRET_NAME_PREFIX = "telegraf-config"
DEFAULT_TELEGRAF_IMAGE = "docker.io/library/telegraf:1.30-alpine"
DEFAULT_REQUESTS_CPU = "100m"
DEFAULT_REQUESTS_MEMORY = "100Mi"
DEFAULT_LIMITS_CPU = "200m"
DEFAULT_LIMITS_MEMORY = "300Mi"


class ConfigError(RuntimeError):
    """Raised when the injector configuration is invalid."""


@dataclass(frozen=True)
class InjectorConfig:
    """Immutable sidecar injector configuration loaded at startup.

    Attributes:
        secret_name_prefix: Leading part of every generated config secret name.
        image:              Telegraf image used for the sidecar container.
        requests_cpu:       Default CPU request; empty leaves it unset.
        requests_memory:    Default memory request; empty leaves it unset.
        limits_cpu:         Default CPU limit; empty leaves it unset.
        limits_memory:      Default memory limit; empty leaves it unset.
        native_sidecars:    Inject as a restartable init container
                            (Kubernetes >= 1.28) instead of a regular container.
    """

    secret_name_prefix: str = DEFAULT_SECRET_NAME_PREFIX
    image: str = DEFAULT_TELEGRAF_IMAGE
    requests_cpu: str = DEFAULT_REQUESTS_CPU
    requests_memory: str = DEFAULT_REQUESTS_MEMORY
    limits_cpu: str = DEFAULT_LIMITS_CPU
    limits_memory: str = DEFAULT_LIMITS_MEMORY
    native_sidecars: bool = False


def is_valid_quantity(value: str) -> bool:
    """Return True if *value* parses as a Kubernetes resource quantity."""
    try:
        parse_quantity(value)
    except (ValueError, ArithmeticError):
        return False
    return True


def validate_resources(config: InjectorConfig) -> None:
    """Reject default requests/limits that are not valid quantities.

    Empty values are allowed and mean the resource is left unset.
    """
    for setting, value in (
        ("TELEGRAF_REQUESTS_CPU", config.requests_cpu),
        ("TELEGRAF_REQUESTS_MEMORY", config.requests_memory),
        ("TELEGRAF_LIMITS_CPU", config.limits_cpu),
        ("TELEGRAF_LIMITS_MEMORY", config.limits_memory),
    ):
        if value and not is_valid_quantity(value):
            raise ConfigError(f"{setting} is not a valid resource quantity: {value!r}")


def load_config(env: Mapping[str, str] | None = None) -> InjectorConfig:
    """Load injector config from the environment and validate it.

    Raises :class:`ConfigError` for an empty secret name prefix or image,
    or for any default resource value that is not a valid quantity.
    """
    values = env if env is not None else os.environ

    config = InjectorConfig(
        secret_name_prefix=values.get("SECRET_NAME_PREFIX", DEFAULT_SECRET_NAME_PREFIX).strip(),
        image=values.get("TELEGRAF_IMAGE", DEFAULT_TELEGRAF_IMAGE).strip(),
        requests_cpu=values.get("TELEGRAF_REQUESTS_CPU", DEFAULT_REQUESTS_CPU).strip(),
        requests_memory=values.get("TELEGRAF_REQUESTS_MEMORY", DEFAULT_REQUESTS_MEMORY).strip(),
        limits_cpu=values.get("TELEGRAF_LIMITS_CPU", DEFAULT_LIMITS_CPU).strip(),
        limits_memory=values.get("TELEGRAF_LIMITS_MEMORY", DEFAULT_LIMITS_MEMORY).strip(),
        native_sidecars=parse_bool(values.get("ENABLE_NATIVE_SIDECARS")),
    )

    if not config.secret_name_prefix:
        raise ConfigError("SECRET_NAME_PREFIX must be a non-empty string")
    if not config.image:
        raise ConfigError("TELEGRAF_IMAGE must be a non-empty string")
    validate_resources(config)
    return config
