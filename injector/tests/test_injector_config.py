from __future__ import annotations

import pytest

from injector.src.config import (
    DEFAULT_TELEGRAF_IMAGE,
    ConfigError,
    InjectorConfig,
    is_valid_quantity,
    load_config,
)


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == InjectorConfig()
    assert config.image == DEFAULT_TELEGRAF_IMAGE
    assert config.secret_name_prefix == "telegraf-config"
    assert config.native_sidecars is False


def test_load_config_reads_all_settings() -> None:
    config = load_config(
        {
            "SECRET_NAME_PREFIX": "metrics",
            "TELEGRAF_IMAGE": " telegraf:1.31 ",
            "TELEGRAF_REQUESTS_CPU": "50m",
            "TELEGRAF_REQUESTS_MEMORY": "64Mi",
            "TELEGRAF_LIMITS_CPU": "",
            "TELEGRAF_LIMITS_MEMORY": "1Gi",
            "ENABLE_NATIVE_SIDECARS": "yes",
        }
    )

    assert config == InjectorConfig(
        secret_name_prefix="metrics",
        image="telegraf:1.31",
        requests_cpu="50m",
        requests_memory="64Mi",
        limits_cpu="",
        limits_memory="1Gi",
        native_sidecars=True,
    )


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"SECRET_NAME_PREFIX": "  "}, "SECRET_NAME_PREFIX"),
        ({"TELEGRAF_IMAGE": ""}, "TELEGRAF_IMAGE"),
        ({"TELEGRAF_LIMITS_MEMORY": "plenty"}, "TELEGRAF_LIMITS_MEMORY"),
        ({"TELEGRAF_REQUESTS_CPU": "1000x"}, "TELEGRAF_REQUESTS_CPU"),
    ],
)
def test_load_config_rejects_invalid_values(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


@pytest.mark.parametrize(("value", "expected"), [("100m", True), ("1.5Gi", True), ("abc", False)])
def test_is_valid_quantity(value: str, expected: bool) -> None:
    assert is_valid_quantity(value) is expected
