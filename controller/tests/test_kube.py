from __future__ import annotations

import re
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from controller.src.kube import (
    build_config_secret,
    build_core_client,
    load_kube_configuration,
    read_pod_or_none,
    read_secret_or_none,
    record_pod_event,
    utc_now_rfc3339,
)
from shared.src import metadata


def _pod() -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="web-0", namespace="apps", uid="pod-uid")
    )


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_client() -> None:
    with patch("controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_client()

    assert core.name == "core"


def test_utc_now_rfc3339_format() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", utc_now_rfc3339())


def test_read_pod_or_none_returns_none_on_404() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

    assert read_pod_or_none(core_api, "apps", "web-0") is None
    core_api.read_namespaced_pod.assert_called_once_with(name="web-0", namespace="apps")


def test_read_secret_or_none_propagates_other_errors() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_secret.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        read_secret_or_none(core_api, "apps", "cfg")


def test_read_secret_or_none_returns_secret() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_secret.return_value = "secret"

    assert read_secret_or_none(core_api, "apps", "cfg") == "secret"


def test_build_config_secret_sets_owner_labels_and_data() -> None:
    secret = build_config_secret(
        _pod(), secret_name="cfg-abcde", class_name="default", config_data="[agent]\n"
    )

    assert secret.metadata.name == "cfg-abcde"
    assert secret.metadata.namespace == "apps"
    assert secret.type == "Opaque"
    assert secret.string_data == {metadata.CONFIG_SECRET_KEY: "[agent]\n"}
    assert secret.metadata.labels == {
        metadata.SECRET_CLASS_NAME_LABEL: "default",
        metadata.SECRET_POD_LABEL: "web-0",
        metadata.SECRET_MANAGED_BY_LABEL: metadata.CONTROLLER_NAME,
        metadata.SECRET_CREATED_BY_LABEL: metadata.CONTROLLER_NAME,
    }
    (owner,) = secret.metadata.owner_references
    assert (owner.kind, owner.name, owner.uid, owner.api_version) == (
        "Pod",
        "web-0",
        "pod-uid",
        "v1",
    )


def test_record_pod_event_sends_event_body() -> None:
    core_api = MagicMock()

    record_pod_event(core_api, _pod(), "Warning", "InvalidAnnotationFormat", "bad port")

    core_api.create_namespaced_event.assert_called_once()
    kwargs = core_api.create_namespaced_event.call_args.kwargs
    assert kwargs["namespace"] == "apps"
    body = kwargs["body"]
    assert body["reason"] == "InvalidAnnotationFormat"
    assert body["type"] == "Warning"
    assert body["message"] == "bad port"
    assert body["involvedObject"]["uid"] == "pod-uid"
    assert body["source"]["component"] == metadata.CONTROLLER_NAME


def test_record_pod_event_swallows_api_errors() -> None:
    core_api = MagicMock()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="forbidden")

    record_pod_event(core_api, _pod(), "Normal", "TelegrafConfigCreateSuccessful", "ok")
