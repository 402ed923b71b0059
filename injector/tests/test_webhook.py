from __future__ import annotations

import base64
import json
import logging
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from injector.src import main as main_module
from injector.src.config import InjectorConfig
from injector.src.injector import InjectionDecision
from injector.src.main import (
    MUTATE_PATH,
    build_admission_response,
    configure_tracing,
    create_app,
)
from shared.src import metadata


def _review(pod: dict[str, Any], uid: str = "req-1") -> dict[str, Any]:
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": "Pod"},
            "operation": "CREATE",
            "namespace": "apps",
            "object": pod,
        },
    }


def _pod(annotations: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "metadata": {"generateName": "web-", "namespace": "apps", "annotations": annotations or {}},
        "spec": {"containers": [{"name": "app", "image": "app:1"}]},
    }


def _decode_patch(response: dict[str, Any]) -> list[dict[str, Any]]:
    return json.loads(base64.b64decode(response["patch"]))


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app(InjectorConfig()))


def test_mutate_injects_sidecar(client: TestClient) -> None:
    pod = _pod({metadata.TELEGRAF_PORTS_ANNOTATION: "8080"})

    response = client.post(MUTATE_PATH, json=_review(pod))

    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "AdmissionReview"
    assert body["apiVersion"] == "admission.k8s.io/v1"
    admission = body["response"]
    assert admission["uid"] == "req-1"
    assert admission["allowed"] is True
    assert admission["patchType"] == "JSONPatch"
    patch_ops = _decode_patch(admission)
    paths = [op["path"] for op in patch_ops]
    assert paths == ["/spec/containers/-", "/spec/volumes", "/metadata/labels"]
    labels = patch_ops[2]["value"]
    assert labels[metadata.SIDECAR_INJECTED_LABEL] == "true"
    assert labels[metadata.SIDECAR_SECRET_NAME_LABEL].startswith("telegraf-config-web-")
    assert patch_ops[1]["value"][0]["secret"]["secretName"] == (
        labels[metadata.SIDECAR_SECRET_NAME_LABEL]
    )
    assert "warnings" not in admission


def test_mutate_allows_unannotated_pod_without_patch(client: TestClient) -> None:
    response = client.post(MUTATE_PATH, json=_review(_pod()))

    admission = response.json()["response"]
    assert admission == {"uid": "req-1", "allowed": True}


def test_mutate_returns_annotation_warnings(client: TestClient) -> None:
    pod = _pod(
        {
            metadata.TELEGRAF_PORTS_ANNOTATION: "8080",
            metadata.SIDECAR_LIMITS_CPU_ANNOTATION: "1000x",
        }
    )

    admission = client.post(MUTATE_PATH, json=_review(pod)).json()["response"]

    assert admission["allowed"] is True
    assert "patch" in admission
    assert len(admission["warnings"]) == 1
    assert "1000x" in admission["warnings"][0]


def test_mutate_fails_open_on_evaluation_error(client: TestClient) -> None:
    pod = _pod({metadata.TELEGRAF_PORTS_ANNOTATION: "8080"})

    with patch.object(client.app.state.injector, "inject", side_effect=RuntimeError("boom")):
        response = client.post(MUTATE_PATH, json=_review(pod))

    assert response.status_code == 200
    assert response.json()["response"] == {"uid": "req-1", "allowed": True}


def test_mutate_tolerates_missing_request(client: TestClient) -> None:
    response = client.post(MUTATE_PATH, json={"apiVersion": "admission.k8s.io/v1"})

    assert response.status_code == 200
    assert response.json()["response"] == {"uid": "", "allowed": True}


def test_build_admission_response_without_decision() -> None:
    review = _review(_pod(), uid="abc")

    body = build_admission_response(review, None)

    assert body["response"] == {"uid": "abc", "allowed": True}


def test_build_admission_response_skip_decision_has_no_patch() -> None:
    body = build_admission_response(_review(_pod()), InjectionDecision(inject=False))

    assert "patch" not in body["response"]


def test_health_readiness_and_metrics(client: TestClient) -> None:
    assert client.get("/healthz").text == "ok"
    assert client.get("/readyz").text == "ok"

    client.post(MUTATE_PATH, json=_review(_pod()))
    metrics = client.get("/metrics")

    assert metrics.status_code == 200
    assert "telegraf_injector_admission_total" in metrics.text
    assert "telegraf_injector_http_requests_total" in metrics.text


def test_create_app_loads_config_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAF_IMAGE", "registry.local/telegraf:1.31")
    monkeypatch.setenv("ENABLE_NATIVE_SIDECARS", "true")

    app = create_app()

    assert app.state.injector.config.image == "registry.local/telegraf:1.31"
    assert app.state.injector.config.native_sidecars is True


def test_tracing_is_off_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_ENABLED", raising=False)
    app = create_app(InjectorConfig())
    middleware_count = len(app.user_middleware)

    configure_tracing(app, logging.getLogger("test"))

    assert len(app.user_middleware) == middleware_count
    assert main_module._TRACING_INITIALIZED is False
