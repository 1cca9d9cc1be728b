from __future__ import annotations

import re
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from reloader.src.config import ConfigError
from reloader.src.kube import (
    DAEMON_SET,
    DEPLOYMENT,
    STATEFUL_SET,
    build_clients,
    list_workloads,
    load_kube_configuration,
    patch_workload_restart,
    utc_now_rfc3339,
)


def test_load_kube_configuration_uses_existing_kubeconfig(tmp_path: Any) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("apiVersion: v1\n")

    with (
        patch("reloader.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reloader.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration(str(kubeconfig))

    mock_kubeconfig.assert_called_once_with(config_file=str(kubeconfig))
    mock_incluster.assert_not_called()


def test_load_kube_configuration_falls_back_to_in_cluster(tmp_path: Any) -> None:
    with (
        patch("reloader.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reloader.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration(str(tmp_path / "missing"))

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_raises_config_error() -> None:
    with (
        patch(
            "reloader.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        pytest.raises(ConfigError, match="not in cluster"),
    ):
        load_kube_configuration("")


def test_build_clients_share_one_api_client() -> None:
    with patch("reloader.src.kube.client") as mock_client:
        shared = SimpleNamespace(name="shared")
        mock_client.ApiClient.return_value = shared
        build_clients()

    mock_client.CoreV1Api.assert_called_once_with(shared)
    mock_client.AppsV1Api.assert_called_once_with(shared)


@pytest.mark.parametrize(
    ("kind", "method"),
    [
        (DEPLOYMENT, "patch_namespaced_deployment"),
        (STATEFUL_SET, "patch_namespaced_stateful_set"),
        (DAEMON_SET, "patch_namespaced_daemon_set"),
    ],
)
def test_patch_workload_restart_sends_correct_body(kind: Any, method: str) -> None:
    mock_apps_api = MagicMock()

    patch_workload_restart(
        apps_api=mock_apps_api,
        kind=kind,
        namespace="ns1",
        name="app1",
        timestamp="2026-01-01T00:00:00Z",
    )

    call_kwargs = getattr(mock_apps_api, method).call_args.kwargs
    assert call_kwargs["name"] == "app1"
    assert call_kwargs["namespace"] == "ns1"
    assert call_kwargs["field_manager"] == "cnvrg-cre-rollout"
    assert call_kwargs["body"] == {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {"kubectl.kubernetes.io/restartedAt": "2026-01-01T00:00:00Z"}
                }
            }
        }
    }


def test_list_workloads_passes_label_selector() -> None:
    mock_apps_api = MagicMock()
    mock_apps_api.list_namespaced_stateful_set.return_value = SimpleNamespace(items=["a", "b"])

    items = list_workloads(mock_apps_api, STATEFUL_SET, namespace="ns1", label_selector="foo")

    assert items == ["a", "b"]
    mock_apps_api.list_namespaced_stateful_set.assert_called_once_with(
        namespace="ns1", label_selector="foo"
    )


def test_list_workloads_handles_empty_listing() -> None:
    mock_apps_api = MagicMock()
    mock_apps_api.list_namespaced_deployment.return_value = SimpleNamespace(items=None)

    assert list_workloads(mock_apps_api, DEPLOYMENT, namespace="ns1", label_selector="foo") == []


def test_utc_now_rfc3339_has_sub_second_resolution() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z", utc_now_rfc3339())
