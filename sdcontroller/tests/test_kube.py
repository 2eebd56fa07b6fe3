from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from sdcontroller.src.kube import (
    build_clients,
    create_workload,
    load_kube_configuration,
    owner_reference_for,
    replace_workload,
)
from sdcontroller.src.models import SelectiveDeployment, WorkloadKind


def make_workload() -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name="agent", namespace="tenant"))


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("sdcontroller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("sdcontroller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "sdcontroller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("sdcontroller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("sdcontroller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, apps, custom = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"
    assert custom.name == "custom"


def test_owner_reference_is_never_controlling() -> None:
    sd = SelectiveDeployment(namespace="tenant", name="sd-a", uid="uid-1")

    reference = owner_reference_for(sd, "apps.edgenet.io/v1alpha")

    assert reference.api_version == "apps.edgenet.io/v1alpha"
    assert reference.kind == "SelectiveDeployment"
    assert reference.name == "sd-a"
    assert reference.uid == "uid-1"
    assert reference.controller is False


def test_owner_reference_prefers_object_api_version() -> None:
    sd = SelectiveDeployment(namespace="tenant", name="sd-a", uid="uid-1", api_version="apps.edgenet.io/v1")

    assert owner_reference_for(sd, "apps.edgenet.io/v1alpha").api_version == "apps.edgenet.io/v1"


def test_replace_workload_uses_kind_specific_call() -> None:
    mock_apps_api = MagicMock()
    workload = make_workload()

    replace_workload(mock_apps_api, WorkloadKind.DAEMONSET, workload)

    mock_apps_api.replace_namespaced_daemon_set.assert_called_once_with(
        name="agent", namespace="tenant", body=workload
    )


def test_create_workload_uses_kind_specific_call() -> None:
    mock_apps_api = MagicMock()
    workload = make_workload()

    create_workload(mock_apps_api, WorkloadKind.STATEFULSET, workload)

    mock_apps_api.create_namespaced_stateful_set.assert_called_once_with(
        namespace="tenant", body=workload
    )
