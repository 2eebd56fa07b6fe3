from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi, V1OwnerReference
from kubernetes.config.config_exception import ConfigException

from sdcontroller.src.models import SELECTIVE_DEPLOYMENT_KIND, SelectiveDeployment, WorkloadKind

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def owner_reference_for(sd: SelectiveDeployment, api_version: str) -> V1OwnerReference:
    """Build a non-controlling owner reference pointing at *sd*.

    ``controller`` stays false because several selective deployments may
    claim the same workload at once.
    """
    return V1OwnerReference(
        api_version=sd.api_version or api_version,
        kind=SELECTIVE_DEPLOYMENT_KIND,
        name=sd.name,
        uid=sd.uid,
        controller=False,
        block_owner_deletion=True,
    )


def replace_workload(apps_api: AppsV1Api, kind: WorkloadKind, workload: Any) -> Any:
    """Overwrite a workload controller with *workload* (``PUT`` semantics)."""
    metadata = workload.metadata
    replace = getattr(apps_api, kind.replace_method)
    return replace(name=metadata.name, namespace=metadata.namespace, body=workload)


def create_workload(apps_api: AppsV1Api, kind: WorkloadKind, workload: Any) -> Any:
    create = getattr(apps_api, kind.create_method)
    return create(namespace=workload.metadata.namespace, body=workload)
