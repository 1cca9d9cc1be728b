from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.config import ConfigError

LOGGER = logging.getLogger(__name__)

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
FIELD_MANAGER = "cnvrg-cre-rollout"


@dataclass(frozen=True)
class WorkloadKind:
    """AppsV1 API method names for one rollout-capable workload kind."""

    name: str
    list_method: str
    patch_method: str


DEPLOYMENT = WorkloadKind(
    name="Deployment",
    list_method="list_namespaced_deployment",
    patch_method="patch_namespaced_deployment",
)
STATEFUL_SET = WorkloadKind(
    name="StatefulSet",
    list_method="list_namespaced_stateful_set",
    patch_method="patch_namespaced_stateful_set",
)
DAEMON_SET = WorkloadKind(
    name="DaemonSet",
    list_method="list_namespaced_daemon_set",
    patch_method="patch_namespaced_daemon_set",
)
WORKLOAD_KINDS: tuple[WorkloadKind, ...] = (DEPLOYMENT, STATEFUL_SET, DAEMON_SET)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as RFC 3339 with microseconds (``2024-01-15T08:30:00.123456Z``).

    Used as the restart annotation value; sub-second resolution keeps two
    restarts issued within the same second observably different.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def load_kube_configuration(kubeconfig: str = "") -> None:
    """Load Kubernetes client configuration.

    Uses *kubeconfig* when the file exists, otherwise the in-cluster service
    account.  Any failure is raised as :class:`ConfigError` so the entrypoint
    can exit before starting the watch loops.
    """
    try:
        if kubeconfig and os.path.exists(kubeconfig):
            config.load_kube_config(config_file=kubeconfig)
            LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        else:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException as exc:
        raise ConfigError(f"failed to load Kubernetes configuration: {exc}") from exc


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients sharing one ``ApiClient`` connection pool."""
    api_client = client.ApiClient()
    return client.CoreV1Api(api_client), client.AppsV1Api(api_client)


def list_workloads(
    apps_api: AppsV1Api,
    kind: WorkloadKind,
    namespace: str,
    label_selector: str,
) -> list[Any]:
    """List workloads of *kind* in *namespace* matching *label_selector*."""
    listing = getattr(apps_api, kind.list_method)(
        namespace=namespace,
        label_selector=label_selector,
    )
    return list(getattr(listing, "items", None) or [])


def patch_workload_restart(
    apps_api: AppsV1Api,
    kind: WorkloadKind,
    namespace: str,
    name: str,
    timestamp: str,
    annotation_key: str = RESTARTED_AT_ANNOTATION,
    field_manager: str = FIELD_MANAGER,
) -> None:
    """Patch a workload's pod template annotation to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation makes the workload controller roll new pods.
    Re-issuing the patch only overwrites the annotation, so the last write wins.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }

    getattr(apps_api, kind.patch_method)(
        name=name,
        namespace=namespace,
        body=body,
        field_manager=field_manager,
    )
