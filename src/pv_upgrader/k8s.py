from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .cache import ObjectStore

ANN_DYNAMICALLY_PROVISIONED = "pv.kubernetes.io/provisioned-by"
ANN_BIND_COMPLETED = "pv.kubernetes.io/bind-completed"
FINALIZER_PV_PROTECTION = "kubernetes.io/pv-protection"
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ClusterGatewayError(RuntimeError):
    """Raised when a cluster read or write cannot be completed."""


class ResourceNotFoundError(ClusterGatewayError):
    """Raised when the requested object does not exist."""


class ResourceConflictError(ClusterGatewayError):
    """Raised when a conditional write loses against a newer object revision."""


class CacheTypeError(ClusterGatewayError):
    """Raised when the local store holds an object of an unexpected type."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
    )


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


class ClusterGateway:
    """Typed access to PVs, PVCs and pods.

    PV and PVC point lookups come from locally maintained stores that lag the
    API server; pod reads always go to the API server. Writes are issued once
    and never retried here.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        pv_store: ObjectStore,
        pvc_store: ObjectStore,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self.core_api = core_api
        self.pv_store = pv_store
        self.pvc_store = pvc_store
        self.api_client = api_client or client.ApiClient()

    def get_cached_pv(self, name: str) -> client.V1PersistentVolume:
        item, exists = self.pv_store.get_by_key(name)
        if not exists:
            raise ResourceNotFoundError(f"PV {name} not found in cache")
        if not isinstance(item, client.V1PersistentVolume):
            raise CacheTypeError(f"non-PV object {name} found in cache")
        return item

    def get_cached_pvc(self, name: str, namespace: str) -> client.V1PersistentVolumeClaim:
        key = f"{namespace}/{name}"
        item, exists = self.pvc_store.get_by_key(key)
        if not exists:
            raise ResourceNotFoundError(f"PVC {key} not found in cache")
        if not isinstance(item, client.V1PersistentVolumeClaim):
            raise CacheTypeError(f"non-PVC object {key} found in cache")
        return item

    def list_cached_pvs(self) -> list[client.V1PersistentVolume]:
        pvs = [item for item in self.pv_store.list() if isinstance(item, client.V1PersistentVolume)]
        return sorted(pvs, key=lambda pv: pv.metadata.name or "")

    def list_pods(self, namespace: str) -> list[client.V1Pod]:
        return _safe_kubernetes_call(
            operation=f"list pods in namespace '{namespace}'",
            func=lambda: self.core_api.list_namespaced_pod(namespace=namespace).items or [],
        )

    def get_pod(self, name: str, namespace: str) -> client.V1Pod:
        return _safe_kubernetes_call(
            operation=f"get pod '{namespace}/{name}'",
            func=lambda: self.core_api.read_namespaced_pod(name=name, namespace=namespace),
        )

    def delete_pod(self, name: str, namespace: str) -> None:
        _safe_kubernetes_call(
            operation=f"delete pod '{namespace}/{name}'",
            func=lambda: self.core_api.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
            ),
        )

    def delete_pv(self, name: str) -> None:
        try:
            _safe_kubernetes_call(
                operation=f"delete PV '{name}'",
                func=lambda: self.core_api.delete_persistent_volume(name=name, body=client.V1DeleteOptions()),
            )
        except ResourceNotFoundError:
            return

    def create_pv(self, pv: client.V1PersistentVolume) -> client.V1PersistentVolume:
        return _safe_kubernetes_call(
            operation=f"create PV '{pv.metadata.name}'",
            func=lambda: self.core_api.create_persistent_volume(body=pv),
        )

    def patch_pv(
        self,
        original: client.V1PersistentVolume,
        modified: client.V1PersistentVolume,
    ) -> client.V1PersistentVolume:
        body = self._conditional_merge_patch(original, modified)
        return _safe_kubernetes_call(
            operation=f"patch PV '{original.metadata.name}'",
            func=lambda: self.core_api.patch_persistent_volume(
                name=original.metadata.name,
                body=body,
                _content_type=MERGE_PATCH_CONTENT_TYPE,
            ),
        )

    def patch_pvc(
        self,
        original: client.V1PersistentVolumeClaim,
        modified: client.V1PersistentVolumeClaim,
    ) -> client.V1PersistentVolumeClaim:
        body = self._conditional_merge_patch(original, modified)
        return _safe_kubernetes_call(
            operation=f"patch PVC '{original.metadata.namespace}/{original.metadata.name}'",
            func=lambda: self.core_api.patch_namespaced_persistent_volume_claim(
                name=original.metadata.name,
                namespace=original.metadata.namespace,
                body=body,
                _content_type=MERGE_PATCH_CONTENT_TYPE,
            ),
        )

    def _conditional_merge_patch(self, original: Any, modified: Any) -> dict[str, Any]:
        original_data = self.api_client.sanitize_for_serialization(original)
        modified_data = self.api_client.sanitize_for_serialization(modified)
        patch = build_merge_patch(original_data, modified_data)
        resource_version = original.metadata.resource_version
        if resource_version:
            patch.setdefault("metadata", {})["resourceVersion"] = resource_version
        return patch


def build_merge_patch(original: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    """Return the RFC 7386 merge patch that turns ``original`` into ``modified``."""
    patch: dict[str, Any] = {}
    for key in original.keys() - modified.keys():
        patch[key] = None
    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue
        previous = original[key]
        if isinstance(previous, dict) and isinstance(value, dict):
            nested = build_merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif previous != value:
            patch[key] = value
    return patch


def has_legacy_source(pv: client.V1PersistentVolume) -> bool:
    spec = pv.spec
    if spec is None:
        return False
    return (spec.nfs is None) != (spec.iscsi is None)


def list_upgrade_candidates(
    gateway: ClusterGateway,
    *,
    legacy_provisioner: str,
) -> list[client.V1PersistentVolume]:
    candidates: list[client.V1PersistentVolume] = []
    for pv in gateway.list_cached_pvs():
        annotations = pv.metadata.annotations or {}
        if annotations.get(ANN_DYNAMICALLY_PROVISIONED) != legacy_provisioner:
            continue
        if not has_legacy_source(pv):
            continue
        candidates.append(pv)
    return candidates


def _safe_kubernetes_call(*, operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, error=error)
        if error.status == 404:
            raise ResourceNotFoundError(message) from error
        if error.status == 409:
            raise ResourceConflictError(message) from error
        raise ClusterGatewayError(message) from error
    except Exception as error:
        raise ClusterGatewayError(f"Kubernetes call failed while trying to {operation}: {error}") from error


def _format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
