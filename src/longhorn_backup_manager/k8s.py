from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import ConflictError, ExternalUnavailableError, NotFoundError
from .models import ClaimInfo

LONGHORN_GROUP = "longhorn.io"
LONGHORN_VERSION = "v1beta2"
VOLUME_PLURAL = "volumes"
BACKUP_PLURAL = "backups"
BACKUP_VOLUME_PLURAL = "backupvolumes"
BACKUP_VOLUME_LABEL = "longhornvolume"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


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
        custom_api=client.CustomObjectsApi(api_client),
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
    """Read-through access to PVCs and Longhorn custom resources.

    Nothing is cached: every call goes to the API server, which stays the only
    source of truth. API failures are translated into the operator-facing error
    taxonomy (404 -> NotFoundError, 409 -> ConflictError, anything else ->
    ExternalUnavailableError).
    """

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        longhorn_namespace: str,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.core_api = clients.core_api
        self.custom_api = clients.custom_api
        self.longhorn_namespace = longhorn_namespace
        self.request_timeout_seconds = request_timeout_seconds

    # PersistentVolumeClaims

    def get_claim(self, namespace: str, name: str) -> ClaimInfo | None:
        try:
            pvc = self._call(
                operation=f"read PVC '{namespace}/{name}'",
                hint="Check namespace spelling and RBAC verbs for persistentvolumeclaims.",
                func=lambda: self.core_api.read_namespaced_persistent_volume_claim(
                    name=name,
                    namespace=namespace,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
        except NotFoundError:
            return None
        return claim_info_from_pvc(pvc)

    def require_claim(self, namespace: str, name: str) -> ClaimInfo:
        claim = self.get_claim(namespace, name)
        if claim is None:
            raise NotFoundError(f"PVC {namespace}/{name} not found")
        return claim

    def list_claims(self, *, label_selector: str | None = None, namespace: str | None = None) -> list[ClaimInfo]:
        kwargs: dict[str, Any] = {"_request_timeout": self.request_timeout_seconds}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if namespace:
            response = self._call(
                operation=f"list PVCs in namespace '{namespace}'",
                hint="Check namespace spelling, API reachability, and RBAC verbs for persistentvolumeclaims.",
                func=lambda: self.core_api.list_namespaced_persistent_volume_claim(namespace=namespace, **kwargs),
            )
        else:
            response = self._call(
                operation="list PVCs across all namespaces",
                hint="Verify RBAC verbs for persistentvolumeclaims at cluster scope.",
                func=lambda: self.core_api.list_persistent_volume_claim_for_all_namespaces(**kwargs),
            )
        claims = [claim_info_from_pvc(pvc) for pvc in response.items]
        claims.sort(key=lambda item: (item.namespace, item.name))
        return claims

    def patch_claim_metadata(
        self,
        namespace: str,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
    ) -> ClaimInfo:
        metadata: dict[str, Any] = {}
        if labels:
            metadata["labels"] = labels
        if annotations:
            metadata["annotations"] = annotations
        pvc = self._call(
            operation=f"patch metadata on PVC '{namespace}/{name}'",
            hint="Verify RBAC allows patch on persistentvolumeclaims.",
            func=lambda: self.core_api.patch_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body={"metadata": metadata},
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return claim_info_from_pvc(pvc)

    def create_claim(self, namespace: str, body: dict[str, Any]) -> ClaimInfo:
        name = body.get("metadata", {}).get("name", "")
        pvc = self._call(
            operation=f"create PVC '{namespace}/{name}'",
            hint="Verify RBAC allows create on persistentvolumeclaims and the storage class exists.",
            func=lambda: self.core_api.create_namespaced_persistent_volume_claim(
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return claim_info_from_pvc(pvc)

    def delete_claim(self, namespace: str, name: str) -> None:
        self._call(
            operation=f"delete PVC '{namespace}/{name}'",
            hint="Verify RBAC allows delete on persistentvolumeclaims.",
            func=lambda: self.core_api.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    # Longhorn volumes

    def list_volumes(self) -> list[dict[str, Any]]:
        response = self._call(
            operation=f"list Longhorn volumes in namespace '{self.longhorn_namespace}'",
            hint="Confirm Longhorn is installed and RBAC allows list on volumes.longhorn.io.",
            func=lambda: self.custom_api.list_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=VOLUME_PLURAL,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return list(response.get("items", []))

    def get_volume(self, volume_id: str) -> dict[str, Any]:
        return self._call(
            operation=f"read Longhorn volume '{volume_id}'",
            hint="Confirm the volume exists in the Longhorn namespace.",
            func=lambda: self.custom_api.get_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=VOLUME_PLURAL,
                name=volume_id,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def patch_volume_job_selector(
        self,
        volume_id: str,
        selector: list[dict[str, Any]],
        *,
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"spec": {"recurringJobSelector": selector}}
        if resource_version:
            # A stale resourceVersion makes the API server answer 409 instead of overwriting.
            body["metadata"] = {"resourceVersion": resource_version}
        return self._call(
            operation=f"patch recurringJobSelector on Longhorn volume '{volume_id}'",
            hint="Verify RBAC allows patch on volumes.longhorn.io.",
            func=lambda: self.custom_api.patch_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=VOLUME_PLURAL,
                name=volume_id,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    # Longhorn backups

    def list_backups(self, volume_id: str | None = None) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"_request_timeout": self.request_timeout_seconds}
        if volume_id:
            kwargs["label_selector"] = f"{BACKUP_VOLUME_LABEL}={volume_id}"
        response = self._call(
            operation=f"list Longhorn backups{f' for volume {volume_id!r}' if volume_id else ''}",
            hint="Confirm a backup target is configured and RBAC allows list on backups.longhorn.io.",
            func=lambda: self.custom_api.list_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=BACKUP_PLURAL,
                **kwargs,
            ),
        )
        return list(response.get("items", []))

    def get_backup(self, backup_id: str) -> dict[str, Any]:
        try:
            return self._call(
                operation=f"read Longhorn backup '{backup_id}'",
                hint="List available backups with the 'list' command.",
                func=lambda: self.custom_api.get_namespaced_custom_object(
                    group=LONGHORN_GROUP,
                    version=LONGHORN_VERSION,
                    namespace=self.longhorn_namespace,
                    plural=BACKUP_PLURAL,
                    name=backup_id,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
        except NotFoundError as error:
            raise NotFoundError(f"Backup '{backup_id}' not found") from error

    def delete_backup(self, backup_id: str) -> None:
        self._call(
            operation=f"delete Longhorn backup '{backup_id}'",
            hint="Verify RBAC allows delete on backups.longhorn.io.",
            func=lambda: self.custom_api.delete_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=BACKUP_PLURAL,
                name=backup_id,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def list_backup_volumes(self) -> list[dict[str, Any]]:
        response = self._call(
            operation="list Longhorn backup volumes",
            hint="Confirm a backup target is configured and RBAC allows list on backupvolumes.longhorn.io.",
            func=lambda: self.custom_api.list_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=BACKUP_VOLUME_PLURAL,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return list(response.get("items", []))

    def delete_backup_volume(self, volume_id: str) -> None:
        self._call(
            operation=f"delete Longhorn backup volume '{volume_id}'",
            hint="Verify RBAC allows delete on backupvolumes.longhorn.io.",
            func=lambda: self.custom_api.delete_namespaced_custom_object(
                group=LONGHORN_GROUP,
                version=LONGHORN_VERSION,
                namespace=self.longhorn_namespace,
                plural=BACKUP_VOLUME_PLURAL,
                name=volume_id,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def _call(self, *, operation: str, hint: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except ApiException as error:
            message = _format_api_exception_message(operation=operation, hint=hint, error=error)
            if error.status == 404:
                raise NotFoundError(message) from error
            if error.status == 409:
                raise ConflictError(message) from error
            raise ExternalUnavailableError(message) from error
        except Exception as error:
            raise ExternalUnavailableError(
                f"Kubernetes API call failed while trying to {operation}: {error}. {hint}"
            ) from error


def claim_info_from_pvc(pvc: Any) -> ClaimInfo:
    metadata = pvc.metadata
    spec = pvc.spec
    status = pvc.status

    requested_storage = None
    if spec and spec.resources and spec.resources.requests:
        requested_storage = spec.resources.requests.get("storage")

    return ClaimInfo(
        namespace=metadata.namespace or "",
        name=metadata.name or "",
        volume_name=(spec.volume_name if spec else None) or None,
        phase=status.phase if status and status.phase else "Unknown",
        requested_storage=requested_storage,
        storage_class=spec.storage_class_name if spec else None,
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
    )


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason}). {hint}"


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
