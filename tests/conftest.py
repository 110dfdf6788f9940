from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import os
from typing import Any

import pytest

from longhorn_backup_manager.config import AppConfig
from longhorn_backup_manager.errors import ConflictError, ExternalUnavailableError, NotFoundError
from longhorn_backup_manager.models import ClaimInfo, OffsiteEntry


class FakeGateway:
    """In-memory stand-in for ClusterGateway with the same method surface."""

    def __init__(self) -> None:
        self.claims: dict[tuple[str, str], ClaimInfo] = {}
        self.volumes: dict[str, dict[str, Any]] = {}
        self.backups: dict[str, dict[str, Any]] = {}
        self.backup_volumes: dict[str, dict[str, Any]] = {}
        self.failing_volumes: set[str] = set()
        self.created_phase = "Bound"
        self.created_volume_name = "pvc-restored"
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.deleted_claims: list[tuple[str, str]] = []
        self.deleted_backups: list[str] = []
        self.deleted_backup_volumes: list[str] = []
        self.volume_patches: list[tuple[str, list[dict[str, Any]]]] = []

    # seeding helpers

    def add_claim(
        self,
        namespace: str,
        name: str,
        *,
        volume_name: str | None = None,
        phase: str | None = None,
        requested_storage: str | None = "5Gi",
        storage_class: str | None = "longhorn",
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> ClaimInfo:
        claim = ClaimInfo(
            namespace=namespace,
            name=name,
            volume_name=volume_name,
            phase=phase or ("Bound" if volume_name else "Pending"),
            requested_storage=requested_storage,
            storage_class=storage_class,
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
        )
        self.claims[(namespace, name)] = claim
        return claim

    def add_volume(self, name: str, jobs: list[str] | None = None, *, extra: list[dict[str, Any]] | None = None) -> None:
        selector = [dict(entry) for entry in extra or []]
        selector.extend({"name": job, "isGroup": False} for job in jobs or [])
        self.volumes[name] = {
            "metadata": {"name": name, "resourceVersion": "1"},
            "spec": {"recurringJobSelector": selector},
        }

    def add_backup(
        self,
        name: str,
        volume: str,
        *,
        created_at: str | None = "2026-01-01T00:00:00Z",
        state: str = "Completed",
        size: str | None = "1073741824",
    ) -> None:
        self.backups[name] = {
            "metadata": {"name": name, "labels": {"longhornvolume": volume}},
            "status": {
                "volumeName": volume,
                "backupCreatedAt": created_at,
                "state": state,
                "size": size,
                "url": f"s3://backups@us-east-1/?backup={name}&volume={volume}",
            },
        }
        self.backup_volumes.setdefault(
            volume,
            {"metadata": {"name": volume}, "status": {"lastBackupName": name, "lastBackupAt": created_at}},
        )

    def job_names(self, volume: str) -> set[str]:
        return {
            entry["name"]
            for entry in self.volumes[volume]["spec"]["recurringJobSelector"]
            if not entry.get("isGroup")
        }

    # claims

    def get_claim(self, namespace: str, name: str) -> ClaimInfo | None:
        return self.claims.get((namespace, name))

    def require_claim(self, namespace: str, name: str) -> ClaimInfo:
        claim = self.get_claim(namespace, name)
        if claim is None:
            raise NotFoundError(f"PVC {namespace}/{name} not found")
        return claim

    def list_claims(self, *, label_selector: str | None = None, namespace: str | None = None) -> list[ClaimInfo]:
        key, _, value = (label_selector or "").partition("=")
        claims = [
            claim
            for claim in self.claims.values()
            if (not namespace or claim.namespace == namespace) and (not key or claim.labels.get(key) == value)
        ]
        return sorted(claims, key=lambda item: (item.namespace, item.name))

    def patch_claim_metadata(
        self,
        namespace: str,
        name: str,
        *,
        labels: dict[str, str | None] | None = None,
        annotations: dict[str, str | None] | None = None,
    ) -> ClaimInfo:
        claim = self.require_claim(namespace, name)
        merged_labels = _merge(claim.labels, labels)
        merged_annotations = _merge(claim.annotations, annotations)
        updated = replace(claim, labels=merged_labels, annotations=merged_annotations)
        self.claims[(namespace, name)] = updated
        return updated

    def create_claim(self, namespace: str, body: dict[str, Any]) -> ClaimInfo:
        metadata = body["metadata"]
        if (namespace, metadata["name"]) in self.claims:
            raise ConflictError(f"PVC {namespace}/{metadata['name']} already exists")
        self.created.append((namespace, body))
        bound = self.created_phase == "Bound"
        return self.add_claim(
            namespace,
            metadata["name"],
            volume_name=self.created_volume_name if bound else None,
            phase=self.created_phase,
            requested_storage=body["spec"]["resources"]["requests"]["storage"],
            storage_class=body["spec"]["storageClassName"],
            labels=metadata.get("labels"),
            annotations=metadata.get("annotations"),
        )

    def delete_claim(self, namespace: str, name: str) -> None:
        self.require_claim(namespace, name)
        del self.claims[(namespace, name)]
        self.deleted_claims.append((namespace, name))

    # volumes

    def list_volumes(self) -> list[dict[str, Any]]:
        return [self.volumes[name] for name in sorted(self.volumes)]

    def get_volume(self, volume_id: str) -> dict[str, Any]:
        if volume_id not in self.volumes:
            raise NotFoundError(f"Longhorn volume '{volume_id}' not found")
        return self.volumes[volume_id]

    def patch_volume_job_selector(
        self,
        volume_id: str,
        selector: list[dict[str, Any]],
        *,
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        if volume_id in self.failing_volumes:
            raise ExternalUnavailableError(f"API status 500 while patching {volume_id}")
        volume = self.get_volume(volume_id)
        current_version = volume["metadata"]["resourceVersion"]
        if resource_version is not None and resource_version != current_version:
            raise ConflictError(f"Longhorn volume '{volume_id}' was modified concurrently")
        volume["spec"]["recurringJobSelector"] = [dict(entry) for entry in selector]
        volume["metadata"]["resourceVersion"] = str(int(current_version) + 1)
        self.volume_patches.append((volume_id, selector))
        return volume

    # backups

    def list_backups(self, volume_id: str | None = None) -> list[dict[str, Any]]:
        return [
            item
            for item in self.backups.values()
            if not volume_id or item["metadata"]["labels"].get("longhornvolume") == volume_id
        ]

    def get_backup(self, backup_id: str) -> dict[str, Any]:
        if backup_id not in self.backups:
            raise NotFoundError(f"Backup '{backup_id}' not found")
        return self.backups[backup_id]

    def delete_backup(self, backup_id: str) -> None:
        self.get_backup(backup_id)
        del self.backups[backup_id]
        self.deleted_backups.append(backup_id)

    def list_backup_volumes(self) -> list[dict[str, Any]]:
        return list(self.backup_volumes.values())

    def delete_backup_volume(self, volume_id: str) -> None:
        if volume_id not in self.backup_volumes:
            raise NotFoundError(f"Longhorn backup volume '{volume_id}' not found")
        del self.backup_volumes[volume_id]
        self.deleted_backup_volumes.append(volume_id)


class FakeSyncTool:
    def __init__(self, paths: list[str] | None = None) -> None:
        self.entries = [OffsiteEntry(path=path, size=512) for path in paths or []]
        self.synced: list[tuple[str, Path]] = []
        self.connection_checks: list[str] = []

    def check_connection(self, remote: str) -> None:
        self.connection_checks.append(remote)

    def list(self, remote: str) -> list[OffsiteEntry]:
        return list(self.entries)

    def sync(self, remote: str, local_dir: Path) -> None:
        self.synced.append((remote, local_dir))


def _merge(current: dict[str, str], changes: dict[str, str | None] | None) -> dict[str, str]:
    merged = dict(current)
    for key, value in (changes or {}).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("LBM_") or name == "LONGHORN_NS":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sync_tool() -> FakeSyncTool:
    return FakeSyncTool()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        index_path=tmp_path / "backup-index.json",
        restore_timeout_seconds=30,
        restore_poll_interval_seconds=1,
    )
