from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Iterable, Sequence

from .catalog import BackupCatalog
from .confirmation import Confirm, always_deny
from .errors import BackupManagerError, ConfirmationDeclinedError
from .k8s import ClusterGateway
from .models import (
    MANAGED_JOB_NAMES,
    EnrolledVolume,
    ReconcileFailure,
    ReconcileReport,
    RecurringJobBinding,
    jobs_for_tier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _ObservedVolume:
    name: str
    resource_version: str | None
    selector: tuple[dict[str, Any], ...]

    @property
    def managed_jobs(self) -> frozenset[str]:
        return frozenset(
            entry.get("name", "")
            for entry in self.selector
            if not entry.get("isGroup") and entry.get("name") in MANAGED_JOB_NAMES
        )

    @property
    def foreign_entries(self) -> list[dict[str, Any]]:
        return [
            dict(entry)
            for entry in self.selector
            if entry.get("isGroup") or entry.get("name") not in MANAGED_JOB_NAMES
        ]


class EnrollmentReconciler:
    """Aligns each Longhorn volume's recurringJobSelector with claim enrollment.

    Only the daily/weekly backup jobs are managed; any other selector entries
    (job groups, hand-added jobs) are carried through untouched. Volumes that
    still carry managed jobs but no longer belong to an enrolled claim get
    those jobs removed.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        *,
        catalog: BackupCatalog | None = None,
        confirm: Confirm = always_deny,
    ) -> None:
        self.gateway = gateway
        self.catalog = catalog or BackupCatalog(gateway)
        self.confirm = confirm

    def desired_bindings(self, enrolled: Iterable[EnrolledVolume]) -> dict[str, RecurringJobBinding]:
        bindings: dict[str, RecurringJobBinding] = {}
        for volume in enrolled:
            if not volume.volume_id:
                continue
            jobs = jobs_for_tier(volume.tier)
            existing = bindings.get(volume.volume_id)
            if existing is not None:
                jobs = jobs | existing.job_names
            bindings[volume.volume_id] = RecurringJobBinding(volume_id=volume.volume_id, job_names=jobs)
        return bindings

    def reconcile(
        self,
        enrolled: Sequence[EnrolledVolume],
        *,
        volume_ids: Iterable[str] | None = None,
        dry_run: bool = False,
    ) -> ReconcileReport:
        desired = self.desired_bindings(enrolled)
        observed = {volume.name: volume for volume in (_observe(item) for item in self.gateway.list_volumes())}

        if volume_ids is not None:
            targets = sorted(set(volume_ids))
        else:
            stale = {name for name, volume in observed.items() if volume.managed_jobs and name not in desired}
            targets = sorted(set(desired) | stale)

        applied: list[RecurringJobBinding] = []
        unchanged: list[RecurringJobBinding] = []
        failures: list[ReconcileFailure] = []
        for volume_id in targets:
            binding = desired.get(volume_id) or RecurringJobBinding(volume_id=volume_id, job_names=frozenset())
            current = observed.get(volume_id)
            if current is None:
                failures.append(ReconcileFailure(volume_id=volume_id, reason="Longhorn volume not found"))
                continue
            if current.managed_jobs == binding.job_names:
                unchanged.append(binding)
                continue
            if dry_run:
                applied.append(binding)
                continue

            selector = current.foreign_entries + [
                {"name": name, "isGroup": False} for name in sorted(binding.job_names)
            ]
            try:
                self.gateway.patch_volume_job_selector(
                    volume_id,
                    selector,
                    resource_version=current.resource_version,
                )
            except BackupManagerError as error:
                logger.warning("Failed to reconcile volume %s: %s", volume_id, error)
                failures.append(ReconcileFailure(volume_id=volume_id, reason=str(error)))
                continue
            logger.info("Set recurring jobs on volume %s to %s", volume_id, sorted(binding.job_names) or "[]")
            applied.append(binding)

        pending = tuple(volume for volume in enrolled if not volume.volume_id)
        return ReconcileReport(
            applied=tuple(applied),
            unchanged=tuple(unchanged),
            failures=tuple(failures),
            pending=pending,
            dry_run=dry_run,
        )

    def clear(self, volume_id: str) -> ReconcileReport:
        return self.reconcile([], volume_ids=[volume_id])

    def purge_backups(self, volume_id: str) -> list[str]:
        """Delete every backup of a volume plus its BackupVolume, after confirmation."""
        records = self.catalog.list_backups(volume_id)
        if not self.confirm(
            f"Permanently delete {len(records)} backup(s) of volume {volume_id}? This cannot be undone."
        ):
            raise ConfirmationDeclinedError("Backup deletion cancelled; backups preserved.")

        deleted: list[str] = []
        for record in records:
            self.gateway.delete_backup(record.id)
            deleted.append(record.id)
            logger.info("Deleted backup %s of volume %s", record.id, volume_id)

        try:
            self.gateway.delete_backup_volume(volume_id)
        except BackupManagerError as error:
            logger.warning("Could not delete backup volume metadata for %s: %s", volume_id, error)
        return deleted


def _observe(item: dict[str, Any]) -> _ObservedVolume:
    metadata = item.get("metadata") or {}
    spec = item.get("spec") or {}
    return _ObservedVolume(
        name=metadata.get("name", ""),
        resource_version=metadata.get("resourceVersion"),
        selector=tuple(entry for entry in spec.get("recurringJobSelector") or [] if isinstance(entry, dict)),
    )
