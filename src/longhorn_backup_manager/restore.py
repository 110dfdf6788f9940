from __future__ import annotations

from datetime import UTC, datetime
import logging
import math
import re
import threading
import time
from typing import Any, Callable

from .catalog import BackupCatalog
from .config import SIZE_FALLBACK_FAIL, AppConfig
from .confirmation import Confirm, always_deny
from .errors import (
    AmbiguousSourceError,
    BindTimeoutError,
    ConfirmationDeclinedError,
    ConflictError,
    SizeResolutionError,
)
from .k8s import LONGHORN_GROUP, ClusterGateway
from .models import STATE_COMPLETED, BackupRecord, RestoreOutcome, RestorePlan

GIB = 1024**3
SIZE_SOURCE_OVERRIDE = "override"
SIZE_SOURCE_CLAIM = "claim"
SIZE_SOURCE_BACKUP = "backup"
SIZE_SOURCE_FALLBACK = "fallback"
OUTCOME_BOUND = "bound"
OUTCOME_CANCELLED = "cancelled"

_QUANTITY_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$")

logger = logging.getLogger(__name__)


class RestorePlanner:
    """Chooses the backup to restore from and builds the replacement claim.

    ``plan`` only reads cluster state. ``apply`` is the single mutating step and
    asks the injected ``confirm`` callback about a non-Completed backup, a
    same-name replacement and the create itself. All answers are collected
    before the first delete or create call.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        catalog: BackupCatalog,
        config: AppConfig,
        *,
        confirm: Confirm = always_deny,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.catalog = catalog
        self.config = config
        self.confirm = confirm
        self.clock = clock or (lambda: datetime.now(tz=UTC))
        self.sleep = sleep
        self.monotonic = monotonic

    def plan(
        self,
        namespace: str,
        claim_name: str,
        explicit_backup_id: str | None = None,
        override_size: str | None = None,
        storage_class: str | None = None,
        *,
        new_name: str | None = None,
    ) -> RestorePlan:
        source_claim = self.gateway.get_claim(namespace, claim_name)
        volume_id = source_claim.volume_name if source_claim else None

        if explicit_backup_id:
            record = self.catalog.get(explicit_backup_id)
        elif volume_id:
            record = self.catalog.latest(volume_id)
        else:
            raise AmbiguousSourceError(
                f"Cannot locate backups for {namespace}/{claim_name}: the PVC is missing or unbound. "
                "Specify the backup name explicitly."
            )

        if record.state != STATE_COMPLETED:
            logger.warning("Backup %s is in state %s, not %s", record.id, record.state, STATE_COMPLETED)

        size, size_source = self._resolve_size(
            override_size=override_size,
            claim_size=source_claim.requested_storage if source_claim else None,
            record=record,
        )

        target_name = new_name or claim_name
        if target_name == claim_name:
            target_exists = source_claim is not None
        else:
            target_exists = self.gateway.get_claim(namespace, target_name) is not None

        tier = self.config.default_tier
        if source_claim is not None:
            tier = source_claim.labels.get(self.config.tier_label) or tier

        return RestorePlan(
            target_namespace=namespace,
            target_claim_name=target_name,
            source_claim_name=claim_name,
            source_volume_id=record.volume_id or volume_id or "",
            source_backup_id=record.id,
            backup_state=record.state,
            size=size,
            size_source=size_source,
            storage_class=storage_class or self.config.default_storage_class,
            tier=tier,
            requires_replace=target_exists,
            requires_confirmation=record.state != STATE_COMPLETED,
        )

    def apply(
        self,
        plan: RestorePlan,
        *,
        timeout_seconds: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RestoreOutcome:
        wait_seconds = self._timeout(timeout_seconds)
        if plan.requires_confirmation and not self.confirm(
            f"Backup {plan.source_backup_id} is in state '{plan.backup_state}', not 'Completed'. Continue anyway?"
        ):
            raise ConfirmationDeclinedError("Restore cancelled.")

        if plan.requires_replace:
            if not plan.replaces_source:
                raise ConflictError(
                    f"PVC {plan.target_namespace}/{plan.target_claim_name} already exists. "
                    "Choose a different name with --new-name."
                )
            if not self.confirm(
                f"PVC {plan.target_namespace}/{plan.target_claim_name} already exists. "
                "Delete it and restore? This is a destructive operation."
            ):
                raise ConfirmationDeclinedError("Restore cancelled. Tip: use --new-name to restore to a different PVC.")

        if not self.confirm(f"Create PVC {plan.target_namespace}/{plan.target_claim_name} from {plan.source_backup_id}?"):
            raise ConfirmationDeclinedError("Restore cancelled.")

        # Nothing is mutated before every prompt above has been answered.
        if plan.requires_replace:
            self._replace_existing_claim(plan, wait_seconds=wait_seconds)

        manifest = build_restore_manifest(plan, restored_at=self.clock(), label_prefix=self.config.label_prefix)
        self.gateway.create_claim(plan.target_namespace, manifest)
        logger.info(
            "Created PVC %s/%s from backup %s",
            plan.target_namespace,
            plan.target_claim_name,
            plan.source_backup_id,
        )
        return self._wait_for_bound(plan, wait_seconds=wait_seconds, cancel_event=cancel_event)

    def _resolve_size(
        self,
        *,
        override_size: str | None,
        claim_size: str | None,
        record: BackupRecord,
    ) -> tuple[str, str]:
        if override_size:
            normalized = override_size.strip()
            if not _QUANTITY_PATTERN.match(normalized):
                raise ValueError(f"Invalid size '{override_size}'. Use a Kubernetes quantity such as 10Gi.")
            return normalized, SIZE_SOURCE_OVERRIDE
        if claim_size:
            return claim_size, SIZE_SOURCE_CLAIM
        if record.size_bytes > 0:
            return size_from_bytes(record.size_bytes), SIZE_SOURCE_BACKUP
        if self.config.size_fallback_policy == SIZE_FALLBACK_FAIL:
            raise SizeResolutionError(
                f"Could not determine a restore size for backup {record.id}. Pass --size explicitly."
            )
        logger.warning(
            "Could not determine restore size for backup %s; falling back to %s",
            record.id,
            self.config.fallback_size,
        )
        return self.config.fallback_size, SIZE_SOURCE_FALLBACK

    def _replace_existing_claim(
        self,
        plan: RestorePlan,
        *,
        wait_seconds: int,
    ) -> None:
        logger.info("Deleting existing PVC %s/%s", plan.target_namespace, plan.target_claim_name)
        self.gateway.delete_claim(plan.target_namespace, plan.target_claim_name)
        deadline = self.monotonic() + wait_seconds
        while self.gateway.get_claim(plan.target_namespace, plan.target_claim_name) is not None:
            if self.monotonic() >= deadline:
                raise BindTimeoutError(
                    f"PVC {plan.target_namespace}/{plan.target_claim_name} was not deleted in time"
                )
            self.sleep(self.config.restore_poll_interval_seconds)

    def _wait_for_bound(
        self,
        plan: RestorePlan,
        *,
        wait_seconds: int,
        cancel_event: threading.Event | None,
    ) -> RestoreOutcome:
        deadline = self.monotonic() + wait_seconds
        last_phase = "Unknown"
        while True:
            claim = self.gateway.get_claim(plan.target_namespace, plan.target_claim_name)
            if claim is not None:
                last_phase = claim.phase
                if claim.phase == "Bound":
                    return RestoreOutcome(plan=plan, status=OUTCOME_BOUND, volume_name=claim.volume_name)
            if self.monotonic() >= deadline:
                raise BindTimeoutError(
                    f"PVC {plan.target_namespace}/{plan.target_claim_name} did not become Bound in time "
                    f"(last observed phase={last_phase}). Inspect the PVC events and the Longhorn volume."
                )
            if self._pause(cancel_event):
                logger.info(
                    "Stopped waiting for PVC %s/%s; the claim stays in place",
                    plan.target_namespace,
                    plan.target_claim_name,
                )
                return RestoreOutcome(plan=plan, status=OUTCOME_CANCELLED)

    def _timeout(self, timeout_seconds: int | None) -> int:
        if timeout_seconds is None:
            return self.config.restore_timeout_seconds
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        return timeout_seconds

    def _pause(self, cancel_event: threading.Event | None) -> bool:
        interval = self.config.restore_poll_interval_seconds
        if cancel_event is not None:
            return cancel_event.wait(interval)
        self.sleep(interval)
        return False


def size_from_bytes(size_bytes: int) -> str:
    return f"{max(1, math.ceil(size_bytes / GIB))}Gi"


def build_restore_manifest(plan: RestorePlan, *, restored_at: datetime, label_prefix: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": plan.target_claim_name,
            "namespace": plan.target_namespace,
            "labels": {
                f"{label_prefix}/enabled": "true",
                f"{label_prefix}/tier": plan.tier,
                f"{label_prefix}/restored": "true",
            },
            "annotations": {
                f"{label_prefix}/restored-from": plan.source_backup_id,
                f"{label_prefix}/restored-at": restored_at.astimezone(UTC).replace(microsecond=0).isoformat(),
                f"{label_prefix}/original-pvc": plan.source_claim_name,
            },
        },
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": plan.storage_class,
            "resources": {"requests": {"storage": plan.size}},
            "dataSource": {
                "kind": "Backup",
                "apiGroup": LONGHORN_GROUP,
                "name": plan.source_backup_id,
            },
        },
    }
