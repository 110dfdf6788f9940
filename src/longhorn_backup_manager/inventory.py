from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import TYPE_CHECKING, Callable

from .config import AppConfig
from .errors import NotFoundError
from .k8s import ClusterGateway
from .models import VALID_TIERS, ClaimInfo, EnrolledVolume

if TYPE_CHECKING:
    from .reconcile import EnrollmentReconciler

logger = logging.getLogger(__name__)


class InventoryTracker:
    """Tracks which claims are enrolled for backup.

    Enrollment lives on the claims themselves as labels, so the set is read
    fresh from the cluster on every call and the bound volume is re-resolved
    each time (a claim enrolled before binding picks up its volume later).
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        config: AppConfig,
        *,
        reconciler: EnrollmentReconciler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config
        self.reconciler = reconciler
        self.clock = clock or (lambda: datetime.now(tz=UTC))

    def list_enrolled(self, namespace: str | None = None, claim_name: str | None = None) -> list[EnrolledVolume]:
        claims = self.gateway.list_claims(
            label_selector=f"{self.config.enabled_label}=true",
            namespace=namespace or None,
        )
        return [
            self._to_enrolled(claim)
            for claim in claims
            if not claim_name or claim.name == claim_name
        ]

    def get_enrolled(self, namespace: str, claim_name: str) -> EnrolledVolume | None:
        claim = self.gateway.get_claim(namespace, claim_name)
        if claim is None or not self._is_enrolled(claim):
            return None
        return self._to_enrolled(claim)

    def enroll(self, namespace: str, claim_name: str, tier: str | None = None) -> EnrolledVolume:
        tier = tier or self.config.default_tier
        if tier not in VALID_TIERS:
            raise ValueError(f"Invalid tier '{tier}'. Use: {', '.join(VALID_TIERS)}")

        claim = self.gateway.get_claim(namespace, claim_name)
        if claim is None:
            raise NotFoundError(f"PVC {namespace}/{claim_name} not found")

        added_at_key = self.config.label_key("added-at")
        enrolled_at = claim.annotations.get(added_at_key) if self._is_enrolled(claim) else None
        enrolled_at = enrolled_at or _isoformat(self.clock())

        updated = self.gateway.patch_claim_metadata(
            namespace,
            claim_name,
            labels={
                self.config.enabled_label: "true",
                self.config.tier_label: tier,
            },
            annotations={
                added_at_key: enrolled_at,
                self.config.label_key("source-namespace"): namespace,
                self.config.label_key("source-pvc"): claim_name,
            },
        )
        enrolled = self._to_enrolled(updated)
        if enrolled.volume_id is None:
            logger.warning(
                "PVC %s/%s is not bound to a volume yet; enrollment recorded, job binding deferred",
                namespace,
                claim_name,
            )
        logger.info("Enrolled %s/%s with tier %s", namespace, claim_name, tier)
        return enrolled

    def unenroll(self, namespace: str, claim_name: str) -> EnrolledVolume | None:
        """Drop a claim from the backup schedule. Existing backups are left alone.

        Returns the removed entry, or None when the claim no longer exists. When a
        reconciler is attached, the volume's recurring jobs are cleared right away;
        a failed clear is logged and picked up by the next full reconcile.
        """
        claim = self.gateway.get_claim(namespace, claim_name)
        if claim is None:
            logger.warning("PVC %s/%s not found; it may have already been deleted", namespace, claim_name)
            return None

        removed = self._to_enrolled(claim)
        self.gateway.patch_claim_metadata(
            namespace,
            claim_name,
            labels={
                self.config.enabled_label: None,
                self.config.tier_label: None,
            },
            annotations={
                self.config.label_key("removed-from-backup-at"): _isoformat(self.clock()),
            },
        )
        logger.info("Unenrolled %s/%s", namespace, claim_name)

        if self.reconciler is not None and removed.volume_id:
            report = self.reconciler.clear(removed.volume_id)
            for failure in report.failures:
                logger.warning("Could not clear recurring jobs on volume %s: %s", failure.volume_id, failure.reason)
        return removed

    def _is_enrolled(self, claim: ClaimInfo) -> bool:
        return claim.labels.get(self.config.enabled_label) == "true"

    def _to_enrolled(self, claim: ClaimInfo) -> EnrolledVolume:
        tier = claim.labels.get(self.config.tier_label) or self.config.default_tier
        if tier not in VALID_TIERS:
            logger.warning(
                "PVC %s/%s has unknown tier label %r; using %s",
                claim.namespace,
                claim.name,
                tier,
                self.config.default_tier,
            )
            tier = self.config.default_tier
        return EnrolledVolume(
            namespace=claim.namespace,
            claim_name=claim.name,
            volume_id=claim.volume_name,
            tier=tier,
            enrolled_at=claim.annotations.get(self.config.label_key("added-at")),
        )


def _isoformat(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).isoformat()
