from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

TIER_DAILY = "daily"
TIER_WEEKLY = "weekly"
TIER_BOTH = "both"
VALID_TIERS = (TIER_DAILY, TIER_WEEKLY, TIER_BOTH)

DAILY_BACKUP_JOB = "daily-backup"
WEEKLY_BACKUP_JOB = "weekly-backup"
MANAGED_JOB_NAMES = frozenset({DAILY_BACKUP_JOB, WEEKLY_BACKUP_JOB})

_TIER_JOB_NAMES = {
    TIER_DAILY: frozenset({DAILY_BACKUP_JOB}),
    TIER_WEEKLY: frozenset({WEEKLY_BACKUP_JOB}),
    TIER_BOTH: frozenset({DAILY_BACKUP_JOB, WEEKLY_BACKUP_JOB}),
}

STATE_PENDING = "Pending"
STATE_IN_PROGRESS = "InProgress"
STATE_COMPLETED = "Completed"
STATE_FAILED = "Failed"
STATE_UNKNOWN = "Unknown"
BACKUP_STATES = (STATE_PENDING, STATE_IN_PROGRESS, STATE_COMPLETED, STATE_FAILED, STATE_UNKNOWN)


def jobs_for_tier(tier: str) -> frozenset[str]:
    try:
        return _TIER_JOB_NAMES[tier]
    except KeyError:
        raise ValueError(f"Invalid tier '{tier}'. Use: {', '.join(VALID_TIERS)}") from None


@dataclass(frozen=True)
class ClaimInfo:
    namespace: str
    name: str
    volume_name: str | None
    phase: str
    requested_storage: str | None
    storage_class: str | None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EnrolledVolume:
    namespace: str
    claim_name: str
    volume_id: str | None
    tier: str
    enrolled_at: str | None


@dataclass(frozen=True)
class BackupRecord:
    id: str
    volume_id: str
    created_at: datetime | None
    size_bytes: int
    state: str
    source_url: str | None


@dataclass(frozen=True)
class BackupVolumeSummary:
    name: str
    last_backup_name: str | None
    last_backup_at: str | None


@dataclass(frozen=True)
class RecurringJobBinding:
    volume_id: str
    job_names: frozenset[str]


@dataclass(frozen=True)
class ReconcileFailure:
    volume_id: str
    reason: str


@dataclass(frozen=True)
class ReconcileReport:
    applied: tuple[RecurringJobBinding, ...] = ()
    unchanged: tuple[RecurringJobBinding, ...] = ()
    failures: tuple[ReconcileFailure, ...] = ()
    pending: tuple[EnrolledVolume, ...] = ()
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class RestorePlan:
    target_namespace: str
    target_claim_name: str
    source_claim_name: str
    source_volume_id: str
    source_backup_id: str
    backup_state: str
    size: str
    size_source: str
    storage_class: str
    tier: str
    requires_replace: bool
    requires_confirmation: bool

    @property
    def replaces_source(self) -> bool:
        return self.requires_replace and self.target_claim_name == self.source_claim_name


@dataclass(frozen=True)
class RestoreOutcome:
    plan: RestorePlan
    status: str
    volume_name: str | None = None


@dataclass(frozen=True)
class OffsiteEntry:
    path: str
    size: int


@dataclass(frozen=True)
class OffsiteAuditResult:
    volume_id: str
    missing_backup_ids: frozenset[str]
    extra_backup_ids: frozenset[str]

    @property
    def in_sync(self) -> bool:
        return not self.missing_backup_ids and not self.extra_backup_ids
