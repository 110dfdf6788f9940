from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any, Protocol

from .errors import NotFoundError
from .models import (
    BACKUP_STATES,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_PENDING,
    STATE_UNKNOWN,
    BackupRecord,
    BackupVolumeSummary,
)

_EARLIEST = datetime.min.replace(tzinfo=UTC)
_STATE_ALIASES = {
    "": STATE_PENDING,
    "New": STATE_PENDING,
    "Error": STATE_FAILED,
}
_VOLUME_LABEL_KEYS = ("longhornvolume", "backup-volume")

logger = logging.getLogger(__name__)


class BackupSource(Protocol):
    def list_backups(self, volume_id: str | None = None) -> list[dict[str, Any]]: ...

    def get_backup(self, backup_id: str) -> dict[str, Any]: ...

    def list_backup_volumes(self) -> list[dict[str, Any]]: ...


class BackupCatalog:
    """Read-only view of Longhorn Backup objects, ordered by creation time."""

    def __init__(self, source: BackupSource) -> None:
        self.source = source

    def list_backups(self, volume_id: str) -> list[BackupRecord]:
        records = [
            record
            for record in (backup_record_from_object(item) for item in self.source.list_backups(volume_id))
            if record.volume_id == volume_id
        ]
        return sort_records(records)

    def list_all(self) -> list[BackupRecord]:
        return sort_records([backup_record_from_object(item) for item in self.source.list_backups()])

    def latest(self, volume_id: str) -> BackupRecord:
        completed = [record for record in self.list_backups(volume_id) if record.state == STATE_COMPLETED]
        if not completed:
            raise NotFoundError(f"No Completed backup found for volume '{volume_id}'")
        return completed[-1]

    def get(self, backup_id: str) -> BackupRecord:
        return backup_record_from_object(self.source.get_backup(backup_id))

    def list_backup_volumes(self) -> list[BackupVolumeSummary]:
        summaries: list[BackupVolumeSummary] = []
        for item in self.source.list_backup_volumes():
            status = item.get("status") or {}
            summaries.append(
                BackupVolumeSummary(
                    name=(item.get("metadata") or {}).get("name", ""),
                    last_backup_name=status.get("lastBackupName") or None,
                    last_backup_at=status.get("lastBackupAt") or None,
                )
            )
        summaries.sort(key=lambda summary: summary.name)
        return summaries


def sort_records(records: list[BackupRecord]) -> list[BackupRecord]:
    # Longhorn timestamps have second resolution, so ties are broken by id.
    return sorted(records, key=lambda record: (record.created_at or _EARLIEST, record.id))


def backup_record_from_object(item: dict[str, Any]) -> BackupRecord:
    metadata = item.get("metadata") or {}
    status = item.get("status") or {}
    labels = metadata.get("labels") or {}

    volume_id = status.get("volumeName") or ""
    if not volume_id:
        volume_id = next((labels[key] for key in _VOLUME_LABEL_KEYS if labels.get(key)), "")

    return BackupRecord(
        id=metadata.get("name", ""),
        volume_id=volume_id,
        created_at=parse_timestamp(status.get("backupCreatedAt")),
        size_bytes=_parse_size(status.get("size")),
        state=normalize_state(status.get("state")),
        source_url=status.get("url") or None,
    )


def normalize_state(raw: str | None) -> str:
    value = (raw or "").strip()
    if value in BACKUP_STATES:
        return value
    return _STATE_ALIASES.get(value, STATE_UNKNOWN)


def parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable backup timestamp %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_size(raw: Any) -> int:
    if raw in (None, ""):
        return 0
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable backup size %r", raw)
        return 0
