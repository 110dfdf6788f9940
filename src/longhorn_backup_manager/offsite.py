from __future__ import annotations

from collections import defaultdict
from datetime import UTC, datetime, timedelta
import json
import logging
import os
from pathlib import Path
import re
import shutil
import subprocess
from typing import Callable, Iterable, Protocol

from .catalog import BackupCatalog
from .errors import ExternalUnavailableError
from .models import STATE_COMPLETED, OffsiteAuditResult, OffsiteEntry

# Longhorn backupstore layout: volumes/<h1>/<h2>/<volume>/backups/backup_<name>.cfg
_BACKUP_CONFIG_PATTERN = re.compile(
    r"(?:^|/)volumes/[^/]+/[^/]+/(?P<volume>[^/]+)/backups/backup_(?P<backup>[^/]+)\.cfg$"
)

logger = logging.getLogger(__name__)


class SyncTool(Protocol):
    def list(self, remote: str) -> list[OffsiteEntry]: ...

    def sync(self, remote: str, local_dir: Path) -> None: ...


class RcloneClient:
    """Thin wrapper around the rclone binary.

    rclone decrypts names and contents transparently when the remote is a crypt
    remote, so listings come back as logical backupstore paths.
    """

    def __init__(
        self,
        *,
        config_path: str | None = None,
        binary: str = "rclone",
        transfers: int = 4,
        checkers: int = 8,
    ) -> None:
        self.config_path = config_path
        self.binary = binary
        self.transfers = transfers
        self.checkers = checkers

    def check_connection(self, remote: str) -> None:
        self._run(["lsd", remote], action="connect to the offsite remote")

    def list(self, remote: str) -> list[OffsiteEntry]:
        output = self._run(["lsjson", "-R", "--files-only", remote], action="list the offsite remote")
        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError as error:
            raise ExternalUnavailableError(f"rclone returned an unreadable listing for {remote}: {error}") from error
        entries = [
            OffsiteEntry(path=str(item.get("Path", "")), size=max(0, int(item.get("Size") or 0)))
            for item in items
            if isinstance(item, dict)
        ]
        entries.sort(key=lambda entry: entry.path)
        return entries

    def sync(self, remote: str, local_dir: Path) -> None:
        local_dir.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                "sync",
                remote,
                f"{local_dir}/",
                "--transfers",
                str(self.transfers),
                "--checkers",
                str(self.checkers),
            ],
            action=f"sync the offsite remote into {local_dir}",
        )

    def _run(self, arguments: list[str], *, action: str) -> str:
        binary = shutil.which(self.binary)
        if binary is None:
            raise ExternalUnavailableError(
                "rclone is required for offsite operations but was not found in PATH. "
                "Install it from https://rclone.org/install/"
            )
        if self.config_path and not Path(self.config_path).expanduser().is_file():
            raise ExternalUnavailableError(f"rclone config file not found: {self.config_path}")

        environment = os.environ.copy()
        if self.config_path:
            environment["RCLONE_CONFIG"] = str(Path(self.config_path).expanduser())

        completed = subprocess.run(
            [binary, *arguments],
            check=False,
            capture_output=True,
            text=True,
            env=environment,
        )
        if completed.returncode != 0:
            detail = completed.stderr.strip() or completed.stdout.strip() or "rclone command failed"
            raise ExternalUnavailableError(
                f"Unable to {action}: {detail}. Verify credentials and encryption keys.",
                exit_code=completed.returncode,
            )
        return completed.stdout


def group_offsite_backups(entries: Iterable[OffsiteEntry]) -> dict[str, set[str]]:
    grouped: dict[str, set[str]] = defaultdict(set)
    for entry in entries:
        match = _BACKUP_CONFIG_PATTERN.search(entry.path)
        if match is None:
            continue
        grouped[match.group("volume")].add(match.group("backup"))
    return dict(grouped)


class OffsiteSyncAuditor:
    """Compares the primary backup catalog with the offsite copy."""

    def __init__(
        self,
        catalog: BackupCatalog,
        sync_tool: SyncTool,
        *,
        remote: str,
        grace_seconds: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        self.catalog = catalog
        self.sync_tool = sync_tool
        self.remote = remote
        self.grace = timedelta(seconds=grace_seconds)
        self.clock = clock or (lambda: datetime.now(tz=UTC))

    def audit(self, primary_volume_ids: Iterable[str], *, include_orphans: bool = True) -> list[OffsiteAuditResult]:
        volume_ids = sorted(set(primary_volume_ids))
        offsite = group_offsite_backups(self.sync_tool.list(self.remote))
        cutoff = self.clock() - self.grace

        results: list[OffsiteAuditResult] = []
        for volume_id in volume_ids:
            records = self.catalog.list_backups(volume_id)
            offsite_ids = offsite.get(volume_id, set())
            missing = {
                record.id
                for record in records
                if record.state == STATE_COMPLETED
                and record.id not in offsite_ids
                and (record.created_at is None or record.created_at <= cutoff)
            }
            primary_ids = {record.id for record in records}
            results.append(
                OffsiteAuditResult(
                    volume_id=volume_id,
                    missing_backup_ids=frozenset(missing),
                    extra_backup_ids=frozenset(offsite_ids - primary_ids),
                )
            )

        if include_orphans:
            for volume_id in sorted(set(offsite) - set(volume_ids)):
                logger.info("Offsite copy holds backups for volume %s with no primary record", volume_id)
                results.append(
                    OffsiteAuditResult(
                        volume_id=volume_id,
                        missing_backup_ids=frozenset(),
                        extra_backup_ids=frozenset(offsite[volume_id]),
                    )
                )
        return results
