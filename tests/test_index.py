from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
import stat
from unittest.mock import Mock

import pytest

from longhorn_backup_manager.catalog import BackupCatalog
from longhorn_backup_manager.index import build_backup_index, write_backup_index
from longhorn_backup_manager.models import EnrolledVolume


def _enrolled(namespace: str, claim: str, volume_id: str | None, tier: str = "daily") -> EnrolledVolume:
    return EnrolledVolume(
        namespace=namespace,
        claim_name=claim,
        volume_id=volume_id,
        tier=tier,
        enrolled_at=None,
    )


def test_build_backup_index_lists_claims_with_ordered_backups(gateway) -> None:
    gateway.add_backup("backup-2", "pvc-abc", created_at="2026-01-02T00:00:00Z", size="2048")
    gateway.add_backup("backup-1", "pvc-abc", created_at="2026-01-01T00:00:00Z", size="1024")

    document = build_backup_index(
        [_enrolled("prod", "pg-data", "pvc-abc", "both"), _enrolled("dev", "cache", None)],
        BackupCatalog(gateway),
        generated_at=datetime(2026, 1, 3, 4, 5, 6, 789, tzinfo=UTC),
    )

    assert document == {
        "generatedAt": "2026-01-03T04:05:06Z",
        "claims": [
            {
                "namespace": "dev",
                "claimName": "cache",
                "volumeId": None,
                "tier": "daily",
                "backups": [],
            },
            {
                "namespace": "prod",
                "claimName": "pg-data",
                "volumeId": "pvc-abc",
                "tier": "both",
                "backups": [
                    {"name": "backup-1", "createdAt": "2026-01-01T00:00:00Z", "sizeBytes": 1024},
                    {"name": "backup-2", "createdAt": "2026-01-02T00:00:00Z", "sizeBytes": 2048},
                ],
            },
        ],
    }


def test_write_backup_index_replaces_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "backup-index.json"
    target.parent.mkdir()
    target.write_text('{"old": true}', encoding="utf-8")

    written = write_backup_index(target, {"generatedAt": "2026-01-01T00:00:00Z", "claims": []})

    assert written == target
    assert json.loads(target.read_text(encoding="utf-8")) == {"generatedAt": "2026-01-01T00:00:00Z", "claims": []}
    assert sorted(path.name for path in target.parent.iterdir()) == ["backup-index.json"]


def test_write_backup_index_failure_keeps_previous_file_and_cleans_temp(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    target = tmp_path / "backup-index.json"
    target.write_text('{"claims": ["previous"]}', encoding="utf-8")
    monkeypatch.setattr("longhorn_backup_manager.index.os.replace", Mock(side_effect=OSError("disk full")))

    with pytest.raises(OSError, match="disk full"):
        write_backup_index(target, {"generatedAt": "2026-01-01T00:00:00Z", "claims": []})

    assert json.loads(target.read_text(encoding="utf-8")) == {"claims": ["previous"]}
    assert sorted(path.name for path in tmp_path.iterdir()) == ["backup-index.json"]


def test_write_backup_index_new_file_is_world_readable(tmp_path: Path) -> None:
    target = tmp_path / "backup-index.json"

    write_backup_index(target, {"generatedAt": "2026-01-01T00:00:00Z", "claims": []})

    assert stat.S_IMODE(target.stat().st_mode) == 0o644


def test_write_backup_index_keeps_mode_of_previous_file(tmp_path: Path) -> None:
    target = tmp_path / "backup-index.json"
    target.write_text("{}", encoding="utf-8")
    target.chmod(0o664)

    write_backup_index(target, {"generatedAt": "2026-01-01T00:00:00Z", "claims": []})

    assert stat.S_IMODE(target.stat().st_mode) == 0o664
