from __future__ import annotations

from datetime import UTC, datetime
import logging

import pytest

from longhorn_backup_manager.catalog import BackupCatalog
from longhorn_backup_manager.errors import NotFoundError
from longhorn_backup_manager.inventory import InventoryTracker
from longhorn_backup_manager.reconcile import EnrollmentReconciler

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
_ENABLED = "backup.home.lab/enabled"
_TIER = "backup.home.lab/tier"
_ADDED_AT = "backup.home.lab/added-at"


def _tracker(gateway, config, *, with_reconciler: bool = False) -> InventoryTracker:
    reconciler = EnrollmentReconciler(gateway) if with_reconciler else None
    return InventoryTracker(gateway, config, reconciler=reconciler, clock=lambda: _NOW)


def test_enroll_with_bound_claim_sets_labels_and_annotations(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc")

    enrolled = _tracker(gateway, config).enroll("prod", "pg-data", "both")

    assert enrolled.volume_id == "pvc-abc"
    assert enrolled.tier == "both"
    assert enrolled.enrolled_at == "2026-03-01T12:00:00+00:00"
    claim = gateway.get_claim("prod", "pg-data")
    assert claim.labels == {_ENABLED: "true", _TIER: "both"}
    assert claim.annotations == {
        _ADDED_AT: "2026-03-01T12:00:00+00:00",
        "backup.home.lab/source-namespace": "prod",
        "backup.home.lab/source-pvc": "pg-data",
    }


def test_enroll_without_tier_uses_configured_default(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc")

    assert _tracker(gateway, config).enroll("prod", "pg-data").tier == "daily"


def test_enroll_with_invalid_tier_raises_value_error_without_patching(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc")

    with pytest.raises(ValueError, match="Invalid tier 'hourly'"):
        _tracker(gateway, config).enroll("prod", "pg-data", "hourly")

    assert gateway.get_claim("prod", "pg-data").labels == {}


def test_enroll_with_missing_claim_raises_not_found(gateway, config) -> None:
    with pytest.raises(NotFoundError, match="PVC prod/missing not found"):
        _tracker(gateway, config).enroll("prod", "missing")


def test_enroll_with_unbound_claim_records_enrollment_and_warns(gateway, config, caplog) -> None:
    gateway.add_claim("prod", "pg-data")

    with caplog.at_level(logging.WARNING, logger="longhorn_backup_manager"):
        enrolled = _tracker(gateway, config).enroll("prod", "pg-data")

    assert enrolled.volume_id is None
    assert gateway.get_claim("prod", "pg-data").labels[_ENABLED] == "true"
    assert "not bound to a volume yet" in caplog.text


def test_enroll_twice_keeps_original_enrollment_time_and_updates_tier(gateway, config) -> None:
    gateway.add_claim(
        "prod",
        "pg-data",
        volume_name="pvc-abc",
        labels={_ENABLED: "true", _TIER: "daily"},
        annotations={_ADDED_AT: "2025-12-01T00:00:00+00:00"},
    )

    enrolled = _tracker(gateway, config).enroll("prod", "pg-data", "weekly")

    assert enrolled.tier == "weekly"
    assert enrolled.enrolled_at == "2025-12-01T00:00:00+00:00"


def test_list_enrolled_filters_by_label_namespace_and_claim(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc", labels={_ENABLED: "true", _TIER: "both"})
    gateway.add_claim("prod", "redis", volume_name="pvc-def", labels={_ENABLED: "true"})
    gateway.add_claim("prod", "scratch", volume_name="pvc-ghi")
    gateway.add_claim("dev", "pg-data", labels={_ENABLED: "true", _TIER: "weekly"})
    tracker = _tracker(gateway, config)

    everything = tracker.list_enrolled()
    prod_only = tracker.list_enrolled("prod")
    single = tracker.list_enrolled("prod", "redis")

    assert [(item.namespace, item.claim_name) for item in everything] == [
        ("dev", "pg-data"),
        ("prod", "pg-data"),
        ("prod", "redis"),
    ]
    assert [item.claim_name for item in prod_only] == ["pg-data", "redis"]
    assert [(item.claim_name, item.tier, item.volume_id) for item in single] == [("redis", "daily", "pvc-def")]


def test_list_enrolled_with_unknown_tier_label_falls_back_to_default(gateway, config, caplog) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc", labels={_ENABLED: "true", _TIER: "hourly"})

    with caplog.at_level(logging.WARNING, logger="longhorn_backup_manager"):
        enrolled = _tracker(gateway, config).list_enrolled()

    assert enrolled[0].tier == "daily"
    assert "unknown tier label" in caplog.text


def test_get_enrolled_returns_none_for_unenrolled_or_missing_claim(gateway, config) -> None:
    gateway.add_claim("prod", "scratch", volume_name="pvc-ghi")
    tracker = _tracker(gateway, config)

    assert tracker.get_enrolled("prod", "scratch") is None
    assert tracker.get_enrolled("prod", "missing") is None


def test_unenroll_removes_labels_and_clears_recurring_jobs(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc", labels={_ENABLED: "true", _TIER: "both"})
    gateway.add_volume("pvc-abc", ["daily-backup", "weekly-backup"])
    gateway.add_backup("backup-1", "pvc-abc")

    removed = _tracker(gateway, config, with_reconciler=True).unenroll("prod", "pg-data")

    assert removed is not None
    assert removed.volume_id == "pvc-abc"
    claim = gateway.get_claim("prod", "pg-data")
    assert _ENABLED not in claim.labels
    assert _TIER not in claim.labels
    assert claim.annotations["backup.home.lab/removed-from-backup-at"] == "2026-03-01T12:00:00+00:00"
    assert gateway.job_names("pvc-abc") == set()
    assert "backup-1" in gateway.backups


def test_unenroll_with_missing_claim_returns_none(gateway, config, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="longhorn_backup_manager"):
        assert _tracker(gateway, config).unenroll("prod", "gone") is None

    assert "may have already been deleted" in caplog.text


def test_unenroll_with_failed_job_clear_still_removes_labels(gateway, config, caplog) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc", labels={_ENABLED: "true"})
    gateway.add_volume("pvc-abc", ["daily-backup"])
    gateway.failing_volumes.add("pvc-abc")

    with caplog.at_level(logging.WARNING, logger="longhorn_backup_manager"):
        removed = _tracker(gateway, config, with_reconciler=True).unenroll("prod", "pg-data")

    assert removed is not None
    assert _ENABLED not in gateway.get_claim("prod", "pg-data").labels
    assert "Could not clear recurring jobs on volume pvc-abc" in caplog.text


def test_enroll_reconcile_unenroll_reconcile_cycle_clears_jobs_and_keeps_backups(gateway, config) -> None:
    gateway.add_claim("prod", "pg-data", volume_name="pvc-abc")
    gateway.add_volume("pvc-abc")
    gateway.add_backup("backup-1", "pvc-abc")
    tracker = _tracker(gateway, config)
    reconciler = EnrollmentReconciler(gateway)

    tracker.enroll("prod", "pg-data", "both")
    reconciler.reconcile(tracker.list_enrolled())
    assert gateway.job_names("pvc-abc") == {"daily-backup", "weekly-backup"}

    tracker.unenroll("prod", "pg-data")
    report = reconciler.reconcile(tracker.list_enrolled())

    assert gateway.job_names("pvc-abc") == set()
    assert [(binding.volume_id, binding.job_names) for binding in report.applied] == [("pvc-abc", frozenset())]
    assert [record.id for record in BackupCatalog(gateway).list_backups("pvc-abc")] == ["backup-1"]
