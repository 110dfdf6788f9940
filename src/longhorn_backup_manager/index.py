from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import stat
import tempfile
from typing import Any, Iterable

from .catalog import BackupCatalog, format_timestamp
from .models import EnrolledVolume

logger = logging.getLogger(__name__)

_DEFAULT_INDEX_MODE = 0o644


def build_backup_index(
    enrolled: Iterable[EnrolledVolume],
    catalog: BackupCatalog,
    *,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    claims: list[dict[str, Any]] = []
    for volume in sorted(enrolled, key=lambda item: (item.namespace, item.claim_name)):
        records = catalog.list_backups(volume.volume_id) if volume.volume_id else []
        claims.append(
            {
                "namespace": volume.namespace,
                "claimName": volume.claim_name,
                "volumeId": volume.volume_id,
                "tier": volume.tier,
                "backups": [
                    {
                        "name": record.id,
                        "createdAt": format_timestamp(record.created_at),
                        "sizeBytes": record.size_bytes,
                    }
                    for record in records
                ],
            }
        )
    generated = generated_at or datetime.now(tz=UTC)
    return {
        "generatedAt": format_timestamp(generated.replace(microsecond=0)),
        "claims": claims,
    }


def _index_mode(path: Path) -> int:
    # Previous index mode, else world-readable.
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return _DEFAULT_INDEX_MODE


def write_backup_index(path: Path, document: dict[str, Any]) -> Path:
    """Write the index so readers never observe a truncated file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    temp_path = Path(handle.name)
    try:
        with handle:
            json.dump(document, handle, indent=2, sort_keys=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, _index_mode(path))
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    logger.info("Wrote backup index for %d claim(s) to %s", len(document.get("claims", [])), path)
    return path
