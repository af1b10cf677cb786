"""
Snapshot Manager — point-in-time copies of a fossil store

A snapshot is a directory ``snapshots/<snapshotId>/`` holding a copy of
every entry file, the index, and a ``metadata.json``:

    {id, name, timestamp, entryCount, description}

Snapshots are write-once. There is no restore operation: restoring means
copying the files back by hand.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from fossilctl.types import _now_iso, generate_id

if TYPE_CHECKING:
    from fossilctl.store import FossilStore

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"


def create_snapshot(
    store: FossilStore,
    name: str,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Copy all entry files and the index into a new snapshot directory.

    ``entryCount`` is the number of entry files copied, so it matches the
    file count of ``<snapshot>/entries/`` exactly.

    Returns:
        The snapshot metadata dict (also written to metadata.json).

    Raises:
        ValueError: If name is empty.
        OSError: On any copy failure (the partial directory is left behind).
    """
    if not name or not name.strip():
        raise ValueError("snapshot name is required")

    snapshot_id = generate_id(f"snapshot-{name}", "snapshot", name, prefix="snapshot")
    target = store.snapshots_dir / snapshot_id
    if target.exists():
        # Same name within the same millisecond
        snapshot_id = f"{snapshot_id}_{uuid.uuid4().hex[:6]}"
        target = store.snapshots_dir / snapshot_id
    entries_target = target / "entries"
    entries_target.mkdir(parents=True, exist_ok=False)

    copied = 0
    for path in sorted(store.entries_dir.glob("*.json")):
        shutil.copy2(path, entries_target / path.name)
        copied += 1
    if store.index_path.exists():
        shutil.copy2(store.index_path, target / "index.json")

    metadata = {
        "id": snapshot_id,
        "name": name,
        "timestamp": _now_iso(),
        "entryCount": copied,
        "description": description or f"Snapshot of {copied} fossil entries",
    }
    (target / METADATA_FILE).write_text(
        json.dumps(metadata, ensure_ascii=False, indent=2), encoding="utf-8",
    )
    logger.info(f"Snapshot written: {snapshot_id} ({copied} entries)")
    return metadata


def list_snapshots(store: FossilStore) -> List[Dict[str, Any]]:
    """Metadata of every snapshot, newest first. Unreadable ones are skipped."""
    if not store.snapshots_dir.is_dir():
        return []

    snapshots: List[Dict[str, Any]] = []
    for meta_path in store.snapshots_dir.glob(f"*/{METADATA_FILE}"):
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Skipping unreadable snapshot {meta_path.parent.name}: {exc}")
            continue
        if isinstance(data, dict):
            snapshots.append(data)

    snapshots.sort(key=lambda m: str(m.get("timestamp", "")), reverse=True)
    return snapshots
