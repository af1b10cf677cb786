"""
Export/Import — JSON, Markdown, CSV and YAML renderings of fossil entries

Export resolves a filtered entry set through the store query path and
writes one file under ``exports/``:

    fossil-export-latest.<ext>        stable mode (overwritten each time)
    fossil-export-<timestamp>.<ext>   archival mode

The whole result is materialized in memory. CSV and YAML are emitted by
hand so their exact layout stays fixed.

Import reads a JSON export (array of entries) and routes every record
through ``FossilStore.add_entry``, so exact and fuzzy deduplication apply.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from fossilctl.types import (
    EntryValidationError,
    FossilEntry,
    FossilQuery,
    content_hash,
)

if TYPE_CHECKING:
    from fossilctl.store import FossilStore

# format name -> file extension
FORMATS: Dict[str, str] = {
    "json": "json",
    "markdown": "md",
    "md": "md",
    "csv": "csv",
    "yaml": "yaml",
    "yml": "yaml",
}

CSV_HEADER = ["id", "type", "title", "content", "tags", "source",
              "createdAt", "updatedAt", "version"]

# Record keys the store assigns itself; stripped from imported records
_STORE_ASSIGNED = ("id", "createdAt", "created_at", "updatedAt", "updated_at",
                   "version", "previousVersions", "previous_versions")


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    total: int = 0
    created: int = 0
    deduplicated: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "created": self.created,
            "deduplicated": self.deduplicated,
            "errors": self.errors,
        }


# ---------------------------------------------------------------------------
# Default log
# ---------------------------------------------------------------------------


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def render_json(entries: List[FossilEntry]) -> str:
    """Pretty-printed JSON array of full entries."""
    return json.dumps([e.to_dict() for e in entries], ensure_ascii=False, indent=2)


def render_markdown(entries: List[FossilEntry], generated: Optional[str] = None) -> str:
    """Markdown document grouped by entry type (first-seen type order)."""
    generated = generated or datetime.now(timezone.utc).isoformat()
    lines = [
        "# Context Fossil Storage Export",
        "",
        f"Generated: {generated}",
        f"Total Entries: {len(entries)}",
        "",
    ]

    by_type: Dict[str, List[FossilEntry]] = {}
    for entry in entries:
        by_type.setdefault(entry.type, []).append(entry)

    for type_, group in by_type.items():
        lines.append(f"## {type_.capitalize()} ({len(group)})")
        lines.append("")
        for entry in group:
            lines.extend([
                f"### {entry.title}",
                "",
                f"**ID:** {entry.id}",
                f"**Created:** {entry.created_at}",
                f"**Source:** {entry.source}",
                f"**Tags:** {', '.join(entry.tags)}",
                "",
                entry.content,
                "",
                "---",
                "",
            ])
    return "\n".join(lines)


def _csv_quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def render_csv(entries: List[FossilEntry]) -> str:
    """CSV with a fixed header; title, content and tags are always quoted."""
    rows = [",".join(CSV_HEADER)]
    for entry in entries:
        rows.append(",".join([
            entry.id,
            entry.type,
            _csv_quote(entry.title),
            _csv_quote(entry.content),
            _csv_quote(";".join(entry.tags)),
            entry.source,
            entry.created_at,
            entry.updated_at,
            str(entry.version),
        ]))
    return "\n".join(rows)


def render_yaml(entries: List[FossilEntry], generated: Optional[str] = None) -> str:
    """Hand-emitted YAML; content is written as a literal block scalar."""
    generated = generated or datetime.now(timezone.utc).isoformat()
    lines = [
        "# Context Fossil Storage Export",
        f"generated: {generated}",
        f"total_entries: {len(entries)}",
        "",
        "entries:",
    ]
    for entry in entries:
        tags = ", ".join(json.dumps(t, ensure_ascii=False) for t in entry.tags)
        lines.append(f"  - id: {entry.id}")
        lines.append(f"    type: {entry.type}")
        lines.append(f"    title: {json.dumps(entry.title, ensure_ascii=False)}")
        # Indentation indicator when the first line is itself indented
        first = next((ln for ln in entry.content.split("\n") if ln), "")
        indicator = "|2" if first[:1] in (" ", "\t") else "|"
        lines.append(f"    content: {indicator}")
        for line in entry.content.split("\n"):
            lines.append(f"      {line}" if line else "")
        lines.append(f"    tags: [{tags}]")
        lines.append(f"    source: {entry.source}")
        lines.append(f"    created_at: {entry.created_at}")
        lines.append(f"    updated_at: {entry.updated_at}")
        lines.append(f"    version: {entry.version}")
        lines.append("")
    return "\n".join(lines)


_RENDERERS: Dict[str, Callable[[List[FossilEntry]], str]] = {
    "json": render_json,
    "md": render_markdown,
    "csv": render_csv,
    "yaml": render_yaml,
}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_entries(
    store: FossilStore,
    fmt: str,
    query: Optional[Union[FossilQuery, Dict[str, Any]]] = None,
    *,
    stable: Optional[bool] = None,
    log: Optional[Callable[[str], None]] = None,
) -> Path:
    """Render a filtered entry set to a file under ``exports/``.

    Args:
        store: Initialized FossilStore.
        fmt: json, markdown (md), csv or yaml (yml).
        query: Filter; defaults to ``limit=export.default_limit, offset=0``.
        stable: Overwrite ``fossil-export-latest.<ext>`` (True) or write a
            timestamped file (False). Defaults to ``export.stable``.
        log: Optional progress callback.

    Returns:
        Path of the written file.

    Raises:
        ValueError: Unknown format.
    """
    ext = FORMATS.get(fmt.lower()) if fmt else None
    if ext is None:
        raise ValueError(
            f"Unknown export format {fmt!r} (expected one of: {', '.join(sorted(FORMATS))})"
        )
    if stable is None:
        stable = store.config.export.stable
    if query is None:
        query = FossilQuery(limit=store.config.export.default_limit, offset=0)

    entries = store.query_entries(query)
    text = _RENDERERS[ext](entries)

    if stable:
        filename = f"fossil-export-latest.{ext}"
    else:
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        filename = f"fossil-export-{stamp}.{ext}"

    store.exports_dir.mkdir(parents=True, exist_ok=True)
    path = store.exports_dir / filename
    path.write_text(text, encoding="utf-8")

    if log is not None:
        log(f"[export] {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} -> {path}")
    return path


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _draft_from_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Strip store-assigned keys and stale hash metadata from an exported entry."""
    draft = {k: v for k, v in record.items() if k not in _STORE_ASSIGNED}
    metadata = draft.get("metadata")
    if isinstance(metadata, dict):
        draft["metadata"] = {
            k: v for k, v in metadata.items()
            if k not in ("contentHash", "similarityScore")
        }
    return draft


def import_entries(
    store: FossilStore,
    source: Union[IO[str], str, Path],
    *,
    dry_run: bool = False,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Import entries from a JSON export (array of entry objects).

    Every record goes through ``add_entry``: exact-hash and same-title
    fuzzy duplicates update the stored entry instead of creating one.
    A dry run predicts the outcome from the hash and similarity lookups
    without writing.

    Args:
        store: Initialized FossilStore.
        source: File path or readable stream.
        dry_run: Count only.
        log: Callable for progress messages (default: stderr).

    Returns:
        ImportResult with counts.

    Raises:
        ValueError: If the source is not a JSON array.
    """
    result = ImportResult()

    if isinstance(source, (str, Path)):
        with open(source, "r", encoding="utf-8") as fh:
            text = fh.read()
    else:
        text = source.read()

    try:
        records = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Import source is not valid JSON: {exc}") from exc
    if not isinstance(records, list):
        raise ValueError("Import source must be a JSON array of entries")

    for position, record in enumerate(records, 1):
        result.total += 1
        if not isinstance(record, dict):
            log(f"[import] Record {position} is not an object")
            result.errors += 1
            continue

        try:
            draft = FossilEntry.from_dict(_draft_from_record(record))
            draft.validate(draft=True)
        except (TypeError, EntryValidationError) as exc:
            log(f"[import] Invalid record {position}: {exc}")
            result.errors += 1
            continue

        if dry_run:
            if _would_deduplicate(store, draft):
                result.deduplicated += 1
            else:
                result.created += 1
            continue

        known_ids = set(store.load_index().ids())
        entry = store.add_entry(draft)
        if entry.id in known_ids:
            result.deduplicated += 1
        else:
            result.created += 1

    label = " (dry run)" if dry_run else ""
    log(
        f"[import]{label} {result.created} created, "
        f"{result.deduplicated} deduplicated, "
        f"{result.errors} error(s)"
    )
    return result


def _would_deduplicate(store: FossilStore, draft: FossilEntry) -> bool:
    if store.find_by_content_hash(content_hash(draft.content, draft.type, draft.title)):
        return True
    if not store.config.dedup.enabled:
        return False
    return bool(store.find_similar(
        draft.title, draft.content, store.config.dedup.similarity_threshold,
    ))
