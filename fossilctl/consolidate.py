"""
Duplicate Consolidation — batch merge of duplicates missed at insert time

Groups every stored entry by independent keys, in order:
  A) ``metadata.contentHash`` (entries that carry one)
  B) literal (content, type, title) for legacy entries without a hash;
     a legacy entry whose computed hash matches a hashed entry joins
     that entry's hash group instead
  C) parsed value of an embedded fenced JSON block (``merge_json_blocks``)
  D) same type and title with edit similarity >= threshold (``fuzzy``,
     off by default)

Merge contract, per group of size > 1:
  - The first member in index order is canonical (in passes C and D an
    entry that already survived an earlier merge is moved to the front)
  - Each other member (minus its own history) is appended to the
    canonical's ``previousVersions``; ``version += groupSize - 1``
  - Hash/content groups: canonical gets a contentHash if missing
  - JSON groups: metadata merged member by member (later keys win),
    contentHash re-pinned to the canonical's own fields
  - Losers' files are deleted and purged from the index
  - An entry absorbed by an earlier pass never joins a later group

Running the pipeline twice reports zero groups on the second run.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from fossilctl.config import ConsolidateConfig
from fossilctl.extract import canonical_json, extract_json_block
from fossilctl.similarity import similarity
from fossilctl.types import FossilEntry, _now_iso, content_hash

if TYPE_CHECKING:
    from fossilctl.store import FossilStore

logger = logging.getLogger(__name__)


@dataclass
class DuplicateGroup:
    """One set of entries judged duplicates of each other."""

    kind: str  # "hash" | "content" | "json" | "fuzzy"
    members: List[FossilEntry] = field(default_factory=list)

    @property
    def canonical(self) -> FossilEntry:
        return self.members[0]

    @property
    def losers(self) -> List[FossilEntry]:
        return self.members[1:]


def _keyed_groups(keyed: "OrderedDict[Any, List[FossilEntry]]", kind: str) -> List[DuplicateGroup]:
    return [DuplicateGroup(kind, members) for members in keyed.values() if len(members) > 1]


def find_duplicate_groups(
    entries: List[FossilEntry],
    *,
    merge_json_blocks: bool = True,
    fuzzy: bool = False,
    similarity_threshold: float = 80.0,
) -> List[DuplicateGroup]:
    """Partition ``entries`` (index order) into duplicate groups.

    Pure function: nothing is read from or written to disk.
    """
    groups: List[DuplicateGroup] = []
    absorbed: Set[str] = set()

    # A + B: exact fingerprint
    hashed: "OrderedDict[Any, List[FossilEntry]]" = OrderedDict()
    legacy: "OrderedDict[Any, List[FossilEntry]]" = OrderedDict()
    for entry in entries:
        stored = entry.metadata.get("contentHash")
        if stored:
            hashed.setdefault(stored, []).append(entry)
    for entry in entries:
        if entry.metadata.get("contentHash"):
            continue
        computed = content_hash(entry.content, entry.type, entry.title)
        if computed in hashed:
            hashed[computed].append(entry)
        else:
            legacy.setdefault((entry.content, entry.type, entry.title), []).append(entry)

    survivors: Set[str] = set()
    for group in _keyed_groups(hashed, "hash") + _keyed_groups(legacy, "content"):
        groups.append(group)
        absorbed.update(e.id for e in group.losers)
        survivors.add(group.canonical.id)

    def _survivors_first(members: List[FossilEntry]) -> List[FossilEntry]:
        # A canonical that already absorbed history stays canonical
        return sorted(members, key=lambda e: 0 if e.id in survivors else 1)

    # C: embedded JSON block equality
    if merge_json_blocks:
        by_block: "OrderedDict[str, List[FossilEntry]]" = OrderedDict()
        for entry in entries:
            if entry.id in absorbed:
                continue
            block = extract_json_block(entry.content)
            if block is None:
                continue
            by_block.setdefault(canonical_json(block), []).append(entry)
        for group in _keyed_groups(by_block, "json"):
            group.members = _survivors_first(group.members)
            groups.append(group)
            absorbed.update(e.id for e in group.losers)
            survivors.add(group.canonical.id)

    # D: same-title fuzzy clusters, greedy around each seed
    if fuzzy:
        by_title: "OrderedDict[Any, List[FossilEntry]]" = OrderedDict()
        for entry in entries:
            if entry.id not in absorbed:
                by_title.setdefault((entry.type, entry.title), []).append(entry)
        for candidates in by_title.values():
            taken: Set[str] = set()
            for i, seed in enumerate(candidates):
                if seed.id in taken:
                    continue
                cluster = [seed]
                for other in candidates[i + 1:]:
                    if other.id in taken:
                        continue
                    if similarity(seed.content, other.content) >= similarity_threshold:
                        cluster.append(other)
                        taken.add(other.id)
                if len(cluster) > 1:
                    taken.add(seed.id)
                    cluster = _survivors_first(cluster)
                    groups.append(DuplicateGroup("fuzzy", cluster))
                    absorbed.update(e.id for e in cluster[1:])

    return groups


def _merge_group(group: DuplicateGroup) -> FossilEntry:
    """Fold the losers into the canonical entry (in memory)."""
    canonical = group.canonical
    for loser in group.losers:
        canonical.previous_versions.append(loser.to_dict(include_history=False))
    canonical.version += len(group.losers)

    if group.kind == "json":
        merged: Dict[str, Any] = {}
        for member in group.members:
            merged.update(member.metadata)
        merged["contentHash"] = canonical.content_hash
        canonical.metadata = merged
    elif "contentHash" not in canonical.metadata:
        canonical.metadata["contentHash"] = canonical.content_hash

    canonical.updated_at = _now_iso()
    return canonical


class ConsolidationPipeline:
    """
    Batch duplicate cleanup over a FossilStore.

    Deterministic for a given index order. No LLM calls.
    """

    def __init__(
        self,
        store: FossilStore,
        config: Optional[ConsolidateConfig] = None,
    ):
        """Initialize consolidation pipeline with store and config."""
        self._store = store
        self._config = config or ConsolidateConfig()

    def run(
        self,
        dry_run: bool = False,
        similarity_threshold: Optional[float] = None,
        fuzzy: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Find and merge duplicate groups.

        Args:
            dry_run: If True, compute groups and savings but don't write.
            similarity_threshold: Fuzzy pass threshold (0-100). Defaults to
                ``consolidate.similarity_threshold``.
            fuzzy: Enable the same-title fuzzy pass. Defaults to
                ``consolidate.fuzzy``.

        Returns:
            Summary dict with counts and merge chains.
        """
        threshold = (
            similarity_threshold if similarity_threshold is not None
            else self._config.similarity_threshold
        )
        fuzzy = self._config.fuzzy if fuzzy is None else fuzzy

        entries = list(self._store.get_all_entries())
        groups = find_duplicate_groups(
            entries,
            merge_json_blocks=self._config.merge_json_blocks,
            fuzzy=fuzzy,
            similarity_threshold=threshold,
        )

        stats: Dict[str, Any] = {
            "entries_scanned": len(entries),
            "duplicate_groups": len(groups),
            "hash_groups": sum(1 for g in groups if g.kind == "hash"),
            "content_groups": sum(1 for g in groups if g.kind == "content"),
            "json_groups": sum(1 for g in groups if g.kind == "json"),
            "fuzzy_groups": sum(1 for g in groups if g.kind == "fuzzy"),
            "entries_removed": 0,
            "bytes_saved": 0,
            "dry_run": dry_run,
            "similarity_threshold": threshold,
            "merge_chains": [],
        }

        if not groups:
            logger.info(f"Consolidation: no duplicates among {len(entries)} entries")
            return stats

        index = None if dry_run else self._store.load_index()
        for group in groups:
            stats["merge_chains"].append({
                "kind": group.kind,
                "canonical_id": group.canonical.id,
                "merged_ids": [e.id for e in group.losers],
                "title": group.canonical.title,
            })
            stats["entries_removed"] += len(group.losers)

            if dry_run:
                for loser in group.losers:
                    path = self._store.entry_path(loser.id)
                    if path is not None and path.exists():
                        stats["bytes_saved"] += path.stat().st_size
                continue

            canonical = _merge_group(group)
            self._store.save_entry(canonical)
            for loser in group.losers:
                stats["bytes_saved"] += self._store.purge_entry_file(loser.id)
                index.remove(loser.id)
            index.refresh(canonical)

        if index is not None:
            self._store.save_index(index)

        label = " (dry run)" if dry_run else ""
        logger.info(
            f"Consolidation complete{label}: {stats['duplicate_groups']} groups, "
            f"{stats['entries_removed']} removed, {stats['bytes_saved']} bytes saved"
        )
        return stats
