"""
fossilctl MCP Tools — 11 fossil store tools for MCP integration.

Thin wrappers around FossilStore. Each tool follows the same order:

    ① Argument parsing   — comma lists, query objects
    ② Store call         — one FossilStore operation
    ③ Audit log          — always, including on failure (finally block)

Every tool returns a dict with a ``status`` key: "ok", "not_found",
"invalid" (caller error) or "error" (unexpected failure).

Tool groups:
    WRITE:     fossil_add, fossil_update, fossil_enhance
    READ:      fossil_get, fossil_query, fossil_related, fossil_summary
    BATCH:     fossil_snapshot, fossil_export, fossil_cleanup
    HEALTH:    fossil_stats
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

from fossilctl.store import FossilStore
from fossilctl.types import DateRange, EntryValidationError, FossilQuery

logger = logging.getLogger(__name__)


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def register_fossil_tools(
    mcp,
    store: FossilStore,
    *,
    audit=None,
) -> None:
    """
    Register the fossil MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Initialized FossilStore.
        audit: AuditLogger for structured logging (default: stderr).
    """
    from fossilctl.mcp.audit import AuditLogger

    if audit is None:
        audit = AuditLogger()
    root = str(store.root)

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    def fossil_add(
        title: str,
        content: str,
        type: str = "knowledge",
        tags: Optional[str] = None,
        source: str = "llm",
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store a knowledge entry, deduplicating against existing ones.

        An identical (content, type, title) bumps the existing entry's
        version; a same-title entry with >= 60% similar content is updated
        in place. Otherwise a new entry is created.

        Args:
            title: Entry title.
            content: Entry content.
            type: knowledge|decision|action|observation|plan|result|insight.
            tags: Comma-separated tags.
            source: llm|terminal|api|manual|automated (default llm).
            parent_id: Optional parent entry id (linked both ways).
            metadata: Optional JSON object stored with the entry.

        Returns:
            id, version, and created (False when deduplicated).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            draft: Dict[str, Any] = {
                "title": title,
                "content": content,
                "type": type,
                "tags": _split(tags),
                "source": source,
                "metadata": metadata or {},
            }
            if parent_id:
                draft["parentId"] = parent_id
            detail = audit.make_content_detail(content)

            entry = store.add_entry(draft, link_to_parent=True)
            detail["id"] = entry.id
            return {
                "status": "ok",
                "id": entry.id,
                "version": entry.version,
                "created": entry.version == 1,
            }

        except EntryValidationError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Add failed: {e}"}
        finally:
            audit.log("fossil_add", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_update(
        id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Update an entry; the prior state is kept in its version history.

        Args:
            id: Entry id.
            title: New title (optional).
            content: New content (optional).
            tags: Replacement comma-separated tags (optional).

        Returns:
            id and the new version.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            updates: Dict[str, Any] = {}
            if title is not None:
                updates["title"] = title
            if content is not None:
                updates["content"] = content
                detail.update(audit.make_content_detail(content))
            if tags is not None:
                updates["tags"] = _split(tags)

            entry = store.update_entry(id, updates)
            if entry is None:
                outcome = "not_found"
                return {"status": "not_found", "id": id}
            return {"status": "ok", "id": entry.id, "version": entry.version}

        except EntryValidationError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Update failed: {e}"}
        finally:
            audit.log("fossil_update", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_enhance(
        id: str,
        provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Attach semantic tags, relationships and an excerpt to an entry.

        Args:
            id: Entry id.
            provider: none|keyword|llm (default from config: keyword).

        Returns:
            semanticTags, relationships, excerpt and the new version.
        """
        from fossilctl.enrichment import provider_from_config

        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            chosen = provider_from_config(store.config.enrichment, provider)
            detail["provider"] = chosen.name
            entry = store.enhance_entry_with_tags(id, chosen)
            if entry is None:
                outcome = "not_found"
                return {"status": "not_found", "id": id}
            return {
                "status": "ok",
                "id": entry.id,
                "version": entry.version,
                "semanticTags": entry.metadata.get("semanticTags", {}),
                "relationships": entry.metadata.get("relationships", {}),
                "excerpt": entry.metadata.get("excerpt", ""),
            }

        except ValueError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Enhance failed: {e}"}
        finally:
            audit.log("fossil_enhance", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # READ
    # =====================================================================

    @mcp.tool()
    def fossil_get(id: str) -> Dict[str, Any]:
        """Read one entry, including its version history.

        Args:
            id: Entry id.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            entry = store.get_entry(id)
            if entry is None:
                outcome = "not_found"
                return {"status": "not_found", "id": id}
            return {"status": "ok", "entry": entry.to_dict()}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Read failed: {e}"}
        finally:
            audit.log("fossil_get", rid, root, outcome, {"id": id},
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_query(
        type: Optional[str] = None,
        tags: Optional[str] = None,
        source: Optional[str] = None,
        search: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Filter entries by type, tags (match any), source and creation date.

        Args:
            type: Entry type filter.
            tags: Comma-separated tags; an entry matches if it has any.
            source: Entry source filter.
            search: Case-insensitive substring in title, content or tags.
            since: createdAt lower bound (ISO-8601, inclusive).
            until: createdAt upper bound (ISO-8601, inclusive).
            limit: Max entries (default 20).
            offset: Entries to skip (default 0).

        Returns:
            entries (without version history) and count.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            query = FossilQuery(
                limit=limit,
                offset=offset,
                type=type,
                tags=_split(tags) or None,
                source=source,
                date_range=DateRange(since, until) if (since or until) else None,
                search=search,
            )
            entries = store.query_entries(query)
            detail = {"count": len(entries)}
            return {
                "status": "ok",
                "entries": [e.to_dict(include_history=False) for e in entries],
                "count": len(entries),
            }
        except ValueError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Query failed: {e}"}
        finally:
            audit.log("fossil_query", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_related(id: str, max_depth: int = 2) -> Dict[str, Any]:
        """Entries reachable from ``id`` through parent/child links.

        Args:
            id: Start entry id (not included in the result).
            max_depth: Link depth bound (default 2).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            related = store.get_related_entries(id, max_depth=max_depth)
            detail["count"] = len(related)
            return {
                "status": "ok",
                "entries": [e.to_dict(include_history=False) for e in related],
                "count": len(related),
            }
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Related lookup failed: {e}"}
        finally:
            audit.log("fossil_related", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_summary(
        type: Optional[str] = None,
        tags: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Compact context summary for prompts: counts, recent entries, key insights.

        Args:
            type: Entry type filter.
            tags: Comma-separated tags (match any).
            limit: Max entries considered (default 100).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            query = None
            if type or tags or limit:
                query = FossilQuery(
                    limit=limit or store.config.export.default_limit,
                    type=type,
                    tags=_split(tags) or None,
                )
            summary = json.loads(store.generate_context_summary(query))
            summary["status"] = "ok"
            return summary
        except ValueError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Summary failed: {e}"}
        finally:
            audit.log("fossil_summary", rid, root, outcome, {},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # BATCH
    # =====================================================================

    @mcp.tool()
    def fossil_snapshot(name: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Copy every entry and the index into a named snapshot.

        Args:
            name: Snapshot name.
            description: Optional free-text description.

        Returns:
            Snapshot metadata (id, name, timestamp, entryCount, description).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"name": name}
        try:
            meta = store.create_snapshot(name, description)
            detail["entryCount"] = meta["entryCount"]
            return {"status": "ok", **meta}
        except ValueError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Snapshot failed: {e}"}
        finally:
            audit.log("fossil_snapshot", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_export(
        format: str = "json",
        type: Optional[str] = None,
        tags: Optional[str] = None,
        limit: Optional[int] = None,
        archive: bool = False,
    ) -> Dict[str, Any]:
        """Export entries to the store's exports/ directory.

        Args:
            format: json|markdown|csv|yaml (default json).
            type: Entry type filter.
            tags: Comma-separated tags (match any).
            limit: Max entries (default 100).
            archive: Write a timestamped file instead of fossil-export-latest.

        Returns:
            path of the written file.
        """
        from fossilctl.export_import import export_entries

        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"format": format}
        try:
            query = FossilQuery(
                limit=limit or store.config.export.default_limit,
                type=type,
                tags=_split(tags) or None,
            )
            path = export_entries(store, format, query, stable=False if archive else None)
            return {"status": "ok", "path": str(path), "format": format}
        except ValueError as e:
            outcome = "invalid"
            return {"status": "invalid", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Export failed: {e}"}
        finally:
            audit.log("fossil_export", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def fossil_cleanup(
        dry_run: bool = False,
        similarity_threshold: Optional[float] = None,
        fuzzy: bool = False,
    ) -> Dict[str, Any]:
        """Merge duplicate entries missed at insert time.

        Groups by content hash, by identical (content, type, title) for
        legacy entries, and by equal embedded JSON blocks. Losers are
        folded into the first member's version history and deleted.

        Args:
            dry_run: Report groups without writing (default False).
            similarity_threshold: Threshold for the fuzzy pass (default 80).
            fuzzy: Also merge same-title near-duplicates (default False).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"dry_run": dry_run}
        try:
            stats = store.cleanup_duplicates(
                dry_run=dry_run,
                similarity_threshold=similarity_threshold,
                fuzzy=fuzzy or None,
            )
            detail.update({
                "groups": stats["duplicate_groups"],
                "removed": stats["entries_removed"],
            })
            stats["status"] = "ok"
            return stats
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Cleanup failed: {e}"}
        finally:
            audit.log("fossil_cleanup", rid, root, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # HEALTH
    # =====================================================================

    @mcp.tool()
    def fossil_stats() -> Dict[str, Any]:
        """Store statistics: counts by type, source and tag, storage size."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            stats = store.get_statistics()
            stats["status"] = "ok"
            return stats
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Stats failed: {e}"}
        finally:
            audit.log("fossil_stats", rid, root, outcome, {},
                      (time.monotonic() - t0) * 1000)
