"""
fossilctl CLI — Context Fossil Store Commands

Commands:
    fossilctl init                              — create store layout + index
    fossilctl add --type T --title T [--content C | stdin]
    fossilctl get <id>                          — display one entry
    fossilctl update <id> [--title --content --tags]
    fossilctl query [--type --tags --source --search --since --until]
    fossilctl related <id> [--depth N]          — parent/child neighbourhood
    fossilctl snapshot <name>                   — point-in-time copy
    fossilctl snapshots                         — list snapshots
    fossilctl export --format F [--archive]     — json|markdown|csv|yaml
    fossilctl import <file> [--dry-run]         — JSON export → store
    fossilctl stats                             — counts and storage size
    fossilctl summary                           — LLM context summary (JSON)
    fossilctl cleanup [--dry-run]               — merge duplicate groups
    fossilctl enhance <id> [--provider P]       — semantic tags + excerpt
    fossilctl serve                             — start MCP server (foreground)

Environment variables:
    FOSSILCTL_ROOT     Store directory (default: .context-fossil)
    FOSSILCTL_CONFIG   Path to a JSON config file
    FOSSILCTL_LLM_CMD  LLM command for `enhance --provider llm`

Precedence (invariant):
    CLI --flag  >  FOSSILCTL_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, unknown id, invalid entry)
    2  Internal failure (unexpected exception, I/O error, corrupt file)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: Optional[argparse.Namespace] = None):
    """Resolve config: CLI --config > FOSSILCTL_CONFIG > compiled defaults."""
    from fossilctl.config import load_config

    path = getattr(args, "config", None) if args else None
    path = path or _env_str("FOSSILCTL_CONFIG", "")
    return load_config(path or None)


def _resolve_root(args: Optional[argparse.Namespace], config) -> str:
    """Resolve store root: CLI --root > FOSSILCTL_ROOT > config > default."""
    if args and getattr(args, "root", None):
        return args.root
    return _env_str("FOSSILCTL_ROOT", config.store.root)


def _split_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Store factory
# ---------------------------------------------------------------------------


def _open_store(args: argparse.Namespace):
    """Open and initialize the FossilStore selected by args/env/config."""
    from fossilctl.store import FossilStore

    config = _resolve_config(args)
    return FossilStore(_resolve_root(args, config), config=config).initialize()


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _print_entry_line(entry) -> None:
    tags = f"  [{', '.join(entry.tags)}]" if entry.tags else ""
    print(f"  {entry.id}  {entry.type:12s}  v{entry.version}  {entry.title}{tags}")


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create the store directories and default index (idempotent)."""
    store = _open_store(args)
    _info(f"Fossil store ready: {store.root}")
    _info(f"  Entries:   {store.entries_dir}")
    _info(f"  Snapshots: {store.snapshots_dir}")
    _info(f"  Exports:   {store.exports_dir}")
    print(f'export FOSSILCTL_ROOT="{store.root.resolve()}"')


# ===========================================================================
# Command: add
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Add an entry (content from --content or stdin), deduplicating."""
    from fossilctl.types import EntryValidationError

    content = args.content
    if content is None:
        if sys.stdin.isatty():
            _warn("No content: pass --content or pipe text on stdin")
            sys.exit(1)
        content = sys.stdin.read()
    if not content.strip():
        _warn("Empty content, nothing stored")
        sys.exit(1)

    draft = {
        "type": args.type,
        "title": args.title,
        "content": content,
        "tags": _split_tags(args.tags),
        "source": args.source,
    }
    if args.parent_id:
        draft["parentId"] = args.parent_id

    store = _open_store(args)
    try:
        entry = store.add_entry(draft, link_to_parent=True)
    except EntryValidationError as e:
        _warn(f"Invalid entry: {e}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(entry.to_dict(include_history=False))
    else:
        label = "Created" if entry.version == 1 else f"Updated (v{entry.version})"
        _info(f"[add] {label}: {entry.title}")
        print(entry.id)


# ===========================================================================
# Command: get
# ===========================================================================


def cmd_get(args: argparse.Namespace) -> None:
    """Show one entry by id."""
    store = _open_store(args)
    entry = store.get_entry(args.id)
    if entry is None:
        _warn(f"Entry not found: {args.id}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(entry.to_dict())
        return

    print(f"ID:       {entry.id}")
    print(f"Type:     {entry.type}")
    print(f"Title:    {entry.title}")
    print(f"Source:   {entry.source}")
    print(f"Version:  {entry.version}")
    print(f"Tags:     {', '.join(entry.tags) if entry.tags else '(none)'}")
    if entry.parent_id:
        print(f"Parent:   {entry.parent_id}")
    if entry.children:
        print(f"Children: {', '.join(entry.children)}")
    print(f"Created:  {entry.created_at}")
    print(f"Updated:  {entry.updated_at}")
    print(f"Hash:     {entry.metadata.get('contentHash', '(none)')}")
    print(f"\n--- Content ---\n{entry.content}")


# ===========================================================================
# Command: update
# ===========================================================================


def cmd_update(args: argparse.Namespace) -> None:
    """Apply a partial update (new version) to an entry."""
    from fossilctl.types import EntryValidationError

    updates = {}
    if args.title is not None:
        updates["title"] = args.title
    if args.content is not None:
        updates["content"] = args.content
    if args.tags is not None:
        updates["tags"] = _split_tags(args.tags)
    if not updates:
        _warn("Nothing to update: pass --title, --content or --tags")
        sys.exit(1)

    store = _open_store(args)
    try:
        entry = store.update_entry(args.id, updates)
    except EntryValidationError as e:
        _warn(f"Invalid update: {e}")
        sys.exit(1)
    if entry is None:
        _warn(f"Entry not found: {args.id}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(entry.to_dict(include_history=False))
    else:
        _info(f"[update] {entry.id} -> v{entry.version}")
        print(entry.id)


# ===========================================================================
# Command: query
# ===========================================================================


def cmd_query(args: argparse.Namespace) -> None:
    """Filter entries via the index, then search and paginate."""
    from fossilctl.types import DateRange, FossilQuery

    date_range = None
    if args.since or args.until:
        date_range = DateRange(start=args.since, end=args.until)
    try:
        query = FossilQuery(
            limit=args.limit,
            offset=args.offset,
            type=args.type,
            tags=_split_tags(args.tags) or None,
            source=args.source,
            date_range=date_range,
            search=args.search,
        )
    except ValueError as e:
        _warn(f"Invalid query: {e}")
        sys.exit(1)

    store = _open_store(args)
    entries = store.query_entries(query)

    if getattr(args, "json", False):
        _print_json([e.to_dict(include_history=False) for e in entries])
        return
    if not entries:
        _info("No entries found.")
        return
    print(f"Found {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}:\n")
    for entry in entries:
        _print_entry_line(entry)


# ===========================================================================
# Command: related
# ===========================================================================


def cmd_related(args: argparse.Namespace) -> None:
    """List entries linked to <id> through parent/child references."""
    store = _open_store(args)
    if store.get_entry(args.id) is None:
        _warn(f"Entry not found: {args.id}")
        sys.exit(1)

    related = store.get_related_entries(args.id, max_depth=args.depth)
    if getattr(args, "json", False):
        _print_json([e.to_dict(include_history=False) for e in related])
        return
    if not related:
        _info("No related entries.")
        return
    for entry in related:
        _print_entry_line(entry)


# ===========================================================================
# Command: snapshot / snapshots
# ===========================================================================


def cmd_snapshot(args: argparse.Namespace) -> None:
    """Copy all entries and the index into a named snapshot."""
    store = _open_store(args)
    try:
        meta = store.create_snapshot(args.name, description=args.description)
    except ValueError as e:
        _warn(f"Invalid snapshot: {e}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(meta)
    else:
        _info(f"[snapshot] {meta['entryCount']} entries -> {store.snapshots_dir / meta['id']}")
        print(meta["id"])


def cmd_snapshots(args: argparse.Namespace) -> None:
    """List snapshots, newest first."""
    store = _open_store(args)
    snapshots = store.list_snapshots()

    if getattr(args, "json", False):
        _print_json(snapshots)
        return
    if not snapshots:
        _info("No snapshots.")
        return
    for meta in snapshots:
        print(f"  {meta.get('id')}  {meta.get('timestamp')}  "
              f"{meta.get('entryCount', 0):5d}  {meta.get('name')}")


# ===========================================================================
# Command: export / import
# ===========================================================================


def cmd_export(args: argparse.Namespace) -> None:
    """Render a filtered entry set to exports/ and print the file path."""
    from fossilctl.export_import import export_entries
    from fossilctl.types import FossilQuery

    store = _open_store(args)
    query = FossilQuery(
        limit=args.limit or store.config.export.default_limit,
        type=args.type,
        tags=_split_tags(args.tags) or None,
        source=args.source,
    )
    try:
        path = export_entries(
            store, args.format, query,
            stable=False if args.archive else None,
            log=_info,
        )
    except ValueError as e:
        _warn(str(e))
        sys.exit(1)
    print(path)


def cmd_import(args: argparse.Namespace) -> None:
    """Import a JSON export; every record goes through deduplication."""
    from fossilctl.export_import import import_entries

    store = _open_store(args)
    source = sys.stdin if args.file == "-" else args.file
    try:
        result = import_entries(store, source, dry_run=args.dry_run, log=_info)
    except FileNotFoundError:
        _warn(f"File not found: {args.file}")
        sys.exit(1)
    except ValueError as e:
        _warn(f"Import failed: {e}")
        sys.exit(1)

    if getattr(args, "json", False):
        data = result.to_dict()
        data["status"] = "ok"
        data["dry_run"] = args.dry_run
        _print_json(data)
    if result.errors and not result.created and not result.deduplicated:
        sys.exit(1)


# ===========================================================================
# Command: stats / summary
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show store statistics."""
    store = _open_store(args)
    stats = store.get_statistics()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
        return

    print("Fossil Store Statistics")
    print("=" * 40)
    print(f"  Total entries: {stats['totalEntries']}")
    print(f"  Storage size:  {stats['storageSize']} bytes")
    print(f"  Last updated:  {stats['lastUpdated']}")
    print("  By type:")
    for typ, count in sorted(stats["byType"].items()):
        print(f"    {typ:12s}: {count}")
    print("  By source:")
    for src, count in sorted(stats["bySource"].items()):
        print(f"    {src:12s}: {count}")
    if stats["byTag"]:
        print("  Top tags:")
        top = sorted(stats["byTag"].items(), key=lambda kv: (-kv[1], kv[0]))[:10]
        for tag, count in top:
            print(f"    {tag:20s}: {count}")


def cmd_summary(args: argparse.Namespace) -> None:
    """Print the LLM context summary (always JSON)."""
    from fossilctl.types import FossilQuery

    store = _open_store(args)
    query = None
    if args.type or args.tags or args.limit:
        query = FossilQuery(
            limit=args.limit or store.config.export.default_limit,
            type=args.type,
            tags=_split_tags(args.tags) or None,
        )
    print(store.generate_context_summary(query))


# ===========================================================================
# Command: cleanup
# ===========================================================================


def cmd_cleanup(args: argparse.Namespace) -> None:
    """Find and merge duplicate groups."""
    store = _open_store(args)
    result = store.cleanup_duplicates(
        dry_run=args.dry_run,
        similarity_threshold=args.threshold,
        fuzzy=True if args.fuzzy else None,
    )

    if getattr(args, "json", False):
        result["status"] = "ok"
        _print_json(result)
        return

    label = " (dry run)" if args.dry_run else ""
    print(f"Cleanup complete{label}:")
    print(f"  Entries scanned:  {result['entries_scanned']}")
    print(f"  Duplicate groups: {result['duplicate_groups']}")
    print(f"  Entries removed:  {result['entries_removed']}")
    print(f"  Bytes saved:      {result['bytes_saved']}")
    if result["merge_chains"]:
        print("\n  Merge chains:")
        for chain in result["merge_chains"]:
            merged = ", ".join(chain["merged_ids"])
            print(f"    [{chain['kind']}] {merged} → {chain['canonical_id']}")


# ===========================================================================
# Command: enhance
# ===========================================================================


def cmd_enhance(args: argparse.Namespace) -> None:
    """Attach semantic tags, relationships and an excerpt to an entry."""
    from fossilctl.enrichment import provider_from_config

    store = _open_store(args)
    cfg = store.config.enrichment
    if args.llm_cmd:
        cfg.llm_cmd = args.llm_cmd
    elif not cfg.llm_cmd:
        cfg.llm_cmd = _env_str("FOSSILCTL_LLM_CMD", "")
    try:
        provider = provider_from_config(cfg, args.provider)
    except ValueError as e:
        _warn(str(e))
        sys.exit(1)

    entry = store.enhance_entry_with_tags(args.id, provider)
    if entry is None:
        _warn(f"Entry not found: {args.id}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(entry.to_dict(include_history=False))
        return
    semantic = entry.metadata.get("semanticTags", {})
    print(f"Enhanced {entry.id} (v{entry.version}) via {provider.name}")
    print(f"  Category:  {semantic.get('semanticCategory')}")
    print(f"  Concepts:  {', '.join(semantic.get('concepts', [])) or '(none)'}")
    print(f"  Sentiment: {semantic.get('sentiment')}  Priority: {semantic.get('priority')}")
    print(f"  Excerpt:   {entry.metadata.get('excerpt', '')}")
    for rel, ids in entry.metadata.get("relationships", {}).items():
        print(f"  {rel}: {', '.join(ids)}")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the fossilctl MCP server in foreground."""
    try:
        from fossilctl.mcp.server import create_server, build_parser as mcp_parser
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    config = _resolve_config(args)
    server_argv = ["--root", _resolve_root(args, config)]
    if getattr(args, "config", None):
        server_argv.extend(["--config", args.config])
    if args.audit_log:
        server_argv.extend(["--audit-log", args.audit_log])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    _info(f"fossilctl MCP server (root={server_args.root})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the fossilctl argument parser."""
    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _root_default = _env_str("FOSSILCTL_ROOT", ".context-fossil")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--root", default=argparse.SUPPRESS,
        help=f"Store directory (default: {_root_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $FOSSILCTL_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="fossilctl",
        description="fossilctl — deduplicated, versioned context fossil store",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p = sub.add_parser("init", parents=[_common], help="Create the store layout")
    p.set_defaults(func=cmd_init)

    # -- add ---------------------------------------------------------------
    p = sub.add_parser("add", parents=[_common], help="Add an entry (deduplicated)")
    p.add_argument("--type", default="knowledge", help="Entry type (default: knowledge)")
    p.add_argument("--title", required=True, help="Entry title")
    p.add_argument("--content", default=None, help="Entry content (default: read stdin)")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--source", default="manual", help="Entry source (default: manual)")
    p.add_argument("--parent-id", default=None, help="Parent entry id")
    p.set_defaults(func=cmd_add)

    # -- get ---------------------------------------------------------------
    p = sub.add_parser("get", parents=[_common], help="Show an entry")
    p.add_argument("id", help="Entry id")
    p.set_defaults(func=cmd_get)

    # -- update ------------------------------------------------------------
    p = sub.add_parser("update", parents=[_common], help="Update an entry (new version)")
    p.add_argument("id", help="Entry id")
    p.add_argument("--title", default=None, help="New title")
    p.add_argument("--content", default=None, help="New content")
    p.add_argument("--tags", default=None, help="Replacement comma-separated tags")
    p.set_defaults(func=cmd_update)

    # -- query -------------------------------------------------------------
    p = sub.add_parser("query", parents=[_common], help="Query entries")
    p.add_argument("--type", default=None, help="Filter by type")
    p.add_argument("--tags", default=None, help="Comma-separated tags (match any)")
    p.add_argument("--source", default=None, help="Filter by source")
    p.add_argument("--search", default=None, help="Substring in title, content or tags")
    p.add_argument("--since", default=None, help="createdAt lower bound (ISO-8601)")
    p.add_argument("--until", default=None, help="createdAt upper bound (ISO-8601)")
    p.add_argument("--limit", type=int, default=100, help="Max results (default: 100)")
    p.add_argument("--offset", type=int, default=0, help="Skip N results (default: 0)")
    p.set_defaults(func=cmd_query)

    # -- related -----------------------------------------------------------
    p = sub.add_parser("related", parents=[_common], help="Entries linked by parent/children")
    p.add_argument("id", help="Start entry id")
    p.add_argument("--depth", type=int, default=2, help="Max link depth (default: 2)")
    p.set_defaults(func=cmd_related)

    # -- snapshot / snapshots ----------------------------------------------
    p = sub.add_parser("snapshot", parents=[_common], help="Create a snapshot")
    p.add_argument("name", help="Snapshot name")
    p.add_argument("--description", default=None, help="Free-text description")
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser("snapshots", parents=[_common], help="List snapshots")
    p.set_defaults(func=cmd_snapshots)

    # -- export / import ---------------------------------------------------
    p = sub.add_parser("export", parents=[_common], help="Export entries to exports/")
    p.add_argument(
        "--format", default="json",
        help="json, markdown (md), csv or yaml (default: json)",
    )
    p.add_argument("--type", default=None, help="Filter by type")
    p.add_argument("--tags", default=None, help="Comma-separated tags (match any)")
    p.add_argument("--source", default=None, help="Filter by source")
    p.add_argument("--limit", type=int, default=None, help="Max entries (default: 100)")
    p.add_argument("--archive", action="store_true", help="Timestamped file instead of -latest")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", parents=[_common], help="Import a JSON export")
    p.add_argument("file", help="JSON export file ('-' for stdin)")
    p.add_argument("--dry-run", action="store_true", help="Count without writing")
    p.set_defaults(func=cmd_import)

    # -- stats / summary ---------------------------------------------------
    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("summary", parents=[_common], help="Context summary for LLM prompts")
    p.add_argument("--type", default=None, help="Filter by type")
    p.add_argument("--tags", default=None, help="Comma-separated tags (match any)")
    p.add_argument("--limit", type=int, default=None, help="Max entries (default: 100)")
    p.set_defaults(func=cmd_summary)

    # -- cleanup -----------------------------------------------------------
    p = sub.add_parser("cleanup", parents=[_common], help="Merge duplicate entries")
    p.add_argument("--dry-run", action="store_true", help="Report groups without writing")
    p.add_argument(
        "--threshold", type=float, default=None,
        help="Similarity threshold for the fuzzy pass (default: 80)",
    )
    p.add_argument("--fuzzy", action="store_true", help="Also merge same-title near-duplicates")
    p.set_defaults(func=cmd_cleanup)

    # -- enhance -----------------------------------------------------------
    p = sub.add_parser("enhance", parents=[_common], help="Add semantic tags to an entry")
    p.add_argument("id", help="Entry id")
    p.add_argument(
        "--provider", default=None, choices=["none", "keyword", "llm"],
        help="Enrichment provider (default: config, keyword)",
    )
    p.add_argument(
        "--llm-cmd", default=None,
        help="LLM command for the llm provider (default: $FOSSILCTL_LLM_CMD)",
    )
    p.set_defaults(func=cmd_enhance)

    # -- serve -------------------------------------------------------------
    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.add_argument("--audit-log", default=None, help="Audit log file (default: stderr)")
    p.set_defaults(func=cmd_serve)

    return parser


def main() -> None:
    """CLI entry point: fossilctl <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. fossilctl query | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
