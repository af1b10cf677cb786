"""
fossilctl MCP Server — Context Fossil Store over MCP

Standalone MCP server exposing FossilStore operations via the Model
Context Protocol. Works with any MCP-compatible client.

Architecture: thin MCP layer delegating to FossilStore.
No business logic in this module; it lives in fossilctl/*.

Usage:
    python -m fossilctl.mcp.server --root /path/to/.context-fossil
    python -m fossilctl.mcp.server --config fossil.json --audit-log audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Context fossil store: deduplicated, versioned knowledge entries (11 tools).\n"
    "\n"
    "STORE:   Use fossil_add to record analyses, plans, decisions, insights.\n"
    "         Identical or near-identical same-title entries are versioned,\n"
    "         not duplicated. Use fossil_update to revise an entry.\n"
    "READ:    Use fossil_summary for a compact prompt-ready overview,\n"
    "         fossil_query to filter, fossil_get for one entry with history,\n"
    "         fossil_related to walk parent/child links.\n"
    "BATCH:   fossil_snapshot, fossil_export, fossil_cleanup.\n"
    "\n"
    "Rules:\n"
    "- Use a stable, specific title per topic so updates land on one entry\n"
    "- Use 3-7 lowercase hyphenated tags per entry\n"
    "- NEVER store secrets or credentials\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the fossil MCP server."""
    p = argparse.ArgumentParser(
        prog="fossilctl-mcp",
        description="fossilctl MCP Server — context fossil store for LLMs",
    )
    p.add_argument(
        "--root",
        default=os.environ.get("FOSSILCTL_ROOT"),
        help="Store directory (default: $FOSSILCTL_ROOT or config store.root)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("FOSSILCTL_CONFIG"),
        help="JSON config file (default: $FOSSILCTL_CONFIG)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with fossil tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from fossilctl.config import load_config
    from fossilctl.mcp.audit import AuditLogger
    from fossilctl.mcp.tools import register_fossil_tools
    from fossilctl.store import FossilStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    llm_cmd = os.environ.get("FOSSILCTL_LLM_CMD")
    if llm_cmd and not config.enrichment.llm_cmd:
        config.enrichment.llm_cmd = llm_cmd

    store = FossilStore(args.root or config.store.root, config=config).initialize()

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="fossilctl Fossil Store",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_fossil_tools(mcp, store, audit=audit)

    logger.info(f"fossilctl MCP server ready: root={store.root}")
    return mcp, store


def main():
    """CLI entry point: parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
