"""
MCP Audit Logger — Structured JSONL logging for MCP tool calls.

One schema-versioned record per tool call, success or failure:

    {"v":1,"ts":...,"rid":...,"tool":...,"root":...,"outcome":...,"d":{...},"ms":...}

Privacy rules (v1 contract):
- Never log raw content beyond a 120-char preview
- Include SHA-256 hash for correlation without content storage

log() never raises: a broken audit sink must not fail the tool call.
"""

from __future__ import annotations

import hashlib
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        root: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record.

        Args:
            tool: MCP tool name (e.g. "fossil_add").
            rid: Request ID (from new_rid()).
            root: Store root directory.
            outcome: "ok", "not_found", "invalid" or "error".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        now = datetime.now(timezone.utc)
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
            "rid": rid,
            "tool": tool,
            "root": root,
            "outcome": outcome,
        }
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)

        try:
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
            self._output.write(line + "\n")
            self._output.flush()
        except (OSError, ValueError):
            pass

    @staticmethod
    def make_content_detail(content: str) -> Dict[str, Any]:
        """
        Build safe audit detail fields for content-carrying tools.

        - preview: first 120 chars, newlines → space, truncated with '…'
        - hash: SHA-256 hex digest (correlate without storing content)
        - bytes: total content size
        """
        encoded = content.encode("utf-8")
        preview = content[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
        if len(content) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "\u2026"

        return {
            "bytes": len(encoded),
            "hash": hashlib.sha256(encoded).hexdigest(),
            "preview": preview,
        }
