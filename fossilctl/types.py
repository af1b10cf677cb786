"""
Fossil Data Model — Entries, Index Rows, Queries

Defines the canonical fossil entry schema, the index summary row, and the
query filter. Entries are versioned: every update pushes the prior state
into ``previous_versions`` (without its own history) and bumps ``version``.

On disk every object uses the camelCase field names of the JSON layout
(``parentId``, ``createdAt``, ``previousVersions`` ...); in Python the
attributes are snake_case. ``to_dict``/``from_dict`` translate.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

FossilType = Literal[
    "knowledge", "decision", "action", "observation",
    "plan", "result", "insight",
]
FossilSource = Literal["llm", "terminal", "api", "manual", "automated"]

# Valid values for runtime checks
VALID_TYPES: set = {
    "knowledge", "decision", "action", "observation",
    "plan", "result", "insight",
}
VALID_SOURCES: set = {"llm", "terminal", "api", "manual", "automated"}

CONTENT_HASH_LENGTH = 12


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EntryValidationError(ValueError):
    """Raised when a caller-supplied entry is missing or has invalid fields."""

    pass


class MalformedFossilError(ValueError):
    """Raised when an entry or index file cannot be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Malformed fossil file {path}: {reason}")
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def content_hash(content: str, type_: str, title: str) -> str:
    """Deterministic 12-char hex fingerprint of (content, type, title)."""
    h = hashlib.sha256(f"{content}{type_}{title}".encode("utf-8")).hexdigest()
    return h[:CONTENT_HASH_LENGTH]


def generate_id(content: str, type_: str, title: str, prefix: str = "fossil") -> str:
    """Entry ID: content hash plus millisecond creation timestamp."""
    return f"{prefix}_{content_hash(content, type_, title)}_{int(time.time() * 1000)}"


# snake_case attribute -> camelCase JSON key
_FIELD_TO_KEY = {
    "parent_id": "parentId",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "previous_versions": "previousVersions",
}
_KEY_TO_FIELD = {v: k for k, v in _FIELD_TO_KEY.items()}


def field_name(key: str) -> str:
    """Map a JSON key (camelCase or snake_case) to its attribute name."""
    return _KEY_TO_FIELD.get(key, key)


# ---------------------------------------------------------------------------
# Fossil Entry (canonical)
# ---------------------------------------------------------------------------


@dataclass
class FossilEntry:
    """
    A persisted, versioned knowledge unit.

    Rules:
    - ``id`` never changes after creation.
    - ``version`` increases by exactly 1 per update, and
      ``previous_versions`` grows by exactly 1 per update.
    - ``metadata["contentHash"]`` always reflects (content, type, title).
    - ``parent_id`` and ``children`` are weak references; the graph may
      contain cycles.
    """

    id: str = ""
    type: FossilType = "knowledge"
    title: str = ""
    content: str = ""
    tags: List[str] = field(default_factory=list)
    source: FossilSource = "manual"
    version: int = 1
    parent_id: Optional[str] = None
    children: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    previous_versions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def content_hash(self) -> str:
        """Hash of the current (content, type, title)."""
        return content_hash(self.content, self.type, self.title)

    def validate(self, *, draft: bool = False) -> None:
        """Reject missing required fields or values outside the allowed sets.

        Args:
            draft: If True, the entry must not carry an id or timestamps yet.

        Raises:
            EntryValidationError: On the first group of problems found.
        """
        errors: List[str] = []
        if not isinstance(self.title, str) or not self.title.strip():
            errors.append("title is required")
        if not isinstance(self.content, str) or not self.content:
            errors.append("content is required")
        if self.type not in VALID_TYPES:
            errors.append(f"invalid type: {self.type!r}")
        if self.source not in VALID_SOURCES:
            errors.append(f"invalid source: {self.source!r}")
        if not isinstance(self.tags, list) or not all(isinstance(t, str) for t in self.tags):
            errors.append("tags must be a list of strings")
        if self.parent_id is not None and not isinstance(self.parent_id, str):
            errors.append("parentId must be an entry id string")
        if not isinstance(self.children, list) or not all(isinstance(c, str) for c in self.children):
            errors.append("children must be a list of ids")
        if not isinstance(self.metadata, dict):
            errors.append("metadata must be a mapping")
        else:
            try:
                json.dumps(self.metadata)
            except (TypeError, ValueError) as exc:
                errors.append(f"metadata is not JSON-serializable: {exc}")
        if draft and (self.id or self.created_at or self.updated_at):
            errors.append("draft must not carry id, createdAt or updatedAt")
        if errors:
            raise EntryValidationError("; ".join(errors))

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        """Serialize to the on-disk JSON shape (camelCase keys)."""
        d: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "source": self.source,
            "version": self.version,
        }
        if self.parent_id is not None:
            d["parentId"] = self.parent_id
        d["children"] = list(self.children)
        d["createdAt"] = self.created_at
        d["updatedAt"] = self.updated_at
        if include_history:
            d["previousVersions"] = list(self.previous_versions)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FossilEntry:
        """Deserialize from dict, accepting camelCase or snake_case keys."""
        known = set(cls.__dataclass_fields__.keys())
        filtered: Dict[str, Any] = {}
        for key, val in d.items():
            name = field_name(key)
            if name in known:
                filtered[name] = val
        return cls(**filtered)

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def summary(self) -> IndexSummary:
        """Index row for this entry."""
        return IndexSummary(
            id=self.id,
            type=self.type,
            title=self.title,
            tags=list(self.tags),
            source=self.source,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


# ---------------------------------------------------------------------------
# Index row
# ---------------------------------------------------------------------------


@dataclass
class IndexSummary:
    """Denormalized per-entry row kept in index.json."""

    id: str
    type: str
    title: str
    tags: List[str] = field(default_factory=list)
    source: str = "manual"
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "tags": list(self.tags),
            "source": self.source,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> IndexSummary:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{field_name(k): v for k, v in d.items() if field_name(k) in known})


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


@dataclass
class DateRange:
    """Inclusive bounds on ``createdAt`` (ISO-8601 strings, either optional)."""

    start: Optional[str] = None
    end: Optional[str] = None

    def contains(self, timestamp: str) -> bool:
        if self.start and timestamp < self.start:
            return False
        if self.end and timestamp > self.end:
            return False
        return True


@dataclass
class FossilQuery:
    """
    Conjunctive filter over the index.

    ``tags`` is match-any. ``search`` is a case-insensitive substring over
    title, content and tags, applied after the index filters and requiring
    a file load per candidate. Pagination applies to the filtered id list
    before the final loads.
    """

    limit: int = 100
    offset: int = 0
    type: Optional[str] = None
    tags: Optional[List[str]] = None
    source: Optional[str] = None
    date_range: Optional[DateRange] = None
    search: Optional[str] = None

    def __post_init__(self):
        """Coerce dict date ranges; reject negative pagination."""
        if isinstance(self.date_range, dict):
            self.date_range = DateRange(
                start=self.date_range.get("start"),
                end=self.date_range.get("end"),
            )
        if self.limit < 0 or self.offset < 0:
            raise ValueError("limit and offset must be non-negative")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FossilQuery:
        data = dict(d)
        if "dateRange" in data:
            data["date_range"] = data.pop("dateRange")
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})
