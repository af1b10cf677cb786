"""
fossilctl — a local, file-backed context fossil store.

Every artifact (analysis, plan, observation, decision) is one JSON file,
deduplicated by content hash and same-title similarity, versioned on every
update, and indexed by tag, type and source.
"""

__version__ = "0.1.0"

from fossilctl.types import (
    DateRange,
    EntryValidationError,
    FossilEntry,
    FossilQuery,
    IndexSummary,
    MalformedFossilError,
)
from fossilctl.index import FossilIndex
from fossilctl.store import FossilStore
from fossilctl.config import FossilConfig

__all__ = [
    "__version__",
    "DateRange",
    "EntryValidationError",
    "FossilEntry",
    "FossilQuery",
    "IndexSummary",
    "MalformedFossilError",
    "FossilIndex",
    "FossilStore",
    "FossilConfig",
]
