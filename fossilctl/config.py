"""
Fossil Store Configuration

Configuration dataclasses for fossilctl: store layout, insert-time
deduplication, batch consolidation, export, context summary, and semantic
enrichment. Includes load_config() for reading a JSON config file with
silent fallback to compiled defaults.

The two similarity thresholds are deliberately independent: insert-time
dedup defaults to 60, batch cleanup to 80 (both percentages, 0-100).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (
            "/".join(t.__name__ for t in typ) if isinstance(typ, tuple)
            else typ.__name__
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """On-disk layout configuration."""
    root: str = ".context-fossil"
    index_version: str = "1.0.0"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.root:
            errors.append("store.root: must not be empty")
        return errors


@dataclass
class DedupConfig:
    """Insert-time deduplication (exact hash, then same-title fuzzy match)."""
    enabled: bool = True
    similarity_threshold: float = 60.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "dedup.similarity_threshold",
                     self.similarity_threshold, 0.0, 100.0, (int, float))
        return errors


@dataclass
class ConsolidateConfig:
    """Batch duplicate cleanup configuration."""
    similarity_threshold: float = 80.0
    merge_json_blocks: bool = True
    fuzzy: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "consolidate.similarity_threshold",
                     self.similarity_threshold, 0.0, 100.0, (int, float))
        return errors


@dataclass
class ExportConfig:
    """Export engine configuration."""
    default_limit: int = 100
    stable: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "export.default_limit",
                     self.default_limit, 1, 1_000_000, int)
        return errors


@dataclass
class SummaryConfig:
    """Context summary shape for LLM prompts."""
    recent_limit: int = 10
    insight_window: int = 5
    excerpt_chars: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "summary.recent_limit",
                     self.recent_limit, 0, 1000, int)
        _check_range(errors, "summary.insight_window",
                     self.insight_window, 0, 1000, int)
        _check_range(errors, "summary.excerpt_chars",
                     self.excerpt_chars, 10, 10000, int)
        return errors


@dataclass
class EnrichmentConfig:
    """Semantic enrichment provider selection."""
    provider: Literal["none", "keyword", "llm"] = "keyword"
    llm_cmd: str = ""
    timeout: int = 120

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.provider not in ("none", "keyword", "llm"):
            errors.append(f"enrichment.provider: unknown provider {self.provider!r}")
        if self.provider == "llm" and not self.llm_cmd:
            errors.append("enrichment.llm_cmd: required when provider is 'llm'")
        _check_range(errors, "enrichment.timeout", self.timeout, 1, 3600, int)
        return errors


@dataclass
class FossilConfig:
    """Top-level fossilctl configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    consolidate: ConsolidateConfig = field(default_factory=ConsolidateConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FossilConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "dedup" in d:
            kwargs["dedup"] = DedupConfig(**d["dedup"])
        if "consolidate" in d:
            kwargs["consolidate"] = ConsolidateConfig(**d["consolidate"])
        if "export" in d:
            kwargs["export"] = ExportConfig(**d["export"])
        if "summary" in d:
            kwargs["summary"] = SummaryConfig(**d["summary"])
        if "enrichment" in d:
            kwargs["enrichment"] = EnrichmentConfig(**d["enrichment"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.dedup.validate())
        errors.extend(self.consolidate.validate())
        errors.extend(self.export.validate())
        errors.extend(self.summary.validate())
        errors.extend(self.enrichment.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> FossilConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        FossilConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = FossilConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = FossilConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = FossilConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
