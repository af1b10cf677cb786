"""
Semantic Enrichment — tags, relationships and excerpts for fossil entries

Providers:
  - NullEnrichmentProvider:    empty tags, no relationships, plain excerpt
  - KeywordEnrichmentProvider: deterministic keyword heuristics (default)
  - LLMCommandEnrichmentProvider: asks an external LLM CLI for semantic tags
    and an excerpt; falls back to the keyword heuristics on any failure

The LLM is reached through a subprocess (``invoke_llm``), the same way
for any command: ``claude -p``, ``ollama run mistral``, ...
No API keys or SDKs are involved.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fossilctl.config import EnrichmentConfig
from fossilctl.extract import extract_json_block
from fossilctl.similarity import token_jaccard
from fossilctl.types import FossilEntry, _now_iso

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 80
LLM_EXCERPT_CHARS = 160
RELATED_THRESHOLD = 0.6
SUPERSEDES_THRESHOLD = 0.8

_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Semantic tags
# ---------------------------------------------------------------------------


@dataclass
class SemanticTags:
    """Semantic annotations stored under ``metadata.semanticTags``."""

    semantic_category: str = "general"
    confidence: float = 0.0
    concepts: List[str] = field(default_factory=list)
    sentiment: str = "neutral"
    priority: str = "medium"
    impact: str = "medium"
    stakeholders: List[str] = field(default_factory=list)
    auto_generated: bool = True
    content_hash: str = ""
    similarity_score: Optional[float] = None
    purpose: str = "basic-semantic-analysis"
    context: str = ""
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "semanticCategory": self.semantic_category,
            "confidence": self.confidence,
            "concepts": list(self.concepts),
            "sentiment": self.sentiment,
            "priority": self.priority,
            "impact": self.impact,
            "stakeholders": list(self.stakeholders),
            "autoGenerated": self.auto_generated,
            "contentHash": self.content_hash,
            "purpose": self.purpose,
            "context": self.context,
            "timestamp": self.timestamp,
        }
        if self.similarity_score is not None:
            d["similarityScore"] = self.similarity_score
        return d


def _plain_excerpt(entry: FossilEntry, limit: int = EXCERPT_CHARS) -> str:
    """Whitespace-collapsed prefix of the content."""
    return _WS_RE.sub(" ", entry.content or "")[:limit].strip()


def _entry_text(entry: FossilEntry) -> str:
    return f"{entry.title} {entry.content}"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class EnrichmentProvider:
    """Interface: semantic tags, relationship tags and an excerpt."""

    name = "base"

    def semantic_tags(self, entry: FossilEntry, corpus: List[FossilEntry]) -> SemanticTags:
        raise NotImplementedError

    def relationship_tags(
        self, entry: FossilEntry, corpus: List[FossilEntry],
    ) -> Dict[str, List[str]]:
        raise NotImplementedError

    def excerpt(self, entry: FossilEntry) -> str:
        raise NotImplementedError


class NullEnrichmentProvider(EnrichmentProvider):
    name = "none"

    def semantic_tags(self, entry, corpus):
        return SemanticTags(
            content_hash=entry.metadata.get("contentHash", ""),
            purpose="none",
            timestamp=_now_iso(),
        )

    def relationship_tags(self, entry, corpus):
        return {}

    def excerpt(self, entry):
        return _plain_excerpt(entry)


class KeywordEnrichmentProvider(EnrichmentProvider):
    """
    Keyword heuristics over the lowercased content.

    Category checks run in order and the last match wins. Relationships:
      relatedTo   word-set Jaccard of "title content" > 0.6
      dependsOn   another entry's title appears in this entry's content
      supersedes  an older entry with Jaccard > 0.8
    """

    name = "keyword"

    # (category, trigger words) in precedence order, last match wins
    CATEGORIES = [
        ("repository-health", ("health", "score")),
        ("automation", ("automation", "workflow")),
        ("testing", ("test",)),
        ("documentation", ("documentation", "readme")),
        ("system-maintenance", ("duplication",)),
    ]
    CONCEPTS = [
        ("health", "health-check"),
        ("automation", "automation"),
        ("test", "testing"),
        ("documentation", "documentation"),
        ("duplication", "deduplication"),
    ]

    def semantic_tags(self, entry, corpus):
        text = entry.content.lower()

        category = "general"
        for name, words in self.CATEGORIES:
            if any(w in text for w in words):
                category = name

        concepts = [concept for word, concept in self.CONCEPTS if word in text]

        sentiment = "neutral"
        if any(w in text for w in ("good", "improved", "success")):
            sentiment = "positive"
        if any(w in text for w in ("error", "failed", "issue")):
            sentiment = "negative"

        priority = "medium"
        if any(w in text for w in ("critical", "urgent")):
            priority = "critical"
        if any(w in text for w in ("high", "important")):
            priority = "high"
        if any(w in text for w in ("low", "minor")):
            priority = "low"

        score = entry.metadata.get("similarityScore")
        return SemanticTags(
            semantic_category=category,
            confidence=0.7,
            concepts=concepts,
            sentiment=sentiment,
            priority=priority,
            impact=priority,
            content_hash=entry.metadata.get("contentHash", ""),
            similarity_score=score if isinstance(score, (int, float)) else None,
            purpose="basic-semantic-analysis",
            context=entry.content[:100],
            timestamp=_now_iso(),
        )

    def relationship_tags(self, entry, corpus):
        relationships: Dict[str, List[str]] = {}
        text = _entry_text(entry)
        content = entry.content.lower()

        related: List[str] = []
        depends: List[str] = []
        supersedes: List[str] = []
        for other in corpus:
            if other.id == entry.id:
                continue
            overlap = token_jaccard(text, _entry_text(other))
            if overlap > RELATED_THRESHOLD:
                related.append(other.id)
            if other.title and other.title.lower() in content:
                depends.append(other.id)
            if other.created_at < entry.created_at and overlap > SUPERSEDES_THRESHOLD:
                supersedes.append(other.id)

        if related:
            relationships["relatedTo"] = related
        if depends:
            relationships["dependsOn"] = depends
        if supersedes:
            relationships["supersedes"] = supersedes
        return relationships

    def excerpt(self, entry):
        return _plain_excerpt(entry)


# ---------------------------------------------------------------------------
# LLM invocation
# ---------------------------------------------------------------------------


def invoke_llm(
    cmd: str,
    prompt: str,
    *,
    mode: str = "stdin",
    timeout: int = 120,
) -> str:
    """Invoke an LLM command as a subprocess.

    Args:
        cmd: Shell command string (e.g. "claude -p", "ollama run mistral").
        prompt: The full prompt text to send.
        mode: "stdin" (pipe prompt to stdin) or "file" (write temp file, append path).
        timeout: Subprocess timeout in seconds.

    Returns:
        LLM output (stdout).

    Raises:
        RuntimeError: If the LLM command fails or times out.
    """
    args = shlex.split(cmd)
    if not args:
        raise RuntimeError("LLM command is empty")

    if mode == "file":
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".txt", delete=False, prefix="fossilctl_prompt_"
        ) as f:
            f.write(prompt)
            f.flush()
            args.append(f.name)
        stdin_data = None
    else:
        stdin_data = prompt

    try:
        result = subprocess.run(
            args,
            input=stdin_data,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"LLM command timed out after {timeout}s: {cmd}")
    except FileNotFoundError:
        raise RuntimeError(f"LLM command not found: {args[0]!r}")

    if result.returncode != 0:
        stderr_preview = (result.stderr or "").strip()[:200]
        raise RuntimeError(
            f"LLM command failed (exit {result.returncode}): {stderr_preview}"
        )

    return result.stdout


SEMANTIC_PROMPT = """\
Analyze this fossil entry and provide semantic tags in JSON format:

Entry Type: {type}
Title: {title}
Content: {content}
Tags: {tags}

Please provide a JSON response with the following structure:
{{
  "semanticCategory": "category-name",
  "confidence": 0.95,
  "concepts": ["concept1", "concept2"],
  "sentiment": "positive|negative|neutral",
  "priority": "low|medium|high|critical",
  "impact": "low|medium|high|critical",
  "stakeholders": ["stakeholder1", "stakeholder2"]
}}

Guidelines:
- semanticCategory: Broad category (e.g., "repository-health", "automation", "documentation")
- confidence: 0.0 to 1.0 based on how certain you are
- concepts: Key concepts extracted from content (max 5)
- stakeholders: Who this affects (e.g., "developers", "users", "admins")

Respond only with valid JSON.
"""

EXCERPT_PROMPT = """\
Summarize the following content in one sentence for a quick preview:

{content}
"""


class LLMCommandEnrichmentProvider(KeywordEnrichmentProvider):
    """
    Semantic tags and excerpts from an external LLM command.

    Relationships stay keyword-based. Any command failure or unparseable
    response falls back to the keyword result with a warning.
    """

    name = "llm"

    def __init__(self, llm_cmd: str, timeout: int = 120, mode: str = "stdin"):
        self.llm_cmd = llm_cmd
        self.timeout = timeout
        self.mode = mode

    def semantic_tags(self, entry, corpus):
        fallback = super().semantic_tags(entry, corpus)
        prompt = SEMANTIC_PROMPT.format(
            type=entry.type,
            title=entry.title,
            content=entry.content,
            tags=", ".join(entry.tags),
        )
        try:
            response = invoke_llm(self.llm_cmd, prompt, mode=self.mode, timeout=self.timeout)
        except RuntimeError as exc:
            logger.warning(f"LLM semantic tagging failed, using keyword fallback: {exc}")
            return fallback

        parsed = extract_json_block(response, allow_bare=True)
        if not isinstance(parsed, dict):
            logger.warning("LLM semantic response had no JSON object, using keyword fallback")
            return fallback

        confidence = parsed.get("confidence", fallback.confidence)
        return SemanticTags(
            semantic_category=str(parsed.get("semanticCategory") or fallback.semantic_category),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else fallback.confidence,
            concepts=[str(c) for c in parsed.get("concepts") or []][:5],
            sentiment=str(parsed.get("sentiment") or fallback.sentiment),
            priority=str(parsed.get("priority") or fallback.priority),
            impact=str(parsed.get("impact") or fallback.impact),
            stakeholders=[str(s) for s in parsed.get("stakeholders") or []],
            content_hash=fallback.content_hash,
            similarity_score=fallback.similarity_score,
            purpose="semantic-analysis",
            context=fallback.context,
            timestamp=_now_iso(),
        )

    def excerpt(self, entry):
        try:
            response = invoke_llm(
                self.llm_cmd,
                EXCERPT_PROMPT.format(content=entry.content),
                mode=self.mode,
                timeout=self.timeout,
            )
        except RuntimeError as exc:
            logger.warning(f"LLM excerpt failed, using plain excerpt: {exc}")
            return _plain_excerpt(entry)
        text = _WS_RE.sub(" ", response).strip()
        return text[:LLM_EXCERPT_CHARS].strip() if text else _plain_excerpt(entry)


def provider_from_config(
    config: EnrichmentConfig, name: Optional[str] = None,
) -> EnrichmentProvider:
    """Build the provider named by ``name`` (or ``config.provider``).

    Raises:
        ValueError: Unknown provider, or "llm" without a command.
    """
    name = name or config.provider
    if name == "none":
        return NullEnrichmentProvider()
    if name == "keyword":
        return KeywordEnrichmentProvider()
    if name == "llm":
        if not config.llm_cmd:
            raise ValueError("LLM enrichment requires an llm_cmd")
        return LLMCommandEnrichmentProvider(config.llm_cmd, timeout=config.timeout)
    raise ValueError(f"Unknown enrichment provider: {name!r}")
