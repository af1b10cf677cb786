"""
JSON Block Extraction — structured payloads embedded in free text

Fossil content produced by LLMs and automation often carries a fenced
```json ... ``` block (plans, analysis results). Consolidation compares
entries by the parsed value of that block, and the LLM enrichment provider
uses the same parser on model responses.

Two strategies, tried in order:
  A) Fenced block (```json ... ``` or bare ``` ... ```)
  B) Outermost brace span {...} (only when ``allow_bare=True``)
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)
_BRACE_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_block(text: str, *, allow_bare: bool = False) -> Optional[Any]:
    """
    Return the parsed value of the first JSON block embedded in ``text``.

    Returns None when there is no block or no candidate parses.
    """
    if not text:
        return None

    candidates = _FENCED_JSON_RE.findall(text)
    if not candidates:
        # Untagged fences only count when their body looks like JSON
        candidates = [
            c for c in _FENCED_ANY_RE.findall(text)
            if c.lstrip().startswith(("{", "["))
        ]
    if not candidates and allow_bare:
        m = _BRACE_RE.search(text)
        if m:
            candidates = [m.group(0)]

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable JSON block ({len(candidate)} chars)")
            continue
    return None


def canonical_json(value: Any) -> str:
    """Stable serialization used as a grouping key (key order ignored)."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
