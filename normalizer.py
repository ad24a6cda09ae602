"""
Lead-in phrase normalization for assistant replies.

Strips stock conversational preambles ("Sure,", "Of course!", "Here's ...")
from the start of a reply. The phrase catalog is plain data: a sequence of
start-anchored patterns, each with the (usually empty) text that replaces
it. Whole replies are cleaned with strip_lead_ins(); streamed replies go
through a StreamNormalizer, which only inspects the first few dozen
characters and then passes everything through untouched.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Punctuation and whitespace trailing a stock phrase
_TRAIL = r"[\s,!.:;\-]*"

DEFAULT_LEAD_IN_PATTERNS: list[str] = [
    rf"sure\b{_TRAIL}",
    rf"of course\b{_TRAIL}",
    rf"certainly\b{_TRAIL}",
    rf"absolutely\b{_TRAIL}",
    rf"great question\b{_TRAIL}",
    rf"i'?d be (?:happy|glad) to help\b{_TRAIL}",
    r"here(?:['’]s| is)\s+",
]


@dataclass(frozen=True)
class LeadInPattern:
    """One catalog entry: a start-anchored matcher and its replacement."""

    pattern: re.Pattern[str]
    replacement: str = ""

    @classmethod
    def compile(cls, source: str, replacement: str = "") -> LeadInPattern:
        return cls(pattern=re.compile(source, re.IGNORECASE), replacement=replacement)


def compile_lead_ins(entries: Iterable[str | dict[str, Any]]) -> tuple[LeadInPattern, ...]:
    """
    Compile catalog entries into matchers.

    Entries are either pattern strings or objects with "pattern" and an
    optional "replacement".
    """
    compiled = []
    for entry in entries:
        if isinstance(entry, str):
            compiled.append(LeadInPattern.compile(entry))
        elif isinstance(entry, dict) and isinstance(entry.get("pattern"), str):
            compiled.append(
                LeadInPattern.compile(entry["pattern"], entry.get("replacement") or "")
            )
        else:
            raise ValueError(f"Invalid lead-in catalog entry: {entry!r}")
    return tuple(compiled)


def load_lead_in_catalog(path: Path) -> list[str | dict[str, Any]]:
    """
    Read a phrase catalog file.

    The file holds either a JSON list of entries or an object with a
    "patterns" list.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("patterns", [])
    if not isinstance(data, list):
        raise ValueError(f"Phrase catalog {path} must contain a list of patterns")
    logger.info(f"Loaded {len(data)} lead-in pattern(s) from {path}")
    return data


DEFAULT_LEAD_INS = compile_lead_ins(DEFAULT_LEAD_IN_PATTERNS)


def strip_lead_ins(text: Any, lead_ins: Iterable[LeadInPattern] = DEFAULT_LEAD_INS) -> Any:
    """
    Remove lead-in phrases from the start of `text` until none match.

    After every successful strip the whole catalog is tried again from the
    first entry, which handles chained preambles like
    "Sure, of course! Here's ...". Empty or non-string content is returned
    unchanged.
    """
    if not isinstance(text, str) or not text:
        return text

    lead_ins = tuple(lead_ins)
    changed = True
    while changed and text:
        changed = False
        for lead_in in lead_ins:
            match = lead_in.pattern.match(text)
            if match is None:
                continue
            stripped = lead_in.replacement + text[match.end():]
            # A match that doesn't shorten the text would never reach a fixed point
            if len(stripped) < len(text):
                text = stripped
                changed = True
                break

    return text


class NormalizerState(enum.Enum):
    ACCUMULATING = "accumulating"
    PASSTHROUGH = "passthrough"


class StreamNormalizer:
    """
    Streaming-mode normalizer for a single reply.

    Fragments are buffered until at least `min_chars` characters arrived.
    The buffer is then cleaned once and released as one fragment, and every
    later fragment is passed through without inspection.
    """

    def __init__(
        self,
        lead_ins: Iterable[LeadInPattern] = DEFAULT_LEAD_INS,
        min_chars: int = 40,
    ):
        self.lead_ins = tuple(lead_ins)
        self.min_chars = min_chars
        self.state = NormalizerState.ACCUMULATING
        self.stripped = False  # True once any text was removed
        self._buffer: list[str] = []
        self._length = 0

    @property
    def accumulating(self) -> bool:
        return self.state is NormalizerState.ACCUMULATING

    def push(self, fragment: str) -> str | None:
        """
        Feed one content fragment.

        Returns the text to emit downstream, or None while still buffering.
        """
        if not self.accumulating:
            return fragment

        self._buffer.append(fragment)
        self._length += len(fragment)
        if self._length < self.min_chars:
            return None

        return self._release()

    def finish(self) -> str | None:
        """Flush a buffer that never reached the threshold. Returns None if empty."""
        if not self.accumulating:
            return None
        cleaned = self._release()
        return cleaned or None

    def _release(self) -> str:
        text = "".join(self._buffer)
        self._buffer.clear()
        self._length = 0
        self.state = NormalizerState.PASSTHROUGH

        cleaned = strip_lead_ins(text, self.lead_ins)
        if cleaned != text:
            self.stripped = True
            logger.debug(f"Stripped {len(text) - len(cleaned)} lead-in chars from {text!r}")
        return cleaned
