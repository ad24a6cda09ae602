"""
Token estimation for chat messages.

A cheap heuristic (about four bytes per token) used only to shape how much
conversation history is forwarded upstream. It is not a tokenizer.
"""

import json
import math
from typing import Any

BYTES_PER_TOKEN = 4


def canonical_json(message: Any) -> str:
    """Compact JSON with non-ASCII characters left unescaped."""
    return json.dumps(message, ensure_ascii=False, separators=(",", ":"))


def estimate_tokens(message: Any) -> int:
    """Estimate the token cost of a single message."""
    size = len(canonical_json(message).encode("utf-8"))
    return math.ceil(size / BYTES_PER_TOKEN)


def estimate_history_tokens(messages: list[Any]) -> int:
    return sum(estimate_tokens(msg) for msg in messages)
