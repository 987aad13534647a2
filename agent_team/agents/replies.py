"""Helpers for turning completion replies into structured data."""
from __future__ import annotations

import json
from typing import Any, Dict


def parse_json_reply(content: str) -> Any:
    """Parse a JSON reply, tolerating markdown code fences around it.

    Raises ``ValueError`` (``json.JSONDecodeError`` included) when no JSON can
    be read.
    """
    text = content.strip()
    try:
        # Extract JSON from markdown code blocks if present
        if "```json" in text:
            text = text.split("```json")[1].split("```")[0].strip()
        elif "```" in text:
            text = text.split("```")[1].split("```")[0].strip()
    except IndexError as exc:
        raise ValueError("Malformed code fence in reply") from exc
    return json.loads(text)


def parse_json_object(content: str) -> Dict[str, Any]:
    """Like ``parse_json_reply`` but the reply must be a JSON object."""
    parsed = parse_json_reply(content)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
