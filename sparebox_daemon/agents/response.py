"""
Turn agent CLI stdout into reply text.

JSON first: a plain string is used verbatim, otherwise the first extractor
that yields text wins. Non-JSON stdout is used trimmed. stderr is never
part of the reply.
"""
from __future__ import annotations

import json
from typing import Any, Callable

EMPTY_RESPONSE = "[Agent returned empty response]"

# Conventional reply fields, in priority order
REPLY_FIELDS = ("reply", "text", "content", "message", "output")

Extractor = Callable[[Any], "str | None"]


def _field(name: str) -> Extractor:
    def extract(data: Any) -> str | None:
        if isinstance(data, dict):
            value = data.get(name)
            if isinstance(value, str) and value:
                return value
        return None
    extract.__name__ = f"field_{name}"
    return extract


def _cli_payloads(data: Any) -> str | None:
    """openclaw --json: {"runId": ..., "status": "ok", "result": {"payloads": [{"text": ...}]}}"""
    if not isinstance(data, dict) or not isinstance(data.get("result"), dict):
        return None
    payloads = data["result"].get("payloads")
    if not isinstance(payloads, list):
        return None
    texts = [p["text"] for p in payloads if isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"]]
    return "\n\n".join(texts) or None


def _error_envelope(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    if data.get("status") != "error" and not data.get("error"):
        return None
    detail = data.get("error") or data.get("message") or data.get("summary") or "Unknown error"
    return f"[System] Agent error: {detail}"


EXTRACTORS: list[Extractor] = [
    *(_field(name) for name in REPLY_FIELDS),
    _field("response"),
    _cli_payloads,
    _error_envelope,
]


def parse_agent_response(stdout: str) -> str:
    trimmed = stdout.strip()
    try:
        data = json.loads(trimmed)
    except ValueError:
        return trimmed or EMPTY_RESPONSE

    if isinstance(data, str):
        return data or EMPTY_RESPONSE
    for extract in EXTRACTORS:
        text = extract(data)
        if text:
            return text
    return json.dumps(data, indent=2)
