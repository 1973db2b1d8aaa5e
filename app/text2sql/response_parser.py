"""Parse model output into a message plus optional LIST/TABLE/CHART data.

Two formats are accepted: the JSON envelope ``{"message", "payload"}`` (optionally
inside a fenced ``json`` block) and the older ``message ---END`` layout followed
by ``LIST:``, ``TABLE:`` and ``CHART:`` lines. Anything else is plain text.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_END_MARKER = "---END"
_SECTIONS = ("LIST", "TABLE", "CHART")


@dataclass(slots=True)
class ParsedResponse:
    message: str
    list: Optional[Any] = None
    table: Optional[Any] = None
    chart: Optional[Any] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def _parse_envelope(text: str) -> Optional[ParsedResponse]:
    match = _FENCED_JSON.search(text)
    candidate = match.group(1).strip() if match else text
    try:
        envelope = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(envelope, dict) or not envelope.get("message") or not envelope.get("payload"):
        return None

    message = _FENCED_JSON.sub("", str(envelope["message"])).strip()
    payload = envelope["payload"] if isinstance(envelope["payload"], dict) else {}
    meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
    mode = str(payload.get("mode") or "LIST").upper()
    if mode == "INSIGHT":
        return ParsedResponse(message=message, meta=meta)

    list_value = payload.get("list")
    if isinstance(list_value, dict):
        list_value = list_value.get("items")
    return ParsedResponse(
        message=message,
        list=list_value if mode == "LIST" else None,
        table=payload.get("table") if mode == "TABLE" else None,
        chart=payload.get("chart") if mode == "CHART" else None,
        meta=meta,
    )


def _section(data: str, name: str) -> Optional[Any]:
    others = "|".join(f"{other}:" for other in _SECTIONS if other != name)
    match = re.search(rf"{name}:\s*(.+?)(?=\n(?:{others})|$)", data, re.DOTALL)
    if not match:
        return None
    value = match.group(1).strip()
    if value in ("", "null"):
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Failed to parse %s section as JSON", name)
        return None


def parse_response(raw: str) -> ParsedResponse:
    text = (raw or "").strip()
    envelope = _parse_envelope(text)
    if envelope is not None:
        return envelope

    end = text.find(_END_MARKER)
    if end == -1:
        return ParsedResponse(message=text)
    data = text[end + len(_END_MARKER):].strip()
    return ParsedResponse(
        message=text[:end].strip(),
        list=_section(data, "LIST"),
        table=_section(data, "TABLE"),
        chart=_section(data, "CHART"),
    )


def extract_json_object(content: str) -> Optional[Dict[str, Any]]:
    """Parse ``content`` as JSON, falling back to the first ``{...}`` block in it."""

    try:
        result = json.loads(content)
    except json.JSONDecodeError:
        json_match = re.search(r"\{.*\}", content, re.DOTALL)
        if not json_match:
            return None
        try:
            result = json.loads(json_match.group())
        except json.JSONDecodeError:
            return None
    return result if isinstance(result, dict) else None


__all__ = ["ParsedResponse", "extract_json_object", "parse_response"]
