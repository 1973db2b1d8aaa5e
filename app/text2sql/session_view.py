"""Read-only snapshot of a conversation handed to the agents."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .prompts import format_history

_CONTEXT_MARKER = "[CONTEXT]"
_CONTEXT_FIELD = re.compile(r"^(Entity|Identifier|Type):\s*(.+)$", re.MULTILINE)


@dataclass(slots=True)
class SessionView:
    session_id: str
    summary: Optional[str] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)

    def recent(self, limit: int) -> List[Dict[str, Any]]:
        chat = [m for m in self.messages if m.get("role") != "system"]
        return chat[-limit:] if limit else chat

    def history_text(self, limit: int) -> str:
        """Summary (when present) followed by the last ``limit`` messages."""

        history = format_history(self.recent(limit))
        if self.summary:
            prefix = f"Tóm tắt trước đó: {self.summary}"
            return f"{prefix}\n{history}" if history else prefix
        return history

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.get("role") == "user")

    @property
    def is_first_message(self) -> bool:
        return self.user_message_count <= 1

    def last_assistant_metadata(self) -> Dict[str, Any]:
        for message in reversed(self.messages):
            if message.get("role") == "assistant":
                return message.get("metadata") or {}
        return {}

    def page_context(self) -> Optional[Dict[str, str]]:
        """Page context from the most recent ``[CONTEXT]`` system message."""

        for message in reversed(self.messages):
            content = message.get("content") or ""
            if message.get("role") != "system" or _CONTEXT_MARKER not in content:
                continue
            fields = {key.lower(): value.strip() for key, value in _CONTEXT_FIELD.findall(content)}
            if fields.get("entity"):
                return {
                    "entity": fields["entity"],
                    "identifier": fields.get("identifier", ""),
                    "type": fields.get("type", ""),
                }
        return None
