from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    CONTENT = "content"
    PROGRESS = "progress"
    PLAN = "plan"
    SEARCH_QUERY = "search_query"
    SOURCE = "source"
    CLARIFICATION = "clarification"
    REFLECTION = "reflection"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    """One event of a research stream. `token` carries display text."""

    type: EventType
    conversation_id: str
    token: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "token": self.token,
            "conversationId": self.conversation_id,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
