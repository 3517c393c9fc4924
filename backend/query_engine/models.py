from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator

from .vocabulary import CodeBucket, ResourceType

HISTORY_LIMIT = 10


@dataclass(frozen=True)
class SortSpec:
    path: str
    descending: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "direction": "desc" if self.descending else "asc"}


@dataclass(frozen=True)
class QueryFilters:
    code_search: CodeBucket | None = None
    status: str | None = None
    sort: SortSpec | None = None
    limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code_search": self.code_search.name if self.code_search else None,
            "status": self.status,
            "sort": self.sort.to_dict() if self.sort else None,
            "limit": self.limit,
        }


@dataclass(frozen=True)
class QueryPlan:
    resource_type: ResourceType
    filters: QueryFilters = field(default_factory=QueryFilters)
    record_index: int | None = None
    fallback_to_remote: bool = True
    subject_id: str | None = None
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type.value,
            "filters": self.filters.to_dict(),
            "record_index": self.record_index,
            "fallback_to_remote": self.fallback_to_remote,
            "subject_id": self.subject_id,
            "text": self.text,
        }


@dataclass(frozen=True)
class ClarificationRequest:
    question: str
    options: list[str]
    reason: str = "ambiguous"

    def to_dict(self) -> dict[str, Any]:
        return {"question": self.question, "options": list(self.options), "reason": self.reason}


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    text: str
    resource_type: ResourceType | None = None


class ConversationHistory:
    """Rolling log of recent turns; the oldest turn is evicted first."""

    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self._turns: deque[ConversationTurn] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._turns)

    @property
    def limit(self) -> int:
        return self._turns.maxlen or HISTORY_LIMIT

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def add_user(self, text: str, resource_type: ResourceType | None = None) -> None:
        self.append(ConversationTurn(role="user", text=text, resource_type=resource_type))

    def add_assistant(self, text: str, resource_type: ResourceType | None = None) -> None:
        self.append(ConversationTurn(role="assistant", text=text, resource_type=resource_type))

    def last_resource_type(self) -> ResourceType | None:
        for turn in reversed(self._turns):
            if turn.resource_type is not None:
                return turn.resource_type
        return None

    def snapshot(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def clear(self) -> None:
        self._turns.clear()
