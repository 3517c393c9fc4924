from __future__ import annotations

import re
from typing import Iterable

from .models import ClarificationRequest, ConversationTurn, QueryFilters, QueryPlan, SortSpec
from .vocabulary import ResourceType, has_domain_vocabulary, mentions_any, translate, translate_code_search

MIN_QUERY_TOKENS = 3
DEFAULT_RESULT_LIMIT = 10

_RECORD_INDEX_PATTERNS = (
    re.compile(r"\brecord\s+(?:number\s+|no\.?\s*|#)?(\d+)\b"),
    re.compile(r"\bnumber\s+(\d+)\b"),
    re.compile(r"#(\d+)\b"),
    re.compile(r"\b(\d+)(?:st|nd|rd|th)\s+(?:record|entry|result|one)\b"),
)
_ORDINAL_WORDS = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "fifth": 5,
    "sixth": 6,
    "seventh": 7,
    "eighth": 8,
    "ninth": 9,
    "tenth": 10,
}
_ORDINAL_RE = re.compile(
    r"\b(" + "|".join(_ORDINAL_WORDS) + r")\s+(?:record|entry|result|one)\b"
)
_RECENCY_RE = re.compile(r"\b(recent|recently|latest|newest|last)\b")
_DESCENDING_RE = re.compile(r"\b(recent|recently|latest|newest|last|past)\b")
_ASCENDING_RE = re.compile(r"\b(oldest|earliest)\b")
_STATUS_WORDS = {
    "active": "active",
    "current": "active",
    "completed": "completed",
    "finished": "finished",
    "stopped": "stopped",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "resolved": "resolved",
    "inactive": "inactive",
}
_STATUS_RE = re.compile(r"\b(" + "|".join(_STATUS_WORDS) + r")\b")
_LOCAL_ONLY_MARKERS = ("offline", "on this device", "on my phone", "locally", "local only", "without internet")
_FOLLOW_UP_RE = re.compile(r"\b(record|number|one|entry|those|them|that|these|more)\b")

GENERAL_OPTIONS = [
    "Recent visits or appointments",
    "Test results or lab reports",
    "Medications",
    "Lab values (like cholesterol, glucose)",
    "Immunizations",
]


def extract_record_index(text: str) -> int | None:
    """Return a zero-based record index for phrases like "record 3" or "third record"."""
    for pattern in _RECORD_INDEX_PATTERNS:
        match = pattern.search(text)
        if match:
            number = int(match.group(1))
            return number - 1 if number >= 1 else None
    match = _ORDINAL_RE.search(text)
    if match:
        return _ORDINAL_WORDS[match.group(1)] - 1
    return None


def clarification_for(text: str, reason: str = "ambiguous") -> ClarificationRequest:
    if mentions_any(text, ("test", "result")):
        return ClarificationRequest(
            question="Are you looking for:",
            options=[
                "Diagnostic reports (test results)",
                "Lab values (like cholesterol, glucose)",
                "A specific test result by number",
            ],
            reason=reason,
        )
    if mentions_any(text, ("record", "number")):
        return ClarificationRequest(
            question="Which type of record are you asking about?",
            options=["Test results", "Visits", "Medications", "Lab values"],
            reason=reason,
        )
    return ClarificationRequest(
        question="I'm not sure what you're looking for. Are you asking about:",
        options=list(GENERAL_OPTIONS),
        reason=reason,
    )


def is_local_only(text: str) -> bool:
    return any(marker in text for marker in _LOCAL_ONLY_MARKERS)


class QueryPlanner:
    def __init__(self, *, remote_enabled: bool = True, default_limit: int = DEFAULT_RESULT_LIMIT) -> None:
        self._remote_enabled = remote_enabled
        self._default_limit = default_limit

    def plan(
        self,
        text: str,
        subject_id: str | None = None,
        history: Iterable[ConversationTurn] = (),
    ) -> QueryPlan | ClarificationRequest:
        lowered = " ".join(text.lower().split())
        if len(lowered.split()) < MIN_QUERY_TOKENS or not has_domain_vocabulary(lowered):
            return clarification_for(lowered)

        record_index = extract_record_index(lowered)
        code_bucket = translate_code_search(lowered)
        resource_type = translate(lowered)

        if resource_type is None and code_bucket is not None:
            resource_type = ResourceType.OBSERVATION
        if resource_type is None and (record_index is not None or _FOLLOW_UP_RE.search(lowered)):
            resource_type = self._type_from_history(history)
        if resource_type is None:
            return clarification_for(lowered, reason="unknown_resource_type")

        recency = _RECENCY_RE.search(lowered) is not None
        sort: SortSpec | None = None
        if _ASCENDING_RE.search(lowered):
            sort = SortSpec(resource_type.date_path, descending=False)
        elif _DESCENDING_RE.search(lowered):
            sort = SortSpec(resource_type.date_path, descending=True)

        limit: int | None = None
        if recency or (resource_type.is_high_volume and record_index is None):
            limit = self._default_limit

        status_match = _STATUS_RE.search(lowered)
        filters = QueryFilters(
            code_search=code_bucket,
            status=_STATUS_WORDS[status_match.group(1)] if status_match else None,
            sort=sort,
            limit=limit,
        )
        return QueryPlan(
            resource_type=resource_type,
            filters=filters,
            record_index=record_index,
            fallback_to_remote=self._remote_enabled and not is_local_only(lowered),
            subject_id=subject_id,
            text=text,
        )

    @staticmethod
    def _type_from_history(history: Iterable[ConversationTurn]) -> ResourceType | None:
        for turn in reversed(list(history)):
            if turn.resource_type is not None:
                return turn.resource_type
        return None
