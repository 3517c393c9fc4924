from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from gateway_client import GatewayError, ResourceGateway, RpcTimeoutError, SessionError

from .formatter import compose_answer
from .models import ClarificationRequest, ConversationHistory, QueryPlan
from .planner import QueryPlanner
from .resolver import LocalResolver, apply_filters
from .vocabulary import ResourceType

logger = logging.getLogger(__name__)

REMOTE_PAGE_SIZE = 50

_SUGGESTIONS: dict[ResourceType, list[str]] = {
    ResourceType.MEDICATION_STATEMENT: [
        "Show me my active medications",
        "Show me my recent visits",
        "Show me my latest test results",
    ],
    ResourceType.OBSERVATION: [
        "Show me my latest cholesterol levels",
        "Show me my recent blood pressure readings",
        "Show me my latest test results",
    ],
    ResourceType.DIAGNOSTIC_REPORT: [
        "Show me my latest lab values",
        "Show me record 1 of my test results",
        "Show me my recent visits",
    ],
    ResourceType.ENCOUNTER: [
        "Show me my medications",
        "Show me my latest test results",
        "Show me my immunization history",
    ],
}
_DEFAULT_SUGGESTIONS = [
    "Show me my recent visits",
    "Show me my medications",
    "Show me my latest test results",
    "Show me my immunization history",
]


def follow_up_suggestions(resource_type: ResourceType | None) -> list[str]:
    if resource_type is None:
        return list(_DEFAULT_SUGGESTIONS)
    return list(_SUGGESTIONS.get(resource_type, _DEFAULT_SUGGESTIONS))


def remote_failure_message(exc: GatewayError) -> str:
    if isinstance(exc, RpcTimeoutError):
        return "The health records server took too long to respond. Please try again in a moment."
    if isinstance(exc, SessionError):
        return "I couldn't connect to the health records server. Please check your connection and try again."
    return f"The health records server couldn't complete that request: {exc}"


def render_clarification(request: ClarificationRequest) -> str:
    lines = [request.question, ""]
    lines.extend(f"- {option}" for option in request.options)
    return "\n".join(lines) + "\n"


@dataclass
class QueryAnswer:
    source: str
    markdown: str
    records: list[dict[str, Any]] = field(default_factory=list)
    plan: QueryPlan | None = None
    clarification: ClarificationRequest | None = None
    error: str | None = None
    suggestions: list[str] = field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return self.clarification is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "markdown": self.markdown,
            "records": self.records,
            "plan": self.plan.to_dict() if self.plan else None,
            "needs_clarification": self.needs_clarification,
            "clarification": self.clarification.to_dict() if self.clarification else None,
            "error": self.error,
            "suggestions": self.suggestions,
        }


class QueryEngine:
    """Answers free-text questions from the local store, then the gateway."""

    def __init__(
        self,
        planner: QueryPlanner,
        resolver: LocalResolver,
        gateway: ResourceGateway | None = None,
        history: ConversationHistory | None = None,
    ) -> None:
        self._planner = planner
        self._resolver = resolver
        self._gateway = gateway
        self._history = history if history is not None else ConversationHistory()

    @property
    def history(self) -> ConversationHistory:
        return self._history

    async def ask(self, text: str, subject_id: str) -> QueryAnswer:
        outcome = self._planner.plan(text, subject_id, self._history.snapshot())
        if isinstance(outcome, ClarificationRequest):
            self._history.add_user(text)
            self._history.add_assistant(outcome.question)
            return QueryAnswer(
                source="none",
                markdown=render_clarification(outcome),
                clarification=outcome,
            )

        self._history.add_user(text, outcome.resource_type)
        answer = await self.execute(outcome, subject_id)
        self._history.add_assistant(answer.markdown, outcome.resource_type)
        return answer

    async def execute(self, plan: QueryPlan, subject_id: str) -> QueryAnswer:
        resource_type = plan.resource_type
        records = await asyncio.to_thread(
            self._resolver.resolve,
            subject_id,
            resource_type,
            plan.filters,
            plan.record_index,
        )
        suggestions = follow_up_suggestions(resource_type)
        if records or not plan.fallback_to_remote or self._gateway is None:
            return QueryAnswer(
                source="local",
                markdown=compose_answer(records, resource_type),
                records=records,
                plan=plan,
                suggestions=suggestions,
            )

        bucket = plan.filters.code_search
        extra: dict[str, str] | None = None
        count = plan.filters.limit or REMOTE_PAGE_SIZE
        if bucket is not None:
            # The server may ignore the code parameter; fetch a full page so the limit applies after filtering.
            extra = {"code": bucket.search_token()}
            count = REMOTE_PAGE_SIZE
        if plan.record_index is not None:
            count = max(count, plan.record_index + 1)
        try:
            fetched = await self._gateway.search(
                resource_type.value,
                subject_id,
                sort="-date",
                count=count,
                status=plan.filters.status,
                extra=extra,
            )
        except GatewayError as exc:
            logger.warning("Remote fallback for %s failed: %s", resource_type.value, exc)
            return QueryAnswer(
                source="remote",
                markdown=remote_failure_message(exc),
                plan=plan,
                error=str(exc),
                suggestions=suggestions,
            )

        matching = [record for record in fetched if record.get("resourceType") == resource_type.value]
        results = apply_filters(matching, plan.filters, plan.record_index)
        return QueryAnswer(
            source="remote",
            markdown=compose_answer(results, resource_type, source="remote"),
            records=results,
            plan=plan,
            suggestions=suggestions,
        )
