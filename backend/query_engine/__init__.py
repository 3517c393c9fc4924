from .engine import QueryAnswer, QueryEngine
from .models import (
    ClarificationRequest,
    ConversationHistory,
    ConversationTurn,
    QueryFilters,
    QueryPlan,
    SortSpec,
)
from .planner import QueryPlanner
from .resolver import LocalResolutionError, LocalResolver, apply_filters
from .vocabulary import CodeBucket, ResourceType, translate, translate_code_search

__all__ = [
    "QueryEngine",
    "QueryAnswer",
    "QueryPlanner",
    "QueryPlan",
    "QueryFilters",
    "SortSpec",
    "ClarificationRequest",
    "ConversationHistory",
    "ConversationTurn",
    "LocalResolver",
    "LocalResolutionError",
    "apply_filters",
    "ResourceType",
    "CodeBucket",
    "translate",
    "translate_code_search",
]
