from .orchestrator import (
    SYNC_RESOURCE_TYPES,
    FetchProgress,
    FetchState,
    FetchSummary,
    ProgressTracker,
    ProgressTransitionError,
    SyncOrchestrator,
)

__all__ = [
    "SYNC_RESOURCE_TYPES",
    "FetchProgress",
    "FetchState",
    "FetchSummary",
    "ProgressTracker",
    "ProgressTransitionError",
    "SyncOrchestrator",
]
