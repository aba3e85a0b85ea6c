"""
Core data models for the Review Insights pipeline.
"""

from .schemas import (
    ResourceRef,
    ReviewRef,
    ClaimedJob,
    Candidate,
    ReviewRecord,
    ReviewPage,
    RunError,
    RunStats,
    TriggerResult,
)

__all__ = [
    "ResourceRef",
    "ReviewRef",
    "ClaimedJob",
    "Candidate",
    "ReviewRecord",
    "ReviewPage",
    "RunError",
    "RunStats",
    "TriggerResult",
]
