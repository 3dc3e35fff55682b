"""Job orchestration: submission, tile pacing, events and results."""

from .job_runner import (
    CompletedEvent,
    ErrorEvent,
    JobHandle,
    JobResult,
    JobState,
    Orchestrator,
    ProgressEvent,
)

__all__ = [
    'CompletedEvent',
    'ErrorEvent',
    'JobHandle',
    'JobResult',
    'JobState',
    'Orchestrator',
    'ProgressEvent',
]
