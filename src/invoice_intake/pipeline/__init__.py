"""
Processing pipeline.

classify -> extract -> verify -> duplicate check -> validate -> save ->
notify, run as one audited state machine per document.
"""

from .processor import ProcessingPipeline, PipelineResult
from .states import (
    InvalidTransitionError,
    PipelineEvent,
    PipelineState,
    is_terminal,
    last_completed,
    transition,
)

__all__ = [
    "InvalidTransitionError",
    "PipelineEvent",
    "PipelineResult",
    "PipelineState",
    "ProcessingPipeline",
    "is_terminal",
    "last_completed",
    "transition",
]
