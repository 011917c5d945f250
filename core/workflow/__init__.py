"""Core workflow module - flow state machine, runner and dispatcher.

The runner is plain asyncio code; ``workflows/`` and ``activities/`` wrap it
for Temporal, ``core.workflow.dispatcher`` runs it in-process.
"""

from core.workflow.base import (
    FlowExecution,
    FlowScope,
    FlowStep,
    GlobalStatus,
    InvalidTransitionError,
    ResumeError,
    StepRecord,
    StepStatus,
    TOTAL_STEPS,
    derive_global_status,
    resume_point,
)

__all__ = [
    "FlowExecution",
    "FlowScope",
    "FlowStep",
    "GlobalStatus",
    "InvalidTransitionError",
    "ResumeError",
    "StepRecord",
    "StepStatus",
    "TOTAL_STEPS",
    "derive_global_status",
    "resume_point",
]
