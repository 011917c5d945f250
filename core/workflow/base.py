"""Flow execution state model.

Six ordered steps, each with its own status:

    order -> delivery -> picking -> pgi -> billing -> nfe

``order`` to ``pgi`` are required, ``billing`` and ``nfe`` optional. Step
transitions are checked; a completed step is never touched again, so
``completed_steps`` only grows.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.models.reference import ReferenceDocument


class FlowStep(str, Enum):
    """Pipeline steps, in execution order."""
    ORDER = "order"
    DELIVERY = "delivery"
    PICKING = "picking"
    PGI = "pgi"
    BILLING = "billing"
    NFE = "nfe"


STEP_ORDER: List[FlowStep] = list(FlowStep)
REQUIRED_STEPS = frozenset({FlowStep.ORDER, FlowStep.DELIVERY, FlowStep.PICKING, FlowStep.PGI})
OPTIONAL_STEPS = frozenset({FlowStep.BILLING, FlowStep.NFE})
TOTAL_STEPS = len(STEP_ORDER)


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class GlobalStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class FlowScope(str, Enum):
    """What an execution covers. Values are the stored test_type."""
    FULL_FLOW = "fluxo_completo"
    ORDER_ONLY = "ordem_vendas"


# Skip reasons
SKIP_CAPABILITY = "capability_unavailable"
SKIP_UPSTREAM_FAILED = "upstream_failed"
SKIP_NOT_REQUESTED = "not_requested"

ALLOWED_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset({StepStatus.PROCESSING, StepStatus.SKIPPED}),
    StepStatus.PROCESSING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.FAILED: frozenset({StepStatus.PROCESSING}),  # resume
    StepStatus.SKIPPED: frozenset({StepStatus.PENDING}),  # re-plan on resume
    StepStatus.COMPLETED: frozenset(),
}


class InvalidTransitionError(Exception):
    """A step status change the state machine does not allow."""

    def __init__(self, step: FlowStep, current: StepStatus, target: StepStatus):
        super().__init__(f"Step {step.value}: {current.value} -> {target.value} is not allowed")
        self.step = step
        self.current = current
        self.target = target


class ResumeError(Exception):
    """The execution cannot be resumed."""
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def interrupted_error() -> Dict[str, Any]:
    """Error record of a step whose run stopped while it was processing."""
    return {
        "type": "internal",
        "code": "Interrupted",
        "message": "Run stopped before the step finished",
        "statusCode": 0,
        "raw": None,
    }


@dataclass
class StepRecord:
    """Status and captured call data of one step."""
    status: StepStatus = StepStatus.PENDING
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request: Any = None
    response: Any = None
    error: Optional[Dict[str, Any]] = None
    document_id: Optional[str] = None
    skip_reason: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "endpoint": self.endpoint,
            "method": self.method,
            "request": self.request,
            "response": self.response,
            "error": self.error,
            "document_id": self.document_id,
            "skip_reason": self.skip_reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepRecord":
        return cls(
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            endpoint=data.get("endpoint"),
            method=data.get("method"),
            request=data.get("request"),
            response=data.get("response"),
            error=data.get("error"),
            document_id=data.get("document_id"),
            skip_reason=data.get("skip_reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


def derive_global_status(steps: Mapping[FlowStep, StepRecord], running: bool = False) -> GlobalStatus:
    """Global status from the step statuses.

    - any required step failed -> failed
    - still running -> processing
    - an optional step failed after the required ones succeeded -> partial
    - every step completed or skipped -> completed
    - otherwise (halted with pending steps) -> processing
    """
    statuses = {step: record.status for step, record in steps.items()}

    if any(statuses.get(s) == StepStatus.FAILED for s in REQUIRED_STEPS):
        return GlobalStatus.FAILED
    if running:
        return GlobalStatus.PROCESSING

    required_done = all(statuses.get(s) == StepStatus.COMPLETED for s in REQUIRED_STEPS)
    if required_done and any(statuses.get(s) == StepStatus.FAILED for s in OPTIONAL_STEPS):
        return GlobalStatus.PARTIAL

    if all(statuses.get(s) in (StepStatus.COMPLETED, StepStatus.SKIPPED) for s in STEP_ORDER):
        return GlobalStatus.COMPLETED

    return GlobalStatus.PROCESSING


@dataclass
class FlowExecution:
    """One run of the replication pipeline."""
    id: str
    reference: ReferenceDocument
    run_id: str
    original_order_id: str
    test_type: FlowScope = FlowScope.FULL_FLOW
    order_id: Optional[str] = None
    delivery_id: Optional[str] = None
    billing_id: Optional[str] = None
    nfe_number: Optional[str] = None
    steps: Dict[FlowStep, StepRecord] = field(
        default_factory=lambda: {step: StepRecord() for step in STEP_ORDER}
    )
    completed_steps: int = 0
    total_steps: int = TOTAL_STEPS
    global_status: GlobalStatus = GlobalStatus.PROCESSING
    comparison: Optional[Dict[str, Any]] = None
    total_differences: int = 0
    sections_with_differences: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        reference: ReferenceDocument,
        run_id: Optional[str] = None,
        test_type: FlowScope = FlowScope.FULL_FLOW,
    ) -> "FlowExecution":
        """New execution in status processing.

        An order-only execution has one step in scope; the other five start
        skipped as ``not_requested`` and are never re-planned.
        """
        execution_id = str(uuid.uuid4())
        execution = cls(
            id=execution_id,
            reference=reference,
            run_id=run_id or f"run-{execution_id[:8]}",
            original_order_id=reference.order_id,
            test_type=test_type,
        )
        if test_type == FlowScope.ORDER_ONLY:
            for step in steps_after(FlowStep.ORDER):
                execution.transition(step, StepStatus.SKIPPED, skip_reason=SKIP_NOT_REQUESTED)
            execution.total_steps = 1
        return execution

    def step(self, step: FlowStep) -> StepRecord:
        return self.steps[step]

    def transition(self, step: FlowStep, target: StepStatus, **fields: Any) -> StepRecord:
        """Move ``step`` to ``target`` and set the given record fields.

        Raises:
            InvalidTransitionError: Not an allowed transition
        """
        record = self.steps[step]
        if target not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(step, record.status, target)

        record.status = target
        for name, value in fields.items():
            if not hasattr(record, name):
                raise AttributeError(f"StepRecord has no field {name!r}")
            setattr(record, name, value)

        now = utc_now()
        if target == StepStatus.PROCESSING:
            record.started_at = now
            record.finished_at = None
            record.error = None
            record.skip_reason = None
        elif target in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED):
            record.finished_at = now
        elif target == StepStatus.PENDING:
            record.skip_reason = None
            record.started_at = None
            record.finished_at = None

        self.completed_steps = max(
            self.completed_steps,
            sum(1 for r in self.steps.values() if r.status == StepStatus.COMPLETED),
        )
        self.updated_at = now
        return record

    def refresh_status(self, running: bool = False) -> GlobalStatus:
        self.global_status = derive_global_status(self.steps, running)
        self.updated_at = utc_now()
        return self.global_status

    def interrupt_processing_steps(self, error: Optional[Dict[str, Any]] = None) -> List[FlowStep]:
        """Fail every step left in processing. Returns the steps moved."""
        interrupted = [step for step in STEP_ORDER if self.steps[step].status == StepStatus.PROCESSING]
        for step in interrupted:
            self.transition(step, StepStatus.FAILED, error=error or interrupted_error())
        return interrupted

    def abort(self, error: Dict[str, Any]) -> GlobalStatus:
        """End the run after an error raised outside a step handler.

        The in-flight step (if any) fails with ``error``. A run that would
        otherwise stay processing becomes failed.
        """
        self.interrupt_processing_steps(error)
        status = derive_global_status(self.steps)
        self.global_status = GlobalStatus.FAILED if status == GlobalStatus.PROCESSING else status
        self.updated_at = utc_now()
        return self.global_status

    @property
    def is_terminal(self) -> bool:
        return self.global_status != GlobalStatus.PROCESSING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "reference": self.reference.model_dump(mode="json"),
            "original_order_id": self.original_order_id,
            "test_type": self.test_type.value,
            "order_id": self.order_id,
            "delivery_id": self.delivery_id,
            "billing_id": self.billing_id,
            "nfe_number": self.nfe_number,
            "steps": {step.value: record.to_dict() for step, record in self.steps.items()},
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "global_status": self.global_status.value,
            "comparison": self.comparison,
            "total_differences": self.total_differences,
            "sections_with_differences": list(self.sections_with_differences),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlowExecution":
        raw_steps = data.get("steps") or {}
        steps = {
            step: StepRecord.from_dict(raw_steps.get(step.value) or {})
            for step in STEP_ORDER
        }
        return cls(
            id=data["id"],
            reference=ReferenceDocument.model_validate(data["reference"]),
            run_id=data["run_id"],
            original_order_id=data["original_order_id"],
            test_type=FlowScope(data.get("test_type") or FlowScope.FULL_FLOW.value),
            order_id=data.get("order_id"),
            delivery_id=data.get("delivery_id"),
            billing_id=data.get("billing_id"),
            nfe_number=data.get("nfe_number"),
            steps=steps,
            completed_steps=data.get("completed_steps", 0),
            total_steps=data.get("total_steps", TOTAL_STEPS),
            global_status=GlobalStatus(data.get("global_status", GlobalStatus.PROCESSING.value)),
            comparison=data.get("comparison"),
            total_differences=data.get("total_differences", 0),
            sections_with_differences=list(data.get("sections_with_differences") or []),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


def resume_point(execution: FlowExecution) -> Optional[FlowStep]:
    """First step, in order, that is pending, processing or failed. None when nothing remains.

    A processing step only shows up here when its run stopped mid-step; it
    has not finished and is run again.
    """
    for step in STEP_ORDER:
        if execution.steps[step].status in (StepStatus.PENDING, StepStatus.PROCESSING, StepStatus.FAILED):
            return step
    return None


def steps_after(step: FlowStep) -> Iterable[FlowStep]:
    return STEP_ORDER[STEP_ORDER.index(step) + 1:]
