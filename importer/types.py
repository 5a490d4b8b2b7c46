from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.errors import JobStateError


class EntityType(str, enum.Enum):
    PRODUCTS = "products"
    SUPPLIERS = "suppliers"
    MOVEMENTS = "movements"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class JobState(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.ERROR, JobState.CANCELLED)

    @property
    def is_cancellable(self) -> bool:
        return self in (JobState.PENDING, JobState.PROCESSING)


_TRANSITIONS: Dict[JobState, tuple] = {
    JobState.PENDING: (JobState.PROCESSING, JobState.CANCELLED, JobState.ERROR),
    JobState.PROCESSING: (JobState.COMPLETED, JobState.ERROR, JobState.CANCELLED),
    JobState.COMPLETED: (),
    JobState.ERROR: (),
    JobState.CANCELLED: (),
}


class ErrorType(str, enum.Enum):
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    SYSTEM = "system"
    FORMAT = "format"
    REFERENCE = "reference"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CorrectionKind(str, enum.Enum):
    FORMAT = "format"
    DEFAULT_VALUE = "default_value"
    NORMALIZATION = "normalization"
    VALIDATION = "validation"


class ResolutionAction(str, enum.Enum):
    CORRECTED = "corrected"
    SUGGESTED = "suggested"
    IGNORED = "ignored"
    NEEDS_INTERVENTION = "needs_intervention"


@dataclass(frozen=True)
class ErrorRecord:
    row: int
    column: str
    value: Any
    message: str
    type: ErrorType = ErrorType.VALIDATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "column": self.column,
            "value": self.value if self.value is None else str(self.value),
            "message": self.message,
            "type": self.type.value,
        }


@dataclass
class ErrorReport:
    total_errors: int = 0
    total_records: int = 0
    error_rate: float = 0.0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_column: Dict[str, int] = field(default_factory=dict)
    by_severity: Dict[str, int] = field(default_factory=dict)
    critical_errors: List[ErrorRecord] = field(default_factory=list)
    blocking_errors: List[ErrorRecord] = field(default_factory=list)
    warnings: List[ErrorRecord] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    can_continue: bool = True
    estimated_fix_minutes: float = 0.0
    priority: str = "low"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "total_records": self.total_records,
            "error_rate": round(self.error_rate, 4),
            "by_type": dict(self.by_type),
            "by_column": dict(self.by_column),
            "by_severity": dict(self.by_severity),
            "critical_errors": [e.to_dict() for e in self.critical_errors],
            "blocking_errors": [e.to_dict() for e in self.blocking_errors],
            "warnings": [e.to_dict() for e in self.warnings],
            "suggestions": list(self.suggestions),
            "can_continue": self.can_continue,
            "estimated_fix_minutes": round(self.estimated_fix_minutes, 1),
            "priority": self.priority,
        }


@dataclass
class Correction:
    field: str
    original: Any
    corrected: Any
    kind: CorrectionKind
    confidence: int
    reason: str = ""
    noop: bool = False
    applied: bool = False
    row: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "original": self.original,
            "corrected": self.corrected,
            "kind": self.kind.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "noop": self.noop,
            "applied": self.applied,
            "row": self.row,
        }


class ImportOptions(BaseModel):
    """Opzioni passate dal chiamante a startImport."""

    validate_only: bool = False
    allow_partial: bool = True
    overwrite_existing: bool = False
    auto_correct: bool = True
    auto_create_products: bool = True
    auto_create_suppliers: bool = True
    allow_negative_stock: bool = False
    source_file: Optional[str] = None
    job_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class ImportJob:
    id: str
    tenant_id: int
    user_id: int
    entity_type: EntityType
    total_records: int
    source_file: Optional[str] = None
    state: JobState = JobState.PENDING
    errors: List[ErrorRecord] = field(default_factory=list)
    error_count: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    row_details: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def transition(self, new_state: JobState) -> None:
        """Applica una transizione della macchina a stati del job."""
        if new_state not in _TRANSITIONS[self.state]:
            raise JobStateError(
                f"Transizione non ammessa per job {self.id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        if new_state == JobState.PROCESSING and self.started_at is None:
            self.started_at = datetime.utcnow()
        elif new_state.is_terminal:
            self.finished_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "entity_type": self.entity_type.value,
            "source_file": self.source_file,
            "state": self.state.value,
            "total_records": self.total_records,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error_count": self.error_count,
            "errors": [e.to_dict() for e in self.errors],
            "row_details": {str(k): v for k, v in self.row_details.items()},
            "options": dict(self.options),
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ImportOutcome:
    job_id: Optional[str]
    state: JobState
    total_records: int
    error_count: int
    validation_only: bool = False
    message: str = ""
    report: Optional[ErrorReport] = None
    batch_result: Optional[Any] = None
    corrections: Dict[str, Any] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "total_records": self.total_records,
            "errors": self.error_count,
        }
