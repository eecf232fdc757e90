from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Lifecycle of one workflow step."""

    PENDING = "pending"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


class StepMode(str, Enum):
    """Whether a finished step is shown or being edited."""

    VIEW = "view"
    EDIT = "edit"


@dataclass
class StepResult:
    content: str = ""
    mode: StepMode = StepMode.VIEW
    status: StepStatus = StepStatus.PENDING
    user_input: str = ""
    # Set when a generation claims the step; a run only writes back while it still matches
    generation_id: str = ""
    claimed_at: float = 0.0

    @classmethod
    def empty(cls) -> "StepResult":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "mode": self.mode.value,
            "status": self.status.value,
            "userInput": self.user_input,
            "generationId": self.generation_id,
            "claimedAt": self.claimed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            content=data.get("content") or "",
            mode=StepMode(data.get("mode") or StepMode.VIEW.value),
            status=StepStatus(data.get("status") or StepStatus.PENDING.value),
            user_input=data.get("userInput") or "",
            generation_id=data.get("generationId") or "",
            claimed_at=float(data.get("claimedAt") or 0.0),
        )


@dataclass
class ExecutionContext:
    """Persisted progress of one workflow.

    ``summary_through`` is the last step index folded into ``summary``;
    -1 means no summary has been computed.
    """

    results: List[StepResult]
    current_step_index: int = 0
    summary: str = ""
    summary_through: int = -1

    @classmethod
    def new(cls, step_count: int) -> "ExecutionContext":
        return cls(results=[StepResult.empty() for _ in range(step_count)])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentStepIndex": self.current_step_index,
            "summary": self.summary,
            "summaryThrough": self.summary_through,
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls(
            results=[StepResult.from_dict(r) for r in data.get("results", [])],
            current_step_index=int(data.get("currentStepIndex", 0)),
            summary=data.get("summary") or "",
            summary_through=int(data.get("summaryThrough", -1)),
        )


@dataclass
class Workflow:
    id: str
    user_id: str
    title: str
    template_snapshot: Dict[str, Any]
    execution_context: ExecutionContext
    is_bookmarked: bool = False
    bookmark_title: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        title: str,
        template_snapshot: Dict[str, Any],
        execution_context: ExecutionContext,
    ) -> "Workflow":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            template_snapshot=template_snapshot,
            execution_context=execution_context,
        )

    @property
    def template_name(self) -> str:
        return str(self.template_snapshot.get("name") or "")

    @property
    def template_config(self) -> Dict[str, Any]:
        return self.template_snapshot.get("config") or {}


@dataclass
class InteractionRecord:
    """One audit entry for a single provider call; ``step_index`` None marks summarization."""

    actor: Optional[str]
    provider: str
    model_id: str
    request_payload: Dict[str, Any]
    response_payload: Optional[str]
    success: bool
    username: Optional[str] = None
    workflow_id: Optional[str] = None
    template_name: Optional[str] = None
    step_index: Optional[int] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ErrorLogEntry:
    action_type: str
    error_message: str
    actor: Optional[str] = None
    username: Optional[str] = None
    workflow_id: Optional[str] = None
    step_index: Optional[int] = None
    context: Dict[str, Any] | None = None
    id: Optional[int] = None
    timestamp: datetime = field(default_factory=_utcnow)
