from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stepchain.logging import get_logger
from stepchain.service.errors import NotFoundError, ValidationError
from stepchain.storage.errors import RecordNotFound
from stepchain.storage.models import ExecutionContext, Workflow

logger = get_logger(__name__)


class WorkflowService:
    """Workflow records: creation from a template snapshot, listing, bookmarks, export.

    Step state is never written here; see ``StepStateMachine``.
    """

    def __init__(self, store) -> None:
        self.store = store

    def create(
        self,
        user_id: str,
        title: str,
        template_snapshot: Dict[str, Any],
        *,
        username: Optional[str] = None,
    ) -> Workflow:
        config = template_snapshot.get("config") if isinstance(template_snapshot, dict) else None
        steps = config.get("steps") if isinstance(config, dict) else None
        if not isinstance(steps, list) or not steps:
            raise ValidationError("template_snapshot.config.steps must be a non-empty list.")
        if not all(isinstance(step, dict) for step in steps):
            raise ValidationError("Each template step must be an object.")
        # value copy; later edits to the source template must not leak in
        snapshot = copy.deepcopy(template_snapshot)
        workflow = Workflow.new(
            user_id=user_id,
            title=title or snapshot.get("name") or "Untitled workflow",
            template_snapshot=snapshot,
            execution_context=ExecutionContext.new(len(steps)),
        )
        stored = self.store.create_workflow(workflow)
        logger.info(
            "workflow_created",
            workflow_id=stored.id,
            username=username,
            template_name=stored.template_name,
            step_count=len(steps),
        )
        return stored

    def get(self, workflow_id: str, user_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id, user_id=user_id)
        if workflow is None:
            raise NotFoundError("Workflow not found or access denied")
        return workflow

    def list(self, user_id: str, *, bookmarked_only: bool = False) -> List[Workflow]:
        return self.store.list_workflows(user_id, bookmarked_only=bookmarked_only)

    def bookmark(self, workflow_id: str, user_id: str, bookmark_title: Optional[str]) -> Workflow:
        if not bookmark_title or not bookmark_title.strip():
            raise ValidationError("Bookmark title is required")
        return self._set_bookmark(workflow_id, user_id, bookmark_title.strip())

    def remove_bookmark(self, workflow_id: str, user_id: str) -> Workflow:
        return self._set_bookmark(workflow_id, user_id, None)

    def _set_bookmark(self, workflow_id: str, user_id: str, title: Optional[str]) -> Workflow:
        try:
            workflow = self.store.set_bookmark(workflow_id, user_id, title)
        except RecordNotFound as exc:
            raise NotFoundError("Workflow not found or access denied") from exc
        logger.info("workflow_bookmark_updated", workflow_id=workflow_id, bookmarked=title is not None)
        return workflow

    def export(self, workflow_id: str, user_id: str) -> Dict[str, Any]:
        """Portable snapshot: template metadata plus each step's input and output."""
        workflow = self.get(workflow_id, user_id)
        context = workflow.execution_context
        steps = workflow.template_config.get("steps") or []
        metadata = copy.deepcopy(workflow.template_snapshot)
        metadata["exportedAt"] = datetime.now(timezone.utc).isoformat()
        metadata["originalWorkflowId"] = workflow.id
        return {
            "metadata": metadata,
            "results": {
                "summary": context.summary,
                "steps": [
                    {
                        "step": position + 1,
                        "name": (steps[position].get("name") if position < len(steps) else None)
                        or f"Step {position + 1}",
                        "status": result.status.value,
                        "userInput": result.user_input,
                        "content": result.content,
                    }
                    for position, result in enumerate(context.results)
                ],
            },
        }


def workflow_to_dict(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "user_id": workflow.user_id,
        "title": workflow.title,
        "template_snapshot": workflow.template_snapshot,
        "execution_context": workflow.execution_context.to_dict(),
        "is_bookmarked": workflow.is_bookmarked,
        "bookmark_title": workflow.bookmark_title,
        "created_at": workflow.created_at.isoformat(),
        "updated_at": workflow.updated_at.isoformat(),
    }


def workflow_summary(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "title": workflow.title,
        "bookmark_title": workflow.bookmark_title,
        "updated_at": workflow.updated_at.isoformat(),
    }
