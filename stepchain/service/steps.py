"""Per-step lifecycle of a workflow.

This module is the only writer of ``ExecutionContext``. Status and mode
changes go through the transition tables below; anything not listed is
rejected with ``IllegalTransitionError``.

The generation gate (``index == currentStepIndex`` and status ``pending``) is
checked and the ``generating`` status written without an await in between,
so of two concurrent starts on the same step only one gets past the gate.
Each claim carries a generation id; a run writes its result back only while
the step still holds that id, and a live claim blocks invalidation.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, Iterable, Optional, Protocol

from stepchain.logging import get_logger, log_step_transition
from stepchain.service.errors import (
    ConfigurationError,
    IllegalTransitionError,
    NotFoundError,
    PersistenceError,
    ServiceError,
    StepConflictError,
)
from stepchain.service.memory import ConversationMemory, SummaryUpdate, resolve_model
from stepchain.service.providers import CanonicalRequest
from stepchain.service.relay import LoggingMetadata, ProxyRelay
from stepchain.storage.common import ExecutionContextStore
from stepchain.storage.errors import RecordNotFound
from stepchain.storage.models import (
    ErrorLogEntry,
    ExecutionContext,
    StepMode,
    StepResult,
    StepStatus,
    Workflow,
)

logger = get_logger(__name__)

ACTION_GENERATE = "GENERATE_STEP"
ACTION_SUMMARIZE = "SUMMARIZE_STEP"
INTERRUPTED_MESSAGE = "Generation was interrupted before completion."
DEFAULT_STALE_AFTER_SECONDS = 600.0

STATUS_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.GENERATING, StepStatus.PENDING}),
    StepStatus.GENERATING: frozenset(
        {StepStatus.SUCCESS, StepStatus.ERROR, StepStatus.PENDING}
    ),
    StepStatus.SUCCESS: frozenset({StepStatus.PENDING}),
    StepStatus.ERROR: frozenset({StepStatus.PENDING}),
}

MODE_TRANSITIONS: Dict[StepMode, FrozenSet[StepMode]] = {
    StepMode.VIEW: frozenset({StepMode.EDIT}),
    StepMode.EDIT: frozenset({StepMode.VIEW}),
}


def transition_status(result: StepResult, target: StepStatus) -> StepStatus:
    """Move ``result`` to ``target``; returns the previous status."""
    current = result.status
    if target not in STATUS_TRANSITIONS[current]:
        raise IllegalTransitionError(
            f"Cannot move step from {current.value} to {target.value}."
        )
    result.status = target
    return current


def transition_mode(result: StepResult, target: StepMode) -> None:
    if result.status != StepStatus.SUCCESS:
        raise IllegalTransitionError(
            f"Only completed steps can be edited (step is {result.status.value})."
        )
    if target not in MODE_TRANSITIONS[result.mode]:
        raise IllegalTransitionError(
            f"Cannot switch step from {result.mode.value} to {target.value} mode."
        )
    result.mode = target


def error_content(message: str) -> str:
    return f"**Error:** {message}"


class StepStore(ExecutionContextStore, Protocol):
    def get_workflow(self, workflow_id: str, *, user_id: Optional[str] = None) -> Optional[Workflow]: ...

    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry: ...


@dataclass
class StepRun:
    """A step that has passed the gate and is marked ``generating``."""

    workflow: Workflow
    index: int
    user_input: str
    actor: Optional[str] = None
    username: Optional[str] = None
    generation_id: str = ""

    @property
    def workflow_id(self) -> str:
        return self.workflow.id


class StepStateMachine:
    def __init__(
        self,
        store: StepStore,
        relay: ProxyRelay,
        memory: ConversationMemory,
        *,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.relay = relay
        self.memory = memory
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # store access
    # ------------------------------------------------------------------

    def _load_workflow(self, workflow_id: str, user_id: Optional[str]) -> Workflow:
        workflow = self.store.get_workflow(workflow_id, user_id=user_id)
        if workflow is None:
            raise NotFoundError("Workflow not found.", detail={"workflow_id": workflow_id})
        return workflow

    def _context(self, workflow_id: str) -> ExecutionContext:
        try:
            return self.store.get_execution_context(workflow_id)
        except RecordNotFound as exc:
            raise NotFoundError("Workflow not found.", detail=exc.detail) from exc

    def _persist(self, workflow_id: str, context: ExecutionContext) -> None:
        try:
            self.store.replace_execution_context(workflow_id, context)
        except RecordNotFound as exc:
            raise NotFoundError("Workflow not found.", detail=exc.detail) from exc
        except Exception as exc:
            logger.error("step_state_persist_failed", workflow_id=workflow_id, error=str(exc))
            raise PersistenceError("Failed to save workflow state.") from exc
        logger.debug(
            "step_state_persisted",
            workflow_id=workflow_id,
            current_step_index=context.current_step_index,
        )

    @staticmethod
    def _result(context: ExecutionContext, index: int) -> StepResult:
        if index < 0 or index >= len(context.results):
            raise NotFoundError(f"Step {index} does not exist.")
        return context.results[index]

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------

    def claim_step(
        self,
        workflow_id: str,
        index: int,
        user_input: str = "",
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> StepRun:
        """Pass the generation gate and checkpoint ``generating`` to the store."""
        workflow = self._load_workflow(workflow_id, user_id)
        context = self._context(workflow_id)
        result = self._result(context, index)
        if index != context.current_step_index:
            raise StepConflictError(
                f"Step {index} is not the current step ({context.current_step_index})."
            )
        if result.status != StepStatus.PENDING:
            raise StepConflictError(
                f"Step {index} is {result.status.value}; only pending steps can be generated."
            )
        previous = transition_status(result, StepStatus.GENERATING)
        result.user_input = user_input
        result.content = ""
        result.mode = StepMode.VIEW
        result.generation_id = uuid.uuid4().hex
        result.claimed_at = self._clock()
        self._persist(workflow_id, context)
        log_step_transition(workflow_id, index, previous.value, StepStatus.GENERATING.value, logger)
        workflow.execution_context = context
        return StepRun(
            workflow=workflow,
            index=index,
            user_input=user_input,
            actor=user_id,
            username=username,
            generation_id=result.generation_id,
        )

    def _is_live(self, result: StepResult) -> bool:
        """A generating step whose claim is younger than ``stale_after_seconds``."""
        if result.status != StepStatus.GENERATING:
            return False
        return self._clock() - result.claimed_at < self.stale_after_seconds

    def _ensure_not_live(self, context: ExecutionContext, from_index: int) -> None:
        for offset, result in enumerate(context.results[from_index:]):
            if self._is_live(result):
                raise StepConflictError(
                    f"Step {from_index + offset} is still generating."
                )

    def _still_generating(self, run: StepRun) -> Optional[ExecutionContext]:
        context = self._context(run.workflow_id)
        if run.index < len(context.results):
            result = context.results[run.index]
            if (
                result.status == StepStatus.GENERATING
                and result.generation_id == run.generation_id
            ):
                return context
        logger.warning(
            "step_result_discarded",
            workflow_id=run.workflow_id,
            step_index=run.index,
        )
        return None

    def _store_summary(self, run: StepRun, update: SummaryUpdate) -> bool:
        context = self._still_generating(run)
        if context is None:
            return False
        context.summary = update.summary
        context.summary_through = update.through
        self._persist(run.workflow_id, context)
        return True

    def _finish(self, run: StepRun, content: str) -> None:
        context = self._still_generating(run)
        if context is None:
            return
        result = context.results[run.index]
        transition_status(result, StepStatus.SUCCESS)
        result.content = content
        context.current_step_index = run.index + 1
        self._persist(run.workflow_id, context)
        log_step_transition(
            run.workflow_id, run.index, StepStatus.GENERATING.value, StepStatus.SUCCESS.value, logger
        )

    def _fail(self, run: StepRun, action: str, message: str, model_key: Optional[str]) -> None:
        context = self._still_generating(run)
        if context is None:
            return
        result = context.results[run.index]
        transition_status(result, StepStatus.ERROR)
        result.content = error_content(message)
        self._persist(run.workflow_id, context)
        log_step_transition(
            run.workflow_id, run.index, StepStatus.GENERATING.value, StepStatus.ERROR.value, logger
        )
        entry = ErrorLogEntry(
            action_type=action,
            error_message=message,
            actor=run.actor,
            username=run.username,
            workflow_id=run.workflow_id,
            step_index=run.index,
            context={"templateName": run.workflow.template_name, "model": model_key},
        )
        try:
            self.store.append_error_log(entry)
        except Exception as exc:
            logger.error("error_log_failed", workflow_id=run.workflow_id, error=str(exc))

    def _step_model_key(self, workflow: Workflow, index: int) -> Optional[str]:
        config = workflow.template_config
        steps = config.get("steps") or []
        step = steps[index] if index < len(steps) else {}
        return step.get("model") or config.get("model")

    async def run(self, run: StepRun) -> AsyncIterator[str]:
        """Generate a claimed step, yielding text deltas as they arrive.

        Provider and configuration failures end the step in ``error`` and are
        not raised; store failures are.
        """
        workflow = run.workflow
        model_key = self._step_model_key(workflow, run.index)
        action = ACTION_SUMMARIZE
        pieces = []
        finished = False
        try:
            context = self._context(run.workflow_id)
            plan = await self.memory.plan(
                workflow,
                context,
                run.index,
                run.user_input,
                actor=run.actor,
                username=run.username,
            )
            if plan.summary_update is not None and not self._store_summary(
                run, plan.summary_update
            ):
                finished = True
                return

            action = ACTION_GENERATE
            if not model_key:
                raise ConfigurationError(f"No model configured for step {run.index}.")
            model = resolve_model(model_key)
            request = CanonicalRequest(
                provider=model.provider,
                model_id=model.model_id,
                messages=plan.messages,
                global_instruction=workflow.template_config.get("globalInstruction"),
                stream=model.stream,
            )
            metadata = LoggingMetadata(
                actor=run.actor,
                username=run.username,
                workflow_id=run.workflow_id,
                template_name=workflow.template_name,
                step_index=run.index,
                prompt_details=plan.prompt_details,
            )
            if request.stream:
                deltas = self.relay.stream_text(request, model.destination(), metadata)
                try:
                    async for delta in deltas:
                        pieces.append(delta)
                        yield delta
                finally:
                    await deltas.aclose()
            else:
                text = await self.relay.generate_text(request, model.destination(), metadata)
                pieces.append(text)
                if text:
                    yield text
            finished = True
            self._finish(run, "".join(pieces))
        except (PersistenceError, NotFoundError):
            finished = True
            raise
        except ServiceError as exc:
            finished = True
            logger.warning(
                "step_generation_failed",
                workflow_id=run.workflow_id,
                step_index=run.index,
                action=action,
                error=exc.message,
            )
            self._fail(run, action, exc.message, model_key)
        except Exception as exc:
            finished = True
            logger.exception(
                "step_generation_crashed", workflow_id=run.workflow_id, step_index=run.index
            )
            self._fail(run, action, str(exc) or exc.__class__.__name__, model_key)
            raise
        finally:
            if not finished:
                # Consumer went away mid-stream
                self._fail(run, action, INTERRUPTED_MESSAGE, model_key)

    async def start_step(
        self,
        workflow_id: str,
        index: int,
        user_input: str = "",
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Workflow:
        run = self.claim_step(
            workflow_id, index, user_input, user_id=user_id, username=username
        )
        return await self.drain(run, user_id=user_id)

    async def drain(self, run: StepRun, *, user_id: Optional[str] = None) -> Workflow:
        async for _ in self.run(run):
            pass
        return self._load_workflow(run.workflow_id, user_id)

    def claim_rerun(
        self,
        workflow_id: str,
        index: int,
        allowed: Iterable[StepStatus],
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> StepRun:
        """Invalidate ``index`` onward and claim it again with its previous input."""
        self._load_workflow(workflow_id, user_id)
        context = self._context(workflow_id)
        result = self._result(context, index)
        allowed = frozenset(allowed)
        if result.status not in allowed:
            raise StepConflictError(
                f"Step {index} is {result.status.value}; expected one of "
                f"{', '.join(sorted(s.value for s in allowed))}."
            )
        previous_input = result.user_input
        self.invalidate(workflow_id, index, user_id=user_id)
        return self.claim_step(
            workflow_id, index, previous_input, user_id=user_id, username=username
        )

    def claim_retry(self, workflow_id: str, index: int, **identity: Any) -> StepRun:
        # generating is only accepted once the claim is stale (a crashed run)
        return self.claim_rerun(
            workflow_id, index, (StepStatus.ERROR, StepStatus.GENERATING), **identity
        )

    def claim_regenerate(self, workflow_id: str, index: int, **identity: Any) -> StepRun:
        return self.claim_rerun(workflow_id, index, (StepStatus.SUCCESS,), **identity)

    async def retry(self, workflow_id: str, index: int, *, user_id: Optional[str] = None, username: Optional[str] = None) -> Workflow:
        run = self.claim_retry(workflow_id, index, user_id=user_id, username=username)
        return await self.drain(run, user_id=user_id)

    async def regenerate(self, workflow_id: str, index: int, *, user_id: Optional[str] = None, username: Optional[str] = None) -> Workflow:
        run = self.claim_regenerate(workflow_id, index, user_id=user_id, username=username)
        return await self.drain(run, user_id=user_id)

    # ------------------------------------------------------------------
    # editing and invalidation
    # ------------------------------------------------------------------

    def _toggle_mode(
        self, workflow_id: str, index: int, target: StepMode, user_id: Optional[str]
    ) -> Workflow:
        self._load_workflow(workflow_id, user_id)
        context = self._context(workflow_id)
        transition_mode(self._result(context, index), target)
        self._persist(workflow_id, context)
        return self._load_workflow(workflow_id, user_id)

    def begin_edit(self, workflow_id: str, index: int, *, user_id: Optional[str] = None) -> Workflow:
        return self._toggle_mode(workflow_id, index, StepMode.EDIT, user_id)

    def cancel_edit(self, workflow_id: str, index: int, *, user_id: Optional[str] = None) -> Workflow:
        return self._toggle_mode(workflow_id, index, StepMode.VIEW, user_id)

    def save_edit(
        self, workflow_id: str, index: int, content: str, *, user_id: Optional[str] = None
    ) -> Workflow:
        self._load_workflow(workflow_id, user_id)
        context = self._context(workflow_id)
        result = self._result(context, index)
        if result.mode != StepMode.EDIT:
            raise IllegalTransitionError(f"Step {index} is not being edited.")
        self._ensure_not_live(context, index + 1)
        result.content = content
        transition_mode(result, StepMode.VIEW)
        # the summary folded in the old content of this step
        self._drop_summary_from(context, index)
        self._persist(workflow_id, context)
        logger.info("step_edit_saved", workflow_id=workflow_id, step_index=index)

        context = self._context(workflow_id)
        self._reset_from(workflow_id, context, index + 1)
        self._persist(workflow_id, context)
        return self._load_workflow(workflow_id, user_id)

    def _reset_from(self, workflow_id: str, context: ExecutionContext, from_index: int) -> None:
        for offset, result in enumerate(context.results[from_index:]):
            previous = transition_status(result, StepStatus.PENDING)
            result.content = ""
            result.mode = StepMode.VIEW
            result.user_input = ""
            result.generation_id = ""
            result.claimed_at = 0.0
            if previous != StepStatus.PENDING:
                log_step_transition(
                    workflow_id, from_index + offset, previous.value, StepStatus.PENDING.value, logger
                )
        context.current_step_index = min(context.current_step_index, from_index)
        self._drop_summary_from(context, from_index)

    @staticmethod
    def _drop_summary_from(context: ExecutionContext, index: int) -> None:
        if context.summary_through >= index:
            context.summary = ""
            context.summary_through = -1

    def invalidate(
        self, workflow_id: str, from_index: int, *, user_id: Optional[str] = None
    ) -> Workflow:
        """Reset ``from_index`` and every later step to empty ``pending``."""
        self._load_workflow(workflow_id, user_id)
        context = self._context(workflow_id)
        self._result(context, from_index)
        if from_index > context.current_step_index:
            raise StepConflictError(
                f"Step {from_index} has not been reached yet "
                f"(current step is {context.current_step_index})."
            )
        self._ensure_not_live(context, from_index)
        self._reset_from(workflow_id, context, from_index)
        context.current_step_index = from_index
        self._persist(workflow_id, context)
        return self._load_workflow(workflow_id, user_id)
