"""Conversation memory: sliding window of step exchanges plus a rolling summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stepchain.logging import get_logger
from stepchain.service.catalog import ModelSpec, default_model, find_model
from stepchain.service.errors import ConfigurationError
from stepchain.service.providers import CanonicalRequest, ChatMessage, Role
from stepchain.service.relay import LoggingMetadata, ProxyRelay
from stepchain.storage.models import ExecutionContext, Workflow

logger = get_logger(__name__)

SUMMARY_INSTRUCTION = "You are a helpful assistant that summarizes conversations."
SUMMARY_REQUEST_PREFIX = (
    "Summarize the following conversation concisely, keeping only the key points:\n\n"
)
SUMMARY_TEMPLATE_PREFIX = "[Summary] "


def summary_preamble(summary: str) -> str:
    return f"--- Previous conversation summary ---\n{summary}\n--- End of summary ---"


def final_user_prompt(step_prompt: Optional[str], user_input: str) -> str:
    return f"{step_prompt or ''}\n\n{user_input}".strip()


def merge_same_role(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Join consecutive entries with the same role so roles alternate."""
    merged: List[ChatMessage] = []
    for message in messages:
        if merged and merged[-1].role == message.role:
            previous = merged.pop()
            message = ChatMessage(previous.role, f"{previous.content}\n\n{message.content}")
        merged.append(message)
    return merged


def resolve_model(model_key: Optional[str]) -> ModelSpec:
    if not model_key:
        return default_model()
    spec = find_model(model_key)
    if spec is None:
        raise ConfigurationError(f"Model configuration ({model_key}) not found.")
    return spec


@dataclass
class SummaryUpdate:
    summary: str
    through: int


@dataclass
class PromptPlan:
    """Messages for one step call plus the provenance recorded in the audit log."""

    messages: List[ChatMessage]
    prompt_details: Dict[str, Any]
    summary_update: Optional[SummaryUpdate] = None
    history_range: tuple[int, int] = field(default=(0, 0))


class ConversationMemory:
    """Builds the bounded message list for a step.

    For step ``i`` with window ``W``: steps ``i-W .. i-1`` are replayed
    verbatim; steps ``0 .. i-W`` are folded into the rolling summary, which is
    recomputed through the relay only when it does not already cover them.
    """

    def __init__(self, relay: ProxyRelay, *, window_size: int = 2) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.relay = relay
        self.window_size = window_size

    @staticmethod
    def _exchanges(context: ExecutionContext, start: int, end: int) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        for result in context.results[start:end]:
            if result.user_input:
                messages.append(ChatMessage(Role.USER, result.user_input))
            if result.content:
                messages.append(ChatMessage(Role.ASSISTANT, result.content))
        return messages

    async def summarize(
        self,
        workflow: Workflow,
        exchanges: List[ChatMessage],
        *,
        actor: Optional[str] = None,
        username: Optional[str] = None,
    ) -> str:
        """Issue the non-streamed summarization call for ``exchanges``."""
        if not exchanges:
            return ""
        model = resolve_model(workflow.template_config.get("model"))
        prompt = SUMMARY_REQUEST_PREFIX + "\n".join(
            f"[{m.role.value}]: {m.content}" for m in exchanges
        )
        request = CanonicalRequest(
            provider=model.provider,
            model_id=model.model_id,
            messages=[ChatMessage(Role.USER, prompt)],
            global_instruction=SUMMARY_INSTRUCTION,
            stream=False,
        )
        metadata = LoggingMetadata(
            actor=actor,
            username=username,
            workflow_id=workflow.id,
            template_name=SUMMARY_TEMPLATE_PREFIX + workflow.template_name,
            step_index=None,
        )
        summary = await self.relay.generate_text(
            request, model.destination(stream=False), metadata
        )
        logger.info(
            "conversation_summarized",
            workflow_id=workflow.id,
            exchanges=len(exchanges),
            summary_length=len(summary),
        )
        return summary

    async def plan(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        index: int,
        user_input: str,
        *,
        actor: Optional[str] = None,
        username: Optional[str] = None,
    ) -> PromptPlan:
        steps = workflow.template_config.get("steps") or []
        step_prompt = steps[index].get("prompt") if index < len(steps) else None
        window = self.window_size

        summary = ""
        update: Optional[SummaryUpdate] = None
        if index >= window:
            summary_end = index - window
            summary = context.summary
            if context.summary_through < summary_end:
                exchanges = self._exchanges(context, 0, summary_end + 1)
                if exchanges:
                    summary = await self.summarize(
                        workflow, exchanges, actor=actor, username=username
                    )
                    update = SummaryUpdate(summary=summary, through=summary_end)
                else:
                    logger.debug(
                        "summary_skipped_empty_range",
                        workflow_id=workflow.id,
                        through=summary_end,
                    )

        messages: List[ChatMessage] = []
        if summary:
            messages.append(ChatMessage(Role.USER, summary_preamble(summary)))
        window_start = max(0, index - window)
        messages.extend(self._exchanges(context, window_start, index))
        prompt = final_user_prompt(step_prompt, user_input)
        messages.append(ChatMessage(Role.USER, prompt))
        messages = merge_same_role(messages)

        history = "\n\n".join(
            f"[{m.role.value.upper()}]\n{m.content}" for m in messages[:-1]
        )
        details = {
            "template": step_prompt or "N/A",
            "summary": summary,
            "history": history,
            "variables": {"currentUserInput": user_input},
            "finalUserPrompt": prompt,
        }
        return PromptPlan(
            messages=messages,
            prompt_details=details,
            summary_update=update,
            history_range=(window_start, index),
        )
