from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import Response, StreamingResponse

from stepchain.api.schemas import (
    ApiKeysUpdateRequest,
    BookmarkRequest,
    CreateWorkflowRequest,
    GenerateStepRequest,
    ProxyRequest,
    SaveEditRequest,
)
from stepchain.logging import get_logger
from stepchain.service.catalog import catalog_payload
from stepchain.service.errors import (
    ConfigurationError,
    NotFoundError,
    ServiceError,
    TransportError,
    ValidationError,
)
from stepchain.service.memory import merge_same_role
from stepchain.service.providers import (
    ApiDestination,
    CanonicalRequest,
    ChatMessage,
    Provider,
)
from stepchain.service.relay import LoggingMetadata, RelayStream
from stepchain.service.runtime import Runtime, get_runtime
from stepchain.service.steps import StepRun
from stepchain.service.workflow import workflow_summary, workflow_to_dict
from stepchain.storage.common import PROVIDER_KEY_NAMES, mask_secret, serialize_error_log

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

SSE_MEDIA_TYPE = "text/event-stream"


@dataclass
class Identity:
    """Caller identity asserted by the upstream gateway."""

    user_id: str
    username: Optional[str] = None


async def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_username: Optional[str] = Header(None),
) -> Identity:
    if not x_user_id:
        raise ServiceError("Not authenticated.", status_code=401)
    return Identity(user_id=x_user_id, username=x_username or x_user_id)


def _page(items, total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "logs": items,
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def _sse(payload: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


# ----------------------------------------------------------------------------
# Relay
# ----------------------------------------------------------------------------


async def _relay_body(stream: RelayStream) -> AsyncIterator[bytes]:
    try:
        async for chunk in stream.iter_bytes():
            yield chunk
    except TransportError as exc:
        # headers are already out; ending the body is how the stream terminates
        logger.warning(
            "relay_stream_terminated", bytes_sent=stream.bytes_sent, error=exc.message
        )


@router.post("/llm/proxy")
async def llm_proxy(body: ProxyRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    if body.api_config is None or not body.api_config.path:
        raise ConfigurationError("API configuration is missing or invalid.")
    stream = body.api_config.stream is not False
    request = CanonicalRequest(
        provider=Provider.parse(body.provider),
        model_id=body.model_id,
        messages=merge_same_role(
            [ChatMessage.from_dict(m.model_dump()) for m in body.body.messages]
        ),
        global_instruction=body.global_instruction,
        stream=stream,
    )
    metadata = LoggingMetadata(
        actor=identity.user_id,
        username=identity.username,
        workflow_id=body.workflow_id,
        template_name=body.template_name,
        step_index=body.step_index,
        prompt_details=body.prompt_details,
    )
    prepared = runtime.relay.prepare(
        request, ApiDestination(path=body.api_config.path, stream=stream), metadata
    )
    if not stream:
        result = await runtime.relay.complete(prepared)
        return Response(
            content=result.body,
            status_code=result.status_code,
            media_type="application/json",
        )
    relay_stream = await runtime.relay.open(prepared)
    return StreamingResponse(
        _relay_body(relay_stream),
        status_code=relay_stream.status_code,
        media_type=SSE_MEDIA_TYPE,
    )


@router.get("/models")
async def list_models(identity: Identity = Depends(get_identity)):
    return catalog_payload()


# ----------------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------------


@router.get("/workflows")
async def list_workflows(identity: Identity = Depends(get_identity)):
    workflows = get_runtime().workflows.list(identity.user_id)
    return [workflow_summary(wf) for wf in workflows]


@router.get("/workflows/bookmarked")
async def list_bookmarked_workflows(identity: Identity = Depends(get_identity)):
    workflows = get_runtime().workflows.list(identity.user_id, bookmarked_only=True)
    return [workflow_summary(wf) for wf in workflows]


@router.post("/workflows", status_code=201)
async def create_workflow(
    body: CreateWorkflowRequest, identity: Identity = Depends(get_identity)
):
    workflow = get_runtime().workflows.create(
        identity.user_id, body.title, body.template_snapshot, username=identity.username
    )
    return {
        "id": workflow.id,
        "execution_context": workflow.execution_context.to_dict(),
    }


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, identity: Identity = Depends(get_identity)):
    return workflow_to_dict(get_runtime().workflows.get(workflow_id, identity.user_id))


@router.get("/workflows/{workflow_id}/export")
async def export_workflow(workflow_id: str, identity: Identity = Depends(get_identity)):
    return get_runtime().workflows.export(workflow_id, identity.user_id)


@router.put("/workflows/{workflow_id}/bookmark")
async def bookmark_workflow(
    workflow_id: str, body: BookmarkRequest, identity: Identity = Depends(get_identity)
):
    get_runtime().workflows.bookmark(workflow_id, identity.user_id, body.bookmark_title)
    return {"message": "Workflow bookmarked successfully"}


@router.delete("/workflows/{workflow_id}/bookmark")
async def remove_workflow_bookmark(
    workflow_id: str, identity: Identity = Depends(get_identity)
):
    get_runtime().workflows.remove_bookmark(workflow_id, identity.user_id)
    return {"message": "Bookmark removed successfully"}


# ----------------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------------


async def _step_events(runtime: Runtime, run: StepRun) -> AsyncIterator[bytes]:
    try:
        async for delta in runtime.steps.run(run):
            yield _sse({"delta": delta})
    except ServiceError as exc:
        yield _sse({"error": exc.message})
        return
    context = runtime.store.get_execution_context(run.workflow_id)
    yield _sse(
        {
            "done": True,
            "stepIndex": run.index,
            "result": context.results[run.index].to_dict(),
            "currentStepIndex": context.current_step_index,
        }
    )


async def _respond_run(runtime: Runtime, run: StepRun, stream: bool, identity: Identity):
    if stream:
        return StreamingResponse(_step_events(runtime, run), media_type=SSE_MEDIA_TYPE)
    workflow = await runtime.steps.drain(run, user_id=identity.user_id)
    return workflow_to_dict(workflow)


@router.post("/workflows/{workflow_id}/steps/{index}/generate")
async def generate_step(
    workflow_id: str,
    index: int,
    body: GenerateStepRequest,
    stream: bool = Query(False),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    run = runtime.steps.claim_step(
        workflow_id,
        index,
        body.user_input,
        user_id=identity.user_id,
        username=identity.username,
    )
    return await _respond_run(runtime, run, stream, identity)


@router.post("/workflows/{workflow_id}/steps/{index}/retry")
async def retry_step(
    workflow_id: str,
    index: int,
    stream: bool = Query(False),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    run = runtime.steps.claim_retry(
        workflow_id, index, user_id=identity.user_id, username=identity.username
    )
    return await _respond_run(runtime, run, stream, identity)


@router.post("/workflows/{workflow_id}/steps/{index}/regenerate")
async def regenerate_step(
    workflow_id: str,
    index: int,
    stream: bool = Query(False),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    run = runtime.steps.claim_regenerate(
        workflow_id, index, user_id=identity.user_id, username=identity.username
    )
    return await _respond_run(runtime, run, stream, identity)


@router.post("/workflows/{workflow_id}/steps/{index}/edit")
async def begin_step_edit(
    workflow_id: str, index: int, identity: Identity = Depends(get_identity)
):
    workflow = get_runtime().steps.begin_edit(workflow_id, index, user_id=identity.user_id)
    return workflow_to_dict(workflow)


@router.post("/workflows/{workflow_id}/steps/{index}/edit/cancel")
async def cancel_step_edit(
    workflow_id: str, index: int, identity: Identity = Depends(get_identity)
):
    workflow = get_runtime().steps.cancel_edit(workflow_id, index, user_id=identity.user_id)
    return workflow_to_dict(workflow)


@router.post("/workflows/{workflow_id}/steps/{index}/edit/save")
async def save_step_edit(
    workflow_id: str,
    index: int,
    body: SaveEditRequest,
    identity: Identity = Depends(get_identity),
):
    workflow = get_runtime().steps.save_edit(
        workflow_id, index, body.content, user_id=identity.user_id
    )
    return workflow_to_dict(workflow)


@router.post("/workflows/{workflow_id}/steps/{index}/invalidate")
async def invalidate_steps(
    workflow_id: str, index: int, identity: Identity = Depends(get_identity)
):
    workflow = get_runtime().steps.invalidate(workflow_id, index, user_id=identity.user_id)
    return workflow_to_dict(workflow)


# ----------------------------------------------------------------------------
# Logs
# ----------------------------------------------------------------------------


@router.get("/logs/llm")
async def list_llm_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    identity: Identity = Depends(get_identity),
):
    records, total = get_runtime().store.list_interactions(page=page, limit=limit)
    items = [
        {
            "id": r.id,
            "timestamp": r.timestamp.isoformat(),
            "username": r.username,
            "template_name": r.template_name,
            "step_index": r.step_index,
            "provider": r.provider,
            "model_id": r.model_id,
            "is_success": r.success,
        }
        for r in records
    ]
    return _page(items, total, page, limit)


@router.get("/logs/llm/{record_id}")
async def get_llm_log(record_id: int, identity: Identity = Depends(get_identity)):
    record = get_runtime().store.get_interaction(record_id)
    if record is None:
        raise NotFoundError("Log not found.")
    return {
        "id": record.id,
        "provider": record.provider,
        "model_id": record.model_id,
        "workflow_id": record.workflow_id,
        "step_index": record.step_index,
        "request_payload": record.request_payload,
        "response_payload": record.response_payload,
        "error_message": record.error_message,
        "is_success": record.success,
    }


@router.get("/logs/errors")
async def list_error_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    identity: Identity = Depends(get_identity),
):
    entries, total = get_runtime().store.list_error_logs(page=page, limit=limit)
    return _page([serialize_error_log(e) for e in entries], total, page, limit)


# ----------------------------------------------------------------------------
# Provider keys
# ----------------------------------------------------------------------------


@router.get("/settings/keys")
async def get_api_keys(identity: Identity = Depends(get_identity)):
    stored = get_runtime().store.get_api_keys()
    return {name: mask_secret(stored.get(name)) for name in PROVIDER_KEY_NAMES}


@router.put("/settings/keys")
async def update_api_keys(
    body: ApiKeysUpdateRequest, identity: Identity = Depends(get_identity)
):
    values = body.provided()
    if not values:
        raise ValidationError("No valid API keys provided to update.")
    runtime = get_runtime()
    updated = runtime.store.set_api_keys(values)
    runtime.credentials.invalidate()
    logger.info("api_keys_updated", username=identity.username, keys=updated)
    return {"message": "API keys saved successfully"}
