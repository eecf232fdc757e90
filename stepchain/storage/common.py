"""Common storage utilities shared between the memory and redis implementations.

Both backends keep workflows, interaction records and error logs as JSON
documents, so serialization and secret handling live here to keep the two in
step.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from stepchain.storage.models import (
    ErrorLogEntry,
    ExecutionContext,
    InteractionRecord,
    Workflow,
)

# Setting keys under which provider credentials are stored
PROVIDER_KEY_NAMES = ("openai_api_key", "google_api_key", "anthropic_api_key")


class ExecutionContextStore(Protocol):
    """Keyed read/replace store for the execution-state blob."""

    def get_execution_context(self, workflow_id: str) -> ExecutionContext: ...

    def replace_execution_context(
        self, workflow_id: str, context: ExecutionContext
    ) -> None: ...


class AuditSink(Protocol):
    """Append-only sink for interaction records."""

    def append_interaction(self, record: InteractionRecord) -> InteractionRecord: ...


# ============================================================================
# SECRETS
# ============================================================================


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_settings_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the cipher used to keep provider keys encrypted at rest.

    Key material comes from the argument, then ``SETTINGS_ENCRYPTION_KEY``, then
    a generated secret persisted under ``fs_root``.
    """
    material = key_material or os.getenv("SETTINGS_ENCRYPTION_KEY")
    if not material:
        secret_path = fs_root / ".settings_key"
        try:
            if secret_path.exists():
                material = secret_path.read_text().strip()
        except OSError:
            material = None
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                secret_path.parent.mkdir(parents=True, exist_ok=True)
                secret_path.write_text(generated)
                os.chmod(secret_path, 0o600)
                material = generated
            except OSError as exc:
                raise RuntimeError("Unable to persist settings encryption key") from exc
    return Fernet(derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, value: str) -> str:
    return cipher.encrypt(value.encode()).decode()


def decrypt_secret(cipher: Fernet, token: str) -> Optional[str]:
    try:
        return cipher.decrypt(token.encode()).decode()
    except InvalidToken:
        return None


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    return f"****{value[-4:]}"


# ============================================================================
# SERIALIZATION
# ============================================================================


def _dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def serialize_workflow(workflow: Workflow) -> Dict[str, Any]:
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


def deserialize_workflow(data: Dict[str, Any]) -> Workflow:
    return Workflow(
        id=data["id"],
        user_id=data["user_id"],
        title=data.get("title") or "",
        template_snapshot=data.get("template_snapshot") or {},
        execution_context=ExecutionContext.from_dict(data.get("execution_context") or {}),
        is_bookmarked=bool(data.get("is_bookmarked", False)),
        bookmark_title=data.get("bookmark_title"),
        created_at=_dt(data.get("created_at")) or datetime.fromtimestamp(0),
        updated_at=_dt(data.get("updated_at")) or datetime.fromtimestamp(0),
    )


def serialize_interaction(record: InteractionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "timestamp": record.timestamp.isoformat(),
        "actor": record.actor,
        "username": record.username,
        "workflow_id": record.workflow_id,
        "template_name": record.template_name,
        "step_index": record.step_index,
        "provider": record.provider,
        "model_id": record.model_id,
        "request_payload": record.request_payload,
        "response_payload": record.response_payload,
        "success": record.success,
        "error_message": record.error_message,
    }


def deserialize_interaction(data: Dict[str, Any]) -> InteractionRecord:
    return InteractionRecord(
        id=data.get("id"),
        timestamp=_dt(data.get("timestamp")) or datetime.fromtimestamp(0),
        actor=data.get("actor"),
        username=data.get("username"),
        workflow_id=data.get("workflow_id"),
        template_name=data.get("template_name"),
        step_index=data.get("step_index"),
        provider=data.get("provider") or "",
        model_id=data.get("model_id") or "",
        request_payload=data.get("request_payload") or {},
        response_payload=data.get("response_payload"),
        success=bool(data.get("success")),
        error_message=data.get("error_message"),
    )


def serialize_error_log(entry: ErrorLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "actor": entry.actor,
        "username": entry.username,
        "action_type": entry.action_type,
        "workflow_id": entry.workflow_id,
        "step_index": entry.step_index,
        "error_message": entry.error_message,
        "context": entry.context,
    }


def deserialize_error_log(data: Dict[str, Any]) -> ErrorLogEntry:
    return ErrorLogEntry(
        id=data.get("id"),
        timestamp=_dt(data.get("timestamp")) or datetime.fromtimestamp(0),
        actor=data.get("actor"),
        username=data.get("username"),
        action_type=data.get("action_type") or "",
        workflow_id=data.get("workflow_id"),
        step_index=data.get("step_index"),
        error_message=data.get("error_message") or "",
        context=data.get("context"),
    )


def paginate(items: List[Any], page: int, limit: int) -> List[Any]:
    """Slice a newest-first list into one page (1-based)."""
    page = max(1, page)
    limit = max(1, limit)
    offset = (page - 1) * limit
    return items[offset : offset + limit]
