from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from redis import Redis

from stepchain.logging import get_logger
from stepchain.storage.common import (
    PROVIDER_KEY_NAMES,
    build_settings_cipher,
    decrypt_secret,
    deserialize_error_log,
    deserialize_interaction,
    deserialize_workflow,
    encrypt_secret,
    serialize_error_log,
    serialize_interaction,
    serialize_workflow,
)
from stepchain.storage.errors import RecordNotFound
from stepchain.storage.models import (
    ErrorLogEntry,
    ExecutionContext,
    InteractionRecord,
    Workflow,
)


class RedisStore:
    """Redis-backed store sharing the MemoryStore interface.

    Values are JSON documents. The client is synchronous so a read followed by
    a write in the step state machine has no suspension point between them.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        fs_root: str = "/tmp/stepchain",
        encryption_key: str | None = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Redis | None = None,
    ):
        self.logger = get_logger(__name__)
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        root = Path(fs_root)
        os.makedirs(root, exist_ok=True)
        self._cipher = build_settings_cipher(encryption_key, root)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _score(ts: datetime) -> float:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.timestamp()

    def _load_json(self, key: str) -> Optional[dict]:
        raw = self.client.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self.logger.warning("redis_corrupt_entry", key=key)
            return None

    # ------------------------------------------------------------------
    # workflows
    # ------------------------------------------------------------------

    def _save_workflow(self, workflow: Workflow) -> None:
        pipe = self.client.pipeline()
        pipe.set(f"workflow:{workflow.id}", json.dumps(serialize_workflow(workflow)))
        pipe.zadd(
            f"workflows:user:{workflow.user_id}",
            {workflow.id: self._score(workflow.updated_at)},
        )
        if workflow.is_bookmarked:
            pipe.sadd(f"workflows:bookmarked:{workflow.user_id}", workflow.id)
        else:
            pipe.srem(f"workflows:bookmarked:{workflow.user_id}", workflow.id)
        pipe.execute()

    def _require_workflow(self, workflow_id: str) -> Workflow:
        data = self._load_json(f"workflow:{workflow_id}")
        if not data:
            raise RecordNotFound("workflow not found", {"workflow_id": workflow_id})
        return deserialize_workflow(data)

    def create_workflow(self, workflow: Workflow) -> Workflow:
        self._save_workflow(workflow)
        return workflow

    def get_workflow(
        self, workflow_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Workflow]:
        data = self._load_json(f"workflow:{workflow_id}")
        if not data:
            return None
        workflow = deserialize_workflow(data)
        if user_id and workflow.user_id != user_id:
            return None
        return workflow

    def list_workflows(
        self, user_id: str, *, bookmarked_only: bool = False
    ) -> List[Workflow]:
        ids = self.client.zrevrange(f"workflows:user:{user_id}", 0, -1)
        if bookmarked_only:
            marked = self.client.smembers(f"workflows:bookmarked:{user_id}")
            ids = [wf_id for wf_id in ids if wf_id in marked]
        items: List[Workflow] = []
        for wf_id in ids:
            data = self._load_json(f"workflow:{wf_id}")
            if data:
                items.append(deserialize_workflow(data))
        return items

    def set_bookmark(
        self, workflow_id: str, user_id: str, bookmark_title: Optional[str]
    ) -> Workflow:
        workflow = self._require_workflow(workflow_id)
        if workflow.user_id != user_id:
            raise RecordNotFound("workflow not found", {"workflow_id": workflow_id})
        workflow.is_bookmarked = bookmark_title is not None
        workflow.bookmark_title = bookmark_title
        workflow.updated_at = datetime.now(timezone.utc)
        self._save_workflow(workflow)
        return workflow

    def get_execution_context(self, workflow_id: str) -> ExecutionContext:
        return self._require_workflow(workflow_id).execution_context

    def replace_execution_context(
        self, workflow_id: str, context: ExecutionContext
    ) -> None:
        workflow = self._require_workflow(workflow_id)
        workflow.execution_context = context
        workflow.updated_at = datetime.now(timezone.utc)
        self._save_workflow(workflow)

    # ------------------------------------------------------------------
    # audit + error logs
    # ------------------------------------------------------------------

    def _append_log(self, kind: str, payload_fn, item):
        item.id = int(self.client.incr(f"seq:{kind}"))
        pipe = self.client.pipeline()
        pipe.set(f"{kind}:{item.id}", json.dumps(payload_fn(item)))
        pipe.zadd(f"{kind}:index", {str(item.id): item.id})
        pipe.execute()
        return item

    def _list_log(self, kind: str, loader, page: int, limit: int):
        page = max(1, page)
        limit = max(1, limit)
        total = int(self.client.zcard(f"{kind}:index"))
        start = (page - 1) * limit
        ids = self.client.zrevrange(f"{kind}:index", start, start + limit - 1)
        items = []
        for item_id in ids:
            data = self._load_json(f"{kind}:{item_id}")
            if data:
                items.append(loader(data))
        return items, total

    def append_interaction(self, record: InteractionRecord) -> InteractionRecord:
        return self._append_log("interaction", serialize_interaction, record)

    def list_interactions(
        self, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[InteractionRecord], int]:
        return self._list_log("interaction", deserialize_interaction, page, limit)

    def get_interaction(self, record_id: int) -> Optional[InteractionRecord]:
        data = self._load_json(f"interaction:{record_id}")
        return deserialize_interaction(data) if data else None

    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        return self._append_log("errorlog", serialize_error_log, entry)

    def list_error_logs(
        self, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[ErrorLogEntry], int]:
        return self._list_log("errorlog", deserialize_error_log, page, limit)

    # ------------------------------------------------------------------
    # provider keys
    # ------------------------------------------------------------------

    def get_api_keys(self) -> Dict[str, str]:
        stored = self.client.hgetall("settings:api_keys") or {}
        keys: Dict[str, str] = {}
        for name, token in stored.items():
            value = decrypt_secret(self._cipher, token)
            if value is None:
                self.logger.warning("api_key_decrypt_failed", key_name=name)
                continue
            keys[name] = value
        return keys

    def set_api_keys(self, values: Dict[str, str]) -> List[str]:
        updates = {
            name: encrypt_secret(self._cipher, value)
            for name, value in values.items()
            if name in PROVIDER_KEY_NAMES and value
        }
        if updates:
            self.client.hset("settings:api_keys", mapping=updates)
        return list(updates)
