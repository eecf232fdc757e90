from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from stepchain.logging import get_logger
from stepchain.storage.common import (
    PROVIDER_KEY_NAMES,
    build_settings_cipher,
    decrypt_secret,
    deserialize_error_log,
    deserialize_interaction,
    deserialize_workflow,
    encrypt_secret,
    paginate,
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


class MemoryStore:
    """In-process store persisted to a JSON state file under ``fs_root``.

    Reads and writes hand out deep copies so callers always read-modify-write
    whole values, the same contract a remote key-value store gives.
    """

    def __init__(
        self, fs_root: str = "/tmp/stepchain", *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.workflows: Dict[str, Workflow] = {}
        self.interactions: List[InteractionRecord] = []
        self.error_logs: List[ErrorLogEntry] = []
        # Provider keys, Fernet-encrypted
        self.settings: Dict[str, str] = {}
        self._interaction_seq: int = 1
        self._error_log_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so mutators can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_settings_cipher(encryption_key, self.fs_root)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "stepchain_store.json"

    def _next_id(self, counter: str) -> int:
        with self._seq_lock:
            value = getattr(self, counter)
            setattr(self, counter, value + 1)
            return value

    # ------------------------------------------------------------------
    # workflows
    # ------------------------------------------------------------------

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._data_lock:
            self.workflows[workflow.id] = copy.deepcopy(workflow)
            self._persist_state()
        return copy.deepcopy(workflow)

    def get_workflow(
        self, workflow_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Workflow]:
        workflow = self.workflows.get(workflow_id)
        if not workflow:
            return None
        if user_id and workflow.user_id != user_id:
            return None
        return copy.deepcopy(workflow)

    def list_workflows(
        self, user_id: str, *, bookmarked_only: bool = False
    ) -> List[Workflow]:
        with self._data_lock:
            items = [
                wf
                for wf in self.workflows.values()
                if wf.user_id == user_id and (wf.is_bookmarked or not bookmarked_only)
            ]
        items.sort(key=lambda wf: wf.updated_at, reverse=True)
        return [copy.deepcopy(wf) for wf in items]

    def set_bookmark(
        self, workflow_id: str, user_id: str, bookmark_title: Optional[str]
    ) -> Workflow:
        with self._data_lock:
            workflow = self.workflows.get(workflow_id)
            if not workflow or workflow.user_id != user_id:
                raise RecordNotFound("workflow not found", {"workflow_id": workflow_id})
            workflow.is_bookmarked = bookmark_title is not None
            workflow.bookmark_title = bookmark_title
            workflow.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return copy.deepcopy(workflow)

    def get_execution_context(self, workflow_id: str) -> ExecutionContext:
        workflow = self.workflows.get(workflow_id)
        if not workflow:
            raise RecordNotFound("workflow not found", {"workflow_id": workflow_id})
        return copy.deepcopy(workflow.execution_context)

    def replace_execution_context(
        self, workflow_id: str, context: ExecutionContext
    ) -> None:
        with self._data_lock:
            workflow = self.workflows.get(workflow_id)
            if not workflow:
                raise RecordNotFound("workflow not found", {"workflow_id": workflow_id})
            workflow.execution_context = copy.deepcopy(context)
            workflow.updated_at = datetime.now(timezone.utc)
            self._persist_state()

    # ------------------------------------------------------------------
    # audit + error logs
    # ------------------------------------------------------------------

    def append_interaction(self, record: InteractionRecord) -> InteractionRecord:
        with self._data_lock:
            stored = copy.deepcopy(record)
            stored.id = self._next_id("_interaction_seq")
            self.interactions.append(stored)
            self._persist_state()
            return copy.deepcopy(stored)

    def list_interactions(
        self, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[InteractionRecord], int]:
        newest_first = sorted(self.interactions, key=lambda r: r.id or 0, reverse=True)
        return [copy.deepcopy(r) for r in paginate(newest_first, page, limit)], len(newest_first)

    def get_interaction(self, record_id: int) -> Optional[InteractionRecord]:
        for record in self.interactions:
            if record.id == record_id:
                return copy.deepcopy(record)
        return None

    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        with self._data_lock:
            stored = copy.deepcopy(entry)
            stored.id = self._next_id("_error_log_seq")
            self.error_logs.append(stored)
            self._persist_state()
            return copy.deepcopy(stored)

    def list_error_logs(
        self, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[ErrorLogEntry], int]:
        newest_first = sorted(self.error_logs, key=lambda e: e.id or 0, reverse=True)
        return [copy.deepcopy(e) for e in paginate(newest_first, page, limit)], len(newest_first)

    # ------------------------------------------------------------------
    # provider keys
    # ------------------------------------------------------------------

    def get_api_keys(self) -> Dict[str, str]:
        keys: Dict[str, str] = {}
        for name, token in self.settings.items():
            value = decrypt_secret(self._cipher, token)
            if value is None:
                self.logger.warning("api_key_decrypt_failed", key_name=name)
                continue
            keys[name] = value
        return keys

    def set_api_keys(self, values: Dict[str, str]) -> List[str]:
        updated: List[str] = []
        with self._data_lock:
            for name, value in values.items():
                if name not in PROVIDER_KEY_NAMES or not value:
                    continue
                self.settings[name] = encrypt_secret(self._cipher, value)
                updated.append(name)
            if updated:
                self._persist_state()
        return updated

    # ------------------------------------------------------------------
    # state file
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "workflows": [serialize_workflow(wf) for wf in self.workflows.values()],
            "interactions": [serialize_interaction(r) for r in self.interactions],
            "error_logs": [serialize_error_log(e) for e in self.error_logs],
            "settings": self.settings,
            "interaction_seq": self._interaction_seq,
            "error_log_seq": self._error_log_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.workflows = {
            wf["id"]: deserialize_workflow(wf) for wf in data.get("workflows", [])
        }
        self.interactions = [
            deserialize_interaction(r) for r in data.get("interactions", [])
        ]
        self.error_logs = [deserialize_error_log(e) for e in data.get("error_logs", [])]
        self.settings = dict(data.get("settings", {}))
        self._interaction_seq = int(data.get("interaction_seq", len(self.interactions) + 1))
        self._error_log_seq = int(data.get("error_log_seq", len(self.error_logs) + 1))
        self.logger.info(
            "memory_store_state_loaded",
            workflows=len(self.workflows),
            interactions=len(self.interactions),
        )
        return True
