"""structlog setup shared by every stepchain module.

Each log line carries the request id of the HTTP call that produced it, and
provider credentials are masked before rendering. Google puts its key in the
query string, so URLs are scrubbed as well as credential-named fields.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("stepchain_request_id", default=None)

_CREDENTIAL_FIELDS = ("api_key", "apikey", "authorization", "credential", "secret", "password", "token")
_KEY_IN_QUERY = re.compile(r"([?&]key=)[^&\s]+")
_TRUTHY = {"1", "true", "yes", "on"}


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh uuid) to the current context and return it."""
    value = request_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _mask(value: str) -> str:
    return "****" + value[-4:] if len(value) > 4 else "****"


def _attach_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict


def _mask_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for name, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = name.lower().replace("-", "_")
        if any(marker in lowered for marker in _CREDENTIAL_FIELDS):
            event_dict[name] = _mask(value)
        elif "key=" in value:
            event_dict[name] = _KEY_IN_QUERY.sub(r"\1****", value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, console: bool = False) -> None:
    """(Re)configure structlog.

    ``console`` switches to the coloured development renderer and wins over
    ``json_output``.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _attach_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=console))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_step_transition(
    workflow_id: str,
    step_index: int,
    from_status: str,
    to_status: str,
    logger: Optional[Any] = None,
) -> None:
    """Emit one ``step_transition`` line for a step status change."""
    (logger or get_logger("stepchain.steps")).info(
        "step_transition",
        workflow_id=workflow_id,
        step_index=step_index,
        from_status=from_status,
        to_status=to_status,
    )
