"""Provider adapters: canonical chat request <-> provider wire format.

Everything here is pure. Adapters build the URL, headers and JSON body for one
upstream call and pull generated text back out of decoded provider events;
the relay owns all I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from stepchain.service.errors import ConfigurationError


class Provider(str, Enum):
    """Closed set of supported upstream providers."""

    OPENAI = "OpenAI"
    GOOGLE = "Google"
    ANTHROPIC = "Anthropic"

    @classmethod
    def parse(cls, value: Any) -> "Provider":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value.lower() == lowered:
                    return member
        raise ConfigurationError(f"Unsupported provider: {value}")

    @property
    def key_name(self) -> str:
        """Name of the settings entry holding this provider's API key."""
        return f"{self.value.lower()}_api_key"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        try:
            role = Role(str(data.get("role", "")).lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported message role: {data.get('role')}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ConfigurationError("Message content must be a string.")
        return cls(role=role, content=content)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class CanonicalRequest:
    """Provider-neutral generation request.

    ``messages`` must be non-empty and alternate user/assistant, optionally
    preceded by a single system entry.
    """

    provider: Provider
    model_id: str
    messages: List[ChatMessage]
    global_instruction: Optional[str] = None
    stream: bool = True

    def __post_init__(self) -> None:
        self.provider = Provider.parse(self.provider)
        if not self.model_id:
            raise ConfigurationError("modelId is required.")
        if not self.messages:
            raise ConfigurationError("At least one message is required.")
        previous: Optional[Role] = None
        for position, message in enumerate(self.messages):
            if message.role == Role.SYSTEM:
                if position != 0:
                    raise ConfigurationError(
                        "A system message is only allowed as the first entry."
                    )
                continue
            if message.role == previous:
                raise ConfigurationError("Message roles must alternate user/assistant.")
            previous = message.role

    def split_system(self) -> tuple[Optional[str], List[ChatMessage]]:
        """Combine ``global_instruction`` with a leading system message.

        Returns the instruction text (None when empty) and the remaining
        user/assistant messages.
        """
        parts: List[str] = []
        if self.global_instruction:
            parts.append(self.global_instruction)
        rest = list(self.messages)
        if rest and rest[0].role == Role.SYSTEM:
            if rest[0].content:
                parts.append(rest[0].content)
            rest = rest[1:]
        instruction = "\n\n".join(parts)
        return (instruction or None), rest


@dataclass(frozen=True)
class ApiDestination:
    """Endpoint path (relative to the provider host) and streaming flag."""

    path: str
    stream: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path.strip():
            raise ConfigurationError("API configuration is missing or invalid.")


@dataclass
class WireRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any] = field(default_factory=dict)


def _dig(obj: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None on any missing hop."""
    current = obj
    for hop in path:
        if isinstance(hop, int):
            if not isinstance(current, list) or len(current) <= hop:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[hop] if isinstance(hop, int) else current.get(hop)
        if current is None:
            return None
    return current


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


# Upstream bodies are relayed byte for byte, so they must arrive uncompressed
_BASE_HEADERS = {"Content-Type": "application/json", "Accept-Encoding": "identity"}


def _join_url(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


# ----------------------------------------------------------------------------
# Chunk extractors, one per variant. Each takes one decoded event and returns
# "" for anything that carries no generated text.
# ----------------------------------------------------------------------------


def extract_openai_delta(event: Any) -> str:
    return _text(_dig(event, "choices", 0, "delta", "content"))


def extract_google_delta(event: Any) -> str:
    return _text(_dig(event, "candidates", 0, "content", "parts", 0, "text"))


def extract_anthropic_delta(event: Any) -> str:
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return ""
    return _text(_dig(event, "delta", "text"))


class ProviderAdapter(Protocol):
    """Interface every provider variant implements."""

    provider: Provider

    def build_request(
        self, request: CanonicalRequest, destination: ApiDestination, credential: str
    ) -> WireRequest: ...

    def extract_delta(self, event: Any) -> str: ...

    def extract_text(self, payload: Any) -> str: ...


class OpenAIAdapter:
    """Variant A: chat-completions message array, instruction as a system message."""

    provider = Provider.OPENAI

    def __init__(self, base_url: str = "https://api.openai.com") -> None:
        self.base_url = base_url

    def build_request(
        self, request: CanonicalRequest, destination: ApiDestination, credential: str
    ) -> WireRequest:
        messages: List[Dict[str, str]] = []
        if request.global_instruction:
            messages.append({"role": "system", "content": request.global_instruction})
        messages.extend(m.to_dict() for m in request.messages)
        return WireRequest(
            url=_join_url(self.base_url, destination.path),
            headers={
                **_BASE_HEADERS,
                "Authorization": f"Bearer {credential}",
            },
            body={"model": request.model_id, "messages": messages, "stream": request.stream},
        )

    def extract_delta(self, event: Any) -> str:
        return extract_openai_delta(event)

    def extract_text(self, payload: Any) -> str:
        return _text(_dig(payload, "choices", 0, "message", "content"))


class GoogleAdapter:
    """Variant B: role-mapped ``contents`` with a separate system instruction."""

    provider = Provider.GOOGLE
    _ROLE_MAP = {Role.ASSISTANT: "model", Role.USER: "user"}

    def __init__(self, base_url: str = "https://generativelanguage.googleapis.com") -> None:
        self.base_url = base_url

    def build_request(
        self, request: CanonicalRequest, destination: ApiDestination, credential: str
    ) -> WireRequest:
        instruction, messages = request.split_system()
        body: Dict[str, Any] = {
            "contents": [
                {"role": self._ROLE_MAP[m.role], "parts": [{"text": m.content}]}
                for m in messages
            ]
        }
        if instruction:
            body["system_instruction"] = {"parts": [{"text": instruction}]}
        path = destination.path.replace("{modelId}", request.model_id)
        separator = "&" if "?" in path else "?"
        url = f"{_join_url(self.base_url, path)}{separator}key={quote(credential, safe='')}"
        if request.stream:
            url += "&alt=sse"
        return WireRequest(url=url, headers=dict(_BASE_HEADERS), body=body)

    def extract_delta(self, event: Any) -> str:
        return extract_google_delta(event)

    def extract_text(self, payload: Any) -> str:
        # Without alt=sse the streaming endpoint answers with a JSON array
        items = payload if isinstance(payload, list) else [payload]
        pieces: List[str] = []
        for item in items:
            parts = _dig(item, "candidates", 0, "content", "parts") or []
            pieces.extend(_text(_dig(part, "text")) for part in parts)
        return "".join(pieces)


class AnthropicAdapter:
    """Variant C: verbatim messages, top-level ``system`` and a token ceiling."""

    provider = Provider.ANTHROPIC

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com",
        *,
        api_version: str = "2023-06-01",
        max_tokens: int = 4096,
    ) -> None:
        self.base_url = base_url
        self.api_version = api_version
        self.max_tokens = max_tokens

    def build_request(
        self, request: CanonicalRequest, destination: ApiDestination, credential: str
    ) -> WireRequest:
        instruction, messages = request.split_system()
        body: Dict[str, Any] = {
            "model": request.model_id,
            "max_tokens": self.max_tokens,
            "messages": [m.to_dict() for m in messages],
            "stream": request.stream,
        }
        if instruction:
            body["system"] = instruction
        return WireRequest(
            url=_join_url(self.base_url, destination.path),
            headers={
                **_BASE_HEADERS,
                "x-api-key": credential,
                "anthropic-version": self.api_version,
            },
            body=body,
        )

    def extract_delta(self, event: Any) -> str:
        return extract_anthropic_delta(event)

    def extract_text(self, payload: Any) -> str:
        blocks = _dig(payload, "content") or []
        if not isinstance(blocks, list):
            return ""
        return "".join(
            _text(block.get("text"))
            for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )


def build_adapters(settings: Any = None) -> Dict[Provider, ProviderAdapter]:
    """Construct one adapter per provider, honouring configured hosts."""
    if settings is None:
        return {
            Provider.OPENAI: OpenAIAdapter(),
            Provider.GOOGLE: GoogleAdapter(),
            Provider.ANTHROPIC: AnthropicAdapter(),
        }
    return {
        Provider.OPENAI: OpenAIAdapter(settings.openai_base_url),
        Provider.GOOGLE: GoogleAdapter(settings.google_base_url),
        Provider.ANTHROPIC: AnthropicAdapter(
            settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            max_tokens=settings.anthropic_max_tokens,
        ),
    }


def get_adapter(
    provider: Any, adapters: Optional[Dict[Provider, ProviderAdapter]] = None
) -> ProviderAdapter:
    registry = adapters or build_adapters()
    resolved = Provider.parse(provider)
    try:
        return registry[resolved]
    except KeyError:
        raise ConfigurationError(f"Unsupported provider: {provider}")


__all__ = [
    "Provider",
    "Role",
    "ChatMessage",
    "CanonicalRequest",
    "ApiDestination",
    "WireRequest",
    "ProviderAdapter",
    "OpenAIAdapter",
    "GoogleAdapter",
    "AnthropicAdapter",
    "extract_openai_delta",
    "extract_google_delta",
    "extract_anthropic_delta",
    "build_adapters",
    "get_adapter",
]
