from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stepchain.service.providers import ApiDestination, Provider

OPENAI_CHAT_PATH = "/v1/chat/completions"
GOOGLE_GENERATE_PATH = "/v1beta/models/{modelId}:streamGenerateContent"
ANTHROPIC_MESSAGES_PATH = "/v1/messages"

_BODY_TYPES = {
    Provider.OPENAI: "messages",
    Provider.GOOGLE: "google",
    Provider.ANTHROPIC: "anthropic",
}


@dataclass(frozen=True)
class ModelSpec:
    """One selectable model and the endpoint it is served from."""

    provider: Provider
    key: str
    name: str
    model_id: str
    description: str
    path: str
    stream: bool = True

    @property
    def model_key(self) -> str:
        """Key used by templates: ``"<Provider>__<modelId>"``."""
        return f"{self.provider.value}__{self.model_id}"

    def destination(self, *, stream: Optional[bool] = None) -> ApiDestination:
        return ApiDestination(path=self.path, stream=self.stream if stream is None else stream)

    def to_dict(self) -> Dict[str, Any]:
        api: Dict[str, Any] = {"path": self.path, "bodyType": _BODY_TYPES[self.provider]}
        if not self.stream:
            api["stream"] = False
        return {
            "key": self.key,
            "name": self.name,
            "modelId": self.model_id,
            "description": self.description,
            "api": api,
        }


def _openai(key: str, name: str, model_id: str, description: str, *, stream: bool = True) -> ModelSpec:
    return ModelSpec(Provider.OPENAI, key, name, model_id, description, OPENAI_CHAT_PATH, stream)


def _google(key: str, name: str, model_id: str, description: str) -> ModelSpec:
    return ModelSpec(Provider.GOOGLE, key, name, model_id, description, GOOGLE_GENERATE_PATH)


def _anthropic(key: str, name: str, model_id: str, description: str) -> ModelSpec:
    return ModelSpec(Provider.ANTHROPIC, key, name, model_id, description, ANTHROPIC_MESSAGES_PATH)


MODEL_CATALOG: Dict[Provider, List[ModelSpec]] = {
    Provider.OPENAI: [
        _openai("openai-gpt-5", "GPT-5", "gpt-5", "Most capable model for complex coding and agentic tasks", stream=False),
        _openai("openai-gpt-5-mini", "GPT-5 Mini", "gpt-5-mini", "Fast, cost-efficient general purpose model"),
        _openai("openai-gpt-5-nano", "GPT-5 Nano", "gpt-5-nano", "Lowest latency and cost for simple, high-volume tasks"),
        _openai("openai-gpt-4-1", "GPT-4.1", "gpt-4.1", "Analysis and writing without extended reasoning"),
        _openai("openai-gpt-4-1-mini", "GPT-4.1 Mini", "gpt-4.1-mini", "Small tasks such as Q&A and classification"),
        _openai("openai-gpt-4o", "GPT-4o", "gpt-4o", "High performance multimodal model"),
        _openai("openai-o3", "o3 (Reasoning)", "o3", "Long-form reasoning for hard problems"),
        _openai("openai-o3-mini", "o3 Mini (Reasoning)", "o3-mini", "Fast, low-cost reasoning"),
    ],
    Provider.GOOGLE: [
        _google("google-gemini-2.5-pro", "Gemini 2.5 Pro", "gemini-2.5-pro", "Top quality for complex problems"),
        _google("google-gemini-2.5-flash", "Gemini 2.5 Flash", "gemini-2.5-flash", "Cost-efficient with adaptive thinking"),
        _google("google-gemini-2.0-flash", "Gemini 2.0 Flash", "gemini-2.0-flash", "Low latency streaming"),
    ],
    Provider.ANTHROPIC: [
        _anthropic("anthropic-claude-opus-4-1", "Claude Opus 4.1", "claude-opus-4-1-20250805", "Highest quality, complex reasoning"),
        _anthropic("anthropic-claude-sonnet-4", "Claude Sonnet 4", "claude-sonnet-4-20250514", "Balance of quality and cost"),
    ],
}


def catalog_payload() -> Dict[str, List[Dict[str, Any]]]:
    return {
        provider.value: [model.to_dict() for model in models]
        for provider, models in MODEL_CATALOG.items()
    }


def find_model(model_key: Optional[str]) -> Optional[ModelSpec]:
    """Look up ``"<Provider>__<modelId>"``; the provider part is case-insensitive."""
    if not model_key or "__" not in model_key:
        return None
    provider_name, model_id = model_key.split("__", 1)
    provider = next(
        (p for p in MODEL_CATALOG if p.value.lower() == provider_name.lower()), None
    )
    if provider is None:
        return None
    return next((m for m in MODEL_CATALOG[provider] if m.model_id == model_id), None)


def default_model() -> ModelSpec:
    return next(iter(MODEL_CATALOG.values()))[0]
