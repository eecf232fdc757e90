from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound for free-text request fields
MAX_STRING_LENGTH = 262144


class ChatMessageBody(BaseModel):
    role: str = Field(..., max_length=16)
    content: str = Field(..., max_length=MAX_STRING_LENGTH)


class ProxyBody(BaseModel):
    messages: List[ChatMessageBody] = Field(default_factory=list)


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    path: Optional[str] = Field(default=None, max_length=512)
    stream: Optional[bool] = None


class ProxyRequest(BaseModel):
    """Relay transport surface; field names match what existing clients send."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    provider: str = Field(..., max_length=32)
    model_id: str = Field(..., alias="modelId", max_length=128)
    body: ProxyBody
    global_instruction: Optional[str] = Field(
        default=None, alias="globalInstruction", max_length=MAX_STRING_LENGTH
    )
    api_config: Optional[ApiConfig] = Field(default=None, alias="apiConfig")
    workflow_id: Optional[str] = Field(default=None, max_length=64)
    template_name: Optional[str] = Field(default=None, max_length=256)
    step_index: Optional[int] = Field(default=None, ge=0)
    prompt_details: Dict[str, Any] = Field(default_factory=dict, alias="promptDetails")


class CreateWorkflowRequest(BaseModel):
    title: str = Field(default="", max_length=256)
    template_snapshot: Dict[str, Any]


class BookmarkRequest(BaseModel):
    bookmark_title: Optional[str] = Field(default=None, max_length=256)


class GenerateStepRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_input: str = Field(default="", alias="userInput", max_length=MAX_STRING_LENGTH)


class SaveEditRequest(BaseModel):
    content: str = Field(..., max_length=MAX_STRING_LENGTH)


class ApiKeysUpdateRequest(BaseModel):
    openai_api_key: Optional[str] = Field(default=None, max_length=512)
    google_api_key: Optional[str] = Field(default=None, max_length=512)
    anthropic_api_key: Optional[str] = Field(default=None, max_length=512)

    @field_validator("openai_api_key", "google_api_key", "anthropic_api_key")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    def provided(self) -> Dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}
