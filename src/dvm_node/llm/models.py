from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from dvm_node.models import UsageInfo


class ProviderId(str, Enum):
    OLLAMA = "ollama"
    OPENAI_COMPATIBLE = "openai-compatible"


class InferenceOptions(BaseModel):
    model: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProviderResponse(BaseModel):
    provider: str
    model: str
    output: str
    structured: dict[str, Any] | None = None
    usage: UsageInfo = Field(default_factory=UsageInfo)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TextChunk(BaseModel):
    index: int
    text: str
    finish_reason: str | None = None
