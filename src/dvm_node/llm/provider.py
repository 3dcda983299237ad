from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from .models import InferenceOptions, ProviderResponse, TextChunk


class ProviderError(RuntimeError):
    """Raw failure reported by an inference backend, before normalization."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        unreachable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.unreachable = unreachable


class InferenceProvider(Protocol):
    """Capability interface every inference backend adapter implements."""

    name: str

    async def generate_text(self, prompt: str, options: InferenceOptions) -> ProviderResponse: ...

    def stream_text(self, prompt: str, options: InferenceOptions) -> AsyncIterator[TextChunk]: ...

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        options: InferenceOptions,
    ) -> ProviderResponse: ...
