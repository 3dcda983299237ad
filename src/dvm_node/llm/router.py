from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from .models import InferenceOptions, ProviderResponse, TextChunk
from .provider import InferenceProvider


class ProviderRouter:
    """Routes each call to a backend chosen by model-name prefix.

    The router is itself an ``InferenceProvider``, so the executor never knows
    whether it talks to a single backend or to several.
    """

    name = "router"

    def __init__(
        self,
        default: InferenceProvider,
        routes: dict[str, InferenceProvider] | None = None,
    ) -> None:
        self.default = default
        self.routes = {prefix.lower(): provider for prefix, provider in (routes or {}).items()}

    def resolve_provider(self, model: str) -> InferenceProvider:
        model_lower = model.lower()
        for prefix in sorted(self.routes, key=len, reverse=True):
            if model_lower.startswith(prefix):
                return self.routes[prefix]
        return self.default

    async def generate_text(self, prompt: str, options: InferenceOptions) -> ProviderResponse:
        return await self.resolve_provider(options.model).generate_text(prompt, options)

    def stream_text(self, prompt: str, options: InferenceOptions) -> AsyncIterator[TextChunk]:
        return self.resolve_provider(options.model).stream_text(prompt, options)

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        options: InferenceOptions,
    ) -> ProviderResponse:
        return await self.resolve_provider(options.model).generate_structured(prompt, schema, options)
