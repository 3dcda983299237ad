"""Inference collaborator: provider capability, HTTP adapters, routing, usage."""

from .models import InferenceOptions, ProviderId, ProviderResponse, TextChunk
from .provider import InferenceProvider, ProviderError
from .provider_runner import HttpChatProvider, estimate_tokens, ollama_provider, remote_api_provider
from .router import ProviderRouter
from .usage_tracker import LLMUsageTracker

__all__ = [
    "HttpChatProvider",
    "InferenceOptions",
    "InferenceProvider",
    "LLMUsageTracker",
    "ProviderError",
    "ProviderId",
    "ProviderResponse",
    "ProviderRouter",
    "TextChunk",
    "estimate_tokens",
    "ollama_provider",
    "remote_api_provider",
]
