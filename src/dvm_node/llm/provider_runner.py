from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx

from dvm_node.models import UsageInfo

from .models import InferenceOptions, ProviderId, ProviderResponse, TextChunk
from .provider import ProviderError

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434/v1"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
CHAT_COMPLETIONS_PATH = "/chat/completions"


class HttpChatProvider:
    """Chat-completions backend adapter shared by the local bridge and remote APIs."""

    def __init__(
        self,
        *,
        provider: ProviderId,
        base_url: str,
        api_key: str | None = None,
        request_timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.name = provider.value
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.request_timeout_seconds = request_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.request_timeout_seconds),
            transport=self.transport,
            headers=headers,
        )

    async def generate_text(self, prompt: str, options: InferenceOptions) -> ProviderResponse:
        payload = await self._post(self._body(prompt, options, stream=False))
        text = _extract_text_from_payload(payload)
        if not text.strip():
            raise ProviderError(f"{self.name} query failed: empty response")
        return ProviderResponse(
            provider=self.name,
            model=str(payload.get("model") or options.model),
            output=text,
            usage=_usage_from_payload(payload, prompt=prompt, output=text),
        )

    async def stream_text(self, prompt: str, options: InferenceOptions) -> AsyncIterator[TextChunk]:
        body = self._body(prompt, options, stream=True)
        index = 0
        try:
            async with self._client() as client:
                async with client.stream("POST", CHAT_COMPLETIONS_PATH, json=body) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        _raise_for_status(self.name, response)
                    async for line in response.aiter_lines():
                        data = _sse_data(line)
                        if data is None:
                            continue
                        if data == "[DONE]":
                            return
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(event, dict) and event.get("error"):
                            raise ProviderError(
                                f"{self.name} stream failed: {_error_message(event)}",
                                code=_error_code(event),
                            )
                        text, finish_reason = _extract_delta(event)
                        if not text and finish_reason is None:
                            continue
                        yield TextChunk(index=index, text=text, finish_reason=finish_reason)
                        index += 1
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} stream timed out", unreachable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"{self.name} stream failed: {exc}", unreachable=True) from exc

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        options: InferenceOptions,
    ) -> ProviderResponse:
        body = self._body(prompt, options, stream=False)
        body["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": "job_result", "schema": schema},
        }
        payload = await self._post(body)
        text = _extract_text_from_payload(payload)
        try:
            structured = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"{self.name} structured output was not valid JSON") from exc
        if not isinstance(structured, dict):
            raise ProviderError(f"{self.name} structured output must be a JSON object")
        return ProviderResponse(
            provider=self.name,
            model=str(payload.get("model") or options.model),
            output=text,
            structured=structured,
            usage=_usage_from_payload(payload, prompt=prompt, output=text),
        )

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(CHAT_COMPLETIONS_PATH, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} query timed out", unreachable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"{self.name} query failed: {exc}", unreachable=True) from exc
        _raise_for_status(self.name, response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} query failed: response is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} query failed: unexpected payload")
        return payload

    @staticmethod
    def _body(prompt: str, options: InferenceOptions, *, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        body: dict[str, Any] = {"model": options.model, "messages": messages, "stream": stream}
        for key in ("temperature", "max_tokens", "top_p", "frequency_penalty"):
            value = getattr(options, key)
            if value is not None:
                body[key] = value
        return body


def ollama_provider(
    *,
    base_url: str | None = None,
    request_timeout_seconds: float = 120.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpChatProvider:
    """Local bridge to an Ollama daemon through its OpenAI-compatible endpoint."""
    return HttpChatProvider(
        provider=ProviderId.OLLAMA,
        base_url=base_url or os.getenv("DVM_OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL,
        request_timeout_seconds=request_timeout_seconds,
        transport=transport,
    )


def remote_api_provider(
    *,
    api_key: str,
    base_url: str | None = None,
    request_timeout_seconds: float = 120.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpChatProvider:
    return HttpChatProvider(
        provider=ProviderId.OPENAI_COMPATIBLE,
        base_url=base_url or os.getenv("DVM_REMOTE_LLM_BASE_URL") or DEFAULT_OPENAI_BASE_URL,
        api_key=api_key,
        request_timeout_seconds=request_timeout_seconds,
        transport=transport,
    )


def _raise_for_status(name: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        detail = _error_message(payload)
        code = _error_code(payload)
    else:
        detail = response.text[:300]
        code = None
    raise ProviderError(
        f"{name} query failed: HTTP {response.status_code} ({detail})",
        status_code=response.status_code,
        code=code,
    )


def _error_message(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "unknown error")[:300]
    return str(error)[:300]


def _error_code(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code") or error.get("type")
        return str(code) if code else None
    return None


def _sse_data(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data = stripped[5:].strip()
    return data or None


def _extract_delta(event: Any) -> tuple[str, str | None]:
    if not isinstance(event, dict):
        return "", None
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice = choices[0]
        delta = choice.get("delta")
        text = ""
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            text = delta["content"]
        elif isinstance(choice.get("text"), str):
            text = choice["text"]
        finish_reason = choice.get("finish_reason")
        return text, finish_reason if isinstance(finish_reason, str) else None
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"], "stop" if event.get("done") else None
    return "", None


def _usage_from_payload(payload: dict[str, Any], *, prompt: str, output: str) -> UsageInfo:
    usage = payload.get("usage")
    if isinstance(usage, dict):
        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
        if isinstance(prompt_tokens, int) and isinstance(completion_tokens, int):
            return UsageInfo(prompt_tokens=max(0, prompt_tokens), completion_tokens=max(0, completion_tokens))
    return UsageInfo(prompt_tokens=estimate_tokens(prompt), completion_tokens=estimate_tokens(output))


def estimate_tokens(text: str) -> int:
    stripped = text.strip()
    if not stripped:
        return 0
    return max(1, (len(stripped) + 3) // 4)


def _extract_text_from_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload.strip()
    if not isinstance(payload, dict):
        return ""

    choices = payload.get("choices")
    if isinstance(choices, list):
        choice_text: list[str] = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            message = _coerce_to_text(choice.get("message"))
            text = _coerce_to_text(choice.get("text"))
            for candidate in (message, text):
                if candidate:
                    choice_text.append(candidate)
                    break
        if choice_text:
            return "\n".join(choice_text)

    message = payload.get("message")
    if isinstance(message, dict):
        text = _coerce_to_text(message.get("content"))
        if text:
            return text

    for value in (payload.get("output_text"), payload.get("response"), payload.get("text")):
        text = _coerce_to_text(value)
        if text:
            return text
    return ""


def _coerce_to_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        pieces = [_coerce_to_text(item) for item in value]
        return "\n".join(piece for piece in pieces if piece)
    if isinstance(value, dict):
        for key in ("content", "text", "output_text"):
            if key in value:
                piece = _coerce_to_text(value.get(key))
                if piece:
                    return piece
    return ""
