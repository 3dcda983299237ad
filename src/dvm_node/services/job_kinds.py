"""Job-kind families and their prompt/result strategies.

Each supported request kind maps to exactly one :class:`JobKindSpec`. A spec owns
how a request becomes a provider prompt and how the provider response becomes the
content of the result message, so nothing else in the engine branches on kind
numbers.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dvm_node.errors import JobValidationError
from dvm_node.llm.models import InferenceOptions, ProviderResponse
from dvm_node.models import JobRequest


class JobKindFamily(str, Enum):
    TEXT_GENERATION = "text-generation"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    EXTRACTION = "extraction"


@dataclass(frozen=True)
class PromptPlan:
    prompt: str
    options: InferenceOptions
    schema: dict[str, Any] | None = None

    @property
    def structured(self) -> bool:
        return self.schema is not None


PromptBuilder = Callable[[JobRequest, str], PromptPlan]
ResultEncoder = Callable[[ProviderResponse], str]


@dataclass(frozen=True)
class JobKindSpec:
    family: JobKindFamily
    kinds: frozenset[int]
    build_prompt: PromptBuilder
    encode_result: ResultEncoder
    supports_streaming: bool = True

    def validate(self, request: JobRequest, default_model: str) -> None:
        self.build_prompt(request, default_model)


class JobKindTable:
    def __init__(self, specs: Iterable[JobKindSpec]) -> None:
        self._by_kind: dict[int, JobKindSpec] = {}
        for spec in specs:
            for kind in spec.kinds:
                if kind in self._by_kind:
                    raise ValueError(f"job kind {kind} registered twice")
                self._by_kind[kind] = spec

    def lookup(self, kind: int) -> JobKindSpec | None:
        return self._by_kind.get(kind)

    def supports(self, kind: int) -> bool:
        return kind in self._by_kind

    @property
    def kinds(self) -> list[int]:
        return sorted(self._by_kind)

    def restricted_to(self, kinds: Iterable[int]) -> "JobKindTable":
        wanted = set(kinds)
        specs = []
        for spec in {id(spec): spec for spec in self._by_kind.values()}.values():
            subset = frozenset(spec.kinds & wanted)
            if subset:
                specs.append(
                    JobKindSpec(
                        family=spec.family,
                        kinds=subset,
                        build_prompt=spec.build_prompt,
                        encode_result=spec.encode_result,
                        supports_streaming=spec.supports_streaming,
                    )
                )
        return JobKindTable(specs)


def _float_param(request: JobRequest, name: str) -> float | None:
    raw = request.param(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _int_param(request: JobRequest, name: str) -> int | None:
    raw = request.param(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _options(request: JobRequest, default_model: str, system_prompt: str | None = None) -> InferenceOptions:
    return InferenceOptions(
        model=request.param("model") or default_model,
        system_prompt=system_prompt,
        temperature=_float_param(request, "temperature"),
        max_tokens=_int_param(request, "max_tokens"),
        top_p=_float_param(request, "top_p"),
        frequency_penalty=_float_param(request, "frequency_penalty"),
    )


def _required_text(request: JobRequest, job_label: str) -> str:
    texts = request.text_inputs()
    if not texts:
        raise JobValidationError(f"No 'text' input found for {job_label} job.")
    return "\n\n".join(texts)


def _text_generation_prompt(request: JobRequest, default_model: str) -> PromptPlan:
    return PromptPlan(
        prompt=_required_text(request, "text generation"),
        options=_options(request, default_model),
    )


def _summarization_prompt(request: JobRequest, default_model: str) -> PromptPlan:
    text = _required_text(request, "summarization")
    length = request.param("length")
    instruction = "Summarize the following text concisely."
    if length:
        instruction = f"Summarize the following text in at most {length} words."
    return PromptPlan(
        prompt=f"{instruction}\n\n{text}",
        options=_options(request, default_model, system_prompt="You write faithful, neutral summaries."),
    )


def _translation_prompt(request: JobRequest, default_model: str) -> PromptPlan:
    text = _required_text(request, "translation")
    language = request.param("language") or request.param("lang")
    if not language:
        raise JobValidationError("translation jobs require a 'language' param")
    return PromptPlan(
        prompt=f"Translate the following text into {language}. Reply with the translation only.\n\n{text}",
        options=_options(request, default_model),
    )


DEFAULT_EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "entities": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
    },
    "required": ["entities"],
}


def _extraction_prompt(request: JobRequest, default_model: str) -> PromptPlan:
    text = _required_text(request, "extraction")
    schema = DEFAULT_EXTRACTION_SCHEMA
    raw_schema = request.param("schema")
    if raw_schema:
        try:
            schema = json.loads(raw_schema)
        except json.JSONDecodeError as exc:
            raise JobValidationError("'schema' param must be valid JSON") from exc
        if not isinstance(schema, dict):
            raise JobValidationError("'schema' param must be a JSON object")
    return PromptPlan(
        prompt=f"Extract structured data from the following text.\n\n{text}",
        options=_options(request, default_model, system_prompt="Answer with JSON matching the schema."),
        schema=schema,
    )


def _plain_output(response: ProviderResponse) -> str:
    return response.output


def _json_output(response: ProviderResponse) -> str:
    if response.structured is None:
        return response.output
    return json.dumps(response.structured, ensure_ascii=False, sort_keys=True)


def default_job_kinds() -> JobKindTable:
    return JobKindTable(
        [
            JobKindSpec(
                family=JobKindFamily.TEXT_GENERATION,
                kinds=frozenset({5050, 5100}),
                build_prompt=_text_generation_prompt,
                encode_result=_plain_output,
            ),
            JobKindSpec(
                family=JobKindFamily.SUMMARIZATION,
                kinds=frozenset({5001}),
                build_prompt=_summarization_prompt,
                encode_result=_plain_output,
            ),
            JobKindSpec(
                family=JobKindFamily.TRANSLATION,
                kinds=frozenset({5002}),
                build_prompt=_translation_prompt,
                encode_result=_plain_output,
            ),
            JobKindSpec(
                family=JobKindFamily.EXTRACTION,
                kinds=frozenset({5000}),
                build_prompt=_extraction_prompt,
                encode_result=_json_output,
                supports_streaming=False,
            ),
        ]
    )
