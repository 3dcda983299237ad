from __future__ import annotations

import os
from collections.abc import Mapping

from dvm_node.hooks import SafeTelemetry, Telemetry
from dvm_node.llm import (
    InferenceProvider,
    LLMUsageTracker,
    ProviderRouter,
    ollama_provider,
    remote_api_provider,
)
from dvm_node.payments import InMemoryPaymentBackend, LNbitsPaymentClient, PaymentClient
from dvm_node.protocol import MessageBuilder, nip04
from dvm_node.runtime import JsonlAuditLogger
from dvm_node.services import (
    InferenceExecutor,
    InvoiceMonitor,
    JobKindTable,
    JobListener,
    JobOrchestrator,
    ResultPublisher,
    default_job_kinds,
)
from dvm_node.settings import DVMConfig, _env_text
from dvm_node.storage import JobRegistry
from dvm_node.transport.base import MessagingClient


def build_provider_from_env(environ: Mapping[str, str] | None = None) -> InferenceProvider:
    """Local Ollama bridge by default; a remote API takes over for configured model prefixes."""
    env = os.environ if environ is None else environ
    timeout = float(env.get("DVM_LLM_REQUEST_TIMEOUT_SECONDS", "120"))
    local = ollama_provider(
        base_url=_env_text(env, "DVM_OLLAMA_BASE_URL"),
        request_timeout_seconds=timeout,
    )
    api_key = _env_text(env, "DVM_REMOTE_LLM_API_KEY")
    if not api_key:
        return local
    remote = remote_api_provider(
        api_key=api_key,
        base_url=_env_text(env, "DVM_REMOTE_LLM_BASE_URL"),
        request_timeout_seconds=timeout,
    )
    if (_env_text(env, "DVM_LLM_PROVIDER") or "ollama") == "remote":
        return remote
    prefixes = [
        prefix.strip()
        for prefix in (_env_text(env, "DVM_REMOTE_LLM_MODEL_PREFIXES") or "gpt-").split(",")
        if prefix.strip()
    ]
    return ProviderRouter(local, {prefix: remote for prefix in prefixes})


def build_payments_from_env(environ: Mapping[str, str] | None = None) -> PaymentClient:
    env = os.environ if environ is None else environ
    api_key = _env_text(env, "DVM_LNBITS_API_KEY")
    expiry = int(env.get("DVM_INVOICE_EXPIRY_SECONDS", "600"))
    if api_key:
        return LNbitsPaymentClient(
            api_key=api_key,
            base_url=_env_text(env, "DVM_LNBITS_URL"),
            invoice_expiry_seconds=expiry,
        )
    return InMemoryPaymentBackend(expiry_seconds=expiry)


def build_orchestrator(
    config: DVMConfig,
    *,
    messaging: MessagingClient,
    payments: PaymentClient,
    provider: InferenceProvider,
    telemetry: Telemetry | None = None,
    audit_logger: JsonlAuditLogger | None = None,
    usage_tracker: LLMUsageTracker | None = None,
    kinds: JobKindTable | None = None,
) -> JobOrchestrator:
    """Wire one engine: registry, monitor, executor, publisher, listener, orchestrator."""
    safe_telemetry = SafeTelemetry(telemetry)
    job_kinds = kinds or default_job_kinds().restricted_to(config.supported_job_kinds)
    registry = JobRegistry()

    signing_key = config.signing_key
    decryptor = None
    encryptor = None
    if signing_key:

        def decryptor(sender_key: str, payload: str) -> str:
            return nip04.decrypt(signing_key, sender_key, payload)

        def encryptor(recipient_key: str, plaintext: str) -> str:
            return nip04.encrypt(signing_key, recipient_key, plaintext)

    monitor = InvoiceMonitor(
        registry,
        payments,
        telemetry=safe_telemetry,
        backoff=config.poll_backoff,
        max_poll_failures=config.max_poll_failures,
    )
    executor = InferenceExecutor(
        provider,
        kinds=job_kinds,
        default_model=config.default_model,
        max_duration_seconds=config.max_inference_seconds,
        stream_feedback_every=config.stream_feedback_every,
        telemetry=safe_telemetry,
        usage_tracker=usage_tracker,
    )
    publisher = ResultPublisher(
        messaging,
        registry,
        MessageBuilder(config.node_key),
        backoff=config.publish_backoff,
        max_publish_attempts=config.max_publish_attempts,
        telemetry=safe_telemetry,
        audit_logger=audit_logger,
        encryptor=encryptor,
    )
    orchestrator = JobOrchestrator(
        config,
        registry=registry,
        payments=payments,
        monitor=monitor,
        executor=executor,
        publisher=publisher,
        telemetry=safe_telemetry,
        audit_logger=audit_logger,
    )
    orchestrator.listener = JobListener(
        messaging,
        config,
        orchestrator.on_job_request,
        kinds=job_kinds,
        decryptor=decryptor,
        telemetry=safe_telemetry,
    )
    return orchestrator
