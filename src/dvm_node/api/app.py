from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query

from dvm_node.api.schemas import (
    EngineStatusResponse,
    JobStatisticsResponse,
    JobStatusResponse,
    LLMUsageSnapshotResponse,
)
from dvm_node.bootstrap import build_orchestrator, build_payments_from_env, build_provider_from_env
from dvm_node.errors import JobNotFoundError
from dvm_node.hooks import EventLogger
from dvm_node.llm import LLMUsageTracker
from dvm_node.runtime import JsonlAuditLogger
from dvm_node.services import JobOrchestrator
from dvm_node.settings import load_config_from_env
from dvm_node.transport import InMemoryRelay


def _default_audit_log_path() -> str:
    return os.getenv("DVM_AUDIT_LOG_PATH", ".dvm_node/audit.log")


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default) == "1"


def create_app(
    orchestrator: JobOrchestrator | None = None,
    *,
    usage_tracker: LLMUsageTracker | None = None,
) -> FastAPI:
    if usage_tracker is None and orchestrator is not None:
        usage_tracker = orchestrator.executor.usage_tracker
    usage_tracker = usage_tracker or LLMUsageTracker(
        window_minutes=int(os.getenv("DVM_LLM_USAGE_WINDOW_MINUTES", "60"))
    )
    if orchestrator is None:
        orchestrator = build_orchestrator(
            load_config_from_env(),
            messaging=InMemoryRelay(),
            payments=build_payments_from_env(),
            provider=build_provider_from_env(),
            telemetry=EventLogger(),
            audit_logger=JsonlAuditLogger(_default_audit_log_path()),
            usage_tracker=usage_tracker,
        )
    engine = orchestrator
    autostart = _env_flag("DVM_AUTOSTART", "1")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if autostart:
            await engine.start()
        yield
        await engine.stop()

    app = FastAPI(title="DVM Node API", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = engine
    app.state.llm_usage_tracker = usage_tracker

    def _status() -> EngineStatusResponse:
        return EngineStatusResponse(
            running=engine.is_running,
            supported_job_kinds=engine.config.supported_job_kinds,
            relays=engine.config.relays,
            public_key=engine.config.public_key,
            active_jobs=len(engine.list_active_jobs()),
            live_tasks=engine.live_task_count,
        )

    @app.get("/engine/status", response_model=EngineStatusResponse)
    async def engine_status() -> EngineStatusResponse:
        return _status()

    @app.post("/engine/start", response_model=EngineStatusResponse)
    async def start_engine() -> EngineStatusResponse:
        await engine.start()
        return _status()

    @app.post("/engine/stop", response_model=EngineStatusResponse)
    async def stop_engine() -> EngineStatusResponse:
        await engine.stop()
        return _status()

    @app.get("/jobs", response_model=list[JobStatusResponse])
    async def list_jobs() -> list[JobStatusResponse]:
        return [JobStatusResponse.from_state(job) for job in engine.list_active_jobs()]

    @app.get("/jobs/stats", response_model=JobStatisticsResponse)
    async def job_stats() -> JobStatisticsResponse:
        return JobStatisticsResponse.model_validate(engine.job_statistics())

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job(job_id: str) -> JobStatusResponse:
        try:
            job = engine.get_job(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JobStatusResponse.from_state(job)

    @app.get("/llm/usage", response_model=LLMUsageSnapshotResponse)
    async def get_llm_usage(
        provider: str | None = Query(default=None),
        model: str | None = Query(default=None),
    ) -> LLMUsageSnapshotResponse:
        snapshot = usage_tracker.snapshot(provider=provider, model=model)
        return LLMUsageSnapshotResponse.model_validate(snapshot)

    @app.post("/llm/usage/reset", response_model=LLMUsageSnapshotResponse)
    async def reset_llm_usage() -> LLMUsageSnapshotResponse:
        usage_tracker.reset()
        return LLMUsageSnapshotResponse.model_validate(usage_tracker.snapshot())

    return app


app = create_app()
