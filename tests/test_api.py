import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from dvm_node import build_orchestrator
from dvm_node.api.app import create_app
from dvm_node.llm import LLMUsageTracker
from dvm_node.models import JobStatus
from dvm_node.runtime import JsonlAuditLogger
from dvm_node.transport import InMemoryRelay

from support import ScriptedPayments, ScriptedProvider, fast_config, make_request


def _orchestrator(tmp_path: Path, tracker: LLMUsageTracker | None = None):
    return build_orchestrator(
        fast_config(),
        messaging=InMemoryRelay(),
        payments=ScriptedPayments(),
        provider=ScriptedProvider(),
        audit_logger=JsonlAuditLogger(str(tmp_path / "audit.log")),
        usage_tracker=tracker,
    )


def _seed_jobs(orchestrator) -> tuple[str, str]:
    active = make_request(kind=5100)
    failed = make_request(kind=5050)

    async def run() -> None:
        await orchestrator.registry.create(active.id, active)
        await orchestrator.registry.transition(active.id, JobStatus.RECEIVED, JobStatus.PROCESSING)
        await orchestrator.registry.create(failed.id, failed)
        await orchestrator.registry.transition(
            failed.id,
            JobStatus.RECEIVED,
            JobStatus.FAILED,
            {"last_error": "provider-unavailable: provider unavailable: refused"},
        )

    asyncio.run(run())
    return active.id, failed.id


def test_engine_lifecycle_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DVM_AUTOSTART", "0")
    orchestrator = _orchestrator(tmp_path)
    app = create_app(orchestrator)

    with TestClient(app) as client:
        status = client.get("/engine/status")
        assert status.status_code == 200
        assert status.json()["running"] is False
        assert status.json()["supported_job_kinds"] == [5000, 5001, 5002, 5050, 5100]

        started = client.post("/engine/start")
        assert started.json()["running"] is True
        assert started.json()["live_tasks"] == 1

        stopped = client.post("/engine/stop")
        assert stopped.json()["running"] is False
        assert stopped.json()["live_tasks"] == 0

    assert orchestrator.is_running is False


def test_autostart_runs_engine_for_app_lifetime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DVM_AUTOSTART", "1")
    orchestrator = _orchestrator(tmp_path)

    with TestClient(create_app(orchestrator)) as client:
        assert client.get("/engine/status").json()["running"] is True

    assert orchestrator.is_running is False


def test_job_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DVM_AUTOSTART", "0")
    orchestrator = _orchestrator(tmp_path)
    active_id, failed_id = _seed_jobs(orchestrator)

    with TestClient(create_app(orchestrator)) as client:
        listed = client.get("/jobs")
        assert listed.status_code == 200
        assert [job["job_id"] for job in listed.json()] == [active_id]

        job = client.get(f"/jobs/{failed_id}")
        assert job.status_code == 200
        body = job.json()
        assert body["status"] == "failed"
        assert body["job_kind"] == 5050
        assert body["last_error"].startswith("provider-unavailable")
        assert body["history_count"] == 2

        stats = client.get("/jobs/stats").json()
        assert stats["total_jobs"] == 2
        assert stats["active_jobs"] == 1
        assert stats["by_status"]["processing"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["revenue_millisats"] == 0

        missing = client.get("/jobs/does-not-exist")
        assert missing.status_code == 404


def test_llm_usage_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DVM_AUTOSTART", "0")
    tracker = LLMUsageTracker(window_minutes=30)
    app = create_app(_orchestrator(tmp_path, tracker))

    with TestClient(app) as client:
        assert client.app.state.llm_usage_tracker is tracker
        assert client.get("/llm/usage").json()["model_count"] == 0

        tracker.record_call(
            provider="ollama",
            model="gemma2:1b",
            success=True,
            prompt_tokens=12,
            completion_tokens=3,
            job_kind=5100,
            duration_ms=40.0,
        )
        tracker.record_call(provider="remote-api", model="gpt-4o-mini", success=False)

        usage = client.get("/llm/usage", params={"provider": "ollama"}).json()
        assert usage["window_minutes"] == 30
        assert usage["model_count"] == 1
        assert usage["models"][0]["total_tokens"] == 15
        assert usage["models"][0]["average_duration_ms"] == 40.0
        assert usage["models"][0]["job_kinds"] == {"5100": 1}

        reset = client.post("/llm/usage/reset")
        assert reset.status_code == 200
        assert reset.json()["model_count"] == 0
