import asyncio
from pathlib import Path

import pytest

from dvm_node.runtime import BackoffPolicy, CancellationToken, JsonlAuditLogger, TaskSupervisor


def test_backoff_is_exponential_and_capped() -> None:
    policy = BackoffPolicy(initial_delay_ms=100, multiplier=2.0, max_delay_ms=500)
    assert [policy.delay_seconds(attempt) for attempt in range(1, 6)] == [0.1, 0.2, 0.4, 0.5, 0.5]


def test_backoff_rejects_invalid_values() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(multiplier=0.5)
    with pytest.raises(ValueError):
        BackoffPolicy(initial_delay_ms=1000, max_delay_ms=10)


def test_cancellation_token_interrupts_sleep() -> None:
    async def run() -> tuple[bool, bool, bool]:
        token = CancellationToken()
        completed = await token.sleep(0.001)
        sleeper = asyncio.create_task(token.sleep(10))
        await asyncio.sleep(0)
        token.cancel()
        interrupted = await sleeper
        after_cancel = await token.sleep(0)
        return completed, interrupted, after_cancel

    assert asyncio.run(run()) == (True, False, False)


def test_supervisor_rejects_duplicate_names_and_counts_live_tasks() -> None:
    async def run() -> None:
        supervisor = TaskSupervisor("test")

        async def wait_for_cancel(token: CancellationToken) -> str:
            await token.wait()
            return "stopped"

        handle = supervisor.spawn("worker", wait_for_cancel)
        with pytest.raises(RuntimeError):
            supervisor.spawn("worker", wait_for_cancel)
        assert supervisor.live_names() == ["worker"]

        assert supervisor.cancel("worker") is True
        assert await handle.wait() == "stopped"
        await asyncio.sleep(0)
        assert supervisor.live_count == 0
        assert supervisor.cancel("worker") is False

    asyncio.run(run())


def test_supervisor_shutdown_force_cancels_after_grace() -> None:
    async def run() -> None:
        supervisor = TaskSupervisor("test")
        finished: list[str] = []

        async def quick(token: CancellationToken) -> None:
            await asyncio.sleep(0.01)
            finished.append("quick")

        async def stubborn(token: CancellationToken) -> None:
            await asyncio.sleep(30)
            finished.append("stubborn")

        supervisor.spawn("quick", quick)
        supervisor.spawn("stubborn", stubborn)
        await supervisor.shutdown(grace_seconds=0.1)
        assert finished == ["quick"]
        assert supervisor.live_count == 0

    asyncio.run(run())


def test_audit_logger_appends_json_lines(tmp_path: Path) -> None:
    logger = JsonlAuditLogger(str(tmp_path / "nested" / "audit.log"))
    logger.log(job_id="job-1", category="job", action="created", metadata={"kind": 5100})
    logger.log(job_id="job-2", category="job", action="created", metadata={})
    logger.log(job_id="job-1", category="publish", action="result_published", metadata={"attempts": 1})

    entries = logger.read_entries("job-1")
    assert [entry.action for entry in entries] == ["created", "result_published"]
    assert entries[0].metadata == {"kind": 5100}
    assert len(logger.read_entries()) == 3


def test_audit_logger_filters_by_category_and_drops_failed_writes(tmp_path: Path) -> None:
    logger = JsonlAuditLogger(str(tmp_path / "audit.log"))
    logger.log(job_id="job-1", category="job", action="created")
    logger.log(job_id="job-1", category="publish", action="feedback_published", metadata={"status": "processing"})
    with logger.path.open("a", encoding="utf-8") as file:
        file.write('{"job_id": "job-1", "categ')

    assert [entry.action for entry in logger.read_entries(category="publish")] == ["feedback_published"]
    assert len(logger.read_entries("job-1")) == 2

    logger.path = tmp_path
    logger.log(job_id="job-1", category="job", action="completed")
    assert logger.dropped == 1
