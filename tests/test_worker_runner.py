import asyncio
from collections import defaultdict

import pytest

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.executors import (
    ExecutionResult,
    ExecutorRegistry,
    build_executor_registry,
)
from guildpass_worker.lifecycle import WorkerState
from guildpass_worker.runner import QueueWorker
from guildpass_worker.schemas import (
    ClaimedJob,
    CompleteOutcome,
    WakeFamilyState,
    WakeState,
)
from guildpass_worker.settings import WorkerSettings


def make_job(job_id, family="role_sync", **scope) -> ClaimedJob:
    if family == "role_sync":
        scope = {
            "guild_id": "g1",
            "discord_user_id": job_id,
            "role_id": "r1",
            "action": "grant",
            **scope,
        }
    return ClaimedJob(
        job_id=job_id,
        family=family,
        claim_token=f"tok-{job_id}",
        scope=scope,
        attempt_count=1,
        max_attempts=5,
    )


class FakeQueue:
    """Serves claim batches in order and records completions."""

    def __init__(self, batches=None, wake=None):
        self.batches = defaultdict(list)
        for family, jobs in (batches or {}).items():
            self.batches[family] = list(jobs)
        self.claims: list[str] = []
        self.completed: list[tuple[str, bool, str | None]] = []
        self.claim_error: WorkerAPIError | None = None
        self.complete_error: WorkerAPIError | None = None
        self.wake = wake

    async def claim(self, family, limit):
        self.claims.append(family)
        if self.claim_error is not None:
            raise self.claim_error
        pending = self.batches[family]
        batch, self.batches[family] = pending[:limit], pending[limit:]
        return batch

    async def complete(self, job, success, error=None, result=None):
        if self.complete_error is not None:
            raise self.complete_error
        self.completed.append((job.job_id, success, error))
        return CompleteOutcome(ok=True, status="succeeded" if success else "pending")

    async def wake_state(self):
        if self.wake is None:
            raise WorkerAPIError("unavailable", status_code=503)
        return self.wake


class StaleWake:
    """Connected wake feed whose readiness aggregate never changes."""

    def __init__(self, state):
        self.state = state
        self.connected = True
        self.changed = asyncio.Event()

    def start(self):
        pass

    async def stop(self):
        pass


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def worker_settings() -> WorkerSettings:
    return WorkerSettings(
        api_base_url="http://test",
        api_token="worker-test-token",
        worker_id="worker-test",
        role_sync_claim_limit=2,
        seat_audit_poll_interval_ms=30_000,
        wake_stream_enabled=False,
    )


def make_worker(settings, queue, executors=None, clock=None) -> QueueWorker:
    return QueueWorker(
        settings,
        queue,
        executors or build_executor_registry(),
        clock=clock or FakeClock(),
    )


class TestTick:
    async def test_drains_until_empty_pass(self, worker_settings):
        queue = FakeQueue({"role_sync": [make_job(f"j{i}") for i in range(3)]})
        worker = make_worker(worker_settings, queue)

        processed = await worker.tick()

        assert processed == 3
        assert [job_id for job_id, _, _ in queue.completed] == ["j0", "j1", "j2"]
        assert all(success for _, success, _ in queue.completed)
        assert worker.lifecycle.state is WorkerState.IDLE
        # Mirror is claimed before role sync; seat audit joins on the first pass only
        assert queue.claims[:3] == ["signal_mirror", "role_sync", "seat_audit"]
        assert queue.claims.count("seat_audit") == 1

    async def test_seat_audit_waits_for_poll_interval(self, worker_settings):
        clock = FakeClock()
        queue = FakeQueue()
        worker = make_worker(worker_settings, queue, clock=clock)

        await worker.tick()
        clock.now += 10
        await worker.tick()
        assert queue.claims.count("seat_audit") == 1
        assert worker.ms_until_seat_audit() == 20_000

        clock.now += 20
        await worker.tick()
        assert queue.claims.count("seat_audit") == 2

    async def test_executor_exception_reports_failure(self, worker_settings):
        class Exploding:
            async def execute(self, job):
                raise RuntimeError("discord down")

        executors = ExecutorRegistry()
        executors.register("role_sync", Exploding())
        queue = FakeQueue({"role_sync": [make_job("j1")]})

        await make_worker(worker_settings, queue, executors).tick()

        assert queue.completed == [("j1", False, "discord down")]

    async def test_missing_executor_reports_failure(self, worker_settings):
        queue = FakeQueue({"role_sync": [make_job("j1")]})

        await make_worker(worker_settings, queue, ExecutorRegistry()).tick()

        assert queue.completed == [("j1", False, "no_executor:role_sync")]

    async def test_completion_error_is_not_raised(self, worker_settings):
        queue = FakeQueue({"role_sync": [make_job("j1")]})
        queue.complete_error = WorkerAPIError("boom", status_code=500)
        worker = make_worker(worker_settings, queue)

        assert await worker.process_job(make_job("j2")) is None
        assert await worker.tick() == 1

    async def test_claim_error_forces_fallback_wake(self, worker_settings):
        queue = FakeQueue(
            wake=WakeState(
                families={"role_sync": WakeFamilyState(pending_ready=3)},
                server_now=0,
            )
        )
        queue.claim_error = WorkerAPIError("Connection failed")
        worker = make_worker(worker_settings, queue)

        assert await worker.tick() == 0
        await worker.refresh_polled_state()

        decision = worker.next_wake()
        assert decision.reason == "fallback"
        assert (
            worker_settings.wake_fallback_min_ms
            <= decision.delay_ms
            <= worker_settings.wake_fallback_max_ms
        )

    async def test_shutdown_mid_batch_finishes_current_job(self, worker_settings):
        worker = None

        class StopAfterFirst:
            def __init__(self):
                self.calls = 0

            async def execute(self, job):
                self.calls += 1
                worker.request_shutdown()
                return ExecutionResult(True, "done")

        executor = StopAfterFirst()
        executors = ExecutorRegistry()
        executors.register("role_sync", executor)
        queue = FakeQueue({"role_sync": [make_job("j1"), make_job("j2")]})
        worker = make_worker(worker_settings, queue, executors)

        await worker.run()

        assert executor.calls == 1
        assert queue.completed == [("j1", True, None)]
        assert worker.lifecycle.stopped


class TestNextWake:
    async def test_polled_ready_jobs_wake_immediately(self, worker_settings):
        queue = FakeQueue(
            wake=WakeState(
                families={"role_sync": WakeFamilyState(pending_ready=1)},
                server_now=0,
            )
        )
        worker = make_worker(worker_settings, queue)

        await worker.refresh_polled_state()

        assert worker.next_wake().delay_ms == 0

    async def test_seat_audit_readiness_hidden_until_due(self, worker_settings):
        clock = FakeClock()
        queue = FakeQueue(
            wake=WakeState(
                families={"seat_audit": WakeFamilyState(pending_ready=4)},
                server_now=0,
            )
        )
        worker = make_worker(worker_settings, queue, clock=clock)
        await worker.tick()
        await worker.refresh_polled_state()

        decision = worker.next_wake()

        assert decision.reason == "fallback"
        assert decision.delay_ms > 0

        clock.now += 30
        assert worker.next_wake().delay_ms == 0

    async def test_unclaimable_ready_state_falls_back(self, worker_settings):
        ready = WakeState(
            families={"role_sync": WakeFamilyState(pending_ready=1)}, server_now=0
        )
        wake = StaleWake(ready)
        worker = QueueWorker(
            worker_settings,
            FakeQueue(),
            build_executor_registry(),
            wake=wake,
            clock=FakeClock(),
        )
        assert await worker.tick() == 0

        assert worker.next_wake(processed=0).delay_ms == 0
        stale = worker.next_wake(processed=0)
        assert stale.reason == "fallback"
        assert stale.delay_ms >= worker_settings.wake_fallback_min_ms

        # A fresh aggregate from the feed is trusted again
        wake.state = ready.model_copy()
        assert worker.next_wake(processed=0).delay_ms == 0

    async def test_stale_feed_does_not_spin_claims(self, worker_settings):
        wake = StaleWake(
            WakeState(
                families={"role_sync": WakeFamilyState(pending_ready=1)},
                server_now=0,
            )
        )
        queue = FakeQueue()
        worker = QueueWorker(
            worker_settings,
            queue,
            build_executor_registry(),
            wake=wake,
            clock=FakeClock(),
        )
        asyncio.get_running_loop().call_later(0.2, worker.request_shutdown)

        await asyncio.wait_for(worker.run(), timeout=5)

        # One immediate retry, then the jittered fallback until shutdown
        assert queue.claims == [
            "signal_mirror",
            "role_sync",
            "seat_audit",
            "signal_mirror",
            "role_sync",
        ]

    async def test_failed_poll_falls_back(self, worker_settings):
        worker = make_worker(worker_settings, FakeQueue())

        await worker.refresh_polled_state()

        assert worker.next_wake().reason == "fallback"


async def test_shutdown_before_run_exits_without_claiming(worker_settings):
    queue = FakeQueue()
    worker = make_worker(worker_settings, queue)

    worker.request_shutdown()
    worker.request_shutdown()
    await worker.run()

    assert queue.claims == []
    assert worker.lifecycle.stopped
