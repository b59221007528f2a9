"""
Queue worker: claims jobs over the API, runs them and reports the outcome.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.client.endpoints import QueueClient
from guildpass_worker.executors import (
    ExecutionResult,
    ExecutorRegistry,
    build_executor_registry,
)
from guildpass_worker.lifecycle import WorkerLifecycle
from guildpass_worker.schemas import ClaimedJob, CompleteOutcome, WakeState
from guildpass_worker.settings import WorkerSettings
from guildpass_worker.wake import (
    QueueWakeClient,
    WakeDecision,
    WakeFeed,
    compute_queue_wake_delay,
)

logger = logging.getLogger(__name__)

# Claim order within a pass; seat audit joins only when its poll interval is up.
FAMILY_ORDER = ("signal_mirror", "role_sync")
SEAT_AUDIT = "seat_audit"


def describe_exception(exc: BaseException) -> str:
    return str(exc).strip() or type(exc).__name__


class QueueWorker:
    """
    Single-process worker loop.

    A tick drains every family until a full pass claims nothing. Jobs of a
    batch run one at a time, and shutdown is checked between jobs, so an
    executor call already in flight always finishes and reports back.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        queue: QueueClient,
        executors: ExecutorRegistry,
        wake: QueueWakeClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.queue = queue
        self.executors = executors
        self.wake = wake
        self.clock = clock
        self.lifecycle = WorkerLifecycle()

        self._last_seat_audit_claim: float | None = None
        self._polled_state: WakeState | None = None
        self._polled_ok = False
        self._ready_state: WakeState | None = None
        self._claim_failed = False
        self._stop = asyncio.Event()

    # Scheduling
    def seat_audit_due(self) -> bool:
        if self._last_seat_audit_claim is None:
            return True
        elapsed_ms = (self.clock() - self._last_seat_audit_claim) * 1000
        return elapsed_ms >= self.settings.seat_audit_poll_interval_ms

    def ms_until_seat_audit(self) -> int:
        if self._last_seat_audit_claim is None:
            return 0
        elapsed_ms = (self.clock() - self._last_seat_audit_claim) * 1000
        return max(0, int(self.settings.seat_audit_poll_interval_ms - elapsed_ms))

    def families_for_pass(self) -> list[str]:
        families = list(FAMILY_ORDER)
        if self.seat_audit_due():
            families.append(SEAT_AUDIT)
        return families

    # Tick
    async def tick(self) -> int:
        """Drain the queue; a tick requested while one is running is a no-op."""
        if not self.lifecycle.begin_tick():
            return 0

        total = 0
        self._claim_failed = False
        try:
            while self.lifecycle.should_continue():
                processed = await self.claim_pass()
                total += processed
                if processed == 0:
                    break
        finally:
            self.lifecycle.end_tick()

        if total:
            logger.info("Tick drained jobs", extra={"processed": total})
        return total

    async def claim_pass(self) -> int:
        limits = self.settings.claim_limits()
        processed = 0
        for family in self.families_for_pass():
            if not self.lifecycle.should_continue():
                break
            # The poll interval spaces attempts, failed ones included
            if family == SEAT_AUDIT:
                self._last_seat_audit_claim = self.clock()
            try:
                jobs = await self.queue.claim(family, limits[family])
            except WorkerAPIError as e:
                self._claim_failed = True
                logger.error(
                    "Claim failed", extra={"family": family, "error": str(e)}
                )
                continue
            if jobs:
                logger.info(
                    "Claimed jobs", extra={"family": family, "claim_count": len(jobs)}
                )

            for job in jobs:
                if not self.lifecycle.should_continue():
                    break
                await self.process_job(job)
                processed += 1
        return processed

    async def execute(self, job: ClaimedJob) -> ExecutionResult:
        if not self.executors.has(job.family):
            return ExecutionResult(False, f"no_executor:{job.family}")
        try:
            return await self.executors.get(job.family).execute(job)
        except Exception as exc:
            logger.exception(
                "Executor raised",
                extra={"job_id": job.job_id, "family": job.family},
            )
            return ExecutionResult(False, describe_exception(exc))

    async def process_job(self, job: ClaimedJob) -> CompleteOutcome | None:
        """Run one job and report it; a failed report is logged, not raised."""
        started = self.clock()
        result = await self.execute(job)
        log_extra = {
            "job_id": job.job_id,
            "family": job.family,
            "attempt": job.attempt_count,
            "outcome": result.message,
            "duration_ms": int((self.clock() - started) * 1000),
        }
        if result.ok:
            logger.info("Job succeeded", extra=log_extra)
        else:
            logger.warning("Job failed", extra=log_extra)

        try:
            outcome = await self.queue.complete(
                job,
                success=result.ok,
                error=None if result.ok else result.message,
                result=result.result,
            )
        except WorkerAPIError as e:
            logger.error(
                "Completion failed",
                extra={"job_id": job.job_id, "family": job.family, "error": str(e)},
            )
            return None

        if outcome.ignored:
            logger.warning(
                "Completion ignored",
                extra={"job_id": job.job_id, "reason": outcome.reason},
            )
        return outcome

    # Wake scheduling
    async def refresh_polled_state(self) -> None:
        """Without the wake stream, read the aggregate once per loop."""
        try:
            self._polled_state = await self.queue.wake_state()
            self._polled_ok = True
        except WorkerAPIError as e:
            logger.warning("Wake state poll failed", extra={"error": str(e)})
            self._polled_ok = False

    def claimable_state(self, state: WakeState | None) -> WakeState | None:
        """Hide seat audit readiness until its poll interval is up."""
        if state is None or self.seat_audit_due() or SEAT_AUDIT not in state.families:
            return state
        families = {k: v for k, v in state.families.items() if k != SEAT_AUDIT}
        return state.model_copy(update={"families": families})

    def next_wake(self, processed: int | None = None) -> WakeDecision:
        """
        Pick the delay before the next tick.

        ``processed`` is the job count of the tick just finished. When it is
        zero and the readiness aggregate is the same object that already
        triggered an immediate wake, that readiness was stale; the worker then
        sleeps the jittered fallback until the feed delivers something newer.
        """
        if self.wake is not None:
            state, connected = self.wake.state, self.wake.connected
        else:
            state, connected = self._polled_state, self._polled_ok
        # A failing API is treated like a lost feed: back off with jitter
        connected = connected and not self._claim_failed
        decision = compute_queue_wake_delay(
            self.claimable_state(state),
            connected,
            self.settings.wake_fallback_min_ms,
            self.settings.wake_fallback_max_ms,
        )
        if decision.reason == "ready_jobs":
            if processed == 0 and state is self._ready_state:
                decision = compute_queue_wake_delay(
                    None,
                    False,
                    self.settings.wake_fallback_min_ms,
                    self.settings.wake_fallback_max_ms,
                )
            else:
                self._ready_state = state
        seat_audit_ms = self.ms_until_seat_audit()
        if seat_audit_ms < decision.delay_ms:
            return WakeDecision(seat_audit_ms, decision.reason)
        return decision

    async def sleep(self, delay_ms: int) -> None:
        """Sleep until the delay passes, the wake feed changes or shutdown."""
        if delay_ms <= 0 or self._stop.is_set():
            return
        waiters = [asyncio.create_task(self._stop.wait())]
        if self.wake is not None:
            self.wake.changed.clear()
            waiters.append(asyncio.create_task(self.wake.changed.wait()))
        try:
            await asyncio.wait(
                waiters, timeout=delay_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    # Run loop
    def request_shutdown(self) -> None:
        logger.info("Shutdown requested", extra={"state": self.lifecycle.state.value})
        self.lifecycle.request_shutdown()
        self._stop.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda *_: self.request_shutdown())

    async def run(self) -> None:
        logger.info(
            "Starting queue worker",
            extra={
                "worker_id": self.settings.worker_id,
                "api_base_url": self.settings.api_base_url,
                "wake_stream": self.wake is not None,
            },
        )
        if self.wake is not None:
            self.wake.start()
        try:
            while self.lifecycle.should_continue():
                processed = await self.tick()
                if not self.lifecycle.should_continue():
                    break
                if self.wake is None:
                    await self.refresh_polled_state()
                decision = self.next_wake(processed)
                logger.debug(
                    "Next wake scheduled",
                    extra={"delay_ms": decision.delay_ms, "reason": decision.reason},
                )
                await self.sleep(decision.delay_ms)
        finally:
            if self.wake is not None:
                await self.wake.stop()
            logger.info("Queue worker stopped", extra={"state": self.lifecycle.state.value})


async def run_worker(settings: WorkerSettings) -> None:
    """Build the worker from settings and run it until a signal stops it."""
    async with QueueClient(settings) as queue:
        wake = None
        if settings.wake_stream_enabled:
            wake = QueueWakeClient(
                WakeFeed(queue.stream_wake_lines, settings.wake_reconnect_delay_ms),
                settings.wake_fallback_min_ms,
                settings.wake_fallback_max_ms,
            )
        worker = QueueWorker(settings, queue, build_executor_registry(), wake=wake)
        worker.install_signal_handlers()
        await worker.run()
