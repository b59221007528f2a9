"""
In-process maintenance loops: seat audit scheduling, snapshot freshness,
fixed-term expiry and (when a lease TTL is configured) lease reclaim.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guildpass.config.settings import Settings
from guildpass.v1.accounts.service import AccountService
from guildpass.v1.infra.jobs.service import JobService
from guildpass.v1.seat_audit.service import SeatAuditService

logger = logging.getLogger(__name__)

SweepFn = Callable[[AsyncSession], Awaitable[Any]]


class MaintenanceSweeper:
    """
    Periodic sweeps that keep the queue fed without an external scheduler.

    Each sweep runs in its own loop and session; an error in one pass is
    logged and the loop carries on at its next interval.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.running = False
        self._task: asyncio.Task | None = None

        job_service = JobService(settings)
        self.job_service = job_service
        self.seat_audit = SeatAuditService(settings, job_service)
        self.accounts = AccountService(settings)

    def sweeps(self) -> list[tuple[str, int, SweepFn]]:
        sweeps: list[tuple[str, int, SweepFn]] = [
            (
                "seat_audit_due",
                self.settings.sweeper_seat_audit_interval_s,
                lambda session: self.seat_audit.enqueue_due(session),
            ),
            (
                "snapshot_status",
                self.settings.sweeper_snapshot_status_interval_s,
                lambda session: self.seat_audit.refresh_snapshot_statuses(session),
            ),
            (
                "fixed_term_expiry",
                self.settings.sweeper_subscription_expiry_interval_s,
                lambda session: self.accounts.expire_fixed_term_subscriptions(session),
            ),
        ]
        if self.settings.job_lease_ttl_s > 0:
            sweeps.append(
                (
                    "lease_reclaim",
                    self.settings.sweeper_lease_reclaim_interval_s,
                    lambda session: self.job_service.reclaim_expired_leases(
                        session, self.settings.job_lease_ttl_s
                    ),
                )
            )
        return sweeps

    def start(self) -> None:
        """Start all sweep loops in the background."""
        if self.running:
            raise RuntimeError("Sweeper is already running")

        self.running = True
        sweeps = self.sweeps()
        logger.info(
            "Starting maintenance sweeper",
            extra={"sweeps": [name for name, _, _ in sweeps]},
        )
        self._task = asyncio.create_task(self._run(sweeps))

    async def stop(self) -> None:
        """Stop the loops and wait for the current passes to unwind."""
        logger.info("Stopping maintenance sweeper")
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self, sweeps: list[tuple[str, int, SweepFn]]) -> None:
        await asyncio.gather(
            *(self._loop(name, interval_s, fn) for name, interval_s, fn in sweeps)
        )

    async def run_once(self, name: str) -> Any:
        """Run one sweep pass by name."""
        for sweep_name, _, fn in self.sweeps():
            if sweep_name == name:
                async with self.session_factory() as session:
                    return await fn(session)
        raise KeyError(f"Unknown sweep: {name}")

    async def _loop(self, name: str, interval_s: int, fn: SweepFn) -> None:
        while self.running:
            try:
                async with self.session_factory() as session:
                    result = await fn(session)
                logger.debug(
                    "Sweep pass finished",
                    extra={"sweep": name, "result": str(result)},
                )
            except Exception:
                logger.exception("Sweep pass failed", extra={"sweep": name})

            await asyncio.sleep(max(1, interval_s))
