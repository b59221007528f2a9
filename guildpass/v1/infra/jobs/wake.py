"""
Server-sent events feed of queue readiness.

Each connection recomputes the wake state on an interval, pushes a ``wake``
event whenever the per-family aggregate changes and a comment heartbeat
otherwise, so idle connections are kept open through proxies.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guildpass.v1.infra.jobs.schemas import WakeStateResponse
from guildpass.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)

WAKE_EVENT = "wake"
HEARTBEAT = ": keepalive\n\n"


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


def state_fingerprint(state: WakeStateResponse) -> str:
    return json.dumps(
        {name: fam.model_dump() for name, fam in sorted(state.families.items())},
        sort_keys=True,
    )


async def wake_event_stream(
    session_factory: async_sessionmaker[AsyncSession],
    job_service: JobService,
    interval_ms: int,
    is_disconnected: Callable[[], Awaitable[bool]],
    max_events: int | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client goes away or ``max_events`` is reached."""
    last_fingerprint: str | None = None
    sent = 0
    while True:
        if await is_disconnected():
            break

        async with session_factory() as session:
            state = await job_service.wake_state(session)

        fingerprint = state_fingerprint(state)
        if fingerprint != last_fingerprint:
            last_fingerprint = fingerprint
            yield format_sse(WAKE_EVENT, state.model_dump())
            sent += 1
            if max_events is not None and sent >= max_events:
                break
        else:
            yield HEARTBEAT

        await asyncio.sleep(interval_ms / 1000)

    logger.debug("Wake stream closed", extra={"events_sent": sent})
