import asyncio
import json

import pytest

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.schemas import WakeFamilyState, WakeState
from guildpass_worker.wake import (
    Disposer,
    QueueWakeClient,
    SSEDecoder,
    SSEEvent,
    WakeDecision,
    WakeFeed,
    compute_queue_wake_delay,
    jitter_ms,
    parse_sse_lines,
    parse_wake_event,
)

SERVER_NOW = 1_700_000_000_000


def wake_state(**families) -> WakeState:
    return WakeState(
        families={name: WakeFamilyState(**f) for name, f in families.items()},
        server_now=SERVER_NOW,
    )


def wake_lines(state: WakeState) -> list[str]:
    return ["event: wake", f"data: {json.dumps(state.model_dump())}", ""]


class TestComputeDelay:
    def test_ready_jobs_wake_immediately(self):
        state = wake_state(
            role_sync={"pending_ready": 2},
            seat_audit={"next_run_after": SERVER_NOW + 700},
        )
        assert compute_queue_wake_delay(state, True, 250, 1000) == WakeDecision(
            0, "ready_jobs"
        )

    def test_sleeps_until_earliest_due(self):
        state = wake_state(
            role_sync={"next_run_after": SERVER_NOW + 5000},
            signal_mirror={"next_run_after": SERVER_NOW + 700},
        )
        assert compute_queue_wake_delay(state, True, 250, 1000) == WakeDecision(
            700, "next_due"
        )

    def test_past_due_is_clamped_to_zero(self):
        state = wake_state(role_sync={"next_run_after": SERVER_NOW - 50})
        assert compute_queue_wake_delay(state, True, 250, 1000).delay_ms == 0

    def test_idle_queue_falls_back_to_jitter(self):
        state = wake_state(role_sync={})
        decision = compute_queue_wake_delay(
            state, True, 250, 1000, random=lambda: 0.5
        )
        assert decision == WakeDecision(625, "fallback")

    def test_disconnected_ignores_state(self):
        state = wake_state(role_sync={"pending_ready": 5})
        decision = compute_queue_wake_delay(state, False, 250, 1000, random=lambda: 0.0)
        assert decision == WakeDecision(250, "fallback")
        assert compute_queue_wake_delay(None, True, 250, 1000, random=lambda: 0.0) == (
            WakeDecision(250, "fallback")
        )

    def test_jitter_bounds(self):
        assert jitter_ms(250, 1000, lambda: 0.0) == 250
        assert jitter_ms(250, 1000, lambda: 0.999999) == 999
        assert jitter_ms(500, 500, lambda: 0.7) == 500
        assert jitter_ms(500, 100, lambda: 0.7) == 500


class TestSSE:
    def test_decodes_events_and_skips_comments(self):
        lines = [
            ": keepalive",
            "",
            "event: wake",
            "data: {\"a\":",
            "data: 1}",
            "",
            "data: plain",
            "",
        ]
        assert list(parse_sse_lines(lines)) == [
            SSEEvent("wake", '{"a":\n1}'),
            SSEEvent("message", "plain"),
        ]

    def test_incomplete_event_is_held(self):
        decoder = SSEDecoder()
        assert decoder.decode("event: wake\n") is None
        assert decoder.decode("data: {}\r\n") is None
        assert decoder.decode("\n") == SSEEvent("wake", "{}")

    def test_parse_wake_event(self):
        state = wake_state(role_sync={"pending_ready": 1})
        event = SSEEvent("wake", json.dumps(state.model_dump()))
        assert parse_wake_event(event) == state
        assert parse_wake_event(SSEEvent("other", "{}")) is None
        assert parse_wake_event(SSEEvent("wake", "not json")) is None
        assert parse_wake_event(SSEEvent("wake", '{"families": {}}')) is None


def test_disposer_runs_once():
    calls = []
    dispose = Disposer(lambda: calls.append(1))

    assert not dispose.disposed
    dispose()
    dispose()

    assert dispose.disposed
    assert calls == [1]


class TestWakeFeed:
    async def test_emits_state_and_connectivity(self):
        state = wake_state(role_sync={"pending_ready": 1})
        opened = 0

        async def open_lines():
            nonlocal opened
            opened += 1
            for line in wake_lines(state):
                yield line

        feed = WakeFeed(open_lines, reconnect_delay_ms=10)
        states, connectivity = [], []
        got_state = asyncio.Event()
        disconnected = asyncio.Event()

        def on_state(value):
            states.append(value)
            got_state.set()

        def on_connectivity(value):
            connectivity.append(value)
            if value is False:
                disconnected.set()

        dispose_state = feed.subscribe_state(on_state)
        dispose_conn = feed.subscribe_connectivity(on_connectivity)
        await asyncio.wait_for(got_state.wait(), 1)
        await asyncio.wait_for(disconnected.wait(), 1)
        dispose_state()
        dispose_conn()

        assert states[0] == state
        assert connectivity[:2] == [True, False]
        assert opened >= 1

    async def test_errors_report_disconnected_and_retry(self):
        attempts = 0
        retried = asyncio.Event()

        async def open_lines():
            nonlocal attempts
            attempts += 1
            if attempts >= 2:
                retried.set()
            raise WorkerAPIError("Wake stream rejected: 401", status_code=401)
            yield ""

        feed = WakeFeed(open_lines, reconnect_delay_ms=10)
        connectivity = []
        dispose = feed.subscribe_connectivity(connectivity.append)
        await asyncio.wait_for(retried.wait(), 1)
        dispose()

        assert connectivity and set(connectivity) == {False}

    async def test_unexpected_errors_keep_the_feed_alive(self):
        state = wake_state(role_sync={"pending_ready": 1})
        attempts = 0
        got_state = asyncio.Event()

        async def open_lines():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                yield "event: wake"
                raise RuntimeError("connection reset mid-frame")
            for line in wake_lines(state):
                yield line

        feed = WakeFeed(open_lines, reconnect_delay_ms=10)
        connectivity, states = [], []

        def on_state(value):
            states.append(value)
            got_state.set()

        dispose_conn = feed.subscribe_connectivity(connectivity.append)
        dispose_state = feed.subscribe_state(on_state)
        await asyncio.wait_for(got_state.wait(), 1)
        dispose_state()
        dispose_conn()

        assert attempts >= 2
        assert connectivity[:3] == [True, False, True]
        assert states[0] == state


class FakeFeed:
    def __init__(self):
        self.state_callbacks = []
        self.connectivity_callbacks = []

    def subscribe_state(self, callback):
        self.state_callbacks.append(callback)
        return Disposer(lambda: self.state_callbacks.remove(callback))

    def subscribe_connectivity(self, callback):
        self.connectivity_callbacks.append(callback)
        return Disposer(lambda: self.connectivity_callbacks.remove(callback))


class TestQueueWakeClient:
    def test_apply_merges_updates(self):
        client = QueueWakeClient(FakeFeed(), 250, 1000)
        seen = []
        client.subscribe(seen.append)
        state = wake_state(role_sync={"pending_ready": 1})

        client.apply("state", state)
        client.apply("connected", True)
        client.apply("connected", True)

        assert seen == [(state, False), (state, True)]
        assert client.next_wake() == WakeDecision(0, "ready_jobs")

        client.apply("connected", False)
        assert client.next_wake(random=lambda: 0.0) == WakeDecision(250, "fallback")

    async def test_feed_updates_wake_a_waiting_worker(self):
        feed = FakeFeed()
        client = QueueWakeClient(feed, 250, 1000)
        client.start()

        waiter = asyncio.create_task(client.wait(10_000))
        await asyncio.sleep(0)
        for callback in feed.connectivity_callbacks:
            callback(True)

        assert await asyncio.wait_for(waiter, 1) is True
        assert client.connected is True

        await client.stop()
        assert feed.state_callbacks == []
        assert feed.connectivity_callbacks == []

    async def test_wait_times_out(self):
        client = QueueWakeClient(FakeFeed(), 250, 1000)
        assert await client.wait(10) is False
        assert await client.wait(0) is False


@pytest.mark.parametrize("connected", [True, False])
def test_decision_is_deterministic_for_fixed_random(connected):
    state = wake_state(role_sync={})
    first = compute_queue_wake_delay(state, connected, 250, 1000, random=lambda: 0.25)
    second = compute_queue_wake_delay(state, connected, 250, 1000, random=lambda: 0.25)
    assert first == second == WakeDecision(437, "fallback")


@pytest.mark.parametrize(
    "families,server_now,connected,expected",
    [
        ({"role_sync": {"pending_ready": 1, "next_run_after": 2000}}, 1000, True, (0, "ready_jobs")),
        (
            {"role_sync": {"next_run_after": 1700}, "seat_audit": {"next_run_after": 2100}},
            1000,
            True,
            (700, "next_due"),
        ),
        ({"role_sync": {"pending_ready": 1}}, 1000, False, (625, "fallback")),
    ],
)
def test_reference_fixtures(families, server_now, connected, expected):
    state = WakeState(
        families={k: WakeFamilyState(**v) for k, v in families.items()},
        server_now=server_now,
    )
    decision = compute_queue_wake_delay(state, connected, 250, 1000, random=lambda: 0.5)
    assert (decision.delay_ms, decision.reason) == expected
