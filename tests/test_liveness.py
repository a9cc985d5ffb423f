"""Reconnect backoff, latency window and the heartbeat sweep."""

import pytest

from auth_gate import AuthGate
from liveness import HeartbeatMonitor, LatencyTracker, ReconnectPolicy
from sessions import SessionRegistry
from transport import TransportRouter


class TestReconnectPolicy:
    def test_delay_schedule(self):
        policy = ReconnectPolicy()
        delays = [policy.next_delay() for _ in range(11)]
        assert delays[:6] == pytest.approx([1.0, 1.5, 2.25, 3.375, 5.0625, 7.59375])
        assert delays[6:10] == [10.0, 10.0, 10.0, 10.0]
        assert delays[10] is None
        assert policy.exhausted

    def test_reset(self):
        policy = ReconnectPolicy(max_attempts=2)
        policy.next_delay()
        policy.next_delay()
        assert policy.next_delay() is None
        policy.reset()
        assert policy.next_delay() == 1.0

    def test_delays_never_decrease(self):
        policy = ReconnectPolicy(base=0.5, growth=2.0, cap=7.0, max_attempts=20)
        delays = [policy.delay(n) for n in range(1, 21)]
        assert delays == sorted(delays)
        assert max(delays) == 7.0


class TestLatencyTracker:
    def test_empty(self):
        assert LatencyTracker().average is None

    def test_window_keeps_last_samples(self):
        tracker = LatencyTracker(window=10)
        for ms in range(1, 21):
            tracker.add(ms)
        # last ten: 11..20
        assert tracker.average == 16
        assert len(tracker.samples) == 10

    def test_negative_samples_clamped(self):
        tracker = LatencyTracker()
        tracker.add(-30)
        tracker.add(30)
        assert tracker.average == 15


@pytest.fixture
def router():
    registry = SessionRegistry()
    return TransportRouter(registry, AuthGate(registry, None, pin=None, computer_name="Desk"))


class TestHeartbeat:
    async def test_tick_pings_then_terminates_silent_sessions(self, router, fake_transport):
        chatty, silent = fake_transport(), fake_transport()
        a = await router.open_session(chatty)
        b = await router.open_session(silent)
        monitor = HeartbeatMonitor(router, interval=30)

        await monitor.tick()
        assert chatty.of_type("ping") and silent.of_type("ping")
        assert not a.alive and not b.alive

        await router.on_message(a.session_id, '{"type": "pong", "time": 1}')
        await monitor.tick()

        assert silent.closed
        assert b.session_id not in router.registry
        assert not chatty.closed
        assert len(chatty.of_type("ping")) == 2

    async def test_any_message_counts_as_alive(self, router, fake_transport):
        transport = fake_transport()
        session = await router.open_session(transport)
        monitor = HeartbeatMonitor(router)
        await monitor.tick()
        await router.on_message(session.session_id, '{"type": "mouse", "action": "left"}')
        await monitor.tick()
        assert session.session_id in router.registry

    async def test_start_stop(self, router):
        monitor = HeartbeatMonitor(router, interval=0.01)
        monitor.start()
        assert monitor.is_running()
        await monitor.stop()
        assert not monitor.is_running()
