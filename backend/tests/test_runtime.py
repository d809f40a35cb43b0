"""Timers, per-enrollment locks, send throttling and sender loading."""
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.core.config import EngineConfig, Settings
from app.services.channel_sender import ChannelSender, LoggingChannelSender, ThrottledSender, load_sender
from app.services.locks import EnrollmentLocks
from app.services.timers import AsyncioTimer, CeleryTimer, Timer
from factories import START


class TestAsyncioTimer:

    @pytest.mark.asyncio
    async def test_fires_callback(self, clock):
        woken = []

        async def callback(enrollment_id):
            woken.append(enrollment_id)

        timer = AsyncioTimer(callback, clock=clock)
        timer.schedule("enr_1", clock.now())
        await asyncio.sleep(0.05)
        assert woken == ["enr_1"]
        assert len(timer) == 0

    @pytest.mark.asyncio
    async def test_reschedule_and_cancel(self, clock):
        async def callback(enrollment_id):
            raise AssertionError("should not fire")

        timer = AsyncioTimer(callback, clock=clock)
        timer.schedule("enr_1", clock.now() + timedelta(hours=1))
        timer.schedule("enr_1", clock.now() + timedelta(hours=2))
        timer.schedule("enr_2", clock.now() + timedelta(hours=1))
        assert len(timer) == 2

        timer.cancel("enr_1")
        assert len(timer) == 1
        timer.cancel_all()
        assert len(timer) == 0

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, clock):
        async def callback(enrollment_id):
            raise RuntimeError("boom")

        timer = AsyncioTimer(callback, clock=clock)
        timer.schedule("enr_1", clock.now())
        await asyncio.sleep(0.05)
        assert len(timer) == 0


class TestCeleryTimer:

    def test_queues_advance_with_eta(self):
        task = MagicMock()
        with patch("app.tasks.advance_enrollment_task", task):
            CeleryTimer().schedule("enr_1", START)
        task.apply_async.assert_called_once_with(args=["enr_1"], eta=START)

    def test_timer_must_implement_schedule(self):
        class Incomplete(Timer):
            pass

        with pytest.raises(TypeError):
            Incomplete()


class TestEnrollmentLocks:

    @pytest.mark.asyncio
    async def test_same_enrollment_is_serialized(self):
        locks = EnrollmentLocks()
        order = []

        async def worker(name):
            async with locks.hold("enr_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_enrollments_do_not_contend(self):
        locks = EnrollmentLocks()
        async with locks.hold("enr_1"):
            async with locks.hold("enr_2"):
                assert len(locks) == 2
        assert len(locks) == 0


class TestSenders:

    @pytest.mark.asyncio
    async def test_throttled_sender_caps_concurrency(self):
        class SlowSender(ChannelSender):
            def __init__(self):
                self.in_flight = 0
                self.peak = 0

            async def send(self, channel, target_id, content_ref, subject_ref=None, idempotency_key=None):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return await LoggingChannelSender().send(channel, target_id, content_ref)

        inner = SlowSender()
        sender = ThrottledSender(inner, max_concurrent_sends=2)
        receipts = await asyncio.gather(*[sender.send("email", f"lead_{i}", "hello") for i in range(6)])

        assert len(receipts) == 6
        assert inner.peak == 2

    def test_load_sender(self):
        assert isinstance(load_sender("app.services.channel_sender.LoggingChannelSender"), LoggingChannelSender)
        with pytest.raises(ValueError):
            load_sender("LoggingChannelSender")
        with pytest.raises(TypeError):
            load_sender("app.core.clock.Clock")


class TestEngineConfig:

    def test_backoff_doubles_and_caps(self):
        config = EngineConfig(retry_base_delay_seconds=30, retry_max_delay_seconds=100)
        assert [config.backoff(n).total_seconds() for n in (1, 2, 3, 4)] == [30, 60, 100, 100]

    def test_from_settings(self):
        settings = Settings(MAX_SEND_ATTEMPTS=3, EVENT_DEDUPE_WINDOW_SECONDS=2)
        config = EngineConfig.from_settings(settings)
        assert config.max_send_attempts == 3
        assert config.dedupe_window == timedelta(seconds=2)
