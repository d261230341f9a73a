"""
Tests for the playback engine.
"""

import asyncio

import pytest

from code_timeline.shared.errors import InvalidSeekTarget
from code_timeline.shared.protocol import EventKind
from code_timeline.server.timeline import PlaybackConfig, PlaybackEngine, PlaybackState

SESSION_END = 12_000


class Collector:
    """Gathers emitted events and signals completion."""

    def __init__(self):
        self.events = []
        self.completed = asyncio.Event()
        self.completed_session = None

    async def on_event(self, event):
        self.events.append(event)

    async def on_complete(self, session):
        self.completed_session = session
        self.completed.set()

    async def wait(self, timeout=5.0):
        await asyncio.wait_for(self.completed.wait(), timeout=timeout)

    @property
    def keys(self):
        return [e.sort_key for e in self.events]


@pytest.fixture
def recorded(database, session, event_log):
    """A closed session with 100 events, several sharing timestamps."""
    for i in range(100):
        kind = EventKind.TERMINAL if i % 10 == 0 else EventKind.EDIT
        event_log.append(kind, f"file{i % 3}.py", {"i": i}, timestamp=1_000 + (i // 2) * 200)
    database.end_session(session, end_time=SESSION_END)
    return event_log


def make_engine(event_log, **overrides):
    config = PlaybackConfig(tick_interval_s=0.01, **overrides)
    return PlaybackEngine(event_log, config)


def start_collecting(engine, speed=None, kinds=None):
    playback = engine.create_session(speed=speed, kinds=kinds)
    collector = Collector()
    engine.add_callback(playback.playback_id, collector.on_event)
    engine.add_completion_callback(playback.playback_id, collector.on_complete)
    return playback, collector


class TestPlay:
    """Tests for ordered, exactly-once emission."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("speed", [1_000.0, 1_000_000.0])
    async def test_emits_every_event_once_in_order(self, recorded, speed):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=speed)

        await engine.play(playback.playback_id)
        await collector.wait()

        expected = [e.sort_key for e in recorded.range()]
        assert collector.keys == expected
        assert len(set(collector.keys)) == 100
        assert playback.state == PlaybackState.COMPLETED
        assert collector.completed_session is playback

        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_play_from_timestamp(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=100_000)

        await engine.play(playback.playback_id, from_timestamp=5_000)
        await collector.wait()

        assert collector.keys == [e.sort_key for e in recorded.range(5_000)]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_kind_filter(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=100_000, kinds=[EventKind.TERMINAL])

        await engine.play(playback.playback_id)
        await collector.wait()

        assert len(collector.events) == 10
        assert all(e.kind == EventKind.TERMINAL for e in collector.events)
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_small_batches_do_not_skip_ties(self, recorded):
        engine = make_engine(recorded, batch_size=3)
        playback, collector = start_collecting(engine, speed=100_000)

        await engine.play(playback.playback_id)
        await collector.wait()

        assert collector.keys == [e.sort_key for e in recorded.range()]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_play_after_completion_restarts(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=100_000)

        await engine.play(playback.playback_id)
        await collector.wait()

        collector.completed.clear()
        await engine.play(playback.playback_id)
        await collector.wait()

        assert len(collector.events) == 200
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_empty_session_completes(self, database, session, event_log):
        database.end_session(session, end_time=2_000)
        engine = make_engine(event_log)
        playback, collector = start_collecting(engine, speed=1_000)

        await engine.play(playback.playback_id)
        await collector.wait()

        assert collector.events == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, recorded):
        engine = make_engine(recorded)
        fast, fast_events = start_collecting(engine, speed=100_000)
        slow, slow_events = start_collecting(engine, speed=1)

        await engine.play(slow.playback_id)
        await engine.play(fast.playback_id)
        await fast_events.wait()

        assert len(fast_events.events) == 100
        assert len(slow_events.events) < 100
        assert slow.state == PlaybackState.PLAYING

        await engine.shutdown()

    def test_invalid_speed_rejected(self, recorded):
        engine = make_engine(recorded)
        playback = engine.create_session()

        for speed in (0, -1, float("nan"), float("inf")):
            with pytest.raises(ValueError):
                engine.set_speed(playback.playback_id, speed)
        assert playback.speed == 1.0

    def test_create_session_defaults(self, recorded):
        engine = make_engine(recorded, default_speed=2.0)
        playback = engine.create_session()

        assert playback.playback_id == "playback-1"
        assert playback.state == PlaybackState.IDLE
        assert playback.speed == 2.0
        assert playback.cursor == 1_000
        assert engine.create_session().playback_id == "playback-2"


class TestPauseResume:
    """Tests for pausing without losing position."""

    @pytest.mark.asyncio
    async def test_pause_resume_no_skip_no_duplicate(self, recorded):
        engine = make_engine(recorded)
        # 10.8s of session at 20x is about half a second of real time
        playback, collector = start_collecting(engine, speed=20)

        await engine.play(playback.playback_id)
        await asyncio.sleep(0.15)
        await engine.pause(playback.playback_id)

        assert playback.state == PlaybackState.PAUSED
        paused_at = playback.cursor
        emitted = len(collector.events)

        await asyncio.sleep(0.1)
        assert len(collector.events) == emitted
        assert playback.cursor == paused_at

        # Pausing again is a no-op
        await engine.pause(playback.playback_id)

        await engine.resume(playback.playback_id)
        await collector.wait()

        assert collector.keys == [e.sort_key for e in recorded.range()]
        await engine.shutdown()


class TestSeek:
    """Tests for seeking."""

    @pytest.mark.asyncio
    async def test_seek_returns_context_without_playing(self, recorded):
        engine = make_engine(recorded, seek_window_ms=200)
        playback, collector = start_collecting(engine)

        context = await engine.seek(playback.playback_id, 5_000)

        assert [e.timestamp for e in context] == [4_800, 4_800, 5_000, 5_000, 5_200, 5_200]
        assert playback.state == PlaybackState.PAUSED
        assert playback.cursor == 5_000
        assert collector.events == []

    @pytest.mark.asyncio
    async def test_seek_then_play_only_emits_later_events(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=100_000)

        await engine.seek(playback.playback_id, 5_000)
        await engine.play(playback.playback_id)
        await collector.wait()

        assert all(e.timestamp >= 5_000 for e in collector.events)
        assert collector.keys == [e.sort_key for e in recorded.range(5_000)]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_seek_while_playing_keeps_playing(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=1)

        await engine.play(playback.playback_id)
        await engine.seek(playback.playback_id, 10_000)
        assert playback.state == PlaybackState.PLAYING

        engine.set_speed(playback.playback_id, 100_000)
        await collector.wait()

        late = [e for e in collector.events if e.timestamp >= 10_000]
        assert [e.sort_key for e in late] == [e.sort_key for e in recorded.range(10_000)]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_seek_clamps_by_default(self, recorded):
        engine = make_engine(recorded)
        playback = engine.create_session()

        await engine.seek(playback.playback_id, 50_000)
        assert playback.cursor == SESSION_END

        await engine.seek(playback.playback_id, -5)
        assert playback.cursor == 1_000

    @pytest.mark.asyncio
    async def test_seek_reject_policy(self, recorded):
        engine = make_engine(recorded, seek_policy="reject")
        playback = engine.create_session()

        with pytest.raises(InvalidSeekTarget) as exc_info:
            await engine.seek(playback.playback_id, 50_000)

        assert exc_info.value.bounds == (1_000, SESSION_END)
        assert playback.cursor == 1_000

        with pytest.raises(InvalidSeekTarget):
            await engine.play(playback.playback_id, from_timestamp=0)
        assert playback.state == PlaybackState.PAUSED

    @pytest.mark.asyncio
    async def test_seek_unknown_session(self, recorded):
        engine = make_engine(recorded)

        with pytest.raises(KeyError):
            await engine.seek("playback-99", 5_000)


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_mid_play_returns_to_idle(self, recorded):
        engine = make_engine(recorded)
        playback, collector = start_collecting(engine, speed=20)

        await engine.play(playback.playback_id)
        await asyncio.sleep(0.1)
        await engine.cancel(playback.playback_id)

        emitted = len(collector.events)
        await asyncio.sleep(0.1)

        assert playback.state == PlaybackState.IDLE
        assert playback.cursor == 1_000
        assert len(collector.events) == emitted
        assert not collector.completed.is_set()

    @pytest.mark.asyncio
    async def test_cancel_from_inside_callback(self, recorded):
        engine = make_engine(recorded)
        playback = engine.create_session(speed=100_000)
        seen = []

        async def cancel_on_third(event):
            seen.append(event)
            if len(seen) == 3:
                await engine.cancel(playback.playback_id)

        engine.add_callback(playback.playback_id, cancel_on_third)
        await engine.play(playback.playback_id)
        await asyncio.sleep(0.1)

        assert len(seen) == 3
        assert playback.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_is_safe_from_any_state(self, recorded):
        engine = make_engine(recorded)
        playback = engine.create_session()

        await engine.cancel(playback.playback_id)
        await engine.cancel(playback.playback_id)
        await engine.cancel("playback-unknown")

        assert playback.state == PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_delete_session(self, recorded):
        engine = make_engine(recorded)
        playback, _ = start_collecting(engine, speed=1)

        await engine.play(playback.playback_id)
        await engine.delete_session(playback.playback_id)

        assert engine.get_session(playback.playback_id) is None


class TestBounds:
    """Tests for session bounds and timeline."""

    def test_closed_session_bounds(self, recorded):
        assert make_engine(recorded).bounds() == (1_000, SESSION_END)

    def test_open_session_runs_to_now(self, event_log):
        event_log.append(EventKind.EDIT, "a.py", timestamp=2_000)

        start, end = make_engine(event_log).bounds()

        assert start == 1_000
        assert end > 2_000

    def test_timeline_buckets_cover_all_events(self, recorded):
        buckets = make_engine(recorded).get_timeline(bucket_ms=1_000)
        assert sum(b["total"] for b in buckets) == 100


@pytest.fixture
def evenly_spaced(database, session, event_log):
    """A closed session with 20 events, 100ms apart from 1000."""
    for i in range(20):
        event_log.append(EventKind.EDIT, "main.py", {"i": i}, timestamp=1_000 + i * 100)
    database.end_session(session, end_time=3_000)
    return event_log


class TestSlowSubscribers:
    """Tests for control calls that land while a callback is still running."""

    @pytest.mark.asyncio
    async def test_pause_during_callback_delivers_that_event(self, evenly_spaced):
        engine = make_engine(evenly_spaced)
        playback = engine.create_session(speed=100_000)
        received = []
        fifth_started = asyncio.Event()
        done = asyncio.Event()

        async def slow_subscriber(event):
            if event.payload["i"] == 5:
                fifth_started.set()
            await asyncio.sleep(0.05)
            received.append(event.payload["i"])

        async def on_complete(_):
            done.set()

        engine.add_callback(playback.playback_id, slow_subscriber)
        engine.add_completion_callback(playback.playback_id, on_complete)

        await engine.play(playback.playback_id)
        await asyncio.wait_for(fifth_started.wait(), timeout=5.0)
        await engine.pause(playback.playback_id)

        assert playback.state == PlaybackState.PAUSED
        assert received == [0, 1, 2, 3, 4, 5]

        await engine.resume(playback.playback_id)
        await asyncio.wait_for(done.wait(), timeout=5.0)

        assert received == list(range(20))
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_seek_from_inside_callback(self, evenly_spaced):
        engine = make_engine(evenly_spaced)
        playback = engine.create_session(speed=100_000)
        received = []
        done = asyncio.Event()

        async def seek_on_fifth(event):
            received.append(event.payload["i"])
            if event.payload["i"] == 5:
                await engine.seek(playback.playback_id, 1_800)

        async def on_complete(_):
            done.set()

        engine.add_callback(playback.playback_id, seek_on_fifth)
        engine.add_completion_callback(playback.playback_id, on_complete)

        await engine.play(playback.playback_id)
        await asyncio.wait_for(done.wait(), timeout=5.0)
        await asyncio.sleep(0.05)

        # Events 6 and 7 lie before the seek target and are never emitted
        assert received == [0, 1, 2, 3, 4, 5] + list(range(8, 20))
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_pause_then_play_from_inside_callback(self, evenly_spaced):
        engine = make_engine(evenly_spaced)
        playback = engine.create_session(speed=100_000)
        received = []
        done = asyncio.Event()

        async def restart_on_third(event):
            received.append(event.payload["i"])
            if event.payload["i"] == 3 and len(received) == 4:
                await engine.pause(playback.playback_id)
                await engine.play(playback.playback_id)

        async def on_complete(_):
            done.set()

        engine.add_callback(playback.playback_id, restart_on_third)
        engine.add_completion_callback(playback.playback_id, on_complete)

        await engine.play(playback.playback_id)
        await asyncio.wait_for(done.wait(), timeout=5.0)
        await asyncio.sleep(0.05)

        assert received == list(range(20))
        await engine.shutdown()
