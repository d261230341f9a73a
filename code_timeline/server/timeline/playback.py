"""
Playback engine for recorded sessions.

Drives a virtual clock across the event log and emits events to
subscribers as the clock reaches them.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
from enum import Enum
import asyncio
import logging
import math
import time

from code_timeline.shared.errors import InvalidSeekTarget
from code_timeline.shared.protocol import Event, EventKind, now_ms
from .event_log import EventLog

logger = logging.getLogger(__name__)


class PlaybackState(Enum):
    """Playback session state."""
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    SEEKING = "seeking"
    COMPLETED = "completed"


class SeekPolicy(Enum):
    CLAMP = "clamp"    # Move out-of-bounds targets to the nearest bound
    REJECT = "reject"  # Raise InvalidSeekTarget


@dataclass
class PlaybackConfig:
    default_speed: float = 1.0
    # Longest the clock loop sleeps; bounds how late pause/seek/cancel land
    tick_interval_s: float = 0.05
    # Half-width of the context window returned by seek
    seek_window_ms: int = 1000
    seek_policy: str = "clamp"
    batch_size: int = 500


@dataclass
class PlaybackSession:
    """One cursor over the event log with its own speed and state."""
    playback_id: str
    cursor: float  # Virtual clock, session milliseconds
    state: PlaybackState = PlaybackState.IDLE
    speed: float = 1.0
    kinds: List[EventKind] = field(default_factory=list)
    # (timestamp, sequence) of the last emitted event
    last_key: Tuple[float, int] = (float("-inf"), 0)
    emitted: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "playback_id": self.playback_id,
            "cursor": self.cursor,
            "state": self.state.value,
            "speed": self.speed,
            "kinds": [k.value for k in self.kinds],
            "emitted": self.emitted,
        }


EventCallback = Callable[[Event], Awaitable[None]]
CompletionCallback = Callable[[PlaybackSession], Awaitable[None]]


def validate_speed(speed: float) -> float:
    speed = float(speed)
    if not math.isfinite(speed) or speed <= 0:
        raise ValueError(f"Playback speed must be a positive number, got {speed}")
    return speed


class PlaybackEngine:
    """
    Engine for replaying a recorded session.

    Each playback session is an independent state machine:

        idle -> playing <-> paused -> ... -> completed
                   (seeking is transient, reachable from any state)

    Events are emitted exactly once per run, in (timestamp, sequence)
    order, whatever the speed. Pause, seek and cancel interrupt a clock
    task that is waiting, and let one that is delivering an event finish
    its callbacks first, so an event is never cut off mid-delivery.
    Playback only reads the log; any number of playback sessions can
    run against a store while it is being written.
    """

    def __init__(self, event_log: EventLog, config: Optional[PlaybackConfig] = None, metrics=None):
        self.event_log = event_log
        self.config = config or PlaybackConfig()
        self.seek_policy = SeekPolicy(self.config.seek_policy)
        self.metrics = metrics

        self.sessions: Dict[str, PlaybackSession] = {}
        self._playback_tasks: Dict[str, asyncio.Task] = {}
        # Tasks currently inside subscriber callbacks
        self._emitting: Set[asyncio.Task] = set()
        self._callbacks: Dict[str, List[EventCallback]] = {}
        self._completion_callbacks: Dict[str, List[CompletionCallback]] = {}
        self._next_playback_id = 1

    def create_session(
        self,
        speed: Optional[float] = None,
        kinds: Optional[List[EventKind]] = None,
    ) -> PlaybackSession:
        """
        Create a new playback session positioned at the session start.

        Args:
            speed: Speed multiplier, defaults to config.default_speed
            kinds: Optional filter for event kinds
        """
        playback_id = f"playback-{self._next_playback_id}"
        self._next_playback_id += 1

        start, _ = self.bounds()
        session = PlaybackSession(
            playback_id=playback_id,
            cursor=start,
            speed=validate_speed(speed if speed is not None else self.config.default_speed),
            kinds=[EventKind(k) for k in kinds] if kinds else [],
        )
        self._rewind(session, start)

        self.sessions[playback_id] = session
        self._callbacks[playback_id] = []
        self._completion_callbacks[playback_id] = []

        logger.info(f"Created playback session {playback_id} at {start} ({session.speed}x)")
        return session

    def get_session(self, playback_id: str) -> Optional[PlaybackSession]:
        return self.sessions.get(playback_id)

    def _require(self, playback_id: str) -> PlaybackSession:
        session = self.sessions.get(playback_id)
        if not session:
            raise KeyError(f"Playback session {playback_id} not found")
        return session

    async def delete_session(self, playback_id: str):
        """Stop and forget a playback session."""
        await self._stop_task(playback_id)
        self.sessions.pop(playback_id, None)
        self._callbacks.pop(playback_id, None)
        self._completion_callbacks.pop(playback_id, None)

    def add_callback(self, playback_id: str, callback: EventCallback):
        """Add an event callback for a session."""
        if playback_id in self._callbacks:
            self._callbacks[playback_id].append(callback)

    def add_completion_callback(self, playback_id: str, callback: CompletionCallback):
        if playback_id in self._completion_callbacks:
            self._completion_callbacks[playback_id].append(callback)

    # ==================== Bounds ====================

    def bounds(self) -> Tuple[int, int]:
        """
        Playable range of the recorded session.

        A closed session ends at its end time; an open one at the later
        of its last event and now.
        """
        recorded = self.event_log.db.get_session(self.event_log.session.id) or self.event_log.session
        first = self.event_log.range(limit=1)
        last = self.event_log.last_event()

        start = recorded.start_time
        if first and first[0].timestamp < start:
            start = first[0].timestamp

        if recorded.end_time is not None:
            end = recorded.end_time
        else:
            end = now_ms()
        if last and last.timestamp > end:
            end = last.timestamp

        return start, max(start, end)

    def _resolve_target(self, timestamp: float) -> float:
        start, end = self.bounds()
        if start <= timestamp <= end:
            return timestamp

        if self.seek_policy == SeekPolicy.REJECT:
            raise InvalidSeekTarget(timestamp, (start, end))

        clamped = max(start, min(end, timestamp))
        logger.debug(f"Clamped seek target {timestamp} to {clamped}")
        return clamped

    def _rewind(self, session: PlaybackSession, timestamp: float):
        """Position the cursor so the next event emitted is the first at or after timestamp."""
        session.cursor = timestamp
        # Sequences start at 1, so (t, 0) sorts before every event at t
        session.last_key = (timestamp, 0)

    # ==================== Control ====================

    async def play(
        self,
        playback_id: str,
        from_timestamp: Optional[float] = None,
        speed: Optional[float] = None,
    ):
        """
        Start or resume playback.

        Without from_timestamp, a paused session resumes from its cursor
        and an idle or completed one starts from the session start.
        """
        session = self._require(playback_id)

        if speed is not None:
            session.speed = validate_speed(speed)

        if from_timestamp is not None:
            await self._stop_task(playback_id)
            session.state = PlaybackState.SEEKING
            try:
                self._rewind(session, self._resolve_target(from_timestamp))
            except InvalidSeekTarget:
                session.state = PlaybackState.PAUSED
                raise
        elif session.state == PlaybackState.PLAYING:
            return  # Already playing
        elif session.state == PlaybackState.COMPLETED:
            self._rewind(session, self.bounds()[0])

        session.state = PlaybackState.PLAYING
        self._playback_tasks[playback_id] = asyncio.create_task(
            self._playback_loop(playback_id)
        )

        logger.info(f"Started playback {playback_id} at {session.cursor} ({session.speed}x)")

    async def resume(self, playback_id: str):
        await self.play(playback_id)

    async def pause(self, playback_id: str):
        """Pause playback, keeping the cursor. No-op unless playing."""
        session = self.sessions.get(playback_id)
        if not session or session.state != PlaybackState.PLAYING:
            return

        session.state = PlaybackState.PAUSED
        await self._stop_task(playback_id)

        logger.info(f"Paused playback {playback_id} at {session.cursor}")

    async def seek(self, playback_id: str, timestamp: float) -> List[Event]:
        """
        Seek to a specific timestamp.

        Stops the clock task once any in-flight delivery finishes and moves the
        cursor. A playing session keeps playing from the new position; any
        other session is left paused there.

        Returns:
            Events within seek_window_ms either side of the new cursor
        """
        session = self._require(playback_id)

        was_playing = session.state == PlaybackState.PLAYING
        previous = session.state

        await self._stop_task(playback_id)
        session.state = PlaybackState.SEEKING

        try:
            target = self._resolve_target(timestamp)
        except InvalidSeekTarget:
            session.state = PlaybackState.PAUSED if previous == PlaybackState.PLAYING else previous
            raise

        self._rewind(session, target)
        context = self.events_around(target, session.kinds)

        session.state = PlaybackState.PAUSED

        if was_playing:
            await self.play(playback_id)

        logger.info(f"Seeked playback {playback_id} to {target}")
        return context

    async def cancel(self, playback_id: str):
        """Stop playback and return to idle at the session start. Safe from any state."""
        session = self.sessions.get(playback_id)
        if not session:
            return

        session.state = PlaybackState.IDLE
        await self._stop_task(playback_id)
        self._rewind(session, self.bounds()[0])

        logger.info(f"Cancelled playback {playback_id}")

    def set_speed(self, playback_id: str, speed: float):
        """Set playback speed; a playing session picks it up on its next tick."""
        session = self._require(playback_id)
        session.speed = validate_speed(speed)
        logger.info(f"Set speed for playback {playback_id} to {session.speed}x")

    async def _stop_task(self, playback_id: str):
        task = self._playback_tasks.pop(playback_id, None)
        if task is None or task.done():
            return

        # A callback stopping its own playback just lets the loop see the new state
        if task is asyncio.current_task():
            return

        # Mid-delivery: wait for the callbacks, the loop then sees it lost the session
        if task in self._emitting:
            await task
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ==================== Clock loop ====================

    async def _playback_loop(self, playback_id: str):
        """Main playback loop."""
        session = self.sessions.get(playback_id)
        if not session:
            return

        task = asyncio.current_task()

        def owns_session() -> bool:
            # A seek or pause from inside a callback hands the session to a new task
            return self._playback_tasks.get(playback_id) is task and session.state == PlaybackState.PLAYING

        _, end = self.bounds()
        buffer: Deque[Event] = deque()
        exhausted = False
        last_real_time = time.monotonic()

        try:
            while owns_session():
                current_real_time = time.monotonic()
                real_elapsed = current_real_time - last_real_time
                last_real_time = current_real_time

                session.cursor = min(end, session.cursor + real_elapsed * 1000 * session.speed)

                # Emit events up to current time
                while owns_session():
                    if not buffer and not exhausted:
                        page = self.event_log.after(
                            session.last_key[0],
                            session.last_key[1],
                            to_timestamp=end,
                            kinds=session.kinds or None,
                            limit=self.config.batch_size,
                        )
                        buffer.extend(page)
                        exhausted = len(page) < self.config.batch_size

                    if not buffer or buffer[0].timestamp > session.cursor:
                        break

                    event = buffer.popleft()
                    session.last_key = event.sort_key
                    session.emitted += 1
                    self._emitting.add(task)
                    try:
                        await self._emit_event(playback_id, event)
                    finally:
                        self._emitting.discard(task)

                if not owns_session():
                    break

                if not buffer and exhausted:
                    await self._complete(playback_id, session)
                    break

                # Sleep until the next event is due, at most one tick
                wait = self.config.tick_interval_s
                if buffer:
                    due_in = (buffer[0].timestamp - session.cursor) / (1000 * session.speed)
                    wait = max(0.0, min(wait, due_in))
                await asyncio.sleep(wait)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Playback error for {playback_id}: {e}")
            if self._playback_tasks.get(playback_id) is task:
                self._playback_tasks.pop(playback_id, None)
                session.state = PlaybackState.PAUSED

    async def _complete(self, playback_id: str, session: PlaybackSession):
        session.state = PlaybackState.COMPLETED
        self._playback_tasks.pop(playback_id, None)
        logger.info(f"Playback {playback_id} completed after {session.emitted} events")

        for callback in list(self._completion_callbacks.get(playback_id, [])):
            try:
                await callback(session)
            except Exception as e:
                logger.error(f"Completion callback error: {e}")

    async def _emit_event(self, playback_id: str, event: Event):
        """Emit an event to all registered callbacks."""
        if self.metrics:
            self.metrics.increment_playback_events()

        for callback in list(self._callbacks.get(playback_id, [])):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    # ==================== Queries ====================

    def events_around(
        self,
        timestamp: float,
        kinds: Optional[List[EventKind]] = None,
        window_ms: Optional[int] = None,
    ) -> List[Event]:
        """Events within window_ms either side of a timestamp."""
        window = self.config.seek_window_ms if window_ms is None else window_ms
        return self.event_log.range(
            from_timestamp=math.floor(timestamp - window),
            to_timestamp=math.ceil(timestamp + window),
            kinds=kinds or None,
        )

    def get_timeline(self, bucket_ms: int = 60_000) -> List[dict]:
        """Timeline buckets for the recorded session's range."""
        start, end = self.bounds()
        return self.event_log.get_timeline_summary(start, end, bucket_ms)

    async def shutdown(self):
        """Cancel every playback task."""
        for playback_id in list(self._playback_tasks):
            await self._stop_task(playback_id)
