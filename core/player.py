# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Session Player

Per-session playback state machine plus the registry that owns players.

States:
    IDLE      no current track (a start may be pending)
    STARTING  opening the next stream; further start triggers coalesce
    PLAYING / PAUSED
    STOPPED   after stop(); the next enqueue starts playback again

Serialization:
    Sink callbacks, retry timers and reconnect notifications never touch
    player fields directly. They post events into a per-session mailbox
    that one processor task drains in order, so at most one transition
    runs at a time. User operations run on the same event loop and only
    mutate state between awaits.

Epochs:
    stop(), skip() and loss of the voice connection bump ``epoch``.
    Background work (prebuffer opens, retry backoffs, a start that was
    mid-open) records the epoch it started under and discards its result
    if the epoch moved on.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from core.errors import MusicError, StateConflict, is_permanent
from core.interfaces import AudioSink, ByteStream, StreamProvider, VoiceTransport
from core.playlists import MAX_NAME_LENGTH, MAX_PLAYLISTS, PlaylistBook
from core.queue import TrackQueue
from core.track import Track
from systems.voice_manager import MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAYS, ConnectionManager
from utils.validation import MAX_VOLUME, MIN_VOLUME, clamp_volume, volume_emoji


class PlaybackState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"


class LoopMode(Enum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"

    @property
    def emoji(self) -> str:
        return LOOP_EMOJIS[self]


LOOP_EMOJIS = {
    LoopMode.OFF: "➡️",
    LoopMode.TRACK: "🔂",
    LoopMode.QUEUE: "🔁",
}


# =============================================================================
# MAILBOX EVENTS
# =============================================================================

@dataclass(frozen=True, slots=True)
class TrackEnded:
    stream: ByteStream


@dataclass(frozen=True, slots=True)
class SinkFailed:
    stream: ByteStream
    error: BaseException


@dataclass(frozen=True, slots=True)
class StartNext:
    epoch: int


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    pass


@dataclass(frozen=True, slots=True)
class ConnectionRestored:
    pass


@dataclass(slots=True)
class Prebuffer:
    """Speculative stream for the queue front.

    ``claimed`` is set when start-next decides to wait for an in-flight
    open of exactly this track instead of starting a second one.
    """

    track: Track
    volume: int
    epoch: int
    task: Optional[asyncio.Task] = None
    stream: Optional[ByteStream] = None
    claimed: bool = False


@dataclass(slots=True)
class PlayerSettings:
    default_volume: int = 100
    max_retries: int = 3
    idle_timeout: float = 60.0
    ready_timeout: float = 20.0
    reconnect_timeout: float = 30.0
    reconnect_delays: Tuple[float, ...] = RECONNECT_DELAYS
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    max_playlists: int = MAX_PLAYLISTS
    max_playlist_name: int = MAX_NAME_LENGTH

    @classmethod
    def from_config(cls, config: Any) -> "PlayerSettings":
        """Build from a ConfigManager (settings.yaml sections)."""
        playback = config.get("playback", {}) or {}
        voice = config.get("voice", {}) or {}
        playlists = config.get("playlists", {}) or {}
        defaults = cls()
        return cls(
            default_volume=playback.get("default_volume", defaults.default_volume),
            max_retries=playback.get("max_retries", defaults.max_retries),
            idle_timeout=playback.get("idle_timeout", defaults.idle_timeout),
            ready_timeout=voice.get("ready_timeout", defaults.ready_timeout),
            reconnect_timeout=voice.get("reconnect_timeout", defaults.reconnect_timeout),
            reconnect_delays=tuple(voice.get("reconnect_delays", defaults.reconnect_delays)),
            max_reconnect_attempts=voice.get("max_reconnect_attempts", defaults.max_reconnect_attempts),
            max_playlists=playlists.get("max_playlists", defaults.max_playlists),
            max_playlist_name=playlists.get("max_name_length", defaults.max_playlist_name),
        )


class SessionPlayer:
    """
    Playback controller for one session.

    Composes the queue, the connection manager, the stream provider and
    the playlist book. Public methods are what the command surface calls;
    each either returns a value or raises a MusicError whose message can
    be shown to the user.
    """

    def __init__(
        self,
        session_id: int,
        provider: StreamProvider,
        transport: VoiceTransport,
        sink: AudioSink,
        settings: Optional[PlayerSettings] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_id = session_id
        self.settings = settings or PlayerSettings()
        self.provider = provider
        self.sink = sink
        self.log = logger.bind(session=session_id)
        self._sleep = sleep
        self._rng = rng

        # =====================================================================
        # PLAYBACK STATE
        # =====================================================================
        self.queue = TrackQueue()
        self.current_track: Optional[Track] = None
        self.state = PlaybackState.IDLE
        self.loop_mode = LoopMode.OFF
        self.autoplay = False
        self.playlists = PlaylistBook(self.settings.max_playlists, self.settings.max_playlist_name)
        self._volume = clamp_volume(self.settings.default_volume)

        # =====================================================================
        # VOICE
        # =====================================================================
        self.connection = ConnectionManager(
            session_id,
            transport,
            sink,
            ready_timeout=self.settings.ready_timeout,
            reconnect_timeout=self.settings.reconnect_timeout,
            idle_timeout=self.settings.idle_timeout,
            reconnect_delays=self.settings.reconnect_delays,
            max_reconnect_attempts=self.settings.max_reconnect_attempts,
            on_destroyed=lambda: self._post(ConnectionClosed()),
            on_reconnected=lambda: self._post(ConnectionRestored()),
            sleep=sleep,
        )
        sink.on_idle = lambda stream: self._post(TrackEnded(stream))
        sink.on_error = lambda stream, error: self._post(SinkFailed(stream, error))

        # =====================================================================
        # SERIALIZATION & BACKGROUND WORK
        # =====================================================================
        self.epoch = 0
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._processor_task: Optional[asyncio.Task] = None
        self._pending_start_epoch: Optional[int] = None
        self._current_stream: Optional[ByteStream] = None
        self._prebuffer: Optional[Prebuffer] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._retry_track: Optional[Track] = None
        self._retry_count = 0
        self._skip_requested = False
        self._destroyed = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the mailbox processor."""
        if not self._processor_task:
            self._processor_task = asyncio.create_task(self._process_events())
            self.log.debug("event processor started")

    async def destroy(self) -> None:
        """Tear the session down: streams, tasks, voice. Idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        self.epoch += 1
        self._cancel_retry()
        self._drop_prebuffer()
        self._release_current_stream()
        self.queue.clear()
        self.current_track = None
        self.state = PlaybackState.STOPPED
        await self.connection.destroy()

        if self._processor_task and not self._processor_task.done():
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
        self.log.info("session destroyed")

    async def drain_events(self) -> None:
        """Wait until every posted event has been handled."""
        await self._mailbox.join()

    # =========================================================================
    # MAILBOX
    # =========================================================================

    def _post(self, event: Any) -> None:
        if self._destroyed:
            return
        self._mailbox.put_nowait(event)

    async def _process_events(self) -> None:
        """Handle mailbox events one at a time."""
        while True:
            try:
                event = await self._mailbox.get()
                try:
                    await self._dispatch(event)
                finally:
                    self._mailbox.task_done()
            except asyncio.CancelledError:
                self.log.debug("event processor cancelled")
                break
            except Exception:
                self.log.opt(exception=True).error("event processor error")

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, StartNext):
            if self._pending_start_epoch == event.epoch:
                self._pending_start_epoch = None
            if event.epoch != self.epoch:
                self.log.debug("dropping stale start request")
                return
            await self._start_next()
        elif isinstance(event, TrackEnded):
            await self._handle_track_end(event.stream)
        elif isinstance(event, SinkFailed):
            await self._handle_sink_error(event.stream, event.error)
        elif isinstance(event, ConnectionClosed):
            self._handle_connection_closed()
        elif isinstance(event, ConnectionRestored):
            if self.state == PlaybackState.IDLE and self.queue:
                self._request_start()

    def _request_start(self) -> None:
        """Ask the processor to start the next track; duplicate asks coalesce."""
        if self._pending_start_epoch == self.epoch:
            return
        self._pending_start_epoch = self.epoch
        self._post(StartNext(self.epoch))

    # =========================================================================
    # START NEXT
    # =========================================================================

    async def _start_next(self) -> None:
        """Pop the queue front and hand its stream to the sink.

        Failing tracks are logged and skipped; every iteration consumes one
        queue item, so an all-failing queue drains to IDLE.
        """
        if self.state in (PlaybackState.STARTING, PlaybackState.PLAYING, PlaybackState.PAUSED):
            return
        if self.state == PlaybackState.STOPPED and not self.queue:
            return

        epoch = self.epoch
        self.state = PlaybackState.STARTING
        while True:
            track = self.queue.dequeue()
            if track is None:
                self._finish_playback()
                return

            stream: Optional[ByteStream] = None
            try:
                stream = await self._acquire_stream(track)
            except MusicError as e:
                self.log.warning(f"couldn't start {track.title!r}: {e}")
            except Exception:
                self.log.opt(exception=True).error(f"couldn't start {track.title!r}")

            if epoch != self.epoch:
                # stop/skip/voice loss while the stream was opening
                if stream is not None:
                    stream.close()
                if self.state == PlaybackState.STARTING:
                    self.state = PlaybackState.IDLE
                return
            if stream is None:
                continue

            if not self.connection.is_ready:
                self.log.info(f"voice not ready, holding {track.title!r}")
                stream.close()
                self.queue.push_front(track)
                self.state = PlaybackState.IDLE
                return

            try:
                self.sink.play(stream)
            except Exception as e:
                self.log.warning(f"sink rejected {track.title!r}: {e!r}")
                stream.close()
                continue

            self.current_track = track
            self._current_stream = stream
            self.state = PlaybackState.PLAYING
            self.log.info(f"now playing {track.title!r} ({track.display_duration})")
            self._refresh_prebuffer()
            return

    def _finish_playback(self) -> None:
        self.current_track = None
        self.state = PlaybackState.IDLE
        if self.autoplay:
            # No related-track source exists; autoplay only records intent
            self.log.debug("queue drained with autoplay on, nothing to recommend")
        self.log.info("queue finished")
        self.connection.arm_idle_timer()

    async def _acquire_stream(self, track: Track) -> ByteStream:
        pre = self._prebuffer
        if pre is not None and pre.track is track and self._prebuffer_matches(pre):
            pre.claimed = True
            stream = pre.stream
            if stream is None and pre.task is not None:
                await asyncio.wait({pre.task})
                stream = None if pre.task.cancelled() else pre.task.result()
            if self._prebuffer is pre:
                self._prebuffer = None
            if pre.epoch != self.epoch:
                if stream is not None:
                    stream.close()
                raise StateConflict("start interrupted")
            if stream is not None and not stream.closed and pre.volume == self._volume:
                self.log.debug(f"using prebuffered stream for {track.title!r}")
                return stream
            # Volume changed while the prebuffer was opening
            if stream is not None:
                stream.close()
        elif pre is not None and pre.track is not self.queue.peek():
            self._drop_prebuffer()
        return await self.provider.open_stream(track, self.volume_multiplier)

    # =========================================================================
    # PREBUFFER
    # =========================================================================

    def _prebuffer_matches(self, pre: Prebuffer) -> bool:
        return pre.epoch == self.epoch and pre.volume == self._volume

    def _prebuffer_is_current(self, pre: Prebuffer) -> bool:
        return (
            self._prebuffer is pre
            and self._prebuffer_matches(pre)
            and (pre.claimed or self.queue.peek() is pre.track)
        )

    def _refresh_prebuffer(self) -> None:
        """Make the prebuffer follow the queue front.

        Drops a prebuffer for any other track. While something is playing,
        starts one for the current front if none is held.
        """
        front = self.queue.peek()
        pre = self._prebuffer
        if pre is not None and pre.claimed:
            return
        if pre is not None and pre.track is front and self._prebuffer_matches(pre):
            return
        self._drop_prebuffer()
        if front is None or self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return
        pre = Prebuffer(track=front, volume=self._volume, epoch=self.epoch)
        pre.task = asyncio.create_task(self._run_prebuffer(pre))
        self._prebuffer = pre
        self.log.debug(f"prebuffering {front.title!r}")

    async def _run_prebuffer(self, pre: Prebuffer) -> Optional[ByteStream]:
        try:
            stream = await self.provider.open_stream(pre.track, pre.volume / 100)
        except MusicError as e:
            self.log.warning(f"prebuffer failed for {pre.track.title!r}: {e}")
            stream = None
        except Exception:
            self.log.opt(exception=True).error(f"prebuffer failed for {pre.track.title!r}")
            stream = None
        if stream is None:
            if self._prebuffer is pre:
                self._prebuffer = None
            return None

        if not self._prebuffer_is_current(pre):
            self.log.debug(f"discarding stale prebuffer for {pre.track.title!r}")
            stream.close()
            if self._prebuffer is pre:
                self._prebuffer = None
            return None

        pre.stream = stream
        return stream

    def _drop_prebuffer(self) -> None:
        pre, self._prebuffer = self._prebuffer, None
        if pre is None:
            return
        if pre.task is not None and not pre.task.done():
            pre.task.cancel()
        if pre.stream is not None:
            pre.stream.close()

    @property
    def prebuffered_track(self) -> Optional[Track]:
        return self._prebuffer.track if self._prebuffer else None

    # =========================================================================
    # SINK / CONNECTION EVENTS
    # =========================================================================

    def _release_current_stream(self) -> None:
        stream, self._current_stream = self._current_stream, None
        if stream is not None:
            self.sink.stop(force=True)
            stream.close()

    async def _handle_track_end(self, stream: ByteStream) -> None:
        if stream is not self._current_stream:
            return
        self._current_stream = None
        stream.close()

        finished = self.current_track
        skipped, self._skip_requested = self._skip_requested, False
        if finished is not None:
            if self.loop_mode == LoopMode.TRACK and not skipped:
                self.queue.push_front(finished)
            elif self.loop_mode == LoopMode.QUEUE:
                self.queue.enqueue(finished)
        if not skipped:
            self._retry_track, self._retry_count = None, 0

        self.current_track = None
        self.state = PlaybackState.IDLE
        await self._start_next()

    async def _handle_sink_error(self, stream: ByteStream, error: BaseException) -> None:
        if stream is not self._current_stream:
            return
        self._current_stream = None
        stream.close()

        track = self.current_track
        self.current_track = None
        self.state = PlaybackState.IDLE
        if track is None:
            await self._start_next()
            return

        if self._retry_track is not track:
            self._retry_track, self._retry_count = track, 0

        if not is_permanent(error) and self._retry_count < self.settings.max_retries:
            self._retry_count += 1
            delay = 2 ** self._retry_count
            self.queue.push_front(track)
            self.log.warning(
                f"playback error on {track.title!r} ({error}), "
                f"retry {self._retry_count}/{self.settings.max_retries} in {delay}s"
            )
            self._schedule_start(delay)
            return

        self.log.warning(f"playback error on {track.title!r} ({error}), skipping")
        self._retry_track, self._retry_count = None, 0
        await self._start_next()

    def _schedule_start(self, delay: float) -> None:
        self._cancel_retry()
        epoch = self.epoch

        async def fire() -> None:
            await self._sleep(delay)
            if epoch == self.epoch:
                self._request_start()

        self._retry_task = asyncio.create_task(fire())

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done():
            task.cancel()

    def _handle_connection_closed(self) -> None:
        self.epoch += 1
        self._cancel_retry()
        self._drop_prebuffer()
        self._release_current_stream()
        self.current_track = None
        if self.state != PlaybackState.STOPPED:
            self.state = PlaybackState.IDLE

    # =========================================================================
    # PUBLIC API: QUEUEING
    # =========================================================================

    async def play(self, query: str, requester: str, channel: Any) -> Tuple[Track, int]:
        """Resolve query and join channel concurrently, then enqueue.

        Returns:
            (track, 1-based queue position)
        """
        self.connection.cancel_idle_timer()
        resolved, joined = await asyncio.gather(
            self.provider.resolve(query, requester),
            self.connection.ensure(channel),
            return_exceptions=True,
        )
        for outcome in (joined, resolved):
            if isinstance(outcome, BaseException):
                if self.is_idle:
                    self.connection.arm_idle_timer()
                raise outcome
        return resolved, self._append(resolved)

    async def enqueue(self, track: Track, channel: Any) -> int:
        """Ensure voice, queue track, and start playback if idle.

        Returns once the track is queued; audio starts in the background.
        """
        await self.connection.ensure(channel)
        return self._append(track)

    def _append(self, track: Track) -> int:
        position = self.queue.enqueue(track)
        self.connection.cancel_idle_timer()
        self.log.debug(f"queued {track.title!r} at #{position}")
        if self.state in (PlaybackState.IDLE, PlaybackState.STOPPED):
            self._request_start()
        else:
            self._refresh_prebuffer()
        return position

    def remove_from_queue(self, position: int) -> Optional[Track]:
        track = self.queue.remove_at(position)
        if track is not None:
            self._refresh_prebuffer()
        return track

    def move_in_queue(self, from_pos: int, to_pos: int) -> bool:
        moved = self.queue.move(from_pos, to_pos)
        if moved:
            self._refresh_prebuffer()
        return moved

    def shuffle_queue(self) -> int:
        """Shuffle upcoming tracks. Returns the queue size."""
        if not self.queue:
            raise StateConflict("the queue is empty")
        self.queue.shuffle(self._rng)
        self._refresh_prebuffer()
        return len(self.queue)

    def queue_snapshot(self) -> List[Track]:
        return self.queue.snapshot()

    def get_queue_track(self, position: int) -> Optional[Track]:
        return self.queue.get(position)

    # =========================================================================
    # PUBLIC API: TRANSPORT CONTROLS
    # =========================================================================

    def skip(self) -> Track:
        """Stop the current track; the track-end path advances the queue.

        Raises:
            StateConflict: nothing is playing
        """
        if self.current_track is None or self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            raise StateConflict("nothing is playing")
        skipped = self.current_track
        self.epoch += 1
        self._cancel_retry()
        self._retry_track, self._retry_count = None, 0
        if self._prebuffer is not None and self._prebuffer.stream is None:
            self._drop_prebuffer()
        elif self._prebuffer is not None:
            self._prebuffer.epoch = self.epoch
        self._skip_requested = True
        self.sink.stop(force=True)
        self.log.info(f"skipped {skipped.title!r}")
        return skipped

    def stop(self) -> None:
        """Clear everything and leave the session STOPPED."""
        self.epoch += 1
        self._cancel_retry()
        self._retry_track, self._retry_count = None, 0
        self._skip_requested = False
        self.queue.clear()
        self._drop_prebuffer()
        self._release_current_stream()
        self.current_track = None
        self.state = PlaybackState.STOPPED
        self.connection.arm_idle_timer()
        self.log.info("stopped")

    def pause(self) -> None:
        if self.state == PlaybackState.PAUSED:
            raise StateConflict("already paused")
        if self.state != PlaybackState.PLAYING:
            raise StateConflict("nothing is playing")
        if not self.sink.pause():
            raise StateConflict("couldn't pause playback")
        self.state = PlaybackState.PAUSED
        self.log.info("paused")

    def resume(self) -> None:
        if self.state != PlaybackState.PAUSED:
            raise StateConflict("playback isn't paused")
        if not self.sink.unpause():
            raise StateConflict("couldn't resume playback")
        self.state = PlaybackState.PLAYING
        self.log.info("resumed")

    # =========================================================================
    # PUBLIC API: SETTINGS
    # =========================================================================

    @property
    def volume(self) -> int:
        return self._volume

    @property
    def volume_multiplier(self) -> float:
        return self._volume / 100

    def set_volume(self, percent: int) -> int:
        """Clamp into 0-200 and store.

        Applies from the next stream opened; the decoder bakes volume in.
        """
        self._volume = clamp_volume(percent)
        self._refresh_prebuffer()
        self.log.debug(f"volume {self._volume}%")
        return self._volume

    @property
    def volume_emoji(self) -> str:
        return volume_emoji(self._volume, MAX_VOLUME)

    def set_loop_mode(self, mode: LoopMode | str) -> LoopMode:
        self.loop_mode = LoopMode(mode)
        return self.loop_mode

    def set_autoplay(self, enabled: bool) -> bool:
        self.autoplay = bool(enabled)
        return self.autoplay

    # =========================================================================
    # PUBLIC API: PLAYLISTS
    # =========================================================================

    def save_playlist(self, name: str) -> Tuple[str, int]:
        """Snapshot current track + queue. Returns (name, track count)."""
        tracks = ([self.current_track] if self.current_track else []) + self.queue.snapshot()
        saved = self.playlists.save(name, tracks)
        self.log.info(f"saved playlist {saved!r} ({len(tracks)} tracks)")
        return saved, len(tracks)

    async def load_playlist(self, name: str, append: bool = False, channel: Any = None) -> int:
        """Replace (or extend) the queue with a saved playlist.

        When channel is given, voice is ensured and playback starts if idle.

        Returns:
            Number of tracks loaded
        """
        tracks = self.playlists.load(name)
        if channel is not None:
            await self.connection.ensure(channel)
        if not append:
            self.queue.clear()
        self.queue.extend(tracks)
        self.log.info(f"loaded playlist {name.strip()!r} ({len(tracks)} tracks)")
        if self.state in (PlaybackState.IDLE, PlaybackState.STOPPED) and self.connection.is_ready:
            self.connection.cancel_idle_timer()
            self._request_start()
        else:
            self._refresh_prebuffer()
        return len(tracks)

    def delete_playlist(self, name: str) -> bool:
        return self.playlists.delete(name)

    def list_playlists(self) -> List[Tuple[str, int]]:
        return self.playlists.list()

    def has_playlist(self, name: str) -> bool:
        return name in self.playlists

    # =========================================================================
    # QUERIES
    # =========================================================================

    @property
    def is_idle(self) -> bool:
        return self.state in (PlaybackState.IDLE, PlaybackState.STOPPED) and self.current_track is None

    def status(self) -> Dict[str, Any]:
        return {
            "volume": self._volume,
            "loop_mode": self.loop_mode.value,
            "is_playing": self.state == PlaybackState.PLAYING,
            "queue_size": len(self.queue),
        }


# =============================================================================
# SESSION REGISTRY
# =============================================================================

class SessionRegistry:
    """
    Maps session id to its SessionPlayer.

    Passed explicitly to every entry point (bot, cogs); creates players on
    first reference and tears them down when the session goes away.
    """

    def __init__(self, factory: Callable[[int], SessionPlayer]) -> None:
        self._factory = factory
        self._players: Dict[int, SessionPlayer] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, session_id: int) -> bool:
        return session_id in self._players

    def get(self, session_id: int) -> Optional[SessionPlayer]:
        return self._players.get(session_id)

    async def get_or_create(self, session_id: int) -> SessionPlayer:
        # Fast path - no lock
        if session_id in self._players:
            return self._players[session_id]

        async with self._lock:
            # Double-check
            if session_id in self._players:
                return self._players[session_id]
            player = self._factory(session_id)
            player.start()
            self._players[session_id] = player
            logger.debug(f"created player for session {session_id}")
            return player

    async def remove_and_destroy(self, session_id: int) -> bool:
        async with self._lock:
            player = self._players.pop(session_id, None)
        if player is None:
            return False
        await player.destroy()
        return True

    async def shutdown(self) -> None:
        """Destroy every player. Errors are logged per player."""
        async with self._lock:
            players = list(self._players.items())
            self._players.clear()
        logger.info(f"shutting down {len(players)} player(s)")
        for session_id, player in players:
            try:
                await player.destroy()
            except Exception:
                logger.opt(exception=True).error(f"error shutting down session {session_id}")
