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
Voice Connection Manager

Owns the single voice connection of one session.

States:
    DISCONNECTED → CONNECTING → READY
    READY → RECONNECTING on a transport disconnect; reconnect attempts back
        off through RECONNECT_DELAYS (last entry repeats) and each waits up
        to reconnect_timeout for READY
    any → DESTROYED on explicit teardown, idle timeout, or after the last
        failed reconnect attempt; the handle is released

An idle timer is armed whenever playback stops; firing it destroys the
connection. ensure() (every new play request) cancels it.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from loguru import logger

from core.errors import VoiceConnectionError
from core.interfaces import AudioSink, TransportEvent, VoiceHandle, VoiceTransport

RECONNECT_DELAYS = (1, 2, 5, 10, 30)
MAX_RECONNECT_ATTEMPTS = 5


class ConnectionState(Enum):
    """
    Lifecycle of a session's voice connection.

    RECONNECTING is "disconnected, reconnect pending": the handle is kept
    and the reconnect task is sleeping or about to retry.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DESTROYED = "destroyed"


def _cancel(task: Optional[asyncio.Task]) -> None:
    """Cancel a task unless it's finished or is the caller itself."""
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()


class ConnectionManager:
    """Join, reconnect and idle-disconnect for one session."""

    def __init__(
        self,
        session_id: int,
        transport: VoiceTransport,
        sink: AudioSink,
        *,
        ready_timeout: float = 20.0,
        reconnect_timeout: float = 30.0,
        idle_timeout: float = 60.0,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        on_destroyed: Optional[Callable[[], None]] = None,
        on_reconnected: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._transport = transport
        self._sink = sink
        self.ready_timeout = ready_timeout
        self.reconnect_timeout = reconnect_timeout
        self.idle_timeout = idle_timeout
        self.reconnect_delays = tuple(reconnect_delays) or RECONNECT_DELAYS
        self.max_reconnect_attempts = max_reconnect_attempts
        self.on_destroyed = on_destroyed
        self.on_reconnected = on_reconnected
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.handle: Optional[VoiceHandle] = None
        self.reconnect_attempts = 0

        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._destroy_task: Optional[asyncio.Task] = None
        self.log = logger.bind(session=session_id)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def channel_id(self) -> Optional[int]:
        return self.handle.channel_id if self.handle else None

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY and self.handle is not None

    @property
    def idle_timer_armed(self) -> bool:
        return self._idle_task is not None and not self._idle_task.done()

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before 1-based reconnect attempt, clamped to the last delay."""
        index = min(max(attempt, 1), len(self.reconnect_delays)) - 1
        return self.reconnect_delays[index]

    # =========================================================================
    # Join
    # =========================================================================

    async def ensure(self, channel: Any) -> VoiceHandle:
        """Return a READY connection to channel, joining if needed.

        Reuses the current connection when it's already in channel;
        otherwise tears down whatever exists and joins fresh.

        Raises:
            VoiceConnectionError: join failed or wasn't READY within ready_timeout
        """
        self.cancel_idle_timer()
        async with self._lock:
            if self.handle is not None and self.handle.channel_id == channel.id:
                if self.state == ConnectionState.READY:
                    return self.handle
                if self._reconnect_task is not None and not self._reconnect_task.done():
                    # A READY event may cancel the task; only its outcome matters here
                    await asyncio.wait({self._reconnect_task})
                    if self.is_ready:
                        return self.handle

            if self.handle is not None:
                self.log.info(f"switching voice channel {self.channel_id} → {channel.id}")
                await self.destroy()

            return await self._join(channel)

    async def _join(self, channel: Any) -> VoiceHandle:
        self.state = ConnectionState.CONNECTING
        self.log.debug(f"joining channel {channel.id}")
        handle: Optional[VoiceHandle] = None
        try:
            handle = await asyncio.wait_for(
                self._transport.join(channel, self._on_transport_event),
                timeout=self.ready_timeout,
            )
            await handle.wait_ready(self.ready_timeout)
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            if handle is not None:
                await handle.destroy()
            raise
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            if handle is not None:
                await handle.destroy()
            self.log.warning(f"failed to join channel {channel.id}: {e!r}")
            if isinstance(e, asyncio.TimeoutError):
                raise VoiceConnectionError(detail=f"not ready after {self.ready_timeout:.0f}s") from e
            raise VoiceConnectionError(detail=str(e)) from e

        handle.subscribe(self._sink)
        self.handle = handle
        self.state = ConnectionState.READY
        self.reconnect_attempts = 0
        self.log.info(f"connected to channel {channel.id}")
        return handle

    # =========================================================================
    # Transport events
    # =========================================================================

    def _on_transport_event(self, event: TransportEvent) -> None:
        """Listener handed to the transport; must be called on the event loop."""
        if event == TransportEvent.DISCONNECTED:
            if self.state == ConnectionState.READY:
                self.state = ConnectionState.RECONNECTING
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())

        elif event == TransportEvent.READY:
            # Transport healed itself while we were waiting out a backoff
            if self.state == ConnectionState.RECONNECTING:
                _cancel(self._reconnect_task)
                self._reconnect_task = None
                self._mark_reconnected()

        elif event == TransportEvent.DESTROYED:
            if self.handle is not None and self.state != ConnectionState.DESTROYED:
                self.log.info("voice connection destroyed by transport")
                self._destroy_task = asyncio.create_task(self.destroy())

    def _mark_reconnected(self) -> None:
        self.state = ConnectionState.READY
        self.reconnect_attempts = 0
        self.log.info("voice reconnected")
        if self.on_reconnected:
            self.on_reconnected()

    async def _reconnect_loop(self) -> None:
        for attempt in range(1, self.max_reconnect_attempts + 1):
            self.reconnect_attempts = attempt
            delay = self.reconnect_delay(attempt)
            self.log.info(f"voice lost, reconnect {attempt}/{self.max_reconnect_attempts} in {delay}s")
            await self._sleep(delay)

            handle = self.handle
            if handle is None:
                return
            self.state = ConnectionState.CONNECTING
            try:
                await asyncio.wait_for(handle.reconnect(self.reconnect_timeout), self.reconnect_timeout)
                await handle.wait_ready(self.reconnect_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.warning(f"reconnect attempt {attempt} failed: {e!r}")
                self.state = ConnectionState.RECONNECTING
                continue

            self._reconnect_task = None
            self._mark_reconnected()
            return

        self.log.error(f"giving up on voice after {self.max_reconnect_attempts} attempts")
        await self.destroy()

    # =========================================================================
    # Idle timer
    # =========================================================================

    def arm_idle_timer(self) -> None:
        """Start the idle countdown, replacing any running one."""
        self.cancel_idle_timer()
        if self.idle_timeout <= 0 or self.handle is None:
            return
        self._idle_task = asyncio.create_task(self._idle_countdown())
        self.log.debug(f"starting {self.idle_timeout:.0f}s idle timer")

    def cancel_idle_timer(self) -> None:
        if task := self._idle_task:
            self._idle_task = None
            if not task.done():
                _cancel(task)
                self.log.debug("idle timer cancelled")

    async def _idle_countdown(self) -> None:
        await self._sleep(self.idle_timeout)
        self.log.info("idle, leaving voice")
        self._idle_task = None
        await self.destroy()

    # =========================================================================
    # Teardown
    # =========================================================================

    async def destroy(self) -> None:
        """Release the connection and stop all background work. Idempotent."""
        self.cancel_idle_timer()
        _cancel(self._reconnect_task)
        self._reconnect_task = None

        handle, self.handle = self.handle, None
        already_released = handle is None and self.state in (
            ConnectionState.DESTROYED, ConnectionState.DISCONNECTED
        )
        self.state = ConnectionState.DESTROYED
        if already_released:
            return

        if handle is not None:
            try:
                await handle.destroy()
            except Exception as e:
                self.log.warning(f"voice teardown failed: {e!r}")
        self.log.info("voice connection closed")
        if self.on_destroyed:
            self.on_destroyed()
