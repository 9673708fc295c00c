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

"""Contracts between the playback core and its collaborators.

The discord.py adapter in utils/discord_helpers.py implements the voice
side; systems/stream_provider.py implements the stream side. Tests drive
the core through fakes of the same shapes.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from core.track import Track


class TransportEvent(Enum):
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


TransportListener = Callable[[TransportEvent], None]


class ByteStream(Protocol):
    """Decoded 48kHz stereo s16le PCM for one track."""

    track: Track
    volume: float

    def read(self, size: int) -> bytes: ...

    def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


class AudioSink(Protocol):
    """Renders a ByteStream into the voice connection.

    on_idle(stream) fires when a stream finishes or is force-stopped;
    on_error(stream, error) fires instead when playback fails.
    """

    on_idle: Optional[Callable[[ByteStream], None]]
    on_error: Optional[Callable[[ByteStream, BaseException], None]]

    def play(self, stream: ByteStream) -> None: ...

    def pause(self) -> bool: ...

    def unpause(self) -> bool: ...

    def stop(self, force: bool = False) -> None: ...


class VoiceHandle(Protocol):
    channel_id: int

    async def wait_ready(self, timeout: float) -> None: ...

    async def reconnect(self, timeout: float) -> None: ...

    def subscribe(self, sink: AudioSink) -> None: ...

    async def destroy(self) -> None: ...


class VoiceTransport(Protocol):
    async def join(self, channel: Any, listener: TransportListener) -> VoiceHandle: ...


class StreamProvider(Protocol):
    async def resolve(self, query: str, requester: str) -> Track: ...

    async def open_stream(self, track: Track, volume: float = 1.0) -> ByteStream: ...


SleepFunc = Callable[[float], Awaitable[None]]
