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
Discord Voice Adapter

Implements the voice contracts of core/interfaces.py on top of discord.py:

- DiscordVoiceTransport: joins a voice channel (VoiceTransport)
- DiscordVoiceHandle: one live VoiceClient plus a health watcher that
  reports connection loss and recovery to the Connection Manager
- DiscordSink: plays ByteStreams through the VoiceClient (AudioSink)

discord.py's built-in reconnect is disabled; reconnect policy lives in
systems/voice_manager.py.

Threading:
    discord.py reads audio and fires the ``after`` callback on its player
    thread. Everything that touches session state is marshalled back to
    the event loop with call_soon_threadsafe.

Utility Functions:
- format_guild_log(): Guild name for log lines
- can_connect_to_channel(): Check connect+speak permissions before joining
"""

import asyncio
from typing import Any, Callable, Optional

import discord
from loguru import logger

from core.interfaces import AudioSink, ByteStream, TransportEvent, TransportListener

HEALTH_CHECK_INTERVAL = 2.0
READY_POLL_INTERVAL = 0.1


# =============================================================================
# LOGGING FORMATTERS
# =============================================================================

def format_guild_log(guild_or_id, bot=None) -> str:
    """
    Format guild for logging with human-readable name.

    Args:
        guild_or_id: Guild object, guild ID (int), or None
        bot: Bot instance (needed to look up an ID)

    Returns:
        "ServerName (#123)", or "Guild #123" if the guild is unknown
    """
    if guild_or_id is None:
        return "Unknown"
    if isinstance(guild_or_id, int):
        guild = bot.get_guild(guild_or_id) if bot else None
        guild_id = guild_or_id
    else:
        guild = guild_or_id
        guild_id = guild.id
    if guild is not None and getattr(guild, "name", None):
        return f"{guild.name} (#{guild_id})"
    return f"Guild #{guild_id}"


def can_connect_to_channel(channel: Optional[discord.VoiceChannel]) -> bool:
    """
    Check if bot has permission to connect to a voice channel.

    Requires connect+speak permissions. False if guild.me is None (startup race).
    """
    if not channel:
        return False
    if not channel.guild.me:
        return False
    perms = channel.permissions_for(channel.guild.me)
    return bool(perms and perms.connect and perms.speak)


async def safe_disconnect(voice_client: Optional[discord.VoiceClient], force: bool = True) -> bool:
    """
    Disconnect from voice, treating failures as non-critical.

    Returns:
        True if disconnected (or nothing to disconnect), False on error
    """
    if not voice_client:
        return True
    try:
        await voice_client.disconnect(force=force)
        return True
    except (discord.ClientException, discord.HTTPException) as e:
        logger.debug(f"disconnect failed (non-critical): {e}")
        return False
    except Exception as e:
        # aiohttp transport errors during shutdown
        logger.debug(f"disconnect failed with transport error (non-critical): {e!r}")
        return False


# =============================================================================
# AUDIO SINK
# =============================================================================

class StreamAudioSource(discord.PCMAudio):
    """PCMAudio over a ByteStream; cleanup closes the stream on the loop."""

    def __init__(self, stream: ByteStream, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(stream)
        self._loop = loop

    def cleanup(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self.stream.close)
        except RuntimeError:
            # Loop already closed at shutdown
            pass


class DiscordSink:
    """AudioSink that renders streams into the session's VoiceClient.

    The VoiceClient is attached by DiscordVoiceHandle.subscribe() and
    swapped on every reconnect.
    """

    def __init__(self) -> None:
        self.voice_client: Optional[discord.VoiceClient] = None
        self.on_idle: Optional[Callable[[ByteStream], None]] = None
        self.on_error: Optional[Callable[[ByteStream, BaseException], None]] = None

    def play(self, stream: ByteStream) -> None:
        vc = self.voice_client
        if vc is None or not vc.is_connected():
            raise discord.ClientException("not connected to voice")
        loop = asyncio.get_running_loop()

        def after(error: Optional[Exception]) -> None:
            # Player thread
            try:
                loop.call_soon_threadsafe(self._finished, stream, error)
            except RuntimeError:
                pass

        vc.play(StreamAudioSource(stream, loop), after=after)

    def _finished(self, stream: ByteStream, error: Optional[Exception]) -> None:
        if error is not None:
            logger.debug(f"audio player error: {error!r}")
            if self.on_error:
                self.on_error(stream, error)
        elif self.on_idle:
            self.on_idle(stream)

    def pause(self) -> bool:
        vc = self.voice_client
        if vc is None or not vc.is_playing():
            return False
        vc.pause()
        return True

    def unpause(self) -> bool:
        vc = self.voice_client
        if vc is None or not vc.is_paused():
            return False
        vc.resume()
        return True

    def stop(self, force: bool = False) -> None:
        vc = self.voice_client
        if vc is not None and (force or vc.is_playing() or vc.is_paused()):
            vc.stop()


# =============================================================================
# VOICE TRANSPORT
# =============================================================================

class DiscordVoiceHandle:
    """
    A live voice connection to one channel.

    A watcher task polls the VoiceClient and reports DISCONNECTED when it
    drops and READY when it comes back. Events are suppressed while the
    handle reconnects itself or is being torn down.
    """

    def __init__(
        self,
        voice_client: discord.VoiceClient,
        channel: Any,
        listener: TransportListener,
        connect_timeout: float,
    ) -> None:
        self.voice_client = voice_client
        self.channel = channel
        self._listener = listener
        self._connect_timeout = connect_timeout
        self._sink: Optional[DiscordSink] = None
        self._connected = True
        self._busy = False
        self._torn_down = False
        self._watcher = asyncio.create_task(self._watch())

    @property
    def channel_id(self) -> int:
        return self.channel.id

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def notify(self, event: TransportEvent) -> None:
        """Forward a transport event unless the handle is reconnecting or gone."""
        if self._torn_down or self._busy:
            return
        self._listener(event)

    async def _watch(self) -> None:
        while not self._torn_down:
            await asyncio.sleep(HEALTH_CHECK_INTERVAL)
            if self._busy:
                continue
            connected = self.voice_client.is_connected()
            if connected == self._connected:
                continue
            self._connected = connected
            logger.debug(f"voice health: channel {self.channel_id} connected={connected}")
            self.notify(TransportEvent.READY if connected else TransportEvent.DISCONNECTED)

    async def wait_ready(self, timeout: float) -> None:
        async def poll() -> None:
            while not self.voice_client.is_connected():
                await asyncio.sleep(READY_POLL_INTERVAL)

        await asyncio.wait_for(poll(), timeout)
        self._connected = True

    async def reconnect(self, timeout: float) -> None:
        """Drop the current VoiceClient and connect a fresh one."""
        self._busy = True
        try:
            await safe_disconnect(self.voice_client, force=True)
            self.voice_client = await self.channel.connect(
                timeout=min(timeout, self._connect_timeout),
                reconnect=False,
                self_deaf=True,
            )
            if self._sink is not None:
                self._sink.voice_client = self.voice_client
            self._connected = self.voice_client.is_connected()
        finally:
            self._busy = False

    def subscribe(self, sink: AudioSink) -> None:
        self._sink = sink
        sink.voice_client = self.voice_client

    async def destroy(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        if self._watcher is not asyncio.current_task():
            self._watcher.cancel()
        if self._sink is not None and self._sink.voice_client is self.voice_client:
            self._sink.voice_client = None
        await safe_disconnect(self.voice_client, force=True)


class DiscordVoiceTransport:
    """VoiceTransport over discord.py's VoiceChannel.connect()."""

    def __init__(self, connect_timeout: float = 20.0) -> None:
        self.connect_timeout = connect_timeout
        self.handles: dict[int, DiscordVoiceHandle] = {}

    async def join(self, channel: Any, listener: TransportListener) -> DiscordVoiceHandle:
        stale = channel.guild.voice_client
        if stale is not None:
            logger.debug(f"dropping stale voice client in {format_guild_log(channel.guild)}")
            await safe_disconnect(stale, force=True)

        vc = await channel.connect(timeout=self.connect_timeout, reconnect=False, self_deaf=True)
        handle = DiscordVoiceHandle(vc, channel, listener, self.connect_timeout)
        self.handles[channel.guild.id] = handle
        return handle

    def handle_for(self, guild_id: int) -> Optional[DiscordVoiceHandle]:
        handle = self.handles.get(guild_id)
        if handle is not None and handle.torn_down:
            self.handles.pop(guild_id, None)
            return None
        return handle
