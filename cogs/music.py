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

"""Playback commands for Encore."""

from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.errors import MusicError
from core.interfaces import TransportEvent
from core.player import LoopMode, SessionPlayer
from utils.discord_helpers import can_connect_to_channel, format_guild_log
from utils.response import (
    ResponseMixin,
    escape_markdown,
    truncate_for_display,
    QUEUE_TITLE_MAX,
)


def display_title(title: str) -> str:
    return escape_markdown(truncate_for_display(title, QUEUE_TITLE_MAX))


class Music(ResponseMixin, commands.Cog):
    """Core music playback functionality.

    Every command talks to the guild's SessionPlayer through the bot's
    SessionRegistry. Player operations raise MusicError subclasses whose
    message is shown to the user as-is.
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def registry(self):
        return self.bot.players

    async def _active_player(self, interaction: discord.Interaction) -> Optional[SessionPlayer]:
        """Player for this guild if one exists and the user shares its VC."""
        player = self.registry.get(interaction.guild_id)
        if player is None or player.connection.channel_id is None:
            await self.respond(interaction, "nothing_playing")
            return None
        if not await self._check_same_vc(interaction, player):
            return None
        return player

    @app_commands.command(name="play", description="play a song from a search or a youtube link")
    @app_commands.guild_only()
    @app_commands.describe(query="search text or url")
    async def play(self, interaction: discord.Interaction, query: str) -> None:
        voice = interaction.user.voice
        if not voice or not voice.channel:
            await self.respond(interaction, "not_in_vc")
            return
        channel = voice.channel
        if not can_connect_to_channel(channel):
            await self.respond(interaction, "need_vc_permissions")
            return

        player = await self.registry.get_or_create(interaction.guild_id)
        # An idle player may follow the user to another channel
        if not player.is_idle and not await self._check_same_vc(interaction, player):
            return

        await interaction.response.defer(ephemeral=True)
        try:
            track, position = await player.play(query, interaction.user.display_name, channel)
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        except Exception:
            logger.opt(exception=True).error(f"play failed in {format_guild_log(interaction.guild)}")
            await self.respond(interaction, "error_generic")
            return

        player.log.info(f"{interaction.user.display_name} queued {track.title!r}")
        key = "play_starting" if position == 1 and player.current_track is None else "play_queued"
        await self.respond(
            interaction,
            key,
            title=display_title(track.title),
            duration=track.display_duration,
            position=position,
        )

    @app_commands.command(name="pause", description="pause playback")
    @app_commands.guild_only()
    async def pause(self, interaction: discord.Interaction) -> None:
        player = await self._active_player(interaction)
        if player is None:
            return
        try:
            player.pause()
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        await self.respond(interaction, "paused")

    @app_commands.command(name="resume", description="resume playback")
    @app_commands.guild_only()
    async def resume(self, interaction: discord.Interaction) -> None:
        player = await self._active_player(interaction)
        if player is None:
            return
        try:
            player.resume()
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        await self.respond(interaction, "resumed")

    @app_commands.command(name="skip", description="skip to the next track")
    @app_commands.guild_only()
    async def skip(self, interaction: discord.Interaction) -> None:
        player = await self._active_player(interaction)
        if player is None:
            return
        try:
            skipped = player.skip()
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        player.log.info(f"skipped by {interaction.user.display_name}")
        await self.respond(interaction, "skipped", title=display_title(skipped.title))

    @app_commands.command(name="stop", description="stop playback and clear the queue")
    @app_commands.guild_only()
    async def stop(self, interaction: discord.Interaction) -> None:
        player = await self._active_player(interaction)
        if player is None:
            return
        player.stop()
        player.log.info(f"stopped by {interaction.user.display_name}")
        await self.respond(interaction, "stopped")

    @app_commands.command(name="nowplaying", description="show the current track")
    @app_commands.guild_only()
    async def now_playing(self, interaction: discord.Interaction) -> None:
        player = self.registry.get(interaction.guild_id)
        track = player.current_track if player else None
        if track is None:
            await self.respond(interaction, "nothing_playing")
            return
        await self.respond(
            interaction,
            "now_playing",
            title=display_title(track.title),
            duration=track.display_duration,
            requester=escape_markdown(track.requested_by),
            loop=player.loop_mode.emoji,
            volume=player.volume,
            volume_emoji=player.volume_emoji,
        )

    @app_commands.command(name="volume", description="show or set the volume (0-200)")
    @app_commands.guild_only()
    @app_commands.describe(level="new volume in percent, leave empty to show it")
    async def volume(self, interaction: discord.Interaction, level: Optional[int] = None) -> None:
        player = await self.registry.get_or_create(interaction.guild_id)
        if level is None:
            await self.respond(interaction, "volume_current", emoji=player.volume_emoji, volume=player.volume)
            return
        if player.connection.channel_id is not None and not await self._check_same_vc(interaction, player):
            return
        applied = player.set_volume(level)
        player.log.info(f"volume set to {applied}% by {interaction.user.display_name}")
        await self.respond(interaction, "volume_set", emoji=player.volume_emoji, volume=applied)

    @app_commands.command(name="loop", description="set the loop mode")
    @app_commands.guild_only()
    @app_commands.describe(mode="off, repeat the track, or repeat the queue")
    @app_commands.choices(mode=[
        app_commands.Choice(name=f"{mode.emoji} {mode.value}", value=mode.value)
        for mode in LoopMode
    ])
    async def loop(self, interaction: discord.Interaction, mode: app_commands.Choice[str]) -> None:
        player = await self.registry.get_or_create(interaction.guild_id)
        applied = player.set_loop_mode(mode.value)
        player.log.info(f"loop {applied.value} by {interaction.user.display_name}")
        await self.respond(interaction, "loop_set", emoji=applied.emoji, mode=applied.value)

    @app_commands.command(name="autoplay", description="keep playing when the queue runs out")
    @app_commands.guild_only()
    async def autoplay(self, interaction: discord.Interaction, enabled: bool) -> None:
        player = await self.registry.get_or_create(interaction.guild_id)
        player.set_autoplay(enabled)
        await self.respond(interaction, "autoplay_on" if enabled else "autoplay_off")

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Forward the bot's own voice moves and disconnects to its connection."""
        if member.id != self.bot.user.id:
            return

        handle = self.bot.voice_transport.handle_for(member.guild.id)
        if handle is None:
            return

        if before.channel and not after.channel:
            logger.info(f"disconnected from voice in {format_guild_log(member.guild)}")
            handle.notify(TransportEvent.DESTROYED)
        elif before.channel != after.channel and after.channel:
            logger.info(f"moved to #{after.channel.name}")
            handle.channel = after.channel


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
