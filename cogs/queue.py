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

"""Queue and playlist commands for Encore."""

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from core.errors import MusicError
from utils.response import (
    ResponseMixin,
    escape_markdown,
    truncate_for_display,
    QUEUE_TITLE_MAX,
    PLAYLIST_NAME_MAX,
    CHOICE_NAME_MAX,
)
from utils.search import autocomplete_search
from utils.validation import validate_queue_position


class Queue(ResponseMixin, commands.Cog):
    """Queue and playlist management commands.

    - /queue: Show the current track and the next queue_display_size tracks
    - /remove, /move, /shuffle: Edit upcoming tracks (1-based positions)
    - /playlist save|load|delete|list: Named snapshots, kept in memory
    """

    playlist = app_commands.Group(name="playlist", description="save and load playlists", guild_only=True)

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def registry(self):
        return self.bot.players

    @property
    def display_size(self) -> int:
        """Get queue display size from config."""
        return self.bot.config_manager.get("queue_display_size", 10)

    @staticmethod
    def _line(position: int, track) -> str:
        title = escape_markdown(truncate_for_display(track.title, QUEUE_TITLE_MAX))
        return f"`{position}.` {title} ({track.display_duration})"

    @app_commands.command(name="queue", description="show upcoming tracks")
    @app_commands.guild_only()
    async def queue(self, interaction: discord.Interaction) -> None:
        player = self.registry.get(interaction.guild_id)
        tracks = player.queue_snapshot() if player else []
        current = player.current_track if player else None
        if current is None and not tracks:
            await self.respond(interaction, "queue_empty")
            return

        lines = []
        if current is not None:
            title = escape_markdown(truncate_for_display(current.title, QUEUE_TITLE_MAX))
            lines.append(f"{player.loop_mode.emoji} **{title}** ({current.display_duration})")
        shown = tracks[:self.display_size]
        lines.extend(self._line(i, track) for i, track in enumerate(shown, start=1))
        if len(tracks) > len(shown):
            lines.append(self.msg("queue_more", count=len(tracks) - len(shown)))
        await self.send_text(interaction, "\n".join(lines))

    @app_commands.command(name="remove", description="remove a track from the queue")
    @app_commands.guild_only()
    @app_commands.describe(position="queue position (see /queue)")
    async def remove(self, interaction: discord.Interaction, position: int) -> None:
        player = self.registry.get(interaction.guild_id)
        if player is None or not player.queue_snapshot():
            await self.respond(interaction, "queue_empty")
            return
        if not await self._check_same_vc(interaction, player):
            return
        try:
            validate_queue_position(position, len(player.queue))
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        track = player.remove_from_queue(position)
        if track is None:
            await self.respond(interaction, "no_track_at", position=position)
            return
        player.log.info(f"{interaction.user.display_name} removed {track.title!r}")
        await self.respond(
            interaction, "removed",
            position=position,
            title=escape_markdown(truncate_for_display(track.title, QUEUE_TITLE_MAX)),
        )

    @app_commands.command(name="move", description="move a track to another queue position")
    @app_commands.guild_only()
    @app_commands.rename(from_pos="from", to_pos="to")
    async def move(self, interaction: discord.Interaction, from_pos: int, to_pos: int) -> None:
        player = self.registry.get(interaction.guild_id)
        if player is None or not player.queue_snapshot():
            await self.respond(interaction, "queue_empty")
            return
        if not await self._check_same_vc(interaction, player):
            return
        size = len(player.queue)
        track = player.get_queue_track(from_pos)
        if track is None or not player.move_in_queue(from_pos, to_pos):
            await self.respond(interaction, "move_failed", size=size)
            return
        await self.respond(
            interaction, "moved",
            position=to_pos,
            title=escape_markdown(truncate_for_display(track.title, QUEUE_TITLE_MAX)),
        )

    @app_commands.command(name="shuffle", description="shuffle upcoming tracks")
    @app_commands.guild_only()
    async def shuffle(self, interaction: discord.Interaction) -> None:
        player = self.registry.get(interaction.guild_id)
        if player is None:
            await self.respond(interaction, "queue_empty")
            return
        if not await self._check_same_vc(interaction, player):
            return
        try:
            count = player.shuffle_queue()
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        player.log.info(f"queue shuffled by {interaction.user.display_name}")
        await self.respond(interaction, "shuffled", count=count)

    # =========================================================================
    # Playlists
    # =========================================================================

    async def playlist_autocomplete(
        self,
        interaction: discord.Interaction,
        current: str
    ) -> list[app_commands.Choice[str]]:
        """Autocomplete for saved playlist names (fuzzy)."""
        player = self.registry.get(interaction.guild_id)
        if player is None:
            return []
        names = [name for name, _ in player.list_playlists()]
        return [
            app_commands.Choice(name=truncate_for_display(name, CHOICE_NAME_MAX), value=name)
            for name in autocomplete_search(current, names)
        ]

    @playlist.command(name="save", description="save the current track and queue")
    @app_commands.describe(name="playlist name (saving over an existing name replaces it)")
    async def playlist_save(self, interaction: discord.Interaction, name: str) -> None:
        player = await self.registry.get_or_create(interaction.guild_id)
        try:
            saved, count = player.save_playlist(name)
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        await self.respond(
            interaction, "playlist_saved",
            name=escape_markdown(truncate_for_display(saved, PLAYLIST_NAME_MAX)),
            count=count,
        )

    @playlist.command(name="load", description="load a saved playlist into the queue")
    @app_commands.describe(name="playlist name", append="add to the queue instead of replacing it")
    @app_commands.autocomplete(name=playlist_autocomplete)
    async def playlist_load(self, interaction: discord.Interaction, name: str, append: bool = False) -> None:
        player = await self.registry.get_or_create(interaction.guild_id)
        voice = interaction.user.voice
        channel = voice.channel if voice and voice.channel else None
        if channel is not None and not player.is_idle and not await self._check_same_vc(interaction, player):
            return

        await interaction.response.defer(ephemeral=True)
        try:
            count = await player.load_playlist(name, append=append, channel=channel)
        except MusicError as e:
            await self.respond_error(interaction, e)
            return
        except Exception:
            logger.opt(exception=True).error(f"loading playlist {name!r} failed")
            await self.respond(interaction, "error_generic")
            return
        await self.respond(
            interaction, "playlist_loaded",
            name=escape_markdown(truncate_for_display(name.strip(), PLAYLIST_NAME_MAX)),
            count=count,
        )

    @playlist.command(name="delete", description="delete a saved playlist")
    @app_commands.autocomplete(name=playlist_autocomplete)
    async def playlist_delete(self, interaction: discord.Interaction, name: str) -> None:
        player = self.registry.get(interaction.guild_id)
        shown = escape_markdown(truncate_for_display(name.strip(), PLAYLIST_NAME_MAX))
        if player is None or not player.delete_playlist(name):
            await self.respond(interaction, "playlist_missing", name=shown)
            return
        player.log.info(f"playlist {name.strip()!r} deleted by {interaction.user.display_name}")
        await self.respond(interaction, "playlist_deleted", name=shown)

    @playlist.command(name="list", description="list saved playlists")
    async def playlist_list(self, interaction: discord.Interaction) -> None:
        player = self.registry.get(interaction.guild_id)
        playlists = player.list_playlists() if player else []
        if not playlists:
            await self.respond(interaction, "playlists_empty")
            return

        lines = [self.msg("playlists_header", count=len(playlists), max=player.playlists.max_playlists)]
        lines.extend(
            f"• **{escape_markdown(truncate_for_display(name, PLAYLIST_NAME_MAX))}** "
            f"[{count} {'track' if count == 1 else 'tracks'}]"
            for name, count in playlists
        )
        await self.send_text(interaction, "\n".join(lines))


async def setup(bot: commands.Bot) -> None:
    """Load the Queue cog."""
    await bot.add_cog(Queue(bot))
