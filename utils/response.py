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

"""Response utilities for Discord interactions.

Provides ResponseMixin for consistent message handling across cogs.
All cogs inherit from this mixin to get respond() and msg() helpers.
"""

import asyncio

import discord
from loguru import logger

from core.errors import MusicError

# Track fire-and-forget cleanup tasks to prevent GC warnings
_cleanup_tasks: set[asyncio.Task] = set()


def escape_markdown(text: str) -> str:
    """Escape markdown so track titles render literally.

    Use for: message content.
    Do NOT use for: autocomplete choices (plain text).
    """
    return discord.utils.escape_markdown(text)


# =============================================================================
# DISPLAY TRUNCATION
# =============================================================================
# Always truncate BEFORE escape_markdown (escaping can add characters).

QUEUE_TITLE_MAX = 60       # Per queue line, keeps /queue under the 2000 char limit
PLAYLIST_NAME_MAX = 50
CHOICE_NAME_MAX = 97       # app_commands.Choice.name (limit 100) - room for "..."


def truncate_for_display(text: str, max_length: int) -> str:
    """Truncate text with ellipsis for Discord display.

    Args:
        text: Text to truncate (must not be None)
        max_length: Maximum length including "..." suffix

    Returns:
        Original text if within limit, else truncated with "..."
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


class ResponseMixin:
    """Mixin providing standardized interaction responses for cogs.

    Requirements:
        self.bot must have a config_manager with:
        - msg(key, **kwargs) -> str
        - is_enabled(key) -> bool
        - get(key, default) -> value

    Usage:
        class MyCog(ResponseMixin, commands.Cog):
            async def my_command(self, interaction):
                await self.respond(interaction, "shuffled", count=5)
    """

    def msg(self, key: str, **kwargs) -> str:
        """Get formatted message text from config."""
        return self.bot.config_manager.msg(key, **kwargs)

    async def _delete_response(self, interaction: discord.Interaction, delay: float) -> None:
        """Delete interaction response after delay (for followup path)."""
        try:
            await asyncio.sleep(delay)
            await interaction.delete_original_response()
        except asyncio.CancelledError:
            pass  # Shutdown during wait
        except discord.HTTPException:
            pass

    async def respond(self, interaction: discord.Interaction, key: str, *, ephemeral: bool = True, **kwargs) -> None:
        """Send message if enabled, otherwise acknowledge silently.

        Ephemeral replies auto-delete after ui.brief_auto_delete seconds.

        Args:
            interaction: Discord interaction to respond to
            key: Message key from messages.yaml
            ephemeral: Only the invoking user sees the reply
            **kwargs: Format variables for the message template
        """
        if not self.bot.config_manager.is_enabled(key):
            # Silent acknowledgment - defer then delete
            if not interaction.response.is_done():
                await interaction.response.defer(ephemeral=True)
            try:
                await interaction.delete_original_response()
            except discord.NotFound:
                pass
            return

        await self.send_text(interaction, self.msg(key, **kwargs), ephemeral=ephemeral)

    async def send_text(self, interaction: discord.Interaction, text: str, *, ephemeral: bool = True) -> None:
        """Send already formatted text via the response or followup path."""
        ui_config = self.bot.config_manager.get("ui", {})
        timeout = ui_config.get("brief_auto_delete", 10)
        delete_after = timeout if timeout > 0 and ephemeral else None

        if not interaction.response.is_done():
            await interaction.response.send_message(text, ephemeral=ephemeral, delete_after=delete_after)
        else:
            await interaction.followup.send(text, ephemeral=ephemeral)
            if delete_after:
                task = asyncio.create_task(self._delete_response(interaction, delete_after))
                _cleanup_tasks.add(task)
                task.add_done_callback(_cleanup_tasks.discard)

    async def respond_error(self, interaction: discord.Interaction, error: MusicError) -> None:
        """Show a MusicError's user-facing message (details stay in the log)."""
        if error.detail:
            logger.debug(f"{type(error).__name__}: {error.detail}")
        await self.respond(interaction, "error", message=error.message)

    async def _check_same_vc(self, interaction: discord.Interaction, player) -> bool:
        """Check user is in same VC as bot. Returns True if allowed, False if denied.

        Sends not_in_vc or wrong_vc message via respond() on denial.
        A player without a live connection lets anyone in voice through.
        """
        if not interaction.user.voice or not interaction.user.voice.channel:
            await self.respond(interaction, "not_in_vc")
            return False
        channel_id = player.connection.channel_id if player else None
        if channel_id is not None and interaction.user.voice.channel.id != channel_id:
            await self.respond(interaction, "wrong_vc", channel=f"<#{channel_id}>")
            return False
        return True
