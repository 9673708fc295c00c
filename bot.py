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

"""Encore - a Discord music bot that streams from YouTube.

Entry point: loads .env and config, sets up logging, builds the shared
services (process supervisor, stream cache, stream provider, session
registry) and runs the bot until SIGINT/SIGTERM.
"""

import asyncio
import os
import signal

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.errors import NotFound, PermanentUpstream
from core.player import PlayerSettings, SessionPlayer, SessionRegistry
from systems.process_supervisor import ProcessSupervisor
from systems.retry import CircuitBreaker
from systems.stream_cache import StreamCache
from systems.stream_provider import YtDlpStreamProvider, parse_command
from utils.config import ConfigManager, default_config_path, validate_configuration
from utils.discord_helpers import DiscordSink, DiscordVoiceTransport, format_guild_log
from utils.log import setup_logging

COGS = ("cogs.music", "cogs.queue")


def build_provider(config_manager: ConfigManager, supervisor: ProcessSupervisor, cache: StreamCache) -> YtDlpStreamProvider:
    """Stream provider from the stream.* and extractor.* settings."""
    stream = config_manager.section("stream")
    extractor = config_manager.section("extractor")
    cookies = extractor.get("cookies_path") or None
    breaker = CircuitBreaker(
        "extractor",
        failure_threshold=stream["breaker_threshold"],
        reset_timeout=stream["breaker_reset"],
        counts_as_failure=lambda e: not isinstance(e, (NotFound, PermanentUpstream)),
    )
    return YtDlpStreamProvider(
        supervisor,
        cache,
        extractor_command=parse_command(extractor.get("command")),
        ffmpeg_path=extractor.get("ffmpeg_path") or "ffmpeg",
        cookies_path=cookies,
        startup_timeout=stream["startup_timeout"],
        resolve_timeout=stream["resolve_timeout"],
        setup_timeout=stream["setup_timeout"],
        max_retries=stream["max_retries"],
        retry_base_delay=stream["retry_base_delay"],
        retry_max_delay=stream["retry_max_delay"],
        breaker=breaker,
    )


class EncoreBot(commands.Bot):
    """Bot holding the shared playback services.

    Attributes:
        config_manager: Loaded settings and messages
        supervisor: Tracks every yt-dlp/ffmpeg process
        stream_cache: Media URL cache shared by all sessions
        provider: yt-dlp/ffmpeg stream provider
        voice_transport: discord.py voice adapter
        players: SessionRegistry keyed by guild id
    """

    def __init__(self, config_manager: ConfigManager) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

        self.config_manager = config_manager
        self.supervisor = ProcessSupervisor()
        self.stream_cache = StreamCache(ttl=config_manager.section("stream")["cache_ttl"])
        self.provider = build_provider(config_manager, self.supervisor, self.stream_cache)
        self.player_settings = PlayerSettings.from_config(config_manager)
        self.voice_transport = DiscordVoiceTransport(connect_timeout=self.player_settings.ready_timeout)
        self.players = SessionRegistry(self._create_player)
        self._closing = False

    def _create_player(self, guild_id: int) -> SessionPlayer:
        return SessionPlayer(
            guild_id,
            self.provider,
            self.voice_transport,
            DiscordSink(),
            self.player_settings,
        )

    async def setup_hook(self) -> None:
        for extension in COGS:
            await self.load_extension(extension)
        logger.debug(f"loaded {len(COGS)} cogs")

        guild_id = os.getenv("GUILD_ID")
        if guild_id:
            guild = discord.Object(id=int(guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
        else:
            synced = await self.tree.sync()
        logger.info(f"synced {len(synced)} commands")

    async def on_ready(self) -> None:
        logger.log("NOTICE", f"logged in as {self.user} in {len(self.guilds)} guild(s)")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"removed from {format_guild_log(guild)}")
        await self.players.remove_and_destroy(guild.id)

    async def close(self) -> None:
        """Destroy every session, kill leftover processes, then disconnect."""
        if not self._closing:
            self._closing = True
            logger.info("shutting down")
            await self.players.shutdown()
            killed = self.supervisor.cleanup_all()
            if killed:
                logger.info(f"killed {killed} leftover process(es)")
            self.stream_cache.clear()
        await super().close()


async def run() -> None:
    config_manager = ConfigManager(default_config_path())
    await config_manager.load()
    setup_logging(config_manager.section("logging").get("level", "verbose"))
    await validate_configuration(config_manager)

    bot = EncoreBot(config_manager)
    loop = asyncio.get_running_loop()

    def handle_shutdown_signal(signum) -> None:
        logger.info(f"received {signal.Signals(signum).name}, shutting down")
        loop.create_task(bot.close())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_shutdown_signal, sig)
        except NotImplementedError:
            # Windows: no loop signal handlers, SIGINT still raises KeyboardInterrupt
            pass

    async with bot:
        await bot.start(os.environ["DISCORD_TOKEN"].strip())


def main() -> None:
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "verbose"))
    logger.info("starting encore")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("stopped by user (Ctrl+C)")


if __name__ == "__main__":
    main()
