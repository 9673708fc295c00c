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

"""Loguru setup: one stderr sink, a NOTICE level, stdlib logging routed in."""

import inspect
import logging
import sys

from loguru import logger

LEVELS = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{extra[session]}</cyan> "
    "{message}"
)


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records (discord.py, asyncio) to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that actually logged, past logging internals
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "verbose") -> str:
    """Configure loguru for the bot.

    Args:
        level: minimal, verbose or debug (a loguru level name also works)

    Returns:
        The loguru level name in effect
    """
    loguru_level = LEVELS.get(str(level).lower(), str(level).upper())

    logger.remove()
    logger.configure(extra={"session": "-"})
    try:
        logger.level("NOTICE")
    except ValueError:
        logger.level("NOTICE", no=25, color="<blue><bold>")
    logger.add(sys.stderr, level=loguru_level, format=LOG_FORMAT, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # discord.py is chatty below WARNING unless we're debugging
    library_level = logging.DEBUG if loguru_level == "DEBUG" else logging.WARNING
    for name in ("discord", "discord.voice_state", "discord.player", "discord.gateway"):
        logging.getLogger(name).setLevel(library_level)

    return loguru_level
