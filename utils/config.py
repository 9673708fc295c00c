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

"""Configuration management for Encore."""

import asyncio
import copy
import importlib.util
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Playback Settings (playback.*):
#   default_volume         - Volume for new sessions, percent (0-200)
#   idle_timeout           - Seconds idle in voice before disconnecting (0 = never)
#   max_retries            - Retries of a track that errors mid-playback
#
# Stream Settings (stream.*):
#   startup_timeout        - Seconds a pipeline has to produce its first byte
#   resolve_timeout        - Seconds before a yt-dlp lookup is killed
#   setup_timeout          - Supervisory timeout for a stream pipeline until audio flows
#   cache_ttl              - Seconds an extracted media URL is reused
#   max_retries            - Retries for transient extractor failures
#   retry_base_delay       - First retry delay in seconds (doubles each retry)
#   retry_max_delay        - Cap on a single retry delay
#   breaker_threshold      - Consecutive failures before the extractor circuit opens
#   breaker_reset          - Seconds the circuit stays open
#
# Voice Settings (voice.*):
#   ready_timeout          - Seconds to wait for a fresh connection
#   reconnect_timeout      - Seconds to wait for each reconnect attempt
#   max_reconnect_attempts - Attempts before giving up on a dropped connection
#   reconnect_delays       - Backoff list in seconds, last entry repeats
#
# Extractor Settings (extractor.*):
#   command                - yt-dlp command line ("" = python -m yt_dlp)
#   ffmpeg_path            - ffmpeg binary
#   cookies_path           - Netscape cookies file passed to yt-dlp if it exists
#
# Playlist Settings (playlists.*):
#   max_playlists          - Saved playlists per session
#   max_name_length        - Longest playlist name
#
# queue_display_size       - Tracks shown by /queue (1-50)
#
# UI Settings (ui.*):
#   brief_auto_delete      - Seconds before auto-deleting responses (0 = never)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "playback": {
        "default_volume": 100,
        "idle_timeout": 60,
        "max_retries": 3,
    },
    "stream": {
        "startup_timeout": 15,
        "resolve_timeout": 30,
        "setup_timeout": 60,
        "cache_ttl": 300,
        "max_retries": 2,
        "retry_base_delay": 1.0,
        "retry_max_delay": 30.0,
        "breaker_threshold": 5,
        "breaker_reset": 60,
    },
    "voice": {
        "ready_timeout": 20,
        "reconnect_timeout": 30,
        "max_reconnect_attempts": 5,
        "reconnect_delays": [1, 2, 5, 10, 30],
    },
    "extractor": {
        "command": "",
        "ffmpeg_path": "ffmpeg",
        "cookies_path": "cookies.txt",
    },
    "playlists": {
        "max_playlists": 10,
        "max_name_length": 50,
    },
    "queue_display_size": 10,
    "ui": {
        "brief_auto_delete": 10,
    },
    "logging": {
        "level": "verbose",
    },
}


# =============================================================================
# DEFAULT MESSAGES
# =============================================================================
# Each message has "text" (supports {placeholders}) and "enabled" (False =
# acknowledge silently).

DEFAULT_MESSAGES = {
    # Voice
    "not_in_vc": {"text": "join a voice channel first", "enabled": True},
    "wrong_vc": {"text": "i'm playing in {channel}", "enabled": True},
    "need_vc_permissions": {"text": "i can't connect or speak in that channel", "enabled": True},

    # Playback
    "play_starting": {"text": "starting playback: **{title}** ({duration})", "enabled": True},
    "play_queued": {"text": "queued at #{position}: **{title}** ({duration})", "enabled": True},
    "paused": {"text": "paused", "enabled": True},
    "resumed": {"text": "resumed", "enabled": True},
    "skipped": {"text": "skipped **{title}**", "enabled": True},
    "stopped": {"text": "stopped and cleared the queue", "enabled": True},
    "nothing_playing": {"text": "nothing's playing", "enabled": True},
    "now_playing": {
        "text": "**{title}** ({duration})\nrequested by {requester} · loop {loop} · {volume_emoji} {volume}%",
        "enabled": True,
    },

    # Settings
    "volume_current": {"text": "{emoji} volume is {volume}%", "enabled": True},
    "volume_set": {"text": "{emoji} volume set to {volume}%, applies from the next track", "enabled": True},
    "loop_set": {"text": "{emoji} loop: {mode}", "enabled": True},
    "autoplay_on": {"text": "autoplay on (no recommendations yet, playback stops when the queue ends)", "enabled": True},
    "autoplay_off": {"text": "autoplay off", "enabled": True},

    # Queue
    "queue_empty": {"text": "the queue is empty", "enabled": True},
    "queue_more": {"text": "...and {count} more", "enabled": True},
    "removed": {"text": "removed #{position}: **{title}**", "enabled": True},
    "no_track_at": {"text": "there's no track at #{position}", "enabled": True},
    "moved": {"text": "moved **{title}** to #{position}", "enabled": True},
    "move_failed": {"text": "positions must be between 1 and {size}", "enabled": True},
    "shuffled": {"text": "shuffled {count} tracks", "enabled": True},

    # Playlists
    "playlist_saved": {"text": "saved **{name}** ({count} tracks)", "enabled": True},
    "playlist_loaded": {"text": "loaded **{name}** ({count} tracks)", "enabled": True},
    "playlist_deleted": {"text": "deleted **{name}**", "enabled": True},
    "playlist_missing": {"text": "no playlist named **{name}**", "enabled": True},
    "playlists_empty": {"text": "no saved playlists", "enabled": True},
    "playlists_header": {"text": "saved playlists ({count}/{max}):", "enabled": True},

    # Errors
    "error": {"text": "{message}", "enabled": True},
    "error_generic": {"text": "something broke, try again", "enabled": True},
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.

    Args:
        user: User-provided config from YAML file
        defaults: Default values to use for missing keys

    Returns:
        Merged config dict with all default keys present
    """
    result = copy.deepcopy(defaults)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load YAML file with defaults; missing or invalid files yield the defaults."""
    if not path.exists():
        return deep_merge({}, defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return deep_merge({}, defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return deep_merge({}, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically (temp file, then rename) with an optional header."""
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


# Ranged settings: dotted key → (min, max); max None means unbounded
RANGES = {
    "playback.default_volume": (0, 200),
    "playback.idle_timeout": (0, None),
    "playback.max_retries": (0, 10),
    "stream.startup_timeout": (1, 120),
    "stream.resolve_timeout": (5, 300),
    "stream.setup_timeout": (5, 600),
    "stream.cache_ttl": (0, 3600),
    "stream.max_retries": (0, 10),
    "stream.breaker_threshold": (1, 100),
    "stream.breaker_reset": (1, 3600),
    "voice.ready_timeout": (1, 120),
    "voice.reconnect_timeout": (1, 120),
    "voice.max_reconnect_attempts": (0, 20),
    "playlists.max_playlists": (1, 100),
    "playlists.max_name_length": (1, 100),
    "queue_display_size": (1, 50),
    "ui.brief_auto_delete": (0, None),
}


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Loads configuration at startup with this priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")           # Top-level setting or section dict
        config_manager.get("key", default)  # With fallback
        config_manager.section("stream")    # Nested section (always a dict)
        config_manager.msg("key", **vars)   # Formatted message
        config_manager.is_enabled("key")    # Whether a message should show

    Attributes:
        config_path: Directory containing settings.yaml and messages.yaml
        settings: Loaded settings dict (after validation)
        messages: Loaded messages dict
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = deep_merge({}, DEFAULT_SETTINGS)
        self.messages: dict = deep_merge({}, DEFAULT_MESSAGES)

    async def load(self) -> None:
        """Load settings and messages from YAML, apply env overrides, validate.

        Generates missing config files with default values and header comments.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(load_yaml, settings_path, DEFAULT_SETTINGS)

        if not settings_path.exists():
            header = "# Encore Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(load_yaml, messages_path, DEFAULT_MESSAGES)

        if not messages_path.exists():
            header = "# Encore's Responses\n# Customize what the bot says here\n\n"
            await asyncio.to_thread(save_yaml, messages_path, DEFAULT_MESSAGES, header)
            logger.debug(f"generated {messages_path.name}")

        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _lookup(self, dotted: str) -> tuple[dict, str]:
        """Container dict and final key for a dotted setting path."""
        parts = dotted.split(".")
        target = self.settings
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = deep_merge({}, DEFAULT_SETTINGS.get(part, {}))
                target[part] = child
            target = child
        return target, parts[-1]

    @staticmethod
    def _default(dotted: str) -> Any:
        value: Any = DEFAULT_SETTINGS
        for part in dotted.split("."):
            value = value[part]
        return value

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        1. Null-restore: YAML "key:" with no value becomes None; the default
           is restored for null top-level and nested keys.
        2. Bounded numbers: clamped to RANGES with a warning.
        3. reconnect_delays: must be a non-empty list of non-negative numbers.
        """
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section, defaults in DEFAULT_SETTINGS.items():
            sect = self.settings.get(section)
            if isinstance(defaults, dict) and isinstance(sect, dict):
                for key in list(sect):
                    if sect[key] is None and key in defaults:
                        sect[key] = defaults[key]

        for dotted, (min_val, max_val) in RANGES.items():
            target, key = self._lookup(dotted)
            value = target.get(key)
            default = self._default(dotted)
            try:
                v = type(default)(value)
            except (ValueError, TypeError):
                logger.warning(f"{dotted}={value!r} invalid, using default")
                target[key] = default
                continue
            clamped = max(min_val, v) if max_val is None else max(min_val, min(max_val, v))
            if clamped != v:
                range_str = f"{min_val}+" if max_val is None else f"{min_val}-{max_val}"
                logger.warning(f"{dotted}={v} out of range, clamped to {clamped} (valid: {range_str})")
            target[key] = clamped

        voice = self.section("voice")
        delays = voice.get("reconnect_delays")
        try:
            delays = [float(d) for d in delays]
            if not delays or any(d < 0 for d in delays):
                raise ValueError
            voice["reconnect_delays"] = delays
        except (ValueError, TypeError):
            logger.warning(f"voice.reconnect_delays={delays!r} invalid, using default")
            voice["reconnect_delays"] = list(DEFAULT_SETTINGS["voice"]["reconnect_delays"])

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter), where
        setting_key uses dot notation for nested keys. Invalid values are
        logged and ignored. Range checks happen in _validate_settings.
        """
        def non_negative(env_key: str) -> Callable[[str], int]:
            def validate(x: str) -> int:
                v = int(x)
                if v < 0:
                    logger.warning(f"{env_key}={v} out of range, clamped to 0 (valid: 0+)")
                    return 0
                return v
            return validate

        env_map = {
            "LOG_LEVEL": ("logging.level", str),
            "DEFAULT_VOLUME": ("playback.default_volume", int),
            "IDLE_TIMEOUT": ("playback.idle_timeout", non_negative("IDLE_TIMEOUT")),
            "FFMPEG_PATH": ("extractor.ffmpeg_path", str),
            "YTDLP_COMMAND": ("extractor.command", str),
            "YOUTUBE_COOKIES_PATH": ("extractor.cookies_path", str),
            "QUEUE_DISPLAY_SIZE": ("queue_display_size", int),
            "BRIEF_AUTO_DELETE": ("ui.brief_auto_delete", non_negative("BRIEF_AUTO_DELETE")),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    target, key = self._lookup(setting_key)
                    target[key] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")

    def get(self, key: str, default=None) -> Any:
        """Top-level setting value, or default if not found."""
        return self.settings.get(key, default)

    def section(self, name: str) -> dict:
        """Nested settings section; never None."""
        value = self.settings.get(name)
        return value if isinstance(value, dict) else dict(DEFAULT_SETTINGS.get(name, {}))

    def msg(self, key: str, **kwargs) -> str:
        """Formatted message text; the key itself if the message is unknown."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        template = entry.get("text", key) if isinstance(entry, dict) else entry
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError):
            return template

    def is_enabled(self, key: str) -> bool:
        """Whether a message should be shown (False = silent acknowledgment)."""
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key, {}))
        return entry.get("enabled", True) if isinstance(entry, dict) else True


def default_config_path() -> Path:
    _default = Path(__file__).parent.parent / "config"
    return Path(os.getenv("CONFIG_PATH") or str(_default))


async def validate_configuration(config_manager: ConfigManager) -> None:
    """Pre-flight checks before the bot connects; exits with status 1 on failure.

    Checks performed:
    - DISCORD_TOKEN is set and has three non-empty dot-separated sections
    - ffmpeg is on PATH (or at the configured path)
    - yt-dlp is importable when no custom extractor command is set
    - The config directory exists (created if missing)

    Warns (non-fatal) if GUILD_ID is not set.
    """
    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the environment")
    else:
        parts = token.strip().split(".")
        if len(parts) != 3:
            errors.append(
                "DISCORD_TOKEN format appears invalid.\n"
                "Token should have three dot-separated sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )
        elif any(not part for part in parts):
            errors.append(
                "DISCORD_TOKEN has empty sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    if not os.getenv("GUILD_ID"):
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")

    extractor = config_manager.section("extractor")
    ffmpeg = extractor.get("ffmpeg_path") or "ffmpeg"
    if not shutil.which(ffmpeg):
        errors.append(f"ffmpeg not found at '{ffmpeg}' - install it or set FFMPEG_PATH")

    if not (extractor.get("command") or "").strip():
        if importlib.util.find_spec("yt_dlp") is None:
            errors.append("yt-dlp is not installed - pip install yt-dlp, or set YTDLP_COMMAND")

    config_path = config_manager.config_path
    if not config_path.exists():
        try:
            config_path.mkdir(parents=True)
            logger.warning(f"created missing config directory: {config_path}")
        except OSError as e:
            errors.append(f"cannot create config directory {config_path}: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)

    logger.log("NOTICE", f"ffmpeg: {shutil.which(ffmpeg)}")
