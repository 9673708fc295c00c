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

"""Input validation for user-supplied queries, URLs, volume and positions."""

import re
from typing import Optional
from urllib.parse import urlparse

from core.errors import InvalidQuery, StateConflict

MAX_QUERY_LENGTH = 200
MIN_VOLUME = 0
MAX_VOLUME = 200

ALLOWED_HOSTS = frozenset({
    "www.youtube.com",
    "youtube.com",
    "youtu.be",
    "music.youtube.com",
    "m.youtube.com",
})

# Characters a shell would reinterpret; also rejected even though nothing
# is spawned through a shell
_SHELL_METACHARACTERS = re.compile(r"[;|&$`\\]")


def is_url(text: str) -> bool:
    parsed = urlparse(text.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_source_url(url: str) -> str:
    """Return the stripped URL if it points at a supported host.

    Raises:
        InvalidQuery: wrong scheme or host
    """
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidQuery("only http(s) links are supported")
    host = (parsed.hostname or "").lower()
    if host not in ALLOWED_HOSTS:
        raise InvalidQuery("only youtube links are supported")
    return url


def sanitize_query(query: str) -> str:
    """Validate a free-text search or URL query.

    Raises:
        InvalidQuery: empty, too long, or contains metacharacters
    """
    query = (query or "").strip()
    if not query:
        raise InvalidQuery("give me something to search for")
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidQuery(f"query too long (max {MAX_QUERY_LENGTH} characters)")
    if _SHELL_METACHARACTERS.search(query):
        raise InvalidQuery("query contains characters that aren't allowed")
    # A leading dash would be read by the extractor as an option
    if query.startswith("-"):
        raise InvalidQuery("query can't start with '-'")
    return query


def clamp_volume(volume: int) -> int:
    return max(MIN_VOLUME, min(MAX_VOLUME, int(volume)))


def validate_queue_position(position: int, queue_size: int, label: str = "position") -> int:
    """Check a 1-based position against the current queue size.

    Raises:
        StateConflict: position outside 1..queue_size
    """
    if queue_size == 0:
        raise StateConflict("the queue is empty")
    if not 1 <= position <= queue_size:
        raise StateConflict(f"{label} must be between 1 and {queue_size}")
    return position


def volume_emoji(percent: Optional[int], max_volume: int = MAX_VOLUME) -> str:
    """Speaker icon for a volume level."""
    if not percent:
        return "🔇"
    ratio = percent / max_volume
    if ratio < 0.33:
        return "🔈"
    if ratio < 0.66:
        return "🔉"
    return "🔊"
