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

"""Short-lived cache of extracted stream locators (direct media URLs).

Signed media URLs expire upstream, so entries live for a fixed TTL and are
evicted lazily on lookup. Accessed from every session's event loop tasks
and from the audio thread's cleanup path, hence the lock.
"""

import threading
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Dict, Optional

DEFAULT_TTL = 300.0


@dataclass(slots=True)
class CachedStreamLocator:
    locator: str
    expires_at: float


class StreamCache:
    """TTL mapping of track cache key to stream locator."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CachedStreamLocator] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        """Locator for key, or None on a miss. Expired entries are dropped."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.locator

    def put(self, key: str, locator: str) -> None:
        with self._lock:
            self._entries[key] = CachedStreamLocator(locator, self._clock() + self.ttl)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
