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
Playlist Book

Named snapshots of tracks for one session. Lives only as long as the
session; nothing is written to disk.
"""

from typing import Dict, List, Optional, Tuple

from core.errors import NotFound, StateConflict
from core.track import Track
from utils.search import suggest_name

MAX_PLAYLISTS = 10
MAX_NAME_LENGTH = 50


class PlaylistBook:
    """Bounded mapping of playlist name to a frozen track list.

    Attributes:
        max_playlists: Cap on distinct names (overwrites don't count)
        max_name_length: Longest accepted name after trimming
    """

    def __init__(self, max_playlists: int = MAX_PLAYLISTS, max_name_length: int = MAX_NAME_LENGTH) -> None:
        self.max_playlists = max_playlists
        self.max_name_length = max_name_length
        self._playlists: Dict[str, Tuple[Track, ...]] = {}

    def __len__(self) -> int:
        return len(self._playlists)

    def __contains__(self, name: str) -> bool:
        return name.strip() in self._playlists

    def _clean_name(self, name: str) -> str:
        name = name.strip()
        if not name:
            raise StateConflict("playlist name can't be empty")
        if len(name) > self.max_name_length:
            raise StateConflict(f"playlist name too long (max {self.max_name_length} characters)")
        return name

    def save(self, name: str, tracks: List[Track]) -> str:
        """Store tracks under name, overwriting an existing entry.

        Returns:
            The trimmed name it was stored under

        Raises:
            StateConflict: empty track list, bad name, or cap reached
        """
        name = self._clean_name(name)
        if not tracks:
            raise StateConflict("nothing to save, the queue is empty")
        if name not in self._playlists and len(self._playlists) >= self.max_playlists:
            raise StateConflict(
                f"playlist limit reached ({self.max_playlists}), delete one first"
            )
        self._playlists[name] = tuple(tracks)
        return name

    def load(self, name: str) -> List[Track]:
        """Tracks stored under name.

        Raises:
            NotFound: no such playlist (message suggests a close name)
        """
        key = name.strip()
        if key in self._playlists:
            return list(self._playlists[key])
        suggestion = suggest_name(key, list(self._playlists))
        if suggestion:
            raise NotFound(f"no playlist named '{key}', did you mean '{suggestion}'?")
        raise NotFound(f"no playlist named '{key}'")

    def delete(self, name: str) -> bool:
        return self._playlists.pop(name.strip(), None) is not None

    def names(self) -> List[str]:
        return list(self._playlists)

    def list(self) -> List[Tuple[str, int]]:
        """(name, track count) pairs in save order."""
        return [(name, len(tracks)) for name, tracks in self._playlists.items()]

    def get(self, name: str) -> Optional[Tuple[Track, ...]]:
        return self._playlists.get(name.strip())
