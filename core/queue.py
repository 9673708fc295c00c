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
Track Queue

Ordered list of pending tracks for one session.

Positions are 1-based for every public method that takes one; the deque
underneath is 0-based. Out-of-range positions are reported through the
return value (None / False) and never mutate the queue.
"""

import random
from collections import deque
from typing import Iterator, List, Optional

from core.track import Track


class TrackQueue:
    """FIFO of upcoming tracks with positional edits and shuffle."""

    def __init__(self) -> None:
        self._items: deque[Track] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Track]:
        return iter(list(self._items))

    def __bool__(self) -> bool:
        return bool(self._items)

    def size(self) -> int:
        return len(self._items)

    def enqueue(self, track: Track) -> int:
        """Append a track. Returns its 1-based position."""
        self._items.append(track)
        return len(self._items)

    def extend(self, tracks: List[Track]) -> int:
        self._items.extend(tracks)
        return len(self._items)

    def dequeue(self) -> Optional[Track]:
        """Pop the front track, None when empty."""
        return self._items.popleft() if self._items else None

    def peek(self) -> Optional[Track]:
        return self._items[0] if self._items else None

    def push_front(self, track: Track) -> None:
        self._items.appendleft(track)

    def insert(self, index: int, track: Track) -> None:
        """Insert at a 0-based index, clamped into [0, size]."""
        index = max(0, min(index, len(self._items)))
        self._items.insert(index, track)

    def get(self, position: int) -> Optional[Track]:
        if not self._valid(position):
            return None
        return self._items[position - 1]

    def remove_at(self, position: int) -> Optional[Track]:
        """Remove the track at a 1-based position.

        Returns:
            The removed track, or None if the position is out of range
        """
        if not self._valid(position):
            return None
        track = self._items[position - 1]
        del self._items[position - 1]
        return track

    def move(self, from_pos: int, to_pos: int) -> bool:
        """Move a track between 1-based positions.

        Returns:
            False if either position is out of range, True otherwise
            (including a same-position move)
        """
        if not (self._valid(from_pos) and self._valid(to_pos)):
            return False
        if from_pos == to_pos:
            return True
        track = self._items[from_pos - 1]
        del self._items[from_pos - 1]
        self._items.insert(to_pos - 1, track)
        return True

    def shuffle(self, rng: Optional[random.Random] = None) -> None:
        """Fisher-Yates shuffle in place (uniform over all permutations)."""
        rng = rng or random
        items = list(self._items)
        for i in range(len(items) - 1, 0, -1):
            j = rng.randint(0, i)
            items[i], items[j] = items[j], items[i]
        self._items = deque(items)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> List[Track]:
        return list(self._items)

    def _valid(self, position: int) -> bool:
        return 1 <= position <= len(self._items)
