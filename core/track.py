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
Track Model

A resolved, immutable reference to one playable source.

Design notes:
    - Each track gets a unique ID at resolution time; equality and hashing
      use only that ID, so re-queuing the same URL twice yields two distinct
      tracks and prebuffer matching never confuses them
    - url doubles as the stream cache key (canonical source URL)
"""

from dataclasses import dataclass, field
from itertools import count
from typing import Optional

_track_ids = count(1)


@dataclass(frozen=True, slots=True)
class Track:
    """
    A single queued source.

    Attributes:
        title: Display title reported by the extractor
        url: Canonical source URL
        requested_by: Display name of the requesting member
        duration: Length in seconds, None for live or unknown
        track_id: Unique identity (auto-incremented)
    """

    title: str = field(compare=False)
    url: str = field(compare=False)
    requested_by: str = field(compare=False)
    duration: Optional[int] = field(default=None, compare=False)
    track_id: int = field(default_factory=lambda: next(_track_ids))

    @property
    def cache_key(self) -> str:
        return self.url

    @property
    def display_duration(self) -> str:
        return format_duration(self.duration)

    def __repr__(self) -> str:
        return f"Track(id={self.track_id}, title={self.title!r})"


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as m:ss or h:mm:ss; "?:??" when unknown.

    Example:
        format_duration(75) → "1:15"
        format_duration(3725) → "1:02:05"
    """
    if seconds is None or seconds < 0:
        return "?:??"
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
