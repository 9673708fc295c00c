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

"""Fuzzy matching of playlist names using RapidFuzz.

Thresholds: 75 for a "did you mean" suggestion, 61 for autocomplete.
"""

from typing import Optional

from rapidfuzz import fuzz, process
from rapidfuzz.utils import default_process

SUGGEST_THRESHOLD = 75
AUTOCOMPLETE_THRESHOLD = 61


def fuzzy_search(query: str, names: list[str], max_results: int = 25) -> list[tuple[str, float]]:
    """
    Rank names against a query.

    WRatio handles partial matches and word reordering well enough for short
    playlist names. An exact (case-insensitive) match is boosted to 101 so it
    always wins ties.

    Args:
        query: Search string (truncated to 100 chars)
        names: Candidate names
        max_results: Maximum results to return

    Returns:
        List of (name, score) tuples sorted by score descending
    """
    if not query or not names:
        return []

    query = query[:100]
    query_processed = default_process(query)
    if not query_processed:
        return []

    results = []
    for name, score, _ in process.extract(
        query, names, scorer=fuzz.WRatio, processor=default_process, limit=None
    ):
        if default_process(name) == query_processed:
            score += 1
        results.append((name, score))

    results.sort(key=lambda x: (-x[1], x[0]))
    return results[:max_results]


def suggest_name(query: str, names: list[str]) -> Optional[str]:
    """Closest name worth suggesting, or None if nothing is close enough."""
    results = fuzzy_search(query, names, max_results=1)
    if results and results[0][1] >= SUGGEST_THRESHOLD:
        return results[0][0]
    return None


def autocomplete_search(query: str, names: list[str], max_results: int = 25) -> list[str]:
    """Names for a Discord autocomplete dropdown.

    Empty query lists everything (Discord sends "" when the field is focused).
    """
    if not query:
        return sorted(names)[:max_results]
    return [n for n, s in fuzzy_search(query, names, max_results) if s >= AUTOCOMPLETE_THRESHOLD]
