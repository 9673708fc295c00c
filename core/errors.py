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

"""Failure taxonomy for stream acquisition and playback control.

Every component raises one of these up to the session controller. The
controller retries locally (track starts, sink errors) or lets it reach the
command surface, which answers the user with ``error.message``.
"""

from typing import Optional


class MusicError(Exception):
    """Base class for every failure the bot can explain to a user."""

    default_message = "something went wrong"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message if detail is None else f"{self.message} ({detail})")


class NotFound(MusicError):
    """No search results, unknown playlist, or a stale track reference."""

    default_message = "nothing found"


class PermanentUpstream(MusicError):
    """Source refused for good: unavailable, private, restricted, malformed."""

    default_message = "that source can't be played"


class InvalidQuery(PermanentUpstream):
    default_message = "that query isn't valid"


class TransientUpstream(MusicError):
    """Rate limits, expired signatures, timeouts, dropped connections."""

    default_message = "source is having trouble, try again in a bit"


class CircuitOpenError(TransientUpstream):
    default_message = "source is cooling down after repeated failures, try again shortly"


class VoiceConnectionError(TransientUpstream):
    default_message = "couldn't connect to voice"


class ResourceExhaustion(MusicError):
    """Spawn failure or a subprocess that died without a recognizable cause."""

    default_message = "couldn't start the audio pipeline"


class StateConflict(MusicError):
    """Caller-correctable: wrong state, bad position, playlist limits."""

    default_message = "can't do that right now"


# Checked before TRANSIENT_PATTERNS: "HTTP Error 404" must not read as network noise
PERMANENT_PATTERNS = (
    "video unavailable",
    "this video is unavailable",
    "private video",
    "private",
    "deleted",
    "removed by the uploader",
    "age-restricted",
    "age restricted",
    "age verification",
    "confirm your age",
    "sign in to confirm",
    "copyright",
    "region",
    "not available in your country",
    "geo restrict",
    "not found",
    "404",
    "invalid url",
    "unsupported url",
    "is not a valid url",
    "invalid input",
)

TRANSIENT_PATTERNS = (
    "403",
    "forbidden",
    "429",
    "too many requests",
    "rate limit",
    "timeout",
    "timed out",
    "etimedout",
    "connection reset",
    "econnreset",
    "econnrefused",
    "connection refused",
    "socket hang up",
    "network",
    "temporary",
    "temporarily",
    "retry",
    "unable to download",
    "http error 5",
    "signature",
)


def _matches(text: str, patterns: tuple[str, ...]) -> bool:
    return any(pattern in text for pattern in patterns)


def is_permanent_text(text: str) -> bool:
    return _matches(text.lower(), PERMANENT_PATTERNS)


def is_transient_text(text: str) -> bool:
    return _matches(text.lower(), TRANSIENT_PATTERNS)


def classify_failure(text: str) -> MusicError:
    """Map raw extractor/decoder diagnostics onto the taxonomy.

    Args:
        text: stderr excerpt or exception text from the external tool

    Returns:
        PermanentUpstream, TransientUpstream, or ResourceExhaustion carrying
        the raw text as ``detail``
    """
    detail = text.strip() or None
    if detail is None:
        return ResourceExhaustion(detail="no diagnostic output")
    if is_permanent_text(detail):
        return PermanentUpstream(detail=detail)
    if is_transient_text(detail):
        return TransientUpstream(detail=detail)
    return ResourceExhaustion(detail=detail)


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed attempt is worth repeating.

    Typed errors answer for themselves. Untyped errors are judged by their
    text, permanent patterns first; anything unrecognized is not retried.
    """
    if isinstance(error, TransientUpstream):
        return True
    if isinstance(error, MusicError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    text = str(error)
    if is_permanent_text(text):
        return False
    return is_transient_text(text)


def is_permanent(error: BaseException) -> bool:
    """True when repeating the same work can't help (bad source or bad input)."""
    if isinstance(error, (PermanentUpstream, NotFound, StateConflict)):
        return True
    if isinstance(error, MusicError):
        return False
    return is_permanent_text(str(error))
