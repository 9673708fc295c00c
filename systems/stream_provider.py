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
Stream Provider (yt-dlp + ffmpeg)

Turns a user query into a Track and a Track into decoded PCM.

resolve():
    yt-dlp --dump-json for the best match of a URL or "ytsearch1:" query.
    The selected format's direct media URL is cached as the stream locator.

open_stream():
    cache hit  → ffmpeg reads the cached locator directly
    cache miss → yt-dlp -o - | ffmpeg
    ffmpeg always emits 48kHz stereo s16le with the session volume applied
    as a filter. Both pipes are OS pipes so the audio thread can read
    PCM with plain blocking reads while the event loop supervises the
    processes.

Every spawn is tracked by the ProcessSupervisor. A pipeline must produce
its first byte within startup_timeout or it is killed and the attempt
fails as transient. Once audio flows the supervisory timer is disarmed;
the pipeline lives until the track ends or the stream is closed.
"""

import asyncio
import json
import os
import shlex
import signal
import sys
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Callable, List, Optional

from loguru import logger

from core.errors import (
    NotFound,
    PermanentUpstream,
    ResourceExhaustion,
    TransientUpstream,
    classify_failure,
)
from core.track import Track
from systems.process_supervisor import FORCE_KILL, ProcessSupervisor, TrackedProcess
from systems.retry import CircuitBreaker, with_retry
from systems.stream_cache import StreamCache
from utils.validation import is_url, sanitize_query, validate_source_url

PIPE_BUFFER_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20
EXIT_GRACE = 2.0

# Keeps fire-and-forget drain tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


def default_extractor_command() -> List[str]:
    return [sys.executable, "-m", "yt_dlp"]


def parse_command(value: Optional[str]) -> List[str]:
    """Split a configured command line; empty means the bundled yt-dlp."""
    if not value or not value.strip():
        return default_extractor_command()
    return shlex.split(value)


def _spawn_background(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _close_when_done(future: asyncio.Future, reader: BinaryIO) -> None:
    """Close reader once a pending executor read on it returns."""
    def _finish(fut: asyncio.Future) -> None:
        if not fut.cancelled():
            fut.exception()
        reader.close()

    if future.done():
        _finish(future)
    else:
        future.add_done_callback(_finish)


class AudioStream:
    """
    Decoded PCM for one track, backed by a supervised process chain.

    read() blocks and is meant for the audio thread. close() must run on
    the event loop: it signals the chain through the supervisor (SIGTERM,
    escalating to SIGKILL) and closes the pipe.

    Attributes:
        track: The track being decoded
        volume: Gain multiplier baked into the decoder
    """

    def __init__(
        self,
        track: Track,
        volume: float,
        reader: BinaryIO,
        processes: List[TrackedProcess],
        supervisor: ProcessSupervisor,
    ) -> None:
        self.track = track
        self.volume = volume
        self._reader = reader
        self._processes = processes
        self._supervisor = supervisor
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int) -> bytes:
        if self._closed:
            return b""
        try:
            return self._reader.read(size)
        except ValueError:
            # Reader closed underneath us
            return b""

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for entry in self._processes:
            self._supervisor.kill(entry, signal.SIGTERM)
        self._reader.close()
        logger.debug(f"closed stream for {self.track.title!r}")

    def __repr__(self) -> str:
        return f"AudioStream(track={self.track!r}, closed={self._closed})"


class YtDlpStreamProvider:
    """StreamProvider backed by yt-dlp and ffmpeg subprocesses.

    One instance is shared by all sessions, together with its cache and
    circuit breaker.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        cache: StreamCache,
        *,
        extractor_command: Optional[List[str]] = None,
        ffmpeg_path: str = "ffmpeg",
        cookies_path: Optional[str] = None,
        startup_timeout: float = 15.0,
        resolve_timeout: float = 30.0,
        setup_timeout: float = 60.0,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.supervisor = supervisor
        self.cache = cache
        self.extractor_command = extractor_command or default_extractor_command()
        self.ffmpeg_path = ffmpeg_path
        self.cookies_path = cookies_path
        self.startup_timeout = startup_timeout
        self.resolve_timeout = resolve_timeout
        self.setup_timeout = setup_timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.breaker = breaker or CircuitBreaker(
            "extractor",
            counts_as_failure=lambda e: not isinstance(e, (NotFound, PermanentUpstream)),
        )
        self._sleep = sleep

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def resolve(self, query: str, requester: str) -> Track:
        """Resolve a URL or search text to the best matching Track.

        Raises:
            InvalidQuery: query failed validation
            NotFound: search returned nothing
            PermanentUpstream / TransientUpstream / ResourceExhaustion
        """
        query = sanitize_query(query)
        target = validate_source_url(query) if is_url(query) else f"ytsearch1:{query}"

        info = await self._guarded(lambda: self._extract_info(target), f"resolve {query!r}")

        url = info.get("webpage_url") or info.get("original_url") or target
        duration = info.get("duration")
        if info.get("is_live") or not isinstance(duration, (int, float)):
            duration = None
        track = Track(
            title=info.get("title") or url,
            url=url,
            requested_by=requester,
            duration=int(duration) if duration is not None else None,
        )

        locator = info.get("url")
        if locator:
            self.cache.put(track.cache_key, locator)
        logger.info(f"resolved {query!r} → {track.title!r} ({track.display_duration})")
        return track

    async def open_stream(self, track: Track, volume: float = 1.0) -> AudioStream:
        """Start a decode pipeline for track and wait for its first byte."""
        async def attempt() -> AudioStream:
            locator = self.cache.get(track.cache_key)
            if locator is None:
                return await self._open_pipeline(track, volume)
            try:
                return await self._open_pipeline(track, volume, locator=locator)
            except (TransientUpstream, ResourceExhaustion) as e:
                # Signed URLs expire early sometimes; next attempt goes through yt-dlp
                self.cache.invalidate(track.cache_key)
                raise TransientUpstream("cached stream locator failed", detail=str(e)) from e

        return await self._guarded(attempt, f"stream {track.title!r}")

    # =========================================================================
    # RETRY / BREAKER
    # =========================================================================

    async def _guarded(self, operation: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await self.breaker.call(
            lambda: with_retry(
                operation,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                description=description,
                sleep=self._sleep,
            )
        )

    # =========================================================================
    # SUBPROCESS PLUMBING
    # =========================================================================

    def _cookie_args(self) -> List[str]:
        if self.cookies_path and Path(self.cookies_path).is_file():
            return ["--cookies", self.cookies_path]
        return []

    async def _spawn(self, args: List[str], **kwargs) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*args, **kwargs)
        except OSError as e:
            raise ResourceExhaustion(f"couldn't start {Path(args[0]).name}", detail=str(e)) from e

    async def _extract_info(self, target: str) -> dict:
        args = [
            *self.extractor_command,
            "--dump-json",
            "--skip-download",
            "--no-playlist",
            "--no-warnings",
            "-f", "bestaudio/best",
            *self._cookie_args(),
            "--", target,
        ]
        proc = await self._spawn(
            args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        entry = self.supervisor.track(proc, f"yt-dlp resolve {target}", self.resolve_timeout)
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            self.supervisor.kill(entry, FORCE_KILL)
            raise
        self.supervisor.remove(entry)

        if entry.timed_out:
            raise TransientUpstream(detail=f"yt-dlp timed out after {self.resolve_timeout:.0f}s")

        if proc.returncode != 0:
            lines = stderr.decode(errors="replace").splitlines()
            errors = [line for line in lines if "ERROR" in line] or lines[-3:]
            raise classify_failure("\n".join(errors) or f"yt-dlp exited with code {proc.returncode}")

        for line in stdout.decode(errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                info = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"skipping non-json extractor output: {line[:80]}")
                continue
            if isinstance(info, dict):
                return info

        raise NotFound("no results for that search")

    def _decoder_args(self, source_args: List[str], volume: float) -> List[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            *source_args,
            "-vn",
            "-af", f"volume={volume:.2f}",
            "-f", "s16le",
            "-ar", "48000",
            "-ac", "2",
            "pipe:1",
        ]

    async def _drain_stderr(self, proc: asyncio.subprocess.Process, tail: deque, label: str) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            tail.append(text)
            if "ERROR" in text or "error" in text.lower():
                logger.debug(f"{label}: {text}")

    async def _open_pipeline(self, track: Track, volume: float, locator: Optional[str] = None) -> AudioStream:
        entries: List[TrackedProcess] = []
        drains: List[asyncio.Task] = []
        tails: List[tuple[str, deque]] = []

        def watch(proc: asyncio.subprocess.Process, label: str) -> None:
            tail: deque = deque(maxlen=STDERR_TAIL_LINES)
            tails.append((label, tail))
            drains.append(_spawn_background(self._drain_stderr(proc, tail, label)))
            entries.append(self.supervisor.track(proc, f"{label} {track.title}", self.setup_timeout))

        def abort() -> None:
            for entry in entries:
                self.supervisor.kill(entry, FORCE_KILL)

        feed_read: Optional[int] = None
        if locator is None:
            feed_read, feed_write = os.pipe()
            try:
                extractor = await self._spawn(
                    [
                        *self.extractor_command,
                        "-f", "bestaudio/best",
                        "-q",
                        "--no-warnings",
                        "--no-playlist",
                        "--buffer-size", "16K",
                        *self._cookie_args(),
                        "-o", "-",
                        "--", track.url,
                    ],
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=feed_write,
                    stderr=asyncio.subprocess.PIPE,
                )
            except BaseException:
                os.close(feed_read)
                raise
            finally:
                os.close(feed_write)
            watch(extractor, "yt-dlp")
            source_args = ["-i", "pipe:0"]
            decoder_stdin: Any = feed_read
        else:
            source_args = [
                "-nostdin",
                "-reconnect", "1",
                "-reconnect_streamed", "1",
                "-reconnect_delay_max", "5",
                "-i", locator,
            ]
            decoder_stdin = asyncio.subprocess.DEVNULL

        pcm_read, pcm_write = os.pipe()
        try:
            decoder = await self._spawn(
                self._decoder_args(source_args, volume),
                stdin=decoder_stdin,
                stdout=pcm_write,
                stderr=asyncio.subprocess.PIPE,
            )
        except BaseException:
            os.close(pcm_read)
            abort()
            raise
        finally:
            os.close(pcm_write)
            if feed_read is not None:
                os.close(feed_read)
        watch(decoder, "ffmpeg")

        reader = open(pcm_read, "rb", buffering=PIPE_BUFFER_SIZE)
        loop = asyncio.get_running_loop()
        first = loop.run_in_executor(None, reader.peek, 1)
        try:
            done, _ = await asyncio.wait({first}, timeout=self.startup_timeout)
        except asyncio.CancelledError:
            abort()
            _close_when_done(first, reader)
            raise

        if not done:
            logger.warning(f"no audio for {track.title!r} after {self.startup_timeout:.0f}s, killing pipeline")
            abort()
            _close_when_done(first, reader)
            raise TransientUpstream(detail="timed out waiting for audio stream")

        if first.exception() is not None or not first.result():
            error = first.exception()
            # Let the chain exit so stderr and exit codes are complete before classifying
            exits = [asyncio.ensure_future(entry.process.wait()) for entry in entries]
            try:
                await asyncio.wait([*drains, *exits], timeout=EXIT_GRACE)
            finally:
                for fut in exits:
                    fut.cancel()
                abort()
                reader.close()
            if error is not None:
                raise ResourceExhaustion("audio pipe failed", detail=str(error))
            raise self._pipeline_failure(entries, tails)

        for entry in entries:
            self.supervisor.disarm(entry)
        logger.debug(f"audio flowing for {track.title!r} ({'cached' if locator else 'extractor'})")
        return AudioStream(track, volume, reader, entries, self.supervisor)

    def _pipeline_failure(self, entries: List[TrackedProcess], tails: List[tuple[str, deque]]) -> Exception:
        if any(entry.timed_out for entry in entries):
            return TransientUpstream(detail="audio pipeline timed out")

        # The extractor's diagnosis beats ffmpeg's "pipe:0: end of file"
        for label, tail in tails:
            errors = [line for line in tail if "ERROR" in line]
            if errors:
                return classify_failure("\n".join(errors))

        for (label, tail), entry in zip(tails, entries):
            code = entry.process.returncode
            if code not in (None, 0):
                text = "\n".join(tail) or f"{label} exited with code {code} without producing audio"
                return classify_failure(text)

        return ResourceExhaustion(detail="stream ended without producing audio")
