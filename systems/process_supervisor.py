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
Process Supervisor

Owns every extractor/decoder subprocess the bot spawns.

Lifecycle of a tracked process:
    track()  → registered, supervisory timer armed, reaper task waits for exit
    exit     → reaper calls remove(): timer disarmed, entry dropped
    timeout  → force-killed and removed
    kill()   → signal sent; a graceful signal escalates to a forced kill
               after TERM_GRACE seconds if the entry is still registered

remove() is idempotent, so the reaper, the timeout path and explicit
cleanup can all race to it safely and each entry leaves the set exactly
once. Sessions share one supervisor; the set is guarded by a lock because
stream teardown can originate from the audio thread.
"""

import asyncio
import signal
import threading
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Callable, List, Optional

from loguru import logger

TERM_GRACE = 5.0
FORCE_KILL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass(eq=False, slots=True)
class TrackedProcess:
    """Supervised handle for one subprocess.

    Attributes:
        process: asyncio.subprocess.Process (or anything with pid,
            returncode, send_signal, kill and async wait)
        description: Human-readable label for logs
        started_at: Monotonic time of registration
        timeout: Supervisory timeout in seconds, None for unbounded
        timed_out: Set when the supervisory timer fired
    """

    process: Any
    description: str
    started_at: float
    timeout: Optional[float] = None
    timed_out: bool = False
    removed: bool = False
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    escalation: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    reaper: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Registry of live subprocesses with timeouts and kill escalation."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._active: set[TrackedProcess] = set()
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def active(self) -> List[dict]:
        """Snapshot of tracked processes for diagnostics."""
        now = self._clock()
        with self._lock:
            entries = list(self._active)
        return [
            {
                "pid": e.pid,
                "command": e.description,
                "started_at": e.started_at,
                "runtime": now - e.started_at,
            }
            for e in entries
        ]

    def track(self, process: Any, description: str, timeout: Optional[float] = None) -> TrackedProcess:
        """Register a freshly spawned process.

        Args:
            process: The spawned process
            description: Label for logs (e.g., "yt-dlp resolve")
            timeout: Seconds before a forced kill; None disables the timer

        Returns:
            Handle used for remove/kill/disarm
        """
        loop = asyncio.get_running_loop()
        entry = TrackedProcess(process, description, self._clock(), timeout)
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._on_timeout, entry)
        with self._lock:
            self._active.add(entry)
        entry.reaper = loop.create_task(self._reap(entry))
        logger.debug(f"tracking pid {entry.pid}: {description}")
        return entry

    async def _reap(self, entry: TrackedProcess) -> None:
        await entry.process.wait()
        self.remove(entry)

    def remove(self, entry: TrackedProcess) -> bool:
        """Deregister and disarm timers. Returns False if already removed."""
        with self._lock:
            if entry.removed:
                return False
            entry.removed = True
            self._active.discard(entry)

        for handle in (entry.timer, entry.escalation):
            if handle is not None:
                handle.cancel()
        entry.timer = entry.escalation = None

        reaper = entry.reaper
        if reaper is not None and not reaper.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if reaper is not current:
                reaper.cancel()

        runtime = self._clock() - entry.started_at
        logger.debug(f"pid {entry.pid} released ({entry.description}, {runtime:.1f}s)")
        return True

    def disarm(self, entry: TrackedProcess) -> None:
        """Cancel the supervisory timer but keep the process tracked.

        Stream pipelines call this once audio is flowing: from then on the
        track length, not a startup timeout, bounds their lifetime.
        """
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def kill(self, entry: TrackedProcess, sig: int = signal.SIGTERM) -> bool:
        """Signal a tracked process.

        A graceful signal schedules a forced kill after TERM_GRACE seconds
        if the process is still registered by then. A forced kill also
        releases the entry; asyncio's child watcher reaps the corpse.

        Returns:
            True if a signal was delivered
        """
        if not entry.alive:
            self.remove(entry)
            return False

        try:
            if sig == FORCE_KILL:
                entry.process.kill()
            else:
                entry.process.send_signal(sig)
        except ProcessLookupError:
            self.remove(entry)
            return False

        if sig == FORCE_KILL:
            self.remove(entry)
        elif entry.escalation is None and not entry.removed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                entry.escalation = loop.call_later(TERM_GRACE, self._escalate, entry)
        return True

    def _escalate(self, entry: TrackedProcess) -> None:
        entry.escalation = None
        if entry.removed:
            return
        logger.warning(f"{entry.description} (pid {entry.pid}) ignored SIGTERM, killing")
        self.kill(entry, FORCE_KILL)

    def _on_timeout(self, entry: TrackedProcess) -> None:
        entry.timer = None
        if entry.removed:
            return
        entry.timed_out = True
        logger.warning(f"{entry.description} (pid {entry.pid}) exceeded {entry.timeout:.0f}s, killing")
        self.kill(entry, FORCE_KILL)

    def cleanup_all(self, sig: int = FORCE_KILL) -> int:
        """Kill every tracked process. Called on shutdown.

        Returns:
            Number of processes signalled
        """
        with self._lock:
            entries = list(self._active)
        if entries:
            logger.info(f"killing {len(entries)} tracked process(es)")
        return sum(1 for entry in entries if self.kill(entry, sig))
