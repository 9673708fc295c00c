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
Retry and Circuit Breaker

Two wrappers for fallible async calls to the extractor/decoder:

with_retry: repeats an operation while its failure classifies as transient,
    backing off min(base * 2^attempt, max) seconds, optionally jittered ±25%.
CircuitBreaker: stops calling a dependency after N consecutive failures,
    rejecting immediately until a cooldown passes, then lets one trial
    through (half-open) to decide whether to close again.

Composition: the breaker wraps the retry loop, so one exhausted retry
sequence counts as one breaker failure.
"""

import asyncio
import random
from enum import Enum
from time import monotonic
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from core.errors import CircuitOpenError, is_retryable

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
JITTER_FRACTION = 0.25


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Delay before retry number attempt+1 (attempt is 0-based)."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        delay *= 1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION)
    return max(0.0, delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: bool = True,
    description: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_retries: Retries after the first attempt (0 = single attempt)
        base_delay: Seconds before the first retry
        max_delay: Cap on any single delay
        jitter: Randomize each delay by ±25%
        description: Used in log lines
        should_retry: Classifier; permanent failures abort immediately
        sleep: Injected for tests

    Returns:
        The first successful result

    Raises:
        The last error once retries are exhausted, or the first
        non-retryable error
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not should_retry(e):
                logger.debug(f"{description} failed permanently: {e}")
                raise
            if attempt >= max_retries:
                logger.warning(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            attempt += 1
            logger.info(f"{description} failed ({e}), retry {attempt}/{max_retries} in {delay:.1f}s")
            await sleep(delay)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Tripped, rejecting calls
    HALF_OPEN = "half_open"    # Cooldown over, one trial allowed


class CircuitBreaker:
    """
    Failure-threshold breaker around one external dependency.

    Shared by every session that uses the dependency, so one flapping
    upstream fails fast for everybody instead of stacking retries.

    States:
        CLOSED: calls pass through; consecutive failures are counted
        OPEN: calls raise CircuitOpenError without running
        HALF_OPEN: a single trial call runs; others are rejected

    Recovery:
        - reset_timeout seconds after opening, the next call is the trial
        - trial success closes the circuit, trial failure re-opens it and
          restarts the cooldown
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        counts_as_failure: Callable[[BaseException], bool] = lambda e: True,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.counts_as_failure = counts_as_failure
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.trip_count = 0
        self._trial_in_flight = False

    def _check_state(self) -> None:
        """Raise if the call must be rejected; moves OPEN → HALF_OPEN when due."""
        if self.state == CircuitState.OPEN:
            time_open = self._clock() - self.opened_at
            if time_open < self.reset_timeout:
                remaining = self.reset_timeout - time_open
                raise CircuitOpenError(detail=f"{self.name} circuit open, retry in {remaining:.0f}s")
            self.state = CircuitState.HALF_OPEN
            logger.info(f"{self.name} circuit half-open after {time_open:.1f}s")

        if self.state == CircuitState.HALF_OPEN and self._trial_in_flight:
            raise CircuitOpenError(detail=f"{self.name} circuit half-open, trial in progress")

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._check_state()
        trial = self.state == CircuitState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Uncounted errors (bad input, private video) leave the state alone
            if self.counts_as_failure(e):
                self._record_failure()
            raise
        else:
            self._record_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def _record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            self._close_circuit()
        self.failure_count = 0

    def _record_failure(self) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._trip_circuit()

    def _trip_circuit(self) -> None:
        """Open the circuit and start the cooldown."""
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.trip_count += 1
        logger.warning(
            f"{self.name} circuit OPEN after {self.failure_count} consecutive failures "
            f"(cooldown {self.reset_timeout:.0f}s)"
        )

    def _close_circuit(self) -> None:
        """Close the circuit after a successful trial."""
        self.state = CircuitState.CLOSED
        self.opened_at = None
        self.failure_count = 0
        logger.info(f"{self.name} circuit CLOSED")
