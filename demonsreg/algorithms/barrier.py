"""
Reusable N-party thread barrier.

All parties must call wait() before any of them proceeds past it. The barrier
resets itself after every release, so the same object serves every iteration
of a registration run.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from ..core.errors import BarrierError, InvalidConfiguration

logger = logging.getLogger(__name__)


class Barrier:
    """
    Generation-counting barrier built on a condition variable.

    Each release increments a generation token. A waiting party only leaves
    once the token differs from the one it arrived with, so spurious wake-ups
    never release a party early and no party is released twice for the same
    generation.

    Example:
        >>> barrier = Barrier()
        >>> barrier.initialize(4)
        >>> # in each of the 4 threads:
        >>> barrier.wait()
    """

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._number_of_parties = 0
        self._count = 0
        self._generation = 0
        self._broken = False
        self._aborts = 0

    def initialize(self, n: int) -> None:
        """
        Set the party count and reset internal counters.

        Args:
            n: Number of parties that must arrive before a release

        Raises:
            InvalidConfiguration: If n < 1
            BarrierError: If parties are currently waiting
        """
        if n < 1:
            raise InvalidConfiguration(f"Barrier needs at least one party, got {n}")

        with self._condition:
            if self._count:
                raise BarrierError(
                    f"Cannot initialize barrier while {self._count} parties are waiting"
                )
            self._number_of_parties = int(n)
            self._count = 0
            self._broken = False

    @property
    def number_of_parties(self) -> int:
        return self._number_of_parties

    @property
    def n_waiting(self) -> int:
        """Number of parties currently blocked in wait()."""
        with self._condition:
            return self._count

    @property
    def generation(self) -> int:
        """Number of completed releases."""
        with self._condition:
            return self._generation

    @property
    def broken(self) -> bool:
        with self._condition:
            return self._broken

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Block until all parties have arrived.

        Args:
            timeout: Seconds to wait before giving up. On expiry the barrier
                is broken and every waiting party raises BarrierError.

        Returns:
            Arrival order of the caller within its generation (0-based). The
            last arrival gets ``number_of_parties - 1``.

        Raises:
            BarrierError: If the barrier is uninitialized, broken, aborted
                while waiting, or the timeout expired
        """
        with self._condition:
            if self._number_of_parties == 0:
                raise BarrierError("Barrier.wait() called before initialize()")
            if self._broken:
                raise BarrierError("Barrier is broken")

            generation = self._generation
            aborts = self._aborts
            arrival = self._count
            self._count += 1

            if self._count == self._number_of_parties:
                # last arrival releases everybody
                self._count = 0
                self._generation += 1
                self._condition.notify_all()
                return arrival

            released = self._condition.wait_for(
                lambda: self._generation != generation or self._aborts != aborts,
                timeout,
            )
            if self._generation != generation:
                return arrival

            if not released:
                logger.error(
                    "Barrier timed out with %d of %d parties arrived",
                    self._count, self._number_of_parties,
                )
                self._break()
                raise BarrierError(
                    f"Barrier timed out after {timeout}s waiting for "
                    f"{self._number_of_parties} parties"
                )

            raise BarrierError("Barrier was aborted while waiting")

    def abort(self) -> None:
        """Break the barrier, releasing every waiting party with BarrierError."""
        with self._condition:
            self._break()

    def reset(self) -> None:
        """Repair a broken barrier. No party may be waiting."""
        with self._condition:
            if self._count and not self._broken:
                raise BarrierError(
                    f"Cannot reset barrier while {self._count} parties are waiting"
                )
            self._count = 0
            self._broken = False

    def _break(self) -> None:
        self._broken = True
        self._aborts += 1
        self._count = 0
        self._condition.notify_all()
