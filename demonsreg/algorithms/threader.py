"""
Persistent worker-thread pool with barrier-synchronized dispatch.

The pool starts a fixed number of OS threads once per registration run and
reuses them for every phase of every iteration.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .barrier import Barrier
from ..core.errors import BarrierError, DispatchFailure, InvalidConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadInfo:
    """
    Identity of a worker thread passed to every dispatched method.

    Attributes:
        thread_id: Index of the thread in the pool (0-based)
        number_of_threads: Size of the pool
    """

    thread_id: int
    number_of_threads: int


class MultiThreader:
    """
    Fixed-size pool that runs one method on every thread per dispatch.

    Every dispatch goes through two barriers of ``number_of_threads + 1``
    parties (the workers plus the calling thread): a start barrier owned by
    the pool and a completion barrier supplied by the caller. A worker whose
    method raises records the exception and still arrives at the completion
    barrier, so one failing worker never deadlocks the others.

    Example:
        >>> done = Barrier()
        >>> done.initialize(4 + 1)
        >>> with MultiThreader(4) as threader:
        ...     threader.single_method_execute(work, done)
    """

    def __init__(self, number_of_threads: int):
        if number_of_threads < 1:
            raise InvalidConfiguration(
                f"number_of_threads must be >= 1, got {number_of_threads}"
            )

        self.number_of_threads = int(number_of_threads)
        self._start_barrier = Barrier()
        self._start_barrier.initialize(self.number_of_threads + 1)
        self._threads: List[threading.Thread] = []
        self._method: Optional[Callable[[ThreadInfo], None]] = None
        self._completion: Optional[Barrier] = None
        self._errors: List[Optional[BaseException]] = [None] * self.number_of_threads

    @property
    def is_running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        """
        Start the worker threads.

        Raises:
            DispatchFailure: If a thread cannot be started
        """
        if self._threads:
            return

        for thread_id in range(self.number_of_threads):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(ThreadInfo(thread_id, self.number_of_threads),),
                name=f"demons-worker-{thread_id}",
                daemon=True,
            )
            try:
                thread.start()
            except RuntimeError as e:
                logger.error("Could not start worker thread %d: %s", thread_id, e)
                # release the workers already parked on the start barrier
                self._start_barrier.abort()
                for started in self._threads:
                    started.join()
                self._threads = []
                self._start_barrier.reset()
                raise DispatchFailure(f"Could not start worker thread {thread_id}: {e}") from e
            self._threads.append(thread)

        logger.debug("Started %d worker threads", self.number_of_threads)

    def single_method_execute(
        self,
        method: Callable[[ThreadInfo], None],
        completion: Barrier,
    ) -> None:
        """
        Run method on every worker thread and wait for all of them.

        Args:
            method: Callable receiving the worker's ThreadInfo
            completion: Barrier of number_of_threads + 1 parties that every
                worker (and this call) waits on once the method returns

        Raises:
            DispatchFailure: If the pool is not running or the completion
                barrier has the wrong party count
            Exception: The first exception (lowest thread id) raised by a worker
        """
        if not self._threads:
            raise DispatchFailure("Worker pool has not been started")

        if completion.number_of_parties != self.number_of_threads + 1:
            raise DispatchFailure(
                f"Completion barrier has {completion.number_of_parties} parties, "
                f"expected {self.number_of_threads + 1}"
            )

        self._errors = [None] * self.number_of_threads
        self._method = method
        self._completion = completion

        self._start_barrier.wait()
        completion.wait()

        self._method = None
        self._completion = None

        for thread_id, error in enumerate(self._errors):
            if error is not None:
                logger.debug("Worker %d failed: %r", thread_id, error)
                raise error

    def shutdown(self) -> None:
        """Stop and join the worker threads."""
        if not self._threads:
            return

        self._method = None
        self._completion = None
        self._start_barrier.wait()

        for thread in self._threads:
            thread.join()
        self._threads = []

        logger.debug("Stopped %d worker threads", self.number_of_threads)

    def __enter__(self) -> "MultiThreader":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _worker_loop(self, info: ThreadInfo) -> None:
        while True:
            try:
                self._start_barrier.wait()
            except BarrierError:
                # start barrier aborted during a failed start()
                return

            method = self._method
            completion = self._completion
            if method is None:
                return

            try:
                method(info)
            except Exception as e:
                self._errors[info.thread_id] = e
            finally:
                completion.wait()
