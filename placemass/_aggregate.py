"""
_aggregate.py
=============
Concurrent aggregation over a set of sample files.

Building blocks shared by both workflows in ``_analysis``:

  OnceCell            value built exactly once, visible fully-built to all
  SharedReference     the published reference tree (+ node matrices)
  MassAccumulator     internally locked running sum of mass vectors
  ResultSlots         internally locked, index-keyed per-file results
  LoggingProgress     "Processing file i of N" progress reporter
  run_parallel        thread pool with cooperative cancellation

Threading model
---------------
``run_parallel`` submits one task per file index to a
``ThreadPoolExecutor``; idle workers take the next index, so files of uneven
size balance out.  The loader and the per-sample reduction run outside any
lock (numpy releases the GIL for the heavy parts).  The only serialised steps
are the once-only reference build and the ``combine`` calls, which merely add
or assign.  The first exception raised by a task sets the cancellation event;
tasks that have not started yet return immediately, and the exception is
re-raised to the caller after the pool has drained.
"""

import logging
import os
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import numpy as np

from placemass._exceptions import EmptyInputError, TreeIncompatibilityError
from placemass._logging import log_file_progress, log_zero_total_mass
from placemass._tree import Tree

logger = logging.getLogger(__name__)


# ============================================================================ #
# Once-only shared state
# ============================================================================ #


class OnceCell:
    """
    A value that is initialised at most once, by whichever caller comes first.

    ``get_or_init(factory)`` runs *factory* exactly once.  Concurrent callers
    wait until the value is published and then all receive the same object.
    If the factory raises, nothing is published, the exception propagates to
    the caller that ran it, and the next caller runs the factory again.

    Examples
    --------
    >>> cell = OnceCell()
    >>> cell.get_or_init(lambda: 42)
    42
    >>> cell.get_or_init(lambda: 0)
    42
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._value: Any = None

    def get_or_init(self, factory: Callable[[], Any]) -> Any:
        if self._ready.is_set():
            return self._value
        with self._lock:
            if not self._ready.is_set():
                self._value = factory()
                self._ready.set()
        return self._value

    def is_set(self) -> bool:
        return self._ready.is_set()

    def get(self) -> Any:
        """Return the published value; ``RuntimeError`` if there is none yet."""
        if not self._ready.is_set():
            raise RuntimeError("OnceCell has not been initialised.")
        return self._value


@dataclass(frozen=True)
class SharedReference:
    """
    Reference structures built from the first sample and shared read-only.

    ``node_distances`` and ``node_sides`` are only built by the histogram
    workflow; they are None for mass accumulation.
    """

    tree: Tree
    source: str
    node_distances: Optional[np.ndarray] = None
    node_sides: Optional[np.ndarray] = None

    @property
    def matrix_bytes(self) -> int:
        total = 0
        for m in (self.node_distances, self.node_sides):
            if m is not None:
                total += m.nbytes
        return total


# ============================================================================ #
# Accumulators
# ============================================================================ #


class MassAccumulator:
    """
    Running element-wise sum of per-sample mass vectors.

    ``combine`` is safe to call from several threads.  The first vector fixes
    the length; a vector of any other length raises
    ``TreeIncompatibilityError`` naming its source.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total: Optional[np.ndarray] = None
        self._count = 0

    def combine(self, masses: np.ndarray, source: str) -> None:
        masses = np.asarray(masses, dtype=np.float64)
        with self._lock:
            if self._total is None:
                self._total = masses.copy()
            elif self._total.shape != masses.shape:
                raise TreeIncompatibilityError(
                    f"Mass vector of length {masses.shape[0]} does not match "
                    f"the accumulated length {self._total.shape[0]}: {source}",
                    source=source,
                )
            else:
                self._total += masses
            self._count += 1

    @property
    def count(self) -> int:
        return self._count

    def value(self) -> np.ndarray:
        """Return a copy of the accumulated vector."""
        with self._lock:
            if self._total is None:
                raise EmptyInputError("No mass vectors have been combined.")
            return self._total.copy()

    def normalize(self) -> bool:
        """
        Rescale the accumulated vector to sum 1.

        Call only after all workers are done.  Returns False, leaving the
        vector unchanged, when its total is not positive.
        """
        if self._total is None:
            raise EmptyInputError("No mass vectors have been combined.")
        total = float(np.sum(self._total))
        if total <= 0.0:
            log_zero_total_mass()
            return False
        self._total /= total
        return True


class ResultSlots:
    """Fixed number of result slots, each filled exactly once by its index."""

    def __init__(self, n: int) -> None:
        self._lock = threading.Lock()
        self._values: List[Any] = [None] * n
        self._filled = [False] * n

    def combine(self, index: int, value: Any) -> None:
        with self._lock:
            self._values[index] = value
            self._filled[index] = True

    def values(self) -> List[Any]:
        with self._lock:
            missing = [i for i, ok in enumerate(self._filled) if not ok]
            if missing:
                raise RuntimeError(f"Result slots {missing} were never filled.")
            return list(self._values)


# ============================================================================ #
# Progress
# ============================================================================ #

# A progress reporter is any callable (position, total, path) -> None.
# position counts from 1 in the order files are started.
ProgressReporter = Callable[[int, int, str], None]


class LoggingProgress:
    """Progress reporter that logs one INFO line per file."""

    def __call__(self, position: int, total: int, path: str) -> None:
        log_file_progress(position, total, path)


class _ProgressCounter:
    """**Private.** Hands out positions 1..N under a lock and forwards them."""

    def __init__(self, reporter: Optional[ProgressReporter], total: int) -> None:
        self._reporter = reporter
        self._total = total
        self._lock = threading.Lock()
        self._position = 0

    def started(self, path: str) -> None:
        if self._reporter is None:
            return
        with self._lock:
            self._position += 1
            self._reporter(self._position, self._total, path)


# ============================================================================ #
# Worker pool
# ============================================================================ #


def resolve_workers(n_workers: Optional[int]) -> int:
    if n_workers is None:
        return os.cpu_count() or 1
    if isinstance(n_workers, bool) or not isinstance(n_workers, int) or n_workers < 1:
        raise ValueError(f"n_workers must be a positive integer, got {n_workers!r}.")
    return n_workers


def run_parallel(
    file_set,
    task: Callable[[int], None],
    n_workers: Optional[int] = None,
    progress: Optional[ProgressReporter] = None,
) -> None:
    """
    Run ``task(index)`` once for every file index on a thread pool.

    Parameters
    ----------
    file_set : object
        Anything with ``file_count()`` and ``file_path(i)``.
    task : callable
        Called with a file index.  Loads, validates, reduces and combines one
        sample.  Its return value is ignored.
    n_workers : int or None
        Pool size; None uses ``os.cpu_count()``.
    progress : ProgressReporter or None
        Called once per file as it begins.

    Raises
    ------
    EmptyInputError
        If the file set is empty.
    ValueError
        If *n_workers* is not a positive integer.
    Exception
        The first exception raised by any task, after all workers stopped.
    """
    n_files = file_set.file_count()
    if n_files == 0:
        raise EmptyInputError("No input files given.")
    n_workers = min(resolve_workers(n_workers), n_files)

    cancelled = threading.Event()
    counter = _ProgressCounter(progress, n_files)
    error_lock = threading.Lock()
    errors: List[BaseException] = []

    def run_one(index: int) -> None:
        if cancelled.is_set():
            return
        try:
            counter.started(file_set.file_path(index))
            task(index)
        except BaseException as e:
            with error_lock:
                errors.append(e)
            cancelled.set()
            raise

    with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="placemass") as pool:
        futures = [pool.submit(run_one, i) for i in range(n_files)]
        wait(futures, return_when=FIRST_EXCEPTION)
        if cancelled.is_set():
            for f in futures:
                f.cancel()

    if errors:
        raise errors[0]
