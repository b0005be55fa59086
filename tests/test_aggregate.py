"""
tests/test_aggregate.py
=======================
Tests for the concurrent aggregation building blocks: OnceCell,
MassAccumulator, ResultSlots, progress reporting and run_parallel.
"""

import logging
import os
import sys
import threading
import time

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from placemass._aggregate import (
    LoggingProgress,
    MassAccumulator,
    OnceCell,
    ResultSlots,
    run_parallel,
)
from placemass._exceptions import EmptyInputError, TreeIncompatibilityError
from placement_helpers import ListFileSet


# ======================================================================== #
# 1. OnceCell                                                               #
# ======================================================================== #


class TestOnceCell:
    def test_returns_first_value(self):
        cell = OnceCell()
        assert cell.get_or_init(lambda: 42) == 42
        assert cell.get_or_init(lambda: 0) == 42
        assert cell.get() == 42
        assert cell.is_set()

    def test_get_before_init(self):
        with pytest.raises(RuntimeError):
            OnceCell().get()

    def test_factory_runs_once_under_contention(self):
        cell = OnceCell()
        calls = []
        barrier = threading.Barrier(16)
        results = [None] * 16

        def factory():
            calls.append(1)
            time.sleep(0.05)
            return object()

        def worker(k):
            barrier.wait()
            results[k] = cell.get_or_init(factory)

        threads = [threading.Thread(target=worker, args=(k,)) for k in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert all(r is results[0] for r in results)

    def test_failed_factory_publishes_nothing(self):
        cell = OnceCell()

        def boom():
            raise ValueError("no tree")

        with pytest.raises(ValueError):
            cell.get_or_init(boom)
        assert not cell.is_set()
        assert cell.get_or_init(lambda: "ok") == "ok"


# ======================================================================== #
# 2. Accumulators                                                           #
# ======================================================================== #


class TestMassAccumulator:
    def test_sum(self):
        acc = MassAccumulator()
        acc.combine(np.array([1.0, 2.0, 0.0]), "a")
        acc.combine(np.array([0.5, 0.0, 3.0]), "b")
        np.testing.assert_allclose(acc.value(), [1.5, 2.0, 3.0])
        assert acc.count == 2

    def test_first_vector_copied(self):
        first = np.array([1.0, 1.0])
        acc = MassAccumulator()
        acc.combine(first, "a")
        acc.combine(np.array([1.0, 1.0]), "b")
        np.testing.assert_allclose(first, [1.0, 1.0])

    def test_value_is_copy(self):
        acc = MassAccumulator()
        acc.combine(np.array([1.0]), "a")
        acc.value()[0] = 99.0
        np.testing.assert_allclose(acc.value(), [1.0])

    def test_length_mismatch_names_source(self):
        acc = MassAccumulator()
        acc.combine(np.zeros(4), "first.jplace")
        with pytest.raises(TreeIncompatibilityError, match="second.jplace") as info:
            acc.combine(np.zeros(5), "second.jplace")
        assert info.value.source == "second.jplace"

    def test_normalize(self):
        acc = MassAccumulator()
        acc.combine(np.array([1.0, 3.0]), "a")
        assert acc.normalize()
        np.testing.assert_allclose(acc.value(), [0.25, 0.75])
        assert acc.value().sum() == pytest.approx(1.0)

    def test_normalize_zero_total(self, caplog):
        acc = MassAccumulator()
        acc.combine(np.zeros(3), "a")
        with caplog.at_level(logging.WARNING):
            assert not acc.normalize()
        np.testing.assert_array_equal(acc.value(), np.zeros(3))
        assert "Total accumulated mass is 0" in caplog.text

    def test_empty(self):
        with pytest.raises(EmptyInputError):
            MassAccumulator().value()

    def test_concurrent_combine(self):
        acc = MassAccumulator()

        def worker():
            for _ in range(200):
                acc.combine(np.ones(10), "w")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        np.testing.assert_allclose(acc.value(), np.full(10, 1600.0))


class TestResultSlots:
    def test_values_in_index_order(self):
        slots = ResultSlots(3)
        slots.combine(2, "c")
        slots.combine(0, "a")
        slots.combine(1, "b")
        assert slots.values() == ["a", "b", "c"]

    def test_missing_slot(self):
        slots = ResultSlots(2)
        slots.combine(0, "a")
        with pytest.raises(RuntimeError, match=r"\[1\]"):
            slots.values()


# ======================================================================== #
# 3. run_parallel                                                           #
# ======================================================================== #


class TestRunParallel:
    def test_every_index_once(self):
        files = ListFileSet([None] * 20)
        seen = []
        lock = threading.Lock()

        def task(i):
            with lock:
                seen.append(i)

        run_parallel(files, task, n_workers=4)
        assert sorted(seen) == list(range(20))

    def test_empty(self):
        with pytest.raises(EmptyInputError):
            run_parallel(ListFileSet([]), lambda i: None)

    @pytest.mark.parametrize("n_workers", [0, -1, 1.5])
    def test_bad_worker_count(self, n_workers):
        with pytest.raises(ValueError):
            run_parallel(ListFileSet([None]), lambda i: None, n_workers=n_workers)

    def test_error_is_reraised(self):
        files = ListFileSet([None] * 8)

        def task(i):
            if i == 3:
                raise KeyError("bad file 3")

        with pytest.raises(KeyError, match="bad file 3"):
            run_parallel(files, task, n_workers=4)

    def test_error_cancels_remaining_work(self):
        files = ListFileSet([None] * 10)
        started = []

        def task(i):
            started.append(i)
            raise RuntimeError("stop")

        with pytest.raises(RuntimeError, match="stop"):
            run_parallel(files, task, n_workers=1)
        assert started == [0]

    def test_progress_once_per_file(self):
        files = ListFileSet([None] * 6, names=[f"f{i}.jplace" for i in range(6)])
        reports = []
        lock = threading.Lock()

        def progress(position, total, path):
            with lock:
                reports.append((position, total, path))

        run_parallel(files, lambda i: None, n_workers=3, progress=progress)
        assert sorted(p for p, _, _ in reports) == [1, 2, 3, 4, 5, 6]
        assert all(total == 6 for _, total, _ in reports)
        assert sorted(path for _, _, path in reports) == [f"f{i}.jplace" for i in range(6)]

    def test_failing_progress_reporter_aborts(self):
        files = ListFileSet([None] * 4, names=["a", "b", "c", "d"])
        done = []

        def progress(position, total, path):
            if path == "b":
                raise RuntimeError("reporter failed on b")

        with pytest.raises(RuntimeError, match="reporter failed on b"):
            run_parallel(files, done.append, n_workers=1, progress=progress)
        assert done == [0]

    def test_failing_file_path_aborts(self):
        class BadPaths(ListFileSet):
            def file_path(self, index):
                if index == 2:
                    raise OSError("no path for 2")
                return super().file_path(index)

        with pytest.raises(OSError, match="no path for 2"):
            run_parallel(BadPaths([None] * 3), lambda i: None, n_workers=2)

    def test_logging_progress(self, caplog):
        files = ListFileSet([None] * 2, names=["x.jplace", "y.jplace"])
        with caplog.at_level(logging.INFO):
            run_parallel(files, lambda i: None, n_workers=1, progress=LoggingProgress())
        assert "Processing file 1 of 2: x.jplace" in caplog.text
        assert "Processing file 2 of 2: y.jplace" in caplog.text
