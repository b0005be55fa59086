"""
tests/test_backend.py
=====================
Tests for backend selection, the numba kernels and the context managers.
"""

import logging
import os
import sys
import warnings

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from placemass._backend import (
    BACKEND_ORDER,
    get_available_backends,
    get_backend_info,
    get_best_backend,
    import_cpu_kernels,
    resolve_backend,
)
from placemass._context import (
    get_backend_override,
    quiet,
    suppress_logger,
    suppress_warnings,
    use_backend,
)
from placemass._histograms import _histogram_set_emd, _nhd_kernel

KERNELS_AVAILABLE, _ = import_cpu_kernels()


def _random_bins(rng, n_sets, n_nodes, n_bins):
    raw = rng.random((n_sets, n_nodes, n_bins))
    return raw / raw.sum(axis=2, keepdims=True)


# ======================================================================== #
# 1. Backend selection                                                      #
# ======================================================================== #


class TestBackendSelection:
    def test_python_always_available(self):
        available = get_available_backends()
        assert available[0] == "python"
        assert set(available) <= set(BACKEND_ORDER)

    def test_best_is_last_available(self):
        assert get_best_backend() == get_available_backends()[-1]
        assert resolve_backend("best") == get_best_backend()

    def test_resolve_python(self):
        assert resolve_backend("python") == "python"

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            resolve_backend("cuda")

    def test_backend_info(self):
        info = get_backend_info()
        assert set(info) == {
            "numba_available",
            "numba_version",
            "cpu_kernels_available",
            "backends",
            "best_backend",
        }
        assert info["cpu_kernels_available"] == KERNELS_AVAILABLE
        assert info["backends"] == get_available_backends()
        if info["numba_available"]:
            assert isinstance(info["numba_version"], str)


class TestUseBackend:
    def test_override_restored(self):
        assert get_backend_override() is None
        with use_backend("python"):
            assert get_backend_override() == "python"
            with use_backend("best"):
                assert get_backend_override() == "best"
            assert get_backend_override() == "python"
        assert get_backend_override() is None

    def test_restored_after_exception(self):
        with pytest.raises(RuntimeError):
            with use_backend("python"):
                raise RuntimeError("boom")
        assert get_backend_override() is None

    def test_unknown_backend_rejected_on_entry(self):
        with pytest.raises(ValueError):
            with use_backend("abacus"):
                pass
        assert get_backend_override() is None


# ======================================================================== #
# 2. numba kernels                                                          #
# ======================================================================== #


@pytest.mark.skipif(not KERNELS_AVAILABLE, reason="numba kernels not available")
class TestCpuKernels:
    def test_emd_matches_numpy(self):
        from placemass._cpu_kernels import _histogram_set_emd_nb

        rng = np.random.default_rng(3)
        bins = _random_bins(rng, 2, 5, 9)
        widths = rng.uniform(0.1, 2.0, size=5)
        assert _histogram_set_emd_nb(bins[0], bins[1], widths) == pytest.approx(
            _histogram_set_emd(bins[0], bins[1], widths), rel=1e-12
        )

    def test_emd_of_identical_sets_is_zero(self):
        from placemass._cpu_kernels import _histogram_set_emd_nb

        bins = _random_bins(np.random.default_rng(4), 1, 3, 4)[0]
        assert _histogram_set_emd_nb(bins, bins, np.ones(3)) == 0.0

    def test_matrix_matches_numpy(self):
        from placemass._cpu_kernels import _nhd_matrix_njit

        rng = np.random.default_rng(5)
        bins = _random_bins(rng, 7, 4, 6)
        widths = rng.uniform(0.5, 1.5, size=4)
        out = np.zeros((7, 7))
        _nhd_matrix_njit(bins, widths, 7, out)
        np.testing.assert_allclose(out, _nhd_kernel(bins, widths), rtol=1e-12)
        np.testing.assert_array_equal(out, out.T)
        assert np.all(np.diag(out) == 0.0)


# ======================================================================== #
# 3. Logging and warning context managers                                   #
# ======================================================================== #


class TestQuiet:
    def test_quiet_suppresses_package_loggers(self, caplog):
        log = logging.getLogger("placemass._aggregate")
        with caplog.at_level(logging.DEBUG):
            with quiet():
                log.warning("hidden")
            log.warning("shown")
        assert "hidden" not in caplog.text
        assert "shown" in caplog.text

    def test_quiet_keeps_higher_levels(self, caplog):
        log = logging.getLogger("placemass._norm")
        with caplog.at_level(logging.DEBUG):
            with quiet(logging.WARNING):
                log.info("progress")
                log.warning("advisory")
        assert "progress" not in caplog.text
        assert "advisory" in caplog.text

    def test_suppress_logger_restores_level(self):
        log = logging.getLogger("placemass._tree")
        before = log.level
        with pytest.raises(KeyError):
            with suppress_logger("placemass._tree", logging.ERROR):
                assert log.level == logging.ERROR
                raise KeyError("x")
        assert log.level == before

    def test_suppress_warnings(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with suppress_warnings(UserWarning):
                warnings.warn("ignored", UserWarning)
            warnings.warn("kept", UserWarning)
        assert [str(w.message) for w in caught] == ["kept"]
