"""
conftest.py
===========
Session-level pytest configuration for the placemass test suite.

Custom marks
------------
slow
    Tests that run the full workflows over many generated jplace files.
    Registered here so ``pytest -m "not slow"`` works without
    PytestUnknownMarkWarning.

Warning filters
---------------
NumbaPerformanceWarning is ignored during tests.  The parallel distance
kernel reports poor thread utilisation on the tiny test inputs, which says
nothing about correctness.
"""

import warnings

from numba.core.errors import NumbaPerformanceWarning


def pytest_configure(config):
    """
    Runs before test modules are imported, so the filter is in place before
    any kernel is compiled.
    """
    config.addinivalue_line(
        "markers",
        "slow: full workflow runs over many generated files",
    )
    warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)


def pytest_unconfigure(config):
    warnings.resetwarnings()
