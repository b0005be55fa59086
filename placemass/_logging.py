"""
_logging.py
===========
Logging functions for placemass.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages.

This separation ensures:
- Logging can be easily disabled/mocked in tests
- Computation is separate from presentation
- The concurrent aggregation code stays free of formatting concerns
"""

import logging
from typing import List

import numpy as np

logger = logging.getLogger(__name__)


# ============================================================================ #
# System and Backend Logging (called at module import time)
# ============================================================================ #


def log_system_status(numba_available: bool) -> None:
    """
    Log system capabilities and numba availability at INFO level.

    Called once at import of the analysis module.  Reports CPU count,
    memory, numba version and threading configuration.

    Parameters
    ----------
    numba_available : bool
        Whether numba can be imported.
    """
    import os
    import platform

    import psutil

    cpu_count = os.cpu_count() or 1
    logger.info(
        "System: %s (%s), %d CPU cores, Python %s",
        platform.machine(),
        platform.system(),
        cpu_count,
        platform.python_version(),
    )

    mem = psutil.virtual_memory()
    logger.info(
        "Memory: %.1f GB total, %.1f GB available",
        mem.total / (1024**3),
        mem.available / (1024**3),
    )

    if numba_available:
        import numba

        logger.info("Numba %s loaded successfully", numba.__version__)
        logger.info("Numba threads: %d", numba.get_num_threads())
    else:
        logger.info(
            "Numba not installed; pairwise distances will use the python backend"
        )


def log_backend_availability(backends_available: List[str]) -> None:
    """
    Log which execution backends are available for the distance engine.

    Parameters
    ----------
    backends_available : List[str]
        List of available backends (e.g., ['python', 'cpu-parallel'])
    """
    logger.info("Available backends: %s", ", ".join(backends_available))

    if "cpu-parallel" in backends_available:
        logger.info("  cpu-parallel: LLVM-compiled parallel code (numba.njit + prange)")
    if "python" in backends_available:
        logger.info("  python: numpy reference implementation")

    logger.info("Default backend='best' will use: %s", backends_available[-1])


def install_numba_warning_filter(numba_available: bool) -> None:
    """
    Route NumbaPerformanceWarning through the placemass logger.

    Other warnings keep their original display.
    """
    import warnings

    if not numba_available:
        return

    from numba.core.errors import NumbaPerformanceWarning

    original_showwarning = warnings.showwarning

    def showwarning(message, category, filename, lineno, file=None, line=None):
        if issubclass(category, NumbaPerformanceWarning):
            logger.warning("Numba performance issue: %s", message)
            logger.warning("  at %s:%s", filename, lineno)
            return
        original_showwarning(message, category, filename, lineno, file, line)

    warnings.showwarning = showwarning


# ============================================================================ #
# Run Logging (called by the aggregation workflows)
# ============================================================================ #


def log_run_start(workflow: str, n_files: int, n_workers: int) -> None:
    logger.info(
        "%s: reading %d sample file(s) with %d worker(s)", workflow, n_files, n_workers
    )


def log_file_progress(position: int, total: int, path: str) -> None:
    """Emit the per-file progress line."""
    logger.info("Processing file %d of %d: %s", position, total, path)


def log_shared_reference(
    n_nodes: int, n_edges: int, matrix_bytes: int, source: str
) -> None:
    """
    Log the shared reference structures built by the first worker.

    Parameters
    ----------
    n_nodes, n_edges : int
        Size of the reference tree.
    matrix_bytes : int
        Memory held by the node distance and side matrices (0 if none).
    source : str
        Display path of the sample the reference was built from.
    """
    logger.info(
        "Reference tree from %s: %d nodes, %d edges", source, n_nodes, n_edges
    )
    if matrix_bytes > 0:
        logger.info("Node distance matrices: %.1f MB", matrix_bytes / (1024**2))


def log_histogram_summary(n_sets: int, n_nodes: int, n_bins: int) -> None:
    logger.info(
        "Built %d node histogram set(s): %d nodes × %d bins each",
        n_sets,
        n_nodes,
        n_bins,
    )


def log_distance_summary(matrix: np.ndarray, backend: str) -> None:
    """
    Log a summary of a pairwise distance matrix.

    Parameters
    ----------
    matrix : np.ndarray[float64, shape=(N, N)]
    backend : str
        Backend that computed it.
    """
    n = matrix.shape[0]
    logger.info("Pairwise distances: %d × %d (backend=%r)", n, n, backend)
    if n < 2:
        return
    upper = matrix[np.triu_indices(n, k=1)]
    logger.info(
        "  min %.6g, mean %.6g, max %.6g",
        float(upper.min()),
        float(upper.mean()),
        float(upper.max()),
    )


def log_mass_summary(masses: np.ndarray, relative: bool) -> None:
    logger.info(
        "Accumulated mass: %d edges, total %.6g (%s)",
        masses.shape[0],
        float(np.sum(masses)),
        "relative" if relative else "absolute",
    )


def log_zero_total_mass() -> None:
    logger.warning(
        "Total accumulated mass is 0; relative normalization was skipped."
    )


def log_masked_log_values(min_value: float) -> None:
    """
    Advisory emitted when zero-mass values cannot be shown under log scaling.

    Parameters
    ----------
    min_value : float
        Domain minimum chosen by the heuristic.
    """
    logger.warning(
        "Some branches have mass 0, which cannot be shown using log scaling. "
        "Hence, the minimum was set to %g instead. "
        "Those branches will be shown in the mask color. "
        "Set clip_under or min_value to change this.",
        min_value,
    )
