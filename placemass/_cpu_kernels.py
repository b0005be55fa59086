"""
_cpu_kernels.py
===============
CPU-accelerated node histogram distance kernels using Numba.

This module contains ONLY numba-accelerated code and does not import other
project modules, to keep import-time complications (and JIT compilation
failures) isolated from the rest of the package.

Exported Functions
------------------
_histogram_set_emd_nb : njit function
    Sum over nodes of the 1-D earth mover's distance between two histogram
    sets.

_nhd_matrix_njit : njit function
    Parallel all-pairs node histogram distance matrix.

Notes
-----
- cache=True persists the compiled binary to disk for faster subsequent runs
- The pure-Python reference lives in ``_histograms._nhd_kernel``; both must
  agree to floating-point tolerance
"""

from numba import njit, prange


@njit(cache=True)
def _histogram_set_emd_nb(lhs, rhs, widths):
    """
    Earth mover's distance between two histogram sets, summed over nodes.

    Parameters
    ----------
    lhs, rhs : float64[n_nodes, n_bins]
        Bin masses of the two sets.
    widths : float64[n_nodes]
        Bin width of each node's histogram.

    Returns
    -------
    float
    """
    n_nodes = lhs.shape[0]
    n_bins = lhs.shape[1]
    total = 0.0
    for k in range(n_nodes):
        current = 0.0
        moved = 0.0
        for b in range(n_bins):
            current += lhs[k, b] - rhs[k, b]
            moved += abs(current)
        total += moved * widths[k]
    return total


@njit(parallel=True, cache=True)
def _nhd_matrix_njit(all_bins, widths, n_sets, result_out):
    """
    Numba-compiled pairwise node histogram distance kernel.

    The outer loop over rows runs in parallel via prange.  Only pairs i < j
    are computed; each is mirrored into (j, i).  No atomics are needed: the
    thread handling row i is the only writer of (i, j) and (j, i) for j > i.

    Parameters
    ----------
    all_bins : float64[n_sets, n_nodes, n_bins]
        Stacked histogram bins of every sample.
    widths : float64[n_nodes]
        Bin width per node (identical across samples).
    n_sets : int
        Number of samples.
    result_out : float64[n_sets, n_sets], pre-filled with zeros
        Output matrix, filled in place.
    """
    for i in prange(n_sets):
        for j in range(i + 1, n_sets):
            d = _histogram_set_emd_nb(all_bins[i], all_bins[j], widths)
            result_out[i, j] = d
            result_out[j, i] = d
