"""
_histograms.py
==============
Node distance histograms and the Node Histogram Distance (NHD).

Each sample is reduced to a ``NodeHistogramSet``: one histogram per tree node,
recording how the sample's placement mass is spread over signed distances from
that node.  Mass lying inside the node's subtree counts as a negative
distance, mass outside it as a positive one.  Two samples on the same tree are
compared node by node with the 1-D earth mover's distance between their
histograms; the NHD is the sum over nodes.

Public API
----------
  NodeHistogramSet(mins, maxs, bins)
  node_distance_histogram_set(sample, node_distances, node_sides, bins=25)
  node_histogram_distance(sets, backend='best') -> np.ndarray (N x N)

Algorithm
---------
For node i the histogram spans [-R_i, R_i] where R_i = max_j D[i, j].  A
placement on edge e (proximal node p, distal node d, length L, proximal
offset x) lies at

    dist_i = min(D[i, p] + x, D[i, d] + L - x)

from node i.  The bin index of a signed distance v is
floor((v + R_i) / width_i), clamped to the last bin so that v = R_i is kept.
"""

import logging
from typing import Sequence

import numpy as np

from placemass._backend import import_cpu_kernels, resolve_backend
from placemass._context import get_backend_override
from placemass._exceptions import EmptyInputError, TreeIncompatibilityError
from placemass._logging import log_distance_summary
from placemass._sample import Sample

logger = logging.getLogger(__name__)

# Upper bound on (nodes x placements) evaluated per vectorised block.
_CHUNK_ELEMENTS = 1 << 22


class NodeHistogramSet:
    """
    Per-node signed distance histograms of one sample.

    Attributes
    ----------
    mins : float64[n_nodes]   Lower edge of each node's histogram range.
    maxs : float64[n_nodes]   Upper edge of each node's histogram range.
    bins : float64[n_nodes, n_bins]
        Bin masses.  Every row with mass sums to 1.
    """

    def __init__(self, mins, maxs, bins) -> None:
        self.mins = np.asarray(mins, dtype=np.float64)
        self.maxs = np.asarray(maxs, dtype=np.float64)
        self.bins = np.asarray(bins, dtype=np.float64)
        if self.bins.ndim != 2:
            raise ValueError(f"bins must be 2-D, got shape {self.bins.shape}.")
        if self.mins.shape != (self.bins.shape[0],) or self.maxs.shape != self.mins.shape:
            raise ValueError(
                "mins and maxs must have one entry per histogram row; got "
                f"{self.mins.shape}, {self.maxs.shape} for {self.bins.shape[0]} rows."
            )

    @property
    def n_nodes(self) -> int:
        return int(self.bins.shape[0])

    @property
    def n_bins(self) -> int:
        return int(self.bins.shape[1])

    @property
    def widths(self) -> np.ndarray:
        """Bin width of each node's histogram."""
        return (self.maxs - self.mins) / self.n_bins

    def __repr__(self) -> str:
        return f"NodeHistogramSet(n_nodes={self.n_nodes}, n_bins={self.n_bins})"


# ============================================================================ #
# Per-sample reduction
# ============================================================================ #


def node_distance_histogram_set(
    sample: Sample,
    node_distances: np.ndarray,
    node_sides: np.ndarray,
    bins: int = 25,
) -> NodeHistogramSet:
    """
    Reduce a sample to its per-node signed distance histograms.

    Parameters
    ----------
    sample : Sample
    node_distances : np.ndarray[float64, shape=(n_nodes, n_nodes)]
        ``Tree.node_distance_matrix()`` of the sample's tree.
    node_sides : np.ndarray[int8, shape=(n_nodes, n_nodes)]
        ``Tree.node_side_matrix()`` of the sample's tree.
    bins : int, default 25
        Number of bins per node histogram.

    Returns
    -------
    NodeHistogramSet

    Raises
    ------
    ValueError
        If *bins* is not a positive integer or the matrices do not match the
        sample's tree.
    """
    if isinstance(bins, bool) or not isinstance(bins, (int, np.integer)) or bins < 1:
        raise ValueError(f"bins must be a positive integer, got {bins!r}.")
    bins = int(bins)

    tree = sample.tree
    n = tree.n_nodes
    if node_distances.shape != (n, n) or node_sides.shape != (n, n):
        raise ValueError(
            f"Node matrices of shape {node_distances.shape} / {node_sides.shape} "
            f"do not match a tree with {n} nodes."
        )

    maxs = node_distances.max(axis=1).astype(np.float64)
    mins = -maxs
    widths = (maxs - mins) / bins
    hist = np.zeros((n, bins), dtype=np.float64)

    if sample.n_placements > 0:
        edges = sample.placement_edge
        prox_node = tree.edge_parent[edges]
        dist_node = tree.edge_node[edges]
        length = tree.edge_length[edges]
        x = sample.placement_proximal
        mass = sample.placement_mass()

        n_pl = sample.n_placements
        step = max(1, _CHUNK_ELEMENTS // n_pl)
        for start in range(0, n, step):
            stop = min(n, start + step)
            rows = np.arange(start, stop)

            via_prox = node_distances[start:stop][:, prox_node] + x
            via_dist = node_distances[start:stop][:, dist_node] + (length - x)
            dist = np.minimum(via_prox, via_dist)
            inside = node_sides[start:stop][:, dist_node] == -1
            signed = np.where(inside, -dist, dist)

            w = widths[start:stop, None]
            with np.errstate(divide="ignore", invalid="ignore"):
                idx = np.where(w > 0.0, np.floor((signed - mins[start:stop, None]) / w), 0.0)
            idx = np.clip(idx, 0, bins - 1).astype(np.int64)

            flat = (rows[:, None] - start) * bins + idx
            hist[start:stop] += np.bincount(
                flat.ravel(),
                weights=np.broadcast_to(mass, flat.shape).ravel(),
                minlength=(stop - start) * bins,
            ).reshape(stop - start, bins)

    totals = hist.sum(axis=1)
    has_mass = totals > 0.0
    hist[has_mass] /= totals[has_mass, None]

    return NodeHistogramSet(mins, maxs, hist)


# ============================================================================ #
# Pairwise distance engine
# ============================================================================ #


def _histogram_set_emd(lhs: np.ndarray, rhs: np.ndarray, widths: np.ndarray) -> float:
    """
    **Private.** Sum over nodes of the 1-D earth mover's distance.

    Reference implementation of ``_cpu_kernels._histogram_set_emd_nb``.
    """
    moved = np.abs(np.cumsum(lhs - rhs, axis=1)).sum(axis=1)
    return float(np.dot(moved, widths))


def _nhd_kernel(all_bins: np.ndarray, widths: np.ndarray) -> np.ndarray:
    """
    **Private.** Pure-numpy pairwise NHD matrix.

    Only pairs i < j are evaluated; each result is mirrored.
    """
    n_sets = all_bins.shape[0]
    result = np.zeros((n_sets, n_sets), dtype=np.float64)
    for i in range(n_sets):
        for j in range(i + 1, n_sets):
            d = _histogram_set_emd(all_bins[i], all_bins[j], widths)
            result[i, j] = d
            result[j, i] = d
    return result


def _check_compatible(sets: Sequence[NodeHistogramSet]) -> None:
    first = sets[0]
    for k, hs in enumerate(sets[1:], start=1):
        if hs.bins.shape != first.bins.shape:
            raise TreeIncompatibilityError(
                f"Histogram set {k} has shape {hs.bins.shape}; "
                f"expected {first.bins.shape}.",
                source=str(k),
            )
        if not (
            np.allclose(hs.mins, first.mins) and np.allclose(hs.maxs, first.maxs)
        ):
            raise TreeIncompatibilityError(
                f"Histogram set {k} has node ranges that differ from set 0.",
                source=str(k),
            )


def node_histogram_distance(
    sets: Sequence[NodeHistogramSet], backend: str = "best"
) -> np.ndarray:
    """
    Pairwise Node Histogram Distance between histogram sets.

    Parameters
    ----------
    sets : sequence of NodeHistogramSet
        One set per sample, all built on the same reference tree with the
        same bin count.
    backend : str, default 'best'
        'python', 'cpu-parallel' or 'best'.  An active ``use_backend``
        context overrides this argument.

    Returns
    -------
    np.ndarray[float64, shape=(N, N)]
        Symmetric, non-negative, zero diagonal.

    Raises
    ------
    EmptyInputError
        If *sets* is empty.
    TreeIncompatibilityError
        If the sets differ in node count, bin count or node ranges.
    ValueError
        If the requested backend is not available.

    Examples
    --------
    >>> matrix = node_histogram_distance([hs_a, hs_b, hs_c])
    >>> matrix.shape
    (3, 3)
    """
    sets = list(sets)
    if not sets:
        raise EmptyInputError("Cannot compute distances of an empty list of histogram sets.")
    _check_compatible(sets)

    override = get_backend_override()
    resolved = resolve_backend(override if override is not None else backend)

    widths = np.ascontiguousarray(sets[0].widths)
    all_bins = np.ascontiguousarray(np.stack([hs.bins for hs in sets]))
    n_sets = len(sets)

    if resolved == "cpu-parallel":
        _, kernel = import_cpu_kernels()
        result = np.zeros((n_sets, n_sets), dtype=np.float64)
        kernel(all_bins, widths, n_sets, result)
    else:
        result = _nhd_kernel(all_bins, widths)

    log_distance_summary(result, resolved)
    return result
