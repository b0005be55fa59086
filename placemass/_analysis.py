"""
_analysis.py
============
The two placement workflows, built on the concurrent aggregator.

Public API
----------
  histogram_sets(file_set, bins=25, n_workers=None, progress=None)
      -> (SharedReference, list[NodeHistogramSet])

  nhd_matrix(file_set, bins=25, n_workers=None, progress=None, backend='best')
      -> np.ndarray (N x N)

  accumulate_masses(file_set, relative=False, n_workers=None, progress=None)
      -> (Tree, np.ndarray)

  heat_tree(file_set, options=None, relative=False,
            n_workers=None, progress=None)
      -> (Tree, np.ndarray, ColorNorm)

*file_set* is anything with ``file_count()``, ``file_path(i)`` and
``sample(i)``; ``JplaceFileSet`` is the shipped implementation.  An optional
``mass_norm_relative()`` on the file set also switches on the final relative
rescale of ``accumulate_masses``.

Every worker runs the same steps for its file:

  1. load the sample (no lock)
  2. publish the reference from the first sample, exactly once
  3. check the sample's tree against the reference
  4. reduce the sample (no lock)
  5. combine into the shared result (locked, add or assign only)

Logging
-------
On first import this module logs the system status and the available
backends at INFO level on the ``placemass._logging`` logger.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np

from placemass._aggregate import (
    MassAccumulator,
    OnceCell,
    ResultSlots,
    SharedReference,
    resolve_workers,
    run_parallel,
)
from placemass._backend import check_numba_available, get_available_backends
from placemass._exceptions import TreeIncompatibilityError
from placemass._histograms import (
    NodeHistogramSet,
    node_distance_histogram_set,
    node_histogram_distance,
)
from placemass._logging import (
    install_numba_warning_filter,
    log_backend_availability,
    log_histogram_summary,
    log_mass_summary,
    log_run_start,
    log_shared_reference,
    log_system_status,
)
from placemass._norm import ColorNorm, ColorNormOptions, normalize_masses
from placemass._tree import Tree, compatible_trees

logger = logging.getLogger(__name__)

_NUMBA_AVAILABLE = check_numba_available()

log_system_status(_NUMBA_AVAILABLE)
log_backend_availability(get_available_backends())
install_numba_warning_filter(_NUMBA_AVAILABLE)


def _check_against(reference: SharedReference, tree: Tree, source: str) -> None:
    if reference.tree is tree:
        return
    if not compatible_trees(reference.tree, tree):
        raise TreeIncompatibilityError(
            f"Input files have differing reference trees: {source}",
            source=source,
        )


def _check_branch_lengths(reference: SharedReference, tree: Tree, source: str) -> None:
    # Node distances come from the reference tree, so its lengths must hold
    # for every sample.
    if reference.tree is tree:
        return
    if not np.array_equal(reference.tree.edge_length, tree.edge_length):
        raise TreeIncompatibilityError(
            f"Input files have differing branch lengths on the reference tree: {source}",
            source=source,
        )


def _n_workers_used(file_set, n_workers: Optional[int]) -> int:
    return min(resolve_workers(n_workers), max(1, file_set.file_count()))


# ============================================================================ #
# Node histogram workflow
# ============================================================================ #


def histogram_sets(
    file_set,
    bins: int = 25,
    n_workers: Optional[int] = None,
    progress=None,
) -> Tuple[SharedReference, List[NodeHistogramSet]]:
    """
    Reduce every sample of *file_set* to its node histogram set.

    The first worker to finish loading builds the node distance and side
    matrices of its tree; all other samples are checked against that tree and
    share the matrices read-only.  Since the matrices carry branch lengths,
    samples must also agree on every edge length, not only on topology.

    Parameters
    ----------
    file_set : file set
    bins : int, default 25
        Bins per node histogram.
    n_workers : int or None
        Thread pool size; None uses the CPU count.
    progress : ProgressReporter or None
        Called once per file as it begins, e.g. ``LoggingProgress()``.

    Returns
    -------
    (SharedReference, list[NodeHistogramSet])
        The list is in input order.

    Raises
    ------
    EmptyInputError, TreeIncompatibilityError, SampleReadError, ValueError
    """
    if isinstance(bins, bool) or not isinstance(bins, (int, np.integer)) or bins < 1:
        raise ValueError(f"bins must be a positive integer, got {bins!r}.")

    n_files = file_set.file_count()
    log_run_start("Node histograms", n_files, _n_workers_used(file_set, n_workers))

    shared = OnceCell()
    slots = ResultSlots(n_files)

    def task(index: int) -> None:
        source = file_set.file_path(index)
        sample = file_set.sample(index)

        def build() -> SharedReference:
            tree = sample.tree
            ref = SharedReference(
                tree=tree,
                source=source,
                node_distances=tree.node_distance_matrix(),
                node_sides=tree.node_side_matrix(),
            )
            log_shared_reference(tree.n_nodes, tree.n_edges, ref.matrix_bytes, source)
            return ref

        reference = shared.get_or_init(build)
        _check_against(reference, sample.tree, source)
        _check_branch_lengths(reference, sample.tree, source)

        hist = node_distance_histogram_set(
            sample, reference.node_distances, reference.node_sides, bins
        )
        slots.combine(index, hist)

    run_parallel(file_set, task, n_workers=n_workers, progress=progress)

    reference = shared.get()
    sets = slots.values()
    log_histogram_summary(len(sets), reference.tree.n_nodes, int(bins))
    return reference, sets


def nhd_matrix(
    file_set,
    bins: int = 25,
    n_workers: Optional[int] = None,
    progress=None,
    backend: str = "best",
) -> np.ndarray:
    """
    Pairwise Node Histogram Distance matrix between the samples of *file_set*.

    Parameters
    ----------
    file_set, bins, n_workers, progress
        See ``histogram_sets``.
    backend : str, default 'best'
        'python', 'cpu-parallel' or 'best'.

    Returns
    -------
    np.ndarray[float64, shape=(N, N)]
        Row/column i is the i-th file of *file_set*.

    Examples
    --------
    >>> files = JplaceFileSet(['a.jplace', 'b.jplace', 'c.jplace'])
    >>> nhd_matrix(files, bins=25).shape
    (3, 3)
    """
    _, sets = histogram_sets(
        file_set, bins=bins, n_workers=n_workers, progress=progress
    )
    return node_histogram_distance(sets, backend=backend)


# ============================================================================ #
# Mass accumulation workflow
# ============================================================================ #


def accumulate_masses(
    file_set,
    relative: bool = False,
    n_workers: Optional[int] = None,
    progress=None,
) -> Tuple[Tree, np.ndarray]:
    """
    Sum the mass-per-edge vectors of every sample in *file_set*.

    Parameters
    ----------
    file_set : file set
    relative : bool, default False
        Rescale the summed vector to total 1 once all files are in.  Also
        switched on by a file set whose ``mass_norm_relative()`` is True.
    n_workers, progress
        See ``histogram_sets``.

    Returns
    -------
    (Tree, np.ndarray[float64, shape=(n_edges,)])
        The reference tree and the summed masses, indexed by edge index.

    Raises
    ------
    EmptyInputError, TreeIncompatibilityError, SampleReadError, ValueError
    """
    n_files = file_set.file_count()
    log_run_start("Mass accumulation", n_files, _n_workers_used(file_set, n_workers))

    shared = OnceCell()
    accumulator = MassAccumulator()

    def task(index: int) -> None:
        source = file_set.file_path(index)
        sample = file_set.sample(index)

        def build() -> SharedReference:
            ref = SharedReference(tree=sample.tree, source=source)
            log_shared_reference(ref.tree.n_nodes, ref.tree.n_edges, 0, source)
            return ref

        reference = shared.get_or_init(build)
        _check_against(reference, sample.tree, source)

        accumulator.combine(sample.mass_per_edge(), source)

    run_parallel(file_set, task, n_workers=n_workers, progress=progress)

    relative = relative or _file_set_relative(file_set)
    if relative:
        accumulator.normalize()

    masses = accumulator.value()
    log_mass_summary(masses, relative)
    return shared.get().tree, masses


def _file_set_relative(file_set) -> bool:
    query = getattr(file_set, "mass_norm_relative", None)
    return bool(query()) if query is not None else False


def heat_tree(
    file_set,
    options: Optional[ColorNormOptions] = None,
    relative: bool = False,
    n_workers: Optional[int] = None,
    progress=None,
) -> Tuple[Tree, np.ndarray, ColorNorm]:
    """
    Accumulate the masses of *file_set* and build their color normalization.

    Returns
    -------
    (Tree, np.ndarray, ColorNorm)
        The masses are the corrected copy produced by ``normalize_masses``
        (non-positive values replaced when a log-scale fix-up applies); color
        them with ``ColorMap.from_options(options)`` or pass everything to
        ``write_heat_tree``.

    Examples
    --------
    >>> files = JplaceFileSet(paths, mass_norm='relative')
    >>> tree, masses, norm = heat_tree(files, ColorNormOptions(log_scaling=True))
    >>> with open('heat.newick', 'w') as fh:
    ...     write_heat_tree(tree, masses, norm, ColorMap(), fh)
    """
    tree, masses = accumulate_masses(
        file_set, relative=relative, n_workers=n_workers, progress=progress
    )
    norm, corrected = normalize_masses(masses, options)
    return tree, corrected, norm
