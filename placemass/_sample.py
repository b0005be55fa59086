"""
_sample.py
==========
A placement sample: one reference tree plus the placement mass observed on it.

Placements are stored as parallel flat numpy arrays (one entry per placement)
with a per-pquery multiplicity array, mirroring the flat-array layout of
``Tree``.  A *pquery* is one placed query sequence; it may have several
candidate placements whose like-weight-ratios (lwr) sum to at most 1.

Public API
----------
  Sample(tree, placement_pquery, placement_edge, placement_lwr,
         placement_proximal, multiplicity, placement_pendant=None, names=None)

  .placement_mass(with_multiplicities=True)
  .mass_per_edge(with_multiplicities=True)
  .total_mass(with_multiplicities=True)
  .point_mass()
  .without_multiplicities()
  .normalized()
"""

from typing import List, Optional

import numpy as np

from placemass._tree import Tree


class Sample:
    """
    Immutable placement sample.

    Attributes
    ----------
    tree                : Tree
    n_pqueries          : int
    n_placements        : int
    placement_pquery    : int32  [n_placements]   Owning pquery index.
    placement_edge      : int32  [n_placements]   Edge index in ``tree``.
    placement_lwr       : float64[n_placements]   Like-weight-ratio.
    placement_proximal  : float64[n_placements]   Distance from the proximal
                                                   (root-side) node of the edge.
    placement_pendant   : float64[n_placements]   Pendant branch length.
    multiplicity        : float64[n_pqueries]
    names               : list[list[str]]         Names per pquery.
    """

    def __init__(
        self,
        tree: Tree,
        placement_pquery,
        placement_edge,
        placement_lwr,
        placement_proximal,
        multiplicity,
        placement_pendant=None,
        names: Optional[List[List[str]]] = None,
    ) -> None:
        self.tree = tree
        self.placement_pquery = np.asarray(placement_pquery, dtype=np.int32)
        self.placement_edge = np.asarray(placement_edge, dtype=np.int32)
        self.placement_lwr = np.asarray(placement_lwr, dtype=np.float64)
        self.placement_proximal = np.asarray(placement_proximal, dtype=np.float64)
        self.multiplicity = np.asarray(multiplicity, dtype=np.float64)

        n_placements = self.placement_pquery.shape[0]
        if placement_pendant is None:
            self.placement_pendant = np.zeros(n_placements, dtype=np.float64)
        else:
            self.placement_pendant = np.asarray(placement_pendant, dtype=np.float64)

        self.n_placements: int = int(n_placements)
        self.n_pqueries: int = int(self.multiplicity.shape[0])
        self.names = names if names is not None else [[] for _ in range(self.n_pqueries)]

        self._validate()

    # ================================================================== #
    # Mass queries                                                         #
    # ================================================================== #

    def placement_mass(self, with_multiplicities: bool = True) -> np.ndarray:
        """Return the mass of every placement: lwr × multiplicity of its pquery."""
        if not with_multiplicities:
            return self.placement_lwr.copy()
        return self.placement_lwr * self.multiplicity[self.placement_pquery]

    def mass_per_edge(self, with_multiplicities: bool = True) -> np.ndarray:
        """
        Return the placement mass summed per edge.

        Returns
        -------
        np.ndarray[float64, shape=(tree.n_edges,)]
            Entry e is the total mass of all placements on edge index e.
        """
        return np.bincount(
            self.placement_edge,
            weights=self.placement_mass(with_multiplicities),
            minlength=self.tree.n_edges,
        ).astype(np.float64)

    def total_mass(self, with_multiplicities: bool = True) -> float:
        return float(np.sum(self.placement_mass(with_multiplicities)))

    # ================================================================== #
    # Derived samples                                                      #
    # ================================================================== #

    def point_mass(self) -> "Sample":
        """
        Return a copy keeping only the most likely placement of each pquery,
        with its lwr set to 1.
        """
        keep = np.zeros(self.n_placements, dtype=bool)
        best = np.full(self.n_pqueries, -1, dtype=np.int64)
        for pi in range(self.n_placements):
            q = int(self.placement_pquery[pi])
            if best[q] < 0 or self.placement_lwr[pi] > self.placement_lwr[best[q]]:
                best[q] = pi
        keep[best[best >= 0]] = True

        return Sample(
            self.tree,
            self.placement_pquery[keep],
            self.placement_edge[keep],
            np.ones(int(keep.sum()), dtype=np.float64),
            self.placement_proximal[keep],
            self.multiplicity,
            placement_pendant=self.placement_pendant[keep],
            names=self.names,
        )

    def without_multiplicities(self) -> "Sample":
        """Return a copy with every pquery multiplicity set to 1."""
        return Sample(
            self.tree,
            self.placement_pquery,
            self.placement_edge,
            self.placement_lwr,
            self.placement_proximal,
            np.ones(self.n_pqueries, dtype=np.float64),
            placement_pendant=self.placement_pendant,
            names=self.names,
        )

    def normalized(self) -> "Sample":
        """
        Return a copy whose total mass (with multiplicities) is 1.

        A sample without mass is returned unchanged.
        """
        total = self.total_mass()
        if total <= 0.0:
            return self
        return Sample(
            self.tree,
            self.placement_pquery,
            self.placement_edge,
            self.placement_lwr / total,
            self.placement_proximal,
            self.multiplicity,
            placement_pendant=self.placement_pendant,
            names=self.names,
        )

    # ================================================================== #
    # Private                                                              #
    # ================================================================== #

    def _validate(self) -> None:
        n = self.n_placements
        for label, arr in (
            ("placement_edge", self.placement_edge),
            ("placement_lwr", self.placement_lwr),
            ("placement_proximal", self.placement_proximal),
            ("placement_pendant", self.placement_pendant),
        ):
            if arr.shape != (n,):
                raise ValueError(
                    f"{label} has shape {arr.shape}; expected ({n},)."
                )
        if len(self.names) != self.n_pqueries:
            raise ValueError(
                f"Got {len(self.names)} name lists for {self.n_pqueries} pqueries."
            )
        if n == 0:
            return
        if self.placement_edge.min() < 0 or self.placement_edge.max() >= self.tree.n_edges:
            raise ValueError(
                f"Placement edge index out of range [0, {self.tree.n_edges})."
            )
        if self.placement_pquery.min() < 0 or self.placement_pquery.max() >= self.n_pqueries:
            raise ValueError(
                f"Placement pquery index out of range [0, {self.n_pqueries})."
            )
