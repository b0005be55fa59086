"""
_tree.py
========
A rooted phylogenetic reference tree represented as a set of parallel numpy
arrays, with O(1) LCA lookups via a sparse-table Range Minimum Query structure
built on the Eulerian tour.

The tree is the shared reference of a placement run: every sample of a batch
refers to the same topology and the same edge numbering, so that mass vectors
and node histograms computed from different samples line up index by index.

Public API
----------
  Tree(newick_string)
      Constructor.  Parses an (optionally edge-numbered) NEWICK string and
      builds all data structures.

  .lca(u, v)
  .branch_distance(u, v, return_lca=False)
  .is_descendant(u, v)
  .children_of(node)
  .edge_index(edge_num)
  .node_distance_matrix()
  .node_side_matrix()

  compatible_trees(a, b)
      Structural (topology + edge numbering) comparison of two trees.

Edge numbering
--------------
jplace files attach an edge number in curly braces to every branch:

    ((A:0.1{0},B:0.2{1}):0.5{2},C:0.3{3}){4};

Every non-root node owns exactly one edge (the branch to its parent).  When
all non-root nodes carry an edge number, edge indices 0..n_edges-1 follow the
ascending edge numbers; otherwise they follow the node-ID order.  Unlike a
bifurcating-only tree, multifurcations are kept as they are: resolving them
would add edges that no placement refers to.
"""

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)

_WHITESPACE = " \t\r\n"
_NAME_STOP = ":,;(){}[]'" + _WHITESPACE
_VALUE_STOP = ",;(){}[]" + _WHITESPACE


class Tree:
    """
    A rooted phylogenetic tree with arbitrary node degree and O(1) LCA queries.

    Attributes (all read-only after construction)
    ----------------------------------------------
    n_nodes   : int     Total number of nodes.
    n_leaves  : int     Number of leaf (taxon) nodes.
    n_edges   : int     Number of edges (n_nodes - 1).
    root      : int     Node ID of the root (always n_nodes - 1).
    max_depth : int     Maximum node depth (edge count from root).
    names     : list[str]  Label of each node; '' where unlabelled.

    Arrays: tree structure
    -----------------------
    parent        : int32  [n_nodes]     Parent ID; -1 for root.
    distance      : float64[n_nodes]     Branch length to parent; -1.0 for root.
    child_offsets : int64  [n_nodes+1]   CSR offsets into ``children``.
    children      : int32  [n_nodes-1]   Child IDs, left-to-right per node.
    node_edge_num : int32  [n_nodes]     jplace edge number per node; -1 if none.

    Arrays: edges
    --------------
    edge_node   : int32  [n_edges]   Distal (away-from-root) node of each edge.
    edge_parent : int32  [n_edges]   Proximal (root-side) node of each edge.
    edge_length : float64[n_edges]   Branch length of each edge.
    edge_num    : int32  [n_edges]   jplace edge number of each edge.
    node_edge   : int32  [n_nodes]   Edge index owned by each node; -1 for root.

    Arrays: LCA / Euler tour
    -------------------------
    depth            : int32  [n_nodes]       Edge depth from root.
    root_distance    : float64[n_nodes]       Cumulative branch length from root.
    euler_tour       : int32  [2n-1]          Euler tour node IDs.
    euler_depth      : int32  [2n-1]          Depth at each tour position.
    first_occurrence : int32  [n_nodes]       First tour index for each node.
    last_occurrence  : int32  [n_nodes]       Last tour index for each node.
    sparse_table     : int32  [LOG, 2n-1]     Sparse table (stores tour indices).
    log2_table       : int32  [2n]            floor(log2(i)) for i in [0, 2n-1].
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(self, newick_string: str) -> None:
        """
        Parse *newick_string* and build all tree, edge and LCA structures.

        Parameters
        ----------
        newick_string : str
            A NEWICK tree string (trailing ';' optional).  Edge numbers in
            curly braces and comments in square brackets are accepted.

        Raises
        ------
        ValueError   if the string is empty or malformed.
        """
        self._parse_newick(newick_string)
        self._build_edges()
        self._build_lca_structures()

        self.n_nodes: int = int(self.parent.shape[0])
        self.n_edges: int = self.n_nodes - 1
        self.n_leaves: int = int(np.count_nonzero(np.diff(self.child_offsets) == 0))
        self.root: int = self.n_nodes - 1  # parse_newick invariant
        self.max_depth: int = int(np.max(self.depth))

        # Name index: built lazily on first name-based query.
        self._name_index: dict = None  # type: ignore[assignment]

    # ================================================================== #
    # Public methods                                                       #
    # ================================================================== #

    def lca(self, u, v) -> int:
        """
        Return the node ID of the Lowest Common Ancestor of *u* and *v*.

        Parameters
        ----------
        u, v : int | str   Node IDs or node names (resolved independently).

        Returns
        -------
        int   Node ID of the LCA.
        """
        u_id = self._resolve_node(u)
        v_id = self._resolve_node(v)

        if u_id == v_id:
            return u_id

        l = int(self.first_occurrence[u_id])
        r = int(self.first_occurrence[v_id])
        if l > r:
            l, r = r, l

        idx = Tree._rmq(l, r, self.sparse_table, self.euler_depth, self.log2_table)
        return int(self.euler_tour[idx])

    def branch_distance(self, u, v, return_lca: bool = False):
        """
        Return the total branch length between nodes *u* and *v*.

        Uses the identity:
            dist(u, v) = root_distance[u] + root_distance[v]
                         − 2 × root_distance[LCA(u, v)]

        Parameters
        ----------
        u, v       : int | str   Node IDs or node names.
        return_lca : bool        If True return (distance, lca_id).

        Returns
        -------
        float              Branch distance (when return_lca is False).
        (float, int)       (distance, lca_id) (when return_lca is True).
        """
        u_id = self._resolve_node(u)
        v_id = self._resolve_node(v)

        if u_id == v_id:
            return (0.0, u_id) if return_lca else 0.0

        lca_id = self.lca(u_id, v_id)
        dist = (
            float(self.root_distance[u_id])
            + float(self.root_distance[v_id])
            - 2.0 * float(self.root_distance[lca_id])
        )

        return (dist, lca_id) if return_lca else dist

    def is_descendant(self, u, v) -> bool:
        """
        Return True if *u* lies in the subtree rooted at *v* (u == v counts).

        The subtree of v occupies the contiguous tour range
        [first_occurrence[v], last_occurrence[v]].
        """
        u_id = self._resolve_node(u)
        v_id = self._resolve_node(v)
        fu = int(self.first_occurrence[u_id])
        return (
            int(self.first_occurrence[v_id]) <= fu <= int(self.last_occurrence[v_id])
        )

    def children_of(self, node) -> np.ndarray:
        """Return the child IDs of *node* (empty for leaves), left-to-right."""
        node_id = self._resolve_node(node)
        return self.children[
            int(self.child_offsets[node_id]) : int(self.child_offsets[node_id + 1])
        ]

    def edge_index(self, edge_num: int) -> int:
        """
        Return the edge index for a jplace edge number.

        Raises
        ------
        KeyError   if no edge carries *edge_num*.
        """
        key = int(edge_num)
        if key not in self._edge_num_index:
            raise KeyError(f"No edge with edge number {key} found in tree.")
        return self._edge_num_index[key]

    def node_distance_matrix(self) -> np.ndarray:
        """
        Return the all-pairs branch-length distance matrix between nodes.

        All n² LCAs are resolved at once by running the sparse-table RMQ on
        broadcast index arrays; no Python-level loop over pairs.

        Returns
        -------
        np.ndarray[float64, shape=(n_nodes, n_nodes)]
            Symmetric, zero diagonal, non-negative.
        """
        fo = self.first_occurrence.astype(np.int64)
        l = np.minimum(fo[:, None], fo[None, :])
        r = np.maximum(fo[:, None], fo[None, :])

        k = self.log2_table[r - l + 1]
        half = np.left_shift(1, k)
        li = self.sparse_table[k, l]
        ri = self.sparse_table[k, r - half + 1]
        ed = self.euler_depth
        lca = self.euler_tour[np.where(ed[ri] < ed[li], ri, li)]

        rd = self.root_distance
        dist = rd[:, None] + rd[None, :] - 2.0 * rd[lca]
        # Round-off in the subtraction can leave tiny negatives.
        np.maximum(dist, 0.0, out=dist)
        np.fill_diagonal(dist, 0.0)
        return dist

    def node_side_matrix(self) -> np.ndarray:
        """
        Return the root-direction matrix between nodes.

        Entry (i, j) is:
          -1  if j lies strictly inside the subtree of i (away from the root),
          +1  if j lies on the root side of i,
           0  on the diagonal.

        Returns
        -------
        np.ndarray[int8, shape=(n_nodes, n_nodes)]
        """
        fo = self.first_occurrence
        lo = self.last_occurrence
        below = (fo[None, :] > fo[:, None]) & (fo[None, :] <= lo[:, None])

        sides = np.ones((self.n_nodes, self.n_nodes), dtype=np.int8)
        sides[below] = -1
        np.fill_diagonal(sides, 0)
        return sides

    # ================================================================== #
    # Private instance methods                                             #
    # ================================================================== #

    def _parse_newick(self, newick_string: str) -> None:
        """
        **Private.**  Parse *newick_string* and populate the tree-structure
        arrays as instance attributes.

        Single iterative pass with an explicit stack of child lists; no
        recursion, so deep caterpillar trees do not hit the recursion limit.
        Nodes are first recorded in creation order and then renumbered.

        Node-ID conventions (set once; never change):
          Leaves   : 0 … n_leaves-1       (left-to-right in NEWICK string)
          Internal : n_leaves … n_nodes-2 (post-order)
          Root     : n_nodes-1            (invariant used throughout the class)

        Populates
        ---------
        self.names, self.parent, self.distance, self.node_edge_num,
        self.child_offsets, self.children
        """
        s = newick_string.strip()
        n_chars = len(s)
        if n_chars > 0 and s[n_chars - 1] == ";":
            n_chars -= 1
        if n_chars == 0:
            raise ValueError("Empty NEWICK string.")

        # Per-node records in creation order.  Closing parens create internal
        # nodes in post-order, so the root is always the last record.
        tmp_name = []
        tmp_length = []
        tmp_edge = []
        tmp_children = []

        stack = [[]]  # stack of child lists; index 0 = root level

        i = 0
        while i < n_chars:
            c = s[i]

            if c in _WHITESPACE or c == ",":
                i += 1
                continue

            if c == "(":
                stack.append([])
                i += 1
                continue

            if c == "[":
                i = Tree._skip_comment(s, i, n_chars)
                continue

            if c == ")":
                if len(stack) < 2:
                    raise ValueError(f"Unbalanced ')' at position {i}.")
                children = stack.pop()
                if not children:
                    raise ValueError(f"Empty group '()' at position {i}.")
                name, length, edge_num, i = Tree._read_node_suffix(s, i + 1, n_chars)
                tmp_children.append(children)
            else:
                name, length, edge_num, j = Tree._read_node_suffix(s, i, n_chars)
                if j == i:
                    raise ValueError(f"Unexpected character {c!r} at position {i}.")
                i = j
                tmp_children.append(None)

            tmp_name.append(name)
            tmp_length.append(length)
            tmp_edge.append(edge_num)
            stack[-1].append(len(tmp_name) - 1)

        if len(stack) != 1:
            raise ValueError(f"Unbalanced '(': {len(stack) - 1} group(s) not closed.")
        if len(stack[0]) != 1:
            raise ValueError(
                f"NEWICK string has {len(stack[0])} top-level nodes; expected one root."
            )

        # ---- Renumber: leaves first, then internal nodes in post-order ---- #
        n_tmp = len(tmp_name)
        leaf_tmp = [k for k in range(n_tmp) if tmp_children[k] is None]
        internal_tmp = [k for k in range(n_tmp) if tmp_children[k] is not None]
        n_leaves = len(leaf_tmp)
        n_nodes = n_tmp

        new_id = [0] * n_tmp
        for rank, k in enumerate(leaf_tmp):
            new_id[k] = rank
        for rank, k in enumerate(internal_tmp):
            new_id[k] = n_leaves + rank

        parent = np.full(n_nodes, -1, dtype=np.int32)
        distance = np.zeros(n_nodes, dtype=np.float64)
        node_edge_num = np.full(n_nodes, -1, dtype=np.int32)
        child_counts = np.zeros(n_nodes, dtype=np.int64)
        names = [""] * n_nodes

        for k in range(n_tmp):
            node_id = new_id[k]
            names[node_id] = tmp_name[k]
            if tmp_length[k] is not None:
                distance[node_id] = tmp_length[k]
            node_edge_num[node_id] = tmp_edge[k]
            if tmp_children[k] is not None:
                child_counts[node_id] = len(tmp_children[k])
                for ck in tmp_children[k]:
                    parent[new_id[ck]] = node_id

        root = n_nodes - 1
        distance[root] = -1.0

        child_offsets = np.zeros(n_nodes + 1, dtype=np.int64)
        child_offsets[1:] = np.cumsum(child_counts)
        children = np.empty(n_nodes - 1, dtype=np.int32)
        for k in internal_tmp:
            base = int(child_offsets[new_id[k]])
            for pos, ck in enumerate(tmp_children[k]):
                children[base + pos] = new_id[ck]

        self.names = names
        self.parent = parent
        self.distance = distance
        self.node_edge_num = node_edge_num
        self.child_offsets = child_offsets
        self.children = children

    def _build_edges(self) -> None:
        """
        **Private.**  Assign edge indices to the non-root nodes.

        Populates
        ---------
        self.edge_node, self.edge_parent, self.edge_length, self.edge_num,
        self.node_edge, self._edge_num_index
        """
        n_nodes = int(self.parent.shape[0])
        non_root = np.arange(n_nodes - 1, dtype=np.int32)
        tags = self.node_edge_num[: n_nodes - 1]

        if n_nodes > 1 and np.all(tags >= 0):
            if np.unique(tags).shape[0] != tags.shape[0]:
                raise ValueError("Duplicate edge numbers in NEWICK string.")
            edge_node = non_root[np.argsort(tags, kind="stable")]
        else:
            if np.any(tags >= 0):
                logger.warning(
                    "Only %d of %d edges carry an edge number; "
                    "edge indices follow node order instead.",
                    int(np.count_nonzero(tags >= 0)),
                    n_nodes - 1,
                )
            edge_node = non_root

        node_edge = np.full(n_nodes, -1, dtype=np.int32)
        node_edge[edge_node] = np.arange(n_nodes - 1, dtype=np.int32)

        self.edge_node = edge_node
        self.edge_parent = self.parent[edge_node]
        self.edge_length = self.distance[edge_node]
        self.edge_num = self.node_edge_num[edge_node]
        self.node_edge = node_edge
        self._edge_num_index = {
            int(num): e for e, num in enumerate(self.edge_num) if num >= 0
        }

    def _build_lca_structures(self) -> None:
        """
        **Private.**  Build the Euler-tour arrays and sparse table needed for
        O(1) LCA queries.

        Iterative Euler tour
        --------------------
        A stack of (node, next-child-position) pairs drives the DFS without
        recursion.  A node is appended to the tour on entry and again after
        returning from each of its children, so the tour has 2n-1 entries for
        any node degree.

        Sparse table
        ------------
        ``sparse_table[k, i]`` stores the tour index j ∈ [i, i+2^k-1] where
        ``euler_depth[j]`` is minimised.  Built level-by-level using NumPy
        element-wise operations.

        Populates
        ---------
        self.depth, self.root_distance, self.euler_tour, self.euler_depth,
        self.first_occurrence, self.last_occurrence, self.sparse_table,
        self.log2_table
        """
        n_nodes = int(self.parent.shape[0])
        tour_len = 2 * n_nodes - 1
        root = n_nodes - 1

        depth = np.zeros(n_nodes, dtype=np.int32)
        root_distance = np.zeros(n_nodes, dtype=np.float64)
        euler_tour = np.zeros(tour_len, dtype=np.int32)
        euler_depth = np.zeros(tour_len, dtype=np.int32)
        first_occurrence = np.full(n_nodes, -1, dtype=np.int32)
        last_occurrence = np.full(n_nodes, -1, dtype=np.int32)

        child_offsets = self.child_offsets
        children = self.children
        distance = self.distance

        euler_tour[0] = root
        first_occurrence[root] = 0
        last_occurrence[root] = 0
        tour_pos = 1

        stack_node = [root]
        stack_next = [0]

        while stack_node:
            node = stack_node[-1]
            pos = int(child_offsets[node]) + stack_next[-1]

            if pos < int(child_offsets[node + 1]):
                stack_next[-1] += 1
                child = int(children[pos])
                depth[child] = depth[node] + 1
                root_distance[child] = root_distance[node] + distance[child]

                euler_tour[tour_pos] = child
                euler_depth[tour_pos] = depth[child]
                first_occurrence[child] = tour_pos
                last_occurrence[child] = tour_pos
                tour_pos += 1

                stack_node.append(child)
                stack_next.append(0)
            else:
                stack_node.pop()
                stack_next.pop()
                if stack_node:
                    back = stack_node[-1]
                    euler_tour[tour_pos] = back
                    euler_depth[tour_pos] = depth[back]
                    last_occurrence[back] = tour_pos
                    tour_pos += 1

        # Sparse table
        LOG = int(math.floor(math.log2(tour_len))) + 1 if tour_len > 1 else 1
        sparse_table = np.zeros((LOG, tour_len), dtype=np.int32)
        sparse_table[0] = np.arange(tour_len, dtype=np.int32)

        for k in range(1, LOG):
            half = 1 << (k - 1)
            valid = tour_len - half
            left_pos = sparse_table[k - 1, :valid]
            right_pos = sparse_table[k - 1, half:tour_len]
            left_depths = euler_depth[left_pos]
            right_depths = euler_depth[right_pos]
            sparse_table[k, :valid] = np.where(
                right_depths < left_depths, right_pos, left_pos
            )
            sparse_table[k, valid:] = sparse_table[k - 1, valid:]

        # floor(log2) lookup table
        log2_table = np.zeros(tour_len + 1, dtype=np.int32)
        for i in range(2, tour_len + 1):
            log2_table[i] = log2_table[i >> 1] + 1

        self.depth = depth
        self.root_distance = root_distance
        self.euler_tour = euler_tour
        self.euler_depth = euler_depth
        self.first_occurrence = first_occurrence
        self.last_occurrence = last_occurrence
        self.sparse_table = sparse_table
        self.log2_table = log2_table

    def _resolve_node(self, node) -> int:
        """
        **Private.**  Return the integer node ID for *node*.

        Integers (plain or numpy) are returned as ``int``; strings are
        looked up in the lazily built name index.

        Raises
        ------
        KeyError   if *node* is a string not present in the tree.
        """
        if isinstance(node, (int, np.integer)):
            return int(node)
        if self._name_index is None:
            self._build_name_index()
        if node not in self._name_index:
            raise KeyError(f"No node with name '{node}' found in tree.")
        return self._name_index[node]

    def _build_name_index(self) -> None:
        """
        **Private.**  Build and cache ``self._name_index``: a dict mapping
        each non-empty node name to its integer node ID.

        Raises
        ------
        ValueError   if duplicate node names are found.
        """
        idx = {}
        for node_id in range(len(self.names)):
            name = self.names[node_id]
            if name != "":
                if name in idx:
                    raise ValueError(
                        f"Duplicate node name '{name}' at IDs "
                        f"{idx[name]} and {node_id}."
                    )
                idx[name] = node_id
        self._name_index = idx

    # ================================================================== #
    # Private static methods                                               #
    # ================================================================== #

    @staticmethod
    def _read_node_suffix(s: str, i: int, n_chars: int):
        """
        **Private static.**  Read the label, ``:length``, ``{edge_num}`` and
        ``[comment]`` parts that may follow a leaf or a closing ')'.

        Returns
        -------
        (name, length, edge_num, i)
            name is '' when absent, length None when absent, edge_num -1
            when absent; i is the position after the suffix.
        """
        if i < n_chars and s[i] == "'":
            j = s.find("'", i + 1, n_chars)
            if j < 0:
                raise ValueError(f"Unterminated quoted label at position {i}.")
            name = s[i + 1 : j]
            i = j + 1
        else:
            j = i
            while j < n_chars and s[j] not in _NAME_STOP:
                j += 1
            name = s[i:j]
            i = j

        length = None
        edge_num = -1
        while i < n_chars:
            c = s[i]
            if c in _WHITESPACE:
                i += 1
            elif c == "[":
                i = Tree._skip_comment(s, i, n_chars)
            elif c == ":":
                i += 1
                while i < n_chars and s[i] in _WHITESPACE:
                    i += 1
                j = i
                while j < n_chars and s[j] not in _VALUE_STOP:
                    j += 1
                try:
                    length = float(s[i:j])
                except ValueError:
                    raise ValueError(
                        f"Invalid branch length {s[i:j]!r} at position {i}."
                    ) from None
                i = j
            elif c == "{":
                j = s.find("}", i + 1, n_chars)
                if j < 0:
                    raise ValueError(f"Unterminated edge number at position {i}.")
                try:
                    edge_num = int(s[i + 1 : j])
                except ValueError:
                    raise ValueError(
                        f"Invalid edge number {s[i + 1:j]!r} at position {i}."
                    ) from None
                i = j + 1
            else:
                break

        return name, length, edge_num, i

    @staticmethod
    def _skip_comment(s: str, i: int, n_chars: int) -> int:
        """**Private static.**  Return the position after the '[...]' at *i*."""
        j = s.find("]", i + 1, n_chars)
        if j < 0:
            raise ValueError(f"Unterminated comment at position {i}.")
        return j + 1

    @staticmethod
    def _rmq(l: int, r: int, sparse_table, euler_depth, log2_table) -> int:
        """
        **Private static.**  O(1) Range Minimum Query on ``euler_depth``.

        Returns the tour index ``i`` in ``[l, r]`` where ``euler_depth[i]``
        is minimised (left-biased on ties for deterministic results).
        """
        length = r - l + 1
        k = int(log2_table[length])
        half = 1 << k
        li = int(sparse_table[k, l])
        ri = int(sparse_table[k, r - half + 1])
        if int(euler_depth[ri]) < int(euler_depth[li]):
            return ri
        return li


def compatible_trees(a: Tree, b: Tree) -> bool:
    """
    Return True if *a* and *b* describe the same reference tree.

    Two trees are compatible when they have the same node and edge counts,
    the same parent/child adjacency (including child order, which fixes the
    node IDs) and the same edge-to-index mapping, so that mass vectors and
    node histograms computed on either tree line up index by index.  Branch
    lengths and node names are not compared.

    Examples
    --------
    >>> a = Tree('((A:1{0},B:1{1}):1{2},C:1{3}){4};')
    >>> b = Tree('((A:2{0},B:2{1}):2{2},C:2{3}){4};')
    >>> compatible_trees(a, b)
    True
    >>> compatible_trees(a, Tree('(A:1{0},B:1{1},C:1{2}){3};'))
    False
    """
    if a is b:
        return True
    if a.n_nodes != b.n_nodes or a.n_edges != b.n_edges:
        return False
    return (
        np.array_equal(a.parent, b.parent)
        and np.array_equal(a.child_offsets, b.child_offsets)
        and np.array_equal(a.children, b.children)
        and np.array_equal(a.edge_node, b.edge_node)
        and np.array_equal(a.edge_num, b.edge_num)
    )
