"""Epistatic interaction network over the QTL.

The network is a hypergraph: nodes are QTL (addressed by their index in
the population's QTL list) and each hyperedge is one k-way interaction
owning a dense effect tensor of shape (3,)*k, indexed by the genotype
class (homozygous-0, heterozygous, homozygous-1) of each member QTL in
ascending QTL order. Storage is an arena of parallel lists; the topology
is rebuilt wholesale on each attachment, never edited node by node.

Generation algorithms:
  - Uniform random attachment
  - Scale-free (preferential attachment on interaction degree)
  - Manual, from a caller-supplied 0/1 incidence matrix

Growth per interaction order k (orders processed in increasing order):
  1. Shuffle the non-additive QTL.
  2. Fully connect the first n₀ of them, n₀ = min n with C(n−1, k−1) ≥ m,
     so every core node already has ≥ m interactions of order k.
  3. Each remaining node joins m distinct new k-way interactions with
     k−1 already placed partners, picked uniformly or with probability
     proportional to their cumulative degree over all interactions placed
     so far (lower orders seed higher-order preferential attachment).

References:
  - Barabási & Albert 1999: emergence of scaling in random networks
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from math import comb
from typing import List, Optional, Sequence, Union

import numpy as np

from epinetsim.errors import ConfigurationError
from epinetsim.types import N_GENOTYPE_CLASSES


# ═══════════════════════════════════════════════════════════════════════
# NETWORK CONTAINER
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class EpistaticNetwork:
    """Incidence structure and raw (unscaled) effect tensors."""
    n_qtl: int
    members: List[np.ndarray] = field(default_factory=list)   # ascending QTL indices
    tensors: List[np.ndarray] = field(default_factory=list)   # (3,)*k float64

    @property
    def n_interactions(self) -> int:
        return len(self.members)

    @property
    def orders(self) -> np.ndarray:
        return np.array([len(m) for m in self.members], dtype=np.int64)

    @property
    def incidence(self) -> np.ndarray:
        """(n_qtl, n_interactions) int8 membership matrix."""
        inc = np.zeros((self.n_qtl, self.n_interactions), dtype=np.int8)
        for col, mem in enumerate(self.members):
            inc[mem, col] = 1
        return inc

    @property
    def degrees(self) -> np.ndarray:
        """Number of interactions each QTL takes part in."""
        deg = np.zeros(self.n_qtl, dtype=np.int64)
        for mem in self.members:
            deg[mem] += 1
        return deg

    @property
    def additive_only(self) -> np.ndarray:
        """Indices of QTL with an all-zero incidence row."""
        return np.flatnonzero(self.degrees == 0)

    def effect_tensor(self, interaction: int) -> np.ndarray:
        if not 0 <= interaction < self.n_interactions:
            raise IndexError(
                f"interaction {interaction} out of range [0, {self.n_interactions})"
            )
        return self.tensors[interaction].copy()


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER RESOLUTION
# ═══════════════════════════════════════════════════════════════════════


def minimal_core_size(m: int, k: int) -> int:
    """Smallest n ≥ k such that C(n−1, k−1) ≥ m.

    A complete k-uniform hypergraph on n nodes gives every node
    C(n−1, k−1) interactions; for k = 2 this is n ≥ m + 1.
    """
    if m < 1:
        raise ConfigurationError(f"m must be >= 1, got {m}")
    if k < 2:
        raise ConfigurationError(f"interaction order k must be >= 2, got {k}")
    n = k
    while comb(n - 1, k - 1) < m:
        n += 1
    return n


def normalize_orders(k: Union[int, Sequence[int]]) -> List[int]:
    """Interaction orders as a sorted list of unique ints ≥ 2."""
    orders = [int(k)] if np.isscalar(k) else [int(x) for x in k]
    if not orders:
        raise ConfigurationError("at least one interaction order is required")
    bad = [o for o in orders if o < 2]
    if bad:
        raise ConfigurationError(f"interaction orders must be >= 2, got {bad}")
    return sorted(set(orders))


def resolve_additive(
    n_qtl: int,
    additive: Union[int, Sequence[int], None],
    rng: np.random.Generator,
) -> np.ndarray:
    """Additive-only QTL indices from a count (chosen at random) or explicit list."""
    if additive is None:
        return np.empty(0, dtype=np.int64)
    if np.isscalar(additive):
        count = int(additive)
        if not 0 <= count <= n_qtl:
            raise ConfigurationError(
                f"additive-only count must be in [0, {n_qtl}], got {count}"
            )
        return np.sort(rng.choice(n_qtl, size=count, replace=False)).astype(np.int64)
    idx = np.unique(np.asarray(additive, dtype=np.int64))
    if idx.size and (idx.min() < 0 or idx.max() >= n_qtl):
        raise ConfigurationError(f"additive-only QTL indices must be in [0, {n_qtl})")
    return idx


# ═══════════════════════════════════════════════════════════════════════
# GROWTH
# ═══════════════════════════════════════════════════════════════════════


def _pick_partners(
    placed: np.ndarray,
    n_partners: int,
    weights: Optional[np.ndarray],
    exclude: set,
    rng: np.random.Generator,
) -> tuple:
    """Draw a partner set not already in ``exclude``."""
    p = None if weights is None else weights / weights.sum()
    for _ in range(1000):
        partners = rng.choice(placed, size=n_partners, replace=False, p=p)
        key = tuple(sorted(int(x) for x in partners))
        if key not in exclude:
            return key
    # Heavily skewed weights can make the rejection loop slow; take the
    # first unused combination instead.
    for combo in itertools.combinations(sorted(int(x) for x in placed), n_partners):
        if combo not in exclude:
            return combo
    raise ConfigurationError("no unused partner combination left")


def _grow_network(
    n_qtl: int,
    additive: Union[int, Sequence[int], None],
    m: int,
    k: Union[int, Sequence[int]],
    preferential: bool,
    rng: np.random.Generator,
) -> EpistaticNetwork:
    orders = normalize_orders(k)
    additive_idx = resolve_additive(n_qtl, additive, rng)
    epi_nodes = np.setdiff1d(np.arange(n_qtl, dtype=np.int64), additive_idx)

    # Check every order before drawing anything
    for order in orders:
        n0 = minimal_core_size(m, order)
        if n0 > len(epi_nodes):
            raise ConfigurationError(
                f"order-{order} interactions with m={m} need at least {n0} "
                f"non-additive QTL, only {len(epi_nodes)} available"
            )

    degrees = np.zeros(n_qtl, dtype=np.float64)
    members: List[np.ndarray] = []

    def add_interaction(nodes) -> None:
        mem = np.array(sorted(int(x) for x in nodes), dtype=np.int64)
        members.append(mem)
        degrees[mem] += 1.0

    for order in orders:
        n0 = minimal_core_size(m, order)
        node_order = rng.permutation(epi_nodes)
        core = node_order[:n0]
        for combo in itertools.combinations(sorted(core.tolist()), order):
            add_interaction(combo)

        placed = list(core.tolist())
        for node in node_order[n0:]:
            placed_arr = np.asarray(placed, dtype=np.int64)
            weights = degrees[placed_arr] if preferential else None
            chosen: set = set()
            for _ in range(m):
                chosen.add(_pick_partners(placed_arr, order - 1, weights, chosen, rng))
            for partners in sorted(chosen):
                add_interaction(partners + (int(node),))
            placed.append(int(node))

    tensors = [
        rng.normal(0.0, 1.0, size=(N_GENOTYPE_CLASSES,) * len(mem))
        for mem in members
    ]
    return EpistaticNetwork(n_qtl=n_qtl, members=members, tensors=tensors)


def build_random(
    n_qtl: int,
    rng: np.random.Generator,
    additive: Union[int, Sequence[int], None] = 0,
    m: int = 1,
    k: Union[int, Sequence[int]] = 2,
) -> EpistaticNetwork:
    """Connected network with uniform attachment probabilities.

    Args:
        n_qtl: Number of QTL (network nodes).
        rng: Random generator (topology and tensor draws).
        additive: Count of additive-only QTL (chosen at random) or their indices.
        m: Minimum number of interactions of each order per non-additive QTL.
        k: Interaction order or sequence of orders.

    Raises:
        ConfigurationError: m < 1, an order < 2, or too few non-additive QTL.
    """
    return _grow_network(n_qtl, additive, m, k, preferential=False, rng=rng)


def build_scale_free(
    n_qtl: int,
    rng: np.random.Generator,
    additive: Union[int, Sequence[int], None] = 0,
    m: int = 1,
    k: Union[int, Sequence[int]] = 2,
) -> EpistaticNetwork:
    """Scale-free network: attachment probability ∝ current interaction degree.

    Same arguments and failure modes as ``build_random``.
    """
    return _grow_network(n_qtl, additive, m, k, preferential=True, rng=rng)


def from_incidence_matrix(
    incmat: np.ndarray,
    rng: np.random.Generator,
    n_qtl: Optional[int] = None,
) -> EpistaticNetwork:
    """Network from a caller-supplied 0/1 incidence matrix (QTL × interactions).

    Raises:
        ConfigurationError: non-binary values, wrong row count, or an
            interaction with fewer than two member QTL.
    """
    inc = np.asarray(incmat)
    if inc.ndim != 2:
        raise ConfigurationError(f"incidence matrix must be 2-D, got shape {inc.shape}")
    if n_qtl is not None and inc.shape[0] != n_qtl:
        raise ConfigurationError(
            f"incidence matrix must have one row per QTL ({n_qtl}), got {inc.shape[0]}"
        )
    if not np.isin(inc, (0, 1)).all():
        raise ConfigurationError("incidence matrix values must be 0 or 1")
    col_counts = inc.sum(axis=0)
    bad = np.flatnonzero(col_counts < 2)
    if bad.size:
        raise ConfigurationError(
            f"every interaction needs at least 2 QTL; columns {bad.tolist()} have fewer"
        )
    members = [np.flatnonzero(inc[:, c]).astype(np.int64) for c in range(inc.shape[1])]
    tensors = [
        rng.normal(0.0, 1.0, size=(N_GENOTYPE_CLASSES,) * len(mem))
        for mem in members
    ]
    return EpistaticNetwork(n_qtl=inc.shape[0], members=members, tensors=tensors)
