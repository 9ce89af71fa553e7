"""Parent selection: truncation, linear ranking, and mate pairing.

Per generation:
  1. Each sex pool is truncated to the best ``ceil(proportion × n)``
     candidates by fitness (skipped during burn-in).
  2. Dams are visited without replacement, either in random order or in
     an order drawn with linear-ranking weights.
  3. Each dam is paired with a sire drawn with replacement (uniformly or
     with linear-ranking weights) among sires that have mated fewer than
     ``breed_sire`` times this generation.
  4. Each pair draws a litter size; pairing stops once the offspring quota
     is met (the last litter is cut to fit) or dams or sires run out.

Linear ranking: the candidate of rank r (1 = fittest) among n is chosen
with probability 2(n − r + 1) / (n(n + 1)).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from epinetsim.errors import ConfigurationError, InsufficientPopulationError
from epinetsim.reproduction import max_litter_size, sample_litter_sizes
from epinetsim.types import Selection


# ═══════════════════════════════════════════════════════════════════════
# RANKING & TRUNCATION
# ═══════════════════════════════════════════════════════════════════════


def fitness_order(fitness: np.ndarray) -> np.ndarray:
    """Indices by descending fitness; ties keep their original order."""
    return np.argsort(-np.asarray(fitness, dtype=np.float64), kind='stable')


def linear_ranking_probabilities(n: int) -> np.ndarray:
    """Selection probability of ranks 1..n (rank 1 = fittest)."""
    ranks = np.arange(1, n + 1, dtype=np.float64)
    return 2.0 * (n - ranks + 1.0) / (n * (n + 1.0))


def rank_weights(fitness: np.ndarray) -> np.ndarray:
    """Linear-ranking probability of each candidate, in input order."""
    n = len(fitness)
    weights = np.empty(n, dtype=np.float64)
    weights[fitness_order(fitness)] = linear_ranking_probabilities(n)
    return weights


def truncate(candidates: np.ndarray, fitness: np.ndarray, proportion: float) -> np.ndarray:
    """Keep the best ``ceil(proportion × n)`` candidates, fittest first."""
    if not 0.0 < proportion <= 1.0:
        raise ConfigurationError(f"truncation proportion must be in (0, 1], got {proportion}")
    n_keep = int(np.ceil(proportion * len(candidates) - 1e-9))
    return np.asarray(candidates)[fitness_order(fitness)[:n_keep]]


# ═══════════════════════════════════════════════════════════════════════
# MATING
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class MatingPlan:
    """Mating pairs of one generation (parallel arrays, in mating order)."""
    sires: np.ndarray
    dams: np.ndarray
    litter_sizes: np.ndarray

    @property
    def n_pairs(self) -> int:
        return len(self.dams)

    @property
    def n_offspring(self) -> int:
        return int(self.litter_sizes.sum())


def check_feasibility(
    n_sires: int,
    n_dams: int,
    breed_sire: int,
    litter_dist,
    quota: int,
) -> None:
    """Fail fast when the pools cannot possibly meet the offspring quota.

    Raises:
        InsufficientPopulationError: an empty pool, or too few dams or sire
            matings even if every litter were of maximum size.
    """
    if quota <= 0:
        return
    if n_sires == 0 or n_dams == 0:
        raise InsufficientPopulationError(
            f"selection pools are empty after truncation ({n_sires} sires, {n_dams} dams)"
        )
    biggest = max_litter_size(litter_dist)
    if n_dams * biggest < quota:
        raise InsufficientPopulationError(
            f"{n_dams} dams with litters of at most {biggest} cannot produce {quota} offspring"
        )
    if n_sires * breed_sire * biggest < quota:
        raise InsufficientPopulationError(
            f"{n_sires} sires used at most {breed_sire} times each cannot produce "
            f"{quota} offspring with litters of at most {biggest}"
        )


def select_mates(
    sires: np.ndarray,
    dams: np.ndarray,
    sire_fitness: np.ndarray,
    dam_fitness: np.ndarray,
    quota: int,
    litter_dist,
    breed_sire: int,
    mode: Selection,
    rng: np.random.Generator,
) -> MatingPlan:
    """Pair sires and dams until ``quota`` offspring are planned.

    Args:
        sires: Candidate sire identifiers (already truncated).
        dams: Candidate dam identifiers (already truncated).
        sire_fitness: Fitness aligned with ``sires`` (used in ranking mode).
        dam_fitness: Fitness aligned with ``dams`` (used in ranking mode).
        quota: Offspring wanted.
        litter_dist: Litter-size distribution, index 0 = no offspring.
        breed_sire: Maximum matings per sire.
        mode: Selection.RANDOM or Selection.RANKING.
        rng: Random generator.

    Returns:
        MatingPlan. Its offspring total may fall short of ``quota`` when
        zero-size litters exhaust the dams; the caller fills the gap.
    """
    sires = np.asarray(sires)
    dams = np.asarray(dams)
    mode = Selection(mode)
    if breed_sire < 1:
        raise ConfigurationError(f"breed_sire must be >= 1, got {breed_sire}")

    if mode is Selection.RANKING:
        dam_order = rng.choice(len(dams), size=len(dams), replace=False, p=rank_weights(dam_fitness))
        sire_weights = rank_weights(sire_fitness)
    else:
        dam_order = rng.permutation(len(dams))
        sire_weights = np.ones(len(sires), dtype=np.float64)
    litter_draws = sample_litter_sizes(litter_dist, len(dams), rng)

    uses = np.zeros(len(sires), dtype=np.int64)
    pair_sires, pair_dams, litters = [], [], []
    planned = 0
    for i, d in enumerate(dam_order):
        if planned >= quota:
            break
        eligible = uses < breed_sire
        if not eligible.any():
            break
        p = sire_weights * eligible
        s = int(rng.choice(len(sires), p=p / p.sum()))
        uses[s] += 1
        litter = min(int(litter_draws[i]), quota - planned)
        pair_sires.append(sires[s])
        pair_dams.append(dams[d])
        litters.append(litter)
        planned += litter

    return MatingPlan(
        sires=np.asarray(pair_sires, dtype=sires.dtype),
        dams=np.asarray(pair_dams, dtype=dams.dtype),
        litter_sizes=np.asarray(litters, dtype=np.int64),
    )
