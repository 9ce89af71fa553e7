"""Meiosis, litter sizes and offspring assembly.

Implements the Recombine step of a generation:
  - Gamete formation with per-site crossover probabilities
    (starting haplotype is a fair coin per chromosome; no phase carries
    across chromosome boundaries)
  - Offspring assembly: sire gamete → sire-origin columns, dam gamete →
    dam-origin columns
  - Litter-size draws from a discrete distribution (index 0 = no offspring)
  - Balanced sex assignment of newborns

References:
  - Haldane 1919: map function used for default crossover probabilities
"""

from __future__ import annotations

import numpy as np

from epinetsim.errors import ConfigurationError
from epinetsim.types import GENOTYPE_DTYPE, PLOIDY, Sex


# ═══════════════════════════════════════════════════════════════════════
# RECOMBINATION
# ═══════════════════════════════════════════════════════════════════════


def recombine(
    parents_phased: np.ndarray,
    rec_probs: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Form one gamete per parent row.

    A switch between the parent's two haplotypes happens at locus l with
    probability ``rec_probs[l]``. The source haplotype is the running
    parity of switches, so a 0.5 at each chromosome start makes the
    starting haplotype uniform and independent of the previous chromosome.

    Args:
        parents_phased: (n, 2L) int8 parental genotypes (one row per gamete).
        rec_probs: (L,) crossover probabilities; 0.5 at chromosome starts.
        rng: Random generator.

    Returns:
        (n, L) int8 gametes.
    """
    n, n_cols = parents_phased.shape
    n_loci = n_cols // PLOIDY
    if len(rec_probs) != n_loci:
        raise ConfigurationError(
            f"recombination probabilities must have length {n_loci}, got {len(rec_probs)}"
        )
    if n == 0:
        return np.empty((0, n_loci), dtype=GENOTYPE_DTYPE)

    switches = rng.random((n, n_loci)) < rec_probs
    source = np.cumsum(switches, axis=1) % 2          # 0 = first haplotype
    first = parents_phased[:, 0::2]
    second = parents_phased[:, 1::2]
    return np.where(source == 0, first, second).astype(GENOTYPE_DTYPE)


def make_offspring(
    sire_phased: np.ndarray,
    dam_phased: np.ndarray,
    rec_probs: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Assemble offspring genotypes from one gamete of each parent.

    Args:
        sire_phased: (n_offspring, 2L) genotypes of each offspring's sire.
        dam_phased: (n_offspring, 2L) genotypes of each offspring's dam.
        rec_probs: (L,) crossover probabilities.
        rng: Random generator.

    Returns:
        (n_offspring, 2L) int8 phased offspring genotypes.
    """
    if sire_phased.shape != dam_phased.shape:
        raise ValueError(
            f"sire and dam arrays differ in shape: {sire_phased.shape} vs {dam_phased.shape}"
        )
    offspring = np.empty(sire_phased.shape, dtype=GENOTYPE_DTYPE)
    offspring[:, 0::2] = recombine(sire_phased, rec_probs, rng)
    offspring[:, 1::2] = recombine(dam_phased, rec_probs, rng)
    return offspring


# ═══════════════════════════════════════════════════════════════════════
# LITTER SIZES
# ═══════════════════════════════════════════════════════════════════════


def normalize_litter_dist(litter_dist) -> np.ndarray:
    """Validate and normalise a litter-size distribution.

    ``litter_dist[i]`` is the (unnormalised) probability of a litter of
    size i; ``[0, 0, 1]`` means every pair has exactly two offspring.
    """
    dist = np.asarray(litter_dist, dtype=np.float64)
    if dist.ndim != 1 or len(dist) == 0:
        raise ConfigurationError("litter_dist must be a non-empty 1-D sequence")
    if np.any(dist < 0) or not np.all(np.isfinite(dist)):
        raise ConfigurationError("litter_dist entries must be finite and non-negative")
    total = dist.sum()
    if total <= 0 or not np.any(dist[1:] > 0):
        raise ConfigurationError("litter_dist must give positive probability to a non-empty litter")
    return dist / total


def max_litter_size(litter_dist) -> int:
    """Largest litter size with positive probability."""
    dist = normalize_litter_dist(litter_dist)
    return int(np.flatnonzero(dist > 0)[-1])


def sample_litter_sizes(
    litter_dist,
    n_pairs: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw a litter size for each of ``n_pairs`` mating pairs."""
    dist = normalize_litter_dist(litter_dist)
    return rng.choice(len(dist), size=n_pairs, p=dist).astype(np.int64)


# ═══════════════════════════════════════════════════════════════════════
# SEX ASSIGNMENT
# ═══════════════════════════════════════════════════════════════════════


def assign_sexes(n: int, rng: np.random.Generator) -> np.ndarray:
    """Balanced sexes in random order: ⌊n/2⌋ males, the rest females."""
    sexes = np.full(n, Sex.FEMALE, dtype=np.int8)
    sexes[: n // 2] = Sex.MALE
    return rng.permutation(sexes)
