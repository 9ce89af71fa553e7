"""Genotype store and population-genetic summaries for epinetsim.

Core responsibilities:
  - Founder genotype draws at given allele frequencies (Hardy-Weinberg)
  - Allele frequency estimation from template genotypes
  - The GenotypeStore: the phased matrix is the only persisted view; the
    unphased dosage view and allele frequencies are always derived from it
  - Mutation (bidirectional, independent per allele)
  - Heterozygosity, additive variance, Hardy-Weinberg diagnostics

Phased layout: (n_individuals, 2 × n_loci) int8, column 2j = sire-origin
allele, column 2j+1 = dam-origin allele at locus j.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from epinetsim.errors import ConfigurationError
from epinetsim.types import GENOTYPE_DTYPE, PLOIDY, allocate_genotypes


# ═══════════════════════════════════════════════════════════════════════
# VIEWS
# ═══════════════════════════════════════════════════════════════════════


def unphase(phased: np.ndarray) -> np.ndarray:
    """Sum allele pairs per locus: (n, 2L) phased → (n, L) dosage in {0, 1, 2}."""
    return phased[:, 0::2] + phased[:, 1::2]


def estimate_allele_frequencies(phased: np.ndarray) -> np.ndarray:
    """Allele-1 frequency per locus: column means of the unphased view / 2.

    Uses every supplied row and both haplotypes.

    Returns:
        (n_loci,) float64. Zeros if there are no rows.
    """
    n = phased.shape[0]
    if n == 0:
        return np.zeros(phased.shape[1] // PLOIDY, dtype=np.float64)
    return unphase(phased).sum(axis=0).astype(np.float64) / (PLOIDY * n)


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPE INITIALIZATION
# ═══════════════════════════════════════════════════════════════════════


def generate_genotypes(
    n_individuals: int,
    allele_frequencies: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw founder genotypes at Hardy-Weinberg equilibrium.

    Each of the two alleles per individual per locus is an independent
    Bernoulli(q_l) trial.

    Args:
        n_individuals: Number of individuals.
        allele_frequencies: (n_loci,) allele-1 frequencies in [0, 1].
        rng: Random generator.

    Returns:
        (n_individuals, 2 × n_loci) int8 phased genotype matrix.
    """
    q = np.asarray(allele_frequencies, dtype=np.float64)
    if np.any((q < 0.0) | (q > 1.0)):
        raise ConfigurationError("allele frequencies must lie in [0, 1]")
    geno = allocate_genotypes(n_individuals, len(q))
    # Repeat each locus frequency for its two columns
    q_cols = np.repeat(q, PLOIDY)
    geno[:] = rng.random((n_individuals, len(q_cols))) < q_cols
    return geno


def check_template(
    template: np.ndarray,
    n_loci: int,
) -> np.ndarray:
    """Validate a caller-supplied phased genotype matrix."""
    template = np.asarray(template)
    if template.ndim != 2 or template.shape[1] != PLOIDY * n_loci:
        raise ConfigurationError(
            f"genotypes must have {PLOIDY * n_loci} columns (2 per locus), "
            f"got shape {template.shape}"
        )
    if not np.isin(template, (0, 1)).all():
        raise ConfigurationError("genotype values must be 0 or 1")
    return template.astype(GENOTYPE_DTYPE)


# ═══════════════════════════════════════════════════════════════════════
# MUTATION
# ═══════════════════════════════════════════════════════════════════════


def apply_mutations(
    phased: np.ndarray,
    rng: np.random.Generator,
    rate: float,
) -> int:
    """Apply bidirectional point mutations in place.

    Each allele copy independently flips (0→1, 1→0) with probability
    ``rate``. The number of mutations is drawn as Binomial(n_alleles, rate)
    and that many distinct sites are chosen uniformly, which is the same
    law as a Bernoulli trial per allele without touching every site.

    Args:
        phased: (n, 2L) int8, modified in place.
        rng: Random generator.
        rate: Per-allele per-generation mutation probability.

    Returns:
        Number of mutations applied.
    """
    n_alleles = phased.size
    if n_alleles == 0 or rate <= 0.0:
        return 0
    n_mutations = int(rng.binomial(n_alleles, min(rate, 1.0)))
    if n_mutations == 0:
        return 0

    mut_flat_idx = rng.choice(n_alleles, size=n_mutations, replace=False)
    rows, cols = np.unravel_index(mut_flat_idx, phased.shape)
    phased[rows, cols] = 1 - phased[rows, cols]
    return n_mutations


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPE STORE
# ═══════════════════════════════════════════════════════════════════════


class GenotypeStore:
    """Owner of a population's phased genotype matrix.

    Only the phased matrix is stored. Row count is the population size,
    column count is twice the locus count.
    """

    def __init__(self, phased: np.ndarray):
        phased = np.asarray(phased)
        if phased.ndim != 2 or phased.shape[1] % PLOIDY != 0:
            raise ConfigurationError(
                f"phased genotypes must be 2-D with an even column count, got {phased.shape}"
            )
        self._phased = phased.astype(GENOTYPE_DTYPE, copy=True)

    @property
    def phased(self) -> np.ndarray:
        """Read-only view of the phased matrix."""
        view = self._phased.view()
        view.flags.writeable = False
        return view

    @property
    def unphased(self) -> np.ndarray:
        return unphase(self._phased)

    @property
    def allele_frequencies(self) -> np.ndarray:
        return estimate_allele_frequencies(self._phased)

    @property
    def n_individuals(self) -> int:
        return self._phased.shape[0]

    @property
    def n_loci(self) -> int:
        return self._phased.shape[1] // PLOIDY

    def haplotypes(self, row: int) -> Tuple[np.ndarray, np.ndarray]:
        """(sire-origin, dam-origin) haplotypes of one individual."""
        return self._phased[row, 0::2].copy(), self._phased[row, 1::2].copy()

    def take(self, rows: np.ndarray) -> 'GenotypeStore':
        return GenotypeStore(self._phased[np.asarray(rows, dtype=np.int64)])

    def __len__(self) -> int:
        return self.n_individuals


# ═══════════════════════════════════════════════════════════════════════
# ALLELE FREQUENCY & HETEROZYGOSITY
# ═══════════════════════════════════════════════════════════════════════


def compute_heterozygosity(phased: np.ndarray) -> Tuple[float, float]:
    """Compute observed and expected heterozygosity across all loci.

    H_o = mean fraction of heterozygous individuals per locus.
    H_e = mean 2pq per locus (expected under HWE).

    Returns:
        (H_o, H_e) averaged across all loci; (0, 0) with fewer than 2 rows.
    """
    if phased.shape[0] < 2:
        return 0.0, 0.0
    het_per_locus = np.mean(phased[:, 0::2] != phased[:, 1::2], axis=0)
    q = estimate_allele_frequencies(phased)
    return float(np.mean(het_per_locus)), float(np.mean(2.0 * q * (1.0 - q)))


def compute_additive_variance(
    allele_freq: np.ndarray,
    coefficients: np.ndarray,
) -> float:
    """Expected additive genetic variance under HWE.

    V_A = Σ 2 × a_l² × q_l × (1 − q_l)

    Args:
        allele_freq: (n_qtl,) allele frequencies at the QTL.
        coefficients: (n_qtl,) additive coefficients per allele dose.
    """
    q = np.asarray(allele_freq, dtype=np.float64)
    return float(2.0 * np.sum(np.asarray(coefficients) ** 2 * q * (1.0 - q)))


@dataclass
class GeneticDiagnostics:
    """Genetic summary statistics for one generation."""
    allele_freq: np.ndarray
    heterozygosity_obs: float = 0.0
    heterozygosity_exp: float = 0.0
    mean_abs_delta_q: float = 0.0
    n_individuals: int = 0


def compute_genetic_diagnostics(
    phased: np.ndarray,
    prev_allele_freq: Optional[np.ndarray] = None,
) -> GeneticDiagnostics:
    """Allele frequencies, heterozygosity and drift since the previous generation."""
    diag = GeneticDiagnostics(
        allele_freq=estimate_allele_frequencies(phased),
        n_individuals=phased.shape[0],
    )
    diag.heterozygosity_obs, diag.heterozygosity_exp = compute_heterozygosity(phased)
    if prev_allele_freq is not None:
        diag.mean_abs_delta_q = float(np.mean(np.abs(diag.allele_freq - prev_allele_freq)))
    return diag


def hardy_weinberg_test(
    phased: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Compute observed vs expected genotype frequencies under HWE.

    Returns:
        Tuple of:
          obs_freq: (n_loci, 3) float64: observed frequencies of (0/0, het, 1/1)
          exp_freq: (n_loci, 3) float64: HWE expected frequencies
          chi2: (n_loci,) float64: chi-squared statistic per locus
    """
    n = phased.shape[0]
    n_loci = phased.shape[1] // PLOIDY
    obs_freq = np.zeros((n_loci, 3), dtype=np.float64)
    exp_freq = np.zeros((n_loci, 3), dtype=np.float64)
    chi2 = np.zeros(n_loci, dtype=np.float64)
    if n < 2:
        return obs_freq, exp_freq, chi2

    dosage = unphase(phased)
    for g_idx in range(3):
        obs_freq[:, g_idx] = np.mean(dosage == g_idx, axis=0)

    q = estimate_allele_frequencies(phased)
    p = 1.0 - q
    exp_freq[:, 0] = p * p
    exp_freq[:, 1] = 2.0 * p * q
    exp_freq[:, 2] = q * q

    expected = exp_freq * n
    with np.errstate(divide='ignore', invalid='ignore'):
        terms = np.where(expected > 0, (obs_freq * n - expected) ** 2 / expected, 0.0)
    chi2[:] = terms.sum(axis=1)
    return obs_freq, exp_freq, chi2
