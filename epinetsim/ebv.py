"""Estimated breeding values.

The breeding engine treats EBV estimation as an external service behind
the ``BreedingValueEstimator`` protocol. The default implementation is
genomic BLUP with a VanRaden (method 1) relationship matrix:

  G = Z Z' / (2 Σ p(1 − p)),   Z = M − 2p
  (G + λI) α = y − ȳ,          λ = (1 − h²) / h²
  EBV = G α

Heritability comes from the caller (a supplied estimate, or the
population's narrow-sense target); variance-component estimation (GREML)
is out of scope.

References:
  - VanRaden 2008: efficient methods to compute genomic predictions
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np
from scipy import linalg

from epinetsim.errors import ConfigurationError


# Heritability is clipped into this open interval so λ stays finite and positive
_H2_BOUNDS = (1e-6, 1.0 - 1e-6)


@runtime_checkable
class BreedingValueEstimator(Protocol):
    def estimate(
        self,
        unphased: np.ndarray,
        phenotypes: np.ndarray,
        h2: float,
    ) -> np.ndarray:
        ...


def vanraden_grm(unphased: np.ndarray) -> np.ndarray:
    """Genomic relationship matrix (VanRaden method 1).

    Monomorphic markers contribute nothing to Z and nothing to the
    denominator.

    Args:
        unphased: (n, L) dosages in {0, 1, 2}.

    Returns:
        (n, n) float64 GRM.

    Raises:
        ConfigurationError: every marker is monomorphic.
    """
    M = unphased.astype(np.float64)
    p = M.mean(axis=0) / 2.0
    denom = 2.0 * float(np.sum(p * (1.0 - p)))
    if denom <= 0.0:
        raise ConfigurationError("cannot build a GRM: all markers are monomorphic")
    Z = M - 2.0 * p
    return (Z @ Z.T) / denom


class GBLUPEstimator:
    """Genomic BLUP breeding values from genotypes and phenotypes."""

    def estimate(
        self,
        unphased: np.ndarray,
        phenotypes: np.ndarray,
        h2: float,
    ) -> np.ndarray:
        y = np.asarray(phenotypes, dtype=np.float64)
        if y.shape != (unphased.shape[0],):
            raise ValueError(
                f"need one phenotype per individual ({unphased.shape[0]}), got {y.shape}"
            )
        if len(y) == 0:
            return np.empty(0, dtype=np.float64)
        h2 = float(np.clip(h2, *_H2_BOUNDS))
        lam = (1.0 - h2) / h2
        G = vanraden_grm(unphased)
        lhs = G + lam * np.eye(len(y))
        alpha = linalg.solve(lhs, y - y.mean(), assume_a='sym')
        return G @ alpha
