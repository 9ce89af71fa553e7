"""Phenotype decomposition.

Phenotype = Additive + Epistatic + Environmental, with
  Additive  = Σ_j dosage_j × a_j + additive offset           (over QTL j)
  Epistatic = Σ_i T_i[class(q_i1), …, class(q_ik)] + epistatic offset
  TGV       = Additive + Epistatic

The genotype class of a QTL is its unphased dosage (0, 1, 2). Every
function here is a pure function of the genotype matrix it is given and
the fitted effects, so it applies equally to genotypes outside the managed
population.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import numpy as np
import pandas as pd

from epinetsim.types import COMPONENT_COLUMNS

if TYPE_CHECKING:
    from epinetsim.effects import AdditiveEffects, EpistaticEffects


# ═══════════════════════════════════════════════════════════════════════
# COMPONENT VALUES
# ═══════════════════════════════════════════════════════════════════════


def additive_values(unphased_qtl: np.ndarray, coefficients: np.ndarray) -> np.ndarray:
    """Σ dosage × coefficient per individual (no offset)."""
    return unphased_qtl.astype(np.float64) @ np.asarray(coefficients, dtype=np.float64)


def epistatic_values(
    unphased_qtl: np.ndarray,
    members: List[np.ndarray],
    tensors: List[np.ndarray],
) -> np.ndarray:
    """Sum of tensor lookups over all interactions (no offset).

    Args:
        unphased_qtl: (n, n_qtl) dosages in {0, 1, 2}.
        members: Per interaction, ascending QTL indices.
        tensors: Per interaction, (3,)*k effect tensor.

    Returns:
        (n,) float64.
    """
    total = np.zeros(unphased_qtl.shape[0], dtype=np.float64)
    for mem, tensor in zip(members, tensors):
        classes = unphased_qtl[:, mem].astype(np.intp)
        total += tensor[tuple(classes.T)]
    return total


# ═══════════════════════════════════════════════════════════════════════
# COMPONENT TABLE
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class PhenotypeComponents:
    """Per-individual phenotype components (parallel arrays)."""
    additive: np.ndarray
    epistatic: np.ndarray
    environmental: np.ndarray
    ebv: Optional[np.ndarray] = None

    @property
    def tgv(self) -> np.ndarray:
        return self.additive + self.epistatic

    @property
    def phenotype(self) -> np.ndarray:
        return self.tgv + self.environmental

    def __len__(self) -> int:
        return len(self.additive)

    def to_frame(self, ids: Optional[np.ndarray] = None) -> pd.DataFrame:
        ebv = self.ebv if self.ebv is not None else np.full(len(self), np.nan)
        data = dict(zip(
            COMPONENT_COLUMNS,
            (self.additive, self.epistatic, self.environmental,
             self.phenotype, self.tgv, ebv),
        ))
        index = pd.Index(ids, name='ID') if ids is not None else None
        return pd.DataFrame(data, index=index)


def compute_components(
    unphased_qtl: np.ndarray,
    additive: Optional['AdditiveEffects'],
    epistatic: Optional['EpistaticEffects'],
    environmental: np.ndarray,
    ebv: Optional[np.ndarray] = None,
) -> PhenotypeComponents:
    """Phenotype components for every row of ``unphased_qtl``.

    Missing effect models contribute zeros.
    """
    n = unphased_qtl.shape[0]
    if additive is not None:
        add = additive_values(unphased_qtl, additive.coefficients) + additive.offset
    else:
        add = np.zeros(n, dtype=np.float64)
    if epistatic is not None:
        epi = epistatic.scale * epistatic_values(
            unphased_qtl, epistatic.network.members, epistatic.network.tensors
        ) + epistatic.offset
    else:
        epi = np.zeros(n, dtype=np.float64)
    env = np.asarray(environmental, dtype=np.float64)
    if env.shape != (n,):
        raise ValueError(f"environmental must have shape ({n},), got {env.shape}")
    return PhenotypeComponents(additive=add, epistatic=epi, environmental=env, ebv=ebv)
