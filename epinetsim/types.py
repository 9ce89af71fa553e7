"""Core data types for epinetsim.

This module is the single source of truth for:
  - Selection, Fitness, Sex enumerations
  - Genotype encoding constants (phased columns, genotype classes)
  - LocusMap: the ordered (locus, chromosome, position) map
  - Pedigree column names shared by the breeding engine and the pedigree module

Genotype encoding:
  Phased matrices are individual-major with two columns per locus:
  column 2j holds the sire-origin allele and column 2j+1 the dam-origin
  allele at locus j. Alleles are 0/1. The unphased dosage (0, 1, 2) doubles
  as the genotype-class index into epistatic effect tensors
  (homozygous-0, heterozygous, homozygous-1).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

import numpy as np
import pandas as pd

from epinetsim.errors import ConfigurationError


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Sex(IntEnum):
    MALE = 0
    FEMALE = 1


class Selection(str, Enum):
    """Mate selection mode outside burn-in."""
    RANDOM = 'random'
    RANKING = 'ranking'


class Fitness(str, Enum):
    """Quantity individuals are ranked and truncated on."""
    PHENOTYPE = 'phenotype'
    TGV = 'TGV'
    EBV = 'EBV'


# ═══════════════════════════════════════════════════════════════════════
# GENOTYPE CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

PLOIDY = 2
GENOTYPE_DTYPE = np.int8

HOM_0 = 0   # homozygous for allele 0
HET = 1     # heterozygous
HOM_1 = 2   # homozygous for allele 1
N_GENOTYPE_CLASSES = 3

# Pedigree table columns (founders carry 0 for both parents)
PED_ID = 'ID'
PED_SIRE = 'Sire'
PED_DAM = 'Dam'
PED_GENERATION = 'Generation'
PEDIGREE_COLUMNS = (PED_ID, PED_SIRE, PED_DAM, PED_GENERATION)
UNKNOWN_PARENT = 0

# Phenotype component columns
COMPONENT_COLUMNS = ('Additive', 'Epistatic', 'Environmental', 'Phenotype', 'TGV', 'EBV')


def allocate_genotypes(n_individuals: int, n_loci: int) -> np.ndarray:
    """Allocate a zeroed phased genotype matrix (n_individuals, 2 × n_loci) int8."""
    return np.zeros((n_individuals, PLOIDY * n_loci), dtype=GENOTYPE_DTYPE)


# ═══════════════════════════════════════════════════════════════════════
# LOCUS MAP
# ═══════════════════════════════════════════════════════════════════════

# Haldane scale: 1 cM per Mb unless overridden
DEFAULT_CM_PER_MB = 1.0


@dataclass(frozen=True)
class LocusMap:
    """Ordered locus map, sorted by (chromosome, position) at construction.

    Use ``LocusMap.build`` / ``from_frame`` / ``simulated`` rather than the
    raw constructor; they perform the sort.
    """
    locus_ids: np.ndarray     # (n_loci,) object (str)
    chromosomes: np.ndarray   # (n_loci,) object or int
    positions: np.ndarray     # (n_loci,) int64 base pairs

    @classmethod
    def build(cls, locus_ids, chromosomes, positions) -> 'LocusMap':
        locus_ids = np.asarray(locus_ids, dtype=object)
        chromosomes = np.asarray(chromosomes)
        positions = np.asarray(positions, dtype=np.int64)
        if not (len(locus_ids) == len(chromosomes) == len(positions)):
            raise ConfigurationError(
                "map columns must have equal length, got "
                f"{len(locus_ids)}, {len(chromosomes)}, {len(positions)}"
            )
        if len(locus_ids) == 0:
            raise ConfigurationError("map must contain at least one locus")
        if len(set(locus_ids.tolist())) != len(locus_ids):
            raise ConfigurationError("map locus IDs must be unique")
        if np.any(positions < 0):
            raise ConfigurationError("map positions must be non-negative")
        # Stable sort so loci sharing a position keep their input order
        order = (
            pd.DataFrame({'chrom': chromosomes, 'pos': positions})
            .sort_values(['chrom', 'pos'], kind='mergesort')
            .index.to_numpy()
        )
        return cls(
            locus_ids=locus_ids[order],
            chromosomes=chromosomes[order],
            positions=positions[order],
        )

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> 'LocusMap':
        """Build from a table whose first three columns are ID, chromosome, position."""
        if frame.shape[1] < 3:
            raise ConfigurationError(
                f"map table needs 3 columns (ID, chromosome, position), got {frame.shape[1]}"
            )
        return cls.build(
            frame.iloc[:, 0].astype(str).to_numpy(),
            frame.iloc[:, 1].to_numpy(),
            frame.iloc[:, 2].to_numpy(),
        )

    @classmethod
    def from_csv(cls, path) -> 'LocusMap':
        return cls.from_frame(pd.read_csv(path))

    @classmethod
    def simulated(
        cls,
        n_loci: int,
        n_chromosomes: int = 1,
        chromosome_length: int = 100_000_000,
    ) -> 'LocusMap':
        """Evenly spaced loci spread across ``n_chromosomes`` equal chromosomes."""
        if n_loci < 1 or n_chromosomes < 1:
            raise ConfigurationError("n_loci and n_chromosomes must be >= 1")
        per_chrom = np.full(n_chromosomes, n_loci // n_chromosomes)
        per_chrom[: n_loci % n_chromosomes] += 1
        chroms, positions = [], []
        for c, count in enumerate(per_chrom, start=1):
            if count == 0:
                continue
            spacing = chromosome_length // (count + 1)
            chroms.extend([c] * count)
            positions.extend(spacing * np.arange(1, count + 1))
        ids = [f"snp{i + 1}" for i in range(n_loci)]
        return cls.build(ids, np.asarray(chroms, dtype=np.int64), positions)

    @property
    def n_loci(self) -> int:
        return len(self.locus_ids)

    @property
    def chromosome_starts(self) -> np.ndarray:
        """(n_loci,) bool, True at the first locus of each chromosome."""
        starts = np.ones(self.n_loci, dtype=bool)
        starts[1:] = self.chromosomes[1:] != self.chromosomes[:-1]
        return starts

    def index_of(self, locus_ids) -> np.ndarray:
        """Map locus IDs to their row index in this (sorted) map."""
        lookup = {lid: i for i, lid in enumerate(self.locus_ids.tolist())}
        missing = [lid for lid in locus_ids if lid not in lookup]
        if missing:
            raise ConfigurationError(f"unknown locus IDs: {missing[:5]}")
        return np.array([lookup[lid] for lid in locus_ids], dtype=np.int64)

    def recombination_probabilities(
        self,
        cm_per_mb: float = DEFAULT_CM_PER_MB,
    ) -> np.ndarray:
        """Per-locus crossover probability from the preceding locus.

        Haldane map function r = ½(1 − e^(−2d)), d in Morgans, applied to
        the distance between adjacent loci. Chromosome starts get 0.5,
        which makes the starting haplotype of each chromosome a fair coin.

        Args:
            cm_per_mb: Map length per megabase.

        Returns:
            (n_loci,) float64 probabilities in [0, 0.5].
        """
        d_bp = np.zeros(self.n_loci, dtype=np.float64)
        d_bp[1:] = np.diff(self.positions).astype(np.float64)
        morgans = d_bp * cm_per_mb * 1e-8
        probs = 0.5 * (1.0 - np.exp(-2.0 * morgans))
        probs[self.chromosome_starts] = 0.5
        return probs

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'ID': self.locus_ids,
            'Chromosome': self.chromosomes,
            'Position': self.positions,
        })


def validate_probabilities(probs, n: int, name: str) -> Optional[np.ndarray]:
    """Coerce a per-locus probability vector, or return None if absent."""
    if probs is None:
        return None
    arr = np.asarray(probs, dtype=np.float64)
    if arr.ndim == 0:
        arr = np.full(n, float(arr))
    if arr.shape != (n,):
        raise ConfigurationError(f"{name} must have length {n}, got {arr.shape}")
    if np.any((arr < 0.0) | (arr > 1.0)) or np.any(~np.isfinite(arr)):
        raise ConfigurationError(f"{name} values must lie in [0, 1]")
    return arr
