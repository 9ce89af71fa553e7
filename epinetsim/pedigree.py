"""Pedigree tables: validation, generation inference, and the run log.

A pedigree table has columns (ID, Sire, Dam[, Generation]). Founders have
no recorded parents (0 or missing). A non-founder's generation is one more
than the later of its parents' generations; founders are generation 0.
"""

from __future__ import annotations

from typing import Dict, List

import numpy as np
import pandas as pd

from epinetsim.errors import ConfigurationError
from epinetsim.types import (
    PED_DAM,
    PED_GENERATION,
    PED_ID,
    PED_SIRE,
    PEDIGREE_COLUMNS,
    UNKNOWN_PARENT,
)


def normalize_pedigree(table: pd.DataFrame) -> pd.DataFrame:
    """Coerce a caller's pedigree to integer ID / Sire / Dam columns.

    The first three columns are taken as ID, sire and dam whatever their
    names. Missing parents become 0.

    Raises:
        ConfigurationError: too few columns, duplicate or zero IDs, or an
            individual with exactly one recorded parent.
    """
    if table.shape[1] < 3:
        raise ConfigurationError(
            f"pedigree needs at least 3 columns (ID, sire, dam), got {table.shape[1]}"
        )
    try:
        ped = pd.DataFrame({
            PED_ID: table.iloc[:, 0].astype(np.int64).to_numpy(),
            PED_SIRE: table.iloc[:, 1].fillna(UNKNOWN_PARENT).astype(np.int64).to_numpy(),
            PED_DAM: table.iloc[:, 2].fillna(UNKNOWN_PARENT).astype(np.int64).to_numpy(),
        })
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"pedigree IDs must be integers: {exc}") from exc

    if (ped[PED_ID] == UNKNOWN_PARENT).any():
        raise ConfigurationError(f"individual ID {UNKNOWN_PARENT} is reserved for unknown parents")
    dup = ped[PED_ID][ped[PED_ID].duplicated()]
    if len(dup):
        raise ConfigurationError(f"duplicate pedigree IDs: {dup.tolist()[:5]}")
    half_known = (ped[PED_SIRE] == UNKNOWN_PARENT) != (ped[PED_DAM] == UNKNOWN_PARENT)
    if half_known.any():
        raise ConfigurationError(
            f"individuals with only one recorded parent: {ped[PED_ID][half_known].tolist()[:5]}"
        )
    return ped


def infer_generations(ped: pd.DataFrame) -> np.ndarray:
    """Topological generation of every row of a normalised pedigree.

    Raises:
        ConfigurationError: a parent ID that is not in the table, or a
            cycle of ancestry.
    """
    ids = ped[PED_ID].to_numpy()
    row_of: Dict[int, int] = {int(i): r for r, i in enumerate(ids)}
    sires = ped[PED_SIRE].to_numpy()
    dams = ped[PED_DAM].to_numpy()

    unknown = sorted(
        {int(p) for p in np.concatenate([sires, dams]) if p != UNKNOWN_PARENT and int(p) not in row_of}
    )
    if unknown:
        raise ConfigurationError(f"pedigree references unknown parent IDs: {unknown[:5]}")

    n = len(ids)
    generation = np.full(n, -1, dtype=np.int64)
    children: List[List[int]] = [[] for _ in range(n)]
    pending = np.zeros(n, dtype=np.int64)
    ready: List[int] = []
    for r in range(n):
        if sires[r] == UNKNOWN_PARENT:
            generation[r] = 0
            ready.append(r)
            continue
        for parent in {int(sires[r]), int(dams[r])}:
            children[row_of[parent]].append(r)
            pending[r] += 1

    # Kahn's algorithm: a child is resolved once all its parents are
    while ready:
        r = ready.pop()
        for c in children[r]:
            generation[c] = max(generation[c], generation[r] + 1)
            pending[c] -= 1
            if pending[c] == 0:
                ready.append(c)

    cyclic = ids[pending > 0]
    if len(cyclic):
        raise ConfigurationError(f"pedigree contains an ancestry cycle involving IDs {cyclic.tolist()[:5]}")
    return generation


def sort_pedigree(table: pd.DataFrame) -> pd.DataFrame:
    """Normalise, infer generations, and order rows by (Generation, input order)."""
    ped = normalize_pedigree(table)
    ped[PED_GENERATION] = infer_generations(ped)
    return ped.sort_values(PED_GENERATION, kind='mergesort').reset_index(drop=True)


class PedigreeLog:
    """Append-only pedigree record for a simulation run."""

    def __init__(self):
        self._chunks: List[pd.DataFrame] = []

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> 'PedigreeLog':
        """Continue an existing pedigree (ID, Sire, Dam, Generation)."""
        log = cls()
        log._chunks.append(frame.loc[:, list(PEDIGREE_COLUMNS)].astype(np.int64).reset_index(drop=True))
        return log

    @property
    def max_id(self) -> int:
        return max((int(c[PED_ID].max()) for c in self._chunks if len(c)), default=UNKNOWN_PARENT)

    def record(self, ids, sires, dams, generation: int) -> None:
        self._chunks.append(pd.DataFrame({
            PED_ID: np.asarray(ids, dtype=np.int64),
            PED_SIRE: np.asarray(sires, dtype=np.int64),
            PED_DAM: np.asarray(dams, dtype=np.int64),
            PED_GENERATION: np.full(len(ids), generation, dtype=np.int64),
        }))

    def to_frame(self) -> pd.DataFrame:
        if not self._chunks:
            return pd.DataFrame({c: pd.Series(dtype=np.int64) for c in PEDIGREE_COLUMNS})
        return pd.concat(self._chunks, ignore_index=True)

    def __len__(self) -> int:
        return sum(len(c) for c in self._chunks)
