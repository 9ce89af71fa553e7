"""Optional per-generation genotype dump.

Appends the phased genotype matrix of every generation to one file as a
sequence of ``.npy`` frames: a 3-element int64 header
(generation, n_rows, n_cols) followed by the int8 matrix. The file is a
side channel: a failed open or write is reported once and the run goes
on, unless the dump was marked required.

Usage:
    with GenotypeDumpWriter("geno.npy", required=False) as dump:
        dump.write(1, phased)
    frames = load_genotype_dump("geno.npy")   # {1: phased, ...}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Union

import numpy as np

from epinetsim.types import GENOTYPE_DTYPE

logger = logging.getLogger(__name__)


class GenotypeDumpWriter:
    """Context manager owning the dump file for the length of a run.

    When ``path`` is None every method is a no-op.
    """

    def __init__(self, path: Optional[Union[str, Path]], required: bool = False):
        self.path = Path(path) if path is not None else None
        self.required = required
        self.frames_written = 0
        self.failed = False
        self._fh: Optional[BinaryIO] = None

    @property
    def active(self) -> bool:
        return self.path is not None and not self.failed

    def __enter__(self) -> 'GenotypeDumpWriter':
        if self.path is None:
            return self
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, 'wb')
        except OSError as exc:
            self._fail(exc)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _fail(self, exc: OSError) -> None:
        if self.required:
            self.close()
            raise exc
        self.failed = True
        self.close()
        logger.warning("Genotype dump to %s disabled: %s", self.path, exc)

    def write(self, generation: int, phased: np.ndarray) -> None:
        if not self.active or self._fh is None:
            return
        try:
            header = np.array([generation, phased.shape[0], phased.shape[1]], dtype=np.int64)
            np.save(self._fh, header, allow_pickle=False)
            np.save(self._fh, np.ascontiguousarray(phased, dtype=GENOTYPE_DTYPE), allow_pickle=False)
            self._fh.flush()
            self.frames_written += 1
        except OSError as exc:
            self._fail(exc)

    def close(self) -> None:
        if self._fh is not None:
            fh, self._fh = self._fh, None
            fh.close()


def load_genotype_dump(path: Union[str, Path]) -> Dict[int, np.ndarray]:
    """Read every frame of a genotype dump.

    Returns:
        {generation: (n, 2L) int8 phased matrix}, in file order.

    Raises:
        OSError: the file cannot be opened.
        ValueError: a frame is truncated or its header disagrees with its matrix.
    """
    frames: Dict[int, np.ndarray] = {}
    path = Path(path)
    size = path.stat().st_size
    with open(path, 'rb') as fh:
        while fh.tell() < size:
            header = np.load(fh, allow_pickle=False)
            matrix = np.load(fh, allow_pickle=False)
            generation, n_rows, n_cols = (int(x) for x in header)
            if matrix.shape != (n_rows, n_cols):
                raise ValueError(
                    f"dump frame for generation {generation} has shape {matrix.shape}, "
                    f"header says {(n_rows, n_cols)}"
                )
            frames[generation] = matrix
    return frames
