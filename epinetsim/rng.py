"""Seeded RNG factory for reproducible simulations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between the streams of each concern
  - Bit-exact replay with the same master seed
  - Changing how much one concern draws doesn't shift the others

References:
  - NumPy docs: numpy.random.SeedSequence
"""

from __future__ import annotations

from typing import Dict, Optional

import numpy as np


# One stream per stochastic concern, in spawn order. Append only: inserting
# a name would reshuffle every stream after it.
STREAM_NAMES = (
    'genotypes',
    'effects',
    'network',
    'environment',
    'optimizer',
    'selection',
    'recombination',
    'mutation',
    'sex',
)


def create_rng_hierarchy(master_seed: Optional[int] = None) -> Dict[str, np.random.Generator]:
    """Create independent RNG streams for each stochastic concern.

    Uses SeedSequence spawning to guarantee statistical independence
    between streams (no overlap in 2^128 period PCG64).

    Streams created (see STREAM_NAMES):
      - 'genotypes':     founder genotype draws
      - 'effects':       additive coefficient draws
      - 'network':       network topology and raw epistatic tensors
      - 'environment':   environmental noise
      - 'optimizer':     covariance-minimising search
      - 'selection':     mate choice and litter sizes
      - 'recombination': crossover positions
      - 'mutation':      point mutations
      - 'sex':           sex assignment

    Args:
        master_seed: Master RNG seed (non-negative integer). None draws
            fresh OS entropy.

    Returns:
        Dictionary mapping stream names to numpy Generator instances.

    Example:
        >>> rngs = create_rng_hierarchy(42)
        >>> rngs['selection'].random()  # reproducible
    """
    if master_seed is not None and master_seed < 0:
        raise ValueError(f"master_seed must be non-negative, got {master_seed}")
    ss = np.random.SeedSequence(master_seed)
    child_seeds = ss.spawn(len(STREAM_NAMES))
    return {
        name: np.random.Generator(np.random.PCG64(seed))
        for name, seed in zip(STREAM_NAMES, child_seeds)
    }


def get_stream(
    rngs: Dict[str, np.random.Generator],
    name: str,
) -> np.random.Generator:
    """Get the RNG stream for a named concern.

    Raises:
        KeyError: If the hierarchy has no stream of that name.
    """
    if name not in rngs:
        raise KeyError(
            f"No RNG stream '{name}'. Available streams: {sorted(rngs)}"
        )
    return rngs[name]
