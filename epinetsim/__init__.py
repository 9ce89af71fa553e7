"""epinetsim: forward-time simulation of additive and epistatic quantitative traits.

A generation-by-generation breeding simulator built around:
  - Phased diploid genotypes on an ordered locus map
  - Additive QTL effects scaled to a target narrow-sense heritability
  - An arbitrary-order epistatic interaction network (random or scale-free)
    scaled to the broad-sense heritability gap
  - Environmental noise decorrelated from the genetic components
  - Truncation, random / linear-ranking mate selection, recombination,
    mutation, litter sizes, and pedigree replay
"""

__version__ = "0.1.0"

from epinetsim.errors import ConfigurationError, InsufficientPopulationError
from epinetsim.population import Population
from epinetsim.model import SimulationResult, run_simulation

__all__ = [
    "ConfigurationError",
    "InsufficientPopulationError",
    "Population",
    "SimulationResult",
    "run_simulation",
]
