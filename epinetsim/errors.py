"""Exception types raised by epinetsim.

ConfigurationError covers every inconsistent or infeasible parameter
combination (heritabilities, network shape, incidence matrices, pedigree
tables). InsufficientPopulationError is raised when a selection pool is
too small to produce the next generation. Genotype dump failures surface
as the builtin OSError.
"""


class ConfigurationError(ValueError):
    """Inconsistent or infeasible simulation parameters."""


class InsufficientPopulationError(RuntimeError):
    """Selection pool cannot meet the offspring demand of a generation."""
