"""Effect model: additive coefficients, epistatic scaling, environmental noise.

Targets fixed at population creation:
  V_A = h² × V_P                (narrow-sense heritability)
  V_I = (H² − h²) × V_P         (epistatic share of broad-sense heritability)
  V_E = (1 − H²) × V_P          (environmental residual)

Additive coefficients and all epistatic tensors are each rescaled by one
global factor so the realised population variances hit V_A and V_I
exactly, and offsets centre both components at zero. The founder
generation's environmental draws come from a bounded genetic algorithm
that minimises covariance between the three components while holding the
environmental variance at V_E; later generations draw plain normal noise.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Union, runtime_checkable

import numpy as np

from epinetsim.config import OptimizerSection
from epinetsim.errors import ConfigurationError
from epinetsim.network import EpistaticNetwork
from epinetsim.phenotype import additive_values, epistatic_values


# Raw component variance below which rescaling to a positive target is impossible
_MIN_VARIANCE = 1e-12


# ═══════════════════════════════════════════════════════════════════════
# SAMPLERS
# ═══════════════════════════════════════════════════════════════════════


@runtime_checkable
class Sampler(Protocol):
    """Draws ``n`` raw additive coefficients."""

    def __call__(self, n: int, rng: np.random.Generator) -> np.ndarray:
        ...


@dataclass(frozen=True)
class NormalSampler:
    mean: float = 0.0
    sd: float = 1.0

    def __call__(self, n: int, rng: np.random.Generator) -> np.ndarray:
        return rng.normal(self.mean, self.sd, size=n)


@dataclass(frozen=True)
class UniformSampler:
    low: float = -1.0
    high: float = 1.0

    def __call__(self, n: int, rng: np.random.Generator) -> np.ndarray:
        return rng.uniform(self.low, self.high, size=n)


@dataclass(frozen=True)
class ExponentialSampler:
    scale: float = 1.0

    def __call__(self, n: int, rng: np.random.Generator) -> np.ndarray:
        return rng.exponential(self.scale, size=n)


@dataclass(frozen=True)
class CallableSampler:
    """Adapts a user function ``f(n) -> array`` that manages its own randomness."""
    fn: Callable[[int], np.ndarray]

    def __call__(self, n: int, rng: np.random.Generator) -> np.ndarray:
        return np.asarray(self.fn(n), dtype=np.float64)


SAMPLERS: Dict[str, Callable[[], Sampler]] = {
    'normal': NormalSampler,
    'uniform': UniformSampler,
    'exponential': ExponentialSampler,
}


def _takes_rng(fn) -> bool:
    """True when ``fn`` accepts ``(n, rng)`` positionally."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    required = [
        p for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty
    ]
    return len(required) >= 2 or any(p.kind is p.VAR_POSITIONAL for p in params)


def get_sampler(distrib: Union[str, Sampler, Callable[[int], np.ndarray], None]) -> Sampler:
    """Resolve a sampler from a registry name, a Sampler, or a plain ``f(n)``.

    Callables taking ``(n, rng)`` are used as samplers directly; one-argument
    callables are wrapped in CallableSampler.
    """
    if distrib is None:
        return NormalSampler()
    if isinstance(distrib, str):
        if distrib not in SAMPLERS:
            raise ConfigurationError(
                f"unknown distribution '{distrib}'; choose from {sorted(SAMPLERS)}"
            )
        return SAMPLERS[distrib]()
    if isinstance(distrib, (NormalSampler, UniformSampler, ExponentialSampler, CallableSampler)):
        return distrib
    if callable(distrib):
        return distrib if _takes_rng(distrib) else CallableSampler(distrib)
    raise ConfigurationError(f"cannot build a sampler from {distrib!r}")


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════


def check_heritabilities(broad_h2: float, narrow_h2: float, trait_var: float) -> None:
    """Raise ConfigurationError unless 0 ≤ h² ≤ H² ≤ 1 and V_P > 0."""
    if trait_var <= 0:
        raise ConfigurationError(f"trait variance must be positive, got {trait_var}")
    for name, value in (('broad_h2', broad_h2), ('narrow_h2', narrow_h2)):
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name} must be in [0, 1], got {value}")
    if broad_h2 < narrow_h2:
        raise ConfigurationError(
            f"broad-sense heritability ({broad_h2}) cannot be less than "
            f"narrow-sense heritability ({narrow_h2})"
        )


def _scale_factor(raw_values: np.ndarray, target_var: float, label: str) -> float:
    if target_var == 0.0:
        return 0.0
    var = float(np.var(raw_values))
    if var < _MIN_VARIANCE:
        raise ConfigurationError(
            f"{label} component has no variance in this population; "
            f"cannot reach target variance {target_var}"
        )
    return float(np.sqrt(target_var / var))


# ═══════════════════════════════════════════════════════════════════════
# ADDITIVE EFFECTS
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class AdditiveEffects:
    """Additive coefficients per QTL; zeros mark purely epistatic QTL."""
    raw: np.ndarray            # coefficients before scaling
    scale: float
    offset: float

    @property
    def coefficients(self) -> np.ndarray:
        return self.raw * self.scale


def scale_additive(
    unphased_qtl: np.ndarray,
    raw: np.ndarray,
    narrow_h2: float,
    trait_var: float,
) -> AdditiveEffects:
    """Rescale raw coefficients so Var(additive) = h² × V_P and mean = 0."""
    raw = np.asarray(raw, dtype=np.float64)
    if raw.shape != (unphased_qtl.shape[1],):
        raise ConfigurationError(
            f"need one additive effect per QTL ({unphased_qtl.shape[1]}), got {raw.shape}"
        )
    values = additive_values(unphased_qtl, raw)
    scale = _scale_factor(values, narrow_h2 * trait_var, 'additive')
    offset = -float(np.mean(values * scale))
    return AdditiveEffects(raw=raw.copy(), scale=scale, offset=offset)


def fit_additive(
    unphased_qtl: np.ndarray,
    narrow_h2: float,
    trait_var: float,
    rng: Optional[np.random.Generator] = None,
    sampler: Optional[Sampler] = None,
    effects: Optional[np.ndarray] = None,
) -> AdditiveEffects:
    """Draw (or take) raw additive coefficients and scale them to target.

    Args:
        unphased_qtl: (n, n_qtl) dosages at the QTL.
        narrow_h2: Target narrow-sense heritability.
        trait_var: Target phenotypic variance.
        rng: Random generator for the sampler.
        sampler: Coefficient distribution (default standard normal).
        effects: Explicit raw coefficients; zeros give purely epistatic QTL.
            Scaling is still applied.

    Returns:
        AdditiveEffects with zero-mean, exactly scaled additive values.
    """
    if effects is None:
        if rng is None:
            raise ValueError("rng is required when effects are drawn")
        effects = (sampler or NormalSampler())(unphased_qtl.shape[1], rng)
    return scale_additive(unphased_qtl, effects, narrow_h2, trait_var)


# ═══════════════════════════════════════════════════════════════════════
# EPISTATIC EFFECTS
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class EpistaticEffects:
    """Interaction network (raw tensors) plus its global scale and offset."""
    network: EpistaticNetwork
    scale: float
    offset: float

    def scaled_tensor(self, interaction: int) -> np.ndarray:
        return self.network.effect_tensor(interaction) * self.scale


def fit_epistatic(
    unphased_qtl: np.ndarray,
    network: EpistaticNetwork,
    broad_h2: float,
    narrow_h2: float,
    trait_var: float,
) -> EpistaticEffects:
    """Scale all tensors by one factor so Var(epistatic) = (H² − h²) × V_P.

    Raises:
        ConfigurationError: H² < h², or a positive target with an
            epistatic component that does not vary in this population.
    """
    check_heritabilities(broad_h2, narrow_h2, trait_var)
    if network.n_qtl != unphased_qtl.shape[1]:
        raise ConfigurationError(
            f"network covers {network.n_qtl} QTL, genotypes have {unphased_qtl.shape[1]}"
        )
    target = (broad_h2 - narrow_h2) * trait_var
    if target > 0 and network.n_interactions == 0:
        raise ConfigurationError("epistatic variance requested but the network is empty")
    values = epistatic_values(unphased_qtl, network.members, network.tensors)
    scale = _scale_factor(values, target, 'epistatic')
    offset = -float(np.mean(values * scale))
    return EpistaticEffects(network=network, scale=scale, offset=offset)


# ═══════════════════════════════════════════════════════════════════════
# ENVIRONMENTAL NOISE
# ═══════════════════════════════════════════════════════════════════════


def environmental_variance(broad_h2: float, trait_var: float) -> float:
    return max(0.0, (1.0 - broad_h2) * trait_var)


def draw_environmental(n: int, variance: float, rng: np.random.Generator) -> np.ndarray:
    """Fresh N(0, V_E) noise for individuals born after the founders."""
    if variance <= 0.0:
        return np.zeros(n, dtype=np.float64)
    return rng.normal(0.0, np.sqrt(variance), size=n)


def _normalize_rows(pop: np.ndarray, sd: float) -> np.ndarray:
    """Centre each candidate and rescale it to standard deviation ``sd``."""
    centered = pop - pop.mean(axis=1, keepdims=True)
    row_sd = centered.std(axis=1, keepdims=True)
    row_sd[row_sd == 0.0] = 1.0
    return centered * (sd / row_sd)


def covariance_penalty(
    additive: np.ndarray,
    epistatic: np.ndarray,
    candidates: np.ndarray,
) -> np.ndarray:
    """Sum of squared pairwise covariances among the three components, per candidate."""
    n = additive.shape[0]
    a_c = additive - additive.mean()
    e_c = epistatic - epistatic.mean()
    env_c = candidates - candidates.mean(axis=1, keepdims=True)
    cov_ae = float(a_c @ e_c) / n
    cov_a_env = env_c @ a_c / n
    cov_e_env = env_c @ e_c / n
    return cov_ae ** 2 + cov_a_env ** 2 + cov_e_env ** 2


def optimize_environmental(
    additive: np.ndarray,
    epistatic: np.ndarray,
    variance: float,
    rng: np.random.Generator,
    settings: Optional[OptimizerSection] = None,
) -> np.ndarray:
    """Founder environmental draws with minimal covariance to the genetic components.

    Genetic algorithm over candidate draw vectors: tournament selection,
    uniform crossover, resample mutation and elitism for a fixed number of
    iterations. Every candidate is renormalised to mean 0 and variance
    ``variance`` after each operator. Ties in fitness go to the lowest
    candidate index, so the result depends only on the RNG state.

    Args:
        additive: (n,) additive component.
        epistatic: (n,) epistatic component.
        variance: Target environmental variance V_E.
        rng: Random generator.
        settings: Search budget.

    Returns:
        (n,) float64 environmental draws, mean 0, variance ``variance``.
    """
    s = settings or OptimizerSection()
    n = len(additive)
    if variance <= 0.0:
        return np.zeros(n, dtype=np.float64)
    sd = float(np.sqrt(variance))
    if n < 2:
        return rng.normal(0.0, sd, size=n)
    if s.candidates < 2 or s.iterations < 0 or not 0 <= s.elite < s.candidates:
        raise ConfigurationError(f"invalid optimizer settings: {s}")

    pop = _normalize_rows(rng.normal(0.0, sd, size=(s.candidates, n)), sd)
    fitness = -covariance_penalty(additive, epistatic, pop)
    n_children = s.candidates - s.elite
    tournament = max(1, s.tournament)

    for _ in range(s.iterations):
        elite_idx = np.argsort(-fitness, kind='stable')[: s.elite]

        entrants = rng.integers(0, s.candidates, size=(2 * n_children, tournament))
        winners = entrants[np.arange(2 * n_children), np.argmax(fitness[entrants], axis=1)]
        mothers = pop[winners[:n_children]]
        fathers = pop[winners[n_children:]]

        children = np.where(rng.random((n_children, n)) < 0.5, mothers, fathers)
        mutate = rng.random((n_children, n)) < s.mutation_rate
        children = np.where(mutate, rng.normal(0.0, sd, size=(n_children, n)), children)
        children = _normalize_rows(children, sd)

        pop = np.vstack([pop[elite_idx], children])
        fitness = -covariance_penalty(additive, epistatic, pop)

    return pop[int(np.argmax(fitness))].copy()
