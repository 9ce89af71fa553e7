"""Configuration system for epinetsim.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys:
  simulation  seed, logging, output directory
  population  size, locus map, QTL, heritabilities, trait variance
  additive    additive-effect distribution or explicit effects
  network     epistatic network shape (random / scale-free / incidence file)
  run         generation count, selection, truncation, lifespans, litters,
              mutation, recombination, genotype dump, pedigree replay
  optimizer   budget of the founder environmental search
"""

from __future__ import annotations

import dataclasses
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from epinetsim.errors import ConfigurationError
from epinetsim.types import Fitness, Selection


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Top-level control."""
    seed: int = 42
    log_level: str = 'INFO'
    output_dir: str = 'results/'


@dataclass
class PopulationSection:
    """Founder population and trait targets.

    Either ``map_file`` (CSV: ID, chromosome, position) or
    ``n_loci``/``n_chromosomes`` (evenly spaced synthetic map) defines the
    loci. ``qtl_ids`` overrides ``n_qtl`` when given.
    """
    pop_size: int = 1000
    map_file: Optional[str] = None
    n_loci: int = 1000
    n_chromosomes: int = 1
    allele_frequencies: Optional[List[float]] = None
    genotype_file: Optional[str] = None   # .npy phased matrix
    literal: bool = True
    n_qtl: int = 100
    qtl_ids: Optional[List[str]] = None
    broad_h2: float = 0.5
    narrow_h2: float = 0.5
    trait_var: float = 1.0
    h2est: Optional[float] = None


@dataclass
class AdditiveSection:
    """Additive effects: a registry distribution name or explicit raw effects."""
    distrib: str = 'normal'
    effects: Optional[List[float]] = None


@dataclass
class NetworkSection:
    """Epistatic network; skipped entirely when ``enabled`` is False."""
    enabled: bool = False
    scale_free: bool = False
    additive: Union[int, List[int]] = 0
    m: int = 1
    k: Union[int, List[int]] = 2
    incmat_file: Optional[str] = None     # CSV, QTL × interactions, 0/1


@dataclass
class RunSection:
    """Generation loop."""
    generations: int = 2
    selection: str = 'ranking'        # 'random' | 'ranking'
    fitness: str = 'phenotype'        # 'phenotype' | 'TGV' | 'EBV'
    trunc_sire: float = 1.0
    trunc_dam: float = 1.0
    burn_in: int = 0
    rounds_sire: int = 1
    rounds_dam: int = 1
    litter_dist: List[float] = field(default_factory=lambda: [0.0, 0.0, 1.0])
    breed_sire: int = 10
    mutation: float = 1e-9
    recombination: Optional[List[float]] = None   # per-locus; None = Haldane from map
    cm_per_mb: float = 1.0
    all_geno_file: Optional[str] = None
    dump_required: bool = False
    pedigree_file: Optional[str] = None           # CSV: ID, sire, dam


@dataclass
class OptimizerSection:
    """Founder environmental search (bounded genetic algorithm)."""
    candidates: int = 50
    iterations: int = 100
    mutation_rate: float = 0.05
    tournament: int = 3
    elite: int = 1


@dataclass
class SimulationConfig:
    """Complete configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    population: PopulationSection = field(default_factory=PopulationSection)
    additive: AdditiveSection = field(default_factory=AdditiveSection)
    network: NetworkSection = field(default_factory=NetworkSection)
    run: RunSection = field(default_factory=RunSection)
    optimizer: OptimizerSection = field(default_factory=OptimizerSection)


_SECTION_MAP = {
    'simulation': SimulationSection,
    'population': PopulationSection,
    'additive': AdditiveSection,
    'network': NetworkSection,
    'run': RunSection,
    'optimizer': OptimizerSection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


def config_to_dict(config: SimulationConfig) -> Dict:
    """Plain nested dict (YAML-serialisable) of a configuration."""
    return dataclasses.asdict(config)


def _warn_missing(path: Optional[str], label: str) -> None:
    if path is not None and not os.path.exists(path):
        warnings.warn(
            f"{label} '{path}' does not exist. Loading will fail at runtime.",
            UserWarning,
            stacklevel=3,
        )


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Referenced input files that do not exist yet only produce a warning.
    """
    sim = config.simulation
    if sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")

    pop = config.population
    if pop.pop_size < 2:
        raise ConfigurationError(f"population.pop_size must be >= 2, got {pop.pop_size}")
    if pop.map_file is None and (pop.n_loci < 1 or pop.n_chromosomes < 1):
        raise ConfigurationError("population.n_loci and n_chromosomes must be >= 1")
    if pop.qtl_ids is None and pop.n_qtl < 1:
        raise ConfigurationError(f"population.n_qtl must be >= 1, got {pop.n_qtl}")
    if pop.map_file is None and pop.qtl_ids is None and pop.n_qtl > pop.n_loci:
        raise ConfigurationError(
            f"population.n_qtl ({pop.n_qtl}) exceeds n_loci ({pop.n_loci})"
        )
    if pop.trait_var <= 0:
        raise ConfigurationError("population.trait_var must be positive")
    for name in ('broad_h2', 'narrow_h2'):
        value = getattr(pop, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"population.{name} must be in [0, 1], got {value}")
    if pop.broad_h2 < pop.narrow_h2:
        raise ConfigurationError(
            f"population.broad_h2 ({pop.broad_h2}) cannot be less than "
            f"narrow_h2 ({pop.narrow_h2})"
        )
    if pop.h2est is not None and not 0.0 < pop.h2est <= 1.0:
        raise ConfigurationError(f"population.h2est must be in (0, 1], got {pop.h2est}")
    _warn_missing(pop.map_file, 'population.map_file')
    _warn_missing(pop.genotype_file, 'population.genotype_file')

    net = config.network
    if net.enabled:
        if net.m < 1:
            raise ConfigurationError(f"network.m must be >= 1, got {net.m}")
        orders = [net.k] if isinstance(net.k, int) else list(net.k)
        if not orders or min(orders) < 2:
            raise ConfigurationError(f"network.k orders must all be >= 2, got {net.k}")
        _warn_missing(net.incmat_file, 'network.incmat_file')

    validate_run(config.run)
    _warn_missing(config.run.pedigree_file, 'run.pedigree_file')

    opt = config.optimizer
    if opt.candidates < 2 or opt.iterations < 0:
        raise ConfigurationError("optimizer.candidates must be >= 2 and iterations >= 0")
    if not 0 <= opt.elite < opt.candidates:
        raise ConfigurationError("optimizer.elite must be in [0, candidates)")
    if not 0.0 <= opt.mutation_rate <= 1.0:
        raise ConfigurationError("optimizer.mutation_rate must be in [0, 1]")


def validate_run(run: RunSection) -> None:
    """Check one run section on its own. Raises ConfigurationError."""
    if run.generations < 1:
        raise ConfigurationError(f"run.generations must be >= 1, got {run.generations}")
    valid_selection = {s.value for s in Selection}
    if run.selection not in valid_selection:
        raise ConfigurationError(
            f"run.selection must be one of {valid_selection}, got '{run.selection}'"
        )
    valid_fitness = {f.value for f in Fitness}
    if run.fitness not in valid_fitness:
        raise ConfigurationError(
            f"run.fitness must be one of {valid_fitness}, got '{run.fitness}'"
        )
    for name in ('trunc_sire', 'trunc_dam'):
        value = getattr(run, name)
        if not 0.0 < value <= 1.0:
            raise ConfigurationError(f"run.{name} must be in (0, 1], got {value}")
    if run.burn_in < 0:
        raise ConfigurationError("run.burn_in must be >= 0")
    if run.rounds_sire < 1 or run.rounds_dam < 1:
        raise ConfigurationError("run.rounds_sire and run.rounds_dam must be >= 1")
    if run.breed_sire < 1:
        raise ConfigurationError(f"run.breed_sire must be >= 1, got {run.breed_sire}")
    if not 0.0 <= run.mutation <= 1.0:
        raise ConfigurationError(f"run.mutation must be in [0, 1], got {run.mutation}")
    if run.cm_per_mb < 0:
        raise ConfigurationError("run.cm_per_mb must be non-negative")
    if (not run.litter_dist or any(p < 0 for p in run.litter_dist)
            or not any(p > 0 for p in run.litter_dist[1:])):
        raise ConfigurationError(
            "run.litter_dist must be non-negative with some weight on a non-empty litter, "
            f"got {run.litter_dist}"
        )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
