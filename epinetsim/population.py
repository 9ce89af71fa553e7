"""The Population aggregate.

A Population owns everything one simulated herd needs: the locus map, the
QTL, the phased genotypes, per-individual IDs / sexes / environmental
draws, the fitted additive and epistatic effects, its RNG streams, and,
after a run, the pedigree and allele-frequency history.

Every operation that changes anything returns a new, deep-copied
Population and leaves the receiver untouched:

    pop = Population.create(pop_size=200, qtl=20, broad_h2=0.9,
                            narrow_h2=0.6, trait_var=40, seed=1)
    pop = pop.attach_additive()
    pop = pop.attach_epinet(k=2)
    result = pop.run(generations=10)

Construction vs. derivation:
  create()       draws founders, picks QTL, optimises the environment
  derive_with()  overrides some construction parameters of an existing
                 population; genotypes are only redrawn when a
                 genotype-defining parameter actually changes
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from epinetsim.config import OptimizerSection, RunSection, SimulationConfig
from epinetsim.ebv import BreedingValueEstimator, GBLUPEstimator
from epinetsim.effects import (
    AdditiveEffects,
    EpistaticEffects,
    check_heritabilities,
    environmental_variance,
    fit_additive,
    fit_epistatic,
    get_sampler,
    optimize_environmental,
    scale_additive,
)
from epinetsim.errors import ConfigurationError
from epinetsim.genetics import (
    GenotypeStore,
    check_template,
    estimate_allele_frequencies,
    generate_genotypes,
)
from epinetsim.network import build_random, build_scale_free, from_incidence_matrix
from epinetsim.phenotype import PhenotypeComponents, compute_components
from epinetsim.reproduction import assign_sexes
from epinetsim.rng import create_rng_hierarchy
from epinetsim.types import LocusMap, Sex, validate_probabilities

if TYPE_CHECKING:
    from epinetsim.model import SimulationResult

logger = logging.getLogger(__name__)


DEFAULT_POP_SIZE = 1000

# derive_with() keys grouped by what they invalidate
_GENOTYPE_KEYS = frozenset({'pop_size', 'allele_frequencies', 'genotypes', 'literal'})
_SCALING_KEYS = frozenset({'broad_h2', 'narrow_h2', 'trait_var'})
_DERIVABLE_KEYS = _GENOTYPE_KEYS | _SCALING_KEYS | {'qtl', 'h2est', 'optimizer', 'seed'}


# ═══════════════════════════════════════════════════════════════════════
# CONSTRUCTION HELPERS
# ═══════════════════════════════════════════════════════════════════════


def _check_h2est(h2est: Optional[float]) -> None:
    if h2est is not None and not 0.0 < h2est <= 1.0:
        raise ConfigurationError(f"h2est must be in (0, 1], got {h2est}")


def _founder_genotypes(
    pop_size: Optional[int],
    n_loci: int,
    allele_frequencies,
    genotypes,
    literal: bool,
    rng: np.random.Generator,
) -> np.ndarray:
    """Phased founder matrix from a literal template, template frequencies,
    explicit frequencies, or uniform random frequencies (in that order)."""
    if genotypes is not None:
        if allele_frequencies is not None:
            raise ConfigurationError("give either genotypes or allele_frequencies, not both")
        template = check_template(genotypes, n_loci)
        if literal:
            if pop_size is not None and pop_size != template.shape[0]:
                raise ConfigurationError(
                    f"literal genotypes have {template.shape[0]} rows but pop_size is {pop_size}"
                )
            if template.shape[0] < 2:
                raise ConfigurationError("a population needs at least 2 individuals")
            return template.copy()
        q = estimate_allele_frequencies(template)
    elif allele_frequencies is not None:
        q = validate_probabilities(allele_frequencies, n_loci, 'allele_frequencies')
    else:
        q = rng.uniform(0.0, 1.0, size=n_loci)

    n = DEFAULT_POP_SIZE if pop_size is None else int(pop_size)
    if n < 2:
        raise ConfigurationError(f"pop_size must be >= 2, got {n}")
    return generate_genotypes(n, q, rng)


def _resolve_qtl(
    qtl: Union[int, Sequence[str]],
    locus_map: LocusMap,
    rng: np.random.Generator,
) -> np.ndarray:
    """Sorted locus indices of the QTL, from a count or a list of locus IDs."""
    if isinstance(qtl, (int, np.integer)):
        count = int(qtl)
        if not 1 <= count <= locus_map.n_loci:
            raise ConfigurationError(
                f"QTL count must be in [1, {locus_map.n_loci}], got {count}"
            )
        return np.sort(rng.choice(locus_map.n_loci, size=count, replace=False)).astype(np.int64)
    ids = list(qtl)
    if not ids:
        raise ConfigurationError("QTL list is empty")
    if len(set(ids)) != len(ids):
        raise ConfigurationError("QTL IDs must be unique")
    return np.sort(locus_map.index_of(ids))


# ═══════════════════════════════════════════════════════════════════════
# POPULATION
# ═══════════════════════════════════════════════════════════════════════


@dataclass(eq=False)
class Population:
    """Population state. Build with ``create`` / ``from_config``, not directly.

    Individual arrays (``ids``, ``sexes``, ``birth_generation``,
    ``environmental``) are parallel to the genotype rows.
    """
    locus_map: LocusMap
    qtl_indices: np.ndarray
    genotypes: GenotypeStore
    ids: np.ndarray
    sexes: np.ndarray
    birth_generation: np.ndarray
    environmental: np.ndarray
    broad_h2: float
    narrow_h2: float
    trait_var: float
    h2est: Optional[float] = None
    additive: Optional[AdditiveEffects] = None
    epistatic: Optional[EpistaticEffects] = None
    optimizer: OptimizerSection = field(default_factory=OptimizerSection)
    rngs: Dict[str, np.random.Generator] = field(default_factory=create_rng_hierarchy)
    seed: Optional[int] = None
    generation: int = 1
    pedigree_table: Optional[pd.DataFrame] = None
    history: Optional[np.ndarray] = None

    # ── construction ─────────────────────────────────────────────────

    @classmethod
    def create(
        cls,
        pop_size: Optional[int] = None,
        locus_map: Optional[LocusMap] = None,
        n_loci: int = 1000,
        n_chromosomes: int = 1,
        allele_frequencies=None,
        genotypes=None,
        literal: bool = True,
        qtl: Union[int, Sequence[str]] = 100,
        broad_h2: float = 0.5,
        narrow_h2: float = 0.5,
        trait_var: float = 1.0,
        h2est: Optional[float] = None,
        seed: Optional[int] = None,
        optimizer: Optional[OptimizerSection] = None,
    ) -> 'Population':
        """Draw a founder population.

        Args:
            pop_size: Number of individuals. Defaults to the row count of
                literal ``genotypes``, else 1000.
            locus_map: Ordered locus map; synthesised from ``n_loci`` and
                ``n_chromosomes`` when omitted.
            allele_frequencies: Per-locus allele-1 frequency (or a scalar).
                Uniform random when neither this nor ``genotypes`` is given.
            genotypes: (n, 2 × n_loci) phased 0/1 template.
            literal: Use ``genotypes`` as the founders (True) or only to
                estimate allele frequencies for a fresh draw (False).
            qtl: Number of QTL (chosen at random) or list of locus IDs.
            broad_h2, narrow_h2, trait_var: Trait targets, h² ≤ H².
            h2est: Heritability handed to the EBV estimator; defaults to
                ``narrow_h2``.
            seed: Master seed of the RNG hierarchy.
            optimizer: Budget of the founder environmental search.

        Raises:
            ConfigurationError: inconsistent targets, sizes or QTL.
        """
        check_heritabilities(broad_h2, narrow_h2, trait_var)
        _check_h2est(h2est)
        if locus_map is None:
            locus_map = LocusMap.simulated(n_loci, n_chromosomes)
        rngs = create_rng_hierarchy(seed)

        phased = _founder_genotypes(
            pop_size, locus_map.n_loci, allele_frequencies, genotypes, literal,
            rngs['genotypes'],
        )
        qtl_indices = _resolve_qtl(qtl, locus_map, rngs['genotypes'])
        n = phased.shape[0]
        pop = cls(
            locus_map=locus_map,
            qtl_indices=qtl_indices,
            genotypes=GenotypeStore(phased),
            ids=np.arange(1, n + 1, dtype=np.int64),
            sexes=assign_sexes(n, rngs['sex']),
            birth_generation=np.ones(n, dtype=np.int64),
            environmental=np.zeros(n, dtype=np.float64),
            broad_h2=float(broad_h2),
            narrow_h2=float(narrow_h2),
            trait_var=float(trait_var),
            h2est=h2est,
            optimizer=optimizer or OptimizerSection(),
            rngs=rngs,
            seed=seed,
        )
        pop._optimize_environment()
        logger.info(
            "Created population: %d individuals, %d loci, %d QTL (H2=%.3f, h2=%.3f, V=%.3f)",
            n, locus_map.n_loci, len(qtl_indices), broad_h2, narrow_h2, trait_var,
        )
        return pop

    @classmethod
    def from_config(cls, config: SimulationConfig) -> 'Population':
        """Founders plus additive effects (and the network, if enabled) from a config."""
        pc = config.population
        if pc.map_file is not None:
            locus_map = LocusMap.from_csv(pc.map_file)
        else:
            locus_map = LocusMap.simulated(pc.n_loci, pc.n_chromosomes)
        genotypes = np.load(pc.genotype_file) if pc.genotype_file is not None else None
        pop = cls.create(
            pop_size=pc.pop_size,
            locus_map=locus_map,
            allele_frequencies=pc.allele_frequencies,
            genotypes=genotypes,
            literal=pc.literal,
            qtl=pc.qtl_ids if pc.qtl_ids is not None else pc.n_qtl,
            broad_h2=pc.broad_h2,
            narrow_h2=pc.narrow_h2,
            trait_var=pc.trait_var,
            h2est=pc.h2est,
            seed=config.simulation.seed,
            optimizer=config.optimizer,
        )
        pop = pop.attach_additive(distrib=config.additive.distrib, effects=config.additive.effects)
        net = config.network
        if net.enabled:
            incmat = None
            if net.incmat_file is not None:
                incmat = pd.read_csv(net.incmat_file, header=None).to_numpy()
            pop = pop.attach_epinet(
                scale_free=net.scale_free, additive=net.additive, m=net.m, k=net.k,
                incmat=incmat,
            )
        return pop

    def copy(self) -> 'Population':
        """Deep copy, RNG state included."""
        return copy.deepcopy(self)

    def derive_with(self, **overrides) -> 'Population':
        """New population with some construction parameters overridden.

        - ``pop_size``, ``allele_frequencies``, ``genotypes``, ``literal``:
          founders are redrawn (from the current allele frequencies unless
          new ones are given) and the stored raw effects are refitted.
        - ``qtl``: new QTL; attached effects are dropped.
        - ``broad_h2``, ``narrow_h2``, ``trait_var``: effects are rescaled
          on the existing genotypes.
        - ``h2est``, ``optimizer``, ``seed``: replaced as given.

        Overrides equal to the current value are ignored, so
        ``derive_with()`` with nothing new returns an equivalent copy.

        Raises:
            ConfigurationError: an unknown key or an invalid new value.
        """
        unknown = set(overrides) - _DERIVABLE_KEYS
        if unknown:
            raise ConfigurationError(f"cannot derive with {sorted(unknown)}")
        current = {
            'pop_size': self.size, 'broad_h2': self.broad_h2,
            'narrow_h2': self.narrow_h2, 'trait_var': self.trait_var,
            'h2est': self.h2est, 'seed': self.seed,
        }
        overrides = {
            k: v for k, v in overrides.items()
            if not (k in current and v == current[k])
        }
        new = self.copy()
        if not overrides:
            return new

        if 'seed' in overrides:
            new.seed = overrides['seed']
            new.rngs = create_rng_hierarchy(new.seed)
        if 'optimizer' in overrides:
            new.optimizer = overrides['optimizer']
        if 'h2est' in overrides:
            _check_h2est(overrides['h2est'])
            new.h2est = overrides['h2est']
        for key in _SCALING_KEYS & set(overrides):
            setattr(new, key, float(overrides[key]))
        check_heritabilities(new.broad_h2, new.narrow_h2, new.trait_var)

        if _GENOTYPE_KEYS & set(overrides):
            genotypes = overrides.get('genotypes')
            freqs = overrides.get('allele_frequencies')
            if genotypes is None and freqs is None:
                freqs = self.allele_frequencies
            pop_size = overrides.get('pop_size', None if genotypes is not None else self.size)
            phased = _founder_genotypes(
                pop_size, self.n_loci, freqs, genotypes, overrides.get('literal', True),
                new.rngs['genotypes'],
            )
            new._reset_founders(phased)
        if 'qtl' in overrides:
            new.qtl_indices = _resolve_qtl(overrides['qtl'], new.locus_map, new.rngs['genotypes'])
            new.additive = None
            new.epistatic = None

        if set(overrides) - {'h2est', 'seed'}:
            new._refit()
        return new

    def _reset_founders(self, phased: np.ndarray) -> None:
        n = phased.shape[0]
        self.genotypes = GenotypeStore(phased)
        self.ids = np.arange(1, n + 1, dtype=np.int64)
        self.sexes = assign_sexes(n, self.rngs['sex'])
        self.birth_generation = np.ones(n, dtype=np.int64)
        self.environmental = np.zeros(n, dtype=np.float64)
        self.generation = 1
        self.pedigree_table = None
        self.history = None

    def _refit(self) -> None:
        """Rescale attached effects on the current genotypes, then redo the environment."""
        unphased_qtl = self.unphased_qtl
        if self.additive is not None:
            self.additive = scale_additive(
                unphased_qtl, self.additive.raw, self.narrow_h2, self.trait_var
            )
        if self.epistatic is not None:
            self.epistatic = fit_epistatic(
                unphased_qtl, self.epistatic.network,
                self.broad_h2, self.narrow_h2, self.trait_var,
            )
        self._optimize_environment()

    def _optimize_environment(self) -> None:
        comps = compute_components(
            self.unphased_qtl, self.additive, self.epistatic, np.zeros(self.size)
        )
        self.environmental = optimize_environmental(
            comps.additive, comps.epistatic, self.environmental_variance,
            self.rngs['optimizer'], self.optimizer,
        )

    # ── effect attachment ────────────────────────────────────────────

    def attach_additive(self, distrib=None, effects=None) -> 'Population':
        """New population with additive effects on every QTL.

        Args:
            distrib: Sampler, registry name ('normal', 'uniform',
                'exponential') or plain ``f(n)``; standard normal by default.
            effects: Explicit raw coefficients, one per QTL. Zeros make
                purely epistatic QTL. Scaling to ``narrow_h2`` still applies.
        """
        new = self.copy()
        new.additive = fit_additive(
            new.unphased_qtl, new.narrow_h2, new.trait_var,
            rng=new.rngs['effects'], sampler=get_sampler(distrib), effects=effects,
        )
        new._optimize_environment()
        logger.debug("Attached additive effects (scale %.4g)", new.additive.scale)
        return new

    def attach_epinet(
        self,
        scale_free: bool = False,
        additive=0,
        m: int = 1,
        k=2,
        incmat=None,
    ) -> 'Population':
        """New population with a freshly built epistatic network.

        Args:
            scale_free: Degree-proportional attachment instead of uniform.
            additive: Count of additive-only QTL, or their QTL indices.
            m: Minimum interactions of each order per non-additive QTL.
            k: Interaction order, or a sequence of orders.
            incmat: Explicit 0/1 incidence matrix (QTL × interactions);
                overrides the generated topology.
        """
        new = self.copy()
        rng = new.rngs['network']
        if incmat is not None:
            network = from_incidence_matrix(incmat, rng, n_qtl=new.n_qtl)
        elif scale_free:
            network = build_scale_free(new.n_qtl, rng, additive=additive, m=m, k=k)
        else:
            network = build_random(new.n_qtl, rng, additive=additive, m=m, k=k)
        new.epistatic = fit_epistatic(
            new.unphased_qtl, network, new.broad_h2, new.narrow_h2, new.trait_var
        )
        new._optimize_environment()
        logger.debug(
            "Attached epistatic network: %d interactions, orders %s",
            network.n_interactions, sorted(set(network.orders.tolist())),
        )
        return new

    # ── running ──────────────────────────────────────────────────────

    def run(
        self,
        run: Optional[RunSection] = None,
        pedigree=None,
        estimator: Optional[BreedingValueEstimator] = None,
        **options,
    ) -> 'SimulationResult':
        """Simulate forward from this population (which is left unchanged).

        ``options`` override fields of ``run``, e.g. ``pop.run(generations=10)``.
        """
        from epinetsim.model import run_simulation

        settings = run if run is not None else RunSection()
        if options:
            settings = _replace_run(settings, options)
        return run_simulation(self, settings, pedigree=pedigree, estimator=estimator)

    # ── accessors ────────────────────────────────────────────────────

    @property
    def size(self) -> int:
        return self.genotypes.n_individuals

    def __len__(self) -> int:
        return self.size

    @property
    def n_loci(self) -> int:
        return self.locus_map.n_loci

    @property
    def n_qtl(self) -> int:
        return len(self.qtl_indices)

    @property
    def qtl(self) -> np.ndarray:
        """Locus IDs of the QTL, in map order."""
        return self.locus_map.locus_ids[self.qtl_indices].copy()

    @property
    def environmental_variance(self) -> float:
        return environmental_variance(self.broad_h2, self.trait_var)

    @property
    def ebv_heritability(self) -> float:
        return self.h2est if self.h2est is not None else self.narrow_h2

    @property
    def phased_genotypes(self) -> np.ndarray:
        return self.genotypes.phased.copy()

    @property
    def unphased_genotypes(self) -> np.ndarray:
        return self.genotypes.unphased

    @property
    def unphased_qtl(self) -> np.ndarray:
        return self.genotypes.unphased[:, self.qtl_indices]

    @property
    def allele_frequencies(self) -> np.ndarray:
        return self.genotypes.allele_frequencies

    @property
    def allele_frequency_history(self) -> Optional[np.ndarray]:
        """(n_generations, n_loci) allele frequencies of past runs, or None."""
        return None if self.history is None else self.history.copy()

    @property
    def pedigree(self) -> Optional[pd.DataFrame]:
        return None if self.pedigree_table is None else self.pedigree_table.copy()

    @property
    def incidence_matrix(self) -> Optional[np.ndarray]:
        """QTL × interactions 0/1 matrix, or None without a network."""
        return None if self.epistatic is None else self.epistatic.network.incidence

    def effect_tensor(self, interaction: int) -> np.ndarray:
        """Scaled (3,)*k effect tensor of one interaction."""
        if self.epistatic is None:
            raise ConfigurationError("no epistatic network attached")
        return self.epistatic.scaled_tensor(interaction)

    @property
    def additive_coefficients(self) -> Optional[np.ndarray]:
        return None if self.additive is None else self.additive.coefficients

    @property
    def additive_offset(self) -> float:
        return 0.0 if self.additive is None else self.additive.offset

    @property
    def epistatic_offset(self) -> float:
        return 0.0 if self.epistatic is None else self.epistatic.offset

    def evaluate(
        self,
        phased: np.ndarray,
        environmental: Optional[np.ndarray] = None,
    ) -> PhenotypeComponents:
        """Phenotype components of any phased genotype matrix on this map.

        Environmental values default to zero.
        """
        phased = check_template(phased, self.n_loci)
        store = GenotypeStore(phased)
        if environmental is None:
            environmental = np.zeros(store.n_individuals)
        return compute_components(
            store.unphased[:, self.qtl_indices], self.additive, self.epistatic, environmental
        )

    def components(
        self,
        include_ebv: bool = False,
        estimator: Optional[BreedingValueEstimator] = None,
    ) -> pd.DataFrame:
        """Additive, Epistatic, Environmental, Phenotype, TGV, EBV per individual.

        EBV is NaN unless ``include_ebv`` is set.
        """
        comps = compute_components(
            self.unphased_qtl, self.additive, self.epistatic, self.environmental
        )
        if include_ebv:
            comps.ebv = (estimator or GBLUPEstimator()).estimate(
                self.unphased_genotypes, comps.phenotype, self.ebv_heritability
            )
        return comps.to_frame(self.ids)

    def _rows_of(self, ids) -> np.ndarray:
        lookup = {int(i): r for r, i in enumerate(self.ids)}
        ids = np.atleast_1d(np.asarray(ids, dtype=np.int64))
        missing = [int(i) for i in ids if int(i) not in lookup]
        if missing:
            raise KeyError(f"individuals not in population: {missing[:5]}")
        return np.array([lookup[int(i)] for i in ids], dtype=np.int64)

    def haplotypes(self, individual_id: int) -> Tuple[np.ndarray, np.ndarray]:
        """(sire-origin, dam-origin) haplotypes of one individual."""
        return self.genotypes.haplotypes(int(self._rows_of(individual_id)[0]))

    def sex_of(self, individual_id: int) -> Sex:
        return Sex(int(self.sexes[self._rows_of(individual_id)[0]]))

    def subset(self, ids) -> 'Population':
        """New population holding only the given individuals, in the given order.

        Effects, offsets, pedigree and history are kept as they are.
        """
        rows = self._rows_of(ids)
        if len(np.unique(rows)) != len(rows):
            raise ConfigurationError("subset IDs must be unique")
        new = self.copy()
        new.genotypes = new.genotypes.take(rows)
        new.ids = new.ids[rows]
        new.sexes = new.sexes[rows]
        new.birth_generation = new.birth_generation[rows]
        new.environmental = new.environmental[rows]
        return new


def _replace_run(settings: RunSection, options: Dict) -> RunSection:
    valid = {f.name for f in dataclasses.fields(RunSection)}
    unknown = set(options) - valid
    if unknown:
        raise ConfigurationError(f"unknown run options: {sorted(unknown)}")
    return dataclasses.replace(settings, **options)
