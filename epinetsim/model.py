"""Breeding engine: the generation loop and pedigree replay.

Per generation (offspring born in generation g):
  1. SelectParents: the candidate pool is the current population plus the
     breeder reserve (earlier parents whose breeding lifespan,
     ``rounds_sire`` / ``rounds_dam`` generations after birth, has not run
     out). Each sex is truncated by fitness and mates are chosen in random
     or linear-ranking mode. Burn-in generations skip truncation and
     always choose at random.
  2. Recombine: one litter per pair, one gamete from each parent per
     offspring.
  3. Mutate: independent per-allele flips.
  4. Advance: offspring replace the population. A shortfall is filled
     with retiring breeders, youngest first, then with any other member of
     the previous population, youngest first (ties by lower ID). The
     population size never changes.

Generation 1 is the supplied population, unmodified; a run of G
generations produces G − 1 new ones.

Pedigree-dropper mode replays a supplied pedigree instead: founders
(generation 0) take the genotypes of the first rows of the population and
every later generation is bred from its recorded parents.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from epinetsim.config import RunSection, validate_run
from epinetsim.dump import GenotypeDumpWriter
from epinetsim.ebv import BreedingValueEstimator, GBLUPEstimator
from epinetsim.effects import draw_environmental
from epinetsim.errors import ConfigurationError
from epinetsim.genetics import (
    GenotypeStore,
    apply_mutations,
    compute_genetic_diagnostics,
    estimate_allele_frequencies,
    unphase,
)
from epinetsim.pedigree import PedigreeLog, sort_pedigree
from epinetsim.population import Population
from epinetsim.reproduction import assign_sexes, make_offspring
from epinetsim.selection import check_feasibility, select_mates, truncate
from epinetsim.types import (
    PED_DAM,
    PED_GENERATION,
    PED_ID,
    PED_SIRE,
    Fitness,
    Selection,
    Sex,
    allocate_genotypes,
    validate_probabilities,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Outcome of one run."""
    population: Population                    # final generation
    pedigree: pd.DataFrame                    # ID, Sire, Dam, Generation
    allele_frequency_history: np.ndarray      # (n_generations, n_loci)
    generation_sizes: np.ndarray              # (n_generations,) individuals per generation
    n_mutations: int = 0
    n_retained: int = 0                       # breeders kept to fill shortfalls
    dump_path: Optional[Path] = None


# ═══════════════════════════════════════════════════════════════════════
# COHORT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class _Cohort:
    """Individuals as parallel arrays; rows of ``phased`` line up with ``ids``."""
    ids: np.ndarray
    sexes: np.ndarray
    birth: np.ndarray
    phased: np.ndarray
    environmental: np.ndarray

    @classmethod
    def of(cls, pop: Population) -> '_Cohort':
        return cls(
            ids=pop.ids.copy(),
            sexes=pop.sexes.copy(),
            birth=pop.birth_generation.copy(),
            phased=pop.phased_genotypes,
            environmental=pop.environmental.copy(),
        )

    def __len__(self) -> int:
        return len(self.ids)

    def take(self, rows) -> '_Cohort':
        rows = np.asarray(rows, dtype=np.int64)
        return _Cohort(
            ids=self.ids[rows],
            sexes=self.sexes[rows],
            birth=self.birth[rows],
            phased=self.phased[rows],
            environmental=self.environmental[rows],
        )

    @classmethod
    def concat(cls, parts: List['_Cohort']) -> '_Cohort':
        return cls(
            ids=np.concatenate([p.ids for p in parts]),
            sexes=np.concatenate([p.sexes for p in parts]),
            birth=np.concatenate([p.birth for p in parts]),
            phased=np.concatenate([p.phased for p in parts]),
            environmental=np.concatenate([p.environmental for p in parts]),
        )


def _youngest_first(cohort: _Cohort, rows: np.ndarray) -> np.ndarray:
    """``rows`` ordered by birth generation descending, then ID ascending."""
    order = np.lexsort((cohort.ids[rows], -cohort.birth[rows]))
    return rows[order]


# ═══════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════

def _recombination_probabilities(pop: Population, run: RunSection) -> np.ndarray:
    probs = validate_probabilities(run.recombination, pop.n_loci, 'run.recombination')
    if probs is None:
        return pop.locus_map.recombination_probabilities(run.cm_per_mb)
    # Each chromosome starts on a uniformly drawn haplotype
    probs = probs.copy()
    probs[pop.locus_map.chromosome_starts] = 0.5
    return probs


def _fitness(
    pop: Population,
    pool: _Cohort,
    kind: Fitness,
    estimator: BreedingValueEstimator,
) -> np.ndarray:
    comps = pop.evaluate(pool.phased, pool.environmental)
    if kind is Fitness.PHENOTYPE:
        return comps.phenotype
    if kind is Fitness.TGV:
        return comps.tgv
    return np.asarray(
        estimator.estimate(unphase(pool.phased), comps.phenotype, pop.ebv_heritability),
        dtype=np.float64,
    )


def _read_pedigree(pedigree) -> Optional[pd.DataFrame]:
    if pedigree is None or isinstance(pedigree, pd.DataFrame):
        return pedigree
    return pd.read_csv(pedigree)


# ═══════════════════════════════════════════════════════════════════════
# ONE GENERATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class _GenerationStats:
    n_pairs: int
    n_offspring: int
    n_retained: int
    n_mutations: int


def _advance(
    pop: Population,
    current: _Cohort,
    reserve: _Cohort,
    generation: int,
    burn_in: bool,
    run: RunSection,
    rec_probs: np.ndarray,
    estimator: BreedingValueEstimator,
    log: PedigreeLog,
    next_id: int,
) -> Tuple[_Cohort, _Cohort, _GenerationStats]:
    """Breed generation ``generation`` from ``current`` and ``reserve``.

    Raises:
        InsufficientPopulationError: before any random draw, when the
            truncated pools cannot meet the offspring quota.
    """
    rngs = pop.rngs
    quota = len(current)
    pool = _Cohort.concat([current, reserve])
    males = np.flatnonzero(pool.sexes == Sex.MALE)
    females = np.flatnonzero(pool.sexes == Sex.FEMALE)

    if burn_in:
        mode = Selection.RANDOM
        fitness = np.zeros(len(pool), dtype=np.float64)
        sires, dams = males, females
    else:
        mode = Selection(run.selection)
        fitness = _fitness(pop, pool, Fitness(run.fitness), estimator)
        sires = truncate(males, fitness[males], run.trunc_sire)
        dams = truncate(females, fitness[females], run.trunc_dam)

    check_feasibility(len(sires), len(dams), run.breed_sire, run.litter_dist, quota)
    plan = select_mates(
        sires, dams, fitness[sires], fitness[dams], quota,
        run.litter_dist, run.breed_sire, mode, rngs['selection'],
    )

    sire_rows = np.repeat(plan.sires, plan.litter_sizes)
    dam_rows = np.repeat(plan.dams, plan.litter_sizes)
    phased = make_offspring(pool.phased[sire_rows], pool.phased[dam_rows], rec_probs, rngs['recombination'])
    n_mutations = apply_mutations(phased, rngs['mutation'], run.mutation)
    n_off = len(sire_rows)
    offspring = _Cohort(
        ids=np.arange(next_id, next_id + n_off, dtype=np.int64),
        sexes=assign_sexes(n_off, rngs['sex']),
        birth=np.full(n_off, generation, dtype=np.int64),
        phased=phased,
        environmental=draw_environmental(n_off, pop.environmental_variance, rngs['environment']),
    )
    log.record(offspring.ids, pool.ids[sire_rows], pool.ids[dam_rows], generation)

    # Lifespans: a parent may breed again next generation while
    # (generation + 1 − birth) stays within its sex's rounds.
    rows = np.arange(len(pool))
    rounds = np.where(pool.sexes == Sex.MALE, run.rounds_sire, run.rounds_dam)
    eligible_next = (generation + 1 - pool.birth) <= rounds
    is_breeder = np.zeros(len(pool), dtype=bool)
    is_breeder[plan.sires] = True
    is_breeder[plan.dams] = True
    in_reserve = rows >= len(current)

    retained = np.empty(0, dtype=np.int64)
    shortfall = quota - n_off
    if shortfall > 0:
        retiring = rows[is_breeder & ~eligible_next]
        others = rows[~in_reserve & ~np.isin(rows, retiring)]
        retained = np.concatenate([
            _youngest_first(pool, retiring),
            _youngest_first(pool, others),
        ])[:shortfall]

    kept = np.zeros(len(pool), dtype=bool)
    kept[retained] = True
    new_current = _Cohort.concat([offspring, pool.take(retained)])
    new_reserve = pool.take(rows[(is_breeder | in_reserve) & eligible_next & ~kept])

    stats = _GenerationStats(
        n_pairs=plan.n_pairs,
        n_offspring=n_off,
        n_retained=len(retained),
        n_mutations=n_mutations,
    )
    return new_current, new_reserve, stats


# ═══════════════════════════════════════════════════════════════════════
# RUN MODES
# ═══════════════════════════════════════════════════════════════════════

def _breed(
    pop: Population,
    run: RunSection,
    rec_probs: np.ndarray,
    estimator: BreedingValueEstimator,
    dump: GenotypeDumpWriter,
) -> SimulationResult:
    start = pop.generation
    if pop.pedigree_table is not None:
        log = PedigreeLog.from_frame(pop.pedigree_table)
    else:
        log = PedigreeLog()
        founders = np.zeros(pop.size, dtype=np.int64)
        log.record(pop.ids, founders, founders, start)
    history = list(pop.history) if pop.history is not None else [pop.allele_frequencies]
    sizes = [pop.size]
    next_id = max(log.max_id, int(pop.ids.max())) + 1

    current = _Cohort.of(pop)
    reserve = current.take([])
    dump.write(start, current.phased)
    total_mutations = total_retained = 0

    for step in range(1, run.generations):
        generation = start + step
        current, reserve, stats = _advance(
            pop, current, reserve, generation,
            burn_in=step <= run.burn_in,
            run=run,
            rec_probs=rec_probs,
            estimator=estimator,
            log=log,
            next_id=next_id,
        )
        next_id += stats.n_offspring
        total_mutations += stats.n_mutations
        total_retained += stats.n_retained
        diag = compute_genetic_diagnostics(current.phased, history[-1])
        history.append(diag.allele_freq)
        sizes.append(len(current))
        dump.write(generation, current.phased)
        logger.debug(
            "Generation %d: %d pairs, %d offspring, %d retained, %d mutations, reserve %d, "
            "Ho=%.3f He=%.3f mean|dq|=%.4f",
            generation, stats.n_pairs, stats.n_offspring, stats.n_retained,
            stats.n_mutations, len(reserve), diag.heterozygosity_obs,
            diag.heterozygosity_exp, diag.mean_abs_delta_q,
        )

    pedigree = log.to_frame()
    final = dataclasses.replace(
        pop,
        genotypes=GenotypeStore(current.phased),
        ids=current.ids,
        sexes=current.sexes,
        birth_generation=current.birth,
        environmental=current.environmental,
        generation=start + run.generations - 1,
        pedigree_table=pedigree,
        history=np.vstack(history),
    )
    return SimulationResult(
        population=final,
        pedigree=pedigree.copy(),
        allele_frequency_history=final.history.copy(),
        generation_sizes=np.asarray(sizes, dtype=np.int64),
        n_mutations=total_mutations,
        n_retained=total_retained,
    )


def _drop_pedigree(
    pop: Population,
    table: pd.DataFrame,
    run: RunSection,
    rec_probs: np.ndarray,
    dump: GenotypeDumpWriter,
) -> SimulationResult:
    """Replay a pedigree: founders from the population, descendants bred by generation."""
    ped = sort_pedigree(table)
    gens = ped[PED_GENERATION].to_numpy()
    founders = np.flatnonzero(gens == 0)
    if len(founders) > pop.size:
        raise ConfigurationError(
            f"pedigree has {len(founders)} founders but the population has only "
            f"{pop.size} individuals"
        )
    rngs = pop.rngs
    row_of = pd.Series(np.arange(len(ped)), index=ped[PED_ID].to_numpy())
    sires = ped[PED_SIRE].to_numpy()
    dams = ped[PED_DAM].to_numpy()

    phased = allocate_genotypes(len(ped), pop.n_loci)
    phased[founders] = pop.genotypes.phased[: len(founders)]
    environmental = np.zeros(len(ped), dtype=np.float64)
    environmental[founders] = pop.environmental[: len(founders)]

    history = [estimate_allele_frequencies(phased[founders])]
    sizes = [len(founders)]
    dump.write(0, phased[founders])
    n_mutations = 0
    last_gen = int(gens.max())
    for gen in range(1, last_gen + 1):
        rows = np.flatnonzero(gens == gen)
        sire_rows = row_of.loc[sires[rows]].to_numpy()
        dam_rows = row_of.loc[dams[rows]].to_numpy()
        children = make_offspring(phased[sire_rows], phased[dam_rows], rec_probs, rngs['recombination'])
        n_mutations += apply_mutations(children, rngs['mutation'], run.mutation)
        phased[rows] = children
        environmental[rows] = draw_environmental(
            len(rows), pop.environmental_variance, rngs['environment']
        )
        history.append(estimate_allele_frequencies(children))
        sizes.append(len(rows))
        dump.write(gen, children)
        logger.debug("Pedigree generation %d: %d individuals", gen, len(rows))

    last = np.flatnonzero(gens == last_gen)
    if last_gen == 0:
        sexes = pop.sexes[: len(founders)].copy()
    else:
        sexes = assign_sexes(len(last), rngs['sex'])
    final = dataclasses.replace(
        pop,
        genotypes=GenotypeStore(phased[last]),
        ids=ped[PED_ID].to_numpy()[last],
        sexes=sexes,
        birth_generation=np.full(len(last), pop.generation + last_gen, dtype=np.int64),
        environmental=environmental[last],
        generation=pop.generation + last_gen,
        pedigree_table=ped,
        history=np.vstack(history),
    )
    return SimulationResult(
        population=final,
        pedigree=ped.copy(),
        allele_frequency_history=final.history.copy(),
        generation_sizes=np.asarray(sizes, dtype=np.int64),
        n_mutations=n_mutations,
    )


# ═══════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def run_simulation(
    population: Population,
    run: Optional[RunSection] = None,
    pedigree: Union[pd.DataFrame, str, Path, None] = None,
    estimator: Optional[BreedingValueEstimator] = None,
) -> SimulationResult:
    """Simulate forward from ``population``, which is left untouched.

    Args:
        population: Starting population (generation 1 of the run).
        run: Run settings; defaults of RunSection when omitted.
        pedigree: Pedigree table (or CSV path) to replay instead of
            selecting mates. Falls back to ``run.pedigree_file``.
        estimator: EBV estimator for ``fitness='EBV'``; gBLUP by default.

    Returns:
        SimulationResult with the final population, pedigree and history.

    Raises:
        ConfigurationError: invalid settings or pedigree.
        InsufficientPopulationError: a generation cannot meet its quota.
        OSError: the genotype dump failed and ``run.dump_required`` is set.
    """
    run = run if run is not None else RunSection()
    validate_run(run)
    table = _read_pedigree(pedigree if pedigree is not None else run.pedigree_file)
    pop = population.copy()
    rec_probs = _recombination_probabilities(pop, run)
    estimator = estimator if estimator is not None else GBLUPEstimator()

    logger.info(
        "Starting %s: %d individuals, generation %d",
        "pedigree replay" if table is not None else f"{run.generations}-generation run",
        pop.size, pop.generation,
    )
    with GenotypeDumpWriter(run.all_geno_file, required=run.dump_required) as dump:
        if table is not None:
            result = _drop_pedigree(pop, table, run, rec_probs, dump)
        else:
            result = _breed(pop, run, rec_probs, estimator, dump)
        if dump.active:
            result.dump_path = dump.path

    logger.info(
        "Finished at generation %d: %d individuals, %d pedigree records, %d mutations",
        result.population.generation, result.population.size,
        len(result.pedigree), result.n_mutations,
    )
    return result
