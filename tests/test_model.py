"""Integration tests for epinetsim.model: the generation loop and pedigree replay.

Acceptance criteria:
  - Population size is constant across generations, shortfalls included
  - The pedigree holds the founders plus every offspring, numbered per generation
  - Parents with rounds > 1 breed again in later generations
  - Infeasible truncation fails before any offspring is drawn
  - Pedigree replay infers generations 0, 1, 2, ... and keeps the last one
  - The genotype dump holds one frame per generation
  - Same seed, same result; the starting population is never modified
"""

import numpy as np
import pandas as pd
import pytest

from epinetsim.config import OptimizerSection, RunSection
from epinetsim.dump import load_genotype_dump
from epinetsim.errors import ConfigurationError, InsufficientPopulationError
from epinetsim.model import run_simulation
from epinetsim.population import Population

FAST = OptimizerSection(candidates=10, iterations=5)


def _population(pop_size=200, n_loci=300, qtl=20, seed=1, **kwargs):
    return Population.create(
        pop_size=pop_size, n_loci=n_loci, n_chromosomes=3, qtl=qtl,
        broad_h2=0.9, narrow_h2=0.6, trait_var=40.0, seed=seed, optimizer=FAST, **kwargs,
    )


@pytest.fixture(scope="module")
def pairwise():
    return _population().attach_additive().attach_epinet(k=2)


@pytest.fixture(scope="module")
def mixed_orders():
    return _population(seed=2).attach_additive().attach_epinet(
        scale_free=True, additive=7, m=2, k=[2, 3],
    )


# ═══════════════════════════════════════════════════════════════════════
# BREEDING LOOP
# ═══════════════════════════════════════════════════════════════════════


class TestPairwiseRun:
    @pytest.fixture(scope="class")
    def result(self, pairwise):
        return pairwise.run(generations=10)

    def test_size_constant(self, result):
        assert result.population.size == 200
        assert (result.generation_sizes == 200).all()
        assert len(result.generation_sizes) == 10

    def test_pedigree_rows(self, result):
        ped = result.pedigree
        assert len(ped) == 2000
        counts = ped.groupby('Generation').size()
        np.testing.assert_array_equal(counts.index, np.arange(1, 11))
        assert (counts == 200).all()

    def test_founders_have_no_parents(self, result):
        founders = result.pedigree[result.pedigree['Generation'] == 1]
        assert (founders['Sire'] == 0).all()
        assert (founders['Dam'] == 0).all()

    def test_ids_unique_and_increasing(self, result):
        ids = result.pedigree['ID'].to_numpy()
        assert len(np.unique(ids)) == len(ids)
        assert np.all(np.diff(ids) > 0)

    def test_parents_from_previous_generation(self, result):
        ped = result.pedigree.set_index('ID')
        kids = result.pedigree[result.pedigree['Generation'] > 1]
        sire_gen = ped.loc[kids['Sire'], 'Generation'].to_numpy()
        dam_gen = ped.loc[kids['Dam'], 'Generation'].to_numpy()
        np.testing.assert_array_equal(sire_gen, kids['Generation'].to_numpy() - 1)
        np.testing.assert_array_equal(dam_gen, kids['Generation'].to_numpy() - 1)

    def test_sexes_of_parents(self, result, pairwise):
        second = result.pedigree[result.pedigree['Generation'] == 2]
        males = set(pairwise.ids[pairwise.sexes == 0].tolist())
        assert set(second['Sire'].tolist()) <= males
        assert not set(second['Dam'].tolist()) & males

    def test_history(self, result, pairwise):
        hist = result.allele_frequency_history
        assert hist.shape == (10, 300)
        np.testing.assert_allclose(hist[0], pairwise.allele_frequencies)
        np.testing.assert_allclose(hist[-1], result.population.allele_frequencies)

    def test_final_population(self, result):
        final = result.population
        assert final.generation == 10
        assert (final.birth_generation == 10).all()
        assert final.pedigree is not None
        assert final.additive is not None and final.epistatic is not None
        assert np.sum(final.sexes == 0) == 100

    def test_receiver_untouched(self, result, pairwise):
        assert pairwise.generation == 1
        assert pairwise.pedigree is None
        np.testing.assert_array_equal(pairwise.ids, np.arange(1, 201))

    def test_continue_run(self, result):
        more = result.population.run(generations=3)
        assert len(more.pedigree) == 2000 + 400
        assert more.pedigree['Generation'].max() == 12
        assert more.population.generation == 12
        assert more.allele_frequency_history.shape == (12, 300)
        assert more.pedigree['ID'].is_unique


class TestMixedOrderRun:
    @pytest.fixture(scope="class")
    def result(self, mixed_orders):
        return mixed_orders.run(
            generations=10, trunc_sire=0.5, rounds_sire=2, rounds_dam=2,
        )

    def test_size_constant(self, result):
        assert (result.generation_sizes == 200).all()
        assert len(result.pedigree) == 2000

    def test_parents_breed_for_two_rounds(self, result):
        ped = result.pedigree.set_index('ID')
        kids = result.pedigree[result.pedigree['Generation'] > 2]
        age = np.concatenate([
            kids['Generation'].to_numpy() - ped.loc[kids['Sire'], 'Generation'].to_numpy(),
            kids['Generation'].to_numpy() - ped.loc[kids['Dam'], 'Generation'].to_numpy(),
        ])
        assert set(np.unique(age).tolist()) <= {1, 2}
        assert (age == 2).any()

    def test_ranking_selection_raises_tgv(self, result):
        assert result.population.components()['TGV'].mean() > 0


class TestRunOptions:
    def test_truncation_too_strict(self, pairwise):
        with pytest.raises(InsufficientPopulationError):
            pairwise.run(generations=3, trunc_dam=0.5)

    def test_burn_in_skips_truncation(self, pairwise):
        result = pairwise.run(generations=3, trunc_dam=0.5, burn_in=2)
        assert result.population.size == 200
        with pytest.raises(InsufficientPopulationError):
            pairwise.run(generations=4, trunc_dam=0.5, burn_in=2)

    def test_shortfall_filled_by_retention(self, pairwise):
        result = pairwise.run(generations=4, litter_dist=[0.4, 0.0, 0.0, 0.6])
        assert (result.generation_sizes == 200).all()
        assert result.n_retained > 0
        assert len(result.pedigree) == 800 - result.n_retained

    def test_tgv_fitness(self, pairwise):
        result = pairwise.run(generations=6, fitness='TGV', trunc_sire=0.2)
        assert result.population.components()['TGV'].mean() > 0

    def test_ebv_fitness(self):
        pop = _population(pop_size=60, n_loci=120, qtl=10, seed=4).attach_additive()
        result = pop.run(generations=3, fitness='EBV', selection='random')
        assert result.population.size == 60

    def test_custom_estimator(self):
        class Phenotypic:
            calls = 0

            def estimate(self, unphased, phenotypes, h2):
                Phenotypic.calls += 1
                return h2 * phenotypes

        pop = _population(pop_size=40, n_loci=50, qtl=5, seed=5).attach_additive()
        run_simulation(pop, RunSection(generations=3, fitness='EBV'), estimator=Phenotypic())
        assert Phenotypic.calls == 2

    def test_mutations_counted(self, pairwise):
        result = pairwise.run(generations=3, mutation=0.01)
        assert result.n_mutations > 0

    def test_random_selection(self, pairwise):
        result = pairwise.run(generations=3, selection='random')
        assert len(result.pedigree) == 600

    def test_single_generation(self, pairwise):
        result = pairwise.run(generations=1)
        assert len(result.pedigree) == 200
        np.testing.assert_array_equal(result.population.phased_genotypes,
                                      pairwise.phased_genotypes)

    def test_invalid_settings(self, pairwise):
        with pytest.raises(ConfigurationError, match="run.selection"):
            pairwise.run(selection='tournament')

    def test_same_seed_same_result(self, pairwise):
        a = pairwise.run(generations=4)
        b = pairwise.run(generations=4)
        pd.testing.assert_frame_equal(a.pedigree, b.pedigree)
        np.testing.assert_array_equal(a.population.phased_genotypes,
                                      b.population.phased_genotypes)

    def test_genotype_dump(self, pairwise, tmp_path):
        path = tmp_path / "all_geno.npy"
        result = pairwise.run(generations=4, all_geno_file=str(path))
        assert result.dump_path == path
        frames = load_genotype_dump(path)
        assert list(frames) == [1, 2, 3, 4]
        np.testing.assert_array_equal(frames[1], pairwise.phased_genotypes)
        np.testing.assert_array_equal(frames[4], result.population.phased_genotypes)


# ═══════════════════════════════════════════════════════════════════════
# PEDIGREE REPLAY
# ═══════════════════════════════════════════════════════════════════════


@pytest.fixture
def three_generation_pedigree():
    return pd.DataFrame({
        'id': [1, 2, 3, 4, 5, 6, 7, 8, 9],
        'sire': [0, 0, 0, 0, 1, 3, 1, 5, 7],
        'dam': [0, 0, 0, 0, 2, 4, 4, 6, 6],
    })


class TestPedigreeReplay:
    def test_generations_inferred(self, pairwise, three_generation_pedigree):
        result = pairwise.run(pedigree=three_generation_pedigree)
        np.testing.assert_array_equal(
            result.pedigree['Generation'], [0, 0, 0, 0, 1, 1, 1, 2, 2]
        )
        np.testing.assert_array_equal(result.generation_sizes, [4, 3, 2])
        assert result.allele_frequency_history.shape == (3, 300)

    def test_final_generation(self, pairwise, three_generation_pedigree):
        final = pairwise.run(pedigree=three_generation_pedigree).population
        np.testing.assert_array_equal(final.ids, [8, 9])
        assert final.size == 2
        assert final.generation == 3

    def test_founders_take_first_rows(self, pairwise):
        ped = pd.DataFrame({'id': [1, 2], 'sire': [0, 0], 'dam': [0, 0]})
        final = pairwise.run(pedigree=ped).population
        np.testing.assert_array_equal(final.phased_genotypes, pairwise.phased_genotypes[:2])

    def test_offspring_alleles_come_from_parents(self):
        pop = _population(pop_size=4, n_loci=30, qtl=3, seed=9)
        ped = pd.DataFrame({'id': [1, 2, 3], 'sire': [0, 0, 1], 'dam': [0, 0, 2]})
        result = pop.run(pedigree=ped, mutation=0.0)
        child = result.population.phased_genotypes[0]
        sire, dam = pop.phased_genotypes[0], pop.phased_genotypes[1]
        for j in range(30):
            assert child[2 * j] in (sire[2 * j], sire[2 * j + 1])
            assert child[2 * j + 1] in (dam[2 * j], dam[2 * j + 1])

    def test_custom_recombination_restarts_each_chromosome(self, pairwise):
        # No crossovers inside chromosomes: each gamete copies whole parental haplotypes
        n_children = 400
        ped = pd.DataFrame({
            'id': np.arange(1, n_children + 3),
            'sire': [0, 0] + [1] * n_children,
            'dam': [0, 0] + [2] * n_children,
        })
        result = pairwise.run(pedigree=ped, recombination=[0.0] * 300, mutation=0.0)
        children = result.population.phased_genotypes[:, 0::2]
        sire = pairwise.phased_genotypes[0]
        first, second = sire[0::2], sire[1::2]

        bounds = np.append(np.flatnonzero(pairwise.locus_map.chromosome_starts), 300)
        assert len(bounds) == 4
        from_second = []
        for lo, hi in zip(bounds[:-1], bounds[1:]):
            assert np.any(first[lo:hi] != second[lo:hi])
            on_second = (children[:, lo:hi] == second[lo:hi]).all(axis=1)
            on_first = (children[:, lo:hi] == first[lo:hi]).all(axis=1)
            assert np.all(on_first | on_second)
            from_second.append(on_second)

        assert 0.35 < np.mean(from_second[0]) < 0.65
        assert 0.35 < np.mean(from_second[1] == from_second[0]) < 0.65
        assert 0.35 < np.mean(from_second[2] == from_second[1]) < 0.65

    def test_pedigree_from_csv(self, pairwise, three_generation_pedigree, tmp_path):
        path = tmp_path / "ped.csv"
        three_generation_pedigree.to_csv(path, index=False)
        result = pairwise.run(pedigree_file=str(path))
        assert len(result.pedigree) == 9

    def test_dump_per_generation(self, pairwise, three_generation_pedigree, tmp_path):
        path = tmp_path / "replay.npy"
        pairwise.run(pedigree=three_generation_pedigree, all_geno_file=str(path))
        frames = load_genotype_dump(path)
        assert list(frames) == [0, 1, 2]
        assert frames[1].shape == (3, 600)

    def test_too_many_founders(self, three_generation_pedigree):
        pop = _population(pop_size=3, n_loci=20, qtl=2, seed=3)
        with pytest.raises(ConfigurationError, match="founders"):
            pop.run(pedigree=three_generation_pedigree)

    def test_cyclic_pedigree(self, pairwise):
        ped = pd.DataFrame({'id': [1, 2, 3], 'sire': [0, 1, 1], 'dam': [0, 3, 2]})
        with pytest.raises(ConfigurationError, match="cycle"):
            pairwise.run(pedigree=ped)
