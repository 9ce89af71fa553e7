"""Tests for epinetsim.genetics: genotype store, frequencies, mutation, diagnostics.

Acceptance criteria:
  - Founder draws reproduce the requested allele frequencies
  - Unphased view and frequencies are derived from the phased matrix
  - Mutation flips alleles independently in both directions
  - Hardy-Weinberg holds for founder draws
"""

import numpy as np
import pytest

from epinetsim.errors import ConfigurationError
from epinetsim.genetics import (
    GenotypeStore,
    apply_mutations,
    check_template,
    compute_additive_variance,
    compute_genetic_diagnostics,
    compute_heterozygosity,
    estimate_allele_frequencies,
    generate_genotypes,
    hardy_weinberg_test,
    unphase,
)
from epinetsim.types import GENOTYPE_DTYPE


# ═══════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def founders(rng):
    q = np.linspace(0.05, 0.95, 20)
    return generate_genotypes(4000, q, rng), q


# ═══════════════════════════════════════════════════════════════════════
# GENERATION & VIEWS
# ═══════════════════════════════════════════════════════════════════════


class TestGenerateGenotypes:
    def test_shape_and_values(self, founders):
        geno, q = founders
        assert geno.shape == (4000, 40)
        assert geno.dtype == GENOTYPE_DTYPE
        assert set(np.unique(geno)) <= {0, 1}

    def test_frequencies_match(self, founders):
        geno, q = founders
        np.testing.assert_allclose(estimate_allele_frequencies(geno), q, atol=0.03)

    def test_fixed_loci(self, rng):
        geno = generate_genotypes(50, np.array([0.0, 1.0]), rng)
        assert not geno[:, 0:2].any()
        assert geno[:, 2:4].all()

    def test_bad_frequency(self, rng):
        with pytest.raises(ConfigurationError):
            generate_genotypes(10, np.array([0.5, 1.5]), rng)

    def test_reproducible(self):
        q = np.full(10, 0.3)
        g1 = generate_genotypes(20, q, np.random.default_rng(3))
        g2 = generate_genotypes(20, q, np.random.default_rng(3))
        np.testing.assert_array_equal(g1, g2)


class TestViews:
    def test_unphase_sums_pairs(self):
        phased = np.array([[0, 1, 1, 1, 0, 0]], dtype=np.int8)
        np.testing.assert_array_equal(unphase(phased), [[1, 2, 0]])

    def test_frequency_uses_both_haplotypes(self):
        phased = np.array([[1, 0], [1, 1]], dtype=np.int8)
        np.testing.assert_allclose(estimate_allele_frequencies(phased), [0.75])

    def test_frequency_of_empty_matrix(self):
        np.testing.assert_array_equal(
            estimate_allele_frequencies(np.zeros((0, 6), dtype=np.int8)), np.zeros(3)
        )


class TestCheckTemplate:
    def test_wrong_column_count(self):
        with pytest.raises(ConfigurationError, match="columns"):
            check_template(np.zeros((3, 5)), 3)

    def test_non_binary(self):
        with pytest.raises(ConfigurationError, match="0 or 1"):
            check_template(np.full((2, 4), 2), 2)

    def test_casts_to_int8(self):
        assert check_template(np.ones((2, 4), dtype=np.int64), 2).dtype == GENOTYPE_DTYPE


class TestGenotypeStore:
    def test_phased_is_read_only(self, founders):
        store = GenotypeStore(founders[0])
        with pytest.raises(ValueError):
            store.phased[0, 0] = 1

    def test_store_owns_a_copy(self):
        phased = np.zeros((2, 4), dtype=np.int8)
        store = GenotypeStore(phased)
        phased[0, 0] = 1
        assert store.phased[0, 0] == 0

    def test_derived_views(self, founders):
        geno, _ = founders
        store = GenotypeStore(geno)
        assert store.n_individuals == 4000
        assert store.n_loci == 20
        assert len(store) == 4000
        np.testing.assert_array_equal(store.unphased, unphase(geno))
        np.testing.assert_allclose(store.allele_frequencies, estimate_allele_frequencies(geno))

    def test_haplotypes(self):
        store = GenotypeStore(np.array([[0, 1, 1, 0, 1, 1]], dtype=np.int8))
        sire, dam = store.haplotypes(0)
        np.testing.assert_array_equal(sire, [0, 1, 1])
        np.testing.assert_array_equal(dam, [1, 0, 1])

    def test_take(self, founders):
        store = GenotypeStore(founders[0])
        sub = store.take([3, 1])
        np.testing.assert_array_equal(sub.phased, founders[0][[3, 1]])

    def test_odd_columns_rejected(self):
        with pytest.raises(ConfigurationError):
            GenotypeStore(np.zeros((2, 3), dtype=np.int8))


# ═══════════════════════════════════════════════════════════════════════
# MUTATION
# ═══════════════════════════════════════════════════════════════════════


class TestMutation:
    def test_zero_rate(self, rng):
        geno = np.zeros((100, 50), dtype=np.int8)
        assert apply_mutations(geno, rng, 0.0) == 0
        assert not geno.any()

    def test_count_matches_flips(self, rng):
        geno = np.zeros((200, 100), dtype=np.int8)
        n = apply_mutations(geno, rng, 0.01)
        assert n == geno.sum()
        # Expected 200, sd ≈ 14
        assert 130 < n < 270

    def test_bidirectional(self, rng):
        geno = np.ones((200, 100), dtype=np.int8)
        n = apply_mutations(geno, rng, 0.05)
        assert n > 0
        assert (geno == 0).sum() == n

    def test_rate_one_flips_everything(self, rng):
        geno = np.zeros((5, 6), dtype=np.int8)
        assert apply_mutations(geno, rng, 1.0) == 30
        assert geno.all()


# ═══════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════


class TestDiagnostics:
    def test_heterozygosity_near_expected(self, founders):
        h_obs, h_exp = compute_heterozygosity(founders[0])
        assert abs(h_obs - h_exp) < 0.02

    def test_heterozygosity_too_few(self):
        assert compute_heterozygosity(np.zeros((1, 4), dtype=np.int8)) == (0.0, 0.0)

    def test_additive_variance_formula(self):
        va = compute_additive_variance(np.array([0.5, 0.1]), np.array([1.0, 2.0]))
        assert np.isclose(va, 2 * 0.25 + 2 * 4 * 0.09)

    def test_diagnostics_delta(self, founders):
        geno, q = founders
        diag = compute_genetic_diagnostics(geno, prev_allele_freq=q)
        assert diag.n_individuals == 4000
        assert 0.0 <= diag.mean_abs_delta_q < 0.03

    def test_hardy_weinberg_founders(self, founders):
        obs, exp, chi2 = hardy_weinberg_test(founders[0])
        assert obs.shape == (20, 3)
        np.testing.assert_allclose(obs.sum(axis=1), 1.0)
        np.testing.assert_allclose(obs, exp, atol=0.04)
        # 1 df, 99.9th percentile ≈ 10.8
        assert np.mean(chi2 < 10.8) > 0.9
