"""Tests for epinetsim.reproduction: gametes, offspring, litter sizes, sexes."""

import numpy as np
import pytest

from epinetsim.errors import ConfigurationError
from epinetsim.reproduction import (
    assign_sexes,
    make_offspring,
    max_litter_size,
    normalize_litter_dist,
    recombine,
    sample_litter_sizes,
)
from epinetsim.types import Sex


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


def _parent(n_loci, first, second):
    """Single parent row with haplotype alleles ``first`` / ``second`` everywhere."""
    row = np.empty((1, 2 * n_loci), dtype=np.int8)
    row[0, 0::2] = first
    row[0, 1::2] = second
    return row


class TestRecombine:
    def test_no_crossover_keeps_one_haplotype(self, rng):
        """With 0.5 only at the start and 0 elsewhere, a gamete is one whole haplotype."""
        probs = np.zeros(10)
        probs[0] = 0.5
        parents = np.repeat(_parent(10, 0, 1), 500, axis=0)
        gametes = recombine(parents, probs, rng)
        row_sums = gametes.sum(axis=1)
        assert set(np.unique(row_sums)) <= {0, 10}
        # Both haplotypes transmitted about equally
        assert 200 < np.sum(row_sums == 10) < 300

    def test_chromosomes_segregate_independently(self, rng):
        probs = np.array([0.5, 0.0, 0.5, 0.0])
        parents = np.repeat(_parent(4, 0, 1), 4000, axis=0)
        gametes = recombine(parents, probs, rng)
        # Within a chromosome alleles travel together
        np.testing.assert_array_equal(gametes[:, 0], gametes[:, 1])
        np.testing.assert_array_equal(gametes[:, 2], gametes[:, 3])
        # Across chromosomes they are independent
        same = np.mean(gametes[:, 0] == gametes[:, 2])
        assert 0.45 < same < 0.55

    def test_full_switching(self, rng):
        probs = np.ones(6)
        gamete = recombine(_parent(6, 0, 1), probs, rng)
        # cumulative parity alternates haplotypes at every locus
        np.testing.assert_array_equal(gamete[0], [1, 0, 1, 0, 1, 0])

    def test_homozygous_parent(self, rng):
        probs = np.full(8, 0.5)
        gametes = recombine(np.repeat(_parent(8, 1, 1), 20, axis=0), probs, rng)
        assert gametes.all()

    def test_wrong_probability_length(self, rng):
        with pytest.raises(ConfigurationError, match="length"):
            recombine(_parent(4, 0, 1), np.full(3, 0.5), rng)

    def test_empty(self, rng):
        out = recombine(np.zeros((0, 8), dtype=np.int8), np.full(4, 0.5), rng)
        assert out.shape == (0, 4)


class TestMakeOffspring:
    def test_parent_of_origin_columns(self, rng):
        probs = np.full(5, 0.5)
        sire = np.repeat(_parent(5, 1, 1), 3, axis=0)
        dam = np.repeat(_parent(5, 0, 0), 3, axis=0)
        kids = make_offspring(sire, dam, probs, rng)
        assert kids.shape == (3, 10)
        assert kids[:, 0::2].all()
        assert not kids[:, 1::2].any()

    def test_shape_mismatch(self, rng):
        with pytest.raises(ValueError, match="differ"):
            make_offspring(
                np.zeros((2, 4), dtype=np.int8), np.zeros((3, 4), dtype=np.int8),
                np.full(2, 0.5), rng,
            )


class TestLitterSizes:
    def test_normalize(self):
        np.testing.assert_allclose(normalize_litter_dist([0, 2, 2]), [0, 0.5, 0.5])

    def test_all_zero_litters_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize_litter_dist([1.0, 0.0])

    def test_negative_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize_litter_dist([0.0, -1.0, 2.0])

    def test_max_litter_size(self):
        assert max_litter_size([0, 0, 1]) == 2
        assert max_litter_size([0.2, 0.5, 0.3, 0.0]) == 2

    def test_fixed_litter(self, rng):
        sizes = sample_litter_sizes([0, 0, 1], 100, rng)
        assert (sizes == 2).all()

    def test_distribution_followed(self, rng):
        sizes = sample_litter_sizes([0.0, 0.25, 0.75], 8000, rng)
        assert abs(np.mean(sizes == 2) - 0.75) < 0.02


class TestAssignSexes:
    def test_balanced(self, rng):
        sexes = assign_sexes(11, rng)
        assert np.sum(sexes == Sex.MALE) == 5
        assert np.sum(sexes == Sex.FEMALE) == 6

    def test_shuffled(self, rng):
        sexes = assign_sexes(200, rng)
        assert not (sexes[:100] == Sex.MALE).all()

    def test_empty(self, rng):
        assert assign_sexes(0, rng).shape == (0,)
