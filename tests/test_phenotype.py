"""Tests for epinetsim.phenotype: component values and the component table."""

import numpy as np
import pytest

from epinetsim.effects import AdditiveEffects, EpistaticEffects
from epinetsim.network import EpistaticNetwork
from epinetsim.phenotype import (
    PhenotypeComponents,
    additive_values,
    compute_components,
    epistatic_values,
)
from epinetsim.types import COMPONENT_COLUMNS, HET, HOM_0, HOM_1


@pytest.fixture
def dosages():
    return np.array([
        [HOM_0, HET, HOM_1],
        [HOM_1, HOM_1, HOM_0],
        [HET, HOM_0, HET],
    ], dtype=np.int8)


@pytest.fixture
def network():
    pair = np.arange(9, dtype=np.float64).reshape(3, 3)
    triple = np.full((3, 3, 3), 0.5)
    triple[2, 2, 0] = 10.0
    return EpistaticNetwork(
        n_qtl=3,
        members=[np.array([0, 2]), np.array([0, 1, 2])],
        tensors=[pair, triple],
    )


class TestComponentValues:
    def test_additive(self, dosages):
        np.testing.assert_allclose(additive_values(dosages, [1.0, 0.0, -1.0]), [-2.0, 2.0, 0.0])

    def test_epistatic_lookup(self, dosages, network):
        values = epistatic_values(dosages, network.members, network.tensors)
        # row 0: pair[0, 2] = 2, triple = 0.5
        # row 1: pair[2, 0] = 6, triple[2, 2, 0] = 10
        # row 2: pair[1, 1] = 4, triple = 0.5
        np.testing.assert_allclose(values, [2.5, 16.0, 4.5])

    def test_no_interactions(self, dosages):
        np.testing.assert_array_equal(epistatic_values(dosages, [], []), np.zeros(3))


class TestComputeComponents:
    def test_sums(self, dosages, network):
        add = AdditiveEffects(raw=np.array([1.0, 0.0, -1.0]), scale=2.0, offset=0.5)
        epi = EpistaticEffects(network=network, scale=0.1, offset=-1.0)
        env = np.array([0.1, 0.2, 0.3])
        comps = compute_components(dosages, add, epi, env)
        np.testing.assert_allclose(comps.additive, [-3.5, 4.5, 0.5])
        np.testing.assert_allclose(comps.epistatic, [-0.75, 0.6, -0.55])
        np.testing.assert_allclose(comps.tgv, comps.additive + comps.epistatic)
        np.testing.assert_allclose(comps.phenotype, comps.tgv + env)

    def test_missing_effects_are_zero(self, dosages):
        comps = compute_components(dosages, None, None, np.ones(3))
        np.testing.assert_array_equal(comps.tgv, np.zeros(3))
        np.testing.assert_array_equal(comps.phenotype, np.ones(3))

    def test_environment_shape_checked(self, dosages):
        with pytest.raises(ValueError, match="environmental"):
            compute_components(dosages, None, None, np.ones(2))


class TestPhenotypeComponentsFrame:
    def test_columns_and_index(self):
        comps = PhenotypeComponents(
            additive=np.array([1.0, 2.0]),
            epistatic=np.array([0.5, 0.0]),
            environmental=np.array([0.0, -1.0]),
        )
        frame = comps.to_frame(np.array([7, 9]))
        assert tuple(frame.columns) == COMPONENT_COLUMNS
        assert frame.index.name == 'ID'
        assert frame.loc[7, 'Phenotype'] == 1.5
        assert frame.loc[9, 'TGV'] == 2.0
        assert frame['EBV'].isna().all()
        assert len(comps) == 2

    def test_ebv_column(self):
        comps = PhenotypeComponents(
            additive=np.zeros(2), epistatic=np.zeros(2),
            environmental=np.zeros(2), ebv=np.array([0.3, -0.3]),
        )
        np.testing.assert_allclose(comps.to_frame()['EBV'], [0.3, -0.3])
