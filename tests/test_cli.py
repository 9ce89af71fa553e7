"""Tests for epinetsim.cli: end-to-end runs from YAML."""

import numpy as np
import pandas as pd
import pytest
import yaml

from epinetsim.cli import build_parser, main


@pytest.fixture
def small_config(tmp_path):
    config = {
        'simulation': {'seed': 3, 'log_level': 'WARNING', 'output_dir': str(tmp_path / 'out')},
        'population': {'pop_size': 40, 'n_loci': 60, 'n_chromosomes': 2, 'n_qtl': 6,
                       'broad_h2': 0.8, 'narrow_h2': 0.5, 'trait_var': 10.0},
        'network': {'enabled': True, 'm': 1, 'k': 2},
        'run': {'generations': 3},
        'optimizer': {'candidates': 6, 'iterations': 3},
    }
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(config))
    return path


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(['base.yaml'])
        assert args.config == 'base.yaml'
        assert args.scenario is None
        assert not args.ebv

    def test_overrides(self):
        args = build_parser().parse_args(
            ['base.yaml', '--seed', '5', '--generations', '7', '--ebv']
        )
        assert args.seed == 5
        assert args.generations == 7
        assert args.ebv


class TestMain:
    def test_writes_outputs(self, small_config, tmp_path):
        assert main([str(small_config)]) == 0
        out = tmp_path / 'out'
        comps = pd.read_csv(out / 'components.csv', index_col='ID')
        assert len(comps) == 40
        ped = pd.read_csv(out / 'pedigree.csv')
        assert len(ped) == 120
        assert np.load(out / 'allele_frequency_history.npy').shape == (3, 60)
        assert np.load(out / 'genotypes.npy').shape == (40, 120)
        used = yaml.safe_load((out / 'config_used.yaml').read_text())
        assert used['population']['pop_size'] == 40

    def test_command_line_overrides(self, small_config, tmp_path):
        geno = tmp_path / 'geno.npy'
        code = main([str(small_config), '--generations', '2', '--geno-file', str(geno),
                     '--output-dir', str(tmp_path / 'other'), '--ebv'])
        assert code == 0
        assert geno.exists()
        comps = pd.read_csv(tmp_path / 'other' / 'components.csv')
        assert comps['EBV'].notna().all()
        assert len(pd.read_csv(tmp_path / 'other' / 'pedigree.csv')) == 80

    def test_missing_config(self, tmp_path):
        assert main([str(tmp_path / 'missing.yaml')]) == 2

    def test_invalid_config(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text(yaml.safe_dump({'population': {'broad_h2': 0.2, 'narrow_h2': 0.5}}))
        assert main([str(path)]) == 2

    def test_infeasible_run(self, small_config):
        data = yaml.safe_load(small_config.read_text())
        data['run']['trunc_dam'] = 0.5
        small_config.write_text(yaml.safe_dump(data))
        assert main([str(small_config)]) == 1
