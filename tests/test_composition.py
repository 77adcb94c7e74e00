# tests/test_composition.py

import pytest
import numpy as np

from scrnaseq_workshop.analysis.composition import (
    composition_table,
    diversity_index,
    permutation_test_proportions,
)
from conftest import CELLS_PER_TYPE


@pytest.fixture(scope="module")
def proportion_test(synthetic_adata):
    return permutation_test_proportions(
        synthetic_adata, group_key='cell_type', condition_key='condition',
        reference='control', treatment='disease', n_permutations=200, n_bootstrap=200, random_state=0,
    )


def test_composition_counts(synthetic_adata):
    table = composition_table(synthetic_adata, 'sample', 'cell_type', normalize=False)
    assert table.shape == (6, 3)
    assert table.loc['ctrl_2', 'T'] == CELLS_PER_TYPE['control']['T']
    assert table.loc['dis_3', 'Mono'] == CELLS_PER_TYPE['disease']['Mono']
    assert table.to_numpy().sum() == synthetic_adata.n_obs


def test_composition_proportions(synthetic_adata):
    table = composition_table(synthetic_adata, 'sample', 'cell_type')
    np.testing.assert_allclose(table.sum(axis=1), 1.0)
    assert table.loc['dis_1', 'Mono'] == pytest.approx(60 / 130)


def test_composition_missing_key(synthetic_adata):
    with pytest.raises(KeyError):
        composition_table(synthetic_adata, 'donor', 'cell_type')


def test_diversity_indices(synthetic_adata):
    p = np.array([50, 40, 30]) / 120
    shannon = diversity_index(synthetic_adata, 'sample', 'cell_type', index='shannon').set_index('sample')
    simpson = diversity_index(synthetic_adata, 'sample', 'cell_type', index='simpson').set_index('sample')
    inv = diversity_index(synthetic_adata, 'sample', 'cell_type', index='invsimpson').set_index('sample')
    assert shannon.loc['ctrl_1', 'shannon'] == pytest.approx(-(p * np.log(p)).sum())
    assert simpson.loc['ctrl_1', 'simpson'] == pytest.approx(1 - (p ** 2).sum())
    assert inv.loc['ctrl_1', 'invsimpson'] == pytest.approx(1 / (p ** 2).sum())
    assert shannon.loc['ctrl_1', 'n_cells'] == 120
    # shannon never exceeds ln(number of groups)
    assert (shannon['shannon'] <= np.log(3) + 1e-12).all()


def test_diversity_single_group(synthetic_adata):
    adata = synthetic_adata[synthetic_adata.obs['cell_type'] == 'B'].copy()
    shannon = diversity_index(adata, 'sample', 'cell_type')
    np.testing.assert_allclose(shannon['shannon'], 0.0)


def test_diversity_unknown_index(synthetic_adata):
    with pytest.raises(ValueError, match="Unknown diversity index"):
        diversity_index(synthetic_adata, 'sample', 'cell_type', index='chao1')


def test_proportion_test_columns(proportion_test):
    assert list(proportion_test.columns) == [
        'group', 'n_reference', 'n_treatment', 'prop_reference', 'prop_treatment',
        'log2FD', 'ci_low', 'ci_high', 'pvalue', 'padj', 'contrast',
    ]
    assert (proportion_test['contrast'] == 'disease_vs_control').all()
    assert proportion_test['log2FD'].is_monotonic_decreasing


def test_proportion_test_detects_shift(proportion_test):
    res = proportion_test.set_index('group')
    assert res.loc['Mono', 'log2FD'] > 0.5
    assert res.loc['T', 'log2FD'] < -0.5
    assert res.loc['Mono', 'pvalue'] == pytest.approx(1 / 201)
    assert res.loc['T', 'padj'] < 0.05
    assert res.loc['Mono', 'ci_low'] > 0
    assert res.loc['T', 'ci_high'] < 0
    assert res.loc['Mono', 'n_reference'] == 90
    assert res.loc['Mono', 'n_treatment'] == 180


def test_proportion_test_pvalue_bounds(proportion_test):
    assert (proportion_test['pvalue'] >= 1 / 201).all()
    assert (proportion_test['pvalue'] <= 1).all()
    assert (proportion_test['padj'] >= proportion_test['pvalue']).all()


def test_proportion_test_without_bootstrap(synthetic_adata):
    res = permutation_test_proportions(
        synthetic_adata, 'cell_type', 'condition', 'control', 'disease',
        n_permutations=20, n_bootstrap=0,
    )
    assert res['ci_low'].isna().all()
    assert res['ci_high'].isna().all()


def test_proportion_test_invalid(synthetic_adata):
    with pytest.raises(KeyError):
        permutation_test_proportions(synthetic_adata, 'cell_type', 'status', 'control', 'disease')
    with pytest.raises(ValueError, match="Both conditions need cells"):
        permutation_test_proportions(synthetic_adata, 'cell_type', 'condition', 'control', 'treated')
    with pytest.raises(ValueError):
        permutation_test_proportions(synthetic_adata, 'cell_type', 'condition', 'control', 'disease',
                                     n_permutations=0)
