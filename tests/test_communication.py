# tests/test_communication.py

import pytest
import numpy as np
import pandas as pd
import logging

from scrnaseq_workshop.analysis.communication import (
    COMMUNICATION_COLUMNS,
    group_mean_expression,
    score_ligand_receptor,
    interaction_counts,
)

LR_PAIRS = pd.DataFrame({
    'ligand': ['CCL5', 'LTB', 'LYZ_S100A8', 'NOT_MEASURED'],
    'receptor': ['CCR5', 'CD74', 'CD3D', 'CCR5'],
    'pathway': ['CCL', 'LT', 'TEST', 'TEST'],
})


@pytest.fixture(scope="module")
def lr_results(processed_adata):
    return score_ligand_receptor(processed_adata, LR_PAIRS, group_key='cell_type',
                                 n_permutations=50, min_pct=0.1, random_state=0)


def _row(results, source, target, ligand):
    rows = results[(results['source'] == source) & (results['target'] == target) & (results['ligand'] == ligand)]
    assert len(rows) == 1
    return rows.iloc[0]


def test_group_mean_expression(processed_adata):
    means = group_mean_expression(processed_adata, 'cell_type', genes=['CCL5', 'CCR5'])
    assert means.shape == (3, 2)
    assert means['CCL5'].idxmax() == 'T'
    assert means['CCR5'].idxmax() == 'Mono'
    all_genes = group_mean_expression(processed_adata, 'cell_type')
    assert all_genes.shape == (3, processed_adata.raw.n_vars)


def test_group_mean_expression_missing_gene(processed_adata):
    with pytest.raises(KeyError, match="Genes not found"):
        group_mean_expression(processed_adata, 'cell_type', genes=['CCL5', 'NOT_A_GENE'])
    with pytest.raises(KeyError, match="Group key"):
        group_mean_expression(processed_adata, 'tissue', genes=['CCL5'])


def test_lr_columns(lr_results):
    assert list(lr_results.columns) == COMMUNICATION_COLUMNS + ['pathway']
    assert (lr_results['interaction_name'] == lr_results['ligand'] + ' - ' + lr_results['receptor']).all()
    assert 'NOT_MEASURED' not in lr_results['ligand'].tolist()


def test_lr_unmeasured_pairs_warn(processed_adata, caplog):
    with caplog.at_level(logging.WARNING):
        score_ligand_receptor(processed_adata, LR_PAIRS, 'cell_type', n_permutations=0)
    assert "1 of 4 ligand-receptor pairs" in caplog.text


def test_lr_recovers_marker_interaction(lr_results, processed_adata):
    row = _row(lr_results, 'T', 'Mono', 'CCL5')
    assert row['pvalue'] == pytest.approx(1 / 51)
    means = group_mean_expression(processed_adata, 'cell_type', genes=['CCL5', 'CCR5'])
    assert row['ligand_mean'] == pytest.approx(means.loc['T', 'CCL5'])
    assert row['receptor_mean'] == pytest.approx(means.loc['Mono', 'CCR5'])
    assert row['score'] == pytest.approx(row['ligand_mean'] * row['receptor_mean'])
    # same pair is weaker from a non-expressing sender
    other = lr_results[(lr_results['ligand'] == 'CCL5') & (lr_results['source'] == 'B')]
    assert (other['score'] < row['score']).all()


def test_lr_complex_uses_geometric_mean(lr_results, processed_adata):
    row = _row(lr_results, 'Mono', 'T', 'LYZ_S100A8')
    means = group_mean_expression(processed_adata, 'cell_type', genes=['LYZ', 'S100A8'])
    expected = np.sqrt(means.loc['Mono', 'LYZ'] * means.loc['Mono', 'S100A8'])
    assert row['ligand_mean'] == pytest.approx(expected)
    assert row['pathway'] == 'TEST'


def test_lr_sorted(lr_results):
    pairs = list(zip(lr_results['pvalue'], -lr_results['score']))
    assert pairs == sorted(pairs)
    assert (lr_results['padj'] >= lr_results['pvalue']).all()


def test_lr_min_pct_filters(processed_adata):
    loose = score_ligand_receptor(processed_adata, LR_PAIRS, 'cell_type', n_permutations=0, min_pct=0.0)
    strict = score_ligand_receptor(processed_adata, LR_PAIRS, 'cell_type', n_permutations=0, min_pct=0.9)
    assert len(strict) < len(loose)
    assert len(loose) <= 3 * 3 * 3


def test_lr_without_permutations(processed_adata):
    res = score_ligand_receptor(processed_adata, LR_PAIRS, 'cell_type', n_permutations=0)
    assert res['pvalue'].isna().all()
    assert res['padj'].isna().all()
    assert res['score'].is_monotonic_decreasing


def test_lr_rejects_scaled_data(processed_adata):
    genes = processed_adata.var_names[:2].tolist()
    pairs = pd.DataFrame({'ligand': [genes[0]], 'receptor': [genes[1]]})
    with pytest.raises(ValueError, match="negative values"):
        score_ligand_receptor(processed_adata, pairs, 'cell_type', use_raw=False, n_permutations=0)


def test_lr_invalid_input(processed_adata):
    with pytest.raises(TypeError):
        score_ligand_receptor(None, LR_PAIRS, 'cell_type')
    with pytest.raises(ValueError, match="missing required columns"):
        score_ligand_receptor(processed_adata, LR_PAIRS.rename(columns={'receptor': 'target'}), 'cell_type')
    with pytest.raises(ValueError, match="min_pct"):
        score_ligand_receptor(processed_adata, LR_PAIRS, 'cell_type', min_pct=1.5)
    with pytest.raises(ValueError, match="None of the ligand-receptor pairs"):
        score_ligand_receptor(processed_adata, LR_PAIRS.iloc[[3]], 'cell_type')
    with pytest.raises(KeyError):
        score_ligand_receptor(processed_adata, LR_PAIRS, 'tissue', n_permutations=0)


def test_interaction_counts():
    results = pd.DataFrame({
        'source': ['A', 'A', 'B', 'C'],
        'target': ['B', 'B', 'A', 'A'],
        'score': [1.0, 2.0, 0.5, 3.0],
        'pvalue': [0.01, 0.02, 0.001, 0.5],
    })
    counts = interaction_counts(results)
    assert list(counts.index) == ['A', 'B', 'C']
    assert list(counts.columns) == ['A', 'B', 'C']
    assert counts.loc['A', 'B'] == 2
    assert counts.loc['B', 'A'] == 1
    assert counts.loc['C', 'A'] == 0
    weighted = interaction_counts(results, weight='score')
    assert weighted.loc['A', 'B'] == pytest.approx(3.0)
    assert interaction_counts(results, pvalue_cutoff=0.005).to_numpy().sum() == 1


def test_interaction_counts_missing_column():
    with pytest.raises(KeyError):
        interaction_counts(pd.DataFrame({'source': ['A'], 'target': ['B']}))


def test_interaction_counts_on_adjusted_pvalues():
    results = pd.DataFrame({
        'source': ['A', 'A', 'B'],
        'target': ['B', 'B', 'A'],
        'pvalue': [0.01, 0.02, 0.03],
        'padj': [0.03, 0.06, 0.09],
    })
    assert interaction_counts(results).to_numpy().sum() == 3
    by_padj = interaction_counts(results, pvalue_key='padj')
    assert by_padj.loc['A', 'B'] == 1
    assert by_padj.loc['B', 'A'] == 0
    with pytest.raises(KeyError):
        interaction_counts(results.drop(columns='padj'), pvalue_key='padj')


def test_use_raw_without_raw(processed_adata):
    no_raw = processed_adata.copy()
    del no_raw.raw
    with pytest.raises(ValueError, match="adata.raw is None"):
        group_mean_expression(no_raw, 'cell_type', genes=['CCL5'], use_raw=True)
    with pytest.raises(ValueError, match="adata.raw is None"):
        score_ligand_receptor(no_raw, LR_PAIRS, 'cell_type', use_raw=True, n_permutations=0)
