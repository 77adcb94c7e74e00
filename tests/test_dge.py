# tests/test_dge.py

import pytest
import pandas as pd

from scrnaseq_workshop.analysis.dge import find_marker_genes, get_marker_table
from conftest import CELL_TYPE_MARKERS


@pytest.fixture(scope="module")
def adata_markers(processed_adata):
    """Processed data with markers of the known cell types, from .raw."""
    adata = processed_adata.copy()
    find_marker_genes(adata, groupby='cell_type', use_raw=True, key_added='markers_raw')
    return adata


def test_markers_stored(adata_markers):
    result = adata_markers.uns['markers_raw']
    assert result['params']['groupby'] == 'cell_type'
    assert result['params']['use_raw']
    assert set(result['names'].dtype.names) == {'T', 'B', 'Mono'}


def test_markers_recover_planted_genes(adata_markers):
    table = get_marker_table(adata_markers, key='markers_raw')
    for cell_type, genes in CELL_TYPE_MARKERS.items():
        top = table[table['group'] == cell_type].head(10)['names'].tolist()
        assert len(set(genes) & set(top)) >= 4, f"{cell_type} markers not ranked on top: {top}"


def test_marker_table_single_group(adata_markers):
    table = get_marker_table(adata_markers, key='markers_raw', group='B', pval_cutoff=0.05, log2fc_min=1)
    assert (table['group'] == 'B').all()
    assert (table['pvals_adj'] < 0.05).all()
    assert (table['logfoldchanges'] >= 1).all()
    assert 'MS4A1' in table['names'].tolist()


def test_marker_table_missing_key(processed_adata):
    with pytest.raises(KeyError, match="Run find_marker_genes first"):
        get_marker_table(processed_adata, key='not_computed')


def test_markers_on_scaled_x(processed_adata):
    adata = processed_adata.copy()
    find_marker_genes(adata, groupby='leiden', method='t-test', use_raw=False, key_added='markers_x')
    assert not adata.uns['markers_x']['params']['use_raw']
    assert len(adata.uns['markers_x']['names']) == adata.n_vars


def test_markers_converts_group_to_category(processed_adata):
    adata = processed_adata.copy()
    adata.obs['condition_str'] = adata.obs['condition'].astype(str)
    find_marker_genes(adata, groupby='condition_str', key_added='cond')
    assert isinstance(adata.obs['condition_str'].dtype, pd.CategoricalDtype)


def test_markers_missing_groupby(processed_adata):
    with pytest.raises(KeyError, match="Group key 'unknown' not found"):
        find_marker_genes(processed_adata.copy(), groupby='unknown')


def test_markers_raw_required(processed_adata):
    adata = processed_adata.copy()
    adata.raw = None
    with pytest.raises(ValueError, match="adata.raw is None"):
        find_marker_genes(adata, groupby='leiden', use_raw=True)


def test_markers_raw_and_layer_conflict(processed_adata):
    with pytest.raises(ValueError, match="cannot both be set"):
        find_marker_genes(processed_adata.copy(), groupby='leiden', use_raw=True, layer='counts')


def test_markers_invalid_input():
    with pytest.raises(TypeError):
        find_marker_genes(None, groupby='leiden')
