# tests/test_clustering.py

import pytest
import pandas as pd

from scrnaseq_workshop.analysis.clustering import perform_clustering, cluster_purity


def test_clustering_adds_results(processed_adata):
    adata = processed_adata
    assert 'leiden' in adata.obs
    assert isinstance(adata.obs['leiden'].dtype, pd.CategoricalDtype)
    assert adata.obs['leiden'].nunique() >= 3
    assert 'connectivities' in adata.obsp
    assert adata.obsm['X_umap'].shape == (adata.n_obs, 2)


def test_clustering_recovers_cell_types(processed_adata):
    purity = cluster_purity(processed_adata, 'leiden', 'cell_type')
    weighted = (purity['purity'] * purity['n_cells']).sum() / purity['n_cells'].sum()
    assert weighted > 0.9
    assert set(purity['dominant_label']) == {'T', 'B', 'Mono'}


def test_clustering_return_copy_without_umap(processed_adata):
    adata = processed_adata.copy()
    del adata.obsm['X_umap']
    result = perform_clustering(adata, resolution=0.3, leiden_key_added='leiden_low',
                                calculate_umap=False, inplace=False)
    assert result is not adata
    assert 'leiden_low' in result.obs
    assert 'leiden_low' not in adata.obs
    assert 'X_umap' not in result.obsm


def test_clustering_missing_rep(processed_adata):
    with pytest.raises(KeyError, match="X_harmony"):
        perform_clustering(processed_adata.copy(), use_rep='X_harmony')


@pytest.mark.parametrize("kwargs", [{'n_neighbors': 0}, {'resolution': -1.0}, {'resolution': 'high'}])
def test_clustering_invalid_params(processed_adata, kwargs):
    with pytest.raises(ValueError):
        perform_clustering(processed_adata.copy(), **kwargs)


def test_clustering_invalid_input():
    with pytest.raises(TypeError):
        perform_clustering({'X': None})


def test_cluster_purity_table(processed_adata):
    purity = cluster_purity(processed_adata, 'leiden', 'cell_type')
    assert list(purity.columns) == ['cluster', 'dominant_label', 'purity', 'n_cells']
    assert purity['n_cells'].sum() == processed_adata.n_obs
    assert purity['purity'].is_monotonic_decreasing
    assert purity['purity'].between(0, 1).all()


def test_cluster_purity_missing_key(processed_adata):
    with pytest.raises(KeyError):
        cluster_purity(processed_adata, 'leiden', 'not_a_label')
