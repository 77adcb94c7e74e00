# tests/test_signatures.py

import pytest
import numpy as np
import pandas as pd
import logging

from scrnaseq_workshop.analysis.signatures import (
    ENRICHMENT_COLUMNS,
    score_signatures,
    run_enrichment,
    enrich_de_results,
)
from conftest import CELL_TYPE_MARKERS, DISEASE_UP_GENES, gene_names

GENE_SETS = {
    'Interferon response': DISEASE_UP_GENES + ['OAS1', 'STAT1'],
    'T cell': CELL_TYPE_MARKERS['T'],
    'Unmeasured': ['FOO1', 'FOO2', 'CD3D'],
}


@pytest.fixture(scope="module")
def adata_scored(processed_adata):
    adata = processed_adata.copy()
    keys = score_signatures(adata, GENE_SETS, min_genes=3)
    adata.uns['test_keys'] = keys
    return adata


def test_signature_keys(adata_scored):
    assert adata_scored.uns['test_keys'] == ['score_Interferon_response', 'score_T_cell']
    assert 'score_Unmeasured' not in adata_scored.obs


def test_signature_scores_track_biology(adata_scored):
    obs = adata_scored.obs
    isg = obs.groupby('condition', observed=True)['score_Interferon_response'].mean()
    assert isg['disease'] > isg['control']
    t_score = obs.groupby('cell_type', observed=True)['score_T_cell'].mean()
    assert t_score.idxmax() == 'T'


def test_signature_skip_warns(processed_adata, caplog):
    adata = processed_adata.copy()
    with caplog.at_level(logging.WARNING):
        keys = score_signatures(adata, {'Unmeasured': GENE_SETS['Unmeasured']}, min_genes=2)
    assert keys == []
    assert "Gene set 'Unmeasured'" in caplog.text


def test_signature_custom_prefix_on_x(processed_adata):
    adata = processed_adata.copy()
    hvgs = adata.var_names[:10].tolist()
    keys = score_signatures(adata, {'hvg block': hvgs}, key_prefix='sig', use_raw=False, ctrl_size=20)
    assert keys == ['sig_hvg_block']
    assert np.isfinite(adata.obs['sig_hvg_block']).all()


def test_signature_invalid(processed_adata):
    with pytest.raises(TypeError):
        score_signatures(processed_adata.obs, GENE_SETS)
    with pytest.raises(ValueError):
        score_signatures(processed_adata.copy(), {})
    adata = processed_adata.copy()
    adata.raw = None
    with pytest.raises(ValueError, match="adata.raw is None"):
        score_signatures(adata, GENE_SETS, use_raw=True)


def test_enrichment_recovers_planted_set():
    universe = gene_names()
    query = DISEASE_UP_GENES + ['GENE10', 'GENE11']
    res = run_enrichment(query, GENE_SETS, universe)
    assert list(res.columns) == ENRICHMENT_COLUMNS
    top = res.iloc[0]
    assert top['term'] == 'Interferon response'
    # only the five measured members count toward the set size
    assert top['set_size'] == 5
    assert top['overlap'] == 5
    assert top['padj'] < 1e-4
    assert top['score'] > 0
    assert top['genes'] == ';'.join(sorted(DISEASE_UP_GENES))
    assert top['fold_enrichment'] == pytest.approx(5 / (7 * 5 / len(universe)))
    assert 'Unmeasured' not in res['term'].tolist()


def test_enrichment_ranks_weak_overlap_lower():
    query = DISEASE_UP_GENES + [CELL_TYPE_MARKERS['T'][0]]
    res = run_enrichment(query, GENE_SETS, gene_names()).set_index('term')
    assert set(res.index) == {'Interferon response', 'T cell'}
    assert res.loc['T cell', 'overlap'] == 1
    assert res.loc['T cell', 'padj'] > res.loc['Interferon response', 'padj']
    assert res['padj'].is_monotonic_increasing


def test_enrichment_no_query_in_universe(caplog):
    with caplog.at_level(logging.WARNING):
        res = run_enrichment(['NOT_A_GENE'], GENE_SETS, gene_names())
    assert res.empty
    assert list(res.columns) == ENRICHMENT_COLUMNS


def test_enrich_de_results():
    genes = gene_names()
    rows = []
    for group in ['T', 'Mono']:
        for gene in genes:
            hit = gene in DISEASE_UP_GENES
            rows.append({'group': group, 'gene': gene, 'significant': hit, 'direction': 'up' if hit else 'ns'})
    de = pd.DataFrame(rows)
    res = enrich_de_results(de, GENE_SETS)
    assert list(res.columns) == ['group'] + ENRICHMENT_COLUMNS
    assert set(res['group']) == {'T', 'Mono'}
    assert (res.groupby('group')['term'].first() == 'Interferon response').all()
    assert enrich_de_results(de, GENE_SETS, direction='down').empty


def test_enrich_de_results_missing_columns():
    with pytest.raises(KeyError):
        enrich_de_results(pd.DataFrame({'gene': ['A']}), GENE_SETS)
