# tests/test_annotation.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import json

from scrnaseq_workshop.analysis import annotation
from scrnaseq_workshop.analysis.annotation import (
    annotate_cell_types, load_marker_dict, annotate_celltypist, CELLTYPIST_INSTALLED
)
from scrnaseq_workshop.analysis.dge import find_marker_genes
from conftest import CELL_TYPE_MARKERS


@pytest.fixture(scope="module")
def adata_for_marker_overlap(processed_adata) -> ad.AnnData:
    adata = processed_adata.copy()
    find_marker_genes(adata, groupby='leiden', use_raw=True, key_added='rank_genes_groups')
    return adata


@pytest.fixture
def marker_file_json(tmp_path) -> str:
    file = tmp_path / "markers.json"
    file.write_text(json.dumps(CELL_TYPE_MARKERS))
    return str(file)


# --- Marker files ---

def test_load_marker_dict_success(marker_file_json):
    assert load_marker_dict(marker_file_json) == CELL_TYPE_MARKERS


def test_load_marker_dict_gmt(tmp_path):
    file = tmp_path / "markers.gmt"
    file.write_text("T\tna\tCD3D\tCD3E\nB\tna\tMS4A1\n")
    assert load_marker_dict(str(file)) == {'T': ['CD3D', 'CD3E'], 'B': ['MS4A1']}


def test_load_marker_dict_errors(tmp_path):
    with pytest.raises(ValueError):
        load_marker_dict("")
    with pytest.raises(FileNotFoundError):
        load_marker_dict(str(tmp_path / "none.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{'")
    with pytest.raises(ValueError):
        load_marker_dict(str(bad))


# --- Marker overlap ---

def test_annotate_marker_overlap_labels_clusters(adata_for_marker_overlap):
    adata = adata_for_marker_overlap.copy()
    overlap = annotate_cell_types(adata, CELL_TYPE_MARKERS, groupby='leiden', annotation_key='test_mo')
    assert isinstance(adata.obs['test_mo'].dtype, pd.CategoricalDtype)
    assert set(overlap.index) == set(CELL_TYPE_MARKERS)
    assert set(overlap.columns) == set(adata.obs['leiden'].cat.categories)
    assert adata.uns['test_mo_overlap'] is overlap
    agreement = (adata.obs['test_mo'].astype(str) == adata.obs['cell_type'].astype(str)).mean()
    assert agreement > 0.9


def test_annotate_marker_overlap_unknown(adata_for_marker_overlap):
    adata = adata_for_marker_overlap.copy()
    annotate_cell_types(adata, {'Platelet': ['PPBP', 'PF4']}, groupby='leiden', annotation_key='test_unknown')
    assert (adata.obs['test_unknown'] == 'Unknown').all()


def test_annotate_marker_overlap_missing_groupby(adata_for_marker_overlap):
    with pytest.raises(KeyError, match="Group key 'invalid_group' not found"):
        annotate_cell_types(adata_for_marker_overlap.copy(), CELL_TYPE_MARKERS, groupby='invalid_group')


def test_annotate_marker_overlap_missing_rank_key(adata_for_marker_overlap):
    with pytest.raises(KeyError, match="Rank genes groups key 'invalid_key' not found"):
        annotate_cell_types(adata_for_marker_overlap.copy(), CELL_TYPE_MARKERS, groupby='leiden',
                            rank_key='invalid_key')


def test_annotate_marker_overlap_invalid_marker_dict(adata_for_marker_overlap):
    with pytest.raises(TypeError, match="must be a non-empty dictionary"):
        annotate_cell_types(adata_for_marker_overlap.copy(), None, groupby='leiden')  # type: ignore
    with pytest.raises(TypeError, match="must be a non-empty dictionary"):
        annotate_cell_types(adata_for_marker_overlap.copy(), {}, groupby='leiden')


# --- CellTypist ---

@pytest.mark.skipif(not CELLTYPIST_INSTALLED, reason="celltypist not installed")
def test_annotate_celltypist_mv_missing_clusters(processed_adata):
    adata = processed_adata.copy()
    with pytest.raises(ValueError, match="Majority voting requires valid 'cluster_key_for_voting'."):
        annotate_celltypist(adata, majority_voting=True, cluster_key_for_voting='not_a_cluster_key')


def test_annotate_celltypist_not_installed(monkeypatch):
    monkeypatch.setattr(annotation, "CELLTYPIST_INSTALLED", False)
    adata_dummy = ad.AnnData(X=np.array([[1.0]]), obs=pd.DataFrame(index=['c1']), var=pd.DataFrame(index=['g1']))
    with pytest.raises(ImportError, match="celltypist not installed"):
        annotation.annotate_celltypist(adata_dummy)
