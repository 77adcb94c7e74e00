# tests/conftest.py

import matplotlib
matplotlib.use("Agg")

import pytest
import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from scrnaseq_workshop.analysis.preprocess import store_counts_layer, normalize_log1p, select_hvg, scale_data
from scrnaseq_workshop.analysis.dimred import reduce_dimensionality
from scrnaseq_workshop.analysis.clustering import perform_clustering

MITO_GENES = ['MT-CO1', 'MT-ND1', 'MT-ATP6']
RIBO_GENES = ['RPS3', 'RPL7', 'RPS6']
CELL_TYPE_MARKERS = {
    'T': ['CD3D', 'CD3E', 'IL7R', 'LTB', 'CCL5'],
    'B': ['MS4A1', 'CD79A', 'CD79B', 'CD19', 'CD74'],
    'Mono': ['LYZ', 'CD14', 'S100A8', 'S100A9', 'CCR5'],
}
# Up in every cell type of the disease samples
DISEASE_UP_GENES = ['ISG15', 'IFI6', 'IFIT1', 'MX1', 'IRF7']
N_GENES = 200

# cells per cell type in each sample; Mono expands in disease
CELLS_PER_TYPE = {
    'control': {'T': 50, 'B': 40, 'Mono': 30},
    'disease': {'T': 30, 'B': 40, 'Mono': 60},
}
SAMPLES = {
    'ctrl_1': ('control', 'a'), 'ctrl_2': ('control', 'b'), 'ctrl_3': ('control', 'a'),
    'dis_1': ('disease', 'b'), 'dis_2': ('disease', 'a'), 'dis_3': ('disease', 'b'),
}


def gene_names() -> list[str]:
    named = MITO_GENES + RIBO_GENES + [g for genes in CELL_TYPE_MARKERS.values() for g in genes] + DISEASE_UP_GENES
    return named + [f"GENE{i}" for i in range(N_GENES - len(named))]


def make_synthetic_adata(seed: int = 0) -> ad.AnnData:
    """Negative binomial UMI counts for 6 samples x 3 cell types with a planted disease effect."""
    rng = np.random.default_rng(seed)
    genes = gene_names()
    gene_idx = {g: i for i, g in enumerate(genes)}
    base_mu = rng.gamma(shape=2.0, scale=1.0, size=len(genes))
    for g in RIBO_GENES:
        base_mu[gene_idx[g]] = 8.0
    for g in MITO_GENES:
        base_mu[gene_idx[g]] = 2.0
    dispersion = 0.2

    blocks, obs_rows = [], []
    for sample, (condition, batch) in SAMPLES.items():
        sample_effect = rng.lognormal(mean=0.0, sigma=0.1, size=len(genes))
        for cell_type, n_cells in CELLS_PER_TYPE[condition].items():
            mu = base_mu * sample_effect
            for g in CELL_TYPE_MARKERS[cell_type]:
                mu[gene_idx[g]] *= 10.0
            if condition == 'disease':
                for g in DISEASE_UP_GENES:
                    mu[gene_idx[g]] *= 6.0
            mu = np.tile(mu, (n_cells, 1)) * rng.lognormal(0.0, 0.2, size=(n_cells, 1))
            r = 1.0 / dispersion
            blocks.append(rng.negative_binomial(r, r / (r + mu)))
            obs_rows += [{'sample': sample, 'condition': condition, 'batch': batch, 'cell_type': cell_type}] * n_cells

    X = sparse.csr_matrix(np.vstack(blocks).astype(np.float32))
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell_{i}" for i in range(len(obs))]
    for col in obs.columns:
        obs[col] = obs[col].astype('category')
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=genes))


@pytest.fixture(scope="module")
def synthetic_adata() -> ad.AnnData:
    """Raw counts in .X; tests copy before modifying."""
    return make_synthetic_adata()


@pytest.fixture(scope="module")
def processed_adata(synthetic_adata) -> ad.AnnData:
    """
    Counts layer, log-normalized .raw (all genes), 100 HVGs scaled in .X,
    PCA, Leiden clusters and UMAP.
    """
    adata = synthetic_adata.copy()
    store_counts_layer(adata)
    normalize_log1p(adata)
    adata.raw = adata
    select_hvg(adata, n_top_genes=100, flavor='seurat', subset=True)
    scale_data(adata, max_value=10)
    reduce_dimensionality(adata, n_comps=15, random_state=0)
    perform_clustering(adata, n_neighbors=15, resolution=0.5, random_state=0, calculate_umap=True)
    return adata
