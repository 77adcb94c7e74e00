# scrnaseq_workshop/analysis/clustering.py

import scanpy as sc
import anndata as ad
import logging
import pandas as pd

log = logging.getLogger(__name__)


def perform_clustering(
    adata: ad.AnnData,
    use_rep: str = 'X_pca',
    n_neighbors: int = 15,
    n_pcs: int | None = None,
    resolution: float = 1.0,
    random_state: int = 0,
    leiden_key_added: str = 'leiden',
    calculate_umap: bool = True,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Computes neighborhood graph, performs Leiden clustering, and optionally UMAP.

    Uses scanpy.pp.neighbors, scanpy.tl.leiden (igraph backend), and optionally
    scanpy.tl.umap. Assumes dimensionality reduction has stored its result in
    adata.obsm[use_rep].

    Args:
        adata: The annotated data matrix (typically after PCA).
        use_rep: Representation in adata.obsm to build the k-NN graph from.
        n_neighbors: Number of neighbors for the k-NN graph. Defaults to 15.
        n_pcs: Number of leading components of `use_rep` to use. None uses all.
        resolution: Leiden resolution; higher values give more clusters.
        random_state: Seed shared by the graph, Leiden and UMAP.
        leiden_key_added: obs column for the cluster labels.
        calculate_umap: Whether to calculate UMAP embedding (adata.obsm['X_umap']).
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `use_rep` is not found in `adata.obsm`.
        ValueError: If `n_neighbors` or `resolution` are invalid.
        RuntimeError: If the underlying scanpy functions fail.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm. Run dimensionality reduction first.")
    if not isinstance(n_neighbors, int) or n_neighbors <= 0:
        raise ValueError("Argument 'n_neighbors' must be a positive integer.")
    if not isinstance(resolution, (int, float)) or resolution <= 0:
        raise ValueError("Argument 'resolution' must be a positive number.")

    log.info(
        f"Performing clustering using {use_rep}: n_neighbors={n_neighbors}, "
        f"resolution={resolution}, random_state={random_state}. UMAP calculation: {calculate_umap}."
    )

    adata_work = adata if inplace else adata.copy()

    try:
        sc.pp.neighbors(
            adata_work,
            n_neighbors=n_neighbors,
            n_pcs=n_pcs,
            use_rep=use_rep,
            random_state=random_state,
        )
        if 'connectivities' not in adata_work.obsp:
            raise RuntimeError("scanpy.pp.neighbors finished but 'connectivities' not found in adata.obsp.")

        sc.tl.leiden(
            adata_work,
            resolution=resolution,
            random_state=random_state,
            key_added=leiden_key_added,
            flavor='igraph',
            n_iterations=2,
            directed=False,
        )
        n_clusters_found = adata_work.obs[leiden_key_added].nunique()
        log.info(f"Leiden clustering found {n_clusters_found} clusters. Results in adata.obs['{leiden_key_added}'].")

        if calculate_umap:
            log.info("Calculating UMAP embedding...")
            sc.tl.umap(adata_work, random_state=random_state)
            if 'X_umap' not in adata_work.obsm:
                raise RuntimeError("scanpy.tl.umap finished but 'X_umap' not found in adata.obsm.")
            adata_work.uns.setdefault('umap', {})['params'] = {'random_state': random_state}
        else:
            log.info("Skipping UMAP calculation as requested.")

    except Exception as e:
        log.error(f"An error occurred during neighbors calculation, clustering or UMAP: {e}", exc_info=True)
        raise RuntimeError(f"Failed during clustering/UMAP steps: {e}") from e

    if not inplace:
        return adata_work
    return None


def cluster_purity(adata: ad.AnnData, cluster_key: str, label_key: str) -> pd.DataFrame:
    """
    Summarizes how homogeneous each cluster is with respect to a label column.

    Returns one row per cluster with the dominant label, its proportion ('purity')
    and the cluster size. Mixed clusters (low purity) are usually excluded before
    per-cell-type pseudobulk testing.
    """
    for key in (cluster_key, label_key):
        if key not in adata.obs:
            raise KeyError(f"Key '{key}' not found in adata.obs.")

    composition = pd.crosstab(adata.obs[cluster_key], adata.obs[label_key], normalize='index')
    sizes = adata.obs[cluster_key].value_counts()
    purity = pd.DataFrame({
        'cluster': composition.index.astype(str),
        'dominant_label': composition.idxmax(axis=1).astype(str).values,
        'purity': composition.max(axis=1).values,
        'n_cells': sizes.reindex(composition.index).values,
    })
    return purity.sort_values('purity', ascending=False).reset_index(drop=True)
