# scrnaseq_workshop/analysis/annotation.py

import scanpy as sc
import anndata as ad
import logging
import pandas as pd

from ..data.loader import load_gene_sets

# --- CellTypist Import Handling ---
try:
    import celltypist
    from celltypist import models
    CELLTYPIST_INSTALLED = True
except ImportError:
    celltypist = None
    models = None
    CELLTYPIST_INSTALLED = False
# --- END ---

log = logging.getLogger(__name__)


def load_marker_dict(file_path: str) -> dict[str, list[str]]:
    """Loads a cell type -> marker genes mapping from a JSON or GMT file."""
    if not file_path:
        raise ValueError("No marker file path provided.")
    marker_dict = load_gene_sets(file_path)
    log.info(f"Loaded markers for {len(marker_dict)} cell types from {file_path}")
    return marker_dict


def annotate_cell_types(
    adata: ad.AnnData,
    marker_dict: dict,
    groupby: str,
    rank_key: str = 'rank_genes_groups',
    annotation_key: str = 'cell_type',
    method: str = 'overlap_count',
    top_n_markers: int = 50,
    **kwargs
) -> pd.DataFrame:
    """
    Labels each group with the cell type whose markers overlap its ranked markers most.

    Runs scanpy.tl.marker_gene_overlap on the rank_genes_groups result `rank_key`
    (top `top_n_markers` genes per group) and writes the best-scoring cell type of
    every group to adata.obs[annotation_key]. Groups without any overlap are
    labelled 'Unknown'.

    Returns:
        The overlap matrix (cell types x groups) from scanpy.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(marker_dict, dict) or not marker_dict:
        raise TypeError("Input 'marker_dict' must be a non-empty dictionary.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if rank_key not in adata.uns:
        raise KeyError(f"Rank genes groups key '{rank_key}' not found in adata.uns.")

    log.info(f"Marker overlap annotation of '{groupby}' groups from '{rank_key}' (method '{method}').")
    try:
        overlap = sc.tl.marker_gene_overlap(
            adata, {k: set(v) for k, v in marker_dict.items()}, key=rank_key, method=method,
            top_n_markers=top_n_markers, inplace=False, **kwargs
        )
    except Exception as e:
        log.error(f"Error during marker overlap annotation: {e}", exc_info=True)
        raise RuntimeError(f"Failed marker overlap annotation: {e}") from e

    best = overlap.idxmax(axis=0).where(overlap.max(axis=0) > 0, 'Unknown')
    mapping = {str(group): label for group, label in best.items()}
    adata.obs[annotation_key] = pd.Categorical(adata.obs[groupby].astype(str).map(mapping).fillna('Unknown'))
    adata.uns[f"{annotation_key}_overlap"] = overlap
    log.info(f"Annotated groups into '{annotation_key}': {mapping}")
    return overlap


def annotate_celltypist(
    adata: ad.AnnData,
    model_name: str = "Immune_All_Low.pkl",
    majority_voting: bool = False,
    output_key_prefix: str = "celltypist",
    cluster_key_for_voting: str | None = None,
    **kwargs
) -> None:
    """Performs cell type annotation using a CellTypist model (expects log1p-normalized data)."""
    if not CELLTYPIST_INSTALLED:
        raise ImportError("celltypist not installed.")
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be AnnData.")
    if majority_voting and (cluster_key_for_voting is None or cluster_key_for_voting not in adata.obs):
        raise ValueError("Majority voting requires valid 'cluster_key_for_voting'.")

    log.info(f"Performing CellTypist annotation using model: {model_name} (majority voting: {majority_voting})")
    try:
        model = models.Model.load(model=model_name)
        over_clustering = adata.obs[cluster_key_for_voting].astype(str) if majority_voting else None
        predictions = celltypist.annotate(
            adata, model=model, majority_voting=majority_voting,
            over_clustering=over_clustering, **kwargs
        )
    except Exception as e:
        log.error(f"An error occurred during CellTypist annotation: {e}", exc_info=True)
        raise RuntimeError(f"CellTypist annotation failed: {e}") from e

    labels = predictions.predicted_labels
    if isinstance(labels, pd.DataFrame):
        adata.obs[f"{output_key_prefix}_predicted_labels"] = labels['predicted_labels'].astype('category')
        if majority_voting and 'majority_voting' in labels.columns:
            adata.obs[f"{output_key_prefix}_majority_voting"] = labels['majority_voting'].astype('category')
    else:
        adata.obs[f"{output_key_prefix}_predicted_labels"] = pd.Series(labels).astype('category')

    prob = getattr(predictions, 'probability_matrix', None)
    if isinstance(prob, pd.DataFrame):
        adata.obs[f"{output_key_prefix}_conf_score"] = prob.max(axis=1)
    log.info(f"CellTypist annotation complete. Added '{output_key_prefix}_*' columns to adata.obs.")
    return None
