# scrnaseq_workshop/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from scipy import sparse

log = logging.getLogger(__name__)


def store_counts_layer(adata: ad.AnnData, layer: str = 'counts', overwrite: bool = False) -> None:
    """
    Copies the current adata.X into adata.layers[layer].

    Run this before normalization: pseudobulk aggregation and count-based models
    read the untouched UMI counts from this layer.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if layer in adata.layers and not overwrite:
        log.info(f"Layer '{layer}' already present. Keeping existing counts.")
        return
    adata.layers[layer] = adata.X.copy()
    log.info(f"Stored raw counts in adata.layers['{layer}'].")


def _looks_like_counts(X) -> bool:
    values = X.data if sparse.issparse(X) else np.asarray(X)
    if values.size == 0:
        return True
    if np.issubdtype(values.dtype, np.integer):
        return values.min() >= 0
    return values.min() >= 0 and np.allclose(np.modf(values)[0], 0)


def normalize_log1p(
    adata: ad.AnnData,
    target_sum: float | None = 1e4,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Normalizes counts per cell to target_sum and log1p transforms the data.

    Uses scanpy.pp.normalize_total and scanpy.pp.log1p. Stores the result in adata.X.

    Args:
        adata: The annotated data matrix (typically after QC filtering) with raw counts in .X.
        target_sum: Total counts per cell after normalization. None scales to the median
                    library size. Defaults to 1e4.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Normalizing total counts per cell to target_sum={target_sum} and log1p transforming.")

    adata_copy = adata if inplace else adata.copy()

    if not _looks_like_counts(adata_copy.X):
        log.warning("Data in adata.X does not look like raw counts (negative values or non-integers found). "
                    "Normalization and log1p transformation assume raw counts.")

    try:
        sc.pp.normalize_total(adata_copy, target_sum=target_sum, inplace=True)
        sc.pp.log1p(adata_copy)
        log.info("Normalization and log1p transformation complete.")
    except Exception as e:
        log.error(f"Error during normalization/log1p: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log1p data: {e}") from e

    if not inplace:
        return adata_copy
    return None


def select_hvg(
    adata: ad.AnnData,
    n_top_genes: int | None = 2000,
    flavor: str = 'seurat_v3',
    subset: bool = True,
    batch_key: str | None = None,
    counts_layer: str | None = 'counts',
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Selects Highly Variable Genes (HVGs) with scanpy.pp.highly_variable_genes.

    The 'seurat_v3' flavor models raw counts, so it reads `counts_layer` when that layer
    exists; the other flavors use the log-normalized adata.X.

    Args:
        adata: The annotated data matrix (after normalization and log1p).
        n_top_genes: Number of highly variable genes to select. Capped at n_vars.
        flavor: 'seurat', 'cell_ranger' or 'seurat_v3'.
        subset: If True, subset the AnnData object to the selected HVGs.
        batch_key: obs column for batch-aware selection (e.g. sample).
        counts_layer: Layer with raw counts, used by 'seurat_v3'.
        inplace: Modify AnnData object inplace.

    Returns:
        If inplace=True, returns None. Otherwise the new AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if n_top_genes is not None and n_top_genes <= 0:
        raise ValueError("n_top_genes must be a positive integer or None.")
    if batch_key is not None and batch_key not in adata.obs:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs.")

    if n_top_genes is not None and n_top_genes > adata.n_vars:
        log.warning(f"n_top_genes ({n_top_genes}) exceeds number of genes ({adata.n_vars}). Using all genes.")
        n_top_genes = adata.n_vars

    layer = None
    if flavor == 'seurat_v3':
        if counts_layer is not None and counts_layer in adata.layers:
            layer = counts_layer
        else:
            log.warning("flavor='seurat_v3' expects raw counts but no counts layer was found; using adata.X.")

    log.info(f"Selecting highly variable genes (flavor='{flavor}', n_top_genes={n_top_genes}, layer={layer}).")

    adata_work = adata if inplace else adata.copy()
    try:
        sc.pp.highly_variable_genes(
            adata_work,
            flavor=flavor,
            n_top_genes=n_top_genes,
            batch_key=batch_key,
            layer=layer,
            inplace=True,
            subset=False
        )
    except Exception as e:
        log.error(f"Error during HVG selection: {e}", exc_info=True)
        raise

    n_hvgs = int(adata_work.var['highly_variable'].sum())
    log.info(f"Identified {n_hvgs} highly variable genes.")

    if subset:
        adata_work._inplace_subset_var(adata_work.var['highly_variable'].to_numpy())
        log.info(f"AnnData shape after HVG subsetting: {adata_work.shape}")

    if not inplace:
        return adata_work
    return None


def scale_data(
    adata: ad.AnnData,
    max_value: float | None = 10.0,
    inplace: bool = True
) -> ad.AnnData | None:
    """Scales each gene to unit variance and zero mean, clipping at max_value."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    adata_work = adata if inplace else adata.copy()
    log.info(f"Scaling data (max_value={max_value}).")
    sc.pp.scale(adata_work, max_value=max_value)

    if not inplace:
        return adata_work
    return None
