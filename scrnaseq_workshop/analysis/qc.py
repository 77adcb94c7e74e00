# scrnaseq_workshop/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np

log = logging.getLogger(__name__)


def calculate_qc_metrics(
    adata: ad.AnnData,
    mito_gene_prefix: str = "MT-",
    ribo_gene_prefixes: tuple[str, ...] | None = ("RPS", "RPL"),
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Calculates standard per-cell QC metrics using scanpy.

    Adds the following to adata.obs:
        - 'n_genes_by_counts', 'total_counts'
        - 'total_counts_mt', 'pct_counts_mt'
        - 'total_counts_ribo', 'pct_counts_ribo' (if ribo_gene_prefixes is set)
    Adds boolean 'mt' / 'ribo' columns and per-gene metrics to adata.var.

    Args:
        adata: The annotated data matrix with raw counts in .X.
        mito_gene_prefix: Prefix for mitochondrial genes. "MT-" for human, "mt-" for mouse.
        ribo_gene_prefixes: Prefixes identifying ribosomal protein genes. None disables
                            the ribosomal metrics.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Calculating QC metrics. Mitochondrial prefix: '{mito_gene_prefix}', "
             f"ribosomal prefixes: {ribo_gene_prefixes}")

    adata_copy = adata if inplace else adata.copy()

    gene_classes = {'mt': adata_copy.var_names.str.startswith(mito_gene_prefix)}
    if ribo_gene_prefixes:
        gene_classes['ribo'] = adata_copy.var_names.str.startswith(tuple(ribo_gene_prefixes))

    qc_vars = []
    for name, mask in gene_classes.items():
        adata_copy.var[name] = mask
        n_found = int(np.sum(mask))
        if n_found > 0:
            log.info(f"Found {n_found} '{name}' genes.")
            qc_vars.append(name)
        else:
            log.warning(f"No '{name}' genes found. Columns 'total_counts_{name}' and "
                        f"'pct_counts_{name}' will be zero.")

    try:
        sc.pp.calculate_qc_metrics(
            adata_copy,
            qc_vars=qc_vars,
            percent_top=None,
            log1p=False,
            inplace=True
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    for name in gene_classes:
        if name not in qc_vars:
            adata_copy.obs[f'total_counts_{name}'] = 0.0
            adata_copy.obs[f'pct_counts_{name}'] = 0.0

    log.info("Finished QC metrics calculation step.")

    if not inplace:
        return adata_copy
    return None


def filter_cells_qc(
    adata: ad.AnnData,
    min_genes: int | None = 200,
    max_genes: int | None = None,
    min_counts: int | None = None,
    max_counts: int | None = None,
    max_pct_mito: float | None = 10.0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Filters cells based on calculated QC metrics.

    Assumes `calculate_qc_metrics` has been run previously. A threshold set to None
    disables that filter. Upper bounds on genes/counts are the classic crude doublet filter.

    Raises:
        KeyError: If required QC columns are missing in adata.obs.
        ValueError: If thresholds are illogical (e.g., min > max).
    """
    required_cols = []
    if min_genes is not None or max_genes is not None:
        required_cols.append('n_genes_by_counts')
    if min_counts is not None or max_counts is not None:
        required_cols.append('total_counts')
    if max_pct_mito is not None:
        required_cols.append('pct_counts_mt')

    missing_cols = [col for col in required_cols if col not in adata.obs.columns]
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )

    if min_genes is not None and max_genes is not None and min_genes > max_genes:
        raise ValueError(f"min_genes ({min_genes}) cannot be greater than max_genes ({max_genes}).")
    if min_counts is not None and max_counts is not None and min_counts > max_counts:
        raise ValueError(f"min_counts ({min_counts}) cannot be greater than max_counts ({max_counts}).")
    if max_pct_mito is not None and (max_pct_mito < 0 or max_pct_mito > 100):
        raise ValueError(f"max_pct_mito ({max_pct_mito}) must be between 0 and 100.")

    n_obs_start = adata.n_obs
    log.info(f"Starting filtering with {n_obs_start} cells.")

    obs = adata.obs
    keep = np.ones(adata.n_obs, dtype=bool)
    thresholds = [
        ('min_genes', min_genes, obs.get('n_genes_by_counts'), np.greater_equal),
        ('max_genes', max_genes, obs.get('n_genes_by_counts'), np.less_equal),
        ('min_counts', min_counts, obs.get('total_counts'), np.greater_equal),
        ('max_counts', max_counts, obs.get('total_counts'), np.less_equal),
        ('max_pct_mito', max_pct_mito, obs.get('pct_counts_mt'), np.less),
    ]
    for name, value, metric, op in thresholds:
        if value is None:
            continue
        keep &= op(metric.to_numpy(), value)
        log.info(f"Applied filter: {name} = {value}. Cells remaining: {int(keep.sum())}")

    n_obs_end = int(keep.sum())
    pct_kept = n_obs_end / n_obs_start * 100 if n_obs_start else 0.0
    log.info(f"Filtering complete. Kept {n_obs_end} cells out of {n_obs_start} ({pct_kept:.2f}%).")

    if inplace:
        adata._inplace_subset_obs(keep)
        return None
    return adata[keep, :].copy()


def filter_genes_qc(
    adata: ad.AnnData,
    min_cells: int = 3,
    inplace: bool = True
) -> ad.AnnData | None:
    """Removes genes detected in fewer than `min_cells` cells."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if min_cells is None or min_cells <= 0:
        log.info("Gene filtering disabled (min_cells <= 0).")
        return None if inplace else adata.copy()

    adata_work = adata if inplace else adata.copy()
    n_vars_start = adata_work.n_vars
    sc.pp.filter_genes(adata_work, min_cells=min_cells)
    log.info(f"Gene filter min_cells = {min_cells}: kept {adata_work.n_vars} / {n_vars_start} genes.")

    if not inplace:
        return adata_work
    return None


def detect_doublets(
    adata: ad.AnnData,
    expected_doublet_rate: float = 0.06,
    batch_key: str | None = None,
    random_state: int = 0,
    remove: bool = False,
    **kwargs
) -> None:
    """
    Scores doublets with Scrublet (scanpy.pp.scrublet). Modifies adata inplace.

    Must run on raw counts, before normalization. Adds 'doublet_score' and
    'predicted_doublet' to adata.obs. Doublets are simulated per batch when
    `batch_key` is given (each sample is a separate capture).

    Args:
        adata: The annotated data matrix with raw counts in .X.
        expected_doublet_rate: Expected fraction of doublets. ~0.8% per 1000 cells loaded on 10x.
        batch_key: obs column separating independent captures.
        random_state: Seed for doublet simulation.
        remove: Drop predicted doublets after scoring.
        **kwargs: Passed to scanpy.pp.scrublet (e.g. n_prin_comps, threshold).
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not 0 < expected_doublet_rate < 1:
        raise ValueError("expected_doublet_rate must be between 0 and 1.")
    if batch_key is not None and batch_key not in adata.obs:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs.")

    log.info(f"Running Scrublet doublet detection (expected rate {expected_doublet_rate}, batch_key={batch_key}).")
    try:
        sc.pp.scrublet(
            adata,
            expected_doublet_rate=expected_doublet_rate,
            batch_key=batch_key,
            random_state=random_state,
            **kwargs
        )
    except Exception as e:
        log.error(f"Scrublet failed: {e}", exc_info=True)
        raise RuntimeError(f"Failed doublet detection: {e}") from e

    # Scrublet leaves predictions empty when it cannot place a threshold
    adata.obs['predicted_doublet'] = adata.obs['predicted_doublet'].fillna(False).astype(bool)
    n_doublets = int(adata.obs['predicted_doublet'].sum())
    log.info(f"Scrublet flagged {n_doublets} / {adata.n_obs} cells as doublets.")

    if remove and n_doublets > 0:
        adata._inplace_subset_obs(~adata.obs['predicted_doublet'].to_numpy())
        log.info(f"Removed predicted doublets. Cells remaining: {adata.n_obs}")
