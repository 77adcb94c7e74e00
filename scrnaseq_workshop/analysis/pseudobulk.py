# scrnaseq_workshop/analysis/pseudobulk.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
from scipy import sparse

log = logging.getLogger(__name__)


def _count_matrix(adata: ad.AnnData, layer: str | None):
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers. Store raw counts before normalization.")
    return adata.layers[layer]


def _sample_level_columns(obs: pd.DataFrame, sample_key: str, exclude: set) -> list[str]:
    """obs columns that hold a single value within every sample."""
    constant = []
    grouped = obs.groupby(sample_key, observed=True)
    for col in obs.columns:
        if col in exclude:
            continue
        if grouped[col].nunique(dropna=False).max() <= 1:
            constant.append(col)
    return constant


def aggregate_pseudobulk(
    adata: ad.AnnData,
    sample_key: str,
    group_key: str | None = None,
    layer: str | None = 'counts',
    min_cells: int = 10,
    carry_obs: list[str] | None = None,
) -> ad.AnnData:
    """
    Sums raw counts of all cells sharing a (sample, group) pair.

    Each pseudobulk profile behaves like a bulk RNA-seq library, so replicates are
    samples rather than cells. Profiles built from fewer than `min_cells` cells are
    dropped.

    Args:
        adata: Single-cell data with raw counts in `layer` (or .X when layer is None).
        sample_key: obs column identifying the biological sample / donor.
        group_key: obs column with cell type or cluster labels. None aggregates whole samples.
        layer: Layer with raw integer counts. Defaults to 'counts'.
        min_cells: Minimum number of cells for a profile to be kept.
        carry_obs: Sample-level obs columns to copy onto the profiles. Columns that hold
                   one value per sample (e.g. condition, sex) are carried automatically.

    Returns:
        AnnData with one row per retained (sample, group) pair: X holds summed counts,
        obs holds 'sample', 'group', 'n_cells' and the carried metadata.

    Raises:
        KeyError: If sample/group keys or the layer are missing.
        ValueError: If counts are negative, or a carry_obs column varies within a sample,
                    or no profile reaches min_cells.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    for key in [sample_key] + ([group_key] if group_key else []):
        if key not in adata.obs:
            raise KeyError(f"Key '{key}' not found in adata.obs.")
    if min_cells < 1:
        raise ValueError("min_cells must be at least 1.")

    X = _count_matrix(adata, layer)
    min_value = X.min() if not sparse.issparse(X) else (X.data.min() if X.nnz else 0)
    if min_value < 0:
        raise ValueError("Pseudobulk aggregation requires non-negative counts; the selected matrix has negative values.")

    obs = adata.obs
    samples = obs[sample_key].astype(str)
    groups = obs[group_key].astype(str) if group_key else pd.Series('all', index=obs.index)
    pairs = pd.MultiIndex.from_arrays([samples, groups], names=['sample', 'group'])
    codes, uniques = pd.factorize(pairs, sort=True)

    log.info(f"Aggregating {adata.n_obs} cells into {len(uniques)} pseudobulk profiles "
             f"(sample_key='{sample_key}', group_key='{group_key}', layer='{layer}').")

    indicator = sparse.csr_matrix(
        (np.ones(adata.n_obs), (codes, np.arange(adata.n_obs))),
        shape=(len(uniques), adata.n_obs)
    )
    summed = indicator @ X
    summed = summed.toarray() if sparse.issparse(summed) else np.asarray(summed)
    n_cells = np.bincount(codes, minlength=len(uniques))

    keep = n_cells >= min_cells
    n_dropped = int((~keep).sum())
    if n_dropped:
        dropped = [f"{s}/{g}" for (s, g), k in zip(uniques, keep) if not k]
        log.warning(f"Dropping {n_dropped} profiles with fewer than {min_cells} cells: {dropped}")
    if not keep.any():
        raise ValueError(f"No (sample, group) pair has at least {min_cells} cells.")

    pb_obs = pd.DataFrame(
        {'sample': [s for s, _ in uniques], 'group': [g for _, g in uniques], 'n_cells': n_cells},
    )

    exclude = {sample_key, group_key} if group_key else {sample_key}
    carried = _sample_level_columns(obs, sample_key, exclude)
    if carry_obs:
        missing = [c for c in carry_obs if c not in obs]
        if missing:
            raise KeyError(f"carry_obs columns not found in adata.obs: {missing}")
        varying = [c for c in carry_obs if c not in carried and c not in exclude]
        if varying:
            raise ValueError(f"carry_obs columns vary within a sample and cannot be carried: {varying}")
    sample_meta = obs.groupby(samples.values, observed=True)[carried].first() if carried else None
    for col in carried:
        values = sample_meta[col].reindex(pb_obs['sample']).values
        pb_obs[col] = pd.Categorical(values) if isinstance(obs[col].dtype, pd.CategoricalDtype) else values

    pb_obs = pb_obs.loc[keep].reset_index(drop=True)
    names = pd.Index(pb_obs['sample'] + '_' + pb_obs['group'])
    if not names.is_unique:
        clashes = sorted(set(names[names.duplicated()]))
        raise ValueError(f"Sample and group labels give ambiguous profile names {clashes}; "
                         "rename labels so that '<sample>_<group>' is unique.")
    pb_obs.index = names.values
    pb_obs['sample'] = pb_obs['sample'].astype('category')
    pb_obs['group'] = pb_obs['group'].astype('category')

    pb = ad.AnnData(
        X=summed[keep].astype(np.float64),
        obs=pb_obs,
        var=pd.DataFrame(index=adata.var_names.copy()),
    )
    pb.uns['pseudobulk'] = {
        'sample_key': sample_key, 'group_key': group_key if group_key else 'all',
        'layer': layer if layer else 'X', 'min_cells': min_cells,
    }
    log.info(f"Created pseudobulk matrix with {pb.n_obs} profiles x {pb.n_vars} genes. "
             f"Carried sample metadata: {carried}")
    return pb


def filter_pseudobulk_genes(
    pb: ad.AnnData,
    min_count: int = 10,
    min_samples: int = 2,
) -> ad.AnnData:
    """Keeps genes with at least `min_count` counts in at least `min_samples` profiles."""
    if not isinstance(pb, ad.AnnData):
        raise TypeError("Input 'pb' must be an AnnData object.")
    counts = pb.X.toarray() if sparse.issparse(pb.X) else np.asarray(pb.X)
    keep = (counts >= min_count).sum(axis=0) >= min_samples
    log.info(f"Pseudobulk gene filter (min_count={min_count}, min_samples={min_samples}): "
             f"kept {int(keep.sum())} / {pb.n_vars} genes.")
    return pb[:, keep].copy()
