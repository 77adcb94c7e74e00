# scrnaseq_workshop/analysis/dge.py

import scanpy as sc
import anndata as ad
import logging
import pandas as pd

log = logging.getLogger(__name__)


def find_marker_genes(
    adata: ad.AnnData,
    groupby: str,
    method: str = 'wilcoxon',
    corr_method: str = 'benjamini-hochberg',
    use_raw: bool | None = None,
    layer: str | None = None,
    key_added: str = 'rank_genes_groups',
    **kwargs
) -> None:
    """
    Finds marker genes for every group (one group vs. the rest of the cells).

    Wraps scanpy.tl.rank_genes_groups. Results are stored inplace in `adata.uns[key_added]`.
    Marker testing treats cells as replicates; use the pseudobulk workflow
    (analysis.differential) to compare conditions across samples.

    Args:
        adata: The annotated data matrix (must contain group labels in .obs).
        groupby: obs column with the group labels (e.g. 'leiden', 'cell_type').
        method: 'wilcoxon', 't-test', 't-test_overestim_var' or 'logreg'.
        corr_method: 'benjamini-hochberg' or 'bonferroni'.
        use_raw: Use `adata.raw` (log-normalized, all genes). None picks .raw if present.
        layer: Layer to test instead of .X. Cannot be combined with use_raw=True.
        key_added: Key under which the results dictionary is stored in `adata.uns`.
        **kwargs: Passed to `sc.tl.rank_genes_groups` (e.g. `n_genes`, `pts`).

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `groupby` key is not found in `adata.obs`.
        ValueError: If `use_raw=True` but `adata.raw` is None.
        RuntimeError: If the underlying scanpy function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")

    if use_raw is None:
        use_raw_calc = adata.raw is not None and layer is None
    else:
        use_raw_calc = use_raw
        if use_raw_calc and adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
    if use_raw_calc and layer is not None:
        raise ValueError("Arguments 'use_raw' and 'layer' cannot both be set.")

    source = f"layers['{layer}']" if layer else ('adata.raw.X' if use_raw_calc else 'adata.X')
    log.info(f"Finding marker genes using '{method}' for groups in '{groupby}' on {source}. "
             f"Correction: '{corr_method}'. Results key: '{key_added}'.")

    # Scanpy needs a categorical grouping
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype('category')

    try:
        sc.tl.rank_genes_groups(
            adata,
            groupby=groupby,
            method=method,
            corr_method=corr_method,
            use_raw=use_raw_calc,
            layer=layer,
            key_added=key_added,
            **kwargs
        )
    except Exception as e:
        log.error(f"An error occurred during marker gene identification: {e}", exc_info=True)
        raise RuntimeError(f"Failed during marker gene identification: {e}") from e

    if key_added not in adata.uns:
        raise RuntimeError(f"sc.tl.rank_genes_groups finished but '{key_added}' not found in adata.uns.")
    log.info(f"Marker gene analysis completed. Results stored in adata.uns['{key_added}'].")


def get_marker_table(
    adata: ad.AnnData,
    key: str = 'rank_genes_groups',
    group: str | list[str] | None = None,
    pval_cutoff: float | None = None,
    log2fc_min: float | None = None,
) -> pd.DataFrame:
    """
    Flattens marker results into one long DataFrame (one row per group x gene).

    Columns follow scanpy.get.rank_genes_groups_df: 'group', 'names', 'scores',
    'logfoldchanges', 'pvals', 'pvals_adj' (plus 'pct_nz_*' when pts were computed).
    """
    if key not in adata.uns:
        raise KeyError(f"Marker results '{key}' not found in adata.uns. Run find_marker_genes first.")

    table = sc.get.rank_genes_groups_df(
        adata, group=group, key=key, pval_cutoff=pval_cutoff, log2fc_min=log2fc_min
    )
    if 'group' not in table.columns:
        # Single group requested: scanpy omits the column
        table.insert(0, 'group', group if isinstance(group, str) else group[0])
    log.info(f"Extracted {len(table)} marker rows from adata.uns['{key}'].")
    return table
