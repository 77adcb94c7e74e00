# scrnaseq_workshop/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings
from scipy import sparse
from sklearn.decomposition import NMF

log = logging.getLogger(__name__)


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 50,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) to reduce the dimensionality.

    Uses scanpy.tl.pca. Stores PCA results in adata.obsm['X_pca'] and
    related info (variance, variance ratio, loadings) in adata.uns['pca']
    and adata.varm['PCs']. Assumes data has been normalized, log1p'd and scaled.

    Args:
        adata: The annotated data matrix (typically after scaling).
        n_comps: Number of principal components to compute. Defaults to 50.
               Lowered to min(n_obs, n_vars) - 1 with a warning if too large.
        random_state: Random seed for the SVD solver. Defaults to 0.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with PCA results.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer or cannot be adjusted.
        RuntimeError: If the underlying scanpy PCA function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, int) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")
    if adata.X is None:
        raise AttributeError("Cannot perform PCA: AnnData object does not have a suitable '.X' attribute.")

    min_dim = min(adata.shape)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise ValueError(f"Cannot compute PCA. Input data has shape {adata.shape}, "
                             f"requiring n_comps < {min_dim}, but minimum is 1.")
        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")
    adata_work = adata if inplace else adata.copy()

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack',
            random_state=random_state, zero_center=True, copy=False
        )
    except ValueError as ve:
        log.error(f"ValueError during PCA: {ve}", exc_info=True)
        raise ValueError(f"Input value error during PCA: {ve}") from ve
    except Exception as e:
        log.error(f"Unexpected error during PCA: {e}", exc_info=True)
        raise RuntimeError(f"Failed PCA: {e}") from e

    if 'X_pca' not in adata_work.obsm:
        raise RuntimeError("PCA calc finished but 'X_pca' not found.")
    log.info(f"PCA completed. Results in .obsm['X_pca'] ({adata_work.obsm['X_pca'].shape}), .uns['pca'], .varm['PCs'].")

    if not inplace:
        return adata_work
    return None


def run_nmf(
    adata: ad.AnnData,
    n_components: int = 10,
    use_raw: bool = False,
    use_hvg: bool = True,
    max_iter: int = 500,
    random_state: int = 0,
    key_added: str = 'nmf',
) -> None:
    """
    Factorizes expression into non-negative gene programs (scikit-learn NMF).

    The input is the log-normalized matrix, which must be non-negative: take it from
    adata.raw (use_raw=True) when adata.X has been scaled. Modifies adata inplace:

        - adata.obsm[f'X_{key_added}']: cell x program usage matrix (W)
        - adata.varm[key_added]: gene x program loadings (H.T); zeros for genes not
          used in the fit
        - adata.uns[key_added]: parameters, fitted genes and reconstruction error

    Raises:
        ValueError: If the selected matrix has negative entries or n_components is invalid.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_components, int) or n_components <= 0:
        raise ValueError("Argument 'n_components' must be a positive integer.")

    gene_mask = np.ones(adata.n_vars, dtype=bool)
    if use_hvg and 'highly_variable' in adata.var:
        gene_mask = adata.var['highly_variable'].to_numpy(dtype=bool)
    genes = adata.var_names[gene_mask]

    if use_raw:
        if adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        X = adata.raw[:, genes].X
    else:
        X = adata[:, genes].X

    min_value = X.min() if not sparse.issparse(X) else (X.data.min() if X.nnz else 0)
    if min_value < 0:
        raise ValueError("NMF requires non-negative input. adata.X looks scaled; use use_raw=True "
                         "or run NMF before scaling.")

    max_components = min(X.shape)
    if n_components > max_components:
        log.warning(f"n_components ({n_components}) exceeds matrix rank bound {max_components}. "
                    f"Using {max_components}.")
        n_components = max_components

    log.info(f"Running NMF with {n_components} programs on {X.shape[0]} cells x {X.shape[1]} genes.")
    model = NMF(n_components=n_components, init='nndsvda', max_iter=max_iter, random_state=random_state)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=UserWarning)
            usage = model.fit_transform(X)
    except Exception as e:
        log.error(f"NMF failed: {e}", exc_info=True)
        raise RuntimeError(f"Failed NMF: {e}") from e

    loadings = np.zeros((adata.n_vars, n_components), dtype=np.float32)
    loadings[gene_mask, :] = model.components_.T

    adata.obsm[f'X_{key_added}'] = usage.astype(np.float32)
    adata.varm[key_added] = loadings
    adata.uns[key_added] = {
        'params': {'n_components': n_components, 'use_raw': use_raw, 'use_hvg': use_hvg,
                   'max_iter': max_iter, 'random_state': random_state},
        'genes': np.asarray(genes),
        'reconstruction_err': float(model.reconstruction_err_),
        'n_iter': int(model.n_iter_),
    }
    log.info(f"NMF finished after {model.n_iter_} iterations (reconstruction error {model.reconstruction_err_:.3f}).")


def top_program_genes(adata: ad.AnnData, key: str = 'nmf', n_genes: int = 20) -> pd.DataFrame:
    """Returns the highest-loading genes of every NMF program as a long table."""
    if key not in adata.varm:
        raise KeyError(f"Loadings '{key}' not found in adata.varm. Run run_nmf first.")

    loadings = np.asarray(adata.varm[key])
    rows = []
    for program in range(loadings.shape[1]):
        order = np.argsort(loadings[:, program])[::-1][:n_genes]
        for rank, idx in enumerate(order, start=1):
            if loadings[idx, program] <= 0:
                break
            rows.append({'program': f'{key}_{program + 1}', 'rank': rank,
                         'gene': adata.var_names[idx], 'loading': float(loadings[idx, program])})
    return pd.DataFrame(rows, columns=['program', 'rank', 'gene', 'loading'])
