# scrnaseq_workshop/analysis/communication.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
from scipy import sparse
from statsmodels.stats.multitest import multipletests

log = logging.getLogger(__name__)

COMMUNICATION_COLUMNS = [
    'source', 'target', 'ligand', 'receptor', 'interaction_name',
    'ligand_mean', 'receptor_mean', 'score', 'pvalue', 'padj',
]


def _expression(adata: ad.AnnData, genes: list[str], use_raw: bool | None, layer: str | None) -> np.ndarray:
    """Dense cells x genes matrix of the requested genes from .raw, a layer or .X."""
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found in adata.layers.")
        X = adata[:, genes].layers[layer]
    elif use_raw:
        if adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        X = adata.raw[:, genes].X
    else:
        X = adata[:, genes].X
    return X.toarray() if sparse.issparse(X) else np.asarray(X, dtype=np.float64)


def _available_genes(adata: ad.AnnData, use_raw: bool, layer: str | None) -> pd.Index:
    if use_raw and layer is None:
        if adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        return adata.raw.var_names
    return adata.var_names


def _group_codes(adata: ad.AnnData, group_key: str) -> tuple[np.ndarray, np.ndarray]:
    if group_key not in adata.obs:
        raise KeyError(f"Group key '{group_key}' not found in adata.obs.")
    codes, names = pd.factorize(adata.obs[group_key].astype(str).to_numpy(), sort=True)
    return codes, np.asarray(names)


def _group_stats(X: np.ndarray, codes: np.ndarray, n_groups: int) -> tuple[np.ndarray, np.ndarray]:
    """Per-group mean expression and fraction of expressing cells (groups x genes)."""
    onehot = sparse.csr_matrix((np.ones(len(codes)), (codes, np.arange(len(codes)))), shape=(n_groups, len(codes)))
    sizes = np.bincount(codes, minlength=n_groups)[:, None]
    means = np.asarray(onehot @ X) / sizes
    detected = np.asarray(onehot @ (X > 0).astype(np.float64)) / sizes
    return means, detected


def group_mean_expression(
    adata: ad.AnnData,
    group_key: str,
    genes: list[str] | None = None,
    use_raw: bool | None = None,
    layer: str | None = None,
) -> pd.DataFrame:
    """Mean expression of `genes` (default: all) in every group, as a groups x genes DataFrame."""
    use_raw_calc = adata.raw is not None and layer is None if use_raw is None else use_raw
    available = _available_genes(adata, use_raw_calc, layer)
    genes = list(available) if genes is None else list(genes)
    missing = [g for g in genes if g not in available]
    if missing:
        raise KeyError(f"Genes not found: {missing[:10]}{'...' if len(missing) > 10 else ''}")

    codes, names = _group_codes(adata, group_key)
    X = _expression(adata, genes, use_raw_calc, layer)
    means, _ = _group_stats(X, codes, len(names))
    return pd.DataFrame(means, index=pd.Index(names, name=group_key), columns=genes)


def _complex_values(stats: np.ndarray, subunit_idx: list[list[int]], how: str) -> np.ndarray:
    """Collapses subunit columns into one value per complex (groups x complexes)."""
    out = np.empty((stats.shape[0], len(subunit_idx)))
    for j, idx in enumerate(subunit_idx):
        block = stats[:, idx]
        if how == 'geometric':
            with np.errstate(divide='ignore'):
                out[:, j] = np.where((block > 0).all(axis=1), np.exp(np.log(np.where(block > 0, block, 1.0)).mean(axis=1)), 0.0)
        else:
            out[:, j] = block.min(axis=1)
    return out


def score_ligand_receptor(
    adata: ad.AnnData,
    lr_pairs: pd.DataFrame,
    group_key: str,
    n_permutations: int = 100,
    min_pct: float = 0.1,
    use_raw: bool | None = None,
    layer: str | None = None,
    random_state: int = 0,
) -> pd.DataFrame:
    """
    Scores ligand-receptor communication between every pair of cell groups.

    For sender group s and receiver group r the score of a pair is
    mean(ligand in s) * mean(receptor in r) on log-normalized expression. Multi-subunit
    ligands or receptors ('A_B') use the geometric mean of their subunits, and count as
    detected in a group only when every subunit is. A pair is reported for (s, r) only
    when the ligand is detected in at least `min_pct` of s and the receptor in at least
    `min_pct` of r. Group labels are permuted `n_permutations` times; the p-value is
    (1 + #{null score >= observed}) / (n_permutations + 1), BH-adjusted over all
    reported rows.

    Args:
        adata: Data with log-normalized expression (adata.raw by default when present).
        lr_pairs: DataFrame with 'ligand' and 'receptor' columns (see load_lr_pairs).
        group_key: obs column with cell groups (cell types or clusters).
        n_permutations: Number of label permutations. 0 skips p-values.
        min_pct: Minimum fraction of expressing cells for ligand (sender) and receptor (receiver).
        use_raw: Read expression from adata.raw. None uses .raw when present.
        layer: Read expression from this layer instead.
        random_state: Seed for the permutations.

    Returns:
        Long DataFrame, one row per (source, target, ligand, receptor), sorted by p-value
        and descending score.

    Raises:
        ValueError: If expression has negative values (scaled data) or no pair is measurable.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    missing_cols = [c for c in ('ligand', 'receptor') if c not in lr_pairs.columns]
    if missing_cols:
        raise ValueError(f"lr_pairs is missing required columns: {missing_cols}")
    if not 0 <= min_pct <= 1:
        raise ValueError("min_pct must be between 0 and 1.")

    use_raw_calc = adata.raw is not None and layer is None if use_raw is None else use_raw
    available = set(_available_genes(adata, use_raw_calc, layer))

    pairs = lr_pairs.reset_index(drop=True)
    ligand_units = [str(l).split('_') for l in pairs['ligand']]
    receptor_units = [str(r).split('_') for r in pairs['receptor']]
    measurable = np.array([
        all(g in available for g in lu + ru) for lu, ru in zip(ligand_units, receptor_units)
    ])
    if not measurable.any():
        raise ValueError("None of the ligand-receptor pairs has all its genes measured.")
    if (~measurable).any():
        log.warning(f"{int((~measurable).sum())} of {len(pairs)} ligand-receptor pairs have unmeasured genes and are skipped.")
    pairs = pairs.loc[measurable].reset_index(drop=True)
    ligand_units = [u for u, m in zip(ligand_units, measurable) if m]
    receptor_units = [u for u, m in zip(receptor_units, measurable) if m]

    genes = sorted({g for units in ligand_units + receptor_units for g in units})
    gene_pos = {g: i for i, g in enumerate(genes)}
    lig_idx = [[gene_pos[g] for g in units] for units in ligand_units]
    rec_idx = [[gene_pos[g] for g in units] for units in receptor_units]

    X = _expression(adata, genes, use_raw_calc, layer)
    if X.size and X.min() < 0:
        raise ValueError("Expression has negative values (scaled data?). Use log-normalized values (adata.raw or a layer).")

    codes, names = _group_codes(adata, group_key)
    n_groups = len(names)
    log.info(f"Scoring {len(pairs)} ligand-receptor pairs across {n_groups} groups "
             f"({n_permutations} permutations, min_pct={min_pct}).")

    means, detected = _group_stats(X, codes, n_groups)
    lig_mean = _complex_values(means, lig_idx, 'geometric')
    rec_mean = _complex_values(means, rec_idx, 'geometric')
    lig_pct = _complex_values(detected, lig_idx, 'min')
    rec_pct = _complex_values(detected, rec_idx, 'min')

    # scores[p, s, r]: pair p from sender s to receiver r
    scores = lig_mean.T[:, :, None] * rec_mean.T[:, None, :]
    expressed = (lig_pct.T[:, :, None] >= min_pct) & (rec_pct.T[:, None, :] >= min_pct) & (scores > 0)

    exceed = np.zeros_like(scores)
    if n_permutations > 0:
        rng = np.random.default_rng(random_state)
        for _ in range(n_permutations):
            perm_means, _ = _group_stats(X, rng.permutation(codes), n_groups)
            perm_scores = (_complex_values(perm_means, lig_idx, 'geometric').T[:, :, None]
                           * _complex_values(perm_means, rec_idx, 'geometric').T[:, None, :])
            exceed += perm_scores >= scores
        pvalues = (exceed + 1) / (n_permutations + 1)
    else:
        pvalues = np.full_like(scores, np.nan)

    p_idx, s_idx, r_idx = np.nonzero(expressed)
    results = pd.DataFrame({
        'source': names[s_idx],
        'target': names[r_idx],
        'ligand': pairs['ligand'].to_numpy()[p_idx],
        'receptor': pairs['receptor'].to_numpy()[p_idx],
        'ligand_mean': lig_mean[s_idx, p_idx],
        'receptor_mean': rec_mean[r_idx, p_idx],
        'score': scores[p_idx, s_idx, r_idx],
        'pvalue': pvalues[p_idx, s_idx, r_idx],
    })
    results['interaction_name'] = results['ligand'] + ' - ' + results['receptor']
    if 'pathway' in pairs.columns:
        results['pathway'] = pairs['pathway'].to_numpy()[p_idx]

    results['padj'] = np.nan
    if n_permutations > 0 and len(results):
        results['padj'] = multipletests(results['pvalue'].to_numpy(), method='fdr_bh')[1]

    columns = COMMUNICATION_COLUMNS + (['pathway'] if 'pathway' in results.columns else [])
    log.info(f"Reported {len(results)} expressed sender-receiver interactions.")
    return (results[columns]
            .sort_values(['pvalue', 'score'], ascending=[True, False])
            .reset_index(drop=True))


def interaction_counts(
    results: pd.DataFrame,
    pvalue_cutoff: float = 0.05,
    weight: str | None = None,
    pvalue_key: str = 'pvalue',
) -> pd.DataFrame:
    """
    Sender x receiver matrix summarizing significant interactions.

    Counts interactions whose `pvalue_key` column ('pvalue' or 'padj') is below
    pvalue_cutoff, or sums the column named by `weight` (e.g. 'score') over them.
    Groups that only appear in non-significant rows are kept with zeros.
    """
    for col in ('source', 'target', pvalue_key):
        if col not in results.columns:
            raise KeyError(f"Communication results are missing column '{col}'.")
    groups = sorted(set(results['source']) | set(results['target']))
    significant = results[results[pvalue_key] < pvalue_cutoff]
    if weight is None:
        matrix = significant.groupby(['source', 'target']).size()
    else:
        matrix = significant.groupby(['source', 'target'])[weight].sum()
    matrix = matrix.unstack(fill_value=0).reindex(index=groups, columns=groups, fill_value=0)
    matrix.index.name = 'source'
    matrix.columns.name = 'target'
    return matrix
