# scrnaseq_workshop/analysis/composition.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

log = logging.getLogger(__name__)

DIVERSITY_INDICES = ('shannon', 'simpson', 'invsimpson')


def composition_table(
    adata: ad.AnnData,
    sample_key: str,
    group_key: str,
    normalize: bool = True,
) -> pd.DataFrame:
    """Cells per group in each sample (samples x groups); row proportions when normalize=True."""
    for key in (sample_key, group_key):
        if key not in adata.obs:
            raise KeyError(f"Key '{key}' not found in adata.obs.")
    table = pd.crosstab(
        adata.obs[sample_key].astype(str),
        adata.obs[group_key].astype(str),
        normalize='index' if normalize else False,
    )
    table.index.name = sample_key
    table.columns.name = group_key
    return table


def diversity_index(
    adata: ad.AnnData,
    sample_key: str,
    group_key: str,
    index: str = 'shannon',
) -> pd.DataFrame:
    """
    Diversity of the group composition of each sample.

    'shannon': -sum(p * ln p); 'simpson': 1 - sum(p^2); 'invsimpson': 1 / sum(p^2).
    Returns a DataFrame with the sample, the index value and the number of cells.
    """
    if index not in DIVERSITY_INDICES:
        raise ValueError(f"Unknown diversity index '{index}'. Choose from {DIVERSITY_INDICES}.")

    counts = composition_table(adata, sample_key, group_key, normalize=False)
    props = counts.div(counts.sum(axis=1), axis=0).to_numpy()
    if index == 'shannon':
        with np.errstate(divide='ignore', invalid='ignore'):
            values = -np.nansum(np.where(props > 0, props * np.log(props), 0.0), axis=1)
    elif index == 'simpson':
        values = 1.0 - (props ** 2).sum(axis=1)
    else:
        values = 1.0 / (props ** 2).sum(axis=1)

    return pd.DataFrame({
        sample_key: counts.index.to_numpy(),
        index: values,
        'n_cells': counts.sum(axis=1).to_numpy(),
    })


def _log2_fold_difference(groups: np.ndarray, is_treatment: np.ndarray, n_groups: int, pseudocount: float) -> np.ndarray:
    treated = np.bincount(groups[is_treatment], minlength=n_groups).astype(float)
    reference = np.bincount(groups[~is_treatment], minlength=n_groups).astype(float)
    prop_t = (treated + pseudocount) / (treated.sum() + pseudocount * n_groups)
    prop_r = (reference + pseudocount) / (reference.sum() + pseudocount * n_groups)
    return np.log2(prop_t / prop_r)


def permutation_test_proportions(
    adata: ad.AnnData,
    group_key: str,
    condition_key: str,
    reference: str,
    treatment: str,
    n_permutations: int = 1000,
    n_bootstrap: int = 1000,
    pseudocount: float = 0.5,
    random_state: int = 0,
) -> pd.DataFrame:
    """
    Tests whether the proportion of each group differs between two conditions.

    The statistic is the log2 fold difference of group proportions (treatment over
    reference), with `pseudocount` added to every group count. Condition labels are
    shuffled across cells to build the null distribution; the two-sided p-value is
    (1 + #{|null| >= |observed|}) / (n_permutations + 1). A 95% interval comes from
    resampling cells with replacement within each condition. P-values are BH-adjusted
    across groups.

    Raises:
        KeyError: If group_key or condition_key are missing.
        ValueError: If either condition has no cells or the counts are invalid.
    """
    for key in (group_key, condition_key):
        if key not in adata.obs:
            raise KeyError(f"Key '{key}' not found in adata.obs.")
    if n_permutations < 1:
        raise ValueError("n_permutations must be at least 1.")

    conditions = adata.obs[condition_key].astype(str).to_numpy()
    in_test = np.isin(conditions, [str(reference), str(treatment)])
    is_treatment = conditions[in_test] == str(treatment)
    n_trt = int(is_treatment.sum())
    n_ref = int((~is_treatment).sum())
    if n_trt == 0 or n_ref == 0:
        raise ValueError(f"Both conditions need cells: '{reference}' has {n_ref}, '{treatment}' has {n_trt}.")

    codes, group_names = pd.factorize(adata.obs[group_key].astype(str).to_numpy()[in_test], sort=True)
    n_groups = len(group_names)
    rng = np.random.default_rng(random_state)

    log.info(f"Permutation test of '{group_key}' proportions: '{treatment}' ({n_trt} cells) vs "
             f"'{reference}' ({n_ref} cells), {n_permutations} permutations, {n_bootstrap} bootstraps.")

    observed = _log2_fold_difference(codes, is_treatment, n_groups, pseudocount)

    exceed = np.zeros(n_groups)
    for _ in range(n_permutations):
        permuted = _log2_fold_difference(codes, rng.permutation(is_treatment), n_groups, pseudocount)
        exceed += np.abs(permuted) >= np.abs(observed)
    pvalues = (exceed + 1) / (n_permutations + 1)

    ci_low = np.full(n_groups, np.nan)
    ci_high = np.full(n_groups, np.nan)
    if n_bootstrap > 0:
        trt_idx = np.flatnonzero(is_treatment)
        ref_idx = np.flatnonzero(~is_treatment)
        boot = np.empty((n_bootstrap, n_groups))
        for b in range(n_bootstrap):
            idx = np.concatenate([rng.choice(trt_idx, size=n_trt), rng.choice(ref_idx, size=n_ref)])
            boot_flags = np.concatenate([np.ones(n_trt, dtype=bool), np.zeros(n_ref, dtype=bool)])
            boot[b] = _log2_fold_difference(codes[idx], boot_flags, n_groups, pseudocount)
        ci_low, ci_high = np.percentile(boot, [2.5, 97.5], axis=0)

    n_ref_group = np.bincount(codes[~is_treatment], minlength=n_groups)
    n_trt_group = np.bincount(codes[is_treatment], minlength=n_groups)
    results = pd.DataFrame({
        'group': np.asarray(group_names),
        'n_reference': n_ref_group,
        'n_treatment': n_trt_group,
        'prop_reference': n_ref_group / n_ref,
        'prop_treatment': n_trt_group / n_trt,
        'log2FD': observed,
        'ci_low': ci_low,
        'ci_high': ci_high,
        'pvalue': pvalues,
        'padj': multipletests(pvalues, method='fdr_bh')[1],
    })
    results['contrast'] = f"{treatment}_vs_{reference}"
    return results.sort_values('log2FD', ascending=False).reset_index(drop=True)
