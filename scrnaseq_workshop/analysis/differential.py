# scrnaseq_workshop/analysis/differential.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
from scipy import sparse
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from .pseudobulk import filter_pseudobulk_genes

log = logging.getLogger(__name__)

DE_COLUMNS = ['gene', 'base_mean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj', 'dispersion']
DISPERSION_FITS = ('parametric', 'mean')


def _design_matrix(obs: pd.DataFrame, condition_key: str, treatment: str, covariates: list[str]) -> pd.DataFrame:
    design = pd.DataFrame(index=obs.index)
    design['intercept'] = 1.0
    design['condition'] = (obs[condition_key].astype(str) == str(treatment)).astype(float)
    for cov in covariates:
        values = obs[cov]
        if pd.api.types.is_numeric_dtype(values) and not isinstance(values.dtype, pd.CategoricalDtype):
            design[cov] = values.astype(float)
        else:
            dummies = pd.get_dummies(values.astype(str), prefix=cov, drop_first=True, dtype=float)
            design = pd.concat([design, dummies], axis=1)
    return design


def _deseq_metadata(obs: pd.DataFrame, condition_key: str, covariates: list[str]) -> pd.DataFrame:
    metadata = pd.DataFrame(index=obs.index.astype(str))
    for col in covariates + [condition_key]:
        values = obs[col]
        if pd.api.types.is_numeric_dtype(values) and not isinstance(values.dtype, pd.CategoricalDtype):
            metadata[col] = values.astype(float).to_numpy()
        else:
            metadata[col] = values.astype(str).to_numpy()
    return metadata


def fit_deseq_dataset(
    pb: ad.AnnData,
    condition_key: str,
    covariates: list[str] | None = None,
    dispersion_fit: str = 'parametric',
) -> DeseqDataSet:
    """
    Fits size factors, dispersions and the negative binomial GLM with PyDESeq2.

    The design is `~ covariates + condition`. Counts are the summed pseudobulk counts in
    pb.X, rounded to integers. Dispersions are estimated gene-wise from the design
    residuals and shrunk toward the `dispersion_fit` trend ('parametric' or 'mean').

    Raises:
        ValueError: For an unknown dispersion_fit.
        RuntimeError: If PyDESeq2 fails to fit the data.
    """
    if dispersion_fit not in DISPERSION_FITS:
        raise ValueError(f"Unknown dispersion fit '{dispersion_fit}'. Use one of {list(DISPERSION_FITS)}.")
    covariates = list(covariates or [])
    X = pb.X.toarray() if sparse.issparse(pb.X) else np.asarray(pb.X)
    counts = pd.DataFrame(
        np.rint(X).astype(np.int64),
        index=pb.obs_names.astype(str), columns=pb.var_names.astype(str),
    )
    metadata = _deseq_metadata(pb.obs, condition_key, covariates)
    design = "~" + " + ".join(covariates + [condition_key])

    log.info(f"Fitting PyDESeq2 model {design} on {counts.shape[0]} profiles x {counts.shape[1]} genes "
             f"(dispersion trend: {dispersion_fit}).")
    try:
        dds = DeseqDataSet(
            counts=counts, metadata=metadata, design=design,
            refit_cooks=True, fit_type=dispersion_fit, quiet=True,
        )
        dds.deseq2()
    except Exception as e:
        log.error(f"PyDESeq2 fit failed for design {design}: {e}", exc_info=True)
        raise RuntimeError(f"PyDESeq2 fit failed for design {design}: {e}") from e
    return dds


def compare_conditions(
    pb: ad.AnnData,
    condition_key: str,
    reference: str,
    treatment: str,
    covariates: list[str] | None = None,
    dispersion_fit: str = 'parametric',
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Tests every gene for a treatment vs. reference difference with PyDESeq2.

    Profiles from other condition levels are dropped, the model is fitted by
    fit_deseq_dataset and the Wald test on the contrast [condition_key, treatment,
    reference] comes from DeseqStats, with Cook's distance outlier handling and
    independent filtering at `alpha`.

    Args:
        pb: Pseudobulk AnnData (profiles x genes, raw summed counts in .X).
        condition_key: obs column holding the condition of each profile.
        reference: Baseline condition level (denominator of the fold change).
        treatment: Condition level compared against the reference.
        covariates: Extra obs columns for the design (e.g. sex, batch).
        dispersion_fit: Dispersion trend, 'parametric' or 'mean'.
        alpha: Target FDR used by independent filtering.

    Returns:
        DataFrame with columns gene, base_mean, log2FoldChange, lfcSE, stat, pvalue,
        padj, dispersion, sorted by pvalue. Genes without counts or removed by
        independent filtering carry NaN statistics.

    Raises:
        KeyError: If condition_key or a covariate is missing from pb.obs.
        ValueError: If either level has no profiles, or the design is not estimable.
        RuntimeError: If PyDESeq2 fails.
    """
    if not isinstance(pb, ad.AnnData):
        raise TypeError("Input 'pb' must be an AnnData object.")
    covariates = list(covariates or [])
    for key in [condition_key] + covariates:
        if key not in pb.obs:
            raise KeyError(f"Key '{key}' not found in pseudobulk obs.")

    levels = pb.obs[condition_key].astype(str)
    selected = levels.isin([str(reference), str(treatment)]).to_numpy()
    n_ref = int((levels[selected] == str(reference)).sum())
    n_trt = int((levels[selected] == str(treatment)).sum())
    if n_ref == 0 or n_trt == 0:
        raise ValueError(f"Both conditions need profiles: '{reference}' has {n_ref}, '{treatment}' has {n_trt}.")

    sub = pb[selected].copy()
    design = _design_matrix(sub.obs, condition_key, treatment, covariates)
    exog = design.to_numpy()
    if condition_key in covariates or np.linalg.matrix_rank(exog) < exog.shape[1]:
        raise ValueError(f"Design matrix {list(design.columns)} is not full rank; drop confounded covariates.")
    if exog.shape[0] <= exog.shape[1]:
        raise ValueError(f"Design has {exog.shape[1]} coefficients but only {exog.shape[0]} profiles; "
                         "no residual degrees of freedom.")

    log.info(f"Testing {sub.n_vars} genes: '{treatment}' ({n_trt}) vs '{reference}' ({n_ref}).")
    dds = fit_deseq_dataset(sub, condition_key, covariates=covariates, dispersion_fit=dispersion_fit)
    try:
        stats = DeseqStats(dds, contrast=[condition_key, str(treatment), str(reference)], alpha=alpha, quiet=True)
        stats.summary()
    except Exception as e:
        log.error(f"PyDESeq2 Wald test failed for '{treatment}' vs '{reference}': {e}", exc_info=True)
        raise RuntimeError(f"PyDESeq2 Wald test failed for '{treatment}' vs '{reference}': {e}") from e

    res = stats.results_df.rename(columns={'baseMean': 'base_mean'})
    res['dispersion'] = dds.var['dispersions'].reindex(res.index).to_numpy()
    res['gene'] = res.index.to_numpy()
    results = res.reset_index(drop=True)[DE_COLUMNS]
    return results.sort_values('pvalue', na_position='last').reset_index(drop=True)


def run_pseudobulk_de(
    pb: ad.AnnData,
    condition_key: str,
    reference: str,
    treatment: str,
    group_key: str = 'group',
    min_samples_per_condition: int = 2,
    min_count: int = 10,
    min_samples_expr: int = 2,
    covariates: list[str] | None = None,
    dispersion_fit: str = 'parametric',
    padj_cutoff: float = 0.05,
    lfc_cutoff: float = 0.5,
) -> pd.DataFrame:
    """
    Runs compare_conditions separately within every group (cell type / cluster).

    Groups without `min_samples_per_condition` profiles in both conditions are skipped
    with a warning. Within each group, lowly expressed genes are removed with
    filter_pseudobulk_genes before fitting.

    Returns:
        Long DataFrame: 'group', 'contrast' plus the compare_conditions columns and
        'significant' (padj < padj_cutoff and |log2FoldChange| >= lfc_cutoff) and
        'direction' ('up', 'down' or 'ns').
    """
    if not isinstance(pb, ad.AnnData):
        raise TypeError("Input 'pb' must be an AnnData object.")
    for key in (condition_key, group_key):
        if key not in pb.obs:
            raise KeyError(f"Key '{key}' not found in pseudobulk obs.")

    contrast = f"{treatment}_vs_{reference}"
    columns = ['group', 'contrast'] + DE_COLUMNS + ['significant', 'direction']
    all_results = []

    groups = pb.obs[group_key].astype(str)
    for group in sorted(groups.unique()):
        pb_group = pb[(groups == group).to_numpy()]
        conditions = pb_group.obs[condition_key].astype(str)
        n_ref = int((conditions == str(reference)).sum())
        n_trt = int((conditions == str(treatment)).sum())
        if n_ref < min_samples_per_condition or n_trt < min_samples_per_condition:
            log.warning(f"Skipping group '{group}': {n_ref} '{reference}' and {n_trt} '{treatment}' profiles "
                        f"(need {min_samples_per_condition} per condition).")
            continue

        pb_group = filter_pseudobulk_genes(pb_group, min_count=min_count, min_samples=min_samples_expr)
        if pb_group.n_vars == 0:
            log.warning(f"Skipping group '{group}': no genes pass the expression filter.")
            continue

        try:
            res = compare_conditions(
                pb_group, condition_key, reference, treatment,
                covariates=covariates, dispersion_fit=dispersion_fit, alpha=padj_cutoff,
            )
        except ValueError as e:
            log.warning(f"Skipping group '{group}': {e}")
            continue

        res.insert(0, 'contrast', contrast)
        res.insert(0, 'group', group)
        all_results.append(res)
        n_sig = int(((res['padj'] < padj_cutoff) & (res['log2FoldChange'].abs() >= lfc_cutoff)).sum())
        log.info(f"Group '{group}': tested {len(res)} genes, {n_sig} significant.")

    if not all_results:
        log.warning(f"No group could be tested for contrast '{contrast}'.")
        return pd.DataFrame(columns=columns)

    combined = pd.concat(all_results, ignore_index=True)
    combined['significant'] = (combined['padj'] < padj_cutoff) & (combined['log2FoldChange'].abs() >= lfc_cutoff)
    combined['direction'] = np.where(
        combined['significant'], np.where(combined['log2FoldChange'] > 0, 'up', 'down'), 'ns'
    )
    return combined[columns]
