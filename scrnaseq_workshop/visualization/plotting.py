# scrnaseq_workshop/visualization/plotting.py

import scanpy as sc
import anndata as ad
import logging
import os
import matplotlib.pyplot as plt
import pandas as pd
import numpy as np
from pathlib import Path

log = logging.getLogger(__name__)


def _output_path(output_dir: str, file_prefix: str, file_format: str) -> str:
    if not output_dir:
        raise ValueError("output_dir must be provided")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    return os.path.join(output_dir, f"{file_prefix}.{file_format}")


def _save_current_figure(output_path: str, plot_type: str, dpi: int) -> None:
    """Saves the active matplotlib figure (as left by a scanpy call with show=False) and closes it."""
    try:
        plt.gcf().savefig(output_path, dpi=dpi, bbox_inches='tight')
        log.info(f"Saved {plot_type} plot to {output_path}")
    finally:
        plt.close('all')


def _save_figure(fig, output_path: str, plot_type: str, dpi: int) -> None:
    try:
        fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
        log.info(f"Saved {plot_type} plot to {output_path}")
    finally:
        plt.close(fig)


# --- Scanpy-backed plots ---

def plot_umap(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    file_prefix: str = "umap",
    umap_key: str = 'X_umap',
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> list[str]:
    """
    Saves one UMAP per feature in `color_by` (obs column or gene).

    Unknown features are skipped with a warning. Returns the written paths.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if umap_key not in adata.obsm:
        raise KeyError(f"UMAP key '{umap_key}' not found")
    if not isinstance(color_by, list) or not color_by:
        raise ValueError("color_by must be non-empty list")

    raw_genes = adata.raw.var_names if adata.raw is not None else pd.Index([])
    log.info(f"Generating UMAP plots colored by: {', '.join(color_by)}")
    written = []
    for feature in color_by:
        if feature not in adata.obs.columns and feature not in adata.var_names and feature not in raw_genes:
            log.warning(f"Feature '{feature}' not found. Skipping UMAP plot.")
            continue
        safe_feature = feature.replace('/', '_').replace('\\', '_').replace(' ', '_')
        output_path = _output_path(output_dir, f"{file_prefix}_{safe_feature}", file_format)
        try:
            sc.pl.embedding(adata, basis=umap_key, color=feature, show=False, **kwargs)
            _save_current_figure(output_path, "umap", dpi)
        except Exception as e:
            log.error(f"Failed to generate UMAP plot for '{feature}': {e}", exc_info=True)
            raise RuntimeError(f"UMAP plot for '{feature}' failed: {e}") from e
        written.append(output_path)
    return written


def plot_qc_violin(
    adata: ad.AnnData,
    keys: list[str],
    output_dir: str,
    file_prefix: str = "qc_violin",
    groupby: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str | None:
    """Generates and saves violin plots for QC metrics."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if not isinstance(keys, list) or not keys:
        raise ValueError("keys must be non-empty list")

    missing_keys = [k for k in keys if k not in adata.obs]
    if missing_keys:
        log.warning(f"QC keys not found in adata.obs: {missing_keys}. Skipping violin plots for these.")
        keys = [k for k in keys if k in adata.obs]
        if not keys:
            log.error("No valid QC keys found to plot.")
            return None

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating QC violin plots for: {', '.join(keys)}")
    try:
        sc.pl.violin(adata, keys=keys, groupby=groupby, rotation=90, multi_panel=groupby is None, show=False, **kwargs)
        _save_current_figure(output_path, "violin", dpi)
    except Exception as e:
        log.error(f"Failed to generate QC violin plot: {e}", exc_info=True)
        raise RuntimeError(f"QC violin plot failed: {e}") from e
    return output_path


def _extract_top_marker_genes(adata: ad.AnnData, key: str, n_genes: int) -> list[str]:
    """Unique top `n_genes` marker names per group, in rank order."""
    try:
        names = adata.uns[key]['names']
    except KeyError:
        raise KeyError(f"Structure 'names' not found within adata.uns['{key}'].")
    top_genes = [gene for row in names[:n_genes] for gene in row if isinstance(gene, str)]
    unique = list(dict.fromkeys(top_genes))
    if not unique:
        raise ValueError(f"No valid marker gene names in adata.uns['{key}'].")
    return unique


def plot_rank_genes_groups_dotplot(
    adata: ad.AnnData,
    key: str,
    n_genes: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "dge_dotplot",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str:
    """Generates and saves a dotplot of the top marker genes of every group."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if key not in adata.uns:
        raise KeyError(f"DGE key '{key}' not found")

    groupby_used = groupby or adata.uns[key].get('params', {}).get('groupby')
    if not groupby_used or groupby_used not in adata.obs:
        raise ValueError(f"Invalid groupby key '{groupby_used}'.")

    var_names = _extract_top_marker_genes(adata, key, n_genes)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating DGE dotplot for top {n_genes} genes per group ({len(var_names)} genes).")
    try:
        sc.pl.dotplot(adata, var_names=var_names, groupby=groupby_used, show=False, **kwargs)
        _save_current_figure(output_path, "dotplot", dpi)
    except Exception as e:
        log.error(f"Failed to generate DGE dotplot: {e}", exc_info=True)
        raise RuntimeError(f"DGE dotplot failed: {e}") from e
    return output_path


# --- Result-table plots ---

def plot_volcano(
    de_results: pd.DataFrame,
    output_dir: str,
    group: str | None = None,
    file_prefix: str = "volcano",
    padj_cutoff: float = 0.05,
    lfc_cutoff: float = 0.5,
    n_labels: int = 10,
    file_format: str = "png",
    dpi: int = 150,
) -> str:
    """
    Volcano plot (log2 fold change vs. -log10 padj) of a pseudobulk DE table.

    If the table has a 'group' column, `group` selects one group; otherwise every row
    is drawn. The `n_labels` most significant hits are labelled.
    """
    for col in ('gene', 'log2FoldChange', 'padj'):
        if col not in de_results.columns:
            raise KeyError(f"DE results are missing column '{col}'.")
    table = de_results
    if group is not None:
        if 'group' not in table.columns:
            raise KeyError("DE results have no 'group' column to select from.")
        table = table[table['group'].astype(str) == str(group)]
        if table.empty:
            raise ValueError(f"No DE results for group '{group}'.")
    table = table.dropna(subset=['log2FoldChange', 'padj'])

    neg_log_p = -np.log10(np.clip(table['padj'].to_numpy(dtype=float), 1e-300, 1.0))
    lfc = table['log2FoldChange'].to_numpy(dtype=float)
    up = (table['padj'].to_numpy() < padj_cutoff) & (lfc >= lfc_cutoff)
    down = (table['padj'].to_numpy() < padj_cutoff) & (lfc <= -lfc_cutoff)

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(lfc[~(up | down)], neg_log_p[~(up | down)], s=8, c='lightgrey', label='ns')
    ax.scatter(lfc[up], neg_log_p[up], s=10, c='firebrick', label=f'up ({int(up.sum())})')
    ax.scatter(lfc[down], neg_log_p[down], s=10, c='steelblue', label=f'down ({int(down.sum())})')
    ax.axhline(-np.log10(padj_cutoff), ls='--', lw=0.8, c='black')
    for x in (-lfc_cutoff, lfc_cutoff):
        ax.axvline(x, ls='--', lw=0.8, c='black')

    hits = table[up | down].sort_values('padj').head(n_labels)
    for _, row in hits.iterrows():
        ax.annotate(str(row['gene']), (row['log2FoldChange'], -np.log10(max(row['padj'], 1e-300))), fontsize=7)

    ax.set_xlabel('log2 fold change')
    ax.set_ylabel('-log10 adjusted p-value')
    ax.set_title(f"{group}" if group is not None else "Differential expression")
    ax.legend(frameon=False, fontsize=8)

    output_path = _output_path(output_dir, file_prefix, file_format)
    _save_figure(fig, output_path, "volcano", dpi)
    return output_path


def plot_composition(
    composition: pd.DataFrame,
    output_dir: str,
    file_prefix: str = "composition",
    file_format: str = "png",
    dpi: int = 150,
) -> str:
    """Stacked bar chart of group proportions per sample (rows of a composition_table)."""
    if composition.empty:
        raise ValueError("Composition table is empty.")
    props = composition.div(composition.sum(axis=1), axis=0)

    fig, ax = plt.subplots(figsize=(max(4, 0.6 * len(props) + 2), 4.5))
    bottom = np.zeros(len(props))
    cmap = plt.get_cmap('tab20')
    for i, group in enumerate(props.columns):
        ax.bar(props.index.astype(str), props[group].to_numpy(), bottom=bottom, label=str(group), color=cmap(i % 20))
        bottom += props[group].to_numpy()
    ax.set_ylabel('Proportion of cells')
    ax.set_xlabel(props.index.name or 'sample')
    ax.set_ylim(0, 1)
    ax.tick_params(axis='x', rotation=90)
    ax.legend(title=props.columns.name, bbox_to_anchor=(1.02, 1), loc='upper left', frameon=False, fontsize=8)

    output_path = _output_path(output_dir, file_prefix, file_format)
    _save_figure(fig, output_path, "composition", dpi)
    return output_path


def plot_proportion_test(
    test_results: pd.DataFrame,
    output_dir: str,
    file_prefix: str = "composition_test",
    padj_cutoff: float = 0.05,
    file_format: str = "png",
    dpi: int = 150,
) -> str:
    """Point-range plot of log2 proportion differences with bootstrap intervals."""
    for col in ('group', 'log2FD', 'ci_low', 'ci_high', 'padj'):
        if col not in test_results.columns:
            raise KeyError(f"Proportion test results are missing column '{col}'.")
    table = test_results.sort_values('log2FD')
    y = np.arange(len(table))
    significant = table['padj'].to_numpy() < padj_cutoff

    fig, ax = plt.subplots(figsize=(5, max(2.5, 0.35 * len(table) + 1)))
    ax.hlines(y, table['ci_low'], table['ci_high'], color='grey')
    ax.scatter(table['log2FD'], y, c=np.where(significant, 'firebrick', 'grey'), zorder=3)
    ax.axvline(0, ls='--', lw=0.8, c='black')
    ax.set_yticks(y)
    ax.set_yticklabels(table['group'].astype(str))
    contrast = table['contrast'].iloc[0] if 'contrast' in table.columns and len(table) else ''
    ax.set_xlabel(f"log2 proportion difference {contrast}".strip())

    output_path = _output_path(output_dir, file_prefix, file_format)
    _save_figure(fig, output_path, "proportion test", dpi)
    return output_path


def plot_interaction_heatmap(
    counts: pd.DataFrame,
    output_dir: str,
    file_prefix: str = "interactions",
    title: str = "Significant interactions",
    file_format: str = "png",
    dpi: int = 150,
) -> str:
    """Heatmap of a sender x receiver matrix from interaction_counts."""
    if counts.empty:
        raise ValueError("Interaction matrix is empty.")

    fig, ax = plt.subplots(figsize=(1 + 0.6 * counts.shape[1], 1 + 0.5 * counts.shape[0]))
    im = ax.imshow(counts.to_numpy(dtype=float), cmap='Reds', aspect='auto')
    ax.set_xticks(np.arange(counts.shape[1]))
    ax.set_xticklabels(counts.columns.astype(str), rotation=90)
    ax.set_yticks(np.arange(counts.shape[0]))
    ax.set_yticklabels(counts.index.astype(str))
    ax.set_xlabel(counts.columns.name or 'target')
    ax.set_ylabel(counts.index.name or 'source')
    ax.set_title(title)
    fig.colorbar(im, ax=ax, shrink=0.8)

    output_path = _output_path(output_dir, file_prefix, file_format)
    _save_figure(fig, output_path, "interaction heatmap", dpi)
    return output_path
