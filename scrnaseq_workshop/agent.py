# scrnaseq_workshop/agent.py

import logging
import anndata as ad
from pathlib import Path
import scanpy as sc
import pandas as pd

from .data.loader import load_data, load_metadata, load_gene_sets, load_lr_pairs
from .analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc, detect_doublets
from .analysis.preprocess import store_counts_layer, normalize_log1p, select_hvg, scale_data
from .analysis.dimred import reduce_dimensionality, run_nmf, top_program_genes
from .analysis.clustering import perform_clustering, cluster_purity
from .analysis.dge import find_marker_genes, get_marker_table
from .analysis.annotation import annotate_cell_types, load_marker_dict, annotate_celltypist
from .analysis.pseudobulk import aggregate_pseudobulk
from .analysis.differential import run_pseudobulk_de
from .analysis.composition import composition_table, diversity_index, permutation_test_proportions
from .analysis.signatures import score_signatures, enrich_de_results
from .analysis.communication import score_ligand_receptor, interaction_counts
from .visualization.plotting import (
    plot_umap,
    plot_qc_violin,
    plot_rank_genes_groups_dotplot,
    plot_volcano,
    plot_composition,
    plot_proportion_test,
    plot_interaction_heatmap,
)

log = logging.getLogger(__name__)

REQUIRED_PARAMS = ['input_path', 'output_dir', 'output_prefix']


class WorkshopWorkflow:
    """
    Runs the workshop analysis end to end on one dataset.

    Steps: load (+ metadata) -> QC -> doublets -> filtering -> counts layer ->
    normalize -> HVG -> scale -> PCA -> clustering/UMAP -> markers -> annotation ->
    NMF -> signature scores -> pseudobulk DE (+ enrichment) -> composition ->
    cell-cell communication -> plots -> save. Steps whose inputs are not configured
    (no sample/condition keys, no gene-set or ligand-receptor file) are skipped
    with a log message.
    """

    def __init__(self, params):
        self.params = params
        for attr in REQUIRED_PARAMS:
            if getattr(self.params, attr, None) is None:
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")
        self.adata = None
        self._adata_counts = None
        self.pseudobulk = None
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix
        self.cluster_key = 'leiden'
        self.group_key = None
        self.gene_sets = None
        self.results: dict[str, pd.DataFrame] = {}

        log.info("WorkshopWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")
        if params.annotation_tool == 'marker_overlap' and not params.marker_file:
            log.warning("Annotation tool set to 'marker_overlap' but no marker file given. Annotation will be skipped.")

    def run(self) -> ad.AnnData:
        """Executes every step in order and returns the final AnnData."""
        log.info(f"Starting workflow run: {self.prefix}")
        try:
            self._setup_environment()
            self._load_data()
            self._run_qc()
            self._detect_doublets()
            self._filter()
            self._normalize_log_hvg()
            self._scale_and_pca()
            self._cluster_and_umap()
            self._find_markers()
            self._annotate()
            self._resolve_group_key()
            self._run_nmf()
            self._score_signatures()
            self._pseudobulk_de()
            self._composition()
            self._communication()
            self._plot_results()
            self._save_results()
            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.adata
        except Exception as e:
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _setup_environment(self):
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f"Failed to create output directory '{self.output_dir}': {e}")
            raise
        sc.settings.figdir = str(self.output_dir)
        sc.settings.verbosity = 1
        log.info(f"Output directory set to: {self.output_dir}")

    def _load_data(self):
        log.info("Step 1: Loading data...")
        self.adata = load_data(self.params.input_path)
        if self.params.metadata_file:
            load_metadata(self.adata, self.params.metadata_file, index_col=self.params.metadata_index_col)
        log.info(f"Loaded data shape: {self.adata.shape}.")

    def _run_qc(self):
        log.info("Step 2: Calculating QC metrics...")
        calculate_qc_metrics(
            self.adata, mito_gene_prefix=self.params.mito_prefix,
            ribo_gene_prefixes=tuple(self.params.ribo_prefixes or ()), inplace=True
        )
        if self.params.run_qc_violin and self.params.qc_violin_keys:
            self._try_plot(
                plot_qc_violin, self.adata, keys=self.params.qc_violin_keys, output_dir=str(self.output_dir),
                file_prefix=f"{self.prefix}_qc_violin_prefilt",
                file_format=self.params.plot_format, dpi=self.params.plot_dpi
            )

    def _detect_doublets(self):
        if not self.params.run_doublets:
            log.info("Step 3: Doublet detection disabled. Skipping.")
            return
        log.info("Step 3: Detecting doublets with Scrublet...")
        batch_key = self.params.sample_key if self.params.sample_key in self.adata.obs else None
        detect_doublets(
            self.adata, expected_doublet_rate=self.params.doublet_rate, batch_key=batch_key,
            random_state=self.params.random_seed, remove=self.params.remove_doublets
        )

    def _filter(self):
        log.info("Step 4: Filtering cells and genes...")
        n_obs_before, n_vars_before = self.adata.shape
        filter_cells_qc(
            self.adata, min_genes=self.params.min_genes, max_genes=self.params.max_genes,
            min_counts=self.params.min_counts, max_counts=self.params.max_counts,
            max_pct_mito=self.params.max_pct_mito, inplace=True
        )
        if self.adata.n_obs == 0:
            raise ValueError("All cells filtered out!")
        filter_genes_qc(self.adata, min_cells=self.params.min_cells, inplace=True)
        log.info(f"Kept {self.adata.n_obs} / {n_obs_before} cells and {self.adata.n_vars} / {n_vars_before} genes.")

    def _normalize_log_hvg(self):
        log.info("Step 5: Storing counts, normalizing and log-transforming...")
        store_counts_layer(self.adata, layer='counts')
        # all-gene counts for pseudobulk; HVG subsetting below also subsets layers
        self._adata_counts = ad.AnnData(
            X=self.adata.layers['counts'].copy(),
            var=pd.DataFrame(index=self.adata.var_names.copy()),
            obs=pd.DataFrame(index=self.adata.obs_names.copy()),
        )
        normalize_log1p(self.adata, target_sum=self.params.target_sum, inplace=True)
        self.adata.raw = self.adata
        log.info(f"Set .raw to log-normalized data with {self.adata.raw.n_vars} genes.")

        log.info("Step 6: Selecting highly variable genes (subsetting)...")
        batch_key = self.params.hvg_batch_key if self.params.hvg_batch_key in self.adata.obs else None
        select_hvg(
            self.adata, n_top_genes=self.params.n_hvgs, flavor=self.params.hvg_flavor,
            subset=True, batch_key=batch_key, counts_layer='counts', inplace=True
        )
        log.info(f"Kept {self.adata.n_vars} HVGs.")

    def _scale_and_pca(self):
        log.info("Step 7: Scaling HVGs and running PCA...")
        scale_data(self.adata, max_value=self.params.scale_max_value, inplace=True)
        reduce_dimensionality(
            self.adata, n_comps=self.params.n_pca_comps,
            random_state=self.params.random_seed, inplace=True
        )

    def _cluster_and_umap(self):
        log.info("Step 8: Neighbors, Leiden clustering and UMAP...")
        perform_clustering(
            self.adata, use_rep='X_pca', n_neighbors=self.params.n_neighbors,
            resolution=self.params.leiden_resolution, random_state=self.params.random_seed,
            leiden_key_added=self.cluster_key, calculate_umap=(not self.params.skip_umap),
            inplace=True
        )

    def _find_markers(self):
        log.info(f"Step 9: Finding marker genes of '{self.cluster_key}' clusters...")
        find_marker_genes(
            self.adata, groupby=self.cluster_key, method=self.params.dge_method,
            corr_method=self.params.dge_corr_method, use_raw=True,
            key_added=self.params.dge_key
        )
        self.results['markers'] = get_marker_table(self.adata, key=self.params.dge_key)

    def _annotate(self):
        tool = str(self.params.annotation_tool).lower() if self.params.annotation_tool else 'none'
        if tool == 'none':
            log.info("Step 10: Annotation tool set to None. Skipping annotation step.")
            return
        log.info(f"Step 10: Annotating cell types using tool: '{tool}'...")
        if tool == 'marker_overlap':
            if not self.params.marker_file:
                log.warning("No marker file configured. Skipping marker overlap annotation.")
                return
            marker_dict = load_marker_dict(self.params.marker_file)
            annotate_cell_types(
                self.adata, marker_dict, groupby=self.cluster_key, rank_key=self.params.dge_key,
                annotation_key=self.params.annotation_key, method=self.params.annotation_method
            )
        elif tool == 'celltypist':
            # CellTypist expects log1p-normalized expression of all genes
            adata_norm = self.adata.raw.to_adata()
            annotate_celltypist(
                adata_norm, model_name=self.params.celltypist_model,
                majority_voting=self.params.celltypist_majority_voting,
                output_key_prefix=self.params.annotation_key,
                cluster_key_for_voting=self.cluster_key if self.params.celltypist_majority_voting else None,
            )
            label_key = (f"{self.params.annotation_key}_majority_voting"
                         if self.params.celltypist_majority_voting else f"{self.params.annotation_key}_predicted_labels")
            for col in adata_norm.obs.columns:
                if col.startswith(f"{self.params.annotation_key}_"):
                    self.adata.obs[col] = adata_norm.obs[col]
            self.adata.obs[self.params.annotation_key] = adata_norm.obs[label_key]
        else:
            log.warning(f"Unknown annotation tool: '{self.params.annotation_tool}'. Skipping.")

    def _resolve_group_key(self):
        """Picks the labels used for pseudobulk, composition and communication."""
        if self.params.group_key:
            if self.params.group_key not in self.adata.obs:
                raise KeyError(f"Group key '{self.params.group_key}' not found in adata.obs.")
            self.group_key = self.params.group_key
            self.results['cluster_purity'] = cluster_purity(self.adata, self.cluster_key, self.group_key)
        elif self.params.annotation_key in self.adata.obs:
            self.group_key = self.params.annotation_key
        else:
            self.group_key = self.cluster_key
        log.info(f"Using '{self.group_key}' as cell grouping for downstream analyses.")

    def _run_nmf(self):
        if not self.params.n_nmf_programs:
            log.info("Step 11: NMF disabled (n_nmf_programs=0). Skipping.")
            return
        log.info(f"Step 11: Extracting {self.params.n_nmf_programs} NMF gene programs...")
        run_nmf(
            self.adata, n_components=self.params.n_nmf_programs, use_raw=True, use_hvg=True,
            random_state=self.params.random_seed
        )
        self.results['nmf_top_genes'] = top_program_genes(self.adata, n_genes=self.params.nmf_top_genes)

    def _score_signatures(self):
        if not self.params.gene_sets_file:
            log.info("Step 12: No gene set file configured. Skipping signature scoring.")
            return
        log.info("Step 12: Scoring gene signatures...")
        self.gene_sets = load_gene_sets(self.params.gene_sets_file)
        score_signatures(
            self.adata, self.gene_sets, min_genes=self.params.signature_min_genes,
            use_raw=True, random_state=self.params.random_seed
        )

    def _condition_levels(self) -> tuple[str, str] | None:
        key = self.params.condition_key
        if not key or key not in self.adata.obs:
            return None
        if self.params.reference and self.params.treatment:
            return str(self.params.reference), str(self.params.treatment)
        levels = sorted(self.adata.obs[key].dropna().astype(str).unique())
        if len(levels) != 2:
            log.warning(f"Condition '{key}' has {len(levels)} levels {levels}; set reference and treatment explicitly.")
            return None
        log.info(f"Using '{levels[0]}' as reference and '{levels[1]}' as treatment for '{key}'.")
        return levels[0], levels[1]

    def _pseudobulk_de(self):
        sample_key = self.params.sample_key
        if not sample_key or sample_key not in self.adata.obs:
            log.info("Step 13: No sample key in adata.obs. Skipping pseudobulk analysis.")
            return
        log.info(f"Step 13: Aggregating pseudobulk profiles by '{sample_key}' x '{self.group_key}'...")
        counts = self._adata_counts[self.adata.obs_names].copy()
        counts.obs = self.adata.obs.copy()
        carry = [c for c in [self.params.condition_key] + list(self.params.covariates or []) if c and c in self.adata.obs]
        self.pseudobulk = aggregate_pseudobulk(
            counts, sample_key=sample_key, group_key=self.group_key, layer=None,
            min_cells=self.params.pseudobulk_min_cells, carry_obs=carry
        )

        levels = self._condition_levels()
        if levels is None:
            log.info("No usable condition contrast configured. Skipping differential expression.")
            return
        reference, treatment = levels
        de = run_pseudobulk_de(
            self.pseudobulk, self.params.condition_key, reference, treatment, group_key='group',
            min_samples_per_condition=self.params.de_min_samples, min_count=self.params.de_min_count,
            covariates=self.params.covariates, dispersion_fit=self.params.dispersion_fit,
            padj_cutoff=self.params.padj_cutoff, lfc_cutoff=self.params.lfc_cutoff
        )
        self.results['pseudobulk_de'] = de
        if self.gene_sets and not de.empty:
            self.results['enrichment'] = enrich_de_results(de, self.gene_sets)

    def _composition(self):
        sample_key = self.params.sample_key
        if not sample_key or sample_key not in self.adata.obs:
            log.info("Step 14: No sample key in adata.obs. Skipping composition analysis.")
            return
        log.info(f"Step 14: Composition of '{self.group_key}' across '{sample_key}'...")
        self.results['composition'] = composition_table(self.adata, sample_key, self.group_key, normalize=False)
        self.results['diversity'] = diversity_index(self.adata, sample_key, self.group_key, index='shannon')
        levels = self._condition_levels()
        if levels is None:
            return
        self.results['composition_test'] = permutation_test_proportions(
            self.adata, self.group_key, self.params.condition_key, levels[0], levels[1],
            n_permutations=self.params.n_permutations, n_bootstrap=self.params.n_bootstrap,
            random_state=self.params.random_seed
        )

    def _communication(self):
        if not self.params.lr_pairs_file:
            log.info("Step 15: No ligand-receptor file configured. Skipping communication analysis.")
            return
        log.info(f"Step 15: Scoring ligand-receptor communication between '{self.group_key}' groups...")
        lr_pairs = load_lr_pairs(self.params.lr_pairs_file)
        self.results['communication'] = score_ligand_receptor(
            self.adata, lr_pairs, self.group_key, n_permutations=self.params.lr_n_permutations,
            min_pct=self.params.lr_min_pct, use_raw=True, random_state=self.params.random_seed
        )

    def _try_plot(self, plot_func, *args, **kwargs):
        try:
            plot_func(*args, **kwargs)
        except Exception as e:
            log.error(f"Failed generating plot with {plot_func.__name__}: {e}", exc_info=True)

    def _plot_results(self):
        log.info("Step 16: Generating plots...")
        out = str(self.output_dir)
        fmt, dpi = self.params.plot_format, self.params.plot_dpi

        plot_features = list(self.params.plot_umap_color or [])
        for key in (self.cluster_key, self.group_key):
            if key and key not in plot_features:
                plot_features.insert(0, key)
        if not self.params.skip_umap and 'X_umap' in self.adata.obsm:
            self._try_plot(plot_umap, self.adata, color_by=plot_features, output_dir=out,
                           file_prefix=f"{self.prefix}_umap", file_format=fmt, dpi=dpi)
        else:
            log.info("Skipping UMAP plots.")

        if self.params.run_dge_plots and self.params.dge_key in self.adata.uns:
            self._try_plot(plot_rank_genes_groups_dotplot, self.adata, key=self.params.dge_key,
                           n_genes=self.params.dge_n_genes, groupby=self.cluster_key, output_dir=out,
                           file_prefix=f"{self.prefix}_dge_dotplot", file_format=fmt, dpi=dpi)

        de = self.results.get('pseudobulk_de')
        if de is not None and not de.empty:
            for group in de['group'].unique():
                safe_group = str(group).replace('/', '_').replace(' ', '_')
                self._try_plot(plot_volcano, de, output_dir=out, group=group,
                               file_prefix=f"{self.prefix}_volcano_{safe_group}",
                               padj_cutoff=self.params.padj_cutoff, lfc_cutoff=self.params.lfc_cutoff,
                               file_format=fmt, dpi=dpi)
        if 'composition' in self.results:
            self._try_plot(plot_composition, self.results['composition'], output_dir=out,
                           file_prefix=f"{self.prefix}_composition", file_format=fmt, dpi=dpi)
        if 'composition_test' in self.results:
            self._try_plot(plot_proportion_test, self.results['composition_test'], output_dir=out,
                           file_prefix=f"{self.prefix}_composition_test", file_format=fmt, dpi=dpi)
        comm = self.results.get('communication')
        if comm is not None and not comm.empty and self.params.lr_n_permutations > 0:
            significant = interaction_counts(comm, pvalue_cutoff=self.params.padj_cutoff, pvalue_key='padj')
            self._try_plot(plot_interaction_heatmap, significant,
                           output_dir=out, file_prefix=f"{self.prefix}_interactions", file_format=fmt, dpi=dpi)
        log.info("Plot generation complete.")

    def _save_results(self):
        log.info("Step 17: Saving result tables and AnnData objects...")
        for name, table in self.results.items():
            path = self.output_dir / f"{self.prefix}_{name}.csv"
            table.to_csv(path, index=(name == 'composition'))
            log.info(f"Saved {name} table ({len(table)} rows) to {path}")

        if self.pseudobulk is not None:
            pb_path = self.output_dir / f"{self.prefix}_pseudobulk.h5ad"
            self.pseudobulk.write_h5ad(pb_path)
            log.info(f"Pseudobulk AnnData saved to: {pb_path}")

        final_adata_path = self.output_dir / f"{self.prefix}_final.h5ad"
        try:
            self.adata.write_h5ad(final_adata_path, compression="gzip")
        except Exception as e:
            log.error(f"Failed to save final AnnData: {e}", exc_info=True)
            raise
        log.info(f"Final AnnData object saved to: {final_adata_path}")
