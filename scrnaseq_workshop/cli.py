# scrnaseq_workshop/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .agent import WorkshopWorkflow

log = logging.getLogger("scrnaseq_workshop.cli")

DEFAULTS = {
    'output_prefix': "workshop",
    # Inputs and experimental design
    'metadata_file': None, 'metadata_index_col': None,
    'sample_key': None, 'condition_key': None, 'reference': None, 'treatment': None,
    'covariates': None, 'group_key': None,
    # QC
    'mito_prefix': "MT-", 'ribo_prefixes': "RPS,RPL",
    'min_genes': 200, 'max_genes': None, 'min_counts': None, 'max_counts': None,
    'max_pct_mito': 10.0, 'min_cells': 3,
    'run_doublets': True, 'doublet_rate': 0.06, 'remove_doublets': True,
    # Preprocessing
    'target_sum': 10000.0, 'n_hvgs': 2000, 'hvg_flavor': "seurat_v3", 'hvg_batch_key': None,
    'scale_max_value': 10.0, 'n_pca_comps': 50,
    # Clustering
    'n_neighbors': 15, 'leiden_resolution': 1.0, 'skip_umap': False,
    # Markers
    'dge_method': "wilcoxon", 'dge_corr_method': "benjamini-hochberg", 'dge_key': "rank_genes_groups",
    # Annotation
    'annotation_tool': 'none', 'marker_file': None, 'annotation_key': "cell_type_annotation",
    'annotation_method': "overlap_count", 'celltypist_model': "Immune_All_Low.pkl",
    'celltypist_majority_voting': False,
    # Gene programs and signatures
    'n_nmf_programs': 0, 'nmf_top_genes': 20, 'gene_sets_file': None, 'signature_min_genes': 3,
    # Pseudobulk differential expression
    'pseudobulk_min_cells': 10, 'de_min_samples': 2, 'de_min_count': 10,
    'dispersion_fit': "parametric", 'padj_cutoff': 0.05, 'lfc_cutoff': 0.5,
    # Composition
    'n_permutations': 1000, 'n_bootstrap': 1000,
    # Communication
    'lr_pairs_file': None, 'lr_min_pct': 0.1, 'lr_n_permutations': 100,
    # Plotting
    'plot_umap_color': "n_genes_by_counts,pct_counts_mt",
    'run_qc_violin': True, 'qc_violin_keys': "n_genes_by_counts,total_counts,pct_counts_mt",
    'run_dge_plots': True, 'dge_n_genes': 5, 'plot_dpi': 150, 'plot_format': "png",
    'random_seed': 0,
}

LIST_PARAMS = ['plot_umap_color', 'qc_violin_keys', 'ribo_prefixes', 'covariates']
OPTIONAL_PARAMS = [
    'max_genes', 'min_counts', 'max_counts', 'marker_file', 'metadata_file', 'metadata_index_col',
    'sample_key', 'condition_key', 'reference', 'treatment', 'group_key', 'hvg_batch_key',
    'gene_sets_file', 'lr_pairs_file',
]


def create_parser():
    parser = argparse.ArgumentParser(
        prog="scrnaseq-workshop",
        description="Run the scRNA-seq workshop pipeline: QC, clustering, markers, "
                    "pseudobulk differential expression, composition, signatures and communication.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-i", "--input-path", type=str, required=True, help="Path to input data (10x directory or .h5ad file).")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save results (tables, plots, AnnData).")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with pipeline parameters.")
    parser.add_argument("--output-prefix", type=str, help="Prefix for output files.")
    parser.add_argument("--metadata-file", type=str, help="CSV with per-cell metadata, indexed by barcode.")
    parser.add_argument("--metadata-index-col", type=str, help="Barcode column of the metadata CSV (default: first column).")

    # Design
    parser.add_argument("--sample-key", type=str, help="obs column with sample/donor ids.")
    parser.add_argument("--condition-key", type=str, help="obs column with the experimental condition.")
    parser.add_argument("--reference", type=str, help="Reference level of the condition.")
    parser.add_argument("--treatment", type=str, help="Level compared against the reference.")
    parser.add_argument("--covariates", type=str, help="Comma-separated sample-level covariates for the DE design.")
    parser.add_argument("--group-key", type=str, help="obs column with provided cell type labels (default: annotation or Leiden).")
    # QC
    parser.add_argument("--mito-prefix", type=str, help="Mitochondrial gene prefix.")
    parser.add_argument("--ribo-prefixes", type=str, help="Comma-separated ribosomal gene prefixes.")
    parser.add_argument("--min-genes", type=int, help="Min genes per cell.")
    parser.add_argument("--max-genes", type=int, help="Max genes per cell.")
    parser.add_argument("--min-counts", type=int, help="Min counts per cell.")
    parser.add_argument("--max-counts", type=int, help="Max counts per cell.")
    parser.add_argument("--max-pct-mito", type=float, help="Max mitochondrial percentage.")
    parser.add_argument("--min-cells", type=int, help="Min cells expressing a gene.")
    parser.add_argument("--run-doublets", action=argparse.BooleanOptionalAction, help="Run Scrublet doublet detection.")
    parser.add_argument("--doublet-rate", type=float, help="Expected doublet rate.")
    parser.add_argument("--remove-doublets", action=argparse.BooleanOptionalAction, help="Remove predicted doublets.")
    # Preprocessing
    parser.add_argument("--target-sum", type=float, help="Target sum for normalization.")
    parser.add_argument("--n-hvgs", type=int, help="Number of highly variable genes.")
    parser.add_argument("--hvg-flavor", type=str, choices=['seurat', 'cell_ranger', 'seurat_v3'], help="HVG selection flavor.")
    parser.add_argument("--hvg-batch-key", type=str, help="obs column used as batch for HVG selection.")
    parser.add_argument("--scale-max-value", type=float, help="Max value for scaling.")
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components.")
    # Clustering
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors for graph.")
    parser.add_argument("--leiden-resolution", type=float, help="Leiden resolution.")
    parser.add_argument("--skip-umap", action='store_true', default=None, help="Skip UMAP calculation.")
    # Markers
    parser.add_argument("--dge-method", type=str, choices=['wilcoxon', 't-test', 'logreg'], help="Marker test method.")
    parser.add_argument("--dge-corr-method", type=str, choices=['benjamini-hochberg', 'bonferroni'], help="Marker p-value correction.")
    parser.add_argument("--dge-key", type=str, help="adata.uns key for marker results.")
    # Annotation
    parser.add_argument("--annotation-tool", type=str, choices=['marker_overlap', 'celltypist', 'none'], help="Annotation tool to use.")
    parser.add_argument("--marker-file", type=str, help="JSON/GMT marker file (annotation-tool='marker_overlap').")
    parser.add_argument("--annotation-key", type=str, help="obs key for the annotation result.")
    parser.add_argument("--annotation-method", type=str, choices=['overlap_count', 'overlap_coef', 'jaccard'], help="Marker overlap method.")
    parser.add_argument("--celltypist-model", type=str, help="CellTypist model name or path.")
    parser.add_argument("--celltypist-majority-voting", action=argparse.BooleanOptionalAction, help="CellTypist majority voting within clusters.")
    # Programs and signatures
    parser.add_argument("--n-nmf-programs", type=int, help="Number of NMF gene programs (0 disables NMF).")
    parser.add_argument("--nmf-top-genes", type=int, help="Top genes reported per NMF program.")
    parser.add_argument("--gene-sets-file", type=str, help="JSON/GMT gene sets for signature scoring and enrichment.")
    parser.add_argument("--signature-min-genes", type=int, help="Minimum measured genes for a gene set to be scored.")
    # Pseudobulk DE
    parser.add_argument("--pseudobulk-min-cells", type=int, help="Min cells per (sample, group) pseudobulk profile.")
    parser.add_argument("--de-min-samples", type=int, help="Min profiles per condition to test a group.")
    parser.add_argument("--de-min-count", type=int, help="Min counts for a gene in a profile to count as expressed.")
    parser.add_argument("--dispersion-fit", type=str, choices=['parametric', 'mean'], help="PyDESeq2 dispersion trend.")
    parser.add_argument("--padj-cutoff", type=float, help="Adjusted p-value cutoff.")
    parser.add_argument("--lfc-cutoff", type=float, help="Absolute log2 fold change cutoff.")
    # Composition
    parser.add_argument("--n-permutations", type=int, help="Permutations for the proportion test.")
    parser.add_argument("--n-bootstrap", type=int, help="Bootstrap resamples for proportion confidence intervals.")
    # Communication
    parser.add_argument("--lr-pairs-file", type=str, help="CSV with ligand/receptor columns.")
    parser.add_argument("--lr-min-pct", type=float, help="Min fraction of expressing cells for ligand/receptor.")
    parser.add_argument("--lr-n-permutations", type=int, help="Label permutations for communication p-values.")
    # Plotting
    parser.add_argument("--plot-umap-color", type=str, help="Comma-separated features for UMAP color.")
    parser.add_argument("--dge-n-genes", type=int, help="Number of genes per group in the marker dotplot.")
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")
    parser.add_argument("--run-qc-violin", action=argparse.BooleanOptionalAction, help="Generate QC violin plots.")
    parser.add_argument("--qc-violin-keys", type=str, help="Comma-separated obs keys for QC violin plot.")
    parser.add_argument("--run-dge-plots", action=argparse.BooleanOptionalAction, help="Generate marker dotplot.")
    # Other
    parser.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")

    return parser


def load_config(config_path: str) -> dict:
    """
    Reads a YAML config and flattens its sections into one parameter dict.

    Top-level sections (e.g. `qc:`, `pseudobulk:`) are only for readability; their keys
    are merged. Raises FileNotFoundError or ValueError for unreadable files.
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        with open(path, 'r') as f:
            config_yaml = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing config file {path}: {e}") from e

    config_params = {}
    if not config_yaml:
        return config_params
    if not isinstance(config_yaml, dict):
        raise ValueError(f"Config file {path} must contain a mapping.")
    for section, params_in_section in config_yaml.items():
        if isinstance(params_in_section, dict):
            config_params.update(params_in_section)
        else:
            config_params[section] = params_in_section
    unknown = sorted(set(config_params) - set(DEFAULTS) - {'input_path', 'output_dir'})
    if unknown:
        log.warning(f"Ignoring unknown config keys: {unknown}")
    log.info(f"Loaded parameters from config file: {path}")
    return config_params


def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Merges parameters with precedence CLI > config file > built-in defaults."""
    config_params = load_config(args.config) if args.config else {}
    cli_args_dict = vars(args)

    final_params = argparse.Namespace()
    for key, default_value in DEFAULTS.items():
        param_value = default_value
        config_value = config_params.get(key)
        if config_value is not None:
            param_value = None if str(config_value).lower() == 'null' else config_value
        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_PARAMS and isinstance(param_value, str):
            param_value = [f.strip() for f in param_value.split(',') if f.strip()]
        elif key in OPTIONAL_PARAMS and param_value == '':
            param_value = None
        setattr(final_params, key, param_value)

    final_params.input_path = args.input_path
    final_params.output_dir = args.output_dir
    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


def run_pipeline(params: argparse.Namespace) -> int:
    """Initializes and runs the WorkshopWorkflow; returns the process exit code."""
    if params.annotation_tool == 'celltypist' and not params.celltypist_model:
        log.error("Annotation tool is 'celltypist' but no CellTypist model was provided.")
        return 1
    if bool(params.reference) != bool(params.treatment):
        log.error("Set both 'reference' and 'treatment', or neither.")
        return 1
    try:
        WorkshopWorkflow(params).run()
    except Exception:
        log.critical("Pipeline execution failed. See previous logs for details.")
        return 1
    log.info("Workflow finished.")
    return 0


def main(argv: list[str] | None = None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    parser = create_parser()
    args = parser.parse_args(argv)
    try:
        final_params = load_and_merge_params(args)
    except (FileNotFoundError, ValueError) as e:
        log.error(str(e))
        sys.exit(1)
    sys.exit(run_pipeline(final_params))


if __name__ == "__main__":
    main()
