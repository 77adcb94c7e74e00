"""
Example script: pseudobulk differential expression and composition testing
with the scrnaseq_workshop functions, without the full workflow.
"""

import logging
import scanpy as sc
from scrnaseq_workshop.data.loader import load_data, load_metadata
from scrnaseq_workshop.analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc
from scrnaseq_workshop.analysis.preprocess import store_counts_layer, normalize_log1p
from scrnaseq_workshop.analysis.pseudobulk import aggregate_pseudobulk
from scrnaseq_workshop.analysis.differential import run_pseudobulk_de
from scrnaseq_workshop.analysis.composition import permutation_test_proportions


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    adata = load_data("path/to/your/data.h5ad")
    load_metadata(adata, "path/to/cell_metadata.csv")  # sample, condition, cell_type

    calculate_qc_metrics(adata, mito_gene_prefix="MT-")
    filter_cells_qc(adata, min_genes=200, max_pct_mito=15.0)
    filter_genes_qc(adata, min_cells=3)
    store_counts_layer(adata)
    normalize_log1p(adata)

    pb = aggregate_pseudobulk(adata, sample_key="sample", group_key="cell_type", min_cells=10)
    de = run_pseudobulk_de(pb, condition_key="condition", reference="control", treatment="disease")
    print(de[de['significant']].head(20))

    props = permutation_test_proportions(adata, "cell_type", "condition", "control", "disease")
    print(props)

    sc.pp.pca(adata)
    adata.write_h5ad("results.h5ad")


if __name__ == "__main__":
    main()
