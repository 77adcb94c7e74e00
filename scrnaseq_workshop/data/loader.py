# scrnaseq_workshop/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import os
import json
import logging

log = logging.getLogger(__name__)


def load_data(data_path: str, cache: bool = False) -> ad.AnnData:
    """
    Loads single-cell RNA sequencing data into an AnnData object.

    Supports:
        - 10x Genomics MTX directory (matrix.mtx(.gz), features/genes.tsv(.gz), barcodes.tsv(.gz))
        - AnnData (.h5ad) file

    Args:
        data_path: Path to the data file or directory.
        cache: Whether to cache the parsed 10x matrix (uses scanpy's cache).
               Defaults to False.

    Returns:
        An AnnData object containing the loaded data.

    Raises:
        FileNotFoundError: If the data_path does not exist.
        ValueError: If the data format is not recognized or loading fails.
        TypeError: If data_path is not a string.
    """
    log.info(f"Attempting to load data from: {data_path}")

    if not isinstance(data_path, str):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")

    expanded_path = os.path.expanduser(data_path)
    if not os.path.exists(expanded_path):
        raise FileNotFoundError(f"Data path not found: {expanded_path}")

    if os.path.isfile(expanded_path) and not expanded_path.lower().endswith(".h5ad"):
        if expanded_path.lower().endswith((".mtx", ".mtx.gz")):
            raise ValueError("Loading a single .mtx file is ambiguous. Please provide the path to the directory "
                             "containing matrix, features and barcodes files.")
        raise ValueError(f"Unrecognized file format or path type: {expanded_path}. "
                         "Expecting a directory (for 10x MTX) or an .h5ad file.")

    try:
        if os.path.isdir(expanded_path):
            log.info("Detected directory, attempting to load as 10x MTX format.")
            adata = sc.read_10x_mtx(expanded_path, var_names='gene_symbols', cache=cache)
            log.info(f"Successfully loaded 10x MTX data. Shape: {adata.shape}")
        else:
            log.info("Detected .h5ad file, attempting to load.")
            adata = sc.read_h5ad(expanded_path)
            log.info(f"Successfully loaded .h5ad file. Shape: {adata.shape}")
    except FileNotFoundError as e:
        log.error(f"File not found during loading process: {e}")
        raise FileNotFoundError(f"Required file missing within {expanded_path}: {e}") from e
    except Exception as e:
        log.error(f"Failed to load data from {expanded_path}: {e}", exc_info=True)
        raise ValueError(f"An error occurred during data loading: {e}") from e

    # Duplicate symbols break downstream indexing
    adata.var_names_make_unique()
    return adata


def load_metadata(
    adata: ad.AnnData,
    csv_path: str,
    index_col: str | None = None,
    columns: list[str] | None = None,
) -> None:
    """
    Joins a per-cell metadata table (CSV) onto adata.obs by cell barcode.

    Args:
        adata: The annotated data matrix. Modified inplace.
        csv_path: Path to the CSV file. One row per cell.
        index_col: Column holding the cell barcodes. Defaults to the first column.
        columns: Subset of columns to add. Defaults to all columns.

    Raises:
        FileNotFoundError: If csv_path does not exist.
        KeyError: If requested columns are missing from the CSV.
        ValueError: If no barcodes overlap between the CSV and adata.obs_names.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not os.path.isfile(csv_path):
        raise FileNotFoundError(f"Metadata file not found: {csv_path}")

    meta = pd.read_csv(csv_path, index_col=index_col if index_col is not None else 0)
    meta.index = meta.index.astype(str)
    if columns is not None:
        missing = [c for c in columns if c not in meta.columns]
        if missing:
            raise KeyError(f"Columns not found in metadata file {csv_path}: {missing}")
        meta = meta[columns]

    overlap = adata.obs_names.intersection(meta.index)
    if len(overlap) == 0:
        raise ValueError(f"No cell barcodes in {csv_path} match adata.obs_names.")
    n_missing = adata.n_obs - len(overlap)
    if n_missing > 0:
        log.warning(f"{n_missing} cells have no row in {csv_path}; their metadata will be NaN.")

    clashing = [c for c in meta.columns if c in adata.obs.columns]
    if clashing:
        log.warning(f"Overwriting existing obs columns from metadata file: {clashing}")

    aligned = meta.reindex(adata.obs_names)
    for col in aligned.columns:
        values = aligned[col]
        if values.dtype == object:
            values = values.astype('category')
        adata.obs[col] = values.values
    log.info(f"Added {len(aligned.columns)} metadata columns from {csv_path} ({len(overlap)} cells matched).")


def _read_gmt(path: str) -> dict:
    gene_sets = {}
    with open(path, 'r') as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.rstrip("\n")
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 2:
                raise ValueError(f"Malformed GMT line {line_no} in {path}: expected name, description, genes.")
            gene_sets[fields[0]] = [g for g in fields[2:] if g]
    return gene_sets


def load_gene_sets(path: str) -> dict[str, list[str]]:
    """
    Loads gene sets from a JSON mapping ({name: [genes]}) or a GMT file.

    Empty sets are dropped with a warning. Duplicate genes within a set are removed
    while keeping their order.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Gene set file not found: {path}")

    if path.lower().endswith(".gmt"):
        raw_sets = _read_gmt(path)
    else:
        try:
            with open(path, 'r') as fh:
                raw_sets = json.load(fh)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error decoding JSON gene set file {path}: {e}") from e
        if not isinstance(raw_sets, dict) or \
           not all(isinstance(k, str) and isinstance(v, list) for k, v in raw_sets.items()):
            raise ValueError(f"Gene set file '{path}' must map set names to lists of genes.")

    gene_sets = {}
    for name, genes in raw_sets.items():
        genes = list(dict.fromkeys(str(g) for g in genes))
        if not genes:
            log.warning(f"Gene set '{name}' is empty. Dropping it.")
            continue
        gene_sets[name] = genes

    if not gene_sets:
        raise ValueError(f"No non-empty gene sets found in {path}.")
    log.info(f"Loaded {len(gene_sets)} gene sets from {path}")
    return gene_sets


def load_lr_pairs(path: str) -> pd.DataFrame:
    """
    Loads a ligand-receptor table from CSV.

    Requires 'ligand' and 'receptor' columns; an optional 'pathway' column is kept.
    Multi-subunit complexes are written with '_' between subunits (e.g. 'ITGA4_ITGB1').
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Ligand-receptor file not found: {path}")

    lr = pd.read_csv(path)
    missing = [c for c in ('ligand', 'receptor') if c not in lr.columns]
    if missing:
        raise ValueError(f"Ligand-receptor file {path} is missing required columns: {missing}")

    keep = ['ligand', 'receptor'] + (['pathway'] if 'pathway' in lr.columns else [])
    lr = lr[keep].dropna(subset=['ligand', 'receptor'])
    lr['ligand'] = lr['ligand'].astype(str).str.strip()
    lr['receptor'] = lr['receptor'].astype(str).str.strip()

    n_before = len(lr)
    lr = lr.drop_duplicates(subset=['ligand', 'receptor']).reset_index(drop=True)
    if len(lr) < n_before:
        log.warning(f"Dropped {n_before - len(lr)} duplicate ligand-receptor pairs.")
    if lr.empty:
        raise ValueError(f"No ligand-receptor pairs found in {path}.")

    log.info(f"Loaded {len(lr)} ligand-receptor pairs from {path}")
    return lr
