# scrnaseq_workshop/analysis/signatures.py

import scanpy as sc
import anndata as ad
import logging
import re
import pandas as pd
import numpy as np
import decoupler as dc

log = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = ['term', 'set_size', 'overlap', 'expected', 'fold_enrichment', 'score', 'padj', 'genes']


def _score_key(prefix: str, name: str) -> str:
    return f"{prefix}_{re.sub(r'[^0-9A-Za-z]+', '_', name).strip('_')}"


def score_signatures(
    adata: ad.AnnData,
    gene_sets: dict[str, list[str]],
    key_prefix: str = 'score',
    ctrl_size: int = 50,
    min_genes: int = 2,
    use_raw: bool | None = None,
    random_state: int = 0,
) -> list[str]:
    """
    Scores every cell for each gene set (scanpy.tl.score_genes).

    The score is the mean expression of the set minus the mean of a random,
    expression-matched control set. Sets with fewer than `min_genes` measured genes
    are skipped with a warning. Scores land in adata.obs[f'{key_prefix}_{set name}'].

    Returns:
        The obs keys that were written.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not gene_sets:
        raise ValueError("gene_sets must be a non-empty dictionary.")

    use_raw_calc = adata.raw is not None if use_raw is None else use_raw
    if use_raw_calc and adata.raw is None:
        raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
    universe = set(adata.raw.var_names if use_raw_calc else adata.var_names)

    written = []
    for name, genes in gene_sets.items():
        present = [g for g in genes if g in universe]
        if len(present) < min_genes:
            log.warning(f"Gene set '{name}': only {len(present)} of {len(genes)} genes measured "
                        f"(need {min_genes}). Skipping.")
            continue
        if len(present) < len(genes):
            log.info(f"Gene set '{name}': {len(genes) - len(present)} genes not measured and ignored.")

        key = _score_key(key_prefix, name)
        try:
            sc.tl.score_genes(
                adata, gene_list=present, ctrl_size=ctrl_size, score_name=key,
                random_state=random_state, use_raw=use_raw_calc,
            )
        except Exception as e:
            log.error(f"Scoring gene set '{name}' failed: {e}", exc_info=True)
            raise RuntimeError(f"Failed to score gene set '{name}': {e}") from e
        written.append(key)

    log.info(f"Scored {len(written)} / {len(gene_sets)} gene sets: {written}")
    return written


def run_enrichment(
    genes: list[str],
    gene_sets: dict[str, list[str]],
    universe: list[str],
    min_overlap: int = 1,
    min_set_size: int = 3,
) -> pd.DataFrame:
    """
    Over-representation analysis of a gene list with decoupler's ORA method.

    Only genes in `universe` (every gene that could have been called, e.g. all genes
    tested for differential expression) count. The universe is passed to `dc.mt.ora`
    as a single observation in which the query genes rank on top, so the query is
    exactly its `n_up` top features and the background size is the universe size.

    Returns:
        DataFrame (one row per tested set, ascending BH-adjusted p-value) with the ORA
        score, the overlap counts and the overlapping genes joined by ';'.
    """
    universe = list(dict.fromkeys(universe))
    universe_set = set(universe)
    query = set(genes) & universe_set
    if not query:
        log.warning("None of the query genes are in the universe; nothing to test.")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    members = {term: sorted(set(targets) & universe_set) for term, targets in gene_sets.items()}
    members = {term: targets for term, targets in members.items() if len(targets) >= min_set_size}
    overlaps = {term: [g for g in targets if g in query] for term, targets in members.items()}
    members = {term: targets for term, targets in members.items() if len(overlaps[term]) >= min_overlap}
    if not members:
        log.warning(f"No gene set reached min_set_size={min_set_size} and min_overlap={min_overlap} "
                    f"with {len(query)} query genes.")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    net = pd.DataFrame(
        [(term, gene) for term, targets in members.items() for gene in targets],
        columns=['source', 'target'],
    )
    ranking = ad.AnnData(
        X=np.array([[2.0 if g in query else 1.0 for g in universe]]),
        obs=pd.DataFrame(index=['query']),
        var=pd.DataFrame(index=universe),
    )
    try:
        dc.mt.ora(data=ranking, net=net, tmin=min_set_size, n_up=len(query), n_bm=0, n_bg=len(universe))
    except Exception as e:
        log.error(f"decoupler ORA failed: {e}", exc_info=True)
        raise RuntimeError(f"decoupler ORA failed: {e}") from e
    scores = pd.DataFrame(ranking.obsm['score_ora']).iloc[0]
    padj = pd.DataFrame(ranking.obsm['padj_ora']).iloc[0]

    rows = []
    for term in padj.index:
        set_size = len(members[term])
        expected = len(query) * set_size / len(universe)
        rows.append({
            'term': term,
            'set_size': set_size,
            'overlap': len(overlaps[term]),
            'expected': expected,
            'fold_enrichment': len(overlaps[term]) / expected,
            'score': scores[term],
            'padj': padj[term],
            'genes': ';'.join(overlaps[term]),
        })
    results = pd.DataFrame(rows, columns=ENRICHMENT_COLUMNS)
    log.info(f"Tested {len(results)} gene sets for enrichment among {len(query)} genes.")
    return (results.sort_values(['padj', 'fold_enrichment'], ascending=[True, False])
            .reset_index(drop=True))


def enrich_de_results(
    de_results: pd.DataFrame,
    gene_sets: dict[str, list[str]],
    direction: str | None = None,
    **kwargs
) -> pd.DataFrame:
    """
    Runs run_enrichment on the significant genes of each group in a pseudobulk DE table.

    The universe of each group is the set of genes tested in that group. `direction`
    restricts the query to 'up' or 'down' genes.
    """
    required = {'group', 'gene', 'significant', 'direction'}
    missing = required - set(de_results.columns)
    if missing:
        raise KeyError(f"DE results are missing columns: {sorted(missing)}")

    tables = []
    for group, table in de_results.groupby('group', observed=True):
        hits = table[table['significant'].astype(bool)]
        if direction is not None:
            hits = hits[hits['direction'] == direction]
        if hits.empty:
            log.info(f"Group '{group}': no significant genes to test for enrichment.")
            continue
        res = run_enrichment(hits['gene'].tolist(), gene_sets, table['gene'].tolist(), **kwargs)
        if res.empty:
            continue
        res.insert(0, 'group', group)
        tables.append(res)

    if not tables:
        return pd.DataFrame(columns=['group'] + ENRICHMENT_COLUMNS)
    return pd.concat(tables, ignore_index=True)
