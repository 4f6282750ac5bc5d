"""
Release Statistics Module for VD Curation.

Per-gene summary of what the next release would change: variant counts on
both sides, additions, scheduled deletions and pathogenicity transitions.
"""

import logging
import pandas as pd

from .schema import PATHOGENICITY_ABBREVIATIONS
from .store import Table, VariantStore

# Configure logging
log = logging.getLogger("vd-curation")

ABBREVIATIONS = list(PATHOGENICITY_ABBREVIATIONS.values())

TRANSITION_COLUMNS = [
    f"{old}_to_{new}" for old in ABBREVIATIONS for new in ABBREVIATIONS if old != new
]


def diff_stats(store: VariantStore) -> pd.DataFrame:
    """
    Compute per-gene release statistics.

    Columns: gene, num_live, num_queue, added, dropped, changed, unchanged,
    and one ``<from>_to_<to>`` count per pathogenicity transition
    (p, lp, us, lb, b, bs).

    Args:
        store: Variant store

    Returns:
        DataFrame with one row per gene
    """
    live = store.frame(Table.LIVE)
    # Ghost rows are not published data
    live = live[~(live["variation"].isna() & live["hgvs_nucleotide_change"].isna())]
    queue = store.frame(Table.QUEUE)
    reviews = store.frame(Table.REVIEWS)

    genes = sorted(set(live["gene"].dropna()) | set(queue["gene"].dropna()))
    stats = pd.DataFrame(index=pd.Index(genes, name="gene"))

    stats["num_live"] = live.groupby("gene").size()
    stats["num_queue"] = queue.groupby("gene").size()

    live_variations = set(live["variation"].dropna())
    stats["added"] = queue[~queue["variation"].isin(live_variations)].groupby("gene").size()

    scheduled = reviews.loc[reviews["scheduled_for_deletion"].fillna(False).astype(bool), "variant_id"]
    stats["dropped"] = live[live["id"].isin(scheduled)].groupby("gene").size()

    common = live[["gene", "variation", "pathogenicity"]].dropna(subset=["variation"]).merge(
        queue[["variation", "pathogenicity"]].dropna(subset=["variation"]),
        on="variation",
        suffixes=("_live", "_queue"),
    )
    same = common["pathogenicity_live"].fillna("") == common["pathogenicity_queue"].fillna("")
    stats["changed"] = common[~same].groupby("gene").size()
    stats["unchanged"] = common[same].groupby("gene").size()

    moved = common.assign(
        old=common["pathogenicity_live"].map(PATHOGENICITY_ABBREVIATIONS),
        new=common["pathogenicity_queue"].map(PATHOGENICITY_ABBREVIATIONS),
    ).dropna(subset=["old", "new"])
    moved = moved[moved["old"] != moved["new"]]

    if moved.empty:
        transitions = pd.DataFrame()
    else:
        transitions = pd.crosstab(moved["gene"], moved["old"] + "_to_" + moved["new"])

    for column in TRANSITION_COLUMNS:
        stats[column] = transitions[column] if column in transitions.columns else 0

    stats = stats.fillna(0).astype(int).reset_index()
    log.debug(f"Computed release statistics for {len(stats)} genes")
    return stats
