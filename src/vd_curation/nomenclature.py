"""
Disease Nomenclature Module for VD Curation.

Exports the disease names staged in the queue as a "Gene, Current, New"
sheet and applies the curator's renames back to the queue, per gene.
"""

import logging
import pandas as pd
from pathlib import Path
from typing import Union

from .store import Table, VariantStore

# Configure logging
log = logging.getLogger("vd-curation")

TEMPLATE_COLUMNS = ["Gene", "Current", "New"]


def disease_names(store: VariantStore) -> pd.DataFrame:
    """
    Distinct (gene, disease) pairs staged in the queue.

    Returns:
        DataFrame with ``gene`` and ``disease`` columns
    """
    queue = store.name(Table.QUEUE)
    return store.conn.execute(
        f"""
        SELECT DISTINCT gene, disease
        FROM {queue}
        WHERE disease IS NOT NULL AND disease <> '+'
        ORDER BY gene, disease
        """
    ).df()


def write_nomenclature_template(store: VariantStore, path: Union[str, Path]) -> int:
    """
    Write the rename sheet for curators.

    The ``New`` column is left blank; rows left blank are not renamed.

    Args:
        store: Variant store
        path: Output CSV path

    Returns:
        Number of rows written
    """
    names = disease_names(store)
    template = pd.DataFrame({
        "Gene": names["gene"],
        "Current": names["disease"],
        "New": "",
    }, columns=TEMPLATE_COLUMNS)

    Path(path).parent.mkdir(parents=True, exist_ok=True)
    template.to_csv(path, index=False)
    log.info(f"Wrote {len(template)} disease names to {path}")
    return len(template)


def apply_nomenclature(store: VariantStore, source: Union[str, Path, pd.DataFrame]) -> int:
    """
    Rename queued diseases from a completed sheet.

    Args:
        store: Variant store
        source: Path to a "Gene, Current, New" CSV, or an equivalent DataFrame

    Returns:
        Number of queue rows renamed
    """
    if isinstance(source, pd.DataFrame):
        sheet = source.astype(object).where(source.notna(), "")
    else:
        sheet = pd.read_csv(source, dtype=str, keep_default_na=False, skipinitialspace=True)
    sheet.columns = [str(column).strip() for column in sheet.columns]

    renamed = 0
    with store.transaction():
        for row in sheet.to_dict(orient="records"):
            gene = str(row.get("Gene", "")).strip()
            current = str(row.get("Current", "")).strip()
            new = str(row.get("New", "")).strip()
            if not current or not new or new == current:
                continue
            renamed += store.rename_disease(current, new, gene or None)

    log.info(f"Renamed diseases on {renamed} queued variants")
    return renamed
