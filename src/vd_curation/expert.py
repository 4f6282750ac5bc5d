"""
Expert Curation Overlay Module for VD Curation.

Expert overrides are manual corrections keyed by variation string. They are
loaded from a CSV sheet, stored with replace semantics (the superseded
override is archived to the history log first) and applied to queued
variants before a release.
"""

import logging
import pandas as pd
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .exceptions import InvalidFormatError
from .schema import EXPERT_FIELDS, EXPERT_OVERRIDE_COLUMNS, is_blank, sanitize
from .store import Table, VariantStore

# Configure logging
log = logging.getLogger("vd-curation")
activity_log = logging.getLogger("vd-curation.activity")

CSV_COLUMNS = [
    "gene", "chr", "pos", "ref", "alt", "variation", "pathogenicity",
    "disease", "pubmed_id", "comments", "delete_on_release", "disabled",
]


@dataclass
class ExpertOverride:
    """A manually curated correction for one variation."""

    variation: str
    gene: Optional[str] = None
    chr: Optional[str] = None
    pos: Optional[str] = None
    ref: Optional[str] = None
    alt: Optional[str] = None
    pathogenicity: Optional[str] = None
    disease: Optional[str] = None
    pubmed_id: Optional[str] = None
    comments: Optional[str] = None
    delete_on_release: bool = False
    disabled: bool = False


class ExpertCurationOverlay:
    """Stores expert overrides and applies them to the queue."""

    def __init__(self, store: VariantStore):
        self.store = store
        self.table = store.name(Table.EXPERT)

    def get_overrides(self, include_disabled: bool = True) -> List[ExpertOverride]:
        """All stored overrides, ordered by variation."""
        query = f"SELECT * FROM {self.table}"
        if not include_disabled:
            query += " WHERE NOT coalesce(disabled, false)"
        cursor = self.store.conn.execute(query + " ORDER BY variation")
        columns = [column[0] for column in cursor.description]

        overrides = []
        for row in cursor.fetchall():
            record = dict(zip(columns, row))
            record.pop("date_inserted", None)
            record["delete_on_release"] = bool(record["delete_on_release"])
            record["disabled"] = bool(record["disabled"])
            overrides.append(ExpertOverride(**record))
        return overrides

    def load(self, overrides: Iterable[ExpertOverride]) -> int:
        """
        Store overrides, replacing any existing override for the same variation.

        Args:
            overrides: Overrides to store

        Returns:
            Total number of overrides stored
        """
        conn = self.store.conn
        with self.store.transaction():
            for override in overrides:
                record = sanitize(asdict(override), EXPERT_FIELDS)
                if not record.get("variation"):
                    raise InvalidFormatError(details="expert override without a variation")
                record["delete_on_release"] = bool(record.get("delete_on_release"))
                record["disabled"] = bool(record.get("disabled"))
                record["date_inserted"] = datetime.now()

                cursor = conn.execute(
                    f"SELECT * FROM {self.table} WHERE variation = ?", [record["variation"]]
                )
                columns = [column[0] for column in cursor.description]
                existing = cursor.fetchone()

                if existing is not None:
                    self.store.archive("expert_override", record["variation"], dict(zip(columns, existing)))
                    assignments = ", ".join(f'"{column}" = ?' for column in record if column != "variation")
                    values = [value for column, value in record.items() if column != "variation"]
                    conn.execute(
                        f"UPDATE {self.table} SET {assignments} WHERE variation = ?",
                        values + [record["variation"]],
                    )
                else:
                    columns = ", ".join(f'"{column}"' for column in record)
                    placeholders = ", ".join(["?"] * len(record))
                    conn.execute(
                        f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders})", list(record.values())
                    )

        total = conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]
        log.info(f"{total} expert curations stored")
        return total

    def load_csv(self, path: Union[str, Path]) -> int:
        """
        Load overrides from a CSV sheet.

        The header must contain the columns in ``CSV_COLUMNS``; flags accept
        TRUE/FALSE, 1/0 and yes/no.

        Args:
            path: Path to the CSV file

        Returns:
            Total number of overrides stored
        """
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
        frame.columns = [str(column).strip().lower() for column in frame.columns]

        missing = [column for column in CSV_COLUMNS if column not in frame.columns]
        if missing:
            raise InvalidFormatError(f"Expert curation sheet {path} is missing columns", str(missing))

        overrides = []
        for record in frame[CSV_COLUMNS].to_dict(orient="records"):
            clean = sanitize(record, EXPERT_FIELDS)
            if is_blank(clean.get("variation")):
                log.warning(f"Skipping expert curation row without a variation: {record}")
                continue
            clean["delete_on_release"] = bool(clean.get("delete_on_release"))
            clean["disabled"] = bool(clean.get("disabled"))
            overrides.append(ExpertOverride(**clean))

        log.info(f"Read {len(overrides)} expert curations from {path}")
        return self.load(overrides)

    def apply(self) -> Dict[str, int]:
        """
        Apply active overrides to the queue.

        Queued variants matching an override get its pathogenicity, disease,
        PubMed id and comments; overrides flagged ``delete_on_release``
        schedule the queued variant for deletion.

        Returns:
            Counts of queue rows updated and variants scheduled for deletion
        """
        updated = 0
        scheduled = 0

        with self.store.transaction():
            for override in self.get_overrides(include_disabled=False):
                queued = self.store.get_by_variation(override.variation, Table.QUEUE)
                if queued is None:
                    continue

                fields = {column: getattr(override, column) for column in EXPERT_OVERRIDE_COLUMNS
                          if not is_blank(getattr(override, column))}
                if fields and self.store.update_queue(queued["id"], fields):
                    updated += 1

                if override.delete_on_release:
                    self.store.update_review(queued["id"], {"scheduled_for_deletion": True})
                    scheduled += 1

                activity_log.info(
                    f"User '{self.store.user}' applied expert curation to {override.variation}",
                    extra={"action": "expert", "user": self.store.user},
                )

        log.info(f"Expert curations applied: {updated} updated, {scheduled} scheduled for deletion")
        return {"updated": updated, "scheduled_for_deletion": scheduled}
