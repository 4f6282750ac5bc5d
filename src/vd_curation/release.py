"""
Release Controller Module for VD Curation.

A release publishes reviewed queue changes to the live table in one
transaction:

    1. select the variants to delete and the variants to update
    2. refuse an empty release (except for the bootstrap version 0)
    3. archive and purge deleted variants
    4. merge updated queue rows into live and clear their queue/review rows
    5. record the new version with live variant and gene counts
    6. rebuild the per-gene variant count cache

Any failure rolls the whole release back.
"""

import logging
import pandas as pd
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from .exceptions import NothingToReleaseError, ReleaseError
from .schema import MERGE_COLUMNS, VARIANT_COLUMNS
from .store import Table, VariantStore

# Configure logging
log = logging.getLogger("vd-curation")
activity_log = logging.getLogger("vd-curation.activity")

BOOTSTRAP_VERSION = 0


@dataclass
class ReleaseSummary:
    """Outcome of a successful release."""

    version: int
    deleted_ids: List[int] = field(default_factory=list)
    updated_ids: List[int] = field(default_factory=list)
    variants: int = 0
    genes: int = 0


def _placeholders(values: List[int]) -> str:
    return ", ".join(["?"] * len(values))


class ReleaseController:
    """Orchestrates versioned publication of queued changes."""

    def __init__(self, store: VariantStore, version: Optional[int] = None, overlay=None):
        """
        Initialize the release controller.

        Args:
            store: Variant store
            version: Externally tracked version number (defaults to the configured one)
            overlay: Optional ExpertCurationOverlay applied at the start of each release
        """
        self.store = store
        self.version = version if version is not None else store.config.version
        self.overlay = overlay

    def current_version(self) -> int:
        """
        Version number the next release is recorded under.

        The externally tracked number when one is configured, otherwise the
        number of releases recorded so far (0 before the first release).
        """
        if self.version is not None:
            return int(self.version)
        versions = self.store.name(Table.VERSIONS)
        return self.store.conn.execute(f"SELECT COUNT(*) FROM {versions}").fetchone()[0]

    def versions(self) -> pd.DataFrame:
        """Version history, oldest first."""
        versions = self.store.name(Table.VERSIONS)
        return self.store.conn.execute(f"SELECT * FROM {versions} ORDER BY id").df()

    def _select(self, confirmed_only: bool) -> Tuple[List[int], List[int]]:
        reviews = self.store.name(Table.REVIEWS)
        confirmed = " AND confirmed_for_release" if confirmed_only else ""

        delete_ids = [row[0] for row in self.store.conn.execute(
            f"SELECT variant_id FROM {reviews} WHERE scheduled_for_deletion{confirmed} ORDER BY variant_id"
        ).fetchall()]

        update_filter = " WHERE confirmed_for_release" if confirmed_only else ""
        update_ids = [row[0] for row in self.store.conn.execute(
            f"SELECT variant_id FROM {reviews}{update_filter} ORDER BY variant_id"
        ).fetchall()]
        # Deleted variants are purged before the merge
        deleted = set(delete_ids)
        update_ids = [variant_id for variant_id in update_ids if variant_id not in deleted]

        return delete_ids, update_ids

    def _delete_pass(self, delete_ids: List[int]):
        if not delete_ids:
            return
        conn = self.store.conn
        live = self.store.name(Table.LIVE)
        marks = _placeholders(delete_ids)

        for variant_id in delete_ids:
            row = self.store.get_by_id(variant_id, Table.LIVE)
            if row is not None:
                self.store.archive("release_deletion", str(variant_id), row)

        conn.execute(f"DELETE FROM {self.store.name(Table.REVIEWS)} WHERE variant_id IN ({marks})", delete_ids)
        conn.execute(f"DELETE FROM {self.store.name(Table.QUEUE)} WHERE id IN ({marks})", delete_ids)
        conn.execute(f"DELETE FROM {live} WHERE id IN ({marks})", delete_ids)

        log.info(f"Deleted {len(delete_ids)} variants from {live}")

    def _update_pass(self, update_ids: List[int]):
        if not update_ids:
            return
        conn = self.store.conn
        live = self.store.name(Table.LIVE)
        queue = self.store.name(Table.QUEUE)
        marks = _placeholders(update_ids)

        assignments = ", ".join(f'"{column}" = q."{column}"' for column in MERGE_COLUMNS)
        conn.execute(
            f"UPDATE {live} SET {assignments} FROM {queue} AS q "
            f"WHERE {live}.id = q.id AND {live}.id IN ({marks})",
            update_ids,
        )

        # Queued rows without a reserved live id are published as new rows
        columns = ", ".join(f'"{column}"' for column in VARIANT_COLUMNS)
        conn.execute(
            f"INSERT INTO {live} ({columns}) SELECT {columns} FROM {queue} "
            f"WHERE id IN ({marks}) AND id NOT IN (SELECT id FROM {live})",
            update_ids,
        )

        conn.execute(f"DELETE FROM {queue} WHERE id IN ({marks})", update_ids)
        conn.execute(f"DELETE FROM {self.store.name(Table.REVIEWS)} WHERE variant_id IN ({marks})", update_ids)

        log.info(f"Merged {len(update_ids)} queued variants into {live}")

    def _live_counts(self) -> Tuple[int, int]:
        live = self.store.name(Table.LIVE)
        # Every live row counts, ghost rows included; their null gene is not a gene
        return self.store.conn.execute(
            f"SELECT COUNT(*), COUNT(DISTINCT gene) FROM {live}"
        ).fetchone()

    def _insert_version(self, version: int) -> Tuple[int, int]:
        variants, genes = self._live_counts()
        now = datetime.now()
        self.store.conn.execute(
            f"INSERT INTO {self.store.name(Table.VERSIONS)} (id, version, created, updated, variants, genes) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [self.store.next_id(Table.VERSIONS), version, now, now, variants, genes],
        )
        return variants, genes

    def _rebuild_gene_counts(self):
        gene_counts = self.store.name(Table.GENE_COUNTS)
        live = self.store.name(Table.LIVE)
        self.store.conn.execute(f"DELETE FROM {gene_counts}")
        self.store.conn.execute(
            f'INSERT INTO {gene_counts} (gene, "count") '
            f"SELECT gene, COUNT(*) FROM {live} WHERE gene IS NOT NULL GROUP BY gene"
        )

    def release(self, confirmed_only: bool = True, version: Optional[int] = None) -> ReleaseSummary:
        """
        Publish queued changes to the live table.

        Args:
            confirmed_only: Only release variants confirmed for release
            version: Version number to record (defaults to current_version())

        Returns:
            ReleaseSummary of the published version

        Raises:
            NothingToReleaseError: If there is nothing to release outside version 0
            ReleaseError: If any step fails; nothing is published
        """
        version = self.current_version() if version is None else version
        log.info(f"Starting release of version {version} (confirmed only: {confirmed_only})")

        try:
            with self.store.transaction():
                if self.overlay is not None:
                    self.overlay.apply()

                delete_ids, update_ids = self._select(confirmed_only)
                if not delete_ids and not update_ids and version != BOOTSTRAP_VERSION:
                    raise NothingToReleaseError(details=f"version {version}")

                self._delete_pass(delete_ids)
                self._update_pass(update_ids)
                variants, genes = self._insert_version(version)
                self._rebuild_gene_counts()
        except NothingToReleaseError:
            log.warning(f"Nothing to release for version {version}")
            raise
        except Exception as e:
            log.error(f"Release of version {version} failed and was rolled back: {e}")
            raise ReleaseError(details=str(e)) from e

        summary = ReleaseSummary(
            version=version,
            deleted_ids=delete_ids,
            updated_ids=update_ids,
            variants=variants,
            genes=genes,
        )
        activity_log.info(
            f"User '{self.store.user}' released version {version} "
            f"({len(update_ids)} updated, {len(delete_ids)} deleted)",
            extra={"action": "release", "user": self.store.user},
        )
        log.info(f"Released version {version}: {variants} variants in {genes} genes")
        return summary
