"""
Variant Store Module for VD Curation.

This module owns the live and queue variant tables and the review ledger,
all stored in DuckDB. New variants reserve their id with an empty ("ghost")
row in the live table; their data lives in the queue under the same id until
a release merges it into live.

Reads follow a fixed precedence: the queue is consulted first and the live
table second, so staged edits always shadow published data.
"""

import json
import logging
import duckdb
import pandas as pd
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Iterator, Tuple, Union

from .annotation import AnnotationGateway
from .config import CurationConfig
from .dbsnp import DbSnpClient
from .exceptions import (
    APIError,
    DuplicateVariantError,
    VariantNotFoundError,
    SchemaError,
)
from .normalizer import format_position
from .schema import (
    FieldSpec,
    VARIANT_FIELDS,
    VARIANT_COLUMNS,
    MERGE_COLUMNS,
    REVIEW_FIELDS,
    VERSION_FIELDS,
    GENE_COUNT_FIELDS,
    EXPERT_FIELDS,
    HISTORY_FIELDS,
    column_definitions,
    is_blank,
    is_ghost,
    sanitize,
)

# Configure logging
log = logging.getLogger("vd-curation")
activity_log = logging.getLogger("vd-curation.activity")


class Table(Enum):
    """Logical tables; values are attribute names of ``TableNames``."""

    LIVE = "live"
    QUEUE = "queue"
    REVIEWS = "reviews"
    VERSIONS = "versions"
    GENE_COUNTS = "gene_counts"
    HISTORY = "history"
    EXPERT = "expert"


# Staged data shadows published data
READ_PRECEDENCE: Tuple[Table, ...] = (Table.QUEUE, Table.LIVE)

TABLE_SPECS: Dict[Table, Tuple[FieldSpec, ...]] = {
    Table.LIVE: VARIANT_FIELDS,
    Table.QUEUE: VARIANT_FIELDS,
    Table.REVIEWS: REVIEW_FIELDS,
    Table.VERSIONS: VERSION_FIELDS,
    Table.GENE_COUNTS: GENE_COUNT_FIELDS,
    Table.HISTORY: HISTORY_FIELDS,
    Table.EXPERT: EXPERT_FIELDS,
}

# Tables whose ids come from a sequence
SEQUENCE_TABLES = (Table.LIVE, Table.VERSIONS, Table.HISTORY)

DEFAULT_PATHOGENICITY = "Unknown significance"
DEFAULT_COMMENTS = "Manual curation in progress."


@dataclass
class Annotated:
    """Autofill the new variant through the annotation engine."""


@dataclass
class ManualBlank:
    """Create the variant with fixed placeholder values."""


@dataclass
class ManualWithData:
    """
    Create the variant from caller-supplied data.

    ``reimport`` skips the duplicate check, for reloading exported records.
    """

    data: Dict[str, Any] = field(default_factory=dict)
    reimport: bool = False


CreationMode = Union[Annotated, ManualBlank, ManualWithData]


def describe_variant(row: Optional[Dict[str, Any]]) -> str:
    """Render a variant as ``gene|protein|variation`` for the activity log."""
    row = row or {}
    gene = row.get("gene") or "MISSING_GENE"
    protein = row.get("hgvs_protein_change") or "MISSING_PROTEIN_CHANGE"
    variation = row.get("variation") or "MISSING_VARIATION"
    return f"{gene}|{protein}|{variation}"


class VariantStore:
    """Two-tier (queue over live) variant store backed by DuckDB."""

    def __init__(self, config: Optional[CurationConfig] = None,
                 connection: Optional[duckdb.DuckDBPyConnection] = None,
                 annotation: Optional[AnnotationGateway] = None,
                 dbsnp: Optional[DbSnpClient] = None,
                 user: Optional[str] = None):
        """
        Initialize the variant store.

        Args:
            config: Curation configuration (table names, database path)
            connection: Existing DuckDB connection to use instead of opening db_path
            annotation: Annotation gateway used for Annotated creation
            dbsnp: Optional dbSNP client used to fill missing dbSNP ids
            user: Acting curator recorded in the activity log
        """
        self.config = config or CurationConfig()
        self.annotation = annotation or AnnotationGateway(self.config)
        self.dbsnp = dbsnp
        self.user = user or self.config.operator
        self._depth = 0

        if connection is None:
            log.info(f"Opening variant store at {self.config.db_path}")
            connection = duckdb.connect(str(self.config.db_path))
        self.conn = connection

        self._initialize_db()

    def name(self, table: Table) -> str:
        """Physical name of a logical table."""
        return getattr(self.config.tables, table.value)

    def _initialize_db(self):
        """Create tables and sequences if needed and check them against the schema descriptor."""
        for table, specs in TABLE_SPECS.items():
            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.name(table)} (
                {column_definitions(specs)}
                )
            """)

        for table in SEQUENCE_TABLES:
            self.conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {self._sequence(table)} START 1")

        self._validate_schema()

    def _validate_schema(self):
        for table, specs in TABLE_SPECS.items():
            rows = self.conn.execute(
                """
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_name = ?
                ORDER BY ordinal_position
                """,
                [self.name(table)],
            ).fetchall()
            actual = [(name, data_type.upper()) for name, data_type in rows]
            expected = [(spec.name, spec.sql_type) for spec in specs]
            if actual != expected:
                missing = sorted({n for n, _ in expected} - {n for n, _ in actual})
                extra = sorted({n for n, _ in actual} - {n for n, _ in expected})
                raise SchemaError(
                    details=f"table '{self.name(table)}' (missing: {missing or 'none'}, "
                            f"unexpected: {extra or 'none'}, or column types/order differ)"
                )

    def _sequence(self, table: Table) -> str:
        return f"{self.name(table)}_id_seq"

    def next_id(self, table: Table = Table.LIVE) -> int:
        """Draw the next id from a table's sequence."""
        return self.conn.execute(f"SELECT nextval('{self._sequence(table)}')").fetchone()[0]

    # ------------------------------------------------------------------
    # Connection handling

    @contextmanager
    def transaction(self) -> Iterator["VariantStore"]:
        """
        Run a block atomically.

        Nested blocks join the outermost transaction; only the outermost block
        commits or rolls back.
        """
        if self._depth == 0:
            self.conn.begin()
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.conn.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    def duplicate(self) -> "VariantStore":
        """Return a store on a new cursor of the same database, for use from another thread."""
        return VariantStore(
            self.config,
            connection=self.conn.cursor(),
            annotation=self.annotation,
            dbsnp=self.dbsnp,
            user=self.user,
        )

    def close(self):
        """Close the database connection."""
        self.conn.close()

    # ------------------------------------------------------------------
    # Low-level row access

    def _fetch_dicts(self, query: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.execute(query, params or [])
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _fetch_row(self, table: Table, variant_id: int) -> Optional[Dict[str, Any]]:
        rows = self._fetch_dicts(f"SELECT * FROM {self.name(table)} WHERE id = ? LIMIT 1", [variant_id])
        return rows[0] if rows else None

    def _insert_variant_row(self, table: Table, variant_id: int, data: Dict[str, Any]):
        values = [variant_id] + [data.get(column) for column in MERGE_COLUMNS]
        placeholders = ", ".join(["?"] * len(VARIANT_COLUMNS))
        columns = ", ".join(f'"{column}"' for column in VARIANT_COLUMNS)
        self.conn.execute(
            f"INSERT INTO {self.name(table)} ({columns}) VALUES ({placeholders})", values
        )

    def _update_variant_row(self, table: Table, variant_id: int, data: Dict[str, Any]):
        if not data:
            return
        assignments = ", ".join(f'"{column}" = ?' for column in data)
        self.conn.execute(
            f"UPDATE {self.name(table)} SET {assignments} WHERE id = ?",
            list(data.values()) + [variant_id],
        )

    def _delete_ghost(self, variant_id: int) -> bool:
        live = self._fetch_row(Table.LIVE, variant_id)
        if live is not None and is_ghost(live):
            self.conn.execute(f"DELETE FROM {self.name(Table.LIVE)} WHERE id = ?", [variant_id])
            return True
        return False

    def _log_activity(self, action: str, verb: str, row: Optional[Dict[str, Any]],
                      fields: Optional[List[str]] = None):
        message = f"User '{self.user}' {verb} variant {describe_variant(row)}"
        if fields:
            message += f" (fields: {', '.join(fields)})"
        activity_log.info(message, extra={"action": action, "user": self.user})

    def archive(self, source: str, record_key: str, payload: Dict[str, Any]):
        """Append a record to the history log."""
        self.conn.execute(
            f"INSERT INTO {self.name(Table.HISTORY)} (id, source, record_key, payload, archived) "
            "VALUES (?, ?, ?, ?, ?)",
            [self.next_id(Table.HISTORY), source, record_key,
             json.dumps(payload, default=str), datetime.now()],
        )

    # ------------------------------------------------------------------
    # Variant creation

    def variation_exists(self, variation: str) -> bool:
        """True if ``variation`` is present in either the live table or the queue."""
        row = self.conn.execute(
            f"""
            SELECT 1 FROM {self.name(Table.LIVE)} WHERE variation = ?
            UNION ALL
            SELECT 1 FROM {self.name(Table.QUEUE)} WHERE variation = ?
            LIMIT 1
            """,
            [variation, variation],
        ).fetchone()
        return row is not None

    def _build_variant_data(self, variation: str, mode: CreationMode) -> Dict[str, Any]:
        if isinstance(mode, ManualWithData):
            data = dict(mode.data)
            data["variation"] = data.get("variation") or variation
            return data

        if isinstance(mode, ManualBlank):
            return {
                "variation": variation,
                "pathogenicity": DEFAULT_PATHOGENICITY,
                "comments": DEFAULT_COMMENTS,
            }

        data = self.annotation.annotate(variation)
        data["variation"] = data.get("variation") or variation

        if not data.get("dbsnp") and self.dbsnp is not None:
            try:
                data["dbsnp"] = self.dbsnp.get_dbsnp_id(variation)
            except APIError as e:
                log.warning(f"dbSNP lookup failed for {variation}: {e}")
        return data

    def create_variant(self, variation: str, mode: Optional[CreationMode] = None) -> int:
        """
        Add a new variant.

        An empty row is inserted in the live table to reserve a unique id; the
        variant's data goes into the queue under that id together with a
        default review record. Nothing is visible on the live table until a
        release.

        Args:
            variation: Genomic position (Hg19)
            mode: Annotated (default), ManualBlank or ManualWithData

        Returns:
            New variant id

        Raises:
            InvalidFormatError: If the variation is malformed
            DuplicateVariantError: If the variation is already live or queued
            AnnotationError: If annotation fails (Annotated mode)
        """
        mode = mode or Annotated()

        if isinstance(mode, ManualWithData):
            # Caller data is used verbatim
            variation = mode.data.get("variation") or (format_position(variation) if variation else None)
        else:
            variation = format_position(variation)

        check_duplicates = not (isinstance(mode, ManualWithData) and mode.reimport)
        if check_duplicates and variation and self.variation_exists(variation):
            raise DuplicateVariantError(details=variation)

        data = sanitize(self._build_variant_data(variation, mode))

        with self.transaction():
            # Id generation is owned by the live table
            variant_id = self.next_id(Table.LIVE)
            self._insert_variant_row(Table.LIVE, variant_id, {})
            self._insert_variant_row(Table.QUEUE, variant_id, data)
            self.update_review(variant_id)

        self._log_activity("add", "added new", data)
        log.info(f"Created variant {variant_id} ({variation})")
        return variant_id

    # ------------------------------------------------------------------
    # Reads

    def _read_order(self, table: Table) -> Tuple[Table, ...]:
        if table not in READ_PRECEDENCE:
            raise ValueError(f"Variants are only stored in {[t.value for t in READ_PRECEDENCE]}, not {table.value}")
        return READ_PRECEDENCE[READ_PRECEDENCE.index(table):]

    def get_by_id(self, variant_id: int, table: Table = Table.QUEUE) -> Optional[Dict[str, Any]]:
        """
        Get a single variant.

        Queue data takes precedence: if the variant is not in the requested
        table and that table is not the live table, the live table is queried
        instead.

        Args:
            variant_id: Variant id
            table: Table to query first

        Returns:
            Variant row or None
        """
        for candidate in self._read_order(table):
            row = self._fetch_row(candidate, variant_id)
            if row is not None:
                return row
        return None

    def get_by_position(self, position: str, table: Table = Table.QUEUE,
                        fuzzy: bool = False) -> Optional[List[Dict[str, Any]]]:
        """
        Get all variants at a genomic position.

        With ``fuzzy``, "chr13:20" also matches "chr13:20796839:...".

        Args:
            position: Genomic position without the allele change, e.g. "chr13:20796839"
            table: Table to query first
            fuzzy: Allow prefix matches on the position

        Returns:
            List of variant rows or None
        """
        for candidate in self._read_order(table):
            query = f"SELECT * FROM {self.name(candidate)} WHERE starts_with(variation, ?)"
            params = [position + ":"]
            if fuzzy:
                query += " OR starts_with(variation, ?)"
                params.append(position)
            rows = self._fetch_dicts(query + " ORDER BY variation", params)
            if rows:
                return rows
        return None

    def get_by_variation(self, variation: str, table: Table = Table.QUEUE) -> Optional[Dict[str, Any]]:
        """Get the variant with exactly this variation from one table (no fallback)."""
        self._read_order(table)
        rows = self._fetch_dicts(
            f"SELECT * FROM {self.name(table)} WHERE variation = ? LIMIT 1", [variation]
        )
        return rows[0] if rows else None

    def get_by_gene(self, gene: str, columns: Optional[List[str]] = None,
                    table: Table = Table.LIVE) -> pd.DataFrame:
        """
        Get all variants of a gene, ordered by variation.

        Args:
            gene: Gene symbol
            columns: Optional subset of variant columns
            table: Variant table to read

        Returns:
            DataFrame of variants
        """
        self._read_order(table)
        if columns:
            unknown = [c for c in columns if c not in VARIANT_COLUMNS]
            if unknown:
                raise ValueError(f"Unknown variant columns: {unknown}")
            selection = ", ".join(f'"{c}"' for c in columns)
        else:
            selection = "*"

        return self.conn.execute(
            f"SELECT {selection} FROM {self.name(table)} WHERE gene = ? ORDER BY variation",
            [gene],
        ).df()

    def get_all_variants(self, table: Table = Table.LIVE) -> List[Dict[str, Any]]:
        """Get every variant row of a table, ordered by id."""
        self._read_order(table)
        return self._fetch_dicts(f"SELECT * FROM {self.name(table)} ORDER BY id")

    def variant_exists(self, variant_id: int, table: Table) -> bool:
        return self._fetch_row(table, variant_id) is not None

    def frame(self, table: Table) -> pd.DataFrame:
        """Whole table as a DataFrame."""
        return self.conn.execute(f"SELECT * FROM {self.name(table)}").df()

    # ------------------------------------------------------------------
    # Queue edits

    def copy_into_queue(self, variant_id: int):
        """Copy a live variant into the queue."""
        columns = ", ".join(f'"{column}"' for column in VARIANT_COLUMNS)
        self.conn.execute(
            f"INSERT INTO {self.name(Table.QUEUE)} ({columns}) "
            f"SELECT {columns} FROM {self.name(Table.LIVE)} WHERE id = ?",
            [variant_id],
        )

    def update_queue(self, variant_id: int, fields: Dict[str, Any]) -> bool:
        """
        Stage edits for a variant.

        Unknown fields are dropped, strings trimmed and empty strings stored
        as null. A variant that is not yet queued is only copied from live
        when the edit actually changes something, and a published variant
        whose edits bring it back to its live values leaves the queue.

        Args:
            variant_id: Variant id
            fields: Field map of edits

        Returns:
            True if the queue was written, False for a no-op edit

        Raises:
            VariantNotFoundError: If the id is neither queued nor live
        """
        clean = sanitize(fields)
        if not clean:
            return False

        reverted = False
        with self.transaction():
            if self.variant_exists(variant_id, Table.QUEUE):
                self._update_variant_row(Table.QUEUE, variant_id, clean)
                # An edit back to the published values leaves nothing to stage
                live = self._fetch_row(Table.LIVE, variant_id)
                if live is not None and not is_ghost(live):
                    reverted = self.remove_from_queue_if_unchanged(variant_id)
            else:
                live = self._fetch_row(Table.LIVE, variant_id)
                if live is None:
                    raise VariantNotFoundError(details=f"id {variant_id}")

                changes = {key: value for key, value in clean.items() if live.get(key) != value}
                if not changes:
                    return False

                self.copy_into_queue(variant_id)
                self._update_variant_row(Table.QUEUE, variant_id, clean)

            if not reverted:
                self.update_review(variant_id)

        row = self._fetch_row(Table.LIVE if reverted else Table.QUEUE, variant_id)
        self._log_activity("edit", "edited", row, sorted(clean))
        return True

    def remove_all_changes(self, variant_id: int):
        """
        Discard every staged change for a variant.

        Deletes its queue and review rows, and its live row too when that row
        is still a ghost (an abandoned new variant).
        """
        queued = self._fetch_row(Table.QUEUE, variant_id)
        with self.transaction():
            self.conn.execute(f"DELETE FROM {self.name(Table.QUEUE)} WHERE id = ?", [variant_id])
            self.conn.execute(f"DELETE FROM {self.name(Table.REVIEWS)} WHERE variant_id = ?", [variant_id])
            self._delete_ghost(variant_id)

        self._log_activity("delete", "removed all changes for", queued)

    def remove_from_queue_if_unchanged(self, variant_id: int) -> bool:
        """
        Drop a queue row that no longer differs from live.

        The review row goes with it unless it still schedules a deletion or
        carries informatics comments.

        Returns:
            True if the queue row was removed
        """
        from .diff import DiffEngine

        result = DiffEngine(self).unreleased_changes(variant_id)
        entry = result.get(variant_id) if result else None
        if entry is not None and entry.changes:
            return False

        review = self.get_review(variant_id)
        keep_review = review is not None and (
            review["scheduled_for_deletion"] or not is_blank(review["informatics_comments"])
        )

        with self.transaction():
            self.conn.execute(f"DELETE FROM {self.name(Table.QUEUE)} WHERE id = ?", [variant_id])
            if self._delete_ghost(variant_id) or not keep_review:
                self.conn.execute(f"DELETE FROM {self.name(Table.REVIEWS)} WHERE variant_id = ?", [variant_id])

        log.debug(f"Removed unchanged variant {variant_id} from the queue")
        return True

    def rename_disease(self, current: str, new: str, gene: Optional[str] = None) -> int:
        """
        Rename a disease on queued variants.

        Args:
            current: Current disease name
            new: Replacement name
            gene: Restrict the rename to one gene

        Returns:
            Number of queue rows renamed
        """
        predicate = "disease = ?"
        params: List[Any] = [current]
        if gene is not None:
            predicate += " AND gene = ?"
            params.append(gene)

        queue = self.name(Table.QUEUE)
        count = self.conn.execute(f"SELECT COUNT(*) FROM {queue} WHERE {predicate}", params).fetchone()[0]
        if count:
            self.conn.execute(f"UPDATE {queue} SET disease = ? WHERE {predicate}", [new] + params)
        return count

    def bulk_load_queue(self, frame: pd.DataFrame) -> int:
        """
        Stage a batch of variants.

        Rows whose variation is already live reuse the live id; rows already
        queued replace the staged data; anything else reserves a new id. Every
        loaded variant gets a review record.

        Args:
            frame: DataFrame with variant columns

        Returns:
            Number of variants loaded
        """
        loaded = 0
        with self.transaction():
            for record in frame.to_dict(orient="records"):
                record = {k: (None if not isinstance(v, (list, dict)) and pd.isna(v) else v)
                          for k, v in record.items()}
                data = sanitize(record)
                variation = data.get("variation")
                if not variation:
                    log.warning("Skipping bulk row without a variation")
                    continue

                row = (self.get_by_variation(variation, Table.LIVE)
                       or self.get_by_variation(variation, Table.QUEUE))

                if row:
                    variant_id = row["id"]
                else:
                    variant_id = self.next_id(Table.LIVE)
                    self._insert_variant_row(Table.LIVE, variant_id, {})

                full = {column: data.get(column) for column in MERGE_COLUMNS}
                if self.variant_exists(variant_id, Table.QUEUE):
                    self._update_variant_row(Table.QUEUE, variant_id, full)
                else:
                    self._insert_variant_row(Table.QUEUE, variant_id, full)

                if self.get_review(variant_id) is None:
                    self.update_review(variant_id)
                loaded += 1

        log.info(f"Bulk loaded {loaded} out of {len(frame)} variants into the queue")
        return loaded

    # ------------------------------------------------------------------
    # Review ledger

    def update_review(self, variant_id: int, fields: Optional[Dict[str, Any]] = None):
        """
        Create or update the review record of a variant.

        Args:
            variant_id: Variant id
            fields: Review fields to set (confirmed_for_release,
                scheduled_for_deletion, informatics_comments)
        """
        clean = sanitize(fields or {}, REVIEW_FIELDS)
        for key in ("variant_id", "created", "updated"):
            clean.pop(key, None)

        now = datetime.now()
        reviews = self.name(Table.REVIEWS)

        with self.transaction():
            if self.get_review(variant_id) is not None:
                clean["updated"] = now
                assignments = ", ".join(f'"{column}" = ?' for column in clean)
                self.conn.execute(
                    f"UPDATE {reviews} SET {assignments} WHERE variant_id = ?",
                    list(clean.values()) + [variant_id],
                )
            else:
                record = {
                    "variant_id": variant_id,
                    "confirmed_for_release": False,
                    "scheduled_for_deletion": False,
                    "informatics_comments": None,
                    "created": now,
                    "updated": now,
                }
                record.update(clean)
                # Booleans default to False rather than null
                for flag in ("confirmed_for_release", "scheduled_for_deletion"):
                    record[flag] = bool(record[flag])
                columns = ", ".join(f'"{column}"' for column in record)
                placeholders = ", ".join(["?"] * len(record))
                self.conn.execute(
                    f"INSERT INTO {reviews} ({columns}) VALUES ({placeholders})", list(record.values())
                )

    def get_review(self, variant_id: int) -> Optional[Dict[str, Any]]:
        rows = self._fetch_dicts(
            f"SELECT * FROM {self.name(Table.REVIEWS)} WHERE variant_id = ? LIMIT 1", [variant_id]
        )
        return rows[0] if rows else None

    def get_reviews(self) -> List[Dict[str, Any]]:
        return self._fetch_dicts(f"SELECT * FROM {self.name(Table.REVIEWS)} ORDER BY variant_id")

    def num_unreleased(self) -> int:
        """Number of variants with unreleased changes."""
        return self.conn.execute(f"SELECT COUNT(*) FROM {self.name(Table.REVIEWS)}").fetchone()[0]
