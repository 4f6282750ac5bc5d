"""
Diff Engine Module for VD Curation.

Compares staged (queue) variants against their published (live) rows and
reports the field-level changes a curator is about to release.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Any

from .schema import MERGE_COLUMNS, VARIANT_COLUMNS, is_blank, is_ghost
from .store import Table, VariantStore, describe_variant

# Configure logging
log = logging.getLogger("vd-curation")


class _Missing:
    """Display placeholder for a value that does not exist on one side of a diff."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"

    def __str__(self):
        return "None"


MISSING = _Missing()


@dataclass
class FieldChange:
    live_value: Any
    queue_value: Any


@dataclass
class DiffResult:
    """Unreleased changes of one variant."""

    id: int
    name: str
    changes: Dict[str, FieldChange] = field(default_factory=dict)
    is_new: bool = False


class DiffEngine:
    """Computes live-vs-queue field deltas."""

    def __init__(self, store: VariantStore):
        self.store = store

    def _field_changes(self, queued: Dict[str, Any], live: Optional[Dict[str, Any]],
                       is_new: bool) -> Dict[str, FieldChange]:
        changes = {}
        for name in MERGE_COLUMNS:
            queue_value = queued.get(name)
            if live is not None and name in live and live[name] == queue_value:
                continue

            if is_new or live is None or name not in live:
                # Nothing published yet; empty staged values are not changes
                if is_blank(queue_value):
                    continue
                changes[name] = FieldChange(MISSING, queue_value)
                continue

            live_value = live[name]
            if is_blank(queue_value):
                if is_blank(live_value):
                    continue
                changes[name] = FieldChange(live_value, MISSING)
            else:
                changes[name] = FieldChange(MISSING if is_blank(live_value) else live_value, queue_value)
        return changes

    def unreleased_changes(self, variant_id: Optional[int] = None) -> Optional[Dict[int, DiffResult]]:
        """
        Get the differences between queued and live data.

        Args:
            variant_id: Only diff this variant; all queued variants when None

        Returns:
            Map of variant id to DiffResult, or None when nothing is unreleased
        """
        if variant_id is not None:
            queued_rows = []
            # get_by_id falls back to live; only queued rows are diffed
            if self.store.variant_exists(variant_id, Table.QUEUE):
                queued_rows.append(self.store.get_by_id(variant_id, Table.QUEUE))
            review = self.store.get_review(variant_id)
            reviews = [review] if review is not None else []
        else:
            queued_rows = self.store.get_all_variants(Table.QUEUE)
            reviews = self.store.get_reviews()

        variants: Dict[int, DiffResult] = {}

        for queued in queued_rows:
            current_id = queued["id"]
            live = self.store.get_by_id(current_id, Table.LIVE)

            if live is not None and all(queued.get(c) == live.get(c) for c in VARIANT_COLUMNS):
                continue

            is_new = live is None or is_ghost(live)
            variants[current_id] = DiffResult(
                id=current_id,
                name=describe_variant(queued),
                changes=self._field_changes(queued, live, is_new),
                is_new=is_new,
            )

        # Unchanged variants still need attention when flagged for deletion
        # or carrying comments for the informatics team
        for review in reviews:
            current_id = review["variant_id"]
            if current_id in variants:
                continue
            if is_blank(review.get("informatics_comments")) and not review.get("scheduled_for_deletion"):
                continue
            live = self.store.get_by_id(current_id, Table.LIVE)
            if live is not None:
                variants[current_id] = DiffResult(id=current_id, name=describe_variant(live))

        if not variants:
            return None

        log.debug(f"{len(variants)} variants with unreleased changes")
        return variants
