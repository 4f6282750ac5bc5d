"""
Unit tests for the variant store module.
"""

import json
import duckdb
import pytest
import pandas as pd
from unittest.mock import MagicMock

from vd_curation.annotation import AnnotationGateway
from vd_curation.config import CurationConfig
from vd_curation.exceptions import (
    APIError,
    DuplicateVariantError,
    InvalidFormatError,
    NoDataFoundError,
    SchemaError,
    VariantNotFoundError,
)
from vd_curation.schema import is_ghost
from vd_curation.store import (
    DEFAULT_COMMENTS,
    DEFAULT_PATHOGENICITY,
    Annotated,
    ManualBlank,
    ManualWithData,
    Table,
    VariantStore,
    describe_variant,
)

GJB2_A = {"variation": "chr13:20763612:C>T", "gene": "GJB2", "pathogenicity": "Pathogenic",
          "hgvs_nucleotide_change": "c.109G>A", "disease": "DFNB1"}
GJB2_B = {"variation": "chr13:20763686:G>A", "gene": "GJB2", "pathogenicity": "Benign",
          "hgvs_nucleotide_change": "c.35delG", "disease": "DFNB1"}
MYO7A = {"variation": "chr11:76853783:C>T", "gene": "MYO7A", "pathogenicity": "Likely benign",
         "hgvs_nucleotide_change": "c.47C>T", "disease": "USH1B"}


class TestSchemaSetup:
    """Test table creation and schema validation."""

    def test_tables_created(self, store):
        for table in Table:
            assert store.frame(table).empty

    def test_reopening_is_idempotent(self, store):
        VariantStore(store.config, connection=store.conn)

    def test_schema_mismatch_raises(self):
        conn = duckdb.connect()
        conn.execute("CREATE TABLE vd_live (id INTEGER, variation VARCHAR)")
        with pytest.raises(SchemaError):
            VariantStore(CurationConfig(), connection=conn)
        conn.close()

    def test_custom_table_names(self, fake_tool):
        config = CurationConfig(tables={"live": "published", "queue": "staged"})
        store = VariantStore(config, annotation=AnnotationGateway(config, tool=fake_tool))
        store.create_variant("chr1:100:A>G", ManualBlank())
        assert store.conn.execute("SELECT COUNT(*) FROM staged").fetchone()[0] == 1
        store.close()


class TestCreateVariant:
    """Test the three creation modes."""

    def test_annotated(self, store, fake_tool):
        variant_id = store.create_variant("13:20763612:c>t", Annotated())

        assert fake_tool.calls == ["chr13:20763612:C>T"]
        queued = store.get_by_id(variant_id, Table.QUEUE)
        assert queued["variation"] == "chr13:20763612:C>T"
        assert queued["gene"] == "GJB2"
        assert queued["dbsnp"] == "rs72474224"
        assert queued["comments"].startswith("Manual curation in progress.")

        live = store.get_by_id(variant_id, Table.LIVE)
        assert is_ghost(live)

        review = store.get_review(variant_id)
        assert review["confirmed_for_release"] is False
        assert review["scheduled_for_deletion"] is False
        assert review["informatics_comments"] is None

    def test_default_mode_is_annotated(self, store, fake_tool):
        store.create_variant("chr13:20763612:C>T")
        assert fake_tool.calls == ["chr13:20763612:C>T"]

    def test_manual_blank(self, store, fake_tool):
        variant_id = store.create_variant("chr1:100:a>g", ManualBlank())
        queued = store.get_by_id(variant_id)
        assert queued["variation"] == "chr1:100:A>G"
        assert queued["pathogenicity"] == DEFAULT_PATHOGENICITY
        assert queued["comments"] == DEFAULT_COMMENTS
        assert fake_tool.calls == []

    def test_manual_with_data_is_verbatim(self, store):
        data = dict(GJB2_A, bogus="ignored", sift_score="  0.1 ")
        variant_id = store.create_variant(GJB2_A["variation"], ManualWithData(data))
        queued = store.get_by_id(variant_id)
        assert queued["gene"] == "GJB2"
        assert queued["sift_score"] == "0.1"
        assert "bogus" not in queued

    def test_ids_are_unique(self, store):
        first = store.create_variant("chr1:100:A>G", ManualBlank())
        second = store.create_variant("chr1:200:A>G", ManualBlank())
        assert first != second

    def test_duplicate_in_queue(self, store):
        store.create_variant("chr1:100:A>G", ManualBlank())
        with pytest.raises(DuplicateVariantError):
            store.create_variant("1:100:a>g", ManualBlank())

    def test_duplicate_in_live(self, store, publish):
        publish(GJB2_A)
        with pytest.raises(DuplicateVariantError):
            store.create_variant(GJB2_A["variation"], ManualBlank())

    def test_reimport_skips_duplicate_check(self, store):
        store.create_variant(GJB2_A["variation"], ManualWithData(GJB2_A))
        with pytest.raises(DuplicateVariantError):
            store.create_variant(GJB2_A["variation"], ManualWithData(GJB2_A))
        store.create_variant(GJB2_A["variation"], ManualWithData(GJB2_A, reimport=True))
        assert len(store.get_all_variants(Table.QUEUE)) == 2

    def test_invalid_format_creates_nothing(self, store):
        with pytest.raises(InvalidFormatError):
            store.create_variant("chr1-100", ManualBlank())
        assert store.frame(Table.LIVE).empty

    def test_annotation_failure_creates_nothing(self, store):
        with pytest.raises(NoDataFoundError):
            store.create_variant("chr1:100:A>G", Annotated())
        assert store.frame(Table.LIVE).empty
        assert store.frame(Table.QUEUE).empty
        assert store.frame(Table.REVIEWS).empty

    def test_dbsnp_fill_in(self, config, fake_tool_class):
        tool = fake_tool_class(rows={"chr1:100:A>G": {"variation": "chr1:100:A>G", "gene": "GJB6"}})
        dbsnp = MagicMock()
        dbsnp.get_dbsnp_id.return_value = "rs1234"
        store = VariantStore(config, annotation=AnnotationGateway(config, tool=tool), dbsnp=dbsnp)

        variant_id = store.create_variant("chr1:100:A>G", Annotated())

        assert store.get_by_id(variant_id)["dbsnp"] == "rs1234"
        dbsnp.get_dbsnp_id.assert_called_once_with("chr1:100:A>G")
        store.close()

    def test_dbsnp_failure_is_not_fatal(self, config, fake_tool_class):
        tool = fake_tool_class(rows={"chr1:100:A>G": {"variation": "chr1:100:A>G", "gene": "GJB6"}})
        dbsnp = MagicMock()
        dbsnp.get_dbsnp_id.side_effect = APIError("dbSNP down")
        store = VariantStore(config, annotation=AnnotationGateway(config, tool=tool), dbsnp=dbsnp)

        variant_id = store.create_variant("chr1:100:A>G", Annotated())

        assert store.get_by_id(variant_id)["dbsnp"] is None
        store.close()


class TestReads:
    """Test queue-over-live read precedence."""

    def test_queue_shadows_live(self, store, publish):
        variant_id, = publish(GJB2_A)
        store.update_queue(variant_id, {"pathogenicity": "Likely pathogenic"})

        assert store.get_by_id(variant_id)["pathogenicity"] == "Likely pathogenic"
        assert store.get_by_id(variant_id, Table.LIVE)["pathogenicity"] == "Pathogenic"

    def test_live_fallback(self, store, publish):
        variant_id, = publish(GJB2_A)
        assert store.get_by_id(variant_id, Table.QUEUE)["pathogenicity"] == "Pathogenic"
        assert store.get_by_id(999) is None

    def test_non_variant_table_rejected(self, store):
        with pytest.raises(ValueError):
            store.get_by_id(1, Table.REVIEWS)

    def test_get_by_position(self, store, publish):
        publish(GJB2_A, GJB2_B)
        rows = store.get_by_position("chr13:20763612", Table.LIVE)
        assert [row["variation"] for row in rows] == ["chr13:20763612:C>T"]
        assert store.get_by_position("chr13:2076361", Table.LIVE) is None

    def test_get_by_position_fuzzy(self, store, publish):
        publish(GJB2_A, GJB2_B)
        rows = store.get_by_position("chr13:207636", fuzzy=True)
        assert [row["variation"] for row in rows] == ["chr13:20763612:C>T", "chr13:20763686:G>A"]

    def test_get_by_position_prefers_queue(self, store, publish, make_variant):
        publish(GJB2_A)
        make_variant("chr13:20763612:C>G", gene="GJB2")
        rows = store.get_by_position("chr13:20763612")
        assert [row["variation"] for row in rows] == ["chr13:20763612:C>G"]

    def test_get_by_variation(self, store, publish):
        variant_id, = publish(GJB2_A)
        assert store.get_by_variation(GJB2_A["variation"], Table.LIVE)["id"] == variant_id
        assert store.get_by_variation(GJB2_A["variation"], Table.QUEUE) is None

    def test_get_by_gene(self, store, publish):
        publish(GJB2_B, GJB2_A, MYO7A)
        frame = store.get_by_gene("GJB2", columns=["variation", "pathogenicity"])
        assert list(frame.columns) == ["variation", "pathogenicity"]
        assert list(frame["variation"]) == [GJB2_A["variation"], GJB2_B["variation"]]

    def test_get_by_gene_unknown_column(self, store):
        with pytest.raises(ValueError):
            store.get_by_gene("GJB2", columns=["nope"])


class TestQueueEdits:
    """Test staging edits and discarding them."""

    def test_edit_queued_variant(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G", gene="GJB6")
        assert store.update_queue(variant_id, {"gene": " GJB2 ", "unknown": "x"})
        assert store.get_by_id(variant_id)["gene"] == "GJB2"

    def test_edit_published_variant_copies_into_queue(self, store, publish):
        variant_id, = publish(GJB2_A)
        assert not store.variant_exists(variant_id, Table.QUEUE)

        assert store.update_queue(variant_id, {"disease": "DFNA3A"})

        queued = store.get_by_id(variant_id, Table.QUEUE)
        assert queued["disease"] == "DFNA3A"
        assert queued["gene"] == "GJB2"
        assert store.get_review(variant_id) is not None

    def test_no_op_edit_does_not_queue(self, store, publish):
        variant_id, = publish(GJB2_A)
        assert not store.update_queue(variant_id, {"gene": "GJB2"})
        assert not store.variant_exists(variant_id, Table.QUEUE)
        assert store.get_review(variant_id) is None

    def test_edit_without_known_fields(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G")
        assert not store.update_queue(variant_id, {"id": 12, "bogus": "x"})

    def test_edit_unknown_variant(self, store):
        with pytest.raises(VariantNotFoundError):
            store.update_queue(42, {"gene": "GJB2"})

    def test_remove_all_changes_of_new_variant(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G")
        store.remove_all_changes(variant_id)
        assert store.get_by_id(variant_id) is None
        assert store.get_review(variant_id) is None

    def test_remove_all_changes_of_published_variant(self, store, publish):
        variant_id, = publish(GJB2_A)
        store.update_queue(variant_id, {"disease": "DFNA3A"})
        store.remove_all_changes(variant_id)
        assert not store.variant_exists(variant_id, Table.QUEUE)
        assert store.get_by_id(variant_id)["disease"] == "DFNB1"
        assert store.get_review(variant_id) is None

    def test_remove_from_queue_if_unchanged(self, store, publish):
        edited, copied = publish(GJB2_A, MYO7A)
        store.update_queue(edited, {"disease": "DFNA3A"})
        assert not store.remove_from_queue_if_unchanged(edited)

        store.copy_into_queue(copied)
        store.update_review(copied)
        assert store.remove_from_queue_if_unchanged(copied)
        assert not store.variant_exists(copied, Table.QUEUE)
        assert store.variant_exists(copied, Table.LIVE)
        assert store.get_review(copied) is None

    def test_edit_back_to_published_values_clears_queue(self, store, publish):
        variant_id, = publish(GJB2_A)
        assert store.update_queue(variant_id, {"gene": "MYO7A"})
        assert store.num_unreleased() == 1

        assert store.update_queue(variant_id, {"gene": "GJB2"})

        assert not store.variant_exists(variant_id, Table.QUEUE)
        assert store.get_review(variant_id) is None
        assert store.num_unreleased() == 0
        assert store.get_by_id(variant_id)["gene"] == "GJB2"

    def test_edit_back_keeps_flagged_review(self, store, publish):
        variant_id, = publish(GJB2_A)
        store.update_queue(variant_id, {"disease": "DFNA3A"})
        store.update_review(variant_id, {"informatics_comments": "check transcript"})

        store.update_queue(variant_id, {"disease": "DFNB1"})

        assert not store.variant_exists(variant_id, Table.QUEUE)
        assert store.get_review(variant_id)["informatics_comments"] == "check transcript"

    def test_edit_back_on_new_variant_keeps_queue(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G", gene="GJB6")
        store.update_queue(variant_id, {"gene": "GJB2"})
        store.update_queue(variant_id, {"gene": "GJB6"})
        assert store.variant_exists(variant_id, Table.QUEUE)
        assert store.get_review(variant_id) is not None

    def test_rename_disease(self, store, make_variant):
        make_variant("chr1:100:A>G", gene="GJB2", disease="DFNB1")
        make_variant("chr1:200:A>G", gene="GJB6", disease="DFNB1")
        assert store.rename_disease("DFNB1", "DFNB1A", gene="GJB2") == 1
        assert store.rename_disease("DFNB1", "DFNB1B") == 1
        assert store.rename_disease("missing", "x") == 0
        diseases = sorted(row["disease"] for row in store.get_all_variants(Table.QUEUE))
        assert diseases == ["DFNB1A", "DFNB1B"]


class TestBulkLoad:
    """Test staging a batch of pipeline output."""

    def test_bulk_load(self, store, publish, make_variant):
        live_id, = publish(GJB2_A)
        queued_id = make_variant("chr1:100:A>G", gene="GJB6")

        frame = pd.DataFrame([
            {"variation": GJB2_A["variation"], "gene": "GJB2", "pathogenicity": "Likely pathogenic"},
            {"variation": "chr1:100:A>G", "gene": "GJB6", "pathogenicity": "Benign"},
            {"variation": "chr2:300:T>C", "gene": "TECTA", "pathogenicity": float("nan")},
            {"variation": "", "gene": "TECTA", "pathogenicity": "Benign"},
        ])

        assert store.bulk_load_queue(frame) == 3

        assert store.get_by_id(live_id)["pathogenicity"] == "Likely pathogenic"
        assert store.get_by_id(live_id, Table.LIVE)["pathogenicity"] == "Pathogenic"
        assert store.get_by_id(queued_id)["pathogenicity"] == "Benign"

        new = store.get_by_variation("chr2:300:T>C", Table.QUEUE)
        assert new["pathogenicity"] is None
        assert is_ghost(store.get_by_id(new["id"], Table.LIVE))
        assert store.get_review(new["id"]) is not None
        assert store.num_unreleased() == 3


class TestReviews:
    """Test the review ledger."""

    def test_update_review_keeps_other_fields(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G")
        store.update_review(variant_id, {"confirmed_for_release": True})
        store.update_review(variant_id, {"informatics_comments": "check transcript"})

        review = store.get_review(variant_id)
        assert review["confirmed_for_release"] is True
        assert review["scheduled_for_deletion"] is False
        assert review["informatics_comments"] == "check transcript"
        assert review["updated"] >= review["created"]

    def test_review_for_published_variant(self, store, publish):
        variant_id, = publish(GJB2_A)
        store.update_review(variant_id, {"scheduled_for_deletion": "yes"})
        assert store.get_review(variant_id)["scheduled_for_deletion"] is True
        assert [r["variant_id"] for r in store.get_reviews()] == [variant_id]


class TestTransactions:

    def test_rollback(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G")
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.update_queue(variant_id, {"gene": "GJB2"})
                raise RuntimeError("boom")
        assert store.get_by_id(variant_id)["gene"] is None

    def test_nested_blocks_commit_once(self, store, make_variant):
        variant_id = make_variant("chr1:100:A>G")
        with store.transaction():
            with store.transaction():
                store.update_queue(variant_id, {"gene": "GJB2"})
            store.update_review(variant_id, {"confirmed_for_release": True})
        assert store.get_by_id(variant_id)["gene"] == "GJB2"
        assert store.get_review(variant_id)["confirmed_for_release"] is True


class TestHistory:

    def test_archive(self, store):
        store.archive("release_deletion", "7", {"id": 7, "gene": "GJB2"})
        row = store.conn.execute("SELECT source, record_key, payload FROM variations_log").fetchone()
        assert row[0] == "release_deletion"
        assert row[1] == "7"
        assert json.loads(row[2]) == {"id": 7, "gene": "GJB2"}


def test_describe_variant():
    assert describe_variant(None) == "MISSING_GENE|MISSING_PROTEIN_CHANGE|MISSING_VARIATION"
    assert describe_variant({"gene": "GJB2", "hgvs_protein_change": "p.V37I", "variation": "chr13:1:A>G"}) == (
        "GJB2|p.V37I|chr13:1:A>G"
    )
