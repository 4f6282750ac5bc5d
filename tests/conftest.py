"""
Test configuration for VD Curation.
"""

import sys
import shutil
import tempfile
import pytest
from pathlib import Path

# Add source directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vd_curation.annotation import AnnotationGateway, AnnotationTool
from vd_curation.config import CurationConfig
from vd_curation.store import ManualWithData, VariantStore


class FakeAnnotationTool(AnnotationTool):
    """
    Stand-in for the annotation engine.

    Writes a header/data-row table built from ``rows`` (keyed by the
    canonical variation), or an error log when ``error_marker`` is set.
    """

    def __init__(self, rows=None, error_marker=None, configured=True):
        self.rows = rows or {}
        self.error_marker = error_marker
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    def run(self, input_path, output_path):
        variation = Path(input_path).read_text().strip()
        self.calls.append(variation)

        if self.error_marker:
            output_path.with_suffix(".error_log").write_text(f"kafeen: {self.error_marker}\n")
            return 1

        row = self.rows.get(variation)
        if row is None:
            output_path.write_text("")
            return 0

        keys = list(row.keys())
        header = "\t".join(keys)
        values = "\t".join("." if row[key] is None else str(row[key]) for key in keys)
        output_path.write_text(f"{header}\n{values}\n")
        return 0


@pytest.fixture
def fake_tool_class():
    return FakeAnnotationTool


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path)


@pytest.fixture
def config():
    return CurationConfig(operator="tester")


@pytest.fixture
def fake_tool():
    return FakeAnnotationTool(rows={
        "chr13:20763612:C>T": {
            "variation": "chr13:20763612:C>T",
            "gene": "GJB2",
            "hgvs_nucleotide_change": "NM_004004.5:c.109G>A",
            "hgvs_protein_change": "NP_003995.2:p.Val37Ile",
            "variantlocale": "CODING",
            "pathogenicity": "Pathogenic",
            "dbsnp": "rs72474224",
            "sift_score": "0.02",
            "sift_pred": "D",
            "evs_ea_af": "0.0001",
            "tg_all_af": None,
        },
    })


@pytest.fixture
def store(config, fake_tool):
    """In-memory variant store with a fake annotation engine."""
    store = VariantStore(config, annotation=AnnotationGateway(config, tool=fake_tool))
    yield store
    store.close()


@pytest.fixture
def make_variant(store):
    """Create a queued variant from plain field data and return its id."""
    def _make(variation, **fields):
        data = {"variation": variation}
        data.update(fields)
        return store.create_variant(variation, ManualWithData(data))
    return _make


@pytest.fixture
def publish(store):
    """Create variants and release them straight to the live table."""
    from vd_curation.release import ReleaseController

    def _publish(*records):
        ids = []
        for record in records:
            record = dict(record)
            ids.append(store.create_variant(record["variation"], ManualWithData(record)))
        ReleaseController(store).release(confirmed_only=False)
        return ids
    return _publish
