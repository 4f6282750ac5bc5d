"""
VD Curation Package.

Staged curation and versioned release of genomic variant records: a live
table of published variants, a queue of staged edits sharing the same ids,
a review ledger that gates publication, and a transactional release that
merges reviewed changes into the live table.
"""

from .config import CurationConfig, TableNames, load_config
from .normalizer import format_position
from .annotation import AnnotationGateway, AnnotationTool, KafeenTool
from .dbsnp import DbSnpClient
from .store import VariantStore, Table, Annotated, ManualBlank, ManualWithData
from .diff import DiffEngine, DiffResult, FieldChange, MISSING
from .release import ReleaseController, ReleaseSummary
from .expert import ExpertCurationOverlay, ExpertOverride
from .pipeline import BulkAnnotationPipeline

__version__ = "1.0.0"

__all__ = [
    'CurationConfig',
    'TableNames',
    'load_config',
    'format_position',
    'AnnotationGateway',
    'AnnotationTool',
    'KafeenTool',
    'DbSnpClient',
    'VariantStore',
    'Table',
    'Annotated',
    'ManualBlank',
    'ManualWithData',
    'DiffEngine',
    'DiffResult',
    'FieldChange',
    'MISSING',
    'ReleaseController',
    'ReleaseSummary',
    'ExpertCurationOverlay',
    'ExpertOverride',
    'BulkAnnotationPipeline',
]
