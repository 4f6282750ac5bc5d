"""
Schema Module for VD Curation.

Static, versioned description of every table the curation pipeline owns.
Field sanitization and the live/queue merge column set are derived from
these descriptors instead of being discovered from the database at runtime.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Tuple

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class FieldSpec:
    """A single column: name plus DuckDB type."""

    name: str
    sql_type: str = "VARCHAR"


def _varchar(*names: str) -> Tuple[FieldSpec, ...]:
    return tuple(FieldSpec(name) for name in names)


def _frequency_fields(source: str, populations: Iterable[str]) -> Tuple[FieldSpec, ...]:
    fields = []
    for population in populations:
        fields.append(FieldSpec(f"{source}_{population}_ac"))
        fields.append(FieldSpec(f"{source}_{population}_af"))
    return tuple(fields)


EVS_POPULATIONS = ("all", "ea", "aa")
TG_POPULATIONS = ("all", "afr", "eur", "amr", "asn")
OTOSCOPE_POPULATIONS = ("all", "aj", "co", "us", "jp", "es", "tr")

# Live and queue tables share this layout; ``id`` is owned by the live table.
VARIANT_FIELDS: Tuple[FieldSpec, ...] = (
    (FieldSpec("id", "INTEGER"),)
    + _varchar(
        "variation",
        "gene",
        "hgvs_nucleotide_change",
        "hgvs_protein_change",
        "variantlocale",
        "pathogenicity",
        "disease",
        "pubmed_id",
        "dbsnp",
        "summary_insilico",
        "summary_frequency",
        "summary_published",
        "comments",
        "phylop_score",
        "phylop_pred",
        "sift_score",
        "sift_pred",
        "polyphen2_score",
        "polyphen2_pred",
        "lrt_score",
        "lrt_pred",
        "lrt_omega",
        "mutationtaster_score",
        "mutationtaster_pred",
        "gerp_nr",
        "gerp_rs",
        "gerp_pred",
    )
    + _frequency_fields("evs", EVS_POPULATIONS)
    + _frequency_fields("tg", TG_POPULATIONS)
    + _frequency_fields("otoscope", OTOSCOPE_POPULATIONS)
)

VARIANT_COLUMNS: Tuple[str, ...] = tuple(spec.name for spec in VARIANT_FIELDS)

# Every live column except the key is overwritten from the queue on release
MERGE_COLUMNS: Tuple[str, ...] = tuple(name for name in VARIANT_COLUMNS if name != "id")

REVIEW_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("variant_id", "INTEGER"),
    FieldSpec("confirmed_for_release", "BOOLEAN"),
    FieldSpec("scheduled_for_deletion", "BOOLEAN"),
    FieldSpec("informatics_comments", "VARCHAR"),
    FieldSpec("created", "TIMESTAMP"),
    FieldSpec("updated", "TIMESTAMP"),
)

VERSION_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("id", "INTEGER"),
    FieldSpec("version", "INTEGER"),
    FieldSpec("created", "TIMESTAMP"),
    FieldSpec("updated", "TIMESTAMP"),
    FieldSpec("variants", "INTEGER"),
    FieldSpec("genes", "INTEGER"),
)

GENE_COUNT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("gene", "VARCHAR"),
    FieldSpec("count", "INTEGER"),
)

EXPERT_FIELDS: Tuple[FieldSpec, ...] = _varchar(
    "variation",
    "gene",
    "chr",
    "pos",
    "ref",
    "alt",
    "pathogenicity",
    "disease",
    "pubmed_id",
    "comments",
) + (
    FieldSpec("delete_on_release", "BOOLEAN"),
    FieldSpec("disabled", "BOOLEAN"),
    FieldSpec("date_inserted", "TIMESTAMP"),
)

# Fields an expert override replaces on the staged variant
EXPERT_OVERRIDE_COLUMNS: Tuple[str, ...] = ("pathogenicity", "disease", "pubmed_id", "comments")

HISTORY_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("id", "INTEGER"),
    FieldSpec("source", "VARCHAR"),
    FieldSpec("record_key", "VARCHAR"),
    FieldSpec("payload", "JSON"),
    FieldSpec("archived", "TIMESTAMP"),
)

# Allowed pathogenicity classifications, in display order
PATHOGENICITY_CLASSES: Tuple[str, ...] = (
    "Pathogenic",
    "Likely pathogenic",
    "Unknown significance",
    "Likely benign",
    "Benign",
    "Benign*",
)

PATHOGENICITY_ABBREVIATIONS: Dict[str, str] = {
    "Pathogenic": "p",
    "Likely pathogenic": "lp",
    "Unknown significance": "us",
    "Likely benign": "lb",
    "Benign": "b",
    "Benign*": "bs",
}

_TRUE_STRINGS = {"1", "true", "t", "yes", "y"}
_FALSE_STRINGS = {"0", "false", "f", "no", "n", ""}


def _coerce(value: Any, sql_type: str) -> Any:
    if value is None:
        return None
    if sql_type == "BOOLEAN":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean")
    if sql_type == "INTEGER":
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                return None
        return int(value)
    if sql_type == "TIMESTAMP":
        return value

    text = str(value).strip()
    return text if text != "" else None


def sanitize(fields: Mapping[str, Any], specs: Tuple[FieldSpec, ...] = VARIANT_FIELDS,
             keep_key: bool = False) -> Dict[str, Any]:
    """
    Clean a field map against a schema descriptor.

    Unknown keys are dropped, strings are trimmed and empty strings become
    None. The ``id`` key is dropped unless ``keep_key`` is set.

    Args:
        fields: Raw field map (e.g. a submitted form)
        specs: Schema descriptor to sanitize against
        keep_key: Keep the ``id`` column

    Returns:
        New dictionary of clean values
    """
    types = {spec.name: spec.sql_type for spec in specs}
    clean = {}
    for key, value in fields.items():
        if key not in types:
            continue
        if key == "id" and not keep_key:
            continue
        clean[key] = _coerce(value, types[key])
    return clean


def column_definitions(specs: Tuple[FieldSpec, ...]) -> str:
    """Render ``name TYPE`` pairs for a CREATE TABLE statement."""
    return ",\n                ".join(f'"{spec.name}" {spec.sql_type}' for spec in specs)


def is_blank(value: Any) -> bool:
    """True for None and empty strings."""
    return value is None or value == ""


def is_ghost(row: Mapping[str, Any]) -> bool:
    """
    A ghost row reserves an id for a variant whose data only exists in the
    queue: both ``variation`` and ``hgvs_nucleotide_change`` are null.
    """
    return row.get("variation") is None and row.get("hgvs_nucleotide_change") is None
