"""
Annotation Gateway Module for VD Curation.

This module wraps the external annotation engine (kafeen) used to autofill
new variants. The engine is a command-line tool that reads a file of
variations and writes a two-line tab-separated table (header plus one data
row). Failures are reported through a sibling ``.error_log`` file containing
one of a fixed set of marker strings.
"""

import os
import uuid
import tempfile
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Any

from .config import CurationConfig
from .exceptions import (
    ToolNotConfiguredError,
    UnsupportedMutationTypeError,
    NoMatchingReferenceError,
    NoDataFoundError,
)
from .normalizer import format_position

# Configure logging
log = logging.getLogger("vd-curation")

UNSUPPORTED_MUTATION_MARKER = "ERROR_NOT_SUPPORTED_MUTATION_TYPE"
NO_MATCHING_REFSEQ_MARKER = "ERROR_NO_MATCHING_REFSEQ"

# Output columns of the engine that map one-to-one onto variant fields
ANNOTATION_FIELDS: List[str] = [
    "variation",
    "gene",
    "hgvs_nucleotide_change",
    "hgvs_protein_change",
    "variantlocale",
    "pathogenicity",
    "dbsnp",
    "phylop_score",
    "phylop_pred",
    "sift_score",
    "sift_pred",
    "polyphen2_score",
    "polyphen2_pred",
    "lrt_score",
    "lrt_pred",
    "mutationtaster_score",
    "mutationtaster_pred",
    "gerp_nr",
    "gerp_rs",
    "gerp_pred",
    "lrt_omega",
    "evs_ea_ac",
    "evs_ea_af",
    "evs_aa_ac",
    "evs_aa_af",
    "otoscope_aj_ac",
    "otoscope_aj_af",
    "otoscope_co_ac",
    "otoscope_co_af",
    "otoscope_us_ac",
    "otoscope_us_af",
    "otoscope_jp_ac",
    "otoscope_jp_af",
    "otoscope_es_ac",
    "otoscope_es_af",
    "otoscope_tr_ac",
    "otoscope_tr_af",
    "otoscope_all_ac",
    "otoscope_all_af",
    "tg_afr_ac",
    "tg_afr_af",
    "tg_eur_ac",
    "tg_eur_af",
    "tg_amr_ac",
    "tg_amr_af",
    "tg_asn_ac",
    "tg_asn_af",
    "tg_all_ac",
    "tg_all_af",
]

# (configured frequency name, field prefix, credit label)
FREQUENCY_CREDITS = [
    ("evs", "evs", "ESP6500"),
    ("1000genomes", "tg", "1000 Genomes"),
    ("otoscope", "otoscope", "OtoSCOPE"),
]

CORE_DATABASE_CREDIT = "dbNSFP 2"


class AnnotationTool:
    """Narrow interface to an external annotation engine."""

    def is_configured(self) -> bool:
        raise NotImplementedError

    def run(self, input_path: Path, output_path: Path) -> int:
        """
        Annotate the variations listed in ``input_path`` into ``output_path``.

        Returns:
            Process exit code
        """
        raise NotImplementedError


class KafeenTool(AnnotationTool):
    """Runs ``kafeen.rb`` through the configured ruby interpreter."""

    def __init__(self, config: CurationConfig):
        self.config = config
        self.annotation_path = Path(config.annotation_path) if config.annotation_path else None
        self.ruby_path = config.ruby_path or "ruby"

    @property
    def script(self) -> Optional[Path]:
        if self.annotation_path is None:
            return None
        return self.annotation_path / "kafeen.rb"

    def is_configured(self) -> bool:
        return self.script is not None and self.script.exists()

    def run(self, input_path: Path, output_path: Path) -> int:
        cmd = [
            self.ruby_path, str(self.script),
            "--progress",
            "--in", str(input_path),
            "--out", str(output_path),
        ]
        log_path = self.config.tmp_dir / "log"

        log.debug(f"Running annotation: {' '.join(cmd)}")
        try:
            with open(log_path, 'w') as tool_log:
                result = subprocess.run(cmd, stdout=tool_log, stderr=subprocess.STDOUT, check=False)
        except OSError as e:
            raise ToolNotConfiguredError(details=f"could not start {self.ruby_path}: {e}")

        if result.returncode != 0:
            log.warning(f"Annotation tool exited with code {result.returncode} (see {log_path})")
        return result.returncode


def give_credit_to(prefix: str, data: Dict[str, Any]) -> bool:
    """
    Decide whether a frequency source contributed data to a record.

    Args:
        prefix: Field prefix of the source, e.g. "evs"
        data: Variant field map

    Returns:
        True if any ``<prefix>_*`` field holds a non-empty value
    """
    prefix = prefix + "_"
    for key, value in data.items():
        if key.startswith(prefix) and value is not None and value != "":
            return True
    return False


def credit_comments(data: Dict[str, Any], frequencies: List[str]) -> str:
    """Build the default comment crediting every contributing data source."""
    credits = []
    for name, prefix, label in FREQUENCY_CREDITS:
        if name in frequencies and give_credit_to(prefix, data):
            credits.append(label)
    credits.append(CORE_DATABASE_CREDIT)

    return "Manual curation in progress. Record generated from: " + ", ".join(credits) + "."


def parse_annotation_output(contents: str) -> Dict[str, Optional[str]]:
    """
    Parse the engine's header/data-row output into a field map.

    "." and empty values become None.
    """
    lines = [line for line in contents.splitlines() if line.strip()]
    if len(lines) < 2:
        raise NoDataFoundError(details="annotation output has no data row")

    keys = lines[0].split("\t")
    values = lines[1].split("\t")
    # Short rows are padded so trailing empty columns still map to None
    values += [""] * (len(keys) - len(values))

    result = {}
    for key, value in zip(keys, values):
        value = value.strip()
        result[key.strip()] = None if value in (".", "") else value
    return result


class AnnotationGateway:
    """Autofills variant data for new variants through an annotation engine."""

    def __init__(self, config: CurationConfig, tool: Optional[AnnotationTool] = None):
        """
        Initialize the annotation gateway.

        Args:
            config: Curation configuration
            tool: Annotation engine adapter (defaults to KafeenTool)
        """
        self.config = config
        self.tool = tool or KafeenTool(config)

    def _remove_temp_files(self, paths: List[Path]) -> None:
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def annotate(self, variation: str) -> Dict[str, Optional[str]]:
        """
        Retrieve annotation data for a genomic position.

        Only use this to add new data; existing variants should be read from
        the store, which is much faster.

        Args:
            variation: Genomic position (Hg19)

        Returns:
            Field map keyed by variant column names, including ``comments``

        Raises:
            InvalidFormatError: If the variation is malformed
            AnnotationError: Tagged subclass describing why annotation failed
        """
        variation = format_position(variation)

        if not self.tool.is_configured():
            raise ToolNotConfiguredError(details="set annotation_path to a directory containing kafeen.rb")

        tmp_dir = self.config.tmp_dir or Path(tempfile.gettempdir())
        tmp_dir.mkdir(parents=True, exist_ok=True)

        # Unique names avoid collisions between concurrent annotations
        job_id = uuid.uuid4().hex
        f_in = tmp_dir / f"{job_id}.in"
        f_out = tmp_dir / f"{job_id}.out"
        f_errors = tmp_dir / f"{job_id}.error_log"

        try:
            with open(f_in, 'w') as f:
                f.write(variation)

            log.info(f"Annotating {variation}")
            self.tool.run(f_in, f_out)

            if f_errors.exists():
                errors = f_errors.read_text()
                if UNSUPPORTED_MUTATION_MARKER in errors:
                    raise UnsupportedMutationTypeError(details=variation)
                if NO_MATCHING_REFSEQ_MARKER in errors:
                    raise NoMatchingReferenceError(details=variation)

            contents = f_out.read_text() if f_out.exists() else ""
            if not contents.strip():
                raise NoDataFoundError(details=variation)

            annotation = parse_annotation_output(contents)
        finally:
            self._remove_temp_files([f_in, f_out, f_errors])

        data = {key: annotation.get(key) for key in ANNOTATION_FIELDS}
        data["comments"] = credit_comments(data, self.config.frequencies)

        log.debug(f"Annotation of {variation} returned {sum(v is not None for v in data.values())} fields")
        return data

