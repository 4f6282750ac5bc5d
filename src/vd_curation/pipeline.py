"""
Bulk Annotation Pipeline Module for VD Curation.

Runs the multi-gene annotation toolchain as a detached background job:

    genes file -> external toolchain -> mygenes<job>.vcf.gz
               -> TSV with a fixed column order -> queue bulk load

Jobs run on a single background worker and report progress through a JSON
status file and a log file in the pipeline working directory; callers poll
rather than block.
"""

import os
import json
import uuid
import shutil
import logging
import subprocess
import concurrent.futures
import pandas as pd
from cyvcf2 import VCF
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple, Union
from urllib.parse import unquote_plus

from .config import CurationConfig
from .exceptions import PipelineError
from .normalizer import format_position
from .store import VariantStore

# Configure logging
log = logging.getLogger("vd-curation")

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

# Ordered (queue column, INFO tag) pairs of the TSV handed to the queue loader
PIPELINE_COLUMNS: List[Tuple[str, str]] = [
    ("variation", "ASAP_VARIANT"),
    ("gene", "GENE"),
    ("hgvs_nucleotide_change", "ASAP_HGVS_C"),
    ("hgvs_protein_change", "ASAP_HGVS_P"),
    ("variantlocale", "ASAP_LOCALE"),
    ("pathogenicity", "FINAL_PATHOGENICITY"),
    ("disease", "FINAL_DISEASE"),
    ("pubmed_id", "FINAL_PMID"),
    ("comments", "FINAL_COMMENTS"),
    ("dbsnp", "DBSNP"),
    ("sift_score", "SIFT_SCORE"),
    ("sift_pred", "SIFT_PRED"),
    ("polyphen2_score", "POLYPHEN2_SCORE"),
    ("polyphen2_pred", "POLYPHEN2_PRED"),
    ("lrt_score", "LRT_SCORE"),
    ("lrt_pred", "LRT_PRED"),
    ("mutationtaster_score", "MUTATIONTASTER_SCORE"),
    ("mutationtaster_pred", "MUTATIONTASTER_PRED"),
    ("gerp_rs", "GERP_RS"),
    ("gerp_pred", "GERP_PRED"),
    ("phylop_score", "PHYLOP_SCORE"),
    ("phylop_pred", "PHYLOP_PRED"),
    ("evs_all_af", "EVS_ALL_AF"),
    ("evs_ea_ac", "EVS_EA_AC"),
    ("evs_ea_af", "EVS_EA_AF"),
    ("evs_aa_ac", "EVS_AA_AC"),
    ("evs_aa_af", "EVS_AA_AF"),
    ("tg_all_af", "TG_ALL_AF"),
    ("tg_afr_af", "TG_AFR_AF"),
    ("tg_amr_af", "TG_AMR_AF"),
    ("tg_eur_af", "TG_EUR_AF"),
]

TSV_COLUMNS = [column for column, _ in PIPELINE_COLUMNS]


def _info_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else None
    if isinstance(value, (tuple, list)):
        value = ",".join(str(v) for v in value)
    value = str(value).strip()
    return None if value in (".", "") else value


class ToolchainRunner:
    """Runs ``pipeline.rb`` on a genes file to produce an annotated VCF."""

    def __init__(self, config: CurationConfig):
        self.config = config

    def run(self, genes_file: Path, log_path: Path) -> Path:
        """
        Args:
            genes_file: Gene list, one symbol per line
            log_path: File receiving the toolchain's output

        Returns:
            Path to the compressed VCF written next to the genes file
        """
        if not self.config.annotation_path:
            raise PipelineError(details="annotation_path is not configured")

        env = dict(os.environ)
        env["PATH"] = os.pathsep.join([env.get("PATH", "")] + list(self.config.pipeline_extra_paths))
        cmd = [self.config.ruby_path or "ruby", "pipeline.rb", str(genes_file)]

        log.info(f"Running annotation toolchain on {genes_file}")
        with open(log_path, 'a') as job_log:
            result = subprocess.run(
                cmd, cwd=self.config.annotation_path, env=env,
                stdout=job_log, stderr=subprocess.STDOUT, check=False,
            )
        if result.returncode != 0:
            raise PipelineError("Annotation toolchain failed", f"exit code {result.returncode}, see {log_path}")

        vcf_path = genes_file.with_suffix(".vcf.gz")
        if not vcf_path.exists():
            raise PipelineError("Annotation toolchain produced no output", str(vcf_path))
        return vcf_path


class VcfConverter:
    """Converts the toolchain's VCF into the queue loader's TSV layout."""

    def to_frame(self, vcf_path: Union[str, Path]) -> pd.DataFrame:
        """
        Read annotated variants from a (gzipped) VCF.

        Args:
            vcf_path: Path to the VCF

        Returns:
            DataFrame with TSV_COLUMNS
        """
        rows = []
        vcf = VCF(str(vcf_path))
        try:
            for record in vcf:
                row = {}
                for column, tag in PIPELINE_COLUMNS:
                    row[column] = _info_value(record.INFO.get(tag))

                if row["variation"] is None and record.ALT:
                    chrom = record.CHROM
                    row["variation"] = format_position(f"{chrom}:{record.POS}:{record.REF}>{record.ALT[0]}")
                if row["dbsnp"] is None and record.ID and record.ID.startswith("rs"):
                    row["dbsnp"] = record.ID
                if row["disease"] is not None:
                    row["disease"] = unquote_plus(row["disease"])
                rows.append(row)
        finally:
            vcf.close()

        return pd.DataFrame(rows, columns=TSV_COLUMNS)

    def run(self, vcf_path: Path, tsv_path: Path) -> Path:
        frame = self.to_frame(vcf_path)
        frame.to_csv(tsv_path, sep="\t", index=False)
        log.info(f"Converted {len(frame)} variants from {vcf_path} to {tsv_path}")
        return tsv_path


class QueueLoader:
    """Bulk loads a pipeline TSV into the queue."""

    def run(self, store: VariantStore, tsv_path: Path) -> int:
        frame = pd.read_csv(tsv_path, sep="\t", dtype=str, keep_default_na=False)
        missing = [column for column in TSV_COLUMNS if column not in frame.columns]
        if missing:
            raise PipelineError(f"TSV {tsv_path} is missing columns", str(missing))
        return store.bulk_load_queue(frame[TSV_COLUMNS])


class BulkAnnotationPipeline:
    """Submits and tracks background bulk annotation jobs."""

    def __init__(self, store: VariantStore,
                 toolchain: Optional[ToolchainRunner] = None,
                 converter: Optional[VcfConverter] = None,
                 loader: Optional[QueueLoader] = None):
        """
        Initialize the pipeline.

        Args:
            store: Variant store the results are loaded into
            toolchain: External toolchain adapter
            converter: VCF to TSV adapter
            loader: Queue loading adapter
        """
        self.store = store
        self.config = store.config
        self.workdir = self.config.workdir
        self.workdir.mkdir(parents=True, exist_ok=True)

        self.toolchain = toolchain or ToolchainRunner(self.config)
        self.converter = converter or VcfConverter()
        self.loader = loader or QueueLoader()

        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="vd-pipeline")
        self._futures: Dict[str, concurrent.futures.Future] = {}

    def _status_path(self, job_id: str) -> Path:
        return self.workdir / f"job{job_id}.status.json"

    def _log_path(self, job_id: str) -> Path:
        return self.workdir / f"outPutLog{job_id}.txt"

    def _write_status(self, job_id: str, /, **updates) -> Dict[str, Any]:
        path = self._status_path(job_id)
        status = {}
        if path.exists():
            with open(path, 'r') as f:
                status = json.load(f)
        status.update(updates)

        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(status, f, indent=2, default=str)
        os.replace(tmp_path, path)
        return status

    def submit(self, genes_file: Union[str, Path]) -> str:
        """
        Queue a bulk annotation job.

        Args:
            genes_file: Gene list, one symbol per line

        Returns:
            Job id
        """
        genes_file = Path(genes_file)
        if not genes_file.exists():
            raise PipelineError("Genes file not found", str(genes_file))

        job_id = datetime.now().strftime("%Y%m%d%H%M%S") + uuid.uuid4().hex[:6]
        job_genes = self.workdir / f"mygenes{job_id}.txt"
        shutil.copyfile(genes_file, job_genes)

        self._write_status(
            job_id,
            job_id=job_id,
            state=QUEUED,
            genes_file=str(job_genes),
            log=str(self._log_path(job_id)),
            submitted=datetime.now().isoformat(),
            loaded=None,
            error=None,
        )

        # The worker thread gets its own cursor on the same database
        job_store = self.store.duplicate()
        self._futures[job_id] = self._executor.submit(self._run, job_id, job_genes, job_store)
        log.info(f"Submitted bulk annotation job {job_id} for {genes_file}")
        return job_id

    def _run(self, job_id: str, genes_file: Path, job_store: VariantStore):
        log_path = self._log_path(job_id)
        self._write_status(job_id, state=RUNNING, started=datetime.now().isoformat())
        try:
            vcf_path = self.toolchain.run(genes_file, log_path)
            tsv_path = self.converter.run(vcf_path, self.workdir / f"mygenes{job_id}.tsv")
            loaded = self.loader.run(job_store, tsv_path)
        except Exception as e:
            log.error(f"Bulk annotation job {job_id} failed: {e}")
            with open(log_path, 'a') as job_log:
                job_log.write(f"FAILED: {e}\n")
            self._write_status(job_id, state=FAILED, error=str(e), finished=datetime.now().isoformat())
            return
        finally:
            job_store.close()

        self._write_status(job_id, state=SUCCEEDED, loaded=loaded, finished=datetime.now().isoformat())
        log.info(f"Bulk annotation job {job_id} loaded {loaded} variants into the queue")

    def poll(self, job_id: str) -> Dict[str, Any]:
        """
        Read a job's status artifact.

        Raises:
            PipelineError: If the job is unknown
        """
        path = self._status_path(job_id)
        if not path.exists():
            raise PipelineError("Unknown bulk annotation job", job_id)
        with open(path, 'r') as f:
            return json.load(f)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until a job submitted by this pipeline finishes, then return its status."""
        future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.poll(job_id)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
