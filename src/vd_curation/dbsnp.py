"""
dbSNP Lookup Module for VD Curation.

Finds the dbSNP id of a variant by searching NCBI's dbSNP site for its
chromosome and base position.
"""

import re
import logging
import requests
from typing import Optional, Set

from .config import CurationConfig
from .exceptions import APIError, retry_operation
from .normalizer import split_position, format_position

# Configure logging
log = logging.getLogger("vd-curation")

SNP_ID_MARKER = "SNP_ID="
SNP_ID_DIGITS = re.compile(r"\d+")


def extract_snp_ids(text: str) -> Set[str]:
    """
    Collect every distinct ``rs`` id mentioned as ``SNP_ID=<n>`` in a page.

    Args:
        text: Response body

    Returns:
        Set of ids in ``rs<n>`` form
    """
    ids = set()
    for token in text.split():
        if SNP_ID_MARKER not in token:
            continue
        # The id may be followed by markup, e.g. "SNP_ID=80338943</a>"
        match = SNP_ID_DIGITS.match(token, token.index(SNP_ID_MARKER) + len(SNP_ID_MARKER))
        if match:
            ids.add("rs" + match.group())
    return ids


class DbSnpClient:
    """Looks up dbSNP ids over HTTP."""

    def __init__(self, config: CurationConfig):
        """
        Initialize the dbSNP client.

        Args:
            config: Curation configuration (endpoint and timeout)
        """
        self.url = config.dbsnp_url
        self.timeout = config.dbsnp_timeout

    @retry_operation(max_attempts=3, retry_delay=1)
    def _search(self, chrom: str, pos: str) -> str:
        params = {
            "term": f"(({chrom}[Chromosome]) AND {pos}[Base Position])",
            "report": "DocSet",
        }
        try:
            response = requests.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise APIError(f"dbSNP search failed for {chrom}:{pos}", str(e))
        return response.text

    def get_dbsnp_id(self, variation: str) -> Optional[str]:
        """
        Find the dbSNP id for a variation.

        Only returns an id when exactly one distinct id is associated with
        the position; ambiguous positions return None.

        Args:
            variation: Genomic position (Hg19)

        Returns:
            dbSNP id (e.g. "rs80338943") or None
        """
        parts = split_position(format_position(variation))
        chrom = parts[0][len("chr"):]
        pos = parts[1]

        ids = extract_snp_ids(self._search(chrom, pos))
        if len(ids) == 1:
            dbsnp = ids.pop()
            log.debug(f"dbSNP id for {variation}: {dbsnp}")
            return dbsnp

        if ids:
            log.info(f"Ambiguous dbSNP result for {variation}: {len(ids)} ids found")
        return None
