"""
Position Normalizer Module for VD Curation.

Canonicalizes Hg19 genomic position strings of the form
``<chrom>:<position>:<ref><op><alt>`` so users do not have to care about
case or the ``chr`` prefix when entering a variation:

    "CHR1:41283868:g>a" -> "chr1:41283868:G>A"
    "1:41283868:G>A"    -> "chr1:41283868:G>A"

The external annotation tool takes a tab-separated form instead:

    "chr1:41283868:G>A" -> "1\\t41283868\\tG\\tA"
"""

from typing import Tuple

from .exceptions import InvalidFormatError


def split_position(variation: str) -> Tuple[str, ...]:
    """
    Split a variation into its colon-delimited parts.

    Args:
        variation: Genomic position string

    Returns:
        Tuple of parts, e.g. ("chr1", "41283868", "G>A")
    """
    if variation is None:
        raise InvalidFormatError(details="no variation given")

    parts = tuple(variation.strip().split(":"))
    if len(parts) < 3 or not all(parts[:3]):
        raise InvalidFormatError(
            details=f"'{variation}' must look like <chrom>:<position>:<ref>><alt>"
        )
    return parts


def _format_chromosome(token: str) -> str:
    chrom = token.lower()
    if chrom.startswith("chr"):
        chrom = chrom[3:]
    chrom = chrom.replace("x", "X").replace("y", "Y")
    return "chr" + chrom


def format_position(variation: str, for_external_tool: bool = False) -> str:
    """
    Return the canonical form of an Hg19 genomic position.

    Args:
        variation: Genomic position (unformatted)
        for_external_tool: Format as input for the annotation tool instead

    Returns:
        Formatted genomic position

    Raises:
        InvalidFormatError: If fewer than three colon-delimited parts are present
    """
    parts = list(split_position(variation))

    parts[0] = _format_chromosome(parts[0])
    # Alleles are always uppercase
    parts[2] = parts[2].upper()

    formatted = ":".join(parts)

    if for_external_tool:
        formatted = formatted[len("chr"):].upper()
        formatted = formatted.replace(":", "\t").replace(">", "\t")

    return formatted


def position_without_alleles(variation: str) -> str:
    """Return ``chr<N>:<pos>`` for a full variation string."""
    parts = split_position(format_position(variation))
    return f"{parts[0]}:{parts[1]}"
