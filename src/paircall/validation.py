from __future__ import annotations

import logging
from pathlib import Path

from .errors import InputError

logger = logging.getLogger(__name__)


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM exists and has an index; raise InputError with fix instructions."""
    bam = Path(bam_path)
    if not bam.exists():
        raise InputError(f"BAM not found: {bam}")
    for idx in (bam.with_suffix(bam.suffix + ".bai"), bam.with_suffix(".bai"), bam.with_suffix(bam.suffix + ".csi")):
        if idx.exists():
            return
    raise InputError("BAM is not indexed", suggestion="run: samtools index " + str(bam))


def check_vcf_input(vcf_path: str | Path) -> None:
    """Ensure a candidate/call file exists; compressed inputs are read sequentially, no index needed."""
    vcf = Path(vcf_path)
    if str(vcf) == "-":
        return
    if not vcf.exists():
        raise InputError(f"VCF/BCF not found: {vcf}")
    if vcf.suffix == ".vcf":
        logger.info("Reading uncompressed VCF %s", vcf)


def check_reference(fasta_path: str | Path) -> None:
    """Ensure a reference FASTA exists; pysam builds a missing .fai on open."""
    fasta = Path(fasta_path)
    if not fasta.exists():
        raise InputError(f"reference FASTA not found: {fasta}")
    if not fasta.with_suffix(fasta.suffix + ".fai").exists():
        logger.info("No .fai index for %s; it will be created", fasta)
