from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pysam

from .utils import ensure_outdir, write_json

CONTIG = "chr1"
CONTIG_LEN = 3000
READ_LEN = 60

# (pos0, kind, length, tumor AF, normal AF)
_SITES = [
    (600, "SNV", 1, 0.5, 0.0),  # somatic
    (1200, "SNV", 1, 0.5, 0.5),  # germline
    (1800, "SNV", 1, 0.0, 0.0),  # absent
    (2400, "DEL", 3, 0.5, 0.0),  # somatic deletion
]


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    start0: int,
    seq: str,
    *,
    cigar: Optional[List[Tuple[int, int]]] = None,
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = cigar or [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def _read_on_haplotype(
    ref_seq: str,
    start0: int,
    alt_sites: List[Tuple[int, str, int]],
) -> Tuple[int, str, List[Tuple[int, int]]]:
    """(start, sequence, cigar) of a READ_LEN read drawn from a haplotype carrying ``alt_sites``."""
    for pos0, kind, length in alt_sites:
        if kind == "DEL" and pos0 + 1 <= start0 <= pos0 + length:
            start0 = pos0 + 1 + length
    seq = list(ref_seq[start0 : start0 + READ_LEN])
    cigar = [(0, READ_LEN)]
    for pos0, kind, length in alt_sites:
        rel = pos0 - start0
        if kind == "SNV" and 0 <= rel < len(seq):
            seq[rel] = _mutate_base(seq[rel])
        elif kind == "DEL" and 0 <= rel < READ_LEN - 1:
            left = rel + 1
            right = READ_LEN - left
            seq = list(ref_seq[start0 : start0 + left] + ref_seq[pos0 + 1 + length : pos0 + 1 + length + right])
            cigar = [(0, left), (2, length), (0, right)]
    return start0, "".join(seq), cigar


def _write_sample_bam(
    bam_path: Path,
    ref_seq: str,
    *,
    sample: str,
    af_index: int,
    n_fragments: int,
    rng: random.Random,
) -> None:
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": CONTIG, "LN": len(ref_seq)}],
        "RG": [{"ID": sample, "SM": sample}],
    }
    reads: List[pysam.AlignedSegment] = []
    for i in range(n_fragments):
        frag_len = max(2 * READ_LEN, int(rng.gauss(300, 20)))
        frag_start = rng.randrange(0, len(ref_seq) - frag_len - 10)
        alt_sites = [
            (pos0, kind, length)
            for pos0, kind, length, *afs in _SITES
            if rng.random() < afs[af_index]
        ]
        s1, seq1, cig1 = _read_on_haplotype(ref_seq, frag_start, alt_sites)
        s2, seq2, cig2 = _read_on_haplotype(ref_seq, frag_start + frag_len - READ_LEN, alt_sites)
        r1 = _make_read(f"{sample}_{i}", s1, seq1, cigar=cig1)
        r2 = _make_read(f"{sample}_{i}", s2, seq2, cigar=cig2)
        r1.flag = 0x1 | 0x2 | 0x20 | 0x40
        r2.flag = 0x1 | 0x2 | 0x10 | 0x80
        tlen = r2.reference_end - r1.reference_start
        for read, mate, sign in ((r1, r2, 1), (r2, r1, -1)):
            read.next_reference_id = 0
            read.next_reference_start = mate.reference_start
            read.template_length = sign * tlen
            read.set_tag("RG", sample)
        reads.extend([r1, r2])

    reads.sort(key=lambda r: r.reference_start)
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(bam_path))


def _somatic_frequencies(rng: random.Random, n: int, *, f_min: float = 0.05, f_max: float = 0.5) -> List[float]:
    """AFs following the neutral-evolution law M(f) ~ 1/f - 1/f_max."""
    lo, hi = 1.0 / f_max, 1.0 / f_min
    return [1.0 / (lo + rng.random() * (hi - lo)) for _ in range(n)]


def make_toy_data(*, outdir: str | Path, n_fragments: int = 600, seed: int = 7) -> Dict[str, str]:
    """Create a tiny reference, tumor/normal BAMs and candidate VCF for demos/tests.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - tumor.bam, normal.bam (+ .bai), paired-end reads
    - candidates.vcf.gz (+ .tbi): a somatic SNV, a germline SNV, an absent
      SNV and a somatic 3 bp deletion
    - somatic_afs.txt: allele frequencies for ``estimate mutation-rate``

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)

    ref_seq = "".join(rng.choice("ACGT") for _ in range(CONTIG_LEN))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    tumor_bam = outdir_p / "tumor.bam"
    normal_bam = outdir_p / "normal.bam"
    _write_sample_bam(tumor_bam, ref_seq, sample="TUMOR", af_index=0, n_fragments=n_fragments, rng=rng)
    _write_sample_bam(normal_bam, ref_seq, sample="NORMAL", af_index=1, n_fragments=n_fragments, rng=rng)

    vcf_path = outdir_p / "candidates.vcf"
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(CONTIG, length=len(ref_seq))
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for pos0, kind, length, _, _ in _SITES:
            if kind == "SNV":
                ref = ref_seq[pos0]
                alt = _mutate_base(ref)
            else:
                ref = ref_seq[pos0 : pos0 + 1 + length]
                alt = ref_seq[pos0]
            rec = vcf.new_record(
                contig=CONTIG,
                start=pos0,
                stop=pos0 + len(ref),
                alleles=(ref, alt),
                id=f"{CONTIG}:{pos0 + 1}:{ref}:{alt}",
                qual=60,
                filter="PASS",
            )
            vcf.write(rec)

    vcf_gz = outdir_p / "candidates.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)

    afs_path = outdir_p / "somatic_afs.txt"
    afs_path.write_text("".join(f"{f:.4f}\n" for f in _somatic_frequencies(rng, 200)), encoding="utf-8")

    summary = {
        "ref_fa": str(ref_fa),
        "tumor_bam": str(tumor_bam),
        "normal_bam": str(normal_bam),
        "candidates_vcf": str(vcf_gz),
        "somatic_afs": str(afs_path),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
