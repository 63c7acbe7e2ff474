from __future__ import annotations

from typing import List, Optional, Tuple

import pysam
import pytest

from paircall.models import Observation
from paircall.utils import safe_log


def make_read(
    seq: str,
    start: int = 100,
    *,
    name: str = "r1",
    cigar: Optional[List[Tuple[int, int]]] = None,
    mapq: int = 60,
    qual: str = "I",
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = mapq
    a.cigartuples = cigar or [(0, len(seq))]  # M
    a.query_qualities = pysam.qualitystring_to_array(qual * len(seq))
    return a


def snv_observations(n_alt: int, n_ref: int, *, error: float = 1e-3, mapq_prob: float = 0.9999) -> List[Observation]:
    hit, miss = safe_log(1.0 - error), safe_log(error / 3.0)
    pm = safe_log(mapq_prob)
    alt = [Observation(prob_mapping=pm, prob_alt=hit, prob_ref=miss) for _ in range(n_alt)]
    ref = [Observation(prob_mapping=pm, prob_alt=miss, prob_ref=hit) for _ in range(n_ref)]
    return alt + ref


@pytest.fixture(scope="session")
def toy_data(tmp_path_factory):
    from paircall.toy_data import make_toy_data

    return make_toy_data(outdir=tmp_path_factory.mktemp("toy"))


def write_bam(path, reads, *, contig: str = "chr1", length: int = 1000) -> str:
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": contig, "LN": length}],
    }
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in sorted(reads, key=lambda r: r.reference_start):
            bam.write(r)
    pysam.index(str(path))
    return str(path)


def write_fasta(path, seq: str, *, contig: str = "chr1") -> str:
    lines = [f">{contig}"] + [seq[i : i + 60] for i in range(0, len(seq), 60)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    pysam.faidx(str(path))
    return str(path)
