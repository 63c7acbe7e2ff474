"""Per-sample evidence extraction from an indexed BAM.

For a candidate variant, :meth:`Sample.observe` fetches a bounded window of
alignments and turns every informative read (or read pair) into an
:class:`~paircall.models.Observation` carrying ``log P(obs | ALT)``,
``log P(obs | REF)`` and the log probability that the read is placed
correctly. Nothing is cached across loci.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pysam
from scipy.stats import norm

from .errors import ConfigError, InputError
from .likelihood import LatentVariableModel
from .models import (
    DEL,
    EVIDENCE_INSERT_SIZE,
    INS,
    Candidate,
    InsertSize,
    Observation,
    checked_prob,
)
from .utils import LOG_ZERO, phred_to_error_prob, safe_log
from .validation import check_bam_index

logger = logging.getLogger(__name__)

_ACGT = frozenset("ACGT")

# CIGAR operations
_MATCH_OPS = (0, 7, 8)  # M, =, X
_INS_OP = 1
_DEL_OP = 2
_SKIP_OP = 3
_SOFT_CLIP_OP = 4

# pysam reports 255 when MAPQ is unavailable
_MAPQ_UNAVAILABLE = 255

# evidence terms never drop below these, so one read cannot rule out an allele
_MIN_EVIDENCE_PROB = 1e-10
_MIN_LENGTH_ERROR = 1e-4


@dataclass(frozen=True)
class SampleConfig:
    """Evidence model parameters of one sample.

    Attributes
    ----------
    insert_size:
        Insert size distribution; required when fragment evidence is used.
    purity:
        Fraction of sequenced cells carrying the variant-bearing genome.
    pileup_window:
        Reads are fetched from ``[start - pileup_window, end + pileup_window)``.
    use_fragment_evidence:
        Use insert sizes of read pairs flanking an indel.
    use_secondary:
        Include secondary alignments.
    use_mapq:
        Weight observations by mapping quality.
    adjust_mapq:
        Replace per-read mapping probabilities by their mean at the locus,
        guarding against inflated MAPQ at ambiguous loci.
    prob_spurious_ins, prob_spurious_del:
        Probability that the aligner reports (or misses) an insertion/deletion.
    prob_ins_extend, prob_del_extend:
        Probability of extending a reported indel by one more base.
    max_indel_dist:
        Maximum distance between a read's indel and the candidate locus.
    max_indel_len_diff:
        Maximum length difference between a read's indel and the candidate.
    indel_haplotype_window:
        Flank size of the local haplotypes used for realignment.
    """

    insert_size: Optional[InsertSize] = None
    purity: float = 1.0
    pileup_window: int = 2500
    use_fragment_evidence: bool = True
    use_secondary: bool = False
    use_mapq: bool = True
    adjust_mapq: bool = False
    skip_duplicates: bool = True
    min_baseq: int = 20
    prob_spurious_ins: float = 2.8e-6
    prob_spurious_del: float = 5.1e-6
    prob_ins_extend: float = 0.0
    prob_del_extend: float = 0.0
    max_indel_dist: int = 50
    max_indel_len_diff: int = 20
    indel_haplotype_window: int = 100

    def __post_init__(self) -> None:
        checked_prob(self.purity, "purity")
        for name in ("prob_spurious_ins", "prob_spurious_del", "prob_ins_extend", "prob_del_extend"):
            checked_prob(getattr(self, name), name)
        for name in ("prob_ins_extend", "prob_del_extend"):
            if getattr(self, name) >= 1.0:
                raise ConfigError(f"{name} must be < 1, got {getattr(self, name)}")
        for name in ("pileup_window", "indel_haplotype_window"):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f"{name} must be a positive integer, got {getattr(self, name)!r}")
        for name in ("max_indel_dist", "max_indel_len_diff", "min_baseq"):
            if int(getattr(self, name)) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)!r}")
        if self.use_fragment_evidence and self.insert_size is None:
            raise ConfigError(
                "fragment evidence requires an insert size distribution",
                suggestion="provide insert size mean/sd or disable fragment evidence",
            )

    def indel_error_model(self, kind: str) -> Tuple[float, float]:
        """(spurious, extension) probabilities for ``kind``."""
        if kind == DEL:
            return self.prob_spurious_del, self.prob_del_extend
        return self.prob_spurious_ins, self.prob_ins_extend


def _log_bounded(p: float) -> float:
    return math.log(min(max(p, _MIN_EVIDENCE_PROB), 1.0 - _MIN_EVIDENCE_PROB))


def _log_length_error(extend: float, k: int) -> float:
    """log P(a reported indel is off by ``k`` bases); floored per base."""
    if k == 0:
        return 0.0
    return k * math.log(max(extend, _MIN_LENGTH_ERROR))


def query_position(read: pysam.AlignedSegment, ref_pos0: int) -> Optional[int]:
    """Query index aligned to ``ref_pos0``; None if not aligned as a base."""
    if read.cigartuples is None or read.reference_start is None:
        return None
    ref_pos = read.reference_start
    query_pos = 0
    for op, length in read.cigartuples:
        if op in _MATCH_OPS:
            if ref_pos <= ref_pos0 < ref_pos + length:
                return query_pos + (ref_pos0 - ref_pos)
            ref_pos += length
            query_pos += length
        elif op in (_INS_OP, _SOFT_CLIP_OP):
            query_pos += length
        elif op in (_DEL_OP, _SKIP_OP):
            if ref_pos <= ref_pos0 < ref_pos + length:
                return None
            ref_pos += length
        if ref_pos > ref_pos0:
            break
    return None


def indel_operations(read: pysam.AlignedSegment) -> List[Tuple[int, int, int]]:
    """(op, ref_pos0, length) of every insertion and deletion in a read.

    For deletions ``ref_pos0`` is the first deleted base; for insertions it is
    the reference base right after the inserted sequence.
    """
    ops: List[Tuple[int, int, int]] = []
    if read.cigartuples is None:
        return ops
    ref_pos = read.reference_start
    for op, length in read.cigartuples:
        if op in (_INS_OP, _DEL_OP):
            ops.append((op, ref_pos, length))
        if op in _MATCH_OPS or op in (_DEL_OP, _SKIP_OP):
            ref_pos += length
    return ops


def soft_clips_near(read: pysam.AlignedSegment, pos0: int, max_dist: int) -> bool:
    cigar = read.cigartuples or []
    if cigar and cigar[0][0] == _SOFT_CLIP_OP and abs(read.reference_start - pos0) <= max_dist:
        return True
    if cigar and cigar[-1][0] == _SOFT_CLIP_OP and abs(read.reference_end - pos0) <= max_dist:
        return True
    return False


class Sample:
    """An indexed BAM together with its evidence model.

    Parameters
    ----------
    bam_path:
        Sorted, indexed BAM.
    config:
        Evidence model parameters.
    reference:
        Optional reference FASTA; enables haplotype realignment of indel reads.
    name:
        Label used in logs and observation dumps.
    """

    def __init__(
        self,
        bam_path: str | Path,
        config: SampleConfig,
        *,
        reference: Optional[str | Path] = None,
        name: Optional[str] = None,
    ) -> None:
        self.bam_path = str(bam_path)
        self.config = config
        self.name = name or Path(bam_path).stem
        self.likelihood_model = LatentVariableModel(config.purity)
        try:
            check_bam_index(self.bam_path)
            self.bam = pysam.AlignmentFile(self.bam_path, "rb")
        except (OSError, ValueError) as e:
            raise InputError(f"cannot open BAM {self.bam_path}: {e}") from e
        self.fasta: Optional[pysam.FastaFile] = None
        if reference is not None:
            try:
                self.fasta = pysam.FastaFile(str(reference))
            except (OSError, ValueError) as e:
                self.bam.close()
                raise InputError(f"cannot open reference FASTA {reference}: {e}") from e

    def close(self) -> None:
        self.bam.close()
        if self.fasta is not None:
            self.fasta.close()

    def __enter__(self) -> "Sample":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------
    # read selection
    # -----------------

    def _usable(self, read: pysam.AlignedSegment) -> bool:
        if read.is_unmapped or read.is_qcfail or read.is_supplementary:
            return False
        if read.is_secondary and not self.config.use_secondary:
            return False
        if read.is_duplicate and self.config.skip_duplicates:
            return False
        return read.cigartuples is not None

    def _prob_mapping(self, read: pysam.AlignedSegment) -> float:
        if not self.config.use_mapq or read.mapping_quality == _MAPQ_UNAVAILABLE:
            return 0.0
        return safe_log(1.0 - phred_to_error_prob(int(read.mapping_quality)))

    def _fetch(self, candidate: Candidate) -> "OrderedDict[str, List[pysam.AlignedSegment]]":
        window = int(self.config.pileup_window)
        start = max(0, candidate.pos0 - window)
        end = candidate.span_end0 + window
        fragments: "OrderedDict[str, List[pysam.AlignedSegment]]" = OrderedDict()
        try:
            reads = self.bam.fetch(candidate.chrom, start, end)
        except ValueError:
            # contig absent from this BAM: no coverage
            logger.debug("%s: contig %s not in %s", self.name, candidate.chrom, self.bam_path)
            return fragments
        for read in reads:
            if not self._usable(read):
                continue
            key = read.query_name if not read.is_secondary else f"{read.query_name}/sec{len(fragments)}"
            fragments.setdefault(key, []).append(read)
        return fragments

    # -----------------
    # public API
    # -----------------

    def observe(self, candidate: Candidate) -> List[Observation]:
        """Observations for ``candidate``; empty when the locus has no coverage."""
        fragments = self._fetch(candidate)
        if candidate.is_indel:
            observations = self._observe_indel(candidate, fragments)
        else:
            observations = self._observe_snv(candidate, fragments)
        if self.config.adjust_mapq and observations:
            observations = self._adjust_mapq(observations)
        logger.debug("%s: %d observations at %s", self.name, len(observations), candidate)
        return observations

    def _adjust_mapq(self, observations: Sequence[Observation]) -> List[Observation]:
        mean_prob = float(np.mean([math.exp(o.prob_mapping) for o in observations]))
        prob_mapping = safe_log(mean_prob)
        return [replace(o, prob_mapping=prob_mapping) for o in observations]

    # -----------------
    # SNVs
    # -----------------

    def _observe_snv(
        self,
        candidate: Candidate,
        fragments: Dict[str, List[pysam.AlignedSegment]],
    ) -> List[Observation]:
        ref = candidate.ref.upper()
        alt = candidate.alt.upper()
        observations: List[Observation] = []
        for reads in fragments.values():
            for read in reads:
                if not (read.reference_start <= candidate.pos0 < read.reference_end):
                    continue
                qpos = query_position(read, candidate.pos0)
                seq = read.query_sequence
                if qpos is None or seq is None:
                    continue
                base = seq[qpos].upper()
                if base not in _ACGT:
                    continue
                quals = read.query_qualities
                baseq = int(quals[qpos]) if quals is not None else self.config.min_baseq
                if baseq < self.config.min_baseq:
                    continue
                e = phred_to_error_prob(baseq)
                hit, miss = _log_bounded(1.0 - e), _log_bounded(e / 3.0)
                observations.append(
                    Observation(
                        prob_mapping=self._prob_mapping(read),
                        prob_alt=hit if base == alt else miss,
                        prob_ref=hit if base == ref else miss,
                    )
                )
        return observations

    # -----------------
    # indels
    # -----------------

    def _observe_indel(
        self,
        candidate: Candidate,
        fragments: Dict[str, List[pysam.AlignedSegment]],
    ) -> List[Observation]:
        observations: List[Observation] = []
        haplotypes = self._haplotypes(candidate) if self.fasta is not None else None
        for reads in fragments.values():
            if self.config.use_fragment_evidence and len(reads) == 2:
                obs = self._fragment_observation(candidate, reads[0], reads[1])
                if obs is not None:
                    observations.append(obs)
                    continue
            for read in reads:
                obs = self._alignment_observation(candidate, read, haplotypes)
                if obs is not None:
                    observations.append(obs)
        return observations

    def _spans(self, candidate: Candidate, read: pysam.AlignedSegment, *, with_clips: bool = False) -> bool:
        """Whether the read covers the anchor base and the base after the variant.

        With ``with_clips`` soft-clipped bases count as if they were aligned.
        """
        start, end = read.reference_start, read.reference_end
        if with_clips:
            cigar = read.cigartuples or []
            if cigar and cigar[0][0] == _SOFT_CLIP_OP:
                start -= cigar[0][1]
            if cigar and cigar[-1][0] == _SOFT_CLIP_OP:
                end += cigar[-1][1]
        return start <= candidate.pos0 and end > candidate.span_end0

    def _alignment_observation(
        self,
        candidate: Candidate,
        read: pysam.AlignedSegment,
        haplotypes: Optional[Tuple[int, str, str]],
    ) -> Optional[Observation]:
        cfg = self.config
        spurious, extend = cfg.indel_error_model(candidate.kind)
        wanted_op = _DEL_OP if candidate.kind == DEL else _INS_OP
        locus = candidate.pos0 + 1

        best: Optional[Tuple[int, int, int]] = None
        for op, ref_pos, length in indel_operations(read):
            if op != wanted_op:
                continue
            dist = abs(ref_pos - locus)
            diff = abs(length - candidate.length)
            if dist > cfg.max_indel_dist or diff > cfg.max_indel_len_diff:
                continue
            if best is None or (diff, dist) < (best[0], best[1]):
                best = (diff, dist, length)

        prob_mapping = self._prob_mapping(read)
        if best is not None:
            diff, _, observed_len = best
            prob_alt = _log_bounded(1.0 - spurious) + _log_bounded(1.0 - extend) + _log_length_error(extend, diff)
            prob_ref = _log_bounded(spurious) + _log_bounded(1.0 - extend) + _log_length_error(extend, observed_len - 1)
        elif haplotypes is not None:
            if not self._spans(candidate, read, with_clips=True):
                return None
            scores = self._realign(candidate, read, haplotypes)
            if scores is None:
                return None
            score_alt, score_ref = scores
            # the aligner may have reported or hidden the indel spuriously
            prob_alt = float(np.logaddexp(_log_bounded(1.0 - spurious) + score_alt, _log_bounded(spurious) + score_ref))
            prob_ref = float(np.logaddexp(_log_bounded(1.0 - spurious) + score_ref, _log_bounded(spurious) + score_alt))
        else:
            if not self._spans(candidate, read) or soft_clips_near(read, locus, cfg.max_indel_dist):
                return None
            prob_alt = _log_bounded(spurious)
            prob_ref = _log_bounded(1.0 - spurious)

        if prob_alt == LOG_ZERO and prob_ref == LOG_ZERO:
            return None
        return Observation(prob_mapping=prob_mapping, prob_alt=prob_alt, prob_ref=prob_ref)

    def _fragment_observation(
        self,
        candidate: Candidate,
        first: pysam.AlignedSegment,
        second: pysam.AlignedSegment,
    ) -> Optional[Observation]:
        if first.is_secondary or second.is_secondary:
            return None
        if first.reference_id != second.reference_id:
            return None
        left, right = sorted((first, second), key=lambda r: r.reference_start)
        locus = candidate.pos0 + 1
        right_bound = candidate.span_end0 if candidate.kind == DEL else locus
        if not (left.reference_end <= locus and right.reference_start >= right_bound):
            return None

        insert_size = self.config.insert_size
        assert insert_size is not None
        isize = abs(int(left.template_length)) or (right.reference_end - left.reference_start)
        shift = candidate.length if candidate.kind == DEL else -candidate.length
        prob_ref = float(norm.logpdf(isize, loc=insert_size.mean, scale=insert_size.sd))
        prob_alt = float(norm.logpdf(isize, loc=insert_size.mean + shift, scale=insert_size.sd))
        if prob_alt == LOG_ZERO and prob_ref == LOG_ZERO:
            return None
        return Observation(
            prob_mapping=self._prob_mapping(left) + self._prob_mapping(right),
            prob_alt=prob_alt,
            prob_ref=prob_ref,
            evidence=EVIDENCE_INSERT_SIZE,
        )

    # -----------------
    # haplotype realignment
    # -----------------

    def _haplotypes(self, candidate: Candidate) -> Optional[Tuple[int, str, str]]:
        """(window start, REF haplotype, ALT haplotype) around the candidate."""
        assert self.fasta is not None
        if candidate.kind == INS and (candidate.alt.startswith("<") or len(candidate.alt) < 2):
            # symbolic insertion: sequence unknown
            return None
        flank = int(self.config.indel_haplotype_window)
        start = max(0, candidate.pos0 - flank)
        end = candidate.span_end0 + flank
        try:
            ref_hap = self.fasta.fetch(candidate.chrom, start, end).upper()
        except (KeyError, ValueError) as e:
            raise InputError(f"reference has no sequence for {candidate.chrom}: {e}") from e
        split = candidate.pos0 + 1 - start
        if candidate.kind == DEL:
            alt_hap = ref_hap[:split] + ref_hap[split + candidate.length :]
        else:
            alt_hap = ref_hap[:split] + candidate.alt[1:].upper() + ref_hap[split:]
        return start, ref_hap, alt_hap

    def _realign(
        self,
        candidate: Candidate,
        read: pysam.AlignedSegment,
        haplotypes: Tuple[int, str, str],
    ) -> Optional[Tuple[float, float]]:
        """Ungapped, quality-weighted scores of a read against ALT and REF haplotypes."""
        start, ref_hap, alt_hap = haplotypes
        seq = read.query_sequence
        if seq is None:
            return None
        cigar = read.cigartuples or []
        lead_clip = cigar[0][1] if cigar and cigar[0][0] == _SOFT_CLIP_OP else 0
        ref_offset = read.reference_start - lead_clip - start
        alt_offset = ref_offset
        if read.reference_start > candidate.pos0:
            # read anchored right of the variant: shift into ALT coordinates
            alt_offset += -candidate.length if candidate.kind == DEL else candidate.length
        quals = read.query_qualities
        if quals is None:
            errors = np.full(len(seq), phred_to_error_prob(self.config.min_baseq))
        else:
            errors = 10.0 ** (-np.asarray(quals, dtype=np.float64) / 10.0)
        errors = np.clip(errors, 1e-6, 0.75)
        score_ref = _haplotype_score(seq.upper(), errors, ref_hap, ref_offset)
        score_alt = _haplotype_score(seq.upper(), errors, alt_hap, alt_offset)
        if score_ref is None or score_alt is None:
            return None
        return score_alt, score_ref


def _haplotype_score(seq: str, errors: np.ndarray, haplotype: str, offset: int) -> Optional[float]:
    read_idx = np.arange(len(seq))
    hap_idx = read_idx + offset
    inside = (hap_idx >= 0) & (hap_idx < len(haplotype))
    if not inside.any():
        return None
    read_bases = np.frombuffer(seq.encode("ascii"), dtype=np.uint8)[inside]
    hap_bases = np.frombuffer(haplotype.encode("ascii"), dtype=np.uint8)[hap_idx[inside]]
    e = errors[inside]
    match = read_bases == hap_bases
    return float(np.where(match, np.log1p(-e), np.log(e / 3.0)).sum())
