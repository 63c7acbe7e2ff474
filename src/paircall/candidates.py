"""Candidate variant source and VCF/BCF sinks for calls and observations.

Multi-allelic records are split into one candidate per ALT allele. Symbolic
``<DEL>`` and ``<INS>`` alleles are supported; their extent comes from
``SVLEN`` or, for deletions, from ``END``.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, TextIO, Tuple

import pysam

from .errors import InputError
from .events import EventSet
from .models import DEL, INS, SNV, Call, Candidate
from .utils import LOG_ZERO, log_prob_to_phred, open_textmaybe_gzip, phred_to_prob

logger = logging.getLogger(__name__)

PROB_PREFIX = "PROB_"
INVALID_FILTER = "InvalidPosterior"
# PHRED values are capped so that zero probabilities stay representable in VCF
MAX_PHRED = 1000.0

_BASES = frozenset("ACGTN")


def prob_field(event: str) -> str:
    """INFO key holding the PHRED-scaled posterior of ``event``."""
    return PROB_PREFIX + event.upper().replace("-", "_")


def _svlen(rec: pysam.VariantRecord, allele_idx: int) -> Optional[int]:
    try:
        value = rec.info.get("SVLEN")
    except (KeyError, ValueError):
        return None
    if value is None:
        return None
    if isinstance(value, (tuple, list)):
        if allele_idx >= len(value) or value[allele_idx] is None:
            return None
        value = value[allele_idx]
    return abs(int(value))


def candidate_from_record(
    rec: pysam.VariantRecord,
    alt: str,
    allele_idx: int,
    *,
    exclusive_end: bool = False,
) -> Optional[Candidate]:
    """Classify one ALT allele of a record.

    Returns None for alleles that are valid VCF but not callable here (MNVs,
    complex replacements, breakends, other symbolic alleles). Raises
    InputError for malformed alleles.
    """
    chrom = str(rec.contig)
    pos0 = int(rec.pos) - 1
    ref = (rec.ref or "").upper()
    rid = rec.id if rec.id is not None else f"{chrom}:{rec.pos}:{ref}:{alt}"
    if not ref or not set(ref) <= _BASES:
        raise InputError(f"{chrom}:{rec.pos}: invalid REF allele {rec.ref!r}")

    if alt.startswith("<"):
        symbol = alt.upper()
        if symbol == "<DEL>":
            length = _svlen(rec, allele_idx)
            if length is None:
                # pysam exposes INFO/END as rec.stop
                last = int(rec.stop) - (1 if exclusive_end else 0)
                length = last - (pos0 + 1)
            if length < 1:
                raise InputError(f"{chrom}:{rec.pos}: symbolic deletion without a positive length")
            return Candidate(chrom, pos0, ref, alt, DEL, length, rid)
        if symbol == "<INS>":
            length = _svlen(rec, allele_idx)
            if length is None or length < 1:
                raise InputError(f"{chrom}:{rec.pos}: symbolic insertion needs SVLEN")
            return Candidate(chrom, pos0, ref, alt, INS, length, rid)
        return None

    alt_u = alt.upper()
    if alt_u in ("*", ".") or "[" in alt_u or "]" in alt_u:
        return None
    if not set(alt_u) <= _BASES:
        raise InputError(f"{chrom}:{rec.pos}: invalid ALT allele {alt!r}")
    if len(ref) == 1 and len(alt_u) == 1:
        if ref == alt_u:
            raise InputError(f"{chrom}:{rec.pos}: ALT equals REF")
        return Candidate(chrom, pos0, ref, alt_u, SNV, 1, rid)
    if len(ref) == 1 and len(alt_u) > 1 and alt_u[0] == ref[0]:
        return Candidate(chrom, pos0, ref, alt_u, INS, len(alt_u) - 1, rid)
    if len(alt_u) == 1 and len(ref) > 1 and ref[0] == alt_u[0]:
        return Candidate(chrom, pos0, ref, alt_u, DEL, len(ref) - 1, rid)
    return None


class CandidateReader:
    """Iterates candidates from a VCF/BCF file (or ``-`` for stdin).

    Malformed alleles are logged and skipped; ``stats`` counts what happened.
    """

    def __init__(self, path: str | Path, *, exclusive_end: bool = False) -> None:
        self.path = str(path)
        self.exclusive_end = exclusive_end
        try:
            self.vcf = pysam.VariantFile(self.path)
        except (OSError, ValueError) as e:
            raise InputError(f"cannot open candidate file {self.path}: {e}") from e
        self.stats: Dict[str, int] = {
            "records_total": 0,
            "alleles_total": 0,
            "candidates": 0,
            "skipped_unsupported": 0,
            "skipped_malformed": 0,
        }

    @property
    def contigs(self) -> List[Tuple[str, Optional[int]]]:
        return [(c.name, c.length) for c in self.vcf.header.contigs.values()]

    def __iter__(self) -> Iterator[Candidate]:
        for rec in self.vcf:
            self.stats["records_total"] += 1
            for idx, alt in enumerate(rec.alts or ()):
                self.stats["alleles_total"] += 1
                try:
                    candidate = candidate_from_record(rec, alt, idx, exclusive_end=self.exclusive_end)
                except InputError as e:
                    logger.warning("Skipping malformed candidate: %s", e)
                    self.stats["skipped_malformed"] += 1
                    continue
                if candidate is None:
                    logger.debug("Skipping unsupported allele %s at %s:%d", alt, rec.contig, rec.pos)
                    self.stats["skipped_unsupported"] += 1
                    continue
                self.stats["candidates"] += 1
                yield candidate

    def close(self) -> None:
        self.vcf.close()

    def __enter__(self) -> "CandidateReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def build_call_header(
    contigs: Sequence[Tuple[str, Optional[int]]],
    events: EventSet,
    *,
    source: Optional[str] = None,
) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    if source:
        header.add_meta("source", source)
    for name, length in contigs:
        if length:
            header.contigs.add(name, length=length)
        else:
            header.contigs.add(name)
    header.info.add("END", number=1, type="Integer", description="End position of the variant")
    header.info.add("SVLEN", number=1, type="Integer", description="Length of the structural variant")
    for name in events.names:
        header.info.add(
            prob_field(name),
            number=1,
            type="Float",
            description=f"PHRED-scaled posterior probability of event {name}",
        )
    header.filters.add(INVALID_FILTER, None, None, "Posterior probabilities could not be computed")
    return header


class CallWriter:
    """Writes calls as VCF/BCF records with one PROB_<EVENT> INFO field per event."""

    def __init__(
        self,
        path: str | Path,
        *,
        contigs: Sequence[Tuple[str, Optional[int]]],
        events: EventSet,
        exclusive_end: bool = False,
        source: Optional[str] = None,
    ) -> None:
        self.path = str(path)
        self.events = events
        self.exclusive_end = exclusive_end
        self.header = build_call_header(contigs, events, source=source)
        mode = "wb" if self.path.endswith(".bcf") else ("wz" if self.path.endswith(".gz") else "w")
        self.vcf = pysam.VariantFile(self.path, mode, header=self.header)
        self.n_written = 0

    def write(self, call: Call) -> None:
        c = call.candidate
        symbolic = c.alt.startswith("<")
        stop = c.end(self.exclusive_end) if symbolic else c.pos0 + len(c.ref)
        rec = self.vcf.new_record(
            contig=c.chrom,
            start=c.pos0,
            stop=stop,
            alleles=(c.ref, c.alt),
            id=c.record_id,
        )
        if symbolic:
            rec.info["SVLEN"] = -c.length if c.kind == DEL else c.length
        if call.valid:
            for name in self.events.names:
                rec.info[prob_field(name)] = round(min(log_prob_to_phred(call.log_probs[name]), MAX_PHRED), 4)
            rec.filter.add("PASS")
        else:
            rec.filter.add(INVALID_FILTER)
        self.vcf.write(rec)
        self.n_written += 1

    def close(self) -> None:
        self.vcf.close()

    def __enter__(self) -> "CallWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def record_probs(rec: pysam.VariantRecord, events: Sequence[str]) -> Optional[Dict[str, float]]:
    """Posterior probabilities of ``events`` stored in a call record.

    Returns None for records flagged invalid. Raises InputError if a
    requested event has no PROB field in the header.
    """
    if INVALID_FILTER in rec.filter.keys():
        return None
    probs: Dict[str, float] = {}
    for event in events:
        key = prob_field(event)
        if key not in rec.header.info:
            raise InputError(
                f"calls have no {key} field",
                suggestion="check the event names against the PROB_* INFO fields of the input",
            )
        value = rec.info.get(key)
        if value is None:
            return None
        probs[event] = phred_to_prob(float(value))
    return probs


def read_calls(path: str | Path) -> Tuple[pysam.VariantHeader, List[pysam.VariantRecord]]:
    """Load all call records; filters need the complete set to rank them."""
    try:
        with pysam.VariantFile(str(path)) as vcf:
            header = vcf.header.copy()
            records = list(vcf)
    except (OSError, ValueError) as e:
        raise InputError(f"cannot read calls from {path}: {e}") from e
    return header, records


def write_records(path: str | Path, header: pysam.VariantHeader, records: Sequence[pysam.VariantRecord]) -> None:
    path = str(path)
    mode = "wb" if path.endswith(".bcf") else ("wz" if path.endswith(".gz") else "w")
    with pysam.VariantFile(path, mode, header=header) as out:
        for rec in records:
            out.write(rec)


def record_kind(rec: pysam.VariantRecord) -> Tuple[Optional[str], int]:
    """(variant kind, length) of the first ALT allele of a call record."""
    alts = rec.alts or ()
    if not alts:
        return None, 0
    try:
        candidate = candidate_from_record(rec, alts[0], 0)
    except InputError:
        return None, 0
    if candidate is None:
        return None, 0
    return candidate.kind, candidate.length


class ObservationWriter:
    """Gzipped TSV of per-read observations, for debugging evidence extraction."""

    columns = ("record_id", "chrom", "pos", "alt", "sample", "evidence", "prob_mapping", "prob_alt", "prob_ref")

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._fh: TextIO = open_textmaybe_gzip(self.path, "wt")
        self._fh.write("\t".join(self.columns) + "\n")

    def write(self, call: Call) -> None:
        c = call.candidate
        for sample, observations in call.observations.items():
            for o in observations:
                self._fh.write(
                    f"{c.record_id}\t{c.chrom}\t{c.pos0 + 1}\t{c.alt}\t{sample}\t{o.evidence}\t"
                    f"{_fmt_log(o.prob_mapping)}\t{_fmt_log(o.prob_alt)}\t{_fmt_log(o.prob_ref)}\n"
                )

    def close(self) -> None:
        self._fh.close()


def _fmt_log(x: float) -> str:
    if x == LOG_ZERO:
        return "-inf"
    if math.isnan(x):
        return "nan"
    return f"{x:.6f}"
