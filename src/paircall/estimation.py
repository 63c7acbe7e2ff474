"""Estimators run once before (or independently of) calling.

* :func:`estimate_alignment_properties` summarizes insert sizes and mapping
  qualities of a BAM.
* :class:`MutationRateEstimate` fits the effective somatic mutation rate from
  the allele frequencies of known somatic mutations.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pysam

from .errors import ConfigError, InputError
from .models import AlignmentProperties, InsertSize
from .utils import write_json

logger = logging.getLogger(__name__)

# insert sizes outside [Q1 - k*IQR, Q3 + k*IQR] are treated as outliers
_IQR_FACTOR = 3.0
_MIN_INSERT_SD = 1.0


def _usable_pair_read(read: pysam.AlignedSegment) -> bool:
    return (
        read.is_paired
        and read.is_proper_pair
        and not read.is_unmapped
        and not read.mate_is_unmapped
        and not read.is_secondary
        and not read.is_supplementary
        and not read.is_duplicate
        and not read.is_qcfail
        and read.template_length > 0
    )


def estimate_alignment_properties(
    bam_path: str | Path,
    *,
    max_reads: int = 10000,
    min_reads: int = 100,
) -> AlignmentProperties:
    """Estimate insert size and mapping-quality summaries from a BAM.

    Parameters
    ----------
    bam_path:
        Coordinate-sorted BAM; read sequentially, no index required.
    max_reads:
        Stop after this many properly paired reads with positive template length.
    min_reads:
        Minimum number of insert sizes left after outlier removal.
    """
    if max_reads < 1 or min_reads < 1:
        raise ConfigError("max_reads and min_reads must be positive")

    isizes: List[int] = []
    mapqs: List[int] = []
    try:
        with pysam.AlignmentFile(str(bam_path), "rb") as bam:
            for read in bam.fetch(until_eof=True):
                if read.is_unmapped or read.is_secondary or read.is_supplementary:
                    continue
                mapqs.append(int(read.mapping_quality))
                if _usable_pair_read(read):
                    isizes.append(int(read.template_length))
                    if len(isizes) >= max_reads:
                        break
    except (OSError, ValueError) as e:
        raise InputError(f"cannot read BAM {bam_path}: {e}") from e

    values = np.asarray(isizes, dtype=np.float64)
    if values.size:
        q1, q3 = np.percentile(values, [25, 75])
        iqr = q3 - q1
        keep = (values >= q1 - _IQR_FACTOR * iqr) & (values <= q3 + _IQR_FACTOR * iqr)
        values = values[keep]
    if values.size < min_reads:
        raise InputError(
            f"only {values.size} properly paired reads usable for insert size estimation in {bam_path} "
            f"(need {min_reads})",
            suggestion="pass --insert-size-mean and --insert-size-sd explicitly",
        )

    mean = float(values.mean())
    sd = float(values.std(ddof=1))
    if sd < _MIN_INSERT_SD:
        logger.debug("Insert size sd %.3g below %.1f; using the floor", sd, _MIN_INSERT_SD)
        sd = _MIN_INSERT_SD
    mapq_arr = np.asarray(mapqs, dtype=np.float64)
    props = AlignmentProperties(
        insert_size=InsertSize(mean=mean, sd=sd),
        max_mapq=int(mapq_arr.max()),
        mean_mapq=float(mapq_arr.mean()),
        frac_mapq0=float((mapq_arr == 0).mean()),
        reads_used=int(values.size),
    )
    logger.info(
        "%s: insert size %.1f +- %.1f from %d reads, mean MAPQ %.1f",
        bam_path, mean, sd, props.reads_used, props.mean_mapq,
    )
    return props


def alignment_properties_to_dict(props: AlignmentProperties) -> Dict[str, Any]:
    return {
        "insert_size": {"mean": props.insert_size.mean, "sd": props.insert_size.sd},
        "max_mapq": props.max_mapq,
        "mean_mapq": props.mean_mapq,
        "frac_mapq0": props.frac_mapq0,
        "reads_used": props.reads_used,
    }


@dataclass
class MutationRateEstimate:
    """Effective mutation rate fitted from somatic allele frequencies.

    Under neutral tumor evolution the number of mutations with allele
    frequency at least ``f`` grows as ``M(f) = rate * (1/f - 1/f_max)``. The
    rate is the least-squares slope through the origin of the observed
    cumulative counts against ``x = 1/f - 1/f_max``.
    """

    effective_mutation_rate: float
    r_squared: float
    frequencies: np.ndarray
    x: np.ndarray
    observed: np.ndarray
    fitted: np.ndarray

    @classmethod
    def train(
        cls,
        freqs: Iterable[float],
        *,
        min_af: Optional[float] = None,
        max_af: Optional[float] = None,
    ) -> "MutationRateEstimate":
        values = np.asarray(list(freqs), dtype=np.float64)
        if values.size and (np.isnan(values).any() or (values <= 0.0).any() or (values > 1.0).any()):
            raise InputError("allele frequencies must be within (0, 1]")
        if min_af is not None:
            values = values[values >= min_af]
        if max_af is not None:
            values = values[values <= max_af]
        if values.size < 2:
            raise InputError(f"need at least two allele frequencies to fit a mutation rate, got {values.size}")

        freqs_desc = np.sort(values)[::-1]
        ascending = freqs_desc[::-1]
        # M(f) counts every mutation with AF >= f; ties share the same count
        observed = (ascending.size - np.searchsorted(ascending, freqs_desc, side="left")).astype(np.float64)
        x = 1.0 / freqs_desc - 1.0 / freqs_desc[0]
        sxx = float(np.dot(x, x))
        if sxx == 0.0:
            raise InputError("all allele frequencies are equal; the mutation rate is not identifiable")
        rate = float(np.dot(x, observed) / sxx)
        fitted = rate * x

        ss_res = float(np.sum((observed - fitted) ** 2))
        ss_tot = float(np.sum((observed - observed.mean()) ** 2))
        if ss_tot > 0.0:
            r_squared = 1.0 - ss_res / ss_tot
        else:
            r_squared = 1.0 if ss_res == 0.0 else 0.0
        logger.info("Effective mutation rate %.6g from %d frequencies (R^2=%.3f)", rate, values.size, r_squared)
        return cls(
            effective_mutation_rate=rate,
            r_squared=r_squared,
            frequencies=freqs_desc,
            x=x,
            observed=observed,
            fitted=fitted,
        )

    def observations(self) -> List[tuple]:
        """(frequency, cumulative count) pairs, highest frequency first."""
        return [(float(f), int(m)) for f, m in zip(self.frequencies, self.observed)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effective_mutation_rate": self.effective_mutation_rate,
            "r_squared": self.r_squared,
            "n_frequencies": int(self.frequencies.size),
            "frequency": self.frequencies.tolist(),
            "x": self.x.tolist(),
            "observed": self.observed.tolist(),
            "fitted": self.fitted.tolist(),
        }

    def write_json(self, path: str | Path) -> None:
        write_json(path, self.to_dict())

    def write_tsv(self, path: str | Path) -> None:
        with open(path, "wt", encoding="utf-8", newline="") as f:
            w = csv.writer(f, delimiter="\t")
            w.writerow(["frequency", "x", "observed", "fitted"])
            for row in zip(self.frequencies, self.x, self.observed, self.fitted):
                w.writerow([f"{row[0]:.6g}", f"{row[1]:.6g}", int(row[2]), f"{row[3]:.6g}"])


def read_frequencies(handle: Iterable[str]) -> List[float]:
    """Parse one allele frequency per line (first column of CSV/TSV).

    Blank lines and ``#`` comments are ignored; a non-numeric first line is
    taken as a header.
    """
    freqs: List[float] = []
    seen_data = False
    for lineno, line in enumerate(handle, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        field = text.split(",")[0].split("\t")[0].strip()
        try:
            freqs.append(float(field))
        except ValueError as e:
            if not seen_data:
                seen_data = True
                logger.debug("Skipping header line %r", text)
                continue
            raise InputError(f"line {lineno}: not an allele frequency: {text!r}") from e
        seen_data = True
    return freqs
