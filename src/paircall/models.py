from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .errors import ConfigError

SNV = "SNV"
INS = "INS"
DEL = "DEL"
VARIANT_KINDS = (SNV, INS, DEL)

EVIDENCE_ALIGNMENT = "alignment"
EVIDENCE_INSERT_SIZE = "insert-size"


def checked_prob(value: float, name: str = "probability") -> float:
    """Return ``value`` as float if it is a valid probability, else raise ConfigError."""
    try:
        p = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if math.isnan(p) or p < 0.0 or p > 1.0:
        raise ConfigError(f"{name} must be within [0, 1], got {value!r}")
    return p


@dataclass(frozen=True)
class VariantType:
    """Variant class selector used by the per-run filters.

    ``min_len``/``max_len`` form a half-open length range ``[min_len, max_len)``
    and only apply to insertions and deletions.
    """

    kind: str
    min_len: Optional[int] = None
    max_len: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in VARIANT_KINDS:
            raise ConfigError(
                f"unsupported variant type {self.kind!r}",
                suggestion="supported: SNV, INS, DEL",
            )
        if self.min_len is not None and self.max_len is not None and self.min_len >= self.max_len:
            raise ConfigError(f"empty length range [{self.min_len}, {self.max_len})")

    def matches(self, kind: str, length: int) -> bool:
        if kind != self.kind:
            return False
        if self.kind == SNV:
            return True
        if self.min_len is not None and length < self.min_len:
            return False
        if self.max_len is not None and length >= self.max_len:
            return False
        return True


@dataclass(frozen=True)
class Candidate:
    """A proposed variant at one locus.

    Coordinates are 0-based. For indels ``pos0`` is the padding (anchor) base
    as in VCF; a deletion removes the ``length`` bases following it and an
    insertion adds ``length`` bases right after it.
    """

    chrom: str
    pos0: int
    ref: str
    alt: str
    kind: str
    length: int
    record_id: str

    @property
    def is_indel(self) -> bool:
        return self.kind in (INS, DEL)

    @property
    def span_end0(self) -> int:
        """0-based exclusive end of the reference bases touched by the variant."""
        if self.kind == DEL:
            return self.pos0 + 1 + self.length
        return self.pos0 + 1

    def end(self, exclusive_end: bool = False) -> int:
        """1-based locus end under the requested convention.

        The inclusive end is the last reference base touched (the VCF ``END``
        convention); the exclusive end is one past it.
        """
        if exclusive_end:
            return self.span_end0 + 1
        return self.span_end0

    def __str__(self) -> str:
        return f"{self.chrom}:{self.pos0 + 1}:{self.ref}>{self.alt}"


@dataclass(frozen=True)
class Observation:
    """One read (or read pair) worth of evidence, in natural-log space.

    Attributes
    ----------
    prob_mapping:
        log P(read is placed correctly).
    prob_alt:
        log P(observation | ALT allele).
    prob_ref:
        log P(observation | REF allele).
    prob_mismapped:
        log P(observation | read is mismapped). 0.0 treats mismapped reads as
        uninformative.
    evidence:
        ``alignment`` or ``insert-size``.
    """

    prob_mapping: float
    prob_alt: float
    prob_ref: float
    prob_mismapped: float = 0.0
    evidence: str = EVIDENCE_ALIGNMENT


@dataclass(frozen=True)
class InsertSize:
    mean: float
    sd: float

    def __post_init__(self) -> None:
        if not self.sd > 0.0:
            raise ConfigError(f"insert size standard deviation must be > 0, got {self.sd}")


@dataclass(frozen=True)
class AlignmentProperties:
    """Per-sample noise parameters estimated from aligned reads."""

    insert_size: InsertSize
    max_mapq: int
    mean_mapq: float
    frac_mapq0: float
    reads_used: int


class CallState(Enum):
    """Lifecycle of one candidate inside the caller."""

    PENDING = "pending"
    EVIDENCED = "evidenced"
    SCORED = "scored"
    EMITTED = "emitted"


@dataclass
class Call:
    """A scored candidate: one log posterior per event, complement included.

    ``observations`` is only filled when the caller is asked to keep them
    (observation dumps).
    """

    candidate: Candidate
    log_probs: Dict[str, float] = field(default_factory=dict)
    valid: bool = True
    error: Optional[str] = None
    state: CallState = CallState.PENDING
    observations: Dict[str, List[Observation]] = field(default_factory=dict)

    def prob(self, event: str) -> float:
        return math.exp(self.log_probs[event])

    def probs(self) -> Dict[str, float]:
        return {name: math.exp(lp) for name, lp in self.log_probs.items()}
