"""Named events over the joint (case AF, control AF) space."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import numpy as np

from .afreq import AlleleFreqGrid, AlleleFreqRange, ContinuousAFRange, DiscreteAlleleFreqs
from .errors import ConfigError

logger = logging.getLogger(__name__)

GERMLINE_CONTROL_DISCRETE = "discrete"
GERMLINE_CONTROL_CONTINUOUS = "continuous"


@dataclass(frozen=True)
class PairEvent:
    """Rectangular region ``af_case x af_control`` with a name."""

    name: str
    af_case: AlleleFreqRange
    af_control: AlleleFreqRange

    def mask(self, case_afs: np.ndarray, control_afs: np.ndarray) -> np.ndarray:
        """Boolean matrix ``(len(control_afs), len(case_afs))`` of cells in the event."""
        return np.outer(self.af_control.mask(control_afs), self.af_case.mask(case_afs))


@dataclass(frozen=True)
class ComplementEvent:
    """Everything not covered by the sibling events; its probability is derived."""

    name: str


class EventSet:
    """Ordered named events plus an optional complement.

    The caller treats an EventSet as a partition of the joint AF space.
    :meth:`validate_partition` checks that no grid cell is claimed twice and,
    without a complement, that no cell with prior mass is left uncovered.
    """

    def __init__(
        self,
        events: Sequence[PairEvent],
        complement: Optional[ComplementEvent] = None,
    ) -> None:
        self.events = list(events)
        self.complement = complement
        if not self.events:
            raise ConfigError("at least one event must be defined")
        names = [e.name for e in self.events]
        if complement is not None:
            names.append(complement.name)
        for name in names:
            if not name or not name.replace("_", "").replace("-", "").isalnum():
                raise ConfigError(f"invalid event name {name!r}", suggestion="use letters, digits, '-' or '_'")
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigError(f"duplicate event names: {', '.join(dupes)}")
        self._names = names

    @property
    def names(self) -> List[str]:
        return list(self._names)

    def __iter__(self) -> Iterator[PairEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self._names)

    def endpoints(self) -> List[float]:
        """All range endpoints and discrete values; added to the AF grid."""
        points: List[float] = []
        for e in self.events:
            points.extend(e.af_case.endpoints())
        return points

    def masks(self, grid: AlleleFreqGrid, control_afs: DiscreteAlleleFreqs) -> np.ndarray:
        """Stacked event masks, shape ``(n_events, n_control, n_grid)``."""
        controls = np.asarray(control_afs.values, dtype=np.float64)
        return np.stack([e.mask(grid.points, controls) for e in self.events])

    def validate_partition(self, masks: np.ndarray, log_prior: np.ndarray) -> None:
        """Raise ConfigError unless the events partition the supported space."""
        coverage = masks.sum(axis=0)
        supported = np.isfinite(log_prior)
        overlap = (coverage > 1) & supported
        if overlap.any():
            claimed = [e.name for e, m in zip(self.events, masks) if (m & overlap).any()]
            raise ConfigError(
                f"events overlap in the allele frequency space: {', '.join(claimed)}",
                suggestion="make event ranges disjoint, e.g. with exclusive endpoints",
            )
        if self.complement is None:
            gaps = (coverage == 0) & supported
            if gaps.any():
                raise ConfigError(
                    f"events leave {int(gaps.sum())} grid cells uncovered",
                    suggestion="extend the event ranges or declare a complement event",
                )
        for e, m in zip(self.events, masks):
            if not (m & supported).any():
                logger.warning("Event %s has no prior support and will always have probability 0", e.name)


def tumor_normal_events(
    *,
    min_somatic_af: float = 0.05,
    ploidy: int = 2,
    amplification: int = 1,
    germline_control: str = GERMLINE_CONTROL_DISCRETE,
) -> EventSet:
    """Germline / somatic / absent events for a tumor (case) vs normal (control) pair.

    ``germline_control`` selects whether the germline event's control region is
    the discrete set of feasible non-zero AFs or the continuous range ``(0, 1]``.
    """
    if germline_control == GERMLINE_CONTROL_DISCRETE:
        germline_normal: AlleleFreqRange = DiscreteAlleleFreqs.feasible(ploidy, amplification).not_absent()
    elif germline_control == GERMLINE_CONTROL_CONTINUOUS:
        germline_normal = ContinuousAFRange(0.0, 1.0, start_inclusive=False)
    else:
        raise ConfigError(f"unknown germline control region {germline_control!r}")
    if not 0.0 < min_somatic_af <= 1.0:
        raise ConfigError(f"minimum somatic allele frequency must be within (0, 1], got {min_somatic_af}")

    events = [
        PairEvent(
            name="germline",
            af_case=ContinuousAFRange(0.0, 1.0),
            af_control=germline_normal,
        ),
        PairEvent(
            name="somatic",
            af_case=ContinuousAFRange(min_somatic_af, 1.0),
            af_control=DiscreteAlleleFreqs.absent(),
        ),
    ]
    return EventSet(events, ComplementEvent(name="absent"))
