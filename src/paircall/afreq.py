"""Allele-frequency ranges and the numerical AF grid.

An allele-frequency region is either a continuous interval with explicit
endpoint semantics or a finite set of discrete frequencies. The continuous
case-sample axis is represented by an :class:`AlleleFreqGrid`; every region
is evaluated against grid points through ``mask()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigError, ModelError

logger = logging.getLogger(__name__)

# Absolute tolerance for comparing allele frequencies against range endpoints.
AF_TOL = 1e-9


def _check_af(value: float, what: str) -> float:
    af = float(value)
    if np.isnan(af) or af < 0.0 or af > 1.0:
        raise ConfigError(f"{what} must be an allele frequency within [0, 1], got {value!r}")
    return af


@dataclass(frozen=True)
class ContinuousAFRange:
    """Interval of allele frequencies.

    Endpoints are inclusive by default; ``ContinuousAFRange(0.0, 0.05,
    end_inclusive=False)`` is ``[0, 0.05)``.
    """

    start: float
    end: float
    start_inclusive: bool = True
    end_inclusive: bool = True

    def __post_init__(self) -> None:
        start = _check_af(self.start, "range start")
        end = _check_af(self.end, "range end")
        if start > end:
            raise ConfigError(f"range start {start} is greater than range end {end}")
        if start == end and not (self.start_inclusive and self.end_inclusive):
            raise ConfigError(f"allele frequency range {self} is empty")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def mask(self, afs: Union[Sequence[float], np.ndarray]) -> np.ndarray:
        afs = np.asarray(afs, dtype=np.float64)
        if self.start_inclusive:
            lo = afs >= self.start - AF_TOL
        else:
            lo = afs > self.start + AF_TOL
        if self.end_inclusive:
            hi = afs <= self.end + AF_TOL
        else:
            hi = afs < self.end - AF_TOL
        return lo & hi

    def contains(self, af: float) -> bool:
        return bool(self.mask([af])[0])

    def endpoints(self) -> Tuple[float, ...]:
        return (self.start, self.end)

    def __str__(self) -> str:
        left = "[" if self.start_inclusive else "("
        right = "]" if self.end_inclusive else ")"
        return f"{left}{self.start:g}, {self.end:g}{right}"


@dataclass(frozen=True, init=False)
class DiscreteAlleleFreqs:
    """Finite, ordered set of allele frequencies."""

    values: Tuple[float, ...]

    def __init__(self, values: Iterable[float]) -> None:
        checked = sorted({_check_af(v, "discrete allele frequency") for v in values})
        if not checked:
            raise ConfigError("discrete allele frequency set must not be empty")
        object.__setattr__(self, "values", tuple(checked))

    @classmethod
    def feasible(cls, ploidy: int, amplification: int = 1) -> "DiscreteAlleleFreqs":
        """Frequencies reachable with integer copy numbers.

        Returns ``{k / (ploidy * amplification) : k = 0..ploidy * amplification}``.
        The amplification factor models copy-number gain: an amplified locus
        carries ``ploidy * amplification`` copies.
        """
        if int(ploidy) != ploidy or int(amplification) != amplification:
            raise ModelError(
                f"ploidy and amplification must be integers, got {ploidy!r} and {amplification!r}"
            )
        n = int(ploidy) * int(amplification)
        if ploidy < 1 or amplification < 1:
            raise ModelError(
                f"no feasible allele frequencies for ploidy={ploidy}, amplification={amplification}"
            )
        return cls(k / n for k in range(n + 1))

    @classmethod
    def absent(cls) -> "DiscreteAlleleFreqs":
        return cls([0.0])

    def not_absent(self) -> "DiscreteAlleleFreqs":
        kept = [v for v in self.values if v > AF_TOL]
        if not kept:
            raise ConfigError("allele frequency set contains only 0; nothing left after removing it")
        return DiscreteAlleleFreqs(kept)

    def mask(self, afs: Union[Sequence[float], np.ndarray]) -> np.ndarray:
        afs = np.asarray(afs, dtype=np.float64)
        vals = np.asarray(self.values, dtype=np.float64)
        return np.any(np.abs(afs[:, None] - vals[None, :]) <= AF_TOL, axis=1)

    def contains(self, af: float) -> bool:
        return bool(self.mask([af])[0])

    def endpoints(self) -> Tuple[float, ...]:
        return self.values

    def __iter__(self) -> Iterator[float]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __str__(self) -> str:
        return "{" + ", ".join(f"{v:g}" for v in self.values) + "}"


AlleleFreqRange = Union[ContinuousAFRange, DiscreteAlleleFreqs]


class AlleleFreqGrid:
    """Sorted support points of the continuous allele-frequency axis.

    Each point owns the cell between the midpoints to its neighbours; the
    first and last cells are clipped to 0 and 1. Densities are integrated per
    cell, so summing over grid points is the numerical integral.
    """

    def __init__(self, points: Iterable[float]) -> None:
        pts = np.sort(np.asarray([_check_af(p, "grid point") for p in points], dtype=np.float64))
        merged = [0.0]
        for p in pts:
            if p - merged[-1] > AF_TOL:
                merged.append(float(p))
        if 1.0 - merged[-1] > AF_TOL:
            merged.append(1.0)
        else:
            merged[-1] = 1.0
        self.points = np.asarray(merged, dtype=np.float64)
        mids = 0.5 * (self.points[1:] + self.points[:-1])
        self.lower = np.concatenate([[0.0], mids])
        self.upper = np.concatenate([mids, [1.0]])

    @classmethod
    def build(cls, n_points: int = 201, extra: Iterable[float] = ()) -> "AlleleFreqGrid":
        """Regular grid of ``n_points`` united with ``extra`` points."""
        if n_points < 2:
            raise ConfigError(f"grid needs at least 2 points, got {n_points}")
        base = np.linspace(0.0, 1.0, int(n_points))
        return cls(np.concatenate([base, np.asarray(list(extra), dtype=np.float64)]))

    def index_of(self, af: float) -> int:
        """Index of the grid cell containing ``af``."""
        af = _check_af(af, "allele frequency")
        idx = int(np.searchsorted(self.upper, af, side="left"))
        return min(idx, len(self.points) - 1)

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def __repr__(self) -> str:
        return f"AlleleFreqGrid(n={len(self)})"
