"""Prior models over (case AF, control AF).

All variants expose the same interface: ``control_afs`` (the discrete support
of the control sample), ``prior(case_af, control_af)`` returning the natural
log of the prior mass of the grid cell holding ``case_af``, and
``log_table(kind, length)`` with the full ``(n_control, n_grid)`` matrix the
caller integrates over. The variant is picked once per run with
:func:`build_prior_model`.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from .afreq import AF_TOL, AlleleFreqGrid, DiscreteAlleleFreqs
from .errors import ConfigError
from .models import DEL, INS, SNV, checked_prob
from .utils import LOG_ZERO

logger = logging.getLogger(__name__)

PRIOR_FULL = "full"
PRIOR_FLAT = "flat"
PRIOR_FLAT_TWO_SAMPLE = "flat-two-sample"
PRIOR_KINDS = (PRIOR_FULL, PRIOR_FLAT, PRIOR_FLAT_TWO_SAMPLE)


@dataclass(frozen=True)
class PriorConfig:
    """Prior model configuration.

    Attributes
    ----------
    kind:
        ``full`` (population genetics + somatic mutation spectrum), ``flat``
        (uniform over grid x feasible control AFs) or ``flat-two-sample``
        (uniform over feasible case AFs x feasible control AFs).
    ploidy:
        Ploidy of the control sample.
    case_ploidy:
        Ploidy of the case sample; only used by ``flat-two-sample``.
        Defaults to ``ploidy``.
    amplification:
        Copy-number amplification factor applied to the feasible AF sets.
    heterozygosity:
        Expected heterozygosity of the population (germline prior).
    effective_mutation_rate:
        Somatic effective mutation rate (see ``paircall estimate mutation-rate``).
    deletion_factor, insertion_factor:
        Per-base factors scaling the somatic rate for indels of a given length.
    genome_size:
        Total reference length in bases. May be left unset while options are
        validated; the full model needs it once built.
    """

    kind: str = PRIOR_FULL
    ploidy: int = 2
    case_ploidy: Optional[int] = None
    amplification: int = 1
    heterozygosity: float = 1.25e-4
    effective_mutation_rate: Optional[float] = None
    deletion_factor: float = 0.03
    insertion_factor: float = 0.01
    genome_size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in PRIOR_KINDS:
            raise ConfigError(f"unknown prior model {self.kind!r}", suggestion=f"choose one of {PRIOR_KINDS}")
        for name in ("ploidy", "amplification"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.case_ploidy is not None and (int(self.case_ploidy) != self.case_ploidy or self.case_ploidy < 1):
            raise ConfigError(f"case_ploidy must be a positive integer, got {self.case_ploidy!r}")
        checked_prob(self.heterozygosity, "heterozygosity")
        for name in ("deletion_factor", "insertion_factor"):
            value = checked_prob(getattr(self, name), name)
            if value == 0.0:
                raise ConfigError(f"{name} must be > 0")
        if self.kind == PRIOR_FULL:
            if self.effective_mutation_rate is None:
                raise ConfigError(
                    "the full prior model needs an effective mutation rate",
                    suggestion="pass --effective-mutation-rate or use --prior flat",
                )
            if not self.effective_mutation_rate > 0.0:
                raise ConfigError(
                    f"effective mutation rate must be > 0, got {self.effective_mutation_rate!r}"
                )
            if self.genome_size is not None and not self.genome_size > 0:
                raise ConfigError(f"genome size must be > 0, got {self.genome_size!r}")

    @property
    def control_support(self) -> DiscreteAlleleFreqs:
        return DiscreteAlleleFreqs.feasible(self.ploidy, self.amplification)

    @property
    def case_support(self) -> DiscreteAlleleFreqs:
        return DiscreteAlleleFreqs.feasible(self.case_ploidy or self.ploidy, self.amplification)

    def support_points(self) -> List[float]:
        """Discrete AFs the prior needs to find on the case grid."""
        points = list(self.control_support)
        if self.kind == PRIOR_FLAT_TWO_SAMPLE:
            points.extend(self.case_support)
        return points


class PriorModel:
    """Common machinery: table caching and point lookup."""

    name = "prior"

    def __init__(self, grid: AlleleFreqGrid, control_afs: DiscreteAlleleFreqs) -> None:
        self.grid = grid
        self.control_afs = control_afs
        self._control_idx = np.asarray(
            [self.grid.index_of(af) for af in control_afs], dtype=np.int64
        )
        for af, idx in zip(control_afs, self._control_idx):
            if abs(self.grid.points[idx] - af) > AF_TOL:
                raise ConfigError(f"control allele frequency {af} is not a point of the AF grid")
        self._tables: Dict[Tuple[str, int], np.ndarray] = {}
        self._lock = threading.Lock()

    def _compute_table(self, kind: str, length: int) -> np.ndarray:
        raise NotImplementedError

    def log_table(self, kind: str = SNV, length: int = 1) -> np.ndarray:
        """Log prior masses, shape ``(len(control_afs), len(grid))``."""
        key = (kind, int(length))
        with self._lock:
            table = self._tables.get(key)
            if table is None:
                table = self._compute_table(kind, int(length))
                table.setflags(write=False)
                self._tables[key] = table
        return table

    def prior(self, case_af: float, control_af: float, *, kind: str = SNV, length: int = 1) -> float:
        """Log prior mass of ``(case_af, control_af)``; ``-inf`` off the support."""
        j = self._control_index(control_af)
        if j is None:
            return LOG_ZERO
        return float(self.log_table(kind, length)[j, self.grid.index_of(case_af)])

    def _control_index(self, control_af: float) -> Optional[int]:
        for j, af in enumerate(self.control_afs):
            if abs(af - control_af) <= AF_TOL:
                return j
        return None


class TumorNormalModel(PriorModel):
    """Population-genetics prior for a case/control pair.

    The control AF follows the infinite sites neutral variation model:
    ``P(m alt copies) = heterozygosity / m`` for ``m >= 1`` and the remainder
    at ``m = 0``. The case AF departs from the control AF by a somatic change
    ``s`` whose density ``rate * factor / (genome_size * s**2)`` follows from
    the cumulative mutation count ``M(f) = rate * (1/f - 1/f_max)``; ``factor``
    is ``deletion_factor**len`` or ``insertion_factor**len`` for indels and 1
    for SNVs. The density is integrated exactly per grid cell and the mass left
    over stays at ``case AF == control AF``.
    """

    name = PRIOR_FULL

    def __init__(self, config: PriorConfig, grid: AlleleFreqGrid) -> None:
        if config.genome_size is None:
            raise ConfigError("the full prior model needs a genome size")
        super().__init__(grid, config.control_support)
        self.config = config
        self.effective_mutation_rate = float(config.effective_mutation_rate)
        self.genome_size = float(config.genome_size)
        self._germline = self._germline_log_probs()

    def _germline_log_probs(self) -> np.ndarray:
        n = self.config.ploidy * self.config.amplification
        het = self.config.heterozygosity
        harmonic = sum(1.0 / m for m in range(1, n + 1))
        if het * harmonic >= 1.0:
            raise ConfigError(
                f"heterozygosity {het} is too large for {n} genome copies "
                f"(total variant mass {het * harmonic:.3g} >= 1)"
            )
        probs = [1.0 - het * harmonic] + [het / m for m in range(1, n + 1)]
        return np.log(np.asarray(probs, dtype=np.float64))

    def somatic_factor(self, kind: str, length: int) -> float:
        if kind == DEL:
            return self.config.deletion_factor ** length
        if kind == INS:
            return self.config.insertion_factor ** length
        return 1.0

    def _compute_table(self, kind: str, length: int) -> np.ndarray:
        k = self.effective_mutation_rate * self.somatic_factor(kind, length) / self.genome_size
        points, lower, upper = self.grid.points, self.grid.lower, self.grid.upper
        table = np.empty((len(self.control_afs), len(points)), dtype=np.float64)
        for j, (c, c_idx) in enumerate(zip(self.control_afs, self._control_idx)):
            near = np.minimum(np.abs(lower - c), np.abs(upper - c))
            far = np.maximum(np.abs(lower - c), np.abs(upper - c))
            other = np.arange(len(points)) != c_idx
            mass = np.zeros(len(points), dtype=np.float64)
            mass[other] = k * (1.0 / near[other] - 1.0 / far[other])
            somatic_total = float(mass.sum())
            if somatic_total >= 1.0:
                raise ConfigError(
                    f"somatic prior mass {somatic_total:.3g} >= 1 for control AF {c:g}",
                    suggestion="lower the effective mutation rate or increase the genome size",
                )
            mass[c_idx] = 1.0 - somatic_total
            with np.errstate(divide="ignore"):
                table[j] = self._germline[j] + np.log(mass)
        return table


class FlatPairModel(PriorModel):
    """Uniform prior over the case grid and the feasible control AFs."""

    name = PRIOR_FLAT

    def __init__(self, config: PriorConfig, grid: AlleleFreqGrid) -> None:
        super().__init__(grid, config.control_support)

    def _compute_table(self, kind: str, length: int) -> np.ndarray:
        n = len(self.control_afs) * len(self.grid)
        return np.full((len(self.control_afs), len(self.grid)), -math.log(n), dtype=np.float64)


class FlatTwoSampleModel(PriorModel):
    """Uniform prior over feasible case AFs x feasible control AFs.

    Neither sample is treated as the diploid reference; case AFs off the
    feasible set get zero mass.
    """

    name = PRIOR_FLAT_TWO_SAMPLE

    def __init__(self, config: PriorConfig, grid: AlleleFreqGrid) -> None:
        super().__init__(grid, config.control_support)
        self.case_afs = config.case_support
        self._case_mask = self.case_afs.mask(grid.points)
        if int(self._case_mask.sum()) != len(self.case_afs):
            raise ConfigError("feasible case allele frequencies are not all points of the AF grid")

    def _compute_table(self, kind: str, length: int) -> np.ndarray:
        n = len(self.control_afs) * len(self.case_afs)
        row = np.where(self._case_mask, -math.log(n), LOG_ZERO)
        return np.tile(row, (len(self.control_afs), 1))


def build_prior_model(config: PriorConfig, grid: AlleleFreqGrid) -> PriorModel:
    if config.kind == PRIOR_FULL:
        model: PriorModel = TumorNormalModel(config, grid)
    elif config.kind == PRIOR_FLAT:
        model = FlatPairModel(config, grid)
    else:
        model = FlatTwoSampleModel(config, grid)
    logger.debug("Prior model: %s on %r", model.name, grid)
    return model
