"""Pairwise caller: combines prior and both samples' likelihoods into event posteriors.

For each candidate the joint ``(control AF, case AF)`` space is evaluated on
the AF grid::

    log P(cell, data) = log prior(cell) + L_case(case AF) + L_control(control AF)

Each named event sums the cells it covers, the complement (if declared) gets
the remaining mass, and everything is normalized by the marginal likelihood.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp
from tqdm import tqdm

from .afreq import AlleleFreqGrid
from .errors import ConfigError, InputError, ModelError
from .events import EventSet
from .models import SNV, Call, Candidate, CallState, Observation
from .priors import PriorConfig, PriorModel
from .sample import Sample
from .utils import LOG_ZERO, chunked, log1mexp

logger = logging.getLogger(__name__)

ON_MODEL_ERROR_ABORT = "abort"
ON_MODEL_ERROR_FLAG = "flag"


@dataclass(frozen=True)
class CallerConfig:
    """Options of the calling loop.

    Attributes
    ----------
    omit_snvs, omit_indels:
        Skip these variant classes entirely.
    max_indel_len:
        Skip indels longer than this (None: no limit).
    exclusive_end:
        Report locus ends as exclusive coordinates.
    epsilon:
        Allowed deviation of the posterior sum from 1.
    on_model_error:
        ``abort`` the run or ``flag`` the call as invalid and continue.
    threads, chunk_size:
        Worker threads and candidates handed to the pool per batch.
    model_admixture:
        Use the control AF as the AF of the contaminating cells in the case
        sample instead of 0.
    grid_points:
        Regular points of the case AF grid.
    """

    omit_snvs: bool = False
    omit_indels: bool = False
    max_indel_len: Optional[int] = 1000
    exclusive_end: bool = False
    epsilon: float = 1e-6
    on_model_error: str = ON_MODEL_ERROR_ABORT
    threads: int = 1
    chunk_size: int = 64
    model_admixture: bool = False
    grid_points: int = 201

    def __post_init__(self) -> None:
        if self.omit_snvs and self.omit_indels:
            raise ConfigError("omitting both SNVs and indels leaves nothing to call")
        if self.max_indel_len is not None and self.max_indel_len < 1:
            raise ConfigError(f"max_indel_len must be positive, got {self.max_indel_len}")
        if not 0.0 < self.epsilon < 1.0:
            raise ConfigError(f"epsilon must be within (0, 1), got {self.epsilon}")
        if self.on_model_error not in (ON_MODEL_ERROR_ABORT, ON_MODEL_ERROR_FLAG):
            raise ConfigError(
                f"unknown model error policy {self.on_model_error!r}",
                suggestion=f"use {ON_MODEL_ERROR_ABORT} or {ON_MODEL_ERROR_FLAG}",
            )
        if self.threads < 1 or self.chunk_size < 1:
            raise ConfigError("threads and chunk_size must be positive")
        if self.grid_points < 2:
            raise ConfigError(f"grid_points must be >= 2, got {self.grid_points}")

    def keeps(self, candidate: Candidate) -> bool:
        """Whether the candidate passes the variant class and length filters."""
        if candidate.kind == SNV:
            return not self.omit_snvs
        if self.omit_indels:
            return False
        return self.max_indel_len is None or candidate.length <= self.max_indel_len


def build_grid(prior_config: PriorConfig, events: EventSet, n_points: int = 201) -> AlleleFreqGrid:
    """AF grid holding the regular points, the prior's support and all event endpoints."""
    return AlleleFreqGrid.build(n_points, extra=list(prior_config.support_points()) + events.endpoints())


class PairCaller:
    """Scores candidates for one case/control sample pair.

    Parameters
    ----------
    case, control:
        The two samples; ``case`` is the one with a continuous AF axis (tumor).
    prior:
        Prior model; its grid defines the integration support.
    events:
        Named events (plus optional complement) partitioning the AF space.
    config:
        Calling options.
    """

    def __init__(
        self,
        case: Sample,
        control: Sample,
        prior: PriorModel,
        events: EventSet,
        config: Optional[CallerConfig] = None,
    ) -> None:
        self.case = case
        self.control = control
        self.prior = prior
        self.events = events
        self.config = config or CallerConfig()
        self.grid = prior.grid
        self._control_points = np.asarray(prior.control_afs.values, dtype=np.float64)
        self._masks = events.masks(self.grid, prior.control_afs)
        events.validate_partition(self._masks, prior.log_table())

    def close(self) -> None:
        self.case.close()
        self.control.close()

    def observe(self, candidate: Candidate) -> Tuple[List[Observation], List[Observation]]:
        return self.case.observe(candidate), self.control.observe(candidate)

    def _case_likelihoods(self, case_obs: List[Observation]) -> np.ndarray:
        """Case log likelihood, shape ``(n_control, n_grid)`` or ``(1, n_grid)``."""
        model = self.case.likelihood_model
        if self.config.model_admixture:
            return np.stack(
                [model.likelihood_grid(case_obs, self.grid.points, admixture_af=c) for c in self._control_points]
            )
        return model.likelihood_grid(case_obs, self.grid.points)[None, :]

    def score(
        self,
        case_obs: List[Observation],
        control_obs: List[Observation],
        candidate: Candidate,
    ) -> Dict[str, float]:
        """Log posterior of every event, in event order with the complement last.

        Raises ModelError if the posteriors are not finite or do not sum to 1
        within ``epsilon``.
        """
        log_prior = self.prior.log_table(candidate.kind, candidate.length)
        control_lh = self.control.likelihood_model.likelihood_grid(control_obs, self._control_points)
        joint = log_prior + self._case_likelihoods(case_obs) + control_lh[:, None]
        if np.isnan(joint).any():
            raise ModelError(f"{candidate}: NaN in joint probabilities")

        marginal = float(logsumexp(joint))
        if not np.isfinite(marginal):
            raise ModelError(f"{candidate}: marginal likelihood is {marginal}")

        names = self.events.names
        posteriors: Dict[str, float] = {}
        for event, mask in zip(self.events, self._masks):
            if mask.any():
                posteriors[event.name] = float(logsumexp(joint[mask])) - marginal
            else:
                posteriors[event.name] = LOG_ZERO

        named_total = float(logsumexp(list(posteriors.values())))
        eps = self.config.epsilon
        if self.events.complement is not None:
            if named_total > np.log1p(eps):
                raise ModelError(
                    f"{candidate}: named event posteriors sum to {np.exp(named_total):.9g} > 1",
                    suggestion="events overlap in the allele frequency space",
                )
            posteriors[self.events.complement.name] = log1mexp(min(named_total, 0.0))
            total = float(logsumexp(list(posteriors.values())))
        else:
            total = named_total
        if not np.isfinite(total) or abs(np.expm1(total)) > eps:
            raise ModelError(f"{candidate}: posteriors sum to {np.exp(total):.9g}, not 1")

        result = {name: posteriors[name] - total for name in names}
        if any(np.isnan(v) for v in result.values()):
            raise ModelError(f"{candidate}: NaN posterior")
        return result

    def prior_event_log_probs(self, candidate: Candidate) -> Dict[str, float]:
        """Event probabilities without any evidence (what zero coverage yields)."""
        return self.score([], [], candidate)

    def call(self, candidate: Candidate, *, keep_observations: bool = False) -> Call:
        call = Call(candidate=candidate)
        case_obs, control_obs = self.observe(candidate)
        call.state = CallState.EVIDENCED
        if keep_observations:
            call.observations = {self.case.name: case_obs, self.control.name: control_obs}
        call.log_probs = self.score(case_obs, control_obs, candidate)
        call.state = CallState.SCORED
        return call


def _call_one(caller: PairCaller, candidate: Candidate, config: CallerConfig, keep_observations: bool) -> Tuple[str, Optional[Call]]:
    try:
        return "called", caller.call(candidate, keep_observations=keep_observations)
    except InputError as e:
        logger.warning("Skipping %s: %s", candidate, e)
        return "skipped_invalid", None
    except ModelError as e:
        if config.on_model_error == ON_MODEL_ERROR_ABORT:
            raise
        logger.warning("Flagging %s: %s", candidate, e)
        return "flagged", Call(candidate=candidate, valid=False, error=str(e), state=CallState.SCORED)


def call_candidates(
    candidates: Iterable[Candidate],
    make_caller: Callable[[], PairCaller],
    config: CallerConfig,
    *,
    emit: Callable[[Call], None],
    keep_observations: bool = False,
    progress: bool = False,
) -> Dict[str, Any]:
    """Score all candidates and hand the calls to ``emit`` in input order.

    ``make_caller`` builds a caller with its own open files; it is invoked
    once per worker thread. ``emit`` is only ever called from the calling
    thread. Returns a run summary.
    """
    t0 = time.time()
    counts = {
        "candidates_total": 0,
        "skipped_filtered": 0,
        "skipped_invalid": 0,
        "called": 0,
        "flagged": 0,
    }
    callers: List[PairCaller] = []
    lock = threading.Lock()
    local = threading.local()

    def worker(candidate: Candidate) -> Tuple[str, Optional[Call]]:
        caller = getattr(local, "caller", None)
        if caller is None:
            caller = make_caller()
            local.caller = caller
            with lock:
                callers.append(caller)
        return _call_one(caller, candidate, config, keep_observations)

    def handle(outcome: Tuple[str, Optional[Call]]) -> None:
        status, call = outcome
        counts[status] += 1
        if call is not None:
            emit(call)
            call.state = CallState.EMITTED

    it: Iterable[Candidate] = candidates
    if progress:
        it = tqdm(it, unit="candidate", desc="Calling")

    def kept(stream: Iterable[Candidate]) -> Iterable[Candidate]:
        for candidate in stream:
            counts["candidates_total"] += 1
            if config.keeps(candidate):
                yield candidate
            else:
                counts["skipped_filtered"] += 1

    try:
        if config.threads == 1:
            for candidate in kept(it):
                handle(worker(candidate))
        else:
            with ThreadPoolExecutor(max_workers=config.threads, thread_name_prefix="paircall") as pool:
                for chunk in chunked(kept(it), config.chunk_size):
                    # map() yields results in submission order
                    for outcome in pool.map(worker, chunk):
                        handle(outcome)
    finally:
        for caller in callers:
            caller.close()

    summary = {
        "counts": counts,
        "threads": config.threads,
        "runtime_seconds": float(time.time() - t0),
    }
    logger.info(
        "Called %d of %d candidates (%d filtered, %d invalid, %d flagged)",
        counts["called"], counts["candidates_total"], counts["skipped_filtered"],
        counts["skipped_invalid"], counts["flagged"],
    )
    return summary
