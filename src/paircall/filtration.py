"""Significance control on posterior probabilities.

Two filters are provided:

* Bayesian FDR control: accept the largest set of calls whose expected false
  discovery rate (mean of ``1 - p`` over the set) stays at or below ``alpha``.
* Posterior-odds filtering with the Kass & Raftery (1995) evidence categories.
"""

from __future__ import annotations

import logging
import math
from enum import IntEnum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pysam

from .candidates import record_kind, record_probs
from .errors import ConfigError
from .models import VariantType, checked_prob

logger = logging.getLogger(__name__)


def control_fdr(probs: Sequence[float], alpha: float) -> List[int]:
    """Indices of accepted calls, ordered by descending posterior probability.

    Ties keep their input order; calls tied at the cut-off are accepted or
    rejected together.
    """
    try:
        alpha = float(alpha)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"FDR threshold must be a number, got {alpha!r}") from e
    if math.isnan(alpha) or not 0.0 < alpha <= 1.0:
        raise ConfigError(f"FDR threshold must be within (0, 1], got {alpha}")
    values = [checked_prob(p, "posterior probability") for p in probs]
    order = sorted(range(len(values)), key=lambda i: -values[i])

    accepted = 0
    expected_false = 0.0
    for k, i in enumerate(order, start=1):
        expected_false += 1.0 - values[i]
        if expected_false / k <= alpha:
            accepted = k

    # never split a group of equal probabilities
    while 0 < accepted < len(order) and values[order[accepted - 1]] == values[order[accepted]]:
        accepted -= 1
    logger.debug("FDR %.4g: accepted %d of %d", alpha, accepted, len(values))
    return order[:accepted]


class KassRaftery(IntEnum):
    """Evidence categories for a Bayes factor (Kass & Raftery 1995)."""

    NONE = 0
    BARELY = 1
    POSITIVE = 2
    STRONG = 3
    VERY_STRONG = 4

    @classmethod
    def from_log_bayes_factor(cls, log_bf: float) -> "KassRaftery":
        if math.isnan(log_bf):
            return cls.NONE
        if log_bf <= 0.0:
            return cls.NONE
        if log_bf <= math.log(3.0):
            return cls.BARELY
        if log_bf <= math.log(20.0):
            return cls.POSITIVE
        if log_bf <= math.log(150.0):
            return cls.STRONG
        return cls.VERY_STRONG

    @classmethod
    def parse(cls, name: str) -> "KassRaftery":
        key = name.strip().upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError as e:
            choices = ", ".join(m.name.lower().replace("_", "-") for m in cls)
            raise ConfigError(f"unknown evidence category {name!r}", suggestion=f"choose one of {choices}") from e


def _event_prob(probs: Mapping[str, float], events: Sequence[str]) -> float:
    return min(1.0, sum(probs[e] for e in events))


def posterior_odds_evidence(p: float) -> KassRaftery:
    """Category of the posterior odds ``p / (1 - p)`` of an event."""
    p = checked_prob(p, "posterior probability")
    if p == 0.0:
        return KassRaftery.NONE
    if p == 1.0:
        return KassRaftery.VERY_STRONG
    return KassRaftery.from_log_bayes_factor(math.log(p) - math.log1p(-p))


def filter_by_odds(
    calls: Sequence[Optional[Mapping[str, float]]],
    events: Sequence[str],
    min_evidence: KassRaftery,
) -> List[int]:
    """Indices (input order) of calls whose odds for ``events`` reach ``min_evidence``.

    ``calls`` holds one event → probability mapping per call; ``None`` marks
    an invalid call, which is never kept.
    """
    if not events:
        raise ConfigError("at least one event is required")
    kept: List[int] = []
    for i, probs in enumerate(calls):
        if probs is None:
            continue
        if posterior_odds_evidence(_event_prob(probs, events)) >= min_evidence:
            kept.append(i)
    return kept


def _record_event_probs(
    records: Sequence[pysam.VariantRecord],
    events: Sequence[str],
) -> List[Optional[Dict[str, float]]]:
    return [record_probs(rec, events) for rec in records]


def control_fdr_records(
    records: Sequence[pysam.VariantRecord],
    events: Sequence[str],
    alpha: float,
    vartype: VariantType,
) -> Tuple[List[pysam.VariantRecord], Dict[str, int]]:
    """Apply FDR control to call records of one variant type.

    The probability of a call is the summed posterior of ``events``. Records of
    other types and invalid records are dropped. Kept records stay in input
    order.
    """
    if not events:
        raise ConfigError("at least one event is required")
    eligible: List[int] = []
    probs: List[float] = []
    stats = {"records_total": len(records), "records_other_type": 0, "records_invalid": 0}
    for i, (rec, p) in enumerate(zip(records, _record_event_probs(records, events))):
        kind, length = record_kind(rec)
        if kind is None or not vartype.matches(kind, length):
            stats["records_other_type"] += 1
            continue
        if p is None:
            stats["records_invalid"] += 1
            continue
        eligible.append(i)
        probs.append(_event_prob(p, events))
    accepted = sorted(eligible[j] for j in control_fdr(probs, alpha))
    stats["records_kept"] = len(accepted)
    logger.info(
        "FDR %.4g on %s: kept %d of %d eligible records", alpha, vartype.kind, len(accepted), len(eligible)
    )
    return [records[i] for i in accepted], stats


def filter_records_by_odds(
    records: Sequence[pysam.VariantRecord],
    events: Sequence[str],
    min_evidence: KassRaftery,
) -> List[pysam.VariantRecord]:
    kept = filter_by_odds(_record_event_probs(records, events), events, min_evidence)
    logger.info("Posterior odds >= %s: kept %d of %d records", min_evidence.name, len(kept), len(records))
    return [records[i] for i in kept]
