"""Latent-variable likelihood of a sample's observations given an allele frequency.

Every observation either stems from a correctly placed read, in which case it
carries the ALT allele with probability ``theta`` and REF otherwise, or from a
mismapped read. With purity ``p`` the ALT fraction in the sequenced material is

    theta = p * af + (1 - p) * admixture_af

where ``admixture_af`` is the AF in the contaminating cells (0 by default).
The per-read origin is marginalized out and all arithmetic stays in log space.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .models import Observation, checked_prob

logger = logging.getLogger(__name__)


def observation_arrays(observations: Sequence[Observation]) -> np.ndarray:
    """Stack observations into an ``(n, 4)`` array: mapping, alt, ref, mismapped."""
    if len(observations) == 0:
        return np.empty((0, 4), dtype=np.float64)
    return np.asarray(
        [(o.prob_mapping, o.prob_alt, o.prob_ref, o.prob_mismapped) for o in observations],
        dtype=np.float64,
    )


class LatentVariableModel:
    """Likelihood model of one sample with a given purity."""

    def __init__(self, purity: float = 1.0) -> None:
        self.purity = checked_prob(purity, "purity")

    def signal_fraction(self, afs: np.ndarray, admixture_af: float = 0.0) -> np.ndarray:
        afs = np.asarray(afs, dtype=np.float64)
        return self.purity * afs + (1.0 - self.purity) * admixture_af

    def likelihood_grid(
        self,
        observations: Sequence[Observation] | np.ndarray,
        afs: Sequence[float] | np.ndarray,
        admixture_af: float = 0.0,
    ) -> np.ndarray:
        """Log likelihood for each allele frequency in ``afs``.

        Returns an array of the same length as ``afs``; an empty pileup gives
        zeros (no information).
        """
        obs = observations if isinstance(observations, np.ndarray) else observation_arrays(observations)
        afs = np.asarray(afs, dtype=np.float64)
        if obs.shape[0] == 0:
            return np.zeros(afs.shape[0], dtype=np.float64)

        theta = np.clip(self.signal_fraction(afs, admixture_af), 0.0, 1.0)
        with np.errstate(divide="ignore"):
            log_theta = np.log(theta)
            log_not_theta = np.log1p(-theta)

        prob_mapping = obs[:, 0][:, None]
        prob_alt = obs[:, 1][:, None]
        prob_ref = obs[:, 2][:, None]
        prob_mismapped = obs[:, 3][:, None]

        # log(theta * P_alt + (1 - theta) * P_ref), shape (n_obs, n_af)
        allele = np.logaddexp(log_theta[None, :] + prob_alt, log_not_theta[None, :] + prob_ref)
        with np.errstate(divide="ignore"):
            log_mismapping = np.log(-np.expm1(prob_mapping))
        per_obs = np.logaddexp(prob_mapping + allele, log_mismapping + prob_mismapped)
        # fixed summation order keeps results reproducible
        return per_obs.sum(axis=0)

    def likelihood(
        self,
        observations: Sequence[Observation],
        af: float,
        admixture_af: float = 0.0,
    ) -> float:
        """Log likelihood of ``observations`` at a single allele frequency."""
        return float(self.likelihood_grid(observations, [af], admixture_af)[0])

    def __repr__(self) -> str:
        return f"LatentVariableModel(purity={self.purity:g})"
