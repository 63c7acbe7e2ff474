from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt

from .estimation import MutationRateEstimate

logger = logging.getLogger(__name__)


def plot_posterior_hist(
    *,
    bin_edges: List[float],
    counts: Dict[str, List[int]],
    out_png: str | Path,
    title: str = "Posterior probability per event",
) -> None:
    """Step histograms of per-call posteriors, one line per event."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    for event, values in counts.items():
        plt.stairs(values, bin_edges, label=event)
    plt.xlabel("Posterior probability")
    plt.ylabel("Calls")
    plt.yscale("symlog")
    plt.legend()
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_event_counts(
    *,
    event_counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Calls by most probable event",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = list(event_counts)
    plt.figure()
    plt.bar(labels, [int(event_counts[k]) for k in labels])
    plt.ylabel("Calls")
    plt.title(title)
    plt.xticks(rotation=15, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_mutation_rate_fit(
    *,
    estimate: MutationRateEstimate,
    out_png: str | Path,
    title: str = "Cumulative mutations vs. 1/f",
) -> None:
    """Observed cumulative counts against the fitted line ``M = rate * x``."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    plt.scatter(estimate.x, estimate.observed, s=8, label="observed")
    plt.plot(estimate.x, estimate.fitted, color="C1", label=f"rate = {estimate.effective_mutation_rate:.4g}")
    plt.xlabel("1/f - 1/f_max")
    plt.ylabel("Mutations with AF >= f")
    plt.title(f"{title} (R^2 = {estimate.r_squared:.3f})")
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
