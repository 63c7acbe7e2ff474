from __future__ import annotations

import gzip
import json
import logging
import math
from pathlib import Path
from typing import Any, Iterable, TextIO, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_ZERO = float("-inf")


def phred_to_error_prob(q: int) -> float:
    # Guard against negative values (can occur if qualities are missing).
    if q <= 0:
        return 1.0
    return 10 ** (-q / 10)


def phred_to_prob(phred: float) -> float:
    """Convert a PHRED-scaled value back into a probability."""
    if math.isinf(phred):
        return 0.0
    return 10 ** (-phred / 10)


def log_prob_to_phred(log_p: float) -> float:
    """PHRED-scale a natural-log probability (``-10 * log10(p)``)."""
    if log_p == LOG_ZERO:
        return float("inf")
    return max(0.0, -10.0 * log_p / math.log(10.0))


def safe_log(p: float) -> float:
    if p <= 0.0:
        return LOG_ZERO
    return math.log(p)


def log1mexp(log_p: float) -> float:
    """Compute ``log(1 - exp(log_p))`` without cancellation.

    Uses ``log(-expm1(x))`` close to zero and ``log1p(-exp(x))`` elsewhere
    (Maechler 2012).
    """
    if log_p > 0.0:
        raise ValueError(f"log probability must be <= 0, got {log_p}")
    if log_p == 0.0:
        return LOG_ZERO
    if log_p > -math.log(2.0):
        return math.log(-math.expm1(log_p))
    return math.log1p(-math.exp(log_p))


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def chunked(iterable: Iterable[T], n: int) -> Iterable[list[T]]:
    chunk: list[T] = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) >= n:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
