"""Error taxonomy.

Three failure classes are distinguished:

- ``ConfigError``: invalid options or an event set that does not partition the
  allele-frequency space. Raised before any input file is opened.
- ``InputError``: unreadable inputs, malformed candidate records, or too few
  reads to estimate alignment properties.
- ``ModelError``: a numerical invariant was violated while scoring a candidate.
"""

from __future__ import annotations

from typing import Optional


class PairCallError(Exception):
    """Base class for errors raised by paircall."""

    def __init__(self, message: str, *, suggestion: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message


class ConfigError(PairCallError, ValueError):
    """Raised for invalid configuration values or inconsistent option combinations."""


class InputError(PairCallError):
    """Raised for unusable input data."""


class ModelError(PairCallError, ArithmeticError):
    """Raised when a probabilistic invariant does not hold for a candidate."""
