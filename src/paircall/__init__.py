"""paircall: Bayesian variant calling from a pair of aligned samples.

Posterior probabilities of mutually exclusive allele-frequency events
(germline, somatic, absent) are computed per candidate and can be filtered
by Bayesian FDR control or posterior odds. Most users should use the CLI:

    paircall call tumor-normal --tumor ... --normal ... --candidates ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
