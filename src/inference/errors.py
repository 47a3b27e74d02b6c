"""
Error taxonomy for specification, fitting and sampling quality.

Fatal conditions are exceptions and block any result from being returned:

- InvalidSpec: the model references unknown columns or has improper priors
- FitFailed: the data cannot be fitted (empty, non-finite, unidentifiable)
- FitTimeout: the wall-clock budget of a fit was exceeded

Sampling-quality problems are warnings. The fit and its summaries are still
returned, annotated with the problem:

- SamplerDivergence: divergent transitions were recorded during sampling
- NonConvergence: at least one parameter has R-hat above the threshold
"""


class ModelError(Exception):
    """Base class for fatal modeling errors."""


class InvalidSpec(ModelError, ValueError):
    """Model specification is inconsistent with the data schema or its priors."""


class FitFailed(ModelError, RuntimeError):
    """Input data is malformed or the design cannot be identified."""


class FitTimeout(FitFailed):
    """The fit exceeded its wall-clock budget. No partial result exists."""


class SamplingQualityWarning(UserWarning):
    """Base class for non-fatal sampling quality issues."""


class SamplerDivergence(SamplingQualityWarning):
    """Divergent transitions were recorded during sampling."""


class NonConvergence(SamplingQualityWarning):
    """R-hat exceeds the convergence threshold for one or more parameters."""
