"""
Bayesian inference module for transit delay regression.

This module provides the PyMC-based inference pipeline:
1. ModelSpec / ModelBuilder: declarative model and PyMC assembly
2. NUTSSampler: NUTS sampling with seeded chains and a wall-clock budget
3. FittedModel: immutable posterior bundle, persisted as one artifact
4. diagnose: trace, Rhat, ESS, divergence rate

**Usage:**
```python
from delays import DelayDataset
from inference import NUTSSampler, default_delay_spec, diagnose

data = DelayDataset.from_parquet("data/delays.parquet")
spec = default_delay_spec(data.schema)

fitted = NUTSSampler().fit(data, spec, chains=4, draws=1000, random_seed=853)
fitted.save("models/delay_model.nc")

print(diagnose(fitted).flagged)
```
"""

from inference.diagnostics import Diagnostics, DiagnosticsComputer, diagnose
from inference.errors import (
    FitFailed,
    FitTimeout,
    InvalidSpec,
    NonConvergence,
    SamplerDivergence,
)
from inference.model_builder import (
    CategoricalTerm,
    ContinuousTerm,
    Exponential,
    HalfNormal,
    ModelBuilder,
    ModelSpec,
    Normal,
    default_delay_spec,
)
from inference.sampler import (
    FittedModel,
    NUTSSampler,
    PosteriorDraws,
    PyMCBackend,
    SamplerBackend,
    fit,
)

__all__ = [
    "CategoricalTerm",
    "ContinuousTerm",
    "Diagnostics",
    "DiagnosticsComputer",
    "Exponential",
    "FitFailed",
    "FitTimeout",
    "FittedModel",
    "HalfNormal",
    "InvalidSpec",
    "ModelBuilder",
    "ModelSpec",
    "NUTSSampler",
    "NonConvergence",
    "Normal",
    "PosteriorDraws",
    "PyMCBackend",
    "SamplerBackend",
    "SamplerDivergence",
    "default_delay_spec",
    "diagnose",
    "fit",
]
