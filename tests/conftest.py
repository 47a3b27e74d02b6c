"""
Shared fixtures: simulated delay tables and fitted models built from
synthetic draws (no sampling).
"""

import time
from typing import Dict, Optional

import numpy as np
import pytest

from delays.dataset import DelayDataset
from inference.model_builder import SIGMA, ModelBuilder, ModelSpec, default_delay_spec
from inference.sampler import (
    BackendResult,
    FittedModel,
    PosteriorDraws,
    SamplerBackend,
    SamplerConfig,
)
from simulation.simulator import DelayScenarioSimulator

MODE_MEANS = {"Bus": 12.0, "Subway": 9.0, "Streetcar": 16.0}


@pytest.fixture
def simulator() -> DelayScenarioSimulator:
    return DelayScenarioSimulator(MODE_MEANS, noise_sd=3.0)


@pytest.fixture
def small_dataset(simulator) -> DelayDataset:
    return simulator.generate(300, random_seed=853)


@pytest.fixture
def small_spec(small_dataset) -> ModelSpec:
    return default_delay_spec(small_dataset.schema)


def make_fitted(
    dataset: DelayDataset,
    spec: ModelSpec,
    coefficients: Optional[Dict[str, float]] = None,
    n_chains: int = 4,
    n_draws: int = 200,
    noise: float = 0.05,
    random_seed: int = 0,
) -> FittedModel:
    """
    FittedModel whose draws scatter tightly around given coefficient values.

    Coefficients not given default to 0 (sigma defaults to 3).
    """
    design = ModelBuilder(spec).design(dataset)
    coefficients = dict(coefficients or {})
    rng = np.random.default_rng(random_seed)

    draws = {}
    for name in design.coefficient_names() + [SIGMA]:
        center = coefficients.get(name, 3.0 if name == SIGMA else 0.0)
        draws[name] = center + noise * rng.standard_normal((n_chains, n_draws))

    metadata = {
        "n_obs": design.n_obs,
        "chains": n_chains,
        "draws": n_draws,
        "tune": 0,
        "random_seed": random_seed,
        "target_accept": 0.9,
        "max_treedepth": 10,
        "divergences": 0,
        "sampling_time": 0.0,
        "levels": design.levels,
        "absorbed_levels": design.absorbed,
        "backend": "synthetic",
    }
    return FittedModel(spec=spec, draws=PosteriorDraws(draws), metadata=metadata)


class FakeBackend(SamplerBackend):
    """
    Backend drawing independent normals per model variable.

    Records the config it was called with; optionally sleeps and reports
    divergences.
    """

    name = "fake"

    def __init__(self, divergences: int = 0, delay: float = 0.0, chains_returned: Optional[int] = None) -> None:
        self.divergences = divergences
        self.delay = delay
        self.chains_returned = chains_returned
        self.configs = []

    def sample(self, builder, dataset, config: SamplerConfig) -> BackendResult:
        self.configs.append(config)
        design = builder.design(dataset)
        if self.delay:
            time.sleep(self.delay)

        chains = self.chains_returned or config.chains
        rngs = [
            np.random.default_rng(child)
            for child in np.random.SeedSequence(config.random_seed).spawn(config.chains)
        ]
        rngs = (rngs * chains)[:chains]

        def draw(extra_shape=()):
            return np.stack(
                [rng.standard_normal((config.draws,) + extra_shape) for rng in rngs]
            )

        variables = {"Intercept": draw()}
        for column, levels in design.levels.items():
            variables[column] = draw((len(levels) - 1,))
        for column in design.continuous:
            variables[column] = draw()
        variables["sigma"] = np.abs(draw()) + 1.0
        return BackendResult(variables=variables, divergences=self.divergences)
