"""
NUTS sampling for the delay regression.

Orchestrates sampling through a pluggable backend (PyMC NUTS by default),
seeds every fit from one recorded global seed, enforces an optional
wall-clock budget, records divergences, and bundles everything into an
immutable FittedModel that can be written to disk (arviz netCDF) and
reloaded without re-fitting.

Chains never share state: the backend derives an independent random stream
per chain from the global seed, and draws are only combined after every
chain has finished.
"""

import json
import logging
import time
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import arviz as az
import numpy as np
import pymc as pm
from numpy.typing import NDArray

from delays.dataset import DelayDataset
from inference.errors import FitFailed, FitTimeout, SamplerDivergence
from inference.model_builder import (
    SIGMA,
    DesignData,
    ModelBuilder,
    ModelSpec,
    coefficient_name,
)

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = 2


# ============================================================================
# Posterior draws and fitted model
# ============================================================================


class PosteriorDraws:
    """
    Posterior samples per scalar parameter.

    Every parameter is stored as a read-only array of shape (n_chains, n_draws)
    in original draw order: row c holds chain c, column t the t-th
    post-warm-up iteration.
    """

    def __init__(self, draws: Mapping[str, NDArray[np.float64]]) -> None:
        """
        Parameters
        ----------
        draws : mapping
            Parameter name -> array of shape (n_chains, n_draws).

        Raises
        ------
        ValueError
            If there are no parameters, an array is not 2-D, or the
            parameters disagree on chain or draw count.
        """
        if not draws:
            raise ValueError("PosteriorDraws needs at least one parameter")

        arrays: Dict[str, NDArray[np.float64]] = {}
        shape = None
        for name, values in draws.items():
            arr = np.array(values, dtype=np.float64)
            if arr.ndim != 2:
                raise ValueError(
                    f"Draws for {name!r} must have shape (n_chains, n_draws). Got {arr.shape}"
                )
            if shape is None:
                shape = arr.shape
            elif arr.shape != shape:
                raise ValueError(
                    f"All parameters must share (n_chains, n_draws)={shape}. "
                    f"{name!r} has {arr.shape}"
                )
            arr.setflags(write=False)
            arrays[name] = arr

        self._draws = arrays
        self.n_chains, self.n_draws = shape

    @property
    def parameters(self) -> List[str]:
        return list(self._draws)

    def __getitem__(self, name: str) -> NDArray[np.float64]:
        return self._draws[name]

    def __contains__(self, name: object) -> bool:
        return name in self._draws

    def __len__(self) -> int:
        return len(self._draws)

    def chain(self, name: str, chain: int) -> NDArray[np.float64]:
        """Draws of one parameter from one chain, in iteration order."""
        return self._draws[name][chain]

    def pooled(self, name: str) -> NDArray[np.float64]:
        """All chains of one parameter concatenated, shape (n_chains * n_draws,)."""
        return self._draws[name].reshape(-1)

    def means(self) -> Dict[str, float]:
        """Posterior mean of every parameter over pooled chains."""
        return {name: float(np.mean(arr)) for name, arr in self._draws.items()}

    def to_dict(self) -> Dict[str, NDArray[np.float64]]:
        return dict(self._draws)

    def __repr__(self) -> str:
        return (
            f"PosteriorDraws(parameters={len(self)}, chains={self.n_chains}, "
            f"draws={self.n_draws})"
        )


@dataclass(frozen=True)
class FittedModel:
    """
    Result of one fit: specification, posterior draws and fit metadata.

    ``raw`` holds the backend's native result (an arviz InferenceData for the
    PyMC backend). After ``load`` it holds the InferenceData read from the
    artifact.
    """

    spec: ModelSpec
    draws: PosteriorDraws
    metadata: Dict[str, Any]
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def levels(self) -> Mapping[str, Tuple[Any, ...]]:
        """
        Categorical column -> fitted levels, reference first.

        Terms with a single observed level were absorbed by the intercept
        and appear with that one level.
        """
        levels = {column: tuple(lvls) for column, lvls in self.metadata.get("levels", {}).items()}
        for column, level in self.metadata.get("absorbed_levels", {}).items():
            levels.setdefault(column, (level,))
        return MappingProxyType(levels)

    @property
    def divergences(self) -> int:
        return int(self.metadata.get("divergences", 0))

    def to_inference_data(self) -> az.InferenceData:
        """
        Posterior draws as arviz InferenceData.

        All parameters share one ``draws`` variable over a ``parameter``
        dimension; spec and metadata are JSON strings in the posterior
        attributes. Divergence flags are kept when the backend result has
        sample statistics.
        """
        attrs = {
            "artifact_version": ARTIFACT_VERSION,
            "spec": json.dumps(self.spec.to_dict()),
            "metadata": json.dumps(self.metadata),
        }
        names = self.draws.parameters
        sample_stats = None
        if isinstance(self.raw, az.InferenceData) and "sample_stats" in self.raw.groups():
            sample_stats = {"diverging": np.asarray(self.raw.sample_stats["diverging"].values)}

        idata = az.from_dict(
            posterior={"draws": np.stack([self.draws[name] for name in names], axis=-1)},
            sample_stats=sample_stats,
            coords={"parameter": names},
            dims={"draws": ["parameter"]},
        )
        idata.posterior.attrs.update(attrs)
        return idata

    def save(self, path: Union[str, Path]) -> Path:
        """
        Write the fit to a single netCDF artifact.

        The artifact is fully serialised before the file is opened, so a
        failing save leaves any existing file untouched.
        """
        path = Path(path)
        idata = self.to_inference_data()
        path.parent.mkdir(parents=True, exist_ok=True)
        idata.to_netcdf(str(path))
        logger.info(f"Saved fitted model to {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "FittedModel":
        """Read an artifact written by ``save``."""
        path = Path(path)
        idata = az.from_netcdf(str(path))
        attrs = idata.posterior.attrs
        if attrs.get("artifact_version") != ARTIFACT_VERSION:
            raise ValueError(
                f"Unsupported artifact version {attrs.get('artifact_version')} in {path}"
            )

        values = np.asarray(idata.posterior["draws"].values, dtype=np.float64)
        names = [str(name) for name in idata.posterior["parameter"].values]
        draws = {name: values[:, :, i] for i, name in enumerate(names)}
        logger.info(f"Loaded fitted model from {path}")
        return cls(
            spec=ModelSpec.from_dict(json.loads(attrs["spec"])),
            draws=PosteriorDraws(draws),
            metadata=json.loads(attrs["metadata"]),
            raw=idata,
        )

    def __repr__(self) -> str:
        return (
            f"FittedModel(outcome={self.spec.outcome!r}, n_obs={self.metadata.get('n_obs')}, "
            f"{self.draws!r})"
        )


# ============================================================================
# Backend port
# ============================================================================


@dataclass(frozen=True)
class SamplerConfig:
    """Sampling settings handed to a backend."""

    chains: int = 4
    draws: int = 1000
    tune: int = 1000
    cores: Optional[int] = None
    random_seed: Optional[int] = None
    target_accept: float = 0.9
    max_treedepth: int = 10
    progressbar: bool = False
    deadline: Optional[float] = None  # time.monotonic() value


@dataclass
class BackendResult:
    """Native draws per model variable plus sampler statistics."""

    variables: Dict[str, NDArray[np.float64]]
    divergences: int
    raw: Any = None


class SamplerBackend(ABC):
    """Abstract interface for a probabilistic-programming sampler."""

    name = "abstract"

    @abstractmethod
    def sample(self, builder: ModelBuilder, dataset: DelayDataset, config: SamplerConfig) -> BackendResult:
        """
        Draw posterior samples.

        Must return, for every model variable, an array whose first two axes
        are (chain, draw), reproducible from ``config.random_seed``. Must
        raise FitTimeout once ``config.deadline`` has passed.
        """
        ...


class PyMCBackend(SamplerBackend):
    """NUTS through ``pm.sample``."""

    name = "pymc"

    def sample(self, builder: ModelBuilder, dataset: DelayDataset, config: SamplerConfig) -> BackendResult:
        model = builder.build(dataset)

        callback = None
        if config.deadline is not None:
            deadline = config.deadline

            def callback(trace, draw):
                if time.monotonic() > deadline:
                    raise FitTimeout("Wall-clock budget exceeded during sampling")

        try:
            with model:
                step = pm.NUTS(
                    target_accept=config.target_accept,
                    max_treedepth=config.max_treedepth,
                )
                idata = pm.sample(
                    draws=config.draws,
                    tune=config.tune,
                    chains=config.chains,
                    cores=config.cores,
                    random_seed=config.random_seed,
                    progressbar=config.progressbar,
                    step=step,
                    callback=callback,
                    discard_tuned_samples=True,
                    compute_convergence_checks=False,
                    return_inferencedata=True,
                )
        except pm.exceptions.SamplingError as exc:
            raise FitFailed(f"Sampler could not start: {exc}") from exc

        variables = {
            rv.name: np.asarray(idata.posterior[rv.name].values, dtype=np.float64)
            for rv in model.free_RVs
        }
        divergences = int(np.asarray(idata.sample_stats["diverging"].values).sum())
        return BackendResult(variables=variables, divergences=divergences, raw=idata)


# ============================================================================
# Orchestration
# ============================================================================


def flatten_variables(variables: Mapping[str, NDArray[np.float64]], design: DesignData) -> Dict[str, NDArray[np.float64]]:
    """
    Split vector-valued model variables into named scalar parameters.

    ``mode`` with shape (chain, draw, k) becomes ``mode[<level>]`` for each
    non-reference level, in level order.
    """
    flat: Dict[str, NDArray[np.float64]] = {}
    for name, values in variables.items():
        if name in design.levels:
            for j, level in enumerate(design.levels[name][1:]):
                flat[coefficient_name(name, level)] = values[:, :, j]
        else:
            flat[name] = values
    order = design.coefficient_names() + [SIGMA]
    return {name: flat[name] for name in order if name in flat}


class NUTSSampler:
    """
    NUTS sampler for the delay regression.

    Validates settings, seeds chains, runs the backend under an optional
    wall-clock budget and packages the result as a FittedModel.
    """

    def __init__(
        self,
        target_accept: float = 0.9,
        max_treedepth: int = 10,
        backend: Optional[SamplerBackend] = None,
    ) -> None:
        """
        Parameters
        ----------
        target_accept : float
            NUTS acceptance rate target (0.5-0.99 exclusive). Default 0.9.
        max_treedepth : int
            Maximum tree depth for NUTS. Default 10.
        backend : SamplerBackend, optional
            Sampling backend. Default PyMCBackend.
        """
        if not (0.5 < target_accept < 0.99):
            raise ValueError(f"target_accept must be in (0.5, 0.99). Got {target_accept}")
        if max_treedepth < 5:
            raise ValueError(f"max_treedepth must be >= 5. Got {max_treedepth}")

        self.target_accept = target_accept
        self.max_treedepth = max_treedepth
        self.backend = backend or PyMCBackend()

    def fit(
        self,
        dataset: DelayDataset,
        spec: ModelSpec,
        chains: int = 4,
        draws: int = 1000,
        tune: int = 1000,
        cores: Optional[int] = None,
        random_seed: Optional[int] = None,
        timeout: Optional[float] = None,
        progressbar: bool = False,
    ) -> FittedModel:
        """
        Fit the model and return the posterior bundle.

        Parameters
        ----------
        dataset : DelayDataset
            Training data.
        spec : ModelSpec
            Model specification.
        chains : int
            Number of independent chains. Default 4.
        draws : int
            Post-warm-up draws per chain. Default 1000.
        tune : int
            Warm-up iterations per chain, discarded. Default 1000.
        cores : int, optional
            Parallel processes; 1 runs chains sequentially. Default lets the
            backend decide.
        random_seed : int, optional
            Global seed; the backend derives an independent stream per chain
            from it. A seed is drawn and recorded if omitted.
        timeout : float, optional
            Wall-clock budget in seconds for the whole fit.
        progressbar : bool
            Show the backend's progress bar. Default False.

        Returns
        -------
        fitted : FittedModel

        Raises
        ------
        InvalidSpec
            If the specification does not match the dataset schema.
        FitFailed
            If the data is empty or the design is not identifiable.
        FitTimeout
            If the wall-clock budget is exceeded.
        """
        if chains < 1 or draws < 1 or tune < 0:
            raise ValueError(
                f"Need chains >= 1, draws >= 1, tune >= 0. "
                f"Got chains={chains}, draws={draws}, tune={tune}"
            )
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive. Got {timeout}")

        builder = ModelBuilder(spec)
        # Fail fast on spec and data problems before any sampling starts
        design = builder.design(dataset)

        if random_seed is None:
            random_seed = np.random.SeedSequence().generate_state(1)[0]
        # Metadata is serialised to JSON, numpy integers are not
        random_seed = int(random_seed)

        start_time = time.monotonic()
        config = SamplerConfig(
            chains=chains,
            draws=draws,
            tune=tune,
            cores=cores,
            random_seed=random_seed,
            target_accept=self.target_accept,
            max_treedepth=self.max_treedepth,
            progressbar=progressbar,
            deadline=start_time + timeout if timeout is not None else None,
        )

        logger.info(
            f"Sampling {chains} chains x {draws} draws (tune={tune}) "
            f"on {design.n_obs} rows with seed {random_seed}"
        )
        result = self.backend.sample(builder, dataset, config)
        sampling_time = time.monotonic() - start_time

        if timeout is not None and sampling_time > timeout:
            raise FitTimeout(
                f"Fit took {sampling_time:.1f}s, exceeding the {timeout:.1f}s budget"
            )

        posterior = PosteriorDraws(flatten_variables(result.variables, design))
        if posterior.n_chains != chains or posterior.n_draws != draws:
            raise FitFailed(
                f"Backend returned {posterior.n_chains} chains x {posterior.n_draws} draws, "
                f"expected {chains} x {draws}"
            )

        if result.divergences > 0:
            message = (
                f"{result.divergences} divergent transitions in {chains * draws} draws; "
                f"treat the posterior with caution"
            )
            logger.warning(message)
            warnings.warn(message, SamplerDivergence, stacklevel=2)

        metadata = {
            "n_obs": design.n_obs,
            "chains": chains,
            "draws": draws,
            "tune": tune,
            "random_seed": random_seed,
            "target_accept": self.target_accept,
            "max_treedepth": self.max_treedepth,
            "divergences": result.divergences,
            "sampling_time": sampling_time,
            "levels": design.levels,
            "absorbed_levels": design.absorbed,
            "backend": self.backend.name,
        }
        logger.info(f"Sampling finished in {sampling_time:.1f}s")
        return FittedModel(spec=spec, draws=posterior, metadata=metadata, raw=result.raw)

    def __repr__(self) -> str:
        return (
            f"NUTSSampler(target_accept={self.target_accept}, "
            f"max_treedepth={self.max_treedepth}, backend={self.backend.name!r})"
        )


def fit(
    dataset: DelayDataset,
    spec: ModelSpec,
    chains: int = 4,
    draws: int = 1000,
    **kwargs: Any,
) -> FittedModel:
    """Fit with a default NUTSSampler. Keyword arguments go to ``NUTSSampler.fit``."""
    return NUTSSampler().fit(dataset, spec, chains=chains, draws=draws, **kwargs)
