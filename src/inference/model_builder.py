"""
Bayesian model builder: PyMC linear regression for transit delay duration.

The model specification is plain data (priors and terms as frozen dataclasses)
so it can be validated against a dataset schema and serialised independently
of PyMC. ModelBuilder turns a specification plus a DelayDataset into a
treatment-coded design and a PyMC model.

Mathematical model:
    y_i ~ Normal(μ_i, σ)                                  # Delay in minutes
    μ_i = α + Σ_g β_g[level_g(i)] + Σ_c γ_c x_{c,i}        # Linear predictor
    α ~ Normal(0, 2.5)                                     # Intercept
    β_g[k] ~ Normal(0, 2.5),  β_g[reference] = 0           # Categorical effects
    γ_c ~ Normal(0, 2.5)                                   # Continuous slopes
    σ ~ Exponential(1)                                     # Residual scale

The default specification uses categorical effects for mode, hour of day
and day of week.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pymc as pm
import pytensor.tensor as pt
from numpy.typing import NDArray

from delays.dataset import DelayDataset
from inference.errors import FitFailed, InvalidSpec

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"
SIGMA = "sigma"


# ============================================================================
# Priors
# ============================================================================


@dataclass(frozen=True)
class Normal:
    """Normal prior with location ``mu`` and scale ``sigma``."""

    mu: float = 0.0
    sigma: float = 2.5

    family = "normal"
    positive_support = False

    def __post_init__(self) -> None:
        if not (math.isfinite(self.mu) and math.isfinite(self.sigma)):
            raise InvalidSpec(f"Normal prior must be finite. Got {self}")
        if self.sigma <= 0:
            raise InvalidSpec(f"Normal prior scale must be positive. Got {self.sigma}")

    def to_pymc(self, name: str, dims: Optional[str] = None):
        return pm.Normal(name, mu=self.mu, sigma=self.sigma, dims=dims)

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, "mu": self.mu, "sigma": self.sigma}


@dataclass(frozen=True)
class HalfNormal:
    """Half-normal prior with scale ``sigma``."""

    sigma: float = 1.0

    family = "halfnormal"
    positive_support = True

    def __post_init__(self) -> None:
        if not math.isfinite(self.sigma) or self.sigma <= 0:
            raise InvalidSpec(f"HalfNormal scale must be finite and positive. Got {self.sigma}")

    def to_pymc(self, name: str, dims: Optional[str] = None):
        return pm.HalfNormal(name, sigma=self.sigma, dims=dims)

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, "sigma": self.sigma}


@dataclass(frozen=True)
class Exponential:
    """Exponential prior with rate ``lam``."""

    lam: float = 1.0

    family = "exponential"
    positive_support = True

    def __post_init__(self) -> None:
        if not math.isfinite(self.lam) or self.lam <= 0:
            raise InvalidSpec(f"Exponential rate must be finite and positive. Got {self.lam}")

    def to_pymc(self, name: str, dims: Optional[str] = None):
        return pm.Exponential(name, lam=self.lam, dims=dims)

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, "lam": self.lam}


Prior = Union[Normal, HalfNormal, Exponential]

_PRIOR_FAMILIES = {
    "normal": Normal,
    "halfnormal": HalfNormal,
    "exponential": Exponential,
}


def prior_from_dict(data: Mapping[str, Any]) -> Prior:
    """Rebuild a prior from its ``to_dict`` form."""
    params = dict(data)
    family = params.pop("family", None)
    if family not in _PRIOR_FAMILIES:
        raise InvalidSpec(f"Unknown prior family {family!r}")
    try:
        return _PRIOR_FAMILIES[family](**params)
    except TypeError as exc:
        raise InvalidSpec(f"Malformed {family} prior: {data}") from exc


# ============================================================================
# Terms and specification
# ============================================================================


@dataclass(frozen=True)
class CategoricalTerm:
    """
    Treatment-coded categorical effect.

    One coefficient per non-reference level; the reference level is absorbed
    in the intercept. If ``reference`` is None the first level in canonical
    order is used.
    """

    column: str
    prior: Prior = field(default_factory=Normal)
    reference: Optional[Any] = None

    kind = "categorical"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "column": self.column,
            "prior": self.prior.to_dict(),
            "reference": self.reference,
        }


@dataclass(frozen=True)
class ContinuousTerm:
    """Linear slope on a numeric column."""

    column: str
    prior: Prior = field(default_factory=Normal)

    kind = "continuous"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "column": self.column, "prior": self.prior.to_dict()}


Term = Union[CategoricalTerm, ContinuousTerm]


@dataclass(frozen=True)
class ModelSpec:
    """
    Declarative normal linear model.

    Attributes
    ----------
    outcome : str
        Numeric outcome column.
    terms : tuple of Term
        Predictor terms of the linear predictor (besides the intercept).
    intercept_prior : Prior
        Prior on the intercept.
    sigma_prior : Prior
        Prior on the residual scale; must have positive support.
    """

    outcome: str
    terms: Tuple[Term, ...]
    intercept_prior: Prior = field(default_factory=Normal)
    sigma_prior: Prior = field(default_factory=Exponential)

    def __post_init__(self) -> None:
        object.__setattr__(self, "terms", tuple(self.terms))

        if not self.sigma_prior.positive_support:
            raise InvalidSpec(
                f"Residual scale prior must have positive support. Got {self.sigma_prior}"
            )

        columns = [t.column for t in self.terms]
        duplicates = sorted({c for c in columns if columns.count(c) > 1})
        if duplicates:
            raise InvalidSpec(f"Columns used by more than one term: {duplicates}")
        if self.outcome in columns:
            raise InvalidSpec(f"Outcome {self.outcome!r} cannot also be a predictor")
        reserved = {INTERCEPT, SIGMA}
        clashes = sorted(reserved.intersection(columns))
        if clashes:
            raise InvalidSpec(f"Reserved parameter names used as columns: {clashes}")

    @property
    def columns(self) -> List[str]:
        """Every column the model reads, outcome first."""
        return [self.outcome] + [t.column for t in self.terms]

    def validate(self, schema: Mapping[str, str]) -> None:
        """
        Check the specification against a dataset schema.

        Parameters
        ----------
        schema : mapping
            Column name -> "numeric" or "categorical".

        Raises
        ------
        InvalidSpec
            If a referenced column is absent, the outcome is not numeric, or a
            continuous term refers to a non-numeric column.
        """
        missing = [c for c in self.columns if c not in schema]
        if missing:
            raise InvalidSpec(f"Columns not in dataset schema: {missing}")
        if schema[self.outcome] != "numeric":
            raise InvalidSpec(
                f"Outcome {self.outcome!r} must be numeric. Got {schema[self.outcome]}"
            )
        for term in self.terms:
            if isinstance(term, ContinuousTerm) and schema[term.column] != "numeric":
                raise InvalidSpec(f"Continuous term {term.column!r} must be numeric")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "terms": [t.to_dict() for t in self.terms],
            "intercept_prior": self.intercept_prior.to_dict(),
            "sigma_prior": self.sigma_prior.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelSpec":
        terms: List[Term] = []
        for item in data["terms"]:
            prior = prior_from_dict(item["prior"])
            if item["kind"] == "categorical":
                terms.append(CategoricalTerm(item["column"], prior, item.get("reference")))
            elif item["kind"] == "continuous":
                terms.append(ContinuousTerm(item["column"], prior))
            else:
                raise InvalidSpec(f"Unknown term kind {item['kind']!r}")
        return cls(
            outcome=data["outcome"],
            terms=tuple(terms),
            intercept_prior=prior_from_dict(data["intercept_prior"]),
            sigma_prior=prior_from_dict(data["sigma_prior"]),
        )


def default_delay_spec(
    schema: Mapping[str, str],
    prior_scale: float = 2.5,
    sigma_rate: float = 1.0,
) -> ModelSpec:
    """
    Delay duration regressed on mode, hour of day and day of week.

    Parameters
    ----------
    schema : mapping
        Schema of the dataset the model will be fitted to.
    prior_scale : float
        Scale of the Normal(0, scale) prior on every coefficient group.
    sigma_rate : float
        Rate of the Exponential prior on the residual scale.

    Raises
    ------
    InvalidSpec
        If the schema lacks a referenced column.
    """
    coef_prior = Normal(0.0, prior_scale)
    spec = ModelSpec(
        outcome="duration",
        terms=(
            CategoricalTerm("mode", coef_prior),
            CategoricalTerm("hour", coef_prior),
            CategoricalTerm("day", coef_prior),
        ),
        intercept_prior=coef_prior,
        sigma_prior=Exponential(sigma_rate),
    )
    spec.validate(schema)
    return spec


def coefficient_name(column: str, level: Any) -> str:
    """Flat parameter name of one categorical level."""
    return f"{column}[{level}]"


# ============================================================================
# Design encoding and model assembly
# ============================================================================


@dataclass(frozen=True)
class DesignData:
    """
    Encoded regression inputs.

    Attributes
    ----------
    y : NDArray[np.float64]
        Outcome vector, shape (n_obs,).
    codes : dict
        Categorical column -> integer codes, 0 is the reference level.
    levels : dict
        Categorical column -> levels, reference first.
    continuous : dict
        Continuous column -> values, shape (n_obs,).
    absorbed : dict
        Categorical column with a single observed level -> that level.
        These terms add no coefficient.
    """

    y: NDArray[np.float64]
    codes: Dict[str, NDArray[np.int64]]
    levels: Dict[str, List[Any]]
    continuous: Dict[str, NDArray[np.float64]]
    absorbed: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    def coefficient_names(self) -> List[str]:
        """Names of the regression coefficients in design-matrix order."""
        names = [INTERCEPT]
        for column, levels in self.levels.items():
            names.extend(coefficient_name(column, lv) for lv in levels[1:])
        names.extend(self.continuous)
        return names

    def matrix(self) -> NDArray[np.float64]:
        """Dense treatment-coded design matrix, intercept column first."""
        blocks = [np.ones((self.n_obs, 1))]
        for column, levels in self.levels.items():
            dummies = np.zeros((self.n_obs, len(levels) - 1))
            codes = self.codes[column]
            rows = np.nonzero(codes > 0)[0]
            dummies[rows, codes[rows] - 1] = 1.0
            blocks.append(dummies)
        for values in self.continuous.values():
            blocks.append(values[:, None])
        return np.hstack(blocks)


class ModelBuilder:
    """
    Bayesian linear regression builder for delay data.

    Attributes
    ----------
    spec : ModelSpec
        Model specification.
    design_data : DesignData or None
        Encoded inputs of the last build (None until built).
    model : pm.Model or None
        PyMC model (None until built).
    """

    def __init__(self, spec: ModelSpec) -> None:
        self.spec = spec
        self.design_data: Optional[DesignData] = None
        self.model: Optional[pm.Model] = None

    def _term_levels(self, term: CategoricalTerm, dataset: DelayDataset) -> List[Any]:
        levels = dataset.levels(term.column)
        if term.reference is not None:
            if term.reference not in levels:
                raise InvalidSpec(
                    f"Reference level {term.reference!r} not observed in {term.column!r}"
                )
            levels = [term.reference] + [lv for lv in levels if lv != term.reference]
        return levels

    def design(self, dataset: DelayDataset) -> DesignData:
        """
        Encode a dataset for this specification.

        Raises
        ------
        InvalidSpec
            If the dataset schema does not satisfy the specification.
        FitFailed
            If the dataset is empty, the outcome is not finite, or the
            design matrix is rank deficient.
        """
        self.spec.validate(dataset.schema)

        if len(dataset) == 0:
            raise FitFailed("Cannot fit an empty dataset")

        y = np.asarray(dataset.column(self.spec.outcome), dtype=np.float64)
        if not np.all(np.isfinite(y)):
            raise FitFailed(f"Outcome {self.spec.outcome!r} contains non-finite values")

        codes: Dict[str, NDArray[np.int64]] = {}
        levels: Dict[str, List[Any]] = {}
        continuous: Dict[str, NDArray[np.float64]] = {}
        absorbed: Dict[str, Any] = {}

        for term in self.spec.terms:
            values = dataset.column(term.column)
            if isinstance(term, CategoricalTerm):
                term_levels = self._term_levels(term, dataset)
                if len(term_levels) < 2:
                    logger.warning(
                        f"Term {term.column!r} has a single observed level "
                        f"{term_levels}; it is absorbed by the intercept"
                    )
                    absorbed[term.column] = _plain(term_levels[0])
                    continue
                lookup = {lv: i for i, lv in enumerate(term_levels)}
                codes[term.column] = np.array([lookup[v] for v in values], dtype=np.int64)
                levels[term.column] = [_plain(lv) for lv in term_levels]
            else:
                x = np.asarray(values, dtype=np.float64)
                if not np.all(np.isfinite(x)):
                    raise FitFailed(f"Column {term.column!r} contains non-finite values")
                continuous[term.column] = x

        design = DesignData(
            y=y, codes=codes, levels=levels, continuous=continuous, absorbed=absorbed
        )

        X = design.matrix()
        rank = np.linalg.matrix_rank(X)
        if rank < X.shape[1]:
            raise FitFailed(
                f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns); "
                f"coefficients are not identifiable"
            )
        return design

    def build(self, dataset: DelayDataset) -> pm.Model:
        """
        Build the PyMC model with the dataset as observed data.

        Returns
        -------
        model : pm.Model
            PyMC model ready for inference.
        """
        design = self.design(dataset)
        coords = {
            f"{column}_level": [str(lv) for lv in lvls[1:]]
            for column, lvls in design.levels.items()
        }

        with pm.Model(coords=coords) as model:
            intercept = self.spec.intercept_prior.to_pymc(INTERCEPT)
            mu = intercept

            for column, column_codes in design.codes.items():
                term = self._term(column)
                idx = pm.Data(f"{column}_idx", column_codes)
                beta = term.prior.to_pymc(column, dims=f"{column}_level")
                # Reference level contributes zero
                effect = pt.concatenate([pt.zeros(1), beta])
                mu = mu + effect[idx]

            for column, values in design.continuous.items():
                term = self._term(column)
                x = pm.Data(f"{column}_data", values)
                slope = term.prior.to_pymc(column)
                mu = mu + slope * x

            sigma = self.spec.sigma_prior.to_pymc(SIGMA)
            pm.Normal(self.spec.outcome, mu=mu, sigma=sigma, observed=design.y)

        self.design_data = design
        self.model = model
        logger.info(
            f"Built model with {len(design.coefficient_names())} coefficients "
            f"on {design.n_obs} observations"
        )
        return model

    def _term(self, column: str) -> Term:
        for term in self.spec.terms:
            if term.column == column:
                return term
        raise KeyError(column)

    def get_model(self) -> pm.Model:
        """
        Get the built model.

        Raises
        ------
        RuntimeError
            If model has not been built yet.
        """
        if self.model is None:
            raise RuntimeError("Model has not been built. Call .build() first.")
        return self.model

    def __repr__(self) -> str:
        return f"ModelBuilder(outcome={self.spec.outcome!r}, terms={len(self.spec.terms)})"


def _plain(value: Any) -> Any:
    """Convert numpy scalars to built-in types so levels serialise to JSON."""
    if isinstance(value, np.generic):
        return value.item()
    return value
