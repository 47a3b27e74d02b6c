"""
Convergence diagnostics for fitted delay models.

Key diagnostics:
- Trace: per-parameter draws, one sequence per chain, in draw order
- Rhat (potential scale reduction): <= 1.1 is treated as converged
- ESS (effective sample size): accounts for autocorrelation within chains
- Divergences: count and rate of divergent transitions

Rhat compares the between-chain variance of the chain means with the mean
within-chain variance. Each chain is reduced separately before pooling;
pooling all draws first would hide disagreement between chains.
"""

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
from numpy.typing import NDArray

from inference.errors import NonConvergence
from inference.sampler import FittedModel, PosteriorDraws

logger = logging.getLogger(__name__)

RHAT_THRESHOLD = 1.1


class DiagnosticsComputer:
    """
    Compute convergence diagnostics from posterior samples.

    Includes: Rhat, ESS, divergence rates.
    """

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Compute Rhat (potential scale reduction factor).

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Posterior samples from multiple chains, shape (chains, draws).

        Returns
        -------
        rhat : float
            sqrt(((N-1)/N * W + B/N) / W), with W the mean within-chain
            variance and B = N * variance of the chain means. When every
            chain is constant, 1.0 if they agree and inf otherwise.

        Raises
        ------
        ValueError
            With fewer than 2 chains or fewer than 2 draws per chain.
        """
        samples = np.asarray(posterior_samples, dtype=np.float64)
        if samples.ndim != 2:
            raise ValueError(f"Expected shape (chains, draws). Got {samples.shape}")
        n_chains, n_draws = samples.shape

        if n_chains < 2:
            raise ValueError("Need at least 2 chains for Rhat")
        if n_draws < 2:
            raise ValueError("Need at least 2 draws per chain for Rhat")

        # Between-chain variance
        chain_means = np.mean(samples, axis=1)
        B = n_draws * np.var(chain_means, ddof=1)

        # Within-chain variance
        chain_vars = np.var(samples, axis=1, ddof=1)
        W = np.mean(chain_vars)

        if W <= 0:
            return 1.0 if B <= 0 else math.inf

        var_hat = ((n_draws - 1) / n_draws) * W + (1 / n_draws) * B
        return float(np.sqrt(var_hat / W))

    @staticmethod
    def ess(
        posterior_samples: NDArray[np.float64],
        max_lag: int = 100,
        rho_cutoff: float = 0.05,
    ) -> float:
        """
        Compute effective sample size of a single chain.

        ESS = n / (2 * tau), with tau = 1/2 + sum of the autocorrelations up
        to the first lag whose autocorrelation falls below ``rho_cutoff``.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Samples from one chain, shape (draws,).
        max_lag : int
            Largest lag considered (capped at half the chain). Default 100.
        rho_cutoff : float
            Autocorrelation below which the sum stops. Default 0.05.
        """
        if max_lag < 1:
            raise ValueError(f"max_lag must be >= 1. Got {max_lag}")
        x = np.asarray(posterior_samples, dtype=np.float64)
        n = len(x)
        if n < 2:
            return float(n)

        mean = np.mean(x)
        c0 = np.var(x, ddof=1)

        if c0 < 1e-10:
            return float(n)  # No variation → ESS = n

        tau_int = 0.5
        for lag in range(1, min(n // 2, max_lag) + 1):
            acov = np.mean((x[:-lag] - mean) * (x[lag:] - mean))
            rho = acov / c0
            if rho < rho_cutoff:
                break
            tau_int += rho

        return float(max(1.0, n / (2 * tau_int)))

    @staticmethod
    def divergence_rate(divergences: int, n_chains: int, n_draws: int) -> float:
        """Fraction of post-warm-up transitions that diverged."""
        total = n_chains * n_draws
        return float(divergences / total) if total else 0.0


@dataclass(frozen=True)
class Diagnostics:
    """
    Diagnostics of one fit.

    Attributes
    ----------
    trace : dict
        Parameter -> array (chains, draws) in original draw order.
    rhat : dict
        Parameter -> Rhat (nan with a single chain).
    ess : dict
        Parameter -> effective sample size summed over chains.
    divergences : int
        Divergent transitions recorded by the sampler.
    divergence_rate : float
        Divergences per post-warm-up draw.
    threshold : float
        Rhat above this value flags a parameter.
    flagged : list of str
        Parameters with Rhat above threshold.
    """

    trace: Dict[str, NDArray[np.float64]]
    rhat: Dict[str, float]
    ess: Dict[str, float]
    divergences: int
    divergence_rate: float
    threshold: float = RHAT_THRESHOLD
    flagged: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.flagged

    def trace_lists(self) -> Dict[str, List[List[float]]]:
        """Trace as nested lists, one inner list per chain."""
        return {name: arr.tolist() for name, arr in self.trace.items()}


def trace(draws: PosteriorDraws) -> Dict[str, NDArray[np.float64]]:
    """Per-parameter draws, one row per chain, in iteration order."""
    return {name: draws[name] for name in draws.parameters}


def rhat(draws: PosteriorDraws) -> Dict[str, float]:
    """Rhat per parameter; nan for every parameter when there is one chain."""
    if draws.n_chains < 2 or draws.n_draws < 2:
        return {name: math.nan for name in draws.parameters}
    return {name: DiagnosticsComputer.rhat(draws[name]) for name in draws.parameters}


def diagnose(fitted: FittedModel, threshold: float = RHAT_THRESHOLD) -> Diagnostics:
    """
    Compute trace, Rhat, ESS and divergence diagnostics of a fit.

    Parameters with Rhat above ``threshold`` are flagged and reported with a
    NonConvergence warning; nothing is raised.
    """
    draws = fitted.draws

    rhats = rhat(draws)
    if draws.n_chains < 2:
        logger.warning("Rhat needs at least 2 chains; convergence not assessed")

    ess = {
        name: float(sum(DiagnosticsComputer.ess(draws.chain(name, c)) for c in range(draws.n_chains)))
        for name in draws.parameters
    }
    flagged = [name for name, value in rhats.items() if value > threshold]

    if flagged:
        message = (
            f"Rhat above {threshold} for {len(flagged)} parameter(s): "
            f"{', '.join(flagged)}"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergence, stacklevel=2)

    return Diagnostics(
        trace=trace(draws),
        rhat=rhats,
        ess=ess,
        divergences=fitted.divergences,
        divergence_rate=DiagnosticsComputer.divergence_rate(
            fitted.divergences, draws.n_chains, draws.n_draws
        ),
        threshold=threshold,
        flagged=flagged,
    )
