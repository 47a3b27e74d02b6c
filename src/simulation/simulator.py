"""
Synthetic delay scenarios with known generating effects.

Generates delay tables from a known normal linear model so that fitted
posteriors can be compared with the truth:

    duration_i = mode_mean[mode_i] + hour_effect[hour_i] + day_effect[day_i] + ε_i
    ε_i ~ Normal(0, noise_sd)

Modes, hours and days are drawn uniformly unless weights are given.
"""

from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from delays.dataset import DAYS, DelayDataset


class DelayScenarioSimulator:
    """
    Simulator of delay datasets with known per-mode mean delay.

    Attributes
    ----------
    mode_means : dict
        Mean delay in minutes per transit mode.
    noise_sd : float
        Standard deviation of the Gaussian noise.
    hour_effects : dict
        Additive effect per hour of day (missing hours contribute 0).
    day_effects : dict
        Additive effect per day of week (missing days contribute 0).
    """

    def __init__(
        self,
        mode_means: Mapping[str, float],
        noise_sd: float = 3.0,
        hour_effects: Optional[Mapping[int, float]] = None,
        day_effects: Optional[Mapping[str, float]] = None,
        hours: Sequence[int] = tuple(range(24)),
    ) -> None:
        """
        Parameters
        ----------
        mode_means : mapping
            Mean delay per mode, e.g. {"Bus": 12, "Subway": 9, "Streetcar": 16}.
        noise_sd : float
            Noise standard deviation. Default 3.0.
        hour_effects : mapping, optional
            Additive effect per hour.
        day_effects : mapping, optional
            Additive effect per day name.
        hours : sequence of int
            Hours events may fall in. Default all 24.
        """
        if not mode_means:
            raise ValueError("mode_means must name at least one mode")
        if noise_sd < 0:
            raise ValueError(f"noise_sd must be non-negative. Got {noise_sd}")
        if not hours or any(not (0 <= h < 24) for h in hours):
            raise ValueError(f"hours must be a non-empty subset of 0..23. Got {hours}")
        unknown_days = set(day_effects or {}) - set(DAYS)
        if unknown_days:
            raise ValueError(f"Unknown day names {sorted(unknown_days)}")

        self.mode_means: Dict[str, float] = dict(mode_means)
        self.noise_sd = noise_sd
        self.hour_effects: Dict[int, float] = dict(hour_effects or {})
        self.day_effects: Dict[str, float] = dict(day_effects or {})
        self.hours = tuple(hours)

    @property
    def modes(self) -> Sequence[str]:
        return tuple(sorted(self.mode_means))

    def mode_offsets(self, reference: Optional[str] = None) -> Dict[str, float]:
        """
        True mode effects relative to a reference mode.

        These are the values a treatment-coded regression should recover.
        Default reference: first mode in sorted order.
        """
        reference = reference or self.modes[0]
        base = self.mode_means[reference]
        return {m: v - base for m, v in self.mode_means.items() if m != reference}

    def expected_delay(self, mode: str, hour: int, day: str) -> float:
        """Noise-free delay for one covariate combination."""
        return (
            self.mode_means[mode]
            + self.hour_effects.get(hour, 0.0)
            + self.day_effects.get(day, 0.0)
        )

    def generate_frame(self, n_rows: int, random_seed: Optional[int] = None) -> pd.DataFrame:
        """
        Generate a raw delay table.

        Parameters
        ----------
        n_rows : int
            Number of events.
        random_seed : int, optional
            Seed for reproducibility.
        """
        if n_rows < 0:
            raise ValueError(f"n_rows must be non-negative. Got {n_rows}")

        rng = np.random.default_rng(random_seed)
        modes = rng.choice(np.array(self.modes), size=n_rows)
        hours = rng.choice(np.array(self.hours), size=n_rows)
        days = rng.choice(np.array(DAYS), size=n_rows)
        minutes = rng.integers(0, 60, size=n_rows)
        seconds = rng.integers(0, 60, size=n_rows)

        mean = np.array(
            [self.expected_delay(m, int(h), d) for m, h, d in zip(modes, hours, days)],
            dtype=np.float64,
        )
        duration = mean + rng.normal(0.0, self.noise_sd, size=n_rows)

        return pd.DataFrame(
            {
                "duration": duration,
                "mode": modes.astype(str),
                "time": [f"{h:02d}:{m:02d}:{s:02d}" for h, m, s in zip(hours, minutes, seconds)],
                "day": days.astype(str),
            }
        )

    def generate(self, n_rows: int, random_seed: Optional[int] = None) -> DelayDataset:
        """Generate a validated DelayDataset."""
        return DelayDataset(self.generate_frame(n_rows, random_seed), modes=self.modes)

    def __repr__(self) -> str:
        return (
            f"DelayScenarioSimulator(modes={list(self.modes)}, noise_sd={self.noise_sd}, "
            f"hours={len(self.hours)})"
        )
