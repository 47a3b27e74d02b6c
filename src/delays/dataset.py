"""
Transit delay events and the in-memory delay table.

A delay event is one observed service interruption:

    duration   delay length in minutes (numeric)
    mode       transit mode, one of a small closed set (Bus, Streetcar, Subway)
    time       time of day as "HH:MM:SS"
    day        day of week, one of the seven canonical English names

The dataset is assumed to be cleaned upstream (mode harmonisation, missing
values dropped). This module only checks that the schema holds and derives
the hour-of-day bucket used by the regression.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

MODES: Sequence[str] = ("Bus", "Streetcar", "Subway")
DAYS: Sequence[str] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)
REQUIRED_COLUMNS: Sequence[str] = ("duration", "mode", "time", "day")

# Canonical orderings used when encoding categorical columns
CANONICAL_ORDER: Dict[str, Sequence] = {
    "day": DAYS,
    "hour": tuple(range(24)),
}


def parse_hour(time_str: str) -> int:
    """
    Extract the hour bucket from an "HH:MM:SS" string.

    Raises
    ------
    ValueError
        If the string is not a valid time of day.
    """
    parts = str(time_str).split(":")
    if len(parts) != 3:
        raise ValueError(f"time must be formatted HH:MM:SS. Got {time_str!r}")
    try:
        hour, minute, second = (int(p) for p in parts)
    except ValueError:
        raise ValueError(f"time must be formatted HH:MM:SS. Got {time_str!r}") from None
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        raise ValueError(f"time out of range: {time_str!r}")
    return hour


@dataclass(frozen=True)
class DelayEvent:
    """A single observed delay."""

    duration: float
    mode: str
    time: str
    day: str

    @property
    def hour(self) -> int:
        return parse_hour(self.time)


class DelayDataset:
    """
    Immutable table of delay events.

    Wraps a pandas DataFrame holding the required columns plus a derived
    ``hour`` column. Additional columns are carried through untouched and
    may be referenced as continuous predictors.

    Attributes
    ----------
    modes : tuple of str
        Closed set of allowed transit modes.
    """

    def __init__(
        self,
        frame: pd.DataFrame,
        modes: Sequence[str] = MODES,
    ) -> None:
        """
        Validate and wrap a cleaned delay table.

        Parameters
        ----------
        frame : pd.DataFrame
            Table with at least the columns duration, mode, time, day.
        modes : sequence of str
            Allowed transit modes. Default: Bus, Streetcar, Subway.

        Raises
        ------
        ValueError
            If a required column is missing or a value violates the schema.
        """
        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Delay table is missing required columns: {missing}")

        self.modes = tuple(modes)
        df = frame.reset_index(drop=True).copy()

        if len(df) and not pd.api.types.is_numeric_dtype(df["duration"]):
            raise ValueError(
                f"duration must be numeric. Got dtype {df['duration'].dtype}"
            )
        df["duration"] = df["duration"].astype(np.float64)

        df["mode"] = df["mode"].astype(str)
        unknown_modes = sorted(set(df["mode"]) - set(self.modes))
        if unknown_modes:
            raise ValueError(
                f"Unknown transit modes {unknown_modes}; allowed: {list(self.modes)}"
            )

        df["day"] = df["day"].astype(str)
        unknown_days = sorted(set(df["day"]) - set(DAYS))
        if unknown_days:
            raise ValueError(f"Unknown day names {unknown_days}")

        df["time"] = df["time"].astype(str)
        df["hour"] = np.array([parse_hour(t) for t in df["time"]], dtype=np.int64)

        self._frame = df

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_events(
        cls,
        events: Iterable[DelayEvent],
        modes: Sequence[str] = MODES,
    ) -> "DelayDataset":
        """Build a dataset from DelayEvent records."""
        rows = [
            {"duration": e.duration, "mode": e.mode, "time": e.time, "day": e.day}
            for e in events
        ]
        frame = pd.DataFrame(rows, columns=list(REQUIRED_COLUMNS))
        return cls(frame, modes=modes)

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        columns: Optional[Mapping[str, str]] = None,
        modes: Sequence[str] = MODES,
    ) -> "DelayDataset":
        """
        Build a dataset from an arbitrary DataFrame.

        Parameters
        ----------
        frame : pd.DataFrame
            Source table.
        columns : mapping, optional
            Renaming from source column names to the canonical names,
            e.g. ``{"Min Delay": "duration", "Day": "day"}``.
        modes : sequence of str
            Allowed transit modes.
        """
        if columns:
            frame = frame.rename(columns=dict(columns))
        return cls(frame, modes=modes)

    @classmethod
    def from_parquet(
        cls,
        path: Union[str, Path],
        columns: Optional[Mapping[str, str]] = None,
        modes: Sequence[str] = MODES,
    ) -> "DelayDataset":
        """Load a cleaned delay table from a parquet file."""
        path = Path(path)
        frame = pd.read_parquet(path, engine="pyarrow")
        logger.info(f"Loaded {len(frame)} delay rows from {path}")
        return cls.from_frame(frame, columns=columns, modes=modes)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[DelayEvent]:
        for row in self._frame[list(REQUIRED_COLUMNS)].itertuples(index=False):
            yield DelayEvent(
                duration=float(row.duration),
                mode=row.mode,
                time=row.time,
                day=row.day,
            )

    @property
    def columns(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def schema(self) -> Dict[str, str]:
        """Column name -> "numeric" or "categorical"."""
        schema = {}
        for name in self._frame.columns:
            if name in ("mode", "day", "time"):
                kind = "categorical"
            elif pd.api.types.is_numeric_dtype(self._frame[name]):
                kind = "numeric"
            else:
                kind = "categorical"
            schema[name] = kind
        return schema

    def column(self, name: str) -> NDArray:
        """Return a read-only copy of one column as a numpy array."""
        if name not in self._frame.columns:
            raise KeyError(f"Unknown column {name!r}")
        values = self._frame[name].to_numpy(copy=True)
        values.setflags(write=False)
        return values

    def levels(self, name: str) -> List:
        """
        Distinct values of a categorical column in canonical order.

        Days follow the week, hours follow the clock, anything else is sorted.
        """
        observed = set(self._frame[name].tolist())
        if name in CANONICAL_ORDER:
            return [v for v in CANONICAL_ORDER[name] if v in observed]
        return sorted(observed)

    def to_frame(self) -> pd.DataFrame:
        """Return a copy of the underlying table."""
        return self._frame.copy()

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def subsample(self, fraction: float, random_seed: int) -> "DelayDataset":
        """
        Draw a reproducible uniform subsample without replacement.

        Parameters
        ----------
        fraction : float
            Share of rows to keep, in (0, 1].
        random_seed : int
            Seed for the row selection. Required so reports are reproducible.
        """
        if not (0.0 < fraction <= 1.0):
            raise ValueError(f"fraction must be in (0, 1]. Got {fraction}")
        if random_seed is None:
            raise ValueError("random_seed is required for subsampling")

        n_keep = max(1, int(round(fraction * len(self)))) if len(self) else 0
        rng = np.random.default_rng(random_seed)
        keep = np.sort(rng.choice(len(self), size=n_keep, replace=False))
        logger.info(
            f"Subsampled {n_keep}/{len(self)} rows (fraction={fraction}, seed={random_seed})"
        )
        return DelayDataset(self._frame.iloc[keep].drop(columns="hour"), modes=self.modes)

    def __repr__(self) -> str:
        return f"DelayDataset(n_rows={len(self)}, modes={list(self.modes)})"
