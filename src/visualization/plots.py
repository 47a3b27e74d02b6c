"""
Figures for the delay model report.

Trace plot, Rhat plot and predicted delay by hour. Each function returns the
matplotlib Figure; ``save_figure`` writes it for the document renderer.
"""

import logging
import math
from pathlib import Path
from typing import Dict, Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from pipeline.config import FIGURES_DIR, VIZ_CONFIG  # noqa: E402

logger = logging.getLogger(__name__)


def setup_figure(nrows: int = 1, ncols: int = 1, figsize: tuple = None, dpi: int = None):
    """Create a figure with the report's default size and resolution."""
    if figsize is None:
        figsize = VIZ_CONFIG["figure_size"]
    if dpi is None:
        dpi = VIZ_CONFIG["dpi"]
    with plt.style.context(VIZ_CONFIG["style"]):
        fig, axes = plt.subplots(nrows, ncols, figsize=figsize, dpi=dpi, squeeze=False)
    return fig, axes


def save_figure(fig, filename: str, output_dir: Path = None) -> Path:
    """Save a figure and close it."""
    if output_dir is None:
        output_dir = FIGURES_DIR
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    filepath = output_dir / filename
    fig.savefig(filepath, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    logger.info(f"Saved figure {filepath}")
    return filepath


def plot_trace(
    trace: Dict[str, np.ndarray],
    parameters: Optional[Sequence[str]] = None,
    max_parameters: int = 12,
):
    """
    Trace plot: draws against iteration, one line per chain.

    Parameters
    ----------
    trace : dict
        Parameter -> array (chains, draws), as in ``Diagnostics.trace``.
    parameters : sequence of str, optional
        Parameters to show. Default: the first ``max_parameters``.
    """
    names = list(parameters) if parameters is not None else list(trace)[:max_parameters]
    if not names:
        raise ValueError("No parameters to plot")

    ncols = 2 if len(names) > 1 else 1
    nrows = math.ceil(len(names) / ncols)
    fig, axes = setup_figure(nrows, ncols, figsize=(6 * ncols, 2.2 * nrows))

    for ax, name in zip(axes.flat, names):
        for chain, values in enumerate(np.asarray(trace[name])):
            ax.plot(values, linewidth=0.6, alpha=0.8, label=f"chain {chain}")
        ax.set_title(name, fontsize=10)
        ax.set_xlabel("Iteration")

    for ax in list(axes.flat)[len(names):]:
        ax.set_visible(False)

    axes.flat[0].legend(fontsize=7, loc="upper right")
    fig.suptitle("Trace plot", fontweight="bold")
    fig.tight_layout()
    return fig


def plot_rhat(rhat: Dict[str, float], threshold: float = 1.1):
    """Rhat per parameter with the convergence threshold marked."""
    names = list(rhat)
    values = np.array([rhat[n] for n in names], dtype=np.float64)

    fig, axes = setup_figure(figsize=(8, max(3.0, 0.25 * len(names))))
    ax = axes[0, 0]
    colors = ["firebrick" if v > threshold else "steelblue" for v in values]
    ax.scatter(values, np.arange(len(names)), c=colors, s=18)
    ax.axvline(1.0, color="gray", linestyle="--", linewidth=0.8)
    ax.axvline(threshold, color="firebrick", linestyle="--", linewidth=0.8,
               label=f"threshold {threshold}")
    ax.set_yticks(np.arange(len(names)))
    ax.set_yticklabels(names, fontsize=7)
    ax.set_xlabel("R-hat")
    ax.set_title("Convergence (R-hat)", fontweight="bold")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return fig


def plot_predicted_delay_by_hour(table: pd.DataFrame):
    """
    Line chart of predicted delay by hour, one line per mode.

    Parameters
    ----------
    table : pd.DataFrame
        Columns mode, hour, predicted_delay (``predicted_delay_by_hour``).
    """
    fig, axes = setup_figure()
    ax = axes[0, 0]
    for mode, group in table.groupby("mode", sort=True):
        group = group.sort_values("hour")
        ax.plot(group["hour"], group["predicted_delay"], marker="o", markersize=3, label=mode)
    ax.set_xlabel("Hour of day")
    ax.set_ylabel("Predicted delay (minutes)")
    ax.set_xticks(range(0, 24, 2))
    ax.set_title("Predicted average delay by hour", fontweight="bold")
    ax.legend(title="Mode")
    fig.tight_layout()
    return fig
