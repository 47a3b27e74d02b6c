"""
Report figures: trace plot, Rhat plot and predicted delay by hour.
"""

from visualization.plots import (
    plot_predicted_delay_by_hour,
    plot_rhat,
    plot_trace,
    save_figure,
)

__all__ = [
    "plot_predicted_delay_by_hour",
    "plot_rhat",
    "plot_trace",
    "save_figure",
]
