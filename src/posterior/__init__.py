"""
Posterior summaries and predictions for fitted delay models.

- summarize: mean, sd, median, credible interval and Rhat per parameter
- predict: posterior-mean predicted delay for covariate rows
- goodness_of_fit: in-sample R² and RMSE
- predicted_delay_by_hour: prediction table per mode and hour of day

**Usage:**
```python
from inference import FittedModel
from posterior import summarize, predicted_delay_by_hour

fitted = FittedModel.load("models/delay_model.nc")
print(summarize(fitted))
print(predicted_delay_by_hour(fitted, modes=["Bus", "Subway"]))
```
"""

from posterior.summary import (
    GoodnessOfFit,
    fit_statistics,
    goodness_of_fit,
    linear_predictor,
    predict,
    predicted_delay_by_hour,
    summarize,
)

__all__ = [
    "GoodnessOfFit",
    "fit_statistics",
    "goodness_of_fit",
    "linear_predictor",
    "predict",
    "predicted_delay_by_hour",
    "summarize",
]
