"""
Tests for posterior summaries, predictions and goodness of fit.

Fitted models here are built from synthetic draws around known
coefficients, so no sampling is needed.
"""

import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose

from conftest import MODE_MEANS, make_fitted
from delays.dataset import DelayDataset
from inference.model_builder import CategoricalTerm, ContinuousTerm, ModelSpec, default_delay_spec
from inference.sampler import FittedModel, PosteriorDraws
from posterior.summary import (
    fit_statistics,
    goodness_of_fit,
    linear_predictor,
    predict,
    predicted_delay_by_hour,
    summarize,
)
from simulation.simulator import DelayScenarioSimulator

COEFFICIENTS = {
    "Intercept": 12.0,
    "mode[Streetcar]": 4.0,
    "mode[Subway]": -3.0,
    "day[Saturday]": 1.5,
    "hour[8]": 2.0,
    "sigma": 3.0,
}


@pytest.fixture
def fitted(small_dataset, small_spec):
    return make_fitted(small_dataset, small_spec, COEFFICIENTS)


class TestSummarize:
    """Tests for per-parameter summaries."""

    def test_columns_and_index(self, fitted) -> None:
        """Test summary layout."""
        summary = summarize(fitted)
        assert list(summary.columns) == [
            "mean", "sd", "median", "ci_lower", "ci_upper", "r_hat", "flagged",
        ]
        assert list(summary.index) == fitted.draws.parameters
        assert summary.index[0] == "Intercept"
        assert summary.index[-1] == "sigma"

    def test_values(self, fitted) -> None:
        """Test mean, interval ordering and Rhat on well-mixed draws."""
        summary = summarize(fitted)
        assert_allclose(summary.loc["Intercept", "mean"], 12.0, atol=0.01)
        assert_allclose(summary.loc["mode[Subway]", "mean"], -3.0, atol=0.01)
        assert_allclose(summary.loc["sigma", "sd"], 0.05, rtol=0.1)
        assert (summary["ci_lower"] < summary["median"]).all()
        assert (summary["median"] < summary["ci_upper"]).all()
        assert not summary["flagged"].any()

    def test_interval_matches_pooled_quantiles(self, fitted) -> None:
        """Test that intervals come from all chains concatenated."""
        summary = summarize(fitted, ci=0.9)
        pooled = fitted.draws.pooled("mode[Streetcar]")
        assert_allclose(summary.loc["mode[Streetcar]", "ci_lower"], np.quantile(pooled, 0.05), rtol=1e-9)
        assert_allclose(summary.loc["mode[Streetcar]", "ci_upper"], np.quantile(pooled, 0.95), rtol=1e-9)

    def test_deterministic(self, fitted) -> None:
        """Test that two calls give bit-identical tables."""
        first = summarize(fitted)
        second = summarize(fitted)
        pd.testing.assert_frame_equal(first, second, check_exact=True)

    def test_invalid_ci_raises_error(self, fitted) -> None:
        """Test credible-interval mass bounds."""
        with pytest.raises(ValueError, match="ci"):
            summarize(fitted, ci=1.0)

    def test_non_converged_parameter_flagged(self, small_dataset, small_spec) -> None:
        """Test that summaries carry the Rhat flag instead of hiding it."""
        fitted = make_fitted(small_dataset, small_spec, COEFFICIENTS)
        draws = fitted.draws.to_dict()
        draws["mode[Subway]"] = np.stack([np.full(200, v) + np.linspace(0, 0.1, 200) for v in range(4)])
        stuck = FittedModel(
            spec=fitted.spec,
            draws=PosteriorDraws(draws),
            metadata=fitted.metadata,
        )
        summary = summarize(stuck)
        assert summary.loc["mode[Subway]", "flagged"]
        assert summary["flagged"].sum() == 1


class TestPredict:
    """Tests for posterior-mean predictions."""

    def test_matches_hand_computation(self, fitted, small_dataset) -> None:
        """Test prediction for a training row against the summarized coefficients."""
        summary = summarize(fitted)
        event = next(iter(small_dataset))
        row = {"mode": event.mode, "hour": event.hour, "day": event.day}

        expected = summary.loc["Intercept", "mean"]
        for column, level in row.items():
            name = f"{column}[{level}]"
            if name in summary.index:
                expected += summary.loc[name, "mean"]

        assert_allclose(predict(fitted, [row]), [expected], rtol=1e-12)

    def test_known_combinations(self, fitted) -> None:
        """Test reference and non-reference levels."""
        rows = [
            {"mode": "Bus", "hour": 0, "day": "Monday"},
            {"mode": "Subway", "hour": 0, "day": "Monday"},
            {"mode": "Streetcar", "hour": 8, "day": "Saturday"},
        ]
        assert_allclose(predict(fitted, rows), [12.0, 9.0, 19.5], atol=0.02)

    def test_hour_from_time_string(self, fitted) -> None:
        """Test that rows may give a time instead of an hour."""
        by_hour = predict(fitted, [{"mode": "Bus", "hour": 8, "day": "Monday"}])
        by_time = predict(fitted, [{"mode": "Bus", "time": "08:42:00", "day": "Monday"}])
        assert_allclose(by_hour, by_time)

    def test_dataframe_and_dataset_inputs(self, fitted, small_dataset) -> None:
        """Test DataFrame and DelayDataset inputs agree."""
        frame = small_dataset.to_frame()[["mode", "hour", "day"]]
        assert_allclose(predict(fitted, frame), predict(fitted, small_dataset))
        assert predict(fitted, small_dataset).shape == (len(small_dataset),)

    def test_unknown_level_raises_error(self, fitted) -> None:
        """Test that unseen levels are rejected."""
        with pytest.raises(ValueError, match="not seen in training"):
            predict(fitted, [{"mode": "Ferry", "hour": 8, "day": "Monday"}])

    def test_missing_column_raises_error(self, fitted) -> None:
        """Test that rows must carry every predictor."""
        with pytest.raises(KeyError, match="day"):
            predict(fitted, [{"mode": "Bus", "hour": 8}])

    def test_continuous_term(self, small_dataset) -> None:
        """Test slope contribution of a continuous term."""
        frame = small_dataset.to_frame().drop(columns="hour")
        frame["load"] = np.linspace(0.0, 1.0, len(frame))
        data = DelayDataset(frame)
        spec = ModelSpec("duration", (CategoricalTerm("mode"), ContinuousTerm("load")))
        fitted = make_fitted(data, spec, {"Intercept": 10.0, "load": 2.0, "mode[Subway]": -1.0})

        rows = [{"mode": "Subway", "load": 0.5}, {"mode": "Bus", "load": 2.0}]
        assert_allclose(predict(fitted, rows), [10.0 - 1.0 + 1.0, 14.0], atol=0.02)

    def test_linear_predictor_at_given_coefficients(self, fitted) -> None:
        """Test evaluation at arbitrary coefficient values."""
        coefficients = {name: 0.0 for name in fitted.draws.parameters}
        coefficients["Intercept"] = 1.0
        coefficients["mode[Subway]"] = 2.0
        values = linear_predictor(fitted, [{"mode": "Subway", "hour": 3, "day": "Friday"}], coefficients)
        assert_allclose(values, [3.0])


class TestGoodnessOfFit:
    """Tests for in-sample R² and RMSE."""

    def test_exact_predictions(self) -> None:
        """Test R² = 1 and RMSE = 0 for a perfect fit."""
        y = np.array([3.0, 7.0, 11.0, 2.5])
        gof = fit_statistics(y, y.copy())
        assert gof.r2 == 1.0
        assert gof.rmse == 0.0
        assert gof.n_obs == 4

    def test_mean_prediction_gives_zero(self) -> None:
        """Test R² = 0 when predicting the mean."""
        y = np.array([1.0, 2.0, 3.0, 6.0])
        gof = fit_statistics(y, np.full(4, y.mean()))
        assert_allclose(gof.r2, 0.0, atol=1e-12)
        assert_allclose(gof.rmse, np.std(y))

    def test_r2_can_be_negative(self) -> None:
        """Test that R² is bounded above by 1 but not below."""
        y = np.array([1.0, 2.0, 3.0])
        gof = fit_statistics(y, np.array([10.0, -10.0, 10.0]))
        assert gof.r2 < 0

    def test_constant_outcome(self) -> None:
        """Test the zero-variance outcome edge case."""
        y = np.full(5, 4.0)
        assert fit_statistics(y, y.copy()).r2 == 1.0
        assert fit_statistics(y, y + 1.0).r2 == -np.inf

    def test_shape_mismatch_raises_error(self) -> None:
        """Test mismatched inputs."""
        with pytest.raises(ValueError, match="Shape mismatch"):
            fit_statistics(np.ones(3), np.ones(4))

    def test_on_training_data(self, fitted, small_dataset) -> None:
        """Test in-sample statistics against a direct computation."""
        gof = goodness_of_fit(fitted, small_dataset)
        y = small_dataset.column("duration")
        y_hat = predict(fitted, small_dataset)
        assert gof.r2 <= 1.0
        assert_allclose(gof.rmse, np.sqrt(np.mean((y - y_hat) ** 2)))
        assert_allclose(gof.r2, 1 - np.sum((y - y_hat) ** 2) / np.sum((y - y.mean()) ** 2))
        assert gof.n_obs == len(small_dataset)

    def test_to_frame(self) -> None:
        """Test the report table form."""
        table = fit_statistics(np.array([1.0, 2.0]), np.array([1.0, 2.0])).to_frame()
        assert list(table["metric"]) == ["R2", "RMSE", "n_obs"]


class TestPredictedDelayByHour:
    """Tests for the mode x hour prediction table."""

    def test_layout(self, fitted) -> None:
        """Test one row per mode and hour."""
        table = predicted_delay_by_hour(fitted)
        modes = fitted.levels["mode"]
        hours = fitted.levels["hour"]
        assert list(table.columns) == ["mode", "hour", "predicted_delay"]
        assert len(table) == len(modes) * len(hours)

    def test_averages_over_days(self, fitted) -> None:
        """Test that day effects are averaged uniformly."""
        table = predicted_delay_by_hour(fitted, modes=["Bus"], hours=[0])
        n_days = len(fitted.levels["day"])
        expected = 12.0 + 1.5 / n_days
        assert_allclose(table["predicted_delay"].iloc[0], expected, atol=0.02)

    def test_hour_effect_visible(self, fitted) -> None:
        """Test that the hour-8 effect shifts every mode equally."""
        table = predicted_delay_by_hour(fitted, hours=[0, 8]).set_index(["mode", "hour"])
        for mode in fitted.levels["mode"]:
            shift = table.loc[(mode, 8), "predicted_delay"] - table.loc[(mode, 0), "predicted_delay"]
            assert_allclose(shift, 2.0, atol=0.03)

    def test_requires_mode_and_hour_terms(self, small_dataset) -> None:
        """Test that a model without an hour term is rejected."""
        spec = ModelSpec("duration", (CategoricalTerm("mode"), CategoricalTerm("day")))
        fitted = make_fitted(small_dataset, spec)
        with pytest.raises(ValueError, match="hour"):
            predicted_delay_by_hour(fitted)

    def test_single_observed_hour(self) -> None:
        """Test a table fitted on one hour: one row per mode at that hour."""
        data = DelayScenarioSimulator(MODE_MEANS, hours=(8,)).generate(300, random_seed=21)
        fitted = make_fitted(data, default_delay_spec(data.schema), {"Intercept": 12.0})
        assert fitted.levels["hour"] == (8,)

        table = predicted_delay_by_hour(fitted)
        assert len(table) == 3
        assert set(table["hour"]) == {8}
        assert set(table["mode"]) == set(MODE_MEANS)
        bus = table.set_index("mode").loc["Bus", "predicted_delay"]
        assert_allclose(bus, 12.0, atol=0.02)

    def test_single_observed_hour_rejects_other_hours(self) -> None:
        """Test that an hour outside the one fitted level is refused."""
        data = DelayScenarioSimulator(MODE_MEANS, hours=(8,)).generate(300, random_seed=21)
        fitted = make_fitted(data, default_delay_spec(data.schema))
        with pytest.raises(ValueError, match="not seen in training"):
            predict(fitted, [{"mode": "Bus", "hour": 9, "day": "Monday"}])
