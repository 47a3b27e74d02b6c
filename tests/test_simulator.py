"""
Tests for the synthetic delay scenario simulator.

Progressive sizing (no sampling):
- Small: initialization and validation
- Medium: generated tables and their schema
- Large: sample means approach the generating means
"""

import numpy as np
import pandas as pd
import pytest

from conftest import MODE_MEANS
from delays.dataset import DAYS, DelayDataset
from simulation.simulator import DelayScenarioSimulator


# ============================================================================
# SMALL TESTS: Initialization and validation
# ============================================================================


class TestInit:
    """Tests for simulator construction."""

    def test_attributes(self, simulator) -> None:
        """Test stored scenario settings."""
        assert simulator.modes == ("Bus", "Streetcar", "Subway")
        assert simulator.noise_sd == 3.0
        assert len(simulator.hours) == 24
        assert "DelayScenarioSimulator" in repr(simulator)

    def test_empty_modes_raise_error(self) -> None:
        """Test that at least one mode is required."""
        with pytest.raises(ValueError, match="mode_means"):
            DelayScenarioSimulator({})

    def test_negative_noise_raises_error(self) -> None:
        """Test that noise_sd must be non-negative."""
        with pytest.raises(ValueError, match="noise_sd"):
            DelayScenarioSimulator(MODE_MEANS, noise_sd=-1.0)

    @pytest.mark.parametrize("hours", [(), (0, 24), (-1, 5)])
    def test_invalid_hours_raise_error(self, hours) -> None:
        """Test that hours must lie in 0..23."""
        with pytest.raises(ValueError, match="hours"):
            DelayScenarioSimulator(MODE_MEANS, hours=hours)

    def test_unknown_day_effect_raises_error(self) -> None:
        """Test that day effects must use canonical day names."""
        with pytest.raises(ValueError, match="Unknown day names"):
            DelayScenarioSimulator(MODE_MEANS, day_effects={"Funday": 1.0})

    def test_mode_offsets(self, simulator) -> None:
        """Test true treatment-coded mode effects."""
        assert simulator.mode_offsets() == {"Streetcar": 4.0, "Subway": -3.0}
        assert simulator.mode_offsets("Subway") == {"Bus": 3.0, "Streetcar": 7.0}

    def test_expected_delay(self) -> None:
        """Test the noise-free mean for one combination."""
        sim = DelayScenarioSimulator(
            MODE_MEANS, hour_effects={8: 2.5}, day_effects={"Saturday": -1.0}
        )
        assert sim.expected_delay("Bus", 8, "Saturday") == 13.5
        assert sim.expected_delay("Subway", 3, "Monday") == 9.0


# ============================================================================
# MEDIUM TESTS: Generated tables
# ============================================================================


class TestGenerate:
    """Tests for generated delay tables."""

    def test_frame_layout(self, simulator) -> None:
        """Test raw frame columns and value domains."""
        frame = simulator.generate_frame(200, random_seed=1)
        assert list(frame.columns) == ["duration", "mode", "time", "day"]
        assert len(frame) == 200
        assert set(frame["mode"]) <= set(MODE_MEANS)
        assert set(frame["day"]) <= set(DAYS)
        assert frame["time"].str.match(r"^\d{2}:\d{2}:\d{2}$").all()

    def test_dataset_is_valid(self, small_dataset) -> None:
        """Test that generate() yields a validated DelayDataset."""
        assert isinstance(small_dataset, DelayDataset)
        assert len(small_dataset) == 300
        assert small_dataset.schema["duration"] == "numeric"
        assert small_dataset.levels("mode") == ["Bus", "Streetcar", "Subway"]

    def test_reproducible(self, simulator) -> None:
        """Test that one seed gives one table."""
        a = simulator.generate_frame(50, random_seed=853)
        b = simulator.generate_frame(50, random_seed=853)
        pd.testing.assert_frame_equal(a, b)

    def test_different_seeds_differ(self, simulator) -> None:
        """Test that different seeds give different tables."""
        a = simulator.generate_frame(50, random_seed=1)
        b = simulator.generate_frame(50, random_seed=2)
        assert not a["duration"].equals(b["duration"])

    def test_restricted_hours(self) -> None:
        """Test that events only fall in the allowed hours."""
        sim = DelayScenarioSimulator(MODE_MEANS, hours=(7, 8, 17))
        data = sim.generate(100, random_seed=0)
        assert set(data.levels("hour")) <= {7, 8, 17}

    def test_noise_free(self) -> None:
        """Test that zero noise reproduces the expected delays exactly."""
        sim = DelayScenarioSimulator(MODE_MEANS, noise_sd=0.0, hour_effects={8: 2.0})
        data = sim.generate(60, random_seed=4)
        for event in data:
            assert event.duration == sim.expected_delay(event.mode, event.hour, event.day)

    def test_zero_rows(self, simulator) -> None:
        """Test that an empty table can be generated."""
        assert len(simulator.generate(0, random_seed=0)) == 0

    def test_negative_rows_raise_error(self, simulator) -> None:
        """Test that n_rows must be non-negative."""
        with pytest.raises(ValueError, match="n_rows"):
            simulator.generate_frame(-1)


# ============================================================================
# LARGE TESTS: Statistical properties
# ============================================================================


class TestStatistics:
    """Tests that generated tables follow the scenario."""

    def test_mode_means_recovered(self, simulator) -> None:
        """Test per-mode sample means against generating means."""
        frame = simulator.generate_frame(30000, random_seed=11)
        means = frame.groupby("mode")["duration"].mean()
        for mode, mu in MODE_MEANS.items():
            assert abs(means[mode] - mu) < 0.15, f"{mode}: {means[mode]} vs {mu}"

    def test_noise_scale(self, simulator) -> None:
        """Test residual spread around the mode means."""
        frame = simulator.generate_frame(30000, random_seed=12)
        residuals = frame["duration"] - frame["mode"].map(MODE_MEANS)
        assert abs(np.std(residuals) - 3.0) < 0.1
