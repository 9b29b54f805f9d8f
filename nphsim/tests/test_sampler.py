"""
Tests for dataset simulation and the censoring pipeline.
"""

import pytest
import numpy as np
import pandas as pd

from nphsim import (
    MultiStateModel, PiecewiseHazardModel, generate, generate_progression_times,
    apply_recruitment, apply_random_censoring, apply_admin_censoring,
    apply_admin_censoring_events, censor,
)


class TestGenerate:
    """Tests for generate."""

    @pytest.fixture
    def condition(self):
        return {"n_trt": 30, "n_ctrl": 20}

    def test_layout(self, condition):
        data = generate(condition, PiecewiseHazardModel.exponential(0.01),
                        PiecewiseHazardModel.exponential(0.02), rng=1)
        assert list(data.columns) == ["t", "trt", "evt"]
        assert len(data) == 50
        assert (data["trt"].iloc[:30] == 1).all()
        assert (data["trt"].iloc[30:] == 0).all()
        assert data["evt"].all()

    def test_missing_column(self):
        with pytest.raises(ValueError, match="Missing required column: n_ctrl"):
            generate({"n_trt": 10}, PiecewiseHazardModel.exponential(0.01),
                     PiecewiseHazardModel.exponential(0.01))

    def test_reproducible(self, condition):
        model = PiecewiseHazardModel.exponential(0.01)
        pd.testing.assert_frame_equal(generate(condition, model, model, rng=5),
                                      generate(condition, model, model, rng=5))

    def test_discrete(self, condition):
        model = PiecewiseHazardModel.exponential(0.01)
        data = generate(condition, model, model, rng=5, discrete=True)
        np.testing.assert_array_equal(data["t"], np.ceil(data["t"]))

    def test_multistate_intercurrent_events(self, condition):
        model = MultiStateModel.illness_death(0.01, 0.02, 0.05)
        data = generate(condition, model, model, rng=2)
        assert list(data.columns) == ["t", "trt", "evt", "t_ice", "ice"]
        assert data["ice"].any()
        assert (data.loc[data["ice"], "t_ice"] < data.loc[data["ice"], "t"]).all()
        assert np.isinf(data.loc[~data["ice"], "t_ice"]).all()

    def test_rounding_ties_are_not_intercurrent_events(self, condition):
        # death follows progression within the same day for most patients
        model = MultiStateModel.illness_death(0.01, 0.05, 5.0)
        exact = generate(condition, model, model, rng=4)
        rounded = generate(condition, model, model, rng=4, discrete=True)
        tied = (exact["ice"] & (np.ceil(exact["t_ice"]) == np.ceil(exact["t"]))).to_numpy()
        assert tied.any()
        assert not rounded.loc[tied, "ice"].any()
        assert np.isinf(rounded.loc[tied, "t_ice"]).all()
        np.testing.assert_array_equal(rounded["t"], np.ceil(exact["t"]))


class TestGenerateProgressionTimes:
    """Tests for the independent draws with progression."""

    def test_progression_before_death(self):
        data = generate_progression_times(2000, 0.01, 0.02, 0.05, rng=1)
        progressed = data["ice"]
        assert progressed.any() and (~progressed).any()
        assert (data.loc[progressed, "t_ice"] < data.loc[progressed, "t"]).all()
        assert np.isinf(data.loc[~progressed, "t_ice"]).all()
        np.testing.assert_array_equal(data["t"], np.ceil(data["t"]))

    def test_tie_is_death_without_progression(self):
        n = 500
        data = generate_progression_times(n, 0.5, 0.5, 0.5, rng=7)
        # same draws in the same order
        rng = np.random.default_rng(7)
        t_evt = PiecewiseHazardModel.exponential(0.5).sample(n, rng, discrete=True)
        t_prog = PiecewiseHazardModel.exponential(0.5).sample(n, rng, discrete=True)
        tied = t_prog == t_evt
        assert tied.any()
        assert not data.loc[tied, "ice"].any()
        assert np.isinf(data.loc[tied, "t_ice"]).all()
        np.testing.assert_array_equal(data.loc[tied, "t"], t_evt[tied])

    def test_no_progression(self):
        data = generate_progression_times(100, 0.01, 0.0, 0.05, rng=1)
        assert not data["ice"].any()

    def test_progression_proportion(self):
        data = generate_progression_times(20000, 0.01, 0.02, 0.05, rng=2, discrete=False)
        assert data["ice"].mean() == pytest.approx(2 / 3, abs=0.015)


class TestCensoring:
    """Tests for the censoring pipeline."""

    @pytest.fixture
    def data(self):
        model = PiecewiseHazardModel.exponential(0.01)
        return generate({"n_trt": 100, "n_ctrl": 100}, model, model, rng=11)

    def test_recruitment(self, data):
        result = apply_recruitment(data, 180, rng=1)
        assert "rec_time" not in data.columns
        assert result["rec_time"].between(0, 180).all()
        with pytest.raises(ValueError, match="recruitment period"):
            apply_recruitment(data, -1)

    def test_no_censoring_keeps_events(self, data):
        result = apply_random_censoring(data, 0.0, rng=1)
        pd.testing.assert_frame_equal(result, data)
        result = apply_admin_censoring(apply_recruitment(result, 180, rng=1), np.inf)
        assert len(result) == len(data)
        assert result["evt"].all()
        pd.testing.assert_series_equal(result["t"], data["t"])

    def test_cured_patients_are_censored(self):
        cured = PiecewiseHazardModel(breakpoints=[0, 10], rates=[0.05, 0.0])
        data = generate({"n_trt": 100, "n_ctrl": 100}, cured, cured, rng=3)
        never = np.isinf(data["t"]).to_numpy()
        assert never.any()

        result = apply_admin_censoring(data, np.inf)
        assert not result.loc[never, "evt"].any()
        assert result.loc[~never, "evt"].all()
        assert np.isinf(result.loc[never, "t"]).all()

        result, cut = apply_admin_censoring_events(data, 1000)
        assert cut == data.loc[~never, "t"].max()
        assert result["evt"].sum() == (~never).sum()
        assert (result.loc[never, "t"] == cut).all()

    def test_random_censoring(self, data):
        result = apply_random_censoring(data, 0.01, rng=1)
        censored = ~result["evt"]
        assert censored.any()
        assert (result["t"] <= data["t"]).all()
        assert (result.loc[~censored, "t"] == data.loc[~censored, "t"]).all()

    def test_random_censoring_invalid_rate(self, data):
        with pytest.raises(ValueError, match="Invalid rate"):
            apply_random_censoring(data, -0.1)

    def test_admin_censoring(self, data):
        recruited = apply_recruitment(data, 100, rng=2)
        result = apply_admin_censoring(recruited, 150)
        assert len(result) == len(recruited)
        assert (result["t"] + result["rec_time"] <= 150 + 1e-9).all()
        assert (~result["evt"]).any()

    def test_admin_censoring_is_idempotent(self, data):
        recruited = apply_recruitment(data, 300, rng=2)
        once = apply_admin_censoring(recruited, 200)
        twice = apply_admin_censoring(once, 200)
        pd.testing.assert_frame_equal(once, twice)

    def test_non_recruited_patients(self, data):
        recruited = apply_recruitment(data, 300, rng=2)
        late = recruited["rec_time"] > 200
        dropped = apply_admin_censoring(recruited, 200)
        assert len(dropped) == (~late).sum()

        kept = apply_admin_censoring(recruited, 200, keep_non_recruited=True)
        assert len(kept) == len(recruited)
        assert (kept.loc[late.to_numpy(), "t"] == 0).all()
        assert not kept.loc[late.to_numpy(), "evt"].any()

    def test_intercurrent_event_after_censoring(self):
        data = pd.DataFrame({
            "t": [10.0, 10.0], "trt": [1, 0], "evt": [True, True],
            "t_ice": [4.0, 8.0], "ice": [True, True],
        })
        result = apply_admin_censoring(data, 6)
        assert list(result["ice"]) == [True, False]
        assert result["t_ice"].iloc[1] == np.inf

    def test_censoring_at_events(self, data):
        recruited = apply_recruitment(data, 100, rng=4)
        result, cut = apply_admin_censoring_events(recruited, 50)
        assert result["evt"].sum() == 50
        assert (result["t"] + result["rec_time"] <= cut + 1e-9).all()

    def test_censoring_at_events_too_few(self, data):
        result, cut = apply_admin_censoring_events(data, 1000)
        assert cut == data["t"].max()
        assert result["evt"].all()

    def test_pipeline(self, data):
        condition = {"recruitment": 180, "random_withdrawal": 0.001, "followup": 365}
        result = censor(data, condition, rng=3)
        assert {"t", "trt", "evt", "rec_time"} <= set(result.columns)
        assert (result["t"] + result["rec_time"] <= 365 + 1e-9).all()
        with pytest.raises(ValueError, match="Missing required column: followup"):
            censor(data, {"recruitment": 180, "random_withdrawal": 0.0})
