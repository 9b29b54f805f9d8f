"""
Tests for the true summary statistics.
"""

import pytest
import numpy as np

from nphsim import (
    ConvergenceError, MultiStateModel, NumericalWarning, PiecewiseHazardModel,
    real_statistics, gahr, ahr, ahr_oc, median_survival,
)
from nphsim.true_statistics import auto_t_max


class TestAverageHazardRatios:
    """Average hazard ratios under proportional and non-proportional hazards."""

    @pytest.fixture
    def ph_models(self):
        return (PiecewiseHazardModel.exponential(np.log(2) / 36),
                PiecewiseHazardModel.exponential(np.log(2) / 24))

    def test_proportional_hazards(self, ph_models):
        model_trt, model_ctrl = ph_models
        assert gahr(model_trt, model_ctrl, 20) == pytest.approx(24 / 36, abs=1e-3)
        assert ahr(model_trt, model_ctrl, 20) == pytest.approx(24 / 36, rel=1e-8)
        assert ahr_oc(model_trt, model_ctrl, 20) == pytest.approx(24 / 36, rel=1e-8)

    def test_no_effect(self):
        model = PiecewiseHazardModel.exponential(0.01)
        assert gahr(model, model, 100) == pytest.approx(1.0)
        assert ahr(model, model, 100) == pytest.approx(1.0)
        assert ahr_oc(model, model, 100) == pytest.approx(1.0)

    def test_delayed_effect_between_one_and_hr(self):
        model_ctrl = PiecewiseHazardModel.exponential(0.02)
        model_trt = PiecewiseHazardModel.delayed_effect(30, 0.02, 0.01)
        for stat in (gahr, ahr, ahr_oc):
            value = stat(model_trt, model_ctrl, 100)
            assert 0.5 < value < 1.0
        # longer follow up moves closer to the hazard ratio after the delay
        assert gahr(model_trt, model_ctrl, 300) < gahr(model_trt, model_ctrl, 100)

    def test_gahr_closed_form(self):
        # log HR is 0 before the delay and log(0.5) after it
        model_ctrl = PiecewiseHazardModel.exponential(0.02)
        model_trt = PiecewiseHazardModel.delayed_effect(30, 0.02, 0.01)
        cutoff = 100
        f_trt = model_trt.survival(30) - model_trt.survival(cutoff)
        f_ctrl = model_ctrl.survival(30) - model_ctrl.survival(cutoff)
        pooled = 1 - 0.5 * (model_trt.survival(cutoff) + model_ctrl.survival(cutoff))
        expected = np.exp(np.log(0.5) * 0.5 * (f_trt + f_ctrl) / pooled)
        assert gahr(model_trt, model_ctrl, cutoff) == pytest.approx(expected, rel=1e-8)


class TestRealStatistics:
    """Tests for real_statistics."""

    @pytest.fixture
    def ph_models(self):
        return (PiecewiseHazardModel.exponential(np.log(2) / 36),
                PiecewiseHazardModel.exponential(np.log(2) / 24))

    def test_columns(self, ph_models):
        result = real_statistics(*ph_models, n_trt=100, n_ctrl=100,
                                 cutoff=[20, 40], milestones={"1y": 12})
        for name in ("20", "40"):
            for stat in ("rmst_trt", "rmst_ctrl", "rmst_diff", "gAHR", "AHR", "AHRoc"):
                assert f"{stat}_{name}" in result
        for stat in ("milestone_surv_trt", "milestone_surv_ctrl", "milestone_surv_ratio"):
            assert f"{stat}_1y" in result

    def test_values(self, ph_models):
        model_trt, model_ctrl = ph_models
        result = real_statistics(model_trt, model_ctrl, n_trt=100, n_ctrl=100,
                                 cutoff=20, milestones=12)
        assert result["median_surv_trt"] == pytest.approx(36, rel=1e-8)
        assert result["median_surv_ctrl"] == pytest.approx(24, rel=1e-8)
        assert result["median_surv_diff"] == pytest.approx(12, rel=1e-6)
        assert result["gAHR_20"] == pytest.approx(0.6667, abs=1e-3)
        assert result["rmst_diff_20"] == pytest.approx(model_trt.rmst(20) - model_ctrl.rmst(20))
        assert result["milestone_surv_ratio_12"] == pytest.approx(
            model_trt.survival(12) / model_ctrl.survival(12))

    def test_default_cutoff_is_t_max(self, ph_models):
        result = real_statistics(*ph_models, n_trt=1, n_ctrl=1)
        assert "gAHR_t_max" in result
        assert auto_t_max(*ph_models) == pytest.approx(24 * np.log(10000) / np.log(2))

    def test_multistate_without_change_is_exponential(self):
        rate = 0.01
        ms = MultiStateModel.illness_death(hazard=rate, prog_rate=0.02, hazard_after_prog=rate)
        exp = PiecewiseHazardModel.exponential(rate)
        ctrl = PiecewiseHazardModel.exponential(0.02)
        a = real_statistics(ms, ctrl, 100, 100, cutoff=50)
        b = real_statistics(exp, ctrl, 100, 100, cutoff=50)
        for key in b:
            assert a[key] == pytest.approx(b[key], rel=1e-6), key

    def test_weights(self):
        model_ctrl = PiecewiseHazardModel.exponential(0.02)
        model_trt = PiecewiseHazardModel.delayed_effect(30, 0.02, 0.01)
        balanced = real_statistics(model_trt, model_ctrl, 100, 100, cutoff=100)
        treated = real_statistics(model_trt, model_ctrl, 300, 100, cutoff=100)
        assert treated["AHR_100"] != pytest.approx(balanced["AHR_100"])
        assert treated["AHRoc_100"] == pytest.approx(balanced["AHRoc_100"])

    def test_median_not_reached(self):
        cured = PiecewiseHazardModel(breakpoints=[0, 10], rates=[0.05, 0.0])
        ctrl = PiecewiseHazardModel.exponential(0.02)
        with pytest.warns(NumericalWarning, match="median_surv_trt in row 3"):
            result = real_statistics(cured, ctrl, 100, 100, cutoff=50, row=3)
        assert np.isnan(result["median_surv_trt"])
        assert np.isnan(result["median_surv_diff"])
        assert result["median_surv_ctrl"] == pytest.approx(np.log(2) / 0.02)
        assert np.isfinite(result["rmst_trt_50"])

    def test_strict(self):
        cured = PiecewiseHazardModel(breakpoints=[0, 10], rates=[0.05, 0.0])
        ctrl = PiecewiseHazardModel.exponential(0.02)
        with pytest.raises(ConvergenceError):
            real_statistics(cured, ctrl, 100, 100, cutoff=50, strict=True)

    def test_invalid_input(self, ph_models):
        with pytest.raises(ValueError, match="Invalid cutoff"):
            real_statistics(*ph_models, 100, 100, cutoff=-1)
        with pytest.raises(ValueError, match="Invalid number of patients"):
            real_statistics(*ph_models, 0, 0)

    def test_median_survival_bracket(self):
        # the median lies beyond t_max, the arm's own quantile is used
        model = PiecewiseHazardModel.exponential(0.001)
        assert median_survival(model, 10) == pytest.approx(np.log(2) / 0.001, rel=1e-8)
