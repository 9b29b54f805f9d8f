"""
Tests for multi-state models.
"""

import pytest
import numpy as np
from scipy.integrate import quad

from nphsim import MultiStateModel, PiecewiseHazardModel


class TestMultiStateModel:
    """Tests for construction and occupation probabilities."""

    @pytest.fixture
    def illness_death(self):
        return MultiStateModel.illness_death(hazard=0.01, prog_rate=0.02, hazard_after_prog=0.05)

    @pytest.fixture
    def two_piece(self):
        """Illness-death model whose rates change at t = 20."""
        Q = np.array([
            [[0, 0.02, 0.01], [0, 0, 0.05], [0, 0, 0]],
            [[0, 0.04, 0.005], [0, 0, 0.1], [0, 0, 0]],
        ])
        return MultiStateModel(
            breakpoints=[0, 20],
            intensities=Q,
            initial=[1, 0, 0],
            absorbing=[False, False, True],
            states=("stable", "progressed", "dead"),
        )

    def test_diagonal_is_negative_row_sum(self, illness_death):
        Q = illness_death.intensities[0]
        np.testing.assert_allclose(Q.sum(axis=1), 0, atol=1e-15)
        assert Q[0, 0] == pytest.approx(-0.03)

    def test_inputs_are_not_frozen(self):
        Q = np.array([[0.0, 0.1], [0.0, 0.0]])
        MultiStateModel([0], Q, [1, 0], [False, True])
        Q[0, 1] = 0.2

    def test_validation(self):
        with pytest.raises(ValueError, match="non-negative"):
            MultiStateModel([0], [[0, -0.1], [0, 0]], [1, 0], [False, True])
        with pytest.raises(ValueError, match="Absorbing"):
            MultiStateModel([0], [[0, 0.1], [0.1, 0]], [1, 0], [False, True])
        with pytest.raises(ValueError, match="probability vector"):
            MultiStateModel([0], [[0, 0.1], [0, 0]], [0.5, 0], [False, True])
        with pytest.raises(ValueError, match="breakpoints"):
            MultiStateModel([0, 1], [[0, 0.1], [0, 0]], [1, 0], [False, True])

    def test_occupancy_sums_to_one(self, illness_death, two_piece):
        t = np.linspace(0, 500, 101)
        for model in (illness_death, two_piece):
            occ = model.occupancy(t)
            assert occ.shape == (101, 3)
            np.testing.assert_allclose(occ.sum(axis=1), 1, atol=1e-12)
            assert np.all(occ >= 0)

    def test_occupancy_closed_form(self, illness_death):
        t = 30.0
        occ = illness_death.occupancy(t)
        assert occ[0] == pytest.approx(np.exp(-0.03 * t))
        # stable -> progressed -> still progressed
        expected = 0.02 / (0.05 - 0.03) * (np.exp(-0.03 * t) - np.exp(-0.05 * t))
        assert occ[1] == pytest.approx(expected)

    def test_occupancy_is_continuous_at_breakpoints(self, two_piece):
        before, after = two_piece.occupancy([20 - 1e-9, 20])
        np.testing.assert_allclose(before, after, atol=1e-9)

    def test_cumulative_absorption_monotone(self, two_piece):
        t = np.linspace(0, 2000, 201)
        absorbed = two_piece.cumulative_absorption(t)
        assert absorbed[0] == 0
        assert np.all(np.diff(absorbed) >= -1e-15)
        assert absorbed[-1] == pytest.approx(1, abs=1e-8)

    def test_state_names(self, illness_death):
        assert illness_death.cumulative_absorption(10, ["stable"]) == pytest.approx(np.exp(-0.3))
        with pytest.raises(ValueError, match="Unknown state"):
            illness_death.state_mask(["cured"])

    def test_occupancy_needs_finite_time(self, illness_death):
        with pytest.raises(ValueError, match="finite"):
            illness_death.occupancy(np.inf)


class TestStateEventModel:
    """Tests for the survival view of a multi-state model."""

    @pytest.fixture
    def model(self):
        return MultiStateModel.illness_death(hazard=0.01, prog_rate=0.02, hazard_after_prog=0.05)

    def test_single_transition_is_exponential(self):
        model = MultiStateModel([0], [[0, 0.03], [0, 0]], [1, 0], [False, True]).event_process()
        exponential = PiecewiseHazardModel.exponential(0.03)
        t = np.array([0, 5, 50, 200])
        np.testing.assert_allclose(model.survival(t), exponential.survival(t), rtol=1e-12)
        np.testing.assert_allclose(model.hazard(t), 0.03, rtol=1e-10)
        assert model.median() == pytest.approx(np.log(2) / 0.03, rel=1e-10)

    def test_density_is_hazard_times_survival(self, model):
        event = model.event_process()
        h, s, f = event.evaluate(np.linspace(0, 300, 31))
        np.testing.assert_allclose(f, h * s, rtol=1e-12)

    def test_density_integrates_to_cdf(self, model):
        event = model.event_process()
        value, _ = quad(event.density, 0, 100)
        assert value == pytest.approx(1 - event.survival(100), rel=1e-8)

    def test_pfs_is_leaving_stable(self, model):
        pfs = model.event_process(["progressed", "dead"])
        t = np.array([1.0, 10.0, 100.0])
        np.testing.assert_allclose(pfs.survival(t), np.exp(-0.03 * t), rtol=1e-12)
        np.testing.assert_allclose(pfs.hazard(t), 0.03, rtol=1e-10)

    def test_open_state_set_rejected(self, model):
        with pytest.raises(ValueError, match="transitions out"):
            model.event_process(["progressed"])

    def test_quantile_inverts_survival(self, model):
        event = model.event_process()
        for p in [0.1, 0.5, 0.9, 0.9999]:
            assert event.survival(event.quantile(p)) == pytest.approx(1 - p, abs=1e-6)
        assert event.quantile(0) == 0.0

    def test_unreachable_quantile_is_infinite(self):
        # half of the patients move to a state without further events
        Q = [[0, 0.1, 0.1], [0, 0, 0], [0, 0, 0]]
        model = MultiStateModel([0], Q, [1, 0, 0], [False, False, True])
        event = model.event_process()
        assert event.quantile(0.4) == pytest.approx(-np.log(0.2) / 0.2, rel=1e-8)
        assert np.isinf(event.quantile(0.6))
        assert event.limit_survival() == pytest.approx(0.5)

    def test_survival_plateau(self):
        # no deaths after progression: a third die before progressing
        event = MultiStateModel.illness_death(0.01, 0.02, 0.0).event_process()
        assert event.limit_survival() == pytest.approx(2 / 3)
        assert np.isinf(event.quantile(0.9))
        np.testing.assert_array_equal(np.isinf(event.quantile([0.2, 0.5])), [False, True])
        assert event.survival(event.quantile(0.2)) == pytest.approx(0.8, abs=1e-8)

    def test_limit_survival_after_breakpoint(self, model):
        assert model.event_process().limit_survival() == pytest.approx(0, abs=1e-12)
        # everybody alive at t = 10 is cured
        Q = np.array([
            [[0, 0.02, 0.01], [0, 0, 0.05], [0, 0, 0]],
            [[0, 0, 0], [0, 0, 0], [0, 0, 0]],
        ])
        cured = MultiStateModel([0, 10], Q, [1, 0, 0], [False, False, True]).event_process()
        assert cured.limit_survival() == pytest.approx(cured.survival(10), rel=1e-12)
        assert np.isinf(cured.quantile(0.5))

    def test_rmst_matches_closed_form(self):
        event = MultiStateModel([0], [[0, 0.03], [0, 0]], [1, 0], [False, True]).event_process()
        assert event.rmst(40) == pytest.approx(PiecewiseHazardModel.exponential(0.03).rmst(40), rel=1e-10)


class TestTransitionTimeSample:
    """Tests for path simulation."""

    def test_paths_end_absorbed(self):
        model = MultiStateModel.illness_death(0.01, 0.02, 0.05)
        paths = model.transition_time_sample(500, rng=1)
        assert list(paths.columns) == ["t", "state", "t_stable", "t_progressed", "t_dead"]
        assert np.all(paths["state"] == 2)
        np.testing.assert_array_equal(paths["t"], paths["t_dead"])
        progressed = np.isfinite(paths["t_progressed"])
        assert np.all(paths.loc[progressed, "t_progressed"] < paths.loc[progressed, "t"])

    def test_distribution_matches_survival(self):
        Q = np.array([
            [[0, 0.02, 0.01], [0, 0, 0.05], [0, 0, 0]],
            [[0, 0.04, 0.005], [0, 0, 0.1], [0, 0, 0]],
        ])
        model = MultiStateModel([0, 20], Q, [1, 0, 0], [False, False, True])
        event = model.event_process()
        times = event.sample(20000, rng=np.random.default_rng(7))
        median = event.median()
        assert np.mean(times <= median) == pytest.approx(0.5, abs=0.015)

    def test_never_absorbed(self):
        Q = [[0, 0.1, 0.1], [0, 0, 0], [0, 0, 0]]
        model = MultiStateModel([0], Q, [1, 0, 0], [False, False, True])
        paths = model.transition_time_sample(200, rng=3)
        stuck = paths["state"] == 1
        assert stuck.any()
        assert np.all(np.isinf(paths.loc[stuck, "t"]))
