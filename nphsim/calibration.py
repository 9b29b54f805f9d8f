"""
Calibration of rate parameters from interpretable design quantities.

Each function takes a design table and returns a copy with the solved
parameters added, one row per input row in the same order. The rates are
found by bracketed root finding with an extendable interval. A parameter for
which no bracket can be found is set to NaN with a NumericalWarning naming
the row, or raises a ConvergenceError naming the row with strict=True.
"""

from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import norm

from .design import map_rows
from .multistate import MultiStateModel
from .piecewise import PiecewiseHazardModel
from .utils import ConvergenceError, require_columns, uniroot, warn_numerical

EPS = np.finfo(float).eps


def hr_required_schoenfeld(
    n_events: float,
    alpha: float = 0.025,
    beta: float = 0.2,
    p: float = 0.5,
) -> float:
    """
    Hazard ratio detectable with the Schoenfeld formula.

    Parameters
    ----------
    n_events : float
        Number of events at the analysis
    alpha : float
        One-sided significance level
    beta : float
        Type II error, 1 - power
    p : float
        Proportion of patients in the control arm

    Returns
    -------
    float
        Hazard ratio (< 1 for benefit) giving power 1 - beta
    """
    if n_events <= 0:
        raise ValueError("n_events must be positive")
    if not 0 < p < 1:
        raise ValueError("p must be in (0, 1)")
    z_alpha = norm.ppf(1 - alpha)
    z_beta = norm.ppf(1 - beta)
    return float(np.exp(-(z_alpha + z_beta) / np.sqrt(p * (1 - p) * n_events)))


def progression_prop(hazard: float, prog_rate: float, horizon: float) -> float:
    """
    Proportion of patients progressing before death by `horizon` when
    progression (rate prog_rate) competes with death without progression
    (rate hazard).
    """
    model = MultiStateModel.illness_death_tracked(hazard, prog_rate, 0.0)
    return float(model.cumulative_absorption(horizon, ["progressed", "dead_after_progression"]))


def _progression_horizon(condition) -> float:
    if condition["hazard_ctrl"] <= 0 or condition["hazard_trt"] <= 0:
        raise ValueError("hazard_ctrl and hazard_trt must be positive")
    # 1 - 1/1000 quantile of control or treatment survival, whichever is later
    return max(np.log(1000) / condition["hazard_ctrl"], np.log(1000) / condition["hazard_trt"])


def _solve_progression_rate(hazard: float, prop: float, horizon: float, what: str) -> float:
    if not 0 <= prop < 1:
        raise ValueError(f"Invalid {what}: {prop}, must be in [0, 1)")
    if prop == 0:
        return 0.0
    # infinite horizon solution as starting bracket
    guess = hazard * prop / (1 - prop)
    return uniroot(
        lambda r: progression_prop(hazard, r, horizon) - prop,
        0.0, 2 * guess,
        extend="upX", tol=EPS, what=what,
    )


def _solved(result: dict, column: str, solve, row, strict: bool) -> None:
    try:
        result[column] = solve()
    except ConvergenceError as e:
        if strict:
            raise
        warn_numerical(column, row, e)
        result[column] = np.nan


def _progression_rate_row(condition, row, strict):
    horizon = _progression_horizon(condition)
    result = dict(condition)
    for arm in ("trt", "ctrl"):
        column = f"prog_rate_{arm}"
        _solved(result, column, lambda: _solve_progression_rate(
            condition[f"hazard_{arm}"], condition[f"prog_prop_{arm}"], horizon, column), row, strict)
    return result


def progression_rate_from_progression_prop(
    design: pd.DataFrame,
    executor=None,
    strict: bool = False,
) -> pd.DataFrame:
    """
    Calculate progression rates from the proportion of patients who progress.

    The proportion is taken at the horizon t_max, the later of the
    1 - 1/1000 quantiles of the control and treatment hazards. A proportion
    of 0 gives a rate of 0.

    Needs the columns hazard_ctrl, hazard_trt, prog_prop_ctrl and
    prog_prop_trt; adds prog_rate_trt and prog_rate_ctrl. Rates that cannot
    be solved are NaN unless strict is set.
    """
    require_columns(design, ["hazard_ctrl", "hazard_trt", "prog_prop_ctrl", "prog_prop_trt"])
    return map_rows(design, _progression_rate_row, executor=executor, strict=strict)


def _censoring_rate(
    censoring_prop: float,
    cumhaz_trt: float,
    cumhaz_ctrl: float,
    horizon: float,
    w_trt: float,
) -> float:
    # competing risk balance of withdrawal and events at the horizon
    if not 0 <= censoring_prop < 1:
        raise ValueError(f"Invalid censoring_prop: {censoring_prop}, must be in [0, 1)")
    if censoring_prop == 0:
        return 0.0
    w_ctrl = 1 - w_trt

    def target(r):
        cumhaz_cens = r * horizon
        prob_cen_trt = cumhaz_cens / (cumhaz_cens + cumhaz_trt)
        prob_cen_ctrl = cumhaz_cens / (cumhaz_cens + cumhaz_ctrl)
        return w_trt * prob_cen_trt + w_ctrl * prob_cen_ctrl - censoring_prop

    return uniroot(target, 0.0, 1e-6, extend="upX", tol=EPS, what="random_withdrawal")


def _censoring_rate_progression_row(condition, row, strict):
    horizon = _progression_horizon(condition)
    w_trt = condition["n_trt"] / (condition["n_trt"] + condition["n_ctrl"])

    def cumhaz(arm):
        model = MultiStateModel.illness_death(
            condition[f"hazard_{arm}"], condition[f"prog_rate_{arm}"], condition["hazard_after_prog"])
        return float(model.event_process().cumulative_hazard(horizon))

    result = dict(condition)
    if condition["censoring_prop"] == 0:
        result["random_withdrawal"] = 0.0
        return result
    _solved(result, "random_withdrawal", lambda: _censoring_rate(
        condition["censoring_prop"], cumhaz("trt"), cumhaz("ctrl"), horizon, w_trt), row, strict)
    return result


def cen_rate_from_cen_prop_progression(
    design: pd.DataFrame,
    executor=None,
    strict: bool = False,
) -> pd.DataFrame:
    """
    Calculate the rate of random withdrawal from the censoring proportion.

    censoring_prop is the proportion of patients censored by random
    withdrawal before an event, without administrative censoring. A
    proportion of 0 gives a rate of 0.

    Needs the columns censoring_prop, n_trt, n_ctrl, hazard_ctrl, hazard_trt,
    prog_rate_ctrl, prog_rate_trt and hazard_after_prog; adds
    random_withdrawal.
    """
    require_columns(design, [
        "censoring_prop", "n_trt", "n_ctrl", "hazard_ctrl", "hazard_trt",
        "prog_rate_ctrl", "prog_rate_trt", "hazard_after_prog",
    ])
    return map_rows(design, _censoring_rate_progression_row, executor=executor, strict=strict)


def _censoring_rate_delayed_row(condition, row, strict):
    result = dict(condition)
    if condition["censoring_prop"] == 0:
        result["random_withdrawal"] = 0.0
        return result

    model_trt = PiecewiseHazardModel.delayed_effect(
        condition["delay"], condition["hazard_ctrl"], condition["hazard_trt"])
    model_ctrl = PiecewiseHazardModel.exponential(condition["hazard_ctrl"])
    horizon = max(model_trt.quantile(1 - 1 / 1000), model_ctrl.quantile(1 - 1 / 1000))
    if not np.isfinite(horizon):
        raise ValueError("hazard_ctrl and hazard_trt must be positive")
    w_trt = condition["n_trt"] / (condition["n_trt"] + condition["n_ctrl"])

    _solved(result, "random_withdrawal", lambda: _censoring_rate(
        condition["censoring_prop"],
        model_trt.cumulative_hazard(horizon),
        model_ctrl.cumulative_hazard(horizon),
        horizon, w_trt,
    ), row, strict)
    return result


def cen_rate_from_cen_prop_delayed_effect(
    design: pd.DataFrame,
    executor=None,
    strict: bool = False,
) -> pd.DataFrame:
    """
    Calculate the rate of random withdrawal from the censoring proportion
    for delayed effect scenarios.

    Needs the columns censoring_prop, n_trt, n_ctrl, delay, hazard_ctrl and
    hazard_trt; adds random_withdrawal.
    """
    require_columns(design, ["censoring_prop", "n_trt", "n_ctrl", "delay", "hazard_ctrl", "hazard_trt"])
    return map_rows(design, _censoring_rate_delayed_row, executor=executor, strict=strict)


def _hazard_trt_row(condition, row, target_power_ph, final_events, target_alpha, strict):
    if final_events is None:
        if "final_events" not in condition:
            raise ValueError("final_events not given and not present in condition")
        final_events = condition["final_events"]
    if target_power_ph is None:
        if "effect_size_ph" not in condition:
            raise ValueError("target_power_ph not given and effect_size_ph not present in design")
        target_power_ph = condition["effect_size_ph"]

    result = dict(condition)
    if target_power_ph == 0 and condition["prog_rate_ctrl"] == condition["prog_rate_trt"]:
        result["hazard_trt"] = condition["hazard_ctrl"]
        return result
    if not 0 < target_power_ph < 1:
        raise ValueError(f"Invalid target_power_ph: {target_power_ph}, must be in (0, 1)")

    ph_hr = hr_required_schoenfeld(
        final_events,
        alpha=target_alpha,
        beta=1 - target_power_ph,
        p=condition["n_ctrl"] / (condition["n_ctrl"] + condition["n_trt"]),
    )

    model_ctrl = MultiStateModel.illness_death(
        condition["hazard_ctrl"], condition["prog_rate_ctrl"], condition["hazard_after_prog"])
    min_rate = min(condition["hazard_ctrl"], condition["prog_rate_ctrl"], condition["hazard_after_prog"])
    if min_rate <= 0:
        raise ValueError("hazard_ctrl, prog_rate_ctrl and hazard_after_prog must be positive")
    t_max = PiecewiseHazardModel.exponential(min_rate).quantile(0.9)

    def solve():
        median_ctrl = uniroot(
            lambda t: model_ctrl.cumulative_absorption(t) - 0.5,
            0.0, t_max, extend="upX", what="control median",
        )

        # exponential models with the same control median and the PH effect
        hazard_ctrl_ph = np.log(2) / median_ctrl
        median_trt_ph = PiecewiseHazardModel.exponential(hazard_ctrl_ph * ph_hr).quantile(0.5)

        def target(h):
            model = MultiStateModel.illness_death(h, condition["prog_rate_trt"], condition["hazard_after_prog"])
            return model.cumulative_absorption(median_trt_ph) - 0.5

        # no root when progression alone kills half of the patients by median_trt_ph
        return uniroot(target, 1e-8, 1e-4, extend="upX", tol=2 * EPS, what="hazard_trt")

    _solved(result, "hazard_trt", solve, row, strict)
    return result


def hazard_before_progression_from_ph_effect_size(
    design: pd.DataFrame,
    target_power_ph: Optional[float] = None,
    final_events: Optional[float] = None,
    target_alpha: float = 0.025,
    executor=None,
    strict: bool = False,
) -> pd.DataFrame:
    """
    Calculate the hazard before progression in the treatment arm from a PH
    effect size.

    The control hazard of an exponential model with the same median as the
    multi-state control arm is combined with the hazard ratio that gives the
    target power of the logrank test (Schoenfeld formula) to get a
    treatment median. The hazard before progression in the treatment arm is
    then calibrated to give the same median.

    With target power 0 and equal progression rates hazard_trt equals
    hazard_ctrl without root finding.

    Parameters
    ----------
    design : pd.DataFrame
        Design with the columns n_trt, n_ctrl, hazard_ctrl, hazard_after_prog,
        prog_rate_ctrl, prog_rate_trt
    target_power_ph : float, optional
        Target power, defaults to the column effect_size_ph
    final_events : float, optional
        Events at the analysis, defaults to the column final_events
    target_alpha : float
        One-sided significance level
    executor : concurrent.futures.Executor, optional
        Processes the rows in parallel
    strict : bool
        Raise a ConvergenceError for rows without a solution instead of
        setting hazard_trt to NaN

    Returns
    -------
    pd.DataFrame
        Design with the column hazard_trt
    """
    require_columns(design, [
        "n_trt", "n_ctrl", "hazard_ctrl", "hazard_after_prog", "prog_rate_ctrl", "prog_rate_trt",
    ])
    if final_events is None:
        require_columns(design, ["final_events"])
    if target_power_ph is None and "effect_size_ph" not in design.columns:
        raise ValueError("target_power_ph not given and effect_size_ph not present in design")

    return map_rows(
        design, _hazard_trt_row, executor=executor,
        target_power_ph=target_power_ph, final_events=final_events, target_alpha=target_alpha,
        strict=strict,
    )
