"""
Data generating scenarios.

Disease progression: the hazard changes after progression, modelled as the
illness-death model stable -> progressed -> dead with a direct transition
stable -> dead.

Delayed effect: the treatment arm has the control hazard until the onset of
the treatment effect after `delay`.

For both scenarios there is a generator of one simulated dataset from a
design row and a function adding the true summary statistics to a design.
"""

from typing import Mapping, Optional

import numpy as np
import pandas as pd

from .design import map_rows
from .multistate import MultiStateModel
from .piecewise import PiecewiseHazardModel
from .sampler import generate, generate_progression_times
from .true_statistics import real_statistics
from .utils import require_columns

PROGRESSION_COLUMNS = [
    "n_trt", "n_ctrl", "hazard_ctrl", "hazard_trt", "hazard_after_prog",
    "prog_rate_ctrl", "prog_rate_trt",
]

DELAYED_EFFECT_COLUMNS = ["n_trt", "n_ctrl", "delay", "hazard_ctrl", "hazard_trt"]

# event states for the endpoints of the progression scenario
PROGRESSION_ENDPOINTS = {
    "os": ["dead"],
    "pfs": ["progressed", "dead"],
}


def progression_model(condition: Mapping, arm: str) -> MultiStateModel:
    """Illness-death model of one arm ('trt' or 'ctrl') of a design row."""
    if arm not in ("trt", "ctrl"):
        raise ValueError(f"Invalid arm: {arm}")
    return MultiStateModel.illness_death(
        hazard=condition[f"hazard_{arm}"],
        prog_rate=condition[f"prog_rate_{arm}"],
        hazard_after_prog=condition["hazard_after_prog"],
    )


def generate_progression(
    condition: Mapping,
    rng: Optional[np.random.Generator] = None,
    discrete: bool = True,
) -> pd.DataFrame:
    """
    Generate a dataset with changing hazards after disease progression.

    Parameters
    ----------
    condition : mapping
        Design row with the columns n_trt, n_ctrl, hazard_ctrl, hazard_trt
        (hazard before progression), hazard_after_prog, prog_rate_ctrl and
        prog_rate_trt
    rng : np.random.Generator or int, optional
        Random number generator or seed
    discrete : bool
        Round times up to whole days

    Returns
    -------
    pd.DataFrame
        Columns t, trt, evt (True for all patients), t_ice (time of
        progression, inf if none) and ice (progression observed)
    """
    require_columns(condition, PROGRESSION_COLUMNS)
    rng = np.random.default_rng(rng)

    arms = []
    for arm, trt in (("trt", 1), ("ctrl", 0)):
        data = generate_progression_times(
            int(condition[f"n_{arm}"]),
            condition[f"hazard_{arm}"],
            condition[f"prog_rate_{arm}"],
            condition["hazard_after_prog"],
            rng=rng,
            discrete=discrete,
        )
        data.insert(1, "trt", trt)
        arms.append(data)

    return pd.concat(arms, ignore_index=True)


def _check_what(what: str) -> None:
    if what not in PROGRESSION_ENDPOINTS:
        raise ValueError(
            f"Invalid value for what: {what!r}, use 'os' for overall survival "
            f"or 'pfs' for progression free survival"
        )


def _progression_statistics_row(condition, row, what, cutoff_stats, milestones, t_max, strict):
    states = PROGRESSION_ENDPOINTS[what]
    stats = real_statistics(
        progression_model(condition, "trt").event_process(states),
        progression_model(condition, "ctrl").event_process(states),
        n_trt=condition["n_trt"],
        n_ctrl=condition["n_ctrl"],
        cutoff=cutoff_stats,
        milestones=milestones,
        t_max=t_max,
        strict=strict,
        row=row,
    )
    return {**condition, **stats}


def true_summary_statistics_progression(
    design: pd.DataFrame,
    what: str = "os",
    cutoff_stats=None,
    milestones=None,
    t_max: Optional[float] = None,
    strict: bool = False,
    executor=None,
) -> pd.DataFrame:
    """
    Calculate true summary statistics for scenarios with disease progression.

    Parameters
    ----------
    design : pd.DataFrame
        Design with the columns needed by generate_progression
    what : str
        'os' for overall survival or 'pfs' for progression free survival
    cutoff_stats : float, sequence or mapping, optional
        Times up to which average hazard ratios and RMST are calculated
    milestones : float, sequence or mapping, optional
        Times for milestone survival
    t_max : float, optional
        Maximal time for root finding, defaults to the smaller of the
        1 - 1/10000 quantiles of the two arms
    strict : bool
        Raise numerical errors instead of setting the statistic to NaN
    executor : concurrent.futures.Executor, optional
        Executor to process the rows in parallel

    Returns
    -------
    pd.DataFrame
        The design with one additional column per statistic
    """
    _check_what(what)
    require_columns(design, PROGRESSION_COLUMNS)
    return map_rows(
        design, _progression_statistics_row, executor=executor,
        what=what, cutoff_stats=cutoff_stats, milestones=milestones, t_max=t_max, strict=strict,
    )


def delayed_effect_models(condition: Mapping):
    """Piecewise hazard models (treatment, control) of a design row."""
    model_trt = PiecewiseHazardModel.delayed_effect(
        condition["delay"], condition["hazard_ctrl"], condition["hazard_trt"])
    model_ctrl = PiecewiseHazardModel.exponential(condition["hazard_ctrl"])
    return model_trt, model_ctrl


def generate_delayed_effect(
    condition: Mapping,
    rng: Optional[np.random.Generator] = None,
    discrete: bool = False,
) -> pd.DataFrame:
    """
    Generate a dataset with a delayed treatment effect.

    Needs the columns n_trt, n_ctrl, delay, hazard_ctrl and hazard_trt
    (hazard after the onset of the effect).

    Returns
    -------
    pd.DataFrame
        Columns t, trt, evt (True for all patients)
    """
    require_columns(condition, DELAYED_EFFECT_COLUMNS)
    model_trt, model_ctrl = delayed_effect_models(condition)
    return generate(condition, model_trt, model_ctrl, rng=rng, discrete=discrete)


def _delayed_effect_statistics_row(condition, row, cutoff_stats, milestones, t_max, strict):
    model_trt, model_ctrl = delayed_effect_models(condition)
    stats = real_statistics(
        model_trt, model_ctrl,
        n_trt=condition["n_trt"],
        n_ctrl=condition["n_ctrl"],
        cutoff=cutoff_stats,
        milestones=milestones,
        t_max=t_max,
        strict=strict,
        row=row,
    )
    return {**condition, **stats}


def true_summary_statistics_delayed_effect(
    design: pd.DataFrame,
    cutoff_stats=None,
    milestones=None,
    t_max: Optional[float] = None,
    strict: bool = False,
    executor=None,
) -> pd.DataFrame:
    """
    Calculate true summary statistics for scenarios with a delayed effect.

    See true_summary_statistics_progression for the arguments.
    """
    require_columns(design, DELAYED_EFFECT_COLUMNS)
    return map_rows(
        design, _delayed_effect_statistics_row, executor=executor,
        cutoff_stats=cutoff_stats, milestones=milestones, t_max=t_max, strict=strict,
    )
