"""
Simulation of patient level datasets and censoring.

A dataset is a DataFrame with one row per patient and the columns
- t: observed time since entry
- trt: 1 for treatment, 0 for control
- evt: True if the event was observed, False if censored
- t_ice, ice: time and indicator of an intercurrent event (optional)
- rec_time: calendar time of recruitment (after apply_recruitment)

The censoring functions form a pipeline that has to be applied in the order
recruitment -> random withdrawal -> administrative censoring. Every step
returns a new DataFrame and leaves its input untouched.
"""

from typing import Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .multistate import MultiStateModel
from .piecewise import PiecewiseHazardModel
from .utils import require_columns

SurvivalModel = Union[PiecewiseHazardModel, MultiStateModel]


def _simulate_arm(
    model: SurvivalModel,
    n: int,
    rng: np.random.Generator,
    discrete: bool,
) -> pd.DataFrame:
    if isinstance(model, MultiStateModel):
        paths = model.transition_time_sample(n, rng)
        t = paths["t"].to_numpy()
        intermediate = [
            f"t_{name}" for j, name in enumerate(model.states)
            if not model.absorbing[j] and model.initial[j] == 0
        ]
        if intermediate:
            t_ice = paths[intermediate].min(axis=1).to_numpy()
        else:
            t_ice = np.full(n, np.inf)
        if discrete:
            t = np.ceil(t)
            t_ice = np.ceil(t_ice)
        ice = t_ice < t
        return pd.DataFrame({
            "t": t,
            "evt": True,
            "t_ice": np.where(ice, t_ice, np.inf),
            "ice": ice,
        })

    t = model.sample(n, rng, discrete=discrete)
    return pd.DataFrame({"t": t, "evt": True})


def generate(
    condition: Mapping,
    model_trt: SurvivalModel,
    model_ctrl: SurvivalModel,
    rng: Optional[np.random.Generator] = None,
    discrete: bool = False,
) -> pd.DataFrame:
    """
    Simulate a two arm dataset without censoring.

    For multi-state models the time of absorption is the event time and the
    first entry into an intermediate state is the intercurrent event.

    Args:
        condition: Design row with the columns n_trt and n_ctrl
        model_trt: Model for the treatment arm
        model_ctrl: Model for the control arm
        rng: Random number generator or seed
        discrete: Round times up to whole time units

    Returns:
        DataFrame with columns t, trt, evt (and t_ice, ice), treatment
        patients first
    """
    require_columns(condition, ["n_trt", "n_ctrl"])
    rng = np.random.default_rng(rng)

    data_trt = _simulate_arm(model_trt, int(condition["n_trt"]), rng, discrete)
    data_trt.insert(1, "trt", 1)
    data_ctrl = _simulate_arm(model_ctrl, int(condition["n_ctrl"]), rng, discrete)
    data_ctrl.insert(1, "trt", 0)

    return pd.concat([data_trt, data_ctrl], ignore_index=True)


def generate_progression_times(
    n: int,
    hazard: float,
    prog_rate: float,
    hazard_after_prog: float,
    rng: Optional[np.random.Generator] = None,
    discrete: bool = True,
) -> pd.DataFrame:
    """
    Simulate event times with a change of hazard after disease progression.

    Time to progression, time to death without progression and time from
    progression to death are drawn independently. Progression counts only if
    it happens strictly before death (t_prog < t_evt); on a tie the patient
    dies without progression.

    Returns:
        DataFrame with columns t, evt, t_ice, ice
    """
    rng = np.random.default_rng(rng)
    t_evt = PiecewiseHazardModel.exponential(hazard).sample(n, rng, discrete=discrete)
    t_prog = PiecewiseHazardModel.exponential(prog_rate).sample(n, rng, discrete=discrete)
    t_after_prog = PiecewiseHazardModel.exponential(hazard_after_prog).sample(n, rng, discrete=discrete)

    progressed = t_prog < t_evt
    return pd.DataFrame({
        "t": np.where(progressed, t_prog + t_after_prog, t_evt),
        "evt": True,
        "t_ice": np.where(progressed, t_prog, np.inf),
        "ice": progressed,
    })


def _censor_ice(data: pd.DataFrame) -> None:
    # intercurrent events after the observed time are not observed
    if "t_ice" in data.columns:
        lost = data["t_ice"] > data["t"]
        data.loc[lost, "ice"] = False
        data.loc[lost, "t_ice"] = np.inf


def apply_recruitment(
    data: pd.DataFrame,
    recruitment_until: float,
    recruitment_from: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """
    Add uniformly distributed recruitment times.

    Args:
        data: Simulated dataset
        recruitment_until: End of the recruitment period
        recruitment_from: Start of the recruitment period
        rng: Random number generator or seed

    Returns:
        Copy of data with the column rec_time
    """
    if recruitment_from < 0 or recruitment_until < recruitment_from:
        raise ValueError("Invalid recruitment period")
    rng = np.random.default_rng(rng)
    result = data.copy()
    result["rec_time"] = rng.uniform(recruitment_from, recruitment_until, size=len(result))
    return result


def apply_random_censoring(
    data: pd.DataFrame,
    rate: float,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """
    Censor at independent exponentially distributed withdrawal times.

    A rate of 0 means no random withdrawal, the data is returned unchanged
    (as a copy) without drawing random numbers.
    """
    if not rate >= 0:
        raise ValueError("Invalid rate for random censoring")
    result = data.copy()
    if rate == 0:
        return result

    rng = np.random.default_rng(rng)
    withdrawal = rng.exponential(1 / rate, size=len(result))
    censored = withdrawal < result["t"].to_numpy()

    result["t"] = np.where(censored, withdrawal, result["t"])
    result["evt"] = result["evt"].to_numpy() & ~censored
    _censor_ice(result)
    return result


def apply_admin_censoring(
    data: pd.DataFrame,
    cutoff: float,
    keep_non_recruited: bool = False,
) -> pd.DataFrame:
    """
    Administrative censoring at a calendar time.

    The follow up of each patient is capped at cutoff - rec_time (rec_time is
    0 if recruitment was not simulated), events after that are censored.
    Infinite times (patients who never have the event) are censored at the
    cap, also for an infinite cutoff.

    Args:
        data: Simulated dataset
        cutoff: Calendar time of the analysis
        keep_non_recruited: Keep patients recruited after the cutoff with time
            0 and censored instead of dropping them

    Returns:
        Censored copy of the dataset
    """
    result = data.copy()
    rec_time = result["rec_time"].to_numpy() if "rec_time" in result.columns else np.zeros(len(result))
    followup = cutoff - rec_time

    if not keep_non_recruited:
        recruited = followup >= 0
        result = result.loc[recruited].reset_index(drop=True)
        followup = followup[recruited]
        rec_time = rec_time[recruited]

    followup = np.maximum(followup, 0.0)
    t = result["t"].to_numpy()
    # compare on the calendar scale, the event defining the cut stays an event
    capped = (t + rec_time > cutoff) | ~np.isfinite(t)

    result["t"] = np.where(capped, np.minimum(followup, t), t)
    result["evt"] = result["evt"].to_numpy() & ~capped
    _censor_ice(result)
    return result


def apply_admin_censoring_events(
    data: pd.DataFrame,
    events: int,
    keep_non_recruited: bool = False,
) -> Tuple[pd.DataFrame, float]:
    """
    Administrative censoring at the calendar time of the n-th event.

    Args:
        data: Simulated dataset
        events: Number of events that triggers the analysis

    Returns:
        Tuple of (censored data, calendar time of the cut)
    """
    if events < 1:
        raise ValueError("events must be positive")
    rec_time = data["rec_time"] if "rec_time" in data.columns else 0.0
    calendar = (data["t"] + rec_time)[data["evt"].astype(bool) & np.isfinite(data["t"])].sort_values()

    if len(calendar) == 0:
        cut = float((data["t"] + rec_time).max())
    elif len(calendar) < events:
        # not enough events - use last event time
        cut = float(calendar.iloc[-1])
    else:
        cut = float(calendar.iloc[events - 1])

    return apply_admin_censoring(data, cut, keep_non_recruited=keep_non_recruited), cut


def censor(
    data: pd.DataFrame,
    condition: Mapping,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """
    Apply the censoring pipeline for a design row.

    Uses the columns recruitment (length of the recruitment period),
    random_withdrawal (rate of random withdrawal) and followup (calendar time
    of the analysis).
    """
    require_columns(condition, ["recruitment", "random_withdrawal", "followup"])
    rng = np.random.default_rng(rng)

    result = apply_recruitment(data, condition["recruitment"], rng=rng)
    result = apply_random_censoring(result, condition["random_withdrawal"], rng=rng)
    result = apply_admin_censoring(result, condition["followup"])
    return result
