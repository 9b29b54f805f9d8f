"""
Exact summary statistics of two arm survival models.

The statistics are the population values that estimators calculated on
simulated datasets are compared with: median survival, restricted mean
survival time (RMST), average hazard ratios and milestone survival.

Average hazard ratios up to a cutoff tau, with the pooled event distribution
F = p_trt F_trt + p_ctrl F_ctrl (p = share of patients in the arm):

    gAHR  = exp( int_0^tau log(h_trt / h_ctrl) dF / F(tau) )
    AHR   = int_0^tau h_trt / (h_trt + h_ctrl) dF / int_0^tau h_ctrl / (h_trt + h_ctrl) dF
    AHRoc = int_0^tau f_trt S_ctrl dt / int_0^tau f_ctrl S_trt dt

All three equal h_trt / h_ctrl under proportional hazards.
"""

from typing import Callable, Mapping, Optional, Sequence, Union

import numpy as np

from .multistate import MultiStateModel, StateEventModel
from .piecewise import PiecewiseHazardModel
from .utils import ConvergenceError, integrate, named_times, uniroot, warn_numerical

ArmModel = Union[PiecewiseHazardModel, MultiStateModel, StateEventModel]

# level of the quantile used for the automatic maximal time
T_MAX_LEVEL = 1 - 1 / 10000


def as_survival_model(model: ArmModel):
    """Use the all cause event process of multi-state models."""
    if isinstance(model, MultiStateModel):
        return model.event_process()
    if not all(hasattr(model, a) for a in ("evaluate", "survival", "quantile", "rmst")):
        raise ValueError(f"Unsupported model type: {type(model).__name__}")
    return model


def auto_t_max(model_trt: ArmModel, model_ctrl: ArmModel) -> float:
    """
    Time by which 99.99% of both populations had the event: the smaller of
    the two 1 - 1/10000 quantiles.
    """
    model_trt = as_survival_model(model_trt)
    model_ctrl = as_survival_model(model_ctrl)
    return float(min(model_trt.quantile(T_MAX_LEVEL), model_ctrl.quantile(T_MAX_LEVEL)))


def median_survival(model: ArmModel, t_max: float) -> float:
    """
    Median survival as root of S(t) - 0.5 on [0, t_max].

    If the arm's own 1 - 1/10000 quantile is finite and later than t_max it
    is used as upper bound instead. When survival plateaus above 1/10000 the
    arm's median quantile bounds the search.

    Raises:
        ConvergenceError: if S does not cross 0.5 in the bracket
    """
    model = as_survival_model(model)
    upper = t_max if np.isfinite(t_max) else 0.0
    q = model.quantile(T_MAX_LEVEL)
    if not np.isfinite(q):
        q = model.quantile(0.5)
    if np.isfinite(q):
        upper = max(upper, q)
    if not upper > 0:
        raise ConvergenceError("No finite upper bound for the median, survival does not reach 0.5")
    return uniroot(lambda t: model.survival(t) - 0.5, 0.0, upper, what="median survival")


def rmst(model: ArmModel, cutoff: float) -> float:
    """Restricted mean survival time up to cutoff."""
    return as_survival_model(model).rmst(cutoff)


def _breakpoints(*models) -> list:
    points = set()
    for m in models:
        points.update(float(b) for b in getattr(m, "breakpoints", ())[1:])
    return sorted(points)


def _pooled_integral(
    integrand: Callable[[float, float, float, float, float, float, float], float],
    model_trt,
    model_ctrl,
    cutoff: float,
    what: str,
) -> float:
    # integrand(h_trt, s_trt, f_trt, h_ctrl, s_ctrl, f_ctrl) evaluated with one
    # model evaluation per arm and time point
    def f(t):
        h_t, s_t, f_t = model_trt.evaluate(t)
        h_c, s_c, f_c = model_ctrl.evaluate(t)
        return integrand(h_t, s_t, f_t, h_c, s_c, f_c)

    return integrate(f, 0.0, cutoff, points=_breakpoints(model_trt, model_ctrl), what=what)


def gahr(model_trt: ArmModel, model_ctrl: ArmModel, cutoff: float, p_trt: float = 0.5) -> float:
    """Geometric average hazard ratio up to cutoff."""
    model_trt = as_survival_model(model_trt)
    model_ctrl = as_survival_model(model_ctrl)
    p_ctrl = 1 - p_trt

    def integrand(h_t, s_t, f_t, h_c, s_c, f_c):
        weight = p_trt * f_t + p_ctrl * f_c
        if weight <= 0:
            return 0.0
        return np.log(np.float64(h_t) / np.float64(h_c)) * weight

    with np.errstate(divide="ignore", invalid="ignore"):
        log_sum = _pooled_integral(integrand, model_trt, model_ctrl, cutoff, "gAHR")
    pooled_cdf = 1 - (p_trt * model_trt.survival(cutoff) + p_ctrl * model_ctrl.survival(cutoff))
    if not pooled_cdf > 0:
        raise ConvergenceError("No events before the cutoff")
    return float(np.exp(log_sum / pooled_cdf))


def ahr(model_trt: ArmModel, model_ctrl: ArmModel, cutoff: float, p_trt: float = 0.5) -> float:
    """Average hazard ratio (Kalbfleisch & Prentice) up to cutoff."""
    model_trt = as_survival_model(model_trt)
    model_ctrl = as_survival_model(model_ctrl)
    p_ctrl = 1 - p_trt

    def share(arm):
        def integrand(h_t, s_t, f_t, h_c, s_c, f_c):
            weight = p_trt * f_t + p_ctrl * f_c
            total = h_t + h_c
            if weight <= 0 or total <= 0:
                return 0.0
            return (h_t if arm == "trt" else h_c) / total * weight
        return integrand

    num = _pooled_integral(share("trt"), model_trt, model_ctrl, cutoff, "AHR")
    den = _pooled_integral(share("ctrl"), model_trt, model_ctrl, cutoff, "AHR")
    if not den > 0:
        raise ConvergenceError("No control events before the cutoff")
    return num / den


def ahr_oc(model_trt: ArmModel, model_ctrl: ArmModel, cutoff: float) -> float:
    """Average hazard ratio as odds of concordance up to cutoff."""
    model_trt = as_survival_model(model_trt)
    model_ctrl = as_survival_model(model_ctrl)

    num = _pooled_integral(lambda h_t, s_t, f_t, h_c, s_c, f_c: f_t * s_c,
                           model_trt, model_ctrl, cutoff, "AHRoc")
    den = _pooled_integral(lambda h_t, s_t, f_t, h_c, s_c, f_c: f_c * s_t,
                           model_trt, model_ctrl, cutoff, "AHRoc")
    if not den > 0:
        raise ConvergenceError("No control events before the cutoff")
    return num / den


def real_statistics(
    model_trt: ArmModel,
    model_ctrl: ArmModel,
    n_trt: float,
    n_ctrl: float,
    cutoff: Union[None, float, Sequence[float], Mapping[str, float]] = None,
    milestones: Union[None, float, Sequence[float], Mapping[str, float]] = None,
    t_max: Optional[float] = None,
    strict: bool = False,
    row: Optional[int] = None,
) -> dict:
    """
    Calculate the true summary statistics for two arms.

    Parameters
    ----------
    model_trt, model_ctrl : model
        PiecewiseHazardModel, MultiStateModel (all cause event) or
        StateEventModel for each arm
    n_trt, n_ctrl : float
        Patients per arm, used to weight the pooled event distribution
    cutoff : float, sequence or mapping, optional
        Times up to which RMST and average hazard ratios are calculated.
        Unnamed times are named by their value. Defaults to t_max.
    milestones : float, sequence or mapping, optional
        Times at which survival is reported
    t_max : float, optional
        Upper bound for root finding, defaults to auto_t_max. Without a
        cutoff an infinite t_max gives NaN for the cutoff statistics.
    strict : bool
        Raise numerical errors instead of returning NaN
    row : int, optional
        Row index used in warnings

    Returns
    -------
    dict
        Statistic name -> value
    """
    if not (n_trt >= 0 and n_ctrl >= 0 and n_trt + n_ctrl > 0):
        raise ValueError("Invalid number of patients")
    model_trt = as_survival_model(model_trt)
    model_ctrl = as_survival_model(model_ctrl)
    p_trt = n_trt / (n_trt + n_ctrl)

    cutoffs = named_times(cutoff)
    for name, c in cutoffs.items():
        if not (np.isfinite(c) and c > 0):
            raise ValueError(f"Invalid cutoff {name}: {c}")
    milestone_times = named_times(milestones)
    for name, m in milestone_times.items():
        if not (np.isfinite(m) and m >= 0):
            raise ValueError(f"Invalid milestone {name}: {m}")

    result = {}

    def failed(name, error):
        if strict:
            raise error
        warn_numerical(name, row, error)
        result[name] = np.nan

    def guarded(name, fn):
        try:
            result[name] = float(fn())
        except ConvergenceError as e:
            failed(name, e)

    if t_max is None:
        try:
            t_max = auto_t_max(model_trt, model_ctrl)
        except ConvergenceError as e:
            if strict:
                raise
            warn_numerical("t_max", row, e)
            t_max = np.inf
    if not cutoffs:
        cutoffs = {"t_max": float(t_max)}

    guarded("median_surv_trt", lambda: median_survival(model_trt, t_max))
    guarded("median_surv_ctrl", lambda: median_survival(model_ctrl, t_max))
    result["median_surv_diff"] = result["median_surv_trt"] - result["median_surv_ctrl"]

    # only the automatic cutoff can be infinite, when both arms plateau
    unbounded = ConvergenceError("t_max is not finite, survival stays above 1/10000 in both arms")

    for name, c in cutoffs.items():
        def at_cutoff(key, fn):
            if np.isfinite(c):
                guarded(key, fn)
            else:
                failed(key, unbounded)

        at_cutoff(f"rmst_trt_{name}", lambda: model_trt.rmst(c))
        at_cutoff(f"rmst_ctrl_{name}", lambda: model_ctrl.rmst(c))
        result[f"rmst_diff_{name}"] = result[f"rmst_trt_{name}"] - result[f"rmst_ctrl_{name}"]
        at_cutoff(f"gAHR_{name}", lambda: gahr(model_trt, model_ctrl, c, p_trt))
        at_cutoff(f"AHR_{name}", lambda: ahr(model_trt, model_ctrl, c, p_trt))
        at_cutoff(f"AHRoc_{name}", lambda: ahr_oc(model_trt, model_ctrl, c))

    for name, m in milestone_times.items():
        s_trt = float(model_trt.survival(m))
        s_ctrl = float(model_ctrl.survival(m))
        result[f"milestone_surv_trt_{name}"] = s_trt
        result[f"milestone_surv_ctrl_{name}"] = s_ctrl
        result[f"milestone_surv_ratio_{name}"] = s_trt / s_ctrl if s_ctrl > 0 else np.nan

    return result
