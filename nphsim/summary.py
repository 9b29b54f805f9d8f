"""
Operating characteristics of analysis methods over simulated datasets.

An analysis method applied to one simulated dataset returns an
AnalysisResult. Collected over the replications of a design row the results
form a DataFrame (one row per replication); summarisers turn it into one row
of operating characteristics.
"""

from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .utils import require_columns

Summariser = Callable[[Mapping, pd.DataFrame], dict]
TrueValue = Union[str, float, Callable[[Mapping], float]]


@dataclass
class AnalysisResult:
    """
    Result of one analysis of one simulated dataset.

    Attributes
    ----------
    p : float, optional
        p-value of a hypothesis test
    estimate : float, optional
        Point estimate
    lower, upper : float, optional
        Confidence interval limits
    n_pat : int, optional
        Number of patients in the analysis
    """
    p: Optional[float] = None
    estimate: Optional[float] = None
    lower: Optional[float] = None
    upper: Optional[float] = None
    n_pat: Optional[int] = None

    def __post_init__(self):
        for name in ("p", "estimate", "lower", "upper"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, (int, float, np.number)):
                raise ValueError(f"{name} must be a number, got {type(value).__name__}")
        if self.p is not None and not np.isnan(self.p) and not 0 <= self.p <= 1:
            raise ValueError(f"p must be in [0, 1], got {self.p}")
        if (self.lower is not None and self.upper is not None
                and self.lower > self.upper):
            raise ValueError(f"lower ({self.lower}) is larger than upper ({self.upper})")
        if self.n_pat is not None and self.n_pat < 0:
            raise ValueError("n_pat must not be negative")


def results_frame(results: Sequence[AnalysisResult]) -> pd.DataFrame:
    """Results of the replications as DataFrame, missing values as NaN."""
    rows = [asdict(r) for r in results]
    frame = pd.DataFrame(rows, columns=["p", "estimate", "lower", "upper", "n_pat"])
    return frame.astype(float)


def _value(value: TrueValue, condition: Mapping) -> float:
    if callable(value):
        return float(value(condition))
    if isinstance(value, str):
        require_columns(condition, [value])
        return float(condition[value])
    return float(value)


def summarise_test(alpha: Union[float, Sequence[float]]) -> Summariser:
    """
    Summarise a hypothesis test: rejection rate at each level alpha, mean
    number of patients and the number of missing p-values.

    The rejection rate is computed over non-missing p-values. Column names
    are rejection_<alpha>, e.g. rejection_0.025.
    """
    alphas = np.atleast_1d(alpha).astype(float)
    if np.any((alphas <= 0) | (alphas >= 1)):
        raise ValueError("alpha must be in (0, 1)")

    def summarise(condition: Mapping, results: pd.DataFrame) -> dict:
        require_columns(results, ["p"])
        p = results["p"].to_numpy(dtype=float)
        valid = p[~np.isnan(p)]
        out = {}
        for a in alphas:
            out[f"rejection_{a:g}"] = float(np.mean(valid <= a)) if len(valid) else np.nan
        if "n_pat" in results.columns:
            out["n_pat"] = float(results["n_pat"].mean())
        out["N_missing"] = int(np.isnan(p).sum())
        return out

    return summarise


def summarise_estimator(
    est: str = "estimate",
    real: TrueValue = None,
    lower: Optional[str] = None,
    upper: Optional[str] = None,
    null: Optional[TrueValue] = None,
) -> Summariser:
    """
    Summarise an estimator against the true value of the design row.

    Parameters
    ----------
    est : str
        Result column with the point estimate
    real : str, float or callable
        True value: a column of the design row (e.g. 'gAHR_t_max'), a
        constant or a function of the design row
    lower, upper : str, optional
        Result columns with the confidence interval limits
    null : str, float or callable, optional
        Value under the null hypothesis for the coverage of the null

    Returns
    -------
    callable
        summarise(condition, results) -> dict with mean_est, median_est,
        sd_est, bias, sd_bias, mse, sd_mse and N_missing; with confidence
        limits also coverage, cover_lower, cover_upper and width; with null
        also null_cover.
    """
    if real is None:
        raise ValueError("real must be given")

    def summarise(condition: Mapping, results: pd.DataFrame) -> dict:
        columns = [est] + [c for c in (lower, upper) if c is not None]
        require_columns(results, columns)
        truth = _value(real, condition)
        estimates = results[est].to_numpy(dtype=float)
        missing = np.isnan(estimates)
        x = estimates[~missing]
        error = x - truth

        out = {
            "mean_est": np.mean(x) if len(x) else np.nan,
            "median_est": np.median(x) if len(x) else np.nan,
            "sd_est": np.std(x, ddof=1) if len(x) > 1 else np.nan,
            "bias": np.mean(error) if len(x) else np.nan,
            "sd_bias": np.std(error, ddof=1) if len(x) > 1 else np.nan,
            "mse": np.mean(error ** 2) if len(x) else np.nan,
            "sd_mse": np.std(error ** 2, ddof=1) if len(x) > 1 else np.nan,
        }

        lo = results[lower].to_numpy(dtype=float) if lower is not None else None
        hi = results[upper].to_numpy(dtype=float) if upper is not None else None
        if lo is not None:
            out["cover_lower"] = _rate(lo <= truth, lo)
        if hi is not None:
            out["cover_upper"] = _rate(hi >= truth, hi)
        if lo is not None and hi is not None:
            both = lo + hi
            out["coverage"] = _rate((lo <= truth) & (hi >= truth), both)
            out["width"] = float(np.nanmean(np.abs(hi - lo))) if not np.isnan(both).all() else np.nan
            if null is not None:
                null_value = _value(null, condition)
                out["null_cover"] = _rate((lo <= null_value) & (hi >= null_value), both)

        out["N_missing"] = int(missing.sum())
        return {k: float(v) if k != "N_missing" else v for k, v in out.items()}

    return summarise


def _rate(hit: np.ndarray, values: np.ndarray) -> float:
    # share of hits among the replications where values is not missing
    valid = ~np.isnan(values)
    if not valid.any():
        return np.nan
    return float(np.mean(hit[valid]))


def summarise_design(
    design: pd.DataFrame,
    results_by_row: Sequence[Mapping[str, pd.DataFrame]],
    summaries: Mapping[str, Summariser],
) -> pd.DataFrame:
    """
    Apply summarisers to the results of each design row.

    Parameters
    ----------
    design : pd.DataFrame
        Design, one scenario per row
    results_by_row : sequence of mappings
        For each design row, the results of each method as DataFrame with one
        row per replication (see results_frame)
    summaries : mapping
        Name -> (method, summariser); the columns of the summary are prefixed
        with the name, e.g. 'logrank.rejection_0.025'

    Returns
    -------
    pd.DataFrame
        The design with the summary columns appended
    """
    if len(results_by_row) != len(design):
        raise ValueError(
            f"Got results for {len(results_by_row)} rows, design has {len(design)} rows"
        )

    rows: List[Dict] = []
    for condition, results in zip(design.to_dict("records"), results_by_row):
        row = dict(condition)
        for name, (method, summarise) in summaries.items():
            if method not in results:
                raise ValueError(f"Missing results of method: {method}")
            for key, value in summarise(condition, results[method]).items():
                row[f"{name}.{key}"] = value
        rows.append(row)

    if not rows:
        return design.copy()
    return pd.DataFrame(rows)
