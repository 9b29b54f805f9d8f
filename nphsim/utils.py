"""
Utility functions used throughout the nphsim package.
"""

import warnings
from typing import Callable, Iterable, Mapping, Optional, Sequence, Union

import numpy as np
from scipy.integrate import quad
from scipy.optimize import brentq


class NumericalWarning(RuntimeWarning):
    """Warning for a numerical failure that was replaced by NaN."""


class ConvergenceError(RuntimeError):
    """Raised when root finding or quadrature does not converge."""


def days_per_month() -> float:
    """Return the average number of days in a month (365.25 / 12)."""
    return 365.25 / 12


def m2d(months):
    """Convert months to days."""
    return as_float(np.asarray(months) * days_per_month())


def d2m(days):
    """Convert days to months."""
    return as_float(np.asarray(days) / days_per_month())


def w2d(weeks):
    """Convert weeks to days."""
    return as_float(np.asarray(weeks) * 7)


def d2w(days):
    """Convert days to weeks."""
    return as_float(np.asarray(days) / 7)


def y2d(years):
    """Convert years to days."""
    return as_float(np.asarray(years) * 365.25)


def d2y(days):
    """Convert days to years."""
    return as_float(np.asarray(days) / 365.25)


def m2r(median_months):
    """
    Convert a median survival time in months to an exponential rate per day.

    Parameters
    ----------
    median_months : float or array-like
        Median time to event in months

    Returns
    -------
    float or np.ndarray
        Hazard rate per day
    """
    return as_float(np.log(2) / m2d(median_months))


def r2m(rate):
    """Convert an exponential rate per day to a median survival time in months."""
    return as_float(d2m(np.log(2) / np.asarray(rate)))


def as_float(x):
    """Return a python float for 0-d input, the array otherwise."""
    x = np.asarray(x, dtype=float)
    if x.ndim == 0:
        return float(x)
    return x


def uniroot(
    f: Callable[[float], float],
    lower: float,
    upper: float,
    extend: str = "no",
    tol: float = 1e-12,
    max_extensions: int = 60,
    maxiter: int = 1000,
    what: str = "root",
) -> float:
    """
    Bracketed root finding with an optionally extendable interval.

    The interval is widened (doubling its width in the direction given by
    `extend`) until `f` changes sign, at most `max_extensions` times.

    Parameters
    ----------
    f : callable
        Scalar function
    lower, upper : float
        Initial bracket
    extend : str
        'no', 'upX' (f increasing, move upper bound), 'downX' (f decreasing,
        move upper bound) or 'yes' (move both bounds)
    tol : float
        Absolute tolerance passed to brentq
    max_extensions : int
        Maximal number of extension steps
    what : str
        Name of the solved quantity, used in error messages

    Returns
    -------
    float
        Root of f in the (extended) bracket

    Raises
    ------
    ConvergenceError
        If no sign change is found or brentq does not converge
    """
    if extend not in ("no", "upX", "downX", "yes"):
        raise ValueError(f"Invalid extend argument: {extend}")
    if not lower < upper:
        raise ValueError("lower must be smaller than upper")

    f_lower = f(lower)
    f_upper = f(upper)

    for _ in range(max_extensions):
        if f_lower == 0:
            return float(lower)
        if f_upper == 0:
            return float(upper)
        if np.sign(f_lower) != np.sign(f_upper):
            break
        if extend == "no":
            break
        width = upper - lower
        if extend == "upX":
            if f_upper > 0:
                break
            upper = upper + width
            f_upper = f(upper)
        elif extend == "downX":
            if f_upper < 0:
                break
            upper = upper + width
            f_upper = f(upper)
        else:
            lower = lower - width / 2
            upper = upper + width / 2
            f_lower = f(lower)
            f_upper = f(upper)

    if not (np.isfinite(f_lower) and np.isfinite(f_upper)) or np.sign(f_lower) == np.sign(f_upper):
        raise ConvergenceError(
            f"Could not find a bracket enclosing the {what}: "
            f"f({lower:g})={f_lower:g}, f({upper:g})={f_upper:g}"
        )

    try:
        root = brentq(f, lower, upper, xtol=tol, rtol=4 * np.finfo(float).eps,
                      maxiter=maxiter)
    except RuntimeError as e:
        raise ConvergenceError(f"Root finding for the {what} failed: {e}") from e
    return float(root)


def integrate(
    f: Callable[[float], float],
    a: float,
    b: float,
    points: Optional[Sequence[float]] = None,
    what: str = "integral",
    limit: int = 200,
) -> float:
    """
    Integrate f over [a, b] with scipy's quad.

    `points` are breakpoints inside (a, b) where f is not smooth. A failure
    reported by quad is raised as ConvergenceError.
    """
    if b <= a:
        return 0.0
    if points is not None:
        points = [p for p in points if a < p < b]
        if len(points) == 0:
            points = None

    result = quad(f, a, b, points=points, limit=limit, full_output=1)
    if len(result) == 4:
        value, abserr, _, message = result
        # roundoff warnings with a tiny error estimate are harmless
        if not (np.isfinite(value) and abserr <= 1e-8 * max(1.0, abs(value))):
            raise ConvergenceError(f"Integration of the {what} failed: {message}")
    else:
        value = result[0]
    if not np.isfinite(value):
        raise ConvergenceError(f"Integration of the {what} diverged")
    return float(value)


def require_columns(row: Mapping, columns: Iterable[str]) -> None:
    """
    Check that a design row (or table) contains the required columns.

    Raises
    ------
    ValueError
        Naming the first missing column
    """
    keys = row.columns if hasattr(row, "columns") else row.keys()
    for col in columns:
        if col not in keys:
            raise ValueError(f"Missing required column: {col}")


def named_times(times: Union[None, float, Sequence[float], Mapping[str, float]]) -> dict:
    """
    Normalise cutoff or milestone specifications to an ordered name->time dict.

    Unnamed times are named by their value, e.g. 20.0 -> '20'.
    """
    if times is None:
        return {}
    if isinstance(times, Mapping):
        return {str(k): float(v) for k, v in times.items()}
    if np.ndim(times) == 0:
        times = [times]
    return {f"{float(t):g}": float(t) for t in times}


def warn_numerical(what: str, row: Optional[int], error: Exception) -> None:
    """Emit a NumericalWarning for a statistic replaced by NaN."""
    where = f" in row {row}" if row is not None else ""
    warnings.warn(f"{what}{where} set to NaN: {error}", NumericalWarning, stacklevel=3)
