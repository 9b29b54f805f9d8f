"""
Piecewise constant hazard model.

The hazard is constant on [t_i, t_{i+1}) for the breakpoints
0 = t_0 < t_1 < ... < t_{k-1}, the last interval extends to infinity.
Cumulative hazard, survival, density and quantile function are closed-form
piecewise exponential expressions.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .utils import as_float


@dataclass(frozen=True)
class PiecewiseHazardModel:
    """
    Piecewise exponential distribution for survival times.

    Attributes:
        breakpoints: Start of each interval, strictly increasing, starting at 0
        rates: Non-negative hazard rate in each interval
    """
    breakpoints: Sequence[float]
    rates: Sequence[float]

    def __post_init__(self):
        breakpoints = tuple(float(t) for t in np.atleast_1d(self.breakpoints))
        rates = tuple(float(r) for r in np.atleast_1d(self.rates))
        object.__setattr__(self, "breakpoints", breakpoints)
        object.__setattr__(self, "rates", rates)

        if len(breakpoints) == 0:
            raise ValueError("breakpoints must not be empty")
        if len(breakpoints) != len(rates):
            raise ValueError("breakpoints and rates must have the same length")
        if breakpoints[0] != 0:
            raise ValueError("breakpoints must start at 0")
        if not all(np.isfinite(breakpoints)):
            raise ValueError("breakpoints must be finite")
        if any(b <= a for a, b in zip(breakpoints[:-1], breakpoints[1:])):
            raise ValueError("breakpoints must be strictly increasing")
        if any(not np.isfinite(r) or r < 0 for r in rates):
            raise ValueError("rates must be non-negative and finite")

    @classmethod
    def exponential(cls, rate: float) -> "PiecewiseHazardModel":
        """Constant hazard model."""
        return cls(breakpoints=[0.0], rates=[rate])

    @classmethod
    def from_median(cls, median: float) -> "PiecewiseHazardModel":
        """Create exponential distribution with given median survival."""
        return cls.exponential(np.log(2) / median)

    @classmethod
    def from_durations(cls, durations: Sequence[float], rates: Sequence[float]) -> "PiecewiseHazardModel":
        """
        Create a model from interval durations (last duration is ignored,
        the last interval always extends to infinity).
        """
        if len(durations) != len(rates):
            raise ValueError("durations and rates must have the same length")
        starts = np.concatenate([[0.0], np.cumsum(durations[:-1])])
        return cls(breakpoints=starts, rates=rates)

    @classmethod
    def delayed_effect(cls, delay: float, hazard_before: float, hazard_after: float) -> "PiecewiseHazardModel":
        """
        Hazard `hazard_before` up to `delay` and `hazard_after` afterwards.

        A delay of 0 gives an exponential model with `hazard_after`.
        """
        if delay < 0:
            raise ValueError("delay must be non-negative")
        if delay == 0:
            return cls.exponential(hazard_after)
        return cls(breakpoints=[0.0, delay], rates=[hazard_before, hazard_after])

    @cached_property
    def _starts(self) -> NDArray[np.float64]:
        return np.array(self.breakpoints)

    @cached_property
    def _rates(self) -> NDArray[np.float64]:
        return np.array(self.rates)

    @cached_property
    def _cumhaz_at_start(self) -> NDArray[np.float64]:
        # cumulative hazard at the start of each interval
        increments = np.diff(self._starts) * self._rates[:-1]
        return np.concatenate([[0.0], np.cumsum(increments)])

    def _interval(self, t: NDArray[np.float64]) -> NDArray[np.int64]:
        idx = np.searchsorted(self._starts, t, side="right") - 1
        return np.clip(idx, 0, len(self._starts) - 1)

    def hazard(self, t):
        """
        Hazard rate at time t.

        Args:
            t: Time point(s) to evaluate

        Returns:
            Hazard rate h(t), 0 for negative times
        """
        t = np.asarray(t, dtype=float)
        h = self._rates[self._interval(t)]
        return as_float(np.where(t < 0, 0.0, h))

    def cumulative_hazard(self, t):
        """Cumulative hazard H(t)."""
        t = np.asarray(t, dtype=float)
        idx = self._interval(t)
        rate = self._rates[idx]
        with np.errstate(invalid="ignore"):
            within = np.where(rate == 0, 0.0, rate * (t - self._starts[idx]))
        H = self._cumhaz_at_start[idx] + within
        return as_float(np.where(t <= 0, 0.0, H))

    def survival(self, t):
        """Survival probability S(t) = exp(-H(t))."""
        return as_float(np.exp(-np.asarray(self.cumulative_hazard(t))))

    def density(self, t):
        """Density f(t) = h(t) S(t)."""
        return as_float(np.asarray(self.hazard(t)) * np.asarray(self.survival(t)))

    def evaluate(self, t):
        """Hazard, survival and density at t."""
        h = self.hazard(t)
        s = self.survival(t)
        return h, s, as_float(np.asarray(h) * np.asarray(s))

    def quantile(self, p):
        """
        Inverse of the distribution function.

        Locates the interval whose cumulative hazard range contains -log(1-p)
        and solves linearly within it. Levels that are never reached because
        the last hazard is zero give infinity.

        Raises:
            ValueError: if p is outside [0, 1)
        """
        p = np.asarray(p, dtype=float)
        if np.any(~((p >= 0) & (p < 1))):
            raise ValueError("p must be in [0, 1)")

        target = -np.log1p(-p)
        # a target reached on a zero hazard plateau maps to the plateau start
        idx = np.searchsorted(self._cumhaz_at_start, target, side="left") - 1
        idx = np.clip(idx, 0, len(self._starts) - 1)
        rate = self._rates[idx]
        remaining = target - self._cumhaz_at_start[idx]

        with np.errstate(divide="ignore", invalid="ignore"):
            t = np.where(
                rate > 0,
                self._starts[idx] + remaining / rate,
                np.where(remaining > 0, np.inf, self._starts[idx]),
            )
        return as_float(np.where(p == 0, 0.0, t))

    def sample(self, n: int, rng: Optional[np.random.Generator] = None, discrete: bool = False) -> NDArray[np.float64]:
        """
        Generate random samples by inverse transform sampling.

        Args:
            n: Number of samples to generate
            rng: Random number generator or seed
            discrete: Round the times up to the next integer (ceiling), for
                time scales that are naturally whole days

        Returns:
            Array of event times (inf where the event never happens)
        """
        rng = np.random.default_rng(rng)
        u = rng.uniform(size=int(n))
        times = np.asarray(self.quantile(u), dtype=float).reshape(-1)
        if discrete:
            times = np.ceil(times)
        return times

    def rmst(self, cutoff: float) -> float:
        """
        Restricted mean survival time, integral of S over [0, cutoff].

        Closed form per interval: S(t_i) (1 - exp(-rate * d)) / rate.
        """
        if cutoff <= 0:
            return 0.0
        ends = np.append(self._starts[1:], np.inf)
        total = 0.0
        for start, end, rate, H0 in zip(self._starts, ends, self._rates, self._cumhaz_at_start):
            if start >= cutoff:
                break
            d = min(end, cutoff) - start
            s0 = np.exp(-H0)
            if rate == 0:
                total += s0 * d
            else:
                total += s0 * -np.expm1(-rate * d) / rate
        return float(total)

    def limit_survival(self) -> float:
        """Probability of never having the event."""
        if self._rates[-1] > 0:
            return 0.0
        return float(np.exp(-self._cumhaz_at_start[-1]))

    def median(self) -> float:
        """Calculate the median survival time."""
        return self.quantile(0.5)
