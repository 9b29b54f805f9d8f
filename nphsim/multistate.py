"""
Multi-state models with piecewise constant transition intensities.

State occupation probabilities are propagated piece by piece with matrix
exponentials, p(t) = p(t_i) exp(Q_i (t - t_i)), using scipy's
scaling-and-squaring Pade implementation which is stable for the small
intensity matrices and the range of rates used in the scenarios.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.linalg import expm

from .utils import ConvergenceError, as_float, integrate, uniroot


@dataclass(frozen=True, eq=False)
class MultiStateModel:
    """
    Continuous time Markov model with piecewise constant intensities.

    Attributes:
        breakpoints: Start of each piece, strictly increasing, starting at 0
        intensities: Transition intensity matrices, shape (pieces, m, m);
            off-diagonal entries are transition rates, the diagonal is set to
            the negative row sum
        initial: Initial state distribution
        absorbing: Boolean mask of the absorbing states
        states: State names
    """
    breakpoints: Sequence[float]
    intensities: NDArray[np.float64]
    initial: Sequence[float]
    absorbing: Sequence[bool]
    states: Optional[Sequence[str]] = None

    def __post_init__(self):
        breakpoints = np.atleast_1d(np.array(self.breakpoints, dtype=float))
        Q = np.array(self.intensities, dtype=float)
        if Q.ndim == 2:
            Q = Q[np.newaxis]
        initial = np.array(self.initial, dtype=float)
        absorbing = np.array(self.absorbing).astype(bool)

        if Q.ndim != 3 or Q.shape[1] != Q.shape[2]:
            raise ValueError("intensities must be square matrices")
        k, m, _ = Q.shape
        if len(breakpoints) != k:
            raise ValueError("Number of breakpoints must equal number of intensity matrices")
        if breakpoints[0] != 0:
            raise ValueError("breakpoints must start at 0")
        if np.any(np.diff(breakpoints) <= 0) or not np.all(np.isfinite(breakpoints)):
            raise ValueError("breakpoints must be finite and strictly increasing")
        if initial.shape != (m,) or absorbing.shape != (m,):
            raise ValueError(f"initial and absorbing must have length {m}")

        off_diagonal = ~np.eye(m, dtype=bool)
        if not np.all(np.isfinite(Q)):
            raise ValueError("intensities must be finite")
        if np.any(Q[:, off_diagonal] < 0):
            raise ValueError("Off-diagonal intensities must be non-negative")
        Q[:, ~off_diagonal] = 0.0
        Q[:, np.arange(m), np.arange(m)] = -Q.sum(axis=2)
        if np.any(Q[:, absorbing, :] != 0):
            raise ValueError("Absorbing states must not have outgoing intensities")

        if np.any(initial < 0) or not np.isclose(initial.sum(), 1.0, rtol=0, atol=1e-12):
            raise ValueError("initial must be a probability vector")

        states = tuple(str(i) for i in range(m)) if self.states is None else tuple(self.states)
        if len(states) != m or len(set(states)) != m:
            raise ValueError(f"states must be {m} unique names")

        for arr in (breakpoints, Q, initial, absorbing):
            arr.setflags(write=False)
        object.__setattr__(self, "breakpoints", breakpoints)
        object.__setattr__(self, "intensities", Q)
        object.__setattr__(self, "initial", initial)
        object.__setattr__(self, "absorbing", absorbing)
        object.__setattr__(self, "states", states)

    @classmethod
    def illness_death(cls, hazard: float, prog_rate: float, hazard_after_prog: float) -> "MultiStateModel":
        """
        Disease progression model with constant rates.

        stable -> progressed (prog_rate), stable -> dead (hazard),
        progressed -> dead (hazard_after_prog).
        """
        Q = [
            [0.0, prog_rate, hazard],
            [0.0, 0.0, hazard_after_prog],
            [0.0, 0.0, 0.0],
        ]
        return cls(
            breakpoints=[0.0],
            intensities=Q,
            initial=[1.0, 0.0, 0.0],
            absorbing=[False, False, True],
            states=("stable", "progressed", "dead"),
        )

    @classmethod
    def illness_death_tracked(cls, hazard: float, prog_rate: float, hazard_after_prog: float) -> "MultiStateModel":
        """
        Disease progression model where death is split by whether it was
        preceded by progression.
        """
        Q = [
            [0.0, prog_rate, hazard, 0.0],
            [0.0, 0.0, 0.0, hazard_after_prog],
            [0.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 0.0, 0.0],
        ]
        return cls(
            breakpoints=[0.0],
            intensities=Q,
            initial=[1.0, 0.0, 0.0, 0.0],
            absorbing=[False, False, True, True],
            states=("stable", "progressed", "dead", "dead_after_progression"),
        )

    @property
    def n_states(self) -> int:
        return len(self.states)

    def state_mask(self, states=None) -> NDArray[np.bool_]:
        """Boolean mask from state names or indices, absorbing states if None."""
        if states is None:
            return self.absorbing.copy()
        mask = np.zeros(self.n_states, dtype=bool)
        for s in np.atleast_1d(states):
            if isinstance(s, (str, np.str_)):
                if s not in self.states:
                    raise ValueError(f"Unknown state: {s}")
                mask[self.states.index(s)] = True
            else:
                mask[int(s)] = True
        return mask

    def _piece(self, t: NDArray[np.float64]) -> NDArray[np.int64]:
        idx = np.searchsorted(self.breakpoints, t, side="right") - 1
        return np.clip(idx, 0, len(self.breakpoints) - 1)

    @cached_property
    def _occupancy_at_start(self) -> NDArray[np.float64]:
        p = [self.initial]
        for i in range(len(self.breakpoints) - 1):
            dt = self.breakpoints[i + 1] - self.breakpoints[i]
            p.append(p[-1] @ expm(self.intensities[i] * dt))
        return np.array(p)

    def occupancy(self, t) -> NDArray[np.float64]:
        """
        State occupation probabilities at time t.

        Args:
            t: Time point(s), finite; negative times give the initial
               distribution

        Returns:
            Array of shape (m,) for scalar t, (len(t), m) otherwise
        """
        t = np.asarray(t, dtype=float)
        scalar_input = t.ndim == 0
        t = np.maximum(np.atleast_1d(t), 0.0)
        if not np.all(np.isfinite(t)):
            raise ValueError("t must be finite")

        result = np.empty((len(t), self.n_states))
        pieces = self._piece(t)
        for i in np.unique(pieces):
            mask = pieces == i
            dt = t[mask] - self.breakpoints[i]
            P = expm(self.intensities[i][np.newaxis] * dt[:, np.newaxis, np.newaxis])
            result[mask] = np.einsum("j,njk->nk", self._occupancy_at_start[i], P)

        # remove rounding noise
        result = np.clip(result, 0.0, 1.0)
        if scalar_input:
            return result[0]
        return result

    def cumulative_absorption(self, t, states=None):
        """
        Probability of being in one of `states` (default: the absorbing
        states) at time t. For absorbing states this is the probability of
        having been absorbed by time t.
        """
        mask = self.state_mask(states)
        occ = self.occupancy(t)
        return as_float(occ[..., mask].sum(axis=-1))

    def event_process(self, states=None) -> "StateEventModel":
        """
        Survival model of the time of first entry into `states`.

        The set of states has to be closed: no intensity may lead out of it.
        Defaults to the absorbing states (all cause event).
        """
        mask = self.state_mask(states)
        if not mask.any():
            raise ValueError("At least one state is required")
        if np.any(self.intensities[:, mask][:, :, ~mask] > 0):
            raise ValueError("Event states must not have transitions out of the set")
        return StateEventModel(model=self, mask=mask)

    def transition_time_sample(self, n: int, rng: Optional[np.random.Generator] = None,
                               max_steps: int = 100_000) -> pd.DataFrame:
        """
        Simulate n independent paths until absorption.

        Within a piece each sojourn is the minimum of competing exponentials;
        a sojourn that crosses the end of its piece restarts at the next
        breakpoint with the new intensities.

        Args:
            n: Number of paths
            rng: Random number generator or seed
            max_steps: Maximal number of simulation steps

        Returns:
            DataFrame with columns t (absorption time, inf if never absorbed),
            state (index of the final state) and t_<state> (first entry time
            into each state, inf if never entered)
        """
        rng = np.random.default_rng(rng)
        n = int(n)
        m = self.n_states
        ends = np.append(self.breakpoints[1:], np.inf)

        state = rng.choice(m, size=n, p=self.initial)
        time = np.zeros(n)
        entry = np.full((n, m), np.inf)
        entry[np.arange(n), state] = 0.0
        active = ~self.absorbing[state]

        steps = 0
        while active.any():
            steps += 1
            if steps > max_steps:
                raise ConvergenceError("Path simulation did not reach absorption")
            idx = np.flatnonzero(active)
            piece = self._piece(time[idx])
            rows = self.intensities[piece, state[idx]].copy()
            exit_rate = -rows[np.arange(len(idx)), state[idx]]
            rows[np.arange(len(idx)), state[idx]] = 0.0

            with np.errstate(divide="ignore"):
                sojourn = np.where(exit_rate > 0, rng.exponential(size=len(idx)) / exit_rate, np.inf)
            jump = time[idx] + sojourn < ends[piece]

            # no transition within the piece: move to the next breakpoint
            stay = idx[~jump]
            time[stay] = ends[piece[~jump]]
            active[stay[np.isinf(time[stay])]] = False

            move = idx[jump]
            if len(move) > 0:
                time[move] = time[move] + sojourn[jump]
                probs = np.cumsum(rows[jump] / exit_rate[jump, np.newaxis], axis=1)
                u = rng.uniform(size=len(move))
                dest = np.minimum((u[:, np.newaxis] >= probs).sum(axis=1), m - 1)
                state[move] = dest
                first = np.isinf(entry[move, dest])
                entry[move[first], dest[first]] = time[move[first]]
                active[move] = ~self.absorbing[dest]

        absorbed = self.absorbing[state]
        data = {
            "t": np.where(absorbed, time, np.inf),
            "state": state,
        }
        for j, name in enumerate(self.states):
            data[f"t_{name}"] = entry[:, j]
        return pd.DataFrame(data)


@dataclass(frozen=True, eq=False)
class StateEventModel:
    """
    Survival model view of a multi-state model: the event is the first entry
    into a closed set of states.
    """
    model: MultiStateModel
    mask: NDArray[np.bool_]

    @property
    def breakpoints(self):
        return tuple(self.model.breakpoints)

    def survival(self, t):
        """Probability of not having entered the event states by t."""
        occ = self.model.occupancy(t)
        return as_float(np.clip(1.0 - occ[..., self.mask].sum(axis=-1), 0.0, 1.0))

    def cumulative_hazard(self, t):
        with np.errstate(divide="ignore"):
            return as_float(-np.log(np.asarray(self.survival(t))))

    def evaluate(self, t):
        """
        Hazard, survival and density at t from a single occupancy evaluation.

        The density is the probability flux into the event states, the sum
        over event states j of (p(t) Q(t))_j.
        """
        t = np.asarray(t, dtype=float)
        scalar_input = t.ndim == 0
        t = np.maximum(np.atleast_1d(t), 0.0)
        occ = self.model.occupancy(t)
        Q = self.model.intensities[self.model._piece(t)]
        f = np.einsum("nj,njk->nk", occ, Q)[:, self.mask].sum(axis=1)
        f = np.maximum(f, 0.0)
        s = np.clip(1.0 - occ[:, self.mask].sum(axis=1), 0.0, 1.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            h = np.where(s > 0, f / s, np.nan)
        if scalar_input:
            return float(h[0]), float(s[0]), float(f[0])
        return h, s, f

    def density(self, t):
        return self.evaluate(t)[2]

    def hazard(self, t):
        return self.evaluate(t)[0]

    def _time_scale(self) -> float:
        rates = -self.model.intensities[:, np.arange(self.model.n_states), np.arange(self.model.n_states)]
        positive = rates[rates > 0]
        if len(positive) == 0:
            return np.inf
        return max(float(self.model.breakpoints[-1]), 1.0 / positive.max())

    def limit_survival(self) -> float:
        """
        Probability of never entering the event states.

        After the last breakpoint, the probability h_i of eventually entering
        the event states from state i solves Q h = 0 on the states with a
        path into the event set, with h = 1 on the event states and h = 0
        elsewhere.
        """
        Q = self.model.intensities[-1]
        reach = self.mask.copy()
        while True:
            grown = reach | (Q[:, reach] > 0).any(axis=1)
            if (grown == reach).all():
                break
            reach = grown
        transient = reach & ~self.mask
        hit = self.mask.astype(float)
        if transient.any():
            hit[transient] = np.linalg.solve(
                Q[np.ix_(transient, transient)],
                -Q[np.ix_(transient, self.mask)].sum(axis=1),
            )
        entered = self.model._occupancy_at_start[-1] @ hit
        return float(np.clip(1.0 - entered, 0.0, 1.0))

    def quantile(self, p, max_extensions: int = 200):
        """
        Time by which a proportion p has had the event.

        Levels at or above 1 - limit_survival() are never reached and give
        infinity. Other levels are found by bracketed root finding, the
        bracket is doubled at most `max_extensions` times.

        Raises:
            ValueError: if p is outside [0, 1)
        """
        p = np.asarray(p, dtype=float)
        if np.any(~((p >= 0) & (p < 1))):
            raise ValueError("p must be in [0, 1)")
        scalar_input = p.ndim == 0
        p = np.atleast_1d(p)

        result = np.empty(len(p))
        scale = self._time_scale()
        reachable = 1.0 - self.limit_survival()
        for i, level in enumerate(p):
            def F(t):
                return (1.0 - self.survival(t)) - level

            if F(0.0) >= 0:
                result[i] = 0.0
                continue
            if level >= reachable or not np.isfinite(scale):
                result[i] = np.inf
                continue
            upper = scale
            bracketed = False
            for _ in range(max_extensions):
                value = F(upper)
                # occupancy is not finite for very large times
                if not np.isfinite(value):
                    break
                if value >= 0:
                    bracketed = True
                    break
                upper *= 2
            if not bracketed:
                result[i] = np.inf
                continue
            result[i] = uniroot(F, 0.0, upper, what=f"{level:g} quantile")

        if scalar_input:
            return float(result[0])
        return result

    def median(self) -> float:
        return self.quantile(0.5)

    def rmst(self, cutoff: float) -> float:
        """Restricted mean survival time by quadrature."""
        return integrate(self.survival, 0.0, cutoff, points=self.model.breakpoints[1:], what="RMST")

    def sample(self, n: int, rng: Optional[np.random.Generator] = None) -> NDArray[np.float64]:
        """Sample times of first entry into the event states."""
        paths = self.model.transition_time_sample(n, rng)
        names = [f"t_{s}" for s, m in zip(self.model.states, self.mask) if m]
        return paths[names].min(axis=1).to_numpy()
