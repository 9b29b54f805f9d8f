"""
Scenario design tables.

A design is a DataFrame with one scenario per row and named numeric
parameters as columns. The builders below create fully specified designs,
all times are in days and all rates are per day.
"""

import itertools
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Callable, Mapping, Sequence

import numpy as np
import pandas as pd

from .utils import ConvergenceError, m2d, m2r


def expand_grid(values: Mapping[str, Sequence]) -> pd.DataFrame:
    """All combinations of the given parameter values, one row each."""
    columns = {k: np.atleast_1d(v).tolist() for k, v in values.items()}
    rows = list(itertools.product(*columns.values()))
    return pd.DataFrame(rows, columns=list(columns.keys()))


def merge_designs(first: pd.DataFrame, second: pd.DataFrame) -> pd.DataFrame:
    """Cross product of two designs."""
    duplicated = set(first.columns) & set(second.columns)
    if duplicated:
        raise ValueError(f"Columns present in both designs: {sorted(duplicated)}")
    return first.merge(second, how="cross")


def _apply(fn, condition, row):
    try:
        return fn(condition, row)
    except ConvergenceError as e:
        raise ConvergenceError(f"Design row {row}: {e}") from e


def map_rows(
    design: pd.DataFrame,
    fn: Callable,
    executor=None,
    **kwargs,
) -> pd.DataFrame:
    """
    Apply fn(condition, row, **kwargs) to every row of a design.

    Each condition is passed as a plain dict, fn returns the augmented row as
    a dict. The result has one row per design row, in the same order and
    with the same index labels; `row` is the position. With an executor
    (e.g. concurrent.futures.ProcessPoolExecutor) the rows are processed in
    parallel; fn then has to be picklable.
    """
    conditions = design.to_dict("records")
    rows = range(len(conditions))
    apply = partial(_apply, partial(fn, **kwargs))

    if executor is None:
        results = [apply(c, i) for c, i in zip(conditions, rows)]
    else:
        results = list(executor.map(apply, conditions, rows))

    if not results:
        return design.copy()
    result = pd.DataFrame(results, index=design.index)
    # original columns first
    columns = list(design.columns) + [c for c in result.columns if c not in design.columns]
    return result[columns]


@dataclass
class ProgressionAssumptions:
    """
    Assumptions for scenarios with a change of hazard after disease
    progression. Every field is a sequence of values, the design contains
    all combinations.
    """
    hazard_ctrl: Sequence[float] = field(default_factory=lambda: [m2r(24)])
    hazard_trt: Sequence[float] = field(default_factory=lambda: [m2r(36)])
    hazard_after_prog: Sequence[float] = field(default_factory=lambda: [m2r(6)])
    prog_rate_ctrl: Sequence[float] = field(default_factory=lambda: [m2r(12)])
    prog_rate_trt: Sequence[float] = field(default_factory=lambda: list(m2r([12, 16, 18])))
    random_withdrawal: Sequence[float] = field(default_factory=lambda: [m2r(120)])

    def to_design(self) -> pd.DataFrame:
        return expand_grid(asdict(self))


@dataclass
class DelayedEffectAssumptions:
    """Assumptions for scenarios with a delayed onset of the treatment effect."""
    delay: Sequence[float] = field(default_factory=lambda: list(m2d([0, 2, 4, 6, 8, 10])))
    hazard_ctrl: Sequence[float] = field(default_factory=lambda: [m2r(24)])
    hazard_trt: Sequence[float] = field(default_factory=lambda: [m2r(36)])
    random_withdrawal: Sequence[float] = field(default_factory=lambda: [m2r(120)])

    def to_design(self) -> pd.DataFrame:
        return expand_grid(asdict(self))


@dataclass
class FixedFollowupDesign:
    """Sample sizes and timing of an analysis after a fixed follow up."""
    n_trt: Sequence[int] = field(default_factory=lambda: [150])
    n_ctrl: Sequence[int] = field(default_factory=lambda: [150])
    recruitment: Sequence[float] = field(default_factory=lambda: [m2d(6)])
    followup: Sequence[float] = field(default_factory=lambda: [m2d(24)])

    def to_design(self) -> pd.DataFrame:
        design = expand_grid(asdict(self))
        if (design["followup"] < design["recruitment"]).any():
            raise ValueError("followup must not be shorter than recruitment")
        return design
