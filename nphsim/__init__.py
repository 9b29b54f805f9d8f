"""
Simulation of clinical trials with non-proportional hazards

This package generates time-to-event data for two arm trials under
piecewise constant hazards and multi-state models (e.g. changing hazards
after disease progression), applies recruitment and censoring, and
calculates the true values of the summary statistics that estimators are
compared with.

Based on the simulation scenarios of the R package 'SimNPH'.
"""

__version__ = "0.1.0"

from .piecewise import PiecewiseHazardModel
from .multistate import MultiStateModel, StateEventModel
from .sampler import (
    generate, generate_progression_times, apply_recruitment, apply_random_censoring,
    apply_admin_censoring, apply_admin_censoring_events, censor
)
from .true_statistics import real_statistics, median_survival, gahr, ahr, ahr_oc
from .calibration import (
    hr_required_schoenfeld, progression_rate_from_progression_prop,
    cen_rate_from_cen_prop_progression, cen_rate_from_cen_prop_delayed_effect,
    hazard_before_progression_from_ph_effect_size
)
from .design import (
    expand_grid, merge_designs, map_rows,
    ProgressionAssumptions, DelayedEffectAssumptions, FixedFollowupDesign
)
from .scenarios import (
    generate_progression, true_summary_statistics_progression,
    generate_delayed_effect, true_summary_statistics_delayed_effect
)
from .summary import (
    AnalysisResult, results_frame, summarise_test, summarise_estimator, summarise_design
)
from .utils import (
    NumericalWarning, ConvergenceError, m2d, d2m, w2d, d2w, y2d, d2y, m2r, r2m
)

__all__ = [
    # Models
    'PiecewiseHazardModel', 'MultiStateModel', 'StateEventModel',
    # Sampling and censoring
    'generate', 'generate_progression_times', 'apply_recruitment', 'apply_random_censoring',
    'apply_admin_censoring', 'apply_admin_censoring_events', 'censor',
    # True statistics
    'real_statistics', 'median_survival', 'gahr', 'ahr', 'ahr_oc',
    # Calibration
    'hr_required_schoenfeld', 'progression_rate_from_progression_prop',
    'cen_rate_from_cen_prop_progression', 'cen_rate_from_cen_prop_delayed_effect',
    'hazard_before_progression_from_ph_effect_size',
    # Designs
    'expand_grid', 'merge_designs', 'map_rows',
    'ProgressionAssumptions', 'DelayedEffectAssumptions', 'FixedFollowupDesign',
    # Scenarios
    'generate_progression', 'true_summary_statistics_progression',
    'generate_delayed_effect', 'true_summary_statistics_delayed_effect',
    # Operating characteristics
    'AnalysisResult', 'results_frame', 'summarise_test', 'summarise_estimator', 'summarise_design',
    # Utilities
    'NumericalWarning', 'ConvergenceError', 'm2d', 'd2m', 'w2d', 'd2w', 'y2d', 'd2y', 'm2r', 'r2m',
]
