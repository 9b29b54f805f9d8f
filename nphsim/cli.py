"""
nphsim command line interface.

Usage:
    nphsim assumptions progression                     # default design as CSV
    nphsim true-stats progression design.csv --what pfs --cutoff 12m=365.25
    nphsim calibrate hazard-trt design.csv --power 0.8 --final-events 200
"""

import argparse
import sys

import pandas as pd

from .calibration import (
    cen_rate_from_cen_prop_delayed_effect,
    cen_rate_from_cen_prop_progression,
    hazard_before_progression_from_ph_effect_size,
    progression_rate_from_progression_prop,
)
from .design import (
    DelayedEffectAssumptions,
    FixedFollowupDesign,
    ProgressionAssumptions,
    merge_designs,
)
from .scenarios import (
    true_summary_statistics_delayed_effect,
    true_summary_statistics_progression,
)
from .utils import ConvergenceError

SCENARIOS = ("progression", "delayed_effect")


def parse_named_time(text: str):
    """Parse NAME=VALUE or a bare VALUE (named by its value)."""
    name, sep, value = text.rpartition("=")
    try:
        time = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid time: {text}, use NAME=VALUE or VALUE")
    if sep and not name:
        raise argparse.ArgumentTypeError(f"Empty name in {text}")
    return (name or f"{time:g}", time)


def _times(pairs):
    return dict(pairs) if pairs else None


def _write(design: pd.DataFrame, output) -> None:
    if output:
        design.to_csv(output, index=False)
    else:
        design.to_csv(sys.stdout, index=False)


def assumptions(args) -> pd.DataFrame:
    if args.scenario == "progression":
        scenario = ProgressionAssumptions().to_design()
    else:
        scenario = DelayedEffectAssumptions().to_design()
    return merge_designs(scenario, FixedFollowupDesign().to_design())


def true_stats(args) -> pd.DataFrame:
    design = pd.read_csv(args.design)
    kwargs = dict(
        cutoff_stats=_times(args.cutoff),
        milestones=_times(args.milestone),
        t_max=args.t_max,
        strict=args.strict,
    )
    if args.scenario == "progression":
        return true_summary_statistics_progression(design, what=args.what, **kwargs)
    if args.what != "os":
        raise ValueError("--what is only available for the progression scenario")
    return true_summary_statistics_delayed_effect(design, **kwargs)


def calibrate(args) -> pd.DataFrame:
    design = pd.read_csv(args.design)
    if args.target == "progression-rate":
        return progression_rate_from_progression_prop(design, strict=args.strict)
    if args.target == "censoring-rate":
        if args.scenario == "progression":
            return cen_rate_from_cen_prop_progression(design, strict=args.strict)
        return cen_rate_from_cen_prop_delayed_effect(design, strict=args.strict)
    return hazard_before_progression_from_ph_effect_size(
        design,
        target_power_ph=args.power,
        final_events=args.final_events,
        target_alpha=args.alpha,
        strict=args.strict,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nphsim",
        description="Simulation scenarios with non-proportional hazards",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nphsim assumptions delayed_effect > design.csv
  nphsim true-stats delayed_effect design.csv --cutoff 365 --milestone 1y=365.25
  nphsim calibrate censoring-rate design.csv --scenario progression -o out.csv
        """
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("assumptions", help="Print the default design as CSV")
    p.add_argument("scenario", choices=SCENARIOS)
    p.add_argument("-o", "--output", help="Output CSV file (default: stdout)")
    p.set_defaults(func=assumptions)

    p = sub.add_parser("true-stats", help="Add true summary statistics to a design")
    p.add_argument("scenario", choices=SCENARIOS)
    p.add_argument("design", help="Design CSV file")
    p.add_argument("--what", choices=("os", "pfs"), default="os",
                   help="Endpoint of the progression scenario (default: os)")
    p.add_argument("--cutoff", type=parse_named_time, action="append",
                   help="Cutoff for RMST and average hazard ratios, NAME=VALUE or VALUE")
    p.add_argument("--milestone", type=parse_named_time, action="append",
                   help="Milestone time, NAME=VALUE or VALUE")
    p.add_argument("--t-max", type=float, help="Upper bound for root finding")
    p.add_argument("--strict", action="store_true", help="Fail on numerical errors")
    p.add_argument("-o", "--output", help="Output CSV file (default: stdout)")
    p.set_defaults(func=true_stats)

    p = sub.add_parser("calibrate", help="Calibrate rates from design quantities")
    p.add_argument("target", choices=("progression-rate", "censoring-rate", "hazard-trt"))
    p.add_argument("design", help="Design CSV file")
    p.add_argument("--scenario", choices=SCENARIOS, default="progression",
                   help="Scenario of the censoring rate calibration (default: progression)")
    p.add_argument("--power", type=float, help="Target power under PH (default: column effect_size_ph)")
    p.add_argument("--final-events", type=float, help="Events at the analysis (default: column final_events)")
    p.add_argument("--alpha", type=float, default=0.025, help="One-sided significance level (default: 0.025)")
    p.add_argument("--strict", action="store_true", help="Fail on rows without a solution")
    p.add_argument("-o", "--output", help="Output CSV file (default: stdout)")
    p.set_defaults(func=calibrate)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        result = args.func(args)
    except (ValueError, ConvergenceError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _write(result, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
