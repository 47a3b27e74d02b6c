"""
Delay model runner.

Runs the modeling pipeline end to end:
1. Load the cleaned delay table (or simulate one) and subsample it
2. Fit the Bayesian regression, or reuse a saved fit
3. Compute diagnostics, summaries and in-sample fit statistics
4. Write report tables (CSV) and figures (PNG)

Usage:
    transit-delay-model                           # Fit on the default dataset
    transit-delay-model --data delays.parquet     # Fit on another table
    transit-delay-model --reuse                   # Report from the saved fit
    transit-delay-model --synthetic               # Fit a synthetic scenario
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from delays.dataset import DelayDataset
from inference.diagnostics import diagnose
from inference.errors import FitFailed, InvalidSpec
from inference.model_builder import default_delay_spec
from inference.sampler import FittedModel, NUTSSampler
from pipeline.config import (
    CREDIBLE_INTERVAL,
    DEFAULT_ARTIFACT,
    DEFAULT_DATASET,
    FIGURES_DIR,
    PRIOR_SCALE,
    RHAT_THRESHOLD,
    SAMPLE_FRACTION,
    SAMPLE_SEED,
    SAMPLER_CONFIG,
    SIGMA_RATE,
    SYNTHETIC_SCENARIO,
    TABLES_DIR,
)
from posterior.summary import goodness_of_fit, predicted_delay_by_hour, summarize
from simulation.simulator import DelayScenarioSimulator
from visualization.plots import (
    plot_predicted_delay_by_hour,
    plot_rhat,
    plot_trace,
    save_figure,
)

logger = logging.getLogger(__name__)


def load_dataset(args: argparse.Namespace) -> DelayDataset:
    """Load or simulate the training table and apply the seeded subsample."""
    if args.synthetic:
        sim = DelayScenarioSimulator(
            SYNTHETIC_SCENARIO["mode_means"],
            noise_sd=SYNTHETIC_SCENARIO["noise_sd"],
        )
        return sim.generate(SYNTHETIC_SCENARIO["n_rows"], random_seed=args.sample_seed)

    dataset = DelayDataset.from_parquet(args.data)
    if args.sample_fraction < 1.0:
        dataset = dataset.subsample(args.sample_fraction, random_seed=args.sample_seed)
    return dataset


def write_tables(tables: Dict[str, pd.DataFrame], output_dir: Path) -> List[Path]:
    """Write report tables as CSV."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name, table in tables.items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path)
        logger.info(f"Wrote table {path}")
        paths.append(path)
    return paths


def run(args: argparse.Namespace) -> Dict[str, object]:
    """Fit (or reload) the model and produce every report output."""
    dataset = load_dataset(args)
    logger.info(f"Training table: {dataset}")

    if args.reuse and args.artifact.exists():
        fitted = FittedModel.load(args.artifact)
    else:
        spec = default_delay_spec(dataset.schema, prior_scale=PRIOR_SCALE, sigma_rate=SIGMA_RATE)
        sampler = NUTSSampler(
            target_accept=SAMPLER_CONFIG["target_accept"],
            max_treedepth=SAMPLER_CONFIG["max_treedepth"],
        )
        fitted = sampler.fit(
            dataset,
            spec,
            chains=args.chains,
            draws=args.draws,
            tune=args.tune,
            cores=args.cores,
            random_seed=args.seed,
            timeout=args.timeout,
        )
        fitted.save(args.artifact)

    diagnostics = diagnose(fitted, threshold=RHAT_THRESHOLD)
    summary = summarize(fitted, ci=CREDIBLE_INTERVAL, rhat_threshold=RHAT_THRESHOLD)
    gof = goodness_of_fit(fitted, dataset)
    by_hour = predicted_delay_by_hour(fitted)

    rhat_table = pd.DataFrame(
        {"r_hat": pd.Series(diagnostics.rhat), "ess": pd.Series(diagnostics.ess)}
    )
    rhat_table.index.name = "parameter"

    tables = {
        "parameter_summary": summary,
        "goodness_of_fit": gof.to_frame().set_index("metric"),
        "rhat": rhat_table,
        "predicted_delay_by_hour": by_hour.set_index(["mode", "hour"]),
    }
    write_tables(tables, args.tables_dir)

    if not args.no_figures:
        save_figure(plot_trace(diagnostics.trace), "trace.png", args.figures_dir)
        save_figure(plot_rhat(diagnostics.rhat, RHAT_THRESHOLD), "rhat.png", args.figures_dir)
        save_figure(plot_predicted_delay_by_hour(by_hour), "predicted_delay_by_hour.png", args.figures_dir)

    if not diagnostics.converged:
        logger.warning(f"Non-converged parameters: {diagnostics.flagged}")
    if fitted.divergences:
        logger.warning(f"Fit recorded {fitted.divergences} divergent transitions")

    return {
        "fitted": fitted,
        "diagnostics": diagnostics,
        "summary": summary,
        "goodness_of_fit": gof,
        "predicted_delay_by_hour": by_hour,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fit the Bayesian transit delay regression")
    parser.add_argument("--data", type=Path, default=DEFAULT_DATASET,
                        help="Cleaned delay table (parquet)")
    parser.add_argument("--synthetic", action="store_true",
                        help="Fit a simulated scenario instead of --data")
    parser.add_argument("--sample-fraction", type=float, default=SAMPLE_FRACTION,
                        help="Share of rows kept for fitting")
    parser.add_argument("--sample-seed", type=int, default=SAMPLE_SEED,
                        help="Seed of the row subsample")
    parser.add_argument("--chains", type=int, default=SAMPLER_CONFIG["chains"])
    parser.add_argument("--draws", type=int, default=SAMPLER_CONFIG["draws"])
    parser.add_argument("--tune", type=int, default=SAMPLER_CONFIG["tune"])
    parser.add_argument("--cores", type=int, default=None)
    parser.add_argument("--seed", type=int, default=SAMPLER_CONFIG["random_seed"],
                        help="Global sampler seed")
    parser.add_argument("--timeout", type=float, default=SAMPLER_CONFIG["timeout"],
                        help="Wall-clock budget for the fit in seconds")
    parser.add_argument("--artifact", type=Path, default=DEFAULT_ARTIFACT,
                        help="Where the fitted model is written / read")
    parser.add_argument("--reuse", action="store_true",
                        help="Load --artifact instead of fitting when it exists")
    parser.add_argument("--tables-dir", type=Path, default=TABLES_DIR)
    parser.add_argument("--figures-dir", type=Path, default=FIGURES_DIR)
    parser.add_argument("--no-figures", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        run(args)
    except (InvalidSpec, FitFailed) as e:
        logger.error(f"Model run failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
