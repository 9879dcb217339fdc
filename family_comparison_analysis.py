#!/usr/bin/env python
"""
Noise-Family Comparison for Self-Paced Reading Times
====================================================

Fits the same Bayesian mixed-effects regression of mean reading time on
lexical predictors under five noise distributions and ranks them by
predictive accuracy.

Model (shared by every family):
    mean_rt ~ log_unigram_freq + log_bigram_prob + word_length
              + (1 | story) + (1 | position)

Families:
- lognormal
- shifted lognormal
- inverse Gaussian (Wald)
- Weibull
- ex-Gaussian

Models are compared with PSIS-LOO and WAIC. Posterior-predictive draws are
written to disk for plotting.

Usage:
    python family_comparison_analysis.py --iterations 3000
    python family_comparison_analysis.py -f lognormal -f wald --n-stories 2 -i 1500
"""

import argparse
import logging
import warnings
from pathlib import Path

import arviz as az
import numpy as np
import pandas as pd

from family_fits import (
    DEFAULT_ITERATIONS,
    N_CHAINS,
    RANDOM_SEED,
    BambiEngine,
    FitStatus,
    FitStore,
    SamplerSettings,
    fit_families,
)
from model_comparison import compare_models
from model_specification import reading_time_specification
from reading_time_data import (
    EXCLUDED_ATTR,
    aggregate_reading_times,
    describe_analysis_table,
    load_frequency_table,
    load_reading_times,
    merge_frequency_and_reading_times,
)
from reading_time_families import Family

warnings.filterwarnings("ignore", category=FutureWarning)

logger = logging.getLogger(__name__)

DEFAULT_UNIGRAM_PATH = "data/freqs/freqs-1.tsv"
DEFAULT_BIGRAM_PATH = "data/freqs/freqs-2.tsv"
DEFAULT_RT_PATH = "data/processed_wordinfo.tsv"


def load_analysis_table(
    unigram_path, bigram_path, rt_path, n_stories: int = None, raw_rts: bool = False
) -> pd.DataFrame:
    """
    Load the three sources and merge them into the analysis table.

    Parameters
    ----------
    unigram_path, bigram_path : str
        Headerless n-gram frequency files
    rt_path : str
        Reading-time file; mean RTs per token, or per-trial RTs when
        ``raw_rts`` is set
    n_stories : int, optional
        Keep only the first ``n_stories`` stories (for faster testing)
    raw_rts : bool
        Average per-trial RTs before merging

    Returns
    -------
    pd.DataFrame
        Analysis table
    """
    reading_times = load_reading_times(rt_path)
    if raw_rts:
        reading_times = aggregate_reading_times(reading_times)

    table = merge_frequency_and_reading_times(
        load_frequency_table(unigram_path),
        load_frequency_table(bigram_path),
        reading_times,
    )

    print(f"  Merged {len(table):,} tokens from {table['story'].nunique()} stories")
    print(f"  Excluded {table.attrs.get(EXCLUDED_ATTR, 0)} tokens with zero bigram count")

    if n_stories is not None:
        stories = sorted(table["story"].unique())[:n_stories]
        attrs = dict(table.attrs)
        table = table[table["story"].isin(stories)].reset_index(drop=True)
        table.attrs = attrs
        print(f"\nSubsampled to {n_stories} stories: {len(table):,} tokens")

    return table


def run_analysis(
    table: pd.DataFrame,
    engine,
    families=tuple(Family),
    store: FitStore = None,
    settings: SamplerSettings = SamplerSettings(),
    max_workers: int = None,
    timeout: float = None,
    include_unreliable: bool = False,
    spec=None,
):
    """
    Fit every requested family and compare the results.

    Returns
    -------
    tuple
        (fits, report)
    """
    spec = spec or reading_time_specification()
    families = [Family.parse(f) for f in families]

    print(f"\nModel: {spec.describe()}")

    fits = fit_families(
        spec,
        table,
        engine,
        families=families,
        store=store,
        settings=settings,
        max_workers=max_workers,
        timeout=timeout,
    )
    for fit in fits:
        if fit.priors is not None:
            logger.info("%s", fit.priors.describe())

    report = compare_models(fits, expected=families, include_unreliable=include_unreliable)
    return fits, report


def print_fit_summary(fits):
    """Print status and convergence diagnostics of each fit."""
    print(f"\n{'='*70}")
    print("Fit Status and Convergence Diagnostics")
    print("=" * 70)

    for fit in fits:
        line = f"{fit.name:18s} {fit.status.value:10s}"
        if fit.diagnostics is not None:
            d = fit.diagnostics
            line += (
                f" R-hat {d.max_rhat:.3f}  bulk ESS {d.min_ess_bulk:6.0f}"
                f"  tail ESS {d.min_ess_tail:6.0f}  divergences {d.n_divergent}"
            )
        if fit.from_cache:
            line += "  (cached)"
        print(line)
        if fit.status in (FitStatus.FAILED, FitStatus.CANCELLED):
            print(f"{'':18s} {fit.error}")


def print_comparison(report):
    print(f"\n{'='*70}")
    print("Model Comparison")
    print("=" * 70)
    for line in report.summary_lines():
        print(line)

    for name, check in report.checks.items():
        print(f"\nPosterior predictive check: {name}")
        print(check.to_frame().round(3).to_string())


def save_results(fits, report, output_dir: str = "model_fits"):
    """
    Save the comparison for downstream plotting.

    Writes the ranking table, one ArviZ summary per fitted family, and the
    posterior-predictive draws with the observed response.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    ranking_path = output_path / "family_comparison.csv"
    report.to_frame().to_csv(ranking_path, index=False)
    print(f"\nRanking saved to {ranking_path}")

    for fit in fits:
        if not fit.has_posterior:
            continue
        summary = az.summary(fit.idata, var_names=["~^1\\|"], filter_vars="regex", hdi_prob=0.95)
        csv_path = output_path / f"family_{fit.name}_summary.csv"
        summary.to_csv(csv_path)
        print(f"Summary saved to {csv_path}")

    draws = report.predictive_draws()
    if draws:
        npz_path = output_path / "posterior_predictive.npz"
        np.savez_compressed(npz_path, observed=report.observed, **draws)
        print(f"Posterior predictive draws saved to {npz_path}")


def main(argv=None):
    """Main function to run the analysis."""
    parser = argparse.ArgumentParser(
        description="Compare noise families for Bayesian reading-time regressions."
    )
    parser.add_argument("--unigram-path", type=str, default=DEFAULT_UNIGRAM_PATH)
    parser.add_argument("--bigram-path", type=str, default=DEFAULT_BIGRAM_PATH)
    parser.add_argument("--rt-path", type=str, default=DEFAULT_RT_PATH)
    parser.add_argument(
        "--raw-rts",
        action="store_true",
        help="The RT file holds per-trial RTs (item, zone, RT) to be averaged",
    )
    parser.add_argument(
        "-f",
        "--family",
        action="append",
        dest="families",
        default=None,
        help="Family to fit; repeat for several (default: all five)",
    )
    parser.add_argument(
        "-i",
        "--iterations",
        type=int,
        default=DEFAULT_ITERATIONS,
        help=f"Number of MCMC iterations (default: {DEFAULT_ITERATIONS})",
    )
    parser.add_argument("--chains", type=int, default=N_CHAINS)
    parser.add_argument("--seed", type=int, default=RANDOM_SEED)
    parser.add_argument(
        "--output-dir",
        type=str,
        default="model_fits",
        help="Directory for the ranking, summaries and predictive draws",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default="model_fits/cache",
        help="Directory of cached fits",
    )
    parser.add_argument("--no-cache", action="store_true", help="Refit even if a cached fit exists")
    parser.add_argument("--max-workers", type=int, default=None)
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=(
            "Seconds to wait for all fits. Unfinished fits are reported as cancelled "
            "and never cached, but their samplers keep running until they finish, "
            "so the process exits only after them"
        ),
    )
    parser.add_argument(
        "--n-stories",
        type=int,
        default=None,
        help="Number of stories to include. Use smaller values for faster testing.",
    )
    parser.add_argument(
        "--include-unreliable",
        action="store_true",
        help="Rank fits that missed the convergence targets",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    families = [Family.parse(f) for f in (args.families or [f.value for f in Family])]
    settings = SamplerSettings.from_iterations(
        args.iterations, chains=args.chains, random_seed=args.seed, progressbar=True
    )

    print("=" * 70)
    print("Reading-Time Noise-Family Comparison")
    print("=" * 70)
    print(f"\nFamilies: {', '.join(f.value for f in families)}")
    print(f"Iterations: {args.iterations}")
    print(f"Warmup: {settings.tune}")
    print(f"Chains: {settings.chains}")

    print("\nLoading data...")
    table = load_analysis_table(
        args.unigram_path, args.bigram_path, args.rt_path, args.n_stories, args.raw_rts
    )
    print("\nReading times by story (ms):")
    print(describe_analysis_table(table).round(1).to_string())

    store = None
    if not args.no_cache:
        store = FitStore(args.cache_dir)
        stale = store.discard_partials()
        if stale:
            print(f"Removed {stale} unpublished partial fits from {args.cache_dir}")

    fits, report = run_analysis(
        table,
        BambiEngine(),
        families=families,
        store=store,
        settings=settings,
        max_workers=args.max_workers,
        timeout=args.timeout,
        include_unreliable=args.include_unreliable,
    )

    print_fit_summary(fits)
    print_comparison(report)
    save_results(fits, report, args.output_dir)

    print("\n" + "=" * 70)
    print("Analysis complete!")
    print("=" * 70)

    return fits, report


if __name__ == "__main__":
    main()
