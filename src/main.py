"""Main entry point for the DIC threshold grid search.

Loads subject records and model inputs (inclusion probabilities, baseline
hazards), or simulates the documented example, runs the grid search and
writes the DIC grid to data/outputs/{run_type}/artifacts/.

Can be used as CLI or imported as a function.
"""
import os
import logging
import argparse
from dataclasses import replace
from typing import List, Optional

from scr_dic.config import DICSearchConfig, create_execution_config
from scr_dic.data import (
    InputValidationError,
    load_data,
    load_model_inputs,
    save_model_inputs,
    simulate_example,
    split_subjects,
    subjects_to_frame,
)
from scr_dic.grid import run_grid_search_for
from scr_dic.logging_config import setup_logging
from scr_dic.timing import log_execution_time
from scr_dic.tracking import log_grid_search, start_run
from scr_dic.utils import get_output_paths, save_dic_grid, versioned_name


@log_execution_time(logging.getLogger("scr_dic.main"))
def run_search(
    subjects_file: Optional[str] = None,
    model_inputs_file: Optional[str] = None,
    simulate: Optional[int] = None,
    config: Optional[DICSearchConfig] = None,
    output_base: str = "data/outputs",
) -> int:
    """Run the DIC grid search end to end.

    Args:
        subjects_file: CSV or pickle with columns y1, i1, y2, i2, frailty and
            the covariates (in column order, always-included ones last)
        model_inputs_file: JSON with inclusion probabilities and baselines
        simulate: If set, simulate this many subjects of the documented
            example instead of loading files
        config: Search configuration (defaults to DICSearchConfig())
        output_base: Root directory for outputs

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> from main import run_search
        >>> run_search(simulate=100, config=DICSearchConfig(sampler=SamplerConfig(n_iter=4, seed=1)))
        0
    """
    logger = logging.getLogger("scr_dic.main")
    if config is None:
        config = DICSearchConfig()
    paths = get_output_paths(config.run_type, base=output_base)

    if simulate is not None:
        seed = 1 if config.sampler.seed is None else config.sampler.seed
        subjects, baselines, probabilities = simulate_example(n=simulate, seed=seed)
        # The example always has five selectable covariates
        inc = subjects.n_covariates - 5
        if config.grid.inc not in (0, inc):
            logger.warning(f"inc={config.grid.inc} replaced by inc={inc} for the simulated example")
        config = replace(config, grid=replace(config.grid, inc=inc))
        subjects_to_frame(subjects).to_csv(os.path.join(paths["inputs"], "simulated_subjects.csv"), index=False)
        save_model_inputs(os.path.join(paths["inputs"], "simulated_model_inputs.json"), probabilities, baselines)
        logger.info(f"Simulated {simulate} subjects, inputs written to {paths['inputs']}")
    else:
        if subjects_file is None or model_inputs_file is None:
            logger.error("Both --subjects and --model-inputs are required unless --simulate is given")
            return 1
        for path in (subjects_file, model_inputs_file):
            if not os.path.exists(path):
                logger.error(f"Input file not found: {path}")
                return 1
        try:
            subjects = split_subjects(load_data(subjects_file))
            probabilities, baselines = load_model_inputs(model_inputs_file)
        except ValueError as e:
            logger.error(f"Could not load inputs: {e}")
            return 1

    logger.info("=" * 70)
    logger.info(f"DIC GRID SEARCH - {config.run_type.upper()} RUN")
    logger.info("=" * 70)
    logger.info(f"Subjects:   {subjects.n_subjects} ({subjects.n_covariates} covariates)")
    logger.info(f"Sampler:    B={config.sampler.n_iter}, c={config.sampler.c}, seed={config.sampler.seed}")
    logger.info(f"Grid:       inc={config.grid.inc}, skip policy={config.grid.skip_policy.value}")
    logger.info(f"Execution:  {config.execution}")

    try:
        grid = run_grid_search_for(subjects, baselines, probabilities, config=config)
    except InputValidationError as e:
        logger.error(str(e))
        return 1

    name = versioned_name("dic_grid", run_type=config.run_type)
    saved = save_dic_grid(grid, paths["artifacts"], name=name)
    config.save(os.path.join(paths["artifacts"], f"{name}_config.json"))
    logger.info(f"DIC grid written to {saved['csv']}")

    if config.tracking:
        with start_run(name, tags={"run_type": config.run_type},
                       tracking_uri=f"file:{os.path.abspath(paths['mlruns'])}"):
            log_grid_search(grid, config.to_dict(), csv_path=saved["csv"], logger=logger)

    best = grid.best()
    if best is None:
        logger.warning("No cell produced a finite DIC")
    else:
        taus = ", ".join(f"{t:.2f}" for t in best["thresholds"])
        logger.info(f"Best DIC {best['dic']:.4f} at (tau_1, tau_2, tau_3) = ({taus})")
        for label, cols in best["subsets"].items():
            names = [subjects.covariate_names[i] for i in cols]
            logger.info(f"  {label}: {names}")

    return 0


def build_config(args: argparse.Namespace) -> DICSearchConfig:
    """Configuration from --config / --run-type with the CLI overrides applied.

    Sections are rebuilt with dataclasses.replace, so every override goes
    through the same validation as a freshly constructed config.

    Raises:
        ValueError: If an override is out of range (e.g. --n-iter 1)
    """
    if args.config is not None:
        config = replace(DICSearchConfig.load(args.config), run_type=args.run_type)
    else:
        config = DICSearchConfig.for_run_type(args.run_type)

    sampler_overrides = {
        k: v for k, v in (("n_iter", args.n_iter), ("c", args.c), ("seed", args.seed)) if v is not None
    }
    grid_overrides = {
        k: v for k, v in (("inc", args.inc), ("skip_policy", args.skip_policy)) if v is not None
    }

    config = replace(
        config,
        sampler=replace(config.sampler, **sampler_overrides),
        grid=replace(config.grid, **grid_overrides),
        tracking=config.tracking or args.track,
    )
    if args.execution_mode is not None:
        config = replace(config, execution=create_execution_config(
            mode=args.execution_mode, n_jobs=args.n_jobs, verbose=args.verbose
        ))
    return config


def main(argv: Optional[List[str]] = None):
    """Main execution function with argument parsing."""
    parser = argparse.ArgumentParser(
        description="DIC grid search over variable-selection thresholds for semi-competing-risks models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Documented example: 100 simulated subjects, 7 covariates, 2 always included
  python src/main.py --simulate 100 --n-iter 4 --seed 1

  # Own data, exact skip policy, all cores
  python src/main.py --subjects data/inputs/subjects.csv --model-inputs data/inputs/model_inputs.json \\
      --n-iter 500 --inc 2 --skip-policy exact --execution-mode mp

  # Production run with MLflow tracking
  python src/main.py --subjects subjects.pkl --model-inputs inputs.json --run-type production --track
        """
    )

    parser.add_argument("--subjects", type=str, default=None,
                        help="Subject file (CSV or pickle) with y1, i1, y2, i2, frailty and covariates")
    parser.add_argument("--model-inputs", type=str, default=None,
                        help="JSON with inclusion probabilities and baseline hazards")
    parser.add_argument("--simulate", type=int, default=None, metavar="N",
                        help="Simulate N subjects of the documented example instead of loading files")
    parser.add_argument("--config", type=str, default=None,
                        help="Configuration JSON (see DICSearchConfig.save); CLI options override it")

    parser.add_argument("--run-type", type=str, choices=["sample", "production", "experiment"],
                        default="sample", help="Run type. Default: sample")
    parser.add_argument("--n-iter", type=int, default=None, help="Sampler iterations B (>= 2)")
    parser.add_argument("--c", type=float, default=None, help="Prior covariance scale c")
    parser.add_argument("--inc", type=int, default=None, help="Number of trailing always-included covariates")
    parser.add_argument("--seed", type=int, default=None, help="Base random seed")
    parser.add_argument("--skip-policy", type=str, choices=["legacy", "exact"], default=None,
                        help="'legacy' compares subset sizes, 'exact' compares subsets. Default: legacy")

    parser.add_argument("--execution-mode", type=str, choices=["sequential", "mp"], default=None,
                        help="'sequential' or 'mp' (joblib multiprocessing). Default: from run type")
    parser.add_argument("--n-jobs", type=int, default=-1,
                        help="Number of parallel jobs for multiprocessing. -1 means use all cores. Default: -1")
    parser.add_argument("--verbose", type=int, default=0, choices=[0, 10, 50],
                        help="Joblib verbosity level. Default: 0")

    parser.add_argument("--track", action="store_true", help="Log the run to MLflow")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")

    args = parser.parse_args(argv)
    if args.simulate is not None and args.inc is not None:
        parser.error("--inc cannot be combined with --simulate; the simulated example fixes inc")

    try:
        config = build_config(args)
    except ValueError as e:
        logging.getLogger("scr_dic.main").error(f"Invalid configuration: {e}")
        return 1

    setup_logging(run_type=args.run_type, log_level=getattr(logging, args.log_level))

    return run_search(
        subjects_file=args.subjects,
        model_inputs_file=args.model_inputs,
        simulate=args.simulate,
        config=config,
    )


if __name__ == "__main__":
    exit(main())
