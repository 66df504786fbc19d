"""Main entry point for internal-external cross-validation runs.

Runs the leave-one-cluster-out validation, writes the performance tables, the
decision curves and the deployable full-data model, and optionally scores new
subjects with a previously saved model.

Can be used as CLI (``iecv-survival``) or imported as a function.
"""
import os
import argparse
import logging
from typing import Optional

from iecv_survival.config import IECVConfig, create_execution_config
from iecv_survival.data import RunType, load_data
from iecv_survival.errors import IECVError
from iecv_survival.logging_config import setup_logging
from iecv_survival.predict import generate_predictions
from iecv_survival.train import run_iecv, track_run, write_outputs
from iecv_survival.utils import get_output_paths


logger = logging.getLogger("iecv_survival.main")


def run_pipeline(
    input_file: str,
    run_type: RunType = "sample",
    config: Optional[IECVConfig] = None,
    output_dir: Optional[str] = None,
    predict_only: bool = False,
) -> int:
    """Run the IECV pipeline end to end.

    Args:
        input_file: Path to input file (CSV or pickle)
        run_type: Type of run - "sample" for development, "production" for full data
        config: Run configuration. Defaults to IECVConfig.for_run_type(run_type)
        output_dir: Base output directory. Defaults to data/outputs/{run_type}
        predict_only: Skip validation and score ``input_file`` with the saved final model

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> run_pipeline("data/inputs/sample/cohort.csv", run_type="sample")
        0
    """
    if not os.path.exists(input_file):
        logger.error(f"Input file not found: {input_file}")
        return 1

    config = config or IECVConfig.for_run_type(run_type)
    paths = get_output_paths(run_type, base_dir=output_dir)

    logger.info("=" * 70)
    logger.info(f"IECV SURVIVAL - {run_type.upper()} RUN")
    logger.info(f"Input file: {input_file}")
    logger.info(f"Mode:       {'Predict only' if predict_only else 'Validate + fit final model'}")
    logger.info(f"Execution:  {config.execution}")
    logger.info("=" * 70)

    try:
        if predict_only:
            pred_path = generate_predictions(input_file, run_type=run_type, config=config,
                                             output_dir=paths["base_dir"])
            logger.info(f"Predictions complete: {pred_path}")
            return 0

        df = load_data(input_file, run_type=run_type)
        result = run_iecv(df, config)
        outputs = write_outputs(result, paths["artifacts"])
        if config.analysis.track_mlflow:
            track_run(result, outputs, tracking_dir=paths["mlruns"])
    except IECVError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    summary = result.summary_table().set_index("metric")
    logger.info(
        f"[{run_type.upper()}] Run complete: pooled external C = "
        f"{summary.loc['concordance_pooled', 'mean']:.3f}, "
        f"{result.final_model.n_nonzero} non-zero coefficients in the final model"
    )
    return 0


def build_config(args: argparse.Namespace) -> IECVConfig:
    """Start from a JSON config or the run-type preset and apply CLI overrides."""
    config = IECVConfig.load(args.config) if args.config else IECVConfig.for_run_type(args.run_type)
    config.run_type = args.run_type

    if args.execution_mode is not None:
        config.execution = create_execution_config(
            mode=args.execution_mode, n_jobs=args.n_jobs, verbose=args.verbose
        )
    if args.seed is not None:
        config.analysis.random_state = args.seed
    if args.horizon is not None:
        config.analysis.prediction_horizon = args.horizon
    if args.mlflow:
        config.analysis.track_mlflow = True
    if args.abort_on_convergence_failure:
        config.analysis.abort_on_convergence_failure = True
    return config


def main():
    """Main execution function with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Internal-external cross-validation of a penalized Cox risk model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sample run, folds in sequence
  iecv-survival --input data/inputs/sample/cohort.csv --run-type sample

  # Production run, one process per cluster fold
  iecv-survival --input data/inputs/production/cohort.pkl --run-type production --execution-mode mp --n-jobs 8

  # Score new subjects with the saved final model
  iecv-survival --input data/inputs/sample/new_subjects.csv --predict-only
        """
    )
    parser.add_argument("--input", type=str, required=True,
                        help="Path to input file (CSV or pickle)")
    parser.add_argument("--run-type", type=str, choices=["sample", "production"], default="sample",
                        help="Run type: 'sample' for development, 'production' for full data. Default: sample")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON configuration written by a previous run (config.json)")
    parser.add_argument("--output-dir", type=str, default=None,
                        help="Base output directory. Default: data/outputs/<run-type>")
    parser.add_argument("--predict-only", action="store_true",
                        help="Skip validation and only score subjects with the saved final model")
    parser.add_argument("--execution-mode", type=str, choices=["pandas", "mp"], default=None,
                        help="'pandas' (folds in sequence) or 'mp' (joblib process pool). Default: run-type preset")
    parser.add_argument("--n-jobs", type=int, default=-1,
                        help="Number of parallel jobs for 'mp'. -1 means use all cores. Default: -1")
    parser.add_argument("--verbose", type=int, default=0, choices=[0, 10, 50],
                        help="joblib verbosity: 0 (silent), 10 (progress), 50 (detailed). Default: 0")
    parser.add_argument("--seed", type=int, default=None, help="Base random seed")
    parser.add_argument("--horizon", type=float, default=None, help="Prediction horizon in days")
    parser.add_argument("--mlflow", action="store_true", help="Track the run with MLflow")
    parser.add_argument("--abort-on-convergence-failure", action="store_true",
                        help="Abort instead of recording a fold whose penalty could not be selected")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")

    args = parser.parse_args()

    base_dir = args.output_dir or f"data/outputs/{args.run_type}"
    setup_logging(run_type=args.run_type, log_level=getattr(logging, args.log_level),
                  log_dir=os.path.join(base_dir, "logs"))

    return run_pipeline(
        input_file=args.input,
        run_type=args.run_type,
        config=build_config(args),
        output_dir=args.output_dir,
        predict_only=args.predict_only,
    )


if __name__ == "__main__":
    exit(main())
