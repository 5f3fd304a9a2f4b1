#!/usr/bin/env python3
"""
Venetoclax / BIA Cell Death Analysis Pipeline - Production Version
==================================================================

Usage:
    python run_cell_death_pipeline.py config.json --output ./results

Steps:
    1. Load the wide replicate sheet
    2. Reshape replicates to long form
    3. Summarize mean / SD per dose, time, group
    4. Fit the dose-as-factor mixed model
    5. Fit the log10-dose mixed model
    6. Type III ANOVA for both models
    7. Estimated marginal means
    8. Pairwise contrasts (group within dose x time, time within dose x group)
    9. Annotate the summary with significance labels
   10. Render dose-response plots
   11. Save manifest

Author: Cell Death Analysis Pipeline
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
import traceback
import warnings
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from cell_death_data import (
    CONDITION_COLS,
    DOSE_COL,
    GROUP_COL,
    REPLICATE_COL,
    TIME_COL,
    VALUE_COL,
    AnalysisConfig,
    CellDeathDataLoader,
    DomainError,
    JoinMismatch,
    SchemaError,
    reshape_replicates,
)
from mixed_model_analysis import (
    EstimatedMeans,
    FittedModel,
    MixedModelFitter,
    condition_labels,
    estimated_means,
    pairwise_contrasts,
    select_contrast,
    summarize_conditions,
    type3_anova,
)
from cell_death_plotting import DoseResponsePlotter, annotate_summary

# Suppress warnings for cleaner logs
warnings.filterwarnings('ignore', category=FutureWarning)

PIPELINE_VERSION = "1.0.0"


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(
    output_dir: Path,
    log_level: str = "INFO",
    log_to_console: bool = True,
) -> logging.Logger:
    """Setup logging to both file and console."""
    output_dir = Path(output_dir)
    log_dir = output_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"pipeline_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logger = logging.getLogger("CellDeathPipeline")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers = []

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))
        logger.addHandler(console_handler)

    return logger


# =============================================================================
# PIPELINE STATE
# =============================================================================

@dataclass
class AnalysisState:
    """Everything one run produces, passed explicitly between steps."""
    wide: Optional[pd.DataFrame] = None
    observations: Optional[pd.DataFrame] = None
    summary: Optional[pd.DataFrame] = None
    factor_model: Optional[FittedModel] = None
    log_model: Optional[FittedModel] = None
    anova: Dict[str, pd.DataFrame] = field(default_factory=dict)
    factor_means: Optional[EstimatedMeans] = None
    log_means: Optional[EstimatedMeans] = None
    group_contrasts: Optional[pd.DataFrame] = None
    time_contrasts: Optional[pd.DataFrame] = None
    labels: Optional[pd.DataFrame] = None
    annotated: Optional[pd.DataFrame] = None


# =============================================================================
# MAIN PIPELINE CLASS
# =============================================================================

class CellDeathProductionPipeline:
    """
    Production cell death dose-response analysis.

    Runs load -> reshape -> summarize -> fit -> ANOVA -> contrasts ->
    annotate -> plot in one synchronous pass. Any error is logged and
    re-raised; nothing is resumed from a previous run.
    """

    def __init__(
        self,
        config_path: Union[str, Path],
        output_dir: Optional[Union[str, Path]] = None,
        log_level: str = "INFO",
        join_on: Optional[str] = None,
    ):
        """
        Initialize the pipeline.

        Parameters
        ----------
        config_path : str or Path
            Path to JSON configuration file
        output_dir : str or Path, optional
            Output directory (overrides config)
        log_level : str
            Logging level (DEBUG, INFO, WARNING, ERROR)
        join_on : str, optional
            Label join mode, 'condition' or 'dose_time' (overrides config)
        """
        self.config_path = Path(config_path)
        self.config = AnalysisConfig.from_json(config_path)
        if join_on:
            self.config.join_on = join_on

        if output_dir:
            self.output_dir = Path(output_dir)
        elif self.config.output_dir:
            self.output_dir = Path(self.config.output_dir)
        else:
            self.output_dir = Path(f"./output_{self.config.experiment_name}")
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.logger = setup_logging(self.output_dir, log_level)

        self.loader = CellDeathDataLoader(self.config)
        self.fitter = MixedModelFitter(
            method=self.config.model.method,
            reml=self.config.model.reml,
            maxiter=self.config.model.maxiter,
        )
        self.plotter = DoseResponsePlotter(
            self.output_dir, logger=self.logger, config=self.config.plot,
        )

        self.state = AnalysisState()
        self.timing: Dict[str, float] = {}

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------
    def _setup_directories(self):
        for sub in ("data", "summary", "models", "contrasts", "plots"):
            (self.output_dir / sub).mkdir(parents=True, exist_ok=True)

    def _log_step(self, step: str, message: str):
        self.logger.info(f"[{step}] {message}")

    def _log_timing(self, step: str, duration: float):
        self.timing[step] = duration
        self.logger.info(f"[{step}] Completed in {duration:.2f} seconds")

    def _save_csv(self, df: pd.DataFrame, relpath: str, index: bool = False) -> Path:
        path = self.output_dir / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=index)
        return path

    # =================================================================
    # Pipeline runner
    # =================================================================
    def run(self) -> Dict[str, Path]:
        """Run the complete analysis pipeline."""
        start_time = time.time()

        self.logger.info("=" * 70)
        self.logger.info("CELL DEATH DOSE-RESPONSE ANALYSIS PIPELINE")
        self.logger.info("=" * 70)
        self.logger.info(f"Experiment: {self.config.experiment_name}")
        self.logger.info(f"Config: {self.config_path}")
        self.logger.info(f"Input: {self.config.input_path}")
        self.logger.info(f"Output: {self.output_dir}")
        self.logger.info(
            f"Contrast: {self.config.groups.baseline} vs {self.config.groups.comparison}"
        )
        self.logger.info(f"Label join: {self.config.join_on}")
        self.logger.info("=" * 70)

        self._setup_directories()
        output_files: Dict[str, Any] = {}

        try:
            output_files.update(self._step_load_data())
            output_files.update(self._step_reshape())
            output_files.update(self._step_summarize())
            output_files.update(self._step_fit_factor_model())
            output_files.update(self._step_fit_log_model())
            output_files.update(self._step_anova())
            output_files.update(self._step_estimated_means())
            output_files.update(self._step_contrasts())
            output_files.update(self._step_annotate())
            output_files.update(self._step_generate_plots())
            output_files['manifest'] = self._save_manifest(output_files)

            total_time = time.time() - start_time
            self.logger.info("=" * 70)
            self.logger.info("PIPELINE COMPLETE")
            self.logger.info(f"Total time: {total_time:.2f} seconds")
            self.logger.info(f"Results: {self.output_dir}")
            self.logger.info("=" * 70)

        except Exception as e:
            self.logger.error(f"Pipeline failed: {e}")
            self.logger.error(traceback.format_exc())
            raise

        return output_files

    # =================================================================
    # Step 1 – Load data
    # =================================================================
    def _step_load_data(self) -> Dict[str, Path]:
        step = "1_load_data"
        self._log_step(step, f"Reading sheet {self.config.sheet!r}...")
        start = time.time()

        wide = self.loader.load()
        if wide.empty:
            raise SchemaError("No rows loaded. Check input path and sheet name.")
        self.state.wide = wide

        self._log_timing(step, time.time() - start)
        self._log_step(step, f"Loaded {len(wide)} condition rows")
        self._log_step(step, f"Groups: {list(wide[GROUP_COL].cat.categories)}")
        self._log_step(step, f"Times: {sorted(wide[TIME_COL].unique().tolist())}")
        self._log_step(step, f"Doses: {len(wide[DOSE_COL].unique())} levels")
        return {}

    # =================================================================
    # Step 2 – Reshape
    # =================================================================
    def _step_reshape(self) -> Dict[str, Path]:
        step = "2_reshape"
        start = time.time()

        long = reshape_replicates(self.state.wide, self.config.columns.replicate_prefix)
        self.state.observations = long

        values = long[VALUE_COL]
        out_of_range = int(((values < 0) | (values > 100)).sum())
        if out_of_range:
            self.logger.warning(f"[{step}] {out_of_range} values outside 0-100%")
        self._log_step(
            step,
            f"{len(long)} observations ({int(values.isna().sum())} missing) "
            f"from {long[REPLICATE_COL].nunique()} replicate columns",
        )

        path = self._save_csv(long, "data/observations_long.csv")
        self._log_timing(step, time.time() - start)
        return {'observations_long': path}

    # =================================================================
    # Step 3 – Summarize
    # =================================================================
    def _step_summarize(self) -> Dict[str, Path]:
        step = "3_summarize"
        start = time.time()

        summary = summarize_conditions(self.state.observations)
        self.state.summary = summary
        self._log_step(step, f"{len(summary)} condition summaries")

        path = self._save_csv(summary, "summary/condition_summary.csv")
        self._log_timing(step, time.time() - start)
        return {'condition_summary': path}

    # =================================================================
    # Steps 4/5 – Model fitting
    # =================================================================
    def _check_grouping(self, model: FittedModel, step: str):
        """Each summarized condition must be exactly one random-intercept level."""
        fitted = self.state.summary[self.state.summary['n'] > 0]
        expected = set(condition_labels(fitted, CONDITION_COLS))
        actual = set(model.group_levels)
        if expected != actual:
            raise SchemaError(
                f"Condition/grouping mismatch: {len(expected - actual)} conditions without "
                f"a random-intercept level, {len(actual - expected)} orphan levels"
            )
        self._log_step(step, f"{len(actual)} random-intercept levels")

    def _report_model(self, model: FittedModel, name: str, step: str) -> Dict[str, Path]:
        for msg in model.fit_warnings:
            self.logger.warning(f"[{step}] {msg}")
        self._log_step(
            step,
            f"n={model.n_obs}, df={model.df_resid:.0f}, "
            f"random intercept var={model.random_intercept_var:.4g}, "
            f"residual var={model.residual_var:.4g}",
        )
        path = self._save_csv(model.coefficients(), f"models/{name}_model_coefficients.csv")
        return {f'{name}_model_coefficients': path}

    def _step_fit_factor_model(self) -> Dict[str, Path]:
        step = "4_fit_factor_model"
        self._log_step(step, "Fitting dose-as-factor mixed model...")
        start = time.time()

        model = self.fitter.fit_factor_model(self.state.observations)
        self.state.factor_model = model
        self._check_grouping(model, step)
        output_files = self._report_model(model, "factor", step)

        self._log_timing(step, time.time() - start)
        return output_files

    def _step_fit_log_model(self) -> Dict[str, Path]:
        step = "5_fit_log_model"
        self._log_step(step, "Fitting log10-dose mixed model...")
        start = time.time()

        model = self.fitter.fit_log_model(self.state.observations)
        self.state.log_model = model
        self._check_grouping(model, step)
        if not np.array_equal(model.doses, self.state.factor_model.doses):
            raise DomainError("Log and factor models were fitted on different dose sets")
        output_files = self._report_model(model, "log", step)

        self._log_timing(step, time.time() - start)
        return output_files

    # =================================================================
    # Step 6 – Type III ANOVA
    # =================================================================
    def _step_anova(self) -> Dict[str, Path]:
        step = "6_anova"
        start = time.time()
        output_files: Dict[str, Path] = {}

        for name, model in (("factor", self.state.factor_model), ("log", self.state.log_model)):
            table = type3_anova(model)
            self.state.anova[name] = table
            for term, row in table.iterrows():
                self._log_step(
                    step,
                    f"{name}: {term:<24} F({row['num_df']:.0f},{row['den_df']:.0f})"
                    f"={row['F']:.3f} p={row['p_value']:.3g}",
                )
            output_files[f'{name}_anova'] = self._save_csv(
                table, f"models/{name}_anova.csv", index=True,
            )

        self._log_timing(step, time.time() - start)
        return output_files

    # =================================================================
    # Step 7 – Estimated marginal means
    # =================================================================
    def _step_estimated_means(self) -> Dict[str, Path]:
        step = "7_estimated_means"
        start = time.time()

        self.state.factor_means = estimated_means(self.state.factor_model, CONDITION_COLS)
        self.state.log_means = estimated_means(self.state.log_model, CONDITION_COLS)

        output_files = {
            'factor_emmeans': self._save_csv(
                self.state.factor_means.table, "models/factor_emmeans.csv"),
            'log_emmeans': self._save_csv(
                self.state.log_means.table, "models/log_emmeans.csv"),
        }
        self._log_step(step, f"{len(self.state.factor_means.table)} cell means")
        self._log_timing(step, time.time() - start)
        return output_files

    # =================================================================
    # Step 8 – Contrasts
    # =================================================================
    def _step_contrasts(self) -> Dict[str, Path]:
        step = "8_contrasts"
        start = time.time()
        groups = self.config.groups

        means = self.state.factor_means
        self.state.group_contrasts = pairwise_contrasts(means, [DOSE_COL, TIME_COL])
        self.state.time_contrasts = pairwise_contrasts(means, [DOSE_COL, GROUP_COL])

        labels = select_contrast(self.state.group_contrasts, groups.baseline, groups.comparison)
        self.state.labels = labels
        if labels.empty:
            self.logger.warning(
                f"[{step}] No '{groups.baseline}' vs '{groups.comparison}' contrasts found"
            )
        else:
            n_sig = int((labels['label'] != "").sum())
            self._log_step(step, f"{n_sig}/{len(labels)} significant "
                                 f"{groups.baseline} vs {groups.comparison} contrasts")
        self._log_step(
            step,
            f"{len(self.state.group_contrasts)} group and "
            f"{len(self.state.time_contrasts)} time contrasts (Bonferroni per family)",
        )

        output_files = {
            'group_contrasts': self._save_csv(
                self.state.group_contrasts, "contrasts/group_contrasts.csv"),
            'time_contrasts': self._save_csv(
                self.state.time_contrasts, "contrasts/time_contrasts.csv"),
            'significance_labels': self._save_csv(
                labels, "contrasts/significance_labels.csv"),
        }
        self._log_timing(step, time.time() - start)
        return output_files

    # =================================================================
    # Step 9 – Annotate
    # =================================================================
    def _step_annotate(self) -> Dict[str, Path]:
        step = "9_annotate"
        start = time.time()

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", JoinMismatch)
            annotated = annotate_summary(
                self.state.summary,
                self.state.labels,
                join_on=self.config.join_on,
                comparison_group=self.config.groups.comparison,
            )
        for w in caught:
            if issubclass(w.category, JoinMismatch):
                self.logger.warning(f"[{step}] {w.message}")
        self.state.annotated = annotated

        path = self._save_csv(annotated, "summary/annotated_summary.csv")
        self._log_timing(step, time.time() - start)
        return {'annotated_summary': path}

    # =================================================================
    # Step 10 – Plots
    # =================================================================
    def _step_generate_plots(self) -> Dict[str, Path]:
        step = "10_generate_plots"
        start = time.time()
        output_files: Dict[str, Path] = {}

        fit = self.state.log_means.table if self.state.log_means is not None else None
        plots = {
            'plot_by_group': self.plotter.plot_dose_response(
                self.state.annotated,
                facet_col=GROUP_COL, series_col=TIME_COL, fit=fit,
                title=self.config.experiment_name,
                filename="dose_response_by_group.png",
            ),
            'plot_by_time': self.plotter.plot_dose_response(
                self.state.annotated,
                facet_col=TIME_COL, series_col=GROUP_COL, fit=fit,
                title=self.config.experiment_name,
                filename="dose_response_by_time.png",
            ),
            'plot_contrast_estimates': self.plotter.plot_contrast_estimates(self.state.labels),
        }
        for name, path in plots.items():
            if path is not None:
                output_files[name] = path

        self._log_step(step, f"Generated {len(output_files)} plots")
        self._log_timing(step, time.time() - start)
        return output_files

    # =================================================================
    # Manifest
    # =================================================================
    def _save_manifest(self, output_files: Dict[str, Any]) -> Path:
        """Save pipeline manifest with metadata."""
        summary = self.state.summary
        manifest = {
            "experiment_name": self.config.experiment_name,
            "analysis_date": datetime.now().isoformat(),
            "pipeline_version": PIPELINE_VERSION,
            "configuration": {
                "config_file": str(self.config_path),
                "input_path": str(self.config.input_path),
                "sheet": self.config.sheet,
                "baseline_group": self.config.groups.baseline,
                "comparison_group": self.config.groups.comparison,
                "join_on": self.config.join_on,
                "model": {
                    "method": self.config.model.method,
                    "reml": self.config.model.reml,
                    "maxiter": self.config.model.maxiter,
                },
            },
            "data_summary": {
                "n_conditions": int(len(summary)) if summary is not None else 0,
                "n_observations": (
                    int(self.state.observations[VALUE_COL].notna().sum())
                    if self.state.observations is not None else 0
                ),
                "groups": (
                    [str(g) for g in summary[GROUP_COL].unique()] if summary is not None else []
                ),
                "times": (
                    sorted(summary[TIME_COL].astype(str).unique().tolist())
                    if summary is not None else []
                ),
            },
            "models": {
                name: {
                    "formula": model.formula,
                    "n_obs": model.n_obs,
                    "df_resid": model.df_resid,
                    "random_intercept_var": model.random_intercept_var,
                    "residual_var": model.residual_var,
                    "n_groups": len(model.group_levels),
                    "converged": model.converged,
                    "dropped_columns": model.dropped_columns,
                    "warnings": model.fit_warnings,
                }
                for name, model in (
                    ("factor", self.state.factor_model), ("log", self.state.log_model),
                )
                if model is not None
            },
            "timing": self.timing,
            "output_files": {
                k: str(v) if isinstance(v, Path) else v
                for k, v in output_files.items()
            },
        }

        manifest_path = self.output_dir / "manifest.json"
        with open(manifest_path, 'w') as f:
            json.dump(manifest, f, indent=2, default=str)

        self._log_step("manifest", f"Saved: {manifest_path}")
        return manifest_path


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Venetoclax / BIA Cell Death Analysis Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run pipeline locally
    python run_cell_death_pipeline.py config.json --output ./results

    # Reproduce the original (dose, time) label join
    python run_cell_death_pipeline.py config.json --join-on dose_time
        """
    )
    parser.add_argument(
        "config",
        help="Path to JSON configuration file"
    )
    parser.add_argument(
        "--output", "-o",
        help="Output directory (overrides config)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--join-on",
        choices=["condition", "dose_time"],
        help="Significance label join key (overrides config)"
    )

    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"ERROR: Config file not found: {config_path}")
        sys.exit(1)

    pipeline = CellDeathProductionPipeline(
        config_path=config_path,
        output_dir=args.output,
        log_level=args.log_level,
        join_on=args.join_on,
    )

    results = pipeline.run()

    print("\nGenerated files:")
    for name, path in sorted(results.items()):
        print(f"  {name}: {path}")


if __name__ == "__main__":
    main()
