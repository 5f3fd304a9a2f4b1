#!/usr/bin/env python3
"""
Cell Death Analysis Pipeline - Usage Examples
=============================================

This script demonstrates the Venetoclax / BIA cell death pipeline.
It includes:
  1. Creating a synthetic replicate-wide workbook
  2. Reshaping and summarizing
  3. Fitting the mixed models and contrasts
  4. Running the full production pipeline

Run this script to test the pipeline with synthetic data.
"""

import json
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from cell_death_data import AnalysisConfig, CellDeathDataLoader, reshape_replicates
from mixed_model_analysis import analyze_mixed_models, select_contrast, summarize_conditions


DEFAULT_DOSES_UM = [2.5 * 10.0 ** k for k in range(-6, 2)]  # 2.5e-6 ... 25
DEFAULT_TIMES = ["24h", "48h"]
DEFAULT_GROUPS = ["Ven", "Ven + Bia 25", "Ven + Bia 50"]

# log10 EC50 shift (µM) per co-treatment and per exposure time
_GROUP_SHIFT = {"Ven": 0.0, "Ven + Bia 25": -1.0, "Ven + Bia 50": -1.8}
_TIME_SHIFT = {"24h": 0.0, "48h": -0.7}


# =============================================================================
# SYNTHETIC DATA GENERATION
# =============================================================================

def generate_synthetic_cell_death_data(
    doses_um: Optional[Sequence[float]] = None,
    times: Optional[Sequence[str]] = None,
    groups: Optional[Sequence[str]] = None,
    n_replicates: int = 4,
    log10_ec50_um: float = -1.0,
    hill_slope: float = 0.8,
    bottom: float = 8.0,
    top: float = 92.0,
    noise_sd: float = 4.0,
    replicate_prefix: str = "Rep",
    random_seed: int = 42,
) -> pd.DataFrame:
    """
    Generate a replicate-wide cell death table.

    One row per (dose, time, group) with ``n_replicates`` columns of percent
    cell death following a Hill curve on log10 dose. BIA co-treatment and
    longer exposure shift the curve to lower doses.
    """
    rng = np.random.default_rng(random_seed)
    doses_um = list(doses_um) if doses_um is not None else DEFAULT_DOSES_UM
    times = list(times) if times is not None else DEFAULT_TIMES
    groups = list(groups) if groups is not None else DEFAULT_GROUPS

    rows = []
    for group in groups:
        for time in times:
            ec50 = log10_ec50_um + _GROUP_SHIFT.get(group, 0.0) + _TIME_SHIFT.get(time, 0.0)
            for dose in doses_um:
                mean = bottom + (top - bottom) / (1 + 10 ** ((ec50 - np.log10(dose)) * hill_slope))
                values = np.clip(rng.normal(mean, noise_sd, n_replicates), 0, 100)
                row = {"Dose": dose, "Time": time, "Group": group}
                for i, v in enumerate(values, start=1):
                    row[f"{replicate_prefix}{i}"] = round(float(v), 2)
                rows.append(row)

    return pd.DataFrame(rows)


def create_test_dataset(output_dir: Path, **kwargs) -> Path:
    """Write the synthetic table as a one-sheet Excel workbook."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / "cell_death_synthetic.xlsx"
    df = generate_synthetic_cell_death_data(**kwargs)
    df.to_excel(path, sheet_name="CellDeath", index=False)
    return path


def create_test_config(
    workbook_path: Path,
    output_path: Path,
    output_dir: Optional[Path] = None,
) -> Path:
    """Create a pipeline configuration pointing at the synthetic workbook."""
    config = {
        "metadata": {
            "experiment_name": "Ven_Bia_synthetic",
            "input_path": str(workbook_path),
            "sheet": "CellDeath",
            "output_dir": str(output_dir or Path(output_path).parent / "analysis_output"),
        },
        "columns": {
            "dose": "Dose",
            "time": "Time",
            "group": "Group",
            "replicate_prefix": "Rep",
        },
        "groups": {
            "order": DEFAULT_GROUPS,
            "baseline": "Ven",
            "comparison": "Ven + Bia 25",
        },
        "model": {"method": "lbfgs", "reml": True, "maxiter": 500},
        "annotation": {"join_on": "condition"},
        "plot": {"dpi": 150, "show_fit": True},
    }
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(config, f, indent=2)
    return output_path


# =============================================================================
# EXAMPLES
# =============================================================================

def example_summary(work_dir: Path) -> Dict[str, pd.DataFrame]:
    """Load the synthetic workbook, reshape and summarize."""
    print("\n" + "=" * 60)
    print("EXAMPLE 1: Reshape and summarize")
    print("=" * 60)

    workbook = create_test_dataset(work_dir)
    config = AnalysisConfig.from_json(create_test_config(workbook, work_dir / "config.json"))
    wide = CellDeathDataLoader(config).load()
    long = reshape_replicates(wide, config.columns.replicate_prefix)
    summary = summarize_conditions(long)

    print(f"Wide rows: {len(wide)}, long rows: {len(long)}")
    print(summary.head(10).to_string(index=False))
    return {"wide": wide, "long": long, "summary": summary}


def example_mixed_models(long: pd.DataFrame) -> None:
    """Fit both models and print ANOVA tables and the labelled contrasts."""
    print("\n" + "=" * 60)
    print("EXAMPLE 2: Mixed models, Type III ANOVA, contrasts")
    print("=" * 60)

    results = analyze_mixed_models(long)
    print("\nFactor model ANOVA:")
    print(results['factor_anova'].to_string())
    print("\nLog model ANOVA:")
    print(results['log_anova'].to_string())

    labels = select_contrast(results['group_contrasts'], "Ven", "Ven + Bia 25")
    print("\nVen vs Ven + Bia 25:")
    print(labels[['dose', 'time', 'estimate', 'p_adjusted', 'significance']].to_string(index=False))


def example_full_pipeline(work_dir: Path) -> None:
    """Run the production pipeline end to end."""
    from run_cell_death_pipeline import CellDeathProductionPipeline

    print("\n" + "=" * 60)
    print("EXAMPLE 3: Full pipeline")
    print("=" * 60)

    workbook = create_test_dataset(work_dir)
    config_path = create_test_config(workbook, work_dir / "config.json")
    results = CellDeathProductionPipeline(config_path).run()
    for name, path in sorted(results.items()):
        print(f"  {name}: {path}")


def run_all_examples(work_dir: Path = Path("./demo_output")) -> None:
    data = example_summary(work_dir)
    example_mixed_models(data["long"])
    example_full_pipeline(work_dir)


if __name__ == "__main__":
    run_all_examples()
