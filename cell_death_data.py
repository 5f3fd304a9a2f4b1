"""
Cell Death Dose-Response Data Handling
======================================

This module provides the input side of the Venetoclax / BIA cell-death
analysis:
  - JSON experiment configuration
  - Exception types shared by the analysis modules
  - Concentration string parsing (µM)
  - Loading one workbook sheet (or CSV / parquet table) into canonical columns
  - Reshaping wide replicate columns into long-form observations

Input JSON format:
{
    "metadata": {
        "experiment_name": "...",
        "input_path": "/path/to/workbook.xlsx",
        "sheet": "Sheet1",
        "output_dir": "./analysis_output"
    },
    "columns": {
        "dose": "Dose", "time": "Time", "group": "Group",
        "replicate_prefix": "Rep"
    },
    "groups": {
        "order": ["Ven", "Ven + Bia 25", "Ven + Bia 50"],
        "baseline": "Ven",
        "comparison": "Ven + Bia 25"
    },
    "model": {"method": "lbfgs", "reml": true, "maxiter": 500},
    "annotation": {"join_on": "condition"},
    "plot": {"dpi": 200, "show_fit": true}
}
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd


# Canonical long-form column names used by every downstream module
DOSE_COL = "dose"
TIME_COL = "time"
GROUP_COL = "group"
REPLICATE_COL = "replicate"
VALUE_COL = "value"
CONDITION_COLS = [DOSE_COL, TIME_COL, GROUP_COL]


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SchemaError(ValueError):
    """Expected columns are absent or misnamed."""


class DomainError(ValueError):
    """A value lies outside the domain of a transformation (e.g. log10 of dose <= 0)."""


class ConvergenceError(RuntimeError):
    """The mixed-model optimizer did not converge."""


class JoinMismatch(UserWarning):
    """A summary row has no matching significance label; an empty label is used."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ColumnConfig:
    """Source column names in the input sheet."""
    dose: str = "Dose"
    time: str = "Time"
    group: str = "Group"
    replicate_prefix: str = "Rep"


@dataclass
class GroupConfig:
    """Treatment group ordering and the contrast used for labels."""
    order: List[str] = field(default_factory=list)
    baseline: str = "Ven"
    comparison: str = "Ven + Bia 25"


@dataclass
class ModelConfig:
    """Mixed-model optimizer settings."""
    method: str = "lbfgs"
    reml: bool = True
    maxiter: int = 500


@dataclass
class PlotConfig:
    dpi: int = 200
    show_fit: bool = True
    y_label: str = "Cell death (%)"
    x_label: str = "Venetoclax (µM)"


@dataclass
class AnalysisConfig:
    """Full experiment configuration."""
    experiment_name: str
    input_path: str
    sheet: Union[str, int] = 0
    output_dir: Optional[str] = None
    columns: ColumnConfig = field(default_factory=ColumnConfig)
    groups: GroupConfig = field(default_factory=GroupConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    join_on: str = "condition"
    plot: PlotConfig = field(default_factory=PlotConfig)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Create an AnalysisConfig from a parsed JSON document."""
        metadata = data.get("metadata", {})
        if "input_path" not in metadata:
            raise SchemaError("Configuration is missing metadata.input_path")

        cols = data.get("columns", {})
        groups = data.get("groups", {})
        model = data.get("model", {})
        plot = data.get("plot", {})
        join_on = data.get("annotation", {}).get("join_on", "condition")
        if join_on not in ("condition", "dose_time"):
            raise ValueError(f"Unknown annotation.join_on: {join_on}")

        return cls(
            experiment_name=metadata.get("experiment_name", "Cell_Death_Analysis"),
            input_path=metadata["input_path"],
            sheet=metadata.get("sheet", 0),
            output_dir=metadata.get("output_dir"),
            columns=ColumnConfig(
                dose=cols.get("dose", "Dose"),
                time=cols.get("time", "Time"),
                group=cols.get("group", "Group"),
                replicate_prefix=cols.get("replicate_prefix", "Rep"),
            ),
            groups=GroupConfig(
                order=list(groups.get("order", [])),
                baseline=groups.get("baseline", "Ven"),
                comparison=groups.get("comparison", "Ven + Bia 25"),
            ),
            model=ModelConfig(
                method=model.get("method", "lbfgs"),
                reml=bool(model.get("reml", True)),
                maxiter=int(model.get("maxiter", 500)),
            ),
            join_on=join_on,
            plot=PlotConfig(
                dpi=int(plot.get("dpi", 200)),
                show_fit=bool(plot.get("show_fit", True)),
                y_label=plot.get("y_label", "Cell death (%)"),
                x_label=plot.get("x_label", "Venetoclax (µM)"),
            ),
            metadata=metadata,
        )

    @classmethod
    def from_json(cls, json_path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from JSON file."""
        with open(json_path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

# Unit conversion factors to µM
UNIT_TO_UM = {
    'm': 1e6,
    'mol/l': 1e6,
    'mm': 1e3,
    'mmol/l': 1e3,
    'um': 1.0,
    'umol/l': 1.0,
    'nm': 1e-3,
    'nmol/l': 1e-3,
    'pm': 1e-6,
    'pmol/l': 1e-6,
}

_CONC_PATTERN = re.compile(
    r'^([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*([a-z/]*)$'
)


def parse_concentration(value: Any) -> float:
    """
    Parse a dose cell to a concentration in µM.

    Numbers are taken as µM already. Strings may carry a unit suffix:

        '25uM', '25 µM', '25μM' -> 25.0
        '2.5 nM'                -> 0.0025
        '1e-3mM'                -> 1.0
        '0,5 uM'                -> 0.5

    Returns
    -------
    float
        Concentration in µM, or np.nan if unparseable
    """
    if value is None:
        return np.nan
    if isinstance(value, (int, float, np.number)) and not isinstance(value, bool):
        return float(value)

    text = str(value).strip()
    if not text:
        return np.nan

    # Normalize micro signs (U+00B5, U+03BC) and European decimals
    text = text.replace('µ', 'u').replace('μ', 'u').replace(',', '.').lower()

    match = _CONC_PATTERN.match(text)
    if not match:
        return np.nan

    number, unit = match.groups()
    unit = unit or 'um'
    if unit not in UNIT_TO_UM:
        return np.nan
    try:
        return float(number) * UNIT_TO_UM[unit]
    except (ValueError, OverflowError):
        return np.nan


def replicate_columns(df: pd.DataFrame, prefix: str) -> List[str]:
    """Columns whose name starts with the replicate prefix, in sheet order."""
    return [c for c in df.columns if str(c).startswith(prefix)]


# =============================================================================
# DATA LOADING
# =============================================================================

class CellDeathDataLoader:
    """Load the wide cell-death sheet into canonical dose/time/group columns."""

    def __init__(self, config: AnalysisConfig):
        self.config = config

    def read_table(self, path: Union[str, Path]) -> pd.DataFrame:
        """Read the raw table from a workbook sheet, CSV or parquet file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")

        suffix = path.suffix.lower()
        if suffix in ('.xlsx', '.xlsm', '.xls'):
            return pd.read_excel(path, sheet_name=self.config.sheet)
        if suffix == '.csv':
            return pd.read_csv(path)
        if suffix == '.parquet':
            return pd.read_parquet(path)
        raise ValueError(f"Unsupported input format: {path.suffix}")

    def standardize(self, raw: pd.DataFrame) -> pd.DataFrame:
        """
        Rename source columns to canonical names and type them.

        Raises
        ------
        SchemaError
            If a dose/time/group column is missing, no replicate column
            exists, or a dose cell cannot be parsed.
        """
        cols = self.config.columns
        mapping = {cols.dose: DOSE_COL, cols.time: TIME_COL, cols.group: GROUP_COL}

        missing = [src for src in mapping if src not in raw.columns]
        if missing:
            raise SchemaError(
                f"Missing expected columns {missing}; available: {list(raw.columns)}"
            )
        if not replicate_columns(raw, cols.replicate_prefix):
            raise SchemaError(
                f"No replicate columns with prefix '{cols.replicate_prefix}'"
            )

        # Spreadsheets often carry blank trailer rows
        df = raw.dropna(how='all').rename(columns=mapping).copy()

        doses = df[DOSE_COL].apply(parse_concentration)
        bad = df.loc[doses.isna(), DOSE_COL]
        if not bad.empty:
            raise SchemaError(f"Unparseable dose values: {bad.unique().tolist()}")
        df[DOSE_COL] = doses.astype(float)

        rep_cols = replicate_columns(df, cols.replicate_prefix)
        df[rep_cols] = df[rep_cols].apply(pd.to_numeric, errors='coerce')

        df[TIME_COL] = df[TIME_COL].astype(str).str.strip()
        groups = df[GROUP_COL].astype(str).str.strip()
        order = [g for g in self.config.groups.order if g in set(groups)]
        order += [g for g in pd.unique(groups) if g not in order]
        df[GROUP_COL] = pd.Categorical(groups, categories=order)

        return df.reset_index(drop=True)

    def load(self) -> pd.DataFrame:
        """Load and standardize the configured input table."""
        return self.standardize(self.read_table(self.config.input_path))


# =============================================================================
# RESHAPING
# =============================================================================

def reshape_replicates(
    wide: pd.DataFrame,
    replicate_prefix: str,
    replicate_col: str = REPLICATE_COL,
    value_col: str = VALUE_COL,
) -> pd.DataFrame:
    """
    Convert wide replicate columns into one row per (condition, replicate).

    Parameters
    ----------
    wide : pd.DataFrame
        One row per condition; replicate values in columns named with
        ``replicate_prefix``
    replicate_prefix : str
        Name prefix selecting the replicate columns

    Returns
    -------
    pd.DataFrame
        Long-form observations. Every non-replicate column is carried over
        unchanged; the replicate column name is kept as identifier and the
        value is copied without transformation.
    """
    rep_cols = replicate_columns(wide, replicate_prefix)
    if not rep_cols:
        raise SchemaError(f"No replicate columns with prefix '{replicate_prefix}'")

    id_cols = [c for c in wide.columns if c not in rep_cols]
    long = wide.melt(
        id_vars=id_cols,
        value_vars=rep_cols,
        var_name=replicate_col,
        value_name=value_col,
        ignore_index=False,
    )
    # melt stacks column by column; restore source row order
    long = long.sort_index(kind='stable').reset_index(drop=True)

    for col in id_cols:
        if isinstance(wide[col].dtype, pd.CategoricalDtype):
            long[col] = pd.Categorical(long[col], categories=wide[col].cat.categories)
    return long
