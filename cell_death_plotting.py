"""Significance annotation and dose-response plots for the cell death pipeline."""

from __future__ import annotations

import logging
import re
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from cell_death_data import DOSE_COL, GROUP_COL, TIME_COL, JoinMismatch, PlotConfig


# Colorblind-friendly palette
PALETTE = [
    '#1f77b4', '#ff7f0e', '#2ca02c', '#d62728', '#9467bd',
    '#8c564b', '#e377c2', '#7f7f7f', '#bcbd22', '#17becf',
]

JOIN_MODES = ("condition", "dose_time")


def _color_map(labels: Sequence[str]) -> Dict[str, str]:
    """Map labels to colors, keeping first-seen order."""
    unique = list(dict.fromkeys(str(l) for l in labels))
    return {l: PALETTE[i % len(PALETTE)] for i, l in enumerate(unique)}


def _ordered_levels(series: pd.Series) -> List[str]:
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.astype(str))
        return [str(c) for c in series.cat.categories if str(c) in present]
    return sorted(series.astype(str).unique())


# =========================================================================
# Annotation
# =========================================================================

def annotate_summary(
    summary: pd.DataFrame,
    labels: pd.DataFrame,
    join_on: str = "condition",
    comparison_group: Optional[str] = None,
) -> pd.DataFrame:
    """
    Left-join significance labels onto the condition summary.

    Parameters
    ----------
    summary : pd.DataFrame
        Condition summary (dose, time, group, mean, sd, n)
    labels : pd.DataFrame
        Selected contrast rows with dose, time and ``label`` columns
    join_on : str
        'condition' attaches each label to the comparison group's row of the
        same dose and time. 'dose_time' joins on dose and time only, so the
        label repeats across every group.
    comparison_group : str, optional
        Group receiving the labels; required for 'condition'

    Returns
    -------
    pd.DataFrame
        Summary with a ``label`` column; missing and 'ns' labels are ''.
    """
    if join_on not in JOIN_MODES:
        raise ValueError(f"join_on must be one of {JOIN_MODES}, got {join_on!r}")

    out = summary.copy()
    lab = labels[[DOSE_COL, TIME_COL, 'label']].drop_duplicates(subset=[DOSE_COL, TIME_COL])
    lab = lab.astype({DOSE_COL: float, TIME_COL: str})
    out[TIME_COL] = out[TIME_COL].astype(str)

    if join_on == "condition":
        if comparison_group is None:
            raise ValueError("comparison_group is required when join_on='condition'")
        out['_group_key'] = out[GROUP_COL].astype(str)
        lab = lab.assign(_group_key=str(comparison_group))
        keys = [DOSE_COL, TIME_COL, '_group_key']
        eligible = out['_group_key'] == str(comparison_group)
    else:
        keys = [DOSE_COL, TIME_COL]
        eligible = pd.Series(True, index=out.index)

    out = out.merge(lab, on=keys, how='left')
    out.index = summary.index

    unmatched = eligible & out['label'].isna()
    if unmatched.any():
        warnings.warn(
            f"{int(unmatched.sum())} summary rows have no significance label; using ''",
            JoinMismatch,
        )

    out['label'] = out['label'].fillna("").replace("ns", "")
    return out.drop(columns=['_group_key'], errors='ignore')


# =========================================================================
# Plots
# =========================================================================

class DoseResponsePlotter:
    """Render faceted dose-response charts from annotated summaries."""

    def __init__(
        self,
        output_dir: Path,
        logger: logging.Logger | None = None,
        config: PlotConfig | None = None,
    ):
        self.output_dir = Path(output_dir)
        self.logger = logger
        self.config = config or PlotConfig()

    def _log(self, msg: str) -> None:
        if self.logger:
            self.logger.info(msg)

    def _warn(self, msg: str) -> None:
        if self.logger:
            self.logger.warning(msg)

    @staticmethod
    def _safe_name(text: str) -> str:
        return re.sub(r"[^A-Za-z0-9_.-]+", "_", str(text)).strip("_")

    def _save(self, fig: plt.Figure, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.tight_layout()
        fig.savefig(path, dpi=self.config.dpi)
        plt.close(fig)
        self._log(f"Saved plot: {path}")
        return path

    @staticmethod
    def _set_dose_scale(ax, doses: pd.Series) -> None:
        positive = doses[doses > 0]
        if positive.empty:
            return
        if (doses <= 0).any():
            ax.set_xscale("symlog", linthresh=float(positive.min()))
        else:
            ax.set_xscale("log")

    def plot_dose_response(
        self,
        annotated: pd.DataFrame,
        facet_col: str = GROUP_COL,
        series_col: str = TIME_COL,
        fit: Optional[pd.DataFrame] = None,
        title: str = "Dose response",
        filename: str = "dose_response_annotated.png",
    ) -> Optional[Path]:
        """
        Mean +/- SD per condition, one panel per ``facet_col`` level and one
        series per ``series_col`` level, log dose axis, significance labels
        above the points. ``fit`` (dose, time, group, estimate) adds model
        lines.
        """
        needed = [DOSE_COL, facet_col, series_col, 'mean', 'sd']
        missing = [c for c in needed if c not in annotated.columns]
        if missing:
            self._warn(f"Skipping {filename}: missing columns {missing}")
            return None
        use = annotated.dropna(subset=['mean'])
        if use.empty:
            self._warn(f"Skipping {filename}: no non-missing means")
            return None

        facets = _ordered_levels(use[facet_col])
        cmap = _color_map(_ordered_levels(use[series_col]))
        show_fit = fit is not None and self.config.show_fit

        fig, axes = plt.subplots(
            1, len(facets), figsize=(4.5 * len(facets), 4.5), sharey=True, squeeze=False,
        )
        for ax, facet in zip(axes[0], facets):
            panel = use[use[facet_col].astype(str) == facet]
            for series, sub in panel.groupby(panel[series_col].astype(str), sort=False):
                sub = sub.sort_values(DOSE_COL)
                color = cmap[series]
                ax.errorbar(
                    sub[DOSE_COL], sub['mean'], yerr=sub['sd'].fillna(0.0),
                    fmt='o' if show_fit else 'o-', color=color, capsize=3,
                    markersize=4, label=series,
                )
                if 'label' in sub.columns:
                    for _, row in sub[sub['label'].astype(str) != ""].iterrows():
                        top = row['mean'] + (row['sd'] if np.isfinite(row['sd']) else 0.0)
                        ax.annotate(
                            row['label'], (row[DOSE_COL], top),
                            textcoords="offset points", xytext=(0, 4),
                            ha='center', fontsize=9, color=color,
                        )
                if show_fit:
                    line = fit[
                        (fit[facet_col].astype(str) == facet)
                        & (fit[series_col].astype(str) == series)
                    ].sort_values(DOSE_COL)
                    ax.plot(line[DOSE_COL], line['estimate'], '--', color=color, linewidth=1)

            self._set_dose_scale(ax, use[DOSE_COL])
            ax.set_title(facet, fontsize=12)
            ax.set_xlabel(self.config.x_label)
            ax.grid(True, alpha=0.3)
        axes[0][0].set_ylabel(self.config.y_label)
        axes[0][-1].legend(title=series_col, fontsize=8, title_fontsize=9)
        fig.suptitle(title, fontsize=13)

        return self._save(fig, self.output_dir / "plots" / self._safe_name(filename))

    def plot_contrast_estimates(
        self,
        contrasts: pd.DataFrame,
        filename: str = "group_contrast_estimates.png",
    ) -> Optional[Path]:
        """Selected contrast estimates +/- 1.96 SE against dose, one series per time."""
        needed = [DOSE_COL, TIME_COL, 'estimate', 'se']
        if contrasts.empty or any(c not in contrasts.columns for c in needed):
            self._warn(f"Skipping {filename}: no contrast estimates")
            return None

        cmap = _color_map(_ordered_levels(contrasts[TIME_COL]))
        fig, ax = plt.subplots(figsize=(7, 4.5))
        for time, sub in contrasts.groupby(TIME_COL, sort=True):
            sub = sub.sort_values(DOSE_COL)
            ax.errorbar(
                sub[DOSE_COL], sub['estimate'], yerr=1.96 * sub['se'],
                fmt='o-', capsize=3, color=cmap[str(time)], label=str(time),
            )
        ax.axhline(0, color='black', linewidth=0.5)
        self._set_dose_scale(ax, contrasts[DOSE_COL])
        ax.set_xlabel(self.config.x_label)
        ax.set_ylabel("Difference in means")
        if 'contrast' in contrasts.columns:
            ax.set_title(str(contrasts['contrast'].iloc[0]))
        ax.legend(title=TIME_COL, fontsize=8)
        ax.grid(True, alpha=0.3)
        return self._save(fig, self.output_dir / "plots" / self._safe_name(filename))
