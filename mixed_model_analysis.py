"""
Mixed-Model Analysis Utilities for the Cell Death Pipeline
==========================================================

This module provides:
  - Condition summaries (mean / SD / n per dose, time, group)
  - Mixed-effects model fitting with a random intercept per condition
    (dose as factor, dose as continuous log10)
  - Type III ANOVA on fixed-effect terms
  - Estimated marginal means
  - Pairwise contrasts with Bonferroni correction and significance tiers

Integrates with the CellDeathProductionPipeline.
"""

from __future__ import annotations

import itertools
import re
import warnings
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from statsmodels.regression.mixed_linear_model import MixedLM

from cell_death_data import (
    CONDITION_COLS,
    DOSE_COL,
    GROUP_COL,
    TIME_COL,
    VALUE_COL,
    ConvergenceError,
    DomainError,
)


LOG_DOSE_COL = "log_dose"

FACTOR_MODEL_TERMS = f"C({DOSE_COL}, Sum) * C({TIME_COL}, Sum) * C({GROUP_COL}, Sum)"
LOG_MODEL_TERMS = f"{LOG_DOSE_COL} * C({TIME_COL}, Sum) * C({GROUP_COL}, Sum)"

# (upper bound, label), checked in order; bounds are exclusive
SIGNIFICANCE_LADDER = [(0.001, "***"), (0.01, "**"), (0.05, "*")]


# =============================================================================
# SUMMARY STATISTICS
# =============================================================================

def summarize_conditions(
    observations: pd.DataFrame,
    keys: Optional[Sequence[str]] = None,
    value_col: str = VALUE_COL,
) -> pd.DataFrame:
    """
    Compute mean, sample SD, SEM and count per condition.

    Parameters
    ----------
    observations : pd.DataFrame
        Long-form observations
    keys : sequence of str, optional
        Grouping columns (default: dose, time, group). Their order does not
        change the result.
    value_col : str
        Response column

    Returns
    -------
    pd.DataFrame
        One row per realised condition with ``mean``, ``sd``, ``sem`` and
        ``n`` (non-missing count). Conditions whose values are all missing
        keep NaN mean/SD and n = 0.
    """
    keys = list(keys) if keys is not None else list(CONDITION_COLS)
    missing = [k for k in keys + [value_col] if k not in observations.columns]
    if missing:
        raise KeyError(f"Missing columns for summary: {missing}")

    # Canonical key order so the output does not depend on the caller's order
    keys = [c for c in observations.columns if c in set(keys)]

    df = observations[keys].copy()
    df[value_col] = pd.to_numeric(observations[value_col], errors='coerce')

    summary = (
        df.groupby(keys, observed=True, sort=True)[value_col]
        .agg(['mean', 'std', 'sem', 'count'])
        .rename(columns={'std': 'sd', 'count': 'n'})
        .reset_index()
    )
    summary['n'] = summary['n'].astype(int)
    return summary


# =============================================================================
# MODEL FITTING
# =============================================================================

def condition_labels(df: pd.DataFrame, grouping: Sequence[str]) -> pd.Series:
    """Label each row by its exact combination of the grouping columns."""
    return df[list(grouping)].astype(str).agg(" | ".join, axis=1)


def pretty_term(term: str) -> str:
    """'C(dose, Sum):C(time, Sum)' -> 'dose:time'."""
    return re.sub(r"C\((\w+)(?:,\s*\w+)?\)", r"\1", term)


@dataclass
class FittedModel:
    """Results from a mixed-model fit. Not mutated after fitting."""
    formula: str
    dose_scale: str
    result: Any
    design_info: Any
    params: pd.Series
    cov: pd.DataFrame
    df_resid: float
    n_obs: int
    grouping: List[str]
    group_levels: List[str]
    reference_grid: pd.DataFrame
    doses: np.ndarray
    design_columns: List[str] = field(default_factory=list)
    dropped_columns: List[str] = field(default_factory=list)
    random_intercept_var: float = np.nan
    random_intercept_aliased: bool = False
    converged: bool = False
    fit_warnings: List[str] = field(default_factory=list)

    @property
    def residual_var(self) -> float:
        return float(self.result.scale)

    def coefficients(self) -> pd.DataFrame:
        """Fixed-effect table: estimate, SE, t statistic and p-value."""
        se = np.sqrt(np.diag(self.cov.values))
        t_stat = self.params.values / se
        p_value = 2 * stats.t.sf(np.abs(t_stat), self.df_resid)
        return pd.DataFrame({
            'term': self.params.index,
            'estimate': self.params.values,
            'se': se,
            'df': self.df_resid,
            't_value': t_stat,
            'p_value': p_value,
        })


def _gls_fixed_effects_cov(
    X: np.ndarray,
    group_codes: np.ndarray,
    scale: float,
    tau2: float,
) -> np.ndarray:
    """(X' V^-1 X)^-1 with V = scale * I + tau2 * J inside each group."""
    p = X.shape[1]
    xtvx = np.zeros((p, p))
    for code in np.unique(group_codes):
        Xg = X[group_codes == code]
        n = Xg.shape[0]
        s = Xg.sum(axis=0)
        shrink = tau2 / (scale + n * tau2)
        xtvx += (Xg.T @ Xg - shrink * np.outer(s, s)) / scale
    return np.linalg.inv(xtvx)


def _estimable_columns(X: np.ndarray) -> List[int]:
    """
    Indices of a full-rank subset of design columns.

    Columns are taken left to right and kept only if they add rank, so an
    empty factorial cell drops its highest-order interaction columns first.
    """
    keep: List[int] = []
    for j in range(X.shape[1]):
        if np.linalg.matrix_rank(X[:, keep + [j]]) > len(keep):
            keep.append(j)
    return keep


class MixedModelFitter:
    """
    Fit linear mixed models of the response with a random intercept per
    condition combination.
    """

    def __init__(
        self,
        response_col: str = VALUE_COL,
        method: str = "lbfgs",
        reml: bool = True,
        maxiter: int = 500,
    ):
        self.response_col = response_col
        self.method = method
        self.reml = reml
        self.maxiter = maxiter

    def fit(
        self,
        observations: pd.DataFrame,
        fixed_effects: str,
        grouping: Sequence[str] = tuple(CONDITION_COLS),
        covariates: Sequence[str] = (),
        dose_scale: str = "factor",
    ) -> FittedModel:
        """
        Fit a mixed model.

        Parameters
        ----------
        observations : pd.DataFrame
            Long-form observations
        fixed_effects : str
            patsy right-hand side for the fixed effects
        grouping : sequence of str
            Columns whose exact combination defines the random-intercept level
        covariates : sequence of str
            Extra numeric predictor columns carried into the reference grid
        dose_scale : str
            'factor' or 'log', recorded on the result

        Returns
        -------
        FittedModel

        Raises
        ------
        ConvergenceError
            If the optimizer fails or reports non-convergence
        """
        grouping = list(grouping)
        data = observations.dropna(subset=[self.response_col] + grouping).copy()
        data[self.response_col] = data[self.response_col].astype(float)
        for col in data.columns:
            if isinstance(data[col].dtype, pd.CategoricalDtype):
                data[col] = data[col].cat.remove_unused_categories()
        data = data.reset_index(drop=True)
        if data.empty:
            raise ValueError("No non-missing observations to fit")

        formula = f"{self.response_col} ~ {fixed_effects}"
        y, X_full = patsy.dmatrices(formula, data, return_type="dataframe")
        data = data.loc[X_full.index]
        labels = condition_labels(data, grouping)

        # Missing factorial cells make the full design rank deficient
        keep = _estimable_columns(X_full.values)
        X = X_full.iloc[:, keep]
        dropped = [c for c in X_full.columns if c not in set(X.columns)]

        model = MixedLM(y.iloc[:, 0], X, groups=labels.values)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                result = model.fit(
                    reml=self.reml, method=self.method, maxiter=self.maxiter,
                )
            except (np.linalg.LinAlgError, ValueError) as e:
                raise ConvergenceError(f"Mixed model fit failed ({formula}): {e}") from e

        if not getattr(result, "converged", False):
            raise ConvergenceError(f"Mixed model did not converge ({formula})")

        codes, uniques = pd.factorize(labels, sort=True)
        X_arr = X.values
        n_obs = X_arr.shape[0]
        rank = np.linalg.matrix_rank(X_arr)
        fit_warnings = [str(w.message) for w in caught]
        if dropped:
            fit_warnings.append(
                f"Dropped {len(dropped)} aliased fixed-effect columns: {dropped}"
            )

        # A random intercept lying in the span of the fixed effects is not
        # identifiable (flat REML likelihood); its variance is taken as zero.
        Z = np.zeros((n_obs, len(uniques)))
        Z[np.arange(n_obs), codes] = 1.0
        aliased = np.linalg.matrix_rank(np.hstack([X_arr, Z])) == rank
        tau2 = 0.0 if aliased else float(np.asarray(result.cov_re)[0, 0])
        if aliased:
            fit_warnings.append(
                "Random intercept is aliased with the fixed effects; "
                "its variance is set to zero"
            )

        try:
            cov = _gls_fixed_effects_cov(X_arr, codes, float(result.scale), tau2)
        except np.linalg.LinAlgError as e:
            raise ConvergenceError(f"Singular fixed-effect information ({formula})") from e

        grid = (
            data[grouping + list(covariates)]
            .drop_duplicates(subset=grouping)
            .sort_values(grouping)
            .reset_index(drop=True)
        )

        return FittedModel(
            formula=formula,
            dose_scale=dose_scale,
            result=result,
            design_info=X_full.design_info,
            params=pd.Series(np.asarray(result.fe_params), index=X.columns),
            cov=pd.DataFrame(cov, index=X.columns, columns=X.columns),
            df_resid=float(n_obs - rank),
            n_obs=n_obs,
            grouping=grouping,
            group_levels=list(uniques),
            reference_grid=grid,
            doses=np.sort(data[DOSE_COL].unique()) if DOSE_COL in data else np.array([]),
            design_columns=list(X_full.columns),
            dropped_columns=dropped,
            random_intercept_var=tau2,
            random_intercept_aliased=bool(aliased),
            converged=bool(result.converged),
            fit_warnings=fit_warnings,
        )

    def fit_factor_model(self, observations: pd.DataFrame) -> FittedModel:
        """Dose as unordered factor, full dose x time x group factorial."""
        return self.fit(observations, FACTOR_MODEL_TERMS, CONDITION_COLS, dose_scale="factor")

    def fit_log_model(self, observations: pd.DataFrame) -> FittedModel:
        """
        Dose as continuous log10 covariate in the same factorial structure.

        Raises
        ------
        DomainError
            If any dose is zero or negative
        """
        doses = observations[DOSE_COL].dropna()
        if (doses <= 0).any():
            bad = sorted(doses[doses <= 0].unique().tolist())
            raise DomainError(f"log10 undefined for non-positive doses: {bad}")
        data = observations.copy()
        data[LOG_DOSE_COL] = np.log10(data[DOSE_COL].astype(float))
        return self.fit(
            data, LOG_MODEL_TERMS, CONDITION_COLS,
            covariates=[LOG_DOSE_COL], dose_scale="log",
        )


# =============================================================================
# EFFECTS
# =============================================================================

def type3_anova(model: FittedModel) -> pd.DataFrame:
    """
    Type III Wald F-tests for every fixed-effect term.

    Each term is tested with all other terms, including the interactions
    containing it, left in the model. Relies on sum-to-zero factor coding.
    Columns dropped as aliased do not count towards a term's df; a term
    with no retained column is omitted.
    """
    beta = model.params.values
    cov = model.cov.values
    position = {name: i for i, name in enumerate(model.params.index)}
    rows = []
    for term, slc in model.design_info.term_name_slices.items():
        if term == "Intercept":
            continue
        idx = [position[c] for c in model.design_columns[slc] if c in position]
        if not idx:
            continue
        b = beta[idx]
        V = cov[np.ix_(idx, idx)]
        wald = float(b @ np.linalg.solve(V, b))
        num_df = len(idx)
        f_stat = wald / num_df
        rows.append({
            'term': pretty_term(term),
            'num_df': num_df,
            'den_df': model.df_resid,
            'F': f_stat,
            'p_value': stats.f.sf(f_stat, num_df, model.df_resid),
        })
    return pd.DataFrame(rows).set_index('term')


@dataclass
class EstimatedMeans:
    """Estimated marginal means plus the linear functions behind them."""
    table: pd.DataFrame
    factors: List[str]
    linfct: np.ndarray
    params: np.ndarray
    cov: np.ndarray
    df: float


def estimated_means(
    model: FittedModel,
    over_factors: Sequence[str],
    conf_level: float = 0.95,
) -> EstimatedMeans:
    """
    Model-predicted means for each realised combination of ``over_factors``.

    The reference grid is the set of realised conditions; factors not listed
    are averaged over with equal weights.
    """
    factors = [f for f in model.grouping if f in set(over_factors)]
    unknown = set(over_factors) - set(factors)
    if unknown:
        raise KeyError(f"Factors not in model grouping: {sorted(unknown)}")
    if not factors:
        raise ValueError("over_factors must name at least one factor")

    grid = model.reference_grid
    L_grid = patsy.build_design_matrices(
        [model.design_info], grid, return_type="matrix",
    )[0]
    # Realised cells are estimable, so the dropped columns can be left out
    retained = [model.design_columns.index(c) for c in model.params.index]
    L_grid = np.asarray(L_grid)[:, retained]

    beta = model.params.values
    cov = model.cov.values
    q = stats.t.ppf(0.5 + conf_level / 2, model.df_resid)

    rows = []
    linfct = []
    for key, sub in grid.groupby(factors, observed=True, sort=True):
        if not isinstance(key, tuple):
            key = (key,)
        L = L_grid[sub.index.to_numpy()].mean(axis=0)
        est = float(L @ beta)
        se = float(np.sqrt(L @ cov @ L))
        row = dict(zip(factors, key))
        row.update({
            'estimate': est,
            'se': se,
            'df': model.df_resid,
            'ci_lower': est - q * se,
            'ci_upper': est + q * se,
        })
        rows.append(row)
        linfct.append(L)

    table = pd.DataFrame(rows)
    return EstimatedMeans(
        table=table,
        factors=factors,
        linfct=np.vstack(linfct),
        params=beta,
        cov=cov,
        df=model.df_resid,
    )


# =============================================================================
# CONTRASTS
# =============================================================================

def significance_tier(p_value: Optional[float]) -> str:
    """Map a p-value onto '***', '**', '*' or 'ns'. Missing p-values are 'ns'."""
    if p_value is None or not np.isfinite(p_value):
        return "ns"
    for bound, label in SIGNIFICANCE_LADDER:
        if p_value < bound:
            return label
    return "ns"


@dataclass
class Contrast:
    """A single pairwise comparison within one stratum."""
    by: Dict[str, Any]
    level_1: str
    level_2: str
    estimate: float
    se: float
    df: float
    t_ratio: float
    p_value: float
    p_adjusted: float = np.nan
    significance: str = "ns"

    @property
    def contrast(self) -> str:
        return f"{self.level_1} - {self.level_2}"

    def to_row(self) -> Dict[str, Any]:
        row = dict(self.by)
        data = asdict(self)
        data.pop('by')
        row['contrast'] = self.contrast
        row.update(data)
        return row


CONTRAST_COLUMNS = [
    'contrast', 'level_1', 'level_2', 'estimate', 'se', 'df',
    't_ratio', 'p_value', 'p_adjusted', 'significance',
]


def _level_label(row: pd.Series, factors: List[str]) -> str:
    return " ".join(str(row[f]) for f in factors)


def pairwise_contrasts(
    means: EstimatedMeans,
    held_fixed: Sequence[str],
) -> pd.DataFrame:
    """
    All pairwise differences among the remaining factor levels, within every
    stratum of the held-fixed factors.

    P-values are Bonferroni-corrected over the whole family requested in this
    call: p_adjusted = min(1, p * M), with M the total number of tests.

    Returns
    -------
    pd.DataFrame
        One row per contrast, in stratum order then level order. The
        estimate is level_1 - level_2.
    """
    held = [f for f in means.factors if f in set(held_fixed)]
    unknown = set(held_fixed) - set(held)
    if unknown:
        raise KeyError(f"Held-fixed factors not in estimated means: {sorted(unknown)}")
    varying = [f for f in means.factors if f not in held]
    if not varying:
        raise ValueError("At least one factor must vary within strata")

    table = means.table.reset_index(drop=True)
    strata = table.groupby(held, observed=True, sort=False) if held else [((), table)]

    contrasts: List[Contrast] = []
    for key, stratum in strata:
        if not isinstance(key, tuple):
            key = (key,)
        by = dict(zip(held, key))
        for a, b in itertools.combinations(stratum.index.to_list(), 2):
            d = means.linfct[a] - means.linfct[b]
            est = float(d @ means.params)
            se = float(np.sqrt(d @ means.cov @ d))
            t_ratio = est / se if se > 0 else np.nan
            p_value = float(2 * stats.t.sf(abs(t_ratio), means.df)) if np.isfinite(t_ratio) else np.nan
            contrasts.append(Contrast(
                by=by,
                level_1=_level_label(table.loc[a], varying),
                level_2=_level_label(table.loc[b], varying),
                estimate=est,
                se=se,
                df=means.df,
                t_ratio=t_ratio,
                p_value=p_value,
            ))

    if not contrasts:
        return pd.DataFrame(columns=held + CONTRAST_COLUMNS)

    # Bonferroni over the full family
    n_tests = len(contrasts)
    for c in contrasts:
        c.p_adjusted = min(c.p_value * n_tests, 1.0) if np.isfinite(c.p_value) else np.nan
        c.significance = significance_tier(c.p_adjusted)

    result_df = pd.DataFrame([c.to_row() for c in contrasts])
    return result_df[held + CONTRAST_COLUMNS]


def select_contrast(
    contrasts: pd.DataFrame,
    baseline: str,
    comparison: str,
) -> pd.DataFrame:
    """
    Keep only the baseline-vs-comparison rows and derive display labels.

    The returned ``label`` column holds the tier string, with 'ns' replaced
    by an empty string.
    """
    pair = {str(baseline), str(comparison)}
    mask = contrasts.apply(
        lambda r: {str(r['level_1']), str(r['level_2'])} == pair, axis=1,
    ) if not contrasts.empty else pd.Series(dtype=bool)
    selected = contrasts[mask].copy() if not contrasts.empty else contrasts.copy()
    selected['label'] = selected['significance'].where(selected['significance'] != "ns", "")
    return selected.reset_index(drop=True)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def analyze_mixed_models(
    observations: pd.DataFrame,
    fitter: Optional[MixedModelFitter] = None,
) -> Dict[str, Any]:
    """
    Fit both models and run the effects analysis.

    Returns
    -------
    dict
        - 'factor_model', 'log_model': FittedModel
        - 'factor_anova', 'log_anova': Type III tables
        - 'factor_means': EstimatedMeans over dose, time, group
        - 'group_contrasts': group comparisons within dose x time
        - 'time_contrasts': time comparisons within dose x group
    """
    fitter = fitter or MixedModelFitter()
    results: Dict[str, Any] = {}

    results['factor_model'] = fitter.fit_factor_model(observations)
    results['log_model'] = fitter.fit_log_model(observations)
    results['factor_anova'] = type3_anova(results['factor_model'])
    results['log_anova'] = type3_anova(results['log_model'])

    means = estimated_means(results['factor_model'], CONDITION_COLS)
    results['factor_means'] = means
    results['group_contrasts'] = pairwise_contrasts(means, [DOSE_COL, TIME_COL])
    results['time_contrasts'] = pairwise_contrasts(means, [DOSE_COL, GROUP_COL])

    return results
