import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import mixed_model_analysis
from cell_death_data import ConvergenceError, DomainError, JoinMismatch, reshape_replicates
from cell_death_plotting import annotate_summary
from demo_cell_death_pipeline import generate_synthetic_cell_death_data
from mixed_model_analysis import (
    EstimatedMeans,
    MixedModelFitter,
    estimated_means,
    pairwise_contrasts,
    select_contrast,
    significance_tier,
    summarize_conditions,
    type3_anova,
)


def _observations(**kwargs) -> pd.DataFrame:
    wide = generate_synthetic_cell_death_data(random_seed=3, **kwargs)
    wide = wide.rename(columns={"Dose": "dose", "Time": "time", "Group": "group"})
    return reshape_replicates(wide, "Rep")


@pytest.fixture(scope="module")
def observations():
    return _observations()


@pytest.fixture(scope="module")
def factor_model(observations):
    return MixedModelFitter().fit_factor_model(observations)


@pytest.fixture(scope="module")
def log_model(observations):
    return MixedModelFitter().fit_log_model(observations)


# -----------------------------------------------------------------------------
# Summaries
# -----------------------------------------------------------------------------

def test_summary_has_one_row_per_condition_with_four_replicates(observations):
    summary = summarize_conditions(observations)

    assert len(summary) == 8 * 2 * 3
    assert (summary["n"] == 4).all()
    assert list(summary.columns) == ["dose", "time", "group", "mean", "sd", "sem", "n"]


def test_summary_single_value_and_all_missing_groups():
    long = pd.DataFrame({
        "dose": [1.0, 1.0, 2.0, 2.0],
        "time": ["24h"] * 4,
        "group": ["Ven"] * 4,
        "value": [42.0, np.nan, np.nan, np.nan],
    })

    summary = summarize_conditions(long).set_index("dose")

    assert summary.loc[1.0, "mean"] == 42.0
    assert np.isnan(summary.loc[1.0, "sd"])
    assert summary.loc[1.0, "n"] == 1
    assert np.isnan(summary.loc[2.0, "mean"])
    assert np.isnan(summary.loc[2.0, "sd"])
    assert summary.loc[2.0, "n"] == 0


def test_summary_does_not_depend_on_key_order(observations):
    a = summarize_conditions(observations, keys=["dose", "time", "group"])
    b = summarize_conditions(observations, keys=["group", "dose", "time"])

    pd.testing.assert_frame_equal(a, b)


# -----------------------------------------------------------------------------
# Model fitting
# -----------------------------------------------------------------------------

def test_log_model_rejects_non_positive_dose(observations):
    bad = observations.copy()
    bad.loc[bad["dose"] == bad["dose"].min(), "dose"] = 0.0

    with pytest.raises(DomainError, match="non-positive"):
        MixedModelFitter().fit_log_model(bad)


def test_non_converged_fit_raises_convergence_error(observations, monkeypatch):
    monkeypatch.setattr(
        mixed_model_analysis.MixedLM, "fit",
        lambda self, **kwargs: SimpleNamespace(converged=False),
    )

    with pytest.raises(ConvergenceError):
        MixedModelFitter().fit_factor_model(observations)


def test_factor_model_has_one_random_intercept_per_condition(factor_model):
    assert len(factor_model.group_levels) == 48
    assert factor_model.n_obs == 192
    assert factor_model.df_resid == 192 - 48
    assert factor_model.dose_scale == "factor"
    assert len(factor_model.params) == 48
    assert factor_model.dropped_columns == []
    assert factor_model.converged


def test_saturated_factor_model_flags_aliased_random_intercept(factor_model, log_model):
    assert factor_model.random_intercept_aliased
    assert factor_model.random_intercept_var == 0.0
    assert any("aliased" in w for w in factor_model.fit_warnings)
    assert not log_model.random_intercept_aliased
    assert log_model.random_intercept_var >= 0.0


def test_log_and_factor_models_share_the_dose_set(factor_model, log_model):
    np.testing.assert_array_equal(factor_model.doses, log_model.doses)
    assert log_model.dose_scale == "log"
    assert len(log_model.group_levels) == 48
    assert len(log_model.params) == 12


def test_missing_values_are_dropped_before_fitting(observations):
    obs = observations.copy()
    obs.loc[obs.index[:3], "value"] = np.nan

    model = MixedModelFitter().fit_log_model(obs)

    assert model.n_obs == 189


def _missing_cell(observations: pd.DataFrame, how: str) -> pd.DataFrame:
    """Remove the 'Ven + Bia 25' / 48h / top-dose cell, or blank its replicates."""
    cell = (
        (observations["group"] == "Ven + Bia 25")
        & (observations["time"] == "48h")
        & (observations["dose"] == observations["dose"].max())
    )
    if how == "drop":
        return observations[~cell].reset_index(drop=True)
    obs = observations.copy()
    obs.loc[cell, "value"] = np.nan
    return obs


@pytest.mark.parametrize("how", ["drop", "nan"])
def test_factor_model_fits_with_a_missing_cell(observations, how):
    obs = _missing_cell(observations, how)

    model = MixedModelFitter().fit_factor_model(obs)

    assert model.converged
    assert model.n_obs == 188
    assert len(model.group_levels) == 47
    assert len(model.dropped_columns) == 1
    assert model.dropped_columns[0].count(":") == 2
    assert len(model.params) == 47
    assert model.df_resid == 188 - 47
    assert any("aliased fixed-effect" in w for w in model.fit_warnings)

    table = type3_anova(model)
    assert table.loc["dose:time:group", "num_df"] == 13
    assert table.loc["dose", "num_df"] == 7
    assert np.isfinite(table["F"]).all()


@pytest.mark.parametrize("how", ["drop", "nan"])
def test_missing_cell_drops_one_labelled_contrast(observations, how):
    obs = _missing_cell(observations, how)
    model = MixedModelFitter().fit_factor_model(obs)

    means = estimated_means(model, ["dose", "time", "group"])
    contrasts = pairwise_contrasts(means, ["dose", "time"])
    selected = select_contrast(contrasts, "Ven", "Ven + Bia 25")

    assert len(means.table) == 47
    assert np.isfinite(means.table["se"]).all()
    # 15 full strata x 3 pairs + 1 pair in the incomplete stratum
    assert len(contrasts) == 46
    assert len(selected) == 15
    top = observations["dose"].max()
    assert not ((selected["dose"] == top) & (selected["time"] == "48h")).any()


def test_missing_cell_gets_empty_label_and_join_warning(observations):
    obs = _missing_cell(observations, "nan")
    model = MixedModelFitter().fit_factor_model(obs)
    labels = select_contrast(
        pairwise_contrasts(estimated_means(model, ["dose", "time", "group"]), ["dose", "time"]),
        "Ven", "Ven + Bia 25",
    )
    summary = summarize_conditions(obs)

    with pytest.warns(JoinMismatch):
        annotated = annotate_summary(summary, labels, join_on="condition",
                                     comparison_group="Ven + Bia 25")

    row = annotated[
        (annotated["group"] == "Ven + Bia 25")
        & (annotated["time"] == "48h")
        & (annotated["dose"] == obs["dose"].max())
    ]
    assert row["n"].item() == 0
    assert row["label"].item() == ""


def test_factor_model_with_scattered_missing_replicates(observations):
    obs = observations.copy()
    obs.loc[obs.index[::7], "value"] = np.nan

    model = MixedModelFitter().fit_factor_model(obs)
    selected = select_contrast(
        pairwise_contrasts(estimated_means(model, ["dose", "time", "group"]), ["dose", "time"]),
        "Ven", "Ven + Bia 25",
    )

    assert model.n_obs == 192 - 28
    assert model.dropped_columns == []
    assert len(model.group_levels) == 48
    assert len(selected) == 16


def test_coefficients_table_is_finite(log_model):
    coefs = log_model.coefficients()

    assert list(coefs.columns) == ["term", "estimate", "se", "df", "t_value", "p_value"]
    assert np.isfinite(coefs["se"]).all()
    assert ((coefs["p_value"] >= 0) & (coefs["p_value"] <= 1)).all()


# -----------------------------------------------------------------------------
# Effects
# -----------------------------------------------------------------------------

def test_type3_anova_factor_model_terms_and_df(factor_model):
    table = type3_anova(factor_model)

    expected_df = {
        "dose": 7, "time": 1, "group": 2,
        "dose:time": 7, "dose:group": 14, "time:group": 2,
        "dose:time:group": 14,
    }
    assert set(table.index) == set(expected_df)
    for term, num_df in expected_df.items():
        assert table.loc[term, "num_df"] == num_df
    assert (table["den_df"] == 144).all()
    # the synthetic curves respond strongly to dose and co-treatment
    assert table.loc["dose", "p_value"] < 1e-6
    assert table.loc["group", "p_value"] < 1e-6


def test_type3_anova_log_model_terms(log_model):
    table = type3_anova(log_model)

    assert set(table.index) == {
        "log_dose", "time", "group", "log_dose:time", "log_dose:group",
        "time:group", "log_dose:time:group",
    }
    assert (table["F"] >= 0).all()


def test_saturated_model_cell_means_equal_observed_means(factor_model, observations):
    means = estimated_means(factor_model, ["dose", "time", "group"])
    summary = summarize_conditions(observations)

    merged = summary.assign(group=summary["group"].astype(str)).merge(
        means.table.assign(group=means.table["group"].astype(str)),
        on=["dose", "time", "group"],
    )
    assert len(merged) == 48
    np.testing.assert_allclose(merged["estimate"], merged["mean"], rtol=1e-5, atol=1e-5)
    assert (merged["ci_lower"] < merged["estimate"]).all()
    assert (merged["ci_upper"] > merged["estimate"]).all()


def test_estimated_means_average_over_unlisted_factors(factor_model):
    cells = estimated_means(factor_model, ["dose", "time", "group"]).table
    by_group = estimated_means(factor_model, ["group"]).table

    assert len(by_group) == 3
    for _, row in by_group.iterrows():
        expected = cells.loc[cells["group"] == row["group"], "estimate"].mean()
        assert row["estimate"] == pytest.approx(expected)


def test_estimated_means_rejects_unknown_factor(factor_model):
    with pytest.raises(KeyError):
        estimated_means(factor_model, ["replicate"])


# -----------------------------------------------------------------------------
# Contrasts
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "p, tier",
    [
        (0.0011, "**"),
        (0.00099, "***"),
        (0.001, "**"),
        (0.05, "ns"),
        (0.0499, "*"),
        (0.01, "*"),
        (0.5, "ns"),
        (np.nan, "ns"),
        (None, "ns"),
    ],
)
def test_significance_tier_boundaries(p, tier):
    assert significance_tier(p) == tier


def _toy_means() -> EstimatedMeans:
    table = pd.DataFrame({
        "time": ["24h", "24h", "24h", "48h", "48h", "48h"],
        "group": ["A", "B", "C", "A", "B", "C"],
    })
    params = np.array([10.0, 12.0, 30.0, 10.0, 10.5, 11.0])
    return EstimatedMeans(
        table=table,
        factors=["time", "group"],
        linfct=np.eye(6),
        params=params,
        cov=np.eye(6) * 0.25,
        df=20.0,
    )


def test_pairwise_contrasts_within_strata_and_bonferroni_family():
    contrasts = pairwise_contrasts(_toy_means(), ["time"])

    assert len(contrasts) == 6
    assert contrasts["contrast"].tolist()[:3] == ["A - B", "A - C", "B - C"]
    assert contrasts["time"].tolist() == ["24h"] * 3 + ["48h"] * 3
    assert contrasts.loc[0, "estimate"] == pytest.approx(-2.0)
    assert contrasts.loc[0, "se"] == pytest.approx(np.sqrt(0.5))

    expected = np.minimum(contrasts["p_value"] * 6, 1.0)
    np.testing.assert_allclose(contrasts["p_adjusted"], expected)
    assert (contrasts["p_adjusted"] >= contrasts["p_value"]).all()
    assert contrasts.loc[1, "significance"] == "***"
    assert contrasts.loc[3, "significance"] == "ns"


def test_pairwise_contrasts_requires_a_varying_factor():
    with pytest.raises(ValueError):
        pairwise_contrasts(_toy_means(), ["time", "group"])
    with pytest.raises(KeyError):
        pairwise_contrasts(_toy_means(), ["dose"])


def test_select_contrast_keeps_only_requested_pair_and_blanks_ns():
    contrasts = pairwise_contrasts(_toy_means(), ["time"])

    selected = select_contrast(contrasts, "C", "A")

    assert len(selected) == 2
    assert set(selected["contrast"]) == {"A - C"}
    assert selected.loc[selected["time"] == "24h", "label"].item() == "***"
    assert selected.loc[selected["time"] == "48h", "label"].item() == ""


def test_group_contrasts_from_fitted_model(factor_model):
    means = estimated_means(factor_model, ["dose", "time", "group"])
    contrasts = pairwise_contrasts(means, ["dose", "time"])

    # 16 strata x 3 group pairs
    assert len(contrasts) == 48
    selected = select_contrast(contrasts, "Ven", "Ven + Bia 25")
    assert len(selected) == 16
    assert set(selected["contrast"]) == {"Ven - Ven + Bia 25"}
    assert set(selected["label"]) <= {"", "*", "**", "***"}
