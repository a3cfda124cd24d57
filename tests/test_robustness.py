import numpy as np
import pandas as pd
import pytest
from scipy import stats

from bonus_analysis import models, robustness


def test_chi_squared_critical_value():
    assert robustness.CHI2_CRITICAL_DF1 == pytest.approx(3.841, abs=1e-3)


def test_constant_squared_residuals_pass_heteroskedasticity_check():
    fitted = pd.Series(np.linspace(5.0, 25.0, 200))
    residuals = pd.Series(np.tile([1.0, -1.0], 100))

    result = robustness.heteroskedasticity_test(residuals, fitted)

    assert result.statistic == pytest.approx(0.0)
    assert result.passed
    assert result.threshold == robustness.CHI2_CRITICAL_DF1


def test_residual_spread_growing_with_fit_fails_heteroskedasticity_check():
    fitted = pd.Series(np.linspace(1.0, 50.0, 200))
    residuals = fitted * np.tile([1.0, -1.0], 100)

    result = robustness.heteroskedasticity_test(residuals, fitted)

    assert result.statistic > robustness.CHI2_CRITICAL_DF1
    assert result.status == "fail"
    assert not result.passed


def test_normal_residuals_pass_shapiro():
    quantiles = stats.norm.ppf((np.arange(1, 201) - 0.5) / 200)

    result = robustness.normality_test(pd.Series(quantiles))

    assert result.status == "pass"
    assert result.p_value > 0.05


def test_skewed_residuals_raise_caution():
    values = np.random.default_rng(11).exponential(scale=2.0, size=500)

    result = robustness.normality_test(pd.Series(values))

    assert result.status == "caution"
    assert not result.passed


def test_too_few_residuals_raise_caution():
    result = robustness.normality_test(pd.Series([1.0, 2.0]))

    assert result.status == "caution"
    assert np.isnan(result.statistic)


def test_heterogeneity_sorted_by_effect_with_missing_periods_last():
    data = pd.DataFrame(
        {
            "store": [1, 1, 2, 2, 3, 4, 4],
            "period": pd.array([0, 1, 0, 1, 0, 0, 1], dtype="Int64"),
            "margin": [10.0, 12.0, 10.0, 18.0, 9.0, 15.0, 11.0],
        }
    )

    records = robustness.heterogeneity(data, "store")

    assert [record.key for record in records] == ["2", "1", "4", "3"]
    assert records[0].effect == pytest.approx(8.0)
    assert records[2].effect == pytest.approx(-4.0)
    assert np.isnan(records[-1].effect)
    assert records[-1].n_after == 0


def test_heterogeneity_summary_spread():
    records = [
        robustness.HeterogeneityRecord("a", 10.0, 14.0, 5, 5),
        robustness.HeterogeneityRecord("b", 10.0, 12.0, 5, 5),
        robustness.HeterogeneityRecord("c", 10.0, 9.0, 5, 5),
    ]

    summary = robustness.heterogeneity_summary(records)

    assert summary["max"] == pytest.approx(4.0)
    assert summary["min"] == pytest.approx(-1.0)
    assert summary["range"] == pytest.approx(5.0)
    assert summary["mean"] == pytest.approx(5.0 / 3)


def test_product_specific_effects(sales_data):
    frame = robustness.product_specific_effects(sales_data)

    assert frame["product"].tolist() == ["device", "insurance", "accessory", "undeclared"]
    assert frame["n_before"].sum() + frame["n_after"].sum() == len(sales_data)


def test_run_diagnostics_against_controlled_model(sales_data):
    suite = models.fit_all_models(sales_data)

    results = robustness.run_diagnostics(suite)

    assert [result.test for result in results] == ["Shapiro-Wilk", "Breusch-Pagan (n × R²)"]
    frame = robustness.diagnostics_frame(results)
    assert set(frame["status"]) <= {"pass", "caution", "fail"}


def test_run_diagnostics_skipped_without_controlled_model():
    assert robustness.run_diagnostics(models.ModelSuite()) == []


def test_run_writes_robustness_outputs(tmp_path, sales_data):
    data_path = tmp_path / "normalized.csv"
    sales_data.to_csv(data_path, index=False)

    out_dir = robustness.run(output_dir=tmp_path / "robustness", data_path=data_path)

    stores = pd.read_csv(out_dir / "store_heterogeneity.csv")
    assert len(stores) == 13
    regions = pd.read_csv(out_dir / "regional_heterogeneity.csv")
    assert sorted(regions["region"]) == ["Metropole Centre", "Shopping Mall", "Town Centre"]
    assert len(pd.read_csv(out_dir / "diagnostic_tests.csv")) == 2
    assert (out_dir / "qq_plot.png").exists()


def test_random_normal_residuals_pass_heteroskedasticity_check():
    rng = np.random.default_rng(0)
    fitted = pd.Series(np.linspace(5.0, 25.0, 1500))
    residuals = pd.Series(rng.normal(0.0, 2.0, size=1500))

    result = robustness.heteroskedasticity_test(residuals, fitted)

    assert 0 < result.statistic < robustness.CHI2_CRITICAL_DF1
    assert result.passed
