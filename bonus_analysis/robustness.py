"""Robustness checks: heterogeneous effects and regression diagnostics.

Diagnostics are computed against Model 2 (product controls) and are purely
advisory; nothing in this module changes the reported effect sizes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from . import common
from .models import CONTROLLED_MODEL, MODEL_SPECS, ModelSuite, fit_all_models

logger = logging.getLogger(__name__)

CHI2_CRITICAL_DF1 = float(stats.chi2.ppf(1 - common.ALPHA, df=1))


@dataclass(frozen=True)
class HeterogeneityRecord:
    """Mean margin before and after the bonus for one store or region."""

    key: str
    mean_before: float
    mean_after: float
    n_before: int
    n_after: int

    @property
    def effect(self) -> float:
        return self.mean_after - self.mean_before

    @property
    def pct_change(self) -> float:
        if not self.mean_before or np.isnan(self.mean_before):
            return float("nan")
        return self.effect / self.mean_before * 100


@dataclass(frozen=True)
class DiagnosticResult:
    """Outcome of one advisory assumption test."""

    test: str
    statistic: float
    p_value: float
    threshold: float
    status: str
    interpretation: str

    @property
    def passed(self) -> bool:
        return self.status == "pass"


def heterogeneity(data: pd.DataFrame, by: str) -> list[HeterogeneityRecord]:
    """Before/after means per group, ranked by effect (largest first)."""

    records: list[HeterogeneityRecord] = []
    for key, group in data.groupby(by, observed=True, sort=True):
        before = group.loc[group["period"].eq(0).fillna(False), "margin"].dropna()
        after = group.loc[group["period"].eq(1).fillna(False), "margin"].dropna()
        records.append(
            HeterogeneityRecord(
                key=str(key),
                mean_before=float(before.mean()) if len(before) else float("nan"),
                mean_after=float(after.mean()) if len(after) else float("nan"),
                n_before=len(before),
                n_after=len(after),
            )
        )
    return sorted(
        records,
        key=lambda record: (np.isnan(record.effect), -np.nan_to_num(record.effect)),
    )


def heterogeneity_frame(records: Sequence[HeterogeneityRecord], key_name: str) -> pd.DataFrame:
    return pd.DataFrame.from_records(
        [
            {
                key_name: record.key,
                "mean_margin_before": record.mean_before,
                "mean_margin_after": record.mean_after,
                "n_before": record.n_before,
                "n_after": record.n_after,
                "effect": record.effect,
                "pct_change": record.pct_change,
            }
            for record in records
        ],
        columns=[
            key_name,
            "mean_margin_before",
            "mean_margin_after",
            "n_before",
            "n_after",
            "effect",
            "pct_change",
        ],
    )


def heterogeneity_summary(records: Sequence[HeterogeneityRecord]) -> dict[str, float]:
    """Spread of group effects: max, min, range, SD and mean (pp)."""

    effects = pd.Series([record.effect for record in records], dtype=float).dropna()
    if effects.empty:
        return {key: float("nan") for key in ("max", "min", "range", "sd", "mean")}
    return {
        "max": float(effects.max()),
        "min": float(effects.min()),
        "range": float(effects.max() - effects.min()),
        "sd": float(effects.std()),
        "mean": float(effects.mean()),
    }


def product_specific_effects(data: pd.DataFrame) -> pd.DataFrame:
    """Mean margin and N per product category and period, with the change."""

    records = []
    for product in common.PRODUCT_COLUMNS:
        subset = data[data[product] == 1]
        before = subset.loc[subset["period"].eq(0).fillna(False), "margin"]
        after = subset.loc[subset["period"].eq(1).fillna(False), "margin"]
        mean_before = float(before.mean()) if len(before) else float("nan")
        mean_after = float(after.mean()) if len(after) else float("nan")
        records.append(
            {
                "product": product,
                "mean_before": mean_before,
                "mean_after": mean_after,
                "n_before": len(before),
                "n_after": len(after),
                "change": mean_after - mean_before,
            }
        )
    return pd.DataFrame.from_records(records)


def normality_test(residuals: pd.Series) -> DiagnosticResult:
    """Shapiro-Wilk test of the residuals; p > alpha reads as normal."""

    values = pd.Series(residuals, dtype=float).dropna().to_numpy()
    if values.size < 3:
        return DiagnosticResult(
            test="Shapiro-Wilk",
            statistic=float("nan"),
            p_value=float("nan"),
            threshold=common.ALPHA,
            status="caution",
            interpretation="Too few residuals for a normality test",
        )
    statistic, p_value = stats.shapiro(values)
    passed = p_value > common.ALPHA
    return DiagnosticResult(
        test="Shapiro-Wilk",
        statistic=float(statistic),
        p_value=float(p_value),
        threshold=common.ALPHA,
        status="pass" if passed else "caution",
        interpretation=(
            "Residuals appear normal"
            if passed
            else "Residuals may not be normal (expected with large n)"
        ),
    )


def heteroskedasticity_test(residuals: pd.Series, fitted: pd.Series) -> DiagnosticResult:
    """Breusch-Pagan style check: n × R² of squared residuals on fitted values.

    The statistic is compared with the chi-squared(1) critical value at alpha.
    """

    frame = pd.DataFrame(
        {"resid_sq": pd.Series(residuals, dtype=float) ** 2, "fitted": pd.Series(fitted, dtype=float)}
    ).dropna()
    n_obs = len(frame)
    if frame["resid_sq"].nunique() <= 1 or frame["fitted"].nunique() <= 1:
        r_squared = 0.0
    else:
        auxiliary = sm.OLS(frame["resid_sq"], sm.add_constant(frame["fitted"])).fit()
        r_squared = float(auxiliary.rsquared)

    statistic = n_obs * r_squared
    p_value = float(stats.chi2.sf(statistic, df=1))
    passed = statistic < CHI2_CRITICAL_DF1
    return DiagnosticResult(
        test="Breusch-Pagan (n × R²)",
        statistic=float(statistic),
        p_value=p_value,
        threshold=CHI2_CRITICAL_DF1,
        status="pass" if passed else "fail",
        interpretation=(
            "No significant heteroskedasticity"
            if passed
            else "Possible heteroskedasticity"
        ),
    )


def run_diagnostics(suite: ModelSuite) -> list[DiagnosticResult]:
    """Both assumption tests against Model 2; empty when Model 2 did not fit."""

    controlled = suite.get(CONTROLLED_MODEL.name)
    if controlled is None:
        logger.warning("Model 2 unavailable; diagnostics skipped")
        return []
    results = [
        normality_test(controlled.residuals),
        heteroskedasticity_test(controlled.residuals, controlled.fitted),
    ]
    for result in results:
        marker = "✓" if result.passed else "⚠"
        logger.info(
            f"{marker} {result.test}: statistic = {result.statistic:.4f} → {result.interpretation}"
        )
    return results


def diagnostics_frame(results: Sequence[DiagnosticResult]) -> pd.DataFrame:
    return pd.DataFrame.from_records(
        [
            {
                "test": result.test,
                "statistic": result.statistic,
                "p_value": result.p_value,
                "threshold": result.threshold,
                "status": result.status,
                "interpretation": result.interpretation,
            }
            for result in results
        ],
        columns=["test", "statistic", "p_value", "threshold", "status", "interpretation"],
    )


def coefficient_robustness(suite: ModelSuite) -> pd.DataFrame:
    """Period coefficient, SE, t and p with significance for each fitted model."""

    records = []
    for result in suite.ordered:
        period = result.period
        records.append(
            {
                "specification": result.label,
                "coefficient": period.estimate,
                "std_error": period.std_error,
                "t_statistic": period.t_value,
                "p_value": period.p_value,
                "significance": period.stars,
            }
        )
    return pd.DataFrame.from_records(
        records,
        columns=["specification", "coefficient", "std_error", "t_statistic", "p_value", "significance"],
    )


def _residuals_plot(fitted: pd.Series, residuals: pd.Series, output_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.scatter(fitted, residuals, alpha=0.5, s=12, color="#3498db")
    ax.axhline(0, color="red", linestyle="--", linewidth=1)
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("Residuals")
    ax.set_title("Residuals vs fitted values (Model 2)")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _qq_plot(residuals: pd.Series, output_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(7, 6))
    sm.qqplot(residuals.to_numpy(dtype=float), line="45", fit=True, ax=ax, alpha=0.5)
    ax.set_title("Q-Q plot (Model 2)")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def run(*, output_dir: Path | None = None, data_path: Path | None = None) -> Path:
    """Run heterogeneity and diagnostic checks and persist the tables."""

    load_result = common.load_normalized_sales_data(data_path)
    data = load_result.data

    out_dir = common.prepare_output_dir("robustness", output_dir)

    store_records = heterogeneity(data, "store")
    region_records = heterogeneity(data, "region")
    store_frame = heterogeneity_frame(store_records, "store")
    region_frame = heterogeneity_frame(region_records, "region")
    store_frame.round(2).to_csv(out_dir / "store_heterogeneity.csv", index=False)
    region_frame.round(2).to_csv(out_dir / "regional_heterogeneity.csv", index=False)
    product_specific_effects(data).round(2).to_csv(
        out_dir / "product_specific_effects.csv", index=False
    )

    suite = fit_all_models(data, MODEL_SPECS)
    diagnostics = run_diagnostics(suite)
    diagnostics_frame(diagnostics).round(4).to_csv(out_dir / "diagnostic_tests.csv", index=False)
    coefficient_robustness(suite).round(
        {"coefficient": 3, "std_error": 3, "t_statistic": 3, "p_value": 4}
    ).to_csv(out_dir / "coefficient_robustness.csv", index=False)

    controlled = suite.get(CONTROLLED_MODEL.name)
    if controlled is not None:
        _residuals_plot(controlled.fitted, controlled.residuals, out_dir / "residuals_vs_fitted.png")
        _qq_plot(controlled.residuals, out_dir / "qq_plot.png")

    store_spread = heterogeneity_summary(store_records)
    region_spread = heterogeneity_summary(region_records)
    negative = [record.key for record in store_records if record.effect < 0]

    summary_items = {
        "Store effects": f"{store_spread['min']:+.2f} to {store_spread['max']:+.2f} pp (mean {store_spread['mean']:+.2f})",
        "Store effect SD": f"{store_spread['sd']:.2f} pp",
        "Regional effects": f"{region_spread['min']:+.2f} to {region_spread['max']:+.2f} pp",
        "Regional effect SD": f"{region_spread['sd']:.2f} pp",
        "Stores with negative effect": ", ".join(negative) if negative else "none",
    }
    for result in diagnostics:
        summary_items[result.test] = f"{result.statistic:.4f} ({result.status})"

    print("Robustness summary:")
    print(common.indent_lines(common.format_bullet_summary(summary_items)))

    summary_lines = ["Robustness summary:"] + [
        f"• {key}: {value}" for key, value in summary_items.items()
    ]
    common.write_summary(out_dir, summary_lines)
    common.write_session_info(out_dir)
    return out_dir


if __name__ == "__main__":
    run()
