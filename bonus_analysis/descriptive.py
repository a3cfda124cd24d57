"""Descriptive statistics of profit margins by period, product, store and region."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from . import common

logger = logging.getLogger(__name__)

PERIOD_COLORS = {"Before": "#95a5a6", "After": "#27ae60"}
PRODUCT_COLORS = {
    "Devices": "#3498db",
    "Insurance": "#e74c3c",
    "Accessories": "#f39c12",
    "Undeclared": "#95a5a6",
}


def _period_index(frame: pd.DataFrame) -> pd.DataFrame:
    return frame.reindex([p for p in common.PERIOD_ORDER if p in frame.index])


def margin_overview(data: pd.DataFrame) -> pd.DataFrame:
    """Count, mean, median, SD, min, max and quartiles of margin by period."""

    grouped = data.groupby("period_label", observed=True)["margin"]
    frame = grouped.agg(
        Count="size",
        Mean="mean",
        Median="median",
        SD="std",
        Min="min",
        Max="max",
        Q1=lambda s: s.quantile(0.25),
        Q3=lambda s: s.quantile(0.75),
    )
    return _period_index(frame).rename_axis("period").reset_index()


def raw_difference(data: pd.DataFrame) -> tuple[float, float]:
    """After − before mean margin (pp) and the relative change (%)."""

    before = data.loc[data["period"].eq(0).fillna(False), "margin"].mean()
    after = data.loc[data["period"].eq(1).fillna(False), "margin"].mean()
    difference = float(after - before)
    relative = difference / before * 100 if before else float("nan")
    return difference, float(relative)


def product_mix_by_period(data: pd.DataFrame) -> pd.DataFrame:
    """Share (%) of every product category by period."""

    columns = list(common.PRODUCT_COLUMNS)
    frame = data.groupby("period_label", observed=True)[columns].mean().mul(100)
    frame = frame.rename(columns={col: common.PRODUCT_LABELS[col] for col in columns})
    return _period_index(frame).rename_axis("period").reset_index()


def group_period_summary(data: pd.DataFrame, group_col: str) -> pd.DataFrame:
    """Mean margin and N per group and period, with change and percent change.

    Rows are sorted by change, largest first; groups missing a period sort last.
    """

    grouped = (
        data.groupby([group_col, "period_label"], observed=True)["margin"]
        .agg(mean_margin="mean", n="size")
        .unstack("period_label")
    )
    wide = pd.DataFrame(index=grouped.index)
    for period in common.PERIOD_ORDER:
        wide[f"mean_margin_{period.lower()}"] = (
            grouped["mean_margin"][period] if period in grouped["mean_margin"] else np.nan
        )
    for period in common.PERIOD_ORDER:
        wide[f"n_{period.lower()}"] = (
            grouped["n"][period].fillna(0).astype(int) if period in grouped["n"] else 0
        )
    wide["change"] = wide["mean_margin_after"] - wide["mean_margin_before"]
    wide["pct_change"] = wide["change"] / wide["mean_margin_before"] * 100
    wide = wide.sort_values("change", ascending=False, na_position="last")
    return wide.reset_index()


def store_summary(data: pd.DataFrame) -> pd.DataFrame:
    return group_period_summary(data, "store")


def regional_summary(data: pd.DataFrame) -> pd.DataFrame:
    return group_period_summary(data, "region")


def top_store(data: pd.DataFrame) -> pd.Series | None:
    """Row of the store with the largest before → after margin change."""

    summary = store_summary(data).dropna(subset=["change"])
    if summary.empty:
        return None
    return summary.iloc[0]


def _margin_distribution_plot(data: pd.DataFrame, output_path: Path) -> None:
    periods = [p for p in common.PERIOD_ORDER if p in set(data["period_label"].dropna())]
    fig, axes = plt.subplots(1, max(len(periods), 1), figsize=(10, 5), sharey=True, squeeze=False)
    for ax, period in zip(axes[0], periods):
        subset = data.loc[data["period_label"] == period, "margin"].dropna()
        sns.histplot(subset, bins=30, ax=ax, color=PERIOD_COLORS[period], alpha=0.6)
        ax.set_title(period)
        ax.set_xlabel("Profit margin (%)")
    axes[0][0].set_ylabel("Frequency")
    fig.suptitle("Distribution of profit margins: before vs after bonus", fontweight="bold")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _mean_comparison_plot(overview: pd.DataFrame, output_path: Path) -> None:
    se = overview["SD"] / np.sqrt(overview["Count"])
    fig, ax = plt.subplots(figsize=(6, 5))
    colors = [PERIOD_COLORS.get(p, "#7f8c8d") for p in overview["period"]]
    ax.bar(
        overview["period"],
        overview["Mean"],
        width=0.5,
        color=colors,
        yerr=common.CI_Z * se,
        capsize=8,
    )
    for x, mean in enumerate(overview["Mean"]):
        ax.annotate(f"{mean:.2f}%", (x, mean), ha="center", va="bottom", fontweight="bold")
    ax.set_ylim(0, overview["Mean"].max() * 1.15)
    ax.set_xlabel("Period")
    ax.set_ylabel("Mean profit margin (%)")
    ax.set_title("Profit margin: before vs after bonus\nError bars: 95% confidence intervals")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _product_mix_plot(mix: pd.DataFrame, output_path: Path) -> None:
    long = mix.melt(id_vars="period", var_name="product", value_name="share")
    fig, ax = plt.subplots(figsize=(8, 5))
    sns.barplot(
        data=long,
        x="period",
        y="share",
        hue="product",
        palette=PRODUCT_COLORS,
        ax=ax,
    )
    ax.set_xlabel("Period")
    ax.set_ylabel("Market share (%)")
    ax.set_title("Product mix shift: before vs after bonus")
    ax.legend(title="Product category", frameon=False)
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _store_performance_plot(stores: pd.DataFrame, output_path: Path) -> None:
    ranked = stores.dropna(subset=["change"]).sort_values("change")
    if ranked.empty:
        return
    colors = np.where(ranked["change"] > 0, "#27ae60", "#e74c3c")
    fig, ax = plt.subplots(figsize=(9, 6))
    x = np.arange(len(ranked))
    ax.bar(x, ranked["change"], color=colors)
    ax.axhline(0, color="black", linestyle="--", linewidth=0.5)
    ax.set_xticks(x)
    ax.set_xticklabels(ranked["store"].astype(str), rotation=45, ha="right")
    ax.set_xlabel("Store")
    ax.set_ylabel("Change in profit margin (pp)")
    ax.set_title("Store-level profit margin change: before → after bonus")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _round_columns(frame: pd.DataFrame, columns: Sequence[str], digits: int) -> pd.DataFrame:
    present = {col: digits for col in columns if col in frame.columns}
    return frame.round(present)


def run(*, output_dir: Path | None = None, data_path: Path | None = None) -> Path:
    """Compute grouped descriptive statistics and persist tables and figures."""

    load_result = common.load_normalized_sales_data(data_path)
    data = load_result.data

    out_dir = common.prepare_output_dir("descriptive", output_dir)

    overview = margin_overview(data)
    difference, relative = raw_difference(data)
    mix = product_mix_by_period(data)
    stores = store_summary(data)
    regions = regional_summary(data)

    overview.round(2).to_csv(out_dir / "margin_overview.csv", index=False)
    mix.round(1).to_csv(out_dir / "product_mix_summary.csv", index=False)
    stores_out = _round_columns(
        stores, ["mean_margin_before", "mean_margin_after", "change"], 2
    ).round({"pct_change": 1})
    stores_out.to_csv(out_dir / "store_summary.csv", index=False)
    _round_columns(
        regions, ["mean_margin_before", "mean_margin_after", "change"], 2
    ).round({"pct_change": 1}).to_csv(out_dir / "regional_summary.csv", index=False)

    _margin_distribution_plot(data, out_dir / "margin_distribution.png")
    _mean_comparison_plot(overview, out_dir / "mean_comparison.png")
    _product_mix_plot(mix, out_dir / "product_mix_shift.png")
    _store_performance_plot(stores, out_dir / "store_performance.png")

    best = top_store(data)
    positive_stores = int((stores["change"] > 0).sum())
    summary_lines = [
        "Descriptive analysis:",
        f"• Raw margin change: {difference:+.2f} pp ({relative:+.1f}% relative).",
        f"• Stores with a positive change: {positive_stores} of {len(stores)}.",
    ]
    if best is not None:
        summary_lines.append(
            f"• Top performing store: Store {best['store']} ({best['change']:+.2f} pp)."
        )
    for _, row in mix.iterrows():
        summary_lines.append(
            f"• {row['period']} mix: "
            + ", ".join(f"{label} {row[label]:.1f}%" for label in common.PRODUCT_LABELS.values())
        )

    print("Descriptive summary:")
    print(common.indent_lines(overview.round(2).to_string(index=False)))
    for line in summary_lines[1:]:
        print(f"  {line}")

    common.write_summary(out_dir, summary_lines)
    common.write_session_info(out_dir)
    logger.info(f"✓ Descriptive outputs written to {out_dir}")
    return out_dir


if __name__ == "__main__":
    run()
