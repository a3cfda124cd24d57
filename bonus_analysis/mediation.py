"""Mediation decomposition of the bonus effect into direct and product-mix pathways."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from . import common
from .models import (
    CONTROLLED_MODEL,
    MODEL_SPECS,
    PATHWAY_TERMS,
    RAW_MODEL,
    ModelResult,
    ModelSuite,
    fit_all_models,
)

logger = logging.getLogger(__name__)

PATHWAY_DESCRIPTIONS = {
    "undeclared": "Baseline category (undeclared product type)",
    "device": "Electronic devices relative to the baseline",
    "insurance": "Insurance + device bundles relative to the baseline",
    "accessory": "Accessories relative to the baseline",
}


@dataclass(frozen=True)
class EffectDecomposition:
    """Total = direct + indirect, with the share routed through product mix."""

    total: float
    direct: float
    indirect: float
    mediation_pct: float

    @property
    def direct_pct(self) -> float:
        return 100.0 - self.mediation_pct


def _period_estimate(value: float | ModelResult) -> float:
    if isinstance(value, ModelResult):
        return value.period.estimate
    return float(value)


def decompose_effect(
    total: float | ModelResult,
    direct: float | ModelResult,
) -> EffectDecomposition:
    """Split the raw period effect using the product-controlled period effect.

    ``total`` is the Model 1 period coefficient and ``direct`` the Model 2 one;
    either may be passed as the fitted ModelResult.
    """

    total_effect = _period_estimate(total)
    direct_effect = _period_estimate(direct)
    if not (math.isfinite(total_effect) and math.isfinite(direct_effect)):
        raise common.MediationUndefinedError(
            f"Undefined mediation ratio: non-finite effects (total={total_effect}, direct={direct_effect})"
        )
    if total_effect == 0:
        raise common.MediationUndefinedError(
            "Undefined mediation ratio: the total effect is zero"
        )

    indirect_effect = total_effect - direct_effect
    return EffectDecomposition(
        total=total_effect,
        direct=direct_effect,
        indirect=indirect_effect,
        mediation_pct=indirect_effect / total_effect * 100,
    )


def decompose_suite(suite: ModelSuite) -> EffectDecomposition:
    """Decomposition from a fitted suite; raises when M1 or M2 is unavailable."""

    missing = [spec.name for spec in (RAW_MODEL, CONTROLLED_MODEL) if spec.name not in suite]
    if missing:
        reasons = "; ".join(f"{name}: {suite.failures.get(name, 'not fitted')}" for name in missing)
        raise common.MediationUndefinedError(f"Mediation undefined, models unavailable ({reasons})")
    return decompose_effect(suite[RAW_MODEL.name], suite[CONTROLLED_MODEL.name])


def pathway_effects(controlled: ModelResult) -> pd.DataFrame:
    """Product coefficients from Model 2; the baseline category is fixed at 0."""

    records = [
        {
            "product": common.BASELINE_PRODUCT,
            "coefficient": 0.0,
            "std_error": np.nan,
            "p_value": np.nan,
            "description": PATHWAY_DESCRIPTIONS[common.BASELINE_PRODUCT],
        }
    ]
    for term in PATHWAY_TERMS:
        record = controlled.term(term)
        records.append(
            {
                "product": term,
                "coefficient": record.estimate,
                "std_error": record.std_error,
                "p_value": record.p_value,
                "description": PATHWAY_DESCRIPTIONS[term],
            }
        )
    return pd.DataFrame.from_records(records)


def mediation_table(decomposition: EffectDecomposition | None) -> pd.DataFrame:
    """Pathway / estimate / unit / interpretation rows for export."""

    rows = [
        ("Total Effect", "total", "pp", "Total bonus impact on profit margins"),
        ("Direct Effect (c')", "direct", "pp", "Margin improvement per product"),
        ("Indirect Effect (c-c')", "indirect", "pp", "Effect via product mix shift"),
        ("Mediation %", "mediation_pct", "%", "% of total effect through product mix"),
    ]
    records = []
    for pathway, attribute, unit, description in rows:
        if decomposition is None:
            value: float | str = "undefined"
        else:
            digits = 1 if attribute == "mediation_pct" else 3
            value = round(getattr(decomposition, attribute), digits)
        records.append(
            {
                "pathway": pathway,
                "estimate": value,
                "unit": unit,
                "interpretation": description,
            }
        )
    return pd.DataFrame.from_records(records)


def product_mix_shift(data: pd.DataFrame) -> pd.DataFrame:
    """Indicator shares (%) by period and the after − before shift in pp."""

    shares = (
        data.groupby("period_label", observed=True)[list(common.PRODUCT_COLUMNS)]
        .mean()
        .mul(100)
        .reindex(list(common.PERIOD_ORDER))
        .T
    )
    shares.columns.name = None
    shares["shift_pp"] = shares["After"] - shares["Before"]
    high_margin = shares.loc[["insurance", "accessory"]].sum()
    shares.loc["insurance + accessory"] = high_margin
    shares.index.name = "product"
    return shares.reset_index()


def _mediation_breakdown_plot(decomposition: EffectDecomposition, output_path: Path) -> None:
    labels = ["Direct Effect\n(Margin per product)", "Indirect Effect\n(Via product mix)"]
    values = [decomposition.direct, decomposition.indirect]
    shares = [decomposition.direct_pct, decomposition.mediation_pct]

    fig, ax = plt.subplots(figsize=(7, 5))
    bars = ax.bar(labels, values, width=0.5, color=["#27ae60", "#e67e22"])
    for bar, value, share in zip(bars, values, shares):
        ax.annotate(
            f"{value:.2f}pp\n({share:.1f}%)",
            (bar.get_x() + bar.get_width() / 2, bar.get_height()),
            ha="center",
            va="bottom",
            fontweight="bold",
        )
    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_ylabel("Effect size (percentage points)")
    ax.set_title(
        "Mediation decomposition of bonus effect\n"
        f"Total {decomposition.total:.2f}pp = {decomposition.direct:.2f}pp direct"
        f" + {decomposition.indirect:.2f}pp indirect",
        fontsize=11,
    )
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def _attenuation_plot(suite: ModelSuite, output_path: Path) -> None:
    results = suite.ordered
    if not results:
        return
    labels = [result.label.replace(" (", "\n(") for result in results]
    values = [result.period.estimate for result in results]
    colors = ["#3498db" if result.name == RAW_MODEL.name else "#27ae60" for result in results]

    fig, ax = plt.subplots(figsize=(7, 5))
    bars = ax.bar(labels, values, width=0.5, color=colors)
    for bar, value in zip(bars, values):
        ax.annotate(
            f"{value:.2f}pp",
            (bar.get_x() + bar.get_width() / 2, bar.get_height()),
            ha="center",
            va="bottom",
            fontweight="bold",
        )
    ax.set_ylabel("Bonus effect (percentage points)")
    ax.set_title("Effect attenuation across models")
    fig.tight_layout()
    fig.savefig(output_path, dpi=300)
    plt.close(fig)


def run(*, output_dir: Path | None = None, data_path: Path | None = None) -> Path:
    """Decompose the bonus effect and persist the mediation tables."""

    load_result = common.load_normalized_sales_data(data_path)
    data = load_result.data

    out_dir = common.prepare_output_dir("mediation", output_dir)

    suite = fit_all_models(data, MODEL_SPECS)
    try:
        decomposition: EffectDecomposition | None = decompose_suite(suite)
        failure = None
    except common.MediationUndefinedError as exc:
        logger.error(f"✗ {exc}")
        decomposition, failure = None, str(exc)

    mediation_table(decomposition).to_csv(out_dir / "mediation_analysis.csv", index=False)

    controlled = suite.get(CONTROLLED_MODEL.name)
    if controlled is not None:
        pathway_effects(controlled).to_csv(out_dir / "pathway_effects.csv", index=False)

    mix_shift = product_mix_shift(data)
    mix_shift.round(1).to_csv(out_dir / "product_mix_shift.csv", index=False)

    if decomposition is not None:
        _mediation_breakdown_plot(decomposition, out_dir / "mediation_breakdown.png")
    _attenuation_plot(suite, out_dir / "effect_attenuation.png")

    if decomposition is not None:
        summary_lines = [
            "Mediation summary:",
            f"• Total effect: {decomposition.total:+.3f} pp",
            f"• Direct effect: {decomposition.direct:+.3f} pp ({decomposition.direct_pct:.1f}%)",
            f"• Indirect effect: {decomposition.indirect:+.3f} pp ({decomposition.mediation_pct:.1f}%)",
        ]
    else:
        summary_lines = ["Mediation summary:", f"• Mediation undefined: {failure}"]

    combined = mix_shift.set_index("product").loc["insurance + accessory"]
    summary_lines.append(
        f"• High-margin share (insurance + accessories): {combined['Before']:.1f}% → "
        f"{combined['After']:.1f}% ({combined['shift_pp']:+.1f} pp)"
    )

    for line in summary_lines:
        print(line)

    common.write_summary(out_dir, summary_lines)
    common.write_session_info(out_dir)
    return out_dir


if __name__ == "__main__":
    run()
