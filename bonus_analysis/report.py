"""Immutable analysis report shared by presentation layers.

Everything is computed once by ``build_report``; dashboards and other
consumers read the resulting ``AnalysisReport`` (or its JSON payload) and do
no computation of their own.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import pandas as pd

from . import common, descriptive, mediation, preparation, robustness
from .models import CONTROLLED_MODEL, ModelSuite, fit_all_models, model_comparison

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisReport:
    data: pd.DataFrame
    validation: preparation.ValidationReport
    overview: pd.DataFrame
    product_mix: pd.DataFrame
    store_effects: tuple[robustness.HeterogeneityRecord, ...]
    region_effects: tuple[robustness.HeterogeneityRecord, ...]
    models: ModelSuite
    decomposition: mediation.EffectDecomposition | None
    mediation_error: str | None
    pathways: pd.DataFrame | None
    diagnostics: tuple[robustness.DiagnosticResult, ...]


def build_report(data: pd.DataFrame) -> AnalysisReport:
    """Compute every derived quantity from the normalized transactions once."""

    if data.empty:
        raise common.InputShapeError("Cannot build a report from an empty dataset")

    suite = fit_all_models(data)
    try:
        decomposition = mediation.decompose_suite(suite)
        mediation_error = None
    except common.MediationUndefinedError as exc:
        logger.error(f"✗ {exc}")
        decomposition, mediation_error = None, str(exc)

    controlled = suite.get(CONTROLLED_MODEL.name)
    return AnalysisReport(
        data=data,
        validation=preparation.validate_transactions(data),
        overview=descriptive.margin_overview(data),
        product_mix=descriptive.product_mix_by_period(data),
        store_effects=tuple(robustness.heterogeneity(data, "store")),
        region_effects=tuple(robustness.heterogeneity(data, "region")),
        models=suite,
        decomposition=decomposition,
        mediation_error=mediation_error,
        pathways=mediation.pathway_effects(controlled) if controlled is not None else None,
        diagnostics=tuple(robustness.run_diagnostics(suite)),
    )


def _period_value(frame: pd.DataFrame, period: str, column: str) -> float:
    row = frame.loc[frame["period"] == period, column]
    return float(row.iloc[0]) if len(row) else float("nan")


def kpi_cards(report: AnalysisReport) -> dict[str, object]:
    """Headline numbers for KPI cards."""

    margin_before = _period_value(report.overview, "Before", "Mean")
    margin_after = _period_value(report.overview, "After", "Mean")
    volume_before = _period_value(report.overview, "Before", "Count")
    volume_after = _period_value(report.overview, "After", "Count")
    margin_change = margin_after - margin_before

    cards: dict[str, object] = {
        "avg_margin_after": margin_after,
        "avg_margin_before": margin_before,
        "sales_volume_after": volume_after,
        "sales_volume_before": volume_before,
        "margin_change_pp": margin_change,
        "margin_change_pct": margin_change / margin_before * 100 if margin_before else float("nan"),
        "volume_change": volume_after - volume_before,
        "top_store": None,
        "top_store_effect": float("nan"),
    }
    ranked = [record for record in report.store_effects if not math.isnan(record.effect)]
    if ranked:
        cards["top_store"] = ranked[0].key
        cards["top_store_effect"] = ranked[0].effect

    decomposition = report.decomposition
    cards["total_effect"] = decomposition.total if decomposition else None
    cards["direct_effect"] = decomposition.direct if decomposition else None
    cards["indirect_effect"] = decomposition.indirect if decomposition else None
    cards["mediation_pct"] = decomposition.mediation_pct if decomposition else None
    return cards


def _clean(value: object) -> object:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _records(frame: pd.DataFrame | None) -> list[Mapping[str, object]]:
    if frame is None:
        return []
    cleaned = frame.astype(object).where(frame.notna(), None)
    return cleaned.to_dict(orient="records")


def report_payload(report: AnalysisReport) -> dict[str, object]:
    """JSON-safe rendering of the report for dashboards."""

    return {
        "kpis": {key: _clean(value) for key, value in kpi_cards(report).items()},
        "validation": report.validation.to_payload(),
        "overview": _records(report.overview),
        "product_mix": _records(report.product_mix),
        "store_effects": _records(robustness.heterogeneity_frame(report.store_effects, "store")),
        "region_effects": _records(robustness.heterogeneity_frame(report.region_effects, "region")),
        "model_comparison": _records(model_comparison(report.models)),
        "mediation": _records(mediation.mediation_table(report.decomposition)),
        "mediation_error": report.mediation_error,
        "pathways": _records(report.pathways),
        "diagnostics": _records(robustness.diagnostics_frame(report.diagnostics)),
    }


def run(*, output_dir: Path | None = None, data_path: Path | None = None) -> Path:
    """Build the analysis report and persist its JSON payload."""

    load_result = common.load_normalized_sales_data(data_path)
    report = build_report(load_result.data)

    out_dir = common.prepare_output_dir("report", output_dir)
    payload = report_payload(report)
    payload["source"] = dict(load_result.diagnostics)
    common.write_json(out_dir / "analysis_report.json", payload)

    print("Report KPIs:")
    print(common.indent_lines(common.format_bullet_summary(payload["kpis"])))
    common.write_session_info(out_dir)
    return out_dir


if __name__ == "__main__":
    run()
