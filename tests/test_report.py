import json

import pandas as pd
import pytest

import run_analysis
from bonus_analysis import common, descriptive, report


def test_build_report_computes_headline_numbers(sales_data):
    analysis = report.build_report(sales_data)

    cards = report.kpi_cards(analysis)
    difference, relative = descriptive.raw_difference(sales_data)

    assert cards["margin_change_pp"] == pytest.approx(difference)
    assert cards["margin_change_pct"] == pytest.approx(relative)
    assert cards["sales_volume_before"] + cards["sales_volume_after"] == len(sales_data)
    assert cards["total_effect"] == analysis.models["raw"].period.estimate
    assert cards["top_store"] == analysis.store_effects[0].key
    assert analysis.mediation_error is None
    assert analysis.validation.passed


def test_report_payload_is_json_serializable(sales_data):
    payload = report.report_payload(report.build_report(sales_data))

    encoded = json.dumps(payload)

    assert "model_comparison" in json.loads(encoded)
    assert len(payload["store_effects"]) == 13
    assert len(payload["diagnostics"]) == 2


def test_report_records_undefined_mediation(sales_data):
    declared = sales_data[sales_data["undeclared"] == 0].reset_index(drop=True)

    analysis = report.build_report(declared)

    assert analysis.decomposition is None
    assert "controlled" in analysis.mediation_error
    assert analysis.pathways is None
    assert analysis.diagnostics == ()
    assert report.kpi_cards(analysis)["mediation_pct"] is None
    json.dumps(report.report_payload(analysis))


def test_empty_report_is_rejected(sales_data):
    with pytest.raises(common.InputShapeError):
        report.build_report(sales_data.iloc[0:0])


def test_margin_overview_and_group_summaries(sales_data):
    overview = descriptive.margin_overview(sales_data)
    assert overview["period"].tolist() == ["Before", "After"]
    assert overview["Count"].sum() == len(sales_data)

    stores = descriptive.store_summary(sales_data)
    assert len(stores) == 13
    assert stores["change"].is_monotonic_decreasing
    assert descriptive.top_store(sales_data)["store"] == stores.iloc[0]["store"]

    mix = descriptive.product_mix_by_period(sales_data)
    shares = mix[["Devices", "Insurance", "Accessories", "Undeclared"]].sum(axis=1)
    assert shares.tolist() == pytest.approx([100.0, 100.0])


def test_run_selected_tasks_end_to_end(tmp_path, raw_sales):
    raw_path = tmp_path / "raw.csv"
    raw_sales.to_csv(raw_path, index=False)
    output_root = tmp_path / "outputs"

    outputs = run_analysis.run_selected_tasks(
        list(run_analysis.TASK_SEQUENCE),
        raw_path=raw_path,
        data_path=None,
        output_root=output_root,
    )

    assert set(outputs) == set(run_analysis.TASK_SEQUENCE)
    assert outputs["models"] == output_root / "models"
    assert (output_root / "descriptive" / "margin_overview.csv").exists()
    payload = json.loads((output_root / "report" / "analysis_report.json").read_text(encoding="utf-8"))
    assert payload["kpis"]["mediation_pct"] is not None
    comparison = pd.read_csv(output_root / "models" / "model_comparison.csv")
    assert (comparison["status"] == "ok").all()


def test_missing_input_exits_with_message(tmp_path):
    with pytest.raises(SystemExit, match="Missing file"):
        run_analysis.run_selected_tasks(
            ["models"],
            raw_path=None,
            data_path=tmp_path / "absent.csv",
            output_root=tmp_path / "outputs",
        )


def test_parse_args_defaults():
    args = run_analysis.parse_args([])

    assert args.tasks == list(run_analysis.TASK_SEQUENCE)
    assert args.region_source == "store"
