import json

import numpy as np
import pandas as pd
import pytest

from bonus_analysis import common, preparation


def test_normalize_derives_indicators_period_and_regions(raw_sales):
    data = preparation.normalize_transactions(raw_sales)

    assert list(data.columns) == list(common.NORMALIZED_COLUMNS)
    assert len(data) == len(raw_sales)
    assert (data[list(common.PRODUCT_COLUMNS)].sum(axis=1) == 1).all()
    assert set(data["period"].dropna().unique()) == {0, 1}
    assert set(data["period_label"].unique()) == {"Before", "After"}
    assert "region_raw" not in data.columns

    stores_per_region = data.groupby("region")["store"].nunique().to_dict()
    assert stores_per_region == {"Metropole Centre": 5, "Shopping Mall": 5, "Town Centre": 3}


def test_unknown_product_type_is_undeclared_not_dropped():
    raw = pd.DataFrame(
        {
            "sales_profitmargin": [10.0, 12.0, 15.0, 9.0],
            "time": [1, 2, 2, 1],
            "type": ["electronic device", "gift card", ".", "Accessory"],
            "store": [1, 6, 11, 2],
            "region": ["metropole city centre", "shopping mall", "town city centre", "metropole city centre"],
        }
    )

    data = preparation.normalize_transactions(raw)

    assert len(data) == 4
    assert data["product_category"].tolist() == ["device", "undeclared", "undeclared", "undeclared"]
    assert data["undeclared"].tolist() == [0, 1, 1, 1]
    assert (data[list(common.PRODUCT_COLUMNS)].sum(axis=1) == 1).all()


def test_classify_product_matches_exact_strings_only():
    assert preparation.classify_product("insurance + device") == "insurance"
    assert preparation.classify_product("accessory") == "accessory"
    assert preparation.classify_product(" accessory") == "undeclared"
    assert preparation.classify_product(None) == "undeclared"


def test_region_mappers_agree_on_documented_layout(raw_sales):
    by_store = preparation.normalize_transactions(raw_sales, region_mapper="store")
    by_label = preparation.normalize_transactions(raw_sales, region_mapper="label")

    assert by_store["region"].tolist() == by_label["region"].tolist()


def test_injected_region_mapper_is_used(raw_sales):
    data = preparation.normalize_transactions(
        raw_sales, region_mapper=lambda frame: pd.Series("Everywhere", index=frame.index)
    )

    assert set(data["region"]) == {"Everywhere"}
    report = preparation.validate_transactions(data)
    assert not report.region_layout_ok
    assert not report.passed


def test_unknown_region_mapper_name_rejected(raw_sales):
    with pytest.raises(ValueError, match="Unknown region source"):
        preparation.normalize_transactions(raw_sales, region_mapper="postcode")


def test_validation_passes_on_clean_data(sales_data):
    report = preparation.validate_transactions(sales_data)

    assert report.passed
    assert report.products_valid
    assert report.warnings() == []
    assert report.to_payload()["row_count"] == len(sales_data)


def test_validation_reports_missing_values_without_raising(raw_sales):
    raw = raw_sales.copy()
    raw.loc[[0, 5], "sales_profitmargin"] = np.nan

    data = preparation.normalize_transactions(raw)
    report = preparation.validate_transactions(data)

    assert report.missing_counts == {"margin": 2}
    assert not report.passed
    assert any("margin" in message for message in report.warnings())


def test_validation_flags_inconsistent_indicators(sales_data):
    broken = sales_data.copy()
    broken.loc[[0, 1, 2], "device"] = 1
    broken.loc[[0, 1, 2], "insurance"] = 1

    report = preparation.validate_transactions(broken)

    assert report.invalid_product_rows >= 1
    assert not report.products_valid


def test_missing_columns_are_fatal(raw_sales):
    with pytest.raises(common.InputShapeError) as excinfo:
        preparation.normalize_transactions(raw_sales.drop(columns=["type", "store"]))

    assert excinfo.value.missing_columns == ["type", "store"]


def test_empty_dataset_is_fatal(raw_sales):
    with pytest.raises(common.InputShapeError):
        preparation.check_raw_shape(raw_sales.iloc[0:0])


def test_load_raw_sales_data_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        preparation.load_raw_sales_data(tmp_path / "absent.xlsx")


def test_run_writes_normalized_table_and_checks(tmp_path, raw_sales):
    raw_path = tmp_path / "raw.csv"
    raw_sales.to_csv(raw_path, index=False)

    out_dir = preparation.run(output_dir=tmp_path / "preparation", data_path=raw_path)

    normalized = pd.read_csv(out_dir / common.NORMALIZED_FILENAME)
    assert len(normalized) == len(raw_sales)
    assert (out_dir / "analysis_view.parquet").exists()
    assert (out_dir / "sample_summary.csv").exists()
    checks = json.loads((out_dir / "data_check.json").read_text(encoding="utf-8"))
    assert checks["passed"] is True

    reloaded = common.load_normalized_sales_data(out_dir / common.NORMALIZED_FILENAME)
    assert list(reloaded.data.columns) == list(common.NORMALIZED_COLUMNS)
    assert reloaded.diagnostics["rows"] == len(raw_sales)


def test_load_normalized_rejects_missing_columns(tmp_path, sales_data):
    path = tmp_path / "normalized.csv"
    sales_data.drop(columns=["margin"]).to_csv(path, index=False)

    with pytest.raises(common.InputShapeError, match="margin"):
        common.load_normalized_sales_data(path)


def test_unknown_region_label_counts_as_unmapped(raw_sales):
    raw = raw_sales.copy()
    raw.loc[[0, 1, 2], "region"] = "downtown"

    data = preparation.normalize_transactions(raw, region_mapper="label")
    report = preparation.validate_transactions(data)

    assert (data["region"] == "downtown").sum() == 3
    assert report.unmapped_region_rows == 3
    assert any("unknown region" in message for message in report.warnings())
