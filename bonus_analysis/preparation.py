"""Data preparation: normalize the raw sales table and validate it."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import pandas as pd

from . import common

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xls", ".xlsm"}


@dataclass
class ValidationReport:
    """Outcome of the non-fatal checks run on the normalized table."""

    n_rows: int
    missing_counts: dict[str, int] = field(default_factory=dict)
    invalid_product_rows: int = 0
    invalid_period_rows: int = 0
    unmapped_region_rows: int = 0
    stores_per_region: dict[str, int] = field(default_factory=dict)
    region_layout_ok: bool = True

    @property
    def products_valid(self) -> bool:
        return self.invalid_product_rows == 0

    @property
    def passed(self) -> bool:
        return (
            not self.missing_counts
            and self.products_valid
            and self.invalid_period_rows == 0
            and self.unmapped_region_rows == 0
            and self.region_layout_ok
        )

    def warnings(self) -> list[str]:
        messages: list[str] = []
        for column, count in self.missing_counts.items():
            messages.append(f"Column '{column}' has {count} missing values")
        if not self.products_valid:
            messages.append(
                f"{self.invalid_product_rows} rows have product indicators not summing to 1"
            )
        if self.invalid_period_rows:
            messages.append(
                f"{self.invalid_period_rows} rows have a period outside {{0, 1}}"
            )
        if self.unmapped_region_rows:
            messages.append(
                f"{self.unmapped_region_rows} rows have a missing or unknown region"
            )
        if not self.region_layout_ok:
            layout = ", ".join(f"{k}={v}" for k, v in self.stores_per_region.items())
            messages.append(f"Stores per region differ from the 5/5/3 layout ({layout})")
        return messages

    def to_payload(self) -> dict[str, object]:
        return {
            "row_count": self.n_rows,
            "missing_counts": dict(self.missing_counts),
            "invalid_product_rows": self.invalid_product_rows,
            "invalid_period_rows": self.invalid_period_rows,
            "unmapped_region_rows": self.unmapped_region_rows,
            "stores_per_region": dict(self.stores_per_region),
            "region_layout_ok": self.region_layout_ok,
            "passed": self.passed,
            "warnings": self.warnings(),
        }


def load_raw_sales_data(data_path: Path | None = None) -> pd.DataFrame:
    """Read the raw sales spreadsheet (or CSV export) and check its shape."""

    path = Path(data_path) if data_path is not None else common.RAW_DATA_PATH
    if not path.exists():
        raise FileNotFoundError(f"Raw sales data not found at {path}.")

    if path.suffix.lower() in EXCEL_SUFFIXES:
        raw = pd.read_excel(path)
    else:
        raw = pd.read_csv(path)

    check_raw_shape(raw)
    logger.info(f"Loaded raw sales data: {len(raw)} rows × {raw.shape[1]} columns")
    return raw


def check_raw_shape(raw: pd.DataFrame) -> None:
    """Raise InputShapeError when required columns are absent or there are no rows."""

    missing_columns = [col for col in common.REQUIRED_RAW_COLUMNS if col not in raw.columns]
    if missing_columns:
        raise common.InputShapeError("Raw sales data is missing required columns", missing_columns)
    if raw.empty:
        raise common.InputShapeError("Raw sales data contains no rows")


def classify_product(product_type: object) -> str:
    """Map a raw product-type string to its category; unknown strings are undeclared."""

    if isinstance(product_type, str):
        return common.PRODUCT_TYPE_MAP.get(product_type, common.BASELINE_PRODUCT)
    return common.BASELINE_PRODUCT


def normalize_transactions(
    raw: pd.DataFrame,
    *,
    region_mapper: str | common.RegionMapper | None = None,
) -> pd.DataFrame:
    """Derive the normalized transaction table from the raw sales table."""

    check_raw_shape(raw)
    mapper = common.resolve_region_mapper(region_mapper)

    df = raw.loc[:, list(common.REQUIRED_RAW_COLUMNS)].rename(columns=common.RAW_COLUMN_MAP)

    df["margin"] = pd.to_numeric(df["margin"], errors="coerce")
    df["period"] = (pd.to_numeric(df["period"], errors="coerce") - 1).astype("Int64")
    df["period_label"] = df["period"].map(common.PERIOD_LABELS).astype("string")

    df["product_type"] = df["product_type"].astype("string")
    df["product_category"] = (
        df["product_type"].astype(object).map(classify_product).astype("string")
    )
    for column in common.PRODUCT_COLUMNS:
        df[column] = (df["product_category"] == column).astype(int)

    df["store"] = pd.to_numeric(df["store"], errors="coerce").astype("Int64")
    df["store_label"] = ("Store " + df["store"].astype("string")).astype("string")
    df["region"] = mapper(df).astype("string")

    return df.loc[:, list(common.NORMALIZED_COLUMNS)].reset_index(drop=True)


def _stores_per_region(data: pd.DataFrame) -> dict[str, int]:
    counts = data.dropna(subset=["region", "store"]).groupby("region")["store"].nunique()
    return {str(region): int(count) for region, count in counts.items()}


def validate_transactions(
    data: pd.DataFrame,
    *,
    expected_layout: Mapping[str, int] | None = None,
) -> ValidationReport:
    """Run the non-fatal consistency checks and log a labelled outcome."""

    layout = dict(expected_layout or common.EXPECTED_STORES_PER_REGION)

    missing = data.isna().sum()
    missing_counts = {str(col): int(count) for col, count in missing.items() if count > 0}

    product_sum = data.loc[:, list(common.PRODUCT_COLUMNS)].sum(axis=1)
    invalid_products = int((product_sum != 1).sum())

    period = data["period"]
    invalid_periods = int((period.notna() & ~period.isin([0, 1])).sum())

    stores_per_region = _stores_per_region(data)
    region_ok = stores_per_region == layout

    region = data["region"]
    known_region = region.isin(list(layout)).fillna(False).astype(bool)
    unmapped_regions = int((~known_region).sum())

    report = ValidationReport(
        n_rows=len(data),
        missing_counts=missing_counts,
        invalid_product_rows=invalid_products,
        invalid_period_rows=invalid_periods,
        unmapped_region_rows=unmapped_regions,
        stores_per_region=stores_per_region,
        region_layout_ok=region_ok,
    )

    if report.missing_counts:
        logger.warning(f"⚠ Missing values detected: {report.missing_counts}")
    else:
        logger.info("✓ No missing values")
    if report.products_valid:
        logger.info("✓ Product types valid (sum = 1)")
    else:
        logger.warning(f"⚠ Product types invalid for {report.invalid_product_rows} rows")
    if unmapped_regions:
        logger.warning(f"⚠ {unmapped_regions} rows have no canonical region")
    if region_ok:
        logger.info(f"✓ Region layout matches {layout}")
    else:
        logger.warning(f"⚠ Region layout {stores_per_region} differs from {layout}")
    for message in report.warnings():
        logger.debug(message)

    return report


def sample_summary(data: pd.DataFrame) -> pd.DataFrame:
    """N, mean, median and SD of margin by period."""

    grouped = data.groupby("period_label", observed=True)["margin"]
    frame = grouped.agg(N="size", Mean="mean", Median="median", SD="std")
    frame = frame.reindex([p for p in common.PERIOD_ORDER if p in frame.index])
    return frame.round(2).reset_index().rename(columns={"period_label": "period"})


def product_mix_summary(data: pd.DataFrame) -> pd.DataFrame:
    """Share of devices, insurance and accessories by period (%)."""

    columns = ["device", "insurance", "accessory"]
    frame = data.groupby("period_label", observed=True)[columns].mean().mul(100).round(1)
    frame = frame.reindex([p for p in common.PERIOD_ORDER if p in frame.index])
    frame = frame.rename(columns={col: common.PRODUCT_LABELS[col] for col in columns})
    return frame.reset_index().rename(columns={"period_label": "period"})


def run(
    *,
    output_dir: Path | None = None,
    data_path: Path | None = None,
    region_source: str | common.RegionMapper | None = None,
) -> Path:
    """Normalize the raw sales data and persist the analysis-ready table."""

    raw = load_raw_sales_data(data_path)
    data = normalize_transactions(raw, region_mapper=region_source)
    report = validate_transactions(data)

    out_dir = common.prepare_output_dir("preparation", output_dir)

    normalized_path = out_dir / common.NORMALIZED_FILENAME
    data.to_csv(normalized_path, index=False)
    data.to_parquet(out_dir / "analysis_view.parquet", index=False)

    payload = report.to_payload()
    payload["source_path"] = str(data_path or common.RAW_DATA_PATH)
    common.write_json(out_dir / "data_check.json", payload)

    sample = sample_summary(data)
    mix = product_mix_summary(data)
    sample.to_csv(out_dir / "sample_summary.csv", index=False)
    mix.to_csv(out_dir / "product_mix.csv", index=False)

    counts = data["period_label"].value_counts()
    summary_lines = [
        f"{len(data):,} transactions ({counts.get('Before', 0):,} before / {counts.get('After', 0):,} after).",
        f"{data['store'].nunique()} stores across {data['region'].nunique()} regions.",
        "Validation: " + ("passed" if report.passed else "warnings raised"),
        *[f"⚠ {message}" for message in report.warnings()],
    ]

    print("Preparation summary:")
    for line in summary_lines:
        print(f"  - {line}")
    print(common.indent_lines(sample.to_string(index=False)))

    common.write_summary(out_dir, summary_lines)
    common.write_session_info(out_dir, extra_packages=["openpyxl"])

    logger.info(f"✓ Data saved: {normalized_path}")
    return out_dir


if __name__ == "__main__":
    run()
