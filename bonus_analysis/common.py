"""Shared helpers for the sales bonus margin analysis tasks."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Callable, Mapping, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

RAW_DATA_PATH = Path("raw_data/Part3_casestudy_salesbonus.xlsx")
OUTPUT_ROOT = Path("outputs/bonus_analysis")
NORMALIZED_FILENAME = "sales_normalized.csv"
DATA_PATH = OUTPUT_ROOT / "preparation" / NORMALIZED_FILENAME

ALPHA = 0.05
CI_Z = 1.96

# Raw spreadsheet columns and their names in the normalized table.
RAW_COLUMN_MAP: Mapping[str, str] = {
    "sales_profitmargin": "margin",
    "time": "period",
    "type": "product_type",
    "store": "store",
    "region": "region_raw",
}
REQUIRED_RAW_COLUMNS: Sequence[str] = tuple(RAW_COLUMN_MAP)

# Exact product-type strings; anything else is undeclared.
PRODUCT_TYPE_MAP: Mapping[str, str] = {
    "electronic device": "device",
    "insurance + device": "insurance",
    "accessory": "accessory",
    ".": "undeclared",
}
PRODUCT_COLUMNS: Sequence[str] = ("device", "insurance", "accessory", "undeclared")
PRODUCT_LABELS: Mapping[str, str] = {
    "device": "Devices",
    "insurance": "Insurance",
    "accessory": "Accessories",
    "undeclared": "Undeclared",
}
BASELINE_PRODUCT = "undeclared"

PERIOD_LABELS: Mapping[int, str] = {0: "Before", 1: "After"}
PERIOD_ORDER: Sequence[str] = ("Before", "After")

REGION_LABEL_MAP: Mapping[str, str] = {
    "metropole city centre": "Metropole Centre",
    "shopping mall": "Shopping Mall",
    "town city centre": "Town Centre",
}
REGION_STORE_RANGES: Mapping[str, range] = {
    "Metropole Centre": range(1, 6),
    "Shopping Mall": range(6, 11),
    "Town Centre": range(11, 14),
}
EXPECTED_STORES_PER_REGION: Mapping[str, int] = {
    "Metropole Centre": 5,
    "Shopping Mall": 5,
    "Town Centre": 3,
}

NORMALIZED_COLUMNS: Sequence[str] = (
    "margin",
    "period",
    "period_label",
    "product_type",
    "product_category",
    *PRODUCT_COLUMNS,
    "store",
    "store_label",
    "region",
)

RegionMapper = Callable[[pd.DataFrame], pd.Series]


class BonusAnalysisError(Exception):
    """Base exception for analysis failures."""


class InputShapeError(BonusAnalysisError):
    """Raised when the input table cannot be analysed at all."""

    def __init__(self, message: str, missing_columns: Sequence[str] | None = None):
        self.missing_columns = list(missing_columns or [])
        if self.missing_columns:
            message = f"{message}: {', '.join(self.missing_columns)}"
        super().__init__(message)


class RankDeficientError(BonusAnalysisError):
    """Raised when a model's design matrix is not of full column rank."""

    def __init__(self, model_name: str, rank: int, n_columns: int):
        self.model_name = model_name
        self.rank = rank
        self.n_columns = n_columns
        super().__init__(
            f"Design matrix for model '{model_name}' is rank deficient "
            f"(rank {rank} < {n_columns} columns)"
        )


class MediationUndefinedError(BonusAnalysisError):
    """Raised when the mediation ratio cannot be computed."""


@dataclass
class LoadResult:
    """Container for the normalized dataset and associated diagnostics."""

    data: pd.DataFrame
    diagnostics: Mapping[str, object]


def prepare_output_dir(task_name: str, output_root: Path | None = None) -> Path:
    """Ensure the output directory for a task exists and return it.

    ``output_root`` is treated as the task directory itself when given, which
    is how the orchestrator passes ``<root>/<task>`` through.
    """

    directory = Path(output_root) if output_root is not None else OUTPUT_ROOT / task_name
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def region_from_store(frame: pd.DataFrame) -> pd.Series:
    """Assign the canonical region from the store id ranges."""

    stores = pd.to_numeric(frame["store"], errors="coerce")
    region = pd.Series(pd.NA, index=frame.index, dtype="object")
    for label, store_range in REGION_STORE_RANGES.items():
        region[stores.isin(list(store_range))] = label
    return region


def region_from_label(frame: pd.DataFrame) -> pd.Series:
    """Assign the canonical region from the raw region string."""

    raw = frame["region_raw"].astype("string").str.strip()
    mapped = raw.str.lower().map(REGION_LABEL_MAP)
    # Unknown strings are carried through unchanged.
    return mapped.fillna(raw).astype("object")


REGION_MAPPERS: Mapping[str, RegionMapper] = {
    "store": region_from_store,
    "label": region_from_label,
}


def resolve_region_mapper(source: str | RegionMapper | None) -> RegionMapper:
    """Return the region mapping function for a source name or callable."""

    if source is None:
        return region_from_store
    if callable(source):
        return source
    try:
        return REGION_MAPPERS[source]
    except KeyError:
        raise ValueError(
            f"Unknown region source '{source}'. Expected one of: "
            + ", ".join(sorted(REGION_MAPPERS))
        ) from None


def load_normalized_sales_data(data_path: Path | None = None) -> LoadResult:
    """Load the normalized transaction table written by the preparation task."""

    path = Path(data_path) if data_path is not None else DATA_PATH
    if not path.exists():
        raise FileNotFoundError(
            f"Normalized dataset not found at {path}. Run the preparation task first."
        )

    raw = pd.read_csv(path)
    missing_columns = [col for col in NORMALIZED_COLUMNS if col not in raw.columns]
    if missing_columns:
        raise InputShapeError(
            "The normalized dataset is missing expected columns", missing_columns
        )
    if raw.empty:
        raise InputShapeError(f"The normalized dataset at {path} has no rows")

    data = raw.loc[:, NORMALIZED_COLUMNS].copy()
    data["margin"] = pd.to_numeric(data["margin"], errors="coerce")
    data["period"] = pd.to_numeric(data["period"], errors="coerce").astype("Int64")
    for column in PRODUCT_COLUMNS:
        data[column] = pd.to_numeric(data[column], errors="coerce").fillna(0).astype(int)
    data["store"] = pd.to_numeric(data["store"], errors="coerce").astype("Int64")
    data["product_type"] = data["product_type"].astype("string")
    data["store_label"] = data["store_label"].astype("string")
    data["period_label"] = data["period_label"].astype("string")
    data["region"] = data["region"].astype("string")
    data["product_category"] = data["product_category"].astype("string")

    diagnostics = {
        "data_path": str(path),
        "rows": len(data),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Loaded normalized sales data: {len(data)} rows from {path}")
    return LoadResult(data=data, diagnostics=diagnostics)


def significance_stars(p_value: float) -> str:
    """Conventional significance marker for a p-value."""

    if pd.isna(p_value):
        return ""
    if p_value < 0.001:
        return "***"
    if p_value < 0.01:
        return "**"
    if p_value < ALPHA:
        return "*"
    return "(ns)"


def write_json(path: Path, payload: Mapping[str, object]) -> None:
    """Write a JSON payload with UTF-8 encoding."""

    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)


def write_summary(
    directory: Path,
    lines: Sequence[str],
    *,
    filename: str = "summary.txt",
    max_lines: int = 12,
) -> Path:
    """Persist a short summary text file (≤ max_lines)."""

    trimmed = list(lines)[:max_lines]
    path = directory / filename
    with path.open("w", encoding="utf-8") as handle:
        handle.write("\n".join(trimmed).strip() + "\n")
    return path


def write_memo(
    directory: Path,
    lines: Sequence[str],
    *,
    filename: str = "memo.txt",
) -> Path:
    """Persist a short interpretation memo."""

    path = directory / filename
    with path.open("w", encoding="utf-8") as handle:
        handle.write("\n".join(lines).strip() + "\n")
    return path


def write_session_info(
    directory: Path,
    extra_packages: Sequence[str] | None = None,
) -> Path:
    """Record package versions used for the current analysis run."""

    packages = [
        "pandas",
        "numpy",
        "matplotlib",
        "seaborn",
        "pyarrow",
        "scipy",
        "statsmodels",
    ]
    if extra_packages:
        packages.extend(extra_packages)

    versions: dict[str, str] = {}
    for pkg in packages:
        try:
            versions[pkg] = metadata.version(pkg)
        except metadata.PackageNotFoundError:
            continue

    path = directory / "session_info.txt"
    payload = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "packages": versions,
    }
    write_json(path, payload)
    return path


def format_bullet_summary(items: Mapping[str, object]) -> str:
    """Create a human-readable bullet summary from a mapping."""

    lines = [f"• {key}: {value}" for key, value in items.items()]
    return "\n".join(lines)


def indent_lines(text: str, spaces: int = 2) -> str:
    """Indent multi-line text for console display."""

    prefix = " " * spaces
    return "\n".join(prefix + line for line in text.splitlines())
