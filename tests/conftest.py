import numpy as np
import pandas as pd
import pytest

from bonus_analysis.preparation import normalize_transactions

PRODUCT_STRINGS = ["electronic device", "insurance + device", "accessory", "."]
PRODUCT_PREMIUM = {"electronic device": 0.0, "insurance + device": 8.0, "accessory": 12.0, ".": 1.0}
MIX_BY_TIME = {1: [0.60, 0.25, 0.05, 0.10], 2: [0.40, 0.40, 0.15, 0.05]}


def _region_string(store: int) -> str:
    if store <= 5:
        return "metropole city centre"
    if store <= 10:
        return "shopping mall"
    return "town city centre"


def make_raw_sales(rows_per_cell: int = 30, seed: int = 7) -> pd.DataFrame:
    """Raw sales table with a product-mix shift and a direct period effect."""

    rng = np.random.default_rng(seed)
    records = []
    for store in range(1, 14):
        for time in (1, 2):
            types = rng.choice(PRODUCT_STRINGS, size=rows_per_cell, p=MIX_BY_TIME[time])
            noise = rng.normal(0.0, 2.0, size=rows_per_cell)
            for product, eps in zip(types, noise):
                margin = 8.0 + 2.0 * (time - 1) + PRODUCT_PREMIUM[product] + 0.3 * store + eps
                records.append(
                    {
                        "sales_profitmargin": margin,
                        "time": time,
                        "type": product,
                        "store": store,
                        "region": _region_string(store),
                    }
                )
    return pd.DataFrame.from_records(records)


@pytest.fixture
def raw_sales() -> pd.DataFrame:
    return make_raw_sales()


@pytest.fixture
def sales_data(raw_sales: pd.DataFrame) -> pd.DataFrame:
    return normalize_transactions(raw_sales)
