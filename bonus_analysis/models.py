"""Regression engine: the three nested margin models.

Each specification is an explicit, ordered tuple of named predictors. A
predictor is a function from the normalized transaction table to a numeric
series; the design matrix is built by evaluating them in order, so coefficient
names always match the predictor names (``period``, ``device`` ...).

    M1 raw         margin ~ Intercept + period
    M2 controlled  margin ~ Intercept + period + device + insurance + accessory
    M3 store_fe    M2 + one dummy per store except the reference store
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm

from . import common

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"
PERIOD_TERM = "period"
PATHWAY_TERMS: Sequence[str] = ("device", "insurance", "accessory")

Extractor = Callable[[pd.DataFrame], pd.Series]


@dataclass(frozen=True)
class Predictor:
    """A named column of the design matrix."""

    name: str
    extract: Extractor


@dataclass(frozen=True)
class ModelSpec:
    """Fixed specification of one regression model."""

    name: str
    label: str
    predictors: tuple[Predictor, ...]
    store_effects: bool = False

    def resolve(self, data: pd.DataFrame) -> tuple[Predictor, ...]:
        """Return the concrete predictor list for a dataset."""

        if not self.store_effects:
            return self.predictors
        return self.predictors + store_dummies(data)


@dataclass(frozen=True)
class CoefficientRecord:
    term: str
    estimate: float
    std_error: float
    t_value: float
    p_value: float

    @property
    def stars(self) -> str:
        return common.significance_stars(self.p_value)


@dataclass(frozen=True)
class ModelResult:
    """Named coefficients and fit statistics for one fitted specification."""

    name: str
    label: str
    coefficients: Mapping[str, CoefficientRecord]
    r_squared: float
    adj_r_squared: float
    n_obs: int
    df_resid: float
    fitted: pd.Series = field(repr=False, compare=False)
    residuals: pd.Series = field(repr=False, compare=False)

    def term(self, name: str) -> CoefficientRecord:
        try:
            return self.coefficients[name]
        except KeyError:
            raise KeyError(f"Model '{self.name}' has no term '{name}'") from None

    @property
    def terms(self) -> list[str]:
        return list(self.coefficients)

    @property
    def period(self) -> CoefficientRecord:
        return self.term(PERIOD_TERM)

    @property
    def device(self) -> CoefficientRecord:
        return self.term("device")

    @property
    def insurance(self) -> CoefficientRecord:
        return self.term("insurance")

    @property
    def accessory(self) -> CoefficientRecord:
        return self.term("accessory")

    def to_frame(self) -> pd.DataFrame:
        """Coefficient table in term order."""

        records = [
            {
                "term": record.term,
                "estimate": record.estimate,
                "std_error": record.std_error,
                "t_value": record.t_value,
                "p_value": record.p_value,
            }
            for record in self.coefficients.values()
        ]
        return pd.DataFrame.from_records(
            records, columns=["term", "estimate", "std_error", "t_value", "p_value"]
        )


@dataclass
class ModelSuite:
    """Results of fitting every specification; failures are kept per model."""

    results: dict[str, ModelResult] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> ModelResult | None:
        return self.results.get(name)

    def __getitem__(self, name: str) -> ModelResult:
        if name in self.results:
            return self.results[name]
        reason = self.failures.get(name, "model was not fitted")
        raise KeyError(f"Model '{name}' unavailable: {reason}")

    def __contains__(self, name: object) -> bool:
        return name in self.results

    @property
    def ordered(self) -> list[ModelResult]:
        return [self.results[spec.name] for spec in MODEL_SPECS if spec.name in self.results]


def _as_float(values: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(values, errors="coerce")
    return pd.Series(numeric.to_numpy(dtype=float, na_value=np.nan), index=values.index)


def _column(name: str) -> Extractor:
    def extract(data: pd.DataFrame) -> pd.Series:
        return _as_float(data[name])

    extract.__name__ = f"extract_{name}"
    return extract


def _store_indicator(store_id: int) -> Extractor:
    def extract(data: pd.DataFrame) -> pd.Series:
        # Missing store stays NaN; the row is dropped instead of joining the reference store.
        stores = _as_float(data["store"])
        return stores.eq(store_id).astype(float).where(stores.notna())

    extract.__name__ = f"extract_store_{store_id}"
    return extract


def store_dummies(data: pd.DataFrame) -> tuple[Predictor, ...]:
    """One indicator per store except the lowest-numbered (reference) store."""

    stores = sorted(int(s) for s in data["store"].dropna().unique())
    return tuple(Predictor(f"store_{store}", _store_indicator(store)) for store in stores[1:])


PERIOD = Predictor(PERIOD_TERM, _column("period"))
PRODUCT_PREDICTORS = tuple(Predictor(term, _column(term)) for term in PATHWAY_TERMS)

RAW_MODEL = ModelSpec("raw", "Model 1 (Raw)", (PERIOD,))
CONTROLLED_MODEL = ModelSpec(
    "controlled", "Model 2 (Product Controls)", (PERIOD, *PRODUCT_PREDICTORS)
)
STORE_FE_MODEL = ModelSpec(
    "store_fe", "Model 3 (Store FE)", (PERIOD, *PRODUCT_PREDICTORS), store_effects=True
)
MODEL_SPECS: Sequence[ModelSpec] = (RAW_MODEL, CONTROLLED_MODEL, STORE_FE_MODEL)
SPECS_BY_NAME: Mapping[str, ModelSpec] = {spec.name: spec for spec in MODEL_SPECS}


def build_design_matrix(
    data: pd.DataFrame, spec: ModelSpec
) -> tuple[pd.Series, pd.DataFrame]:
    """Evaluate a specification's predictors into (response, design matrix).

    Rows with a missing response or predictor are dropped.
    """

    predictors = spec.resolve(data)
    columns: dict[str, pd.Series] = {INTERCEPT: pd.Series(1.0, index=data.index)}
    for predictor in predictors:
        columns[predictor.name] = predictor.extract(data)
    design = pd.DataFrame(columns, index=data.index)
    response = pd.to_numeric(data["margin"], errors="coerce").astype(float).rename("margin")

    complete = design.notna().all(axis=1) & response.notna()
    dropped = int((~complete).sum())
    if dropped:
        logger.warning(f"Model {spec.name}: dropped {dropped} rows with missing values")
    return response[complete], design[complete]


def check_full_rank(design: pd.DataFrame, model_name: str) -> None:
    """Raise RankDeficientError unless the design matrix has full column rank."""

    n_columns = design.shape[1]
    if design.shape[0] <= n_columns:
        raise common.RankDeficientError(model_name, min(design.shape), n_columns)
    rank = int(np.linalg.matrix_rank(design.to_numpy(dtype=float)))
    if rank < n_columns:
        raise common.RankDeficientError(model_name, rank, n_columns)


def _result_from_fit(
    spec: ModelSpec,
    fit: sm.regression.linear_model.RegressionResultsWrapper,
) -> ModelResult:
    coefficients: OrderedDict[str, CoefficientRecord] = OrderedDict()
    for term in fit.params.index:
        coefficients[term] = CoefficientRecord(
            term=term,
            estimate=float(fit.params[term]),
            std_error=float(fit.bse[term]),
            t_value=float(fit.tvalues[term]),
            p_value=float(fit.pvalues[term]),
        )
    return ModelResult(
        name=spec.name,
        label=spec.label,
        coefficients=coefficients,
        r_squared=float(fit.rsquared),
        adj_r_squared=float(fit.rsquared_adj),
        n_obs=int(fit.nobs),
        df_resid=float(fit.df_resid),
        fitted=fit.fittedvalues.rename("fitted"),
        residuals=fit.resid.rename("residual"),
    )


def fit_model(data: pd.DataFrame, spec: ModelSpec) -> ModelResult:
    """Fit one specification by OLS and return its named coefficients."""

    if data.empty:
        raise common.InputShapeError(f"Cannot fit model '{spec.name}' on an empty dataset")

    response, design = build_design_matrix(data, spec)
    check_full_rank(design, spec.name)

    fit = sm.OLS(response, design, hasconst=True).fit()
    result = _result_from_fit(spec, fit)
    logger.info(
        f"{spec.label}: period = {result.period.estimate:.3f} pp "
        f"{result.period.stars} (R² = {result.r_squared:.4f}, N = {result.n_obs})"
    )
    return result


def fit_all_models(
    data: pd.DataFrame,
    specs: Sequence[ModelSpec] = MODEL_SPECS,
) -> ModelSuite:
    """Fit each specification in order; one model failing does not stop the rest."""

    if data.empty:
        raise common.InputShapeError("Cannot fit models on an empty dataset")

    suite = ModelSuite()
    for spec in specs:
        try:
            suite.results[spec.name] = fit_model(data, spec)
        except (common.RankDeficientError, np.linalg.LinAlgError) as exc:
            logger.error(f"✗ {spec.label} failed: {exc}")
            suite.failures[spec.name] = str(exc)
    return suite


def coefficient_table(suite: ModelSuite) -> pd.DataFrame:
    """All coefficients of all fitted models, labelled by model."""

    frames = []
    for result in suite.ordered:
        frame = result.to_frame()
        frame.insert(0, "model", result.label)
        frames.append(frame)
    if not frames:
        return pd.DataFrame(
            columns=["model", "term", "estimate", "std_error", "t_value", "p_value"]
        )
    return pd.concat(frames, ignore_index=True)


def model_comparison(suite: ModelSuite) -> pd.DataFrame:
    """Period coefficient, R², adjusted R² and p-value per model."""

    records = []
    for spec in MODEL_SPECS:
        result = suite.get(spec.name)
        if result is None:
            records.append(
                {
                    "model": spec.label,
                    "coefficient": np.nan,
                    "std_error": np.nan,
                    "r_squared": np.nan,
                    "adj_r_squared": np.nan,
                    "p_value": np.nan,
                    "significance": "",
                    "n_obs": np.nan,
                    "status": f"failed: {suite.failures.get(spec.name, 'not fitted')}",
                }
            )
            continue
        period = result.period
        records.append(
            {
                "model": spec.label,
                "coefficient": period.estimate,
                "std_error": period.std_error,
                "r_squared": result.r_squared,
                "adj_r_squared": result.adj_r_squared,
                "p_value": period.p_value,
                "significance": period.stars,
                "n_obs": result.n_obs,
                "status": "ok",
            }
        )
    return pd.DataFrame.from_records(records)


def attenuation(raw: ModelResult, controlled: ModelResult) -> tuple[float, float]:
    """Absolute (pp) and relative (%) drop of the period effect from M1 to M2."""

    absolute = raw.period.estimate - controlled.period.estimate
    if raw.period.estimate == 0:
        return absolute, float("nan")
    return absolute, absolute / raw.period.estimate * 100


def _rounded_coefficients(frame: pd.DataFrame) -> pd.DataFrame:
    return frame.round({"estimate": 4, "std_error": 4, "t_value": 3, "p_value": 4})


def run(*, output_dir: Path | None = None, data_path: Path | None = None) -> Path:
    """Fit the three regression models and persist coefficient tables."""

    load_result = common.load_normalized_sales_data(data_path)
    data = load_result.data

    out_dir = common.prepare_output_dir("models", output_dir)

    suite = fit_all_models(data)
    for result in suite.ordered:
        _rounded_coefficients(result.to_frame()).to_csv(
            out_dir / f"model_{result.name}_coefficients.csv", index=False
        )
    _rounded_coefficients(coefficient_table(suite)).to_csv(
        out_dir / "regression_coefficients.csv", index=False
    )
    comparison = model_comparison(suite)
    comparison.to_csv(out_dir / "model_comparison.csv", index=False)

    summary_lines = ["Regression models:"]
    for result in suite.ordered:
        summary_lines.append(
            f"• {result.label}: {result.period.estimate:.3f} pp {result.period.stars}"
            f" (R² = {result.r_squared:.4f}, adj. R² = {result.adj_r_squared:.4f})"
        )
    for name, reason in suite.failures.items():
        summary_lines.append(f"• {SPECS_BY_NAME[name].label}: FAILED ({reason})")

    raw = suite.get(RAW_MODEL.name)
    controlled = suite.get(CONTROLLED_MODEL.name)
    if raw is not None and controlled is not None:
        absolute, relative = attenuation(raw, controlled)
        summary_lines.append(
            f"• Attenuation M1 → M2: {absolute:.3f} pp ({relative:.1f}% of the raw effect)."
        )

    items = {
        "Observations": len(data),
        "Stores": int(data["store"].nunique()),
        "Models fitted": f"{len(suite.results)}/{len(MODEL_SPECS)}",
    }
    print("Model diagnostic summary:")
    print(common.indent_lines(common.format_bullet_summary(items)))
    print(common.indent_lines(comparison.to_string(index=False)))

    memo_lines = [
        "Models memo:",
        "1. Model 1 regresses margin on the period indicator only (total effect).",
        "2. Model 2 adds device/insurance/accessory indicators; undeclared sales are the baseline.",
        "3. Model 3 adds store fixed effects relative to the lowest-numbered store.",
        "4. Coefficients are looked up by term name; see regression_coefficients.csv.",
    ]

    common.write_summary(out_dir, summary_lines)
    common.write_memo(out_dir, memo_lines)
    common.write_session_info(out_dir)
    return out_dir


if __name__ == "__main__":
    run()
