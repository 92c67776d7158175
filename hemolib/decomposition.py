"""
Additive decomposition of hemodynamic signals

WaveformDecomposition turns an AdditiveModelSpec plus a table of indexed
observations into a fitted model, and reads components back out of it:

    spec = (
        ModelSpecBuilder("PP")
        .cyclic("insp_rel_index", knots=(0, 1))
        .smooth("time")
        .build()
    )
    decomposition = WaveformDecomposition()
    model = decomposition.fit(spec, beats)
    ppv = decomposition.derived_metric(model, "s(insp_rel_index)")

The numerical work is delegated to a RegressionEngine. This module owns
choosing the fitting strategy, translating the spec into an EngineCall,
dropping incomplete rows and the derived extrema-ratio metric.
"""

import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from hemolib.errors import DataWarning, PredictionError
from hemolib.gam.engine import (
    EngineCall,
    FitControl,
    FittedGAM,
    PenalizedSplineEngine,
    RegressionEngine,
)
from hemolib.gam.spec_builder import AdditiveModelSpec, validate_spec
from hemolib.signal_processing.residuals import estimate_ar1_rho, residual_acf

DEFAULT_GRID_SIZE = 100
LARGE_DATA_THRESHOLD = 20000


@dataclass
class DecompositionConfig:
    """
    Orchestrator settings.

    ``grid_size`` is the number of evenly spaced points a term is evaluated on
    when its extrema are taken. Extrema are found numerically, so a finer grid
    is more accurate and proportionally more expensive; 100 points resolve a
    smooth with k <= 20 well below typical posterior uncertainty.
    """

    large_data_threshold: int = LARGE_DATA_THRESHOLD
    grid_size: int = DEFAULT_GRID_SIZE
    control: FitControl = field(default_factory=FitControl)


def extrema_ratio(values: np.ndarray, intercept: float) -> float:
    """
    (max - min) / intercept of a term evaluated over its domain.

    With PP as response and a respiratory-cycle term this is the model based
    pulse pressure variation.
    """
    values = np.asarray(values, dtype=float)
    if not np.any(np.isfinite(values)):
        raise ValueError("No finite term values to take extrema from")
    if intercept == 0 or not np.isfinite(intercept):
        raise ValueError(f"Cannot normalise by intercept {intercept}")
    return float((np.nanmax(values) - np.nanmin(values)) / intercept)


def _column_values(series: pd.Series) -> np.ndarray:
    """Numeric columns as float with NaN, anything else as objects with None"""
    if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(
        series
    ):
        return series.to_numpy(dtype=float, na_value=np.nan)
    values = np.array(series.astype(object), dtype=object)
    values[pd.isna(series).to_numpy()] = None
    return values


def _missing(values: np.ndarray) -> np.ndarray:
    if values.dtype.kind == "f":
        return np.isnan(values)
    return np.array([v is None for v in values], dtype=bool)


def _term_components(model: FittedGAM, term_name: str) -> List[str]:
    """Component labels of a term, by component label or by spec label"""
    return [
        c.label
        for c in model.model_matrix.smooth_components
        if c.label == term_name or c.term.label == term_name
    ]


def resolve_term_label(model: FittedGAM, term_name: str) -> str:
    """
    Component label for a term name.

    Accepts component labels ("s(x)", "s(x):groupA") and, for terms with a
    grouping factor that has a single level, the spec label ("s(x):group").
    Partial names never match.
    """
    matches = _term_components(model, term_name)
    if len(matches) == 1:
        return matches[0]
    if matches:
        raise KeyError(
            f"'{term_name}' has one component per factor level; choose one of {matches}"
        )
    smooth_labels = [c.label for c in model.model_matrix.smooth_components]
    raise KeyError(f"No term '{term_name}' in model (terms: {smooth_labels})")


class WaveformDecomposition:
    """Fits additive models to indexed waveform/beat tables"""

    def __init__(
        self,
        engine: Optional[RegressionEngine] = None,
        config: Optional[DecompositionConfig] = None,
    ):
        self.engine = engine or PenalizedSplineEngine()
        self.config = config or DecompositionConfig()

    def resolve_method(self, spec: AdditiveModelSpec, n_rows: int) -> str:
        """Exact REML for small/medium data, chunked fREML above the threshold"""
        if spec.method != "auto":
            return spec.method
        return "fREML" if n_rows > self.config.large_data_threshold else "REML"

    def _prepare(
        self, spec: AdditiveModelSpec, data: pd.DataFrame
    ) -> Tuple[Dict[str, np.ndarray], np.ndarray, np.ndarray]:
        """
        Model columns restricted to complete rows, segment-start flags and the
        mask of kept rows. The row after a dropped row starts a new segment.
        """
        columns = [spec.response] + spec.covariates()
        arrays = {name: _column_values(data[name]) for name in columns}

        keep = np.ones(len(data), dtype=bool)
        for values in arrays.values():
            keep &= ~_missing(values)

        start_column = spec.correlation.start_column
        if start_column:
            starts = data[start_column].fillna(False).astype(bool).to_numpy()
        else:
            starts = np.zeros(len(data), dtype=bool)

        n_dropped = int(np.sum(~keep))
        if n_dropped:
            warnings.warn(
                f"Dropped {n_dropped} of {len(data)} rows with a missing "
                f"response or covariate",
                DataWarning,
            )
            after_gap = np.concatenate([[False], ~keep[:-1]])
            starts = starts | after_gap

        kept = {name: values[keep] for name, values in arrays.items()}
        return kept, starts[keep], keep

    def fit(self, spec: AdditiveModelSpec, data: pd.DataFrame) -> FittedGAM:
        """
        Fit an additive model.

        Args:
            spec: Model specification (validated against the data columns)
            data: Observation table

        Returns:
            FittedGAM with ``spec`` and ``kept_rows`` set

        Raises:
            ValidationError: If the spec references missing columns
            FitError: If the engine fails; never retried here
        """
        validate_spec(spec, data.columns)
        arrays, starts, keep = self._prepare(spec, data)
        n_rows = int(np.sum(keep))

        call = EngineCall(
            response=spec.response,
            terms=list(spec.terms),
            method=self.resolve_method(spec, n_rows),
            rho=spec.correlation.rho if spec.correlation.is_ar1 else 0.0,
            ar_start=starts,
            control=self.config.control,
        )
        model = self.engine.fit(call, arrays)
        model.spec = spec
        model.kept_rows = keep
        return model

    def _expand_exclude(self, model: FittedGAM, exclude: Sequence[str]) -> List[str]:
        labels = []
        for name in exclude:
            if name in model.model_matrix.slices:
                labels.append(name)
                continue
            matches = _term_components(model, name)
            if not matches:
                raise PredictionError(f"Cannot exclude unknown term '{name}'")
            labels.extend(matches)
        return labels

    def predict(
        self,
        model: FittedGAM,
        newdata: pd.DataFrame,
        with_se: bool = False,
        exclude: Optional[Sequence[str]] = None,
    ) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
        """
        Model predictions for new observations.

        Rows with a missing covariate value predict NaN; a covariate column
        that is absent altogether is an error.

        Raises:
            PredictionError: If newdata lacks a covariate of the model
        """
        missing = [name for name in model.covariates if name not in newdata.columns]
        if missing:
            raise PredictionError(
                f"missing covariate(s) {missing} required by the fitted model"
            )
        arrays = {name: _column_values(newdata[name]) for name in model.covariates}
        return model.predict(
            arrays,
            se_fit=with_se,
            exclude=self._expand_exclude(model, exclude or ()),
        )

    def evaluate_term(
        self, model: FittedGAM, term_name: str, grid_size: Optional[int] = None
    ) -> pd.DataFrame:
        """
        A single term over an evenly spaced grid spanning its domain.

        Returns:
            DataFrame with one column per term variable plus estimate and se
        """
        label = resolve_term_label(model, term_name)
        grid = model.term_grid(label, grid_size or self.config.grid_size)
        estimate, se = model.evaluate_component(label, grid)
        table = pd.DataFrame(grid)
        table["estimate"] = estimate
        table["se"] = se
        return table

    def derived_metric(
        self, model: FittedGAM, term_name: str, grid_size: Optional[int] = None
    ) -> float:
        """Extrema ratio (max - min) / intercept of a term on its grid"""
        table = self.evaluate_term(model, term_name, grid_size)
        return extrema_ratio(table["estimate"].to_numpy(), model.intercept)

    def residual_diagnostics(self, model: FittedGAM, max_lag: int = 20) -> Dict:
        """
        Serial correlation left in the residuals.

        ``acf`` uses the raw residuals, ``acf_standardized`` the AR-whitened
        ones; with a well chosen rho the latter is close to zero beyond lag 0.
        """
        acf = residual_acf(model.residuals, max_lag, model.ar_start)
        acf_std = residual_acf(model.std_residuals, max_lag, model.ar_start)
        return {
            "acf": acf,
            "acf_standardized": acf_std,
            "lag1": float(acf[1]) if max_lag >= 1 else None,
            "lag1_standardized": float(acf_std[1]) if max_lag >= 1 else None,
            "suggested_rho": estimate_ar1_rho(model.residuals, model.ar_start),
            "rho": model.rho,
            "n_obs": model.n_obs,
        }

    def suggest_rho(self, spec: AdditiveModelSpec, data: pd.DataFrame) -> float:
        """
        AR(1) coefficient for ``spec``: lag-1 autocorrelation of the residuals
        of the same model fitted without residual correlation.
        """
        uncorrelated = replace(
            spec, correlation=replace(spec.correlation, kind="none", rho=0.0)
        )
        model = self.fit(uncorrelated, data)
        return estimate_ar1_rho(model.residuals, model.ar_start)
