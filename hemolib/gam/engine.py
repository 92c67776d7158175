"""
Regression engine for penalized additive models

The orchestrator talks to an engine through one call:

    engine.fit(call: EngineCall, data: Mapping[str, np.ndarray]) -> FittedGAM

``PenalizedSplineEngine`` is the engine shipped with hemolib. It fits a
Gaussian additive model

    y = b0 + sum_j f_j(x_j) + e,    e ~ AR(1) within segments

by penalized least squares with one smoothing parameter per penalty, chosen
by restricted maximum likelihood (REML). With AR(1) residuals the rows are
whitened first: every row that does not start a segment becomes
(r_i - rho * r_i-1) / sqrt(1 - rho^2).

Two strategies produce the same criterion:
    "REML"   build the whole model matrix once (small/medium data)
    "fREML"  accumulate X'X and X'y over row chunks, optionally in a thread
             pool (large data, bounded memory)
"""

import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import linalg, optimize

from hemolib.errors import DataError, FitError, FitWarning, PredictionError
from hemolib.gam.bases import FactorEffect, Intercept, build_components, factor_levels
from hemolib.gam.spec_builder import SmoothTerm

ENGINE_METHODS = ("REML", "fREML")


@dataclass
class FitControl:
    """Engine settings, passed with every fit instead of held globally"""

    n_threads: int = 1
    tol: float = 1e-8  # relative criterion tolerance for the optimizer
    max_iter: int = 200
    chunk_size: int = 10000  # rows per block in the large-data path
    log_sp_bounds: Tuple[float, float] = (-8.0, 14.0)


@dataclass
class EngineCall:
    """Everything the engine needs to fit, in engine terms"""

    response: str
    terms: List[SmoothTerm]
    method: str = "REML"
    rho: float = 0.0
    ar_start: Optional[np.ndarray] = None  # bool per row, True starts a segment
    control: FitControl = field(default_factory=FitControl)


class RegressionEngine:
    """Interface every regression engine implements"""

    def fit(self, call: EngineCall, data: Mapping[str, np.ndarray]) -> "FittedGAM":
        raise NotImplementedError


def ar1_whiten(
    values: np.ndarray, rho: float, ar_start: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Remove AR(1) correlation from rows of a vector or matrix.

    Rows flagged in ``ar_start`` (and the first row) are left unchanged; every
    other row i becomes (v_i - rho * v_i-1) / sqrt(1 - rho^2).
    """
    values = np.asarray(values, dtype=float)
    if rho == 0.0 or len(values) == 0:
        return values.copy()

    starts = np.zeros(len(values), dtype=bool)
    if ar_start is not None:
        starts |= np.asarray(ar_start, dtype=bool)
    starts[0] = True

    scale = 1.0 / np.sqrt(1.0 - rho**2)
    previous = np.roll(values, 1, axis=0)
    whitened = (values - rho * previous) * scale
    if values.ndim == 1:
        return np.where(starts, values, whitened)
    return np.where(starts[:, None], values, whitened)


def _log_pseudo_det(S: np.ndarray, rank: int) -> float:
    if rank == 0:
        return 0.0
    eigenvalues = np.linalg.eigvalsh(S)[::-1][:rank]
    return float(np.sum(np.log(np.maximum(eigenvalues, np.finfo(float).tiny))))


def _penalty_rank(penalties: Sequence[np.ndarray]) -> int:
    if not penalties:
        return 0
    eigenvalues = np.linalg.eigvalsh(sum(penalties))
    if eigenvalues.max() <= 0:
        return 0
    return int(np.sum(eigenvalues > eigenvalues.max() * 1e-8))


class ModelMatrix:
    """Column layout of intercept, factor main effects and smooth components"""

    def __init__(self, terms: Sequence[SmoothTerm], data: Mapping[str, np.ndarray]):
        components: List = [Intercept()]

        by_factors = list(dict.fromkeys(t.by for t in terms if t.by is not None))
        for by in by_factors:
            levels = factor_levels(data[by])
            if len(levels) > 1:
                components.append(FactorEffect(by, levels))

        for term in terms:
            components.extend(build_components(term, data))

        self.components = components
        self.slices: Dict[str, slice] = {}
        start = 0
        for component in components:
            self.slices[component.label] = slice(start, start + component.n_coef)
            start += component.n_coef
        self.n_coef = start
        self.factor_levels = {
            c.variable: c.levels for c in components if isinstance(c, FactorEffect)
        }
        for term in terms:
            if term.by is not None and term.by not in self.factor_levels:
                self.factor_levels[term.by] = factor_levels(data[term.by])

    @property
    def smooth_components(self) -> List:
        return [c for c in self.components if c.penalties]

    def variables(self) -> List[str]:
        names = []
        for component in self.components:
            names.extend(component.variables)
            if component.by is not None:
                names.append(component.by)
        return list(dict.fromkeys(names))

    def component(self, label: str):
        for component in self.components:
            if component.label == label:
                return component
        raise KeyError(
            f"No term '{label}' in model "
            f"(terms: {[c.label for c in self.smooth_components]})"
        )

    def design(
        self, data: Mapping[str, np.ndarray], exclude: Sequence[str] = ()
    ) -> np.ndarray:
        n_rows = len(next(iter(data.values()))) if data else 0
        X = np.zeros((n_rows, self.n_coef))
        for component in self.components:
            if component.label in exclude:
                continue
            X[:, self.slices[component.label]] = component.design(data, n_rows)
        return X


def _slice_rows(data: Mapping[str, np.ndarray], start: int, stop: int) -> Dict:
    return {name: np.asarray(values)[start:stop] for name, values in data.items()}


class PenalizedSplineEngine(RegressionEngine):
    """Penalized regression spline engine with REML smoothing selection"""

    def fit(self, call: EngineCall, data: Mapping[str, np.ndarray]) -> "FittedGAM":
        if call.method not in ENGINE_METHODS:
            raise FitError(f"Unknown fitting method '{call.method}'")

        y = np.asarray(data[call.response], dtype=float)
        n = len(y)
        if not np.all(np.isfinite(y)):
            raise DataError(f"Response '{call.response}' contains missing values")

        ar_start = None
        if call.ar_start is not None:
            ar_start = np.asarray(call.ar_start, dtype=bool)
            if len(ar_start) != n:
                raise DataError("AR start markers must have one entry per row")

        model_matrix = ModelMatrix(call.terms, data)
        p = model_matrix.n_coef

        if call.method == "REML":
            X = model_matrix.design(data)
            XtX, Xty, yty = self._cross_products(X, y, call.rho, ar_start)
        else:
            XtX, Xty, yty = self._chunked_cross_products(
                model_matrix, data, y, call.rho, ar_start, call.control
            )

        penalties, owners, fixed = self._collect_penalties(model_matrix, XtX)
        ranks = {
            c.label: _penalty_rank([S for S, o in zip(penalties, owners) if o == c.label])
            for c in model_matrix.smooth_components
        }
        null_dim = p - sum(ranks.values())
        if n - null_dim <= 0:
            raise FitError(
                f"Too few observations ({n}) for {null_dim} unpenalized coefficients"
            )

        ridge = 1e-9 * max(float(np.mean(np.diag(XtX))), 1e-12)
        criterion = _RemlCriterion(
            XtX, Xty, yty, n, null_dim, penalties, owners, ranks, model_matrix, ridge
        )

        sp, converged, n_iter, score = self._select_smoothing(
            criterion, fixed, call.control
        )
        beta, A_factor = criterion.solve(sp)

        A_inv = linalg.cho_solve(A_factor, np.eye(p))
        A_inv = (A_inv + A_inv.T) / 2.0
        edf_per_coef = np.einsum("ij,ji->i", A_inv, XtX)
        edf = float(np.sum(edf_per_coef))
        rss = float(yty - 2 * beta @ Xty + beta @ XtX @ beta)
        if n - edf <= 0:
            raise FitError("Model has no residual degrees of freedom")
        scale = rss / (n - edf)
        Vp = A_inv * scale

        if call.method == "REML":
            fitted = X @ beta
        else:
            fitted = np.concatenate(
                [
                    model_matrix.design(_slice_rows(data, a, b)) @ beta
                    for a, b in _chunk_bounds(n, call.control.chunk_size)
                ]
            )
        residuals = y - fitted

        term_sp = {}
        for label in ranks:
            term_sp[label] = tuple(
                float(s) for s, o in zip(sp, owners) if o == label
            )
        term_edf = {
            c.label: float(np.sum(edf_per_coef[model_matrix.slices[c.label]]))
            for c in model_matrix.components
        }

        return FittedGAM(
            model_matrix=model_matrix,
            response=call.response,
            coefficients=beta,
            vp=Vp,
            fitted=fitted,
            residuals=residuals,
            std_residuals=ar1_whiten(residuals, call.rho, ar_start),
            sp=term_sp,
            edf=edf,
            term_edf=term_edf,
            scale=scale,
            method=call.method,
            rho=call.rho,
            n_obs=n,
            reml=score,
            converged=converged,
            n_iter=n_iter,
            ar_start=ar_start,
        )

    @staticmethod
    def _cross_products(
        X: np.ndarray, y: np.ndarray, rho: float, ar_start: Optional[np.ndarray]
    ) -> Tuple[np.ndarray, np.ndarray, float]:
        Xw = ar1_whiten(X, rho, ar_start)
        yw = ar1_whiten(y, rho, ar_start)
        return Xw.T @ Xw, Xw.T @ yw, float(yw @ yw)

    def _chunked_cross_products(
        self,
        model_matrix: ModelMatrix,
        data: Mapping[str, np.ndarray],
        y: np.ndarray,
        rho: float,
        ar_start: Optional[np.ndarray],
        control: FitControl,
    ) -> Tuple[np.ndarray, np.ndarray, float]:
        n = len(y)

        def block(bounds: Tuple[int, int]):
            a, b = bounds
            # one leading row so the first row of the chunk can be whitened
            lead = 1 if a > 0 else 0
            rows = _slice_rows(data, a - lead, b)
            X = model_matrix.design(rows)
            starts = None if ar_start is None else ar_start[a - lead : b].copy()
            XtX, Xty, yty_part = self._cross_products_dropping(
                X, y[a - lead : b], rho, starts, lead
            )
            return XtX, Xty, yty_part

        chunks = _chunk_bounds(n, control.chunk_size)
        if control.n_threads > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=control.n_threads) as pool:
                parts = list(pool.map(block, chunks))
        else:
            parts = [block(bounds) for bounds in chunks]

        XtX = sum(part[0] for part in parts)
        Xty = sum(part[1] for part in parts)
        yty = float(sum(part[2] for part in parts))
        return XtX, Xty, yty

    @staticmethod
    def _cross_products_dropping(
        X: np.ndarray,
        y: np.ndarray,
        rho: float,
        starts: Optional[np.ndarray],
        lead: int,
    ) -> Tuple[np.ndarray, np.ndarray, float]:
        Xw = ar1_whiten(X, rho, starts)[lead:]
        yw = ar1_whiten(y, rho, starts)[lead:]
        return Xw.T @ Xw, Xw.T @ yw, float(yw @ yw)

    @staticmethod
    def _collect_penalties(
        model_matrix: ModelMatrix, XtX: np.ndarray
    ) -> Tuple[List[np.ndarray], List[str], List[Optional[float]]]:
        """
        Embed every component penalty in the full coefficient space, scaled so
        that a smoothing parameter of 1 balances fit and penalty.
        """
        p = model_matrix.n_coef
        penalties, owners, fixed = [], [], []
        for component in model_matrix.smooth_components:
            sl = model_matrix.slices[component.label]
            block_norm = np.linalg.norm(XtX[sl, sl])
            for j, S in enumerate(component.penalties):
                S_norm = np.linalg.norm(S)
                scale = block_norm / S_norm if block_norm > 0 and S_norm > 0 else 1.0
                full = np.zeros((p, p))
                full[sl, sl] = S * scale
                penalties.append(full)
                owners.append(component.label)
                fixed.append(
                    component.fixed_sp[j] if component.fixed_sp is not None else None
                )
        return penalties, owners, fixed

    @staticmethod
    def _select_smoothing(
        criterion: "_RemlCriterion",
        fixed: List[Optional[float]],
        control: FitControl,
    ) -> Tuple[np.ndarray, bool, int, float]:
        free = [i for i, value in enumerate(fixed) if value is None]
        sp = np.array([value if value is not None else 1.0 for value in fixed])

        if not free:
            return sp, True, 0, criterion(sp)

        def objective(log_sp: np.ndarray) -> float:
            trial = sp.copy()
            trial[free] = np.exp(log_sp)
            return criterion(trial)

        result = optimize.minimize(
            objective,
            x0=np.zeros(len(free)),
            method="L-BFGS-B",
            bounds=[control.log_sp_bounds] * len(free),
            options={"maxiter": control.max_iter, "ftol": control.tol},
        )

        if not np.isfinite(result.fun):
            raise FitError("REML criterion is not finite at the optimum")
        if result.status == 1:
            raise FitError(
                f"Smoothing parameter selection did not converge within "
                f"{control.max_iter} iterations"
            )
        converged = result.status == 0
        if not converged:
            warnings.warn(
                f"Smoothing parameter selection stopped early: {result.message}",
                FitWarning,
            )

        sp[free] = np.exp(result.x)
        return sp, converged, int(result.nit), float(result.fun)


class _RemlCriterion:
    """
    Profiled Gaussian REML score for given smoothing parameters:

        V = (n - Mp) log(y'y - b'X'y) + log|X'X + S| - log|S|+

    where S = sum_j sp_j S_j, b = (X'X + S)^-1 X'y and Mp is the dimension of
    the unpenalized space.
    """

    def __init__(
        self, XtX, Xty, yty, n, null_dim, penalties, owners, ranks, model_matrix, ridge
    ):
        self.XtX = XtX
        self.Xty = Xty
        self.yty = yty
        self.n = n
        self.null_dim = null_dim
        self.penalties = penalties
        self.owners = owners
        self.ranks = ranks
        self.model_matrix = model_matrix
        self.ridge = ridge

    def total_penalty(self, sp: np.ndarray) -> np.ndarray:
        S = np.zeros_like(self.XtX)
        for value, penalty in zip(sp, self.penalties):
            S += value * penalty
        return S

    def solve(self, sp: np.ndarray):
        S = self.total_penalty(sp)
        A = self.XtX + S + self.ridge * np.eye(len(self.Xty))
        try:
            factor = linalg.cho_factor(A, lower=True)
        except linalg.LinAlgError as e:
            raise FitError(f"Penalized normal equations are singular: {e}")
        return linalg.cho_solve(factor, self.Xty), factor

    def __call__(self, sp: np.ndarray) -> float:
        beta, factor = self.solve(sp)
        deviance = self.yty - beta @ self.Xty
        deviance = max(deviance, np.finfo(float).tiny)
        log_det_A = 2.0 * float(np.sum(np.log(np.diag(factor[0]))))

        S = self.total_penalty(sp)
        log_det_S = 0.0
        for label, rank in self.ranks.items():
            sl = self.model_matrix.slices[label]
            log_det_S += _log_pseudo_det(S[sl, sl], rank)

        return (self.n - self.null_dim) * np.log(deviance) + log_det_A - log_det_S


def _chunk_bounds(n: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunk_size = max(int(chunk_size), 1)
    return [(a, min(a + chunk_size, n)) for a in range(0, n, chunk_size)]


class FittedGAM:
    """
    Result of a penalized additive model fit.

    Holds the coefficients with their Bayesian posterior covariance and the
    bases needed to rebuild the model matrix for new covariate values.
    """

    def __init__(
        self,
        model_matrix: ModelMatrix,
        response: str,
        coefficients: np.ndarray,
        vp: np.ndarray,
        fitted: np.ndarray,
        residuals: np.ndarray,
        std_residuals: np.ndarray,
        sp: Dict[str, Tuple[float, ...]],
        edf: float,
        term_edf: Dict[str, float],
        scale: float,
        method: str,
        rho: float,
        n_obs: int,
        reml: float,
        converged: bool,
        n_iter: int,
        ar_start: Optional[np.ndarray] = None,
    ):
        self.model_matrix = model_matrix
        self.response = response
        self.coefficients = coefficients
        self.vp = vp
        self.fitted = fitted
        self.residuals = residuals
        self.std_residuals = std_residuals
        self.sp = sp
        self.edf = edf
        self.term_edf = term_edf
        self.scale = scale
        self.method = method
        self.rho = rho
        self.n_obs = n_obs
        self.reml = reml
        self.converged = converged
        self.n_iter = n_iter
        self.ar_start = ar_start
        self.spec = None  # set by the orchestrator that requested the fit
        self.kept_rows = None  # rows of the input table used in the fit

    @property
    def intercept(self) -> float:
        return float(self.coefficients[0])

    @property
    def intercept_se(self) -> float:
        return float(np.sqrt(self.vp[0, 0]))

    @property
    def term_labels(self) -> List[str]:
        return [c.label for c in self.model_matrix.smooth_components]

    @property
    def covariates(self) -> List[str]:
        return self.model_matrix.variables()

    def coef(self, label: str) -> np.ndarray:
        return self.coefficients[self.model_matrix.slices[label]]

    def _check_newdata(self, newdata: Mapping[str, np.ndarray], names: Sequence[str]):
        missing = [name for name in names if name not in newdata]
        if missing:
            raise PredictionError(f"newdata is missing covariate(s): {missing}")
        for factor, levels in self.model_matrix.factor_levels.items():
            if factor not in names:
                continue
            unseen = set(factor_levels(newdata[factor])) - set(levels)
            if unseen:
                raise PredictionError(
                    f"Level(s) {sorted(map(str, unseen))} of '{factor}' "
                    f"were not present when the model was fitted"
                )

    def _missing_rows(self, newdata: Mapping[str, np.ndarray], names: Sequence[str]):
        n_rows = len(next(iter(newdata.values()))) if newdata else 0
        missing = np.zeros(n_rows, dtype=bool)
        for name in names:
            values = np.asarray(newdata[name])
            if values.dtype.kind == "f":
                missing |= np.isnan(values)
            elif values.dtype == object:
                missing |= np.array([v is None or v != v for v in values], dtype=bool)
        return missing

    def predict(
        self,
        newdata: Mapping[str, np.ndarray],
        se_fit: bool = False,
        exclude: Sequence[str] = (),
    ) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
        """
        Predictions (and optionally standard errors) at new covariate values.

        Args:
            newdata: Column name -> values for every covariate of the model
            se_fit: Also return standard errors from the posterior covariance
            exclude: Component labels left out of the prediction

        Raises:
            PredictionError: If a covariate or factor level is missing
        """
        unknown = [label for label in exclude if label not in self.model_matrix.slices]
        if unknown:
            raise PredictionError(f"Cannot exclude unknown term(s): {unknown}")

        names = self.covariates
        self._check_newdata(newdata, names)
        X = self.model_matrix.design(newdata, exclude=exclude)
        missing = self._missing_rows(newdata, names)

        values = X @ self.coefficients
        values[missing] = np.nan
        if not se_fit:
            return values
        se = np.sqrt(np.maximum(np.einsum("ij,jk,ik->i", X, self.vp, X), 0.0))
        se[missing] = np.nan
        return values, se

    def term_grid(self, label: str, grid_size: int = 100) -> Dict[str, np.ndarray]:
        """Evenly spaced grid spanning a component's full domain"""
        if grid_size < 2:
            raise ValueError("grid_size must be at least 2")
        component = self.model_matrix.component(label)
        if not component.penalties:
            raise KeyError(f"'{label}' is not a smooth term")
        return component.grid(grid_size)

    def evaluate_component(
        self, label: str, grid: Mapping[str, np.ndarray]
    ) -> Tuple[np.ndarray, np.ndarray]:
        """One component's contribution (and its standard error) on a grid"""
        component = self.model_matrix.component(label)
        n_rows = len(next(iter(grid.values())))
        X = component.design(grid, n_rows)
        sl = self.model_matrix.slices[label]
        values = X @ self.coefficients[sl]
        se = np.sqrt(np.maximum(np.einsum("ij,jk,ik->i", X, self.vp[sl, sl], X), 0.0))
        return values, se

    def sample_component(
        self,
        label: str,
        grid: Mapping[str, np.ndarray],
        n_draws: int,
        include_intercept: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Posterior draws of a component's values on a grid.

        Coefficients are drawn from N(b, Vp) restricted to the component (plus
        the intercept when requested, drawn jointly).

        Returns:
            Tuple of (n_draws x grid values, n_draws intercepts or None)
        """
        if n_draws < 1:
            raise ValueError("n_draws must be positive")
        rng = rng if rng is not None else np.random.default_rng()
        component = self.model_matrix.component(label)
        sl = self.model_matrix.slices[label]
        index = np.arange(sl.start, sl.stop)
        if include_intercept:
            index = np.concatenate([[0], index])

        draws = rng.multivariate_normal(
            self.coefficients[index],
            self.vp[np.ix_(index, index)],
            size=n_draws,
            method="eigh",
        )
        n_rows = len(next(iter(grid.values())))
        X = component.design(grid, n_rows)
        if include_intercept:
            return draws[:, 1:] @ X.T, draws[:, 0]
        return draws @ X.T, None

    def summary(self) -> Dict:
        return {
            "response": self.response,
            "method": self.method,
            "n_obs": self.n_obs,
            "intercept": self.intercept,
            "intercept_se": self.intercept_se,
            "edf": self.edf,
            "term_edf": dict(self.term_edf),
            "smoothing_parameters": dict(self.sp),
            "scale": self.scale,
            "rho": self.rho,
            "reml": self.reml,
            "converged": self.converged,
            "iterations": self.n_iter,
        }
