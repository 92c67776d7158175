"""
Penalized spline bases for additive models

All smooths are built from cubic B-splines on equally spaced knots with a
second-order difference penalty on neighbouring coefficients (P-splines):

    minimize: ||y - X b||^2 + lambda * ||D b||^2,   S = D'D

Periodic bases wrap the B-splines around the two boundary knots so the
smooth and its derivatives match at both ends; their difference operator is
circulant. Every smooth is made identifiable against the model intercept by
a sum-to-zero constraint over the training rows, absorbed by reparameterising
the basis with the null space Z of the constraint (X -> X Z, S -> Z'S Z).

Components (one per coefficient block of the model matrix) expose:
    label, variables, n_coef, penalties, design(data), grid(grid_size)
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from hemolib.errors import DataError
from hemolib.gam.spec_builder import ADAPTIVE_BASIS, SmoothTerm, is_periodic


def cardinal_cubic_bspline(s: np.ndarray) -> np.ndarray:
    """Uniform cubic B-spline with support [0, 4)"""
    s = np.asarray(s, dtype=float)
    out = np.zeros_like(s)

    m0 = (s >= 0) & (s < 1)
    m1 = (s >= 1) & (s < 2)
    m2 = (s >= 2) & (s < 3)
    m3 = (s >= 3) & (s < 4)

    x = s[m0]
    out[m0] = x**3 / 6.0
    x = s[m1]
    out[m1] = (-3 * x**3 + 12 * x**2 - 12 * x + 4) / 6.0
    x = s[m2]
    out[m2] = (3 * x**3 - 24 * x**2 + 60 * x - 44) / 6.0
    x = s[m3]
    out[m3] = (4 - x) ** 3 / 6.0
    return out


class SplineBasis:
    """
    Cubic B-spline basis of dimension k on [lower, upper].

    Non-periodic bases place k - 3 equal intervals between the boundary knots
    and clamp evaluation points to the boundary. Periodic bases place k equal
    intervals and wrap evaluation points modulo the period.
    """

    def __init__(self, k: int, lower: float, upper: float, periodic: bool = False):
        if k < 4:
            raise ValueError("Cubic B-spline basis needs k >= 4")
        if not upper > lower:
            raise DataError(
                f"Basis domain must have positive width, got [{lower}, {upper}]"
            )
        self.k = int(k)
        self.lower = float(lower)
        self.upper = float(upper)
        self.periodic = periodic
        n_intervals = self.k if periodic else self.k - 3
        self.step = (self.upper - self.lower) / n_intervals

    def design(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        j = np.arange(self.k)
        if self.periodic:
            u = np.mod((x - self.lower) / self.step, self.k)
            s = np.mod(u[:, None] - j[None, :], self.k)
        else:
            u = (np.clip(x, self.lower, self.upper) - self.lower) / self.step
            s = u[:, None] - j[None, :] + 3.0
        return cardinal_cubic_bspline(s)

    def difference_matrix(self) -> sparse.csr_matrix:
        """Second-order difference operator on the coefficients"""
        k = self.k
        if self.periodic:
            eye = np.eye(k)
            D = eye - 2 * np.roll(eye, 1, axis=1) + np.roll(eye, 2, axis=1)
            return sparse.csr_matrix(D)
        return sparse.diags(
            [1, -2, 1], [0, 1, 2], shape=(k - 2, k), dtype=float
        ).tocsr()

    def penalty(self) -> np.ndarray:
        D = self.difference_matrix()
        return (D.T @ D).toarray()

    def difference_positions(self) -> np.ndarray:
        """Location (in x units) each difference row is centered on"""
        rows = self.difference_matrix().shape[0]
        i = np.arange(rows)
        if self.periodic:
            return self.lower + np.mod(i + 3, self.k) * self.step
        return self.lower + i * self.step


def sum_to_zero_constraint(X: np.ndarray) -> np.ndarray:
    """Null space Z of the constraint 1'X b = 0 (columns orthonormal)"""
    c = np.asarray(X, dtype=float).sum(axis=0).reshape(-1, 1)
    q, _ = np.linalg.qr(c, mode="complete")
    return q[:, 1:]


def _domain(
    term: SmoothTerm, variable: str, x: np.ndarray
) -> Tuple[float, float]:
    if variable in term.knots:
        lower, upper = term.knots[variable]
        return float(lower), float(upper)
    finite = x[np.isfinite(x)]
    if finite.size == 0:
        raise DataError(f"{term.label}: no finite values for '{variable}'")
    return float(finite.min()), float(finite.max())


def _row_mask(
    data: Mapping[str, np.ndarray], by: Optional[str], level
) -> Optional[np.ndarray]:
    if by is None:
        return None
    return np.asarray(data[by]) == level


def _component_label(term: SmoothTerm, level) -> str:
    prefix = "ti" if term.interaction else "s"
    label = f"{prefix}({','.join(term.variables)})"
    if term.by is not None:
        label += f":{term.by}{level}"
    return label


class Intercept:
    label = "(Intercept)"
    variables: Tuple[str, ...] = ()
    by = None
    level = None
    n_coef = 1
    penalties: List[np.ndarray] = []
    fixed_sp: Optional[Tuple[float, ...]] = None

    def design(self, data: Mapping[str, np.ndarray], n_rows: int) -> np.ndarray:
        return np.ones((n_rows, 1))


class FactorEffect:
    """Treatment-coded main effect of a grouping factor (first level = baseline)"""

    penalties: List[np.ndarray] = []
    fixed_sp: Optional[Tuple[float, ...]] = None
    level = None
    by = None

    def __init__(self, variable: str, levels: Sequence):
        self.variable = variable
        self.variables = (variable,)
        self.levels = list(levels)
        self.label = variable
        self.n_coef = len(self.levels) - 1

    def design(self, data: Mapping[str, np.ndarray], n_rows: int) -> np.ndarray:
        values = np.asarray(data[self.variable])
        contrasts = np.array(self.levels[1:], dtype=object)
        return (values[:, None] == contrasts[None, :]).astype(float)


class UnivariateSmooth:
    """Single-variable smooth (periodic, non-periodic or adaptive)"""

    def __init__(
        self,
        term: SmoothTerm,
        data: Mapping[str, np.ndarray],
        level=None,
    ):
        variable, bs, k = term.margins[0]
        self.term = term
        self.variable = variable
        self.variables = (variable,)
        self.by = term.by
        self.level = level
        self.label = _component_label(term, level)
        self.fixed_sp = term.sp

        adaptive = bs == ADAPTIVE_BASIS
        periodic = is_periodic(term.penalty_bs) if adaptive else is_periodic(bs)

        x = np.asarray(data[variable], dtype=float)
        lower, upper = _domain(term, variable, x)
        self.basis = SplineBasis(k, lower, upper, periodic=periodic)

        mask = _row_mask(data, term.by, level)
        x_fit = x if mask is None else x[mask]
        self.Z = sum_to_zero_constraint(self.basis.design(x_fit))
        self.n_coef = self.Z.shape[1]

        if adaptive:
            raw_penalties = self._adaptive_penalties(term, periodic)
        else:
            raw_penalties = [self.basis.penalty()]
        self.penalties = [self.Z.T @ S @ self.Z for S in raw_penalties]

    def _adaptive_penalties(self, term: SmoothTerm, periodic: bool) -> List[np.ndarray]:
        """
        One penalty per penalty-basis function: S_j = D' diag(w_j) D, where
        w_j is the j-th weight basis function evaluated where each difference
        row sits. A separate smoothing parameter per S_j lets the overall
        wiggliness penalty vary along the variable.
        """
        D = self.basis.difference_matrix()
        weight_basis = SplineBasis(
            term.penalty_k, self.basis.lower, self.basis.upper, periodic=periodic
        )
        W = weight_basis.design(self.basis.difference_positions())
        penalties = []
        for j in range(W.shape[1]):
            Dw = sparse.diags(W[:, j]) @ D
            penalties.append((D.T @ Dw).toarray())
        return penalties

    @property
    def domain(self) -> Dict[str, Tuple[float, float]]:
        return {self.variable: (self.basis.lower, self.basis.upper)}

    def design(self, data: Mapping[str, np.ndarray], n_rows: int) -> np.ndarray:
        X = self.basis.design(np.asarray(data[self.variable], dtype=float)) @ self.Z
        mask = _row_mask(data, self.by, self.level)
        if mask is not None:
            X = X * mask[:, None]
        return X

    def grid(self, grid_size: int) -> Dict[str, np.ndarray]:
        values = {
            self.variable: np.linspace(self.basis.lower, self.basis.upper, grid_size)
        }
        if self.by is not None:
            values[self.by] = np.full(grid_size, self.level, dtype=object)
        return values


class TensorInteraction:
    """
    Two-variable interaction excluding the main effects: each margin is
    constrained to sum to zero before the row-wise tensor product is taken,
    and each margin keeps its own penalty (S1 kron I, I kron S2).
    """

    def __init__(
        self,
        term: SmoothTerm,
        data: Mapping[str, np.ndarray],
        level=None,
    ):
        self.term = term
        self.variables = tuple(term.variables)
        self.by = term.by
        self.level = level
        self.label = _component_label(term, level)
        self.fixed_sp = term.sp

        mask = _row_mask(data, term.by, level)
        self.margins: List[SplineBasis] = []
        self.Zs: List[np.ndarray] = []
        margin_penalties = []
        for variable, bs, k in term.margins:
            x = np.asarray(data[variable], dtype=float)
            lower, upper = _domain(term, variable, x)
            basis = SplineBasis(k, lower, upper, periodic=is_periodic(bs))
            x_fit = x if mask is None else x[mask]
            Z = sum_to_zero_constraint(basis.design(x_fit))
            self.margins.append(basis)
            self.Zs.append(Z)
            margin_penalties.append(Z.T @ basis.penalty() @ Z)

        d1, d2 = (Z.shape[1] for Z in self.Zs)
        self.n_coef = d1 * d2
        self.penalties = [
            np.kron(margin_penalties[0], np.eye(d2)),
            np.kron(np.eye(d1), margin_penalties[1]),
        ]

    @property
    def domain(self) -> Dict[str, Tuple[float, float]]:
        return {
            var: (basis.lower, basis.upper)
            for var, basis in zip(self.variables, self.margins)
        }

    def design(self, data: Mapping[str, np.ndarray], n_rows: int) -> np.ndarray:
        X1, X2 = (
            basis.design(np.asarray(data[var], dtype=float)) @ Z
            for var, basis, Z in zip(self.variables, self.margins, self.Zs)
        )
        X = (X1[:, :, None] * X2[:, None, :]).reshape(X1.shape[0], -1)
        mask = _row_mask(data, self.by, self.level)
        if mask is not None:
            X = X * mask[:, None]
        return X

    def grid(self, grid_size: int) -> Dict[str, np.ndarray]:
        axes = [
            np.linspace(basis.lower, basis.upper, grid_size) for basis in self.margins
        ]
        g1, g2 = np.meshgrid(axes[0], axes[1], indexing="ij")
        values = {self.variables[0]: g1.ravel(), self.variables[1]: g2.ravel()}
        if self.by is not None:
            values[self.by] = np.full(g1.size, self.level, dtype=object)
        return values


def factor_levels(values: np.ndarray) -> List:
    """Sorted distinct levels of a grouping factor (missing values excluded)"""
    series = np.asarray(values, dtype=object)
    present = [v for v in series if v is not None and v == v]
    return sorted(set(present), key=lambda v: (str(type(v)), v))


def build_components(
    term: SmoothTerm, data: Mapping[str, np.ndarray]
) -> List:
    """Model matrix components for one term (one per factor level for by-terms)"""
    cls = TensorInteraction if term.interaction else UnivariateSmooth
    if term.by is None:
        return [cls(term, data)]
    return [cls(term, data, level=level) for level in factor_levels(data[term.by])]
