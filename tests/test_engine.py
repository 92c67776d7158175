"""
Unit tests for the penalized spline bases and the REML engine

Run with: pytest tests/test_engine.py -v
"""

import warnings

import pytest
import numpy as np
from hemolib.errors import PredictionError
from hemolib.gam.bases import (
    SplineBasis,
    TensorInteraction,
    UnivariateSmooth,
    build_components,
    factor_levels,
    sum_to_zero_constraint,
)
from hemolib.gam.engine import (
    EngineCall,
    FitControl,
    PenalizedSplineEngine,
    ar1_whiten,
)
from hemolib.gam.spec_builder import ModelSpecBuilder


def cyclic_data(n=600, noise=0.3, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(0, 1, n)
    t = np.sort(rng.uniform(0, 100, n))
    y = 10.0 + 2.0 * np.sin(2 * np.pi * x) + 0.01 * t + rng.normal(0, noise, n)
    return {"y": y, "x": x, "t": t}


def fit(spec, data, method="REML", rho=0.0, ar_start=None, control=None):
    call = EngineCall(
        response=spec.response,
        terms=spec.terms,
        method=method,
        rho=rho,
        ar_start=ar_start,
        control=control or FitControl(),
    )
    return PenalizedSplineEngine().fit(call, data)


class TestBases:
    def test_partition_of_unity(self):
        basis = SplineBasis(10, 0.0, 5.0)
        X = basis.design(np.linspace(0, 5, 101))
        np.testing.assert_allclose(X.sum(axis=1), 1.0, atol=1e-12)

    def test_outside_domain_is_clamped(self):
        basis = SplineBasis(8, 0.0, 1.0)
        np.testing.assert_allclose(basis.design([1.5]), basis.design([1.0]))

    def test_periodic_wraps(self):
        basis = SplineBasis(10, 0.0, 1.0, periodic=True)
        X = basis.design(np.array([0.0, 1.0, 0.3, 1.3]))
        np.testing.assert_allclose(X[0], X[1], atol=1e-12)
        np.testing.assert_allclose(X[2], X[3], atol=1e-12)
        np.testing.assert_allclose(X.sum(axis=1), 1.0, atol=1e-12)

    def test_penalty_null_space(self):
        basis = SplineBasis(10, 0.0, 1.0)
        S = basis.penalty()
        assert S.shape == (10, 10)
        # constant and linear coefficient sequences are unpenalized
        np.testing.assert_allclose(S @ np.ones(10), 0.0, atol=1e-12)
        np.testing.assert_allclose(S @ np.arange(10.0), 0.0, atol=1e-12)

    def test_difference_matrix_is_float(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", FutureWarning)
            D = SplineBasis(10, 0.0, 1.0).difference_matrix()
        assert D.dtype == np.float64
        assert D.shape == (8, 10)

    def test_periodic_penalty_is_circulant(self):
        S = SplineBasis(8, 0.0, 1.0, periodic=True).penalty()
        np.testing.assert_allclose(S, np.roll(np.roll(S, 1, axis=0), 1, axis=1))

    def test_sum_to_zero_constraint(self):
        X = SplineBasis(10, 0.0, 1.0).design(np.linspace(0, 1, 50))
        Z = sum_to_zero_constraint(X)
        assert Z.shape == (10, 9)
        np.testing.assert_allclose((X @ Z).sum(axis=0), 0.0, atol=1e-10)

    def test_adaptive_penalties(self):
        spec = ModelSpecBuilder("y").adaptive("x", penalty_bs="ps", k=20, m=5).build()
        component = UnivariateSmooth(spec.terms[0], {"x": np.linspace(0, 1, 200)})
        assert len(component.penalties) == 5
        assert all(S.shape == (19, 19) for S in component.penalties)

    def test_tensor_interaction(self):
        spec = (
            ModelSpecBuilder("y")
            .tensor("a", "b", bs=("cc", "cr"), k=(5, 6), knots={"a": (0, 1)})
            .build()
        )
        rng = np.random.default_rng(1)
        data = {"a": rng.uniform(0, 1, 300), "b": rng.uniform(0, 2, 300)}
        component = TensorInteraction(spec.terms[0], data)
        assert component.n_coef == 4 * 5
        assert len(component.penalties) == 2
        assert component.design(data, 300).shape == (300, 20)
        grid = component.grid(7)
        assert len(grid["a"]) == 49
        assert component.domain["a"] == (0.0, 1.0)

    def test_by_factor_components(self):
        spec = ModelSpecBuilder("y").smooth("x", by="g").build()
        data = {
            "x": np.linspace(0, 1, 40),
            "g": np.array(["b", "a"] * 20, dtype=object),
        }
        components = build_components(spec.terms[0], data)
        assert [c.label for c in components] == ["s(x):ga", "s(x):gb"]
        X = components[0].design(data, 40)
        assert np.all(X[data["g"] == "b"] == 0)

    def test_factor_levels_skip_missing(self):
        assert factor_levels(np.array(["b", None, "a", "b"], dtype=object)) == ["a", "b"]


class TestWhitening:
    def test_segment_starts_unchanged(self):
        values = np.arange(6, dtype=float)
        starts = np.array([True, False, False, True, False, False])
        out = ar1_whiten(values, 0.5, starts)
        assert out[0] == 0.0
        assert out[3] == 3.0
        scale = 1 / np.sqrt(1 - 0.25)
        assert out[1] == pytest.approx((1 - 0.5 * 0) * scale)
        assert out[4] == pytest.approx((4 - 0.5 * 3) * scale)

    def test_zero_rho_is_identity(self):
        values = np.random.default_rng(0).normal(size=(10, 3))
        np.testing.assert_array_equal(ar1_whiten(values, 0.0), values)


class TestPenalizedSplineEngine:
    def setup_method(self):
        self.data = cyclic_data()
        self.spec = (
            ModelSpecBuilder("y")
            .cyclic("x", k=10, knots=(0, 1))
            .smooth("t", k=8)
            .build()
        )

    def test_recovers_components(self):
        model = fit(self.spec, self.data)
        # smooths sum to zero over the data, so their data means sit in the intercept
        expected = (
            10.0
            + 2.0 * np.mean(np.sin(2 * np.pi * self.data["x"]))
            + 0.01 * np.mean(self.data["t"])
        )
        assert model.intercept == pytest.approx(expected, abs=0.05)

        grid = {"x": np.linspace(0, 1, 101)}
        values, se = model.evaluate_component("s(x)", grid)
        truth = 2.0 * np.sin(2 * np.pi * grid["x"])
        centered = values - values.mean()
        assert np.max(np.abs(centered - (truth - truth.mean()))) < 0.3
        assert np.all(se > 0)
        assert np.sqrt(model.scale) == pytest.approx(0.3, rel=0.15)

    def test_summary(self):
        model = fit(self.spec, self.data)
        summary = model.summary()
        assert summary["n_obs"] == 600
        assert summary["method"] == "REML"
        assert 2 < summary["edf"] < 19
        assert set(summary["smoothing_parameters"]) == {"s(x)", "s(t)"}
        assert model.term_labels == ["s(x)", "s(t)"]

    def test_fitted_plus_residuals(self):
        model = fit(self.spec, self.data)
        np.testing.assert_allclose(model.fitted + model.residuals, self.data["y"])
        np.testing.assert_allclose(model.std_residuals, model.residuals)

    def test_chunked_fit_matches_direct_fit(self):
        direct = fit(self.spec, self.data)
        chunked = fit(
            self.spec,
            self.data,
            method="fREML",
            control=FitControl(chunk_size=137, n_threads=2),
        )
        np.testing.assert_allclose(
            chunked.coefficients, direct.coefficients, atol=1e-2
        )

    def test_chunked_ar1_fit_matches_direct_fit(self):
        starts = np.zeros(600, dtype=bool)
        starts[[0, 250, 251, 400]] = True
        direct = fit(self.spec, self.data, rho=0.4, ar_start=starts)
        chunked = fit(
            self.spec,
            self.data,
            method="fREML",
            rho=0.4,
            ar_start=starts,
            control=FitControl(chunk_size=100),
        )
        np.testing.assert_allclose(
            chunked.coefficients, direct.coefficients, atol=1e-2
        )
        assert direct.std_residuals[250] == direct.residuals[250]

    def test_fixed_smoothing_parameter(self):
        spec = (
            ModelSpecBuilder("y")
            .cyclic("x", k=10, knots=(0, 1), sp=1e4)
            .smooth("t", k=8)
            .build()
        )
        model = fit(spec, self.data)
        assert model.sp["s(x)"] == (1e4,)
        values, _ = model.evaluate_component("s(x)", {"x": np.linspace(0, 1, 50)})
        # heavy penalty shrinks the periodic term towards zero
        assert np.ptp(values) < 2.0

    def test_predict_with_se_and_exclusion(self):
        model = fit(self.spec, self.data)
        newdata = {"x": np.array([0.25, 0.75]), "t": np.array([50.0, 50.0])}
        values, se = model.predict(newdata, se_fit=True)
        assert values[0] - values[1] == pytest.approx(4.0, abs=0.4)
        assert np.all(se > 0)

        without_x = model.predict(newdata, exclude=["s(x)"])
        assert without_x[0] == pytest.approx(without_x[1])

    def test_predict_missing_covariate(self):
        model = fit(self.spec, self.data)
        with pytest.raises(PredictionError, match="missing covariate"):
            model.predict({"x": np.array([0.5])})

    def test_predict_nan_row(self):
        model = fit(self.spec, self.data)
        values = model.predict({"x": np.array([0.5, np.nan]), "t": np.array([1.0, 1.0])})
        assert np.isfinite(values[0])
        assert np.isnan(values[1])

    def test_posterior_draws(self):
        model = fit(self.spec, self.data)
        grid = model.term_grid("s(x)", 25)
        draws, intercepts = model.sample_component(
            "s(x)", grid, 200, rng=np.random.default_rng(0)
        )
        assert draws.shape == (200, 25)
        assert intercepts is None
        mean_draw = draws.mean(axis=0)
        values, _ = model.evaluate_component("s(x)", grid)
        np.testing.assert_allclose(mean_draw, values, atol=0.15)

        _, intercepts = model.sample_component(
            "s(x)", grid, 50, include_intercept=True, rng=np.random.default_rng(1)
        )
        assert intercepts.shape == (50,)

    def test_unknown_term(self):
        model = fit(self.spec, self.data)
        with pytest.raises(KeyError):
            model.term_grid("s(z)")


class TestFactorSmooths:
    def setup_method(self):
        rng = np.random.default_rng(4)
        n = 800
        g = np.where(rng.uniform(size=n) < 0.5, "low", "high").astype(object)
        x = rng.uniform(0, 1, n)
        y = np.where(g == "high", 5.0, 0.0) + np.where(
            g == "high", np.sin(2 * np.pi * x), np.cos(2 * np.pi * x)
        )
        self.data = {"y": y + rng.normal(0, 0.2, n), "x": x, "g": g}
        self.spec = ModelSpecBuilder("y").cyclic("x", knots=(0, 1), by="g").build()

    def test_levels_and_main_effect(self):
        model = fit(self.spec, self.data)
        assert model.term_labels == ["s(x):ghigh", "s(x):glow"]
        # treatment coding with "high" as the baseline level
        assert model.intercept == pytest.approx(5.0, abs=0.1)
        assert model.coef("g")[0] == pytest.approx(-5.0, abs=0.15)

    def test_unseen_level(self):
        model = fit(self.spec, self.data)
        newdata = {"x": np.array([0.1]), "g": np.array(["medium"], dtype=object)}
        with pytest.raises(PredictionError):
            model.predict(newdata)
