"""
Unit tests for posterior simulation of derived metrics

Run with: pytest tests/test_uncertainty.py -v
"""

import warnings

import pytest
import numpy as np
import pandas as pd
from hemolib.decomposition import WaveformDecomposition
from hemolib.errors import DataWarning
from hemolib.event_indexer import add_time_since_event
from hemolib.gam.spec_builder import ModelSpecBuilder
from hemolib.uncertainty import (
    MetricSummary,
    percentile_interval,
    sample_metric,
    summarize_metric,
)


def fit_ppv_model(n_beats=400, ppv=0.2, seed=0):
    rng = np.random.default_rng(seed)
    beats = pd.DataFrame({"time": np.arange(n_beats) + 0.25})
    beats = add_time_since_event(beats, np.arange(0.0, n_beats + 10.0, 4.3), "insp")
    rel = beats["insp_rel_index"].to_numpy(dtype=float, na_value=np.nan)
    beats["PP"] = 40.0 * (1 + ppv / 2 * np.sin(2 * np.pi * rel)) + rng.normal(
        0, 0.5, n_beats
    )
    spec = (
        ModelSpecBuilder("PP")
        .cyclic("insp_rel_index", k=10, knots=(0, 1))
        .smooth("time", k=8)
        .build()
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DataWarning)
        return WaveformDecomposition().fit(spec, beats)


class TestPercentileInterval:
    def test_uniform(self):
        samples = np.linspace(0, 100, 10001)
        lower, upper = percentile_interval(samples, 0.9)
        assert lower == pytest.approx(5.0)
        assert upper == pytest.approx(95.0)

    def test_nan_ignored(self):
        samples = np.array([1.0, 2.0, np.nan, 3.0])
        lower, upper = percentile_interval(samples, 0.5)
        assert 1.0 <= lower <= upper <= 3.0

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            percentile_interval(np.arange(10.0), 1.0)
        with pytest.raises(ValueError):
            percentile_interval(np.arange(10.0), 0.0)

    def test_no_finite_samples(self):
        with pytest.raises(ValueError):
            percentile_interval(np.array([np.nan, np.nan]))


class TestSampleMetric:
    def setup_method(self):
        self.model = fit_ppv_model()

    def test_shape_and_reproducibility(self):
        first = sample_metric(self.model, "s(insp_rel_index)", n_draws=200, seed=11)
        second = sample_metric(self.model, "s(insp_rel_index)", n_draws=200, seed=11)
        assert first.shape == (200,)
        assert np.all(first >= 0)
        np.testing.assert_array_equal(first, second)

    def test_different_seeds_differ(self):
        first = sample_metric(self.model, "s(insp_rel_index)", n_draws=50, seed=1)
        second = sample_metric(self.model, "s(insp_rel_index)", n_draws=50, seed=2)
        assert not np.array_equal(first, second)

    def test_custom_reduction(self):
        samples = sample_metric(
            self.model,
            "s(insp_rel_index)",
            n_draws=100,
            reduction_fn=lambda values, intercept: float(np.max(values)),
            seed=0,
        )
        # amplitude of the modulation is 40 * 0.1
        assert np.median(samples) == pytest.approx(4.0, abs=0.5)

    def test_resample_intercept(self):
        samples = sample_metric(
            self.model,
            "s(insp_rel_index)",
            n_draws=300,
            resample_intercept=True,
            seed=5,
        )
        assert np.median(samples) == pytest.approx(0.2, abs=0.03)

    def test_unknown_term(self):
        with pytest.raises(KeyError):
            sample_metric(self.model, "s(qrs_rel_index)", n_draws=10)


class TestSummarizeMetric:
    def setup_method(self):
        self.model = fit_ppv_model()

    def test_interval_contains_estimate(self):
        summary = summarize_metric(
            self.model, "s(insp_rel_index)", n_draws=2000, level=0.95, seed=3
        )
        assert isinstance(summary, MetricSummary)
        assert summary.term == "s(insp_rel_index)"
        assert summary.estimate == pytest.approx(0.2, abs=0.03)
        assert summary.lower < summary.estimate < summary.upper
        assert summary.upper - summary.lower < 0.1
        assert len(summary.samples) == 2000

    def test_narrower_level(self):
        wide = summarize_metric(self.model, "s(insp_rel_index)", n_draws=1000, seed=4)
        narrow = summarize_metric(
            self.model, "s(insp_rel_index)", n_draws=1000, level=0.5, seed=4
        )
        assert narrow.upper - narrow.lower < wide.upper - wide.lower

    def test_to_dict(self):
        summary = summarize_metric(self.model, "s(insp_rel_index)", n_draws=100, seed=0)
        result = summary.to_dict()
        assert set(result) == {
            "term",
            "estimate",
            "lower",
            "upper",
            "level",
            "n_draws",
            "sample_sd",
        }
        assert result["sample_sd"] > 0
