"""
Unit tests for respiratory event detection

Run with: pytest tests/test_respiratory.py -v
"""

import warnings

import pytest
import numpy as np
from hemolib.data_handler import Waveform
from hemolib.errors import DataError, DataWarning
from hemolib.metrics.respiratory import (
    DEFAULT_RESP_RATE_BPM,
    analyze_respiratory_waveform,
    bandpass_respiratory,
    detect_inspiration_starts,
    estimate_respiratory_rate,
)


def breathing(fs=25.0, duration=60.0, rate_hz=0.25, noise=0.0, seed=0):
    """Sinusoidal breathing; troughs (inspiration starts) at 3, 7, 11, ... s"""
    rng = np.random.default_rng(seed)
    t = np.arange(0, duration, 1 / fs)
    resp = np.sin(2 * np.pi * rate_hz * t) + rng.normal(0, noise, len(t))
    return t, resp


class TestBandpass:
    def test_keeps_breathing_band(self):
        t, resp = breathing()
        filtered = bandpass_respiratory(resp + 5.0, 25.0)
        assert abs(np.mean(filtered)) < 0.05
        middle = slice(250, -250)
        assert np.max(np.abs(filtered[middle] - resp[middle])) < 0.15

    def test_too_short(self):
        with pytest.raises(DataError):
            bandpass_respiratory(np.zeros(20), 25.0)

    def test_band_above_nyquist(self):
        with pytest.raises(ValueError):
            bandpass_respiratory(np.zeros(100), 0.15)


class TestDetectInspirationStarts:
    def setup_method(self):
        self.t, self.resp = breathing(noise=0.05)

    def test_trough_spacing(self):
        starts = detect_inspiration_starts(self.t, self.resp)
        assert 13 <= len(starts) <= 16
        assert np.all(np.diff(starts) > 0)
        assert np.median(np.diff(starts)) == pytest.approx(4.0, abs=0.1)
        interior = starts[(starts > 5) & (starts < 55)]
        np.testing.assert_allclose(interior % 4.0, 3.0, atol=0.2)

    def test_invert(self):
        starts = detect_inspiration_starts(self.t, self.resp, invert=True)
        interior = starts[(starts > 5) & (starts < 55)]
        np.testing.assert_allclose(interior % 4.0, 1.0, atol=0.2)

    def test_min_breath_spacing(self):
        starts = detect_inspiration_starts(self.t, self.resp, min_breath_s=3.0)
        assert np.all(np.diff(starts) >= 2.99)

    def test_malformed_waveform(self):
        resp = self.resp.copy()
        resp[10] = np.nan
        with pytest.raises(DataError):
            detect_inspiration_starts(self.t, resp)

    def test_flat_signal_warns(self):
        with pytest.warns(DataWarning):
            starts = detect_inspiration_starts(self.t, np.zeros_like(self.t))
        assert len(starts) == 0


class TestRespiratoryRate:
    def test_spectral_rate(self):
        t, resp = breathing()
        rate = estimate_respiratory_rate(bandpass_respiratory(resp, 25.0), 25.0)
        assert rate == pytest.approx(15.0, abs=2.0)

    def test_default_rate(self):
        with pytest.warns(DataWarning):
            rate = estimate_respiratory_rate(np.zeros(1500), 25.0)
        assert rate == DEFAULT_RESP_RATE_BPM


class TestAnalyzeRespiratoryWaveform:
    def test_detects_events(self):
        t, resp = breathing(noise=0.05)
        results = analyze_respiratory_waveform(Waveform("RESP", t, resp))
        assert results["n_breaths"] == len(results["inspiration_times"]) - 1
        assert results["rate_from_events_bpm"] == pytest.approx(15.0, abs=0.5)
        assert results["respiratory_rate_bpm"] == pytest.approx(15.0, abs=2.0)
        assert results["warnings"] == []

    def test_known_events(self):
        t, resp = breathing()
        insp = np.array([3.0, 7.0])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            results = analyze_respiratory_waveform(Waveform("RESP", t, resp), insp)
        np.testing.assert_array_equal(results["inspiration_times"], insp)
        assert results["n_breaths"] == 1
        assert results["rate_from_events_bpm"] is None
        assert results["warnings"] == ["Fewer than 3 inspiration starts"]
