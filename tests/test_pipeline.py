"""
Integration tests for the PPV pipeline

Runs beat detection, respiratory indexing, the additive PPV model and the
optional waveform decomposition end to end on synthetic recordings.

Run with: pytest tests/test_pipeline.py -v
"""

import warnings

import pytest
import numpy as np
from hemolib.data_handler import SourceInfo, Waveform, WaveformBundle
from hemolib.errors import FitWarning
from hemolib.pipeline import PPVAnalysisResults, PPVPipeline, create_ppv_pipeline

BREATH_S = 4.3


def synthetic_abp(duration=120.0, fs=100.0, ppv=0.2, noise=0.2, seed=42):
    """
    1 Hz arterial pressure, diastole 80 mmHg, with pulse pressure
    40 * (1 + ppv / 2 * sin(2 pi rel)) over respiratory cycles of BREATH_S
    """
    rng = np.random.default_rng(seed)
    t = np.arange(0, duration, 1 / fs)
    rel = (t % BREATH_S) / BREATH_S
    pp = 40.0 * (1 + ppv / 2 * np.sin(2 * np.pi * rel))
    p = 80.0 + pp * (1 - np.cos(2 * np.pi * (t - 0.25))) / 2
    return t, p + rng.normal(0, noise, len(t))


def make_bundle(duration=120.0, with_insp=True, with_resp=False):
    t, p = synthetic_abp(duration)
    bundle = WaveformBundle(
        abp=[Waveform("ABP", t, p, units="mmHg")],
        source=SourceInfo(path="synthetic", filetype=".test"),
    )
    if with_insp:
        bundle.insp_times = np.arange(0.0, duration + 5.0, BREATH_S).tolist()
    if with_resp:
        t_resp = np.arange(0, duration, 1 / 25.0)
        # troughs at every multiple of BREATH_S
        bundle.resp = [Waveform("RESP", t_resp, -np.cos(2 * np.pi * t_resp / BREATH_S))]
    return bundle


class TestPPVPipeline:
    def setup_method(self):
        self.config = {"ppv_model": {"n_draws": 300, "seed": 1}}

    def run(self, bundle, config=None):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return create_ppv_pipeline(bundle, config or self.config).run_all()

    def test_model_ppv(self):
        results = self.run(make_bundle())

        assert isinstance(results, PPVAnalysisResults)
        assert results.warnings == []
        ppv = results.ppv_model
        assert ppv["ppv"] == pytest.approx(0.2, abs=0.04)
        assert ppv["ppv_lower"] < ppv["ppv"] < ppv["ppv_upper"]
        assert ppv["level"] == 0.95
        assert ppv["n_draws"] == 300
        assert ppv["intercept"] == pytest.approx(40.0, abs=1.5)

    def test_classic_ppv(self):
        results = self.run(make_bundle())
        classic = results.classic_ppv
        assert 0.1 < classic["ppv_median"] < 0.25
        assert classic["n_cycles"] >= 25

    def test_indexed_beats(self):
        results = self.run(make_bundle())
        beats = results.beats
        assert len(beats) >= 115
        for col in ("insp_index", "insp_n", "insp_cycle_len", "insp_rel_index"):
            assert col in beats.columns
        rel = beats["insp_rel_index"].dropna()
        assert rel.min() >= 0 and rel.max() < 1

    def test_quality_and_info(self):
        results = self.run(make_bundle())
        assert results.quality_assessment["overall_quality"] == "good"
        assert "ppv_difference" in results.quality_assessment
        info = results.analysis_info
        assert info["n_breaths"] == len(np.arange(0.0, 125.0, BREATH_S)) - 1
        assert info["modules_enabled"]["waveform_decomposition"] is False

    def test_inspiration_from_resp_channel(self):
        results = self.run(make_bundle(with_insp=False, with_resp=True))
        assert results.respiratory["source"] == "RESP_CHANNEL"
        assert results.respiratory["respiratory_rate_bpm"] == pytest.approx(
            60 / BREATH_S, abs=2.0
        )
        assert results.ppv_model["ppv"] == pytest.approx(0.2, abs=0.05)

    def test_analysis_window(self):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            results = create_ppv_pipeline(make_bundle(), self.config).run_all(
                analysis_window=(0.0, 60.0)
            )
        assert len(results.beats) <= 60
        assert results.analysis_info["analysis_window"] == (0.0, 60.0)

    def test_disabled_model(self):
        config = {"ppv_model": {"enabled": False}}
        results = self.run(make_bundle(), config)
        assert results.ppv_model is None
        assert results.classic_ppv is not None

    def test_missing_inspiration_times(self):
        results = self.run(make_bundle(with_insp=False))
        assert results.ppv_model is None
        assert any("inspiration" in w for w in results.warnings)

    def test_missing_abp(self):
        bundle = make_bundle()
        bundle.abp = []
        results = self.run(bundle)
        assert results.beats is None
        assert any("Pipeline execution failed" in w for w in results.warnings)

    def test_to_dict_drops_private_entries(self):
        results = self.run(make_bundle())
        exported = results.to_dict()
        assert "_model" not in exported["ppv_model"]
        assert "ppv" in exported["ppv_model"]
        assert isinstance(exported["beats"]["PP"], list)

    def test_config_merge(self):
        pipeline = PPVPipeline(make_bundle(), {"ppv_model": {"k_insp": 8}})
        config = pipeline.analysis_config
        assert config["ppv_model"]["k_insp"] == 8
        assert config["ppv_model"]["k_time"] == 10
        assert config["fitting"]["large_data_threshold"] == 20000


class TestWaveformDecomposition:
    """CVP = 8 + 2 sin(cardiac phase) + sin(respiratory phase) + noise"""

    def setup_method(self):
        rng = np.random.default_rng(3)
        t = np.arange(0, 30, 1 / 50.0)
        cvp = (
            8.0
            + 2.0 * np.sin(2 * np.pi * (t % 0.9) / 0.9)
            + 1.0 * np.sin(2 * np.pi * (t % 4.0) / 4.0)
            + rng.normal(0, 0.3, len(t))
        )
        t_abp, p = synthetic_abp(duration=30.0)
        self.bundle = WaveformBundle(
            abp=[Waveform("ABP", t_abp, p)],
            cvp=[Waveform("CVP", t, cvp, units="mmHg")],
            qrs_times=np.arange(0.0, 31.0, 0.9).tolist(),
            insp_times=np.arange(0.0, 33.0, 4.0).tolist(),
        )
        self.config = {
            "ppv_model": {"enabled": False},
            "waveform_decomposition": {
                "enabled": True,
                "k_cardiac": 10,
                "k_insp": 8,
                "k_interaction": (4, 4),
                "k_time": 5,
            },
        }

    def test_component_amplitudes(self):
        pipeline = create_ppv_pipeline(self.bundle, self.config)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            decomposition = pipeline.run_waveform_decomposition()

        amplitudes = decomposition["amplitudes"]
        assert set(amplitudes) == {
            "s(qrs_rel_index)",
            "s(insp_rel_index)",
            "ti(qrs_rel_index,insp_rel_index)",
            "s(time)",
        }
        assert amplitudes["s(qrs_rel_index)"] == pytest.approx(4.0, abs=0.5)
        assert amplitudes["s(insp_rel_index)"] == pytest.approx(2.0, abs=0.5)
        assert decomposition["channel"] == "CVP"
        assert decomposition["intercept"] == pytest.approx(8.0, abs=0.3)
        assert -1 < decomposition["rho"] < 1

    def test_fixed_rho(self):
        self.config["waveform_decomposition"]["rho"] = 0.2
        pipeline = create_ppv_pipeline(self.bundle, self.config)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            decomposition = pipeline.run_waveform_decomposition()
        assert decomposition["rho"] == 0.2
        assert decomposition["residual_diagnostics"]["rho"] == 0.2

    def test_requires_qrs_times(self):
        self.bundle.qrs_times = []
        pipeline = create_ppv_pipeline(self.bundle, self.config)
        with pytest.raises(ValueError):
            pipeline.run_waveform_decomposition()

    def test_failure_reported_by_run_all(self):
        self.bundle.cvp = []
        with pytest.warns(FitWarning, match="Waveform decomposition failed"):
            results = create_ppv_pipeline(self.bundle, self.config).run_all()
        assert results.decomposition is None
        assert any("Waveform decomposition failed" in w for w in results.warnings)
