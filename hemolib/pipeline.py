"""
PPV Analysis Pipeline
Integrates beat detection → respiratory indexing → additive decomposition →
posterior PPV interval, alongside the classic per-breath PPV
"""

import copy
import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from hemolib.beat_detection import BeatDetectionConfig, run_beat_detection
from hemolib.data_handler import Waveform, WaveformBundle
from hemolib.decomposition import DecompositionConfig, WaveformDecomposition
from hemolib.errors import FitWarning
from hemolib.event_indexer import add_time_since_event
from hemolib.gam.engine import FitControl
from hemolib.gam.spec_builder import AdditiveModelSpec, ModelSpecBuilder
from hemolib.metrics.pulse_pressure import PulsePressureAnalysis
from hemolib.metrics.respiratory import analyze_respiratory_waveform
from hemolib.uncertainty import summarize_metric

PPV_TERM = "s(insp_rel_index)"


@dataclass
class PPVAnalysisResults:
    """
    Complete results of the PPV pipeline
    """

    beats: Optional[pd.DataFrame] = None
    beat_stats: Optional[Dict] = None
    respiratory: Optional[Dict] = None

    # Model based and classic pulse pressure variation
    ppv_model: Optional[Dict] = None
    classic_ppv: Optional[Dict] = None

    # Optional full waveform decomposition (CVP/ABP)
    decomposition: Optional[Dict] = None

    quality_assessment: Optional[Dict] = None
    analysis_info: Dict = None
    warnings: List[str] = None

    def __post_init__(self):
        if self.warnings is None:
            self.warnings = []
        if self.analysis_info is None:
            self.analysis_info = {}

    def to_dict(self) -> Dict:
        """
        Convert results to plain dictionaries for display/export

        Returns:
            Dictionary containing all analysis results; private entries
            (fitted model objects) are left out
        """

        def public(section: Optional[Dict]) -> Optional[Dict]:
            if section is None:
                return None
            return {k: v for k, v in section.items() if not k.startswith("_")}

        return {
            "beats": self.beats.to_dict(orient="list")
            if self.beats is not None
            else None,
            "beat_stats": self.beat_stats,
            "respiratory": public(self.respiratory),
            "ppv_model": public(self.ppv_model),
            "classic_ppv": self.classic_ppv,
            "decomposition": public(self.decomposition),
            "quality_assessment": self.quality_assessment,
            "analysis_info": self.analysis_info,
            "warnings": self.warnings or [],
        }


class PPVPipeline:
    """
    Pulse pressure variation pipeline over a WaveformBundle.

    Needs an ABP channel and either inspiration times or a respiratory
    channel to detect them from. QRS times are only needed for the full
    waveform decomposition.
    """

    def __init__(
        self,
        bundle: WaveformBundle,
        analysis_config: Optional[Dict] = None,
    ):
        """
        Args:
            bundle: WaveformBundle with ABP (and RESP/CVP) channels
            analysis_config: Per-module settings merged over the defaults
        """
        self.bundle = bundle
        self.analysis_config = self._merge_config(analysis_config or {})
        self.decomposition = WaveformDecomposition(
            config=DecompositionConfig(
                large_data_threshold=self.analysis_config["fitting"][
                    "large_data_threshold"
                ],
                grid_size=self.analysis_config["ppv_model"]["grid_size"],
                control=FitControl(
                    n_threads=self.analysis_config["fitting"]["n_threads"],
                    tol=self.analysis_config["fitting"]["tol"],
                    max_iter=self.analysis_config["fitting"]["max_iter"],
                ),
            )
        )

    def _get_default_analysis_config(self) -> Dict:
        """Get default configuration for all analysis modules"""
        return {
            "beat_detection": {
                "window_s": 0.4,
                "min_hr": 20.0,
                "max_hr": 250.0,
                "min_pulse_pressure": 0.0,
            },
            "respiratory": {
                "enabled": True,
                "min_breath_s": 1.5,
                "invert": False,
            },
            "ppv_model": {
                "enabled": True,
                "k_insp": 10,
                "k_time": 10,
                "n_draws": 1000,
                "level": 0.95,
                "grid_size": 100,
                "seed": None,
            },
            "classic_ppv": {
                "enabled": True,
            },
            "waveform_decomposition": {
                "enabled": False,
                "channel": "cvp",
                "k_cardiac": 20,
                "k_insp": 10,
                "k_interaction": (5, 5),
                "k_time": 10,
                "rho": None,  # None estimates it from an uncorrelated fit
                "method": "auto",
            },
            "fitting": {
                "n_threads": 1,
                "tol": 1e-8,
                "max_iter": 200,
                "large_data_threshold": 20000,
            },
        }

    def _merge_config(self, overrides: Dict) -> Dict:
        config = copy.deepcopy(self._get_default_analysis_config())
        for section, values in overrides.items():
            if section in config and isinstance(values, dict):
                config[section].update(values)
            else:
                config[section] = values
        return config

    def _abp_waveform(self, analysis_window: Optional[Tuple[float, float]]) -> Waveform:
        if not self.bundle.abp:
            raise ValueError("No ABP channel available for beat detection")
        return self._apply_analysis_window(self.bundle.abp[0], analysis_window)

    @staticmethod
    def _apply_analysis_window(
        waveform: Waveform, analysis_window: Optional[Tuple[float, float]]
    ) -> Waveform:
        if analysis_window is None:
            return waveform
        start_time, end_time = analysis_window
        mask = (waveform.time >= start_time) & (waveform.time <= end_time)
        if not np.any(mask):
            raise ValueError(
                f"No data found in analysis window [{start_time}, {end_time}]"
            )
        return Waveform(
            name=waveform.name,
            time=waveform.time[mask],
            values=waveform.values[mask],
            units=waveform.units,
        )

    def run_respiratory_analysis(self) -> Optional[Dict]:
        """Inspiration starts from the bundle, detected from RESP if absent"""
        config = self.analysis_config["respiratory"]
        if self.bundle.insp_times:
            insp = np.asarray(self.bundle.insp_times, dtype=float)
            results = {
                "inspiration_times": insp,
                "source": "events",
                "n_breaths": int(max(len(insp) - 1, 0)),
                "warnings": [],
            }
            if self.bundle.resp and config.get("enabled", True):
                try:
                    resp = analyze_respiratory_waveform(
                        self.bundle.resp[0], insp_times=insp
                    )
                    results["respiratory_rate_bpm"] = resp["respiratory_rate_bpm"]
                    results["rate_from_events_bpm"] = resp["rate_from_events_bpm"]
                    results["warnings"].extend(resp["warnings"])
                except ValueError as e:
                    results["warnings"].append(f"Respiratory rate unavailable: {e}")
            return results

        if not self.bundle.resp or not config.get("enabled", True):
            return None

        results = analyze_respiratory_waveform(
            self.bundle.resp[0],
            min_breath_s=config.get("min_breath_s", 1.5),
            invert=config.get("invert", False),
        )
        results["source"] = "RESP_CHANNEL"
        self.bundle.meta["respiratory_metrics"] = results
        return results

    def ppv_spec(self, beats: pd.DataFrame) -> AdditiveModelSpec:
        """PP ~ s(insp_rel_index, cyclic on [0, 1]) + s(time)"""
        config = self.analysis_config["ppv_model"]
        return (
            ModelSpecBuilder("PP")
            .cyclic("insp_rel_index", k=config["k_insp"], knots=(0.0, 1.0))
            .smooth("time", k=config["k_time"])
            .build(columns=beats.columns)
        )

    def run_ppv_model(self, indexed_beats: pd.DataFrame) -> Optional[Dict]:
        """Model based PPV with its posterior percentile interval"""
        config = self.analysis_config["ppv_model"]
        if not config.get("enabled", True):
            return None

        spec = self.ppv_spec(indexed_beats)
        model = self.decomposition.fit(spec, indexed_beats)
        summary = summarize_metric(
            model,
            PPV_TERM,
            n_draws=config["n_draws"],
            level=config["level"],
            grid_size=config["grid_size"],
            seed=config.get("seed"),
        )
        return {
            "ppv": summary.estimate,
            "ppv_lower": summary.lower,
            "ppv_upper": summary.upper,
            "level": summary.level,
            "n_draws": summary.n_draws,
            "intercept": model.intercept,
            "intercept_se": model.intercept_se,
            "model_summary": model.summary(),
            "_model": model,
        }

    def run_classic_ppv(
        self, beats: pd.DataFrame, insp_times: np.ndarray
    ) -> Optional[Dict]:
        if not self.analysis_config["classic_ppv"].get("enabled", True):
            return None
        analyzer = PulsePressureAnalysis(beats, insp_times=insp_times)
        return analyzer.classic_ppv()

    def decomposition_spec(
        self, data: pd.DataFrame, rho: float = 0.0
    ) -> AdditiveModelSpec:
        """
        value ~ s(qrs_rel_index) + s(insp_rel_index) + ti(qrs, insp) + s(time)
        with AR(1) residuals restarting at ``ar_start`` rows
        """
        config = self.analysis_config["waveform_decomposition"]
        builder = (
            ModelSpecBuilder("value")
            .cyclic("qrs_rel_index", k=config["k_cardiac"], knots=(0.0, 1.0))
            .cyclic("insp_rel_index", k=config["k_insp"], knots=(0.0, 1.0))
            .tensor(
                "qrs_rel_index",
                "insp_rel_index",
                bs=("cc", "cc"),
                k=tuple(config["k_interaction"]),
                knots={"qrs_rel_index": (0.0, 1.0), "insp_rel_index": (0.0, 1.0)},
            )
            .smooth("time", k=config["k_time"])
            .fitting_method(config["method"])
        )
        builder.ar1(rho, start_column="ar_start")
        return builder.build(columns=data.columns)

    def run_waveform_decomposition(
        self,
        analysis_window: Optional[Tuple[float, float]] = None,
        insp_times: Optional[np.ndarray] = None,
    ) -> Optional[Dict]:
        """
        Decompose a sampled pressure waveform into cardiac, respiratory,
        interaction and trend components.

        Returns:
            Dictionary with per-component amplitudes (max - min over the
            component grid), the AR(1) coefficient, residual diagnostics and
            the fitted model under the private ``_model`` key
        """
        config = self.analysis_config["waveform_decomposition"]
        if not config.get("enabled", False):
            return None

        channel = getattr(self.bundle, config["channel"], None)
        if not channel:
            raise ValueError(f"No {config['channel'].upper()} channel to decompose")
        if not self.bundle.qrs_times:
            raise ValueError("QRS times are required for cardiac cycle indexing")
        if insp_times is None:
            insp_times = np.asarray(self.bundle.insp_times, dtype=float)
        if len(insp_times) == 0:
            raise ValueError("Inspiration times are required for the decomposition")

        waveform = self._apply_analysis_window(channel[0], analysis_window)
        data = waveform.to_frame("value")
        data = add_time_since_event(data, self.bundle.qrs_times, "qrs")
        data = add_time_since_event(data, insp_times, "insp")

        # recording gaps restart the residual process
        dt = np.diff(waveform.time)
        if len(dt) == 0:
            raise ValueError(f"{waveform.name} waveform has fewer than 2 samples")
        data["ar_start"] = np.concatenate([[True], dt > 1.5 * np.median(dt)])

        rho = config.get("rho")
        if rho is None:
            rho = self.decomposition.suggest_rho(self.decomposition_spec(data), data)
        spec = self.decomposition_spec(data, rho=rho)
        model = self.decomposition.fit(spec, data)

        amplitudes = {}
        for label in model.term_labels:
            table = self.decomposition.evaluate_term(model, label)
            amplitudes[label] = float(table["estimate"].max() - table["estimate"].min())

        return {
            "channel": config["channel"].upper(),
            "rho": float(rho),
            "intercept": model.intercept,
            "amplitudes": amplitudes,
            "residual_diagnostics": self.decomposition.residual_diagnostics(
                model, max_lag=10
            ),
            "model_summary": model.summary(),
            "_model": model,
        }

    def run_all(
        self, analysis_window: Optional[Tuple[float, float]] = None
    ) -> PPVAnalysisResults:
        """
        Run the complete PPV pipeline

        Args:
            analysis_window: Optional time window for analysis (start_s, end_s)

        Returns:
            PPVAnalysisResults with all computed metrics
        """
        results = PPVAnalysisResults()

        try:
            # Step 1: beats from the arterial pressure waveform
            abp = self._abp_waveform(analysis_window)
            detection = run_beat_detection(
                abp.time,
                abp.values,
                BeatDetectionConfig(**self.analysis_config["beat_detection"]),
            )
            results.beats = detection.beats
            results.beat_stats = detection.stats

            # Step 2: respiratory events
            results.respiratory = self.run_respiratory_analysis()
            if results.respiratory is None or not len(
                results.respiratory["inspiration_times"]
            ):
                raise ValueError("No inspiration times available for PPV")
            insp_times = results.respiratory["inspiration_times"]

            # Step 3: index beats within respiratory cycles
            indexed = add_time_since_event(detection.beats, insp_times, "insp")
            results.beats = indexed

            # Step 4: model based and classic PPV
            try:
                results.ppv_model = self.run_ppv_model(indexed)
            except Exception as e:
                results.warnings.append(f"PPV model failed: {e}")
                warnings.warn(f"PPV model failed: {e}", FitWarning)

            try:
                results.classic_ppv = self.run_classic_ppv(indexed, insp_times)
            except Exception as e:
                results.warnings.append(f"Classic PPV failed: {e}")

            # Step 5: optional full waveform decomposition
            try:
                results.decomposition = self.run_waveform_decomposition(
                    analysis_window, insp_times
                )
            except Exception as e:
                results.warnings.append(f"Waveform decomposition failed: {e}")
                warnings.warn(f"Waveform decomposition failed: {e}", FitWarning)

            results.quality_assessment = self._assess_overall_quality(results)
            results.analysis_info = {
                "n_beats": int(len(detection.beats)),
                "n_breaths": results.respiratory.get("n_breaths"),
                "analysis_duration_s": abp.duration,
                "analysis_window": analysis_window,
                "modules_enabled": {
                    module: config.get("enabled", True)
                    for module, config in self.analysis_config.items()
                    if isinstance(config, dict) and "enabled" in config
                },
            }

        except Exception as e:
            results.warnings.append(f"Pipeline execution failed: {e}")

        return results

    def _assess_overall_quality(self, results: PPVAnalysisResults) -> Dict:
        """Assess overall data quality"""
        assessment = {
            "overall_quality": "good",
            "n_beats": int(len(results.beats)) if results.beats is not None else 0,
            "recommendations": [],
        }

        stats = results.beat_stats or {}
        if stats.get("detection_gaps", 0) > 0:
            assessment["overall_quality"] = "fair"
            assessment["recommendations"].append(
                f"{stats['detection_gaps']} beat detection gap(s)"
            )
        rejected = stats.get("rejected_cycle_length", 0) + stats.get(
            "rejected_pulse_pressure", 0
        )
        if rejected > 0.05 * max(stats.get("paired_beats", 0), 1):
            assessment["overall_quality"] = "fair"
            assessment["recommendations"].append(
                f"{rejected} implausible beats rejected (>5%)"
            )

        n_breaths = (results.respiratory or {}).get("n_breaths", 0)
        if n_breaths < 5:
            assessment["recommendations"].append(
                "Fewer than 5 respiratory cycles may limit PPV reliability"
            )

        if results.ppv_model and results.classic_ppv:
            classic = results.classic_ppv.get("ppv_median")
            if classic is not None:
                assessment["ppv_difference"] = results.ppv_model["ppv"] - classic

        for w in (results.respiratory or {}).get("warnings", []):
            assessment["recommendations"].append(f"Respiratory: {w}")
        return assessment


def create_ppv_pipeline(
    bundle: WaveformBundle, analysis_config: Optional[Dict] = None
) -> PPVPipeline:
    """
    Factory function to create a PPV pipeline

    Args:
        bundle: WaveformBundle with physiological data
        analysis_config: Configuration for analysis modules

    Returns:
        Configured PPVPipeline instance
    """
    return PPVPipeline(bundle=bundle, analysis_config=analysis_config)
