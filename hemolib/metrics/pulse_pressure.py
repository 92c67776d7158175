import warnings
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from hemolib.beat_detection import BEAT_COLUMNS
from hemolib.errors import DataWarning
from hemolib.event_indexer import index_events


class PulsePressureAnalysis:
    """
    Beat-level pulse pressure statistics and classic pulse pressure variation.

    Classic PPV is computed per closed respiratory cycle as
    (PPmax - PPmin) / ((PPmax + PPmin) / 2) and summarised across cycles.
    Expects a beat table from hemolib.beat_detection.
    """

    def __init__(
        self,
        beats: pd.DataFrame,
        insp_times: Optional[Union[List[float], np.ndarray]] = None,
        analysis_window: Optional[Tuple[float, float]] = None,
        min_beats_per_cycle: int = 2,
    ):
        """
        Args:
            beats: Beat table (time, dia, time_systole, sys, PP, beat_len)
            insp_times: Inspiration start times in seconds
            analysis_window: (start_time, end_time) in seconds
            min_beats_per_cycle: Respiratory cycles with fewer beats are skipped
        """
        missing = [col for col in ("time", "PP") if col not in beats.columns]
        if missing:
            raise ValueError(f"Beat table is missing column(s): {missing}")

        self.beats = beats.reset_index(drop=True)
        self.insp_times = None if insp_times is None else np.asarray(insp_times, float)
        self.analysis_window = analysis_window
        self.min_beats_per_cycle = min_beats_per_cycle

        if self.analysis_window is not None:
            self.beats = self._apply_analysis_window(self.beats)

        if len(self.beats) < 2:
            raise ValueError("At least 2 beats needed for pulse pressure analysis")

    def _apply_analysis_window(self, beats: pd.DataFrame) -> pd.DataFrame:
        start_time, end_time = self.analysis_window
        mask = (beats["time"] >= start_time) & (beats["time"] <= end_time)
        if not mask.any():
            raise ValueError(
                f"No beats found in analysis window [{start_time}, {end_time}]"
            )
        return beats[mask].reset_index(drop=True)

    def _column(self, name: str) -> np.ndarray:
        return self.beats[name].to_numpy(dtype=float, na_value=np.nan)

    def mean_pp(self) -> float:
        return float(np.nanmean(self._column("PP")))

    def sd_pp(self) -> float:
        return float(np.nanstd(self._column("PP"), ddof=1))

    def mean_hr(self) -> Optional[float]:
        """Mean heart rate (bpm) from beat lengths; None when none are defined"""
        if "beat_len" not in self.beats.columns:
            return None
        beat_len = self._column("beat_len")
        if not np.any(np.isfinite(beat_len)):
            return None
        return float(60.0 / np.nanmean(beat_len))

    def per_cycle_ppv(self) -> pd.DataFrame:
        """
        Pulse pressure variation within each closed respiratory cycle

        Returns:
            DataFrame with columns cycle, start, n_beats, pp_max, pp_min, ppv
        """
        columns = ["cycle", "start", "n_beats", "pp_max", "pp_min", "ppv"]
        if self.insp_times is None:
            raise ValueError("Inspiration times are required for classic PPV")

        cycle_index = index_events(self._column("time"), self.insp_times)
        closed = cycle_index.defined & np.isfinite(cycle_index.cycle_len)
        pp = self._column("PP")

        rows = []
        for cycle in np.unique(cycle_index.n[closed]):
            in_cycle = closed & (cycle_index.n == cycle) & np.isfinite(pp)
            if np.sum(in_cycle) < self.min_beats_per_cycle:
                continue
            pp_max = float(np.max(pp[in_cycle]))
            pp_min = float(np.min(pp[in_cycle]))
            mean_of_extremes = (pp_max + pp_min) / 2.0
            rows.append(
                {
                    "cycle": int(cycle),
                    "start": float(self.insp_times[cycle]),
                    "n_beats": int(np.sum(in_cycle)),
                    "pp_max": pp_max,
                    "pp_min": pp_min,
                    "ppv": (pp_max - pp_min) / mean_of_extremes
                    if mean_of_extremes > 0
                    else np.nan,
                }
            )
        return pd.DataFrame(rows, columns=columns)

    def classic_ppv(self) -> Dict[str, Optional[float]]:
        """Classic PPV summarised over respiratory cycles (fractions, not %)"""
        cycles = self.per_cycle_ppv()
        values = cycles["ppv"].to_numpy(dtype=float)
        values = values[np.isfinite(values)]
        if len(values) == 0:
            warnings.warn(
                "No complete respiratory cycle with enough beats for PPV", DataWarning
            )
            return {"ppv_mean": None, "ppv_median": None, "n_cycles": 0}
        return {
            "ppv_mean": float(np.mean(values)),
            "ppv_median": float(np.median(values)),
            "n_cycles": int(len(values)),
        }

    def full_analysis(self) -> Dict[str, Union[float, int, None, Dict]]:
        results = {
            "n_beats": int(len(self.beats)),
            "mean_pp": self.mean_pp(),
            "sd_pp": self.sd_pp(),
            "mean_hr": self.mean_hr(),
            "mean_sys": float(np.nanmean(self._column("sys")))
            if "sys" in self.beats.columns
            else None,
            "mean_dia": float(np.nanmean(self._column("dia")))
            if "dia" in self.beats.columns
            else None,
        }
        if self.insp_times is not None:
            results["classic_ppv"] = self.classic_ppv()
        return results

    def get_quality_assessment(self) -> Dict[str, Union[str, bool, float, List]]:
        assessment = {
            "n_beats": int(len(self.beats)),
            "complete_beat_table": all(c in self.beats.columns for c in BEAT_COLUMNS),
            "recommendations": [],
        }

        if "beat_len" in self.beats.columns:
            beat_len = self._column("beat_len")
            gaps = int(np.sum(~np.isfinite(beat_len[:-1])))
            assessment["detection_gaps"] = gaps
            if gaps > 0:
                assessment["recommendations"].append(
                    f"{gaps} detection gap(s) in the beat sequence"
                )

        if self.insp_times is not None:
            n_cycles = self.classic_ppv()["n_cycles"]
            assessment["respiratory_cycles"] = n_cycles
            if n_cycles < 3:
                assessment["recommendations"].append(
                    "Fewer than 3 respiratory cycles; classic PPV is unstable"
                )
        return assessment
