import warnings
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Union

import numpy as np
import pandas as pd
from scipy.ndimage import maximum_filter1d, minimum_filter1d

from hemolib.data_handler import validate_waveform, waveform_from_frame
from hemolib.errors import DataError, DataWarning

BEAT_COLUMNS = ["time", "dia", "time_systole", "sys", "PP", "beat_len"]

DIASTOLE = -1
SYSTOLE = 1


@dataclass
class BeatDetectionConfig:
    """Tuning knobs for arterial pressure beat detection"""

    window_s: float = 0.4  # width of the centered rolling window (seconds)
    min_hr: float = 20.0  # slowest plausible heart rate (bpm)
    max_hr: float = 250.0  # fastest plausible heart rate (bpm)
    min_pulse_pressure: float = 0.0  # beats with PP below this are dropped

    def __post_init__(self):
        if self.window_s <= 0:
            raise ValueError("window_s must be positive")
        if not 0 < self.min_hr < self.max_hr:
            raise ValueError("Heart rate bounds must satisfy 0 < min_hr < max_hr")

    @property
    def min_cycle_s(self) -> float:
        return 60.0 / self.max_hr

    @property
    def max_cycle_s(self) -> float:
        return 60.0 / self.min_hr


@dataclass
class BeatDetectionResult:
    """Beat table plus bookkeeping from the detection stages"""

    beats: pd.DataFrame
    diastole_indices: np.ndarray
    systole_indices: np.ndarray
    stats: Dict = field(default_factory=dict)
    rejected_times: Optional[List[float]] = None  # diastole times of dropped beats

    def __post_init__(self):
        if self.rejected_times is None:
            self.rejected_times = []


def empty_beat_table() -> pd.DataFrame:
    table = pd.DataFrame({col: np.array([], dtype=float) for col in BEAT_COLUMNS})
    table["beat_len"] = table["beat_len"].astype("Float64")
    return table


def find_candidate_extrema(
    values: np.ndarray, half_width: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Candidate minima and maxima from a centered rolling window comparison.

    A sample is a candidate minimum (maximum) when it equals the minimum
    (maximum) of the window centered on it and the window is not flat. Runs of
    equal values keep their first sample.

    Near the segment edges the window is truncated. A minimum in the leading
    edge and a maximum in the trailing edge can still open or close a beat, so
    they are kept when they are at least as extreme as the least extreme
    interior candidate of the same type. Leading maxima and trailing minima
    are discarded.

    Args:
        values: Waveform samples
        half_width: Samples on each side of the window center

    Returns:
        Tuple of (minima_indices, maxima_indices)
    """
    n = len(values)
    size = 2 * half_width + 1
    if n < size:
        return np.array([], dtype=int), np.array([], dtype=int)

    rolling_min = minimum_filter1d(values, size=size, mode="nearest")
    rolling_max = maximum_filter1d(values, size=size, mode="nearest")
    non_flat = rolling_max > rolling_min

    inside = np.zeros(n, dtype=bool)
    inside[half_width : n - half_width] = True
    leading = np.zeros(n, dtype=bool)
    leading[:half_width] = True
    trailing = ~inside & ~leading

    is_min = (values == rolling_min) & non_flat
    is_max = (values == rolling_max) & non_flat

    minima = np.flatnonzero(is_min & inside)
    maxima = np.flatnonzero(is_max & inside)

    if len(minima):
        edge = np.flatnonzero(is_min & leading)
        edge = edge[values[edge] <= np.max(values[minima])]
        minima = np.concatenate([edge, minima])
    if len(maxima):
        edge = np.flatnonzero(is_max & trailing)
        edge = edge[values[edge] >= np.min(values[maxima])]
        maxima = np.concatenate([maxima, edge])

    return _first_of_plateaus(minima, values), _first_of_plateaus(maxima, values)


def _first_of_plateaus(indices: np.ndarray, values: np.ndarray) -> np.ndarray:
    if len(indices) < 2:
        return indices
    keep = np.ones(len(indices), dtype=bool)
    keep[1:] = ~(
        (np.diff(indices) == 1) & (values[indices[1:]] == values[indices[:-1]])
    )
    return indices[keep]


def enforce_alternation(
    minima: np.ndarray, maxima: np.ndarray, values: np.ndarray
) -> Tuple[List[Tuple[int, int]], int]:
    """
    Merge candidates into a strictly alternating minimum/maximum sequence.

    When two extrema of the same type follow each other, the stronger one is
    kept: the lower of two minima, the higher of two maxima (the one deviating
    more from the surrounding opposite extrema). Ties keep the earlier one.

    Returns:
        Tuple of (sequence of (index, kind), number_of_repairs)
    """
    candidates = sorted(
        [(int(i), DIASTOLE) for i in minima] + [(int(i), SYSTOLE) for i in maxima]
    )

    sequence: List[Tuple[int, int]] = []
    repairs = 0
    for idx, kind in candidates:
        if sequence and sequence[-1][1] == kind:
            repairs += 1
            prev = sequence[-1][0]
            if kind == DIASTOLE:
                stronger = values[idx] < values[prev]
            else:
                stronger = values[idx] > values[prev]
            if stronger:
                sequence[-1] = (idx, kind)
        else:
            sequence.append((idx, kind))

    return sequence, repairs


def _pair_extrema(sequence: List[Tuple[int, int]]) -> Tuple[np.ndarray, np.ndarray]:
    dia_idx, sys_idx = [], []
    for (i, kind_i), (j, kind_j) in zip(sequence[:-1], sequence[1:]):
        if kind_i == DIASTOLE and kind_j == SYSTOLE:
            dia_idx.append(i)
            sys_idx.append(j)
    return np.asarray(dia_idx, dtype=int), np.asarray(sys_idx, dtype=int)


def _following_interval(times: np.ndarray) -> np.ndarray:
    """Interval from each time to the next one; NaN for the last"""
    if len(times) == 0:
        return np.array([], dtype=float)
    return np.append(np.diff(times), np.nan)


def run_beat_detection(
    time: Union[List[float], np.ndarray],
    pressure: Union[List[float], np.ndarray],
    config: Optional[BeatDetectionConfig] = None,
) -> BeatDetectionResult:
    """
    Detect cardiac cycles (diastole/systole pairs) in an arterial pressure waveform.

    Args:
        time: Sample times in seconds, strictly increasing
        pressure: Pressure samples (e.g. mmHg)
        config: Detection parameters, defaults to BeatDetectionConfig()

    Returns:
        BeatDetectionResult with the beat table and detection statistics

    Raises:
        DataError: If time/pressure are malformed (length mismatch,
            non-increasing time, NaN samples)
    """
    config = config or BeatDetectionConfig()
    t = np.asarray(time, dtype=float)
    p = np.asarray(pressure, dtype=float)

    empty = BeatDetectionResult(
        beats=empty_beat_table(),
        diastole_indices=np.array([], dtype=int),
        systole_indices=np.array([], dtype=int),
        stats={"n_samples": int(len(t)), "n_beats": 0},
    )

    if len(t) < 3:
        warnings.warn(
            "Waveform too short for beat detection; returning no beats", DataWarning
        )
        return empty

    ok, errors = validate_waveform(t, p)
    if not ok:
        raise DataError("; ".join(errors))

    fs = 1.0 / float(np.median(np.diff(t)))
    half_width = max(1, int(round(config.window_s * fs / 2.0)))

    if len(t) < 2 * half_width + 3:
        warnings.warn(
            f"Waveform of {len(t)} samples is shorter than the "
            f"{config.window_s:.2f} s detection window; returning no beats",
            DataWarning,
        )
        return empty

    # Step 1: candidate extrema
    minima, maxima = find_candidate_extrema(p, half_width)

    # Step 2: alternation repair
    sequence, repairs = enforce_alternation(minima, maxima, p)

    # Step 3: diastole -> systole pairs
    dia_idx, sys_idx = _pair_extrema(sequence)

    stats = {
        "n_samples": int(len(t)),
        "fs_estimate": fs,
        "window_samples": 2 * half_width + 1,
        "candidate_minima": int(len(minima)),
        "candidate_maxima": int(len(maxima)),
        "alternation_repairs": int(repairs),
        "paired_beats": int(len(dia_idx)),
    }

    if len(dia_idx) == 0:
        empty.stats.update(stats)
        return empty

    # Step 4: physiological plausibility
    t_dia = t[dia_idx]
    raw_len = _following_interval(t_dia)
    with np.errstate(invalid="ignore"):
        implausible = np.isfinite(raw_len) & (
            (raw_len < config.min_cycle_s) | (raw_len > config.max_cycle_s)
        )
    pulse_pressure = p[sys_idx] - p[dia_idx]
    low_pp = pulse_pressure < config.min_pulse_pressure
    keep = ~implausible & ~low_pp

    rejected_times = t_dia[~keep].tolist()
    dia_idx, sys_idx = dia_idx[keep], sys_idx[keep]

    # Step 5: beat table, beat_len against the next retained beat
    t_dia = t[dia_idx]
    beat_len = _following_interval(t_dia)
    with np.errstate(invalid="ignore"):
        gap = beat_len > config.max_cycle_s
    beat_len[gap] = np.nan

    beats = pd.DataFrame(
        {
            "time": t_dia,
            "dia": p[dia_idx],
            "time_systole": t[sys_idx],
            "sys": p[sys_idx],
            "PP": p[sys_idx] - p[dia_idx],
            "beat_len": pd.arrays.FloatingArray(
                np.nan_to_num(beat_len), np.isnan(beat_len)
            ),
        }
    )

    stats.update(
        {
            "rejected_cycle_length": int(np.sum(implausible)),
            "rejected_pulse_pressure": int(np.sum(low_pp & ~implausible)),
            "detection_gaps": int(np.sum(gap)),
            "n_beats": int(len(beats)),
            "mean_hr_bpm": (
                float(60.0 / np.nanmean(beat_len))
                if np.any(np.isfinite(beat_len))
                else None
            ),
        }
    )

    return BeatDetectionResult(
        beats=beats,
        diastole_indices=dia_idx,
        systole_indices=sys_idx,
        stats=stats,
        rejected_times=rejected_times,
    )


def detect_beats(
    time: Union[List[float], np.ndarray],
    pressure: Union[List[float], np.ndarray],
    config: Optional[BeatDetectionConfig] = None,
    **overrides,
) -> pd.DataFrame:
    """
    Beat table for an arterial pressure waveform.

    Args:
        time: Sample times in seconds
        pressure: Pressure samples
        config: Detection parameters
        **overrides: Individual BeatDetectionConfig fields (window_s, min_hr, ...)

    Returns:
        DataFrame with columns time, dia, time_systole, sys, PP, beat_len.
        An empty or too short waveform gives an empty table.
    """
    if overrides:
        base = config or BeatDetectionConfig()
        params = {**base.__dict__, **overrides}
        config = BeatDetectionConfig(**params)
    return run_beat_detection(time, pressure, config).beats


def find_abp_beats(
    abp: pd.DataFrame,
    time_col: Union[str, int] = 0,
    value_col: Union[str, int] = 1,
    **kwargs,
) -> pd.DataFrame:
    """
    Beat table from a two-column (time, pressure) table.

    Args:
        abp: Table holding the arterial pressure waveform
        time_col: Time column name or position
        value_col: Pressure column name or position
        **kwargs: Passed to detect_beats

    Returns:
        Beat table (see detect_beats)
    """
    if len(abp) == 0:
        warnings.warn("Empty waveform; returning no beats", DataWarning)
        return empty_beat_table()
    waveform = waveform_from_frame(abp, time_col=time_col, value_col=value_col)
    return detect_beats(waveform.time, waveform.values, **kwargs)
