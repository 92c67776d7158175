"""
Respiratory event detection

Inspiration starts are the reference events for respiratory-cycle indexing
(insp_index, insp_rel_index, ...). They are detected from a respiratory
waveform (airway pressure, flow, or chest movement) by band-pass filtering
to the breathing band and taking the troughs that precede each breath.
"""

import warnings
from typing import Dict, Optional, Tuple, Union, List

import numpy as np
from scipy import signal
from scipy.signal import butter, filtfilt, find_peaks

from hemolib.data_handler import Waveform, validate_waveform
from hemolib.errors import DataError, DataWarning

RESP_BAND_HZ = (0.1, 0.5)
DEFAULT_RESP_RATE_BPM = 15.0


def _sampling_rate(time: np.ndarray) -> float:
    return 1.0 / float(np.median(np.diff(time)))


def bandpass_respiratory(
    values: np.ndarray, fs: float, band: Tuple[float, float] = RESP_BAND_HZ
) -> np.ndarray:
    """Zero-phase 3rd order Butterworth band-pass to the breathing band"""
    nyquist = fs / 2
    low = band[0] / nyquist
    high = min(band[1] / nyquist, 0.99)
    if not 0 < low < high:
        raise ValueError(f"Band {band} Hz is not below the Nyquist frequency {nyquist}")

    b, a = butter(3, [low, high], btype="band")
    padlen = 3 * max(len(a), len(b))
    if len(values) <= padlen:
        raise DataError(
            f"Respiratory signal of {len(values)} samples is too short to filter"
        )
    return filtfilt(b, a, values - np.mean(values))


def detect_inspiration_starts(
    time: Union[List[float], np.ndarray],
    resp: Union[List[float], np.ndarray],
    min_breath_s: float = 1.5,
    band: Tuple[float, float] = RESP_BAND_HZ,
    invert: bool = False,
) -> np.ndarray:
    """
    Inspiration start times from a respiratory waveform.

    Args:
        time: Sample times in seconds, strictly increasing
        resp: Respiratory waveform; inspiration makes it rise
        min_breath_s: Shortest plausible breath (minimum trough spacing)
        band: Breathing band in Hz used for filtering
        invert: Set when inspiration makes the waveform fall

    Returns:
        Strictly increasing inspiration start times (seconds)

    Raises:
        DataError: If the waveform is malformed or too short to filter
    """
    t = np.asarray(time, dtype=float)
    x = np.asarray(resp, dtype=float)
    ok, errors = validate_waveform(t, x)
    if not ok:
        raise DataError("; ".join(errors))

    fs = _sampling_rate(t)
    filtered = bandpass_respiratory(-x if invert else x, fs, band)

    # troughs of the filtered signal mark the start of each breath
    prominence = 0.1 * np.std(filtered)
    troughs, _ = find_peaks(
        -filtered,
        distance=max(1, int(min_breath_s * fs)),
        prominence=prominence if prominence > 0 else None,
    )
    if len(troughs) == 0:
        warnings.warn(
            "No inspiration starts detected in respiratory signal", DataWarning
        )
    return t[troughs]


def estimate_respiratory_rate(resp_signal: np.ndarray, fs: float) -> float:
    """
    Respiratory rate (breaths/min) from spectral peak, falling back to peak
    spacing and finally a default of 15 breaths/min.
    """
    min_distance = max(1, int(fs * 1.5))
    peaks, _ = find_peaks(resp_signal, distance=min_distance)

    rate_from_peaks = 0.0
    if len(peaks) > 2:
        intervals = np.diff(peaks) / fs
        rate_from_peaks = 60.0 / np.median(intervals)

    f, psd = signal.welch(resp_signal, fs, nperseg=min(len(resp_signal), int(fs * 30)))
    resp_mask = (f >= RESP_BAND_HZ[0]) & (f <= RESP_BAND_HZ[1])

    rate_from_fft = 0.0
    if np.any(resp_mask) and np.max(psd[resp_mask]) > 0:
        peak_freq = f[resp_mask][np.argmax(psd[resp_mask])]
        rate_from_fft = peak_freq * 60

    if 6 < rate_from_fft < 40:
        return float(rate_from_fft)
    if 6 < rate_from_peaks < 40:
        return float(rate_from_peaks)
    warnings.warn("Could not estimate respiratory rate; using default", DataWarning)
    return DEFAULT_RESP_RATE_BPM


def analyze_respiratory_waveform(
    resp: Waveform, insp_times: Optional[np.ndarray] = None, **kwargs
) -> Dict:
    """
    Inspiration starts and breathing rate for a respiratory waveform.

    Args:
        resp: Respiratory waveform
        insp_times: Already known inspiration starts (skips detection)
        **kwargs: Passed to detect_inspiration_starts

    Returns:
        Dictionary with inspiration_times, respiratory_rate_bpm,
        rate_from_events_bpm, n_breaths and warnings
    """
    results = {
        "inspiration_times": None,
        "respiratory_rate_bpm": None,
        "rate_from_events_bpm": None,
        "n_breaths": 0,
        "warnings": [],
    }

    if insp_times is None:
        insp_times = detect_inspiration_starts(resp.time, resp.values, **kwargs)
    insp_times = np.asarray(insp_times, dtype=float)
    results["inspiration_times"] = insp_times
    results["n_breaths"] = int(max(len(insp_times) - 1, 0))

    if len(insp_times) > 2:
        results["rate_from_events_bpm"] = float(60.0 / np.median(np.diff(insp_times)))
    else:
        results["warnings"].append("Fewer than 3 inspiration starts")

    fs = resp.fs
    filtered = bandpass_respiratory(resp.values, fs)
    results["respiratory_rate_bpm"] = estimate_respiratory_rate(filtered, fs)
    return results
