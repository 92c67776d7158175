import warnings
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Union

import numpy as np
import pandas as pd

from hemolib.errors import DataError, DataWarning


# =========================
# Data structures
# =========================


@dataclass
class SourceInfo:
    path: str
    filetype: str
    device: Optional[str] = None
    notes: Optional[str] = None
    acquisition_date: Optional[str] = None  # ISO string or datetime


@dataclass
class Waveform:
    name: str  # 'ABP', 'CVP', 'RESP', etc.
    time: np.ndarray  # seconds, strictly increasing
    values: np.ndarray  # physical unit, same length as time
    units: Optional[str] = None  # e.g., 'mmHg'

    def __post_init__(self):
        self.time = np.asarray(self.time, dtype=float)
        self.values = np.asarray(self.values, dtype=float)
        if self.time.shape != self.values.shape:
            raise DataError(
                f"{self.name}: time and values differ in length "
                f"({len(self.time)} vs {len(self.values)})"
            )

    @property
    def fs(self) -> Optional[float]:
        """Nominal sampling rate from the median sample spacing"""
        if len(self.time) < 2:
            return None
        dt = float(np.median(np.diff(self.time)))
        return 1.0 / dt if dt > 0 else None

    @property
    def duration(self) -> float:
        if len(self.time) == 0:
            return 0.0
        return float(self.time[-1] - self.time[0])

    def to_frame(self, value_col: Optional[str] = None) -> pd.DataFrame:
        return pd.DataFrame(
            {"time": self.time, value_col or self.name.lower(): self.values}
        )


@dataclass
class WaveformBundle:
    # Waveforms
    abp: List[Waveform] = field(default_factory=list)
    cvp: List[Waveform] = field(default_factory=list)
    resp: List[Waveform] = field(default_factory=list)

    # Event streams (seconds)
    qrs_times: List[float] = field(default_factory=list)  # upstream ECG peaks
    insp_times: List[float] = field(default_factory=list)  # inspiration starts

    meta: Dict = field(default_factory=dict)
    source: Optional[SourceInfo] = None

    def summary(self) -> Dict:
        """
        Concise summary of the signal types and event streams held.
        """
        types = []
        if self.abp:
            types.append("ABP")
        if self.cvp:
            types.append("CVP")
        if self.resp:
            types.append("RESP")

        wf_counts = {
            "ABP_channels": len(self.abp),
            "CVP_channels": len(self.cvp),
            "RESP_channels": len(self.resp),
        }

        event_stats = {}
        for name, events in (("qrs", self.qrs_times), ("insp", self.insp_times)):
            if events:
                arr = np.asarray(events, dtype=float)
                event_stats[name] = {
                    "n_events": int(arr.size),
                    "mean_interval_s": (
                        float(np.mean(np.diff(arr))) if arr.size > 1 else None
                    ),
                }

        return {
            "types_loaded": types or ["Unknown"],
            "waveform_channels": wf_counts,
            "event_streams": event_stats,
            "source": self.source.__dict__ if self.source else None,
            "meta_keys": list(self.meta.keys()),
        }


# =========================
# Validation helpers
# =========================


def validate_event_stream(
    events: Union[List[float], np.ndarray, pd.Series], name: str = "events"
) -> np.ndarray:
    """
    Validate an event stream and return it as a float array.

    Args:
        events: Event timestamps in seconds
        name: Label used in error messages

    Returns:
        1-D float array of event times

    Raises:
        DataError: If the stream is not 1-D, contains NaN/inf or is not
            strictly increasing (duplicates included)
    """
    arr = np.asarray(events, dtype=float)
    if arr.ndim != 1:
        raise DataError(f"{name} must be a 1-D sequence of timestamps")

    if not np.all(np.isfinite(arr)):
        raise DataError(f"{name} contains NaN or infinite timestamps")

    if arr.size > 1:
        steps = np.diff(arr)
        if np.any(steps == 0):
            raise DataError(f"{name} contains duplicate timestamps")
        if np.any(steps < 0):
            raise DataError(f"{name} must be strictly increasing")

    return arr


def validate_waveform(
    time: Union[List[float], np.ndarray], values: Union[List[float], np.ndarray]
) -> Tuple[bool, List[str]]:
    """
    Validate a sampled waveform.

    Args:
        time: Sample times in seconds
        values: Sample values

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []

    try:
        t = np.asarray(time, dtype=float)
        v = np.asarray(values, dtype=float)
    except (ValueError, TypeError):
        errors.append("Waveform time and values must be numeric")
        return False, errors

    if t.ndim != 1 or v.ndim != 1:
        errors.append("Waveform time and values must be 1-D")
        return False, errors

    if len(t) != len(v):
        errors.append(f"Length mismatch: {len(t)} times vs {len(v)} values")
        return False, errors

    if not np.all(np.isfinite(t)):
        errors.append("Found non-finite sample times")
    elif len(t) > 1 and np.any(np.diff(t) <= 0):
        errors.append("Sample times must be strictly increasing")

    nan_count = int(np.sum(~np.isfinite(v)))
    if nan_count > 0:
        errors.append(f"Found {nan_count} NaN or infinite sample values")

    return len(errors) == 0, errors


def waveform_from_frame(
    df: pd.DataFrame,
    time_col: Union[str, int] = 0,
    value_col: Union[str, int] = 1,
    name: str = "ABP",
    units: Optional[str] = None,
) -> Waveform:
    """
    Build a Waveform from a two-column table.

    Columns can be addressed by name or by position. Rows with a missing
    value are dropped with a DataWarning.
    """
    t_series = df[time_col] if not isinstance(time_col, int) else df.iloc[:, time_col]
    v_series = (
        df[value_col] if not isinstance(value_col, int) else df.iloc[:, value_col]
    )

    t = t_series.to_numpy(dtype=float, na_value=np.nan)
    v = v_series.to_numpy(dtype=float, na_value=np.nan)

    valid = np.isfinite(t) & np.isfinite(v)
    if not np.all(valid):
        warnings.warn(
            f"Dropped {int(np.sum(~valid))} samples with missing time/value",
            DataWarning,
        )
        t, v = t[valid], v[valid]

    ok, errors = validate_waveform(t, v)
    if not ok:
        raise DataError("; ".join(errors))

    return Waveform(name=name, time=t, values=v, units=units)
