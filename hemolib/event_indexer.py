"""
Event-relative cyclic indexing

Maps observation timestamps (waveform samples, beats, ...) onto a stream of
reference events (inspiration starts, QRS complexes, P-waves) and describes
where in the enclosing cycle each observation falls:

    <prefix>_index      time since the latest event <= t (seconds)
    <prefix>_n          0-based number of the enclosing event
    <prefix>_cycle_len  duration of the enclosing cycle
    <prefix>_rel_index  index / cycle_len, in [0, 1)

Cycles are closed-open intervals [e_k, e_k+1). Observations before the first
event and cycle lengths of the last (unclosed) cycle are missing values.
"""

import warnings
from dataclasses import dataclass
from typing import Union, List

import numpy as np
import pandas as pd

from hemolib.data_handler import validate_event_stream
from hemolib.errors import DataError, DataWarning


@dataclass
class CycleIndex:
    """Per-observation cycle descriptors (NaN / masked where undefined)"""

    index: np.ndarray
    n: np.ndarray  # int64, only meaningful where ``defined`` is True
    cycle_len: np.ndarray
    rel_index: np.ndarray
    defined: np.ndarray  # bool, observation has an enclosing event

    def __len__(self) -> int:
        return len(self.index)

    def to_frame(self, prefix: str) -> pd.DataFrame:
        """Descriptor columns with nullable dtypes (pd.NA for missing)"""
        return pd.DataFrame(
            {
                f"{prefix}_index": _nullable_float(self.index),
                f"{prefix}_n": pd.arrays.IntegerArray(
                    np.where(self.defined, self.n, 0).astype("int64"),
                    ~self.defined,
                ),
                f"{prefix}_cycle_len": _nullable_float(self.cycle_len),
                f"{prefix}_rel_index": _nullable_float(self.rel_index),
            }
        )


def _nullable_float(values: np.ndarray) -> pd.arrays.FloatingArray:
    missing = np.isnan(values)
    return pd.arrays.FloatingArray(np.where(missing, 0.0, values), missing)


def _enclosing_events_merge(obs: np.ndarray, events: np.ndarray) -> np.ndarray:
    """Two-pointer co-scan for sorted observations, O(E + T)"""
    enclosing = np.empty(len(obs), dtype=np.int64)
    k = -1
    n_events = len(events)
    for i, t in enumerate(obs):
        while k + 1 < n_events and events[k + 1] <= t:
            k += 1
        enclosing[i] = k
    return enclosing


def _enclosing_events_search(obs: np.ndarray, events: np.ndarray) -> np.ndarray:
    """Binary search per observation, O(T log E), any observation order"""
    return np.searchsorted(events, obs, side="right").astype(np.int64) - 1


def index_events(
    obs_times: Union[List[float], np.ndarray, pd.Series],
    event_times: Union[List[float], np.ndarray, pd.Series],
) -> CycleIndex:
    """
    Compute cycle descriptors for every observation relative to an event stream.

    Args:
        obs_times: Observation timestamps in seconds (any length, NaN allowed)
        event_times: Strictly increasing event timestamps in seconds

    Returns:
        CycleIndex with one entry per observation, in input order

    Raises:
        DataError: If the event stream is not strictly increasing
    """
    events = validate_event_stream(event_times, name="event_times")
    obs = np.asarray(obs_times, dtype=float)
    if obs.ndim != 1:
        raise DataError("obs_times must be a 1-D sequence of timestamps")

    n_obs = len(obs)
    enclosing = np.full(n_obs, -1, dtype=np.int64)
    finite = np.isfinite(obs)

    if len(events) > 0 and np.any(finite):
        obs_finite = obs[finite]
        if np.all(np.diff(obs_finite) >= 0):
            enclosing[finite] = _enclosing_events_merge(obs_finite, events)
        else:
            enclosing[finite] = _enclosing_events_search(obs_finite, events)

    defined = enclosing >= 0
    index = np.full(n_obs, np.nan)
    cycle_len = np.full(n_obs, np.nan)
    rel_index = np.full(n_obs, np.nan)

    if np.any(defined):
        k = enclosing[defined]
        index[defined] = obs[defined] - events[k]

        closed = defined.copy()
        closed[defined] = k + 1 < len(events)
        k_closed = enclosing[closed]
        cycle_len[closed] = events[k_closed + 1] - events[k_closed]
        rel_index[closed] = index[closed] / cycle_len[closed]
    elif n_obs > 0:
        warnings.warn(
            "All observations precede the first event; "
            "every cycle descriptor is undefined",
            DataWarning,
        )

    return CycleIndex(
        index=index,
        n=enclosing,
        cycle_len=cycle_len,
        rel_index=rel_index,
        defined=defined,
    )


def add_time_since_event(
    data: pd.DataFrame,
    event_times: Union[List[float], np.ndarray, pd.Series],
    prefix: str,
    time_col: str = "time",
) -> pd.DataFrame:
    """
    Left-join cycle descriptors onto a table of observations.

    Args:
        data: Any table with a time column (waveform samples, beats, ...)
        event_times: Strictly increasing event timestamps in seconds
        prefix: Column prefix, e.g. "insp" gives insp_index, insp_n, ...
        time_col: Name of the time column in ``data``

    Returns:
        Copy of ``data`` with four added columns, same row order and length
    """
    if time_col not in data.columns:
        raise DataError(f"Column '{time_col}' not found in data")
    if not prefix:
        raise DataError("A non-empty column prefix is required")

    cycle_index = index_events(
        data[time_col].to_numpy(dtype=float, na_value=np.nan), event_times
    )
    descriptors = cycle_index.to_frame(prefix)
    descriptors.index = data.index

    result = data.copy()
    for col in descriptors.columns:
        result[col] = descriptors[col]
    return result
