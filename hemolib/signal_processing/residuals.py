"""
Residual Autocorrelation Diagnostics

Helpers for checking whether residuals of a fitted decomposition are still
serially correlated, and for choosing the AR(1) coefficient that removes
that correlation. Recordings split into segments (gaps, dropped rows) are
handled by only pairing residuals that lie inside the same segment.

Functions
---------
segment_ids : function
    Integer segment label per row from segment-start flags
residual_acf : function
    Autocorrelation function pooled over segments
estimate_ar1_rho : function
    Lag-1 autocorrelation, the moment estimate of an AR(1) coefficient

Example Usage
-------------
>>> acf = residual_acf(model.residuals, max_lag=20, ar_start=model.ar_start)
>>> rho = estimate_ar1_rho(model.residuals, ar_start=model.ar_start)
"""

import numpy as np

RHO_LIMIT = 0.99


def segment_ids(n, ar_start=None):
    """
    Label each row with the segment it belongs to.

    Parameters
    ----------
    n : int
        Number of rows
    ar_start : array-like of bool, optional
        True where a new segment starts. The first row always starts one.

    Returns
    -------
    ids : numpy.ndarray
        Non-decreasing integer labels, 0 for the first segment
    """
    starts = np.zeros(n, dtype=bool)
    if ar_start is not None:
        ar_start = np.asarray(ar_start, dtype=bool)
        if len(ar_start) != n:
            raise ValueError("ar_start must have one entry per residual")
        starts |= ar_start
    if n > 0:
        starts[0] = True
    return np.cumsum(starts) - 1


def residual_acf(residuals, max_lag=20, ar_start=None):
    """
    Autocorrelation of residuals at lags 0..max_lag.

    Products are only formed between rows of the same segment, and every
    segment is centered on its own mean. Lags with no pairs are NaN.

    Parameters
    ----------
    residuals : array-like
        Model residuals in row order
    max_lag : int, optional (default=20)
        Largest lag to compute
    ar_start : array-like of bool, optional
        Segment-start flags (see segment_ids)

    Returns
    -------
    acf : numpy.ndarray
        Array of length max_lag + 1 with acf[0] == 1

    Raises
    ------
    ValueError
        If max_lag is negative or there are fewer than two finite residuals
    """
    r = np.asarray(residuals, dtype=float)
    if max_lag < 0:
        raise ValueError("max_lag must be non-negative")

    ids = segment_ids(len(r), ar_start)
    finite = np.isfinite(r)
    if np.sum(finite) < 2:
        raise ValueError("Need at least two finite residuals")

    centered = np.zeros_like(r)
    for seg in np.unique(ids[finite]):
        rows = finite & (ids == seg)
        centered[rows] = r[rows] - np.mean(r[rows])

    variance = np.sum(centered[finite] ** 2) / np.sum(finite)
    acf = np.full(max_lag + 1, np.nan)
    if variance == 0:
        return acf

    acf[0] = 1.0
    for lag in range(1, max_lag + 1):
        if lag >= len(r):
            break
        same = (ids[lag:] == ids[:-lag]) & finite[lag:] & finite[:-lag]
        if not np.any(same):
            continue
        products = centered[lag:][same] * centered[:-lag][same]
        acf[lag] = np.mean(products) / variance
    return acf


def estimate_ar1_rho(residuals, ar_start=None):
    """
    Moment estimate of the AR(1) coefficient from residuals.

    Parameters
    ----------
    residuals : array-like
        Residuals of a fit without residual correlation
    ar_start : array-like of bool, optional
        Segment-start flags

    Returns
    -------
    rho : float
        Lag-1 autocorrelation clipped to [-0.99, 0.99] (0 if undefined)
    """
    rho = residual_acf(residuals, max_lag=1, ar_start=ar_start)[1]
    if not np.isfinite(rho):
        return 0.0
    return float(np.clip(rho, -RHO_LIMIT, RHO_LIMIT))
