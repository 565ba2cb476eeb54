"""
Monthly Phenology Extraction
============================
Per-pixel phenology from a 12-month vegetation index series:
- Annual maximum and season-entry threshold
- Growing season window (extremes of the qualifying months)
- Boundary, peak and amplitude values
- Cumulative index split at the peak month
- In-season month-to-month derivative extremes
- Vectorized tile kernel for raster blocks

Missing months are always excluded from reductions, never counted as zero.
"""

from collections import deque
from itertools import islice
from multiprocessing import Pool, cpu_count

import numpy as np
import xarray as xr

from models import (
    FEATURE_NAMES, MONTHS, N_MONTHS,
    BoundaryValues, CumulativeSums, DerivativeExtremes, FeatureVector,
    InvalidSeriesError, MonthlySeries, PeakRecord, SeasonWindow, ThresholdResult,
)


DEFAULT_THRESHOLD_FRACTION = 0.5
DEFAULT_PEAK_TOLERANCE = 1e-6


# ============================================================================
# PER-PIXEL STAGES
# ============================================================================

def detect_threshold(series, threshold_fraction=DEFAULT_THRESHOLD_FRACTION):
    """
    Annual maximum over observed months and the season-entry threshold

    Parameters:
    -----------
    series : MonthlySeries
        Monthly index values
    threshold_fraction : float
        Fraction of the annual maximum that a month must exceed

    Returns:
    --------
    ThresholdResult
        ``no_data`` is set when all 12 months are missing
    """
    observed = [series.value(m) for m in series.observed_months()]
    if not observed:
        return ThresholdResult(0.0, 0.0, no_data=True)
    max_value = max(observed)
    return ThresholdResult(max_value, threshold_fraction * max_value)


def resolve_season_window(series, threshold):
    """
    First and last month whose observed value exceeds the threshold

    Months between the two extremes are part of the window even when they
    fall below the threshold.
    """
    if threshold.no_data:
        return SeasonWindow(0, 0)
    qualifying = [
        m for m in MONTHS
        if series.is_observed(m) and series.value(m) > threshold.threshold
    ]
    if not qualifying:
        return SeasonWindow(0, 0)
    return SeasonWindow(min(qualifying), max(qualifying))


def resolve_boundary_values(series, window):
    """Index value at the start and end months and their mean (0 for month 0)"""
    start_val = series.value(window.start_month) if window.start_month != 0 else 0.0
    end_val = series.value(window.end_month) if window.end_month != 0 else 0.0
    return BoundaryValues(start_val, end_val, (start_val + end_val) / 2)


def _season_months(series, window):
    """Observed months inside the window, ascending"""
    return [m for m in MONTHS if window.contains(m) and series.is_observed(m)]


def resolve_peak(series, window, tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Seasonal maximum and the earliest month matching it within tolerance

    Returns:
    --------
    PeakRecord
        (0.0, 0) when the season is empty
    """
    months = _season_months(series, window)
    if not months:
        return PeakRecord(0.0, 0)
    peak_value = max(series.value(m) for m in months)
    peak_month = min(m for m in months if abs(series.value(m) - peak_value) <= tolerance)
    return PeakRecord(peak_value, peak_month)


def compute_amplitude(peak, boundaries):
    return peak.peak_value - boundaries.base_val


def integrate_cumulative(series, window, peak):
    """
    Sum of observed index values on each side of the peak month

    The peak month is included in both sums.
    """
    months = _season_months(series, window)
    left = sum(series.value(m) for m in months if m <= peak.peak_month)
    right = sum(series.value(m) for m in months if m >= peak.peak_month)
    return CumulativeSums(float(left), float(right))


def analyze_derivatives(series, window):
    """
    Largest month-to-month increase and decrease inside the season

    A difference is used only when both months lie in the window and are
    observed. ``min_decrease`` is the negated smallest difference.
    """
    diffs = [
        series.value(m + 1) - series.value(m)
        for m in MONTHS[:-1]
        if window.contains(m) and window.contains(m + 1)
        and series.is_observed(m) and series.is_observed(m + 1)
    ]
    if not diffs:
        return DerivativeExtremes(0.0, 0.0)
    # + 0.0 turns -0.0 into 0.0
    return DerivativeExtremes(max(diffs) + 0.0, -min(diffs) + 0.0)


def assemble_features(threshold, window, boundaries, peak, cumulative, derivatives):
    """Merge stage outputs into the fixed-order FeatureVector"""
    if threshold.no_data:
        return FeatureVector.empty(no_data=True)
    return FeatureVector(
        NDVImax=threshold.max_value,
        NDVIthr=threshold.threshold,
        Month_start_val=window.start_month,
        Month_peak_val=peak.peak_month,
        Month_end_val=window.end_month,
        Start_val=boundaries.start_val,
        End_val=boundaries.end_val,
        Base_val=boundaries.base_val,
        Peak_val=peak.peak_value,
        Ampl=compute_amplitude(peak, boundaries),
        L_cumulative=cumulative.left,
        R_cumulative=cumulative.right,
        Max_increase=derivatives.max_increase,
        Min_decrease=derivatives.min_decrease,
        no_data=False,
    )


def extract_pixel_phenology(series, threshold_fraction=DEFAULT_THRESHOLD_FRACTION,
                            peak_tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Run all phenology stages for one pixel

    Parameters:
    -----------
    series : MonthlySeries or sequence
        Monthly values; sequences are converted with MonthlySeries.from_values
    threshold_fraction : float
        Season-entry threshold as a fraction of the annual maximum
    peak_tolerance : float
        Absolute tolerance for matching the peak month

    Returns:
    --------
    FeatureVector
    """
    if not isinstance(series, MonthlySeries):
        series = MonthlySeries.from_values(series)

    threshold = detect_threshold(series, threshold_fraction)
    window = resolve_season_window(series, threshold)
    boundaries = resolve_boundary_values(series, window)
    peak = resolve_peak(series, window, peak_tolerance)
    cumulative = integrate_cumulative(series, window, peak)
    derivatives = analyze_derivatives(series, window)
    return assemble_features(threshold, window, boundaries, peak, cumulative, derivatives)


# ============================================================================
# PIXEL ITERABLE INTERFACE
# ============================================================================

def _to_series(pairs_or_series):
    if isinstance(pairs_or_series, MonthlySeries):
        return pairs_or_series
    return MonthlySeries.from_pairs(pairs_or_series)


def extract_phenology_records(pixels, threshold_fraction=DEFAULT_THRESHOLD_FRACTION,
                              peak_tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Lazily extract features for an iterable of pixels

    Parameters:
    -----------
    pixels : iterable
        ``(pixel_id, pairs)`` items where ``pairs`` holds 12 ordered
        ``(month, value-or-None)`` tuples, or a MonthlySeries

    Yields:
    -------
    tuple
        ``(pixel_id, FeatureVector)``
    """
    for pixel_id, pairs in pixels:
        try:
            series = _to_series(pairs)
        except InvalidSeriesError as e:
            raise InvalidSeriesError(f"Pixel {pixel_id}: {e}") from e
        yield pixel_id, extract_pixel_phenology(series, threshold_fraction, peak_tolerance)


def _process_pixel_batch(args):
    """Worker for extract_phenology_parallel"""
    batch, threshold_fraction, peak_tolerance = args
    return list(extract_phenology_records(batch, threshold_fraction, peak_tolerance))


def imap_bounded(pool, func, tasks, max_in_flight):
    """
    Ordered ``pool.imap`` that keeps at most ``max_in_flight`` tasks submitted

    Tasks are pulled from ``tasks`` only as results are consumed, so neither
    pending inputs nor finished results accumulate.
    """
    pending = deque()
    for task in tasks:
        pending.append(pool.apply_async(func, (task,)))
        if len(pending) >= max_in_flight:
            yield pending.popleft().get()
    while pending:
        yield pending.popleft().get()


def _batched(iterable, size):
    it = iter(iterable)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def extract_phenology_parallel(pixels, n_processes=None, batch_size=10000,
                               threshold_fraction=DEFAULT_THRESHOLD_FRACTION,
                               peak_tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Extract features for many pixels on a process pool

    Pixels are sent to the workers in batches of ``batch_size``, with at most
    ``2 * n_processes`` batches in flight. Results are yielded in input order.
    """
    n_processes = n_processes or cpu_count()
    tasks = ((batch, threshold_fraction, peak_tolerance)
             for batch in _batched(pixels, batch_size))

    if n_processes == 1:
        for task in tasks:
            yield from _process_pixel_batch(task)
        return

    with Pool(processes=n_processes) as pool:
        for records in imap_bounded(pool, _process_pixel_batch, tasks, 2 * n_processes):
            yield from records


# ============================================================================
# VECTORIZED TILE KERNEL
# ============================================================================

def _monthly_sum(filled, mask):
    """Sum over months in ascending order, so results do not depend on block shape"""
    total = np.zeros(filled.shape[1:], dtype='float64')
    for i in range(N_MONTHS):
        total = total + np.where(mask[i], filled[i], 0.0)
    return total


def extract_phenology_block(values, valid=None,
                            threshold_fraction=DEFAULT_THRESHOLD_FRACTION,
                            peak_tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Phenology features for a block of pixels

    Same semantics as extract_pixel_phenology, applied to every pixel of an
    array whose first axis holds the 12 months.

    Parameters:
    -----------
    values : array-like
        Shape (12, ...) index values
    valid : array-like of bool, optional
        Shape (12, ...) validity mask; defaults to ``isfinite(values)``

    Returns:
    --------
    tuple
        (features, no_data): dict of float64 arrays keyed by FEATURE_NAMES,
        and a bool array marking all-missing pixels
    """
    values = np.asarray(values, dtype='float64')
    if values.shape[0] != N_MONTHS:
        raise InvalidSeriesError(f"Expected {N_MONTHS} months on axis 0, got {values.shape[0]}")
    finite = np.isfinite(values)
    valid = finite if valid is None else (np.asarray(valid, dtype=bool) & finite)

    months = np.arange(1, N_MONTHS + 1, dtype='int64').reshape((N_MONTHS,) + (1,) * (values.ndim - 1))
    filled = np.where(valid, values, 0.0)

    # Threshold (missing excluded from the max)
    no_data = ~valid.any(axis=0)
    max_value = np.where(valid, values, -np.inf).max(axis=0)
    max_value = np.where(no_data, 0.0, max_value)
    threshold = threshold_fraction * max_value

    # Season window: extremes of the qualifying months, 0 when none
    qualifies = valid & (filled > threshold)
    has_season = qualifies.any(axis=0)
    start = np.where(has_season, np.where(qualifies, months, N_MONTHS + 1).min(axis=0), 0)
    end = np.where(has_season, np.where(qualifies, months, 0).max(axis=0), 0)

    # Boundary values
    start_val = np.where(has_season,
                         np.take_along_axis(filled, np.maximum(start - 1, 0)[None], axis=0)[0], 0.0)
    end_val = np.where(has_season,
                       np.take_along_axis(filled, np.maximum(end - 1, 0)[None], axis=0)[0], 0.0)
    base_val = (start_val + end_val) / 2

    # Peak
    in_season = (months >= start) & (months <= end) & has_season & valid
    season_any = in_season.any(axis=0)
    peak_val = np.where(season_any, np.where(in_season, filled, -np.inf).max(axis=0), 0.0)
    at_peak = in_season & (np.abs(filled - peak_val) <= peak_tolerance)
    peak_month = np.where(at_peak.any(axis=0),
                          np.where(at_peak, months, N_MONTHS + 1).min(axis=0), 0)

    # Cumulative sums split at the peak month (peak counted on both sides)
    left = _monthly_sum(filled, in_season & (months <= peak_month))
    right = _monthly_sum(filled, in_season & (months >= peak_month))

    # In-season derivatives
    diffs = filled[1:] - filled[:-1]
    pair_ok = in_season[1:] & in_season[:-1]
    any_pair = pair_ok.any(axis=0)
    max_increase = np.where(any_pair, np.where(pair_ok, diffs, -np.inf).max(axis=0), 0.0) + 0.0
    min_decrease = np.where(any_pair, -np.where(pair_ok, diffs, np.inf).min(axis=0), 0.0) + 0.0

    features = {
        'NDVImax': max_value,
        'NDVIthr': threshold,
        'Month_start_val': start.astype('float64'),
        'Month_peak_val': peak_month.astype('float64'),
        'Month_end_val': end.astype('float64'),
        'Start_val': start_val,
        'End_val': end_val,
        'Base_val': base_val,
        'Peak_val': peak_val,
        'Ampl': peak_val - base_val,
        'L_cumulative': left,
        'R_cumulative': right,
        'Max_increase': max_increase,
        'Min_decrease': min_decrease,
    }
    # All-missing pixels report 0 in every field
    for name in FEATURE_NAMES:
        features[name] = np.where(no_data, 0.0, features[name])
    return features, no_data


def iter_tiles(height, width, tile_size):
    """
    Yield (row_off, col_off, n_rows, n_cols) tiles covering a grid

    Tiles are ordered row-major; edge tiles are clipped to the grid.
    """
    if tile_size < 1:
        raise ValueError("tile_size must be >= 1")
    for row_off in range(0, height, tile_size):
        for col_off in range(0, width, tile_size):
            yield (row_off, col_off,
                   min(tile_size, height - row_off),
                   min(tile_size, width - col_off))


def extract_phenology_dataset(da, month_dim='month', tile_size=512,
                              threshold_fraction=DEFAULT_THRESHOLD_FRACTION,
                              peak_tolerance=DEFAULT_PEAK_TOLERANCE):
    """
    Phenology features for an in-memory monthly stack

    Parameters:
    -----------
    da : xarray.DataArray
        Index values with a 12-long month dimension and two spatial
        dimensions (NaN = missing)
    month_dim : str
        Name of the month dimension
    tile_size : int
        Edge length of the square blocks processed at a time

    Returns:
    --------
    xarray.Dataset
        One variable per feature (FEATURE_NAMES order) plus ``no_data``
    """
    if month_dim not in da.dims:
        raise ValueError(f"DataArray has no '{month_dim}' dimension: {da.dims}")
    if da.sizes[month_dim] != N_MONTHS:
        raise InvalidSeriesError(f"Expected {N_MONTHS} months, got {da.sizes[month_dim]}")
    spatial_dims = [d for d in da.dims if d != month_dim]
    if len(spatial_dims) != 2:
        raise ValueError(f"Expected two spatial dimensions, got {spatial_dims}")

    if month_dim in da.coords:
        da = da.sortby(month_dim)
    arr = da.transpose(month_dim, *spatial_dims).values
    height, width = arr.shape[1:]

    out = {name: np.zeros((height, width), dtype='float64') for name in FEATURE_NAMES}
    no_data = np.zeros((height, width), dtype=bool)

    for row_off, col_off, n_rows, n_cols in iter_tiles(height, width, tile_size):
        rows = slice(row_off, row_off + n_rows)
        cols = slice(col_off, col_off + n_cols)
        features, nd = extract_phenology_block(
            arr[:, rows, cols],
            threshold_fraction=threshold_fraction,
            peak_tolerance=peak_tolerance,
        )
        for name in FEATURE_NAMES:
            out[name][rows, cols] = features[name]
        no_data[rows, cols] = nd

    coords = {d: da.coords[d] for d in spatial_dims if d in da.coords}
    data_vars = {name: (spatial_dims, out[name]) for name in FEATURE_NAMES}
    data_vars['no_data'] = (spatial_dims, no_data)
    ds = xr.Dataset(data_vars, coords=coords)
    ds.attrs['threshold_fraction'] = threshold_fraction
    ds.attrs['peak_tolerance'] = peak_tolerance
    return ds
