"""
Phenology Data Model
====================
Immutable records passed between the phenology stages:
- Monthly vegetation index series with validity mask
- Threshold, season window, boundary, peak, cumulative and derivative results
- Fixed-schema per-pixel feature vector
- Error classes
"""

import math
from typing import NamedTuple, Tuple

import numpy as np


N_MONTHS = 12
MONTHS = tuple(range(1, N_MONTHS + 1))

# Output schema: order and names are part of the downstream contract
FEATURE_NAMES = (
    'NDVImax',
    'NDVIthr',
    'Month_start_val',
    'Month_peak_val',
    'Month_end_val',
    'Start_val',
    'End_val',
    'Base_val',
    'Peak_val',
    'Ampl',
    'L_cumulative',
    'R_cumulative',
    'Max_increase',
    'Min_decrease',
)

# Month-valued features (integers 0..12 stored as floats in rasters)
MONTH_FEATURES = ('Month_start_val', 'Month_peak_val', 'Month_end_val')


# ============================================================================
# ERRORS
# ============================================================================

class PhenologyError(Exception):
    """Base class for phenology extraction errors"""


class InvalidSeriesError(PhenologyError, ValueError):
    """Raised when a monthly series cannot be built from the supplied data"""


class TileProcessingError(PhenologyError):
    """Raised when a raster tile cannot be read or processed"""

    def __init__(self, tile_id, window, reason):
        self.tile_id = tile_id
        self.window = window
        self.reason = reason
        super().__init__(f"Tile {tile_id} {window}: {reason}")


class PhenologyRunError(PhenologyError):
    """Raised when one or more tiles of a run failed"""

    def __init__(self, year, failed_tiles):
        self.year = year
        self.failed_tiles = list(failed_tiles)
        super().__init__(f"{len(self.failed_tiles)} tile(s) failed for year {year}")


# ============================================================================
# INPUT SERIES
# ============================================================================

def _coerce_observation(value):
    """Return (float, observed) for one monthly slot; None and non-finite are missing"""
    if value is None:
        return math.nan, False
    try:
        v = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidSeriesError(f"Cannot interpret monthly value {value!r}") from e
    if not math.isfinite(v):
        return math.nan, False
    return v, True


class MonthlySeries(NamedTuple):
    """
    Twelve monthly observations of a vegetation index for one pixel

    Missing slots hold NaN in ``values`` and False in ``valid``. Access
    values through ``value(m)`` with 1-based months.
    """
    values: Tuple[float, ...]
    valid: Tuple[bool, ...]

    @classmethod
    def from_values(cls, values, valid=None):
        """
        Build a series from 12 values ordered January..December

        Parameters:
        -----------
        values : sequence
            Monthly values; None, NaN and infinities are treated as missing
        valid : sequence of bool, optional
            Explicit validity mask; False marks a slot missing regardless
            of its value

        Returns:
        --------
        MonthlySeries
        """
        values = list(values)
        if len(values) != N_MONTHS:
            raise InvalidSeriesError(f"Expected {N_MONTHS} monthly values, got {len(values)}")
        if valid is not None:
            valid = list(valid)
            if len(valid) != N_MONTHS:
                raise InvalidSeriesError(f"Expected {N_MONTHS} validity flags, got {len(valid)}")

        out_values = []
        out_valid = []
        for i, raw in enumerate(values):
            v, ok = _coerce_observation(raw)
            if valid is not None and not bool(valid[i]):
                v, ok = math.nan, False
            out_values.append(v)
            out_valid.append(ok)
        return cls(tuple(out_values), tuple(out_valid))

    @classmethod
    def from_pairs(cls, pairs):
        """
        Build a series from 12 ordered ``(month, value-or-missing)`` pairs

        Months must be exactly 1..12 in ascending order.
        """
        try:
            pairs = [tuple(p) for p in pairs]
        except TypeError as e:
            raise InvalidSeriesError(f"Expected (month, value) pairs: {e}") from e

        months = []
        for p in pairs:
            if len(p) != 2:
                raise InvalidSeriesError(f"Expected a (month, value) pair, got {p!r}")
            try:
                months.append(int(p[0]))
            except (TypeError, ValueError) as e:
                raise InvalidSeriesError(f"Cannot interpret month {p[0]!r}") from e
        if months != list(MONTHS):
            raise InvalidSeriesError(f"Expected months 1..12 in order, got {months}")
        return cls.from_values([p[1] for p in pairs])

    @classmethod
    def from_array(cls, arr):
        """Build a series from a length-12 numpy array (NaN = missing)"""
        arr = np.asarray(arr, dtype='float64').ravel()
        return cls.from_values(arr.tolist())

    def value(self, month):
        return self.values[month - 1]

    def is_observed(self, month):
        return self.valid[month - 1]

    def observed_months(self):
        return [m for m in MONTHS if self.valid[m - 1]]

    @property
    def all_missing(self):
        return not any(self.valid)


# ============================================================================
# INTERMEDIATE STAGE RESULTS
# ============================================================================

class ThresholdResult(NamedTuple):
    max_value: float
    threshold: float
    no_data: bool = False


class SeasonWindow(NamedTuple):
    """Start/end months of the growing season; 0 means no qualifying month"""
    start_month: int
    end_month: int

    @property
    def is_empty(self):
        return self.start_month == 0

    def contains(self, month):
        return not self.is_empty and self.start_month <= month <= self.end_month


class BoundaryValues(NamedTuple):
    start_val: float
    end_val: float
    base_val: float


class PeakRecord(NamedTuple):
    peak_value: float
    peak_month: int


class CumulativeSums(NamedTuple):
    left: float
    right: float


class DerivativeExtremes(NamedTuple):
    max_increase: float
    min_decrease: float


# ============================================================================
# OUTPUT RECORD
# ============================================================================

class FeatureVector(NamedTuple):
    """
    Phenology features of one pixel

    The first fourteen fields follow FEATURE_NAMES exactly. ``no_data`` is
    True when every month of the input was missing; all numeric fields are
    then 0.
    """
    NDVImax: float
    NDVIthr: float
    Month_start_val: int
    Month_peak_val: int
    Month_end_val: int
    Start_val: float
    End_val: float
    Base_val: float
    Peak_val: float
    Ampl: float
    L_cumulative: float
    R_cumulative: float
    Max_increase: float
    Min_decrease: float
    no_data: bool = False

    @classmethod
    def empty(cls, no_data=True):
        return cls(0.0, 0.0, 0, 0, 0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, no_data)

    def as_tuple(self):
        """Feature values in schema order (without the no-data flag)"""
        return tuple(self)[:len(FEATURE_NAMES)]

    def as_dict(self):
        return dict(zip(FEATURE_NAMES, self.as_tuple()))
