"""
Monthly Phenology Utility Functions
===================================
Helper functions for:
- Windowed reading of monthly composites
- Spectral index pass-through bands
- Merging phenology features with collaborator bands
- Point and random sampling of feature rasters
- Tabular conversion and plotting
"""

import numpy as np
import pandas as pd
import xarray as xr
import rioxarray as rxr
import geopandas as gpd
import rasterio
from rasterio.windows import Window
import matplotlib.pyplot as plt

from models import FEATURE_NAMES, MONTHS, N_MONTHS, MonthlySeries


# ============================================================================
# FILE HANDLING UTILITIES
# ============================================================================

def read_monthly_window(month_files, row_off, col_off, n_rows, n_cols, band_index=1):
    """
    Read one window of every monthly composite

    Months without a file are returned as missing. Raster nodata and
    non-finite values are missing as well.

    Parameters:
    -----------
    month_files : dict
        {month: path} for the available months
    row_off, col_off : int
        Window offset (pixels)
    n_rows, n_cols : int
        Window size (pixels)
    band_index : int
        Band holding the index (1-based)

    Returns:
    --------
    tuple
        (values, valid): float64 array of shape (12, n_rows, n_cols) with NaN
        for missing, and the matching bool validity mask
    """
    values = np.full((N_MONTHS, n_rows, n_cols), np.nan, dtype='float64')
    window = Window(col_off, row_off, n_cols, n_rows)

    for month in MONTHS:
        path = month_files.get(month)
        if path is None:
            continue
        with rasterio.open(path) as src:
            band = src.read(band_index, window=window, masked=True)
        values[month - 1] = band.astype('float64').filled(np.nan)

    valid = np.isfinite(values)
    return values, valid


def read_pixel_series(month_files, row, col, band_index=1):
    """Monthly series of a single pixel"""
    values, valid = read_monthly_window(month_files, row, col, 1, 1, band_index)
    return MonthlySeries.from_values(values[:, 0, 0].tolist(), valid[:, 0, 0].tolist())


def open_phenology_raster(path, band_names=FEATURE_NAMES):
    """
    Open a phenology GeoTIFF as a Dataset with one variable per feature

    Parameters:
    -----------
    path : str
        Raster written by the pipeline
    band_names : sequence
        Names of the raster bands in order

    Returns:
    --------
    xarray.Dataset
    """
    da = rxr.open_rasterio(path, masked=True)
    if da.sizes['band'] != len(band_names):
        raise ValueError(f"{path} has {da.sizes['band']} bands, expected {len(band_names)}")
    ds = da.assign_coords(band=list(band_names)).to_dataset(dim='band')
    return ds


# ============================================================================
# SPECTRAL INDICES (PASS-THROUGH BANDS)
# ============================================================================
# Annual indices from surface reflectance bands (Sentinel-2 naming, scaled
# to 0-1). They are carried next to the phenology features unchanged.

def normalized_difference(a, b):
    """(a - b) / (a + b)"""
    with np.errstate(divide='ignore', invalid='ignore'):
        return (a - b) / (a + b)


def compute_ndvi(nir_da, red_da):
    """
    Compute Normalized Difference Vegetation Index

    NDVI = (NIR - RED) / (NIR + RED)
    """
    return normalized_difference(nir_da, red_da)


def compute_ndwi(green_da, nir_da):
    """NDWI = (GREEN - NIR) / (GREEN + NIR)"""
    return normalized_difference(green_da, nir_da)


def compute_gcvi(nir_da, green_da):
    """GCVI = NIR / GREEN - 1"""
    with np.errstate(divide='ignore', invalid='ignore'):
        return nir_da / green_da - 1


def compute_evi(nir_da, red_da, blue_da):
    """
    Compute Enhanced Vegetation Index

    EVI = 2.5 * (NIR - RED) / (NIR + 6*RED - 7.5*BLUE + 1)
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        return 2.5 * (nir_da - red_da) / (nir_da + 6 * red_da - 7.5 * blue_da + 1)


def compute_savi(nir_da, red_da, L=0.5):
    """
    Compute Soil Adjusted Vegetation Index

    SAVI = ((NIR - RED) / (NIR + RED + L)) * (1 + L)
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        return ((nir_da - red_da) / (nir_da + red_da + L)) * (1 + L)


def compute_rvi(nir_da, red_da):
    """RVI = NIR / RED"""
    with np.errstate(divide='ignore', invalid='ignore'):
        return nir_da / red_da


def compute_wi(green_da, red_da, nir_da, swir1_da):
    """WI = (GREEN + 2.5*SWIR1) / (1.5*NIR + 2*RED + 0.5*SWIR1)"""
    with np.errstate(divide='ignore', invalid='ignore'):
        return (green_da + 2.5 * swir1_da) / (1.5 * nir_da + 2 * red_da + 0.5 * swir1_da)


def compute_msi(swir1_da, nir_da):
    """MSI = SWIR1 / NIR"""
    with np.errstate(divide='ignore', invalid='ignore'):
        return swir1_da / nir_da


def compute_ndbi(swir1_da, nir_da):
    """NDBI = (SWIR1 - NIR) / (SWIR1 + NIR)"""
    return normalized_difference(swir1_da, nir_da)


def compute_ndmi(nir_da, swir1_da):
    """NDMI = (NIR - SWIR1) / (NIR + SWIR1)"""
    return normalized_difference(nir_da, swir1_da)


def compute_mndwi(green_da, swir1_da):
    """MNDWI = (GREEN - SWIR1) / (GREEN + SWIR1)"""
    return normalized_difference(green_da, swir1_da)


def compute_dvi(nir_da, red_da):
    """DVI = NIR - RED"""
    return nir_da - red_da


SPECTRAL_INDEX_NAMES = ('NDVI', 'NDWI', 'GCVI', 'EVI', 'SAVI', 'RVI',
                        'WI', 'MSI', 'NDBI', 'NDMI', 'MNDWI', 'DVI')


def compute_spectral_indices(bands, blue='B2', green='B3', red='B4', nir='B8', swir1='B11'):
    """
    Compute all pass-through spectral indices

    Parameters:
    -----------
    bands : xarray.Dataset or dict
        Reflectance bands keyed by name
    blue, green, red, nir, swir1 : str
        Band names in ``bands``

    Returns:
    --------
    xarray.Dataset
        One variable per index, SPECTRAL_INDEX_NAMES order
    """
    missing = [b for b in (blue, green, red, nir, swir1) if b not in bands]
    if missing:
        raise ValueError(f"Reflectance band(s) missing: {missing}")

    b, g, r, n, s = (bands[blue], bands[green], bands[red], bands[nir], bands[swir1])
    indices = {
        'NDVI': compute_ndvi(n, r),
        'NDWI': compute_ndwi(g, n),
        'GCVI': compute_gcvi(n, g),
        'EVI': compute_evi(n, r, b),
        'SAVI': compute_savi(n, r),
        'RVI': compute_rvi(n, r),
        'WI': compute_wi(g, r, n, s),
        'MSI': compute_msi(s, n),
        'NDBI': compute_ndbi(s, n),
        'NDMI': compute_ndmi(n, s),
        'MNDWI': compute_mndwi(g, s),
        'DVI': compute_dvi(n, r),
    }
    return xr.Dataset({name: indices[name] for name in SPECTRAL_INDEX_NAMES})


# ============================================================================
# BAND MERGING
# ============================================================================

def merge_passthrough_bands(features, *band_sets):
    """
    Merge phenology features with bands supplied by other collaborators

    Phenology variables keep their names and come first. Grids must match
    exactly.

    Parameters:
    -----------
    features : xarray.Dataset
        Phenology features (FEATURE_NAMES variables)
    band_sets : xarray.Dataset or xarray.DataArray
        Reflectance, spectral index, texture or backscatter bands

    Returns:
    --------
    xarray.Dataset
    """
    merged = features
    for bands in band_sets:
        if isinstance(bands, xr.DataArray):
            if bands.name is None:
                raise ValueError("Pass-through DataArray must be named")
            bands = bands.to_dataset()
        clash = [name for name in bands.data_vars if name in merged.data_vars]
        if clash:
            raise ValueError(f"Pass-through band name(s) already present: {clash}")
        try:
            merged = xr.merge([merged, bands], join='exact', combine_attrs='override')
        except ValueError as e:
            raise ValueError(f"Pass-through bands are not on the feature grid: {e}") from e
    return merged


# ============================================================================
# SAMPLING
# ============================================================================

def load_sample_points(path, label_column=None):
    """
    Load labelled sample points

    Returns:
    --------
    geopandas.GeoDataFrame
    """
    points = gpd.read_file(path)
    if label_column is not None and label_column not in points.columns:
        raise ValueError(f"Label column '{label_column}' not in {path}")
    if not (points.geom_type == 'Point').all():
        raise ValueError(f"{path} must contain point geometries only")
    return points


def _pixel_bounds(coord):
    c = np.asarray(coord)
    half = abs(c[1] - c[0]) / 2 if len(c) > 1 else 0.5
    return c.min() - half, c.max() + half


def sample_features_at_points(ds, points, label_column=None, x_dim='x', y_dim='y',
                              drop_no_data=True):
    """
    Sample feature values at the pixel nearest to each point

    Points outside the raster are dropped. When ``drop_no_data`` is set,
    samples on no-data pixels are dropped too.

    Parameters:
    -----------
    ds : xarray.Dataset
        Feature raster
    points : geopandas.GeoDataFrame
        Point geometries in the raster CRS
    label_column : str, optional
        Column copied into the output (class label)

    Returns:
    --------
    pandas.DataFrame
        Label (if given), x, y and one column per variable
    """
    raster_crs = ds.rio.crs
    if raster_crs is not None and points.crs is not None and points.crs != raster_crs:
        raise ValueError(f"Point CRS {points.crs} differs from raster CRS {raster_crs}")

    xs = points.geometry.x.to_numpy()
    ys = points.geometry.y.to_numpy()
    xmin, xmax = _pixel_bounds(ds[x_dim].values)
    ymin, ymax = _pixel_bounds(ds[y_dim].values)
    inside = (xs >= xmin) & (xs <= xmax) & (ys >= ymin) & (ys <= ymax)
    if not inside.all():
        print(f"  ⚠ {int((~inside).sum())} point(s) outside the raster, skipped")

    feature_vars = [v for v in ds.data_vars]
    if not inside.any():
        columns = ([label_column] if label_column else []) + ['x', 'y'] + feature_vars
        return pd.DataFrame(columns=columns)

    samples = ds.sel(
        {x_dim: xr.DataArray(xs[inside], dims='sample'),
         y_dim: xr.DataArray(ys[inside], dims='sample')},
        method='nearest',
    )
    df = pd.DataFrame({
        'x': samples[x_dim].values,
        'y': samples[y_dim].values,
    })
    for var in feature_vars:
        df[var] = samples[var].values
    if label_column:
        df.insert(0, label_column, points[label_column].to_numpy()[inside])

    return _drop_no_data(df, drop_no_data)


def random_sample_features(ds, n_samples, seed=0, x_dim='x', y_dim='y', drop_no_data=True):
    """
    Sample ``n_samples`` distinct random pixels

    With ``drop_no_data`` only pixels holding data are drawn. Fewer rows are
    returned when the raster has fewer eligible pixels.
    """
    feature_vars = [v for v in ds.data_vars]
    ny, nx = ds.sizes[y_dim], ds.sizes[x_dim]

    eligible = np.ones((ny, nx), dtype=bool)
    if drop_no_data:
        eligible = _data_mask(ds, y_dim, x_dim)
    flat = np.flatnonzero(eligible)

    rng = np.random.default_rng(seed)
    chosen = np.sort(rng.choice(flat, size=min(n_samples, flat.size), replace=False))
    rows, cols = np.unravel_index(chosen, (ny, nx))

    samples = ds.isel({y_dim: xr.DataArray(rows, dims='sample'),
                       x_dim: xr.DataArray(cols, dims='sample')})
    df = pd.DataFrame({'x': samples[x_dim].values, 'y': samples[y_dim].values})
    for var in feature_vars:
        df[var] = samples[var].values
    return df


def _data_mask(ds, y_dim, x_dim):
    """True where the pixel holds phenology data"""
    if 'no_data' in ds.data_vars:
        mask = ~ds['no_data'].transpose(y_dim, x_dim).values.astype(bool)
    else:
        mask = np.ones((ds.sizes[y_dim], ds.sizes[x_dim]), dtype=bool)
    for name in FEATURE_NAMES:
        if name in ds.data_vars:
            mask &= np.isfinite(ds[name].transpose(y_dim, x_dim).values)
    return mask


def _drop_no_data(df, drop_no_data):
    if not drop_no_data:
        return df.reset_index(drop=True)
    keep = np.ones(len(df), dtype=bool)
    if 'no_data' in df.columns:
        keep &= ~df['no_data'].astype(bool).to_numpy()
    present = [c for c in FEATURE_NAMES if c in df.columns]
    if present:
        keep &= df[present].notna().all(axis=1).to_numpy()
    return df[keep].reset_index(drop=True)


# ============================================================================
# TABULAR OUTPUT
# ============================================================================

def features_to_dataframe(records, index_name='pixel_id'):
    """
    Tabulate ``(pixel_id, FeatureVector)`` records

    Columns follow FEATURE_NAMES order, followed by ``no_data``.
    """
    ids = []
    rows = []
    for pixel_id, fv in records:
        ids.append(pixel_id)
        rows.append(tuple(fv))
    df = pd.DataFrame(rows, columns=list(FEATURE_NAMES) + ['no_data'],
                      index=pd.Index(ids, name=index_name))
    return df


# ============================================================================
# PLOTTING AND VISUALIZATION
# ============================================================================

def plot_pixel_phenology(series, features, output_path, title=None,
                         index_name='NDVI', dpi=300, figsize=(12, 6)):
    """
    Plot a pixel's monthly series with its phenology markers

    Parameters:
    -----------
    series : MonthlySeries
        Monthly values of the pixel
    features : FeatureVector
        Features extracted from ``series``
    output_path : str
        Output PNG path
    """
    months = np.array(MONTHS)
    values = np.array(series.values, dtype=float)
    valid = np.array(series.valid, dtype=bool)

    fig, ax = plt.subplots(figsize=figsize)

    ax.plot(months[valid], values[valid], 'o-', color='darkgreen',
            linewidth=2, markersize=6, label=f'Monthly {index_name}')
    if (~valid).any():
        ax.plot(months[~valid], np.zeros((~valid).sum()), 'x', color='gray',
                markersize=8, label='Missing')

    if not features.no_data:
        ax.axhline(features.NDVIthr, color='orange', linestyle='--',
                   linewidth=1.5, label=f'Threshold ({features.NDVIthr:.3f})')

    if features.Month_start_val:
        start, peak, end = features.Month_start_val, features.Month_peak_val, features.Month_end_val
        ax.axvspan(start - 0.5, end + 0.5, color='green', alpha=0.08, label='Growing season')

        left = valid & (months >= start) & (months <= peak)
        right = valid & (months >= peak) & (months <= end)
        ax.fill_between(months, 0, np.where(left, values, np.nan), step='mid',
                        color='tab:blue', alpha=0.25, label=f'L cumulative ({features.L_cumulative:.2f})')
        ax.fill_between(months, 0, np.where(right, values, np.nan), step='mid',
                        color='tab:red', alpha=0.25, label=f'R cumulative ({features.R_cumulative:.2f})')

        ax.plot(peak, features.Peak_val, marker='*', markersize=18, color='red',
                markeredgecolor='black', markeredgewidth=1.5, label='Peak')

    ax.set_xticks(months)
    ax.set_xlabel('Month', fontsize=12, fontweight='bold')
    ax.set_ylabel(index_name, fontsize=12, fontweight='bold')
    ax.set_title(title or f'{index_name} phenology', fontsize=14, fontweight='bold')
    ax.legend(loc='upper left', framealpha=0.9, fontsize=9)
    ax.grid(True, alpha=0.3)

    summary = (f"Ampl: {features.Ampl:.3f}   Base: {features.Base_val:.3f}   "
               f"Max increase: {features.Max_increase:.3f}   "
               f"Min decrease: {features.Min_decrease:.3f}")
    ax.text(0.99, 0.02, summary, transform=ax.transAxes, ha='right', va='bottom',
            fontsize=9, fontfamily='monospace',
            bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.3))

    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
